"""Use cases orchestrating upgrade, rollback, and pre-flight workflows."""
