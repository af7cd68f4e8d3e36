"""Adapter package for external I/O implementations.

Purpose:
    Collect concrete implementations for domain ports (HTTP download and
    health probing, systemd control, local archive and installer, audit
    log, host facts) used by the upgrade use cases.

Dependencies:
    Individual submodules depend on ``requests``, ``subprocess``, filesystem
    APIs, and domain protocol definitions.

Call context:
    Imported by the CLI composition root (for runtime wiring) and by tests
    (for transport-level and filesystem behavior verification).
"""
