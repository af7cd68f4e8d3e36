"""Host-local upgrade orchestrator for the Nexus IQ Server service."""

__version__ = "0.1.0"
