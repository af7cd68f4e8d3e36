"""Domain-level error types for use-case and adapter mapping.

Every failure that can end an upgrade run is expressed as one of these
classes so the orchestrator can branch on the category instead of on
transport or filesystem exception details.
"""

from __future__ import annotations


class UpgradeError(RuntimeError):
    """Typed upgrade error with stable code/message/hint values."""

    def __init__(self, code: str, message: str, hint: str = "") -> None:
        super().__init__(message)
        self.code = str(code)
        self.message = str(message)
        self.hint = str(hint or "")

    def describe(self) -> str:
        """Return ``message`` with the hint appended when present."""
        if self.hint:
            return f"{self.message}: {self.hint}"
        return self.message


class ValidationError(UpgradeError):
    """Bad input or unmet pre-flight requirement; nothing was touched."""


class FetchError(UpgradeError):
    """Download or integrity failure; nothing was touched."""


class ServiceControlError(UpgradeError):
    """Service stop/start failure."""


class BackupError(UpgradeError):
    """Archive create/prune/restore failure."""


class InstallError(UpgradeError):
    """Extraction, permission, or version-mismatch failure."""


class HealthCheckError(UpgradeError):
    """Post-start health verification failure."""


class RollbackError(UpgradeError):
    """Failure while restoring the previous release; always fatal."""


__all__ = [
    "BackupError",
    "FetchError",
    "HealthCheckError",
    "InstallError",
    "RollbackError",
    "ServiceControlError",
    "UpgradeError",
    "ValidationError",
]
