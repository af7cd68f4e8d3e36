"""Domain package exports for value objects, errors, and run settings."""

from .entities import (
    Artifact,
    BackupRecord,
    CommandResult,
    InstalledRelease,
    OutcomeKind,
    ServiceState,
    UpgradeOutcome,
    UpgradePhase,
    UpgradeRequest,
    VerifyReport,
)
from .errors import (
    BackupError,
    FetchError,
    HealthCheckError,
    InstallError,
    RollbackError,
    ServiceControlError,
    UpgradeError,
    ValidationError,
)
from .retry import RetryPolicy, RetryResult
from .settings import UpgradeSettings

__all__ = [
    "Artifact",
    "BackupError",
    "BackupRecord",
    "CommandResult",
    "FetchError",
    "HealthCheckError",
    "InstallError",
    "InstalledRelease",
    "OutcomeKind",
    "RetryPolicy",
    "RetryResult",
    "RollbackError",
    "ServiceControlError",
    "ServiceState",
    "UpgradeError",
    "UpgradeOutcome",
    "UpgradePhase",
    "UpgradeRequest",
    "UpgradeSettings",
    "ValidationError",
    "VerifyReport",
]
