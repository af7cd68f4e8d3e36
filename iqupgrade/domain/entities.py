from __future__ import annotations

"""Domain value objects shared across adapters and the upgrade use cases."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

from .naming import validate_version_token


class ServiceState(Enum):
    """Observed state of the managed service."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    UNKNOWN = "unknown"


class UpgradePhase(Enum):
    """States of the upgrade state machine."""

    INIT = "init"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    STOPPING = "stopping"
    BACKING_UP = "backing_up"
    INSTALLING = "installing"
    SETTING_PERMISSIONS = "setting_permissions"
    VERIFYING_INSTALL = "verifying_install"
    STARTING = "starting"
    HEALTH_CHECKING = "health_checking"
    ROLLING_BACK = "rolling_back"
    DONE = "done"

    @property
    def mutates_system(self) -> bool:
        """Return whether a failure in this phase requires rollback."""
        return self in _MUTATING_PHASES


_MUTATING_PHASES = frozenset(
    {
        UpgradePhase.STOPPING,
        UpgradePhase.BACKING_UP,
        UpgradePhase.INSTALLING,
        UpgradePhase.SETTING_PERMISSIONS,
        UpgradePhase.VERIFYING_INSTALL,
        UpgradePhase.STARTING,
        UpgradePhase.HEALTH_CHECKING,
    }
)


@dataclass(frozen=True)
class UpgradeRequest:
    """Immutable operator request for one upgrade run."""

    version: str
    dry_run: bool = False
    keep_artifact: bool = False
    skip_health_check: bool = False

    @classmethod
    def create(
        cls,
        version: object,
        *,
        dry_run: bool = False,
        keep_artifact: bool = False,
        skip_health_check: bool = False,
    ) -> "UpgradeRequest":
        """Validate the version token and build the request."""
        return cls(
            version=validate_version_token(version),
            dry_run=bool(dry_run),
            keep_artifact=bool(keep_artifact),
            skip_health_check=bool(skip_health_check),
        )


@dataclass(frozen=True)
class InstalledRelease:
    """Release currently deployed in the working directory."""

    version: str
    token: Optional[str]
    files: Tuple[Path, ...] = ()
    owner: str = "unknown"
    group: str = "unknown"

    @property
    def primary_file(self) -> Optional[Path]:
        return self.files[0] if self.files else None


@dataclass(frozen=True)
class Artifact:
    """Downloaded, not yet installed release bundle."""

    url: str
    path: Path
    size_bytes: int = 0
    integrity_ok: bool = False
    synthetic: bool = False


@dataclass(frozen=True)
class VerifyReport:
    """Outcome of the artifact integrity checks."""

    ok: bool
    failed_check: str = ""
    message: str = ""
    size_bytes: int = 0


@dataclass(frozen=True)
class BackupRecord:
    """Published snapshot of the files installed before an upgrade."""

    path: Path
    created_at: datetime
    files: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.path.name


@dataclass(frozen=True)
class CommandResult:
    """Discriminated result returned by service-control adapters."""

    ok: bool
    code: str = ""
    message: str = ""

    @classmethod
    def success(cls, message: str = "") -> "CommandResult":
        return cls(ok=True, message=message)

    @classmethod
    def failure(cls, code: str, message: str) -> "CommandResult":
        return cls(ok=False, code=code, message=message)


class OutcomeKind(Enum):
    """Terminal result categories of an upgrade run."""

    SUCCESS = "success"
    ROLLED_BACK = "rolled_back"
    FATAL = "fatal"
    ABORTED = "aborted"


_EXIT_CODES = {
    OutcomeKind.SUCCESS: 0,
    OutcomeKind.ABORTED: 1,
    OutcomeKind.ROLLED_BACK: 2,
    OutcomeKind.FATAL: 3,
}


@dataclass(frozen=True)
class UpgradeOutcome:
    """Terminal result of one orchestrator run.

    ``ABORTED`` means the run failed before any mutation, so nothing needed
    to be undone. ``FATAL`` means rollback itself failed and an operator has
    to intervene.
    """

    kind: OutcomeKind
    version: str = ""
    reason: str = ""
    failed_phase: Optional[UpgradePhase] = None
    error_code: str = ""
    previous_version: str = ""
    backup: Optional[BackupRecord] = field(default=None, compare=False)

    @property
    def interrupted(self) -> bool:
        """Return whether the run ended because the operator interrupted it."""
        return self.error_code.endswith(".interrupted")

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self.kind]

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @classmethod
    def success(
        cls,
        version: str,
        *,
        backup: Optional[BackupRecord] = None,
        previous_version: str = "",
    ) -> "UpgradeOutcome":
        return cls(
            kind=OutcomeKind.SUCCESS,
            version=version,
            previous_version=previous_version,
            backup=backup,
        )

    @classmethod
    def aborted(cls, reason: str, *, phase: UpgradePhase, code: str = "") -> "UpgradeOutcome":
        return cls(kind=OutcomeKind.ABORTED, reason=reason, failed_phase=phase, error_code=code)

    @classmethod
    def rolled_back(
        cls,
        reason: str,
        *,
        phase: Optional[UpgradePhase],
        code: str = "",
        version: str = "",
    ) -> "UpgradeOutcome":
        return cls(
            kind=OutcomeKind.ROLLED_BACK,
            version=version,
            reason=reason,
            failed_phase=phase,
            error_code=code,
        )

    @classmethod
    def fatal(cls, reason: str, *, phase: Optional[UpgradePhase], code: str = "") -> "UpgradeOutcome":
        return cls(kind=OutcomeKind.FATAL, reason=reason, failed_phase=phase, error_code=code)


__all__ = [
    "Artifact",
    "BackupRecord",
    "CommandResult",
    "InstalledRelease",
    "OutcomeKind",
    "ServiceState",
    "UpgradeOutcome",
    "UpgradePhase",
    "UpgradeRequest",
    "VerifyReport",
]
