"""Translate unexpected exceptions into the upgrade error taxonomy."""

from __future__ import annotations

from typing import Dict, Optional, Type

from iqupgrade.domain.entities import UpgradePhase
from iqupgrade.domain.errors import (
    BackupError,
    FetchError,
    HealthCheckError,
    InstallError,
    RollbackError,
    ServiceControlError,
    UpgradeError,
    ValidationError,
)

_PHASE_ERRORS: Dict[UpgradePhase, Type[UpgradeError]] = {
    UpgradePhase.INIT: ValidationError,
    UpgradePhase.FETCHING: FetchError,
    UpgradePhase.VERIFYING: FetchError,
    UpgradePhase.STOPPING: ServiceControlError,
    UpgradePhase.BACKING_UP: BackupError,
    UpgradePhase.INSTALLING: InstallError,
    UpgradePhase.SETTING_PERMISSIONS: InstallError,
    UpgradePhase.VERIFYING_INSTALL: InstallError,
    UpgradePhase.STARTING: ServiceControlError,
    UpgradePhase.HEALTH_CHECKING: HealthCheckError,
    UpgradePhase.ROLLING_BACK: RollbackError,
}


def map_step_error(
    exc: BaseException,
    *,
    phase: UpgradePhase,
    default_message: Optional[str] = None,
) -> UpgradeError:
    """Map an exception raised inside ``phase`` to a typed ``UpgradeError``.

    Args:
        exc: Exception raised by an adapter or by the orchestrator itself.
        phase: State-machine phase that was running.
        default_message: Message used when ``exc`` has none.

    Returns:
        UpgradeError: ``exc`` unchanged when it is already typed, otherwise
        an instance of the class owning ``phase`` with code
        ``<phase>.unexpected_error``.
    """
    if isinstance(exc, UpgradeError):
        return exc
    error_cls = _PHASE_ERRORS.get(phase, UpgradeError)
    if isinstance(exc, KeyboardInterrupt):
        return error_cls(f"{phase.value}.interrupted", "Upgrade interrupted by operator")
    message = default_message or f"Unexpected error during {phase.value.replace('_', ' ')}"
    hint = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
    return error_cls(f"{phase.value}.unexpected_error", message, hint)


__all__ = ["map_step_error"]
