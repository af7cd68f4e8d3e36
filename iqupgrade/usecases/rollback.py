"""Use case restoring the previous release after a failed upgrade step."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from iqupgrade.domain.entities import (
    BackupRecord,
    ServiceState,
    UpgradeOutcome,
    UpgradePhase,
)
from iqupgrade.domain.errors import BackupError, RollbackError
from iqupgrade.domain.ports import ArchivePort, AuditPort, InstallerPort, ServicePort
from iqupgrade.usecases.error_mapping import map_step_error

INCOMPLETE_BACKUP_CODE = "backup.undo_incomplete"


@dataclass(frozen=True)
class RollbackPlan:
    """Everything rollback needs to know about the interrupted run.

    Attributes:
        reason: Human-readable failure that triggered rollback.
        failed_phase: Phase that failed.
        error_code: Stable code of the triggering error.
        pre_state: Service state observed before the run.
        pre_run_files: Jar names present before the run.
        backup: Record published by this run, if any.
        previous_version: Release label installed before the run.
        dry_run: Simulate only.
    """

    reason: str
    failed_phase: Optional[UpgradePhase]
    error_code: str = ""
    pre_state: ServiceState = ServiceState.UNKNOWN
    pre_run_files: Tuple[str, ...] = ()
    backup: Optional[BackupRecord] = None
    previous_version: str = "unknown"
    dry_run: bool = False


@dataclass
class RollbackUpgrade:
    """Use-case callable returning ``ROLLED_BACK`` or ``FATAL``."""

    service: ServicePort
    archive: ArchivePort
    installer: InstallerPort
    audit: AuditPort
    work_dir: Path
    logger: Optional[logging.Logger] = field(default=None, repr=False)

    def __call__(self, plan: RollbackPlan) -> UpgradeOutcome:
        """Undo the run described by ``plan``.

        Sequence: best-effort stop, remove new-version jars, restore the
        backup this run published, restart the service unless it was known
        to be stopped before the run.

        Returns:
            UpgradeOutcome: ``ROLLED_BACK`` when the previous state is back,
            ``FATAL`` when cleanup, restore, or restart failed, or when any
            unexpected exception escaped one of those steps.
        """
        log = self.logger or logging.getLogger(__name__)
        log.warning("Initiating rollback...")
        self.audit.record(
            "rollback_started",
            plan.reason,
            level="warning",
            failed_phase=plan.failed_phase.value if plan.failed_phase else None,
            error_code=plan.error_code,
        )

        if plan.dry_run:
            log.info("[DRY RUN] Would perform rollback")
            self.audit.record("rollback_done", "Dry-run rollback simulated")
            return self._rolled_back(plan)

        try:
            self._stop_best_effort(log)
            self._remove_new_files(plan, log)
            self._restore_backup(plan, log)
            self._restart(plan, log)
        except Exception as exc:
            error = _as_rollback_error(exc)
            reason = f"{plan.reason}; rollback failed: {error.describe()}"
            log.critical("Rollback failed: %s", error.describe(), exc_info=not isinstance(exc, RollbackError))
            log.critical("Manual intervention required. Installation directory: %s", self.work_dir)
            self.audit.record(
                "rollback_failed",
                error.describe(),
                level="critical",
                error_code=error.code,
                triggering_error=plan.error_code,
            )
            return UpgradeOutcome.fatal(reason, phase=plan.failed_phase, code=error.code)

        log.info("Rollback completed successfully")
        self.audit.record("rollback_done", "Previous release restored", version=plan.previous_version)
        return self._rolled_back(plan)

    # ------------------------------------------------------------------
    def _stop_best_effort(self, log: logging.Logger) -> None:
        try:
            if not self.service.is_active():
                return
            result = self.service.stop()
        except Exception:
            log.exception("Stopping the service during rollback raised; continuing")
            return
        if not result.ok:
            log.warning("Could not stop service during rollback (%s); continuing", result.message)

    def _remove_new_files(self, plan: RollbackPlan, log: logging.Logger) -> None:
        # Without a published backup the pre-run jars were never moved away.
        keep = () if plan.backup is not None else plan.pre_run_files
        try:
            removed = self.installer.remove_installed(keep=keep)
        except OSError as exc:
            raise RollbackError(
                "rollback.cleanup_failed",
                "Failed to remove new installation files",
                str(exc),
            ) from exc
        if removed:
            log.info("Removed %d new installation file(s)", len(removed))

    def _restore_backup(self, plan: RollbackPlan, log: logging.Logger) -> None:
        if plan.backup is None and plan.error_code == INCOMPLETE_BACKUP_CODE:
            raise RollbackError(
                "rollback.backup_incomplete",
                "Previous files were left in a partial backup and must be restored by hand",
                plan.reason,
            )
        if plan.backup is None:
            log.info("No backup was taken in this run; previous files were left in place")
            return
        latest = self.archive.latest()
        if latest is None:
            raise RollbackError(
                "rollback.pointer_missing",
                "No backup information found. Cannot rollback.",
                str(plan.backup.path),
            )
        if latest.path != plan.backup.path:
            raise RollbackError(
                "rollback.pointer_mismatch",
                "Latest backup pointer does not match this run's backup",
                f"pointer={latest.path} expected={plan.backup.path}",
            )
        try:
            self.archive.restore(latest, self.work_dir)
        except BackupError as exc:
            raise RollbackError(
                "rollback.restore_failed",
                "Failed to restore files from backup",
                exc.describe(),
            ) from exc
        log.info("Files restored from backup")

    def _restart(self, plan: RollbackPlan, log: logging.Logger) -> None:
        if plan.pre_state is ServiceState.INACTIVE:
            log.info("Service was not running before the upgrade; leaving it stopped")
            return
        result = self.service.start()
        if not result.ok:
            raise RollbackError(
                "rollback.restart_failed",
                "Failed to start service after rollback",
                result.message,
            )

    @staticmethod
    def _rolled_back(plan: RollbackPlan) -> UpgradeOutcome:
        return UpgradeOutcome.rolled_back(
            plan.reason,
            phase=plan.failed_phase,
            code=plan.error_code,
            version=plan.previous_version,
        )


def _as_rollback_error(exc: Exception) -> RollbackError:
    error = map_step_error(exc, phase=UpgradePhase.ROLLING_BACK)
    if isinstance(error, RollbackError):
        return error
    return RollbackError(error.code, error.message, error.hint)


__all__ = ["RollbackPlan", "RollbackUpgrade"]
