"""Upgrade orchestration use case.

Purpose:
    Drive one upgrade run through its state machine, from fetching the
    release bundle to confirming the restarted service is healthy.

Dependencies:
    Only domain ports, so tests can inject in-memory doubles for every
    external effect (HTTP, systemd, filesystem).

Call context:
    Built and invoked once per CLI invocation by ``iqupgrade.app.main``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from iqupgrade.domain.entities import (
    Artifact,
    BackupRecord,
    InstalledRelease,
    ServiceState,
    UpgradeOutcome,
    UpgradePhase,
    UpgradeRequest,
)
from iqupgrade.domain.errors import (
    FetchError,
    HealthCheckError,
    InstallError,
    ServiceControlError,
    UpgradeError,
)
from iqupgrade.domain.naming import release_label
from iqupgrade.domain.ports import (
    ArchivePort,
    ArtifactPort,
    AuditPort,
    HealthPort,
    InstallerPort,
    ServicePort,
)
from iqupgrade.domain.settings import UpgradeSettings
from iqupgrade.usecases.error_mapping import map_step_error
from iqupgrade.usecases.rollback import RollbackPlan, RollbackUpgrade


@dataclass
class _RunContext:
    """Mutable facts collected while one run progresses."""

    request: UpgradeRequest
    phase: UpgradePhase = UpgradePhase.INIT
    release: Optional[InstalledRelease] = None
    pre_state: ServiceState = ServiceState.UNKNOWN
    pre_run_files: Tuple[str, ...] = ()
    artifact: Optional[Artifact] = None
    backup: Optional[BackupRecord] = None
    installed: List[Path] = field(default_factory=list)

    @property
    def previous_version(self) -> str:
        return self.release.version if self.release is not None else "none"


class UpgradeOrchestrator:
    """Run the fetch, swap, start, and verify sequence with rollback.

    Failures before the service is stopped leave the host untouched and end
    as ``ABORTED``. Any failure from ``STOPPING`` onward, including an
    operator interrupt, hands over to :class:`RollbackUpgrade`.
    """

    def __init__(
        self,
        settings: UpgradeSettings,
        *,
        fetcher: ArtifactPort,
        service: ServicePort,
        archive: ArchivePort,
        installer: InstallerPort,
        prober: HealthPort,
        audit: AuditPort,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings
        self.fetcher = fetcher
        self.service = service
        self.archive = archive
        self.installer = installer
        self.prober = prober
        self.audit = audit
        self.log = logger or logging.getLogger(__name__)
        self.rollback = RollbackUpgrade(
            service=service,
            archive=archive,
            installer=installer,
            audit=audit,
            work_dir=settings.work_dir,
            logger=self.log,
        )

    def run(self, request: UpgradeRequest) -> UpgradeOutcome:
        """Execute one upgrade run.

        Args:
            request: Validated operator request.

        Returns:
            UpgradeOutcome: Terminal result; never raises for step failures.

        Side Effects:
            Downloads the bundle into the working directory, stops and starts
            the service, moves jars into the archive, and appends audit events.
        """
        ctx = _RunContext(request=request)
        self.audit.record(
            "run_started",
            f"Upgrade to {release_label(request.version)} requested",
            phase=ctx.phase.value,
            version=request.version,
            dry_run=request.dry_run,
            keep_artifact=request.keep_artifact,
            skip_health_check=request.skip_health_check,
        )
        try:
            self._capture_current_state(ctx)
            self._enter(ctx, UpgradePhase.FETCHING)
            ctx.artifact = self.fetcher.fetch(request.version, self.settings.work_dir)
            self._enter(ctx, UpgradePhase.VERIFYING)
            self._verify_artifact(ctx)
            self._enter(ctx, UpgradePhase.STOPPING)
            self._stop_service()
            self._enter(ctx, UpgradePhase.BACKING_UP)
            self._backup(ctx)
            self._enter(ctx, UpgradePhase.INSTALLING)
            ctx.installed = self.installer.install(ctx.artifact)
            self._enter(ctx, UpgradePhase.SETTING_PERMISSIONS)
            self.installer.set_permissions(
                ctx.installed, self.settings.service_user, self.settings.service_group
            )
            self._enter(ctx, UpgradePhase.VERIFYING_INSTALL)
            self._verify_install(ctx)
            self._enter(ctx, UpgradePhase.STARTING)
            self._start_service()
            self._enter(ctx, UpgradePhase.HEALTH_CHECKING)
            self._check_health(ctx)
        except (Exception, KeyboardInterrupt) as exc:
            outcome = self._handle_failure(ctx, exc)
        else:
            self._enter(ctx, UpgradePhase.DONE)
            outcome = UpgradeOutcome.success(
                release_label(request.version),
                backup=ctx.backup,
                previous_version=ctx.previous_version,
            )
            self.log.info("Upgrade completed successfully!")
        finally:
            self._discard_artifact(ctx)

        self.audit.record(
            "run_finished",
            outcome.reason or "Upgrade completed",
            level="info" if outcome.succeeded else "error",
            phase=ctx.phase.value,
            outcome=outcome.kind.value,
            exit_code=outcome.exit_code,
            error_code=outcome.error_code,
        )
        return outcome

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    def _enter(self, ctx: _RunContext, phase: UpgradePhase) -> None:
        ctx.phase = phase
        self.log.debug("Entering phase %s", phase.value)
        self.audit.record("phase", f"Entering {phase.value}", phase=phase.value)

    def _capture_current_state(self, ctx: _RunContext) -> None:
        ctx.release = self.installer.current_release()
        ctx.pre_run_files = tuple(path.name for path in self.installer.installed_files())
        ctx.pre_state = self.service.state()
        if ctx.release is None:
            self.log.info("No existing installation found; performing fresh install")
        else:
            self.log.info("Current version: %s", ctx.release.version)
            self.log.info("Current owner: %s:%s", ctx.release.owner, ctx.release.group)
        self.audit.record(
            "current_state",
            f"Installed: {ctx.previous_version}, service {ctx.pre_state.value}",
            phase=ctx.phase.value,
            previous_version=ctx.previous_version,
            service_state=ctx.pre_state.value,
            files=list(ctx.pre_run_files),
        )

    def _verify_artifact(self, ctx: _RunContext) -> None:
        artifact = ctx.artifact
        if artifact is None or artifact.integrity_ok:
            return
        report = self.fetcher.verify(artifact)
        if not report.ok:
            artifact.path.unlink(missing_ok=True)
            raise FetchError(
                f"fetch.verify_{report.failed_check}",
                "Download verification failed",
                report.message,
            )

    def _stop_service(self) -> None:
        self.log.info("Stopping %s...", self.settings.service_name)
        result = self.service.stop()
        if not result.ok:
            raise ServiceControlError(result.code or "service.stop_failed", "Failed to stop service", result.message)
        self.audit.record("service_stopped", result.message or "Service stopped", phase=UpgradePhase.STOPPING.value)

    def _backup(self, ctx: _RunContext) -> None:
        files = self.installer.installed_files()
        ctx.backup = self.archive.create_backup(files)
        if ctx.backup is None:
            self.audit.record("backup_skipped", "No files to back up", phase=ctx.phase.value)
            return
        self.audit.record(
            "backup_created",
            f"Backup created: {ctx.backup.path}",
            phase=ctx.phase.value,
            files=list(ctx.backup.files),
        )
        pruned = self.archive.prune_to_limit(self.settings.backup_retention)
        if pruned:
            self.audit.record(
                "backups_pruned",
                f"Removed {len(pruned)} old backup(s)",
                phase=ctx.phase.value,
                removed=pruned,
            )

    def _verify_install(self, ctx: _RunContext) -> None:
        expected = ctx.request.version
        if ctx.request.dry_run:
            self.log.info("[DRY RUN] Would verify installed version matches %s", release_label(expected))
            return
        release = self.installer.current_release()
        if release is None:
            raise InstallError(
                "install.jar_missing",
                "No server jar present after installation",
                str(self.settings.work_dir),
            )
        if release.token != expected:
            raise InstallError(
                "install.version_mismatch",
                "Installed version does not match the requested version",
                f"expected {release_label(expected)}, found {release.version}",
            )
        self.log.info("Installed version verified: %s", release.version)
        self.audit.record("install_verified", release.version, phase=ctx.phase.value)

    def _start_service(self) -> None:
        self.log.info("Starting %s...", self.settings.service_name)
        result = self.service.start()
        if not result.ok:
            raise ServiceControlError(result.code or "service.start_failed", "Failed to start service", result.message)
        self.audit.record("service_started", result.message or "Service started", phase=UpgradePhase.STARTING.value)

    def _check_health(self, ctx: _RunContext) -> None:
        if ctx.request.skip_health_check:
            self.log.warning("Skipping health check as requested")
            self.audit.record(
                "health_skipped",
                "Health check skipped by operator",
                level="warning",
                phase=ctx.phase.value,
            )
            return
        healthy = self.prober.wait_healthy(
            self.settings.health_url,
            retries=self.settings.health_retries,
            interval_s=self.settings.health_interval_s,
        )
        if not healthy:
            raise HealthCheckError(
                "health.unhealthy",
                f"Health check failed after {self.settings.health_retries} attempts",
                self.settings.health_url,
            )
        self.audit.record("health_passed", self.settings.health_url, phase=ctx.phase.value)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------
    def _handle_failure(self, ctx: _RunContext, exc: BaseException) -> UpgradeOutcome:
        failed_phase = ctx.phase
        error: UpgradeError = map_step_error(exc, phase=failed_phase)
        self.log.error("%s", error.describe(), exc_info=not isinstance(exc, (UpgradeError, KeyboardInterrupt)))
        self.audit.record(
            "step_failed",
            error.describe(),
            level="error",
            phase=failed_phase.value,
            error_code=error.code,
        )

        if not failed_phase.mutates_system:
            self.log.info("No changes were made to the installation")
            return UpgradeOutcome.aborted(error.describe(), phase=failed_phase, code=error.code)

        self._enter(ctx, UpgradePhase.ROLLING_BACK)
        plan = RollbackPlan(
            reason=error.describe(),
            failed_phase=failed_phase,
            error_code=error.code,
            pre_state=ctx.pre_state,
            pre_run_files=ctx.pre_run_files,
            backup=ctx.backup,
            previous_version=ctx.previous_version,
            dry_run=ctx.request.dry_run,
        )
        return self.rollback(plan)

    def _discard_artifact(self, ctx: _RunContext) -> None:
        if ctx.artifact is None or ctx.request.keep_artifact:
            return
        try:
            self.installer.discard_artifact(ctx.artifact)
        except OSError:
            self.log.exception("Failed removing downloaded bundle %s", ctx.artifact.path)


__all__ = ["UpgradeOrchestrator"]
