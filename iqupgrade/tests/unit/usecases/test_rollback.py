from datetime import datetime
from pathlib import Path

from iqupgrade.adapters.audit_jsonl import JsonlAuditLog
from iqupgrade.domain.entities import (
    BackupRecord,
    CommandResult,
    OutcomeKind,
    ServiceState,
    UpgradePhase,
)
from iqupgrade.domain.errors import BackupError
from iqupgrade.usecases.rollback import RollbackPlan, RollbackUpgrade

_RECORD = BackupRecord(
    path=Path("/archive/backup_20240601_100000"),
    created_at=datetime(2024, 6, 1, 10, 0, 0),
    files=("nexus-iq-server-1.191.0-01.jar",),
)


class _ServiceStub:
    def __init__(self, active=True, start_ok=True, stop_raises=False):
        self.active = active
        self.start_ok = start_ok
        self.stop_raises = stop_raises
        self.calls = []

    def state(self):
        return ServiceState.ACTIVE if self.active else ServiceState.INACTIVE

    def is_active(self):
        return self.active

    def stop(self):
        self.calls.append("stop")
        if self.stop_raises:
            raise RuntimeError("dbus unavailable")
        self.active = False
        return CommandResult.success()

    def start(self):
        self.calls.append("start")
        if not self.start_ok:
            return CommandResult.failure("service.start_failed", "unit failed")
        self.active = True
        return CommandResult.success()

    def wait_until_stopped(self, timeout_s):
        return True


class _ArchiveStub:
    def __init__(self, latest=_RECORD, restore_error=None):
        self._latest = latest
        self.restore_error = restore_error
        self.restored = []

    def latest(self):
        return self._latest

    def restore(self, record, target_dir):
        if self.restore_error is not None:
            raise self.restore_error
        self.restored.append((record, target_dir))
        return [Path(target_dir) / name for name in record.files]


class _InstallerStub:
    def __init__(self):
        self.keeps = []

    def remove_installed(self, keep=()):
        self.keeps.append(tuple(keep))
        return []


def _rollback(service=None, archive=None, installer=None):
    return RollbackUpgrade(
        service=service or _ServiceStub(),
        archive=archive or _ArchiveStub(),
        installer=installer or _InstallerStub(),
        audit=JsonlAuditLog(),
        work_dir=Path("/opt/nexus-iq-server"),
    )


def _plan(**overrides):
    values = dict(
        reason="Health check failed after 30 attempts",
        failed_phase=UpgradePhase.HEALTH_CHECKING,
        error_code="health.unhealthy",
        pre_state=ServiceState.ACTIVE,
        pre_run_files=("nexus-iq-server-1.191.0-01.jar",),
        backup=_RECORD,
        previous_version="1.191.0-01",
    )
    values.update(overrides)
    return RollbackPlan(**values)


def test_rollback_restores_backup_and_restarts():
    service = _ServiceStub(active=True)
    archive = _ArchiveStub()
    installer = _InstallerStub()

    outcome = _rollback(service, archive, installer)(_plan())

    assert outcome.kind is OutcomeKind.ROLLED_BACK
    assert outcome.version == "1.191.0-01"
    assert outcome.error_code == "health.unhealthy"
    assert service.calls == ["stop", "start"]
    assert installer.keeps == [()]
    assert archive.restored == [(_RECORD, Path("/opt/nexus-iq-server"))]


def test_without_backup_only_new_files_are_removed():
    installer = _InstallerStub()
    archive = _ArchiveStub()

    outcome = _rollback(installer=installer, archive=archive)(
        _plan(backup=None, pre_run_files=("custom.jar",))
    )

    assert outcome.kind is OutcomeKind.ROLLED_BACK
    assert installer.keeps == [("custom.jar",)]
    assert archive.restored == []


def test_service_left_stopped_when_it_was_inactive_before():
    service = _ServiceStub(active=True)

    outcome = _rollback(service)(_plan(pre_state=ServiceState.INACTIVE))

    assert outcome.kind is OutcomeKind.ROLLED_BACK
    assert service.calls == ["stop"]
    assert service.active is False


def test_unknown_pre_state_still_restarts():
    service = _ServiceStub(active=False)

    _rollback(service)(_plan(pre_state=ServiceState.UNKNOWN))

    assert service.calls == ["start"]


def test_stop_failure_does_not_block_rollback():
    service = _ServiceStub(active=True, stop_raises=True)
    archive = _ArchiveStub()

    outcome = _rollback(service, archive)(_plan())

    assert outcome.kind is OutcomeKind.ROLLED_BACK
    assert archive.restored


def test_restore_failure_is_fatal():
    archive = _ArchiveStub(restore_error=BackupError("backup.restore_failed", "Failed to restore x.jar"))

    outcome = _rollback(archive=archive)(_plan())

    assert outcome.kind is OutcomeKind.FATAL
    assert outcome.error_code == "rollback.restore_failed"
    assert "Health check failed" in outcome.reason


def test_restart_failure_is_fatal():
    outcome = _rollback(_ServiceStub(active=True, start_ok=False))(_plan())

    assert outcome.kind is OutcomeKind.FATAL
    assert outcome.error_code == "rollback.restart_failed"


def test_pointer_mismatch_is_fatal():
    other = BackupRecord(path=Path("/archive/backup_20200101_000000"), created_at=datetime(2020, 1, 1))

    outcome = _rollback(archive=_ArchiveStub(latest=other))(_plan())

    assert outcome.kind is OutcomeKind.FATAL
    assert outcome.error_code == "rollback.pointer_mismatch"


def test_dry_run_only_records_intent():
    service = _ServiceStub(active=True)
    installer = _InstallerStub()

    outcome = _rollback(service, installer=installer)(_plan(dry_run=True))

    assert outcome.kind is OutcomeKind.ROLLED_BACK
    assert service.calls == []
    assert installer.keeps == []


class _UnreadableArchiveStub(_ArchiveStub):
    def latest(self):
        raise PermissionError("[Errno 13] Permission denied: '/opt/nexus-iq-server/.last_backup'")


def test_unexpected_exception_during_rollback_is_fatal():
    service = _ServiceStub(active=True)
    audit = JsonlAuditLog()
    rollback = RollbackUpgrade(
        service=service,
        archive=_UnreadableArchiveStub(),
        installer=_InstallerStub(),
        audit=audit,
        work_dir=Path("/opt/nexus-iq-server"),
    )

    outcome = rollback(_plan())

    assert outcome.kind is OutcomeKind.FATAL
    assert outcome.exit_code == 3
    assert outcome.error_code == "rolling_back.unexpected_error"
    assert "PermissionError" in outcome.reason
    assert "start" not in service.calls
    failed = audit.events_named("rollback_failed")
    assert failed[0]["level"] == "critical"
    assert failed[0]["extra"]["triggering_error"] == "health.unhealthy"


def test_incomplete_backup_undo_is_fatal_without_restart():
    service = _ServiceStub(active=False)
    archive = _ArchiveStub()
    plan = _plan(
        reason="3 file(s) could not be returned after a failed backup",
        failed_phase=UpgradePhase.BACKING_UP,
        error_code="backup.undo_incomplete",
        backup=None,
    )

    outcome = _rollback(service, archive)(plan)

    assert outcome.kind is OutcomeKind.FATAL
    assert outcome.error_code == "rollback.backup_incomplete"
    assert service.calls == []
    assert archive.restored == []
