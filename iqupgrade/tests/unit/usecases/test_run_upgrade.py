import io
import shutil
import tarfile
from datetime import datetime, timedelta
from pathlib import Path

from iqupgrade.adapters.archive_local import LocalArchiveStore
from iqupgrade.adapters.audit_jsonl import JsonlAuditLog
from iqupgrade.adapters.installer_local import TarballInstaller
from iqupgrade.domain.entities import (
    Artifact,
    CommandResult,
    OutcomeKind,
    ServiceState,
    UpgradePhase,
    UpgradeRequest,
    VerifyReport,
)
from iqupgrade.domain.errors import FetchError
from iqupgrade.domain.naming import artifact_url, bundle_filename
from iqupgrade.domain.settings import UpgradeSettings
from iqupgrade.usecases.run_upgrade import UpgradeOrchestrator


def _jar(version: str) -> str:
    return f"nexus-iq-server-1.{version}.0-01.jar"


class _FakeFetcher:
    """Writes a real bundle into the destination, or fails like the HTTP adapter."""

    def __init__(self, jar_version=None, fail=False, dry_run=False):
        self.jar_version = jar_version
        self.fail = fail
        self.dry_run = dry_run
        self.calls = []

    def fetch(self, version, destination_dir):
        self.calls.append(version)
        target = Path(destination_dir) / bundle_filename(version)
        if self.dry_run:
            return Artifact(url=artifact_url(version), path=target, integrity_ok=True, synthetic=True)
        if self.fail:
            raise FetchError("fetch.transfer_failed", "Download failed after 3 attempts")
        jar = _jar(self.jar_version or version).encode()
        with tarfile.open(target, "w:gz") as archive:
            info = tarfile.TarInfo(_jar(self.jar_version or version))
            info.size = len(jar)
            archive.addfile(info, io.BytesIO(jar))
        return Artifact(url=artifact_url(version), path=target, size_bytes=target.stat().st_size, integrity_ok=True)

    def verify(self, artifact):
        return VerifyReport(ok=True)


class _FakeService:
    def __init__(self, active=True, start_ok=True, stop_ok=True, dry_run=False):
        self.active = active
        self.start_ok = start_ok
        self.stop_ok = stop_ok
        self.dry_run = dry_run
        self.calls = []

    def state(self):
        return ServiceState.ACTIVE if self.active else ServiceState.INACTIVE

    def is_active(self):
        return self.active

    def stop(self):
        self.calls.append("stop")
        if self.dry_run:
            return CommandResult.success("dry run")
        if not self.stop_ok:
            return CommandResult.failure("service.stop_rejected", "refused")
        self.active = False
        return CommandResult.success("stopped")

    def start(self):
        self.calls.append("start")
        if self.dry_run:
            return CommandResult.success("dry run")
        if not self.start_ok:
            return CommandResult.failure("service.start_failed", "unit failed")
        self.active = True
        return CommandResult.success("started")

    def wait_until_stopped(self, timeout_s):
        return not self.active


class _FakeProber:
    def __init__(self, healthy=True):
        self.healthy = healthy
        self.calls = []

    def probe(self, url):
        return self.healthy

    def wait_healthy(self, url, retries=30, interval_s=10.0):
        self.calls.append((url, retries, interval_s))
        return self.healthy


class _Clock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 10, 0, 0)

    def __call__(self):
        value = self.now
        self.now += timedelta(seconds=1)
        return value


class _Chown:
    def __call__(self, path, user=None, group=None):
        return None


def _settings(tmp_path: Path) -> UpgradeSettings:
    work = tmp_path / "iq"
    work.mkdir(exist_ok=True)
    return UpgradeSettings(
        work_dir=work,
        archive_dir=tmp_path / "archive",
        log_dir=tmp_path / "logs",
        health_retries=3,
        health_interval_s=0.0,
    )


def _orchestrator(tmp_path, *, fetcher, service, prober, request):
    settings = _settings(tmp_path)
    archive = LocalArchiveStore(
        settings.archive_dir,
        settings.pointer_path,
        retention=settings.backup_retention,
        dry_run=request.dry_run,
        clock=_Clock(),
    )
    installer = TarballInstaller(
        settings.work_dir,
        keep_artifact=request.keep_artifact,
        dry_run=request.dry_run,
        chown=_Chown(),
    )
    audit = JsonlAuditLog()
    orchestrator = UpgradeOrchestrator(
        settings,
        fetcher=fetcher,
        service=service,
        archive=archive,
        installer=installer,
        prober=prober,
        audit=audit,
    )
    return orchestrator, settings, audit


def _snapshot(root: Path):
    return sorted(
        (str(path.relative_to(root)), path.read_bytes() if path.is_file() else None)
        for path in root.rglob("*")
    )


def test_fresh_install_succeeds(tmp_path):
    request = UpgradeRequest.create("191")
    service = _FakeService(active=False)
    orchestrator, settings, audit = _orchestrator(
        tmp_path, fetcher=_FakeFetcher(), service=service, prober=_FakeProber(), request=request
    )

    outcome = orchestrator.run(request)

    assert outcome.kind is OutcomeKind.SUCCESS
    assert outcome.exit_code == 0
    assert outcome.version == "1.191.0-01"
    assert outcome.previous_version == "none"
    assert outcome.backup is None
    assert (settings.work_dir / _jar("191")).exists()
    assert not (settings.work_dir / bundle_filename("191")).exists()
    assert service.active is True
    assert audit.events_named("run_finished")[0]["extra"]["outcome"] == "success"


def test_upgrade_with_existing_release_backs_up_and_prunes(tmp_path):
    settings = _settings(tmp_path)
    (settings.work_dir / _jar("190")).write_bytes(b"old")
    for day in range(1, 7):
        (settings.archive_dir / f"backup_202401{day:02d}_000000").mkdir(parents=True)
    request = UpgradeRequest.create("191", keep_artifact=True)
    orchestrator, settings, audit = _orchestrator(
        tmp_path, fetcher=_FakeFetcher(), service=_FakeService(), prober=_FakeProber(), request=request
    )

    outcome = orchestrator.run(request)

    assert outcome.succeeded
    assert outcome.previous_version == "1.190.0-01"
    assert outcome.backup.files == (_jar("190"),)
    assert sorted(p.name for p in settings.work_dir.glob("*.jar")) == [_jar("191")]
    assert len([p for p in settings.archive_dir.iterdir() if p.name.startswith("backup_")]) == 5
    assert (settings.work_dir / bundle_filename("191")).exists()
    assert audit.events_named("backups_pruned")


def test_unhealthy_upgrade_rolls_back_to_previous_release(tmp_path):
    settings = _settings(tmp_path)
    (settings.work_dir / _jar("191")).write_bytes(b"old release")
    service = _FakeService(active=True)
    prober = _FakeProber(healthy=False)
    request = UpgradeRequest.create("192")
    orchestrator, settings, audit = _orchestrator(
        tmp_path, fetcher=_FakeFetcher(), service=service, prober=prober, request=request
    )

    outcome = orchestrator.run(request)

    assert outcome.kind is OutcomeKind.ROLLED_BACK
    assert outcome.exit_code == 2
    assert outcome.failed_phase is UpgradePhase.HEALTH_CHECKING
    assert outcome.error_code == "health.unhealthy"
    assert outcome.version == "1.191.0-01"
    assert sorted(p.name for p in settings.work_dir.glob("*.jar")) == [_jar("191")]
    assert (settings.work_dir / _jar("191")).read_bytes() == b"old release"
    assert service.active is True
    assert service.calls == ["stop", "start", "stop", "start"]
    assert prober.calls == [("http://localhost:8070/healthcheck", 3, 0.0)]
    assert not settings.pointer_path.exists()
    assert not (settings.work_dir / bundle_filename("192")).exists()
    assert audit.events_named("rollback_done")


def test_fetch_failure_aborts_without_touching_anything(tmp_path):
    settings = _settings(tmp_path)
    (settings.work_dir / _jar("190")).write_bytes(b"old")
    before = _snapshot(settings.work_dir)
    service = _FakeService(active=True)
    request = UpgradeRequest.create("191")
    orchestrator, settings, _ = _orchestrator(
        tmp_path, fetcher=_FakeFetcher(fail=True), service=service, prober=_FakeProber(), request=request
    )

    outcome = orchestrator.run(request)

    assert outcome.kind is OutcomeKind.ABORTED
    assert outcome.exit_code == 1
    assert outcome.failed_phase is UpgradePhase.FETCHING
    assert outcome.error_code == "fetch.transfer_failed"
    assert service.calls == []
    assert _snapshot(settings.work_dir) == before
    assert not settings.archive_dir.exists()


def test_version_mismatch_rolls_back(tmp_path):
    settings = _settings(tmp_path)
    (settings.work_dir / _jar("190")).write_bytes(b"old")
    service = _FakeService(active=True)
    request = UpgradeRequest.create("191")
    orchestrator, settings, _ = _orchestrator(
        tmp_path,
        fetcher=_FakeFetcher(jar_version="189"),
        service=service,
        prober=_FakeProber(),
        request=request,
    )

    outcome = orchestrator.run(request)

    assert outcome.kind is OutcomeKind.ROLLED_BACK
    assert outcome.error_code == "install.version_mismatch"
    assert sorted(p.name for p in settings.work_dir.glob("*.jar")) == [_jar("190")]
    assert service.active is True


def test_start_failure_after_fresh_install_removes_new_jar(tmp_path):
    service = _FakeService(active=False, start_ok=False)
    request = UpgradeRequest.create("191")
    orchestrator, settings, _ = _orchestrator(
        tmp_path, fetcher=_FakeFetcher(), service=service, prober=_FakeProber(), request=request
    )

    outcome = orchestrator.run(request)

    assert outcome.kind is OutcomeKind.ROLLED_BACK
    assert outcome.failed_phase is UpgradePhase.STARTING
    assert list(settings.work_dir.glob("*.jar")) == []
    assert service.calls == ["stop", "start"]


def test_missing_backup_pointer_is_fatal(tmp_path):
    settings = _settings(tmp_path)
    (settings.work_dir / _jar("191")).write_bytes(b"old")
    request = UpgradeRequest.create("192")
    orchestrator, settings, audit = _orchestrator(
        tmp_path,
        fetcher=_FakeFetcher(),
        service=_FakeService(active=True),
        prober=_FakeProber(healthy=False),
        request=request,
    )
    orchestrator.archive.latest = lambda: None

    outcome = orchestrator.run(request)

    assert outcome.kind is OutcomeKind.FATAL
    assert outcome.exit_code == 3
    assert outcome.error_code == "rollback.pointer_missing"
    assert audit.events_named("rollback_failed")[0]["level"] == "critical"


def test_pointer_write_failure_rolls_back_to_previous_release(tmp_path, monkeypatch):
    settings = _settings(tmp_path)
    (settings.work_dir / _jar("191")).write_bytes(b"old release")
    service = _FakeService(active=True)
    request = UpgradeRequest.create("192")
    orchestrator, settings, audit = _orchestrator(
        tmp_path, fetcher=_FakeFetcher(), service=service, prober=_FakeProber(), request=request
    )

    def failing_write(path, content):
        raise OSError("disk full")

    monkeypatch.setattr("iqupgrade.adapters.archive_local._atomic_write_text", failing_write)

    outcome = orchestrator.run(request)

    assert outcome.kind is OutcomeKind.ROLLED_BACK
    assert outcome.exit_code == 2
    assert outcome.failed_phase is UpgradePhase.BACKING_UP
    assert outcome.error_code == "backup.pointer_failed"
    assert sorted(p.name for p in settings.work_dir.glob("*.jar")) == [_jar("191")]
    assert (settings.work_dir / _jar("191")).read_bytes() == b"old release"
    assert not [p for p in settings.archive_dir.iterdir() if p.name.startswith("backup_")]
    assert service.active is True
    assert service.calls == ["stop", "start"]
    assert audit.events_named("rollback_done")


def test_files_stranded_by_failed_backup_are_fatal(tmp_path):
    settings = _settings(tmp_path)
    (settings.work_dir / _jar("191")).write_bytes(b"old release")
    (settings.work_dir / "nexus-iq-server-1.191.0-01-extra.jar").write_bytes(b"old extra")
    service = _FakeService(active=True)
    request = UpgradeRequest.create("192")
    orchestrator, settings, audit = _orchestrator(
        tmp_path, fetcher=_FakeFetcher(), service=service, prober=_FakeProber(), request=request
    )
    moves = []

    def stuck_move(src, dst):
        moves.append((src, dst))
        if len(moves) in (2, 3):
            raise OSError("read-only file system")
        return shutil.move(src, dst)

    orchestrator.archive._move = stuck_move

    outcome = orchestrator.run(request)

    assert outcome.kind is OutcomeKind.FATAL
    assert outcome.exit_code == 3
    assert outcome.error_code == "rollback.backup_incomplete"
    assert service.calls == ["stop"]
    assert audit.events_named("rollback_failed")[0]["level"] == "critical"


def test_unreadable_pointer_during_rollback_is_fatal(tmp_path):
    settings = _settings(tmp_path)
    (settings.work_dir / _jar("191")).write_bytes(b"old")
    service = _FakeService(active=True)
    request = UpgradeRequest.create("192")
    orchestrator, settings, audit = _orchestrator(
        tmp_path,
        fetcher=_FakeFetcher(),
        service=service,
        prober=_FakeProber(healthy=False),
        request=request,
    )

    def unreadable_pointer():
        raise PermissionError("permission denied")

    orchestrator.archive.latest = unreadable_pointer

    outcome = orchestrator.run(request)

    assert outcome.kind is OutcomeKind.FATAL
    assert outcome.exit_code == 3
    assert outcome.error_code == "rolling_back.unexpected_error"
    assert audit.events_named("rollback_failed")
    assert audit.events_named("run_finished")[0]["extra"]["outcome"] == "fatal"


def test_dry_run_changes_nothing(tmp_path):
    settings = _settings(tmp_path)
    (settings.work_dir / _jar("190")).write_bytes(b"old")
    before = _snapshot(tmp_path)
    service = _FakeService(active=True, dry_run=True)
    request = UpgradeRequest.create("191", dry_run=True)
    orchestrator, settings, _ = _orchestrator(
        tmp_path,
        fetcher=_FakeFetcher(dry_run=True),
        service=service,
        prober=_FakeProber(),
        request=request,
    )

    outcome = orchestrator.run(request)

    assert outcome.succeeded
    assert _snapshot(tmp_path) == before
    assert service.active is True


def test_skip_health_check_never_probes(tmp_path):
    prober = _FakeProber(healthy=False)
    request = UpgradeRequest.create("191", skip_health_check=True)
    orchestrator, _, audit = _orchestrator(
        tmp_path, fetcher=_FakeFetcher(), service=_FakeService(), prober=prober, request=request
    )

    outcome = orchestrator.run(request)

    assert outcome.succeeded
    assert prober.calls == []
    assert audit.events_named("health_skipped")[0]["level"] == "warning"


def test_interrupt_during_install_rolls_back(tmp_path):
    settings = _settings(tmp_path)
    (settings.work_dir / _jar("190")).write_bytes(b"old")
    service = _FakeService(active=True)
    request = UpgradeRequest.create("191")
    orchestrator, settings, _ = _orchestrator(
        tmp_path, fetcher=_FakeFetcher(), service=service, prober=_FakeProber(), request=request
    )

    def interrupted_install(artifact):
        raise KeyboardInterrupt

    orchestrator.installer.install = interrupted_install

    outcome = orchestrator.run(request)

    assert outcome.kind is OutcomeKind.ROLLED_BACK
    assert outcome.interrupted is True
    assert outcome.error_code == "installing.interrupted"
    assert (settings.work_dir / _jar("190")).read_bytes() == b"old"
    assert service.active is True


def test_unexpected_error_before_stop_is_mapped_and_aborts(tmp_path):
    request = UpgradeRequest.create("191")
    fetcher = _FakeFetcher()

    def exploding_fetch(version, destination_dir):
        raise ValueError("bad mirror")

    fetcher.fetch = exploding_fetch
    orchestrator, _, _ = _orchestrator(
        tmp_path, fetcher=fetcher, service=_FakeService(), prober=_FakeProber(), request=request
    )

    outcome = orchestrator.run(request)

    assert outcome.kind is OutcomeKind.ABORTED
    assert outcome.error_code == "fetching.unexpected_error"
    assert "ValueError: bad mirror" in outcome.reason
