from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, List, Optional, Protocol, Sequence

from .entities import (
    Artifact,
    BackupRecord,
    CommandResult,
    InstalledRelease,
    ServiceState,
    VerifyReport,
)


# ---- Ports (Hexagonal boundaries) ----
class ArtifactPort(Protocol):
    """Download and integrity-check release bundles.

    ``fetch`` raises ``FetchError``; it never writes outside
    ``destination_dir``.
    """

    def fetch(self, version: str, destination_dir: Path) -> Artifact: ...
    def verify(self, artifact: Artifact) -> VerifyReport: ...


class ServicePort(Protocol):
    """Start/stop/status operations against the managed service."""

    def state(self) -> ServiceState: ...
    def is_active(self) -> bool: ...
    def stop(self) -> CommandResult: ...
    def start(self) -> CommandResult: ...
    def wait_until_stopped(self, timeout_s: float) -> bool: ...


class ArchivePort(Protocol):
    """Bounded history of backups used as rollback material.

    ``create_backup``/``restore``/``prune_to_limit`` raise ``BackupError``.
    """

    def create_backup(self, source_files: Sequence[Path]) -> Optional[BackupRecord]: ...
    def prune_to_limit(self, limit: Optional[int] = None) -> List[Path]: ...
    def restore(self, record: BackupRecord, target_dir: Path) -> List[Path]: ...
    def latest(self) -> Optional[BackupRecord]: ...
    def list_records(self) -> List[BackupRecord]: ...


class InstallerPort(Protocol):
    """Install step against the live working directory.

    ``install``/``set_permissions`` raise ``InstallError``.
    """

    def installed_files(self) -> List[Path]: ...
    def current_release(self) -> Optional[InstalledRelease]: ...
    def install(self, artifact: Artifact) -> List[Path]: ...
    def set_permissions(self, paths: Iterable[Path], user: str, group: str) -> None: ...
    def remove_installed(self, keep: Iterable[str] = ()) -> List[Path]: ...
    def discard_artifact(self, artifact: Artifact) -> None: ...


class HealthPort(Protocol):
    """Liveness probing of the started service."""

    def probe(self, url: str) -> bool: ...
    def wait_healthy(self, url: str, retries: int = 30, interval_s: float = 10.0) -> bool: ...


class AuditPort(Protocol):
    """Append-only record of every decision and outcome."""

    def record(self, event: str, message: str, *, level: str = "info", **extra: Any) -> None: ...


class HostPort(Protocol):
    """Read-only host facts used by pre-flight checks."""

    def is_root(self) -> bool: ...
    def has_command(self, name: str) -> bool: ...
    def free_bytes(self, path: Path) -> int: ...


__all__ = [
    "ArchivePort",
    "ArtifactPort",
    "AuditPort",
    "HealthPort",
    "HostPort",
    "InstallerPort",
    "ServicePort",
]
