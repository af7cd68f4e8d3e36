"""Run configuration carried as one explicit value through every component.

Paths and identities can be overridden from the environment using the same
variable names as the legacy shell tooling, so existing deployments keep
working unchanged.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .naming import DEFAULT_DOWNLOAD_BASE_URL

ENV_WORKDIR = "SONATYPE_WORKDIR"
ENV_ARCHIVEDIR = "SONATYPE_ARCHIVEDIR"
ENV_LOGDIR = "SONATYPE_LOGDIR"
ENV_USER = "SONATYPE_USER"
ENV_GROUP = "SONATYPE_GROUP"
ENV_HEALTH_URL = "SONATYPE_HEALTH_URL"

DEFAULT_WORKDIR = "/opt/nexus-iq-server"
DEFAULT_ARCHIVEDIR = "/opt/nexus-iq-server/Archive"
DEFAULT_LOGDIR = "/var/log/sonatype-upgrades"
DEFAULT_USER = "nexus"
DEFAULT_GROUP = "users"
DEFAULT_HEALTH_URL = "http://localhost:8070/healthcheck"

SERVICE_NAME = "nexusiq.service"
POINTER_FILENAME = ".last_backup"
LOCK_FILENAME = ".iq-upgrade.lock"
MIN_ARTIFACT_BYTES = 50 * 1024 * 1024


@dataclass(frozen=True)
class UpgradeSettings:
    """Paths, identities, and bounded-wait limits for one upgrade run.

    Attributes:
        work_dir: Directory holding the installed jar.
        archive_dir: Root for ``backup_<timestamp>`` directories.
        log_dir: Directory for per-invocation run and audit logs.
        service_name: systemd unit controlling the server.
        service_user: Owner applied to installed files.
        service_group: Group applied to installed files.
        health_url: Liveness endpoint polled after start.
        download_base_url: Upstream location of release bundles.
        download_timeout_s: Per-attempt transfer timeout.
        fetch_attempts: Download attempts before giving up.
        fetch_retry_delay_s: Wait between download attempts.
        min_artifact_bytes: Smallest bundle accepted by integrity checks.
        health_retries: Health probes before declaring failure.
        health_interval_s: Wait between health probes.
        health_timeout_s: Timeout of a single health probe.
        stop_timeout_s: Ceiling for the service to settle after stop.
        stop_poll_interval_s: Interval between settle checks.
        command_timeout_s: Timeout for a single systemctl invocation.
        backup_retention: Maximum number of backups kept in the archive.
        required_free_mb: Free space required in ``work_dir``.
    """

    work_dir: Path = Path(DEFAULT_WORKDIR)
    archive_dir: Path = Path(DEFAULT_ARCHIVEDIR)
    log_dir: Path = Path(DEFAULT_LOGDIR)
    service_name: str = SERVICE_NAME
    service_user: str = DEFAULT_USER
    service_group: str = DEFAULT_GROUP
    health_url: str = DEFAULT_HEALTH_URL
    download_base_url: str = DEFAULT_DOWNLOAD_BASE_URL
    download_timeout_s: int = 300
    fetch_attempts: int = 3
    fetch_retry_delay_s: float = 5.0
    min_artifact_bytes: int = MIN_ARTIFACT_BYTES
    health_retries: int = 30
    health_interval_s: float = 10.0
    health_timeout_s: int = 10
    stop_timeout_s: float = 30.0
    stop_poll_interval_s: float = 1.0
    command_timeout_s: int = 90
    backup_retention: int = 5
    required_free_mb: int = 500

    @property
    def pointer_path(self) -> Path:
        """File recording the most recent backup directory."""
        return self.work_dir / POINTER_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.work_dir / LOCK_FILENAME

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "UpgradeSettings":
        """Build settings from environment overrides on top of the defaults."""
        env = os.environ if environ is None else environ

        def _value(name: str, default: str) -> str:
            raw = env.get(name)
            text = raw.strip() if raw else ""
            return text or default

        return cls(
            work_dir=Path(_value(ENV_WORKDIR, DEFAULT_WORKDIR)).expanduser(),
            archive_dir=Path(_value(ENV_ARCHIVEDIR, DEFAULT_ARCHIVEDIR)).expanduser(),
            log_dir=Path(_value(ENV_LOGDIR, DEFAULT_LOGDIR)).expanduser(),
            service_user=_value(ENV_USER, DEFAULT_USER),
            service_group=_value(ENV_GROUP, DEFAULT_GROUP),
            health_url=_value(ENV_HEALTH_URL, DEFAULT_HEALTH_URL),
        )


__all__ = [
    "ENV_ARCHIVEDIR",
    "ENV_GROUP",
    "ENV_HEALTH_URL",
    "ENV_LOGDIR",
    "ENV_USER",
    "ENV_WORKDIR",
    "MIN_ARTIFACT_BYTES",
    "SERVICE_NAME",
    "UpgradeSettings",
]
