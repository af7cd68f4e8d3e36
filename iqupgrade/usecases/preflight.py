"""Use case for host pre-flight checks run before any upgrade step."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

from iqupgrade.domain.errors import ValidationError
from iqupgrade.domain.ports import HostPort
from iqupgrade.domain.settings import UpgradeSettings

_MB = 1024 * 1024


@dataclass
class RunPreflightChecks:
    """Use-case callable verifying the host can run an upgrade.

    Attributes:
        host: Read-only host facts.
        required_commands: Executables that must be on ``PATH``.
        logger: Optional logger override.
    """

    host: HostPort
    required_commands: Tuple[str, ...] = ("systemctl",)
    logger: Optional[logging.Logger] = field(default=None, repr=False)

    def __call__(self, settings: UpgradeSettings) -> int:
        """Run every check in order.

        Args:
            settings: Run configuration supplying paths and thresholds.

        Returns:
            int: Free megabytes observed on the working directory.

        Raises:
            ValidationError: On the first unmet requirement.
        """
        log = self.logger or logging.getLogger(__name__)

        if not self.host.is_root():
            raise ValidationError(
                "preflight.not_root",
                "This tool must be run as root or with sudo",
            )

        missing = [name for name in self.required_commands if not self.host.has_command(name)]
        if missing:
            raise ValidationError(
                "preflight.missing_dependencies",
                "Missing required dependencies",
                " ".join(missing),
            )
        log.info("All required dependencies found")

        if not settings.work_dir.is_dir():
            raise ValidationError(
                "preflight.workdir_missing",
                "Working directory not found",
                str(settings.work_dir),
            )

        available_mb = self.host.free_bytes(settings.work_dir) // _MB
        if available_mb < settings.required_free_mb:
            raise ValidationError(
                "preflight.disk_space",
                "Insufficient disk space",
                f"Required: {settings.required_free_mb}MB, Available: {available_mb}MB",
            )
        log.info("Disk space check passed: %dMB available", available_mb)
        return available_mb


__all__ = ["RunPreflightChecks"]
