"""Read-only host facts consumed by pre-flight checks."""

from __future__ import annotations

import os
import shutil
from pathlib import Path


class LocalHost:
    """Answer pre-flight questions about the local machine."""

    def is_root(self) -> bool:
        geteuid = getattr(os, "geteuid", None)
        return bool(geteuid) and geteuid() == 0

    def has_command(self, name: str) -> bool:
        return shutil.which(name) is not None

    def free_bytes(self, path: Path) -> int:
        """Return free bytes on the filesystem holding ``path``."""
        return int(shutil.disk_usage(str(path)).free)


__all__ = ["LocalHost"]
