"""Exclusive per-installation lock so two upgrade runs never overlap."""

from __future__ import annotations

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from iqupgrade.domain.errors import ValidationError


@contextmanager
def exclusive_run_lock(lock_path: Path) -> Iterator[Path]:
    """Hold a non-blocking ``flock`` on ``lock_path`` for the ``with`` body.

    Raises:
        ValidationError: If another process already holds the lock or the
            lock file cannot be opened.
    """
    path = Path(lock_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = path.open("a+", encoding="utf-8")
    except OSError as exc:
        raise ValidationError("lock.unavailable", "Cannot open upgrade lock file", f"{path}: {exc}") from exc

    with handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            raise ValidationError(
                "lock.held",
                "Another upgrade is already running against this installation",
                f"Lock file: {path}",
            ) from exc
        try:
            handle.seek(0)
            handle.truncate()
            handle.write(f"{os.getpid()}\n")
            handle.flush()
            yield path
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


__all__ = ["exclusive_run_lock"]
