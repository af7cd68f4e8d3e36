"""Local filesystem archive of pre-upgrade snapshots.

Each backup is a flat ``backup_<timestamp>`` directory under the archive
root. A backup is staged in a hidden ``.backup_<timestamp>.partial``
directory and only renamed into place once every file has been moved, so a
published directory is always complete. The "latest" pointer file is
written after publication, atomically.

Only directories carrying the ``backup_`` tag are counted and evicted by
retention; anything else an operator keeps in the archive root is left
alone.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from iqupgrade.domain.entities import BackupRecord
from iqupgrade.domain.errors import BackupError
from iqupgrade.domain.naming import backup_dir_name, parse_backup_dir_name

_MAX_NAME_ATTEMPTS = 100


def _atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` via a temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise


class LocalArchiveStore:
    """Create, prune, list, and restore backups under one archive root."""

    def __init__(
        self,
        archive_root: Path,
        pointer_path: Path,
        *,
        retention: int = 5,
        dry_run: bool = False,
        clock: Callable[[], datetime] = datetime.now,
        move: Callable[[str, str], object] = shutil.move,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if int(retention) < 1:
            raise ValueError("retention must be >= 1")
        self.archive_root = Path(archive_root)
        self.pointer_path = Path(pointer_path)
        self.retention = int(retention)
        self.dry_run = dry_run
        self._clock = clock
        self._move = move
        self.log = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def create_backup(self, source_files: Sequence[Path]) -> Optional[BackupRecord]:
        """Move ``source_files`` into a new published backup directory.

        Returns:
            The published record, or ``None`` when there was nothing to back
            up (fresh install) or in dry-run mode.

        Raises:
            BackupError: If any move, the publish, or the pointer write fails.
                Files already moved are put back where they were and the
                backup directory is removed. If a file cannot be put back the
                code is ``backup.undo_incomplete``.
        """
        self.log.info("Creating backup of current installation...")
        files = [Path(item) for item in source_files]
        if self.dry_run:
            self.log.info("[DRY RUN] Would create backup in %s", self.archive_root)
            return None
        if not files:
            self.log.warning("No existing jar files found to backup")
            return None

        created_at = self._clock().replace(microsecond=0)
        try:
            self.archive_root.mkdir(parents=True, exist_ok=True)
            final_dir = self._free_backup_dir(created_at)
            staging_dir = self.archive_root / f".{final_dir.name}.partial"
            shutil.rmtree(staging_dir, ignore_errors=True)
            staging_dir.mkdir(parents=True)
        except OSError as exc:
            raise BackupError(
                "backup.archive_unavailable",
                "Could not prepare backup directory",
                str(exc),
            ) from exc

        moved: List[Tuple[Path, Path]] = []
        for source in files:
            destination = staging_dir / source.name
            try:
                self._move(str(source), str(destination))
            except OSError as exc:
                self.log.error("Failed to backup: %s", source.name)
                self._undo_or_raise(staging_dir, moved, exc)
                raise BackupError(
                    "backup.move_failed",
                    f"Failed to backup {source.name}",
                    str(exc),
                ) from exc
            moved.append((source, destination))
            self.log.info("Backed up: %s", source.name)

        try:
            os.replace(staging_dir, final_dir)
        except OSError as exc:
            self._undo_or_raise(staging_dir, moved, exc)
            raise BackupError(
                "backup.publish_failed",
                "Could not publish backup directory",
                str(exc),
            ) from exc

        record = BackupRecord(
            path=final_dir,
            created_at=created_at,
            files=tuple(sorted(source.name for source, _ in moved)),
        )
        try:
            _atomic_write_text(self.pointer_path, f"{final_dir}\n")
        except OSError as exc:
            published = [(original, final_dir / original.name) for original, _ in moved]
            self._undo_or_raise(final_dir, published, exc)
            raise BackupError(
                "backup.pointer_failed",
                "Rollback pointer could not be written; backup undone",
                str(exc),
            ) from exc
        self.log.info("Backup created: %s", final_dir)
        return record

    def prune_to_limit(self, limit: Optional[int] = None) -> List[Path]:
        """Delete the oldest tagged backups until at most ``limit`` remain."""
        keep = self.retention if limit is None else int(limit)
        records = self.list_records()
        excess = len(records) - keep
        if excess <= 0:
            return []
        doomed = [record.path for record in records[:excess]]
        if self.dry_run:
            self.log.info("[DRY RUN] Would remove %d old backup(s)", len(doomed))
            return []
        self.log.info("Cleaning old archives (keeping last %d)...", keep)
        for path in doomed:
            try:
                shutil.rmtree(path)
            except OSError as exc:
                raise BackupError(
                    "backup.prune_failed",
                    f"Failed to remove old backup {path.name}",
                    str(exc),
                ) from exc
            self.log.info("Removed old backup: %s", path.name)
        return doomed

    def restore(self, record: BackupRecord, target_dir: Path) -> List[Path]:
        """Move every file of ``record`` back into ``target_dir``.

        The emptied record directory is removed and the pointer cleared so
        nothing refers to a consumed backup afterwards.

        Raises:
            BackupError: If the record directory is missing or a move fails.
        """
        if self.dry_run:
            self.log.info("[DRY RUN] Would restore %s", record.path)
            return []
        source_dir = Path(record.path)
        if not source_dir.is_dir():
            raise BackupError(
                "backup.record_missing",
                "Backup directory not found",
                str(source_dir),
            )
        target = Path(target_dir)
        try:
            entries = sorted(source_dir.iterdir())
        except OSError as exc:
            raise BackupError(
                "backup.restore_failed",
                "Cannot read backup directory",
                str(exc),
            ) from exc
        restored: List[Path] = []
        for entry in entries:
            destination = target / entry.name
            try:
                self._move(str(entry), str(destination))
            except OSError as exc:
                raise BackupError(
                    "backup.restore_failed",
                    f"Failed to restore {entry.name}",
                    str(exc),
                ) from exc
            restored.append(destination)
            self.log.info("Restored: %s", entry.name)

        try:
            source_dir.rmdir()
        except OSError as exc:
            self.log.warning("Could not remove emptied backup %s: %s", source_dir, exc)
        try:
            if self._pointer_target() == source_dir:
                self.pointer_path.unlink(missing_ok=True)
        except OSError as exc:
            self.log.warning("Could not clear backup pointer %s: %s", self.pointer_path, exc)
        return restored

    def latest(self) -> Optional[BackupRecord]:
        """Return the record named by the pointer file, if it still exists."""
        target = self._pointer_target()
        if target is None or not target.is_dir():
            return None
        return self._record_for(target)

    def list_records(self) -> List[BackupRecord]:
        """Return tagged backups, oldest first."""
        if not self.archive_root.is_dir():
            return []
        records = []
        for entry in sorted(self.archive_root.iterdir(), key=lambda item: item.name):
            if entry.is_dir() and parse_backup_dir_name(entry.name) is not None:
                records.append(self._record_for(entry))
        return records

    # ------------------------------------------------------------------
    def _free_backup_dir(self, created_at: datetime) -> Path:
        for attempt in range(_MAX_NAME_ATTEMPTS):
            candidate = self.archive_root / backup_dir_name(created_at, attempt)
            if not candidate.exists():
                return candidate
        raise BackupError(
            "backup.name_exhausted",
            "Could not allocate a unique backup directory name",
            str(self.archive_root),
        )

    def _undo_or_raise(
        self,
        holding_dir: Path,
        moved: List[Tuple[Path, Path]],
        cause: OSError,
    ) -> None:
        """Put moved files back, then drop ``holding_dir``.

        ``holding_dir`` is kept if any file could not be returned, so no file
        is ever deleted by a failed backup. In that case the installation is
        incomplete and ``backup.undo_incomplete`` is raised instead of the
        caller's own error.
        """
        stranded = 0
        for original, held in reversed(moved):
            try:
                self._move(str(held), str(original))
                self.log.info("Returned %s to %s", original.name, original.parent)
            except OSError:
                stranded += 1
                self.log.exception(
                    "Could not return %s to %s; it remains at %s",
                    original.name,
                    original.parent,
                    held,
                )
        if stranded:
            self.log.error("Partial backup left in %s for manual recovery", holding_dir)
            raise BackupError(
                "backup.undo_incomplete",
                f"{stranded} file(s) could not be returned after a failed backup",
                f"Recover them from {holding_dir}; cause: {cause}",
            ) from cause
        shutil.rmtree(holding_dir, ignore_errors=True)

    def _pointer_target(self) -> Optional[Path]:
        try:
            text = self.pointer_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return Path(text) if text else None

    @staticmethod
    def _record_for(path: Path) -> BackupRecord:
        created_at = parse_backup_dir_name(path.name)
        if created_at is None:
            created_at = datetime.fromtimestamp(path.stat().st_mtime)
        files = tuple(sorted(entry.name for entry in path.iterdir() if entry.is_file()))
        return BackupRecord(path=path, created_at=created_at, files=files)


__all__ = ["LocalArchiveStore"]
