"""Local installer: extract the product jar into the working directory.

Only top-level ``nexus-iq-server*.jar`` members of the bundle are installed.
Each jar is written to a hidden temp name and renamed into place, so a
failed extraction never leaves a truncated jar under its final name.
"""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, List, Optional

from iqupgrade.domain.entities import Artifact, InstalledRelease
from iqupgrade.domain.errors import InstallError
from iqupgrade.domain.naming import (
    JAR_GLOB,
    is_bundle_jar_member,
    parse_jar_token,
    parse_jar_version,
)

ChownFn = Callable[..., None]


class TarballInstaller:
    """Install, inspect, and remove product jars in one working directory."""

    def __init__(
        self,
        work_dir: Path,
        *,
        keep_artifact: bool = False,
        dry_run: bool = False,
        chown: ChownFn = shutil.chown,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.work_dir = Path(work_dir)
        self.keep_artifact = keep_artifact
        self.dry_run = dry_run
        self._chown = chown
        self.log = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def installed_files(self) -> List[Path]:
        """Return installed product jars, sorted by name."""
        if not self.work_dir.is_dir():
            return []
        return sorted(path for path in self.work_dir.glob(JAR_GLOB) if path.is_file())

    def current_release(self) -> Optional[InstalledRelease]:
        """Describe the installed release, or ``None`` when nothing is installed."""
        files = self.installed_files()
        if not files:
            return None
        primary = files[0]
        try:
            owner, group = primary.owner(), primary.group()
        except (KeyError, OSError, NotImplementedError):
            owner, group = "unknown", "unknown"
        return InstalledRelease(
            version=parse_jar_version(primary.name) or "unknown",
            token=parse_jar_token(primary.name),
            files=tuple(files),
            owner=owner,
            group=group,
        )

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def install(self, artifact: Artifact) -> List[Path]:
        """Extract the bundle jars into the working directory.

        Returns:
            Paths of the installed jars.

        Raises:
            InstallError: If the bundle cannot be read, contains unsafe
                entries, or holds no product jar.

        Side Effects:
            Deletes the bundle after a successful extraction unless
            ``keep_artifact`` is set.
        """
        self.log.info("Extracting release package...")
        if self.dry_run or artifact.synthetic:
            self.log.info("[DRY RUN] Would extract: %s", artifact.path)
            return []

        bundle = Path(artifact.path)
        if not bundle.is_file():
            raise InstallError("install.bundle_missing", "Tar file not found", str(bundle))

        installed: List[Path] = []
        try:
            with tarfile.open(bundle, "r:gz") as archive:
                for member in archive.getmembers():
                    name = self._member_name(member)
                    if name is None:
                        continue
                    installed.append(self._extract_member(archive, member, name))
        except InstallError:
            raise
        except (tarfile.TarError, OSError, EOFError) as exc:
            raise InstallError("install.extract_failed", "Extraction failed", str(exc)) from exc

        if not installed:
            raise InstallError(
                "install.jar_missing",
                "JAR file not found after extraction",
                f"No {JAR_GLOB} entry in {bundle.name}",
            )
        self.log.info("Extraction completed")
        for path in installed:
            self.log.info("JAR file verified: %s", path.name)

        if self.keep_artifact:
            self.log.info("Keeping tar file as requested")
        else:
            bundle.unlink(missing_ok=True)
            self.log.info("Removed tar file")
        return installed

    def set_permissions(self, paths: Iterable[Path], user: str, group: str) -> None:
        """Hand installed files to the service account."""
        self.log.info("Setting file permissions...")
        if self.dry_run:
            self.log.info("[DRY RUN] Would set ownership to %s:%s", user, group)
            return
        targets = [Path(path) for path in paths] or self.installed_files()
        for path in targets:
            try:
                self._chown(path, user=user, group=group)
            except (LookupError, OSError) as exc:
                raise InstallError(
                    "install.permissions_failed",
                    "Failed to set permissions",
                    f"{path.name}: {exc}",
                ) from exc
        self.log.info("Permissions set successfully")

    def remove_installed(self, keep: Iterable[str] = ()) -> List[Path]:
        """Delete product jars except those whose names are in ``keep``."""
        if self.dry_run:
            self.log.info("[DRY RUN] Would remove installed jars from %s", self.work_dir)
            return []
        kept = set(keep)
        removed: List[Path] = []
        for path in self.installed_files():
            if path.name in kept:
                continue
            path.unlink(missing_ok=True)
            removed.append(path)
            self.log.info("Removed failed installation file: %s", path.name)
        for stray in self.work_dir.glob(".*.incoming"):
            stray.unlink(missing_ok=True)
        return removed

    def discard_artifact(self, artifact: Artifact) -> None:
        """Delete the downloaded bundle unless retention was requested."""
        if self.dry_run or artifact.synthetic or self.keep_artifact:
            return
        path = Path(artifact.path)
        if path.exists():
            path.unlink(missing_ok=True)
            self.log.info("Removed downloaded bundle: %s", path.name)

    # ------------------------------------------------------------------
    @staticmethod
    def _member_name(member: tarfile.TarInfo) -> Optional[str]:
        """Return the install name for a top-level jar member, else ``None``.

        Nested, absolute, and parent-relative entries are never installed.
        """
        pure = PurePosixPath(member.name.replace("\\", "/"))
        if pure.is_absolute():
            return None
        parts = [part for part in pure.parts if part not in ("", ".")]
        if len(parts) != 1 or not is_bundle_jar_member(parts[0]):
            return None
        if member.issym() or member.islnk():
            raise InstallError("install.unsafe_entry", "Bundle jar entry is a link", member.name)
        if not member.isfile():
            return None
        return parts[0]

    def _extract_member(self, archive: tarfile.TarFile, member: tarfile.TarInfo, name: str) -> Path:
        target = self.work_dir / name
        incoming = self.work_dir / f".{name}.incoming"
        source = archive.extractfile(member)
        if source is None:
            raise InstallError("install.extract_failed", "Could not read bundle entry", member.name)
        try:
            with source, incoming.open("wb") as handle:
                shutil.copyfileobj(source, handle)
            os.replace(incoming, target)
        finally:
            incoming.unlink(missing_ok=True)
        return target


__all__ = ["TarballInstaller"]
