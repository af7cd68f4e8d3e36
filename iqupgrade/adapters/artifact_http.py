"""HTTP adapter implementing the artifact fetch and integrity contracts."""

from __future__ import annotations

import gzip
import logging
import time
import zlib
from pathlib import Path
from typing import Optional, Protocol

from iqupgrade.adapters.transport_errors import TransportError
from iqupgrade.domain.entities import Artifact, VerifyReport
from iqupgrade.domain.errors import FetchError
from iqupgrade.domain.naming import DEFAULT_DOWNLOAD_BASE_URL, artifact_url, bundle_filename
from iqupgrade.domain.retry import RetryPolicy, SleepFn
from iqupgrade.domain.settings import MIN_ARTIFACT_BYTES

_MIB = 1024 * 1024
_GZIP_READ_CHUNK = 1024 * 1024


class DownloadSession(Protocol):
    def download(self, url: str, target: Path, *, timeout: Optional[float] = None) -> int: ...


class HttpArtifactFetcher:
    """Download release bundles with bounded retries and verify them."""

    def __init__(
        self,
        session: DownloadSession,
        *,
        base_url: str = DEFAULT_DOWNLOAD_BASE_URL,
        timeout_s: float = 300,
        retry: Optional[RetryPolicy] = None,
        min_size_bytes: int = MIN_ARTIFACT_BYTES,
        dry_run: bool = False,
        sleep: SleepFn = time.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.session = session
        self.base_url = base_url
        self.timeout_s = timeout_s
        self.retry = retry or RetryPolicy(max_attempts=3, delay_s=5)
        self.min_size_bytes = int(min_size_bytes)
        self.dry_run = dry_run
        self._sleep = sleep
        self.log = logger or logging.getLogger(__name__)

    def fetch(self, version: str, destination_dir: Path) -> Artifact:
        """Download the bundle for ``version`` into ``destination_dir``.

        Raises:
            FetchError: After all transfer attempts failed, or when the
                downloaded file fails integrity verification. The output
                file is removed in both cases.
        """
        url = artifact_url(version, self.base_url)
        target = Path(destination_dir) / bundle_filename(version)
        self.log.info("Downloading version %s", version)
        self.log.info("URL: %s", url)

        if self.dry_run:
            self.log.info("[DRY RUN] Would download from: %s", url)
            return Artifact(url=url, path=target, integrity_ok=True, synthetic=True)

        target.unlink(missing_ok=True)

        def _attempt(attempt: int) -> int:
            self.log.info("Download attempt %d/%d...", attempt, self.retry.max_attempts)
            target.unlink(missing_ok=True)
            written = self.session.download(url, target, timeout=self.timeout_s)
            if not target.is_file() or target.stat().st_size == 0:
                self.log.error("Downloaded file is empty or missing")
                return 0
            return written or target.stat().st_size

        def _on_failure(attempt: int, exc: Optional[BaseException]) -> None:
            target.unlink(missing_ok=True)
            if exc is not None:
                self.log.warning("Download attempt %d failed: %s", attempt, exc)
            if attempt < self.retry.max_attempts:
                self.log.warning(
                    "Download failed. Retrying in %g seconds...", self.retry.delay_for(attempt)
                )

        result = self.retry.run(
            _attempt,
            succeeded=lambda written: bool(written),
            retry_on=(TransportError, OSError),
            sleep=self._sleep,
            on_failure=_on_failure,
        )
        if not result.ok:
            target.unlink(missing_ok=True)
            self.log.error("Download failed after %d attempts", result.attempts)
            raise FetchError(
                "fetch.transfer_failed",
                f"Download failed after {result.attempts} attempts",
                str(result.error or url),
            )

        size = target.stat().st_size
        self.log.info("Download completed. Size: %dMB", size // _MIB)
        artifact = Artifact(url=url, path=target, size_bytes=size)

        report = self.verify(artifact)
        if not report.ok:
            target.unlink(missing_ok=True)
            raise FetchError(
                f"fetch.verify_{report.failed_check}",
                "Download verification failed",
                report.message,
            )
        return Artifact(url=url, path=target, size_bytes=report.size_bytes, integrity_ok=True)

    def verify(self, artifact: Artifact) -> VerifyReport:
        """Run the integrity checks in order, stopping at the first failure."""
        self.log.info("Verifying downloaded file...")
        if self.dry_run or artifact.synthetic:
            self.log.info("[DRY RUN] Would verify: %s", artifact.path)
            return VerifyReport(ok=True)

        path = Path(artifact.path)
        if not path.is_file():
            return self._failed("exists", f"Download file not found: {path}")
        size = path.stat().st_size
        if size == 0:
            return self._failed("non_empty", f"Download file is empty: {path}")
        if size < self.min_size_bytes:
            return self._failed(
                "min_size",
                f"Download file is too small ({size} bytes). "
                f"Expected at least {self.min_size_bytes} bytes.",
                size,
            )
        try:
            with gzip.open(path, "rb") as stream:
                while stream.read(_GZIP_READ_CHUNK):
                    pass
        except (OSError, EOFError, zlib.error) as exc:
            return self._failed("gzip", f"Download file is not a valid gzip archive: {exc}", size)

        self.log.info("Download verification passed. File size: %dMB", size // _MIB)
        return VerifyReport(ok=True, size_bytes=size)

    def _failed(self, check: str, message: str, size: int = 0) -> VerifyReport:
        self.log.error(message)
        return VerifyReport(ok=False, failed_check=check, message=message, size_bytes=size)


__all__ = ["HttpArtifactFetcher"]
