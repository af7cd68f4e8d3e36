"""HTTP adapter implementing the health-probe port."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional, Protocol

from iqupgrade.adapters.transport_errors import TransportError
from iqupgrade.domain.retry import RetryPolicy, SleepFn


class ProbeSession(Protocol):
    def get(self, url: str, *, timeout: Optional[float] = None) -> Any: ...


class HttpHealthProber:
    """Poll a liveness endpoint until it answers with a 2xx status."""

    def __init__(
        self,
        session: ProbeSession,
        *,
        timeout_s: float = 10,
        dry_run: bool = False,
        sleep: SleepFn = time.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.session = session
        self.timeout_s = timeout_s
        self.dry_run = dry_run
        self._sleep = sleep
        self.log = logger or logging.getLogger(__name__)

    def probe(self, url: str) -> bool:
        """Return ``True`` for a 2xx answer; any other outcome is unhealthy."""
        try:
            resp = self.session.get(url, timeout=self.timeout_s)
        except TransportError as exc:
            self.log.debug("Health probe transport error: %s", exc)
            return False
        status = int(getattr(resp, "status_code", 0) or 0)
        if 200 <= status < 300:
            return True
        self.log.debug("Health probe answered HTTP %s", status)
        return False

    def wait_healthy(self, url: str, retries: int = 30, interval_s: float = 10.0) -> bool:
        """Probe up to ``retries`` times, stopping at the first healthy answer."""
        self.log.info("Performing health check...")
        if self.dry_run:
            self.log.info("[DRY RUN] Would perform health check against %s", url)
            return True

        policy = RetryPolicy(max_attempts=max(1, int(retries)), delay_s=float(interval_s))

        def _on_failure(attempt: int, _exc: Optional[BaseException]) -> None:
            self.log.info("Health check attempt %d/%d...", attempt, policy.max_attempts)

        result = policy.run(
            lambda _attempt: self.probe(url),
            sleep=self._sleep,
            on_failure=_on_failure,
        )
        if result.ok:
            self.log.info("Health check passed")
            return True
        self.log.error("Health check failed after %d attempts", result.attempts)
        return False


__all__ = ["HttpHealthProber"]
