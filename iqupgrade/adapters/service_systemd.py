"""systemd adapter implementing the service-control port.

Every call returns a ``CommandResult`` or a plain value; command timeouts and
a missing ``systemctl`` binary are reported as failures, never raised.
"""

from __future__ import annotations

import logging
import subprocess
import time
from typing import Callable, Optional, Sequence

from iqupgrade.domain.entities import CommandResult, ServiceState
from iqupgrade.domain.retry import SleepFn

Runner = Callable[[Sequence[str], float], "subprocess.CompletedProcess[str]"]


def run_command(args: Sequence[str], timeout: float) -> "subprocess.CompletedProcess[str]":
    """Default runner: execute ``args`` and capture text output."""
    return subprocess.run(
        list(args),
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


class SystemdServiceController:
    """Start/stop/status operations for one systemd unit."""

    def __init__(
        self,
        service_name: str,
        *,
        dry_run: bool = False,
        stop_timeout_s: float = 30.0,
        poll_interval_s: float = 1.0,
        command_timeout_s: float = 90.0,
        runner: Runner = run_command,
        sleep: SleepFn = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.service_name = service_name
        self.dry_run = dry_run
        self.stop_timeout_s = float(stop_timeout_s)
        self.poll_interval_s = float(poll_interval_s)
        self.command_timeout_s = float(command_timeout_s)
        self._runner = runner
        self._sleep = sleep
        self._monotonic = monotonic
        self.log = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def state(self) -> ServiceState:
        """Return the observed unit state via ``systemctl is-active``."""
        completed = self._systemctl("is-active", "--quiet")
        if completed is None:
            return ServiceState.UNKNOWN
        return ServiceState.ACTIVE if completed.returncode == 0 else ServiceState.INACTIVE

    def is_active(self) -> bool:
        return self.state() is ServiceState.ACTIVE

    def stop(self) -> CommandResult:
        """Stop the unit and wait for it to settle."""
        self.log.info("Stopping %s...", self.service_name)
        if self.dry_run:
            self.log.info("[DRY RUN] Would stop %s", self.service_name)
            return CommandResult.success("dry run")

        if not self.is_active():
            self.log.warning("Service was not running")
            return CommandResult.success("already inactive")

        completed = self._systemctl("stop")
        if completed is None or completed.returncode != 0:
            detail = self._detail(completed)
            self.log.error("Failed to stop service: %s", detail)
            return CommandResult.failure("service.stop_rejected", f"systemctl stop failed: {detail}")

        if not self.wait_until_stopped(self.stop_timeout_s):
            self.log.error("Service did not stop within %g seconds", self.stop_timeout_s)
            return CommandResult.failure(
                "service.stop_timeout",
                f"Service did not stop within {self.stop_timeout_s:g} seconds",
            )
        self.log.info("Service stopped successfully")
        return CommandResult.success("stopped")

    def start(self) -> CommandResult:
        """Start the unit; readiness is left to the health prober."""
        self.log.info("Starting %s...", self.service_name)
        if self.dry_run:
            self.log.info("[DRY RUN] Would start %s", self.service_name)
            return CommandResult.success("dry run")

        completed = self._systemctl("start")
        if completed is None or completed.returncode != 0:
            detail = self._detail(completed)
            self.log.error("Failed to start service: %s", detail)
            return CommandResult.failure("service.start_failed", f"systemctl start failed: {detail}")
        self.log.info("Service started successfully")
        return CommandResult.success("started")

    def wait_until_stopped(self, timeout_s: float) -> bool:
        """Poll ``is_active`` every ``poll_interval_s`` up to ``timeout_s``."""
        deadline = self._monotonic() + float(timeout_s)
        while self.is_active():
            if self._monotonic() >= deadline:
                return False
            self._sleep(self.poll_interval_s)
        return True

    # ------------------------------------------------------------------
    def _systemctl(self, *args: str) -> Optional["subprocess.CompletedProcess[str]"]:
        command = ["systemctl", *args, self.service_name]
        try:
            return self._runner(command, self.command_timeout_s)
        except subprocess.TimeoutExpired:
            self.log.error("Command timed out after %gs: %s", self.command_timeout_s, " ".join(command))
            return None
        except OSError as exc:
            self.log.error("Command could not be executed: %s (%s)", " ".join(command), exc)
            return None

    @staticmethod
    def _detail(completed: Optional["subprocess.CompletedProcess[str]"]) -> str:
        if completed is None:
            return "command did not complete"
        stderr = (completed.stderr or "").strip()
        if stderr:
            return stderr[:400]
        return f"exit status {completed.returncode}"


__all__ = ["SystemdServiceController", "run_command"]
