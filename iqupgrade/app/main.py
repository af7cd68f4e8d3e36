# iqupgrade/app/main.py
from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Mapping, Optional

# ---- Domain ----
from ..domain.entities import UpgradeOutcome, UpgradeRequest
from ..domain.errors import UpgradeError
from ..domain.naming import release_label
from ..domain.ports import AuditPort, HostPort
from ..domain.retry import RetryPolicy
from ..domain.settings import UpgradeSettings

# ---- UseCases & Adapters ----
from ..usecases.preflight import RunPreflightChecks
from ..usecases.run_upgrade import UpgradeOrchestrator
from ..adapters.archive_local import LocalArchiveStore
from ..adapters.artifact_http import HttpArtifactFetcher
from ..adapters.audit_jsonl import JsonlAuditLog
from ..adapters.health_http import HttpHealthProber
from ..adapters.host_system import LocalHost
from ..adapters.http_client import HttpConfig, HttpSession
from ..adapters.installer_local import TarballInstaller
from ..adapters.run_lock import exclusive_run_lock
from ..adapters.service_systemd import SystemdServiceController
from ..utils import logging as logging_utils

EXIT_INVALID = 1
EXIT_INTERRUPTED = 130

_BANNER_RULE = "=" * 46


class _ArgumentParser(argparse.ArgumentParser):
    """Parser reporting usage errors with the validation exit status."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(EXIT_INVALID, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="iq-upgrade",
        description="Upgrade a host-local Nexus IQ Server installation with automatic rollback.",
        epilog="Example: iq-upgrade -v 192 --keep-artifact",
    )
    parser.add_argument(
        "-v",
        "--version",
        required=True,
        metavar="VERSION",
        help="Release number to install (e.g. 192 for 1.192.0-01)",
    )
    parser.add_argument("-d", "--dry-run", action="store_true", help="Show what would be done without changes")
    parser.add_argument("-k", "--keep-artifact", action="store_true", help="Keep the downloaded bundle")
    parser.add_argument(
        "-s",
        "--skip-health-check",
        action="store_true",
        help="Skip the post-start health check (not recommended)",
    )
    return parser


def build_orchestrator(
    settings: UpgradeSettings,
    request: UpgradeRequest,
    audit: AuditPort,
) -> UpgradeOrchestrator:
    """Wire the concrete adapters for one run."""
    dry_run = request.dry_run
    session = HttpSession(
        HttpConfig(
            request_timeout_s=settings.health_timeout_s,
            download_timeout_s=settings.download_timeout_s,
        )
    )
    return UpgradeOrchestrator(
        settings,
        fetcher=HttpArtifactFetcher(
            session,
            base_url=settings.download_base_url,
            timeout_s=settings.download_timeout_s,
            retry=RetryPolicy(settings.fetch_attempts, settings.fetch_retry_delay_s),
            min_size_bytes=settings.min_artifact_bytes,
            dry_run=dry_run,
        ),
        service=SystemdServiceController(
            settings.service_name,
            dry_run=dry_run,
            stop_timeout_s=settings.stop_timeout_s,
            poll_interval_s=settings.stop_poll_interval_s,
            command_timeout_s=settings.command_timeout_s,
        ),
        archive=LocalArchiveStore(
            settings.archive_dir,
            settings.pointer_path,
            retention=settings.backup_retention,
            dry_run=dry_run,
        ),
        installer=TarballInstaller(
            settings.work_dir,
            keep_artifact=request.keep_artifact,
            dry_run=dry_run,
        ),
        prober=HttpHealthProber(session, timeout_s=settings.health_timeout_s, dry_run=dry_run),
        audit=audit,
    )


def _log_banner(log: logging.Logger, request: UpgradeRequest, settings: UpgradeSettings) -> None:
    log.info(_BANNER_RULE)
    log.info("Nexus IQ Server Upgrade")
    log.info(_BANNER_RULE)
    log.info("Target version: %s", release_label(request.version))
    log.info("Dry run: %s", request.dry_run)
    log.info("Working directory: %s", settings.work_dir)
    log.info("Archive directory: %s", settings.archive_dir)
    log.info(_BANNER_RULE)


def _log_summary(log: logging.Logger, outcome: UpgradeOutcome, log_file: Optional[Path]) -> None:
    log.info(_BANNER_RULE)
    log.info("Upgrade Summary")
    log.info(_BANNER_RULE)
    log.info("Outcome: %s", outcome.kind.value)
    if outcome.succeeded:
        log.info("Previous version: %s", outcome.previous_version or "none")
        log.info("New version: %s", outcome.version)
        if outcome.backup is not None:
            log.info("Backup location: %s", outcome.backup.path)
    else:
        log.info("Installed version: %s", outcome.version or "unknown")
        log.info("Reason: %s", outcome.reason)
    if log_file is not None:
        log.info("Log file: %s", log_file)
    log.info(_BANNER_RULE)


def main(
    argv: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
    *,
    host: Optional[HostPort] = None,
) -> int:
    """Run one upgrade from the command line and return the exit status.

    Exit statuses: 0 success, 1 aborted or invalid input, 2 rolled back,
    3 fatal (manual intervention), 130 interrupted.
    """
    args = build_parser().parse_args(argv)
    logging_utils.configure_root(environ=environ)
    log = logging.getLogger("iqupgrade")

    try:
        request = UpgradeRequest.create(
            args.version,
            dry_run=args.dry_run,
            keep_artifact=args.keep_artifact,
            skip_health_check=args.skip_health_check,
        )
    except UpgradeError as exc:
        log.error("%s", exc.describe())
        return EXIT_INVALID

    settings = UpgradeSettings.from_env(environ)
    started_at = datetime.now()
    handler: Optional[logging.Handler] = None
    log_file: Optional[Path] = None

    try:
        RunPreflightChecks(host or LocalHost(), logger=log)(settings)
        audit_path: Optional[Path] = None
        if not request.dry_run:
            handler = logging_utils.attach_run_log(settings.log_dir, request.version, started_at)
            log_file = logging_utils.run_log_path(settings.log_dir, request.version, started_at)
            audit_path = log_file.with_suffix(".audit.jsonl")

        _log_banner(log, request, settings)
        audit = JsonlAuditLog(audit_path, logger=log)
        orchestrator = build_orchestrator(settings, request, audit)
        if request.dry_run:
            outcome = orchestrator.run(request)
        else:
            with exclusive_run_lock(settings.lock_path):
                outcome = orchestrator.run(request)
        _log_summary(log, outcome, log_file)
    except UpgradeError as exc:
        log.error("%s", exc.describe())
        return EXIT_INVALID
    except OSError as exc:
        log.error("Cannot prepare upgrade run: %s", exc)
        return EXIT_INVALID
    except KeyboardInterrupt:
        log.error("Upgrade interrupted before any change was made")
        return EXIT_INTERRUPTED
    finally:
        if handler is not None:
            logging_utils.detach_run_log(handler)

    if outcome.interrupted:
        return EXIT_INTERRUPTED
    return outcome.exit_code


if __name__ == "__main__":
    sys.exit(main())
