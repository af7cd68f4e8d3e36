from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Mapping, Optional

from iqupgrade.domain.naming import run_log_stem

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_DEFAULT_DATEFMT = "%H:%M:%S"
_RUN_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
_RUN_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
_RUN_LOG_MODE = 0o640
_LEVEL_ENV_VARS = ("IQ_UPGRADE_LOG_LEVEL",)
_DEBUG_FLAGS = ("IQ_UPGRADE_DEBUG",)


def _coerce_level(value: Optional[str], fallback: int) -> int:
    if not value:
        return fallback
    text = value.strip()
    if not text:
        return fallback
    if text.isdigit():
        return int(text)
    candidate = logging.getLevelName(text.upper())
    if isinstance(candidate, int):
        return candidate
    return fallback


def _env_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _resolve_env_level(environ: Optional[Mapping[str, str]] = None) -> Optional[int]:
    env = os.environ if environ is None else environ
    for var in _LEVEL_ENV_VARS:
        value = env.get(var)
        if value:
            return _coerce_level(value, logging.INFO)
    if any(_env_truthy(env.get(flag)) for flag in _DEBUG_FLAGS):
        return logging.DEBUG
    return None


def configure_root(
    default_level: int | str = logging.INFO,
    environ: Optional[Mapping[str, str]] = None,
) -> int:
    """
    Configure the root logger with a compact console format.

    Environment overrides:
      - IQ_UPGRADE_LOG_LEVEL: explicit log level (name or number)
      - IQ_UPGRADE_DEBUG: truthy -> DEBUG
    """
    fallback = (
        _coerce_level(default_level, logging.INFO)
        if isinstance(default_level, str)
        else int(default_level)
    )
    env_level = _resolve_env_level(environ)
    effective = env_level if env_level is not None else fallback

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=effective, format=_DEFAULT_FORMAT, datefmt=_DEFAULT_DATEFMT)
    root.setLevel(effective)
    return effective


def run_log_path(log_dir: Path, version: str, started_at: datetime) -> Path:
    """Return the per-invocation log file path for ``version``."""
    return Path(log_dir) / f"{run_log_stem(version, started_at)}.log"


def attach_run_log(
    log_dir: Path,
    version: str,
    started_at: datetime,
    *,
    logger: Optional[logging.Logger] = None,
) -> logging.FileHandler:
    """
    Add a file handler writing this run's log next to previous runs.

    The file is created with mode 0640. Callers remove the handler with
    ``detach_run_log`` when the run ends.
    """
    path = run_log_path(log_dir, version, started_at)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)
    os.chmod(path, _RUN_LOG_MODE)

    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(_RUN_LOG_FORMAT, datefmt=_RUN_LOG_DATEFMT))
    target = logger or logging.getLogger()
    target.addHandler(handler)
    return handler


def detach_run_log(handler: logging.Handler, *, logger: Optional[logging.Logger] = None) -> None:
    """Remove and close a handler added by ``attach_run_log``."""
    target = logger or logging.getLogger()
    target.removeHandler(handler)
    handler.close()
