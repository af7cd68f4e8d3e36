from __future__ import annotations

"""Naming helpers for release bundles, installed jars, and backup folders.

The bundle naming convention is an external contract with the upstream
distributor and is not configurable per call.
"""

import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from .errors import ValidationError

PRODUCT = "nexus-iq-server"
DEFAULT_DOWNLOAD_BASE_URL = "https://download.sonatype.com/clm/server"
BUNDLE_SUFFIX = "-bundle.tar.gz"
JAR_GLOB = f"{PRODUCT}-*.jar"
BACKUP_PREFIX = "backup_"
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

_VERSION_TOKEN = re.compile(r"^[0-9]+$")
_JAR_VERSION = re.compile(rf"^{re.escape(PRODUCT)}-(1\.([0-9]+)\.0(?:-[0-9]+)?)")
_BACKUP_NAME = re.compile(rf"^{BACKUP_PREFIX}([0-9]{{8}}_[0-9]{{6}})(?:_([0-9]+))?$")


def validate_version_token(raw: object) -> str:
    """Return the normalized version token or raise ``ValidationError``."""
    text = str(raw if raw is not None else "").strip()
    if not text:
        raise ValidationError(
            "request.version_missing",
            "Version parameter is required",
            "Use -v to specify the version, e.g. -v 191.",
        )
    if not _VERSION_TOKEN.match(text):
        raise ValidationError(
            "request.version_invalid",
            "Version must be numeric",
            f"Got: '{text}'",
        )
    if int(text) <= 0:
        raise ValidationError(
            "request.version_invalid",
            "Version must be a positive integer",
            f"Got: '{text}'",
        )
    return str(int(text))


def release_label(version: str) -> str:
    """Return the full upstream release label, e.g. ``1.191.0-01``."""
    return f"1.{version}.0-01"


def bundle_filename(version: str) -> str:
    """Return the bundle file name for a version token."""
    return f"{PRODUCT}-{release_label(version)}{BUNDLE_SUFFIX}"


def artifact_url(version: str, base_url: str = DEFAULT_DOWNLOAD_BASE_URL) -> str:
    """Build the deterministic download locator for a version token."""
    base = base_url[:-1] if base_url.endswith("/") else base_url
    return f"{base}/{bundle_filename(version)}"


def is_bundle_jar_member(name: str) -> bool:
    """Return whether a bundle member name should be installed.

    Matches ``nexus-iq-server*.jar`` at the top level of the bundle.
    """
    return name.startswith(PRODUCT) and name.endswith(".jar")


def parse_jar_version(name: str) -> Optional[str]:
    """Return the release label encoded in a jar file name, if any."""
    match = _JAR_VERSION.match(Path(name).name)
    return match.group(1) if match else None


def parse_jar_token(name: str) -> Optional[str]:
    """Return the version token encoded in a jar file name, if any."""
    match = _JAR_VERSION.match(Path(name).name)
    return match.group(2) if match else None


def backup_dir_name(created_at: datetime, attempt: int = 0) -> str:
    """Return ``backup_<timestamp>`` with a numeric suffix after collisions."""
    name = f"{BACKUP_PREFIX}{created_at.strftime(BACKUP_TIMESTAMP_FORMAT)}"
    if attempt:
        name = f"{name}_{attempt}"
    return name


def parse_backup_dir_name(name: str) -> Optional[datetime]:
    """Return the creation time encoded in a backup directory name."""
    match = _BACKUP_NAME.match(name)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), BACKUP_TIMESTAMP_FORMAT)
    except ValueError:
        return None


def run_log_stem(version: str, started_at: datetime) -> str:
    """Return the per-invocation log file stem."""
    return f"{PRODUCT}_upgrade_{version}_{started_at.strftime(BACKUP_TIMESTAMP_FORMAT)}"


__all__ = [
    "BACKUP_PREFIX",
    "DEFAULT_DOWNLOAD_BASE_URL",
    "JAR_GLOB",
    "PRODUCT",
    "artifact_url",
    "backup_dir_name",
    "bundle_filename",
    "is_bundle_jar_member",
    "parse_backup_dir_name",
    "parse_jar_token",
    "parse_jar_version",
    "release_label",
    "run_log_stem",
    "validate_version_token",
]
