"""Append-only JSON Lines audit log for one upgrade run."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _utc_now_iso() -> str:
    """Return timezone-aware UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


class JsonlAuditLog:
    """Record every decision and outcome of one run.

    Events are kept in memory and, when ``path`` is set, appended to a JSONL
    file. A failed write is logged and never interrupts the upgrade.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        run_id: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.path = Path(path) if path is not None else None
        self.run_id = run_id or uuid.uuid4().hex
        self.events: List[Dict[str, Any]] = []
        self._log = logger or logging.getLogger(__name__)

    def record(self, event: str, message: str, *, level: str = "info", **extra: Any) -> None:
        """Append one audit event."""
        phase = extra.pop("phase", None)
        payload: Dict[str, Any] = {
            "ts": _utc_now_iso(),
            "run_id": self.run_id,
            "event": event,
            "phase": _jsonable(phase),
            "level": level,
            "message": message,
        }
        if extra:
            payload["extra"] = {key: _jsonable(value) for key, value in extra.items()}
        self.events.append(payload)
        self._log.log(_LEVELS.get(level, logging.INFO), "audit %s: %s", event, message)

        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))
                handle.write("\n")
        except Exception:
            self._log.exception("Failed writing audit entry run_id=%s event=%s", self.run_id, event)

    def events_named(self, event: str) -> List[Dict[str, Any]]:
        return [item for item in self.events if item["event"] == event]


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    return str(value)


__all__ = ["JsonlAuditLog"]
