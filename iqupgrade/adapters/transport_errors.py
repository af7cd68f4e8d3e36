from __future__ import annotations

from typing import Any, Optional


class TransportError(RuntimeError):
    """Base class for HTTP transport failures."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        payload: Any = None,
        context: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload
        self.context = context


class TransportTimeoutError(TransportError):
    """Transport level timeout or connectivity failure."""

    def __init__(self, message: str, *, context: Optional[str] = None) -> None:
        super().__init__(message, context=context)


class HttpStatusError(TransportError):
    """Non-2xx response from a remote endpoint."""

    def __init__(
        self,
        message: str,
        *,
        status: int,
        payload: Any = None,
        context: Optional[str] = None,
    ) -> None:
        super().__init__(message, status=status, payload=payload, context=context)


def response_snippet(resp: Any, *, limit: int = 400) -> Optional[str]:
    """Best-effort extraction of a short response body without raising."""
    try:
        text = getattr(resp, "text", "") or ""
    except Exception:
        return None
    text = str(text).strip()
    return text[:limit] if text else None


def build_status_message(ctx: str, status: int, snippet: Optional[str]) -> str:
    if snippet:
        return f"{ctx}: {snippet} (HTTP {status})"
    return f"{ctx}: HTTP {status}"


__all__ = [
    "HttpStatusError",
    "TransportError",
    "TransportTimeoutError",
    "build_status_message",
    "response_snippet",
]
