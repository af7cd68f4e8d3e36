"""Shared HTTP transport utilities for the fetch and health adapters.

This module provides a thin wrapper around ``requests.Session`` so adapter
implementations share timeout policy, headers, and typed transport errors.
Retrying is not done here; callers apply a ``RetryPolicy`` so every retry
decision stays visible at the call site.

Dependencies:
    - ``requests`` for network I/O.
    - ``iqupgrade.adapters.transport_errors`` for typed transport failures.

Call context:
    - Constructed by ``HttpArtifactFetcher`` and ``HttpHealthProber``.
    - Used only inside adapter layer methods; use cases interact through ports.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import requests
from requests import exceptions as req_exc

from iqupgrade.adapters.transport_errors import (
    HttpStatusError,
    TransportError,
    TransportTimeoutError,
    build_status_message,
    response_snippet,
)


@dataclass
class HttpConfig:
    """Timeout configuration for adapter HTTP calls.

    Attributes:
        request_timeout_s: Default timeout in seconds for short requests.
        download_timeout_s: Default timeout in seconds for artifact downloads.
        chunk_size: Streaming chunk size for downloads.
        user_agent: ``User-Agent`` header sent with every request.
    """
    request_timeout_s: int = 10
    download_timeout_s: int = 300
    chunk_size: int = 1024 * 1024
    user_agent: str = "iq-upgrade"


class HttpSession:
    """Shared requests wrapper with typed errors and streamed downloads.

    This class is transport-only. Callers decide how a failed
    request maps onto fetch or health-check semantics.
    """

    def __init__(self, cfg: Optional[HttpConfig] = None) -> None:
        """Create a session.

        Args:
            cfg: Shared timeout settings; defaults to ``HttpConfig()``.

        Side Effects:
            Creates a persistent ``requests.Session`` object.
        """
        self.session = requests.Session()
        self.cfg = cfg or HttpConfig()

    def _headers(self, accept: str = "*/*") -> Dict[str, str]:
        return {"Accept": accept, "User-Agent": self.cfg.user_agent}

    def get(self, url: str, *, timeout: Optional[float] = None) -> requests.Response:
        """Send one GET request.

        Args:
            url: Absolute endpoint URL.
            timeout: Optional timeout override in seconds.

        Returns:
            ``requests.Response`` regardless of status code.

        Raises:
            TransportTimeoutError: On timeout or connection failure.
            TransportError: On any other ``requests`` failure.
        """
        context = f"GET {url}"
        try:
            return self.session.get(
                url,
                headers=self._headers(),
                timeout=timeout or self.cfg.request_timeout_s,
            )
        except (req_exc.Timeout, req_exc.ConnectionError) as exc:
            raise TransportTimeoutError(f"Timeout contacting {url}", context=context) from exc
        except req_exc.RequestException as exc:
            raise TransportError(f"{context} failed: {exc}", context=context) from exc

    def download(self, url: str, target: Path, *, timeout: Optional[float] = None) -> int:
        """Stream ``url`` into ``target`` and return the number of bytes written.

        Args:
            url: Absolute artifact URL.
            target: Destination file; overwritten if present.
            timeout: Optional timeout override in seconds.

        Returns:
            Bytes written to ``target``.

        Raises:
            HttpStatusError: If the server answers with a non-2xx status.
            TransportTimeoutError: On timeout or connection failure.
            TransportError: On any other ``requests`` failure.

        Side Effects:
            Creates or truncates ``target``. Partial output is left for the
            caller to clean up.
        """
        context = f"GET {url}"
        written = 0
        try:
            with self.session.get(
                url,
                headers=self._headers(accept="application/octet-stream"),
                timeout=timeout or self.cfg.download_timeout_s,
                stream=True,
            ) as resp:
                if not 200 <= resp.status_code < 300:
                    raise HttpStatusError(
                        build_status_message(context, resp.status_code, response_snippet(resp)),
                        status=resp.status_code,
                        context=context,
                    )
                with Path(target).open("wb") as handle:
                    for chunk in resp.iter_content(chunk_size=self.cfg.chunk_size):
                        if not chunk:
                            continue
                        handle.write(chunk)
                        written += len(chunk)
        except (req_exc.Timeout, req_exc.ConnectionError) as exc:
            raise TransportTimeoutError(f"Timeout downloading {url}", context=context) from exc
        except req_exc.RequestException as exc:
            raise TransportError(f"{context} failed: {exc}", context=context) from exc
        return written


__all__ = ["HttpConfig", "HttpSession"]
