# =============================================================================
# Booth Client -- Session Meta Fetcher
# =============================================================================
#
# Pull side of the roster fallback: GET /sessions/{id}/meta.
# Response shape: {"data": {"version": int, "members": [...]}}
# =============================================================================

from __future__ import annotations

from typing import Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from ._logging import logger
from .constants import POLL_TIMEOUT
from .types import SessionRoster


@runtime_checkable
class SessionMetaFetcher(Protocol):
    async def fetch(self, session_id: str) -> SessionRoster | None: ...


class HttpSessionMetaFetcher:
    """Fetch roster snapshots over HTTP with httpx.

    Failures (non-2xx, transport errors, malformed bodies) are logged and
    reported as ``None`` so a bad poll never disturbs the client.

    Args:
        base_url: API root, e.g. ``"https://booth.example/api"``.
        client: Shared :class:`httpx.AsyncClient`. If omitted one is
            created and closed by :meth:`aclose`.
        headers: Extra request headers (e.g. session cookie).
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = POLL_TIMEOUT,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers or {}

    def url_for(self, session_id: str) -> str:
        return f"{self._base_url}/sessions/{quote(session_id, safe='')}/meta"

    async def fetch(self, session_id: str) -> SessionRoster | None:
        url = self.url_for(session_id)
        logger.debug("Fetching session metadata for %s", session_id)
        try:
            resp = await self._client.get(url, headers=self._headers)
        except httpx.HTTPError as exc:
            logger.warning("Session meta polling failed: %s", exc)
            return None

        if resp.status_code != 200:
            logger.warning("Meta fetch failed: %d", resp.status_code)
            return None

        try:
            data = resp.json().get("data") or {}
        except (ValueError, AttributeError) as exc:
            logger.warning("Malformed session meta response: %s", exc)
            return None

        if not data.get("version"):
            logger.debug("Session meta has no version, ignoring")
            return None

        try:
            return SessionRoster.from_wire(data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed session meta payload: %s", exc)
            return None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
