# =============================================================================
# Booth Client -- Heartbeat Monitor
# =============================================================================
#
# Ping every HEARTBEAT_INTERVAL while authenticated.  The first ping after a
# pong arms a HEARTBEAT_TIMEOUT; the next pong disarms it.  When the timeout
# fires the owner is told to force the transport closed, which feeds the
# normal reconnect path.
# =============================================================================

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

from ._logging import logger
from .constants import HEARTBEAT_INTERVAL, HEARTBEAT_TIMEOUT


class HeartbeatMonitor:
    """Detect half-open connections with application-level ping/pong.

    Args:
        send_ping: Coroutine function that writes a ping frame. Returns
            True if the frame went out.
        on_timeout: Called (and awaited if it returns a coroutine) when no
            pong arrives within *timeout* of a ping.
        interval: Seconds between pings (default 30).
        timeout: Seconds to wait for a pong (default 90).
    """

    def __init__(
        self,
        send_ping: Callable[[], Awaitable[bool]],
        on_timeout: Callable[[], Any],
        *,
        interval: float = HEARTBEAT_INTERVAL,
        timeout: float = HEARTBEAT_TIMEOUT,
    ) -> None:
        self._send_ping = send_ping
        self._on_timeout = on_timeout
        self._interval = interval
        self._timeout = timeout

        self._loop_task: asyncio.Task[None] | None = None
        self._timeout_task: asyncio.Task[None] | None = None
        self._ping_sent_at: float | None = None
        self._last_rtt: float | None = None
        self._pings_sent = 0
        self._pongs_received = 0

    @property
    def running(self) -> bool:
        return self._loop_task is not None

    @property
    def awaiting_pong(self) -> bool:
        return self._timeout_task is not None

    @property
    def last_rtt(self) -> float | None:
        """Round-trip time of the last answered ping, in seconds."""
        return self._last_rtt

    def start(self) -> None:
        """(Re)start the ping loop. Must be called inside a running loop."""
        self.stop()
        self._loop_task = asyncio.create_task(self._ping_loop())

    def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None
        self._disarm()

    def handle_pong(self) -> None:
        """A pong arrived: clear the pending timeout."""
        if self._ping_sent_at is not None:
            self._last_rtt = time.monotonic() - self._ping_sent_at
            self._ping_sent_at = None
        self._pongs_received += 1
        self._disarm()
        logger.debug("Received pong, heartbeat OK")

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "awaiting_pong": self.awaiting_pong,
            "pings_sent": self._pings_sent,
            "pongs_received": self._pongs_received,
            "last_rtt_ms": (
                round(self._last_rtt * 1000, 1) if self._last_rtt is not None else None
            ),
        }

    # -- Internal -------------------------------------------------------------

    def _disarm(self) -> None:
        if self._timeout_task is not None:
            self._timeout_task.cancel()
            self._timeout_task = None

    async def _ping_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                return

            logger.debug("Sending heartbeat ping")
            ok = await self._send_ping()
            if not ok:
                logger.debug("Heartbeat ping send failed")
                continue
            self._pings_sent += 1
            # The oldest unanswered ping keeps its deadline; only a pong
            # clears it, so a new timeout is armed only after one.
            if self._timeout_task is None:
                self._ping_sent_at = time.monotonic()
                self._timeout_task = asyncio.create_task(self._expire())

    async def _expire(self) -> None:
        try:
            await asyncio.sleep(self._timeout)
        except asyncio.CancelledError:
            return

        # Detach first so the owner's teardown (which calls stop()) does
        # not cancel the task running this callback.
        self._timeout_task = None
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None

        logger.warning("Heartbeat timeout (%.0fs), no pong received", self._timeout)
        result = self._on_timeout()
        if asyncio.iscoroutine(result):
            await result
