# =============================================================================
# Booth Client -- Reconnect Scheduler
# =============================================================================
#
# Exponential backoff with additive jitter and a hard attempt limit:
#
#   next_delay(n) = min(base * 2**n, cap) + U[0, jitter_ratio * capped)
# =============================================================================

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable

from ._logging import logger
from .types import ReconnectConfig


class ReconnectScheduler:
    """Owns the reconnect attempt counter and the pending reconnect timer.

    Args:
        config: Backoff parameters (default: 1s base, 30s cap,
            10 attempts, 30% jitter).
        rng: Random source for jitter, injectable for tests.
    """

    def __init__(
        self,
        config: ReconnectConfig | None = None,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self._cfg = config or ReconnectConfig()
        self._rng = rng or random.Random()
        self._attempt = 0
        self._task: asyncio.Task[None] | None = None
        self._last_delay: float | None = None

    @property
    def attempt(self) -> int:
        """Number of reconnect attempts scheduled since the last reset."""
        return self._attempt

    @property
    def max_attempts(self) -> int:
        return self._cfg.max_attempts

    @property
    def exhausted(self) -> bool:
        return self._attempt >= self._cfg.max_attempts

    @property
    def pending(self) -> bool:
        return self._task is not None

    @property
    def last_delay(self) -> float | None:
        return self._last_delay

    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before reconnect attempt number *attempt*."""
        cfg = self._cfg
        delay = min(cfg.base_delay * (2**attempt), cfg.max_delay)
        jitter = self._rng.random() * cfg.jitter_ratio * delay
        return delay + jitter

    def schedule(self, callback: Callable[[], Awaitable[Any]]) -> float | None:
        """Run *callback* after the next backoff delay.

        Returns the chosen delay, or None when attempts are exhausted and
        nothing was scheduled. Any previously pending attempt is replaced.
        """
        if self.exhausted:
            logger.error("Max reconnect attempts (%d) reached", self._cfg.max_attempts)
            return None

        self.cancel()
        delay = self.next_delay(self._attempt)
        self._attempt += 1
        self._last_delay = delay
        logger.info(
            "Reconnecting in %.1fs (attempt %d/%d)",
            delay,
            self._attempt,
            self._cfg.max_attempts,
        )
        self._task = asyncio.create_task(self._run_after(delay, callback))
        return delay

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def reset(self) -> None:
        """Zero the attempt counter (after authenticating, or on retry)."""
        self._attempt = 0
        self._last_delay = None

    async def _run_after(
        self, delay: float, callback: Callable[[], Awaitable[Any]]
    ) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        self._task = None
        await callback()
