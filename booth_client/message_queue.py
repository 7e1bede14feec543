# =============================================================================
# Booth Client -- Outbound Message Queue
# =============================================================================
#
# Buffers chat messages while the connection is not authenticated and hands
# them back in submission order on flush.  Bounded: when full, the oldest
# entry is evicted to make room.
#
# In-memory only.  Nothing survives the client instance.
# =============================================================================

from __future__ import annotations

import time
from collections import deque
from typing import Any
from uuid import uuid4

from ._logging import logger
from .constants import MESSAGE_QUEUE_MAX_SIZE
from .types import PendingMessage


class MessageQueue:
    """Bounded FIFO of :class:`PendingMessage` entries.

    Args:
        max_size: Maximum number of buffered messages. Default 50.
    """

    def __init__(self, max_size: int = MESSAGE_QUEUE_MAX_SIZE) -> None:
        self._max_size = max_size
        self._queue: deque[PendingMessage] = deque()
        self._evicted = 0

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def capacity(self) -> int:
        return self._max_size

    def enqueue(
        self,
        text: str,
        channel_id: str,
        *,
        meta: dict[str, Any] | None = None,
    ) -> PendingMessage:
        """Append a message, evicting the oldest entry if the queue is full."""
        msg = PendingMessage(
            id=uuid4().hex[:12],
            text=text,
            channel_id=channel_id,
            created_at=time.time(),
            meta=meta,
        )
        if len(self._queue) >= self._max_size:
            dropped = self._queue.popleft()
            self._evicted += 1
            logger.warning(
                "Message queue full (%d), evicted oldest message %s",
                self._max_size,
                dropped.id,
            )
        self._queue.append(msg)
        logger.debug("Message queued for later sending: %s", msg.id)
        return msg

    def first(self) -> PendingMessage | None:
        """The oldest queued message, left in place until it is discarded."""
        return self._queue[0] if self._queue else None

    def peek(self) -> list[PendingMessage]:
        return list(self._queue)

    def discard(self, message_id: str) -> bool:
        """Drop a single queued message. Returns True if it was found."""
        for msg in self._queue:
            if msg.id == message_id:
                self._queue.remove(msg)
                return True
        return False

    def get_stats(self) -> dict[str, Any]:
        return {
            "size": len(self._queue),
            "capacity": self._max_size,
            "evicted": self._evicted,
        }
