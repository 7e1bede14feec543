# =============================================================================
# Booth Client -- Type Definitions
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .constants import (
    AUTH_RETRY_DELAY,
    CONNECTION_TIMEOUT,
    ERROR_CLEAR_DELAY,
    HEARTBEAT_INTERVAL,
    HEARTBEAT_TIMEOUT,
    MESSAGE_MAX_LENGTH,
    MESSAGE_QUEUE_MAX_SIZE,
    POLL_INTERVAL,
    RECONNECT_BASE_DELAY,
    RECONNECT_JITTER_RATIO,
    RECONNECT_MAX_ATTEMPTS,
    RECONNECT_MAX_DELAY,
    TOKEN_REFRESH_MAX_ATTEMPTS,
)


class ConnectionState(str, Enum):
    """Connection lifecycle state.

    Typical flow: DISCONNECTED -> CONNECTING -> CONNECTED -> AUTHENTICATED.
    RECONNECTING is transient. ERROR is terminal until ``retry()``.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    RECONNECTING = "reconnecting"
    ERROR = "error"


# States in which the push transport is not delivering authoritative updates.
POLLING_STATES = frozenset(
    {
        ConnectionState.DISCONNECTED,
        ConnectionState.ERROR,
        ConnectionState.CONNECTING,
        ConnectionState.RECONNECTING,
    }
)


@dataclass(frozen=True, slots=True)
class Identity:
    """The signed-in user as reported by the identity cache.

    ``credential`` is what goes into the ``authenticate`` frame: the
    token when one is known, otherwise the user id.
    """

    user_id: str
    token: str | None = None

    @property
    def credential(self) -> str:
        return self.token or self.user_id


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """A chat line received from the server.

    Attributes:
        id: Server-assigned message id, used for deduplication.
        channel_id: Channel (event) the message belongs to.
        author_id: Sender's user id.
        text: Message body.
        created_at: ISO-8601 timestamp from the server.
    """

    id: str
    channel_id: str | None
    author_id: str | None
    text: str
    created_at: str | None = None

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> ChatMessage:
        return cls(
            id=str(data["id"]),
            channel_id=data.get("channelId", data.get("eventId")),
            author_id=data.get("authorId", data.get("userId")),
            text=data.get("text", data.get("message", "")),
            created_at=data.get("createdAt"),
        )


@dataclass(slots=True)
class PendingMessage:
    """An outbound message waiting for an authenticated connection."""

    id: str
    text: str
    channel_id: str
    created_at: float
    retry_count: int = 0
    meta: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class RosterMember:
    id: str
    name: str
    role: str = "guest"

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> RosterMember:
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            role=data.get("role", "guest"),
        )


@dataclass(slots=True)
class SessionRoster:
    """Versioned list of the participants currently broadcasting.

    ``version`` never decreases. A snapshot whose version is not strictly
    greater than the current one is discarded.
    """

    members: list[RosterMember] = field(default_factory=list)
    version: int = 0
    last_update_at: str | None = None

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> SessionRoster:
        raw_members = data.get("members")
        if raw_members is None:
            raw_members = data.get("casters", [])
        return cls(
            members=[RosterMember.from_wire(m) for m in raw_members],
            version=int(data.get("version") or 0),
            last_update_at=data.get("timestamp"),
        )


@dataclass(slots=True)
class RateLimitWindow:
    """Server-imposed pause on outbound chat.

    Attributes:
        active: True while the server's window is open.
        next_allowed_at: Epoch seconds when sending is allowed again.
    """

    active: bool = False
    next_allowed_at: float | None = None

    def blocks(self, now: float) -> bool:
        if not self.active:
            return False
        return self.next_allowed_at is None or now < self.next_allowed_at


@dataclass
class ReconnectConfig:
    """Configuration for automatic reconnection.

    Attributes:
        base_delay: Delay in seconds before the first retry.
        max_delay: Cap on the exponential part of the delay.
        max_attempts: Attempts before the client gives up and needs
            an explicit ``retry()``.
        jitter_ratio: Upper bound of the random extra delay, as a
            fraction of the capped delay.
    """

    base_delay: float = RECONNECT_BASE_DELAY
    max_delay: float = RECONNECT_MAX_DELAY
    max_attempts: int = RECONNECT_MAX_ATTEMPTS
    jitter_ratio: float = RECONNECT_JITTER_RATIO


@dataclass
class HeartbeatConfig:
    interval: float = HEARTBEAT_INTERVAL
    timeout: float = HEARTBEAT_TIMEOUT


@dataclass
class ClientConfig:
    """Per-instance tuning for :class:`~booth_client.connection.ConnectionManager`.

    Defaults come from :mod:`booth_client.constants`.
    """

    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    queue_size: int = MESSAGE_QUEUE_MAX_SIZE
    max_message_length: int = MESSAGE_MAX_LENGTH
    poll_interval: float = POLL_INTERVAL
    token_refresh_attempts: int = TOKEN_REFRESH_MAX_ATTEMPTS
    connection_timeout: float = CONNECTION_TIMEOUT
    auth_retry_delay: float = AUTH_RETRY_DELAY
    error_clear_delay: float = ERROR_CLEAR_DELAY
