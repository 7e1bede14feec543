"""Booth realtime session client: live chat plus the "who is casting" roster.

Usage::

    from booth_client import Identity, StaticIdentityProvider, connect

    identity = StaticIdentityProvider(Identity(user_id="u-1", token="jwt"))

    async with connect("wss://booth.example/ws", identity=identity,
                       api_url="https://booth.example/api") as client:
        await client.join_channel("event-42")
        await client.send_message("hello booth")

The client keeps one WebSocket per instance, reconnects with backoff,
re-authenticates silently, queues chat while offline, and falls back to HTTP
polling for the roster when the socket is down.
"""

from ._version import __version__
from .collaborators import (
    IdentityProvider,
    InMemorySnapshotStore,
    LoggingNotifier,
    ManualVisibility,
    Notifier,
    SnapshotStore,
    StaticIdentityProvider,
    VisibilityProvider,
)
from .connection import ConnectionManager
from .errors import (
    AuthError,
    BoothError,
    EmptyMessageError,
    MessageTooLongError,
    NoChannelError,
    NotReadyError,
    ProtocolError,
    RateLimitedError,
    TransientTransportError,
    ValidationError,
)
from .polling import HttpSessionMetaFetcher, SessionMetaFetcher
from .types import (
    ChatMessage,
    ClientConfig,
    ConnectionState,
    HeartbeatConfig,
    Identity,
    PendingMessage,
    RateLimitWindow,
    ReconnectConfig,
    RosterMember,
    SessionRoster,
)


def connect(url: str, **kwargs) -> ConnectionManager:
    """Create a session client.

    Use as an async context manager. Keyword arguments are forwarded to
    :class:`ConnectionManager`; ``identity`` is required.

    Args:
        url: WebSocket URL, e.g. ``"wss://booth.example/ws"``.
        **kwargs: Passed to :class:`ConnectionManager`.

    Returns:
        A :class:`ConnectionManager` instance.

    Raises:
        AuthError: On enter, if no identity can be obtained.
    """
    return ConnectionManager(url, **kwargs)


__all__ = [
    "__version__",
    "connect",
    "ConnectionManager",
    "ConnectionState",
    "ChatMessage",
    "PendingMessage",
    "RosterMember",
    "SessionRoster",
    "RateLimitWindow",
    "Identity",
    "ClientConfig",
    "ReconnectConfig",
    "HeartbeatConfig",
    "IdentityProvider",
    "SnapshotStore",
    "Notifier",
    "VisibilityProvider",
    "SessionMetaFetcher",
    "StaticIdentityProvider",
    "InMemorySnapshotStore",
    "LoggingNotifier",
    "ManualVisibility",
    "HttpSessionMetaFetcher",
    "BoothError",
    "TransientTransportError",
    "AuthError",
    "NotReadyError",
    "ProtocolError",
    "RateLimitedError",
    "ValidationError",
    "EmptyMessageError",
    "MessageTooLongError",
    "NoChannelError",
]
