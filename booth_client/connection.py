# =============================================================================
# Booth Client -- Connection Manager
# =============================================================================
#
# Owns the one WebSocket per client and the state machine around it:
#
#   disconnected -> connecting -> connected -> authenticated
#   (transport lost)        * -> reconnecting -> connecting -> ...
#   (auth_failed)           * -> error -> token refresh -> connecting
#   (attempts exhausted)    * -> error   (until retry())
#
# Composes HeartbeatMonitor, ReconnectScheduler, MessageQueue,
# RosterReconciler and TokenRefresher.  All state lives on this object and is
# only advanced by socket events, timer fires and caller calls.
# =============================================================================

from __future__ import annotations

import asyncio
import random
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed, WebSocketException

from ._logging import logger
from .collaborators import (
    IdentityProvider,
    LoggingNotifier,
    ManualVisibility,
    Notifier,
    SnapshotStore,
    VisibilityProvider,
)
from .constants import (
    MAX_FRAME_SIZE,
    RATE_LIMIT_DEFAULT_WINDOW,
    WS_CLOSE_ABNORMAL,
    WS_CLOSE_AUTH_FAILED,
    WS_CLOSE_HEARTBEAT_TIMEOUT,
    WS_CLOSE_NORMAL,
)
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
)
from .heartbeat import HeartbeatMonitor
from .message_queue import MessageQueue
from .polling import HttpSessionMetaFetcher, SessionMetaFetcher
from .protocol import MessageCodec, ServerEvent
from .reconnect import ReconnectScheduler
from .roster import RosterReconciler
from .token_refresher import TokenRefresher
from .types import (
    POLLING_STATES,
    ChatMessage,
    ClientConfig,
    ConnectionState,
    PendingMessage,
    RateLimitWindow,
    SessionRoster,
)

TransportFactory = Callable[[str, dict[str, str]], Awaitable[Any]]
EventHandler = Callable[[str, Any], Any]

_OPEN_STATES = frozenset(
    {
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.AUTHENTICATED,
    }
)

_AUTH_REQUIRED_MSG = "Authentication required. Please refresh the page or log in again."
_AUTH_FAILED_MSG = "Authentication failed. Please refresh the page or log in again."
_QUEUED_MSG = "Connection lost. Message queued and will be sent when reconnected."


async def open_websocket(url: str, headers: dict[str, str]) -> Any:
    """Default transport factory: a ``websockets`` client connection."""
    try:
        return await websockets.asyncio.client.connect(
            url,
            additional_headers=headers,
            max_size=MAX_FRAME_SIZE,
            open_timeout=None,  # asyncio.wait_for handles timeout
        )
    except (OSError, WebSocketException) as exc:
        raise TransientTransportError(f"Failed to connect: {exc}") from exc


class ConnectionManager:
    """Realtime session client: chat delivery plus the live roster.

    Args:
        url: WebSocket endpoint, e.g. ``"wss://booth.example/ws"``.
        identity: Identity cache used for the credential and silent refresh.
        api_url: REST root for the polling fallback. Ignored when
            *meta_fetcher* is given.
        meta_fetcher: Source of roster snapshots for polling.
        snapshot_store: Optional store with an optimistic roster snapshot.
        notifier: Receives user-facing failures (default: log them).
        visibility: Page visibility source (default: always visible).
        config: Timing and size overrides.
        extra_headers: Additional HTTP headers for the handshake.
        transport_factory: Coroutine function ``(url, headers) -> socket``.
            The socket needs ``send``, ``close`` and async iteration.
        rng: Random source for reconnect jitter.

    Example::

        async with ConnectionManager(url, identity=provider) as client:
            await client.join_channel("E")
            await client.send_message("hi")
    """

    def __init__(
        self,
        url: str,
        *,
        identity: IdentityProvider,
        api_url: str | None = None,
        meta_fetcher: SessionMetaFetcher | None = None,
        snapshot_store: SnapshotStore | None = None,
        notifier: Notifier | None = None,
        visibility: VisibilityProvider | None = None,
        config: ClientConfig | None = None,
        extra_headers: dict[str, str] | None = None,
        transport_factory: TransportFactory | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._url = url
        self._cfg = config or ClientConfig()
        self._identity = identity
        self._notifier = notifier or LoggingNotifier()
        self._visibility = visibility or ManualVisibility()
        self._extra_headers = extra_headers or {}
        self._transport_factory = transport_factory or open_websocket

        self._owned_fetcher: HttpSessionMetaFetcher | None = None
        if meta_fetcher is None and api_url is not None:
            self._owned_fetcher = HttpSessionMetaFetcher(api_url)
            meta_fetcher = self._owned_fetcher

        # Components
        self._codec = MessageCodec()
        self._queue = MessageQueue(self._cfg.queue_size)
        self._reconnect = ReconnectScheduler(self._cfg.reconnect, rng=rng)
        self._token_refresher = TokenRefresher(
            identity, self._cfg.token_refresh_attempts
        )
        self._heartbeat = HeartbeatMonitor(
            self._send_ping,
            self._on_heartbeat_timeout,
            interval=self._cfg.heartbeat.interval,
            timeout=self._cfg.heartbeat.timeout,
        )
        self._roster = RosterReconciler(
            fetcher=meta_fetcher,
            snapshot_store=snapshot_store,
            poll_interval=self._cfg.poll_interval,
            on_change=self._on_roster_change,
            should_poll=self._polling_eligible,
        )
        self._roster.load_optimistic()

        # State
        self._state = ConnectionState.DISCONNECTED
        self._ws: Any | None = None
        self._recv_task: asyncio.Task[None] | None = None
        # Set by disconnect(), cleared by connect()
        self._manual_disconnect = False
        self._auth_rejected = False
        self._destroyed = False
        self._flushing = False
        self._watching_visibility = False

        self._channel_id: str | None = None
        self._messages: list[ChatMessage] = []
        self._seen_ids: set[str] = set()
        self._rate_limit = RateLimitWindow()
        self._last_error: str | None = None

        # Timers
        self._rate_limit_task: asyncio.Task[None] | None = None
        self._auth_retry_task: asyncio.Task[None] | None = None
        self._error_clear_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

        # Observers: event name -> callbacks
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._wildcard_handlers: list[EventHandler] = []

        # Stats
        self._messages_sent = 0
        self._frames_received = 0
        self._protocol_errors = 0
        self._reconnect_count = 0

        # Inbound dispatch table
        self._server_handlers: dict[str, Callable[[ServerEvent], None]] = {
            "authenticated": self._handle_authenticated,
            "auth_failed": self._handle_auth_failed,
            "joined_event": self._handle_joined_event,
            "new_message": self._handle_new_message,
            "pong": self._handle_pong,
            "rate_limited": self._handle_rate_limited,
            "roster.updated": self._handle_roster_updated,
            "error": self._handle_error,
            "user_joined": self._handle_presence,
            "user_left": self._handle_presence,
        }

        # Polling already applies before the first connect(), e.g. for a
        # session known from the optimistic snapshot.
        self._watch_visibility()
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop yet, polling starts on connect()")
        else:
            self._update_polling()

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> ConnectionManager:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.destroy()

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._state in (
            ConnectionState.CONNECTED,
            ConnectionState.AUTHENTICATED,
        )

    @property
    def is_authenticated(self) -> bool:
        return self._ws is not None and self._state == ConnectionState.AUTHENTICATED

    @property
    def channel_id(self) -> str | None:
        return self._channel_id

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    @property
    def roster(self) -> SessionRoster:
        return self._roster.roster

    @property
    def roster_version(self) -> int:
        """Version of the displayed roster.

        Can drop once, when the first server update replaces an optimistic
        snapshot. ``get_stats()["roster"]["authoritative_version"]`` never
        decreases.
        """
        return self._roster.version

    @property
    def session_id(self) -> str | None:
        return self._roster.session_id

    @property
    def polling(self) -> bool:
        return self._roster.polling

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def pending_messages(self) -> list[PendingMessage]:
        return self._queue.peek()

    @property
    def rate_limit(self) -> RateLimitWindow:
        return RateLimitWindow(self._rate_limit.active, self._rate_limit.next_allowed_at)

    @property
    def is_rate_limited(self) -> bool:
        return self._rate_limit.blocks(time.time())

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect.attempt

    # -- Connect / Disconnect -------------------------------------------------

    async def connect(self) -> None:
        """Open the socket and authenticate.

        No-op while connecting, connected or authenticated.

        Raises:
            AuthError: Identity is unknown and the silent refresh failed.
        """
        if self._destroyed:
            raise BoothError("ConnectionManager has been destroyed")
        if self._state in _OPEN_STATES:
            return

        self._manual_disconnect = False
        self._watch_visibility()
        self._reconnect.cancel()
        if self._auth_retry_task is not None:
            self._auth_retry_task.cancel()
            self._auth_retry_task = None

        if self._reconnect.exhausted:
            self._fail(
                f"Connection failed after {self._reconnect.max_attempts} attempts. "
                "Retry to reconnect."
            )
            return

        await self._open()

    async def disconnect(self) -> None:
        """Close the socket and stop every timer. Suppresses auto-reconnect."""
        self._manual_disconnect = True
        self._reconnect.cancel()
        self._roster.stop()
        self._heartbeat.stop()
        for name in ("_rate_limit_task", "_auth_retry_task", "_error_clear_task"):
            task = getattr(self, name)
            if task is not None:
                task.cancel()
                setattr(self, name, None)

        current = asyncio.current_task()
        pending = [t for t in self._background_tasks if t is not current]
        for task in pending:
            task.cancel()
        self._background_tasks.clear()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._unwatch_visibility()
        await self._teardown_transport(WS_CLOSE_NORMAL, "Client disconnect")
        self._set_state(ConnectionState.DISCONNECTED)

    async def destroy(self) -> None:
        """Disconnect and release owned resources permanently."""
        self._destroyed = True
        await self.disconnect()
        if self._owned_fetcher is not None:
            await self._owned_fetcher.aclose()

    async def retry(self) -> None:
        """User-initiated retry after a terminal error."""
        logger.info("Manual retry requested")
        self._reconnect.cancel()
        self._reconnect.reset()
        self._token_refresher.reset()
        if self._auth_retry_task is not None:
            self._auth_retry_task.cancel()
            self._auth_retry_task = None
        self._clear_error_text()
        await self.connect()

    def track_session(self, session_id: str | None) -> None:
        """Remember the broadcast session whose roster should be polled."""
        self._roster.track_session(session_id)
        self._update_polling()

    # -- Channels -------------------------------------------------------------

    async def join_channel(self, channel_id: str) -> bool:
        """Join a chat channel. Remembered and replayed after re-auth.

        Raises:
            NotReadyError: The connection is not authenticated.
        """
        if not self.is_authenticated:
            raise NotReadyError("Not authenticated")
        self._channel_id = channel_id
        return await self._send_raw(self._codec.join_event(channel_id))

    def leave_channel(self) -> None:
        """Forget the joined channel and the local message history."""
        self._channel_id = None
        self._messages.clear()
        self._seen_ids.clear()

    # -- Sending --------------------------------------------------------------

    async def send_message(self, text: str, meta: dict[str, Any] | None = None) -> bool:
        """Send a chat message, or queue it until re-authenticated.

        Returns:
            True if the message went out now, False if it was queued.

        Raises:
            EmptyMessageError: *text* is blank.
            MessageTooLongError: *text* exceeds the length limit.
            NoChannelError: No channel is joined.
            RateLimitedError: The server's rate-limit window is open.
        """
        trimmed = text.strip()
        if not trimmed:
            raise EmptyMessageError()
        if len(trimmed) > self._cfg.max_message_length:
            raise MessageTooLongError(len(trimmed), self._cfg.max_message_length)
        if not self._channel_id:
            raise NoChannelError()
        if self.is_rate_limited:
            raise RateLimitedError(self._rate_limit.next_allowed_at)

        channel_id = self._channel_id
        if self.is_authenticated:
            if self._flushing:
                # Behind the messages being flushed; the flush loop sends it
                self._queue.enqueue(trimmed, channel_id, meta=meta)
                return False
            ok = await self._send_raw(self._codec.send_message(trimmed, channel_id, meta))
            if ok:
                logger.debug("Message sent")
                return True
            logger.warning("Failed to send message, queued for retry")

        self._queue.enqueue(trimmed, channel_id, meta=meta)
        self._set_error_text(_QUEUED_MSG)
        return False

    async def resend_failed(self) -> int:
        """Push queued messages through the send path again.

        Returns the number delivered. Nothing happens while rate-limited or
        not authenticated; the messages stay queued.
        """
        if self.is_rate_limited or not self.is_authenticated:
            return 0
        return await self._flush_queue()

    def discard_pending(self, message_id: str) -> bool:
        return self._queue.discard(message_id)

    # -- Observers ------------------------------------------------------------

    def on(self, event_type: str) -> Callable[[EventHandler], EventHandler]:
        """Decorator registering a callback for a client event.

        Events: ``state_change``, ``message``, ``joined``, ``roster``,
        ``rate_limited``, ``error``. Callbacks receive ``(event_type, data)``.

        Example::

            @client.on("message")
            async def show(event_type, message):
                print(message.text)
        """

        def decorator(fn: EventHandler) -> EventHandler:
            self._handlers[event_type].append(fn)
            return fn

        return decorator

    def on_any(self, fn: EventHandler) -> EventHandler:
        self._wildcard_handlers.append(fn)
        return fn

    def off(self, event_type: str, fn: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if fn in handlers:
            handlers.remove(fn)

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "channel_id": self._channel_id,
            "messages": len(self._messages),
            "messages_sent": self._messages_sent,
            "frames_received": self._frames_received,
            "protocol_errors": self._protocol_errors,
            "reconnect_count": self._reconnect_count,
            "reconnect_attempt": self._reconnect.attempt,
            "token_refresh_attempts": self._token_refresher.attempts,
            "rate_limited": self.is_rate_limited,
            "last_error": self._last_error,
            "queue": self._queue.get_stats(),
            "heartbeat": self._heartbeat.get_stats(),
            "roster": self._roster.get_stats(),
        }

    # -- Internal: opening ----------------------------------------------------

    async def _open(self) -> None:
        identity = self._identity.get_current_identity()
        if identity is None:
            logger.info("Identity unknown, attempting token refresh before connect")
            if await self._token_refresher.refresh():
                identity = self._identity.get_current_identity()
            if identity is None:
                self._fail(_AUTH_REQUIRED_MSG)
                raise AuthError(_AUTH_REQUIRED_MSG)

        if self._ws is not None:
            await self._teardown_transport(WS_CLOSE_NORMAL, "Reconnecting")

        self._auth_rejected = False
        self._set_state(ConnectionState.CONNECTING)
        logger.info("Connecting (attempt %d)", self._reconnect.attempt + 1)

        try:
            ws = await asyncio.wait_for(
                self._transport_factory(self._url, dict(self._extra_headers)),
                timeout=self._cfg.connection_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Connection timed out after %.0fs", self._cfg.connection_timeout
            )
            self._handle_transport_loss()
            return
        except TransientTransportError as exc:
            logger.warning("%s", exc)
            self._handle_transport_loss()
            return
        except Exception as exc:
            logger.warning("Failed to connect: %s", exc)
            self._handle_transport_loss()
            return

        if self._manual_disconnect:
            # disconnect() ran while the socket was opening
            await self._close_socket(ws, WS_CLOSE_NORMAL, "Client disconnect")
            return

        self._ws = ws
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected, authenticating")
        self._recv_task = asyncio.create_task(self._recv_loop(ws))
        if not await self._send_raw(self._codec.authenticate(identity.credential)):
            logger.warning("Failed to send authenticate frame")

    # -- Internal: transport --------------------------------------------------

    async def _recv_loop(self, ws: Any) -> None:
        code = WS_CLOSE_ABNORMAL
        reason = ""
        try:
            async for raw in ws:
                self._on_raw_message(raw)
            code = getattr(ws, "close_code", None) or WS_CLOSE_NORMAL
            reason = getattr(ws, "close_reason", None) or ""
        except ConnectionClosed as exc:
            if exc.rcvd is not None:
                code, reason = exc.rcvd.code, exc.rcvd.reason
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.warning("Receive loop error: %s", exc)

        # Only the current socket drives the state machine
        if self._ws is ws:
            self._recv_task = None
            self._on_transport_closed(code, reason)

    def _on_transport_closed(self, code: int, reason: str) -> None:
        logger.info("Disconnected (code: %d, reason: %s)", code, reason)
        self._ws = None
        self._heartbeat.stop()
        if self._manual_disconnect:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        if self._auth_rejected:
            # Token refresh path owns what happens next
            return
        self._handle_transport_loss()

    def _handle_transport_loss(self) -> None:
        if self._manual_disconnect or self._destroyed:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        if self._reconnect.exhausted:
            self._fail(
                f"Connection failed after {self._reconnect.max_attempts} attempts. "
                "Retry to reconnect."
            )
            return
        self._reconnect_count += 1
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect.schedule(self._reconnect_now)

    async def _reconnect_now(self) -> None:
        if self._manual_disconnect:
            return
        try:
            await self._open()
        except AuthError:
            pass  # already surfaced by _fail()

    async def _teardown_transport(self, code: int, reason: str) -> None:
        """Stop the heartbeat and recv loop, then close the socket.

        The recv task is cancelled before the socket closes so the close does
        not re-enter the reconnect path.
        """
        self._heartbeat.stop()
        task, self._recv_task = self._recv_task, None
        ws, self._ws = self._ws, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if ws is not None:
            await self._close_socket(ws, code, reason)

    async def _close_socket(self, ws: Any, code: int, reason: str) -> None:
        try:
            await ws.close(code, reason)
        except Exception as exc:
            logger.debug("Error closing socket: %s", exc)

    async def _send_raw(self, data: str) -> bool:
        """Send a text frame. Returns True on success."""
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(data)
        except ConnectionClosed:
            logger.debug("Send failed: connection closed")
            return False
        except Exception as exc:
            logger.debug("Send failed: %s", exc)
            return False
        self._messages_sent += 1
        return True

    async def _send_ping(self) -> bool:
        return await self._send_raw(self._codec.ping())

    async def _on_heartbeat_timeout(self) -> None:
        if self._ws is None:
            return
        logger.warning("Forcing transport closed after missed pong")
        await self._teardown_transport(WS_CLOSE_HEARTBEAT_TIMEOUT, "Heartbeat timeout")
        self._handle_transport_loss()

    # -- Internal: inbound ----------------------------------------------------

    def _on_raw_message(self, data: str | bytes) -> None:
        self._frames_received += 1
        try:
            event = self._codec.decode(data)
        except ProtocolError as exc:
            self._protocol_errors += 1
            logger.warning("Dropping undecodable frame: %s", exc)
            return

        handler = self._server_handlers.get(event.type)
        if handler is None:
            self._protocol_errors += 1
            logger.warning("Unknown message type: %s", event.type)
            return
        try:
            handler(event)
        except Exception as exc:
            logger.error("Handler error for '%s': %s", event.type, exc)

    def _handle_authenticated(self, event: ServerEvent) -> None:
        self._set_state(ConnectionState.AUTHENTICATED)
        logger.info("Authentication successful, starting heartbeat")
        self._reconnect.reset()
        self._token_refresher.reset()
        self._heartbeat.start()
        self._fire_task(self._after_authenticated())

    async def _after_authenticated(self) -> None:
        if self._channel_id:
            logger.info("Rejoining channel %s", self._channel_id)
            await self._send_raw(self._codec.join_event(self._channel_id))
        await self._flush_queue()

    async def _flush_queue(self) -> int:
        """Send queued messages in enqueue order.

        Messages submitted while the flush runs are queued behind it, so
        FIFO order holds. A message leaves the queue only once its frame
        went out; a failed or cancelled send leaves it at the head.
        """
        if self._flushing:
            return 0
        self._flushing = True
        sent = 0
        try:
            if len(self._queue):
                logger.info("Flushing %d queued messages", len(self._queue))
            while self.is_authenticated:
                msg = self._queue.first()
                if msg is None:
                    break
                ok = await self._send_raw(
                    self._codec.send_message(msg.text, msg.channel_id, msg.meta)
                )
                if not ok:
                    msg.retry_count += 1
                    logger.warning(
                        "Queue flush interrupted, %d messages still queued",
                        len(self._queue),
                    )
                    break
                self._queue.discard(msg.id)
                sent += 1
        finally:
            self._flushing = False
        return sent

    def _handle_auth_failed(self, event: ServerEvent) -> None:
        message = event.payload.get("message") or "Authentication failed"
        logger.warning("Authentication failed: %s", message)
        self._auth_rejected = True
        self._set_error_text(message)
        self._set_state(ConnectionState.ERROR)
        if self._auth_retry_task is not None:
            self._auth_retry_task.cancel()
        self._auth_retry_task = asyncio.create_task(self._recover_auth())

    async def _recover_auth(self) -> None:
        try:
            await self._teardown_transport(WS_CLOSE_AUTH_FAILED, "Authentication failed")
            if not await self._token_refresher.refresh():
                self._auth_retry_task = None
                self._fail(_AUTH_FAILED_MSG)
                return
            logger.info("Token refresh successful, retrying connection")
            await asyncio.sleep(self._cfg.auth_retry_delay)
        except asyncio.CancelledError:
            return

        self._auth_retry_task = None
        if self._manual_disconnect:
            return
        try:
            await self._open()
        except AuthError:
            pass

    def _handle_joined_event(self, event: ServerEvent) -> None:
        p = event.payload
        channel_id = p.get("channelId") or p.get("eventId")
        if channel_id:
            self._channel_id = channel_id
        self._messages.clear()
        self._seen_ids.clear()
        for raw in p.get("recentMessages") or []:
            self._append_message(raw)
        logger.info(
            "Joined channel %s (%d recent messages)", channel_id, len(self._messages)
        )
        self._emit("joined", channel_id)

    def _handle_new_message(self, event: ServerEvent) -> None:
        raw = event.payload.get("message")
        if not isinstance(raw, dict):
            logger.warning("new_message without a message body")
            return
        msg = self._append_message(raw)
        if msg is not None:
            self._emit("message", msg)

    def _append_message(self, raw: dict[str, Any]) -> ChatMessage | None:
        try:
            msg = ChatMessage.from_wire(raw)
        except (KeyError, TypeError) as exc:
            logger.warning("Malformed chat message: %s", exc)
            return None
        if msg.id in self._seen_ids:
            logger.debug("Duplicate chat message %s dropped", msg.id)
            return None
        self._seen_ids.add(msg.id)
        self._messages.append(msg)
        return msg

    def _handle_pong(self, event: ServerEvent) -> None:
        self._heartbeat.handle_pong()

    def _handle_rate_limited(self, event: ServerEvent) -> None:
        p = event.payload
        now = time.time()
        next_allowed_at = _parse_timestamp(
            p.get("nextAllowedAt", p.get("nextAllowedTime"))
        )
        if next_allowed_at is None and p.get("retryAfterMs") is not None:
            next_allowed_at = now + float(p["retryAfterMs"]) / 1000.0
        if next_allowed_at is None:
            next_allowed_at = now + RATE_LIMIT_DEFAULT_WINDOW

        self._rate_limit = RateLimitWindow(active=True, next_allowed_at=next_allowed_at)
        if self._rate_limit_task is not None:
            self._rate_limit_task.cancel()
        self._rate_limit_task = asyncio.create_task(
            self._expire_rate_limit(max(next_allowed_at - now, 0.0))
        )

        message = p.get("message") or "Rate limited"
        logger.warning("Rate limited for %.1fs: %s", next_allowed_at - now, message)
        self._set_error_text(message)
        self._notifier.notify("warning", message)
        self._emit("rate_limited", self.rate_limit)

    async def _expire_rate_limit(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        self._rate_limit_task = None
        self._rate_limit = RateLimitWindow()
        self._clear_error_text()
        logger.info("Rate limit window closed")

    def _handle_roster_updated(self, event: ServerEvent) -> None:
        p = event.payload
        if p.get("sessionId"):
            self._roster.track_session(p["sessionId"])
        try:
            snapshot = SessionRoster.from_wire(p)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed roster update: %s", exc)
            return
        self._roster.apply(snapshot, source="push")

    def _handle_error(self, event: ServerEvent) -> None:
        message = event.payload.get("message") or "Unknown server error"
        logger.warning("Server error: %s", message)
        self._set_error_text(message)
        self._notifier.notify("error", message)
        self._emit("error", message)

    def _handle_presence(self, event: ServerEvent) -> None:
        logger.debug("Presence event %s: %s", event.type, event.payload)

    def _on_roster_change(self, roster: SessionRoster) -> None:
        self._emit("roster", roster)

    # -- Internal: state ------------------------------------------------------

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state == self._state:
            return
        old = self._state
        self._state = new_state
        logger.debug("State: %s -> %s", old.value, new_state.value)

        if new_state not in (ConnectionState.CONNECTED, ConnectionState.AUTHENTICATED):
            self._heartbeat.stop()
        self._update_polling()
        self._emit("state_change", new_state)

    def _fail(self, message: str) -> None:
        """Enter the terminal error state and tell the user."""
        logger.error("%s", message)
        self._reconnect.cancel()
        self._heartbeat.stop()
        self._clear_error_text()
        self._last_error = message  # kept until retry()
        self._set_state(ConnectionState.ERROR)
        self._notifier.notify("error", message)
        self._emit("error", message)

    def _polling_eligible(self) -> bool:
        return (
            not self._manual_disconnect
            and self._state in POLLING_STATES
            and self._roster.session_id is not None
            and self._identity.get_current_identity() is not None
            and self._visibility.is_visible
        )

    def _update_polling(self) -> None:
        self._roster.set_polling(self._polling_eligible())

    def _watch_visibility(self) -> None:
        if not self._watching_visibility:
            self._visibility.add_listener(self._on_visibility_change)
            self._watching_visibility = True

    def _unwatch_visibility(self) -> None:
        if self._watching_visibility:
            self._visibility.remove_listener(self._on_visibility_change)
            self._watching_visibility = False

    def _on_visibility_change(self, visible: bool) -> None:
        was_polling = self._roster.polling
        self._update_polling()
        # Starting the loop polls at once; an already-running loop gets an
        # extra immediate poll on top of its interval.
        if visible and was_polling and self._roster.polling:
            logger.debug("Page visible, polling now")
            self._roster.poll_now()

    def _set_error_text(self, message: str) -> None:
        self._last_error = message
        if self._error_clear_task is not None:
            self._error_clear_task.cancel()
            self._error_clear_task = None
        if self._state != ConnectionState.ERROR:
            self._error_clear_task = asyncio.create_task(self._clear_error_later())

    def _clear_error_text(self) -> None:
        self._last_error = None
        if self._error_clear_task is not None:
            self._error_clear_task.cancel()
            self._error_clear_task = None

    async def _clear_error_later(self) -> None:
        try:
            await asyncio.sleep(self._cfg.error_clear_delay)
        except asyncio.CancelledError:
            return
        self._error_clear_task = None
        if self.is_rate_limited or self._state == ConnectionState.ERROR:
            return
        self._last_error = None

    # -- Internal: observers --------------------------------------------------

    def _emit(self, event_type: str, data: Any) -> None:
        handlers = self._handlers.get(event_type, []) + self._wildcard_handlers
        for handler in handlers:
            try:
                result = handler(event_type, data)
                if asyncio.iscoroutine(result):
                    self._fire_task(result)
            except Exception as exc:
                logger.error("Handler error for '%s': %s", event_type, exc)

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)


def _parse_timestamp(value: Any) -> float | None:
    """Server timestamp (ISO-8601 or epoch ms) to epoch seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value) / 1000.0
    if isinstance(value, str):
        try:
            return float(value) / 1000.0
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable timestamp: %r", value)
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return None
