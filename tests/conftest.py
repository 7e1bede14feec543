"""Shared fixtures: an in-memory websocket double and fast timing configs."""

import asyncio
import json

import pytest
import pytest_asyncio

from booth_client.collaborators import (
    InMemorySnapshotStore,
    ManualVisibility,
    StaticIdentityProvider,
)
from booth_client.connection import ConnectionManager
from booth_client.errors import TransientTransportError
from booth_client.types import (
    ClientConfig,
    ConnectionState,
    HeartbeatConfig,
    Identity,
    ReconnectConfig,
)


class FakeWebSocket:
    """Socket double: records sends, yields frames fed by the test."""

    def __init__(self):
        self.sent: list[str] = []
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.fail_sends = False
        # When set, chat frames wait on it before going out
        self.hold_messages: asyncio.Event | None = None
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data):
        if self.hold_messages is not None and "send_message" in data:
            await self.hold_messages.wait()
        if self.closed or self.fail_sends:
            raise ConnectionError("socket closed")
        self.sent.append(data)

    async def close(self, code=1000, reason=""):
        if not self.closed:
            self.closed = True
            self.close_code = code
            self.close_reason = reason
            self._inbox.put_nowait(None)

    def feed(self, type, **fields):
        self._inbox.put_nowait(json.dumps({"type": type, **fields}))

    def feed_raw(self, data):
        self._inbox.put_nowait(data)

    def drop(self, code=1006, reason=""):
        """Server-side close."""
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def frames(self, type=None):
        parsed = [json.loads(s) for s in self.sent]
        if type is None:
            return parsed
        return [f for f in parsed if f["type"] == type]


class FakeServer:
    """Transport factory handing out FakeWebSockets."""

    def __init__(self):
        self.sockets: list[FakeWebSocket] = []
        self.opens = 0
        self.refuse = False

    async def __call__(self, url, headers):
        self.opens += 1
        if self.refuse:
            raise TransientTransportError("Failed to connect: refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def ws(self) -> FakeWebSocket:
        return self.sockets[-1]


class FakeFetcher:
    """SessionMetaFetcher double returning queued snapshots.

    A queued exception instance is raised instead of returned.
    """

    def __init__(self, *snapshots):
        self.snapshots = list(snapshots)
        self.calls: list[str] = []

    async def fetch(self, session_id):
        self.calls.append(session_id)
        if not self.snapshots:
            return None
        item = self.snapshots.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


async def authenticate(client, server) -> FakeWebSocket:
    """Connect and complete the handshake."""
    await client.connect()
    ws = server.ws
    ws.feed("authenticated")
    await wait_for(lambda: client.state == ConnectionState.AUTHENTICATED)
    # let the post-auth rejoin/flush run
    await settle()
    return ws


async def reopened(client, server, count: int = 2) -> FakeWebSocket:
    """Wait until the client has opened its *count*-th socket."""
    await wait_for(
        lambda: len(server.sockets) == count
        and client.state == ConnectionState.CONNECTED
    )
    return server.ws


def make_client(server, identity, **kwargs) -> ConnectionManager:
    kwargs.setdefault("config", fast_config())
    kwargs.setdefault("visibility", ManualVisibility(True))
    return ConnectionManager(
        "ws://booth.test/ws",
        identity=identity,
        transport_factory=server,
        **kwargs,
    )


def fast_config(**overrides) -> ClientConfig:
    cfg = ClientConfig(
        reconnect=ReconnectConfig(base_delay=0.01, max_delay=0.02, max_attempts=10),
        heartbeat=HeartbeatConfig(interval=5.0, timeout=5.0),
        poll_interval=0.05,
        auth_retry_delay=0.01,
        error_clear_delay=0.05,
        connection_timeout=1.0,
    )
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def identity():
    return StaticIdentityProvider(Identity(user_id="user-1", token="jwt-1"))


@pytest.fixture
def visibility():
    return ManualVisibility(True)


@pytest_asyncio.fixture
async def client(server, identity, visibility):
    c = make_client(server, identity, visibility=visibility)
    yield c
    await c.disconnect()


@pytest.fixture
def snapshot_store():
    return InMemorySnapshotStore(
        {
            "sessionId": "sess-1",
            "version": 4,
            "casters": [{"id": "c1", "name": "Ana", "role": "host"}],
            "timestamp": "2026-01-01T00:00:00Z",
        }
    )
