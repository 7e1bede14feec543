"""Tests for the heartbeat monitor."""

import asyncio
from unittest.mock import MagicMock

import pytest

from booth_client.heartbeat import HeartbeatMonitor
from tests.conftest import wait_for


class PingRecorder:
    def __init__(self, ok=True):
        self.ok = ok
        self.count = 0

    async def __call__(self):
        self.count += 1
        return self.ok


@pytest.mark.asyncio
async def test_timeout_fires_without_pong():
    ping = PingRecorder()
    on_timeout = MagicMock()
    hb = HeartbeatMonitor(ping, on_timeout, interval=0.01, timeout=0.03)
    hb.start()
    await wait_for(lambda: on_timeout.called)
    assert ping.count >= 1
    on_timeout.assert_called_once()
    assert hb.running is False
    hb.stop()


@pytest.mark.asyncio
async def test_async_timeout_callback_is_awaited():
    fired = asyncio.Event()

    async def on_timeout():
        fired.set()

    hb = HeartbeatMonitor(PingRecorder(), on_timeout, interval=0.01, timeout=0.02)
    hb.start()
    await asyncio.wait_for(fired.wait(), 1.0)
    hb.stop()


@pytest.mark.asyncio
async def test_pong_prevents_timeout():
    ping = PingRecorder()
    on_timeout = MagicMock()
    hb = HeartbeatMonitor(ping, on_timeout, interval=0.01, timeout=0.05)
    hb.start()
    for _ in range(10):
        await asyncio.sleep(0.015)
        hb.handle_pong()
    hb.stop()
    on_timeout.assert_not_called()
    assert hb.get_stats()["pongs_received"] == 10
    assert hb.last_rtt is not None


@pytest.mark.asyncio
async def test_failed_ping_does_not_arm_timeout():
    on_timeout = MagicMock()
    hb = HeartbeatMonitor(PingRecorder(ok=False), on_timeout, interval=0.01, timeout=0.02)
    hb.start()
    await asyncio.sleep(0.08)
    hb.stop()
    on_timeout.assert_not_called()
    assert hb.get_stats()["pings_sent"] == 0


@pytest.mark.asyncio
async def test_stop_cancels_everything():
    on_timeout = MagicMock()
    hb = HeartbeatMonitor(PingRecorder(), on_timeout, interval=0.01, timeout=0.05)
    hb.start()
    await wait_for(lambda: hb.awaiting_pong)
    hb.stop()
    assert hb.running is False
    assert hb.awaiting_pong is False
    await asyncio.sleep(0.08)
    on_timeout.assert_not_called()


@pytest.mark.asyncio
async def test_unanswered_pings_keep_first_deadline():
    # Pings every 10ms never push the 50ms deadline of the first one back
    loop = asyncio.get_running_loop()
    fired_at = []
    ping = PingRecorder()
    hb = HeartbeatMonitor(
        ping, lambda: fired_at.append(loop.time()), interval=0.01, timeout=0.05
    )
    started = loop.time()
    hb.start()
    await wait_for(lambda: fired_at)
    assert ping.count >= 3
    assert fired_at[0] - started < 0.2
    assert hb.get_stats()["pings_sent"] == ping.count


@pytest.mark.asyncio
async def test_pong_rearms_on_next_ping():
    on_timeout = MagicMock()
    hb = HeartbeatMonitor(PingRecorder(), on_timeout, interval=0.01, timeout=0.5)
    hb.start()
    await wait_for(lambda: hb.awaiting_pong)
    hb.handle_pong()
    assert hb.awaiting_pong is False
    await wait_for(lambda: hb.awaiting_pong)
    hb.stop()
    on_timeout.assert_not_called()
