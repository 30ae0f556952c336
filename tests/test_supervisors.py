import asyncio
from unittest.mock import AsyncMock

import pytest

from voice_relay.bot.connection_state import UpstreamConnectionState, UpstreamState
from voice_relay.bot.supervisors import KeepAliveSupervisor, SilenceSupervisor
from voice_relay.config.constants import SILENCE_FAREWELL_MESSAGE

from conftest import wait_until


def ready_connection():
    connection = UpstreamConnectionState()
    connection.state = UpstreamState.READY
    connection.socket_open = True
    return connection


@pytest.mark.asyncio
class TestKeepAliveSupervisor:
    async def test_tick_sends_keepalive_when_ready(self):
        send = AsyncMock(return_value=True)
        keep_alive = KeepAliveSupervisor(ready_connection(), send, interval=4.0)
        assert await keep_alive.tick() is True
        send.assert_awaited_once_with({"type": "KeepAlive"})
        assert keep_alive.sent_count == 1

    async def test_tick_skipped_before_ready(self):
        send = AsyncMock(return_value=True)
        connection = ready_connection()
        connection.state = UpstreamState.CONFIGURING_AGENT
        keep_alive = KeepAliveSupervisor(connection, send)
        assert await keep_alive.tick() is False
        send.assert_not_awaited()

    async def test_tick_skipped_when_socket_closed(self):
        send = AsyncMock(return_value=True)
        connection = ready_connection()
        connection.socket_open = False
        keep_alive = KeepAliveSupervisor(connection, send)
        assert await keep_alive.tick() is False
        send.assert_not_awaited()

    async def test_pause_and_resume(self):
        send = AsyncMock(return_value=True)
        connection = ready_connection()
        keep_alive = KeepAliveSupervisor(connection, send)

        keep_alive.pause()
        assert connection.function_call_in_flight
        assert keep_alive.paused
        assert await keep_alive.tick() is False

        keep_alive.resume()
        assert not connection.function_call_in_flight
        assert await keep_alive.tick() is True
        assert send.await_count == 1

    async def test_timer_sends_at_interval(self):
        send = AsyncMock(return_value=True)
        keep_alive = KeepAliveSupervisor(ready_connection(), send, interval=0.02)
        keep_alive.start()
        await asyncio.sleep(0.11)
        await keep_alive.stop()
        count = send.await_count
        await asyncio.sleep(0.05)

        assert 4 <= count <= 6
        assert send.await_count == count
        assert not keep_alive.running

    async def test_no_keepalive_while_paused(self):
        send = AsyncMock(return_value=True)
        keep_alive = KeepAliveSupervisor(ready_connection(), send, interval=0.01)
        keep_alive.pause()
        keep_alive.start()
        await asyncio.sleep(0.05)
        assert send.await_count == 0
        keep_alive.resume()
        await asyncio.sleep(0.035)
        await keep_alive.stop()
        assert send.await_count >= 2


def make_silence(**kwargs):
    send = AsyncMock(return_value=True)
    on_timeout = AsyncMock()
    supervisor = SilenceSupervisor(
        send_control=send,
        on_timeout=on_timeout,
        threshold=kwargs.get("threshold", 0.1),
        check_interval=kwargs.get("check_interval", 0.02),
        grace_period=kwargs.get("grace_period", 0.05),
        call_id="CA1",
    )
    return supervisor, send, on_timeout


@pytest.mark.asyncio
class TestSilenceSupervisor:
    async def test_timeout_sends_one_farewell_then_ends_call(self):
        supervisor, send, on_timeout = make_silence()
        loop = asyncio.get_running_loop()
        times = {}
        send.side_effect = lambda message: times.setdefault("farewell", loop.time()) and True
        on_timeout.side_effect = lambda reason: times.setdefault("timeout", loop.time())

        supervisor.arm()
        await wait_until(lambda: on_timeout.await_count == 1)

        send.assert_awaited_once_with({"type": "InjectAgentMessage", "content": SILENCE_FAREWELL_MESSAGE})
        on_timeout.assert_awaited_once_with("silence timeout")
        assert times["timeout"] - times["farewell"] >= 0.045
        assert supervisor.farewell_sent
        assert supervisor.prompt_count == 1
        await supervisor.stop()

    async def test_speech_before_threshold_cancels(self):
        supervisor, send, on_timeout = make_silence()
        supervisor.arm()
        await asyncio.sleep(0.05)
        supervisor.reset()
        await asyncio.sleep(0.25)

        send.assert_not_awaited()
        on_timeout.assert_not_awaited()
        assert not supervisor.armed

    async def test_rearm_restarts_the_window(self):
        supervisor, send, on_timeout = make_silence()
        supervisor.arm()
        await asyncio.sleep(0.06)
        supervisor.arm()
        await asyncio.sleep(0.06)
        send.assert_not_awaited()
        await wait_until(lambda: on_timeout.await_count == 1)

    async def test_speech_after_farewell_does_not_cancel_shutdown(self):
        supervisor, send, on_timeout = make_silence(grace_period=0.1)
        supervisor.arm()
        await wait_until(lambda: send.await_count == 1)
        supervisor.reset()
        await wait_until(lambda: on_timeout.await_count == 1)
        assert send.await_count == 1

    async def test_arm_while_paused_is_ignored(self):
        supervisor, send, on_timeout = make_silence()
        supervisor.pause("Agent is thinking")
        supervisor.arm()
        assert not supervisor.armed
        await asyncio.sleep(0.2)
        send.assert_not_awaited()

        supervisor.resume("done")
        supervisor.arm()
        assert supervisor.armed
        await supervisor.stop()

    async def test_pause_cancels_running_window(self):
        supervisor, send, on_timeout = make_silence()
        supervisor.arm()
        await asyncio.sleep(0.04)
        supervisor.pause("Processing function calls")
        await asyncio.sleep(0.2)
        send.assert_not_awaited()
        on_timeout.assert_not_awaited()

    async def test_stop_cancels_pending_shutdown(self):
        supervisor, send, on_timeout = make_silence(grace_period=0.2)
        supervisor.arm()
        await wait_until(lambda: send.await_count == 1)
        await supervisor.stop()
        await supervisor.stop()
        await asyncio.sleep(0.3)
        on_timeout.assert_not_awaited()

    async def test_arm_with_explicit_timestamp(self):
        supervisor, send, on_timeout = make_silence(threshold=1.0)
        past = asyncio.get_running_loop().time() - 0.99
        supervisor.arm(past)
        await wait_until(lambda: send.await_count == 1, timeout=0.5)
        await supervisor.stop()
