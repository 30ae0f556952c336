"""
Keep-alive and silence supervisors for a call.

KeepAliveSupervisor keeps the upstream agent connection from idling out.
SilenceSupervisor ends the call gracefully when the caller stops responding after
the agent has finished speaking.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from voice_relay.bot.connection_state import UpstreamConnectionState
from voice_relay.bot.timers import RepeatingTimer, cancel_task
from voice_relay.config.constants import (
    DEFAULT_KEEPALIVE_INTERVAL,
    DEFAULT_SILENCE_CHECK_INTERVAL,
    DEFAULT_SILENCE_GRACE_PERIOD,
    DEFAULT_SILENCE_TIMEOUT,
    LOGGER_NAME,
    SILENCE_FAREWELL_MESSAGE,
)
from voice_relay.models.agent_schemas import InjectAgentMessage, KeepAliveMessage

logger = logging.getLogger(LOGGER_NAME)

SendControl = Callable[[Dict[str, Any]], Awaitable[bool]]


class KeepAliveSupervisor:
    """
    Sends a KeepAlive control frame upstream every ``interval`` seconds, but only
    while the socket is open, the connection is READY and no function call is in
    flight. A skipped tick is not queued or retried.
    """

    def __init__(
        self,
        connection: UpstreamConnectionState,
        send_control: SendControl,
        interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        call_id: Optional[str] = None,
    ):
        self.connection = connection
        self.send_control = send_control
        self.interval = interval
        self.call_id = call_id
        self.sent_count = 0
        self._timer: Optional[RepeatingTimer] = None

    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.running

    @property
    def paused(self) -> bool:
        return self.connection.function_call_in_flight

    def start(self) -> None:
        if self.running:
            return
        self._timer = RepeatingTimer(self.interval, self.tick, name=f"keepalive-{self.call_id}")
        self._timer.start()
        logger.info(f"Keep-alive started for call {self.call_id} (every {self.interval}s)")

    async def stop(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            await timer.stop()

    def pause(self) -> None:
        self.connection.function_call_in_flight = True
        logger.info(f"Keep-alive paused for function processing (call {self.call_id})")

    def resume(self) -> None:
        self.connection.function_call_in_flight = False
        logger.info(f"Keep-alive resumed after function processing (call {self.call_id})")

    async def tick(self) -> bool:
        """Send one keep-alive if allowed. Returns True when a frame was sent."""
        if not (
            self.connection.socket_open
            and self.connection.is_ready
            and not self.connection.function_call_in_flight
        ):
            return False
        sent = await self.send_control(KeepAliveMessage().model_dump())
        if sent:
            self.sent_count += 1
            logger.debug(f"Keep-alive sent for call {self.call_id}")
        return sent


class SilenceSupervisor:
    """
    Tracks how long the caller has been silent since the agent finished speaking.

    Once the silence reaches ``threshold`` the agent is asked to say goodbye
    (exactly once) and, after ``grace_period`` seconds for that goodbye to be
    spoken, ``on_timeout`` is awaited to end the call. Any speech before the
    threshold cancels the sequence.
    """

    def __init__(
        self,
        send_control: SendControl,
        on_timeout: Callable[[str], Awaitable[None]],
        threshold: float = DEFAULT_SILENCE_TIMEOUT,
        check_interval: float = DEFAULT_SILENCE_CHECK_INTERVAL,
        grace_period: float = DEFAULT_SILENCE_GRACE_PERIOD,
        farewell_message: str = SILENCE_FAREWELL_MESSAGE,
        call_id: Optional[str] = None,
    ):
        self.send_control = send_control
        self.on_timeout = on_timeout
        self.threshold = threshold
        self.check_interval = check_interval
        self.grace_period = grace_period
        self.farewell_message = farewell_message
        self.call_id = call_id

        self.silence_start: Optional[float] = None
        self.prompt_count = 0
        self.paused = False
        self.farewell_sent = False
        self._task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None

    @property
    def armed(self) -> bool:
        return self.silence_start is not None

    @property
    def shutting_down(self) -> bool:
        return self._shutdown_task is not None

    def elapsed(self) -> float:
        if self.silence_start is None:
            return 0.0
        return asyncio.get_running_loop().time() - self.silence_start

    def arm(self, timestamp: Optional[float] = None) -> None:
        """Start a silence window at ``timestamp`` (loop clock), default now."""
        if self.paused:
            logger.debug(f"Silence timer paused, not arming (call {self.call_id})")
            return
        if self.shutting_down:
            return
        loop = asyncio.get_running_loop()
        self.silence_start = timestamp if timestamp is not None else loop.time()
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._watch(), name=f"silence-{self.call_id}")
        logger.debug(f"Silence window armed for call {self.call_id}")

    def reset(self) -> None:
        """Cancel the silence window (caller spoke)."""
        if self.shutting_down:
            return
        if self.silence_start is not None:
            logger.debug(f"Silence window reset for call {self.call_id}")
        self.silence_start = None
        self.prompt_count = 0
        self._cancel_watch()

    def pause(self, reason: str) -> None:
        """Suspend silence tracking, e.g. while the agent is thinking."""
        logger.info(f"Silence timer paused for call {self.call_id}: {reason}")
        self.paused = True
        self.silence_start = None
        self._cancel_watch()

    def resume(self, reason: str) -> None:
        logger.info(f"Silence timer resumed for call {self.call_id}: {reason}")
        self.paused = False

    async def stop(self) -> None:
        """Cancel every pending timer. Idempotent."""
        self.silence_start = None
        task, self._task = self._task, None
        shutdown, self._shutdown_task = self._shutdown_task, None
        await cancel_task(task)
        await cancel_task(shutdown)

    def _cancel_watch(self) -> None:
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None

    async def _watch(self) -> None:
        while self.silence_start is not None:
            await asyncio.sleep(self.check_interval)
            if self.silence_start is None:
                return
            elapsed = self.elapsed()
            logger.debug(f"Silence check for call {self.call_id}: {elapsed:.1f}s")
            if elapsed >= self.threshold:
                self._shutdown_task = asyncio.create_task(
                    self._shutdown(elapsed), name=f"silence-shutdown-{self.call_id}"
                )
                self.silence_start = None
                return

    async def _shutdown(self, elapsed: float) -> None:
        logger.info(
            f"Silence timeout for call {self.call_id} after {elapsed:.1f}s, sending farewell"
        )
        if not self.farewell_sent:
            self.farewell_sent = True
            self.prompt_count += 1
            await self.send_control(InjectAgentMessage(content=self.farewell_message).model_dump())
        # the farewell is spoken asynchronously, always wait the full grace period
        await asyncio.sleep(self.grace_period)
        logger.info(f"Ending call {self.call_id} after silence timeout")
        await self.on_timeout("silence timeout")
