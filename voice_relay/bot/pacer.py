"""
Jitter-buffered pacer for the telephony leg.

Agent audio arrives in bursts of irregular size and timing, while the carrier
expects exactly one media frame every tick. The pacer decouples the two: audio is
appended to a FIFO byte queue as it arrives, and a fixed clock drains exactly one
frame per tick, substituting a silence frame when the queue runs dry.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from voice_relay.bot import mulaw
from voice_relay.bot.timers import RepeatingTimer
from voice_relay.config.constants import (
    FADE_IN_MS,
    LOGGER_NAME,
    MULAW_SILENCE_BYTE,
    UTTERANCE_GAP_MS,
)

logger = logging.getLogger(LOGGER_NAME)


class JitterBufferPacer:
    """
    FIFO byte queue plus a fixed-interval clock.

    The pacer is the only thing that decides when a frame goes to the
    telephony leg: each tick it awaits ``on_tick``, which pulls exactly one
    frame through ``drain()``.
    """

    def __init__(
        self,
        frame_size: int,
        tick_interval_ms: float,
        silence_byte: int = MULAW_SILENCE_BYTE,
        fade_in_bytes: Optional[int] = None,
        utterance_gap_ms: float = UTTERANCE_GAP_MS,
        call_id: Optional[str] = None,
    ):
        if frame_size <= 0 or tick_interval_ms <= 0:
            raise ValueError("Frame size and tick interval must be positive")
        self.frame_size = frame_size
        self.tick_interval_ms = tick_interval_ms
        self.silence_frame = bytes([silence_byte]) * frame_size
        bytes_per_ms = frame_size / tick_interval_ms
        self.fade_in_bytes = (
            fade_in_bytes if fade_in_bytes is not None else int(FADE_IN_MS * bytes_per_ms)
        )
        self.utterance_gap = utterance_gap_ms / 1000
        self.call_id = call_id

        self._buffer = bytearray()
        self._timer: Optional[RepeatingTimer] = None
        self._is_sink_open: Callable[[], bool] = lambda: False
        self._streaming = False
        self._last_feed: Optional[float] = None

        self.frames_sent = 0
        self.silence_frames_sent = 0

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.running

    def start(
        self,
        on_tick: Callable[[], Awaitable[None]],
        is_sink_open: Callable[[], bool],
    ) -> None:
        """
        Start the tick clock.

        Args:
            on_tick: Awaited once per tick while the sink is open
            is_sink_open: Checked before each tick; a closed sink skips the tick
        """
        if self.running:
            return
        self._is_sink_open = is_sink_open

        async def _tick():
            if not self._is_sink_open():
                return
            await on_tick()

        self._timer = RepeatingTimer(
            self.tick_interval_ms / 1000, _tick, name=f"pacer-{self.call_id}"
        )
        self._timer.start()
        logger.info(
            f"Pacer started for call {self.call_id}: {self.frame_size} bytes every {self.tick_interval_ms:g}ms"
        )

    async def stop(self) -> None:
        """Cancel the clock and release the buffer. Idempotent."""
        timer, self._timer = self._timer, None
        if timer is not None:
            await timer.stop()
            logger.info(
                f"Pacer stopped for call {self.call_id}: {self.frames_sent} frames "
                f"({self.silence_frames_sent} silence)"
            )
        self._buffer.clear()
        self._streaming = False

    def feed(self, data: bytes) -> None:
        """Append audio to the queue, ramping in the first chunk of an utterance."""
        if not data:
            logger.warning(f"Ignoring empty audio chunk for call {self.call_id}")
            return
        now = self._now()
        if self._streaming and self._last_feed is not None and now - self._last_feed > self.utterance_gap:
            self._streaming = False
        if not self._streaming:
            data = mulaw.fade_in(data, self.fade_in_bytes)
            self._streaming = True
        self._last_feed = now
        self._buffer.extend(data)

    def drain(self) -> bytes:
        """Return exactly one frame: queued audio if a full frame is available, else silence."""
        if len(self._buffer) >= self.frame_size:
            frame = bytes(self._buffer[:self.frame_size])
            del self._buffer[:self.frame_size]
            self.frames_sent += 1
            return frame
        self.frames_sent += 1
        self.silence_frames_sent += 1
        return self.silence_frame

    def end_utterance(self) -> None:
        """Mark the current utterance as finished so the next one is ramped in."""
        self._streaming = False

    def clear(self) -> int:
        """Drop all queued audio. Returns the number of bytes discarded."""
        dropped = len(self._buffer)
        self._buffer.clear()
        self._streaming = False
        if dropped:
            logger.info(f"Cleared {dropped} buffered bytes for call {self.call_id}")
        return dropped

    @staticmethod
    def _now() -> float:
        try:
            return asyncio.get_running_loop().time()
        except RuntimeError:
            return 0.0
