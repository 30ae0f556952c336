"""
Telephony side of a call: caller audio in, paced agent audio out.

Inbound media payloads are base64-decoded and forwarded upstream untouched
(μ-law in, μ-law out). Outbound, the pacer pulls one frame per tick through
this relay, which wraps it in a media envelope for the carrier.
"""

import base64
import binascii
import logging
from typing import Awaitable, Callable, Optional

from fastapi import WebSocket
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from voice_relay.bot.pacer import JitterBufferPacer
from voice_relay.config.constants import LOGGER_NAME
from voice_relay.models.message_schemas import (
    ClearMessage,
    OutboundMediaMessage,
    OutboundMediaPayload,
)

logger = logging.getLogger(LOGGER_NAME)


class TelephonyFrameRelay:
    """
    Owns the telephony WebSocket of one call.

    Args:
        websocket: The accepted telephony WebSocket
        stream_sid: Media stream identifier echoed on every outbound frame
        pacer: Source of outbound frames
        forward_audio: Sends caller audio upstream, returns False on failure
        can_forward: Whether the upstream is ready to accept caller audio
        expected_frame_size: Inbound frame size of the codec; other sizes
            are logged but still forwarded
        call_id: Call identifier for log messages
    """

    def __init__(
        self,
        websocket: WebSocket,
        stream_sid: str,
        pacer: JitterBufferPacer,
        forward_audio: Callable[[bytes], Awaitable[bool]],
        can_forward: Callable[[], bool],
        expected_frame_size: Optional[int] = None,
        call_id: Optional[str] = None,
    ):
        self.websocket = websocket
        self.stream_sid = stream_sid
        self.pacer = pacer
        self.forward_audio = forward_audio
        self.can_forward = can_forward
        self.expected_frame_size = expected_frame_size
        self.call_id = call_id
        self._closed = False
        self._size_mismatch_logged = False

        self.frames_in = 0
        self.frames_out = 0
        self.dropped_in = 0

    @property
    def is_open(self) -> bool:
        if self._closed:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def on_inbound_frame(self, payload: str) -> bool:
        """
        Forward one caller media payload upstream.

        Returns:
            True when the audio was sent, False when it was dropped
        """
        try:
            audio = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            logger.warning(f"Dropping invalid media payload for call {self.call_id}: {e}")
            self.dropped_in += 1
            return False
        if not audio:
            logger.warning(f"Dropping empty media payload for call {self.call_id}")
            self.dropped_in += 1
            return False
        if self.expected_frame_size and len(audio) != self.expected_frame_size:
            # some carriers send short frames at stream boundaries
            log = logger.debug if self._size_mismatch_logged else logger.info
            log(
                f"Inbound frame of {len(audio)} bytes on call {self.call_id}, "
                f"expected {self.expected_frame_size}"
            )
            self._size_mismatch_logged = True
        if not self.can_forward():
            logger.debug(f"Agent not ready, dropping {len(audio)} bytes of caller audio (call {self.call_id})")
            self.dropped_in += 1
            return False
        sent = await self.forward_audio(audio)
        if sent:
            self.frames_in += 1
        else:
            self.dropped_in += 1
        return sent

    def request_outbound_frame(self) -> bytes:
        """Pull the next frame from the pacer (audio or silence)."""
        return self.pacer.drain()

    async def on_pacer_tick(self) -> None:
        await self.send_frame(self.request_outbound_frame())

    def _wrap(self, frame: bytes) -> OutboundMediaMessage:
        return OutboundMediaMessage(
            streamSid=self.stream_sid,
            media=OutboundMediaPayload(payload=base64.b64encode(frame).decode("ascii")),
        )

    async def send_frame(self, frame: bytes) -> bool:
        """Send one frame; a frame that cannot be encoded is replaced by silence."""
        try:
            message = self._wrap(frame)
        except (ValueError, TypeError) as e:
            logger.warning(f"Could not encode outbound frame for call {self.call_id}, sending silence: {e}")
            message = self._wrap(self.pacer.silence_frame)
        sent = await self._send(message)
        if sent:
            self.frames_out += 1
        return sent

    async def send_clear(self) -> bool:
        """Tell the carrier to drop audio it has queued but not yet played."""
        sent = await self._send(ClearMessage(streamSid=self.stream_sid))
        if sent:
            logger.info(f"Sent clear for call {self.call_id}")
        return sent

    async def _send(self, message: BaseModel) -> bool:
        if not self.is_open:
            return False
        try:
            await self.websocket.send_text(message.model_dump_json())
            return True
        except Exception as e:
            logger.warning(f"Telephony send failed for call {self.call_id}: {e}")
            self._closed = True
            return False

    async def close(self, code: int = 1000) -> None:
        """Close the telephony WebSocket. Idempotent."""
        if self._closed:
            return
        was_open = self.is_open
        self._closed = True
        if not was_open:
            return
        try:
            await self.websocket.close(code=code)
            logger.info(f"Telephony connection closed for call {self.call_id}")
        except Exception as e:
            logger.warning(f"Error closing telephony connection for call {self.call_id}: {e}")
