"""
Handlers for the telephony media-stream events.

Each handler receives the decoded JSON envelope and the per-connection state.
The start handler creates the CallSession for the stream; the media handler is
the hot path and forwards caller audio without building pydantic models.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from fastapi import WebSocket
from pydantic import ValidationError

from voice_relay.bot.call_session import CallSession
from voice_relay.config.constants import LOGGER_NAME
from voice_relay.config.logging_config import bind_call_id
from voice_relay.exceptions import SessionStartError
from voice_relay.models.message_schemas import (
    SUPPORTED_ENCODINGS,
    ConnectedMessage,
    DtmfMessage,
    MarkMessage,
    StartMessage,
    StopMessage,
)
from voice_relay.services.collaborators import CallContext

if TYPE_CHECKING:
    from voice_relay.websocket_manager import WebSocketManager

logger = logging.getLogger(LOGGER_NAME)

# Close code sent when a stream cannot be served (policy violation)
POLICY_VIOLATION_CLOSE_CODE = 1008


@dataclass
class TelephonyConnection:
    """State of one telephony WebSocket."""
    websocket: WebSocket
    manager: "WebSocketManager"
    session: Optional[CallSession] = None
    start_task: Optional[asyncio.Task] = None
    stream_sid: Optional[str] = None
    closed: bool = False
    media_frames: int = 0


async def handle_connected(message: Dict[str, Any], connection: TelephonyConnection) -> None:
    try:
        connected = ConnectedMessage(**message)
        logger.info(f"Telephony stream connected (protocol={connected.protocol}, version={connected.version})")
    except ValidationError as e:
        logger.error(f"Invalid connected message: {e}")


async def handle_start(message: Dict[str, Any], connection: TelephonyConnection) -> None:
    """
    Handle the start message that opens a media stream.

    The message must carry a tenant id in its custom parameters
    (``business_id`` or ``tenant_id``); without one the stream cannot be
    configured and the telephony socket is closed. Otherwise a CallSession is
    created, registered and started in the background so that the receive
    loop keeps reading while the agent handshake runs.
    """
    try:
        start = StartMessage(**message)
    except ValidationError as e:
        logger.error(f"Invalid start message: {e}")
        return

    if connection.session is not None:
        logger.warning(f"Duplicate start for call {connection.session.call_id}, ignoring")
        return

    tenant_id = start.tenant_id
    if not tenant_id:
        logger.error("Start message has no tenant id, closing telephony connection")
        connection.closed = True
        try:
            await connection.websocket.close(code=POLICY_VIOLATION_CLOSE_CODE)
        except RuntimeError as e:
            logger.warning(f"Error closing telephony connection: {e}")
        return

    media_format = start.start.mediaFormat
    if media_format is not None and media_format.encoding not in SUPPORTED_ENCODINGS:
        logger.warning(f"Unexpected media encoding {media_format.encoding}, relaying as μ-law")

    params = start.start.customParameters
    connection.stream_sid = start.stream_sid
    call_id = start.call_id or start.stream_sid or str(uuid.uuid4())
    bind_call_id(call_id)
    context = CallContext(
        call_id=call_id,
        stream_id=start.stream_sid,
        tenant_id=tenant_id,
        caller_phone=params.get("caller_phone") or params.get("from"),
        called_phone=params.get("called_phone") or params.get("to"),
    )
    logger.info(f"Media stream started: call={call_id} stream={start.stream_sid} tenant={tenant_id}")

    session = connection.manager.create_session(context, connection.websocket)
    connection.session = session
    connection.start_task = asyncio.create_task(_start_session(session), name=f"start-{call_id}")


async def _start_session(session: CallSession) -> None:
    try:
        await session.start()
    except SessionStartError as e:
        logger.error(f"Could not start session for call {session.call_id}: {e}")


async def handle_media(message: Dict[str, Any], connection: TelephonyConnection) -> None:
    """Forward one caller audio frame upstream."""
    session = connection.session
    if session is None:
        logger.debug("Media received before start, dropping")
        return
    media = message.get("media")
    payload = media.get("payload") if isinstance(media, dict) else None
    if not payload:
        logger.warning(f"Media message without payload for call {session.call_id}")
        return
    connection.media_frames += 1
    await session.on_inbound_media(payload)


async def handle_stop(message: Dict[str, Any], connection: TelephonyConnection) -> None:
    try:
        stop = StopMessage(**message)
        logger.info(f"Media stream stopped: stream={stop.streamSid}")
    except ValidationError as e:
        logger.error(f"Invalid stop message: {e}")
    connection.closed = True
    if connection.session is not None:
        await connection.session.close("telephony stream stopped", close_telephony=False)


async def handle_mark(message: Dict[str, Any], connection: TelephonyConnection) -> None:
    try:
        mark = MarkMessage(**message)
        logger.debug(f"Mark received: {mark.mark.get('name')}")
    except ValidationError as e:
        logger.error(f"Invalid mark message: {e}")


async def handle_dtmf(message: Dict[str, Any], connection: TelephonyConnection) -> None:
    try:
        dtmf = DtmfMessage(**message)
    except ValidationError as e:
        logger.error(f"Invalid dtmf message: {e}")
        return
    call_id = connection.session.call_id if connection.session else None
    logger.info(f"DTMF digit {dtmf.dtmf.get('digit')!r} on call {call_id}")
