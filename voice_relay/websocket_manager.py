"""
WebSocket connection manager for the telephony media stream.

This module implements the server side of the media-stream WebSocket, providing
the infrastructure to:
- Accept and manage telephony WebSocket connections
- Route incoming events to the appropriate handler functions
- Create one CallSession per stream and track it in the SessionManager
- Tear the session down when the telephony leg goes away

The WebSocketManager class is the central component that connects a telephony
stream to its CallSession.
"""

import asyncio
import json
import logging
import socket
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from voice_relay.bot.call_session import CallSession
from voice_relay.config.constants import (
    EVENT_CONNECTED,
    EVENT_DTMF,
    EVENT_MARK,
    EVENT_MEDIA,
    EVENT_START,
    EVENT_STOP,
    LOGGER_NAME,
)
from voice_relay.config.settings import RelaySettings
from voice_relay.handlers.telephony_handlers import (
    TelephonyConnection,
    handle_connected,
    handle_dtmf,
    handle_mark,
    handle_media,
    handle_start,
    handle_stop,
)
from voice_relay.models.sessions import SessionManager
from voice_relay.services.collaborators import (
    AgentConfigProvider,
    CallContext,
    FunctionHandler,
    TranscriptStore,
)

logger = logging.getLogger(LOGGER_NAME)

# Type hint for handler functions
HandlerFunc = Callable[[Dict[str, Any], TelephonyConnection], Awaitable[None]]


class WebSocketManager:
    """Routes telephony WebSocket events to handlers and owns the session registry.

    Each event is routed to a handler based on its "event" field. Media events
    take a fast path that skips logging and model validation.
    """

    def __init__(
        self,
        settings: RelaySettings,
        config_provider: AgentConfigProvider,
        function_handler: FunctionHandler,
        transcript_store: TranscriptStore,
        session_factory: Optional[Callable[..., CallSession]] = None,
    ):
        self.settings = settings
        self.config_provider = config_provider
        self.function_handler = function_handler
        self.transcript_store = transcript_store
        self.session_factory = session_factory or CallSession
        self.session_manager = SessionManager()

        self.handlers: Dict[str, HandlerFunc] = {
            EVENT_CONNECTED: handle_connected,
            EVENT_START: handle_start,
            EVENT_MEDIA: handle_media,
            EVENT_STOP: handle_stop,
            EVENT_MARK: handle_mark,
            EVENT_DTMF: handle_dtmf,
        }

    def create_session(self, context: CallContext, websocket: WebSocket) -> CallSession:
        """Create a CallSession for a new stream and register it."""
        session = self.session_factory(
            context=context,
            websocket=websocket,
            settings=self.settings,
            config_provider=self.config_provider,
            function_handler=self.function_handler,
            transcript_store=self.transcript_store,
            on_closed=self._on_session_closed,
        )
        self.session_manager.add_session(session)
        logger.info(f"Session registered: {context.call_id} ({len(self.session_manager)} active)")
        return session

    def _on_session_closed(self, session: CallSession) -> None:
        self.session_manager.remove_session(session.call_id)
        logger.info(f"Session removed: {session.call_id} ({len(self.session_manager)} active)")

    async def _optimize_socket(self, websocket: WebSocket) -> None:
        """
        Disable Nagle's algorithm on the underlying TCP socket so media frames
        go out as soon as they are written.
        """
        try:
            client = websocket.client
            if hasattr(client, "sock") and client.sock is not None:
                client.sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                logger.info("Optimized socket: TCP_NODELAY enabled for low latency")
        except OSError as e:
            logger.warning(f"Could not optimize socket: {e}")

    async def handle_websocket(self, websocket: WebSocket):
        """Handle a telephony WebSocket connection throughout its lifecycle.

        Args:
            websocket (WebSocket): The FastAPI WebSocket connection object

        This method:
        1. Accepts the WebSocket connection
        2. Processes incoming events in a loop
        3. Routes each event to the appropriate handler
        4. Closes the call session when the stream stops or the socket drops
        """
        await websocket.accept()
        await self._optimize_socket(websocket)
        logger.info("Telephony WebSocket connection established")
        connection = TelephonyConnection(websocket=websocket, manager=self)

        try:
            while not connection.closed:
                data = await websocket.receive_text()
                try:
                    message = json.loads(data)
                except ValueError:
                    logger.warning(f"Ignoring non-JSON telephony frame ({len(data)} bytes)")
                    continue
                if not isinstance(message, dict):
                    logger.warning("Ignoring telephony frame that is not a JSON object")
                    continue

                event = message.get("event")

                # Fast path for audio frames
                if event == EVENT_MEDIA:
                    await handle_media(message, connection)
                    continue

                logger.info(
                    f"Received telephony event: {event}"
                    + (f" for call: {connection.session.call_id}" if connection.session else "")
                )
                handler = self.handlers.get(event)
                if handler is None:
                    logger.warning(f"Unhandled telephony event: {event}")
                    continue
                await handler(message, connection)

        except WebSocketDisconnect as e:
            logger.info(f"Telephony WebSocket disconnected (code {e.code})")
        except Exception as e:
            if connection.session is not None and connection.session.closed:
                logger.info(f"Telephony receive loop ended after session close: {e}")
            else:
                logger.error(f"Error in telephony WebSocket connection: {e}", exc_info=True)
        finally:
            await self._cleanup(connection)

    async def _cleanup(self, connection: TelephonyConnection) -> None:
        session = connection.session
        if session is not None:
            await session.close("telephony connection closed", close_telephony=False)
        if connection.start_task is not None:
            await asyncio.gather(connection.start_task, return_exceptions=True)

        websocket = connection.websocket
        if (
            websocket.application_state == WebSocketState.CONNECTED
            and websocket.client_state == WebSocketState.CONNECTED
        ):
            try:
                await websocket.close()
            except RuntimeError as e:
                logger.debug(f"Telephony WebSocket already closed: {e}")
        logger.info("Telephony WebSocket connection closed")
