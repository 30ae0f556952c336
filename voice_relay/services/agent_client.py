import asyncio
import json
import logging
import time
import traceback
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed

from voice_relay.bot.timers import cancel_task
from voice_relay.config.constants import (
    DEFAULT_AGENT_URL,
    DEFAULT_CONNECT_TIMEOUT,
    LOGGER_NAME,
)
from voice_relay.exceptions import UpstreamConnectError

logger = logging.getLogger(LOGGER_NAME)

# WebSocket configuration for low latency
WS_MAX_SIZE = 16 * 1024 * 1024  # 16MB - large enough for audio chunks
WS_PING_INTERVAL = 20
WS_SEND_TIMEOUT = 5.0

# Close code reported when the socket dropped without a close frame
ABNORMAL_CLOSE_CODE = 1006

MessageHandler = Callable[[Union[str, bytes]], Awaitable[None]]
CloseHandler = Callable[[int, str], Awaitable[None]]


class AgentClient:
    """
    WebSocket client for the upstream voice-agent endpoint.

    Every frame received is handed, in arrival order, to the message handler;
    the client does not interpret the protocol. When the socket closes for any
    reason other than an explicit ``close()`` the close handler is called with
    the close code.
    """
    def __init__(
        self,
        api_key: str,
        url: str = DEFAULT_AGENT_URL,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        call_id: Optional[str] = None,
    ):
        self.api_key = api_key
        self.url = url
        self.connect_timeout = connect_timeout
        self.call_id = call_id
        self.ws = None
        self._recv_task: Optional[asyncio.Task] = None
        self._connection_active = False
        self._is_closing = False
        self._last_activity = 0.0
        self._message_handler: Optional[MessageHandler] = None
        self._close_handler: Optional[CloseHandler] = None
        self.messages_received = 0

    @property
    def is_open(self) -> bool:
        return self.ws is not None and self._connection_active and not self._is_closing

    def set_handlers(self, on_message: MessageHandler, on_close: Optional[CloseHandler] = None) -> None:
        """
        Register the frame and close handlers.

        Args:
            on_message: Awaited with each received frame (str or bytes)
            on_close: Awaited with (code, reason) when the connection drops
        """
        self._message_handler = on_message
        self._close_handler = on_close

    async def connect(self) -> None:
        """
        Open the WebSocket and start the receive loop.

        Raises:
            UpstreamConnectError: If the connection fails or takes longer than
                ``connect_timeout`` seconds
        """
        if self._is_closing:
            raise UpstreamConnectError("Cannot connect - client is closing")

        headers = {"Authorization": f"Token {self.api_key}"}
        try:
            logger.info(f"Connecting to voice agent for call {self.call_id}")
            connection_start = time.time()
            ws = await asyncio.wait_for(
                websockets.connect(
                    self.url,
                    max_size=WS_MAX_SIZE,
                    ping_interval=WS_PING_INTERVAL,
                    compression=None,  # Disable compression for lower latency
                    additional_headers=headers,
                ),
                timeout=self.connect_timeout,
            )
            logger.debug(f"Agent WebSocket connected in {time.time() - connection_start:.2f} seconds")
        except asyncio.TimeoutError:
            logger.error(f"Timeout while connecting to voice agent (after {self.connect_timeout}s)")
            raise UpstreamConnectError(f"Connection timed out after {self.connect_timeout}s")
        except Exception as e:
            logger.error(f"Failed to connect to voice agent: {e}")
            logger.debug(f"Connection error details: {traceback.format_exc()}")
            raise UpstreamConnectError(str(e)) from e

        if self._is_closing:
            logger.info(f"Agent client for call {self.call_id} closed while connecting, dropping socket")
            await ws.close()
            raise UpstreamConnectError("Client closed while connecting")

        self.ws = ws
        self._connection_active = True
        self._last_activity = time.time()
        self._recv_task = asyncio.create_task(self._recv_loop(), name=f"agent-recv-{self.call_id}")

    async def send_json(self, message: Dict[str, Any]) -> bool:
        """Send a control message. Returns False instead of raising on failure."""
        return await self._send(json.dumps(message), message.get("type", "unknown"))

    async def send_audio(self, chunk: bytes) -> bool:
        """Send raw caller audio as a binary frame."""
        return await self._send(chunk, "audio")

    async def _send(self, data: Union[str, bytes], label: str) -> bool:
        if not self.is_open:
            logger.debug(f"Cannot send {label} - agent connection not active (call {self.call_id})")
            return False
        try:
            await asyncio.wait_for(self.ws.send(data), timeout=WS_SEND_TIMEOUT)
            self._last_activity = time.time()
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Timeout while sending {label} to voice agent (call {self.call_id})")
            return False
        except ConnectionClosed as e:
            logger.warning(f"Connection closed while sending {label}: {e}")
            self._connection_active = False
            return False
        except Exception as e:
            logger.error(f"Error sending {label} to voice agent: {e}")
            return False

    async def _recv_loop(self) -> None:
        """
        Receive frames until the socket closes, then report the close code.
        """
        code, reason = ABNORMAL_CLOSE_CODE, ""
        try:
            while True:
                message = await self.ws.recv()
                self._last_activity = time.time()
                self.messages_received += 1
                if self._message_handler is None:
                    continue
                try:
                    await self._message_handler(message)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Error handling agent message for call {self.call_id}: {e}", exc_info=True)
        except ConnectionClosed as e:
            if e.rcvd is not None:
                code, reason = e.rcvd.code, e.rcvd.reason
            logger.info(f"Agent WebSocket closed for call {self.call_id}: code={code} reason={reason!r}")
        except asyncio.CancelledError:
            self._connection_active = False
            raise
        except Exception as e:
            logger.error(f"Error in agent receive loop: {e}")
            logger.debug(f"Receive loop error details: {traceback.format_exc()}")

        self._connection_active = False
        if self._is_closing or self._close_handler is None:
            return
        try:
            await self._close_handler(code, reason)
        except Exception as e:
            logger.error(f"Error in agent close handler: {e}", exc_info=True)

    async def close(self, code: int = 1000, reason: str = "Call ended") -> None:
        """
        Close the WebSocket connection and cancel the receive loop.
        """
        if self._is_closing:
            return
        logger.info(f"Closing voice agent connection for call {self.call_id}")
        self._is_closing = True
        self._connection_active = False
        await cancel_task(self._recv_task)
        if self.ws is not None:
            try:
                await self.ws.close(code=code, reason=reason)
            except Exception as e:
                logger.warning(f"Error closing agent WebSocket: {e}")
