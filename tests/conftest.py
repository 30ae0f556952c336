import asyncio
import base64
import json
import logging

import pytest
from starlette.websockets import WebSocketState

from voice_relay.config.settings import RelaySettings
from voice_relay.services.collaborators import AgentConfig, CallContext


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test"""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    logging.basicConfig(level=logging.NOTSET)
    yield


class FakeTelephonySocket:
    """Stands in for the accepted telephony WebSocket."""

    def __init__(self):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent = []
        self.close_codes = []

    async def send_text(self, text):
        self.sent.append(json.loads(text))

    async def close(self, code=1000):
        self.close_codes.append(code)
        self.application_state = WebSocketState.DISCONNECTED

    def events(self, name):
        return [m for m in self.sent if m["event"] == name]

    def media_frames(self):
        return [base64.b64decode(m["media"]["payload"]) for m in self.events("media")]


class FakeAgentClient:
    """Records what a CallSession sends upstream and lets tests deliver frames."""

    def __init__(self, connect_error=None):
        self.connect_error = connect_error
        self.connected = False
        self.closed = False
        self.sent_json = []
        self.sent_audio = []
        self.on_message = None
        self.on_close = None

    @property
    def is_open(self):
        return self.connected and not self.closed

    def set_handlers(self, on_message, on_close=None):
        self.on_message = on_message
        self.on_close = on_close

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def send_json(self, message):
        if not self.is_open:
            return False
        self.sent_json.append(message)
        return True

    async def send_audio(self, chunk):
        if not self.is_open:
            return False
        self.sent_audio.append(chunk)
        return True

    async def close(self, code=1000, reason="Call ended"):
        self.closed = True

    async def deliver(self, message):
        if isinstance(message, (dict, list)):
            message = json.dumps(message)
        await self.on_message(message)

    async def drop(self, code, reason=""):
        self.connected = False
        await self.on_close(code, reason)

    def sent_types(self):
        return [m.get("type") for m in self.sent_json]


async def wait_until(predicate, timeout=1.0, interval=0.005):
    """Poll until ``predicate()`` is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def settings():
    return RelaySettings(
        deepgram_api_key="test-key",
        keepalive_interval=0.05,
        silence_timeout=0.2,
        silence_check_interval=0.02,
        silence_grace_period=0.05,
        connect_timeout=1.0,
        handshake_timeout=1.0,
        function_watchdog=0.1,
    )


@pytest.fixture
def call_context():
    return CallContext(call_id="CA123", stream_id="MZ123", tenant_id="T1", caller_phone="+15550100")


@pytest.fixture
def agent_config():
    return AgentConfig(
        prompt="You are a helpful receptionist.",
        functions=[
            {
                "name": "get_services",
                "description": "List services",
                "parameters": {"type": "object", "properties": {}},
            }
        ],
        greeting="Hello, how can I help?",
    )


@pytest.fixture
def telephony_socket():
    return FakeTelephonySocket()
