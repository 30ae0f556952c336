"""
Upstream voice-agent protocol: message classification and the handshake/event
state machine.

The agent multiplexes JSON control messages and raw audio over one socket.
Every frame is classified first and then routed: audio goes to the pacer,
control messages go through a table of (state, type) transitions during the
handshake and a table of event handlers once the connection is READY.
"""

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from voice_relay.bot.connection_state import UpstreamConnectionState, UpstreamState
from voice_relay.bot.function_calls import FunctionCallDispatcher, FunctionCallWatchdog
from voice_relay.bot.pacer import JitterBufferPacer
from voice_relay.bot.supervisors import KeepAliveSupervisor, SendControl, SilenceSupervisor
from voice_relay.config.constants import (
    LOGGER_NAME,
    MESSAGE_TYPE_AGENT_AUDIO_DONE,
    MESSAGE_TYPE_AGENT_STARTED_SPEAKING,
    MESSAGE_TYPE_AGENT_THINKING,
    MESSAGE_TYPE_CONVERSATION_TEXT,
    MESSAGE_TYPE_ERROR,
    MESSAGE_TYPE_FUNCTION_CALL,
    MESSAGE_TYPE_FUNCTION_CALL_REQUEST,
    MESSAGE_TYPE_HISTORY,
    MESSAGE_TYPE_RESULTS,
    MESSAGE_TYPE_SETTINGS_APPLIED,
    MESSAGE_TYPE_SPEECH_STARTED,
    MESSAGE_TYPE_TTS_AUDIO,
    MESSAGE_TYPE_USER_STARTED_SPEAKING,
    MESSAGE_TYPE_UTTERANCE_END,
    MESSAGE_TYPE_WARNING,
    MESSAGE_TYPE_WELCOME,
    NORMAL_CLOSE_CODES,
)
from voice_relay.exceptions import HandshakeError
from voice_relay.models.transcript import SPEAKER_AGENT, SPEAKER_USER, TranscriptLog

logger = logging.getLogger(LOGGER_NAME)


@dataclass(frozen=True)
class ControlMessage:
    """A decoded JSON object or array."""
    data: Union[Dict[str, Any], List[Any]]

    def messages(self) -> List[Dict[str, Any]]:
        """The control objects carried, in order."""
        if isinstance(self.data, dict):
            return [self.data]
        return [item for item in self.data if isinstance(item, dict)]


@dataclass(frozen=True)
class AudioMessage:
    """Raw agent audio, byte-for-byte as received."""
    payload: bytes


def classify_message(payload: Union[str, bytes, bytearray]) -> Union[ControlMessage, AudioMessage]:
    """
    Classify one upstream frame.

    A frame is control if it decodes as UTF-8 and parses as a JSON object or
    array. Anything else, including JSON scalars and empty frames, is audio.
    """
    if isinstance(payload, str):
        raw = payload.encode("utf-8", errors="surrogatepass")
        text = payload
    else:
        raw = bytes(payload)
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            return AudioMessage(raw)
    try:
        data = json.loads(text)
    except ValueError:
        return AudioMessage(raw)
    if isinstance(data, (dict, list)):
        return ControlMessage(data)
    return AudioMessage(raw)


SettingsBuilder = Callable[[], Awaitable[Dict[str, Any]]]
TerminationHandler = Callable[[str, bool], Awaitable[None]]


class UpstreamProtocolStateMachine:
    """
    Drives one upstream connection through
    CONNECTING -> AWAITING_WELCOME -> CONFIGURING_AGENT -> READY -> CLOSING -> CLOSED.

    Args:
        connection: Shared connection state (also read by the keep-alive)
        send_control: Sends a control dict upstream, returns False on failure
        build_settings: Produces the Settings message; raises HandshakeError
            when the agent configuration is unusable
        pacer: Receives agent audio
        keep_alive: Started once the agent is configured
        silence: Silence supervisor for this call
        dispatcher: Runs function-call batches
        watchdog: Diagnostic function-call watchdog
        transcript: Transcript of this call
        on_barge_in: Awaited when the caller starts speaking over the agent
        on_terminated: Awaited with (reason, failure) when the connection ends
            after the handshake completed
        call_id: Call identifier for log messages
    """

    def __init__(
        self,
        connection: UpstreamConnectionState,
        send_control: SendControl,
        build_settings: SettingsBuilder,
        pacer: JitterBufferPacer,
        keep_alive: KeepAliveSupervisor,
        silence: SilenceSupervisor,
        dispatcher: FunctionCallDispatcher,
        watchdog: FunctionCallWatchdog,
        transcript: TranscriptLog,
        on_barge_in: Callable[[], Awaitable[Any]],
        on_terminated: TerminationHandler,
        call_id: Optional[str] = None,
    ):
        self.connection = connection
        self.send_control = send_control
        self.build_settings = build_settings
        self.pacer = pacer
        self.keep_alive = keep_alive
        self.silence = silence
        self.dispatcher = dispatcher
        self.watchdog = watchdog
        self.transcript = transcript
        self.on_barge_in = on_barge_in
        self.on_terminated = on_terminated
        self.call_id = call_id

        self._handshake: Optional[asyncio.Future] = None

        self._transitions = {
            (UpstreamState.AWAITING_WELCOME, MESSAGE_TYPE_WELCOME): self._on_welcome,
            (UpstreamState.CONFIGURING_AGENT, MESSAGE_TYPE_SETTINGS_APPLIED): self._on_settings_applied,
        }
        self._event_handlers = {
            MESSAGE_TYPE_RESULTS: self._on_results,
            MESSAGE_TYPE_CONVERSATION_TEXT: self._on_conversation_text,
            MESSAGE_TYPE_HISTORY: self._on_conversation_text,
            MESSAGE_TYPE_SPEECH_STARTED: self._on_user_speech,
            MESSAGE_TYPE_USER_STARTED_SPEAKING: self._on_user_speech,
            MESSAGE_TYPE_UTTERANCE_END: self._on_utterance_end,
            MESSAGE_TYPE_AGENT_STARTED_SPEAKING: self._on_agent_started_speaking,
            MESSAGE_TYPE_TTS_AUDIO: self._on_tts_audio,
            MESSAGE_TYPE_AGENT_AUDIO_DONE: self._on_agent_audio_done,
            MESSAGE_TYPE_AGENT_THINKING: self._on_agent_thinking,
            MESSAGE_TYPE_FUNCTION_CALL: self._on_function_call,
            MESSAGE_TYPE_FUNCTION_CALL_REQUEST: self._on_function_call,
        }

    @property
    def state(self) -> UpstreamState:
        return self.connection.state

    def _set_state(self, state: UpstreamState) -> None:
        if self.connection.state != state:
            logger.info(
                f"Upstream state for call {self.call_id}: {self.connection.state.value} -> {state.value}"
            )
        self.connection.state = state

    # -- lifecycle -------------------------------------------------------

    def on_socket_open(self) -> asyncio.Future:
        """
        Record that the socket is open and start waiting for Welcome.

        Returns:
            A future resolved when the agent is READY, or failed with
            HandshakeError when the handshake cannot complete
        """
        if self.connection.is_closed:
            failed = asyncio.get_running_loop().create_future()
            failed.set_exception(HandshakeError("Session closed before the agent socket opened"))
            return failed
        self.connection.socket_open = True
        self._handshake = asyncio.get_running_loop().create_future()
        self._set_state(UpstreamState.AWAITING_WELCOME)
        return self._handshake

    def begin_closing(self) -> None:
        """Local teardown has started; ignore everything from now on."""
        if self.connection.state != UpstreamState.CLOSED:
            self._set_state(UpstreamState.CLOSING)
        self._fail_handshake(HandshakeError("Session closed during handshake"))

    def mark_closed(self) -> None:
        self.connection.socket_open = False
        self._set_state(UpstreamState.CLOSED)

    async def on_socket_closed(self, code: int, reason: str = "") -> None:
        """
        Handle the upstream socket closing from the remote side.

        Any close ends the session. A close code other than 1000/1001 is
        reported as a failure.
        """
        was_closing = self.connection.state == UpstreamState.CLOSING
        self.connection.close_code = code
        self.mark_closed()
        failure = code not in NORMAL_CLOSE_CODES
        if failure:
            logger.error(f"Agent connection for call {self.call_id} closed abnormally: code={code} {reason}")
        else:
            logger.info(f"Agent connection for call {self.call_id} closed: code={code} {reason}")

        if self._fail_handshake(HandshakeError(f"Agent connection closed during handshake (code {code})")):
            return
        if was_closing:
            return
        await self.on_terminated(f"agent connection closed (code {code})", failure)

    def _fail_handshake(self, error: Exception) -> bool:
        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(error)
            return True
        return False

    async def _abort(self, error: Exception) -> None:
        logger.error(f"Upstream handshake failed for call {self.call_id}: {error}")
        self._set_state(UpstreamState.CLOSING)
        if not self._fail_handshake(error):
            await self.on_terminated(str(error), True)

    # -- inbound frames --------------------------------------------------

    async def handle_frame(self, payload: Union[str, bytes]) -> None:
        """Route one frame received from the agent."""
        if self.connection.state in (UpstreamState.CLOSING, UpstreamState.CLOSED):
            return
        message = classify_message(payload)
        if isinstance(message, AudioMessage):
            self._on_audio(message.payload)
            return
        if isinstance(message.data, list) and len(message.messages()) != len(message.data):
            logger.warning(f"Ignoring non-object entries in control array for call {self.call_id}")
        for item in message.messages():
            await self.handle_control(item)
            if self.connection.state in (UpstreamState.CLOSING, UpstreamState.CLOSED):
                return

    async def handle_control(self, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        transition = self._transitions.get((self.connection.state, message_type))
        if transition is not None:
            await transition(message)
            return

        if message_type == MESSAGE_TYPE_ERROR:
            logger.error(f"Agent error for call {self.call_id}: {message}")
            return
        if message_type == MESSAGE_TYPE_WARNING:
            logger.warning(f"Agent warning for call {self.call_id}: {message}")
            return
        if message_type in (MESSAGE_TYPE_WELCOME, MESSAGE_TYPE_SETTINGS_APPLIED):
            logger.warning(
                f"Unexpected {message_type} in state {self.connection.state.value} for call {self.call_id}"
            )
            return

        handler = self._event_handlers.get(message_type)
        if handler is None:
            logger.info(f"Ignoring agent message type {message_type!r} for call {self.call_id}")
            return
        if not self.connection.is_ready:
            logger.debug(f"Ignoring {message_type} before agent is ready (call {self.call_id})")
            return
        await handler(message)

    # -- handshake -------------------------------------------------------

    async def _on_welcome(self, message: Dict[str, Any]) -> None:
        logger.info(f"Agent welcome received for call {self.call_id}")
        self._set_state(UpstreamState.CONFIGURING_AGENT)
        try:
            settings = await self.build_settings()
        except HandshakeError as e:
            await self._abort(e)
            return
        except Exception as e:
            await self._abort(HandshakeError(f"Could not load agent configuration: {e}"))
            return
        if not await self.send_control(settings):
            await self._abort(HandshakeError("Failed to send agent settings"))
            return
        logger.info(f"Agent settings sent for call {self.call_id}")

    async def _on_settings_applied(self, message: Dict[str, Any]) -> None:
        self._set_state(UpstreamState.READY)
        self.keep_alive.start()
        logger.info(f"Agent ready for call {self.call_id}")
        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_result(True)

    # -- ready-state events ----------------------------------------------

    async def _on_results(self, message: Dict[str, Any]) -> None:
        try:
            text = message["channel"]["alternatives"][0]["transcript"]
        except (KeyError, IndexError, TypeError):
            return
        if not text or not text.strip():
            return
        self.transcript.add_entry(SPEAKER_USER, text)
        self.watchdog.scan(text)

    async def _on_conversation_text(self, message: Dict[str, Any]) -> None:
        role = message.get("role")
        content = message.get("content")
        if not content:
            return
        if role == "user":
            self.transcript.add_entry(SPEAKER_USER, content)
            self.watchdog.scan(content)
        elif role == "assistant":
            self.transcript.add_entry(SPEAKER_AGENT, content)
        else:
            logger.debug(f"Conversation text with unknown role {role!r} for call {self.call_id}")

    async def _on_user_speech(self, message: Dict[str, Any]) -> None:
        self.silence.reset()
        dropped = self.pacer.clear()
        if dropped:
            logger.info(f"Barge-in on call {self.call_id}, dropped {dropped} bytes of agent audio")
            await self.on_barge_in()

    async def _on_utterance_end(self, message: Dict[str, Any]) -> None:
        self.silence.arm()

    async def _on_agent_started_speaking(self, message: Dict[str, Any]) -> None:
        self.silence.reset()

    async def _on_tts_audio(self, message: Dict[str, Any]) -> None:
        data = message.get("data")
        if not data:
            return
        try:
            audio = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning(f"Invalid TtsAudio payload for call {self.call_id}: {e}")
            return
        self._on_audio(audio)

    async def _on_agent_audio_done(self, message: Dict[str, Any]) -> None:
        self.pacer.end_utterance()
        if self.silence.paused and not self.connection.function_call_in_flight:
            self.silence.resume("Agent finished speaking")
        self.silence.arm()

    async def _on_agent_thinking(self, message: Dict[str, Any]) -> None:
        self.silence.pause("Agent is thinking")

    async def _on_function_call(self, message: Dict[str, Any]) -> None:
        self.watchdog.cancel()
        self.dispatcher.submit(message)

    def _on_audio(self, audio: bytes) -> None:
        if not audio:
            logger.warning(f"Ignoring empty agent audio frame for call {self.call_id}")
            return
        if self.silence.armed:
            self.silence.reset()
        self.pacer.feed(audio)
