"""
Per-call aggregate.

A CallSession is created when the telephony leg starts a media stream and owns
fresh instances of every per-call component: the pacer, the telephony relay,
the upstream client and protocol state machine, the supervisors, the function
dispatcher and the transcript. Nothing here is shared between calls.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from fastapi import WebSocket

from voice_relay.bot.connection_state import UpstreamConnectionState
from voice_relay.bot.function_calls import FunctionCallDispatcher, FunctionCallWatchdog
from voice_relay.bot.pacer import JitterBufferPacer
from voice_relay.bot.protocol import UpstreamProtocolStateMachine
from voice_relay.bot.supervisors import KeepAliveSupervisor, SilenceSupervisor
from voice_relay.bot.telephony_relay import TelephonyFrameRelay
from voice_relay.bot.timers import cancel_task
from voice_relay.config.constants import AUDIO_ENCODING_MULAW, LOCAL_FUNCTION_END_CALL, LOGGER_NAME
from voice_relay.config.settings import RelaySettings
from voice_relay.exceptions import HandshakeError, SessionStartError, UpstreamConnectError
from voice_relay.models.agent_schemas import (
    AgentSettings,
    AudioFormat,
    AudioSettings,
    ListenSettings,
    Provider,
    SettingsMessage,
    SpeakSettings,
    ThinkSettings,
)
from voice_relay.models.transcript import TranscriptLog
from voice_relay.services.agent_client import AgentClient
from voice_relay.services.collaborators import (
    AgentConfigProvider,
    CallContext,
    FunctionHandler,
    TranscriptStore,
)

logger = logging.getLogger(LOGGER_NAME)

END_CALL_SCHEMA = {
    "name": LOCAL_FUNCTION_END_CALL,
    "description": "End the phone call. Call this only after you have said goodbye to the caller.",
    "parameters": {
        "type": "object",
        "properties": {
            "reason": {"type": "string", "description": "Why the call is ending"},
        },
        "required": [],
    },
}


class CallSession:
    """
    One phone call bridged to one voice-agent connection.

    Args:
        context: Identity of the call
        websocket: Accepted telephony WebSocket
        settings: Runtime settings
        config_provider: Supplies the agent prompt and function schemas
        function_handler: Runs business functions
        transcript_store: Receives the transcript when the call ends
        agent_client: Upstream client, created from ``settings`` if omitted
        on_closed: Called with the session once teardown has finished
    """

    def __init__(
        self,
        context: CallContext,
        websocket: WebSocket,
        settings: RelaySettings,
        config_provider: AgentConfigProvider,
        function_handler: FunctionHandler,
        transcript_store: TranscriptStore,
        agent_client: Optional[AgentClient] = None,
        on_closed: Optional[Callable[["CallSession"], Any]] = None,
    ):
        self.context = context
        self.settings = settings
        self.config_provider = config_provider
        self.transcript_store = transcript_store
        self._on_closed = on_closed

        self.started_at: Optional[float] = None
        self.ready_at: Optional[float] = None
        self.ended_at: Optional[float] = None
        self.end_reason: Optional[str] = None
        self._closed = False
        self._hangup_task: Optional[asyncio.Task] = None

        call_id = context.call_id
        self.connection = UpstreamConnectionState()
        self.transcript = TranscriptLog(call_id=call_id)
        self.agent = agent_client or AgentClient(
            api_key=settings.deepgram_api_key or "",
            url=settings.agent_url,
            connect_timeout=settings.connect_timeout,
            call_id=call_id,
        )
        self.pacer = JitterBufferPacer(
            frame_size=settings.frame_size,
            tick_interval_ms=settings.tick_interval_ms,
            call_id=call_id,
        )
        self.relay = TelephonyFrameRelay(
            websocket=websocket,
            stream_sid=context.stream_id or call_id,
            pacer=self.pacer,
            forward_audio=self.agent.send_audio,
            can_forward=lambda: self.connection.is_ready and self.agent.is_open,
            expected_frame_size=settings.frame_size,
            call_id=call_id,
        )
        self.keep_alive = KeepAliveSupervisor(
            connection=self.connection,
            send_control=self.agent.send_json,
            interval=settings.keepalive_interval,
            call_id=call_id,
        )
        self.silence = SilenceSupervisor(
            send_control=self.agent.send_json,
            on_timeout=self.close,
            threshold=settings.silence_timeout,
            check_interval=settings.silence_check_interval,
            grace_period=settings.silence_grace_period,
            call_id=call_id,
        )
        self.dispatcher = FunctionCallDispatcher(
            handler=function_handler,
            context=context,
            send_control=self.agent.send_json,
            keep_alive=self.keep_alive,
            silence=self.silence,
            local_functions={LOCAL_FUNCTION_END_CALL: self._end_call},
        )
        self.watchdog = FunctionCallWatchdog(timeout=settings.function_watchdog, call_id=call_id)
        self.protocol = UpstreamProtocolStateMachine(
            connection=self.connection,
            send_control=self.agent.send_json,
            build_settings=self.build_settings,
            pacer=self.pacer,
            keep_alive=self.keep_alive,
            silence=self.silence,
            dispatcher=self.dispatcher,
            watchdog=self.watchdog,
            transcript=self.transcript,
            on_barge_in=self.relay.send_clear,
            on_terminated=self._on_upstream_terminated,
            call_id=call_id,
        )
        self.agent.set_handlers(self.protocol.handle_frame, self.protocol.on_socket_closed)

    @property
    def call_id(self) -> str:
        return self.context.call_id

    @property
    def stream_id(self) -> Optional[str]:
        return self.context.stream_id

    @property
    def tenant_id(self) -> str:
        return self.context.tenant_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_ready(self) -> bool:
        return not self._closed and self.connection.is_ready

    async def start(self) -> None:
        """
        Connect upstream and complete the handshake, then start the pacer.

        Raises:
            SessionStartError: If the connection or handshake fails or times
                out; the session is closed before this is raised
        """
        self.started_at = time.time()
        logger.info(f"Starting session for call {self.call_id} (tenant {self.tenant_id})")
        try:
            await self.agent.connect()
            if self._closed:
                # close() ran while connecting and never saw this socket
                await self.agent.close()
                raise SessionStartError(f"Session {self.call_id} closed while connecting")
            handshake = self.protocol.on_socket_open()
            await asyncio.wait_for(handshake, timeout=self.settings.handshake_timeout)
        except asyncio.TimeoutError:
            await self.close("handshake timeout")
            raise SessionStartError(
                f"Agent handshake for call {self.call_id} timed out after {self.settings.handshake_timeout}s"
            )
        except (UpstreamConnectError, HandshakeError) as e:
            await self.close(f"start failed: {e}")
            raise SessionStartError(str(e)) from e

        if self._closed:
            raise SessionStartError(f"Session {self.call_id} closed during start")

        self.ready_at = time.time()
        self.pacer.start(self.relay.on_pacer_tick, lambda: self.relay.is_open)
        logger.info(
            f"Session ready for call {self.call_id} in {self.ready_at - self.started_at:.2f}s"
        )

    async def build_settings(self) -> Dict[str, Any]:
        """
        Build the Settings message from the tenant's agent configuration.

        Raises:
            HandshakeError: If the configuration has no prompt or no functions
        """
        config = await self.config_provider.get_agent_config(self.context)
        if not config.prompt or not config.prompt.strip():
            raise HandshakeError(f"Agent configuration for tenant {self.tenant_id} has no prompt")
        if not config.functions:
            raise HandshakeError(f"Agent configuration for tenant {self.tenant_id} has no functions")

        functions = list(config.functions)
        if not any(f.get("name") == LOCAL_FUNCTION_END_CALL for f in functions):
            functions.append(END_CALL_SCHEMA)

        audio_format = AudioFormat(encoding=AUDIO_ENCODING_MULAW, sample_rate=self.settings.sample_rate)
        message = SettingsMessage(
            audio=AudioSettings(
                input=audio_format,
                output=audio_format.model_copy(update={"container": "none"}),
            ),
            agent=AgentSettings(
                language=self.settings.language,
                listen=ListenSettings(provider=Provider(type="deepgram", model=self.settings.listen_model)),
                think=ThinkSettings(
                    provider=Provider(type=self.settings.think_provider, model=self.settings.think_model),
                    prompt=config.prompt,
                    functions=functions,
                ),
                speak=SpeakSettings(
                    provider=Provider(type="deepgram", model=config.voice or self.settings.speak_model)
                ),
                greeting=config.greeting,
            ),
        )
        return message.model_dump(exclude_none=True)

    async def on_inbound_media(self, payload: str) -> bool:
        if self._closed:
            return False
        return await self.relay.on_inbound_frame(payload)

    async def _on_upstream_terminated(self, reason: str, failure: bool) -> None:
        if failure:
            logger.error(f"Upstream failure on call {self.call_id}: {reason}")
        await self.close(reason)

    async def _end_call(self, params: Dict[str, Any]) -> Dict[str, Any]:
        reason = params.get("reason") or "agent ended call"
        if self._hangup_task is None:
            self._hangup_task = asyncio.create_task(
                self._hang_up_after(self.settings.silence_grace_period, reason),
                name=f"hangup-{self.call_id}",
            )
        return {"success": True, "message": "The call will end after your goodbye."}

    async def _hang_up_after(self, delay: float, reason: str) -> None:
        logger.info(f"Agent requested hang-up on call {self.call_id}, ending in {delay}s")
        await asyncio.sleep(delay)
        await self.close(reason)

    async def close(self, reason: str = "session closed", close_telephony: bool = True) -> None:
        """
        Tear down every component of the call. Idempotent; safe to call from
        any of the session's own timers or tasks.

        Args:
            reason: Logged end reason
            close_telephony: False when the telephony leg itself ended the call
        """
        if self._closed:
            return
        self._closed = True
        self.ended_at = time.time()
        self.end_reason = reason
        logger.info(f"Closing session for call {self.call_id}: {reason}")

        self.protocol.begin_closing()
        await self.pacer.stop()
        await self.keep_alive.stop()
        await self.silence.stop()
        await self.watchdog.stop()
        await self.dispatcher.stop()
        await cancel_task(self._hangup_task)
        await self.agent.close()
        self.protocol.mark_closed()

        await self._save_transcript()
        if close_telephony:
            await self.relay.close()

        if self._on_closed is not None:
            try:
                self._on_closed(self)
            except Exception as e:
                logger.error(f"Error in session close callback for call {self.call_id}: {e}")

        duration = self.ended_at - self.started_at if self.started_at else 0.0
        logger.info(
            f"Session closed for call {self.call_id} after {duration:.1f}s "
            f"({len(self.transcript)} transcript entries)"
        )

    async def _save_transcript(self) -> None:
        if not len(self.transcript):
            logger.info(f"No transcript to save for call {self.call_id}")
            return
        try:
            await self.transcript_store.save(self.call_id, self.transcript.export())
        except Exception as e:
            logger.error(f"Failed to save transcript for call {self.call_id}: {e}")
