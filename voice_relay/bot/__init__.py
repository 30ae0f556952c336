"""
Bot module: the per-call components of the relay.

Every call gets fresh instances of these classes, owned by its CallSession.

Key components:
- JitterBufferPacer: FIFO byte queue plus a fixed clock that emits exactly one
  telephony frame per tick, substituting silence on underflow.
- TelephonyFrameRelay: decodes caller media frames for the agent and wraps
  paced frames in media envelopes for the carrier.
- UpstreamProtocolStateMachine: classifies agent frames as control or audio
  and drives the Welcome/Settings/SettingsApplied handshake and the events of
  a READY connection.
- FunctionCallDispatcher: answers function-call batches with correlated
  responses while keep-alive and silence tracking are paused.
- KeepAliveSupervisor / SilenceSupervisor: periodic keep-alive frames and
  the graceful silence-timeout shutdown.
- CallSession: owns all of the above for one call.

Usage examples:
```python
from voice_relay.bot.call_session import CallSession

session = CallSession(context, websocket, settings, config_provider,
                      function_handler, transcript_store)
await session.start()
await session.on_inbound_media(base64_payload)
await session.close("caller hung up")
```
"""
