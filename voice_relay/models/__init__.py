"""
Models module for data structures and state management in the voice relay.

Key components:
- message_schemas: Pydantic models for the telephony media-stream envelopes.
- agent_schemas: Pydantic models for the upstream voice-agent control messages.
- sessions: Registry of the call sessions alive in this process.
- transcript: Per-call transcript log flushed to the transcript store.

Usage examples:
```python
from voice_relay.models.message_schemas import OutboundMediaMessage, OutboundMediaPayload

frame = OutboundMediaMessage(
    streamSid="MZ123",
    media=OutboundMediaPayload(payload="//////////8="),
)
await websocket.send_text(frame.model_dump_json())
```
"""

from voice_relay.models.sessions import SessionManager
from voice_relay.models.transcript import TranscriptEntry, TranscriptLog

__all__ = ["SessionManager", "TranscriptEntry", "TranscriptLog"]
