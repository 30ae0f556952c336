"""
Pydantic models for the telephony media-stream message schemas.

This module defines structured data models for the incoming and outgoing JSON
envelopes on the telephony WebSocket (connected, start, media, stop, mark,
dtmf inbound; media and clear outbound), providing type validation and
documentation.
"""

import base64
import binascii
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

SUPPORTED_ENCODINGS = ["audio/x-mulaw"]


class BaseEvent(BaseModel):
    """Base model for all telephony WebSocket messages."""

    event: str = Field(..., description="Event type identifier")
    streamSid: Optional[str] = Field(None, description="Media stream identifier")
    sequenceNumber: Optional[str] = Field(None, description="Message sequence number")


class ConnectedMessage(BaseEvent):
    """Model for the connected message sent when the socket opens."""

    event: Literal["connected"]
    protocol: Optional[str] = None
    version: Optional[str] = None


class MediaFormat(BaseModel):
    """Audio format announced in the start message."""

    encoding: str = Field("audio/x-mulaw", description="Audio encoding")
    sampleRate: int = Field(8000, description="Samples per second")
    channels: int = Field(1, description="Number of channels")


class StartPayload(BaseModel):
    """Body of the start message."""

    streamSid: Optional[str] = None
    callSid: Optional[str] = None
    accountSid: Optional[str] = None
    tracks: Optional[list] = None
    mediaFormat: Optional[MediaFormat] = None
    customParameters: Dict[str, str] = Field(default_factory=dict)


class StartMessage(BaseEvent):
    """Model for the start message that opens a media stream."""

    event: Literal["start"]
    start: StartPayload

    @property
    def stream_sid(self) -> Optional[str]:
        return self.streamSid or self.start.streamSid

    @property
    def tenant_id(self) -> Optional[str]:
        params = self.start.customParameters
        return params.get("business_id") or params.get("tenant_id")

    @property
    def call_id(self) -> Optional[str]:
        return self.start.customParameters.get("call_sid") or self.start.callSid


class InboundMediaPayload(BaseModel):
    """Body of an inbound media message."""

    payload: str = Field(..., description="Base64-encoded audio data")
    track: Optional[str] = None
    chunk: Optional[str] = None
    timestamp: Optional[str] = None


class MediaMessage(BaseEvent):
    """Model for an inbound media message carrying caller audio."""

    event: Literal["media"]
    media: InboundMediaPayload


class StopMessage(BaseEvent):
    """Model for the stop message that ends a media stream."""

    event: Literal["stop"]
    stop: Dict[str, Any] = Field(default_factory=dict)


class MarkMessage(BaseEvent):
    """Model for a mark acknowledgement."""

    event: Literal["mark"]
    mark: Dict[str, Any] = Field(default_factory=dict)


class DtmfMessage(BaseEvent):
    """Model for a DTMF keypress."""

    event: Literal["dtmf"]
    dtmf: Dict[str, Any] = Field(default_factory=dict)


class OutboundMediaPayload(BaseModel):
    """Body of an outbound media message."""

    payload: str = Field(..., description="Base64-encoded audio data")

    @field_validator("payload")
    def validate_payload(cls, v):
        """Validate that the payload is non-empty base64."""
        if not v:
            raise ValueError("Audio payload cannot be empty")
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("Invalid base64 encoded audio data")
        return v


class OutboundMediaMessage(BaseModel):
    """Model for a media frame sent to the telephony leg."""

    event: Literal["media"] = "media"
    streamSid: str = Field(..., description="Media stream identifier")
    media: OutboundMediaPayload


class ClearMessage(BaseModel):
    """Model for the clear message that flushes queued playback."""

    event: Literal["clear"] = "clear"
    streamSid: str = Field(..., description="Media stream identifier")


# Union type for all possible incoming messages
IncomingMessage = Union[
    ConnectedMessage,
    StartMessage,
    MediaMessage,
    StopMessage,
    MarkMessage,
    DtmfMessage,
]

# Union type for all possible outgoing messages
OutgoingMessage = Union[OutboundMediaMessage, ClearMessage]
