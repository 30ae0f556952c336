"""
Pydantic models for the upstream voice-agent message structures.

This module provides type-safe models for the control messages exchanged with the
voice-agent endpoint: the Settings configuration sent after Welcome, keep-alives,
injected agent messages and function-call requests and responses.
"""

import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from voice_relay.config.constants import AUDIO_ENCODING_MULAW


class AudioFormat(BaseModel):
    """Encoding and sample rate of one audio direction."""
    encoding: str = AUDIO_ENCODING_MULAW
    sample_rate: int = 8000
    container: Optional[str] = None


class AudioSettings(BaseModel):
    """Input and output audio formats."""
    input: AudioFormat
    output: AudioFormat


class Provider(BaseModel):
    """A listen, think or speak provider selection."""
    type: str
    model: str


class ListenSettings(BaseModel):
    provider: Provider


class ThinkSettings(BaseModel):
    provider: Provider
    prompt: str
    functions: List[Dict[str, Any]] = Field(default_factory=list)


class SpeakSettings(BaseModel):
    provider: Provider


class AgentSettings(BaseModel):
    """Agent section of the Settings message."""
    language: str = "en"
    listen: ListenSettings
    think: ThinkSettings
    speak: SpeakSettings
    greeting: Optional[str] = None


class SettingsMessage(BaseModel):
    """Configuration sent upstream right after Welcome."""
    type: Literal["Settings"] = "Settings"
    audio: AudioSettings
    agent: AgentSettings


class KeepAliveMessage(BaseModel):
    type: Literal["KeepAlive"] = "KeepAlive"


class InjectAgentMessage(BaseModel):
    """Instructs the agent to speak the given content."""
    type: Literal["InjectAgentMessage"] = "InjectAgentMessage"
    content: str


class FunctionCallRequestItem(BaseModel):
    """One function invocation inside a FunctionCallRequest."""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str = ""
    name: str = Field(min_length=1)
    # a JSON object encoded as a string, occasionally sent already decoded
    arguments: Union[str, Dict[str, Any], None] = "{}"
    client_side: Optional[bool] = None


class FunctionCallResponseMessage(BaseModel):
    """Correlated response to one function invocation."""
    type: Literal["FunctionCallResponse"] = "FunctionCallResponse"
    id: str
    name: str
    content: str

    @classmethod
    def for_result(cls, call_id: str, name: str, result: Dict[str, Any]):
        return cls(id=call_id, name=name, content=json.dumps(result))
