"""
Interfaces of the external collaborators a call session depends on.

The relay does not own business configuration, prompt generation, booking logic or
transcript storage. It reaches them through the three interfaces below; the HTTP
implementations live in booking_api, and simple in-process implementations are
provided here for development and tests.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from voice_relay.config.constants import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)


class CallContext(BaseModel):
    """Identity of a call, passed to every collaborator."""
    call_id: str
    stream_id: Optional[str] = None
    tenant_id: str
    caller_phone: Optional[str] = None
    called_phone: Optional[str] = None


class AgentConfig(BaseModel):
    """Opaque agent configuration produced by the business side."""
    prompt: str = ""
    functions: List[Dict[str, Any]] = Field(default_factory=list)
    greeting: Optional[str] = None
    voice: Optional[str] = None


class AgentConfigProvider(ABC):
    @abstractmethod
    async def get_agent_config(self, context: CallContext) -> AgentConfig:
        """Return the instruction string and function schemas for a call."""


class FunctionHandler(ABC):
    @abstractmethod
    async def invoke(self, name: str, params: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        """
        Run a named business function.

        Returns:
            The result object, or ``{"error": "..."}``
        """


class TranscriptStore(ABC):
    @abstractmethod
    async def save(self, call_id: str, transcript: Dict[str, Any]) -> None:
        """Persist the exported transcript of a finished call."""


class StaticAgentConfigProvider(AgentConfigProvider):
    """Returns the same configuration for every call."""

    def __init__(self, config: AgentConfig):
        self.config = config

    async def get_agent_config(self, context: CallContext) -> AgentConfig:
        return self.config


class UnavailableFunctionHandler(FunctionHandler):
    """Answers every function call with an error when no booking API is configured."""

    async def invoke(self, name: str, params: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        logger.warning(f"Function {name} called on call {context.call_id} but no booking API is configured")
        return {"error": f"Function {name} is not available"}


class LoggingTranscriptStore(TranscriptStore):
    """Writes transcripts to the application log instead of a database."""

    async def save(self, call_id: str, transcript: Dict[str, Any]) -> None:
        logger.info(
            f"Transcript for call {call_id} ({transcript.get('entry_count', 0)} entries):\n"
            f"{transcript.get('text', '')}"
        )
