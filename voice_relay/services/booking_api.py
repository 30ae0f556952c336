"""
HTTP clients for the booking API.

The booking API owns tenant configuration, prompt generation, the booking business
logic and transcript storage. The relay talks to it over HTTP with a shared
internal secret and treats every endpoint as a single attempt with no retries.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from voice_relay.config.constants import DEFAULT_FUNCTION_TIMEOUT, LOGGER_NAME
from voice_relay.exceptions import FunctionHandlerError
from voice_relay.services.collaborators import (
    AgentConfig,
    AgentConfigProvider,
    CallContext,
    FunctionHandler,
    TranscriptStore,
)

logger = logging.getLogger(LOGGER_NAME)


class BookingApiClient:
    """Owns one aiohttp session for all calls to the booking API."""

    def __init__(self, base_url: str, secret: Optional[str] = None, timeout: float = DEFAULT_FUNCTION_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self.secret:
                headers["x-internal-secret"] = self.secret
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def request_json(self, method: str, path: str, **kwargs) -> Any:
        """
        Perform one request and decode the JSON body.

        Raises:
            FunctionHandlerError: On transport errors, timeouts, non-2xx status
                or a body that is not JSON
        """
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(method, url, **kwargs) as resp:
                if resp.status < 200 or resp.status >= 300:
                    body = await resp.text()
                    raise FunctionHandlerError(f"{method} {path} returned HTTP {resp.status}: {body[:200]}")
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise FunctionHandlerError(f"{method} {path} returned invalid JSON: {e}")
        except asyncio.TimeoutError:
            raise FunctionHandlerError(f"{method} {path} timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise FunctionHandlerError(f"{method} {path} failed: {e}")


class HttpFunctionHandler(FunctionHandler):
    """Runs business functions through ``POST /api/voice/functions/{name}``."""

    def __init__(self, client: BookingApiClient):
        self.client = client

    async def invoke(self, name: str, params: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        payload = {
            "business_id": context.tenant_id,
            "call_id": context.call_id,
            "caller_phone": context.caller_phone,
            "parameters": params,
        }
        try:
            result = await self.client.request_json("POST", f"/api/voice/functions/{name}", json=payload)
        except FunctionHandlerError as e:
            logger.error(f"Function {name} failed for call {context.call_id}: {e}")
            return {"error": str(e)}
        if not isinstance(result, dict):
            logger.error(f"Function {name} returned a non-object result for call {context.call_id}")
            return {"error": "Malformed function result"}
        return result


class HttpAgentConfigProvider(AgentConfigProvider):
    """Fetches the agent prompt and function schemas for a tenant."""

    def __init__(self, client: BookingApiClient):
        self.client = client

    async def get_agent_config(self, context: CallContext) -> AgentConfig:
        data = await self.client.request_json(
            "GET",
            "/api/voice/agent-config",
            params={
                "business_id": context.tenant_id,
                "call_id": context.call_id,
                "caller_phone": context.caller_phone or "",
            },
        )
        return AgentConfig(**data)


class HttpTranscriptStore(TranscriptStore):
    """Stores transcripts through ``POST /api/voice/transcripts``."""

    def __init__(self, client: BookingApiClient):
        self.client = client

    async def save(self, call_id: str, transcript: Dict[str, Any]) -> None:
        await self.client.request_json(
            "POST", "/api/voice/transcripts", json={"call_id": call_id, **transcript}
        )
        logger.info(f"Saved transcript for call {call_id} ({transcript.get('entry_count', 0)} entries)")
