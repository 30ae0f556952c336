"""
Function-call dispatch for the upstream agent.

The agent asks the relay to run named business functions (list services, check
availability, create/update/cancel a booking, ...). Each request batch is answered
with one correlated FunctionCallResponse per invocation. Keep-alive and silence
tracking are paused for the whole batch.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from pydantic import ValidationError

from voice_relay.bot.supervisors import KeepAliveSupervisor, SendControl, SilenceSupervisor
from voice_relay.bot.timers import cancel_task
from voice_relay.config.constants import (
    DEFAULT_FUNCTION_WATCHDOG,
    FUNCTION_TRIGGER_KEYWORDS,
    LOGGER_NAME,
    MESSAGE_TYPE_FUNCTION_CALL,
    MESSAGE_TYPE_FUNCTION_CALL_REQUEST,
)
from voice_relay.models.agent_schemas import FunctionCallRequestItem, FunctionCallResponseMessage
from voice_relay.services.collaborators import CallContext, FunctionHandler

logger = logging.getLogger(LOGGER_NAME)

LocalFunction = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


@dataclass
class PendingFunctionCall:
    """One function invocation awaiting its response."""
    name: str
    call_id: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    issued_at: float = field(default_factory=time.time)
    argument_error: Optional[str] = None


def _parse_arguments(raw: Any):
    if raw is None or raw == "":
        return {}, None
    if isinstance(raw, dict):
        return raw, None
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError as e:
            return {}, f"Invalid function arguments: {e}"
        if isinstance(parsed, dict):
            return parsed, None
    return {}, "Function arguments must be a JSON object"


def parse_function_calls(message: Dict[str, Any]) -> List[PendingFunctionCall]:
    """
    Extract the invocations of a FunctionCallRequest or legacy FunctionCall
    message, in the order listed.
    """
    message_type = message.get("type")
    calls = []
    if message_type == MESSAGE_TYPE_FUNCTION_CALL_REQUEST:
        for entry in message.get("functions") or []:
            try:
                item = FunctionCallRequestItem.model_validate(entry)
            except ValidationError as e:
                logger.warning(f"Skipping malformed function entry {entry!r}: {e.error_count()} error(s)")
                continue
            arguments, error = _parse_arguments(item.arguments)
            calls.append(PendingFunctionCall(
                name=item.name,
                call_id=item.id,
                arguments=arguments,
                argument_error=error,
            ))
    elif message_type == MESSAGE_TYPE_FUNCTION_CALL:
        name = message.get("function_name") or message.get("name")
        if name:
            arguments, error = _parse_arguments(
                message.get("parameters", message.get("params", message.get("arguments")))
            )
            calls.append(PendingFunctionCall(
                name=name,
                call_id=str(message.get("function_call_id") or message.get("id") or ""),
                arguments=arguments,
                argument_error=error,
            ))
        else:
            logger.warning("FunctionCall message without a function name")
    return calls


class FunctionCallDispatcher:
    """
    Runs function-call batches one at a time, in arrival order.

    Batches run as tasks so the upstream receive loop keeps delivering agent
    audio while a slow booking request is in flight.
    """

    def __init__(
        self,
        handler: FunctionHandler,
        context: CallContext,
        send_control: SendControl,
        keep_alive: KeepAliveSupervisor,
        silence: SilenceSupervisor,
        local_functions: Optional[Dict[str, LocalFunction]] = None,
    ):
        self.handler = handler
        self.context = context
        self.send_control = send_control
        self.keep_alive = keep_alive
        self.silence = silence
        self.local_functions = dict(local_functions or {})
        self.responses_sent = 0
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def call_id(self) -> str:
        return self.context.call_id

    @property
    def busy(self) -> bool:
        return bool(self._tasks)

    def submit(self, message: Dict[str, Any]) -> asyncio.Task:
        """Schedule a batch; batches run in submission order."""
        task = asyncio.create_task(self.handle_batch(message), name=f"functions-{self.call_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def join(self) -> None:
        """Wait for every submitted batch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._tasks):
            await cancel_task(task)
        self._tasks.clear()

    async def handle_batch(self, message: Dict[str, Any]) -> int:
        """
        Answer every invocation in ``message``.

        Returns:
            The number of responses sent upstream
        """
        calls = parse_function_calls(message)
        if not calls:
            logger.warning(f"Function call message with no invocations for call {self.call_id}")
            return 0

        sent = 0
        async with self._lock:
            logger.info(
                f"Processing {len(calls)} function call(s) for call {self.call_id}: "
                f"{', '.join(c.name for c in calls)}"
            )
            self.keep_alive.pause()
            self.silence.pause("Processing function calls")
            try:
                for call in calls:
                    started = time.time()
                    result = await self.dispatch(call)
                    try:
                        response = FunctionCallResponseMessage.for_result(call.call_id, call.name, result)
                    except (TypeError, ValueError) as e:
                        logger.error(f"Result of {call.name} ({call.call_id}) is not JSON serializable: {e}")
                        response = FunctionCallResponseMessage.for_result(
                            call.call_id, call.name, {"error": "Malformed function result"}
                        )
                    if await self.send_control(response.model_dump()):
                        sent += 1
                        self.responses_sent += 1
                    else:
                        logger.error(
                            f"Could not send response for {call.name} ({call.call_id}) on call {self.call_id}"
                        )
                    logger.info(
                        f"Function {call.name} ({call.call_id}) answered in "
                        f"{(time.time() - started) * 1000:.0f}ms for call {self.call_id}"
                    )
            finally:
                self.keep_alive.resume()
                self.silence.resume("Function processing completed")
        return sent

    async def dispatch(self, call: PendingFunctionCall) -> Dict[str, Any]:
        """Run one invocation. Failures come back as ``{"error": ...}``, never raised."""
        if call.argument_error:
            logger.warning(f"Bad arguments for {call.name} on call {self.call_id}: {call.argument_error}")
            return {"error": call.argument_error}

        local = self.local_functions.get(call.name)
        try:
            if local is not None:
                result = await local(call.arguments)
            else:
                result = await self.handler.invoke(call.name, call.arguments, self.context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Function {call.name} raised for call {self.call_id}: {e}", exc_info=True)
            return {"error": f"Function execution failed: {e}"}

        if not isinstance(result, dict):
            logger.error(f"Function {call.name} returned {type(result).__name__} for call {self.call_id}")
            return {"error": "Malformed function result"}
        return result


class FunctionCallWatchdog:
    """
    Diagnostic watchdog: when a caller transcript suggests a booking action, a
    function call is expected within ``timeout`` seconds. If none arrives a
    warning is logged. It never changes the call flow.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_FUNCTION_WATCHDOG,
        keywords: Iterable[str] = FUNCTION_TRIGGER_KEYWORDS,
        call_id: Optional[str] = None,
    ):
        self.timeout = timeout
        self.call_id = call_id
        self._pattern = re.compile(r"\b(" + "|".join(re.escape(k) for k in keywords) + r")\b", re.IGNORECASE)
        self._task: Optional[asyncio.Task] = None
        self.expired_count = 0

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def scan(self, transcript: str) -> bool:
        """Arm the watchdog if the transcript contains a trigger phrase."""
        match = self._pattern.search(transcript or "")
        if match is None:
            return False
        logger.info(f"Trigger phrase '{match.group(1)}' on call {self.call_id}, expecting a function call")
        self.arm()
        return True

    def arm(self) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._expire(), name=f"function-watchdog-{self.call_id}")

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def stop(self) -> None:
        task, self._task = self._task, None
        await cancel_task(task)

    async def _expire(self) -> None:
        await asyncio.sleep(self.timeout)
        self.expired_count += 1
        logger.warning(
            f"Expected a function call on call {self.call_id} within {self.timeout}s but none arrived"
        )
