import asyncio
import json
from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from voice_relay.bot.connection_state import UpstreamConnectionState, UpstreamState
from voice_relay.bot.function_calls import (
    FunctionCallDispatcher,
    FunctionCallWatchdog,
    PendingFunctionCall,
    parse_function_calls,
)
from voice_relay.bot.supervisors import KeepAliveSupervisor, SilenceSupervisor
from voice_relay.services.collaborators import CallContext, FunctionHandler

CONTEXT = CallContext(call_id="CA1", stream_id="MZ1", tenant_id="T1")


def request(*functions):
    return {
        "type": "FunctionCallRequest",
        "functions": [
            {"id": call_id, "name": name, "arguments": arguments, "client_side": True}
            for call_id, name, arguments in functions
        ],
    }


class RecordingHandler(FunctionHandler):
    def __init__(self, result=None, error=None):
        self.result = result if result is not None else {"services": ["Haircut"]}
        self.error = error
        self.calls = []
        self.during_call = []
        self.keep_alive = None

    async def invoke(self, name, params, context):
        self.calls.append((name, params, context.call_id))
        if self.keep_alive is not None:
            self.during_call.append(
                (self.keep_alive.connection.function_call_in_flight, await self.keep_alive.tick())
            )
        if self.error is not None:
            raise self.error
        return self.result


def make_dispatcher(handler, send_result=True, local_functions=None):
    connection = UpstreamConnectionState()
    connection.state = UpstreamState.READY
    connection.socket_open = True
    send = AsyncMock(return_value=send_result)
    keep_alive = KeepAliveSupervisor(connection, send)
    silence = SilenceSupervisor(send_control=send, on_timeout=AsyncMock(), call_id="CA1")
    handler.keep_alive = keep_alive
    dispatcher = FunctionCallDispatcher(
        handler=handler,
        context=CONTEXT,
        send_control=send,
        keep_alive=keep_alive,
        silence=silence,
        local_functions=local_functions,
    )
    return dispatcher, send


def responses(send):
    return [c.args[0] for c in send.await_args_list if c.args[0]["type"] == "FunctionCallResponse"]


class TestParseFunctionCalls:
    def test_function_call_request(self):
        calls = parse_function_calls(request(("abc", "get_services", "{}"), ("def", "check", '{"day": "mon"}')))
        assert [(c.call_id, c.name, c.arguments) for c in calls] == [
            ("abc", "get_services", {}),
            ("def", "check", {"day": "mon"}),
        ]

    def test_legacy_function_call(self):
        calls = parse_function_calls({
            "type": "FunctionCall",
            "function_name": "create_booking",
            "function_call_id": "fc1",
            "parameters": {"service": "Haircut"},
        })
        assert len(calls) == 1
        assert calls[0].call_id == "fc1"
        assert calls[0].arguments == {"service": "Haircut"}

    def test_invalid_arguments_are_flagged(self):
        calls = parse_function_calls(request(("abc", "get_services", "{not json")))
        assert calls[0].argument_error is not None
        assert calls[0].arguments == {}

    def test_entries_without_name_are_skipped(self):
        message = {"type": "FunctionCallRequest", "functions": [{"id": "x"}, "junk"]}
        assert parse_function_calls(message) == []

    def test_numeric_id_and_decoded_arguments_are_accepted(self):
        message = {"type": "FunctionCallRequest", "functions": [
            {"id": 7, "name": "check", "arguments": {"day": "tue"}, "client_side": True},
        ]}
        [call] = parse_function_calls(message)
        assert (call.call_id, call.arguments, call.argument_error) == ("7", {"day": "tue"}, None)


@pytest.mark.asyncio
class TestFunctionCallDispatcher:
    async def test_single_call_gets_one_correlated_response(self):
        handler = RecordingHandler()
        dispatcher, send = make_dispatcher(handler)

        sent = await dispatcher.handle_batch(request(("abc", "get_services", "{}")))

        assert sent == 1
        assert handler.calls == [("get_services", {}, "CA1")]
        assert responses(send) == [{
            "type": "FunctionCallResponse",
            "id": "abc",
            "name": "get_services",
            "content": json.dumps({"services": ["Haircut"]}),
        }]

    async def test_keepalive_paused_then_resumed(self):
        handler = RecordingHandler()
        dispatcher, send = make_dispatcher(handler)

        await dispatcher.handle_batch(request(("abc", "get_services", "{}")))

        # paused during the call and no keep-alive could be sent
        assert handler.during_call == [(True, False)]
        assert not dispatcher.keep_alive.paused
        assert await dispatcher.keep_alive.tick() is True
        assert not dispatcher.silence.paused

    async def test_keepalive_paused_for_whole_batch(self):
        handler = RecordingHandler()
        dispatcher, send = make_dispatcher(handler)
        await dispatcher.handle_batch(request(("a", "one", "{}"), ("b", "two", "{}"), ("c", "three", "{}")))

        assert handler.during_call == [(True, False)] * 3
        assert [r["id"] for r in responses(send)] == ["a", "b", "c"]
        assert [c[0] for c in handler.calls] == ["one", "two", "three"]
        keepalives = [c for c in send.await_args_list if c.args[0]["type"] == "KeepAlive"]
        assert keepalives == []

    async def test_handler_exception_becomes_error_result(self):
        handler = RecordingHandler(error=RuntimeError("boom"))
        dispatcher, send = make_dispatcher(handler)
        await dispatcher.handle_batch(request(("abc", "get_services", "{}")))

        [response] = responses(send)
        assert json.loads(response["content"]) == {"error": "Function execution failed: boom"}
        assert not dispatcher.keep_alive.paused

    async def test_malformed_result_becomes_error(self):
        handler = RecordingHandler(result=["not", "a", "dict"])
        dispatcher, send = make_dispatcher(handler)
        await dispatcher.handle_batch(request(("abc", "get_services", "{}")))
        [response] = responses(send)
        assert json.loads(response["content"]) == {"error": "Malformed function result"}

    async def test_unserializable_result_becomes_error(self):
        class MixedHandler(RecordingHandler):
            async def invoke(self, name, params, context):
                self.calls.append((name, params, context.call_id))
                if name == "a":
                    return {"when": datetime(2024, 5, 1, 9, 30)}
                return {"ok": True}

        dispatcher, send = make_dispatcher(MixedHandler())
        sent = await dispatcher.handle_batch(request(("1", "a", "{}"), ("2", "b", "{}")))

        assert sent == 2
        first, second = responses(send)
        assert (first["id"], second["id"]) == ("1", "2")
        assert json.loads(first["content"]) == {"error": "Malformed function result"}
        assert json.loads(second["content"]) == {"ok": True}
        assert not dispatcher.keep_alive.paused
        assert not dispatcher.silence.paused

    async def test_bad_arguments_skip_handler(self):
        handler = RecordingHandler()
        dispatcher, send = make_dispatcher(handler)
        await dispatcher.handle_batch(request(("abc", "get_services", "{oops")))
        assert handler.calls == []
        [response] = responses(send)
        assert "error" in json.loads(response["content"])

    async def test_handler_is_called_once_without_retry(self):
        handler = RecordingHandler(error=ConnectionError("refused"))
        dispatcher, send = make_dispatcher(handler)
        await dispatcher.handle_batch(request(("abc", "create_booking", "{}")))
        assert len(handler.calls) == 1

    async def test_send_failure_still_resumes(self):
        handler = RecordingHandler()
        dispatcher, send = make_dispatcher(handler, send_result=False)
        sent = await dispatcher.handle_batch(request(("abc", "get_services", "{}")))
        assert sent == 0
        assert not dispatcher.keep_alive.paused

    async def test_local_function_bypasses_handler(self):
        handler = RecordingHandler()
        end_call = AsyncMock(return_value={"success": True})
        dispatcher, send = make_dispatcher(handler, local_functions={"end_call": end_call})
        await dispatcher.handle_batch(request(("x1", "end_call", '{"reason": "done"}')))

        end_call.assert_awaited_once_with({"reason": "done"})
        assert handler.calls == []
        assert json.loads(responses(send)[0]["content"]) == {"success": True}

    async def test_submit_and_join(self):
        handler = RecordingHandler()
        dispatcher, send = make_dispatcher(handler)
        dispatcher.submit(request(("a", "one", "{}")))
        dispatcher.submit(request(("b", "two", "{}")))
        assert dispatcher.busy
        await dispatcher.join()

        assert not dispatcher.busy
        assert dispatcher.responses_sent == 2
        assert [r["id"] for r in responses(send)] == ["a", "b"]

    async def test_stop_cancels_running_batches(self):
        class SlowHandler(FunctionHandler):
            async def invoke(self, name, params, context):
                await asyncio.sleep(10)

        dispatcher, send = make_dispatcher(RecordingHandler())
        dispatcher.handler = SlowHandler()
        dispatcher.submit(request(("a", "slow", "{}")))
        await asyncio.sleep(0.01)
        assert dispatcher.keep_alive.paused
        await dispatcher.stop()
        assert not dispatcher.busy
        assert not dispatcher.keep_alive.paused
        assert responses(send) == []

    async def test_dispatch_returns_result(self):
        handler = RecordingHandler(result={"ok": True})
        dispatcher, send = make_dispatcher(handler)
        result = await dispatcher.dispatch(PendingFunctionCall(name="check", call_id="1", arguments={"a": 1}))
        assert result == {"ok": True}
        assert handler.calls == [("check", {"a": 1}, "CA1")]


@pytest.mark.asyncio
class TestFunctionCallWatchdog:
    async def test_trigger_phrase_arms_watchdog(self):
        watchdog = FunctionCallWatchdog(timeout=0.05, call_id="CA1")
        assert watchdog.scan("Can I book something for Tuesday?") is True
        assert watchdog.armed
        await asyncio.sleep(0.1)
        assert watchdog.expired_count == 1
        assert not watchdog.armed

    async def test_cancel_before_expiry(self):
        watchdog = FunctionCallWatchdog(timeout=0.05)
        watchdog.scan("what is available")
        watchdog.cancel()
        await asyncio.sleep(0.1)
        assert watchdog.expired_count == 0

    async def test_plain_speech_does_not_arm(self):
        watchdog = FunctionCallWatchdog(timeout=0.05)
        assert watchdog.scan("hello there") is False
        assert watchdog.scan("") is False
        assert not watchdog.armed

    async def test_keywords_match_whole_words(self):
        watchdog = FunctionCallWatchdog(timeout=0.05)
        assert watchdog.scan("I was reading a notebook") is False
        await watchdog.stop()
