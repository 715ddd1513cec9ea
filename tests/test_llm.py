"""Tests for the OpenRouter model invoker using an httpx mock transport."""

import json

import httpx
import pytest

from levi_agent.core.errors import ConfigError, UpstreamError
from levi_agent.core.llm import ModelInvoker, ToolCall, parse_completion, parse_stream_payload
from levi_agent.core.llm_router import ModelRoute, TaskType

PRIMARY = "primary-model"
ESCALATION = "backup-x"


def _completion(content="Hello!", model=PRIMARY, **extra) -> dict:
    message = {"role": "assistant", "content": content}
    message.update(extra.pop("message", {}))
    body = {
        "model": model,
        "choices": [{"message": message, "finish_reason": extra.pop("finish_reason", "stop")}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 5},
    }
    body.update(extra)
    return body


def _invoker(make_settings, handler, **overrides) -> ModelInvoker:
    settings = make_settings(LLM_PRIMARY_MODEL=PRIMARY, LLM_ESCALATION_MODEL=ESCALATION, **overrides)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ModelInvoker(settings=settings, http_client=http_client)


def _sse(*lines: str) -> bytes:
    return ("\n".join(lines) + "\n").encode()


async def _collect(stream) -> list[str]:
    return [delta async for delta in stream]


# ---------------------------------------------------------------------------
# call
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_call_sends_request_and_parses_response(make_settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion())

    invoker = _invoker(make_settings, handler)
    response = await invoker.call(PRIMARY, [{"role": "user", "content": "hi"}])

    assert seen["url"] == "https://openrouter.ai/api/v1/chat/completions"
    assert seen["headers"]["Authorization"] == "Bearer test-openrouter-key"
    assert seen["headers"]["HTTP-Referer"] == "https://levelset.io"
    assert seen["headers"]["X-Title"] == "Levelset Levi"
    assert seen["body"] == {
        "model": PRIMARY,
        "messages": [{"role": "user", "content": "hi"}],
        "max_tokens": 1024,
        "temperature": 0.3,
    }
    assert response.content == "Hello!"
    assert response.tool_calls is None
    assert response.usage.input_tokens == 12
    assert response.usage.output_tokens == 5
    assert response.model == PRIMARY
    assert response.finish_reason == "stop"
    assert response.escalated is False


@pytest.mark.asyncio
async def test_call_includes_tools_only_when_given(make_settings):
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=_completion())

    invoker = _invoker(make_settings, handler)
    tool = {"type": "function", "function": {"name": "lookup_employee", "parameters": {}}}
    await invoker.call(PRIMARY, [], tools=[tool])
    await invoker.call(PRIMARY, [], tools=[])

    assert bodies[0]["tools"] == [tool]
    assert "tools" not in bodies[1]


@pytest.mark.asyncio
async def test_call_parses_tool_calls(make_settings):
    tool_call = {
        "id": "call_1",
        "type": "function",
        "function": {"name": "lookup_employee", "arguments": '{"name": "Sam"}'},
    }
    body = _completion(content=None, message={"tool_calls": [tool_call]}, finish_reason="tool_calls")
    invoker = _invoker(make_settings, lambda r: httpx.Response(200, json=body))

    response = await invoker.call(PRIMARY, [])

    assert response.content is None
    assert response.tool_calls == [ToolCall(id="call_1", name="lookup_employee", arguments='{"name": "Sam"}')]
    assert response.tool_calls[0].to_dict() == tool_call
    assert response.finish_reason == "tool_calls"


@pytest.mark.asyncio
async def test_call_without_key_raises_config_error(make_settings):
    def handler(request):
        raise AssertionError("no request expected")

    invoker = _invoker(make_settings, handler, OPENROUTER_API_KEY=None)

    with pytest.raises(ConfigError, match="OPENROUTER_API_KEY"):
        await invoker.call(PRIMARY, [])


@pytest.mark.asyncio
async def test_call_error_status_raises_upstream_error(make_settings):
    invoker = _invoker(make_settings, lambda r: httpx.Response(429, text="rate limited"))

    with pytest.raises(UpstreamError) as exc_info:
        await invoker.call(PRIMARY, [])

    assert exc_info.value.status_code == 429
    assert "rate limited" in str(exc_info.value)


@pytest.mark.asyncio
async def test_call_no_choices_raises_upstream_error(make_settings):
    invoker = _invoker(make_settings, lambda r: httpx.Response(200, json={"choices": []}))

    with pytest.raises(UpstreamError, match="no choices"):
        await invoker.call(PRIMARY, [])


@pytest.mark.asyncio
async def test_call_non_json_body_raises_upstream_error(make_settings):
    invoker = _invoker(make_settings, lambda r: httpx.Response(200, text="upstream hiccup"))

    with pytest.raises(UpstreamError, match="not JSON"):
        await invoker.call(PRIMARY, [])


@pytest.mark.asyncio
async def test_call_non_dict_message_raises_upstream_error(make_settings):
    invoker = _invoker(make_settings, lambda r: httpx.Response(200, json={"choices": [{"message": "oops"}]}))

    with pytest.raises(UpstreamError, match="malformed message"):
        await invoker.call(PRIMARY, [])


def test_parse_completion_ignores_non_dict_usage():
    body = {"choices": [{"message": {"content": "ok"}}], "usage": "n/a"}

    response = parse_completion(body, PRIMARY)

    assert response.content == "ok"
    assert response.usage.input_tokens == 0
    assert response.usage.output_tokens == 0


def test_parse_completion_defaults():
    response = parse_completion({"choices": [{"message": {"content": "ok"}}]}, "requested")

    assert response.model == "requested"
    assert response.finish_reason == "stop"
    assert response.usage.input_tokens == 0
    assert response.tool_calls is None


# ---------------------------------------------------------------------------
# stream_call
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stream_yields_deltas_and_skips_noise(make_settings):
    body = _sse(
        ": OPENROUTER PROCESSING",
        "",
        'data: {"choices": [{"delta": {"role": "assistant"}}]}',
        'data: {"choices": [{"delta": {"content": "Hel"}}]}',
        "data: not-json",
        'data: {"choices": [{"delta": {"content": "lo"}}]}',
        "data: [DONE]",
        'data: {"choices": [{"delta": {"content": "ignored"}}]}',
    )
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    invoker = _invoker(make_settings, handler)
    deltas = await _collect(invoker.stream_call(PRIMARY, [{"role": "user", "content": "hi"}]))

    assert deltas == ["Hel", "lo"]
    assert seen["body"]["stream"] is True


@pytest.mark.asyncio
async def test_stream_ends_without_done_marker(make_settings):
    body = _sse('data: {"choices": [{"delta": {"content": "only"}}]}')
    invoker = _invoker(make_settings, lambda r: httpx.Response(200, content=body))

    assert await _collect(invoker.stream_call(PRIMARY, [])) == ["only"]


@pytest.mark.asyncio
async def test_stream_error_status_raises_upstream_error(make_settings):
    invoker = _invoker(make_settings, lambda r: httpx.Response(503, text="overloaded"))

    with pytest.raises(UpstreamError) as exc_info:
        await _collect(invoker.stream_call(PRIMARY, []))

    assert exc_info.value.status_code == 503


def test_parse_stream_payload_error_object_raises():
    with pytest.raises(UpstreamError, match="provider overloaded"):
        parse_stream_payload('{"error": {"message": "provider overloaded"}}')


def test_parse_stream_payload_ignores_non_chunks():
    assert parse_stream_payload("[1, 2]") is None
    assert parse_stream_payload('{"choices": []}') is None
    assert parse_stream_payload('{"choices": [{"delta": {"content": ""}}]}') is None


# ---------------------------------------------------------------------------
# call_with_escalation
# ---------------------------------------------------------------------------


def _by_model(responses: dict):
    """Handler dispatching on the requested model; callables receive the request."""

    def handler(request: httpx.Request) -> httpx.Response:
        model = json.loads(request.content)["model"]
        result = responses[model]
        return result(request) if callable(result) else result

    return handler


def _network_error(request):
    raise httpx.ConnectError("connection reset", request=request)


@pytest.mark.asyncio
async def test_primary_success_is_not_escalated(make_settings):
    invoker = _invoker(make_settings, _by_model({PRIMARY: httpx.Response(200, json=_completion())}))

    response = await invoker.call_with_escalation(TaskType.CHAT, [])

    assert response.escalated is False
    assert response.model == PRIMARY


@pytest.mark.asyncio
async def test_network_error_escalates_to_backup(make_settings):
    requested = []

    def record(model, result):
        def handler(request):
            requested.append(model)
            return result(request) if callable(result) else result

        return handler

    invoker = _invoker(
        make_settings,
        _by_model(
            {
                PRIMARY: record(PRIMARY, _network_error),
                ESCALATION: record(ESCALATION, httpx.Response(200, json=_completion("Backup!", model=ESCALATION))),
            }
        ),
    )

    response = await invoker.call_with_escalation("chat", [{"role": "user", "content": "hi"}])

    assert response.escalated is True
    assert response.model == ESCALATION
    assert response.content == "Backup!"
    assert requested == [PRIMARY, ESCALATION]


@pytest.mark.asyncio
async def test_both_failing_propagates_escalation_error(make_settings):
    invoker = _invoker(
        make_settings,
        _by_model(
            {
                PRIMARY: httpx.Response(500, text="primary down"),
                ESCALATION: httpx.Response(502, text="backup down"),
            }
        ),
    )

    with pytest.raises(UpstreamError) as exc_info:
        await invoker.call_with_escalation(TaskType.TOOL_USE, [])

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_missing_key_is_not_escalated(make_settings):
    invoker = _invoker(make_settings, lambda r: httpx.Response(200, json=_completion()), OPENROUTER_API_KEY=None)

    with pytest.raises(ConfigError):
        await invoker.call_with_escalation(TaskType.CHAT, [])


@pytest.mark.asyncio
async def test_unknown_task_type_raises_value_error(make_settings):
    invoker = _invoker(make_settings, lambda r: httpx.Response(200, json=_completion()))

    with pytest.raises(ValueError):
        await invoker.call_with_escalation("translate", [])


@pytest.mark.asyncio
async def test_route_overrides_pick_task_models(make_settings):
    requested = []

    def handler(request):
        model = json.loads(request.content)["model"]
        requested.append(model)
        return httpx.Response(200, json=_completion(model=model))

    invoker = _invoker(make_settings, handler)
    invoker.routes = {TaskType.SUMMARIZE: ModelRoute(primary="cheap-summarizer", escalation="big-summarizer")}

    await invoker.call_with_escalation(TaskType.SUMMARIZE, [])
    await invoker.call_with_escalation(TaskType.CHAT, [])

    assert requested == ["cheap-summarizer", PRIMARY]


# ---------------------------------------------------------------------------
# stream_with_escalation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stream_escalates_when_primary_fails_before_output(make_settings):
    invoker = _invoker(
        make_settings,
        _by_model(
            {
                PRIMARY: httpx.Response(500, text="down"),
                ESCALATION: httpx.Response(200, content=_sse('data: {"choices": [{"delta": {"content": "B"}}]}')),
            }
        ),
    )

    assert await _collect(invoker.stream_with_escalation(TaskType.CHAT, [])) == ["B"]


@pytest.mark.asyncio
async def test_stream_failure_after_output_propagates(make_settings):
    body = _sse(
        'data: {"choices": [{"delta": {"content": "partial"}}]}',
        'data: {"error": {"message": "provider dropped"}}',
    )
    invoker = _invoker(
        make_settings,
        _by_model(
            {
                PRIMARY: httpx.Response(200, content=body),
                ESCALATION: httpx.Response(200, content=_sse('data: {"choices": [{"delta": {"content": "B"}}]}')),
            }
        ),
    )

    received = []
    with pytest.raises(UpstreamError, match="provider dropped"):
        async for delta in invoker.stream_with_escalation(TaskType.CHAT, []):
            received.append(delta)

    assert received == ["partial"]
