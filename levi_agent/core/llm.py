"""OpenRouter chat-completion client with primary → escalation fallback.

Talks to the OpenAI-compatible /chat/completions endpoint over httpx, both
as a single request and as a server-sent event stream.
"""

import json
import time
from collections.abc import AsyncIterator
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass, replace
from typing import Any

import httpx

from levi_agent.core.config import Settings, get_settings
from levi_agent.core.errors import ConfigError, UpstreamError
from levi_agent.core.llm_router import ModelRoute, TaskType, route_to_model
from levi_agent.core.logging import get_logger

logger = get_logger(__name__)

SERVICE_NAME = "OpenRouter"
STREAM_DONE = "[DONE]"


@dataclass(frozen=True)
class ToolCall:
    """A function call requested by the model."""

    id: str
    name: str
    arguments: str
    type: str = "function"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class ModelUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class ModelResponse:
    """Result of one chat completion (possibly after escalation)."""

    content: str | None
    tool_calls: list[ToolCall] | None
    usage: ModelUsage
    model: str
    finish_reason: str
    escalated: bool = False
    latency_ms: int = 0


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def parse_completion(data: Any, requested_model: str, latency_ms: int = 0) -> ModelResponse:
    """
    Parse a /chat/completions response body.

    Raises:
        UpstreamError: If the body has no usable first choice
    """
    choices = data.get("choices") if isinstance(data, dict) else None
    if not choices or not isinstance(choices, list):
        raise UpstreamError(SERVICE_NAME, "returned no choices")

    choice = choices[0]
    if not isinstance(choice, dict):
        raise UpstreamError(SERVICE_NAME, "malformed choice in response")
    message = choice.get("message") or {}
    if not isinstance(message, dict):
        raise UpstreamError(SERVICE_NAME, "malformed message in response")

    tool_calls = []
    for tc in message.get("tool_calls") or []:
        function = tc.get("function") if isinstance(tc, dict) else None
        if not isinstance(function, dict):
            continue
        tool_calls.append(
            ToolCall(
                id=tc.get("id") or "",
                name=function.get("name") or "",
                arguments=function.get("arguments") or "{}",
            )
        )

    usage = data.get("usage")
    if not isinstance(usage, dict):
        usage = {}
    return ModelResponse(
        content=message.get("content"),
        tool_calls=tool_calls or None,
        usage=ModelUsage(
            input_tokens=usage.get("prompt_tokens") or 0,
            output_tokens=usage.get("completion_tokens") or 0,
        ),
        model=data.get("model") or requested_model,
        finish_reason=choice.get("finish_reason") or "stop",
        latency_ms=latency_ms,
    )


def parse_stream_payload(payload: str) -> str | None:
    """
    Extract the text delta from one SSE data payload.

    Payloads that aren't a completion chunk are skipped (None). An explicit
    error object from the gateway raises.
    """
    try:
        data = json.loads(payload)
    except ValueError:
        logger.debug(f"Skipping unparseable stream line: {payload[:80]}")
        return None

    if not isinstance(data, dict):
        return None
    if data.get("error"):
        error = data["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise UpstreamError(SERVICE_NAME, f"stream error: {message}")

    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) and content else None


class ModelInvoker:
    """Calls chat models through OpenRouter with a fixed two-rung escalation ladder."""

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        routes: dict[TaskType, ModelRoute] | None = None,
    ):
        """
        Initialize the invoker.

        Args:
            settings: Settings (defaults to get_settings())
            http_client: Shared httpx client; a short-lived one is used per call if None
            routes: Per-task model overrides for route_to_model
        """
        self.settings = settings or get_settings()
        self.routes = routes
        self._http_client = http_client

    @property
    def _completions_url(self) -> str:
        return f"{self.settings.OPENROUTER_BASE_URL.rstrip('/')}/chat/completions"

    def _headers(self) -> dict[str, str]:
        api_key = self.settings.OPENROUTER_API_KEY
        if not api_key:
            raise ConfigError("Missing OPENROUTER_API_KEY environment variable")
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.settings.OPENROUTER_REFERER,
            "X-Title": self.settings.OPENROUTER_APP_TITLE,
        }

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
        else:
            async with httpx.AsyncClient(timeout=self.settings.LLM_TIMEOUT_SECONDS) as client:
                yield client

    async def call(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.3,
    ) -> ModelResponse:
        """
        Call one model once.

        Args:
            model: OpenRouter model id
            messages: Chat messages in OpenAI format
            tools: Tool definitions (sent only when non-empty)
            max_tokens: Completion token cap
            temperature: Sampling temperature

        Returns:
            ModelResponse with escalated=False

        Raises:
            ConfigError: If OPENROUTER_API_KEY is missing
            UpstreamError: On transport errors, non-success status, bad JSON or no choices
        """
        headers = self._headers()
        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if tools:
            body["tools"] = tools

        start = time.perf_counter()
        try:
            async with self._client() as client:
                response = await client.post(
                    self._completions_url,
                    json=body,
                    headers=headers,
                    timeout=self.settings.LLM_TIMEOUT_SECONDS,
                )
        except httpx.HTTPError as e:
            raise UpstreamError(SERVICE_NAME, f"request to {model} failed: {e}") from e
        latency_ms = _elapsed_ms(start)

        if response.is_error:
            raise UpstreamError(SERVICE_NAME, response.text[:500], response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(SERVICE_NAME, "response body is not JSON", response.status_code) from e

        return parse_completion(data, model, latency_ms)

    async def stream_call(
        self,
        model: str,
        messages: list[dict[str, Any]],
        max_tokens: int = 1024,
        temperature: float = 0.3,
    ) -> AsyncIterator[str]:
        """
        Stream text deltas from one model.

        Lines that aren't completion chunks are skipped; `data: [DONE]` or
        the end of the response stops the stream.

        Raises:
            ConfigError: If OPENROUTER_API_KEY is missing
            UpstreamError: On transport errors or a non-success status
        """
        headers = self._headers()
        body = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": True,
        }

        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    self._completions_url,
                    json=body,
                    headers=headers,
                    timeout=self.settings.LLM_TIMEOUT_SECONDS,
                ) as response:
                    if response.is_error:
                        await response.aread()
                        raise UpstreamError(SERVICE_NAME, response.text[:500], response.status_code)

                    async for raw_line in response.aiter_lines():
                        line = raw_line.strip()
                        # Skip blank separators, comments and event-name lines
                        if not line.startswith("data:"):
                            continue
                        payload = line[len("data:"):].strip()
                        if payload == STREAM_DONE:
                            return
                        delta = parse_stream_payload(payload)
                        if delta:
                            yield delta
        except httpx.HTTPError as e:
            raise UpstreamError(SERVICE_NAME, f"stream from {model} failed: {e}") from e

    async def call_with_escalation(
        self,
        task_type: TaskType | str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int = 1024,
    ) -> ModelResponse:
        """
        Call with automatic escalation.

        1. Try the task's primary model
        2. On failure, make one attempt on the escalation model
        3. If that fails too, its error propagates

        A missing credential is not escalated since both rungs need it.

        Returns:
            ModelResponse with escalated set and latency_ms covering the whole ladder
        """
        primary_model = route_to_model(task_type, False, self.settings, self.routes)
        start = time.perf_counter()

        try:
            response = await self.call(primary_model, messages, tools=tools, max_tokens=max_tokens)
            return replace(response, escalated=False, latency_ms=_elapsed_ms(start))
        except ConfigError:
            raise
        except Exception as primary_error:
            logger.warning(f"Primary model failed ({primary_model}): {primary_error}")

        escalation_model = route_to_model(task_type, True, self.settings, self.routes)
        try:
            response = await self.call(escalation_model, messages, tools=tools, max_tokens=max_tokens)
        except Exception as escalation_error:
            logger.error(f"Escalation model failed ({escalation_model}): {escalation_error}")
            raise

        logger.info(f"Escalated {TaskType(task_type).value} call to {escalation_model}")
        return replace(response, escalated=True, latency_ms=_elapsed_ms(start))

    async def stream_with_escalation(
        self,
        task_type: TaskType | str,
        messages: list[dict[str, Any]],
        max_tokens: int = 1024,
    ) -> AsyncIterator[str]:
        """
        Stream from the primary model, falling back to the escalation model.

        Escalation only happens if the primary fails before its first delta;
        once text has been yielded a failure propagates.
        """
        primary_model = route_to_model(task_type, False, self.settings, self.routes)
        produced = False

        try:
            async with aclosing(self.stream_call(primary_model, messages, max_tokens=max_tokens)) as stream:
                async for delta in stream:
                    produced = True
                    yield delta
            return
        except ConfigError:
            raise
        except Exception as primary_error:
            if produced:
                raise
            logger.warning(f"Primary model stream failed ({primary_model}): {primary_error}")

        escalation_model = route_to_model(task_type, True, self.settings, self.routes)
        async with aclosing(self.stream_call(escalation_model, messages, max_tokens=max_tokens)) as stream:
            async for delta in stream:
                yield delta
