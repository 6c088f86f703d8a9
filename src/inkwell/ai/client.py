"""Async client for OpenAI-compatible chat endpoints.

The client wraps ``AsyncOpenAI.chat.completions.stream`` and flattens the SDK's
helper events and raw chunks into :class:`AIStreamEvent` records that the relay
transport turns into wire frames.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Iterator, Mapping, cast

import httpx
from openai import AsyncOpenAI, APIConnectionError, InternalServerError, RateLimitError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..services.settings import Settings
from .tokens import ApproxByteCounter, TiktokenCounter, TokenCounter, build_token_counter

__all__ = [
    "AIClient",
    "AIStreamEvent",
    "ClientSettings",
    "TokenCounter",
    "ApproxByteCounter",
    "TiktokenCounter",
    "build_token_counter",
    "RETRYABLE_ERRORS",
]

LOGGER = logging.getLogger(__name__)

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIConnectionError,
    RateLimitError,
    InternalServerError,
    httpx.TimeoutException,
)

_ARGUMENT_EVENTS = frozenset({"tool_calls.function.arguments.delta", "tool_calls.function.arguments.done"})


@dataclass(slots=True)
class ClientSettings:
    """Connection and retry options for :class:`AIClient`."""

    base_url: str
    api_key: str
    model: str
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    temperature: float | None = 0.2
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClientSettings":
        shared = (
            "base_url",
            "api_key",
            "model",
            "request_timeout",
            "max_retries",
            "retry_min_seconds",
            "retry_max_seconds",
            "temperature",
            "debug_logging",
        )
        values = {name: getattr(settings, name) for name in shared}
        return cls(default_headers=dict(settings.default_headers) or None, **values)


@dataclass(slots=True)
class AIStreamEvent:
    """One normalized streaming update.

    ``type`` is one of ``content.delta``, ``reasoning.delta``, ``tool_call.id``,
    ``tool_calls.function.arguments.delta``, ``tool_calls.function.arguments.done``,
    ``usage`` or ``finish``.
    """

    type: str
    content: str | None = None
    tool_name: str | None = None
    tool_index: int | None = None
    tool_arguments: str | None = None
    arguments_delta: str | None = None
    tool_call_id: str | None = None
    usage: Mapping[str, int] | None = None
    finish_reason: str | None = None


class AIClient:
    """Streams chat completions with retries limited to the pre-output phase."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client if client is not None else _open_client(settings)
        self._counter = build_token_counter(settings.model)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Iterable[ChatCompletionToolParam] | None = None,
        temperature: float | None = None,
        include_usage: bool = True,
        **extra_params: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        """Yield normalized events for one completion.

        Connection, timeout, rate-limit and server errors restart the request
        only while nothing has been yielded yet. Once output has reached the
        caller the error propagates unchanged.
        """

        history = [cast(ChatCompletionMessageParam, dict(message)) for message in messages]
        if not history:
            raise ValueError("At least one message is required to start a chat")

        request: dict[str, Any] = {"model": self._settings.model, "messages": history}
        tool_list = list(tools or ())
        if tool_list:
            request["tools"] = tool_list
        effective_temperature = self._settings.temperature if temperature is None else temperature
        if effective_temperature is not None:
            request["temperature"] = effective_temperature
        if include_usage:
            request["stream_options"] = {"include_usage": True}
        request.update(extra_params)

        LOGGER.debug("Streaming %s with %d message(s)", self._settings.model, len(history))
        if self._settings.debug_logging:
            LOGGER.debug("Chat request:\n%s", _dump(request))

        emitted = False
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(multiplier=self._settings.retry_min_seconds, max=self._settings.retry_max_seconds),
            retry=retry_if_exception(lambda exc: not emitted and isinstance(exc, RETRYABLE_ERRORS)),
        )
        async for attempt in retrying:
            with attempt:
                async with self._client.chat.completions.stream(**request) as stream:
                    async for raw in stream:
                        for event in normalize_stream_event(raw):
                            emitted = True
                            yield event

    def count_tokens(self, text: str) -> int:
        try:
            return self._counter.count(text)
        except Exception:  # pragma: no cover - tokenizer failure
            LOGGER.debug("Token counter failed; estimating from bytes", exc_info=True)
            return ApproxByteCounter().count(text)

    async def aclose(self) -> None:
        """Release the HTTP resources held by the SDK client."""

        close = getattr(self._client, "close", None)
        if close is not None:
            outcome = close()
            if inspect.isawaitable(outcome):
                await outcome


def normalize_stream_event(event: ChatCompletionStreamEvent[Any]) -> list[AIStreamEvent]:
    """Map one SDK stream event onto zero or more :class:`AIStreamEvent` records.

    The SDK's typed helper events carry content and argument deltas; tool call
    ids, reasoning text, finish reasons and usage only appear on raw chunks.
    """

    kind = getattr(event, "type", None)
    if kind == "chunk":
        return list(_chunk_events(getattr(event, "chunk", None)))
    if kind == "content.delta":
        text = getattr(event, "delta", None)
        return [AIStreamEvent(type=kind, content=str(text))] if text else []
    if kind in _ARGUMENT_EVENTS:
        return [
            AIStreamEvent(
                type=kind,
                tool_name=getattr(event, "name", None),
                tool_index=getattr(event, "index", None),
                tool_arguments=getattr(event, "arguments", None),
                arguments_delta=getattr(event, "arguments_delta", None),
            )
        ]
    return []


def _chunk_events(chunk: Any) -> Iterator[AIStreamEvent]:
    if chunk is None:
        return
    for choice in getattr(chunk, "choices", None) or ():
        delta = getattr(choice, "delta", None)
        reasoning = _provider_field(delta, "reasoning_content") or _provider_field(delta, "reasoning")
        if reasoning:
            yield AIStreamEvent(type="reasoning.delta", content=str(reasoning))
        for call in getattr(delta, "tool_calls", None) or ():
            if getattr(call, "id", None):
                yield AIStreamEvent(
                    type="tool_call.id",
                    tool_call_id=call.id,
                    tool_index=getattr(call, "index", None),
                    tool_name=getattr(getattr(call, "function", None), "name", None),
                )
        if getattr(choice, "finish_reason", None):
            yield AIStreamEvent(type="finish", finish_reason=choice.finish_reason)
    usage = getattr(chunk, "usage", None)
    if usage is not None:
        counts = {
            key: int(getattr(usage, key, 0) or 0)
            for key in ("prompt_tokens", "completion_tokens", "total_tokens")
        }
        yield AIStreamEvent(type="usage", usage=counts)


def _provider_field(delta: Any, name: str) -> Any:
    """Read a non-standard delta field, which the SDK keeps in ``model_extra``."""

    if delta is None:
        return None
    value = getattr(delta, name, None)
    if value is None and isinstance(getattr(delta, "model_extra", None), Mapping):
        value = delta.model_extra.get(name)
    return value


def _open_client(settings: ClientSettings) -> AsyncOpenAI:
    # Retries are driven by tenacity so they can stop once output has started.
    return AsyncOpenAI(
        api_key=settings.api_key,
        base_url=settings.base_url,
        timeout=settings.request_timeout,
        default_headers=dict(settings.default_headers) if settings.default_headers else None,
        max_retries=0,
    )


def _dump(payload: Mapping[str, Any]) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        return repr(payload)
