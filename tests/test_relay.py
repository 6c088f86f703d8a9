"""Tests for relaying provider streams as event frames."""

from __future__ import annotations

import json
from datetime import date
from typing import Any, cast

import httpx
import pytest
from openai import APIConnectionError

from inkwell.ai.client import AIClient, AIStreamEvent, ApproxByteCounter
from inkwell.ai.orchestration.types import LoopState
from inkwell.ai.streaming.decoder import StreamDecoder
from inkwell.ai.streaming.events import StreamEvent, StreamEventType
from inkwell.ai.streaming.relay import OpenAIRelayTransport
from inkwell.ai.streaming.transport import ArticleContext, ChatRequest
from inkwell.ai.tools.registry import build_default_registry

from tests.helpers import make_controller


class FakeAIClient:
    def __init__(self, events: list[AIStreamEvent | BaseException]) -> None:
        self._events = events
        self.calls: list[dict[str, Any]] = []

    async def stream_chat(self, messages, *, tools=None, **extra):
        self.calls.append({"messages": messages, "tools": tools, **extra})
        for item in self._events:
            if isinstance(item, BaseException):
                raise item
            yield item

    def count_tokens(self, text: str) -> int:
        return ApproxByteCounter().count(text)


class TickingClock:
    def __init__(self, step: float = 0.25) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


def _request(**overrides: Any) -> ChatRequest:
    options: dict[str, Any] = {
        "provider_id": "openai",
        "model_id": "stub",
        "messages": [{"role": "user", "content": "Fix the typo"}],
        "article": ArticleContext(title="Draft", content_length=18, article_id="42"),
    }
    options.update(overrides)
    return ChatRequest(**options)


async def _relay(client: FakeAIClient, request: ChatRequest | None = None, **kwargs: Any) -> list[StreamEvent]:
    transport = OpenAIRelayTransport(cast(AIClient, client), registry=build_default_registry(), **kwargs)
    decoder = StreamDecoder()
    events: list[StreamEvent] = []
    async for chunk in transport.stream(request or _request()):
        events.extend(decoder.feed(chunk))
    events.extend(decoder.flush())
    assert decoder.dropped_lines == 0
    return events


@pytest.mark.asyncio
async def test_provider_deltas_become_frames() -> None:
    client = FakeAIClient(
        [
            AIStreamEvent(type="reasoning.delta", content="Checking."),
            AIStreamEvent(type="content.delta", content="Fixing it."),
            AIStreamEvent(type="tool_call.id", tool_call_id="call_1", tool_index=0, tool_name="replace_content"),
            AIStreamEvent(type="tool_calls.function.arguments.delta", tool_index=0, arguments_delta='{"search": "teh", '),
            AIStreamEvent(type="tool_calls.function.arguments.delta", tool_index=0, arguments_delta='"replace": "the"}'),
            AIStreamEvent(type="usage", usage={"prompt_tokens": 20, "completion_tokens": 8, "total_tokens": 28}),
        ]
    )

    events = await _relay(client)

    assert [event.type for event in events] == [
        StreamEventType.REASONING_START,
        StreamEventType.REASONING,
        StreamEventType.REASONING_END,
        StreamEventType.CONTENT,
        StreamEventType.TOOL_CALL_START,
        StreamEventType.TOOL_CALL_ARGUMENTS,
        StreamEventType.TOOL_CALL_ARGUMENTS,
        StreamEventType.TOOL_CALLS,
        StreamEventType.DONE,
    ]
    start = events[4]
    assert (start.tool_call_id, start.tool_name, start.execution_location) == ("call_1", "replace_content", "local")
    assert events[6].arguments_length == len('{"search": "teh", "replace": "the"}')
    (final,) = events[7].tool_calls or ()
    assert json.loads(final["function"]["arguments"]) == {"search": "teh", "replace": "the"}
    assert final["executionLocation"] == "local"
    assert events[8].usage is not None
    assert events[8].usage.total_tokens == 28


@pytest.mark.asyncio
async def test_remote_tools_are_tagged() -> None:
    client = FakeAIClient(
        [
            AIStreamEvent(type="tool_call.id", tool_call_id="call_9", tool_index=0, tool_name="query_articles"),
            AIStreamEvent(type="tool_calls.function.arguments.done", tool_index=0, tool_arguments='{"keyword": "x"}'),
        ]
    )

    events = await _relay(client)

    assert events[0].execution_location == "remote"
    (final,) = events[1].tool_calls or ()
    assert final["function"]["arguments"] == '{"keyword": "x"}'


@pytest.mark.asyncio
async def test_system_prompt_tools_and_reasoning_effort_are_sent() -> None:
    client = FakeAIClient([AIStreamEvent(type="content.delta", content="ok")])

    await _relay(client, _request(thinking_enabled=True, reasoning_effort="high"))

    (call,) = client.calls
    assert call["messages"][0]["role"] == "system"
    assert "Article title: Draft" in call["messages"][0]["content"]
    assert call["messages"][1] == {"role": "user", "content": "Fix the typo"}
    assert {tool["function"]["name"] for tool in call["tools"]} >= {"read_article"}
    assert call["reasoning_effort"] == "high"


@pytest.mark.asyncio
async def test_tools_disabled() -> None:
    client = FakeAIClient([AIStreamEvent(type="content.delta", content="ok")])

    await _relay(client, _request(enable_tools=False))

    assert client.calls[0]["tools"] is None
    assert "reasoning_effort" not in client.calls[0]


@pytest.mark.asyncio
async def test_custom_prompt_builder() -> None:
    client = FakeAIClient([])

    await _relay(client, prompt_builder=lambda request: f"Edit {request.model_id}")

    assert client.calls[0]["messages"][0] == {"role": "system", "content": "Edit stub"}


@pytest.mark.asyncio
async def test_retryable_provider_error_becomes_error_frame() -> None:
    error = APIConnectionError(request=httpx.Request("POST", "http://local"))
    client = FakeAIClient([AIStreamEvent(type="content.delta", content="par"), error])

    events = await _relay(client)

    assert [event.type for event in events] == [StreamEventType.CONTENT, StreamEventType.ERROR]
    assert events[-1].retryable


@pytest.mark.asyncio
async def test_other_provider_error_is_not_retryable() -> None:
    client = FakeAIClient([ValueError("bad tool schema")])

    (event,) = await _relay(client)

    assert event.type == StreamEventType.ERROR
    assert event.error == "bad tool schema"
    assert not event.retryable


@pytest.mark.asyncio
async def test_usage_is_estimated_and_duration_measured() -> None:
    client = FakeAIClient([AIStreamEvent(type="content.delta", content="twelve chars")])

    events = await _relay(client, clock=TickingClock(step=0.25))

    done = events[-1]
    assert done.usage is not None
    assert done.usage.completion_tokens == 3
    assert done.usage.total_tokens == done.usage.prompt_tokens + 3
    assert done.duration == 250


@pytest.mark.asyncio
async def test_loop_runs_on_the_relay() -> None:
    client = FakeAIClient([AIStreamEvent(type="content.delta", content="Looks good.")])
    transport = OpenAIRelayTransport(cast(AIClient, client), registry=build_default_registry())
    controller, *_ = make_controller(transport=transport)

    await controller.send_message("Review please")

    assert controller.state == LoopState.IDLE
    assert controller.session.messages[-1].content == "Looks good."


def test_default_prompt_mentions_environment() -> None:
    from inkwell.ai.prompts import build_system_prompt

    prompt = build_system_prompt(today=date(2024, 5, 1))

    assert "Today's date: 2024-05-01" in prompt
    assert "No article is open." in prompt
