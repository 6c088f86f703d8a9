"""Serve the event stream directly from an OpenAI-compatible provider.

:class:`OpenAIRelayTransport` does in-process what the backend does over
HTTP: it calls the provider through :class:`~inkwell.ai.client.AIClient` and
re-encodes the provider deltas as ``event:`` / ``data:`` frames, so the
conversation loop consumes the same wire format either way.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Mapping

from ..client import RETRYABLE_ERRORS, AIClient, AIStreamEvent
from ..prompts import build_system_prompt, with_system_prompt
from ..tools.registry import ToolRegistry
from .events import StreamEvent, StreamEventType, TokenUsage, encode_frame
from .transport import ChatRequest

__all__ = ["OpenAIRelayTransport"]

LOGGER = logging.getLogger(__name__)

PromptBuilder = Callable[[ChatRequest], str]


@dataclass(slots=True)
class _CallSlot:
    id: str
    name: str = ""
    arguments: str = ""
    started: bool = False


class OpenAIRelayTransport:
    """A :class:`~inkwell.ai.streaming.transport.StreamTransport` backed by ``AIClient``."""

    def __init__(
        self,
        client: AIClient,
        *,
        registry: ToolRegistry | None = None,
        prompt_builder: PromptBuilder | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._registry = registry
        self._prompt_builder = prompt_builder or self._default_prompt
        self._clock = clock

    async def stream(self, request: ChatRequest) -> AsyncIterator[bytes]:
        started = self._clock()
        state = _RelayState(self._registry)
        tools = list(request.tools) or (self._registry.to_openai_tools() if self._registry else [])
        messages = with_system_prompt(request.messages, self._prompt_builder(request))
        extra: dict[str, Any] = {}
        if request.thinking_enabled and request.reasoning_effort:
            extra["reasoning_effort"] = request.reasoning_effort

        try:
            async for event in self._client.stream_chat(
                messages,
                tools=tools if request.enable_tools and tools else None,
                **extra,
            ):
                for frame in state.translate(event):
                    yield encode_frame(frame)
        except RETRYABLE_ERRORS as exc:
            LOGGER.warning("Provider stream failed (retryable): %s", exc)
            yield encode_frame(StreamEvent(type=StreamEventType.ERROR, error=str(exc), retryable=True))
            return
        except Exception as exc:
            LOGGER.error("Provider stream failed: %s", exc)
            yield encode_frame(StreamEvent(type=StreamEventType.ERROR, error=str(exc) or type(exc).__name__))
            return

        for frame in state.finish():
            yield encode_frame(frame)
        usage = state.usage or self._estimate_usage(messages, state)
        duration = int((self._clock() - started) * 1000)
        yield encode_frame(StreamEvent(type=StreamEventType.DONE, usage=usage, duration=duration))

    def _default_prompt(self, request: ChatRequest) -> str:
        tools = request.tools or (self._registry.to_openai_tools() if self._registry else ())
        return build_system_prompt(article=request.article, tools=tools if request.enable_tools else ())

    def _estimate_usage(self, messages: list[dict[str, object]], state: "_RelayState") -> TokenUsage:
        prompt_text = "\n".join(str(message.get("content") or "") for message in messages)
        prompt = self._client.count_tokens(prompt_text)
        completion = self._client.count_tokens(state.content + state.reasoning)
        return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


class _RelayState:
    """Per-round bookkeeping that maps provider deltas onto frames."""

    def __init__(self, registry: ToolRegistry | None) -> None:
        self._registry = registry
        self._calls: dict[int, _CallSlot] = {}
        self._reasoning_open = False
        self.content = ""
        self.reasoning = ""
        self.usage: TokenUsage | None = None

    def translate(self, event: AIStreamEvent) -> list[StreamEvent]:
        if event.type == "reasoning.delta" and event.content:
            frames = []
            if not self._reasoning_open:
                self._reasoning_open = True
                frames.append(StreamEvent(type=StreamEventType.REASONING_START))
            self.reasoning += event.content
            frames.append(StreamEvent(type=StreamEventType.REASONING, content=event.content))
            return frames
        if event.type == "content.delta" and event.content:
            self.content += event.content
            return [*self._close_reasoning(), StreamEvent(type=StreamEventType.CONTENT, content=event.content)]
        if event.type == "tool_call.id":
            slot = self._slot(event.tool_index, event.tool_call_id)
            if event.tool_name:
                slot.name = event.tool_name
            return self._close_reasoning() + self._start(slot, event.tool_index)
        if event.type == "tool_calls.function.arguments.delta":
            slot = self._slot(event.tool_index, None)
            if event.tool_name:
                slot.name = event.tool_name
            frames = self._close_reasoning() + self._start(slot, event.tool_index)
            delta = event.arguments_delta or ""
            slot.arguments += delta
            if delta:
                frames.append(
                    StreamEvent(
                        type=StreamEventType.TOOL_CALL_ARGUMENTS,
                        tool_call_id=slot.id,
                        index=event.tool_index,
                        arguments_delta=delta,
                        arguments_length=len(slot.arguments),
                    )
                )
            return frames
        if event.type == "tool_calls.function.arguments.done":
            slot = self._slot(event.tool_index, None)
            if event.tool_name:
                slot.name = event.tool_name
            if event.tool_arguments is not None:
                slot.arguments = event.tool_arguments
            return []
        if event.type == "usage" and event.usage:
            self.usage = TokenUsage.from_payload(event.usage)
        return []

    def finish(self) -> list[StreamEvent]:
        frames = self._close_reasoning()
        if self._calls:
            calls = tuple(self._to_openai(slot) for _, slot in sorted(self._calls.items()))
            frames.append(StreamEvent(type=StreamEventType.TOOL_CALLS, tool_calls=calls))
        return frames

    def _slot(self, index: int | None, call_id: str | None) -> _CallSlot:
        key = index if index is not None else len(self._calls)
        slot = self._calls.get(key)
        if slot is None:
            slot = _CallSlot(id=call_id or f"call_{key}")
            self._calls[key] = slot
        elif call_id and not slot.started:
            slot.id = call_id
        return slot

    def _start(self, slot: _CallSlot, index: int | None) -> list[StreamEvent]:
        if slot.started or not slot.name:
            return []
        slot.started = True
        return [
            StreamEvent(
                type=StreamEventType.TOOL_CALL_START,
                tool_call_id=slot.id,
                tool_name=slot.name,
                index=index,
                execution_location=self._location(slot.name),
            )
        ]

    def _close_reasoning(self) -> list[StreamEvent]:
        if not self._reasoning_open:
            return []
        self._reasoning_open = False
        return [StreamEvent(type=StreamEventType.REASONING_END)]

    def _location(self, name: str) -> str | None:
        return self._registry.execution_location(name) if self._registry else None

    def _to_openai(self, slot: _CallSlot) -> Mapping[str, Any]:
        payload: dict[str, Any] = {
            "id": slot.id,
            "type": "function",
            "function": {"name": slot.name, "arguments": slot.arguments},
        }
        location = self._location(slot.name)
        if location:
            payload["executionLocation"] = location
        return payload
