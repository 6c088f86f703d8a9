"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Iterable, Sequence

from inkwell.ai.orchestration.dispatcher import ToolDispatcher
from inkwell.ai.orchestration.document import DocumentContext
from inkwell.ai.orchestration.loop import ChatController, ConversationLoop, LoopConfig
from inkwell.ai.orchestration.permissions import ApprovalPolicy
from inkwell.ai.orchestration.persistence import InMemoryMessageStore
from inkwell.ai.streaming.transport import ChatRequest
from inkwell.ai.tools.registry import build_default_registry
from inkwell.ai.tools.remote import RemoteToolResult
from inkwell.events import EventBus


# -----------------------------------------------------------------------------
# Frame builders
# -----------------------------------------------------------------------------


def frame(event: str, payload: dict[str, Any]) -> bytes:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n".encode("utf-8")


def content_frames(*parts: str) -> list[bytes]:
    return [frame("content", {"content": part}) for part in parts]


def tool_call(call_id: str, name: str, arguments: dict[str, Any] | str, location: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": call_id,
        "type": "function",
        "function": {
            "name": name,
            "arguments": arguments if isinstance(arguments, str) else json.dumps(arguments),
        },
    }
    if location:
        payload["executionLocation"] = location
    return payload


def tool_round(*calls: dict[str, Any], text: str = "") -> list[bytes]:
    """A round that announces ``calls``, streams their arguments, then sends the final list."""

    frames = content_frames(text) if text else []
    for index, call in enumerate(calls):
        frames.append(
            frame("tool_call_start", {"id": call["id"], "name": call["function"]["name"], "index": index})
        )
        frames.append(
            frame(
                "tool_call_arguments",
                {"id": call["id"], "index": index, "argumentsDelta": call["function"]["arguments"]},
            )
        )
    frames.append(frame("tool_calls", {"toolCalls": list(calls)}))
    frames.append(done_frame())
    return frames


def done_frame(prompt: int = 10, completion: int = 5, duration: int = 42) -> bytes:
    return frame(
        "done",
        {
            "success": True,
            "usage": {"promptTokens": prompt, "completionTokens": completion, "totalTokens": prompt + completion},
            "duration": duration,
        },
    )


def text_round(text: str) -> list[bytes]:
    return [*content_frames(text), done_frame()]


# -----------------------------------------------------------------------------
# Transports and collaborators
# -----------------------------------------------------------------------------


class ScriptedTransport:
    """Replays one scripted list of byte chunks per request."""

    def __init__(self, rounds: Iterable[Sequence[bytes]]) -> None:
        self._rounds = [list(chunks) for chunks in rounds]
        self.requests: list[ChatRequest] = []

    async def stream(self, request: ChatRequest) -> AsyncIterator[bytes]:
        self.requests.append(request)
        if not self._rounds:
            raise AssertionError("Unexpected extra request")
        for chunk in self._rounds.pop(0):
            await asyncio.sleep(0)
            yield chunk


class BlockingTransport:
    """Yields ``prefix`` and then waits until released (or cancelled)."""

    def __init__(self, prefix: Sequence[bytes]) -> None:
        self._prefix = list(prefix)
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.closed = False
        self.requests: list[ChatRequest] = []

    async def stream(self, request: ChatRequest) -> AsyncIterator[bytes]:
        self.requests.append(request)
        try:
            for chunk in self._prefix:
                yield chunk
            self.started.set()
            await self.release.wait()
        finally:
            self.closed = True


class RecordingSink:
    """Document sink that records every callback."""

    def __init__(self) -> None:
        self.titles: list[str] = []
        self.contents: list[str] = []
        self.fail_next = False

    def on_title_change(self, title: str) -> None:
        self.titles.append(title)

    def on_content_change(self, content: str) -> None:
        if self.fail_next:
            self.fail_next = False
            raise RuntimeError("editor is read-only")
        self.contents.append(content)


class FakeRemoteExecutor:
    def __init__(self, results: dict[str, RemoteToolResult] | None = None, *, block: bool = False) -> None:
        self.results = results or {}
        self.calls: list[tuple[str, str, str]] = []
        self.block = block
        self.started = asyncio.Event()

    async def execute(self, tool_call_id: str, tool_name: str, arguments: str) -> RemoteToolResult:
        self.calls.append((tool_call_id, tool_name, arguments))
        self.started.set()
        if self.block:
            await asyncio.Event().wait()
        return self.results.get(tool_name, RemoteToolResult(success=True, result={"items": []}))


class EventRecorder:
    """Subscribe to event types on a bus and keep what arrives."""

    def __init__(self, bus: EventBus, *event_types: type) -> None:
        self.events: list[Any] = []
        for event_type in event_types:
            bus.subscribe(event_type, self.events.append)

    def of_type(self, event_type: type) -> list[Any]:
        return [event for event in self.events if isinstance(event, event_type)]


def make_controller(
    rounds: Iterable[Sequence[bytes]] | None = None,
    *,
    content: str = "line1\nline2\nline3\n",
    title: str = "Draft",
    transport: Any = None,
    remote: Any = None,
    yolo: bool = False,
    overrides: dict[str, bool] | None = None,
    max_loop_count: int = 20,
    unlimited: bool = False,
    bus: EventBus | None = None,
    store: Any = None,
) -> tuple[ChatController, DocumentContext, RecordingSink, Any]:
    registry = build_default_registry()
    sink = RecordingSink()
    document = DocumentContext(title, content, article_id="42", sink=sink)
    transport = transport or ScriptedTransport(rounds or [])
    loop = ConversationLoop(
        transport,
        ToolDispatcher(registry, remote_executor=remote or FakeRemoteExecutor()),
        document,
        config=LoopConfig(model_id="test-model", max_loop_count=max_loop_count, unlimited_loop=unlimited),
        requires_approval=ApprovalPolicy(registry, yolo_mode=yolo, overrides=overrides),
        store=store if store is not None else InMemoryMessageStore(),
        bus=bus,
    )
    return ChatController(loop, bus=bus), document, sink, transport


def tool_messages(request: ChatRequest) -> list[dict[str, Any]]:
    return [dict(message) for message in request.messages if message.get("role") == "tool"]
