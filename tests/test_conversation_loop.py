"""Tests for ConversationLoop and ChatController.

Tests cover:
- Plain rounds, automatic continuation after tool calls and the depth limit
- Suspension for approval and a single resume
- Cancellation while streaming and while a remote tool runs
- Queued user messages and error handling
"""

from __future__ import annotations

import asyncio
import json

import pytest

from inkwell.ai.orchestration.loop import DEPTH_EXCEEDED_MESSAGE
from inkwell.ai.orchestration.persistence import InMemoryMessageStore
from inkwell.ai.orchestration.types import LoopState, MessageStatus, Role, ToolCallStatus
from inkwell.ai.streaming.transport import TransportError
from inkwell.events import (
    EventBus,
    LoopDepthExceeded,
    LoopStateChanged,
    MessageQueued,
    MessagesCleared,
    MessageUpdated,
    TurnCancelled,
    TurnCompleted,
    TurnFailed,
)

from tests.helpers import (
    BlockingTransport,
    EventRecorder,
    FakeRemoteExecutor,
    ScriptedTransport,
    content_frames,
    done_frame,
    frame,
    make_controller,
    text_round,
    tool_call,
    tool_messages,
    tool_round,
)


# =============================================================================
# Test doubles
# =============================================================================


class GatedTransport(ScriptedTransport):
    """Holds the first round until ``gate`` is set."""

    def __init__(self, rounds) -> None:
        super().__init__(rounds)
        self.gate = asyncio.Event()
        self.waiting = asyncio.Event()

    async def stream(self, request):
        first = not self.requests
        if first:
            self.waiting.set()
            await self.gate.wait()
        async for chunk in super().stream(request):
            yield chunk


class FailingTransport:
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.requests = []

    async def stream(self, request):
        self.requests.append(request)
        raise self.error
        yield b""  # pragma: no cover


class BrokenStore:
    def append_message(self, session_id, message):
        raise OSError("disk full")

    def update_message(self, session_id, message_id, message):
        raise OSError("disk full")


def _replace(call_id: str, search: str, replace: str) -> dict:
    return tool_call(call_id, "replace_content", {"search": search, "replace": replace})


# =============================================================================
# Plain rounds
# =============================================================================


class TestPlainRound:
    @pytest.mark.asyncio
    async def test_text_reply_completes_turn(self) -> None:
        bus: EventBus = EventBus()
        recorder = EventRecorder(bus, TurnCompleted, LoopStateChanged, MessageUpdated)
        store = InMemoryMessageStore()
        controller, _, _, transport = make_controller(
            [[*content_frames("Hel", "lo!"), done_frame(prompt=7, completion=2)]], bus=bus, store=store
        )

        sent = await controller.send_message("Hi")

        assert sent is True
        assert controller.state == LoopState.IDLE
        (completed,) = recorder.of_type(TurnCompleted)
        assert completed.content == "Hello!"
        assert completed.usage == {"promptTokens": 7, "completionTokens": 2, "totalTokens": 9}
        assert [event.content for event in recorder.of_type(MessageUpdated)] == ["Hel", "Hello!"]
        assert [(e.previous, e.current) for e in recorder.of_type(LoopStateChanged)] == [
            ("idle", "streaming"),
            ("streaming", "idle"),
        ]
        assert [message["role"] for message in store.messages(controller.session.session_id)] == [
            "user",
            "assistant",
        ]

    @pytest.mark.asyncio
    async def test_request_carries_history_tools_and_article(self) -> None:
        controller, _, _, transport = make_controller([text_round("Sure.")])

        await controller.send_message("Tighten the intro")

        (request,) = transport.requests
        assert request.model_id == "test-model"
        assert list(request.messages) == [{"role": "user", "content": "Tighten the intro"}]
        assert request.article is not None
        assert request.article.title == "Draft"
        assert request.article.content_length == len("line1\nline2\nline3\n")
        assert {tool["function"]["name"] for tool in request.tools} >= {"read_article", "replace_content"}

    @pytest.mark.asyncio
    async def test_images_become_multipart_content(self) -> None:
        controller, _, _, transport = make_controller([text_round("A cat.")])

        await controller.send_message("What is this?", images=["data:image/png;base64,AAAA"])

        content = transport.requests[0].messages[0]["content"]
        assert content == [
            {"type": "text", "text": "What is this?"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
        ]

    @pytest.mark.asyncio
    async def test_empty_message_is_rejected(self) -> None:
        controller, *_ = make_controller()

        with pytest.raises(ValueError):
            await controller.send_message("   ")

    @pytest.mark.asyncio
    async def test_advance_requires_idle(self) -> None:
        controller, *_ = make_controller([tool_round(_replace("c1", "line2", "LINE2"))])
        await controller.send_message("Edit")

        with pytest.raises(RuntimeError):
            await controller.loop.advance([{"role": "user", "content": "again"}])

    @pytest.mark.asyncio
    async def test_persistence_failures_do_not_break_the_round(self) -> None:
        controller, *_ = make_controller([text_round("Still fine.")], store=BrokenStore())

        await controller.send_message("Hi")

        assert controller.state == LoopState.IDLE
        assert controller.session.messages[-1].content == "Still fine."


# =============================================================================
# Tool rounds
# =============================================================================


class TestToolRounds:
    @pytest.mark.asyncio
    async def test_auto_approved_calls_continue_the_loop(self) -> None:
        bus: EventBus = EventBus()
        recorder = EventRecorder(bus, LoopStateChanged)
        controller, document, _, transport = make_controller(
            [tool_round(_replace("c1", "line2", "LINE2"), text="Editing."), text_round("Done.")],
            yolo=True,
            bus=bus,
        )

        await controller.send_message("Capitalize line 2")

        assert document.content == "line1\nLINE2\nline3\n"
        assert len(transport.requests) == 2
        continuation = list(transport.requests[1].messages)
        assert continuation[1]["role"] == "assistant"
        assert continuation[1]["content"] == "Editing."
        assert continuation[1]["tool_calls"][0]["id"] == "c1"
        assert continuation[2]["role"] == "tool"
        assert [event.current for event in recorder.of_type(LoopStateChanged)] == [
            "streaming",
            "executing_tools",
            "streaming",
            "idle",
        ]

    @pytest.mark.asyncio
    async def test_each_round_gets_its_own_assistant_message(self) -> None:
        controller, *_ = make_controller([tool_round(_replace("c1", "line2", "x")), text_round("Done.")], yolo=True)

        await controller.send_message("Edit")

        assistants = [message for message in controller.session.messages if message.role == Role.ASSISTANT]
        assert len(assistants) == 2
        assert assistants[0].tool_calls[0].status == ToolCallStatus.COMPLETED
        assert assistants[1].content == "Done."

    @pytest.mark.asyncio
    async def test_failed_call_is_reported_to_the_model(self) -> None:
        controller, _, _, transport = make_controller(
            [tool_round(tool_call("c1", "summon_editor", {})), text_round("Sorry.")]
        )

        await controller.send_message("Edit")

        (message,) = tool_messages(transport.requests[1])
        body = json.loads(message["content"])
        assert body["success"] is False
        assert body["toolName"] == "summon_editor"
        assert controller.state == LoopState.IDLE

    @pytest.mark.asyncio
    async def test_mixed_round_suspends_then_resumes_once(self) -> None:
        controller, document, _, transport = make_controller(
            [
                tool_round(
                    tool_call("c1", "read_article", {"section": "title"}),
                    _replace("c2", "line2", "LINE2"),
                ),
                text_round("All done."),
            ],
            overrides={"read_article": False},
        )

        await controller.send_message("Read, then edit")

        assert controller.state == LoopState.AWAITING_APPROVAL
        assert len(controller.approvals.changes) == 1
        paused = controller.session.paused
        assert paused is not None
        assert [call.status for call in paused.tool_calls] == [
            ToolCallStatus.COMPLETED,
            ToolCallStatus.AWAITING_CONFIRMATION,
        ]

        await controller.accept("c2")

        assert len(transport.requests) == 2
        messages = tool_messages(transport.requests[1])
        assert [message["tool_call_id"] for message in messages] == ["c1", "c2"]
        assert document.content == "line1\nLINE2\nline3\n"
        assert controller.state == LoopState.IDLE
        assert controller.session.paused is None

    @pytest.mark.asyncio
    async def test_resume_without_paused_round_is_ignored(self) -> None:
        controller, _, _, transport = make_controller([text_round("Hi.")])
        await controller.send_message("Hi")

        assert await controller.loop.resume() == LoopState.IDLE
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_arguments_without_final_list_still_execute(self) -> None:
        arguments = json.dumps({"title": "Streamed"})
        round_frames = [
            frame("tool_call_start", {"id": "c1", "name": "update_title", "index": 0}),
            frame("tool_call_arguments", {"id": "c1", "index": 0, "argumentsDelta": arguments[:8]}),
            frame("tool_call_arguments", {"id": "c1", "index": 0, "argumentsDelta": arguments[8:]}),
            done_frame(),
        ]
        controller, document, _, _ = make_controller([round_frames, text_round("Renamed.")], yolo=True)

        await controller.send_message("Rename")

        assert document.title == "Streamed"


# =============================================================================
# Depth limit
# =============================================================================


class TestDepthLimit:
    @pytest.mark.asyncio
    async def test_stops_after_max_rounds(self) -> None:
        bus: EventBus = EventBus()
        recorder = EventRecorder(bus, LoopDepthExceeded)
        controller, _, _, transport = make_controller(
            [
                tool_round(tool_call("c1", "read_article", {})),
                tool_round(tool_call("c2", "read_article", {})),
            ],
            yolo=True,
            max_loop_count=2,
            bus=bus,
        )

        await controller.send_message("Keep reading")

        assert len(transport.requests) == 2
        (event,) = recorder.of_type(LoopDepthExceeded)
        assert event.limit == 2
        assert controller.session.messages[-1].content == DEPTH_EXCEEDED_MESSAGE.format(limit=2)
        assert controller.state == LoopState.IDLE

    @pytest.mark.asyncio
    async def test_unlimited_ignores_the_limit(self) -> None:
        controller, _, _, transport = make_controller(
            [
                tool_round(tool_call("c1", "read_article", {})),
                tool_round(tool_call("c2", "read_article", {})),
                text_round("Finished."),
            ],
            yolo=True,
            max_loop_count=1,
            unlimited=True,
        )

        await controller.send_message("Keep reading")

        assert len(transport.requests) == 3
        assert controller.session.messages[-1].content == "Finished."

    @pytest.mark.asyncio
    async def test_new_message_resets_the_counter(self) -> None:
        controller, _, _, transport = make_controller(
            [
                tool_round(tool_call("c1", "read_article", {})),
                tool_round(tool_call("c2", "read_article", {})),
            ],
            yolo=True,
            max_loop_count=1,
        )

        await controller.send_message("One")
        await controller.send_message("Two")

        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_depth_notice_is_not_sent_to_the_model(self) -> None:
        controller, _, _, transport = make_controller(
            [
                tool_round(tool_call("c1", "read_article", {})),
                text_round("Sure."),
            ],
            yolo=True,
            max_loop_count=1,
        )
        notice = DEPTH_EXCEEDED_MESSAGE.format(limit=1)

        await controller.send_message("One")
        await controller.send_message("Two")

        (shown,) = [message for message in controller.session.messages if message.content == notice]
        assert shown.transient
        second = list(transport.requests[1].messages)
        assert all(entry["content"] != notice for entry in second)
        assert [entry["role"] for entry in second] == ["user", "user"]
        assert [entry["content"] for entry in second] == ["One", "Two"]


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_remote_call(self) -> None:
        bus: EventBus = EventBus()
        recorder = EventRecorder(bus, TurnCancelled)
        remote = FakeRemoteExecutor(block=True)
        controller, _, _, transport = make_controller(
            [tool_round(tool_call("c1", "query_articles", {"keyword": "tea"}))],
            remote=remote,
            overrides={"query_articles": False},
            bus=bus,
        )

        task = asyncio.ensure_future(controller.send_message("Find related articles"))
        await remote.started.wait()
        assert controller.state == LoopState.EXECUTING_TOOLS
        assert controller.cancel() is True
        await task

        call = controller.session.find_tool_call("c1")
        assert call is not None
        assert call.status == ToolCallStatus.FAILED
        assert call.error == "interrupted"
        assert controller.state == LoopState.IDLE
        assert len(transport.requests) == 1
        assert len(recorder.of_type(TurnCancelled)) == 1

    @pytest.mark.asyncio
    async def test_cancel_while_streaming_keeps_partial_text(self) -> None:
        transport = BlockingTransport(content_frames("Partial answer"))
        controller, *_ = make_controller(transport=transport)

        task = asyncio.ensure_future(controller.send_message("Write a lot"))
        await transport.started.wait()
        controller.cancel()
        await task

        message = controller.session.messages[-1]
        assert message.content == "Partial answer"
        assert message.status == MessageStatus.COMPLETED
        assert transport.closed
        assert controller.state == LoopState.IDLE

    @pytest.mark.asyncio
    async def test_cancel_is_a_no_op_while_awaiting_approval(self) -> None:
        controller, *_ = make_controller([tool_round(_replace("c1", "line2", "LINE2"))])
        await controller.send_message("Edit")

        assert controller.cancel() is False
        assert controller.state == LoopState.AWAITING_APPROVAL


# =============================================================================
# Queued messages
# =============================================================================


class TestQueue:
    @pytest.mark.asyncio
    async def test_messages_sent_while_streaming_run_in_order(self) -> None:
        bus: EventBus = EventBus()
        recorder = EventRecorder(bus, MessageQueued)
        transport = GatedTransport([text_round("one"), text_round("two"), text_round("three")])
        controller, *_ = make_controller(transport=transport, bus=bus)

        first = asyncio.ensure_future(controller.send_message("first"))
        await transport.waiting.wait()
        assert await controller.send_message("second") is False
        assert await controller.send_message("third") is False
        assert [event.queue_length for event in recorder.of_type(MessageQueued)] == [1, 2]

        transport.gate.set()
        await first

        assert len(transport.requests) == 3
        last_user = [list(request.messages)[-1]["content"] for request in transport.requests]
        assert last_user == ["first", "second", "third"]
        assert [message.content for message in controller.session.messages] == [
            "first",
            "one",
            "second",
            "two",
            "third",
            "three",
        ]
        assert not controller.session.queue

    @pytest.mark.asyncio
    async def test_message_queued_during_approval_runs_after_resume(self) -> None:
        controller, _, _, transport = make_controller(
            [tool_round(_replace("c1", "line2", "LINE2")), text_round("Edited."), text_round("Answered.")]
        )
        await controller.send_message("Edit")

        assert await controller.send_message("And another thing") is False
        await controller.accept("c1")

        assert len(transport.requests) == 3
        assert list(transport.requests[2].messages)[-1] == {"role": "user", "content": "And another thing"}
        assert controller.state == LoopState.IDLE


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_retryable_stream_error(self) -> None:
        bus: EventBus = EventBus()
        recorder = EventRecorder(bus, TurnFailed)
        store = InMemoryMessageStore()
        controller, *_ = make_controller(
            [[*content_frames("Par"), frame("error", {"error": "overloaded", "retryable": True})]],
            bus=bus,
            store=store,
        )

        await controller.send_message("Hi")

        (failed,) = recorder.of_type(TurnFailed)
        assert failed.error == "overloaded"
        assert failed.retryable
        message = controller.session.messages[-1]
        assert message.status == MessageStatus.FAILED
        assert [m["role"] for m in store.messages(controller.session.session_id)] == ["user"]
        assert controller.state == LoopState.IDLE

    @pytest.mark.asyncio
    async def test_permanent_error_is_persisted(self) -> None:
        store = InMemoryMessageStore()
        controller, *_ = make_controller([[frame("error", {"error": "bad request"})]], store=store)

        await controller.send_message("Hi")

        stored = store.messages(controller.session.session_id)
        assert stored[-1]["status"] == "failed"
        assert stored[-1]["error"] == "bad request"

    @pytest.mark.asyncio
    async def test_transport_error_marks_message_failed(self) -> None:
        bus: EventBus = EventBus()
        recorder = EventRecorder(bus, TurnFailed)
        transport = FailingTransport(TransportError("Backend returned HTTP 503", status_code=503, retryable=True))
        controller, *_ = make_controller(transport=transport, bus=bus)

        await controller.send_message("Hi")

        (failed,) = recorder.of_type(TurnFailed)
        assert failed.retryable
        assert controller.state == LoopState.IDLE

    @pytest.mark.asyncio
    async def test_failed_messages_are_left_out_of_history(self) -> None:
        transport = ScriptedTransport([[frame("error", {"error": "boom"})], text_round("Recovered.")])
        controller, *_ = make_controller(transport=transport)

        await controller.send_message("First try")
        await controller.send_message("Second try")

        roles = [entry["role"] for entry in transport.requests[1].messages]
        assert roles == ["user", "user"]


# =============================================================================
# Clear
# =============================================================================


class TestClear:
    @pytest.mark.asyncio
    async def test_clear_discards_paused_round(self) -> None:
        bus: EventBus = EventBus()
        recorder = EventRecorder(bus, MessagesCleared)
        controller, document, _, transport = make_controller(
            [tool_round(_replace("c1", "line2", "LINE2"))], bus=bus
        )
        await controller.send_message("Edit")

        controller.clear()

        assert controller.session.messages == []
        assert not controller.approvals.has_pending
        assert controller.state == LoopState.IDLE
        assert document.content == "line1\nline2\nline3\n"
        assert len(recorder.of_type(MessagesCleared)) == 1
        assert len(transport.requests) == 1
