"""Conversation Loop Controller.

One *round* sends the history to the model, streams the reply, runs the tool
calls it asked for and either continues with the tool results, stops because
the model is done, or pauses until the user has decided on every pending
change. Rounds are driven by an explicit loop with a bounded counter rather
than by recursion.

:class:`ChatController` is the user-facing entry point: it turns user input
into rounds and holds messages typed while a round is in flight until the
loop is idle again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

from ...events import (
    EventBus,
    LoopDepthExceeded,
    LoopStateChanged,
    MessageAdded,
    MessageQueued,
    MessagesCleared,
    MessageUpdated,
    PendingChangesUpdated,
    ToolCallsUpdated,
    TurnCancelled,
    TurnCompleted,
    TurnFailed,
)
from ...services.settings import DEFAULT_MAX_LOOP_COUNT, Settings
from ..streaming.abort import AbortedError, AbortSignal
from ..streaming.decoder import StreamDecoder
from ..streaming.events import StreamEvent, StreamEventType
from ..streaming.transport import ChatRequest, StreamTransport, TransportError
from ..tools.errors import OperationCancelledError
from ..tools.result_formatter import build_continuation
from .approval import PendingChangeManager
from .dispatcher import ApprovalCheck, ToolDispatcher
from .document import DocumentContext
from .persistence import MessageStore, SafeMessageStore
from .session import ChatSession, QueuedMessage
from .turn import DEFAULT_ARGS_THROTTLE_MS, TurnAccumulator
from .types import (
    HistoryEntry,
    LoopState,
    Message,
    MessageStatus,
    PausedLoopState,
    Role,
    ToolCallRecord,
    ToolCallStatus,
)

__all__ = ["LoopConfig", "ConversationLoop", "ChatController", "DEPTH_EXCEEDED_MESSAGE"]

LOGGER = logging.getLogger(__name__)

DEPTH_EXCEEDED_MESSAGE = (
    "Stopped after {limit} consecutive tool rounds without new input. Send another message to continue."
)
INTERRUPTED = OperationCancelledError().message

_IN_FLIGHT = frozenset({LoopState.STREAMING, LoopState.EXECUTING_TOOLS, LoopState.RESUMING})


@dataclass(slots=True, frozen=True)
class LoopConfig:
    """Model identity and limits applied to every round."""

    provider_id: str = "openai"
    model_id: str = ""
    max_loop_count: int = DEFAULT_MAX_LOOP_COUNT
    unlimited_loop: bool = False
    enable_tools: bool = True
    thinking_enabled: bool = False
    reasoning_effort: str | None = None
    args_update_throttle_ms: int = DEFAULT_ARGS_THROTTLE_MS

    @classmethod
    def from_settings(cls, settings: Settings) -> "LoopConfig":
        return cls(
            provider_id=settings.provider_id,
            model_id=settings.model,
            max_loop_count=settings.max_loop_count,
            unlimited_loop=settings.unlimited_loop,
            thinking_enabled=settings.thinking_enabled,
            reasoning_effort=settings.reasoning_effort if settings.thinking_enabled else None,
            args_update_throttle_ms=settings.args_update_throttle_ms,
        )


@dataclass(slots=True)
class _Continuation:
    history: list[HistoryEntry]
    loop_count: int


class ConversationLoop:
    """Drives rounds for one :class:`ChatSession`.

    The loop never blocks while changes await approval: :meth:`advance` returns
    in :attr:`LoopState.AWAITING_APPROVAL` and the approval manager calls
    :meth:`resume` once the last change has been resolved.
    """

    def __init__(
        self,
        transport: StreamTransport,
        dispatcher: ToolDispatcher,
        document: DocumentContext,
        *,
        session: ChatSession | None = None,
        config: LoopConfig | None = None,
        requires_approval: ApprovalCheck | None = None,
        store: MessageStore | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._transport = transport
        self._dispatcher = dispatcher
        self._document = document
        self._session = session or ChatSession()
        self._config = config or LoopConfig()
        self._requires_approval = requires_approval
        self._store = SafeMessageStore(store)
        self._bus = bus
        self._state = LoopState.IDLE
        self._signal: AbortSignal | None = None
        self.approvals = PendingChangeManager(
            self._session, document, resumer=self, store=self._store, bus=bus
        )

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def session(self) -> ChatSession:
        return self._session

    @property
    def document(self) -> DocumentContext:
        return self._document

    @property
    def store(self) -> SafeMessageStore:
        return self._store

    @property
    def config(self) -> LoopConfig:
        return self._config

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def advance(self, history: Sequence[HistoryEntry], loop_count: int = 0) -> LoopState:
        """Run rounds from ``history`` until the loop is idle or awaiting approval."""

        if self._state != LoopState.IDLE:
            raise RuntimeError(f"Cannot start a round while {self._state.value}")
        await self._run(list(history), loop_count)
        return self._state

    async def resume(self) -> LoopState:
        """Continue the paused round with the now-resolved tool results."""

        paused = self._session.paused
        if paused is None or self._state != LoopState.AWAITING_APPROVAL:
            LOGGER.debug("resume() ignored in state %s", self._state.value)
            return self._state
        if paused.unresolved or self._session.pending_changes:
            raise RuntimeError("Cannot resume while changes are still pending")
        self._set_state(LoopState.RESUMING)
        continuation = build_continuation(paused.history, paused.assistant_content, paused.tool_calls)
        self._session.paused = None
        LOGGER.debug("Resuming after approval at loop %d", paused.loop_count + 1)
        await self._run(continuation, paused.loop_count + 1)
        return self._state

    def cancel(self, reason: str = INTERRUPTED) -> bool:
        """Abort the in-flight round. Returns ``False`` when nothing is in flight."""

        if self._state not in _IN_FLIGHT or self._signal is None:
            return False
        LOGGER.info("Cancelling round (%s)", reason)
        self._signal.abort(reason)
        return True

    def discard_paused(self) -> None:
        """Drop the paused round and its pending changes without resuming."""

        self.approvals.discard()
        if self._state == LoopState.AWAITING_APPROVAL:
            self._set_state(LoopState.IDLE)

    # ------------------------------------------------------------------
    # Round driver
    # ------------------------------------------------------------------
    async def _run(self, history: list[HistoryEntry], loop_count: int) -> None:
        step: _Continuation | None = _Continuation(history, loop_count)
        while step is not None:
            if not self._config.unlimited_loop and step.loop_count >= self._config.max_loop_count:
                self._depth_exceeded()
                return
            step = await self._round(step.history, step.loop_count)

    async def _round(self, history: list[HistoryEntry], loop_count: int) -> _Continuation | None:
        signal = AbortSignal()
        self._signal = signal
        message = self._session.add_message(Message(role=Role.ASSISTANT, status=MessageStatus.STREAMING))
        self._publish(MessageAdded(message_id=message.id, role=message.role.value))
        self._set_state(LoopState.STREAMING)

        turn = TurnAccumulator(
            throttle_ms=self._config.args_update_throttle_ms,
            resolve_location=self._dispatcher.registry.execution_location,
        )
        request = self._build_request(history)
        LOGGER.debug("Round %d: streaming %d history entries", loop_count, len(history))
        try:
            await self._stream(request, turn, message, signal)
        except AbortedError:
            self._finish_cancelled(message, turn, turn.tool_calls)
            return None
        except TransportError as exc:
            self._finish_failed(message, turn, str(exc), exc.retryable)
            return None
        except Exception as exc:
            LOGGER.exception("Round %d failed while streaming", loop_count)
            self._finish_failed(message, turn, str(exc) or type(exc).__name__, False)
            return None

        if turn.failed:
            self._finish_failed(message, turn, turn.error or "Unknown stream error", turn.retryable)
            return None

        self._fill_message(message, turn)
        calls = turn.final_tool_calls()
        if not calls:
            message.status = MessageStatus.COMPLETED
            self._store.append(self._session.session_id, message)
            self._publish(
                TurnCompleted(
                    message_id=message.id,
                    content=message.content,
                    usage=message.usage.to_payload() if message.usage else None,
                    duration_ms=message.duration_ms,
                )
            )
            self._set_state(LoopState.IDLE)
            return None

        message.tool_calls = calls
        self._set_state(LoopState.EXECUTING_TOOLS)
        for call in calls:
            call.transition(ToolCallStatus.RUNNING)
        self._publish_tool_calls(message)
        try:
            outcome = await self._dispatcher.execute_all(
                calls, self._document, self._requires_approval, signal=signal
            )
        except AbortedError:
            self._finish_cancelled(message, turn, calls)
            return None

        message.status = MessageStatus.COMPLETED
        self._publish_tool_calls(message)
        persisted_id = self._store.append(self._session.session_id, message)

        if outcome.pending_changes:
            self._session.pending_changes.extend(outcome.pending_changes)
            self._session.paused = PausedLoopState(
                history=list(history),
                loop_count=loop_count,
                assistant_content=turn.content,
                tool_calls=calls,
                message=message,
                persisted_id=persisted_id,
            )
            self._publish(
                PendingChangesUpdated(changes=tuple(change.to_dict() for change in self._session.pending_changes))
            )
            self._signal = None
            self._set_state(LoopState.AWAITING_APPROVAL)
            return None

        return _Continuation(build_continuation(history, turn.content, calls), loop_count + 1)

    async def _stream(
        self,
        request: ChatRequest,
        turn: TurnAccumulator,
        message: Message,
        signal: AbortSignal,
    ) -> None:
        decoder = StreamDecoder()
        async for chunk in signal.iterate(self._transport.stream(request)):
            for event in decoder.feed(chunk):
                self._apply_event(turn, message, event)
        for event in decoder.flush():
            self._apply_event(turn, message, event)
        if decoder.dropped_lines:
            LOGGER.debug("Dropped %d malformed stream line(s)", decoder.dropped_lines)

    def _apply_event(self, turn: TurnAccumulator, message: Message, event: StreamEvent) -> None:
        if not turn.apply(event):
            return
        if event.type in (
            StreamEventType.TOOL_CALL_START,
            StreamEventType.TOOL_CALL_ARGUMENTS,
            StreamEventType.TOOL_CALLS,
        ):
            message.tool_calls = turn.tool_calls
            self._publish_tool_calls(message)
        elif event.type in (StreamEventType.CONTENT, StreamEventType.REASONING, StreamEventType.REASONING_END):
            message.content = turn.content
            message.reasoning = turn.reasoning or None
            self._publish(MessageUpdated(message_id=message.id, content=message.content, reasoning=message.reasoning))

    def _build_request(self, history: Sequence[HistoryEntry]) -> ChatRequest:
        config = self._config
        return ChatRequest(
            provider_id=config.provider_id,
            model_id=config.model_id,
            messages=list(history),
            enable_tools=config.enable_tools,
            article=self._document.article_context(),
            thinking_enabled=config.thinking_enabled,
            reasoning_effort=config.reasoning_effort,
            tools=self._dispatcher.registry.to_openai_tools() if config.enable_tools else (),
        )

    # ------------------------------------------------------------------
    # Round endings
    # ------------------------------------------------------------------
    def _fill_message(self, message: Message, turn: TurnAccumulator) -> None:
        message.content = turn.content
        message.reasoning = turn.reasoning or None
        message.usage = turn.usage
        message.duration_ms = turn.duration_ms

    def _finish_cancelled(
        self, message: Message, turn: TurnAccumulator, calls: Iterable[ToolCallRecord]
    ) -> None:
        reason = (self._signal.reason if self._signal else None) or INTERRUPTED
        for call in calls:
            if not call.status.is_terminal:
                call.fail(reason)
        self._fill_message(message, turn)
        message.status = MessageStatus.COMPLETED
        self._publish_tool_calls(message)
        self._store.append(self._session.session_id, message)
        self._publish(TurnCancelled(message_id=message.id))
        self._signal = None
        self._set_state(LoopState.IDLE)

    def _finish_failed(self, message: Message, turn: TurnAccumulator, error: str, retryable: bool) -> None:
        LOGGER.warning("Round failed (retryable=%s): %s", retryable, error)
        self._fill_message(message, turn)
        message.status = MessageStatus.FAILED
        message.error = error
        message.retryable = retryable
        for call in message.tool_calls:
            if not call.status.is_terminal:
                call.fail(error)
        if not retryable:
            self._store.append(self._session.session_id, message)
        self._publish(TurnFailed(message_id=message.id, error=error, retryable=retryable))
        self._signal = None
        self._set_state(LoopState.IDLE)

    def _depth_exceeded(self) -> None:
        limit = self._config.max_loop_count
        LOGGER.warning("Loop depth limit of %d reached", limit)
        notice = self._session.add_message(
            Message(role=Role.ASSISTANT, content=DEPTH_EXCEEDED_MESSAGE.format(limit=limit), transient=True)
        )
        self._publish(MessageAdded(message_id=notice.id, role=notice.role.value, content=notice.content))
        self._publish(LoopDepthExceeded(message_id=notice.id, limit=limit))
        self._signal = None
        self._set_state(LoopState.IDLE)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def _set_state(self, state: LoopState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        LOGGER.debug("Loop state %s -> %s", previous.value, state.value)
        self._publish(LoopStateChanged(previous=previous.value, current=state.value))

    def _publish_tool_calls(self, message: Message) -> None:
        self._publish(
            ToolCallsUpdated(message_id=message.id, tool_calls=tuple(call.to_dict() for call in message.tool_calls))
        )

    def _publish(self, event) -> None:
        if self._bus is not None:
            self._bus.publish(event)


class ChatController:
    """User-facing operations on top of a :class:`ConversationLoop`.

    Messages sent while the loop is busy (streaming, running tools or waiting
    for approval) are queued and sent one at a time, in order, once the loop
    is idle again.
    """

    def __init__(self, loop: ConversationLoop, *, bus: EventBus | None = None) -> None:
        self._loop = loop
        self._bus = bus
        self._busy = False

    @property
    def loop(self) -> ConversationLoop:
        return self._loop

    @property
    def session(self) -> ChatSession:
        return self._loop.session

    @property
    def approvals(self) -> PendingChangeManager:
        return self._loop.approvals

    @property
    def state(self) -> LoopState:
        return self._loop.state

    async def send_message(self, text: str, images: Iterable[str] = ()) -> bool:
        """Send ``text`` now, or queue it. Returns ``True`` when it was sent immediately."""

        images = tuple(images)
        if not text.strip() and not images:
            raise ValueError("Message must contain text or images")
        if self._busy or self._loop.state != LoopState.IDLE:
            length = self.session.enqueue(text, images)
            LOGGER.debug("Queued message (%d waiting)", length)
            self._publish(MessageQueued(content=text, queue_length=length))
            return False
        await self._guarded(self._dispatch(QueuedMessage(text, images)))
        return True

    async def accept(self, change_id: str) -> None:
        await self._guarded(self.approvals.accept(change_id))

    async def reject(self, change_id: str) -> None:
        await self._guarded(self.approvals.reject(change_id))

    async def accept_all(self) -> None:
        await self._guarded(self.approvals.accept_all())

    async def reject_all(self) -> None:
        await self._guarded(self.approvals.reject_all())

    def cancel(self) -> bool:
        return self._loop.cancel()

    def clear(self) -> None:
        """Forget the transcript, pending changes and queued messages."""

        self._loop.cancel()
        self._loop.discard_paused()
        self.session.reset()
        self._publish(MessagesCleared())

    async def _guarded(self, operation) -> None:
        previous, self._busy = self._busy, True
        try:
            await operation
            await self._drain()
        finally:
            self._busy = previous

    async def _drain(self) -> None:
        while self._loop.state == LoopState.IDLE and self.session.queue:
            await self._dispatch(self.session.queue.popleft())

    async def _dispatch(self, item: QueuedMessage) -> None:
        message = self.session.add_message(Message(role=Role.USER, content=item.content, images=item.images))
        self._publish(MessageAdded(message_id=message.id, role=message.role.value, content=message.content))
        self._loop.store.append(self.session.session_id, message)
        await self._loop.advance(self.session.history(), 0)

    def _publish(self, event) -> None:
        if self._bus is not None:
            self._bus.publish(event)
