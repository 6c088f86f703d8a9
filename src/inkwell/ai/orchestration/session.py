"""Explicit state of one conversation, passed between suspension and resume."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Iterable

from .types import (
    HistoryEntry,
    Message,
    MessageStatus,
    PausedLoopState,
    PendingChange,
    Role,
    ToolCallRecord,
    new_id,
)

__all__ = ["ChatSession", "QueuedMessage"]


@dataclass(slots=True, frozen=True)
class QueuedMessage:
    content: str
    images: tuple[str, ...] = ()


@dataclass(slots=True)
class ChatSession:
    """Transcript, outstanding changes and the paused round, if any.

    ``paused`` is set only while ``pending_changes`` is non-empty.
    """

    session_id: str = field(default_factory=lambda: new_id("session"))
    messages: list[Message] = field(default_factory=list)
    pending_changes: list[PendingChange] = field(default_factory=list)
    paused: PausedLoopState | None = None
    queue: deque[QueuedMessage] = field(default_factory=deque)

    def add_message(self, message: Message) -> Message:
        self.messages.append(message)
        return message

    def find_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def find_tool_call(self, call_id: str) -> ToolCallRecord | None:
        if self.paused is not None:
            for call in self.paused.tool_calls:
                if call.id == call_id:
                    return call
        for message in reversed(self.messages):
            for call in message.tool_calls:
                if call.id == call_id:
                    return call
        return None

    def find_change(self, change_id: str) -> PendingChange | None:
        for change in self.pending_changes:
            if change.id == change_id:
                return change
        return None

    def history(self) -> list[HistoryEntry]:
        """Model history rebuilt from the transcript.

        Tool messages, failed messages and transient notices are left out;
        continuation rounds carry their own tool messages.
        """

        return [
            message.to_history_entry()
            for message in self.messages
            if message.role in (Role.USER, Role.ASSISTANT)
            and message.status != MessageStatus.FAILED
            and not message.transient
            and (message.content or message.images)
        ]

    def enqueue(self, content: str, images: Iterable[str] = ()) -> int:
        self.queue.append(QueuedMessage(content, tuple(images)))
        return len(self.queue)

    def reset(self) -> None:
        self.messages.clear()
        self.pending_changes.clear()
        self.paused = None
        self.queue.clear()
