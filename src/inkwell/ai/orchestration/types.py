"""Data model shared by the conversation loop, dispatcher and approval manager."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Sequence

from ..streaming.events import TokenUsage

__all__ = [
    "Role",
    "MessageStatus",
    "ToolCallStatus",
    "ExecutionLocation",
    "ChangeTarget",
    "ChangeOperation",
    "LoopState",
    "InvalidStatusTransition",
    "TokenUsage",
    "ToolCallRecord",
    "PendingChange",
    "Message",
    "PausedLoopState",
    "HistoryEntry",
    "new_id",
    "parse_location",
]

HistoryEntry = dict[str, Any]


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def new_id(prefix: str = "msg") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class MessageStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallStatus.COMPLETED, ToolCallStatus.FAILED)


class ExecutionLocation(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


# Older backends tag calls by the side of the wire that runs them.
_LOCATION_ALIASES = {"frontend": "local", "client": "local", "backend": "remote", "server": "remote"}


def parse_location(value: Any, default: ExecutionLocation = ExecutionLocation.LOCAL) -> ExecutionLocation:
    if not isinstance(value, str) or not value:
        return default
    try:
        return ExecutionLocation(_LOCATION_ALIASES.get(value, value))
    except ValueError:
        return default


class ChangeTarget(str, Enum):
    TITLE = "title"
    CONTENT = "content"


class ChangeOperation(str, Enum):
    UPDATE = "update"
    INSERT = "insert"
    REPLACE = "replace"
    REPLACE_ALL = "replace_all"


class LoopState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_APPROVAL = "awaiting_confirmation"
    RESUMING = "resuming"


# Terminal states have no outgoing edges.
_ALLOWED_TRANSITIONS: Mapping[ToolCallStatus, frozenset[ToolCallStatus]] = {
    ToolCallStatus.PENDING: frozenset(
        {ToolCallStatus.RUNNING, ToolCallStatus.AWAITING_CONFIRMATION, ToolCallStatus.FAILED}
    ),
    ToolCallStatus.RUNNING: frozenset(
        {ToolCallStatus.COMPLETED, ToolCallStatus.FAILED, ToolCallStatus.AWAITING_CONFIRMATION}
    ),
    ToolCallStatus.AWAITING_CONFIRMATION: frozenset({ToolCallStatus.COMPLETED, ToolCallStatus.FAILED}),
    ToolCallStatus.COMPLETED: frozenset(),
    ToolCallStatus.FAILED: frozenset(),
}


class InvalidStatusTransition(RuntimeError):
    """Raised when a tool call would move backwards through its lifecycle."""

    def __init__(self, call_id: str, current: ToolCallStatus, target: ToolCallStatus) -> None:
        super().__init__(f"Tool call {call_id}: cannot move from {current.value} to {target.value}")
        self.call_id = call_id
        self.current = current
        self.target = target


@dataclass(slots=True)
class PendingChange:
    """A proposed mutation (or a gated read) waiting for the user's decision.

    ``id`` always equals ``tool_call_id``, which keeps changes unique per round.
    For read-only changes ``new_value`` holds the JSON read result.
    """

    tool_call_id: str
    tool_name: str
    target: ChangeTarget
    operation: ChangeOperation
    old_value: str
    new_value: str
    description: str = ""
    search: str | None = None
    replace: str | None = None
    replace_all: bool = False
    replace_at: int | None = None
    line_range: tuple[int, int] | None = None
    position: str | None = None
    insert_text: str | None = None
    skip_diff: bool = False
    is_read_only: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def id(self) -> str:
        return self.tool_call_id

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
            "type": self.target.value,
            "operation": self.operation.value,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "description": self.description,
            "skipDiff": self.skip_diff,
            "isReadOnly": self.is_read_only,
        }
        if self.search is not None:
            payload["searchText"] = self.search
            payload["replaceText"] = self.replace
        if self.position is not None:
            payload["position"] = self.position
        return payload


@dataclass(slots=True)
class ToolCallRecord:
    """State of a single tool call as it streams in, executes and resolves."""

    id: str
    name: str
    arguments: str = ""
    arguments_length: int = 0
    streaming_arguments: bool = False
    status: ToolCallStatus = ToolCallStatus.PENDING
    execution_location: ExecutionLocation = ExecutionLocation.LOCAL
    result: str | None = None
    error: str | None = None
    pending_change: PendingChange | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def transition(self, target: ToolCallStatus) -> None:
        if target == self.status:
            return
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStatusTransition(self.id, self.status, target)
        self.status = target
        if target == ToolCallStatus.RUNNING and self.started_at is None:
            self.started_at = _utcnow()
        if target.is_terminal:
            self.completed_at = _utcnow()

    def complete(self, result: str) -> None:
        self.transition(ToolCallStatus.COMPLETED)
        self.result = result
        self.error = None

    def fail(self, error: str) -> None:
        self.transition(ToolCallStatus.FAILED)
        self.error = error

    def await_confirmation(self, change: PendingChange) -> None:
        self.transition(ToolCallStatus.AWAITING_CONFIRMATION)
        self.pending_change = change

    def append_arguments(self, delta: str, length: int | None = None) -> None:
        self.arguments += delta
        self.arguments_length = length if length is not None else len(self.arguments)
        self.streaming_arguments = True

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
            "status": self.status.value,
            "executionLocation": self.execution_location.value,
        }
        if self.result is not None:
            payload["result"] = self.result
        if self.error is not None:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_openai(cls, payload: Mapping[str, Any], *, default_location: ExecutionLocation = ExecutionLocation.LOCAL) -> "ToolCallRecord":
        function = payload.get("function") or {}
        arguments = function.get("arguments") or ""
        return cls(
            id=str(payload.get("id") or new_id("call")),
            name=str(function.get("name") or ""),
            arguments=arguments,
            arguments_length=len(arguments),
            execution_location=parse_location(payload.get("executionLocation"), default_location),
        )


@dataclass(slots=True)
class Message:
    """A transcript row."""

    role: Role
    content: str = ""
    id: str = field(default_factory=new_id)
    reasoning: str | None = None
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    status: MessageStatus = MessageStatus.COMPLETED
    usage: TokenUsage | None = None
    duration_ms: int | None = None
    error: str | None = None
    retryable: bool = False
    images: tuple[str, ...] = ()
    tool_call_id: str | None = None
    # Shown to the user but never sent to the model.
    transient: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    def to_history_entry(self) -> HistoryEntry:
        """Role-tagged entry as sent to the model."""

        entry: HistoryEntry = {"role": self.role.value}
        if self.images:
            parts: list[dict[str, Any]] = []
            if self.content:
                parts.append({"type": "text", "text": self.content})
            parts.extend({"type": "image_url", "image_url": {"url": url}} for url in self.images)
            entry["content"] = parts
        else:
            entry["content"] = self.content
        if self.role == Role.TOOL and self.tool_call_id:
            entry["tool_call_id"] = self.tool_call_id
        return entry

    def to_dict(self) -> dict[str, Any]:
        """Serialize the message for persistence."""

        payload: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
        }
        if self.reasoning:
            payload["reasoning"] = self.reasoning
        if self.tool_calls:
            payload["toolCalls"] = [call.to_dict() for call in self.tool_calls]
        if self.usage is not None:
            payload["usage"] = self.usage.to_payload()
        if self.duration_ms is not None:
            payload["duration"] = self.duration_ms
        if self.error:
            payload["error"] = self.error
        if self.images:
            payload["images"] = list(self.images)
        if self.transient:
            payload["transient"] = True
        return payload


@dataclass(slots=True)
class PausedLoopState:
    """Everything needed to continue a round once its pending changes resolve."""

    history: list[HistoryEntry]
    loop_count: int
    assistant_content: str
    tool_calls: list[ToolCallRecord]
    message: Message
    persisted_id: str | None = None

    @property
    def unresolved(self) -> Sequence[ToolCallRecord]:
        return [call for call in self.tool_calls if not call.status.is_terminal]
