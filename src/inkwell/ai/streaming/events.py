"""Typed stream events and their ``event:`` / ``data:`` wire encoding."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

__all__ = ["StreamEventType", "TokenUsage", "StreamEvent", "encode_frame"]


class StreamEventType:
    """Event names carried on ``event:`` lines."""

    REASONING_START = "reasoning_start"
    REASONING = "reasoning"
    REASONING_END = "reasoning_end"
    CONTENT = "content"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_ARGUMENTS = "tool_call_arguments"
    TOOL_CALLS = "tool_calls"
    DONE = "done"
    ERROR = "error"

    ALL: frozenset[str] = frozenset(
        {
            REASONING_START,
            REASONING,
            REASONING_END,
            CONTENT,
            TOOL_CALL_START,
            TOOL_CALL_ARGUMENTS,
            TOOL_CALLS,
            DONE,
            ERROR,
        }
    )


@dataclass(slots=True, frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "TokenUsage | None":
        if not isinstance(payload, Mapping):
            return None
        prompt = _as_int(payload.get("promptTokens", payload.get("prompt_tokens")))
        completion = _as_int(payload.get("completionTokens", payload.get("completion_tokens")))
        total = _as_int(payload.get("totalTokens", payload.get("total_tokens")))
        if total == 0:
            total = prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def to_payload(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass(slots=True, frozen=True)
class StreamEvent:
    """One decoded frame of the model stream.

    Only the fields relevant to ``type`` are populated. ``tool_calls`` holds
    the raw OpenAI-shaped call dictionaries of the authoritative final list.
    """

    type: str
    content: str | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    index: int | None = None
    arguments_delta: str | None = None
    arguments_length: int | None = None
    execution_location: str | None = None
    tool_calls: tuple[Mapping[str, Any], ...] | None = None
    usage: TokenUsage | None = None
    duration: int | None = None
    error: str | None = None
    retryable: bool = False

    @classmethod
    def from_payload(cls, event_type: str, payload: Mapping[str, Any]) -> "StreamEvent":
        if event_type == StreamEventType.TOOL_CALL_START:
            return cls(
                type=event_type,
                tool_call_id=_as_str(payload.get("id")),
                tool_name=_as_str(payload.get("name")),
                index=_as_optional_int(payload.get("index")),
                execution_location=_as_str(payload.get("executionLocation")),
            )
        if event_type == StreamEventType.TOOL_CALL_ARGUMENTS:
            return cls(
                type=event_type,
                tool_call_id=_as_str(payload.get("id")),
                index=_as_optional_int(payload.get("index")),
                arguments_delta=_as_str(payload.get("argumentsDelta")) or "",
                arguments_length=_as_optional_int(payload.get("argumentsLength")),
            )
        if event_type == StreamEventType.TOOL_CALLS:
            calls = payload.get("toolCalls")
            if not isinstance(calls, Sequence) or isinstance(calls, (str, bytes)):
                calls = ()
            return cls(
                type=event_type,
                tool_calls=tuple(call for call in calls if isinstance(call, Mapping)),
            )
        if event_type == StreamEventType.DONE:
            return cls(
                type=event_type,
                usage=TokenUsage.from_payload(payload.get("usage")),
                duration=_as_optional_int(payload.get("duration")),
            )
        if event_type == StreamEventType.ERROR:
            return cls(
                type=event_type,
                error=_as_str(payload.get("error")) or "Unknown stream error",
                retryable=payload.get("retryable") is True,
            )
        return cls(type=event_type, content=_as_str(payload.get("content")) or "")

    def to_payload(self) -> dict[str, Any]:
        """Inverse of :meth:`from_payload`, used when relaying provider streams."""

        if self.type == StreamEventType.TOOL_CALL_START:
            payload: dict[str, Any] = {"id": self.tool_call_id, "name": self.tool_name, "index": self.index}
            if self.execution_location:
                payload["executionLocation"] = self.execution_location
            return payload
        if self.type == StreamEventType.TOOL_CALL_ARGUMENTS:
            return {
                "id": self.tool_call_id,
                "index": self.index,
                "argumentsDelta": self.arguments_delta or "",
                "argumentsLength": self.arguments_length,
            }
        if self.type == StreamEventType.TOOL_CALLS:
            return {"toolCalls": [dict(call) for call in self.tool_calls or ()]}
        if self.type == StreamEventType.DONE:
            payload = {"success": True}
            if self.usage is not None:
                payload["usage"] = self.usage.to_payload()
            if self.duration is not None:
                payload["duration"] = self.duration
            return payload
        if self.type == StreamEventType.ERROR:
            return {"error": self.error, "retryable": self.retryable}
        return {"content": self.content or ""}


def encode_frame(event: StreamEvent) -> bytes:
    body = json.dumps(event.to_payload(), ensure_ascii=False)
    return f"event: {event.type}\ndata: {body}\n\n".encode("utf-8")


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _as_optional_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _as_int(value: Any) -> int:
    return _as_optional_int(value) or 0
