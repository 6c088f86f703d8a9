"""Fold decoded stream events into the state of one model round."""

from __future__ import annotations

import logging
import time
from typing import Callable

from ..streaming.events import StreamEvent, StreamEventType, TokenUsage
from .types import ExecutionLocation, ToolCallRecord, parse_location

__all__ = ["TurnAccumulator", "DEFAULT_ARGS_THROTTLE_MS"]

LOGGER = logging.getLogger(__name__)

DEFAULT_ARGS_THROTTLE_MS = 100

LocationResolver = Callable[[str], str]


class TurnAccumulator:
    """Round state assembled from :class:`StreamEvent` objects.

    :meth:`apply` returns ``True`` when observers should be told about the
    change. Every argument delta is applied to its call, but only one argument
    update per throttle window is reported.
    """

    def __init__(
        self,
        *,
        throttle_ms: int = DEFAULT_ARGS_THROTTLE_MS,
        clock: Callable[[], float] = time.monotonic,
        resolve_location: LocationResolver | None = None,
    ) -> None:
        self._throttle = max(0, throttle_ms) / 1000.0
        self._clock = clock
        self._resolve_location = resolve_location
        self._last_args_emit: float | None = None
        self._calls: list[ToolCallRecord] = []
        self._by_id: dict[str, ToolCallRecord] = {}
        self._by_index: dict[int, ToolCallRecord] = {}
        self.content = ""
        self.reasoning = ""
        self.reasoning_active = False
        self.authoritative = False
        self.usage: TokenUsage | None = None
        self.duration_ms: int | None = None
        self.error: str | None = None
        self.retryable = False
        self.done = False

    @property
    def tool_calls(self) -> list[ToolCallRecord]:
        return list(self._calls)

    @property
    def failed(self) -> bool:
        return self.error is not None

    def final_tool_calls(self) -> list[ToolCallRecord]:
        """Calls to execute: the authoritative list, else named skeletons built from deltas."""

        if self.authoritative:
            return list(self._calls)
        return [call for call in self._calls if call.name]

    def apply(self, event: StreamEvent) -> bool:
        kind = event.type
        if kind == StreamEventType.REASONING_START:
            self.reasoning_active = True
            return False
        if kind == StreamEventType.REASONING:
            if not event.content:
                return False
            self.reasoning += event.content
            return True
        if kind == StreamEventType.REASONING_END:
            self.reasoning_active = False
            return True
        if kind == StreamEventType.CONTENT:
            if not event.content:
                return False
            self.content += event.content
            return True
        if kind == StreamEventType.TOOL_CALL_START:
            return self._start_call(event)
        if kind == StreamEventType.TOOL_CALL_ARGUMENTS:
            return self._append_arguments(event)
        if kind == StreamEventType.TOOL_CALLS:
            self._replace_calls(event)
            return True
        if kind == StreamEventType.DONE:
            self.done = True
            if event.usage is not None:
                self.usage = event.usage
            if event.duration is not None:
                self.duration_ms = event.duration
            return True
        if kind == StreamEventType.ERROR:
            self.error = event.error or "Unknown stream error"
            self.retryable = event.retryable
            return True
        return False

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------
    def _start_call(self, event: StreamEvent) -> bool:
        call_id = event.tool_call_id
        if not call_id or call_id in self._by_id:
            return False
        record = ToolCallRecord(
            id=call_id,
            name=event.tool_name or "",
            execution_location=self._location(event.execution_location, event.tool_name or ""),
        )
        self._register(record, event.index)
        return True

    def _append_arguments(self, event: StreamEvent) -> bool:
        record = None
        if event.index is not None:
            record = self._by_index.get(event.index)
        if record is None and event.tool_call_id:
            record = self._by_id.get(event.tool_call_id)
        if record is None:
            LOGGER.debug("Argument delta for unknown tool call (index=%s id=%s)", event.index, event.tool_call_id)
            return False
        record.append_arguments(event.arguments_delta or "", event.arguments_length)
        now = self._clock()
        if self._last_args_emit is None or now - self._last_args_emit >= self._throttle:
            self._last_args_emit = now
            return True
        return False

    def _replace_calls(self, event: StreamEvent) -> None:
        previous = self._by_id
        self._calls = []
        self._by_id = {}
        self._by_index = {}
        for index, payload in enumerate(event.tool_calls or ()):
            incoming = ToolCallRecord.from_openai(payload)
            record = previous.get(incoming.id)
            if record is None:
                record = incoming
            else:
                record.name = incoming.name or record.name
                record.arguments = incoming.arguments
                record.arguments_length = incoming.arguments_length
            if payload.get("executionLocation") is not None:
                record.execution_location = incoming.execution_location
            elif record is incoming:
                record.execution_location = self._location(None, record.name)
            record.streaming_arguments = False
            self._register(record, index)
        self.authoritative = True

    def _register(self, record: ToolCallRecord, index: int | None) -> None:
        self._calls.append(record)
        self._by_id[record.id] = record
        self._by_index[index if index is not None else len(self._calls) - 1] = record

    def _location(self, explicit: str | None, name: str) -> ExecutionLocation:
        if explicit:
            return parse_location(explicit)
        if self._resolve_location is not None and name:
            return parse_location(self._resolve_location(name))
        return ExecutionLocation.LOCAL
