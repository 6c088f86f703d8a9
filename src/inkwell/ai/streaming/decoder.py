"""Incremental decoder for the event-tagged model stream.

The backend writes frames such as::

    event: content
    data: {"content": "Hel"}

Reads may split a frame, a line or even a multi-byte character anywhere, so
the decoder keeps a carry-over buffer between :meth:`StreamDecoder.feed`
calls. Frames whose JSON cannot be parsed are dropped without interrupting
the stream.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Mapping

from .events import StreamEvent, StreamEventType

__all__ = ["StreamDecoder"]

LOGGER = logging.getLogger(__name__)

_DONE_SENTINEL = "[DONE]"


class StreamDecoder:
    """Turn raw stream reads into :class:`StreamEvent` objects."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event_type: str | None = None
        self.dropped_lines = 0

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        """Consume one read and return the events completed by it."""

        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        if not text:
            return []
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        events: list[StreamEvent] = []
        for line in lines:
            events.extend(self._process_line(line.rstrip("\r")))
        return events

    def flush(self) -> list[StreamEvent]:
        """Process whatever is left once the stream has ended."""

        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        events: list[StreamEvent] = []
        for line in remainder.split("\n"):
            events.extend(self._process_line(line.rstrip("\r")))
        self._event_type = None
        return events

    async def decode(self, chunks: AsyncIterable[bytes | str]) -> AsyncIterator[StreamEvent]:
        async for chunk in chunks:
            for event in self.feed(chunk):
                yield event
        for event in self.flush():
            yield event

    # ------------------------------------------------------------------
    # Line handling
    # ------------------------------------------------------------------
    def _process_line(self, line: str) -> list[StreamEvent]:
        if not line.strip():
            self._event_type = None
            return []
        if line.startswith(":"):
            return []
        if line.startswith("event:"):
            self._event_type = line[len("event:") :].strip() or None
            return []
        if not line.startswith("data:"):
            self._drop("unrecognized line", line)
            return []

        data = line[len("data:") :].strip()
        event_type, self._event_type = self._event_type, None
        if not data or data == _DONE_SENTINEL:
            return []
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            self._drop("malformed JSON", data)
            return []
        if not isinstance(payload, Mapping):
            self._drop("non-object payload", data)
            return []

        if event_type is not None:
            if event_type not in StreamEventType.ALL:
                self._drop(f"unknown event type {event_type!r}", data)
                return []
            return [StreamEvent.from_payload(event_type, payload)]
        return self._legacy_events(payload)

    def _legacy_events(self, payload: Mapping[str, Any]) -> list[StreamEvent]:
        """Interpret an untagged ``data:`` record by the fields it carries."""

        tagged = payload.get("type")
        if isinstance(tagged, str) and tagged in StreamEventType.ALL:
            return [StreamEvent.from_payload(tagged, payload)]

        events: list[StreamEvent] = []
        if payload.get("error"):
            return [StreamEvent.from_payload(StreamEventType.ERROR, payload)]
        if payload.get("reasoning"):
            events.append(StreamEvent(type=StreamEventType.REASONING, content=str(payload["reasoning"])))
        if payload.get("content"):
            events.append(StreamEvent.from_payload(StreamEventType.CONTENT, payload))
        if payload.get("toolCalls"):
            events.append(StreamEvent.from_payload(StreamEventType.TOOL_CALLS, payload))
        if payload.get("done") or "success" in payload or "usage" in payload:
            events.append(StreamEvent.from_payload(StreamEventType.DONE, payload))
        if not events:
            self._drop("legacy record without known fields", payload)
        return events

    def _drop(self, reason: str, line: Any) -> None:
        self.dropped_lines += 1
        LOGGER.debug("Dropping stream line (%s): %.200r", reason, line)
