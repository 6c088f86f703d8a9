"""Event bus used by the conversation loop to notify observers.

The loop never talks to a presentation layer directly; it publishes the
events below and whoever renders the conversation (the CLI, a test, a GUI)
subscribes to the ones it cares about.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Sequence, TypeVar
from weakref import WeakMethod

LOGGER = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events published on the bus."""

    pass


# Streaming updates arrive per token; publishing them is not logged.
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Loop Events
# =============================================================================


@dataclass(slots=True)
class LoopStateChanged(Event):
    """Emitted whenever the loop moves between idle, streaming, tools and approval.

    Attributes:
        previous: The state value before the change.
        current: The state value after the change.
    """

    previous: str
    current: str


@dataclass(slots=True)
class LoopDepthExceeded(Event):
    """Emitted when a turn stops because it hit the round limit.

    Attributes:
        message_id: The assistant message the warning was appended to.
        limit: The configured maximum number of rounds.
    """

    message_id: str
    limit: int


@dataclass(slots=True)
class MessageQueued(Event):
    """Emitted when a user message is held until the loop becomes idle."""

    content: str
    queue_length: int


# =============================================================================
# Transcript Events
# =============================================================================


@dataclass(slots=True)
class MessageAdded(Event):
    """Emitted when a message is appended to the transcript.

    Attributes:
        message_id: Identifier of the new message.
        role: ``user`` or ``assistant``.
        content: Initial content, empty for a streaming assistant message.
    """

    message_id: str
    role: str
    content: str = ""


@dataclass(slots=True)
class MessageUpdated(Event):
    """Emitted as streamed content and reasoning accumulate on a message."""

    message_id: str
    content: str
    reasoning: str | None = None


_QUIET_EVENT_TYPES.add(MessageUpdated)


@dataclass(slots=True)
class ToolCallsUpdated(Event):
    """Emitted when the tool calls attached to a message change.

    Attributes:
        message_id: The assistant message carrying the calls.
        tool_calls: Serialized snapshots of every call on the message.
    """

    message_id: str
    tool_calls: Sequence[dict[str, Any]] = field(default_factory=tuple)


_QUIET_EVENT_TYPES.add(ToolCallsUpdated)


@dataclass(slots=True)
class TurnCompleted(Event):
    """Emitted when a turn ends with no outstanding tool calls."""

    message_id: str
    content: str
    usage: dict[str, int] | None = None
    duration_ms: int | None = None


@dataclass(slots=True)
class TurnFailed(Event):
    """Emitted when a round ends with an error.

    Attributes:
        message_id: The assistant message marked as failed.
        error: A description of the error.
        retryable: Whether resending the same message may succeed.
    """

    message_id: str
    error: str
    retryable: bool = False


@dataclass(slots=True)
class TurnCancelled(Event):
    """Emitted when the user stops a turn."""

    message_id: str | None


@dataclass(slots=True)
class MessagesCleared(Event):
    """Emitted when the transcript and pending state are wiped."""

    pass


# =============================================================================
# Approval Events
# =============================================================================


@dataclass(slots=True)
class PendingChangesUpdated(Event):
    """Emitted when the set of changes awaiting a decision changes.

    Attributes:
        changes: Serialized pending changes, oldest first.
    """

    changes: Sequence[dict[str, Any]] = field(default_factory=tuple)


@dataclass(slots=True)
class ChangeApplied(Event):
    """Emitted after an accepted change has been written to the document."""

    change_id: str
    tool_name: str
    target: str


@dataclass(slots=True)
class ChangeRejected(Event):
    """Emitted after the user rejects a change."""

    change_id: str
    tool_name: str


# =============================================================================
# Bus
# =============================================================================


class _Registration:
    """One subscribed handler; bound methods are held through a weak reference."""

    __slots__ = ("event_type", "_target", "_weak")

    def __init__(self, event_type: type[Event], handler: Handler[Any]) -> None:
        self.event_type = event_type
        # Only plain Python methods can be weakly referenced; builtins such as
        # ``list.append`` stay strong.
        self._weak = hasattr(handler, "__self__") and hasattr(handler, "__func__")
        self._target: Any = WeakMethod(handler) if self._weak else handler  # type: ignore[arg-type]

    def handler(self) -> Handler[Any] | None:
        return self._target() if self._weak else self._target

    def matches(self, handler: Handler[Any]) -> bool:
        current = self.handler()
        return current is not None and current == handler

    def describe(self) -> str:
        handler = self.handler()
        if handler is None:
            return "<collected handler>"
        return getattr(handler, "__qualname__", None) or repr(handler)


class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`."""

    __slots__ = ("_bus", "_registration")

    def __init__(self, bus: "EventBus[Any]", registration: _Registration) -> None:
        self._bus = bus
        self._registration = registration

    @property
    def active(self) -> bool:
        return self._bus._contains(self._registration)

    def cancel(self) -> None:
        self._bus._remove(self._registration)


class EventBus(Generic[E]):
    """Synchronous publish/subscribe hub.

    Handlers registered for a class also receive its subclasses, so
    subscribing to :class:`Event` observes everything. Handlers for the exact
    type run first, then those for each base class, each group in the order
    it was registered. A handler that raises is logged and skipped.
    """

    def __init__(self) -> None:
        self._registrations: dict[type[Event], list[_Registration]] = {}

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> Subscription:
        registration = _Registration(event_type, handler)
        self._registrations.setdefault(event_type, []).append(registration)
        return Subscription(self, registration)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        for registration in self._registrations.get(event_type, ()):
            if registration.matches(handler):
                self._remove(registration)
                return

    def publish(self, event: E) -> None:
        kind = type(event)
        if kind not in _QUIET_EVENT_TYPES:
            LOGGER.debug("Publishing %s", kind.__name__)
        for cls in kind.__mro__:
            bucket = self._registrations.get(cls)
            if not bucket:
                continue
            for registration in list(bucket):
                handler = registration.handler()
                if handler is None:
                    self._remove(registration)
                    continue
                try:
                    handler(event)
                except Exception:
                    LOGGER.exception(
                        "Handler %s raised exception while handling %s",
                        registration.describe(),
                        kind.__name__,
                    )

    def clear(self) -> None:
        self._registrations.clear()

    def handler_count(self, event_type: type[Event] | None = None) -> int:
        """Number of live registrations, for one exact type or in total."""

        if event_type is None:
            buckets = list(self._registrations.values())
        else:
            buckets = [self._registrations.get(event_type, [])]
        return sum(1 for bucket in buckets for registration in bucket if registration.handler() is not None)

    def _contains(self, registration: _Registration) -> bool:
        return any(item is registration for item in self._registrations.get(registration.event_type, ()))

    def _remove(self, registration: _Registration) -> None:
        bucket = self._registrations.get(registration.event_type)
        if not bucket:
            return
        bucket[:] = [item for item in bucket if item is not registration]
        if not bucket:
            del self._registrations[registration.event_type]


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "Subscription",
    "LoopStateChanged",
    "LoopDepthExceeded",
    "MessageQueued",
    "MessageAdded",
    "MessageUpdated",
    "ToolCallsUpdated",
    "TurnCompleted",
    "TurnFailed",
    "TurnCancelled",
    "MessagesCleared",
    "PendingChangesUpdated",
    "ChangeApplied",
    "ChangeRejected",
]
