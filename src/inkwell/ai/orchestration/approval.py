"""Approval / Pending-Change Manager.

Tracks the changes produced by a paused round. The user may accept or reject
them in any order; once the last one is resolved the paused round is resumed
exactly once.
"""

from __future__ import annotations

import json
import logging
from typing import Protocol

from ...events import ChangeApplied, ChangeRejected, EventBus, PendingChangesUpdated, ToolCallsUpdated
from ..tools.errors import DocumentApplyError
from .document import DocumentContext
from .persistence import SafeMessageStore
from .session import ChatSession
from .types import PendingChange, ToolCallRecord, ToolCallStatus

__all__ = ["PendingChangeManager", "LoopResumer", "REJECTION_MESSAGE", "UnknownChangeError"]

LOGGER = logging.getLogger(__name__)

REJECTION_MESSAGE = "The user rejected this change. Do not retry the identical change."


class LoopResumer(Protocol):
    async def resume(self) -> None:
        ...


class UnknownChangeError(KeyError):
    """Raised when resolving a change that is not outstanding."""


class PendingChangeManager:
    """Accept or reject pending changes and resume the paused round."""

    def __init__(
        self,
        session: ChatSession,
        document: DocumentContext,
        *,
        resumer: LoopResumer | None = None,
        store: SafeMessageStore | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._session = session
        self._document = document
        self._resumer = resumer
        self._store = store or SafeMessageStore(None)
        self._bus = bus

    @property
    def changes(self) -> list[PendingChange]:
        return list(self._session.pending_changes)

    @property
    def current(self) -> PendingChange | None:
        """The oldest outstanding change."""
        return self._session.pending_changes[0] if self._session.pending_changes else None

    @property
    def has_pending(self) -> bool:
        return bool(self._session.pending_changes)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    async def accept(self, change: PendingChange | str) -> ToolCallRecord | None:
        """Apply ``change`` (or hand over its read result) and resume when it was the last one."""

        change = self._resolve(change)
        call = self._session.find_tool_call(change.tool_call_id)
        try:
            result = self._document.apply(change)
        except DocumentApplyError as exc:
            LOGGER.info("Accepted change %s could not be applied: %s", change.id, exc.message)
            if call is not None:
                call.fail(exc.message)
        else:
            if call is not None:
                call.complete(result)
            if not change.is_read_only:
                self._publish(ChangeApplied(change_id=change.id, tool_name=change.tool_name, target=change.target.value))
        await self._after_resolution(change)
        return call

    async def reject(self, change: PendingChange | str) -> ToolCallRecord | None:
        change = self._resolve(change)
        call = self._session.find_tool_call(change.tool_call_id)
        if call is not None:
            call.complete(json.dumps({"success": False, "rejected": True, "message": REJECTION_MESSAGE}))
        self._publish(ChangeRejected(change_id=change.id, tool_name=change.tool_name))
        await self._after_resolution(change)
        return call

    async def accept_all(self) -> None:
        # Resolving the last change may resume the round, which can produce new changes.
        for change in list(self._session.pending_changes):
            if change in self._session.pending_changes:
                await self.accept(change)

    async def reject_all(self) -> None:
        for change in list(self._session.pending_changes):
            if change in self._session.pending_changes:
                await self.reject(change)

    def discard(self, reason: str = "discarded") -> None:
        """Drop every outstanding change and the paused round without resuming."""

        for change in self._session.pending_changes:
            call = self._session.find_tool_call(change.tool_call_id)
            if call is not None and call.status == ToolCallStatus.AWAITING_CONFIRMATION:
                call.fail(reason)
        self._session.pending_changes.clear()
        self._session.paused = None
        self._publish(PendingChangesUpdated(changes=()))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _resolve(self, change: PendingChange | str) -> PendingChange:
        change_id = change if isinstance(change, str) else change.id
        found = self._session.find_change(change_id)
        if found is None:
            raise UnknownChangeError(change_id)
        return found

    async def _after_resolution(self, change: PendingChange) -> None:
        self._session.pending_changes.remove(change)
        self._publish(PendingChangesUpdated(changes=tuple(c.to_dict() for c in self._session.pending_changes)))
        paused = self._session.paused
        if paused is not None:
            self._publish(
                ToolCallsUpdated(
                    message_id=paused.message.id,
                    tool_calls=tuple(call.to_dict() for call in paused.tool_calls),
                )
            )
        if self._session.pending_changes or paused is None:
            return
        self._store.update(self._session.session_id, paused.persisted_id, paused.message)
        if self._resumer is None:
            LOGGER.warning("All changes resolved but no loop is bound; dropping paused round")
            self._session.paused = None
            return
        await self._resumer.resume()

    def _publish(self, event) -> None:
        if self._bus is not None:
            self._bus.publish(event)
