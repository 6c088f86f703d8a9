"""Tool Dispatcher: runs the tool calls of one round, in order.

Local write tools are computed against a working copy of the article so a
later call in the same round sees the effect of an earlier one, even while
that earlier change is still waiting for approval. Changes that need
approval are returned as :class:`PendingChange` objects; the rest are applied
through the :class:`DocumentContext` immediately.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping, Protocol, Sequence

from ..streaming.abort import AbortedError, AbortSignal
from ..tools import diff_engine, text_matcher
from ..tools.document_tools import ArticleSnapshot, EditProposal, ReadOutcome, ToolContext
from ..tools.errors import ErrorCode, ToolError, UnknownToolError
from ..tools.registry import ToolDefinition, ToolRegistry
from ..tools.remote import RemoteToolExecutor
from .document import DocumentContext
from .types import ChangeOperation, ChangeTarget, PendingChange, ToolCallRecord, ToolCallStatus

__all__ = ["DispatchOutcome", "DispatchListener", "ToolDispatcher", "ApprovalCheck"]

LOGGER = logging.getLogger(__name__)

ApprovalCheck = Callable[[str], bool]


# -----------------------------------------------------------------------------
# Dispatch Result
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class DispatchOutcome:
    """Calls of the round (in call order) and the changes that await approval."""

    tool_calls: list[ToolCallRecord]
    pending_changes: list[PendingChange] = field(default_factory=list)

    @property
    def needs_approval(self) -> bool:
        return bool(self.pending_changes)


# -----------------------------------------------------------------------------
# Dispatch Listener
# -----------------------------------------------------------------------------


class DispatchListener(Protocol):
    """Callback protocol for dispatch events."""

    def on_tool_start(self, call: ToolCallRecord) -> None:
        """Called when a tool starts execution."""
        ...

    def on_tool_complete(self, call: ToolCallRecord) -> None:
        """Called when a call completes or starts waiting for approval."""
        ...

    def on_tool_error(self, call: ToolCallRecord, error: str) -> None:
        """Called when a call fails."""
        ...


# -----------------------------------------------------------------------------
# Tool Dispatcher
# -----------------------------------------------------------------------------


class ToolDispatcher:
    """Routes tool calls to local handlers or the remote executor.

    Example:
        dispatcher = ToolDispatcher(build_default_registry(), remote_executor=executor)
        outcome = await dispatcher.execute_all(calls, document, requires_approval=policy)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        remote_executor: RemoteToolExecutor | None = None,
        listener: DispatchListener | None = None,
        fuzzy_threshold: float = text_matcher.DEFAULT_FUZZY_THRESHOLD,
        replace_skip_ceiling: int = diff_engine.REPLACE_SKIP_CEILING,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            registry: Tool table used to resolve call names.
            remote_executor: Callback for tools executed by the backend.
            listener: Dispatch event listener.
            fuzzy_threshold: Minimum similarity for fuzzy matches in replace_content.
            replace_skip_ceiling: Size above which replace changes skip the diff view.
        """
        self._registry = registry
        self._remote = remote_executor
        self._listener = listener
        self._fuzzy_threshold = fuzzy_threshold
        self._replace_skip_ceiling = replace_skip_ceiling

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def set_listener(self, listener: DispatchListener | None) -> None:
        self._listener = listener

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def execute_all(
        self,
        calls: Sequence[ToolCallRecord],
        document: DocumentContext,
        requires_approval: ApprovalCheck | None = None,
        *,
        signal: AbortSignal | None = None,
    ) -> DispatchOutcome:
        """Execute ``calls`` one after another.

        Failures are recorded on the failing call and never stop its siblings.
        Cancellation (``signal`` firing) raises
        :class:`~inkwell.ai.streaming.abort.AbortedError` and leaves the
        remaining calls untouched for the caller to fail.
        """

        check = requires_approval or self._default_requires_approval
        working = document.snapshot()
        pending: list[PendingChange] = []

        for call in calls:
            if signal is not None:
                signal.raise_if_aborted()
            if call.status.is_terminal or call.status == ToolCallStatus.AWAITING_CONFIRMATION:
                continue
            call.transition(ToolCallStatus.RUNNING)
            self._notify("on_tool_start", call)
            try:
                change, working = await self._execute_one(call, document, working, check, signal)
            except AbortedError:
                raise
            except ToolError as exc:
                self._fail(call, _tool_error_text(exc))
                continue
            except Exception as exc:
                LOGGER.exception("Tool %s (%s) raised", call.name, call.id)
                self._fail(call, f"Tool execution failed: {exc}")
                continue
            if change is not None:
                pending.append(change)
            self._notify("on_tool_complete", call)

        return DispatchOutcome(tool_calls=list(calls), pending_changes=pending)

    async def _execute_one(
        self,
        call: ToolCallRecord,
        document: DocumentContext,
        working: ArticleSnapshot,
        check: ApprovalCheck,
        signal: AbortSignal | None,
    ) -> tuple[PendingChange | None, ArticleSnapshot]:
        definition = self._registry.find(call.name)
        if definition is None:
            raise UnknownToolError(tool_name=call.name)
        arguments = _parse_arguments(call.arguments)
        needs_approval = check(call.name)

        if definition.is_remote:
            text = await self._execute_remote(call, arguments, signal)
            return self._finish_read(call, definition, text, needs_approval), working

        if definition.handler is None:
            raise ToolError(
                error_code=ErrorCode.INTERNAL_ERROR,
                message=f"Local tool {call.name} has no handler",
            )
        context = ToolContext(
            article=working,
            fuzzy_threshold=self._fuzzy_threshold,
            replace_skip_ceiling=self._replace_skip_ceiling,
        )
        outcome = definition.handler(arguments, context)
        if isinstance(outcome, ReadOutcome):
            text = json.dumps(outcome.payload, ensure_ascii=False)
            return self._finish_read(call, definition, text, needs_approval), working
        return self._finish_write(call, outcome, document, working, needs_approval)

    async def _execute_remote(
        self,
        call: ToolCallRecord,
        arguments: Mapping[str, Any],
        signal: AbortSignal | None,
    ) -> str:
        if self._remote is None:
            raise ToolError(
                error_code=ErrorCode.REMOTE_FAILURE,
                message=f"Remote tool {call.name} is not available in this session",
            )
        pending = self._remote.execute(call.id, call.name, json.dumps(arguments, ensure_ascii=False))
        result = await (signal.race(pending) if signal is not None else pending)
        if not result.success:
            raise ToolError(
                error_code=ErrorCode.REMOTE_FAILURE,
                message=result.error or f"Remote tool {call.name} failed",
            )
        return result.result_text() or ""

    def _finish_read(
        self,
        call: ToolCallRecord,
        definition: ToolDefinition,
        text: str,
        needs_approval: bool,
    ) -> PendingChange | None:
        if not needs_approval:
            call.complete(text)
            return None
        change = PendingChange(
            tool_call_id=call.id,
            tool_name=call.name,
            target=ChangeTarget.CONTENT,
            operation=ChangeOperation.UPDATE,
            old_value="",
            new_value=text,
            description=f"{definition.display_name} wants to share its result with the assistant",
            skip_diff=True,
            is_read_only=True,
        )
        call.await_confirmation(change)
        return change

    def _finish_write(
        self,
        call: ToolCallRecord,
        proposal: EditProposal,
        document: DocumentContext,
        working: ArticleSnapshot,
        needs_approval: bool,
    ) -> tuple[PendingChange | None, ArticleSnapshot]:
        change = PendingChange(
            tool_call_id=call.id,
            tool_name=call.name,
            target=ChangeTarget(proposal.target),
            operation=ChangeOperation(proposal.operation),
            old_value=proposal.old_value,
            new_value=proposal.new_value,
            description=proposal.description,
            search=proposal.search,
            replace=proposal.replace,
            replace_all=proposal.replace_all,
            replace_at=proposal.replace_at,
            line_range=proposal.line_range,
            position=proposal.position,
            insert_text=proposal.insert_text,
            skip_diff=proposal.skip_diff,
        )
        if change.target == ChangeTarget.TITLE:
            working = replace(working, title=change.new_value)
        else:
            working = replace(working, content=change.new_value)

        if needs_approval:
            call.await_confirmation(change)
            LOGGER.debug("Tool %s (%s) awaits approval", call.name, call.id)
            return change, working

        # Raises DocumentApplyError, which fails this call only.
        call.complete(document.apply(change))
        return None, working

    def _fail(self, call: ToolCallRecord, error: str) -> None:
        LOGGER.info("Tool %s (%s) failed: %s", call.name, call.id, error)
        call.fail(error)
        self._notify("on_tool_error", call, error)

    def _notify(self, method: str, *args: Any) -> None:
        if self._listener is None:
            return
        try:
            getattr(self._listener, method)(*args)
        except Exception:
            LOGGER.exception("Dispatch listener %s failed", method)

    def _default_requires_approval(self, name: str) -> bool:
        definition = self._registry.find(name)
        if definition is None:
            return True
        return definition.is_write or definition.default_requires_approval


def _parse_arguments(raw: str) -> Mapping[str, Any]:
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ToolError(
            error_code=ErrorCode.INVALID_ARGUMENTS,
            message=f"Invalid arguments: {exc.msg}",
            suggestion="Send the tool arguments as a single JSON object",
        ) from None
    if not isinstance(parsed, Mapping):
        raise ToolError(
            error_code=ErrorCode.INVALID_ARGUMENTS,
            message="Invalid arguments: expected a JSON object",
        )
    return parsed


def _tool_error_text(error: ToolError) -> str:
    """Flatten a tool error into the text the model receives."""

    parts = [error.message]
    hints = error.details.get("hints") if error.details else None
    if hints:
        parts.append("Hints:\n" + "\n".join(f"- {hint}" for hint in hints))
    if error.suggestion:
        parts.append(error.suggestion)
    return "\n\n".join(parts)
