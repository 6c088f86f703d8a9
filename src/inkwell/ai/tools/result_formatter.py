"""Shape tool outcomes into the messages the model sees on the next round."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Iterable, Sequence

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..orchestration.types import HistoryEntry, ToolCallRecord

__all__ = ["format_tool_result", "build_continuation", "COMPLETED_FALLBACK"]

COMPLETED_FALLBACK = "Tool execution completed"


def format_tool_result(
    tool_name: str,
    *,
    result: str | None,
    error: str | None = None,
    failed: bool = False,
) -> str:
    """Return the JSON body of a ``tool`` message.

    Failures carry ``success: false`` with the tool name. A JSON object result
    without a ``success`` key gains ``success: true``; plain text is wrapped
    as ``{"success": true, "message": ...}``.
    """

    if failed:
        return json.dumps(
            {"success": False, "error": error or "Tool execution failed", "toolName": tool_name},
            ensure_ascii=False,
        )
    if not result:
        return json.dumps({"success": True, "message": COMPLETED_FALLBACK}, ensure_ascii=False)
    try:
        parsed: Any = json.loads(result)
    except (TypeError, ValueError):
        return json.dumps({"success": True, "message": result}, ensure_ascii=False)
    if isinstance(parsed, dict):
        if "success" in parsed:
            return result
        return json.dumps({"success": True, **parsed}, ensure_ascii=False)
    return json.dumps({"success": True, "message": result}, ensure_ascii=False)


def build_continuation(
    history: Sequence["HistoryEntry"],
    assistant_content: str,
    calls: Iterable["ToolCallRecord"],
) -> list["HistoryEntry"]:
    """Append the assistant turn and one ``tool`` message per call, in call order."""

    calls = list(calls)
    continuation = list(history)
    continuation.append(
        {
            "role": "assistant",
            "content": assistant_content or "",
            "tool_calls": [call.to_openai() for call in calls],
        }
    )
    for call in calls:
        continuation.append(
            {
                "role": "tool",
                "tool_call_id": call.id,
                "content": format_tool_result(
                    call.name,
                    result=call.result,
                    error=call.error,
                    failed=call.status == "failed",
                ),
            }
        )
    return continuation
