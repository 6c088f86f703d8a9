"""Local tools that read and edit the article being written.

Write tools never touch the article. They compute the candidate value and
return an :class:`EditProposal`; the dispatcher decides whether the proposal
is applied at once or parked for approval.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from . import diff_engine, text_matcher
from .errors import (
    ErrorCode,
    InvalidParameterError,
    MissingParameterError,
    NoMatchesError,
    ToolError,
    TooManyMatchesError,
)

__all__ = [
    "ArticleSnapshot",
    "ToolContext",
    "ReadOutcome",
    "EditProposal",
    "read_article",
    "update_title",
    "insert_content",
    "replace_content",
    "replace_all_content",
    "DEFAULT_READ_LINES",
    "MAX_READ_LINES",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_READ_LINES = 200
MAX_READ_LINES = 2000
INSERT_SEPARATOR = "\n\n"
_SECTIONS = ("all", "title", "content")
_POSITIONS = ("start", "end")


@dataclass(slots=True, frozen=True)
class ArticleSnapshot:
    title: str
    content: str
    article_id: str | None = None


@dataclass(slots=True)
class ToolContext:
    """What a handler can see: the working copy plus matching options."""

    article: ArticleSnapshot
    fuzzy_threshold: float = text_matcher.DEFAULT_FUZZY_THRESHOLD
    replace_skip_ceiling: int = diff_engine.REPLACE_SKIP_CEILING


@dataclass(slots=True)
class ReadOutcome:
    payload: dict[str, Any]


@dataclass(slots=True)
class EditProposal:
    """Candidate mutation computed against the working copy."""

    target: str
    operation: str
    old_value: str
    new_value: str
    description: str
    search: str | None = None
    replace: str | None = None
    replace_all: bool = False
    replace_at: int | None = None
    line_range: tuple[int, int] | None = None
    position: str | None = None
    insert_text: str | None = None
    skip_diff: bool = False
    match_count: int = 0
    warnings: list[str] = field(default_factory=list)


# -----------------------------------------------------------------------------
# Argument helpers
# -----------------------------------------------------------------------------


def _require_text(args: Mapping[str, Any], name: str, *, allow_empty: bool = False) -> str:
    value = args.get(name)
    if value is None or (not allow_empty and isinstance(value, str) and not value.strip()):
        raise MissingParameterError.for_parameter(name)
    if not isinstance(value, str):
        raise InvalidParameterError(message=f"Parameter {name} must be a string", parameter=name)
    return value


def _optional_int(args: Mapping[str, Any], name: str) -> int | None:
    value = args.get(name)
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidParameterError(message=f"Parameter {name} must be a number", parameter=name)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidParameterError(message=f"Parameter {name} must be a number", parameter=name) from None


def _number_lines(lines: list[str], first: int, width: int) -> str:
    return "\n".join(f"{first + offset:>{width}} | {line}" for offset, line in enumerate(lines))


# -----------------------------------------------------------------------------
# Read tools
# -----------------------------------------------------------------------------


def read_article(args: Mapping[str, Any], context: ToolContext) -> ReadOutcome:
    """Return the title and/or line-numbered content of the article."""

    section = args.get("section") or "all"
    if section not in _SECTIONS:
        raise InvalidParameterError(
            message=f"section must be one of {', '.join(_SECTIONS)}", parameter="section"
        )
    article = context.article
    start_line = _optional_int(args, "startLine")
    end_line = _optional_int(args, "endLine")

    if section == "title" and start_line is None:
        return ReadOutcome({"title": article.title})

    lines = article.content.split("\n")
    total = len(lines)
    width = len(str(total))

    if start_line is None:
        first, last = 1, min(total, MAX_READ_LINES)
    else:
        first = max(1, start_line)
        last = end_line if end_line is not None else first + DEFAULT_READ_LINES - 1
        last = min(total, last, first + MAX_READ_LINES - 1)
        if first > total:
            raise InvalidParameterError(
                message=f"startLine {first} is beyond the end of the article ({total} lines)",
                parameter="startLine",
            )
        if last < first:
            raise InvalidParameterError(
                message=f"endLine {end_line} is before startLine {first}", parameter="endLine"
            )

    payload: dict[str, Any] = {
        "content": _number_lines(lines[first - 1 : last], first, width),
        "startLine": first,
        "endLine": last,
        "totalLines": total,
        "hasMoreBefore": first > 1,
        "hasMoreAfter": last < total,
    }
    if section in ("all", "title"):
        payload["title"] = article.title
    return ReadOutcome(payload)


# -----------------------------------------------------------------------------
# Write tools
# -----------------------------------------------------------------------------


def update_title(args: Mapping[str, Any], context: ToolContext) -> EditProposal:
    title = _require_text(args, "title")
    current = context.article.title
    return EditProposal(
        target="title",
        operation="update",
        old_value=current,
        new_value=title,
        description=f'Change title from "{current}" to "{title}"',
    )


def insert_content(args: Mapping[str, Any], context: ToolContext) -> EditProposal:
    text = _require_text(args, "content")
    position = args.get("position") or "end"
    if position not in _POSITIONS:
        raise InvalidParameterError(message="position must be 'start' or 'end'", parameter="position")
    current = context.article.content
    if not current:
        updated = text
    elif position == "start":
        updated = text + INSERT_SEPARATOR + current
    else:
        updated = current + INSERT_SEPARATOR + text
    return EditProposal(
        target="content",
        operation="insert",
        old_value=current,
        new_value=updated,
        description=f"Insert {len(text)} characters at the {position} of the article",
        position=position,
        insert_text=text,
    )


def replace_content(args: Mapping[str, Any], context: ToolContext) -> EditProposal:
    search = _require_text(args, "search")
    replacement = _require_text(args, "replace", allow_empty=True)
    replace_all = args.get("replaceAll") is True
    replace_at = _optional_int(args, "replaceAt")
    line_range = _line_range(args.get("replaceRange"))

    current = context.article.content
    outcome = text_matcher.replace(
        current,
        search,
        replacement,
        replace_all=replace_all,
        replace_at=replace_at,
        line_range=line_range,
        fuzzy_threshold=context.fuzzy_threshold,
    )
    if not outcome.success or outcome.new_text is None:
        raise _match_error(outcome)

    skip = diff_engine.should_skip_diff(current, outcome.new_text, context.replace_skip_ceiling)
    if outcome.replaced_count > 1:
        description = f"Replace {outcome.replaced_count} matches"
    else:
        description = "Replace matched content"
    if outcome.match.strategy != text_matcher.MatchStrategy.EXACT:
        description += f" ({outcome.match.strategy} match)"
    return EditProposal(
        target="content",
        operation="replace",
        old_value=current,
        new_value=outcome.new_text,
        description=description,
        search=search,
        replace=replacement,
        replace_all=replace_all,
        replace_at=replace_at,
        line_range=line_range,
        skip_diff=skip.skip,
        match_count=outcome.replaced_count,
        warnings=list(outcome.warnings),
    )


def replace_all_content(args: Mapping[str, Any], context: ToolContext) -> EditProposal:
    text = _require_text(args, "content")
    current = context.article.content
    return EditProposal(
        target="content",
        operation="replace_all",
        old_value=current,
        new_value=text,
        description=f"Replace the whole article ({len(current)} -> {len(text)} characters)",
    )


def _line_range(value: Any) -> tuple[int, int] | None:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise InvalidParameterError(
            message="replaceRange must be an object with startLine and endLine", parameter="replaceRange"
        )
    start = _optional_int(value, "startLine")
    end = _optional_int(value, "endLine")
    if start is None or end is None:
        raise InvalidParameterError(
            message="replaceRange requires both startLine and endLine", parameter="replaceRange"
        )
    return start, end


def _match_error(outcome: text_matcher.ReplaceResult) -> ToolError:
    result = outcome.match
    details: dict[str, Any] = {"strategy": result.strategy}
    if outcome.warnings:
        details["warnings"] = list(outcome.warnings)
    if result.hints:
        details["hints"] = list(result.hints)

    if outcome.error_code == ErrorCode.TOO_MANY_MATCHES:
        previews = [f"Line {preview.line}:\n{preview.snippet}" for preview in result.previews]
        message = outcome.error or "Search text matches more than one location"
        if previews:
            message += "\n\n" + "\n\n".join(previews)
        return TooManyMatchesError(
            message=message,
            details=details,
            match_count=result.match_count,
            previews=previews,
        )
    if outcome.error_code == ErrorCode.NO_MATCHES:
        message = outcome.error or "Search text not found in the article"
        return NoMatchesError(message=message, details=details)
    return InvalidParameterError(
        error_code=outcome.error_code or ErrorCode.INVALID_PARAMETER,
        message=outcome.error or "Invalid replace request",
        details=details,
    )
