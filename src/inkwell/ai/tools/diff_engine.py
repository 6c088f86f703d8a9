"""Windowed line diffs and cheap change summaries for pending changes.

Articles can be large while edits are usually small, so the diff only runs
over the region between the first and last differing lines (plus context).
Identical leading and trailing lines are skipped with a two-pointer scan.
"""

from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass, field
from typing import Sequence

__all__ = [
    "LineKind",
    "DiffLine",
    "DiffStats",
    "DiffResult",
    "ChangeSummary",
    "SkipDecision",
    "diff",
    "change_summary",
    "should_skip_diff",
    "render_diff",
    "DEFAULT_SIZE_CEILING",
    "REPLACE_SKIP_CEILING",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_CONTEXT_LINES = 3
DEFAULT_MAX_DISPLAY_LINES = 500
DEFAULT_SIZE_CEILING = 1024 * 1024
REPLACE_SKIP_CEILING = 5 * 1024 * 1024


class LineKind:
    ADDED = "added"
    REMOVED = "removed"
    UNCHANGED = "unchanged"
    SEPARATOR = "separator"


@dataclass(slots=True, frozen=True)
class DiffLine:
    kind: str
    content: str
    old_line: int | None = None
    new_line: int | None = None


@dataclass(slots=True, frozen=True)
class DiffStats:
    added: int = 0
    removed: int = 0
    unchanged: int = 0
    changed_characters: int = 0

    @property
    def changed_lines(self) -> int:
        return self.added + self.removed


@dataclass(slots=True)
class DiffResult:
    lines: list[DiffLine] = field(default_factory=list)
    stats: DiffStats = field(default_factory=DiffStats)
    truncated: bool = False
    unchanged_prefix: int = 0
    unchanged_suffix: int = 0


@dataclass(slots=True, frozen=True)
class ChangeSummary:
    is_modified: bool
    added_lines: int
    removed_lines: int
    added_chars: int
    removed_chars: int
    changed_percent: float


@dataclass(slots=True, frozen=True)
class SkipDecision:
    skip: bool
    old_size: int
    new_size: int
    reason: str | None = None


def _byte_size(text: str) -> int:
    return len(text.encode("utf-8", errors="replace"))


def _strip_common_ends(old_lines: Sequence[str], new_lines: Sequence[str]) -> tuple[int, int]:
    """Return the number of identical leading and trailing lines."""

    limit = min(len(old_lines), len(new_lines))
    prefix = 0
    while prefix < limit and old_lines[prefix] == new_lines[prefix]:
        prefix += 1
    suffix = 0
    while (
        suffix < limit - prefix
        and old_lines[len(old_lines) - 1 - suffix] == new_lines[len(new_lines) - 1 - suffix]
    ):
        suffix += 1
    return prefix, suffix


def should_skip_diff(old: str, new: str, max_size: int = DEFAULT_SIZE_CEILING) -> SkipDecision:
    old_size = _byte_size(old)
    new_size = _byte_size(new)
    if old_size > max_size or new_size > max_size:
        return SkipDecision(
            skip=True,
            old_size=old_size,
            new_size=new_size,
            reason=f"Text too large to diff ({max(old_size, new_size)} bytes > {max_size} bytes)",
        )
    return SkipDecision(skip=False, old_size=old_size, new_size=new_size)


def diff(
    old: str,
    new: str,
    *,
    context_lines: int = DEFAULT_CONTEXT_LINES,
    max_display_lines: int = DEFAULT_MAX_DISPLAY_LINES,
    size_ceiling: int = DEFAULT_SIZE_CEILING,
) -> DiffResult | None:
    """Diff ``old`` against ``new``; ``None`` means the texts are too large to diff."""

    decision = should_skip_diff(old, new, size_ceiling)
    if decision.skip:
        LOGGER.warning("Skipping diff: %s", decision.reason)
        return None

    context_lines = max(0, context_lines)
    old_lines = old.split("\n")
    new_lines = new.split("\n")
    prefix, suffix = _strip_common_ends(old_lines, new_lines)

    if prefix == len(old_lines) == len(new_lines):
        return DiffResult(
            stats=DiffStats(unchanged=len(old_lines)),
            unchanged_prefix=len(old_lines),
        )

    window_start = max(0, prefix - context_lines)
    old_window = old_lines[window_start : len(old_lines) - suffix + context_lines]
    new_window = new_lines[window_start : len(new_lines) - suffix + context_lines]

    entries = _line_diff(old_window, new_window, first_line=window_start + 1)
    visible = _filter_context(entries, context_lines)
    stats = _stats(visible)

    truncated = False
    if len(visible) > max_display_lines:
        truncated = True
        half = max(1, max_display_lines // 2)
        omitted = len(visible) - 2 * half
        visible = [
            *visible[:half],
            DiffLine(LineKind.SEPARATOR, f"... {omitted} lines omitted ..."),
            *visible[-half:],
        ]

    return DiffResult(
        lines=visible,
        stats=stats,
        truncated=truncated,
        unchanged_prefix=prefix,
        unchanged_suffix=suffix,
    )


def _line_diff(old_lines: list[str], new_lines: list[str], *, first_line: int) -> list[DiffLine]:
    matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)
    entries: list[DiffLine] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            for offset in range(i2 - i1):
                entries.append(
                    DiffLine(
                        LineKind.UNCHANGED,
                        old_lines[i1 + offset],
                        old_line=first_line + i1 + offset,
                        new_line=first_line + j1 + offset,
                    )
                )
            continue
        for index in range(i1, i2):
            entries.append(DiffLine(LineKind.REMOVED, old_lines[index], old_line=first_line + index))
        for index in range(j1, j2):
            entries.append(DiffLine(LineKind.ADDED, new_lines[index], new_line=first_line + index))
    return entries


def _filter_context(entries: list[DiffLine], context_lines: int) -> list[DiffLine]:
    changed = [i for i, entry in enumerate(entries) if entry.kind != LineKind.UNCHANGED]
    if not changed:
        return []
    keep: set[int] = set()
    for index in changed:
        keep.update(range(max(0, index - context_lines), min(len(entries), index + context_lines + 1)))

    result: list[DiffLine] = []
    previous = -1
    for index in sorted(keep):
        if previous != -1 and index - previous > 1:
            result.append(
                DiffLine(LineKind.SEPARATOR, f"... {index - previous - 1} unchanged lines omitted ...")
            )
        result.append(entries[index])
        previous = index
    return result


def _stats(lines: Sequence[DiffLine]) -> DiffStats:
    added = removed = unchanged = characters = 0
    for line in lines:
        if line.kind == LineKind.ADDED:
            added += 1
            characters += len(line.content)
        elif line.kind == LineKind.REMOVED:
            removed += 1
            characters += len(line.content)
        elif line.kind == LineKind.UNCHANGED:
            unchanged += 1
    return DiffStats(added=added, removed=removed, unchanged=unchanged, changed_characters=characters)


def change_summary(old: str, new: str) -> ChangeSummary:
    """Count-only summary used when a full diff is skipped."""

    old_lines = old.split("\n")
    new_lines = new.split("\n")
    prefix, suffix = _strip_common_ends(old_lines, new_lines)
    added_lines = len(new_lines) - prefix - suffix
    removed_lines = len(old_lines) - prefix - suffix
    total = max(len(old_lines), len(new_lines))
    changed_percent = (added_lines + removed_lines) / total * 100 if total else 0.0
    return ChangeSummary(
        is_modified=old != new,
        added_lines=added_lines,
        removed_lines=removed_lines,
        added_chars=max(0, len(new) - len(old)),
        removed_chars=max(0, len(old) - len(new)),
        changed_percent=changed_percent,
    )


def render_diff(result: DiffResult) -> str:
    """Plain-text rendering for terminals and logs."""

    rendered: list[str] = []
    for line in result.lines:
        if line.kind == LineKind.SEPARATOR:
            rendered.append(line.content)
            continue
        marker = {"added": "+", "removed": "-"}.get(line.kind, " ")
        number = line.new_line if line.kind == LineKind.ADDED else line.old_line
        rendered.append(f"{marker}{number or '':>5} | {line.content}")
    return "\n".join(rendered)
