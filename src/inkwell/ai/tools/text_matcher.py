"""Locate model-supplied search text inside an article.

Models quote the article imperfectly: line endings drift, ``read_article``
line-number prefixes leak into the quote, spacing collapses, and sometimes a
word or two changes. :func:`match` tries progressively looser strategies and
stops at the first one that finds anything:

1. ``exact``: plain substring search on the original text.
2. ``normalized``: CRLF/CR folded to LF, then line-number prefixes stripped
   from the search text.
3. ``whitespace``: runs of spaces and tabs collapsed per line, trailing
   whitespace dropped, leading indentation kept. Offsets are mapped back to
   the LF-normalized article.
4. ``fuzzy``: a sliding window scored by positional agreement, character-set
   overlap and length ratio.

Only the exact strategy reports offsets into the original text. Every other
strategy reports offsets into the LF-normalized text, exposed as
:attr:`MatchResult.source_text`, and :func:`replace` edits that text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from .errors import ErrorCode

__all__ = [
    "MatchStrategy",
    "MatchSpan",
    "MatchPreview",
    "MatchResult",
    "ReplaceResult",
    "match",
    "replace",
    "normalize_line_endings",
    "strip_line_numbers",
    "line_number_at",
    "similarity",
    "DEFAULT_FUZZY_THRESHOLD",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_FUZZY_THRESHOLD = 0.85
MAX_PREVIEWS = 5
PREVIEW_CONTEXT_LINES = 2
MAX_FUZZY_CANDIDATES = 20
MIN_FUZZY_SEARCH_LENGTH = 12
_FUZZY_STEP_CAP = 1024
_FUZZY_COARSE_SLACK = 0.15
_POSITIONAL_WEIGHT = 0.6
_CHARSET_WEIGHT = 0.3
_LENGTH_WEIGHT = 0.1

_LINE_NUMBER_PREFIX = re.compile(r"^\s*\d+\s+[|→]\s*", re.MULTILINE)
_INLINE_WHITESPACE = " \t"

_AMBIGUOUS_HINTS: tuple[str, ...] = (
    "Add more surrounding context so the search text occurs only once",
    "Set replaceAll to true to replace every occurrence",
    "Set replaceAt to the 1-based occurrence to replace a single one",
    "Set replaceRange {startLine, endLine} to limit replacement to those lines",
)
_NOT_FOUND_HINTS: tuple[str, ...] = (
    "Call read_article to fetch the current text before editing",
    "Copy the passage exactly and do not include line-number prefixes",
)


class MatchStrategy:
    """Names of the strategies, in the order they are attempted."""

    EXACT = "exact"
    NORMALIZED = "normalized"
    WHITESPACE = "whitespace"
    FUZZY = "fuzzy"
    NONE = "none"


@dataclass(slots=True, frozen=True)
class MatchSpan:
    start: int
    end: int
    similarity: float = 1.0


@dataclass(slots=True, frozen=True)
class MatchPreview:
    position: int
    line: int
    snippet: str


@dataclass(slots=True)
class MatchResult:
    """Outcome of :func:`match`.

    ``spans`` index into ``source_text``. On failure ``spans`` still lists the
    ambiguous matches (if any) so callers can report how many were found.
    """

    found: bool
    strategy: str
    source_text: str
    spans: tuple[MatchSpan, ...] = ()
    warnings: list[str] = field(default_factory=list)
    previews: list[MatchPreview] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    hints: list[str] = field(default_factory=list)

    @property
    def match_count(self) -> int:
        return len(self.spans)

    @property
    def position(self) -> int | None:
        return self.spans[0].start if self.spans else None

    @property
    def positions(self) -> list[int]:
        return [span.start for span in self.spans]

    @property
    def similarities(self) -> list[float]:
        return [span.similarity for span in self.spans]


@dataclass(slots=True)
class ReplaceResult:
    success: bool
    match: MatchResult
    new_text: str | None = None
    replaced_count: int = 0
    error: str | None = None
    error_code: str | None = None
    warnings: list[str] = field(default_factory=list)


# -----------------------------------------------------------------------------
# Public helpers
# -----------------------------------------------------------------------------


def normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def strip_line_numbers(text: str) -> str:
    """Remove ``"  12 | "`` style prefixes copied from ``read_article`` output."""

    return _LINE_NUMBER_PREFIX.sub("", text)


def line_number_at(text: str, position: int) -> int:
    """Return the 1-based line containing ``position``."""

    return text.count("\n", 0, max(0, position)) + 1


# -----------------------------------------------------------------------------
# Matching
# -----------------------------------------------------------------------------


def match(
    document: str,
    search_text: str,
    *,
    require_unique: bool = True,
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
) -> MatchResult:
    """Find ``search_text`` in ``document`` using the strategy cascade.

    A strategy that finds more than one match while ``require_unique`` is set
    ends the cascade with an ambiguity failure; looser strategies would only
    find the same occurrences again.
    """

    if not search_text or not search_text.strip():
        return MatchResult(
            found=False,
            strategy=MatchStrategy.NONE,
            source_text=document,
            error="Search text must not be empty",
            error_code=ErrorCode.EMPTY_SEARCH,
        )

    warnings: list[str] = []

    spans = _find_all(document, search_text)
    if spans:
        return _settle(MatchStrategy.EXACT, document, spans, warnings, require_unique)

    normalized_doc = normalize_line_endings(document)
    normalized_search = normalize_line_endings(search_text)
    if normalized_search != search_text or normalized_doc != document:
        warnings.append("Line endings were normalized to LF")
        spans = _find_all(normalized_doc, normalized_search)
        if spans:
            return _settle(MatchStrategy.NORMALIZED, normalized_doc, spans, warnings, require_unique)

    cleaned_search = strip_line_numbers(normalized_search)
    if cleaned_search != normalized_search and cleaned_search.strip():
        warnings.append("Line-number prefixes were removed from the search text")
        spans = _find_all(normalized_doc, cleaned_search)
        if spans:
            return _settle(MatchStrategy.NORMALIZED, normalized_doc, spans, warnings, require_unique)
    if not cleaned_search.strip():
        cleaned_search = normalized_search

    spans = _whitespace_spans(normalized_doc, cleaned_search)
    if spans:
        warnings.append("Matched after collapsing whitespace differences")
        return _settle(MatchStrategy.WHITESPACE, normalized_doc, spans, warnings, require_unique)

    if len(cleaned_search.strip()) >= MIN_FUZZY_SEARCH_LENGTH:
        spans = _fuzzy_spans(normalized_doc, cleaned_search, fuzzy_threshold)
        if spans:
            best = spans[0].similarity
            warnings.append(f"Fuzzy match used (best similarity {best:.2f}); verify the change carefully")
            return _settle(MatchStrategy.FUZZY, normalized_doc, spans, warnings, require_unique)

    return MatchResult(
        found=False,
        strategy=MatchStrategy.NONE,
        source_text=document,
        warnings=warnings,
        error="Search text not found in the article",
        error_code=ErrorCode.NO_MATCHES,
        hints=list(_NOT_FOUND_HINTS),
    )


def _settle(
    strategy: str,
    text: str,
    spans: Sequence[MatchSpan],
    warnings: list[str],
    require_unique: bool,
) -> MatchResult:
    spans = tuple(spans)
    if len(spans) == 1 or not require_unique:
        if len(spans) > 1:
            warnings = [*warnings, f"Found {len(spans)} matches"]
        return MatchResult(found=True, strategy=strategy, source_text=text, spans=spans, warnings=warnings)
    return MatchResult(
        found=False,
        strategy=strategy,
        source_text=text,
        spans=spans,
        warnings=warnings,
        previews=[_preview(text, span.start) for span in spans[:MAX_PREVIEWS]],
        error=f"Search text matches {len(spans)} locations; it must identify exactly one",
        error_code=ErrorCode.TOO_MANY_MATCHES,
        hints=list(_AMBIGUOUS_HINTS),
    )


def _find_all(text: str, needle: str) -> list[MatchSpan]:
    spans: list[MatchSpan] = []
    if not needle:
        return spans
    start = text.find(needle)
    while start != -1:
        spans.append(MatchSpan(start, start + len(needle)))
        start = text.find(needle, start + 1)
    return spans


def _preview(text: str, position: int, context_lines: int = PREVIEW_CONTEXT_LINES) -> MatchPreview:
    lines = text.split("\n")
    line_no = line_number_at(text, position)
    first = max(0, line_no - 1 - context_lines)
    last = min(len(lines), line_no + context_lines)
    rendered = []
    for offset, line in enumerate(lines[first:last]):
        current = first + offset + 1
        marker = "→" if current == line_no else " "
        rendered.append(f"{marker} {current:>4} | {line}")
    return MatchPreview(position=position, line=line_no, snippet="\n".join(rendered))


# -----------------------------------------------------------------------------
# Whitespace-insensitive matching
# -----------------------------------------------------------------------------


def _collapse_whitespace(text: str) -> tuple[str, list[int], list[int]]:
    """Collapse inline whitespace, returning the text and offset maps.

    ``starts[i]`` and ``ends[i]`` give the original slice covered by collapsed
    character ``i``.
    """

    out: list[str] = []
    starts: list[int] = []
    ends: list[int] = []
    offset = 0
    lines = text.split("\n")
    for index, line in enumerate(lines):
        content_end = len(line.rstrip(_INLINE_WHITESPACE))
        indent = len(line) - len(line.lstrip(_INLINE_WHITESPACE))
        i = 0
        while i < content_end:
            char = line[i]
            if i >= indent and char in _INLINE_WHITESPACE:
                j = i
                while j < content_end and line[j] in _INLINE_WHITESPACE:
                    j += 1
                out.append(" ")
                starts.append(offset + i)
                ends.append(offset + j)
                i = j
                continue
            out.append(char)
            starts.append(offset + i)
            ends.append(offset + i + 1)
            i += 1
        if index < len(lines) - 1:
            out.append("\n")
            starts.append(offset + len(line))
            ends.append(offset + len(line) + 1)
        offset += len(line) + 1
    return "".join(out), starts, ends


def _whitespace_spans(document: str, search: str) -> list[MatchSpan]:
    collapsed_search, _, _ = _collapse_whitespace(search)
    if not collapsed_search.strip():
        return []
    collapsed_doc, starts, ends = _collapse_whitespace(document)
    spans = []
    for span in _find_all(collapsed_doc, collapsed_search):
        spans.append(MatchSpan(starts[span.start], ends[span.end - 1]))
    return spans


# -----------------------------------------------------------------------------
# Fuzzy matching
# -----------------------------------------------------------------------------


def similarity(window: str, search: str) -> float:
    """Weighted similarity in ``[0, 1]`` between a document window and the search text."""

    if not window or not search:
        return 0.0
    longest = max(len(window), len(search))
    positional = sum(1 for a, b in zip(window, search) if a == b) / longest
    window_chars = set(window)
    search_chars = set(search)
    charset = len(window_chars & search_chars) / len(window_chars | search_chars)
    length = min(len(window), len(search)) / longest
    return _POSITIONAL_WEIGHT * positional + _CHARSET_WEIGHT * charset + _LENGTH_WEIGHT * length


def _fuzzy_spans(document: str, search: str, threshold: float) -> list[MatchSpan]:
    width = len(search)
    if not document or width == 0:
        return []
    step = max(1, min(width // 10, _FUZZY_STEP_CAP))
    # Windows may run off the end of the article by up to one step, letting the
    # length term penalize truncated tails instead of skipping them.
    last_start = max(0, len(document) - max(1, width - step))

    coarse: list[MatchSpan] = []
    for start in range(0, last_start + 1, step):
        window = document[start : start + width]
        coarse.append(MatchSpan(start, start + len(window), similarity(window, search)))
    if not coarse:
        return []

    floor = threshold - _FUZZY_COARSE_SLACK
    seeds = sorted(
        (span for span in coarse if span.similarity >= floor),
        key=lambda span: span.similarity,
        reverse=True,
    )
    refined = [_refine(document, search, seed, step) for seed in seeds[: MAX_FUZZY_CANDIDATES * 2]]
    LOGGER.debug(
        "Fuzzy search scored %d window(s), refined %d seed(s)", len(coarse), len(refined)
    )

    accepted = [span for span in _dedupe(refined) if span.similarity >= threshold]
    accepted.sort(key=lambda span: span.similarity, reverse=True)
    return accepted[:MAX_FUZZY_CANDIDATES]


def _refine(document: str, search: str, seed: MatchSpan, step: int) -> MatchSpan:
    width = len(search)
    best = seed
    low = max(0, seed.start - step)
    high = min(len(document) - 1, seed.start + step)
    for start in range(low, high + 1):
        window = document[start : start + width]
        score = similarity(window, search)
        if score > best.similarity:
            best = MatchSpan(start, start + len(window), score)
    return best


def _dedupe(spans: Iterable[MatchSpan]) -> list[MatchSpan]:
    kept: list[MatchSpan] = []
    for span in sorted(spans, key=lambda item: item.similarity, reverse=True):
        if any(span.start < other.end and other.start < span.end for other in kept):
            continue
        kept.append(span)
    return kept


# -----------------------------------------------------------------------------
# Replacement
# -----------------------------------------------------------------------------


def replace(
    document: str,
    search_text: str,
    replacement: str,
    *,
    replace_all: bool = False,
    replace_at: int | None = None,
    line_range: tuple[int, int] | None = None,
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
) -> ReplaceResult:
    """Return the article with ``search_text`` replaced; ``document`` is never mutated.

    ``replace_at`` selects a single 1-based occurrence. ``line_range`` keeps
    only occurrences starting inside the inclusive line range; combined with
    ``replace_at`` the index counts within that range. Without either, a unique
    match is required unless ``replace_all`` is set.
    """

    if replace_at is not None and replace_at < 1:
        return _replace_failure(
            document, f"replaceAt must be 1 or greater, got {replace_at}", ErrorCode.INVALID_PARAMETER
        )
    if line_range is not None:
        first, last = line_range
        if first < 1 or last < first:
            return _replace_failure(
                document,
                f"replaceRange must satisfy 1 <= startLine <= endLine, got {first}-{last}",
                ErrorCode.INVALID_PARAMETER,
            )

    selective = replace_all or replace_at is not None or line_range is not None
    result = match(
        document,
        search_text,
        require_unique=not selective,
        fuzzy_threshold=fuzzy_threshold,
    )
    if not result.found:
        return ReplaceResult(
            success=False,
            match=result,
            error=result.error,
            error_code=result.error_code,
            warnings=list(result.warnings),
        )

    text = result.source_text
    spans = list(result.spans)
    if line_range is not None:
        first, last = line_range
        spans = [span for span in spans if first <= line_number_at(text, span.start) <= last]
        if not spans:
            return _replace_failure(
                document,
                f"No occurrence of the search text starts within lines {first}-{last}",
                ErrorCode.NO_MATCHES,
                result,
            )
    if replace_at is not None:
        if replace_at > len(spans):
            return _replace_failure(
                document,
                f"replaceAt={replace_at} is out of range; found {len(spans)} occurrence(s)",
                ErrorCode.INVALID_PARAMETER,
                result,
            )
        spans = [spans[replace_at - 1]]
    elif not replace_all and line_range is None:
        spans = spans[:1]

    spans = sorted(_dedupe_in_order(spans), key=lambda span: span.start)
    if result.strategy != MatchStrategy.EXACT:
        replacement = normalize_line_endings(replacement)

    pieces: list[str] = []
    cursor = 0
    for span in spans:
        pieces.append(text[cursor : span.start])
        pieces.append(replacement)
        cursor = span.end
    pieces.append(text[cursor:])

    return ReplaceResult(
        success=True,
        match=result,
        new_text="".join(pieces),
        replaced_count=len(spans),
        warnings=list(result.warnings),
    )


def _dedupe_in_order(spans: Sequence[MatchSpan]) -> list[MatchSpan]:
    kept: list[MatchSpan] = []
    for span in sorted(spans, key=lambda item: item.start):
        if kept and span.start < kept[-1].end:
            continue
        kept.append(span)
    return kept


def _replace_failure(
    document: str,
    message: str,
    code: str,
    result: MatchResult | None = None,
) -> ReplaceResult:
    if result is None:
        result = MatchResult(found=False, strategy=MatchStrategy.NONE, source_text=document, error=message, error_code=code)
    return ReplaceResult(success=False, match=result, error=message, error_code=code, warnings=list(result.warnings))
