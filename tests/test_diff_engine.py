"""Tests for :mod:`inkwell.ai.tools.diff_engine`."""

from __future__ import annotations

from inkwell.ai.tools import diff_engine
from inkwell.ai.tools.diff_engine import LineKind


def _article(count: int) -> list[str]:
    return [f"Line number {index}" for index in range(1, count + 1)]


class TestDiff:
    def test_identical_texts_have_no_changes(self) -> None:
        text = "\n".join(_article(50))

        result = diff_engine.diff(text, text)

        assert result is not None
        assert result.stats.changed_lines == 0
        assert result.lines == []
        assert not result.truncated

    def test_single_insert_in_large_text_is_windowed(self) -> None:
        lines = _article(1000)
        changed = [*lines[:500], "A brand new line", *lines[500:]]

        result = diff_engine.diff("\n".join(lines), "\n".join(changed), context_lines=3)

        assert result is not None
        assert result.stats.added == 1
        assert result.stats.removed == 0
        assert len(result.lines) <= 2 * 3 + 1 + 1
        assert result.unchanged_prefix == 500
        assert result.unchanged_suffix == 500
        added = [line for line in result.lines if line.kind == LineKind.ADDED]
        assert added[0].content == "A brand new line"
        assert added[0].new_line == 501

    def test_separated_edits_collapse_unchanged_run(self) -> None:
        lines = _article(40)
        changed = list(lines)
        changed[5] = "edited five"
        changed[30] = "edited thirty"

        result = diff_engine.diff("\n".join(lines), "\n".join(changed), context_lines=2)

        assert result is not None
        separators = [line for line in result.lines if line.kind == LineKind.SEPARATOR]
        assert len(separators) == 1
        assert "unchanged lines omitted" in separators[0].content
        assert result.stats.added == 2
        assert result.stats.removed == 2

    def test_changed_characters_are_counted(self) -> None:
        result = diff_engine.diff("alpha\nbeta\n", "alpha\ngamma\n")

        assert result is not None
        assert result.stats.changed_characters == len("beta") + len("gamma")

    def test_long_diff_is_truncated(self) -> None:
        old = "\n".join(_article(100))
        new = "\n".join(f"rewritten {index}" for index in range(100))

        result = diff_engine.diff(old, new, max_display_lines=20)

        assert result is not None
        assert result.truncated
        assert len(result.lines) == 21
        assert "omitted" in result.lines[10].content

    def test_oversized_text_is_not_diffed(self) -> None:
        assert diff_engine.diff("a" * 200, "b", size_ceiling=100) is None

    def test_render_marks_lines(self) -> None:
        result = diff_engine.diff("one\ntwo\n", "one\n2\n")
        assert result is not None

        rendered = diff_engine.render_diff(result)

        assert "-    2 | two" in rendered
        assert "+    2 | 2" in rendered


class TestChangeSummary:
    def test_counts_only_the_changed_region(self) -> None:
        summary = diff_engine.change_summary("a\nb\nc", "a\nB\nB2\nc")

        assert summary.is_modified
        assert summary.added_lines == 2
        assert summary.removed_lines == 1
        assert summary.added_chars == 3
        assert summary.removed_chars == 0

    def test_unmodified(self) -> None:
        summary = diff_engine.change_summary("same", "same")

        assert not summary.is_modified
        assert summary.changed_percent == 0.0


class TestShouldSkipDiff:
    def test_reports_sizes_and_reason(self) -> None:
        decision = diff_engine.should_skip_diff("é" * 10, "x", max_size=5)

        assert decision.skip
        assert decision.old_size == 20
        assert decision.reason is not None

    def test_small_texts_are_diffed(self) -> None:
        assert not diff_engine.should_skip_diff("a", "b").skip
