"""Tests for DocumentContext and the Markdown file sink."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from inkwell.ai.orchestration.document import DocumentContext, TextFileDocumentSink, read_markdown_article
from inkwell.ai.orchestration.types import ChangeOperation, ChangeTarget, PendingChange
from inkwell.ai.tools.errors import DocumentApplyError

from tests.helpers import RecordingSink


def _replace_change(old: str, new: str, search: str, replace: str) -> PendingChange:
    return PendingChange(
        tool_call_id="c1",
        tool_name="replace_content",
        target=ChangeTarget.CONTENT,
        operation=ChangeOperation.REPLACE,
        old_value=old,
        new_value=new,
        description="Replaced 1 occurrence",
        search=search,
        replace=replace,
    )


class EditorSink(RecordingSink):
    def __init__(self) -> None:
        super().__init__()
        self.in_place: list[str] = []

    def set_editor_content(self, content: str) -> None:
        self.in_place.append(content)


class RefreshingSink(RecordingSink):
    def __init__(self) -> None:
        super().__init__()
        self.refreshes = 0

    def refresh(self) -> None:
        self.refreshes += 1


class TestApply:
    def test_content_change_reaches_sink(self) -> None:
        sink = RecordingSink()
        document = DocumentContext("Draft", "a\nb\n", sink=sink)

        result = document.apply(_replace_change("a\nb\n", "a\nB\n", "b", "B"))

        assert document.content == "a\nB\n"
        assert sink.contents == ["a\nB\n"]
        assert json.loads(result) == {"success": True, "message": "Replaced 1 occurrence"}

    def test_title_change(self) -> None:
        sink = RecordingSink()
        document = DocumentContext("Draft", "", sink=sink)
        change = PendingChange(
            tool_call_id="c1",
            tool_name="update_title",
            target=ChangeTarget.TITLE,
            operation=ChangeOperation.UPDATE,
            old_value="Draft",
            new_value="Final",
        )

        document.apply(change)

        assert document.title == "Final"
        assert sink.titles == ["Final"]

    def test_read_only_change_returns_result(self) -> None:
        document = DocumentContext("Draft", "body")
        change = PendingChange(
            tool_call_id="c1",
            tool_name="read_article",
            target=ChangeTarget.CONTENT,
            operation=ChangeOperation.UPDATE,
            old_value="",
            new_value='{"title": "Draft"}',
            is_read_only=True,
        )

        assert document.apply(change) == '{"title": "Draft"}'
        assert document.content == "body"

    def test_replace_is_recomputed_against_live_text(self) -> None:
        document = DocumentContext("Draft", "intro\na\nb\n")

        document.apply(_replace_change("a\nb\n", "a\nB\n", "b", "B"))

        assert document.content == "intro\na\nB\n"

    def test_stale_replace_fails(self) -> None:
        document = DocumentContext("Draft", "something else\n")

        with pytest.raises(DocumentApplyError) as excinfo:
            document.apply(_replace_change("a\nb\n", "a\nB\n", "b", "B"))

        assert "no longer applies" in str(excinfo.value)
        assert document.content == "something else\n"

    def test_sink_failure_is_wrapped(self) -> None:
        sink = RecordingSink()
        sink.fail_next = True
        document = DocumentContext("Draft", "a\nb\n", sink=sink)

        with pytest.raises(DocumentApplyError, match="editor is read-only"):
            document.apply(_replace_change("a\nb\n", "a\nB\n", "b", "B"))

        assert document.content == "a\nb\n"

    def test_in_place_setter_is_preferred(self) -> None:
        sink = EditorSink()
        document = DocumentContext("Draft", "x", sink=sink)

        document.set_content("y")

        assert sink.in_place == ["y"]
        assert sink.contents == []

    def test_fallback_replacement_refreshes(self) -> None:
        sink = RefreshingSink()
        document = DocumentContext("Draft", "x", sink=sink)

        document.set_content("y")

        assert sink.contents == ["y"]
        assert sink.refreshes == 1

    def test_article_context_summarizes(self) -> None:
        document = DocumentContext("Draft", "12345", article_id="9")

        context = document.article_context()

        assert (context.title, context.content_length, context.article_id) == ("Draft", 5, "9")


class TestMarkdownFiles:
    def test_read_with_heading(self, tmp_path: Path) -> None:
        path = tmp_path / "post.md"
        path.write_text("# My Post\n\nFirst paragraph.\n", encoding="utf-8")

        assert read_markdown_article(path) == ("My Post", "First paragraph.\n")

    def test_read_without_heading_or_file(self, tmp_path: Path) -> None:
        path = tmp_path / "notes.md"
        assert read_markdown_article(path) == ("", "")

        path.write_text("Just text", encoding="utf-8")
        assert read_markdown_article(path) == ("", "Just text")

    def test_sink_writes_title_and_body(self, tmp_path: Path) -> None:
        path = tmp_path / "out" / "post.md"
        sink = TextFileDocumentSink(path, title="Old", content="Body\n")

        sink.on_title_change("New")
        assert path.read_text(encoding="utf-8") == "# New\n\nBody\n"

        sink.on_content_change("Other\n")
        assert read_markdown_article(path) == ("New", "Other\n")
