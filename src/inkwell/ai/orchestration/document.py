"""The article being edited and the sink that receives its mutations.

:class:`DocumentContext` is the single owner of the live title and body. It
is passed by reference to the dispatcher and the approval manager; nothing
else writes the article.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

from ..streaming.transport import ArticleContext
from ..tools import text_matcher
from ..tools.document_tools import INSERT_SEPARATOR, ArticleSnapshot
from ..tools.errors import DocumentApplyError
from .types import ChangeOperation, ChangeTarget, PendingChange

__all__ = [
    "DocumentSink",
    "DocumentContext",
    "TextFileDocumentSink",
    "read_markdown_article",
]

LOGGER = logging.getLogger(__name__)


class DocumentSink(Protocol):
    """Receiver of title and body changes (an editor, a file, a test double).

    A sink may also define ``set_editor_content(content)`` to update the body
    in place, which is preferred over ``on_content_change``, and ``refresh()``
    which is called after a fallback content replacement.
    """

    def on_title_change(self, title: str) -> None:
        ...

    def on_content_change(self, content: str) -> None:
        ...


class DocumentContext:
    """Live article state plus the sink that mirrors it."""

    def __init__(
        self,
        title: str = "",
        content: str = "",
        *,
        article_id: str | None = None,
        sink: DocumentSink | None = None,
        fuzzy_threshold: float = text_matcher.DEFAULT_FUZZY_THRESHOLD,
    ) -> None:
        self._title = title
        self._content = content
        self.article_id = article_id
        self._sink = sink
        self._fuzzy_threshold = fuzzy_threshold

    @property
    def title(self) -> str:
        return self._title

    @property
    def content(self) -> str:
        return self._content

    @property
    def fuzzy_threshold(self) -> float:
        return self._fuzzy_threshold

    def snapshot(self) -> ArticleSnapshot:
        return ArticleSnapshot(title=self._title, content=self._content, article_id=self.article_id)

    def article_context(self) -> ArticleContext:
        return ArticleContext(title=self._title, content_length=len(self._content), article_id=self.article_id)

    def set_title(self, title: str) -> None:
        if self._sink is not None:
            self._sink.on_title_change(title)
        self._title = title

    def set_content(self, content: str) -> None:
        sink = self._sink
        if sink is not None:
            setter = getattr(sink, "set_editor_content", None)
            if callable(setter):
                setter(content)
            else:
                sink.on_content_change(content)
                refresh = getattr(sink, "refresh", None)
                if callable(refresh):
                    refresh()
        self._content = content

    def apply(self, change: PendingChange) -> str:
        """Write ``change`` to the article and return the tool result text.

        When the live body no longer matches the text the change was computed
        against (an earlier change of the same round was rejected, or changes
        were accepted out of order), replace and insert changes are recomputed
        against the live body from their search or insert payload.

        Raises:
            DocumentApplyError: if the change cannot be recomputed or the sink fails.
        """

        if change.is_read_only:
            return change.new_value
        if change.target == ChangeTarget.TITLE:
            value = change.new_value
            self._write(self.set_title, value, change)
        else:
            value = self._rebase(change)
            self._write(self.set_content, value, change)
        LOGGER.debug("Applied %s (%s %s)", change.tool_call_id, change.target.value, change.operation.value)
        return json.dumps({"success": True, "message": change.description or "Change applied"}, ensure_ascii=False)

    def _rebase(self, change: PendingChange) -> str:
        live = self._content
        if live == change.old_value:
            return change.new_value
        if change.operation == ChangeOperation.REPLACE and change.search is not None:
            outcome = text_matcher.replace(
                live,
                change.search,
                change.replace or "",
                replace_all=change.replace_all,
                replace_at=change.replace_at,
                line_range=change.line_range,
                fuzzy_threshold=self._fuzzy_threshold,
            )
            if not outcome.success or outcome.new_text is None:
                raise DocumentApplyError(
                    message=f"The article changed and the edit no longer applies: {outcome.error}",
                    details={"errorCode": outcome.error_code},
                )
            LOGGER.debug("Recomputed %s against the live article", change.tool_call_id)
            return outcome.new_text
        if change.operation == ChangeOperation.INSERT and change.insert_text is not None:
            if not live:
                return change.insert_text
            if change.position == "start":
                return change.insert_text + INSERT_SEPARATOR + live
            return live + INSERT_SEPARATOR + change.insert_text
        return change.new_value

    @staticmethod
    def _write(setter, value: str, change: PendingChange) -> None:
        try:
            setter(value)
        except DocumentApplyError:
            raise
        except Exception as exc:
            LOGGER.warning("Document sink failed for %s: %s", change.tool_call_id, exc)
            raise DocumentApplyError(message=f"Failed to apply change: {exc}") from exc


# -----------------------------------------------------------------------------
# Markdown file sink
# -----------------------------------------------------------------------------


def read_markdown_article(path: Path) -> tuple[str, str]:
    """Split a Markdown file into ``(title, body)``; the title is a leading ``# `` heading."""

    text = path.read_text(encoding="utf-8") if path.exists() else ""
    lines = text.split("\n")
    if lines and lines[0].startswith("# "):
        body = "\n".join(lines[1:])
        return lines[0][2:].strip(), body[1:] if body.startswith("\n") else body
    return "", text


class TextFileDocumentSink:
    """Mirror the article into a Markdown file, title first as a ``# `` heading."""

    def __init__(self, path: Path, *, title: str = "", content: str = "") -> None:
        self._path = path
        self._title = title
        self._content = content

    @property
    def path(self) -> Path:
        return self._path

    def on_title_change(self, title: str) -> None:
        self._title = title
        self._flush()

    def on_content_change(self, content: str) -> None:
        self._content = content
        self._flush()

    def _flush(self) -> None:
        parts = []
        if self._title:
            parts.append(f"# {self._title}\n\n")
        parts.append(self._content)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text("".join(parts), encoding="utf-8")
        tmp_path.replace(self._path)
