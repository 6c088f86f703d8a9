"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from inkwell.ai.orchestration.document import DocumentContext
from inkwell.ai.tools.document_tools import ArticleSnapshot, ToolContext


@pytest.fixture
def sample_article() -> str:
    return "line1\nline2\nline3\n"


@pytest.fixture
def tool_context(sample_article: str) -> ToolContext:
    return ToolContext(article=ArticleSnapshot(title="Draft", content=sample_article, article_id="42"))


@pytest.fixture
def document(sample_article: str) -> DocumentContext:
    return DocumentContext("Draft", sample_article, article_id="42")


@pytest.fixture(autouse=True)
def _isolated_home(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in (
        "INKWELL_API_KEY",
        "INKWELL_BASE_URL",
        "INKWELL_MODEL",
        "INKWELL_MAX_LOOP_COUNT",
        "INKWELL_YOLO_MODE",
        "INKWELL_REASONING_EFFORT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("INKWELL_LOG_DIR", str(tmp_path / "logs"))
