"""System prompt for article-editing conversations."""

from __future__ import annotations

from datetime import date
from typing import Iterable, Mapping

from .streaming.transport import ArticleContext

__all__ = ["build_system_prompt", "with_system_prompt"]


def build_system_prompt(
    *,
    article: ArticleContext | None = None,
    tools: Iterable[Mapping[str, object]] = (),
    today: date | None = None,
) -> str:
    """Compose the system prompt from fixed guidance plus the current article summary."""

    sections = [_ROLE_SECTION, _workflow_section()]
    tool_lines = _tool_lines(tools)
    if tool_lines:
        sections.append("<tools>\n" + "\n".join(tool_lines) + "\n</tools>")
    sections.append(_environment_section(article, today or date.today()))
    return "\n\n".join(sections)


def with_system_prompt(messages: Iterable[Mapping[str, object]], prompt: str) -> list[dict[str, object]]:
    """Prepend ``prompt`` unless the history already starts with a system message."""

    history = [dict(message) for message in messages]
    if history and history[0].get("role") == "system":
        return history
    return [{"role": "system", "content": prompt}, *history]


_ROLE_SECTION = """You are a writing assistant embedded in an article editor. You help the author \
plan, draft and revise one Markdown article. Answer in the language the author writes in."""


def _workflow_section() -> str:
    return """<editing_rules>
- Call read_article before editing so your edits match the current text.
- read_article prefixes every line with "N | "; never include those prefixes in search text.
- Prefer replace_content for local edits and give enough context to make the search text unique.
- Use replace_all_content only for full rewrites.
- Edits may wait for the author's approval. If the author rejects a change, do not retry the identical change.
- After editing, summarize what changed in one or two sentences.
</editing_rules>"""


def _tool_lines(tools: Iterable[Mapping[str, object]]) -> list[str]:
    lines = []
    for tool in tools:
        function = tool.get("function") if isinstance(tool.get("function"), Mapping) else tool
        name = function.get("name") if isinstance(function, Mapping) else None
        if not name:
            continue
        description = str(function.get("description") or "").strip().splitlines()
        lines.append(f"- {name}: {description[0] if description else ''}".rstrip(": "))
    return lines


def _environment_section(article: ArticleContext | None, today: date) -> str:
    lines = [f"Today's date: {today.isoformat()}"]
    if article is not None:
        lines.append(f"Article title: {article.title or '(untitled)'}")
        lines.append(f"Article length: {article.content_length} characters")
        if article.article_id is not None:
            lines.append(f"Article id: {article.article_id}")
    else:
        lines.append("No article is open.")
    return "<environment>\n" + "\n".join(lines) + "\n</environment>"
