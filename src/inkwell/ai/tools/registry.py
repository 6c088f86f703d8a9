"""The closed table of tools offered to the model.

Each entry says what a tool is called, whether it reads or writes, where it
runs and whether it needs the user's approval by default. Local tools carry a
handler; remote tools are executed through the remote tool callback.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Mapping

from . import document_tools
from .document_tools import EditProposal, ReadOutcome, ToolContext

__all__ = [
    "ToolKind",
    "ToolLocation",
    "ToolDefinition",
    "ToolRegistry",
    "DuplicateToolError",
    "ToolNotFoundError",
    "LocalHandler",
    "build_default_registry",
    "DEFAULT_TOOL_DEFINITIONS",
]

LOGGER = logging.getLogger(__name__)

LocalHandler = Callable[[Mapping[str, Any], ToolContext], "ReadOutcome | EditProposal"]


class ToolKind:
    READ = "read"
    WRITE = "write"


class ToolLocation:
    LOCAL = "local"
    REMOTE = "remote"


class DuplicateToolError(ValueError):
    """Raised when registering a name that is already taken."""


class ToolNotFoundError(KeyError):
    """Raised when looking up a tool that is not registered."""


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    name: str
    display_name: str
    description: str
    kind: str
    execution_location: str
    default_requires_approval: bool = True
    parameters: Mapping[str, Any] = field(default_factory=dict)
    handler: LocalHandler | None = None

    @property
    def is_write(self) -> bool:
        return self.kind == ToolKind.WRITE

    @property
    def is_remote(self) -> bool:
        return self.execution_location == ToolLocation.REMOTE

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }


class ToolRegistry:
    """Name-indexed view over the tool table."""

    def __init__(self, definitions: Iterable[ToolDefinition] = ()) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: ToolDefinition) -> None:
        if definition.name in self._tools:
            raise DuplicateToolError(f"Tool already registered: {definition.name}")
        if definition.execution_location == ToolLocation.LOCAL and definition.handler is None:
            raise ValueError(f"Local tool {definition.name} needs a handler")
        self._tools[definition.name] = definition
        LOGGER.debug("Registered tool %s (%s, %s)", definition.name, definition.kind, definition.execution_location)

    def get(self, name: str) -> ToolDefinition:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFoundError(name) from None

    def find(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def execution_location(self, name: str) -> str:
        definition = self._tools.get(name)
        return definition.execution_location if definition else ToolLocation.LOCAL

    def to_openai_tools(self) -> list[dict[str, Any]]:
        return [definition.to_openai_tool() for definition in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)


# -----------------------------------------------------------------------------
# Built-in tools
# -----------------------------------------------------------------------------

_REPLACE_DESCRIPTION = """Replace text in the article. The search text is located with a layered \
strategy (exact, line-ending normalized, whitespace normalized, then fuzzy).

Important:
- read_article output carries "N | " line-number prefixes; do not include them in `search`.
- By default the search text must occur exactly once.
- replaceAll=true replaces every occurrence.
- replaceAt=N replaces only the N-th occurrence (1-based).
- replaceRange={startLine, endLine} replaces occurrences starting inside those lines.
Give two or three full lines of context so the search text is unique. Use \
replace_all_content for large rewrites."""

DEFAULT_TOOL_DEFINITIONS: tuple[ToolDefinition, ...] = (
    ToolDefinition(
        name="read_article",
        display_name="Read article",
        description=(
            "Read the article being edited. section=title returns only the title; section=all or "
            "content returns line-numbered text formatted as \"N | line\". Pass startLine/endLine to "
            f"read a range (default {document_tools.DEFAULT_READ_LINES} lines, at most "
            f"{document_tools.MAX_READ_LINES}). Read long articles in parts."
        ),
        kind=ToolKind.READ,
        execution_location=ToolLocation.LOCAL,
        default_requires_approval=True,
        parameters={
            "type": "object",
            "properties": {
                "section": {
                    "type": "string",
                    "enum": ["title", "content", "all"],
                    "default": "all",
                    "description": "Which part to read",
                },
                "startLine": {"type": "number", "description": "First line to read (1-based, inclusive)"},
                "endLine": {"type": "number", "description": "Last line to read (inclusive)"},
            },
        },
        handler=document_tools.read_article,
    ),
    ToolDefinition(
        name="update_title",
        display_name="Update title",
        description="Change the article title.",
        kind=ToolKind.WRITE,
        execution_location=ToolLocation.LOCAL,
        parameters={
            "type": "object",
            "properties": {"title": {"type": "string", "description": "The new title"}},
            "required": ["title"],
        },
        handler=document_tools.update_title,
    ),
    ToolDefinition(
        name="insert_content",
        display_name="Insert content",
        description="Insert Markdown at the start or end of the article, separated by a blank line.",
        kind=ToolKind.WRITE,
        execution_location=ToolLocation.LOCAL,
        parameters={
            "type": "object",
            "properties": {
                "position": {"type": "string", "enum": ["start", "end"], "description": "Where to insert"},
                "content": {"type": "string", "description": "Markdown to insert"},
            },
            "required": ["position", "content"],
        },
        handler=document_tools.insert_content,
    ),
    ToolDefinition(
        name="replace_content",
        display_name="Replace content",
        description=_REPLACE_DESCRIPTION,
        kind=ToolKind.WRITE,
        execution_location=ToolLocation.LOCAL,
        parameters={
            "type": "object",
            "properties": {
                "search": {"type": "string", "description": "Text to find, without line-number prefixes"},
                "replace": {"type": "string", "description": "Replacement text"},
                "replaceAll": {"type": "boolean", "default": False, "description": "Replace every occurrence"},
                "replaceAt": {"type": "number", "description": "Replace only the N-th occurrence (1-based)"},
                "replaceRange": {
                    "type": "object",
                    "description": "Only replace occurrences starting within these lines",
                    "properties": {
                        "startLine": {"type": "number", "description": "First line (1-based, inclusive)"},
                        "endLine": {"type": "number", "description": "Last line (inclusive)"},
                    },
                    "required": ["startLine", "endLine"],
                },
            },
            "required": ["search", "replace"],
        },
        handler=document_tools.replace_content,
    ),
    ToolDefinition(
        name="replace_all_content",
        display_name="Rewrite article",
        description="Replace the entire article body (for rewrites).",
        kind=ToolKind.WRITE,
        execution_location=ToolLocation.LOCAL,
        parameters={
            "type": "object",
            "properties": {"content": {"type": "string", "description": "The new Markdown body"}},
            "required": ["content"],
        },
        handler=document_tools.replace_all_content,
    ),
    ToolDefinition(
        name="query_articles",
        display_name="Search articles",
        description="Search other articles in the library by keyword.",
        kind=ToolKind.READ,
        execution_location=ToolLocation.REMOTE,
        parameters={
            "type": "object",
            "properties": {
                "keyword": {"type": "string", "description": "Optional keyword"},
                "limit": {"type": "number", "default": 10, "description": "Maximum results"},
            },
        },
    ),
    ToolDefinition(
        name="get_article_by_id",
        display_name="Open article",
        description="Fetch another article's full content by id.",
        kind=ToolKind.READ,
        execution_location=ToolLocation.REMOTE,
        parameters={
            "type": "object",
            "properties": {"articleId": {"type": "number", "description": "Article id"}},
            "required": ["articleId"],
        },
    ),
    ToolDefinition(
        name="view_image",
        display_name="View image",
        description="Describe or analyze an image given by URL or data URI.",
        kind=ToolKind.READ,
        execution_location=ToolLocation.REMOTE,
        parameters={
            "type": "object",
            "properties": {
                "imageSource": {"type": "string", "description": "Image URL or data:image/...;base64 URI"},
                "question": {"type": "string", "description": "What to look for (optional)"},
            },
            "required": ["imageSource"],
        },
    ),
)


def build_default_registry() -> ToolRegistry:
    return ToolRegistry(DEFAULT_TOOL_DEFINITIONS)
