"""Document tools, their registry and the text engines they rely on."""

from . import diff_engine, document_tools, errors, registry, remote, result_formatter, text_matcher
from .registry import ToolDefinition, ToolRegistry, build_default_registry

__all__ = [
    "diff_engine",
    "document_tools",
    "errors",
    "registry",
    "remote",
    "result_formatter",
    "text_matcher",
    "ToolDefinition",
    "ToolRegistry",
    "build_default_registry",
]
