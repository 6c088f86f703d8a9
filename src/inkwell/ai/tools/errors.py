"""Errors a tool can report back to the model.

Whatever goes wrong inside a tool, the model receives the same JSON object:
``{"error": <code>, "message": ..., "details": ..., "suggestion": ...}``.
Subclasses only preset the code, message and suggestion and may add a field
or two of their own.
"""

from __future__ import annotations

from typing import Any, Sequence

__all__ = [
    "ErrorCode",
    "ToolError",
    "InvalidParameterError",
    "MissingParameterError",
    "NoMatchesError",
    "TooManyMatchesError",
    "UnknownToolError",
    "DocumentApplyError",
    "OperationCancelledError",
]


class ErrorCode:
    """Machine-readable codes used in the ``error`` field."""

    NO_MATCHES = "no_matches"
    TOO_MANY_MATCHES = "too_many_matches"
    EMPTY_SEARCH = "empty_search"

    INVALID_ARGUMENTS = "invalid_arguments"
    INVALID_PARAMETER = "invalid_parameter"
    MISSING_PARAMETER = "missing_parameter"

    UNKNOWN_TOOL = "unknown_tool"
    APPLY_FAILED = "apply_failed"
    REMOTE_FAILURE = "remote_failure"
    OPERATION_CANCELLED = "operation_cancelled"
    INTERNAL_ERROR = "internal_error"


class ToolError(Exception):
    """A failure that is reported to the model instead of crashing the round."""

    code: str = ErrorCode.INTERNAL_ERROR
    default_message: str = "Tool failed"
    default_suggestion: str = ""

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
        suggestion: str | None = None,
    ) -> None:
        self.error_code = error_code or self.code
        self.message = message or self.default_message
        self.details: dict[str, Any] = dict(details or {})
        self.suggestion = self.default_suggestion if suggestion is None else suggestion
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        return payload

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error_code!r}, {self.message!r})"


class InvalidParameterError(ToolError):
    code = ErrorCode.INVALID_PARAMETER
    default_message = "Invalid parameter value"

    def __init__(self, message: str | None = None, *, parameter: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.parameter = parameter

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.parameter:
            payload["parameter"] = self.parameter
        return payload


class MissingParameterError(InvalidParameterError):
    code = ErrorCode.MISSING_PARAMETER
    default_message = "Missing required parameter"

    @classmethod
    def for_parameter(cls, name: str) -> "MissingParameterError":
        return cls(f"Missing required parameter: {name}", parameter=name)


class NoMatchesError(ToolError):
    """No matching strategy located the search text."""

    code = ErrorCode.NO_MATCHES
    default_message = "Search text not found in the article"
    default_suggestion = "Call read_article to see the current text and copy the passage exactly"


class TooManyMatchesError(ToolError):
    """The search text is ambiguous where a single location is needed."""

    code = ErrorCode.TOO_MANY_MATCHES
    default_message = "Search text matches more than one location"
    default_suggestion = "Add surrounding context, or use replaceAll, replaceAt or replaceRange"

    def __init__(
        self,
        message: str | None = None,
        *,
        match_count: int = 0,
        previews: Sequence[str] = (),
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.match_count = match_count
        self.previews = tuple(previews)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["matchCount"] = self.match_count
        if self.previews:
            payload["previews"] = list(self.previews)
        return payload


class UnknownToolError(ToolError):
    code = ErrorCode.UNKNOWN_TOOL
    default_suggestion = "Use one of the tools listed in the tool definitions"

    def __init__(self, message: str | None = None, *, tool_name: str | None = None, **kwargs: Any) -> None:
        if message is None:
            message = f"Unknown tool: {tool_name}" if tool_name else "Unknown tool"
        super().__init__(message, **kwargs)
        self.tool_name = tool_name


class DocumentApplyError(ToolError):
    """An accepted change could not be written to the article."""

    code = ErrorCode.APPLY_FAILED
    default_message = "Failed to apply change to the article"


class OperationCancelledError(ToolError):
    code = ErrorCode.OPERATION_CANCELLED
    default_message = "interrupted"
