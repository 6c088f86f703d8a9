"""Decide which tool calls need the user's approval."""

from __future__ import annotations

from typing import Mapping

from ...services.settings import Settings
from ..tools.registry import ToolRegistry

__all__ = ["ApprovalPolicy"]


class ApprovalPolicy:
    """Approval rules: YOLO mode, then per-tool overrides, then tool defaults.

    Write tools default to requiring approval regardless of their registry
    entry; unknown tools always do.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        yolo_mode: bool = False,
        overrides: Mapping[str, bool] | None = None,
    ) -> None:
        self._registry = registry
        self.yolo_mode = yolo_mode
        self._overrides = dict(overrides or {})

    @classmethod
    def from_settings(cls, settings: Settings, registry: ToolRegistry) -> "ApprovalPolicy":
        return cls(registry, yolo_mode=settings.yolo_mode, overrides=settings.tool_permissions)

    def set_override(self, tool_name: str, requires_approval: bool | None) -> None:
        if requires_approval is None:
            self._overrides.pop(tool_name, None)
        else:
            self._overrides[tool_name] = requires_approval

    def requires_approval(self, tool_name: str) -> bool:
        if self.yolo_mode:
            return False
        if tool_name in self._overrides:
            return self._overrides[tool_name]
        definition = self._registry.find(tool_name)
        if definition is None:
            return True
        return definition.is_write or definition.default_requires_approval

    __call__ = requires_approval
