"""Execution of tools that run on the backend rather than in-process."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

import httpx

__all__ = ["RemoteToolResult", "RemoteToolExecutor", "HttpRemoteToolExecutor"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RemoteToolResult:
    success: bool
    result: Any = None
    error: str | None = None

    def result_text(self) -> str | None:
        """Serialize ``result`` the way local read tools serialize theirs."""

        if self.result is None:
            return None
        if isinstance(self.result, str):
            return self.result
        return json.dumps(self.result, ensure_ascii=False)


class RemoteToolExecutor(Protocol):
    async def execute(self, tool_call_id: str, tool_name: str, arguments: str) -> RemoteToolResult:
        ...


class HttpRemoteToolExecutor:
    """POST ``{toolCallId, toolName, arguments}`` to the backend tool endpoint.

    Transport and protocol failures become unsuccessful results so one broken
    call never aborts its siblings.
    """

    def __init__(
        self,
        url: str,
        *,
        auth_token: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._auth_token = auth_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def execute(self, tool_call_id: str, tool_name: str, arguments: str) -> RemoteToolResult:
        headers = {"Content-Type": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        body = {"toolCallId": tool_call_id, "toolName": tool_name, "arguments": arguments}
        LOGGER.debug("Executing remote tool %s (%s)", tool_name, tool_call_id)
        try:
            response = await self._client.post(self._url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            LOGGER.warning("Remote tool %s failed to reach backend: %s", tool_name, exc)
            return RemoteToolResult(success=False, error=f"Remote tool request failed: {exc}")

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, Mapping):
            return RemoteToolResult(
                success=False,
                error=f"Remote tool returned an unreadable response (HTTP {response.status_code})",
            )
        if response.is_error:
            return RemoteToolResult(
                success=False,
                error=str(payload.get("error") or f"HTTP {response.status_code}"),
            )
        return RemoteToolResult(
            success=bool(payload.get("success")),
            result=payload.get("result"),
            error=payload.get("error"),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
