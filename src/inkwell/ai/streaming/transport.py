"""Outbound chat requests and the transports that stream their responses."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Protocol, Sequence

import httpx

__all__ = [
    "ArticleContext",
    "ChatRequest",
    "StreamTransport",
    "TransportError",
    "HttpStreamTransport",
]

LOGGER = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


@dataclass(slots=True, frozen=True)
class ArticleContext:
    """Summary of the article sent alongside the history; never the full text."""

    title: str
    content_length: int
    article_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"title": self.title, "contentLength": self.content_length}
        if self.article_id is not None:
            payload["articleId"] = self.article_id
        return payload


@dataclass(slots=True)
class ChatRequest:
    provider_id: str
    model_id: str
    messages: Sequence[Mapping[str, Any]]
    enable_tools: bool = True
    article: ArticleContext | None = None
    thinking_enabled: bool = False
    reasoning_effort: str | None = None
    tools: Sequence[Mapping[str, Any]] = field(default_factory=tuple)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "providerId": self.provider_id,
            "modelId": self.model_id,
            "messages": [dict(message) for message in self.messages],
            "enableTools": self.enable_tools,
        }
        if self.article is not None:
            payload["articleContext"] = self.article.to_payload()
        if self.thinking_enabled:
            payload["thinkingEnabled"] = True
            if self.reasoning_effort:
                payload["reasoningEffort"] = self.reasoning_effort
        return payload


class TransportError(Exception):
    """The backend refused the request or the connection broke."""

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class StreamTransport(Protocol):
    def stream(self, request: ChatRequest) -> AsyncIterator[bytes]:
        """Yield raw ``event:`` / ``data:`` bytes for ``request``."""
        ...


class HttpStreamTransport:
    """Stream a chat round from the backend's SSE endpoint."""

    def __init__(
        self,
        url: str,
        *,
        auth_token: str | None = None,
        timeout: float | None = 90.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._auth_token = auth_token
        self._owns_client = client is None
        # Reads may idle while the model thinks; only connecting is bounded tightly.
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout or 10.0, 10.0))
        )

    async def stream(self, request: ChatRequest) -> AsyncIterator[bytes]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        payload = request.to_payload()
        LOGGER.debug(
            "Streaming chat via %s (model=%s, messages=%d)",
            self._url,
            request.model_id,
            len(payload["messages"]),
        )
        try:
            async with self._client.stream("POST", self._url, json=payload, headers=headers) as response:
                if response.is_error:
                    body = await response.aread()
                    raise TransportError(
                        _error_message(body, response.status_code),
                        status_code=response.status_code,
                        retryable=response.status_code in _RETRYABLE_STATUS,
                    )
                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk
        except httpx.TimeoutException as exc:
            raise TransportError(f"Stream timed out: {exc}", retryable=True) from exc
        except httpx.TransportError as exc:
            raise TransportError(f"Connection failed: {exc}", retryable=True) from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_message(body: bytes, status_code: int) -> str:
    try:
        payload = json.loads(body.decode("utf-8", errors="replace"))
    except ValueError:
        payload = None
    if isinstance(payload, Mapping):
        error = payload.get("error")
        if isinstance(error, Mapping):
            error = error.get("message")
        if error:
            return str(error)
    return f"Backend returned HTTP {status_code}"
