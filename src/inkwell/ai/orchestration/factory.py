"""Wire transports, tools and the loop together from :class:`Settings`."""

from __future__ import annotations

import logging

from ...events import EventBus
from ...services.settings import Settings
from ..client import AIClient, ClientSettings
from ..streaming.relay import OpenAIRelayTransport
from ..streaming.transport import HttpStreamTransport, StreamTransport
from ..tools import diff_engine
from ..tools.registry import ToolRegistry, build_default_registry
from ..tools.remote import HttpRemoteToolExecutor, RemoteToolExecutor
from .dispatcher import ToolDispatcher
from .document import DocumentContext
from .loop import ChatController, ConversationLoop, LoopConfig
from .permissions import ApprovalPolicy
from .persistence import MessageStore

__all__ = ["BACKENDS", "build_transport", "build_chat_controller"]

LOGGER = logging.getLogger(__name__)

BACKENDS = ("http", "openai")


def build_transport(settings: Settings, backend: str, registry: ToolRegistry) -> StreamTransport:
    if backend == "http":
        return HttpStreamTransport(
            settings.stream_url,
            auth_token=settings.auth_token or None,
            timeout=settings.request_timeout,
        )
    if backend == "openai":
        return OpenAIRelayTransport(AIClient(ClientSettings.from_settings(settings)), registry=registry)
    raise ValueError(f"Unknown backend {backend!r}; expected one of {', '.join(BACKENDS)}")


def build_chat_controller(
    settings: Settings,
    document: DocumentContext,
    *,
    backend: str = "http",
    transport: StreamTransport | None = None,
    remote_executor: RemoteToolExecutor | None = None,
    registry: ToolRegistry | None = None,
    store: MessageStore | None = None,
    bus: EventBus | None = None,
) -> ChatController:
    registry = registry or build_default_registry()
    if transport is None:
        transport = build_transport(settings, backend, registry)
    if remote_executor is None and settings.tool_execute_url:
        remote_executor = HttpRemoteToolExecutor(
            settings.tool_execute_url,
            auth_token=settings.auth_token or None,
        )
    dispatcher = ToolDispatcher(
        registry,
        remote_executor=remote_executor,
        fuzzy_threshold=settings.fuzzy_threshold,
        replace_skip_ceiling=diff_engine.REPLACE_SKIP_CEILING,
    )
    loop = ConversationLoop(
        transport,
        dispatcher,
        document,
        config=LoopConfig.from_settings(settings),
        requires_approval=ApprovalPolicy.from_settings(settings, registry),
        store=store,
        bus=bus,
    )
    LOGGER.debug("Chat controller ready (backend=%s, model=%s)", backend, settings.model)
    return ChatController(loop, bus=bus)
