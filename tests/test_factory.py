from __future__ import annotations

import pytest

from inkwell.ai.orchestration.document import DocumentContext
from inkwell.ai.orchestration.factory import build_chat_controller, build_transport
from inkwell.ai.orchestration.types import LoopState
from inkwell.ai.streaming.relay import OpenAIRelayTransport
from inkwell.ai.streaming.transport import HttpStreamTransport
from inkwell.ai.tools.registry import build_default_registry
from inkwell.services.settings import Settings

from tests.helpers import FakeRemoteExecutor, ScriptedTransport, text_round


def test_build_http_transport() -> None:
    transport = build_transport(Settings(), "http", build_default_registry())

    assert isinstance(transport, HttpStreamTransport)


def test_build_openai_relay() -> None:
    transport = build_transport(Settings(api_key="sk-test", model=""), "openai", build_default_registry())

    assert isinstance(transport, OpenAIRelayTransport)


def test_unknown_backend() -> None:
    with pytest.raises(ValueError, match="Unknown backend"):
        build_transport(Settings(), "carrier-pigeon", build_default_registry())


@pytest.mark.asyncio
async def test_controller_uses_settings() -> None:
    settings = Settings(model="gpt-test", max_loop_count=4, thinking_enabled=True, reasoning_effort="low")
    transport = ScriptedTransport([text_round("Hi there.")])
    controller = build_chat_controller(
        settings,
        DocumentContext("Draft", "body"),
        transport=transport,
        remote_executor=FakeRemoteExecutor(),
    )

    await controller.send_message("Hello")

    assert controller.state == LoopState.IDLE
    assert controller.loop.config.max_loop_count == 4
    (request,) = transport.requests
    assert request.model_id == "gpt-test"
    assert request.thinking_enabled
    assert request.reasoning_effort == "low"
    assert request.article is not None and request.article.content_length == 4
