"""Edit a Markdown article from the terminal with the assistant."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Callable, Sequence, TextIO

from ..ai.orchestration.document import DocumentContext, TextFileDocumentSink, read_markdown_article
from ..ai.orchestration.factory import BACKENDS, build_chat_controller
from ..ai.orchestration.loop import ChatController
from ..ai.orchestration.persistence import InMemoryMessageStore
from ..ai.orchestration.types import PendingChange
from ..ai.tools import diff_engine
from ..events import EventBus, LoopDepthExceeded, MessageAdded, MessageUpdated, TurnFailed
from ..services.settings import Settings, SettingsStore
from ..utils.logging import setup_logging

LOGGER = logging.getLogger(__name__)

_EXIT_COMMANDS = {"/quit", "/exit"}


class _TranscriptPrinter:
    """Print streamed assistant text as it arrives."""

    def __init__(self, out: TextIO) -> None:
        self._out = out
        self._printed: dict[str, int] = {}

    def on_message_added(self, event: MessageAdded) -> None:
        if event.role == "assistant":
            self._printed[event.message_id] = 0
            if event.content:
                self._write(event.message_id, event.content)

    def on_message_updated(self, event: MessageUpdated) -> None:
        self._write(event.message_id, event.content)

    def on_turn_failed(self, event: TurnFailed) -> None:
        hint = " (try again)" if event.retryable else ""
        print(f"\n[error] {event.error}{hint}", file=self._out)

    def on_depth_exceeded(self, event: LoopDepthExceeded) -> None:
        print(f"\n[stopped after {event.limit} tool rounds]", file=self._out)

    def _write(self, message_id: str, content: str) -> None:
        offset = self._printed.get(message_id, 0)
        if len(content) > offset:
            self._out.write(content[offset:])
            self._out.flush()
            self._printed[message_id] = len(content)


def describe_change(
    change: PendingChange,
    *,
    context_lines: int = diff_engine.DEFAULT_CONTEXT_LINES,
    max_lines: int = diff_engine.DEFAULT_MAX_DISPLAY_LINES,
    size_ceiling: int = diff_engine.DEFAULT_SIZE_CEILING,
) -> str:
    """Text shown when asking about ``change``: a windowed diff, or counts when the diff is skipped."""

    header = f"{change.tool_name}: {change.description}"
    if change.is_read_only:
        preview = change.new_value if len(change.new_value) <= 2000 else change.new_value[:2000] + "..."
        return f"{header}\n{preview}"
    result = None
    if not change.skip_diff:
        result = diff_engine.diff(
            change.old_value,
            change.new_value,
            context_lines=context_lines,
            max_display_lines=max_lines,
            size_ceiling=size_ceiling,
        )
    if result is None:
        summary = diff_engine.change_summary(change.old_value, change.new_value)
        return (
            f"{header}\n+{summary.added_lines} / -{summary.removed_lines} lines, "
            f"+{summary.added_chars} / -{summary.removed_chars} characters "
            f"({summary.changed_percent:.1f}% changed)"
        )
    body = diff_engine.render_diff(result)
    if result.truncated:
        body += "\n(diff truncated)"
    return f"{header}\n{body}"


async def review_changes(
    controller: ChatController,
    ask: Callable[[str], str],
    out: TextIO,
    *,
    settings: Settings | None = None,
) -> None:
    """Ask about every pending change until none is left.

    The diff window and size ceiling come from ``settings`` when given.
    """

    options: dict[str, int] = {}
    if settings is not None:
        options = {
            "context_lines": settings.diff_context_lines,
            "max_lines": settings.diff_max_display_lines,
            "size_ceiling": settings.diff_size_ceiling,
        }

    while controller.approvals.current is not None:
        change = controller.approvals.current
        print("\n" + describe_change(change, **options), file=out)
        answer = ""
        while answer not in ("a", "r"):
            answer = (await asyncio.to_thread(ask, "[a]ccept / [r]eject? ")).strip().lower()[:1]
        if answer == "a":
            await controller.accept(change.id)
        else:
            await controller.reject(change.id)


async def run(args: argparse.Namespace, *, ask: Callable[[str], str] = input, out: TextIO = sys.stdout) -> int:
    overrides: dict[str, object] = {}
    if args.yolo:
        overrides["yolo_mode"] = True
    if args.max_loops is not None:
        overrides["max_loop_count"] = args.max_loops
    if args.model:
        overrides["model"] = args.model
    settings = SettingsStore(args.settings).load(overrides=overrides)

    title, content = read_markdown_article(args.article)
    sink = TextFileDocumentSink(args.article, title=title, content=content)
    document = DocumentContext(
        title,
        content,
        article_id=args.article.stem,
        sink=sink,
        fuzzy_threshold=settings.fuzzy_threshold,
    )

    bus: EventBus = EventBus()
    printer = _TranscriptPrinter(out)
    bus.subscribe(MessageAdded, printer.on_message_added)
    bus.subscribe(MessageUpdated, printer.on_message_updated)
    bus.subscribe(TurnFailed, printer.on_turn_failed)
    bus.subscribe(LoopDepthExceeded, printer.on_depth_exceeded)

    controller = build_chat_controller(
        settings,
        document,
        backend=args.backend,
        store=InMemoryMessageStore(),
        bus=bus,
    )
    print(f"Editing {args.article} ({len(content)} characters). /quit to leave.", file=out)
    while True:
        try:
            text = await asyncio.to_thread(ask, "\n> ")
        except EOFError:
            break
        if text.strip() in _EXIT_COMMANDS:
            break
        if not text.strip():
            continue
        try:
            await controller.send_message(text)
            await review_changes(controller, ask, out, settings=settings)
        except KeyboardInterrupt:
            controller.cancel()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Edit a Markdown article with the writing assistant.")
    parser.add_argument("article", type=Path, help="Markdown file to edit; a leading '# ' line is the title.")
    parser.add_argument(
        "--backend",
        choices=BACKENDS,
        default="http",
        help="Stream from the backend endpoint (http) or call the provider directly (openai).",
    )
    parser.add_argument("--yolo", action="store_true", help="Apply every change without asking.")
    parser.add_argument("--max-loops", type=int, help="Maximum consecutive tool rounds per message.")
    parser.add_argument("--model", help="Model identifier overriding the saved settings.")
    parser.add_argument("--settings", type=Path, help="Settings file (default: ~/.inkwell/settings.json).")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to the console.")
    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else logging.INFO, console=args.verbose)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
