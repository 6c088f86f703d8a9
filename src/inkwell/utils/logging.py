"""Logging helpers for the Inkwell engine and its command-line front-end.

Everything logs through the standard :mod:`logging` tree. :func:`setup_logging`
is called once by the CLI; library code only ever calls :func:`get_logger`.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from dataclasses import dataclass
from pathlib import Path

__all__ = ["setup_logging", "get_logger", "get_log_path"]

LOG_DIR_ENV = "INKWELL_LOG_DIR"
LOG_LEVEL_ENV = "INKWELL_LOG_LEVEL"

_FALLBACK_DIR = Path("~/.inkwell/logs")
_FILE_NAME = "inkwell.log"
_RECORD_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that flood DEBUG output with connection chatter.
_CHATTY = ("asyncio", "httpx", "httpcore", "openai")


@dataclass(slots=True)
class _LoggingState:
    log_path: Path | None = None


_state = _LoggingState()


def setup_logging(
    level: int | str | None = None,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Send records to a rotating ``inkwell.log`` and optionally to stderr.

    ``level`` accepts a number or a level name; when omitted it comes from
    ``INKWELL_LOG_LEVEL`` and defaults to INFO. The directory comes from
    ``log_dir``, then ``INKWELL_LOG_DIR``, then ``~/.inkwell/logs``. Only the
    first call takes effect unless ``force`` is passed.
    """

    if _state.log_path is not None and not force:
        return _state.log_path

    numeric_level = _coerce_level(level if level is not None else os.environ.get(LOG_LEVEL_ENV))
    directory = Path(log_dir or os.environ.get(LOG_DIR_ENV) or _FALLBACK_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / _FILE_NAME

    formatter = logging.Formatter(_RECORD_FORMAT, datefmt=_TIME_FORMAT)
    rotating = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    rotating.setFormatter(formatter)
    rotating.setLevel(numeric_level)
    installed: list[logging.Handler] = [rotating]

    if console:
        stream = logging.StreamHandler()
        stream.setFormatter(formatter)
        # stderr is shared with the streamed reply, so only warnings go there.
        stream.setLevel(max(numeric_level, logging.WARNING))
        installed.append(stream)

    logging.basicConfig(level=numeric_level, handlers=installed, force=True)
    logging.captureWarnings(True)
    ceiling = max(numeric_level, logging.WARNING)
    for name in _CHATTY:
        logging.getLogger(name).setLevel(ceiling)

    _state.log_path = log_path
    return log_path


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """The file chosen by the last :func:`setup_logging` call, if any."""

    return _state.log_path


def _coerce_level(value: int | str | None) -> int:
    if value is None or value == "":
        return logging.INFO
    if isinstance(value, int):
        return value
    if value.strip().isdigit():
        return int(value)
    resolved = logging.getLevelName(value.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {value!r}")
    return resolved
