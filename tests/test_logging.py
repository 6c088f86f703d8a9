from __future__ import annotations

import logging
from pathlib import Path

import pytest

from inkwell.utils import logging as logging_utils


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_writes_to_file(tmp_path: Path, restore_root_logging) -> None:
    path = logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path, console=False, force=True)

    logging_utils.get_logger("inkwell.test").info("round finished")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert path == tmp_path / "inkwell.log"
    assert logging_utils.get_log_path() == path
    assert "round finished" in path.read_text(encoding="utf-8")
    assert logging.getLogger("httpx").level == logging.WARNING


def test_repeated_setup_is_a_noop(tmp_path: Path, restore_root_logging) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "a", console=False, force=True)

    second = logging_utils.setup_logging(log_dir=tmp_path / "b", console=False)

    assert second == first


def test_log_dir_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, restore_root_logging) -> None:
    monkeypatch.setenv("INKWELL_LOG_DIR", str(tmp_path / "env-logs"))

    path = logging_utils.setup_logging(console=False, force=True)

    assert path.parent == tmp_path / "env-logs"


def test_level_names_are_accepted(tmp_path: Path, restore_root_logging) -> None:
    logging_utils.setup_logging("debug", log_dir=tmp_path, console=False, force=True)

    assert logging.getLogger().level == logging.DEBUG


def test_level_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, restore_root_logging) -> None:
    monkeypatch.setenv("INKWELL_LOG_LEVEL", "warning")

    logging_utils.setup_logging(log_dir=tmp_path, console=False, force=True)

    assert logging.getLogger().level == logging.WARNING


def test_unknown_level_name_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        logging_utils.setup_logging("chatty", log_dir=tmp_path, console=False, force=True)
