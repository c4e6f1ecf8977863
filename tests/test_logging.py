"""Tests for utils/logging.py."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

import pytest

from llamacode.utils import logging as logging_utils


@pytest.fixture(autouse=True)
def _restore_root_logger():
    level = logging.getLogger().level
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, logging.handlers.RotatingFileHandler) or type(handler) is logging.StreamHandler:
            root.removeHandler(handler)
            handler.close()
    logging_utils._CONFIGURED = False
    logging_utils._LOG_PATH = None
    root.setLevel(level)


def test_setup_logging_writes_to_log_file(tmp_path: Path) -> None:
    log_path = logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path, console=False, force=True)

    logging_utils.get_logger("llamacode.test").info("hello log")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_path == tmp_path / "llamacode.log"
    assert "hello log" in log_path.read_text(encoding="utf-8")
    assert logging_utils.get_log_path() == log_path


def test_setup_logging_is_idempotent_without_force(tmp_path: Path) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "a", console=False, force=True)
    second = logging_utils.setup_logging(log_dir=tmp_path / "b", console=False)

    assert second == first


def test_env_log_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("LLAMACODE_LOG_DIR", str(tmp_path / "env-logs"))

    log_path = logging_utils.setup_logging(console=False, force=True)

    assert log_path.parent == tmp_path / "env-logs"


def test_noisy_loggers_are_quieted(tmp_path: Path) -> None:
    logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path, console=False, force=True)

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("openai").level == logging.WARNING


def test_env_log_level(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("LLAMACODE_LOG_LEVEL", "debug")

    logging_utils.setup_logging(log_dir=tmp_path, console=False, force=True)

    assert logging.getLogger().level == logging.DEBUG


def test_console_handler_defaults_to_warnings(tmp_path: Path) -> None:
    logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path, force=True)

    console = [h for h in logging.getLogger().handlers if type(h) is logging.StreamHandler]
    assert len(console) == 1
    assert console[0].level == logging.WARNING


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, logging.INFO),
        ("", logging.INFO),
        ("warning", logging.WARNING),
        ("10", logging.DEBUG),
        (logging.ERROR, logging.ERROR),
        ("chatty", logging.INFO),
    ],
)
def test_resolve_level(raw, expected: int) -> None:
    assert logging_utils.resolve_level(raw) == expected


def test_redact_masks_nested_secrets() -> None:
    payload = {"model": "m", "headers": {"Authorization": "Bearer abc"}, "items": [{"api_key": "k"}]}

    assert logging_utils.redact(payload) == {
        "model": "m",
        "headers": {"Authorization": "***"},
        "items": [{"api_key": "***"}],
    }
    assert payload["headers"]["Authorization"] == "Bearer abc"


def test_log_payload_is_truncated(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("llamacode.test.payload")

    with caplog.at_level(logging.DEBUG, logger="llamacode.test.payload"):
        logging_utils.log_payload(logger, "Ollama chat", {"prompt": "x" * 500}, max_chars=100)

    message = caplog.records[-1].getMessage()
    assert message.startswith("Ollama chat payload:\n")
    assert "more characters)" in message


def test_log_payload_skipped_above_debug(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("llamacode.test.quiet")

    with caplog.at_level(logging.INFO, logger="llamacode.test.quiet"):
        logging_utils.log_payload(logger, "Chat completion", {"model": "m"})

    assert caplog.records == []
