"""Logging setup for the engine.

Everything goes to a rotating ``llamacode.log`` file. The console handler
writes to stderr and defaults to warnings only, so log records never
interleave with the streamed transcript on stdout.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Any, Mapping

__all__ = [
    "LOG_FILE_NAME",
    "setup_logging",
    "resolve_level",
    "get_logger",
    "get_log_path",
    "log_payload",
    "redact",
]

LOG_FILE_NAME = "llamacode.log"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_DEFAULT_LOG_DIR = Path.home() / ".llamacode" / "logs"
_LOG_DIR_ENV = "LLAMACODE_LOG_DIR"
_LOG_LEVEL_ENV = "LLAMACODE_LOG_LEVEL"

# Transport and SDK loggers that drown engine records at DEBUG.
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")

# Payload keys whose values never reach the log file.
_SECRET_KEYS = frozenset({"api_key", "authorization", "x-api-key", "password", "token"})
_REDACTED = "***"

_CONFIGURED = False
_LOG_PATH: Path | None = None


# -----------------------------------------------------------------------------
# Setup
# -----------------------------------------------------------------------------


def resolve_level(level: int | str | None, default: int = logging.INFO) -> int:
    """Turn ``"debug"``, ``"10"`` or ``logging.DEBUG`` into a level number.

    Unknown names fall back to ``default``.
    """
    if level is None or level == "":
        return default
    if isinstance(level, int):
        return level
    text = str(level).strip()
    if text.isdigit():
        return int(text)
    resolved = logging.getLevelName(text.upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(
    level: int | str | None = None,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    console_level: int | str = logging.WARNING,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the file handler (and the stderr handler) on the root logger.

    Args:
        level: Root level. ``LLAMACODE_LOG_LEVEL`` is used when omitted.
        log_dir: Directory for ``llamacode.log``; ``LLAMACODE_LOG_DIR`` or
            ``~/.llamacode/logs`` when omitted.
        console: Also log to stderr.
        console_level: Threshold for the stderr handler.
        max_bytes: Rotation size of the log file.
        backup_count: Rotated files to keep.
        force: Reconfigure even when logging was already set up.

    Returns:
        Path of the active log file.
    """
    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    root_level = resolve_level(level if level is not None else os.environ.get(_LOG_LEVEL_ENV))
    directory = Path(log_dir or os.environ.get(_LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / LOG_FILE_NAME

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [file_handler]
    if console:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(max(root_level, resolve_level(console_level, logging.WARNING)))
        stderr_handler.setFormatter(formatter)
        handlers.append(stderr_handler)

    logging.basicConfig(level=root_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))

    _CONFIGURED = True
    _LOG_PATH = log_path
    logging.getLogger(__name__).debug("Logging to %s at %s", log_path, logging.getLevelName(root_level))
    return log_path


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_log_path() -> Path | None:
    return _LOG_PATH


# -----------------------------------------------------------------------------
# Request payloads
# -----------------------------------------------------------------------------


def redact(value: Any) -> Any:
    """Copy ``value`` with secret-looking mapping entries masked."""
    if isinstance(value, Mapping):
        return {
            key: _REDACTED if str(key).lower() in _SECRET_KEYS else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def log_payload(
    logger: logging.Logger,
    label: str,
    payload: Mapping[str, Any],
    *,
    max_chars: int = 20_000,
) -> None:
    """Log a backend request payload at DEBUG, redacted and truncated."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    try:
        text = json.dumps(redact(payload), ensure_ascii=False, indent=2, default=str)
    except (TypeError, ValueError):
        text = repr(redact(payload))
    if len(text) > max_chars:
        text = f"{text[:max_chars]}\n... ({len(text) - max_chars} more characters)"
    logger.debug("%s payload:\n%s", label, text)
