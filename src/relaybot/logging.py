"""Structured logging for relaybot.

Wraps structlog with:
- level selection from RELAYBOT_LOG_LEVEL (or --debug)
- console output on a TTY, JSON when RELAYBOT_LOG_JSON is set
- redaction of API keys and IRC passwords in every event
- a writer that survives a closed stderr at shutdown
"""

from __future__ import annotations

import logging
import os
import re
import sys
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from typing import Any, TextIO

import structlog

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

_TRUTHY = {"1", "true", "yes", "on"}

_API_KEY_RE = re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}")
_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9_\-\.=]+", re.IGNORECASE)
_IRC_PASS_RE = re.compile(r"^(PASS\s+).+$", re.IGNORECASE | re.MULTILINE)
_NICKSERV_RE = re.compile(r"(IDENTIFY\s+)\S+", re.IGNORECASE)


def _truthy(value: str | None) -> bool:
    if not value:
        return False
    return value.strip().lower() in _TRUTHY


def _level_value(value: str | None, *, default: str = "info") -> int:
    if not value:
        return _LEVELS[default]
    return _LEVELS.get(value.strip().lower(), _LEVELS[default])


def _redact_text(text: str) -> str:
    text = _API_KEY_RE.sub("sk-[REDACTED]", text)
    text = _BEARER_RE.sub(r"\1[REDACTED]", text)
    text = _IRC_PASS_RE.sub(r"\1[REDACTED]", text)
    return _NICKSERV_RE.sub(r"\1[REDACTED]", text)


def _redact_value(value: Any, memo: dict[int, Any]) -> Any:
    if isinstance(value, str):
        return _redact_text(value)
    if isinstance(value, bytes):
        return _redact_text(value.decode("utf-8", errors="replace"))
    if isinstance(value, (dict, list, tuple, set)):
        key = id(value)
        if key in memo:
            return memo[key]
        if isinstance(value, dict):
            out: Any = {}
            memo[key] = out
            for k, v in value.items():
                out[k] = _redact_value(v, memo)
            return out
        items = [_redact_value(v, memo) for v in value]
        out = type(value)(items)
        memo[key] = out
        return out
    return value


def _redact_processor(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    _ = logger, method_name
    memo: dict[int, Any] = {}
    for key, value in list(event_dict.items()):
        event_dict[key] = _redact_value(value, memo)
    return event_dict


class SafeWriter:
    """File-like wrapper that drops writes once the stream is gone."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._closed = False

    def write(self, text: str) -> int:
        if self._closed:
            return 0
        try:
            return self._stream.write(text)
        except (ValueError, OSError):
            self._closed = True
            return 0

    def flush(self) -> None:
        if self._closed:
            return
        try:
            self._stream.flush()
        except (ValueError, OSError):
            self._closed = True

    def isatty(self) -> bool:
        try:
            return self._stream.isatty()
        except (ValueError, OSError):
            return False


def setup_logging(*, debug: bool = False, stream: TextIO | None = None) -> None:
    """Configure structlog for the process.

    Args:
        debug: Force debug level regardless of RELAYBOT_LOG_LEVEL.
        stream: Output stream (defaults to stderr).
    """
    level = (
        logging.DEBUG
        if debug
        else _level_value(os.environ.get("RELAYBOT_LOG_LEVEL"))
    )
    writer = SafeWriter(stream if stream is not None else sys.stderr)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if _truthy(os.environ.get("RELAYBOT_LOG_JSON")) or not writer.isatty():
        processors += [
            structlog.processors.format_exc_info,
            _redact_processor,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors += [_redact_processor, structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=writer),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> Any:
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(name)


def bind_unit_context(**kwargs: Any) -> None:
    """Attach fields to every log line emitted while handling one unit."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def suppress_logs(level: str = "error") -> Iterator[None]:
    """Temporarily raise the log threshold to ``level``."""
    previous = structlog.get_config()
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            _level_value(level, default="error")
        )
    )
    try:
        yield
    finally:
        structlog.configure(**previous)
