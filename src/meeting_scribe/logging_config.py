"""
Structured JSON logging configuration for meeting-scribe.

Usage:
    from meeting_scribe.logging_config import setup_logging

    setup_logging()          # uses MEETING_SCRIBE_LOG_LEVEL env var (default: INFO)
    setup_logging("DEBUG")   # explicit level
    setup_logging(debug=True)# force DEBUG (e.g. from MEETING_SCRIBE_DEBUG=true)

Set MEETING_SCRIBE_DEBUG=true to enable verbose debug logging.
Set MEETING_SCRIBE_LOG_LEVEL=DEBUG|INFO|WARNING|ERROR to control verbosity.
"""

from __future__ import annotations

import enum
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_STANDARD_FIELDS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "taskName",
    }
)

_NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "discord", "anthropic")

_CONTEXT_FIELDS = ("guild_id", "user_id")


def _json_default(value: Any) -> Any:
    """Render the non-JSON values that show up in session log context."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    return str(value)


class _JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON objects.

    ``guild_id`` and ``user_id`` come right after the logger name so lines
    for one session line up when grepped.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        for key in _CONTEXT_FIELDS:
            if key in record.__dict__:
                payload[key] = record.__dict__[key]
        payload["msg"] = record.getMessage()

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        if record.stack_info:
            payload["stack"] = self.formatStack(record.stack_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_FIELDS and key not in payload and not key.startswith("_"):
                payload[key] = value

        return json.dumps(payload, default=_json_default)


def resolve_level(level: str | None = None, *, debug: bool | None = None) -> int:
    """Work out the effective level.

    Priority:
      1. ``debug=True`` kwarg → force DEBUG level
      2. ``level`` argument (explicit)
      3. ``MEETING_SCRIBE_DEBUG=true`` env var → DEBUG
      4. ``MEETING_SCRIBE_LOG_LEVEL`` env var
      5. Default: INFO
    """
    if debug is True:
        return logging.DEBUG
    if level is not None:
        return getattr(logging, level.upper(), logging.INFO)
    if os.environ.get("MEETING_SCRIBE_DEBUG", "").lower() in ("1", "true", "yes"):
        return logging.DEBUG
    env_level = os.environ.get("MEETING_SCRIBE_LOG_LEVEL", "INFO").upper()
    return getattr(logging, env_level, logging.INFO)


def setup_logging(
    level: str | None = None,
    *,
    debug: bool | None = None,
) -> None:
    """Configure structured JSON logging for the meeting_scribe package.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR). Case-insensitive.
        debug: If True, force DEBUG level regardless of env vars.
    """
    effective_level = resolve_level(level, debug=debug)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JSONFormatter())

    pkg_logger = logging.getLogger("meeting_scribe")
    pkg_logger.setLevel(effective_level)
    # Avoid duplicate handlers if called multiple times
    if not pkg_logger.handlers:
        pkg_logger.addHandler(handler)
    else:
        pkg_logger.handlers[0] = handler

    if effective_level > logging.DEBUG:
        for noisy in _NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    pkg_logger.debug(
        "Logging initialised",
        extra={"log_level": logging.getLevelName(effective_level)},
    )
