"""
Logging for tokenchat: colored console output plus two rotating JSON logs.

- stderr: one line per record, suffixed with the active request id
- logs/conversations.jsonl: finished chat turns only (``chat_turn`` records)
- logs/errors.jsonl: ERROR and above, with request scope fields

Every record carries the fields of the current ``RequestScope`` (request id,
user, connection, conversation) and the process ``instance_id``.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import uuid

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pythonjsonlogger import json as jsonlogger

from tokenchat.api.middleware.request_context import current_scope
from tokenchat.core.constants import (
    INSTANCE_ID_LENGTH,
    LOG_BACKUP_COUNT_CONVERSATIONS,
    LOG_BACKUP_COUNT_ERRORS,
    LOG_MAX_SIZE,
    LOG_PREVIEW_LENGTH,
    PROJECT_ROOT,
    get_settings,
)

# Applied to message previews before they reach any handler
REDACTIONS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    (re.compile(r"\b(?:\d{4}[- ]?){3}\d{4}\b"), "[CARD]"),
    (re.compile(r"\b(sk-|pk-|api[-_]?key[-_]?)[A-Za-z0-9]{20,}\b"), "[API_KEY]"),
    (re.compile(r"\b(password|secret|token)\s*[:=]\s*\S+", re.IGNORECASE), "[REDACTED]"),
]


@dataclass
class ChatTurnRecord:
    """Structured representation of a finished chat turn for logging."""

    user_input: str
    response: str
    outcome: str
    conversation_id: str | None = None
    duration_ms: float | None = None
    remaining_balance: int | None = None
    sources: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


class ChatTurnFilter(logging.Filter):
    """Pass only records emitted by ``ChatLogger.log_chat_turn``."""

    def filter(self, record: logging.LogRecord) -> bool:
        return bool(getattr(record, "chat_turn", False))


class ConsoleFormatter(logging.Formatter):
    """``HH:MM:SS [LEVEL] name - message (request_id)`` with the level colored."""

    COLORS = {
        logging.DEBUG: "\x1b[38;20m",
        logging.INFO: "\x1b[32;20m",
        logging.WARNING: "\x1b[33;20m",
        logging.ERROR: "\x1b[31;20m",
        logging.CRITICAL: "\x1b[31;1m",
    }
    RESET = "\x1b[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno, "")
        line = (
            f"{self.formatTime(record, '%H:%M:%S')} {color}[{record.levelname}]{self.RESET} "
            f"{record.name} - {record.getMessage()}"
        )
        request_id = getattr(record, "request_id", None)
        if request_id:
            line += f" ({request_id})"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_uvicorn_logging() -> None:
    """Send uvicorn's own loggers to stderr through ``ConsoleFormatter``."""
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers = []
        uv_logger.setLevel(logging.INFO)
        if name == "uvicorn":
            continue
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(ConsoleFormatter())
        uv_logger.addHandler(handler)
        uv_logger.propagate = False


def _json_file_handler(path: Path, backup_count: int, level: int, fields: str) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=LOG_MAX_SIZE, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(jsonlogger.JsonFormatter(fields, timestamp=True))
    return handler


def setup_logging(name: str = "tokenchat", debug: bool | None = None, log_dir: Path | None = None) -> logging.Logger:
    """
    Attach the console, conversation and error handlers to logger ``name``.

    Args:
        name: Logger name
        debug: Show DEBUG on the console (defaults to the DEBUG env var)
        log_dir: Directory for the JSON logs (defaults to ``<project>/logs``)
    """
    if debug is None:
        debug = os.getenv("DEBUG", "false").lower() in ("true", "1", "yes")
    log_dir = log_dir or PROJECT_ROOT / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.handlers = []

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if debug else logging.INFO)
    console.setFormatter(ConsoleFormatter())
    logger.addHandler(console)

    turns = _json_file_handler(
        log_dir / "conversations.jsonl",
        LOG_BACKUP_COUNT_CONVERSATIONS,
        logging.INFO,
        "%(timestamp)s %(message)s %(outcome)s %(user_id)s %(conversation_id)s %(request_id)s",
    )
    turns.addFilter(ChatTurnFilter())
    logger.addHandler(turns)

    logger.addHandler(
        _json_file_handler(
            log_dir / "errors.jsonl",
            LOG_BACKUP_COUNT_ERRORS,
            logging.ERROR,
            "%(timestamp)s %(levelname)s %(name)s %(message)s %(request_id)s %(user_id)s %(path)s",
        )
    )
    return logger


class ChatLogger:
    """Keyword-argument logging facade; keyword arguments become structured record fields."""

    def __init__(self, name: str = "tokenchat", log_dir: Path | None = None):
        self.logger = setup_logging(name, log_dir=log_dir)
        self.instance_id = uuid.uuid4().hex[:INSTANCE_ID_LENGTH]

    def _fields(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        # Explicit keyword arguments win over scope fields
        fields = {"instance_id": self.instance_id}
        if scope := current_scope():
            fields.update(scope.log_fields())
        fields.update(kwargs)
        return fields

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, extra=self._fields(kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, extra=self._fields(kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, extra=self._fields(kwargs))

    def error(self, message: str, exc_info: bool | BaseException = False, **kwargs: Any) -> None:
        self.logger.error(message, extra=self._fields(kwargs), exc_info=exc_info)

    def content_logging_enabled(self) -> bool:
        try:
            return bool(get_settings().enable_content_logging)
        except Exception:
            # Settings may be unloadable during early startup
            return False

    def preview(self, text: str) -> str:
        """Short redacted preview of message content, or [HIDDEN] when content logging is off."""
        if not self.content_logging_enabled():
            return "[HIDDEN]"
        snippet = text[:LOG_PREVIEW_LENGTH].replace("\n", " ")
        for pattern, replacement in REDACTIONS:
            snippet = pattern.sub(replacement, snippet)
        return snippet + "..." if len(text) > LOG_PREVIEW_LENGTH else snippet

    def log_chat_turn(self, turn: ChatTurnRecord) -> None:
        """Write one record per finished turn; content appears only as previews."""
        summary = f"User: {self.preview(turn.user_input)} → AI: {self.preview(turn.response)} [{turn.outcome}]"
        if turn.duration_ms:
            summary += f" [{turn.duration_ms:.0f}ms]"
        if turn.sources:
            summary += f" [{turn.sources} sources]"

        record: dict[str, Any] = {
            "chat_turn": True,
            "timestamp": turn.timestamp,
            "outcome": turn.outcome,
            "chars_input": len(turn.user_input),
            "chars_response": len(turn.response),
            "content_logging": self.content_logging_enabled(),
            "sources": turn.sources,
        }
        optional = {
            "conversation_id": turn.conversation_id,
            "ms": int(turn.duration_ms) if turn.duration_ms is not None else None,
            "remaining_balance": turn.remaining_balance,
        }
        record.update({key: value for key, value in optional.items() if value is not None})
        self.logger.info(summary, extra=self._fields(record))


# Global logger instance
logger = ChatLogger()
