from __future__ import annotations
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
import contextvars
import logging.handlers

"""
Centralized logger for the chat engine.

Features:
- get_logger(name): returns a configured logger
- init_logging(): initialize root logger (called on app startup)
- session_id contextvar so every line logged while a stream runs carries its session
- request_id contextvar for HTTP requests
- console (human-readable) and file (JSON) handlers with rotation
"""

# Correlation ids for the current context (asyncio tasks copy the context on creation)
session_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("session_id", default=None)
request_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)


def set_session_id(sid: Optional[str]) -> None:
    """Bind a chat session id to the current context."""
    session_id.set(sid)


def clear_session_id() -> None:
    session_id.set(None)


def set_request_id(rid: Optional[str]) -> None:
    """Set a request/correlation id for the current context."""
    request_id.set(rid)


def clear_request_id() -> None:
    request_id.set(None)


class ContextFilter(logging.Filter):
    """Attach the current session_id / request_id (if any) to every LogRecord."""

    def filter(self, record: logging.LogRecord) -> bool:
        # Explicit extra={"session_id": ...} wins over the context
        if getattr(record, "session_id", None) is None:
            record.session_id = session_id.get()
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id.get()
        return True


_RESERVED_ATTRS = (
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message",
    "taskName", "session_id", "request_id", "context_part",
)


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logs."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
            "line": record.lineno,
            "session_id": getattr(record, "session_id", None),
            "request_id": getattr(record, "request_id", None),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        # Include extra keys passed in logging call
        for k, v in record.__dict__.items():
            if k in _RESERVED_ATTRS:
                continue
            try:
                json.dumps({k: v})
                payload[k] = v
            except (TypeError, ValueError):
                payload[k] = str(v)
        return json.dumps(payload, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Human-readable console formatter with optional session/request ids."""

    def format(self, record: logging.LogRecord) -> str:
        parts = []
        sid = getattr(record, "session_id", None)
        rid = getattr(record, "request_id", None)
        if sid:
            parts.append(f"session={sid}")
        if rid:
            parts.append(f"req={rid}")
        record.context_part = f" [{' '.join(parts)}]" if parts else ""
        return super().format(record)


def _default_log_dir() -> Path:
    """Default log directory: <project>/logs"""
    return Path(os.getenv("LOG_DIR", Path(__file__).resolve().parents[2] / "logs"))


def init_logging(
    *,
    level: Optional[int] = None,
    log_dir: Optional[Path] = None,
    filename: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    file_logging: Optional[bool] = None,
) -> None:
    """
    Initialize the root logger. Safe to call multiple times.

    Args:
        level: logging level (defaults to env LOG_LEVEL or INFO)
        log_dir: directory to write rotated log file
        filename: file name for logs (defaults to chat_engine.log)
        max_bytes: max file size before rotation (default 10MB)
        backup_count: number of backup files to keep
        file_logging: disable the JSON file handler (defaults to env LOG_TO_FILE)
    """
    root = logging.getLogger()

    # Remove existing handlers to avoid duplicates
    for h in list(root.handlers):
        root.removeHandler(h)

    env_level = os.getenv("LOG_LEVEL", "INFO").upper()
    chosen_level = level if level is not None else getattr(logging, env_level, logging.INFO)
    root.setLevel(chosen_level)

    context_filter = ContextFilter()

    # Console handler (human readable)
    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(chosen_level)
    ch.setFormatter(ConsoleFormatter(
        "%(asctime)s %(levelname)-8s [%(name)s] %(message)s%(context_part)s",
        "%Y-%m-%d %H:%M:%S"
    ))
    ch.addFilter(context_filter)
    root.addHandler(ch)

    if file_logging is None:
        file_logging = os.getenv("LOG_TO_FILE", "true").lower() not in ("false", "0", "no")
    if not file_logging:
        return

    # File handler (JSON, with rotation)
    log_dir = Path(log_dir) if log_dir is not None else _default_log_dir()
    filename = filename or os.getenv("LOG_FILE", "chat_engine.log")

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            str(log_dir / filename),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8"
        )
        fh.setLevel(chosen_level)
        fh.setFormatter(JsonFormatter())
        fh.addFilter(context_filter)
        root.addHandler(fh)
    except OSError:
        root.warning("Failed to initialize file handler; continuing with console only", exc_info=True)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Return a configured logger with the given name.
    Automatically initializes logging if not already done.
    """
    if not logging.getLogger().handlers:
        init_logging()
    return logging.getLogger(name)
