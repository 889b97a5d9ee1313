"""
Structured Logger
=================

Structured JSON logging with delivery context injection.

Design:
  - JSON-structured output for machine parsing
  - Human-readable fallback for development
  - Automatic context injection (request_id, action, attempt) from
    context variables, so every line logged while a request executes is
    attributable to it
  - Performance-safe (level check before building records)

Architecture:
  - This is the lowest-level telemetry primitive
  - All other layers import from here
  - Stdlib ``logging`` only
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import sys
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

# ── Context Variables ──────────────────────────────────────────────

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)
_action: ContextVar[str | None] = ContextVar("action", default=None)
_attempt: ContextVar[int | None] = ContextVar("attempt", default=None)

@contextmanager
def request_context(*, request_id: str, action: str, attempt: int) -> Iterator[None]:
    """Scope log context to one execution attempt."""
    tokens = (
        _request_id.set(request_id),
        _action.set(action),
        _attempt.set(attempt),
    )
    try:
        yield
    finally:
        _attempt.reset(tokens[2])
        _action.reset(tokens[1])
        _request_id.reset(tokens[0])

# ── Structured Formatter ──────────────────────────────────────────

_RESERVED = frozenset({
    "name", "msg", "args", "created", "relativeCreated",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "pathname", "filename", "module", "levelno", "levelname",
    "thread", "threadName", "process", "processName", "msecs",
    "taskName", "message",
})
_JSON_SAFE = (str, int, float, bool, type(None))

class StructuredFormatter(logging.Formatter):
    """JSON-structured log formatter with automatic context injection."""

    def __init__(self, *, json_output: bool = True, include_traceback: bool = True):
        super().__init__()
        self._json = json_output
        self._include_tb = include_traceback
        self._pid = os.getpid()

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
            "pid": self._pid,
        }

        ctx_fields = {
            "request_id": _request_id.get(None),
            "action": _action.get(None),
            "attempt": _attempt.get(None),
        }
        context = {k: v for k, v in ctx_fields.items() if v is not None}
        if context:
            entry["context"] = context

        extras: dict[str, Any] = {}
        for key, val in record.__dict__.items():
            if key.startswith("_") or key in _RESERVED:
                continue
            extras[key] = val if isinstance(val, _JSON_SAFE) else str(val)
        if extras:
            entry["data"] = extras

        if record.exc_info and self._include_tb:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb)
                if exc_tb
                else None,
            }

        if self._json:
            return json.dumps(entry, default=str, ensure_ascii=False)

        # Human-readable fallback
        req_id = (context.get("request_id") or "-")[-8:]
        fields = " ".join(f"{k}={v}" for k, v in extras.items())
        line = (
            f"{entry['timestamp']} | {entry['level']:8s} | {req_id:8s} | "
            f"{entry['logger']}:{entry['line']} | {entry['event']}"
        )
        if fields:
            line = f"{line} | {fields}"
        if "exception" in entry and entry["exception"]["traceback"]:
            line = f"{line}\n{''.join(entry['exception']['traceback'])}"
        return line

# ── Structured Logger ─────────────────────────────────────────────

class StructuredLogger:
    """
    Wrapper around stdlib logger providing structured logging helpers.

    Usage:
        log = StructuredLogger("courier.infra.runtime.queue")
        log.info("request_enqueued", priority="high", depth=3)
        log.warning("queue_full", limit=100)
    """

    __slots__ = ("_logger", "_name")

    def __init__(self, name: str):
        self._name = name
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._name

    def _log(self, level: int, event: str, **kwargs: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(level, event, extra=kwargs, stacklevel=3)

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log(logging.INFO, event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, event, **kwargs)

    def error(self, event: str, exc: BaseException | None = None, **kwargs: Any) -> None:
        if exc:
            self._logger.error(event, extra=kwargs, exc_info=exc, stacklevel=2)
        else:
            self._log(logging.ERROR, event, **kwargs)

    def bind(self, **context: Any) -> BoundLogger:
        """Create a child logger with bound context fields."""
        return BoundLogger(self, context)

class BoundLogger:
    """Logger with pre-bound context fields."""

    __slots__ = ("_context", "_parent")

    def __init__(self, parent: StructuredLogger, context: dict[str, Any]):
        self._parent = parent
        self._context = context

    def _merged(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        return {**self._context, **kwargs}

    def debug(self, event: str, **kwargs: Any) -> None:
        self._parent.debug(event, **self._merged(kwargs))

    def info(self, event: str, **kwargs: Any) -> None:
        self._parent.info(event, **self._merged(kwargs))

    def warning(self, event: str, **kwargs: Any) -> None:
        self._parent.warning(event, **self._merged(kwargs))

    def error(self, event: str, exc: BaseException | None = None, **kwargs: Any) -> None:
        self._parent.error(event, exc=exc, **self._merged(kwargs))

# ── Setup ──────────────────────────────────────────────────────────

_initialized = False

def setup_logging(
    *,
    level: str = "INFO",
    json_output: bool | None = None,
    log_dir: str | None = None,
    force: bool = False,
) -> None:
    """
    Initialize the logging system. Call once at application startup.

    Args:
        level: Root log level
        json_output: Force JSON output. Auto-detects if None (JSON outside development)
        log_dir: Directory for log files. None = stdout only.
        force: Reconfigure even if already initialized
    """
    global _initialized
    if _initialized and not force:
        return
    _initialized = True

    if json_output is None:
        json_output = os.getenv("COURIER_ENVIRONMENT", "development") != "development"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(StructuredFormatter(json_output=json_output))
    console.setLevel(logging.DEBUG)
    root.addHandler(console)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path / "courier.log",
            maxBytes=20 * 1024 * 1024,  # 20MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(StructuredFormatter(json_output=True))
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_path / "errors.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=3,
            encoding="utf-8",
        )
        error_handler.setFormatter(StructuredFormatter(json_output=True))
        error_handler.setLevel(logging.ERROR)
        root.addHandler(error_handler)

    for noisy in ("httpx", "httpcore", "asyncio", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)
