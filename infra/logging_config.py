"""Centralized logging configuration.

Text logs for interactive use, JSON logs for the HTTP service and the worker.
``setup_logging`` only installs a handler when the root logger has none unless
an override is requested, so Flask or systemd wrappers keep their own setup.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from collections.abc import Mapping
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from infra.config import get_settings

# Per-request (or per-job) fields merged into every JSON record.
request_ctx: ContextVar[dict[str, Any] | None] = ContextVar("request_ctx", default=None)

_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename", "module",
        "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created", "msecs",
        "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
    }
)

_NOISY_LOGGERS = ("boto3", "botocore", "urllib3", "httpx", "httpcore", "s3transfer")


def set_request_context(**kwargs: Any) -> None:
    """Add fields to the context attached to subsequent log records."""
    current = dict(request_ctx.get() or {})
    current.update(kwargs)
    request_ctx.set(current)


def clear_request_context() -> None:
    """Reset the context (start of a request or a worker cycle)."""
    request_ctx.set({})


def get_request_context() -> dict[str, Any]:
    """Return a copy of the current context."""
    return dict(request_ctx.get() or {})


def _utc_iso8601() -> str:
    # 2026-01-24T18:03:12.123Z
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    """One JSON object per line; extras and request context become top-level keys."""

    def __init__(self, *, extra_fields: Mapping[str, Any] | None = None) -> None:
        super().__init__()
        self._extra_fields = dict(extra_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "timestamp": _utc_iso8601(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and key not in base:
                base[key] = value
        for key, value in self._extra_fields.items():
            base.setdefault(key, value)
        for key, value in (request_ctx.get() or {}).items():
            base.setdefault(key, value)
        if record.exc_info:
            base["exception"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-friendly logs with UTC timestamps."""

    converter = time.gmtime

    def __init__(self) -> None:
        super().__init__("%(asctime)sZ | %(levelname)s | %(name)s | %(message)s")


class StructuredLogger:
    """Event-name logger: ``log.info("catalog_upserted", families=32)``.

    Keyword fields travel as ``extra`` so ``JsonFormatter`` emits them as
    top-level keys; the text formatter prints the event name plus fields.
    """

    def __init__(self, name: str) -> None:
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event: str, *, exc_info: bool = False, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        suffix = " ".join(f"{k}={v}" for k, v in fields.items())
        message = f"{event} {suffix}" if suffix else event
        self._logger.log(level, message, extra={"event": event, **fields}, exc_info=exc_info)

    def debug(self, event: str, **fields: Any) -> None:
        self._log(logging.DEBUG, event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._log(logging.INFO, event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._log(logging.WARNING, event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self._log(logging.ERROR, event, **fields)

    def exception(self, event: str, **fields: Any) -> None:
        """Log at ERROR with the active exception's traceback."""
        self._log(logging.ERROR, event, exc_info=True, **fields)


def setup_logging(
    *,
    level: str | None = None,
    json_logs: bool | None = None,
    override_root_handlers: bool | None = None,
    extra_fields: Mapping[str, Any] | None = None,
) -> None:
    """Configure the root logger.

    Env vars (see ``infra.config``):
      - AWSAPP_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default INFO)
      - AWSAPP_LOG_JSON: 1/0 (default 0)
      - AWSAPP_LOG_OVERRIDE: 1/0 (default 0); 1 replaces existing root handlers
    """
    config = get_settings(reload=True).logging
    level_name = (level or config.level).upper()
    use_json = config.json_logs if json_logs is None else json_logs
    override = config.override_root_handlers if override_root_handlers is None else override_root_handlers

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter(extra_fields=extra_fields) if use_json else TextFormatter())

    if override:
        for existing in list(root.handlers):
            root.removeHandler(existing)
        root.addHandler(handler)
    elif not root.handlers:
        root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
