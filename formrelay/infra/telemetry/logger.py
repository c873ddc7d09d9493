"""
Structured Logger — Dispatch-Aware Logging
============================================

Event-style logging on top of stdlib ``logging``. Every record carries the
dispatch context of the task that emitted it (submission, customer,
endpoint, work item), and credential-looking fields are masked before
anything reaches a handler.

Design:
  - One JSON object per line outside development, a compact line in development
  - Dispatch context lives in a ContextVar, so each delivery task sees its own
  - ``redact`` is also used by the mock server and the enrichment prompt
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import sys
import traceback
from collections.abc import Mapping
from contextvars import ContextVar
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any

# ── Dispatch Context ───────────────────────────────────────────────

CONTEXT_FIELDS = ("submission_id", "customer_id", "endpoint", "item_id")

_dispatch_context: ContextVar[Mapping[str, str]] = ContextVar(
    "dispatch_context", default=MappingProxyType({})
)


def set_dispatch_context(**fields: str | None) -> None:
    """Merge non-None fields into the current task's dispatch context."""
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise TypeError(f"Unknown dispatch context fields: {sorted(unknown)}")
    merged = dict(_dispatch_context.get())
    merged.update({k: v for k, v in fields.items() if v is not None})
    _dispatch_context.set(MappingProxyType(merged))


def clear_dispatch_context() -> None:
    _dispatch_context.set(MappingProxyType({}))


def current_dispatch_context() -> dict[str, str]:
    ctx = _dispatch_context.get()
    return {name: ctx[name] for name in CONTEXT_FIELDS if name in ctx}


# ── Redaction ──────────────────────────────────────────────────────

REDACTED = "***"

_SECRET_KEYS = frozenset({
    "secret",
    "api_key",
    "apikey",
    "authorization",
    "token",
    "password",
    "webhookurl",
    "webhook_url",
    "x-webhook-secret",
})
_SECRET_SUFFIXES = ("_secret", "_token", "_key")


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return lowered in _SECRET_KEYS or lowered.endswith(_SECRET_SUFFIXES)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with secret-looking mapping keys masked."""
    if isinstance(value, Mapping):
        return {
            k: REDACTED if isinstance(k, str) and is_secret_key(k) else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


# ── Formatter ──────────────────────────────────────────────────────

# Attributes every LogRecord has; anything else arrived through ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}
_SCALARS = (str, int, float, bool, type(None))


def _record_data(record: logging.LogRecord) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for key, value in vars(record).items():
        if key in _RECORD_ATTRS or key.startswith("_"):
            continue
        if is_secret_key(key):
            data[key] = REDACTED
        elif isinstance(value, _SCALARS):
            data[key] = value
        elif isinstance(value, (Mapping, list, tuple)):
            data[key] = redact(value)
        else:
            data[key] = str(value)
    return data


class StructuredFormatter(logging.Formatter):
    """Renders records as JSON (or a one-line human form) with dispatch context."""

    def __init__(self, *, json_output: bool = True, include_traceback: bool = True):
        super().__init__()
        self._json = json_output
        self._include_tb = include_traceback

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": record.lineno,
            "pid": os.getpid(),
            "context": current_dispatch_context(),
        }
        data = _record_data(record)
        if data:
            entry["data"] = data
        if record.exc_info and self._include_tb:
            exc_type, exc, tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc) if exc else None,
                "traceback": traceback.format_exception(exc_type, exc, tb) if tb else None,
            }

        if self._json:
            return json.dumps(entry, default=str, ensure_ascii=False)
        return self._human(entry)

    @staticmethod
    def _human(entry: dict[str, Any]) -> str:
        ctx = entry["context"]
        where = "/".join(ctx[k] for k in ("customer_id", "endpoint") if k in ctx) or "-"
        line = f"{entry['timestamp']} | {entry['level']:<8} | {where} | {entry['logger']} | {entry['message']}"
        if "data" in entry:
            line += " " + json.dumps(entry["data"], default=str)
        if "exception" in entry and entry["exception"]["traceback"]:
            line += "\n" + "".join(entry["exception"]["traceback"]).rstrip()
        return line


# ── Logger ─────────────────────────────────────────────────────────


class StructuredLogger:
    """
    Event-name logging with keyword fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("dispatch_succeeded", http_status=200, latency_ms=41.5)
        logger.error("request_failed", exc=exc, path="/api/v1/submissions")
    """

    __slots__ = ("_logger",)

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event: str, exc: BaseException | None, fields: dict[str, Any]) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, event, extra=fields, exc_info=exc, stacklevel=3)

    def debug(self, event: str, **fields: Any) -> None:
        self._log(logging.DEBUG, event, None, fields)

    def info(self, event: str, **fields: Any) -> None:
        self._log(logging.INFO, event, None, fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._log(logging.WARNING, event, None, fields)

    def error(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.ERROR, event, exc, fields)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)


# ── Setup ──────────────────────────────────────────────────────────

_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "uvicorn.access", "uvicorn.error")

# (file name, minimum level, max bytes, backups)
_LOG_FILES = (
    ("formrelay.log", logging.DEBUG, 50 * 1024 * 1024, 5),
    ("dispatch-errors.log", logging.ERROR, 20 * 1024 * 1024, 3),
)

_configured = False


def setup_logging(
    *,
    level: str = "INFO",
    json_output: bool | None = None,
    log_dir: str | None = None,
) -> None:
    """
    Install the structured handlers on the root logger. Later calls are no-ops.

    Args:
        level: Root log level name
        json_output: JSON lines on stdout; None picks JSON unless ENVIRONMENT is development
        log_dir: Also write rotating JSON files here (all records, and errors only)
    """
    global _configured
    if _configured:
        return
    _configured = True

    if json_output is None:
        json_output = os.getenv("ENVIRONMENT", "development") != "development"

    root = logging.getLogger()
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(StructuredFormatter(json_output=json_output))
    root.addHandler(console)

    if log_dir:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        for filename, min_level, max_bytes, backups in _LOG_FILES:
            handler = logging.handlers.RotatingFileHandler(
                directory / filename, maxBytes=max_bytes, backupCount=backups, encoding="utf-8"
            )
            handler.setFormatter(StructuredFormatter(json_output=True))
            handler.setLevel(min_level)
            root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
