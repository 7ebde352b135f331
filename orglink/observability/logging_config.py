"""
Structured logging configuration for orglink.

Modules log with plain `logging.getLogger(__name__)` and snake_case
event names, passing identifiers through `extra={...}`. How records
are rendered is decided once, here, by ORGLINK_ENV: production writes
JSON lines to stdout, anything else writes colored text to stderr.
Every record handled inside an API request carries its correlation id.

Usage:
    from orglink.observability.logging_config import configure_logging

    configure_logging()  # auto-detects from ORGLINK_ENV

    logger = logging.getLogger(__name__)
    logger.info("link_request_created", extra={
        "request_id": "req-123",
        "enterprise_id": "ent-1",
        "workspace_id": "ws-1",
    })
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

# ─── Request Context ──────────────────────────────────────────────────

# FastAPI runs sync handlers in a threadpool and copies the request
# context into the worker, so a ContextVar follows the request there.
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def set_correlation_id(correlation_id: str) -> None:
    """
    Set the correlation id for the current context.

    The API middleware calls this at the start of every request so all
    log records emitted while handling it carry the same id.
    """
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation id, or None outside a request."""
    return _correlation_id.get()


def clear_correlation_id() -> None:
    """Clear the correlation id from the current context."""
    _correlation_id.set(None)


# ─── Context Filter ───────────────────────────────────────────────────


class ContextFilter(logging.Filter):
    """Injects the current correlation_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        correlation_id = get_correlation_id()
        if correlation_id:
            record.correlation_id = correlation_id  # type: ignore[attr-defined]
        return True


# ─── Formatters ───────────────────────────────────────────────────────


# Attributes every LogRecord carries; anything else arrived via extra={...}
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Fields passed through `extra={...}`, in the order they were set."""
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line, for log shippers.

        {"timestamp": "2026-03-01T12:00:00.000+00:00", "level": "INFO",
         "logger": "orglink.enterprise.linking", "message": "link_request_approved",
         "service": "orglink", "correlation_id": "...", "request_id": "...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "orglink",
        }
        entry.update((key, _jsonable(value)) for key, value in record_extras(record).items())
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class DevFormatter(logging.Formatter):
    """
    Colored single-line output for a terminal.

        12:00:00.123 INFO     orglink.enterprise.quota | quota_limit_reached  resource=LINKED_ORGS limit=3

    Only the identifiers worth scanning for are inlined.
    """

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[41m",
    }
    DIM = "\033[2m"
    RESET = "\033[0m"

    INLINE_KEYS = frozenset({
        "correlation_id", "enterprise_id", "workspace_id", "organization_id",
        "request_id", "resource", "limit", "current", "scope",
    })

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        clock = f"{self.formatTime(record, '%H:%M:%S')}.{int(record.msecs):03d}"
        pairs = " ".join(
            f"{key}={value}"
            for key, value in record_extras(record).items()
            if key in self.INLINE_KEYS and value is not None
        )
        line = (
            f"{self.DIM}{clock}{self.RESET} {color}{record.levelname:<8}{self.RESET} "
            f"{record.name} | {record.getMessage()}"
        )
        if pairs:
            line += f"  {self.DIM}{pairs}{self.RESET}"
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ─── Configuration ────────────────────────────────────────────────────


def configure_logging(
    env: Optional[str] = None,
    level: int | str = logging.INFO,
) -> None:
    """
    Configure the root logger based on environment.

    Args:
        env: Override environment. If None, reads from ORGLINK_ENV
             (defaults to "development").
        level: Log level, as an int or a name such as "DEBUG".

    Behavior:
        - production → JSONFormatter to stdout
        - everything else → DevFormatter to stderr
    """
    env = (env or os.environ.get("ORGLINK_ENV", "development")).lower().strip()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if env == "production":
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(DevFormatter())

    handler.addFilter(ContextFilter())
    root_logger.addHandler(handler)

    # Silence noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
