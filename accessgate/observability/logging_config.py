"""
Structured logging configuration for the access gate.

Uses Python's built-in logging with a JSONFormatter for production and
a colored DevFormatter for local work. All modules keep the plain
logging.getLogger(__name__) pattern and pass structured fields via
`extra={...}`.

Environments:
- production: JSON to stdout (machine-readable)
- development/staging/test: Colored text to stderr (human-readable)

Usage:
    from accessgate.observability.logging_config import configure_logging

    configure_logging()  # auto-detects from ACCESSGATE_ENV

    logger = logging.getLogger(__name__)
    logger.info("tenant_resolved", extra={
        "principal_id": "user-1",
        "tenant_id": "acme",
        "role": "cashier",
    })
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Optional

# ─── Session Context ──────────────────────────────────────────────────

# A ContextVar rather than a thread-local: many gate sessions share one
# event loop thread.
_session_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "accessgate_session_id", default=None
)


def set_session_id(session_id: str) -> None:
    """
    Set the current gate session id on the active context.

    Called by AccessGate when a session starts so every log record
    emitted on its behalf carries the session id.
    """
    _session_id.set(session_id)


def get_session_id() -> Optional[str]:
    """Get the current session id, or None outside a gate session."""
    return _session_id.get()


def clear_session_id() -> None:
    """Clear the session id from the active context."""
    _session_id.set(None)


# ─── Context Filter ───────────────────────────────────────────────────


class ContextFilter(logging.Filter):
    """Injects session_id into every log record from the active context."""

    def filter(self, record: logging.LogRecord) -> bool:
        session_id = get_session_id()
        if session_id and not hasattr(record, "session_id"):
            record.session_id = session_id  # type: ignore[attr-defined]
        return True


# ─── JSON Formatter (Production) ──────────────────────────────────────


# Fields we want to extract from the record's extra dict
_STANDARD_FIELDS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message",
    "taskName",
})


class JSONFormatter(logging.Formatter):
    """
    Outputs log records as single-line JSON objects.

    Includes standard fields (timestamp, level, logger, message) plus
    any extra fields passed via `logger.info("msg", extra={...})`.

    Output format:
        {"timestamp": "...", "level": "INFO", "logger": "accessgate.tenancy.resolver",
         "message": "tenant_resolved", "tenant_id": "acme", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "session_id"):
            entry["session_id"] = record.session_id

        for key, value in record.__dict__.items():
            if key in _STANDARD_FIELDS or key.startswith("_"):
                continue
            if key == "session_id":
                continue
            try:
                json.dumps(value)
                entry[key] = value
            except (TypeError, ValueError):
                entry[key] = str(value)

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


# ─── Dev Formatter (Local Development) ────────────────────────────────


class DevFormatter(logging.Formatter):
    """
    Colorful, human-readable logs for local development.

    Format: [HH:MM:SS] LEVEL logger: message [key=value key=value]
    """

    COLORS = {
        logging.DEBUG: "\033[36m",     # Cyan
        logging.INFO: "\033[32m",      # Green
        logging.WARNING: "\033[33m",   # Yellow
        logging.ERROR: "\033[31m",     # Red
        logging.CRITICAL: "\033[41m",  # Red background
    }
    RESET = "\033[0m"

    # Known extra fields to display inline
    _EXTRA_KEYS = (
        "session_id", "principal_id", "tenant_id", "role",
        "module_code", "action", "reason", "outcome", "elapsed_ms",
    )

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno, self.RESET)
        timestamp = self.formatTime(record, "%H:%M:%S")

        extras = []
        for key in self._EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                extras.append(f"{key}={value}")

        extra_str = f" [{' '.join(extras)}]" if extras else ""

        formatted = (
            f"{self.RESET}[{timestamp}] "
            f"{color}{record.levelname:<8}{self.RESET} "
            f"{record.name}: {record.getMessage()}{extra_str}"
        )

        if record.exc_info and record.exc_info[1]:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


# ─── Configuration ────────────────────────────────────────────────────


def configure_logging(
    env: Optional[str] = None,
    level: int = logging.INFO,
) -> None:
    """
    Configure the root logger based on environment.

    Args:
        env: Override environment. If None, reads from ACCESSGATE_ENV
             (defaults to "development").
        level: Log level (default: INFO).

    Behavior:
        - production → JSONFormatter to stdout
        - everything else → DevFormatter to stderr
    """
    env = env or os.environ.get("ACCESSGATE_ENV", "development").lower().strip()

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
    logging.getLogger("supabase").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)
