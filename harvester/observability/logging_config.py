"""
Structured logging configuration for the cookie harvester.

Uses Python's built-in logging with a JSONFormatter for production and a
colored DevFormatter for local work, so plain logging.getLogger() calls
keep working everywhere.

Environments:
- production: JSON to stdout (machine-readable)
- development/staging/test: Colored text to stderr (human-readable)

Usage:
    from harvester.observability.logging_config import configure_logging

    configure_logging()  # auto-detects from HARVESTER_ENV

    logger = logging.getLogger(__name__)
    logger.info("visit_completed", extra={
        "site_key": "animepahe",
        "cookie_count": 4,
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

# ─── Run Context ──────────────────────────────────────────────────────

# Each asyncio task copies the context it was created in, so concurrent
# cycles and ad-hoc jobs keep their own run_id.
_run_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "harvester_run_id", default=None
)


def set_run_id(run_id: str) -> contextvars.Token:
    """
    Set the current collection run_id.

    Called by the scheduler when a cycle starts. Tasks spawned afterwards
    inherit it, so every visit log line of the cycle carries the run_id.
    """
    return _run_id.set(run_id)


def get_run_id() -> Optional[str]:
    """Get the current run_id, or None outside a collection run."""
    return _run_id.get()


def reset_run_id(token: contextvars.Token) -> None:
    """Restore the run_id that was active before set_run_id()."""
    _run_id.reset(token)


def clear_run_id() -> None:
    """Clear the run_id in the current context."""
    _run_id.set(None)


# ─── Context Filter ───────────────────────────────────────────────────


class ContextFilter(logging.Filter):
    """Injects the current run_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        run_id = get_run_id()
        if run_id and not hasattr(record, "run_id"):
            record.run_id = run_id  # type: ignore[attr-defined]
        return True


# ─── Record Fields ────────────────────────────────────────────────────


# Collection fields promoted to the top level of every JSON line, in this
# order. Anything else passed via extra={} lands under "extra".
COLLECTION_FIELDS: tuple[str, ...] = (
    "run_id", "trigger", "site_key", "url", "cookie_count",
    "succeeded", "failed", "duration_ms", "error",
)

_LOGRECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def split_extras(record: logging.LogRecord) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Separate a record's extra={} values into (collection fields, the rest).

    Values that are None are omitted from both.
    """
    fields: dict[str, Any] = {}
    for key in COLLECTION_FIELDS:
        value = getattr(record, key, None)
        if value is not None:
            fields[key] = value

    other: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _LOGRECORD_ATTRS or key in fields or key.startswith("_"):
            continue
        if value is not None:
            other[key] = value
    return fields, other


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


# ─── JSON Formatter (Production) ──────────────────────────────────────


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line, keyed for collection events.

    Output format:
        {"timestamp": "...", "level": "INFO", "logger": "harvester.collection.scheduler",
         "event": "collection_cycle_completed", "run_id": "run-...",
         "trigger": "periodic", "succeeded": 2, "failed": 1, "duration_ms": 15234,
         "extra": {"targets": 3}}
    """

    def format(self, record: logging.LogRecord) -> str:
        fields, other = split_extras(record)
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        entry.update((key, _jsonable(value)) for key, value in fields.items())
        if other:
            entry["extra"] = {key: _jsonable(value) for key, value in other.items()}
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


# ─── Dev Formatter (Local Development) ────────────────────────────────


class DevFormatter(logging.Formatter):
    """
    Readable single-line output for a terminal.

    Format: HH:MM:SS LEVEL    logger  event  site_key=kwik cookie_count=4

    The run_id is shortened to its last 6 characters; other extra={}
    values are left out.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41m",
    }
    RESET = "\033[0m"
    DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, self.RESET)
        fields, _ = split_extras(record)

        run_id = fields.pop("run_id", None)
        prefix = f"{self.DIM}[{str(run_id)[-6:]}]{self.RESET} " if run_id else ""
        pairs = " ".join(f"{key}={value}" for key, value in fields.items())

        line = (
            f"{self.formatTime(record, '%H:%M:%S')} "
            f"{color}{record.levelname:<8}{self.RESET} "
            f"{prefix}{record.name}  {record.getMessage()}"
        )
        if pairs:
            line += f"  {pairs}"
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ─── Configuration ────────────────────────────────────────────────────


def configure_logging(
    env: Optional[str] = None,
    level: int = logging.INFO,
) -> None:
    """
    Configure the root logger based on environment.

    Args:
        env: Override environment. If None, reads from HARVESTER_ENV
             (defaults to "development").
        level: Log level (default: INFO).

    Behavior:
        - production → JSONFormatter to stdout
        - everything else → DevFormatter to stderr
    """
    env = env or os.environ.get("HARVESTER_ENV", "development").lower().strip()

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

    # Playwright's driver and asyncio are chatty at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("playwright").setLevel(logging.WARNING)
