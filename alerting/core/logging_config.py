"""
Structured logging configuration.

Production emits one JSON object per line; development gets a coloured
single-line format. Delivery logs carry their routing fields as
``extra=`` attributes, which both formatters surface:

    logger.info("Delivered", extra={"alert_id": a.id, "user_id": u.id,
                                    "channel": "email", "attempt": 2})

    JSON:    {"message": "Delivered", "alert_id": "...", "channel": "email", ...}
    Pretty:  12:00:01 INFO     [tick 7] alerting.alerts.delivery: Delivered  (alert=… user=… via email)

Scope (an HTTP request id or a scheduler tick number) lives in a
ContextVar set by the request middleware and by ``ReminderScheduler``.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from alerting.core.config import settings

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

# Delivery routing attributes passed via ``extra=``
_DELIVERY_FIELDS = ("alert_id", "user_id", "channel", "attempt", "delivery_id")
# Scheduler and HTTP measurements passed via ``extra=``
_OPERATIONAL_FIELDS = ("tick", "recipient_count", "duration_ms", "status_code")


def set_request_context(**kwargs: Any) -> None:
    """Replace the scope context; call with no arguments to clear it."""
    _log_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _log_context.get()


def _scope_tag(ctx: Dict[str, Any]) -> str:
    if ctx.get("request_id"):
        return f"[{ctx['request_id'][:8]}]"
    if ctx.get("tick") is not None:
        return f"[tick {ctx['tick']}]"
    return ""


class JSONFormatter(logging.Formatter):
    """One JSON object per record, delivery fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        ctx = get_request_context()
        if ctx:
            entry["context"] = ctx
        for key in _DELIVERY_FIELDS + _OPERATIONAL_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Coloured console output for local development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        scope = _scope_tag(get_request_context())
        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{' ' + scope if scope else ''} {record.name}: {record.getMessage()}"
        )

        route = []
        if getattr(record, "alert_id", None):
            route.append(f"alert={record.alert_id}")
        if getattr(record, "user_id", None):
            route.append(f"user={record.user_id}")
        if getattr(record, "channel", None):
            route.append(f"via {record.channel}")
        if route:
            line += f"  ({' '.join(route)})"

        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging(level: Optional[str] = None) -> None:
    """Install the environment's formatter on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
