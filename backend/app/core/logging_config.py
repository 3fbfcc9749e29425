"""
Structured logging configuration.

Provides:
    • JSON-formatted logs for production (machine-parseable)
    • Pretty console logs for development (human-readable)
    • Request-scoped context (request_id, user_id, alert_id, ...)
    • Phone-number masking for SMS recipients

Context flows with the asyncio context: a dispatch task spawned after
`bind_context(alert_id=...)` keeps the request id and alert id of the
request that created it, so background channel logs can be correlated
with the originating POST.

Usage:
    from backend.app.core.logging_config import bind_context, setup_logging

    setup_logging()
    bind_context(alert_id=alert.id)
    logger.info("Alert persisted", extra={"alert_id": alert.id})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import settings

# ── Context variable for request-scoped data ──
# Never mutated in place; every write sets a fresh dict.
_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

# Structured fields copied from `extra=` onto JSON log lines
_EXTRA_FIELDS = (
    "alert_id", "user_id", "channel", "recipient_count", "message_sid",
    "sms_status", "duration_ms", "status_code", "endpoint",
)


def set_request_context(**kwargs: Any) -> Token:
    """Replace the log context; returns a token for reset_request_context."""
    return _request_context.set({k: v for k, v in kwargs.items() if v is not None})


def reset_request_context(token: Token) -> None:
    _request_context.reset(token)


def bind_context(**kwargs: Any) -> None:
    """Add fields to the current context (inherited by tasks spawned later)."""
    merged = dict(_request_context.get())
    merged.update({k: v for k, v in kwargs.items() if v is not None})
    _request_context.set(merged)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def mask_phone(number: Optional[str]) -> str:
    """
    Keep the country prefix and last three digits of a phone number.

    >>> mask_phone("+15550100123")
    '+155*****123'
    """
    if not number:
        return "-"
    if len(number) <= 6:
        return "*" * len(number)
    return number[:4] + "*" * (len(number) - 7) + number[-3:]


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """One JSON object per line; context fields are flattened in."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(get_request_context())

        for key in _EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
                "where": f"{record.module}.{record.funcName}:{record.lineno}",
            }

        return json.dumps(log_entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """Coloured console lines tagged with the request id and alert id."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    @staticmethod
    def context_tag(ctx: Dict[str, Any]) -> str:
        parts = []
        if ctx.get("request_id"):
            parts.append(str(ctx["request_id"])[:8])
        if ctx.get("alert_id"):
            parts.append(str(ctx["alert_id"]))
        return f" [{' '.join(parts)}]" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record, "%H:%M:%S")
        level = f"{record.levelname:8s}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        formatted = (
            f"{ts} {level}{self.context_tag(get_request_context())} "
            f"{record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            formatted += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return formatted


# ── Setup ──

def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Configure the root logger.

    Defaults come from settings: LOG_LEVEL, and JSON output in production.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    use_json = settings.is_production if json_output is None else json_output
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else PrettyFormatter(sys.stdout.isatty()))
    root.addHandler(handler)

    # uvicorn access lines duplicate the request middleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    for noisy in ("httpx", "httpcore", "twilio.http_client"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
