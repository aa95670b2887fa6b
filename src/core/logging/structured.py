"""Structured logging configuration.

Features:
- JSON formatted logs for aggregation
- Per-message correlation IDs
- Exchange/binding context on startup lines
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Context variables for per-message tracking
message_id_var: ContextVar[Optional[str]] = ContextVar("message_id", default=None)
exchange_var: ContextVar[Optional[str]] = ContextVar("exchange", default=None)

# Attributes passed via ``extra=`` that are promoted into the JSON document
_PROMOTED_FIELDS = (
    "stage",
    "role",
    "exchange",
    "queue",
    "vhost",
    "outcome",
    "error_code",
    "duration_ms",
)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        service_name: str = "typed-exchange",
        environment: str = "production",
        include_stack_trace: bool = True,
    ):
        super().__init__()
        self.service_name = service_name
        self.environment = environment
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
        }

        log_entry["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        if message_id := message_id_var.get():
            log_entry["message_id"] = message_id
        if exchange := exchange_var.get():
            log_entry.setdefault("exchange", exchange)

        for attr in _PROMOTED_FIELDS:
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        if record.exc_info and self.include_stack_trace:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stacktrace": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_entry, default=str)


def setup_structured_logging(
    service_name: str = "typed-exchange",
    environment: str = "production",
    level: int | str = logging.INFO,
    json_output: bool = True,
) -> None:
    """Configure structured logging for the service process."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if json_output:
        formatter: logging.Formatter = StructuredFormatter(
            service_name=service_name,
            environment=environment,
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)


def generate_message_id() -> str:
    return str(uuid.uuid4())


def set_message_context(message_id: Optional[str] = None) -> str:
    """Bind a message id to the current context; generates one when absent."""
    msg_id = message_id or generate_message_id()
    message_id_var.set(msg_id)
    return msg_id


def clear_message_context() -> None:
    message_id_var.set(None)
