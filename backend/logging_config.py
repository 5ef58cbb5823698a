"""
CTIS Deadline Engine - Logging

JSON lines in production, plain text in development. Every record is tagged
with the request id and the internal service that made the call, so a
deadline calculation or configuration change can be traced back to its
caller. Audit appends carry their entity, action and actor as structured
fields under "audit".

Request context lives in context variables: concurrent requests handled on
the same event loop never see each other's ids.
"""

import logging
import json
import sys
import os
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import traceback


SERVICE_NAME = "ctis-deadlines"

_request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_calling_service_var: ContextVar[Optional[str]] = ContextVar("calling_service", default=None)

# LogRecord attributes that are not copied into "extra"
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName", "request_id", "calling_service", "audit",
})

_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite")


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, service_name: str = SERVICE_NAME):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "request_id": getattr(record, "request_id", None),
            "calling_service": getattr(record, "calling_service", None),
        }

        audit = getattr(record, "audit", None)
        if audit:
            log_data["audit"] = audit

        if record.levelno >= logging.WARNING:
            log_data["location"] = f"{record.pathname}:{record.lineno} ({record.funcName})"

        if record.exc_info and record.exc_info[0]:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class RequestContextFilter(logging.Filter):
    """Copies the current request id and calling service onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id_var.get()
        record.calling_service = _calling_service_var.get()
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = SERVICE_NAME
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines (production) instead of plain text
        service_name: Service name stamped on JSON records

    Returns:
        The root logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
        ))
    handler.addFilter(RequestContextFilter())
    root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name."""
    return logging.getLogger(name)


def get_request_id() -> Optional[str]:
    return _request_id_var.get()


def set_request_context(
    request_id: Optional[str] = None,
    service_name: Optional[str] = None,
):
    """Tag subsequent log records in this context; only supplied values change."""
    if request_id is not None:
        _request_id_var.set(request_id)
    if service_name is not None:
        _calling_service_var.set(service_name)


def clear_request_context():
    """Clear request context."""
    _request_id_var.set(None)
    _calling_service_var.set(None)
