"""
Shared logging configuration for the client sync layer.
"""

import sys
import structlog
import logging
import uuid
import time
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Context variables for correlation
session_id_var: ContextVar[Optional[str]] = ContextVar('session_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
locale_var: ContextVar[Optional[str]] = ContextVar('locale', default=None)


def configure_logging(service_name: str, log_level: str = "info", json_logs: bool = True) -> None:
    """Configure structured logging for the sync layer.

    Local runs pass ``json_logs=False`` to get the console renderer.
    """
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_component_context,
            add_correlation_context,
            add_timestamp,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_component_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add component context to log events."""
    # "cache.resource" -> component "cache"
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["component"] = logger_name.split(".")[0]

    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add session correlation context to log events."""
    session_id = session_id_var.get()
    if session_id:
        event_dict["session_id"] = session_id

    user_id = user_id_var.get()
    if user_id:
        event_dict["user_id"] = user_id

    locale = locale_var.get()
    if locale:
        event_dict["locale"] = locale

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def set_session_context(
    session_id: Optional[str] = None,
    user_id: Optional[str] = None,
    locale: Optional[str] = None
) -> str:
    """Set session context in logging and return the session id."""
    if session_id is None:
        session_id = str(uuid.uuid4())
    session_id_var.set(session_id)
    if user_id:
        user_id_var.set(user_id)
    if locale:
        locale_var.set(locale)
    return session_id


def set_locale_context(locale: Optional[str]) -> None:
    """Track the active locale in log events."""
    locale_var.set(locale)


def clear_context():
    """Clear all context variables."""
    session_id_var.set(None)
    user_id_var.set(None)
    locale_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
