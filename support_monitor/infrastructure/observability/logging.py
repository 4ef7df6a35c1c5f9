"""
Structured logging setup for the support monitor.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_credentials,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


_REDACTED_KEYS = {"credentials", "data_value", "qr"}


def _redact_credentials(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Never let credential blobs or raw pairing codes reach the log stream."""
    for key in _REDACTED_KEYS & event_dict.keys():
        event_dict[key] = "[redacted]"
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def bind_session_context(session_id: str, instance_id: str | None = None) -> None:
    """Attach session identifiers to every log line emitted from the current task."""
    context = {"session_id": session_id}
    if instance_id:
        context["instance_id"] = instance_id
    structlog.contextvars.bind_contextvars(**context)


def log_session_transition(session_id: str, previous: str, current: str, **fields: Any) -> None:
    """Log a supervisor state change with consistent fields."""
    logger = get_logger("session.lifecycle")
    logger.info(
        "Session state changed",
        session_id=session_id,
        previous_state=previous,
        state=current,
        event_type="session_transition",
        **fields,
    )
