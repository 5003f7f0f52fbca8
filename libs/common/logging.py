"""Structured logging for the search service.

Log lines are rendered as JSON in deployed environments and with the console
renderer locally. Every line carries the service name; request handlers bind
a request id so the log entries of one search can be correlated.

Typical usage
- Call ``configure_logging(service_name, log_level, log_format)`` at startup
- Acquire loggers via ``structlog.get_logger(name)``
"""

import logging
import sys
from typing import Any, MutableMapping

import structlog
from structlog.stdlib import LoggerFactory, add_logger_name

# Queries may be up to 1000 characters; log lines keep a prefix.
MAX_LOGGED_QUERY_CHARS = 200


def truncate_query(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Shorten ``query``/``relaxed_query`` values to ``MAX_LOGGED_QUERY_CHARS``."""
    for key in ("query", "relaxed_query"):
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > MAX_LOGGED_QUERY_CHARS:
            event_dict[key] = value[:MAX_LOGGED_QUERY_CHARS] + "..."
    return event_dict


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "json",
    **context: Any
) -> None:
    """Configure structlog on top of the standard library logger.

    Parameters
    - service_name: bound to every log line as ``service``
    - log_level: ``DEBUG``, ``INFO``, ``WARNING`` or ``ERROR`` (case-insensitive)
    - log_format: ``json``, or anything else for the console renderer
    - context: extra key/values bound to every log line (e.g. ``env``)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_logger_name,
        truncate_query,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name, **context)


def bind_request_context(request_id: str) -> None:
    """Bind a request id to every log line until ``clear_request_context``."""
    structlog.contextvars.bind_contextvars(request_id=request_id)


def clear_request_context() -> None:
    structlog.contextvars.unbind_contextvars("request_id")


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def log_performance(operation: str, duration_ms: float, **kwargs: Any) -> None:
    """Log the duration of a unit of work under the ``performance`` logger."""
    get_logger("performance").info(
        f"Operation {operation} completed",
        operation=operation,
        duration_ms=duration_ms,
        **kwargs
    )
