"""structlog setup plus helpers for request-scoped log context."""

import logging
import sys
from typing import Any

import structlog

from promptguess.config import Settings

# Libraries that log every query or connection at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "uvicorn.access")


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "promptguess",
) -> None:
    """JSON lines in production, coloured console output when ``json_format`` is off.

    Every entry carries ``service``; request middleware adds ``request_id``,
    ``method`` and ``path``, and authentication adds ``user_id``.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    renderer: list[structlog.types.Processor] = (
        [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        if json_format
        else [structlog.dev.ConsoleRenderer(colors=True)]
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            *renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name)


def configure_from_settings(settings: Settings) -> None:
    configure_logging(settings.log_level, settings.log_json, settings.service_name)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_request_context(request_id: str, user_id: str | None = None, **kwargs: Any) -> None:
    context: dict[str, Any] = {"request_id": request_id, **kwargs}
    if user_id:
        context["user_id"] = user_id
    structlog.contextvars.bind_contextvars(**context)


def bind_user_context(user_id: str) -> None:
    structlog.contextvars.bind_contextvars(user_id=user_id)


def clear_request_context() -> None:
    """Drop request-scoped fields, keeping the service name."""
    structlog.contextvars.unbind_contextvars("request_id", "user_id", "method", "path")
