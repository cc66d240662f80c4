"""
Structured logging configuration.

structlog renders JSON in production and a console format during
development. Request scoped values (correlation id, actor) are carried in
structlog's contextvars so they follow work into worker threads.
"""
from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from structlog.types import EventDict


def add_timestamp(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add ISO-8601 timestamp to log entry."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def add_service_context(service_name: str, environment: str):
    def processor(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service_name)
        event_dict.setdefault("environment", environment)
        event_dict["pid"] = os.getpid()
        return event_dict

    return processor


def drop_null_values(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    return {k: v for k, v in event_dict.items() if v is not None}


def setup_structured_logging(
    service_name: str = "asset-vcs",
    environment: str = "development",
    log_level: str = "INFO",
) -> None:
    """
    Configure structlog and the standard library root logger.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        add_timestamp,
        add_service_context(service_name, environment),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        drop_null_values,
    ]
    if environment == "production":
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(message)s",
        handlers=[logging.StreamHandler()],
    )


def bind_request_context(**kwargs: Any) -> None:
    """Bind request-specific context variables."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
