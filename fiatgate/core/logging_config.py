"""
Structured logging for the settlement gate, via structlog.

JSON lines in production, a console renderer in development. Enum fields
such as settlement statuses and circuit states render as their stored
values, so log search matches what the database and the admin API show.

Usage:
    from fiatgate.core.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("Created pending settlement", settlement_id=12, event_id="pi_3Nx", delay_days=30)

Production output:
    {"settlement_id": 12, "event_id": "pi_3Nx", "delay_days": 30, "request_id": "req_5f1c...",
     "event": "Created pending settlement", "level": "info", "timestamp": "2026-03-01T12:00:00Z"}
"""

import logging
import os
import sys
from enum import Enum
from typing import Any

import structlog

IS_PRODUCTION = os.getenv("ENVIRONMENT") == "production"
IS_TEST = "pytest" in sys.modules
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def render_enums(logger: Any, method_name: str, event_dict: dict) -> dict:
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


def configure_logging() -> None:
    level = logging.getLevelName(LOG_LEVEL)
    if not isinstance(level, int):
        level = logging.INFO

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        render_enums,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if IS_PRODUCTION:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=not IS_TEST),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # uvicorn, apscheduler and httpx log through stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


configure_logging()
