"""
Structured logging for the resilience layer.

structlog loggers (throttling, wrapper, health) and stdlib loggers (circuit
breaker transitions, uvicorn, redis) go through the same renderer: JSON lines
in production, console output elsewhere.

Usage:
    from app.core.logging_config import get_logger

    logger = get_logger(__name__)
    logger.warning("Request throttled", dimension="ip", key="throttle:ip:1.2.3.4")

A throttled request in production renders as:
    {"event": "Request throttled", "dimension": "ip", "key": "throttle:ip:1.2.3.4",
     "retry_after": 42, "request_id": "req_3f1c...", "level": "warning", ...}
"""

import logging
import sys
from typing import Any

import structlog

from app.core.config import settings

IS_PRODUCTION = settings.ENVIRONMENT == "production"
IS_TEST = "pytest" in sys.modules

# Libraries that log every connection or request at INFO
QUIET_LOGGERS = ("asyncio", "redis", "httpx", "httpcore", "uvicorn.access")


def _renderer() -> Any:
    if IS_PRODUCTION:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=not IS_TEST)


def configure_logging(level: str = settings.LOG_LEVEL) -> None:
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    final_processors: list[Any] = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if IS_PRODUCTION:
        final_processors.append(structlog.processors.format_exc_info)
    final_processors.append(_renderer())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=final_processors,
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


configure_logging()
