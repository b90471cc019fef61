"""
Error taxonomy and unified error handling.

Provides:
- Typed errors for throttling and circuit breakers
- FastAPI exception handlers producing the {code, msg, data} envelope
- Exception capture with structured logging and optional Sentry

Usage:
    # Install JSON handlers on the app
    register_exception_handlers(app)

    # Capture an exception
    capture_exception(exc, context={"breaker": "payments"})

    # Capture a message (non-exception event)
    capture_message("Circuit breaker isolated", level="warning")
"""

import math
from typing import Optional, Any, Dict
from datetime import datetime, timezone

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.core.context import get_request_id, get_user_id, get_context_dict

logger = structlog.get_logger(__name__)

__all__ = [
    "ThrottleException",
    "CircuitBreakerError",
    "CircuitBreakerOpenError",
    "CircuitBreakerIsolatedError",
    "CircuitBreakerNotFoundError",
    "register_exception_handlers",
    "init_sentry",
    "capture_exception",
    "capture_message",
]

DEFAULT_THROTTLE_MESSAGE = "Too many requests, please try again later"

class ThrottleException(HTTPException):
    """
    Raised when a throttling dimension rejects a request.

    The detail payload mirrors the API envelope so callers that only look at
    HTTPException.detail still see code/msg/data/retryAfter.
    """

    def __init__(self, message: str = DEFAULT_THROTTLE_MESSAGE, retry_after: Optional[int] = None):
        headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "code": status.HTTP_429_TOO_MANY_REQUESTS,
                "msg": message,
                "data": None,
                "retryAfter": retry_after,
            },
            headers=headers,
        )
        self.code = status.HTTP_429_TOO_MANY_REQUESTS
        self.message = message
        self.data = None
        self.retry_after = retry_after

class CircuitBreakerError(Exception):
    """Base class for calls rejected by a circuit breaker."""

    kind: str = "breaker"

    def __init__(self, breaker_name: str, message: str):
        super().__init__(message)
        self.breaker_name = breaker_name

class CircuitBreakerOpenError(CircuitBreakerError):
    """Breaker tripped automatically; retry is viable after the cooldown."""

    kind = "open"

    def __init__(self, breaker_name: str, retry_after: Optional[float] = None):
        super().__init__(
            breaker_name,
            f'Circuit breaker "{breaker_name}" is open - service is unavailable',
        )
        self.retry_after = retry_after

class CircuitBreakerIsolatedError(CircuitBreakerError):
    """Breaker was isolated by an operator; never retry automatically."""

    kind = "isolated"

    def __init__(self, breaker_name: str):
        super().__init__(
            breaker_name,
            f'Circuit breaker "{breaker_name}" is isolated - service has been manually disabled',
        )

class CircuitBreakerNotFoundError(KeyError):
    """Operation referenced a breaker name that is not registered."""

    def __init__(self, breaker_name: str):
        super().__init__(breaker_name)
        self.breaker_name = breaker_name

    def __str__(self) -> str:
        return f'Circuit breaker "{self.breaker_name}" not found. Create it first with create_breaker().'

async def _throttle_exception_handler(request: Request, exc: ThrottleException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.detail,
        headers=exc.headers,
    )

async def _breaker_exception_handler(request: Request, exc: CircuitBreakerError) -> JSONResponse:
    headers = None
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        headers = {"Retry-After": str(max(1, math.ceil(retry_after)))}

    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "code": status.HTTP_503_SERVICE_UNAVAILABLE,
            "msg": str(exc),
            "data": {"breaker": exc.breaker_name, "kind": exc.kind},
        },
        headers=headers,
    )

async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Failures that escaped a guarded call or a route: report, then 500 envelope."""
    capture_exception(
        exc,
        context={"path": request.url.path, "method": request.method},
        tags={"component": "api"},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "code": status.HTTP_500_INTERNAL_SERVER_ERROR,
            "msg": "Internal server error",
            "data": None,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install JSON handlers for throttling, breaker and unexpected errors."""
    app.add_exception_handler(ThrottleException, _throttle_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(CircuitBreakerOpenError, _breaker_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(CircuitBreakerIsolatedError, _breaker_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_exception_handler)

# Lazy-loaded Sentry SDK
_sentry_initialized: bool = False

def init_sentry(
    dsn: str,
    environment: str = "production",
    traces_sample_rate: float = 0.1,
    release: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry SDK for error tracking.

    Returns:
        True if initialization successful, False otherwise
    """
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    try:
        import logging

        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.logging import LoggingIntegration

        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            release=release,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR,
                ),
            ],
            ignore_errors=[
                KeyboardInterrupt,
                SystemExit,
                ThrottleException,
                CircuitBreakerOpenError,
            ],
            before_send=_before_send,
        )

        _sentry_initialized = True
        logger.info(
            "Sentry initialized",
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            release=release,
        )
        return True

    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Tag Sentry events with the current request/user."""
    request_id = get_request_id()
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id

    user_id = get_user_id()
    if user_id:
        event.setdefault("user", {})["id"] = str(user_id)

    return event


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture an exception with structured logging and Sentry (when enabled).

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }

    logger.error(
        "Exception captured",
        exc_info=exc,
        **enriched_context,
    )

    if _sentry_initialized:
        try:
            import sentry_sdk

            with sentry_sdk.new_scope() as scope:
                for key, value in enriched_context.items():
                    if value is not None:
                        scope.set_extra(key, value)
                for key, value in (tags or {}).items():
                    scope.set_tag(key, value)
                scope.level = level
                return sentry_sdk.capture_exception(exc)
        except Exception as e:
            logger.warning("Failed to send exception to Sentry", error=str(e))

    return None

def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture a non-exception event (e.g. a breaker being isolated).

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **(context or {}),
    }

    log_func = getattr(logger, level, logger.info)
    log_func(message, **enriched_context)

    if _sentry_initialized:
        try:
            import sentry_sdk

            with sentry_sdk.new_scope() as scope:
                for key, value in enriched_context.items():
                    if value is not None:
                        scope.set_extra(key, value)
                for key, value in (tags or {}).items():
                    scope.set_tag(key, value)
                scope.level = level
                return sentry_sdk.capture_message(message, level=level)
        except Exception as e:
            logger.warning("Failed to send message to Sentry", error=str(e))

    return None
