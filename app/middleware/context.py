"""
Per-request context for the resilience layer.

Every request gets a request id (X-Request-ID, validated or generated) and,
when the caller sends one, a correlation id (X-Correlation-ID). Both are
bound to structlog together with the client IP the throttle guard will key
on, so a "Request throttled" or breaker line can be traced back to the
request that caused it.

Responses rejected by the layer itself (429 throttled, 503 breaker) are
summarised in one log line; other slow requests are logged as well.
"""

import re
import time
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.context import (
    clear_context,
    generate_request_id,
    set_correlation_id,
    set_request_id,
)
from app.core.rate_limit import get_client_ip

logger = structlog.get_logger(__name__)

SLOW_REQUEST_MS = 500.0
REJECTION_STATUSES = {429: "throttled", 503: "breaker"}

# Ids end up in log lines and response headers
_ID_MAX_LENGTH = 64
_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


def _clean_id(raw: Optional[str]) -> Optional[str]:
    """Return the header value if it is a safe id, else None."""
    if raw and len(raw) <= _ID_MAX_LENGTH and _ID_PATTERN.match(raw):
        return raw
    return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _clean_id(request.headers.get("X-Request-ID")) or generate_request_id()
        correlation_id = _clean_id(request.headers.get("X-Correlation-ID"))
        client_ip = get_client_ip(request)

        set_request_id(request_id)
        if correlation_id:
            set_correlation_id(correlation_id)
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            correlation_id=correlation_id,
            client_ip=client_ip,
            method=request.method,
            path=request.url.path,
        )

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            if correlation_id:
                response.headers["X-Correlation-ID"] = correlation_id
            return response
        finally:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 1)
            rejection = REJECTION_STATUSES.get(status_code)
            if rejection:
                logger.info("Request rejected", reason=rejection, status_code=status_code, duration_ms=elapsed_ms)
            elif elapsed_ms >= SLOW_REQUEST_MS and not request.url.path.startswith("/health"):
                logger.warning("Slow request", status_code=status_code, duration_ms=elapsed_ms)
            clear_context()
            structlog.contextvars.clear_contextvars()
