"""
Request context for log correlation and throttling identity.

Uses contextvars so values follow the current asyncio task.

Usage:
    # In middleware (automatic)
    set_request_id(generate_request_id())

    # After authentication (host application)
    set_user_id(user.id)
    set_tenant_id(user.tenant_id)

    # In business logic (read-only)
    logger.info("Processing", **get_context_dict())
"""

from contextvars import ContextVar
from typing import Optional, Union
import uuid

__all__ = [
    "set_request_id",
    "get_request_id",
    "generate_request_id",
    "set_user_id",
    "get_user_id",
    "set_tenant_id",
    "get_tenant_id",
    "set_correlation_id",
    "get_correlation_id",
    "clear_context",
    "get_context_dict",
]

Identifier = Union[int, str]

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_user_id: ContextVar[Optional[Identifier]] = ContextVar("user_id", default=None)
_tenant_id: ContextVar[Optional[Identifier]] = ContextVar("tenant_id", default=None)
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def generate_request_id() -> str:
    """
    Generate a new request ID.

    Format: req_{16 hex chars}
    """
    return f"req_{uuid.uuid4().hex[:16]}"


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_user_id(user_id: Optional[Identifier]) -> None:
    """Set user ID for current context (after auth)."""
    _user_id.set(user_id)


def get_user_id() -> Optional[Identifier]:
    return _user_id.get()


def set_tenant_id(tenant_id: Optional[Identifier]) -> None:
    """Set tenant ID for current context (after auth)."""
    _tenant_id.set(tenant_id)


def get_tenant_id() -> Optional[Identifier]:
    return _tenant_id.get()


def set_correlation_id(correlation_id: str) -> None:
    """
    Set correlation ID for distributed tracing.

    Correlation ID spans multiple services/requests and is passed
    via X-Correlation-ID header for end-to-end tracing.
    """
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def clear_context() -> None:
    """
    Clear all context variables.

    Called at end of request to prevent context leaking.
    """
    _request_id.set(None)
    _user_id.set(None)
    _tenant_id.set(None)
    _correlation_id.set(None)


def get_context_dict() -> dict:
    """Get all context variables as dict (for log and error enrichment)."""
    return {
        "request_id": get_request_id(),
        "user_id": get_user_id(),
        "tenant_id": get_tenant_id(),
        "correlation_id": get_correlation_id(),
    }
