from typing import TYPE_CHECKING

from fastapi import Request

from app.core.circuit_breaker import CircuitBreakerRegistry
from app.core.counter_store import CounterStore

if TYPE_CHECKING:
    from app.core.rate_limit import MultiDimensionGuard


def get_breaker_registry(request: Request) -> CircuitBreakerRegistry:
    """Registry created in the app lifespan."""
    return request.app.state.breakers


def get_throttle_guard(request: Request) -> "MultiDimensionGuard":
    """Guard created in the app lifespan; also used by the throttle dependencies."""
    return request.app.state.throttle_guard


def get_counter_store(request: Request) -> CounterStore:
    return request.app.state.counter_store
