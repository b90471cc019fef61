"""
Test fixtures for the resilience layer.

Provides a controllable clock, in-process counter stores and a small FastAPI
app wired the same way as app.main.
"""

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from app.api import circuits, throttle as throttle_api
from app.core.circuit_breaker import CircuitBreakerOptions, CircuitBreakerRegistry
from app.core.context import clear_context
from app.core.counter_store import MemoryCounterStore
from app.core.errors import register_exception_handlers
from app.core.rate_limit import (
    MultiDimensionGuard,
    MultiThrottleConfig,
    RateLimiter,
    RateWindowConfig,
    skip_throttle,
    throttle,
)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_request_context():
    clear_context()
    yield
    clear_context()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryCounterStore:
    return MemoryCounterStore(clock=clock)


@pytest.fixture
def limiter(store) -> RateLimiter:
    return RateLimiter(store)


@pytest.fixture
def small_defaults() -> MultiThrottleConfig:
    return MultiThrottleConfig(
        ip=RateWindowConfig(window_ms=60000, limit=3),
        user=RateWindowConfig(window_ms=60000, limit=5),
        tenant=RateWindowConfig(window_ms=60000, limit=10),
    )


@pytest.fixture
def guard(limiter, small_defaults) -> MultiDimensionGuard:
    return MultiDimensionGuard(limiter, defaults=small_defaults)


@pytest.fixture
def registry(clock) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(
        default_options=CircuitBreakerOptions(threshold=3, cooldown_ms=30000),
        clock=clock,
    )


@pytest.fixture
def test_app(store, guard, registry) -> FastAPI:
    """App with the admin routers plus a few throttled routes."""
    app = FastAPI()
    app.state.counter_store = store
    app.state.throttle_guard = guard
    app.state.breakers = registry
    register_exception_handlers(app)

    app.include_router(circuits.router, prefix="/api/v1/circuits")
    app.include_router(throttle_api.router, prefix="/api/v1/throttle")

    @app.get("/limited", dependencies=[Depends(throttle(ip=RateWindowConfig(window_ms=60000, limit=2)))])
    def limited():
        return {"ok": True}

    @app.get("/default", dependencies=[Depends(throttle())])
    def default():
        return {"ok": True}

    @app.get("/open", dependencies=[Depends(skip_throttle())])
    def open_route():
        return {"ok": True}

    return app


@pytest.fixture
def client(test_app) -> TestClient:
    return TestClient(test_app)
