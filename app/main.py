from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from app.api import circuits, throttle as throttle_api
from app.api.deps import get_breaker_registry, get_counter_store
from app.core.circuit_breaker import BreakerState, CircuitBreakerOptions, CircuitBreakerRegistry
from app.core.config import settings
from app.core.counter_store import CounterStore, build_counter_store
from app.core.errors import capture_message, init_sentry, register_exception_handlers
from app.core.health_check import HealthCheck
from app.core.logging_config import get_logger
from app.core.rate_limit import (
    MultiDimensionGuard,
    RateLimiter,
    default_throttle_config,
    skip_throttle,
    throttle,
)
from app.middleware.context import RequestContextMiddleware

logger = get_logger(__name__)


def _report_state_change(name: str, old_state: str, new_state: str) -> None:
    """Escalate breaker trips and isolations to error tracking."""
    if new_state in (BreakerState.OPEN.value, BreakerState.ISOLATED.value):
        capture_message(
            f"Circuit breaker {name} is {new_state}",
            level="warning",
            context={"breaker": name, "old_state": old_state, "new_state": new_state},
            tags={"component": "circuit_breaker"},
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT, traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE)

    store = build_counter_store(settings.REDIS_URL, key_prefix=settings.REDIS_KEY_PREFIX)
    app.state.counter_store = store
    app.state.throttle_guard = MultiDimensionGuard(
        RateLimiter(store),
        defaults=default_throttle_config(),
        enabled=settings.THROTTLE_ENABLED,
    )
    app.state.breakers = CircuitBreakerRegistry(
        default_options=CircuitBreakerOptions(
            threshold=settings.BREAKER_DEFAULT_THRESHOLD,
            cooldown_ms=settings.BREAKER_DEFAULT_COOLDOWN_MS,
        ),
        on_state_change=_report_state_change,
    )

    logger.info(
        "Resilience layer started",
        counter_store=type(store).__name__,
        throttle_enabled=settings.THROTTLE_ENABLED,
    )
    try:
        yield
    finally:
        app.state.breakers.clear_all()
        await store.close()
        logger.info("Resilience layer stopped")


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json", lifespan=lifespan)

app.add_middleware(cast(Any, RequestContextMiddleware))
register_exception_handlers(app)

app.include_router(
    circuits.router,
    prefix=f"{settings.API_V1_STR}/circuits",
    tags=["circuits"],
    dependencies=[Depends(throttle())],
)
app.include_router(
    throttle_api.router,
    prefix=f"{settings.API_V1_STR}/throttle",
    tags=["throttle"],
    dependencies=[Depends(throttle())],
)


@app.get("/")
def root():
    return {"message": f"Welcome to {settings.PROJECT_NAME}"}


@app.get("/health", dependencies=[Depends(skip_throttle())])
def health():
    """Basic health check endpoint."""
    return {"status": "healthy"}


@app.get("/health/circuits", dependencies=[Depends(skip_throttle())])
def health_circuits(registry: CircuitBreakerRegistry = Depends(get_breaker_registry)):
    return HealthCheck.check_circuit_health(registry)


@app.get("/health/ready", dependencies=[Depends(skip_throttle())])
async def health_ready(
    registry: CircuitBreakerRegistry = Depends(get_breaker_registry),
    store: CounterStore = Depends(get_counter_store),
):
    result = await HealthCheck.check_overall_health(registry, store)
    status_code = 503 if result["status"] == "critical" else 200
    return JSONResponse(status_code=status_code, content=result)
