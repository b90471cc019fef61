"""
Breaker-guarded call wrapping.

Wraps an async callable so every call goes through a named circuit breaker.
Rejections by the wrapper's own breaker (open/isolated) are answered by the
fallback when one is configured. Errors raised by the callable itself always
propagate, including breaker errors from guarded calls nested inside it.

Usage:
    payments = protect(registry, BreakerPolicy(name="payments", threshold=3, cooldown_ms=10000))

    @payments
    async def charge(order_id: int) -> dict: ...

    # or without a decorator
    safe_fetch = guard_call(registry, fetch_rates, BreakerPolicy(fallback=lambda *a, **kw: {}))
"""

import functools
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from app.core.circuit_breaker import (
    DEFAULT_COOLDOWN_MS,
    DEFAULT_THRESHOLD,
    CircuitBreakerOptions,
    CircuitBreakerRegistry,
)
from app.core.errors import CircuitBreakerError
from app.core.logging_config import get_logger

logger = get_logger(__name__)

AsyncFn = Callable[..., Awaitable[Any]]
RegistrySource = Union[CircuitBreakerRegistry, Callable[[], CircuitBreakerRegistry]]


@dataclass(frozen=True)
class BreakerPolicy:
    name: Optional[str] = None
    threshold: int = DEFAULT_THRESHOLD
    cooldown_ms: int = DEFAULT_COOLDOWN_MS
    # Called with the wrapped call's arguments; may be sync or async
    fallback: Optional[Callable[..., Any]] = None

    @property
    def options(self) -> CircuitBreakerOptions:
        return CircuitBreakerOptions(threshold=self.threshold, cooldown_ms=self.cooldown_ms)


def default_breaker_name(fn: Callable[..., Any]) -> str:
    """<module>.<qualname>, e.g. app.services.rates.RateClient.fetch"""
    module = getattr(fn, "__module__", None) or "unknown"
    qualname = getattr(fn, "__qualname__", None) or getattr(fn, "__name__", repr(fn))
    return f"{module}.{qualname}"


def _resolve_registry(source: RegistrySource) -> CircuitBreakerRegistry:
    if isinstance(source, CircuitBreakerRegistry):
        return source
    return source()


def guard_call(
    registry: RegistrySource,
    fn: AsyncFn,
    policy: Optional[BreakerPolicy] = None,
) -> AsyncFn:
    """
    Return an async callable equivalent to `fn` but protected by a breaker.

    `registry` may be a CircuitBreakerRegistry or a zero-arg callable that
    returns one; it is resolved on every call, and the breaker is created
    lazily on first use.
    """
    policy = policy or BreakerPolicy()
    breaker_name = policy.name or default_breaker_name(fn)

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        breaker = _resolve_registry(registry).get_or_create_breaker(breaker_name, policy.options)
        try:
            token = breaker.acquire()
        except CircuitBreakerError as exc:
            if policy.fallback is None:
                raise
            logger.info(
                "Circuit breaker rejected call, using fallback",
                breaker=breaker_name,
                kind=exc.kind,
            )
            result = policy.fallback(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        # Breaker errors raised inside fn (e.g. a nested guarded call) are fn's own failure
        return await breaker.run_admitted(token, fn, *args, **kwargs)

    wrapper.breaker_name = breaker_name  # type: ignore[attr-defined]
    return wrapper


def protect(
    registry: RegistrySource,
    policy: Optional[BreakerPolicy] = None,
) -> Callable[[AsyncFn], AsyncFn]:
    """Decorator form of guard_call."""

    def decorator(fn: AsyncFn) -> AsyncFn:
        return guard_call(registry, fn, policy)

    return decorator
