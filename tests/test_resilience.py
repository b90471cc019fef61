"""
Tests for breaker-guarded calls (guard_call / protect).
"""

import pytest
from unittest.mock import MagicMock

from app.core.circuit_breaker import BreakerState
from app.core.errors import CircuitBreakerIsolatedError, CircuitBreakerOpenError
from app.core.resilience import BreakerPolicy, default_breaker_name, guard_call, protect


class UpstreamError(Exception):
    pass


async def fetch_rates(currency, precision=2):
    return {"currency": currency, "precision": precision}


async def failing_fetch(currency):
    raise UpstreamError(currency)


class RateClient:
    async def fetch(self, currency):
        return currency


class TestDefaultBreakerName:
    def test_function_name(self):
        assert default_breaker_name(fetch_rates) == f"{__name__}.fetch_rates"

    def test_method_name(self):
        assert default_breaker_name(RateClient.fetch) == f"{__name__}.RateClient.fetch"

    def test_wrapper_exposes_name(self, registry):
        wrapped = guard_call(registry, fetch_rates)
        assert wrapped.breaker_name == f"{__name__}.fetch_rates"
        assert wrapped.__name__ == "fetch_rates"


class TestGuardCall:
    @pytest.mark.asyncio
    async def test_passes_through_when_closed(self, registry):
        wrapped = guard_call(registry, fetch_rates, BreakerPolicy(name="rates"))
        assert await wrapped("EUR", precision=4) == {"currency": "EUR", "precision": 4}

    @pytest.mark.asyncio
    async def test_breaker_created_lazily_with_policy(self, registry):
        wrapped = guard_call(registry, fetch_rates, BreakerPolicy(name="rates", threshold=2, cooldown_ms=500))
        assert not registry.has_breaker("rates")

        await wrapped("EUR")

        breaker = registry.get_breaker("rates")
        assert breaker.threshold == 2
        assert breaker.cooldown_ms == 500

    @pytest.mark.asyncio
    async def test_wrapped_errors_propagate_and_count(self, registry):
        wrapped = guard_call(registry, failing_fetch, BreakerPolicy(name="rates", threshold=2))

        for _ in range(2):
            with pytest.raises(UpstreamError):
                await wrapped("EUR")

        assert registry.get_state("rates") == BreakerState.OPEN

    @pytest.mark.asyncio
    async def test_fallback_does_not_absorb_wrapped_errors(self, registry):
        fallback = MagicMock(return_value="cached")
        wrapped = guard_call(registry, failing_fetch, BreakerPolicy(name="rates", threshold=5, fallback=fallback))

        with pytest.raises(UpstreamError):
            await wrapped("EUR")
        fallback.assert_not_called()

    @pytest.mark.asyncio
    async def test_open_without_fallback_raises_typed_error(self, registry):
        wrapped = guard_call(registry, failing_fetch, BreakerPolicy(name="rates", threshold=1))
        with pytest.raises(UpstreamError):
            await wrapped("EUR")

        with pytest.raises(CircuitBreakerOpenError):
            await wrapped("EUR")

    @pytest.mark.asyncio
    async def test_isolated_without_fallback_raises_typed_error(self, registry):
        wrapped = guard_call(registry, fetch_rates, BreakerPolicy(name="rates"))
        await wrapped("EUR")
        registry.isolate("rates")

        with pytest.raises(CircuitBreakerIsolatedError):
            await wrapped("EUR")

    @pytest.mark.asyncio
    async def test_sync_fallback_receives_call_arguments(self, registry):
        fallback = MagicMock(return_value={"currency": "EUR", "stale": True})
        wrapped = guard_call(registry, failing_fetch, BreakerPolicy(name="rates", threshold=1, fallback=fallback))
        with pytest.raises(UpstreamError):
            await wrapped("EUR")

        result = await wrapped("EUR")

        assert result == {"currency": "EUR", "stale": True}
        fallback.assert_called_once_with("EUR")

    @pytest.mark.asyncio
    async def test_async_fallback_is_awaited(self, registry):
        async def fallback(currency):
            return f"fallback:{currency}"

        wrapped = guard_call(registry, fetch_rates, BreakerPolicy(name="rates", fallback=fallback))
        await wrapped("EUR")
        registry.isolate("rates")

        assert await wrapped("USD") == "fallback:USD"

    @pytest.mark.asyncio
    async def test_fallback_not_used_after_reset(self, registry):
        fallback = MagicMock(return_value="fallback")
        wrapped = guard_call(registry, fetch_rates, BreakerPolicy(name="rates", fallback=fallback))
        await wrapped("EUR")

        registry.isolate("rates")
        assert await wrapped("EUR") == "fallback"
        registry.reset("rates")

        assert await wrapped("EUR") == {"currency": "EUR", "precision": 2}
        fallback.assert_called_once()

    @pytest.mark.asyncio
    async def test_registry_provider_resolved_per_call(self, registry):
        provider = MagicMock(return_value=registry)
        wrapped = guard_call(provider, fetch_rates, BreakerPolicy(name="rates"))
        provider.assert_not_called()

        await wrapped("EUR")
        await wrapped("EUR")

        assert provider.call_count == 2
        assert registry.has_breaker("rates")

    @pytest.mark.asyncio
    async def test_default_name_used_for_breaker(self, registry):
        wrapped = guard_call(registry, fetch_rates)
        await wrapped("EUR")

        assert registry.has_breaker(f"{__name__}.fetch_rates")

    @pytest.mark.asyncio
    async def test_wrappers_share_breaker_by_name(self, registry):
        failing = guard_call(registry, failing_fetch, BreakerPolicy(name="shared", threshold=1))
        healthy = guard_call(registry, fetch_rates, BreakerPolicy(name="shared"))

        with pytest.raises(UpstreamError):
            await failing("EUR")

        with pytest.raises(CircuitBreakerOpenError):
            await healthy("EUR")


class TestProtectDecorator:
    @pytest.mark.asyncio
    async def test_decorated_function(self, registry, clock):
        @protect(registry, BreakerPolicy(name="charge", threshold=1, cooldown_ms=1000, fallback=lambda order_id: None))
        async def charge(order_id):
            if order_id < 0:
                raise UpstreamError("declined")
            return order_id

        assert await charge(1) == 1
        with pytest.raises(UpstreamError):
            await charge(-1)

        assert await charge(2) is None

        clock.advance(1)
        assert await charge(3) == 3
        assert registry.get_state("charge") == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_decorated_method_uses_qualname(self, registry):
        class Client:
            @protect(registry)
            async def ping(self):
                return "pong"

        assert await Client().ping() == "pong"
        assert registry.get_breaker_names() == [
            f"{__name__}.TestProtectDecorator.test_decorated_method_uses_qualname.<locals>.Client.ping"
        ]


class TestNestedGuardedCalls:
    @pytest.mark.asyncio
    async def test_inner_rejection_is_not_absorbed_by_outer_fallback(self, registry):
        inner = guard_call(registry, failing_fetch, BreakerPolicy(name="inner", threshold=1))
        with pytest.raises(UpstreamError):
            await inner("EUR")

        async def quote(currency):
            return await inner(currency)

        outer_fallback = MagicMock(return_value="cached quote")
        outer = guard_call(registry, quote, BreakerPolicy(name="outer", threshold=5, fallback=outer_fallback))

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await outer("EUR")

        assert exc_info.value.breaker_name == "inner"
        outer_fallback.assert_not_called()
        assert registry.get_state("outer") == BreakerState.CLOSED
        assert registry.get_breaker_info("outer").failure_count == 1

    @pytest.mark.asyncio
    async def test_inner_rejections_can_trip_outer_breaker(self, registry):
        inner = guard_call(registry, fetch_rates, BreakerPolicy(name="inner"))
        await inner("EUR")
        registry.isolate("inner")

        outer = guard_call(registry, inner, BreakerPolicy(name="outer", threshold=2, fallback=lambda c: "cached"))

        for _ in range(2):
            with pytest.raises(CircuitBreakerIsolatedError):
                await outer("EUR")

        assert registry.get_state("outer") == BreakerState.OPEN
        assert await outer("EUR") == "cached"
