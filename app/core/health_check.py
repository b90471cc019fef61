"""
Health checks for the resilience layer.

Usage:
    from app.core.health_check import HealthCheck

    circuits = HealthCheck.check_circuit_health(registry)
    store = await HealthCheck.check_counter_store_health(store)
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Literal

import structlog

from app.core.circuit_breaker import BreakerState, CircuitBreakerRegistry
from app.core.counter_store import CounterStore

logger = structlog.get_logger(__name__)

__all__ = ["HealthCheck", "ThresholdStatus"]

ThresholdStatus = Literal["ok", "warning", "critical"]

# Counter store round-trip thresholds (ms)
STORE_PING_WARN_MS = 50.0
STORE_PING_CRIT_MS = 500.0


class HealthCheck:
    """
    Each check returns:
    - status: "ok", "warning", or "critical"
    - Additional context for debugging
    """

    @staticmethod
    def check_circuit_health(registry: CircuitBreakerRegistry) -> Dict[str, Any]:
        """
        Open or isolated circuits are critical, half-open ones a warning.
        """
        try:
            states = registry.get_all_states()

            by_state: Dict[str, list] = {state.value: [] for state in BreakerState}
            for name, state in states.items():
                by_state.setdefault(state, []).append(name)

            status: ThresholdStatus = "ok"
            if by_state[BreakerState.OPEN.value] or by_state[BreakerState.ISOLATED.value]:
                status = "critical"
            elif by_state[BreakerState.HALF_OPEN.value]:
                status = "warning"

            return {
                "status": status,
                "open_circuits": by_state[BreakerState.OPEN.value],
                "isolated_circuits": by_state[BreakerState.ISOLATED.value],
                "half_open_circuits": by_state[BreakerState.HALF_OPEN.value],
                "closed_circuits": by_state[BreakerState.CLOSED.value],
                "total_circuits": len(states),
            }

        except Exception as e:
            logger.error("Circuit health check failed", error=str(e))
            return {
                "status": "warning",
                "reason": f"Health check error: {str(e)}",
            }

    @staticmethod
    async def check_counter_store_health(store: CounterStore) -> Dict[str, Any]:
        """Ping the counter store and grade the round trip."""
        try:
            start = time.perf_counter()
            await store.ping()
            duration_ms = (time.perf_counter() - start) * 1000

            status: ThresholdStatus = "ok"
            if duration_ms >= STORE_PING_CRIT_MS:
                status = "critical"
            elif duration_ms >= STORE_PING_WARN_MS:
                status = "warning"

            return {
                "status": status,
                "backend": type(store).__name__,
                "ping_ms": round(duration_ms, 1),
                "threshold_warn_ms": STORE_PING_WARN_MS,
                "threshold_crit_ms": STORE_PING_CRIT_MS,
            }

        except Exception as e:
            logger.error("Counter store health check failed", error=str(e))
            return {
                "status": "critical",
                "backend": type(store).__name__,
                "reason": f"Counter store error: {str(e)}",
            }

    @staticmethod
    async def check_overall_health(registry: CircuitBreakerRegistry, store: CounterStore) -> Dict[str, Any]:
        """
        Worst status across components.

        HTTP status should be 200 for "ok"/"warning" and 503 for "critical".
        """
        circuits = HealthCheck.check_circuit_health(registry)
        counter_store = await HealthCheck.check_counter_store_health(store)

        all_statuses = [circuits["status"], counter_store["status"]]
        if "critical" in all_statuses:
            overall_status = "critical"
        elif "warning" in all_statuses:
            overall_status = "warning"
        else:
            overall_status = "ok"

        return {
            "status": overall_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {
                "circuits": circuits,
                "counter_store": counter_store,
            },
        }
