from datetime import datetime, timezone
from enum import Enum
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, List, Optional
import logging
import time

from app.core.errors import (
    CircuitBreakerIsolatedError,
    CircuitBreakerNotFoundError,
    CircuitBreakerOpenError,
)

logger = logging.getLogger(__name__)

# (name, old_state, new_state) - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]

DEFAULT_THRESHOLD = 5
DEFAULT_COOLDOWN_MS = 30000


class BreakerState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Tripped, reject calls until cooldown
    HALF_OPEN = "half_open"  # One probe call in flight
    ISOLATED = "isolated"  # Manually disabled, never auto-recovers


@dataclass(frozen=True)
class CircuitBreakerOptions:
    threshold: int = DEFAULT_THRESHOLD
    cooldown_ms: int = DEFAULT_COOLDOWN_MS

    def __post_init__(self):
        if self.threshold < 1:
            raise ValueError("threshold must be >= 1")
        if self.cooldown_ms < 0:
            raise ValueError("cooldown_ms must be >= 0")


@dataclass
class BreakerInfo:
    name: str
    state: BreakerState
    consecutive_failures: int
    failure_count: int
    success_count: int
    threshold: int
    cooldown_ms: int
    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "threshold": self.threshold,
            "cooldown_ms": self.cooldown_ms,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "last_success_time": self.last_success_time.isoformat() if self.last_success_time else None,
        }


@dataclass
class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED -> OPEN after `threshold` consecutive failures. The first call
    attempted after `cooldown_ms` becomes the single probe (HALF_OPEN); its
    outcome closes or re-opens the breaker. ISOLATED is entered and left only
    through isolate()/reset().

    All transitions happen under `_lock`. The probe is identified by a token
    so a stale result (e.g. from a call admitted before an isolate/reset)
    can never move the state.
    """

    name: str
    threshold: int = DEFAULT_THRESHOLD
    cooldown_ms: int = DEFAULT_COOLDOWN_MS
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    on_state_change: Optional[StateChangeCallback] = field(default=None, repr=False)

    _state: BreakerState = field(default=BreakerState.CLOSED, init=False)
    _consecutive_failures: int = field(default=0, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _last_failure_time: Optional[datetime] = field(default=None, init=False)
    _last_success_time: Optional[datetime] = field(default=None, init=False)
    _opened_at: Optional[float] = field(default=None, init=False)
    _probe_token: Optional[int] = field(default=None, init=False)
    _token_seq: int = field(default=0, init=False)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    def __post_init__(self):
        CircuitBreakerOptions(threshold=self.threshold, cooldown_ms=self.cooldown_ms)

    @property
    def state(self) -> BreakerState:
        """Current state. Only acquire() performs the OPEN -> HALF_OPEN move."""
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def _cooldown_remaining(self) -> float:
        """Seconds left before a probe is allowed. Must hold self._lock."""
        if self._opened_at is None:
            return 0.0
        elapsed = self.clock() - self._opened_at
        return max(0.0, self.cooldown_ms / 1000.0 - elapsed)

    def _transition(self, new_state: BreakerState) -> Optional[tuple]:
        """Change state. Must hold self._lock. Returns (old, new) for notification."""
        old_state = self._state
        if old_state == new_state:
            return None
        self._state = new_state
        if new_state == BreakerState.OPEN:
            self._opened_at = self.clock()
        elif new_state == BreakerState.CLOSED:
            self._opened_at = None
            self._consecutive_failures = 0
        if new_state != BreakerState.HALF_OPEN:
            self._probe_token = None
        return old_state, new_state

    def _notify(self, change: Optional[tuple]) -> None:
        if change is None:
            return
        old_state, new_state = change
        if new_state == BreakerState.OPEN:
            logger.error(f"Circuit {self.name}: {old_state.name} -> OPEN, calls will be rejected")
        elif new_state == BreakerState.ISOLATED:
            logger.warning(f"Circuit {self.name}: {old_state.name} -> ISOLATED (manual)")
        else:
            logger.info(f"Circuit {self.name}: {old_state.name} -> {new_state.name}")

        if self.on_state_change:
            try:
                self.on_state_change(self.name, old_state.value, new_state.value)
            except Exception as e:
                logger.error(f"Circuit breaker notification failed: {e}")

    def acquire(self) -> Optional[int]:
        """
        Ask permission for one call.

        Returns a probe token when the call is the HALF_OPEN probe, else None.
        Raises CircuitBreakerIsolatedError / CircuitBreakerOpenError when the
        call must not run.
        """
        change = None
        with self._lock:
            if self._state == BreakerState.ISOLATED:
                raise CircuitBreakerIsolatedError(self.name)

            if self._state == BreakerState.CLOSED:
                return None

            if self._state == BreakerState.HALF_OPEN:
                # A probe is already in flight
                raise CircuitBreakerOpenError(self.name, retry_after=self.cooldown_ms / 1000.0)

            remaining = self._cooldown_remaining()
            if remaining > 0:
                raise CircuitBreakerOpenError(self.name, retry_after=remaining)

            change = self._transition(BreakerState.HALF_OPEN)
            self._token_seq += 1
            self._probe_token = self._token_seq
            token = self._probe_token

        self._notify(change)
        return token

    def _is_live_probe(self, token: Optional[int]) -> bool:
        return (
            token is not None
            and self._state == BreakerState.HALF_OPEN
            and token == self._probe_token
        )

    def record_success(self, token: Optional[int] = None) -> None:
        change = None
        with self._lock:
            self._success_count += 1
            self._last_success_time = datetime.now(timezone.utc)

            if self._is_live_probe(token):
                change = self._transition(BreakerState.CLOSED)
            elif self._state == BreakerState.CLOSED:
                self._consecutive_failures = 0
        self._notify(change)

    def record_failure(self, token: Optional[int] = None) -> None:
        change = None
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(timezone.utc)

            if self._is_live_probe(token):
                # Failed probe: cooldown restarts from now
                change = self._transition(BreakerState.OPEN)
            elif self._state == BreakerState.CLOSED:
                self._consecutive_failures += 1
                if self._consecutive_failures >= self.threshold:
                    change = self._transition(BreakerState.OPEN)
        self._notify(change)

    async def execute(self, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Run `fn` under breaker protection.

        Errors from `fn` (cancellation included) are recorded as failures and
        re-raised unchanged.
        """
        token = self.acquire()
        return await self.run_admitted(token, fn, *args, **kwargs)

    async def run_admitted(
        self, token: Optional[int], fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any
    ) -> Any:
        """Run a call already admitted by acquire() and record its outcome."""
        try:
            result = await fn(*args, **kwargs)
        except BaseException:
            self.record_failure(token)
            raise
        self.record_success(token)
        return result

    def isolate(self) -> None:
        """Manually disable the breaker until reset()."""
        with self._lock:
            change = self._transition(BreakerState.ISOLATED)
        self._notify(change)

    def reset(self) -> None:
        """Force CLOSED (also the way out of ISOLATED)."""
        with self._lock:
            change = self._transition(BreakerState.CLOSED)
            self._consecutive_failures = 0
        self._notify(change)

    def info(self) -> BreakerInfo:
        with self._lock:
            return BreakerInfo(
                name=self.name,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                failure_count=self._failure_count,
                success_count=self._success_count,
                threshold=self.threshold,
                cooldown_ms=self.cooldown_ms,
                last_failure_time=self._last_failure_time,
                last_success_time=self._last_success_time,
            )


class CircuitBreakerRegistry:
    """
    Named breakers for one process.

    Owned by the application's composition root (app.state.breakers). State
    is in-memory only: separate workers/instances each have their own view.
    """

    def __init__(
        self,
        default_options: Optional[CircuitBreakerOptions] = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[StateChangeCallback] = None,
    ):
        self.default_options = default_options or CircuitBreakerOptions()
        self._clock = clock
        self._on_state_change = on_state_change
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    def set_state_change_listener(self, callback: Optional[StateChangeCallback]) -> None:
        """Listener for every breaker, including ones already created."""
        self._on_state_change = callback
        with self._lock:
            for breaker in self._breakers.values():
                breaker.on_state_change = callback

    def create_breaker(self, name: str, options: Optional[CircuitBreakerOptions] = None) -> CircuitBreaker:
        """Register a breaker. An existing name returns the existing instance."""
        opts = options or self.default_options
        with self._lock:
            existing = self._breakers.get(name)
            if existing is None:
                breaker = CircuitBreaker(
                    name=name,
                    threshold=opts.threshold,
                    cooldown_ms=opts.cooldown_ms,
                    clock=self._clock,
                    on_state_change=self._on_state_change,
                )
                self._breakers[name] = breaker

        if existing is not None:
            logger.warning(f'Circuit breaker "{name}" already exists, returning existing instance')
            return existing

        logger.info(f'Circuit breaker "{name}" created with threshold={opts.threshold}, cooldown={opts.cooldown_ms}ms')
        return breaker

    def get_breaker(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def get_or_create_breaker(self, name: str, options: Optional[CircuitBreakerOptions] = None) -> CircuitBreaker:
        """Options only apply when the breaker is created."""
        existing = self._breakers.get(name)
        if existing is not None:
            return existing
        return self.create_breaker(name, options)

    def _require(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            raise CircuitBreakerNotFoundError(name)
        return breaker

    async def execute(self, name: str, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Run `fn` through a registered breaker."""
        breaker = self._require(name)
        try:
            return await breaker.execute(fn, *args, **kwargs)
        except CircuitBreakerIsolatedError:
            logger.warning(f'Circuit breaker "{name}" is ISOLATED - request rejected')
            raise
        except CircuitBreakerOpenError:
            logger.warning(f'Circuit breaker "{name}" is OPEN - request rejected')
            raise

    def get_state(self, name: str) -> Optional[BreakerState]:
        breaker = self._breakers.get(name)
        return breaker.state if breaker else None

    def get_breaker_info(self, name: str) -> Optional[BreakerInfo]:
        breaker = self._breakers.get(name)
        return breaker.info() if breaker else None

    def get_all_breakers_info(self) -> List[BreakerInfo]:
        return [breaker.info() for breaker in list(self._breakers.values())]

    def get_all_states(self) -> Dict[str, str]:
        return {name: cb.state.value for name, cb in list(self._breakers.items())}

    def isolate(self, name: str) -> bool:
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.isolate()
        logger.warning(f'Circuit breaker "{name}" has been manually isolated')
        return True

    def reset(self, name: str) -> bool:
        """Close a breaker (un-isolate or clear a trip)."""
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        logger.info(f'Circuit breaker "{name}" has been reset to CLOSED')
        return True

    def remove_breaker(self, name: str) -> bool:
        with self._lock:
            removed = self._breakers.pop(name, None)
        if removed is not None:
            logger.info(f'Circuit breaker "{name}" has been removed')
        return removed is not None

    def clear_all(self) -> None:
        with self._lock:
            self._breakers.clear()
        logger.info("All circuit breakers have been cleared")

    def has_breaker(self, name: str) -> bool:
        return name in self._breakers

    def get_breaker_names(self) -> List[str]:
        return list(self._breakers.keys())
