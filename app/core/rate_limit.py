"""
Multi-dimension fixed-window rate limiting.

Requests are counted per IP, per user and per tenant, each dimension with its
own window and limit. Counters live in a CounterStore (Redis in production).

Window semantics are fixed, not sliding: the expiry is set once by the first
request of a window and later increments never extend it. A burst straddling
a window boundary can therefore admit up to 2x the limit.

The first request of a window is a GET followed by SET, which is not atomic
as a whole. Two concurrent first requests may both observe count == 0 and
both SET the key to 1, so that window under-counts by one. This tolerance is
accepted; do not "fix" it by assuming atomicity here.

Usage:
    router = APIRouter(dependencies=[Depends(throttle())])

    @router.post("/login", dependencies=[Depends(throttle(ip=RateWindowConfig(60000, 10)))])
    async def login(): ...

    @router.get("/health", dependencies=[Depends(skip_throttle())])
    async def health(): ...

Each request is evaluated once against a single policy: /login uses only its
own IP window (user/tenant from the defaults) instead of stacking on the
router's policy, and /health never reaches the guard.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from fastapi import Request

from app.api.deps import get_throttle_guard
from app.core.config import settings
from app.core.context import get_tenant_id, get_user_id
from app.core.counter_store import CounterStore
from app.core.errors import ThrottleException
from app.core.logging_config import get_logger

logger = get_logger(__name__)

KEY_NAMESPACE = "throttle"
UNKNOWN_IP = "unknown"

# Set on request.state once the throttle policy for a request has run
THROTTLE_STATE_FLAG = "throttle_checked"


class ThrottleDimension(str, Enum):
    IP = "ip"
    USER = "user"
    TENANT = "tenant"


# Evaluation order is fixed: IP, then user, then tenant
DIMENSION_ORDER = (ThrottleDimension.IP, ThrottleDimension.USER, ThrottleDimension.TENANT)

_DIMENSION_LABELS = {
    ThrottleDimension.IP: "IP",
    ThrottleDimension.USER: "User",
    ThrottleDimension.TENANT: "Tenant",
}


@dataclass(frozen=True)
class RateWindowConfig:
    """Policy for one dimension: at most `limit` requests per `window_ms`."""

    window_ms: int
    limit: int

    def __post_init__(self):
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if self.limit <= 0:
            raise ValueError("limit must be positive")

    @property
    def window_seconds(self) -> int:
        return math.ceil(self.window_ms / 1000)


@dataclass(frozen=True)
class MultiThrottleConfig:
    ip: Optional[RateWindowConfig] = None
    user: Optional[RateWindowConfig] = None
    tenant: Optional[RateWindowConfig] = None

    def for_dimension(self, dimension: ThrottleDimension) -> Optional[RateWindowConfig]:
        return getattr(self, dimension.value)

    def merged_over(self, defaults: "MultiThrottleConfig") -> "MultiThrottleConfig":
        """Substitute whole dimension configs; unset dimensions keep the defaults."""
        return MultiThrottleConfig(
            ip=self.ip if self.ip is not None else defaults.ip,
            user=self.user if self.user is not None else defaults.user,
            tenant=self.tenant if self.tenant is not None else defaults.tenant,
        )


def default_throttle_config() -> MultiThrottleConfig:
    """System defaults from settings."""
    return MultiThrottleConfig(
        ip=RateWindowConfig(settings.THROTTLE_IP_WINDOW_MS, settings.THROTTLE_IP_LIMIT),
        user=RateWindowConfig(settings.THROTTLE_USER_WINDOW_MS, settings.THROTTLE_USER_LIMIT),
        tenant=RateWindowConfig(settings.THROTTLE_TENANT_WINDOW_MS, settings.THROTTLE_TENANT_LIMIT),
    )


@dataclass
class ThrottleResult:
    blocked: bool
    current: int
    limit: int
    remaining_seconds: int = 0

    def to_dict(self) -> dict:
        return {
            "blocked": self.blocked,
            "current": self.current,
            "limit": self.limit,
            "remaining_seconds": self.remaining_seconds,
        }


def build_key(dimension: ThrottleDimension | str, identifier: Any) -> str:
    """Counter key for one dimension, e.g. throttle:ip:10.0.0.1"""
    dim = ThrottleDimension(dimension).value
    return f"{KEY_NAMESPACE}:{dim}:{identifier}"


class RateLimiter:
    """Fixed-window evaluator over a CounterStore."""

    def __init__(self, store: CounterStore):
        self.store = store

    @staticmethod
    def _parse_count(raw: Optional[str]) -> int:
        return int(raw) if raw else 0

    async def check_limit(self, key: str, config: RateWindowConfig) -> ThrottleResult:
        """
        Count one request against `key` unless it is already at the limit.

        Blocked requests are not counted. Store errors propagate to the caller.
        """
        count = self._parse_count(await self.store.get(key))

        if count >= config.limit:
            ttl = await self.store.ttl(key)
            return ThrottleResult(
                blocked=True,
                current=count,
                limit=config.limit,
                remaining_seconds=ttl if ttl > 0 else config.window_seconds,
            )

        if count == 0:
            # Opens the window; its expiry is never extended afterwards
            await self.store.set(key, "1", config.window_ms)
        else:
            await self.store.incr(key)

        return ThrottleResult(blocked=False, current=count + 1, limit=config.limit, remaining_seconds=0)

    async def get_status(self, key: str, config: RateWindowConfig) -> ThrottleResult:
        """Read-only view of a counter."""
        count = self._parse_count(await self.store.get(key))
        ttl = await self.store.ttl(key)
        return ThrottleResult(
            blocked=count >= config.limit,
            current=count,
            limit=config.limit,
            remaining_seconds=ttl if ttl > 0 else 0,
        )

    async def reset_limit(self, key: str) -> None:
        await self.store.delete(key)


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For address, else the peer address, else 'unknown'."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    if request.client and request.client.host:
        return request.client.host

    return UNKNOWN_IP


@dataclass(frozen=True)
class ThrottleIdentity:
    """Identifiers a request can be throttled on. user/tenant need auth."""

    ip: str = UNKNOWN_IP
    user_id: Optional[Any] = None
    tenant_id: Optional[Any] = None

    def for_dimension(self, dimension: ThrottleDimension) -> Optional[Any]:
        if dimension is ThrottleDimension.IP:
            return self.ip
        if dimension is ThrottleDimension.USER:
            return self.user_id
        return self.tenant_id


def _read_attr(obj: Any, name: str) -> Optional[Any]:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def resolve_identity(request: Request) -> ThrottleIdentity:
    """
    Build the throttling identity for a request.

    user/tenant come from request.state.user (set by the host's auth layer,
    object or mapping with user_id/tenant_id), falling back to context vars.
    """
    user = getattr(request.state, "user", None)
    user_id = _read_attr(user, "user_id")
    tenant_id = _read_attr(user, "tenant_id")

    return ThrottleIdentity(
        ip=get_client_ip(request),
        user_id=user_id if user_id is not None else get_user_id(),
        tenant_id=tenant_id if tenant_id is not None else get_tenant_id(),
    )


class MultiDimensionGuard:
    """
    Evaluates IP, user and tenant limits in order, stopping at the first block.

    A dimension is checked only when it has a config and the identity carries
    an identifier for it.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        defaults: Optional[MultiThrottleConfig] = None,
        enabled: bool = True,
    ):
        self.limiter = limiter
        self.defaults = defaults if defaults is not None else default_throttle_config()
        self.enabled = enabled

    def resolve_config(self, policy: Optional[MultiThrottleConfig] = None) -> MultiThrottleConfig:
        if policy is None:
            return self.defaults
        return policy.merged_over(self.defaults)

    async def evaluate(
        self,
        identity: ThrottleIdentity,
        policy: Optional[MultiThrottleConfig] = None,
        bypass: bool = False,
    ) -> None:
        """Allow the request or raise ThrottleException."""
        if bypass or not self.enabled:
            return

        config = self.resolve_config(policy)

        for dimension in DIMENSION_ORDER:
            window = config.for_dimension(dimension)
            identifier = identity.for_dimension(dimension)
            if window is None or identifier is None:
                continue

            key = build_key(dimension, identifier)
            result = await self.limiter.check_limit(key, window)
            if result.blocked:
                logger.warning(
                    "Request throttled",
                    dimension=dimension.value,
                    key=key,
                    current=result.current,
                    limit=result.limit,
                    retry_after=result.remaining_seconds,
                )
                label = _DIMENSION_LABELS[dimension]
                raise ThrottleException(
                    f"{label} request rate too high, retry in {result.remaining_seconds} seconds",
                    result.remaining_seconds,
                )

    async def get_dimension_status(
        self,
        dimension: ThrottleDimension | str,
        identifier: Any,
        policy: Optional[MultiThrottleConfig] = None,
    ) -> ThrottleResult:
        dim = ThrottleDimension(dimension)
        window = self.resolve_config(policy).for_dimension(dim)
        if window is None:
            raise ValueError(f"No throttle config for dimension {dim.value!r}")
        return await self.limiter.get_status(build_key(dim, identifier), window)

    async def reset_dimension(self, dimension: ThrottleDimension | str, identifier: Any) -> None:
        key = build_key(dimension, identifier)
        await self.limiter.reset_limit(key)
        logger.info("Throttle counter reset", key=key)


@dataclass(frozen=True)
class ThrottleDependency:
    """
    FastAPI dependency carrying one throttle policy.

    Policies may be declared at several levels (include_router, APIRouter,
    route). Only one evaluation runs per request: the first policy dependency
    FastAPI calls resolves the effective policy of the matched route, and the
    remaining ones are no-ops.
    """

    config: Optional[MultiThrottleConfig] = None
    bypass: bool = False

    async def __call__(self, request: Request) -> None:
        if getattr(request.state, THROTTLE_STATE_FLAG, False):
            return
        setattr(request.state, THROTTLE_STATE_FLAG, True)

        policy = effective_policy(request, fallback=self)
        if policy.bypass:
            return
        guard = get_throttle_guard(request)
        await guard.evaluate(resolve_identity(request), policy.config)


SKIP_POLICY = ThrottleDependency(bypass=True)


def route_policies(request: Request) -> List[ThrottleDependency]:
    """Throttle policies declared for the matched route, outermost first."""
    route = request.scope.get("route")
    declared = getattr(route, "dependencies", None) or []
    return [d.dependency for d in declared if isinstance(d.dependency, ThrottleDependency)]


def effective_policy(request: Request, fallback: ThrottleDependency) -> ThrottleDependency:
    """
    The single policy that applies to a request.

    A skip at any level wins. Otherwise the most specific (last declared)
    policy replaces the outer ones.
    """
    policies = route_policies(request) or [fallback]
    if any(p.bypass for p in policies):
        return SKIP_POLICY
    return policies[-1]


def throttle(
    ip: Optional[RateWindowConfig] = None,
    user: Optional[RateWindowConfig] = None,
    tenant: Optional[RateWindowConfig] = None,
) -> ThrottleDependency:
    """
    Throttle policy for a route or router.

    Dimensions left as None fall back to the system defaults.
    """
    if ip is None and user is None and tenant is None:
        return ThrottleDependency()
    return ThrottleDependency(config=MultiThrottleConfig(ip=ip, user=user, tenant=tenant))


def skip_throttle() -> ThrottleDependency:
    """Explicitly exempt a route; touches neither the guard nor the store."""
    return SKIP_POLICY
