"""
Fixed-window rate limiting backed by the cache store.

Each (prefix, identifier) pair owns one counter whose TTL equals the window
length. The counter is created with its TTL on the first request of a window
and incremented atomically by the store afterwards.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Optional

import structlog

from .cache import CacheKeys, CacheStore
from .errors import CacheUnavailable

logger = structlog.get_logger()

TIERS = ("free", "plus", "ultra")


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check."""
    allowed: bool
    remaining: int
    reset_time: int  # Unix seconds when the current window closes
    limit: int
    retry_after: Optional[int] = None  # Seconds, only set when rejected

    def to_dict(self) -> Dict[str, Optional[int]]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_time": self.reset_time,
            "limit": self.limit,
            "retry_after": self.retry_after,
        }


@dataclass(frozen=True)
class EndpointLimit:
    """Request ceiling for one endpoint.

    When per_tier is given it holds absolute per-tier limits; otherwise
    requests is scaled by the policy's tier multiplier.
    """
    requests: int
    window_seconds: int
    per_tier: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self):
        if self.requests <= 0:
            raise ValueError("requests must be > 0")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        for tier, value in self.per_tier.items():
            if value <= 0:
                raise ValueError(f"per_tier limit for {tier} must be > 0")


class RateLimiter:
    """Fixed-window counter for a single endpoint and limit."""

    def __init__(
        self,
        store: CacheStore,
        limit: int,
        window_seconds: int,
        prefix: str,
        clock: Optional[Callable[[], float]] = None
    ):
        if limit <= 0:
            raise ValueError("limit must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix
        self._clock = clock or time.time

    def _key(self, identifier: str) -> str:
        return CacheKeys.rate_limit(self.prefix, identifier)

    def _fail_open(self, now: int) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=self.limit,
            reset_time=now + self.window_seconds,
            limit=self.limit,
        )

    def check(self, identifier: str) -> RateLimitResult:
        """Count a request against the identifier's current window.

        Args:
            identifier: Who is being limited (usually a user id)

        Returns:
            RateLimitResult; rejected results carry retry_after > 0
        """
        now = int(self._clock())
        key = self._key(identifier)
        try:
            count, ttl = self.store.incr_window(key, self.window_seconds)
        except CacheUnavailable as e:
            # Availability wins over exactness
            logger.warning("rate_limit_store_unavailable", key=key, error=str(e))
            return self._fail_open(now)

        if count > self.limit:
            logger.info("rate_limited", prefix=self.prefix, identifier=identifier, retry_after=ttl)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=now + ttl,
                limit=self.limit,
                retry_after=ttl,
            )

        return RateLimitResult(
            allowed=True,
            remaining=self.limit - count,
            reset_time=now + ttl,
            limit=self.limit,
        )

    def status(self, identifier: str) -> RateLimitResult:
        """Read the identifier's window without counting a request."""
        now = int(self._clock())
        key = self._key(identifier)
        try:
            raw = self.store.get(key)
            ttl = self.store.ttl(key)
        except CacheUnavailable as e:
            logger.warning("rate_limit_store_unavailable", key=key, error=str(e))
            return self._fail_open(now)

        count = int(raw) if raw else 0
        remaining = max(0, self.limit - count)
        reset_in = ttl if ttl is not None else self.window_seconds
        return RateLimitResult(
            allowed=remaining > 0,
            remaining=remaining,
            reset_time=now + reset_in,
            limit=self.limit,
            retry_after=reset_in if remaining == 0 else None,
        )

    def reset(self, identifier: str) -> None:
        key = self._key(identifier)
        try:
            self.store.delete(key)
        except CacheUnavailable as e:
            logger.warning("rate_limit_store_unavailable", key=key, error=str(e))


class RateLimitPolicy:
    """Resolves tier- and endpoint-dependent limiters.

    Lookup order: an explicit endpoint entry, then ai_default for AI
    features, then default for everything else.
    """

    def __init__(
        self,
        store: CacheStore,
        endpoints: Dict[str, EndpointLimit],
        default: EndpointLimit,
        ai_default: EndpointLimit,
        tier_multipliers: Dict[str, int],
        ai_features: FrozenSet[str] = frozenset(),
        clock: Optional[Callable[[], float]] = None
    ):
        self.store = store
        self.endpoints = dict(endpoints)
        self.default = default
        self.ai_default = ai_default
        self.tier_multipliers = dict(tier_multipliers)
        self.ai_features = frozenset(ai_features)
        self._clock = clock

    def endpoint_limit(self, endpoint: str) -> EndpointLimit:
        if endpoint in self.endpoints:
            return self.endpoints[endpoint]
        if endpoint in self.ai_features:
            return self.ai_default
        return self.default

    def limit_for(self, tier: str, endpoint: str) -> int:
        endpoint_config = self.endpoint_limit(endpoint)
        if tier in endpoint_config.per_tier:
            return endpoint_config.per_tier[tier]
        return endpoint_config.requests * self.tier_multipliers.get(tier, 1)

    def limiter_for(self, tier: str, endpoint: str) -> RateLimiter:
        endpoint_config = self.endpoint_limit(endpoint)
        return RateLimiter(
            store=self.store,
            limit=self.limit_for(tier, endpoint),
            window_seconds=endpoint_config.window_seconds,
            prefix=endpoint,
            clock=self._clock,
        )
