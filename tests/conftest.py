"""
Shared fixtures: a controllable clock, a scripted LLM provider and a gateway
wired against a temporary SQLite database and the in-memory cache store.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import pytest

from ai_gateway.core.budget import BudgetTracker, FeatureLimit
from ai_gateway.core.cache import MemoryCacheStore, ResponseCache
from ai_gateway.core.errors import ProviderUnavailable
from ai_gateway.core.fallback import FallbackResolver
from ai_gateway.core.gateway import InferenceGateway
from ai_gateway.core.pricing import PRICING_TABLE, PricingTable
from ai_gateway.core.rate_limiter import EndpointLimit, RateLimitPolicy
from ai_gateway.sdk.base import ProviderRequest, ProviderResponse
from ai_gateway.storage.repository import UsageRepository, initialize_schema


class FakeClock:
    """Frozen UTC time that tests move forward explicitly."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeProvider:
    """Scripted LLMProvider recording every request it receives."""

    name = "fake"

    def __init__(self, text: str = "Generated text", prompt_tokens: int = 10, completion_tokens: int = 20):
        self.text = text
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.calls: List[ProviderRequest] = []
        self.unavailable = False
        self.fail_when: Optional[Callable[[ProviderRequest], bool]] = None

    def complete(self, request: ProviderRequest) -> ProviderResponse:
        self.calls.append(request)
        if self.unavailable or (self.fail_when and self.fail_when(request)):
            raise ProviderUnavailable("provider down")
        return ProviderResponse(
            text=self.text,
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            request_id=f"req-{len(self.calls)}",
        )


@pytest.fixture
def db_path():
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "test.db")
    initialize_schema(path)
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def make_gateway(db_path, clock, provider):
    """Build a gateway; features are unlimited and rate limits generous unless overridden."""

    def _make(
        budgets=None,
        feature_limits=None,
        endpoints=None,
        ai_default=None,
        pricing: Optional[PricingTable] = None,
        store=None
    ) -> InferenceGateway:
        pricing = pricing or PRICING_TABLE
        store = store or MemoryCacheStore(clock=clock.timestamp)
        budget = BudgetTracker(
            repository=UsageRepository(db_path),
            monthly_budgets=budgets or {"free": 0.005, "plus": 0.01, "ultra": 0.01},
            feature_limits=feature_limits or {},
            default_feature_limit=FeatureLimit(daily=0, hourly=0),
            pricing=pricing,
            clock=clock,
        )
        policy = RateLimitPolicy(
            store=store,
            endpoints=endpoints or {},
            default=EndpointLimit(requests=1000, window_seconds=60),
            ai_default=ai_default or EndpointLimit(requests=1000, window_seconds=60),
            tier_multipliers={"free": 1, "plus": 2, "ultra": 3},
            clock=clock.timestamp,
        )
        return InferenceGateway(
            cache=ResponseCache(store, ttl_by_tier={"nano": 86400, "mini": 604800}),
            rate_limits=policy,
            budget=budget,
            provider=provider,
            fallback=FallbackResolver(),
            pricing=pricing,
        )

    return _make
