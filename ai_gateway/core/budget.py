"""
Per-user monthly budget enforcement.

Spend is always recomputed from the usage ledger for the current calendar
month (UTC); nothing is cached between requests. Estimates gate a call
before it is made, actual costs are what gets recorded.

Enforcement Order:
1. Already over budget - nothing more may be spent this period
2. Projected spend - current spend plus the estimate must fit the budget
3. Feature sub-limits - daily and hourly call caps per feature
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import structlog

from .errors import InvalidRequestError
from .pricing import PRICING_TABLE, PricingTable
from .rate_limiter import TIERS
from ai_gateway.storage.models import UsageRecord
from ai_gateway.storage.repository import UsageRepository

logger = structlog.get_logger()


@dataclass(frozen=True)
class UserContext:
    """The caller a generation is billed to."""
    user_id: str
    tier: str = "free"

    def __post_init__(self):
        if not self.user_id or not str(self.user_id).strip():
            raise InvalidRequestError("user_id is required and cannot be empty")
        if self.tier not in TIERS:
            raise InvalidRequestError(f"Unknown tier: {self.tier}")


@dataclass(frozen=True)
class FeatureLimit:
    """Call caps for one feature. A limit of 0 means unlimited."""
    daily: int
    hourly: int

    def __post_init__(self):
        if self.daily < 0 or self.hourly < 0:
            raise ValueError("feature limits cannot be negative")


@dataclass(frozen=True)
class BudgetStatus:
    """Derived view of a user's spend in the current period."""
    tier: str
    monthly_budget: float
    current_spend: float
    remaining_budget: float
    is_over_budget: bool
    period_start: datetime
    period_end: datetime

    def to_dict(self) -> Dict[str, object]:
        return {
            "tier": self.tier,
            "monthly_budget": self.monthly_budget,
            "current_spend": self.current_spend,
            "remaining_budget": self.remaining_budget,
            "is_over_budget": self.is_over_budget,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
        }


class BudgetRejection(Enum):
    """Why a budget check declined a call."""
    OVER_BUDGET = "over_budget"
    WOULD_EXCEED_BUDGET = "would_exceed_budget"
    FEATURE_DAILY_LIMIT = "feature_daily_limit"
    FEATURE_HOURLY_LIMIT = "feature_hourly_limit"


@dataclass(frozen=True)
class BudgetDecision:
    allowed: bool
    status: BudgetStatus
    estimated_cost: float
    rejection: Optional[BudgetRejection] = None


def month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """Start of the calendar month containing `now` and start of the next."""
    now = now.astimezone(timezone.utc)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


class BudgetTracker:
    """Computes spend from the ledger and decides whether a call may proceed."""

    def __init__(
        self,
        repository: UsageRepository,
        monthly_budgets: Dict[str, float],
        feature_limits: Dict[str, FeatureLimit],
        default_feature_limit: FeatureLimit,
        pricing: Optional[PricingTable] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = repository
        self.monthly_budgets = dict(monthly_budgets)
        self.feature_limits = dict(feature_limits)
        self.default_feature_limit = default_feature_limit
        self.pricing = pricing or PRICING_TABLE
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def budget_for(self, tier: str) -> float:
        if tier not in self.monthly_budgets:
            raise InvalidRequestError(f"No monthly budget configured for tier: {tier}")
        return self.monthly_budgets[tier]

    def feature_limit(self, feature: str) -> FeatureLimit:
        return self.feature_limits.get(feature, self.default_feature_limit)

    def status(self, user: UserContext) -> BudgetStatus:
        """Recompute the user's budget status for the current period."""
        now = self._clock()
        period_start, period_end = month_bounds(now)
        monthly_budget = self.budget_for(user.tier)
        current_spend = self.repository.sum_cost(user.user_id, period_start, now)

        return BudgetStatus(
            tier=user.tier,
            monthly_budget=monthly_budget,
            current_spend=current_spend,
            remaining_budget=max(0.0, monthly_budget - current_spend),
            is_over_budget=current_spend >= monthly_budget,
            period_start=period_start,
            period_end=period_end,
        )

    def check(self, user: UserContext, feature: str, estimated_cost: float) -> BudgetDecision:
        """Decide whether a call with the given estimated cost may proceed.

        Args:
            user: Caller being billed
            feature: Feature making the call, for sub-limits
            estimated_cost: Pre-call cost estimate in USD

        Returns:
            BudgetDecision with the first rule that rejected, if any
        """
        if estimated_cost < 0:
            raise InvalidRequestError("estimated_cost cannot be negative")

        status = self.status(user)

        def _reject(reason: BudgetRejection) -> BudgetDecision:
            logger.info(
                "budget_rejected",
                user_id=user.user_id,
                feature=feature,
                reason=reason.value,
                current_spend=status.current_spend,
                monthly_budget=status.monthly_budget,
                estimated_cost=estimated_cost,
            )
            return BudgetDecision(False, status, estimated_cost, reason)

        # 1. Already over budget
        if status.is_over_budget:
            return _reject(BudgetRejection.OVER_BUDGET)

        # 2. Projected spend
        if status.current_spend + estimated_cost > status.monthly_budget:
            return _reject(BudgetRejection.WOULD_EXCEED_BUDGET)

        # 3. Feature sub-limits
        limits = self.feature_limit(feature)
        now = self._clock().astimezone(timezone.utc)
        if limits.daily > 0:
            midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
            if self.repository.count_calls(user.user_id, feature, midnight) >= limits.daily:
                return _reject(BudgetRejection.FEATURE_DAILY_LIMIT)
        if limits.hourly > 0:
            hour_ago = now - timedelta(hours=1)
            if self.repository.count_calls(user.user_id, feature, hour_ago) >= limits.hourly:
                return _reject(BudgetRejection.FEATURE_HOURLY_LIMIT)

        return BudgetDecision(True, status, estimated_cost)

    def can_proceed(self, user: UserContext, feature: Optional[str], estimated_cost: float) -> bool:
        """Boolean form of check(). With feature None only the budget rules apply."""
        if estimated_cost < 0:
            raise InvalidRequestError("estimated_cost cannot be negative")
        if feature is None:
            status = self.status(user)
            return (not status.is_over_budget
                    and status.current_spend + estimated_cost <= status.monthly_budget)
        return self.check(user, feature, estimated_cost).allowed

    def record(
        self,
        user: UserContext,
        actual_cost: float,
        feature: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        request_id: Optional[str] = None
    ) -> UsageRecord:
        """Append the actual cost of a completed provider call to the ledger.

        Raises:
            ValueError: If the model is unknown
            sqlite3.Error: Ledger write failures propagate
        """
        record = UsageRecord(
            user_id=user.user_id,
            model_tier=self.pricing.get_pricing(model).tier,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=actual_cost,
            feature=feature,
            created_at=self._clock(),
            request_id=request_id,
        )
        self.repository.append(record)
        logger.info(
            "usage_recorded",
            user_id=user.user_id,
            feature=feature,
            model=model,
            cost=actual_cost,
            total_tokens=record.total_tokens,
        )
        return record
