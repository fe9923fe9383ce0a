"""
Unit tests for monthly budget enforcement.

Spend is read back from a real SQLite ledger in a temporary directory.
"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from ai_gateway.core.budget import (
    BudgetRejection,
    BudgetTracker,
    FeatureLimit,
    UserContext,
    month_bounds,
)
from ai_gateway.core.errors import InvalidRequestError
from ai_gateway.storage.models import UsageRecord
from ai_gateway.storage.repository import UsageRepository


def _record(user_id, cost, created_at, feature="level_feedback"):
    return UsageRecord(
        user_id=user_id,
        model_tier="nano",
        model="gpt-5-nano",
        prompt_tokens=10,
        completion_tokens=10,
        cost=cost,
        feature=feature,
        created_at=created_at,
    )


@pytest.fixture
def tracker(db_path, clock):
    return BudgetTracker(
        repository=UsageRepository(db_path),
        monthly_budgets={"free": 0.005, "plus": 0.01, "ultra": 0.01},
        feature_limits={"level_feedback": FeatureLimit(daily=10, hourly=3)},
        default_feature_limit=FeatureLimit(daily=0, hourly=0),
        clock=clock,
    )


class TestUserContext:
    """Test caller validation."""

    def test_defaults_to_free(self):
        assert UserContext("u1").tier == "free"

    def test_empty_user_rejected(self):
        with pytest.raises(InvalidRequestError):
            UserContext("")

    def test_unknown_tier_rejected(self):
        with pytest.raises(InvalidRequestError, match="Unknown tier"):
            UserContext("u1", tier="gold")


class TestMonthBounds:
    """Test calendar month periods."""

    def test_mid_month(self):
        start, end = month_bounds(datetime(2024, 3, 15, 12, tzinfo=timezone.utc))
        assert start == datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert end == datetime(2024, 4, 1, tzinfo=timezone.utc)

    def test_december_rolls_over(self):
        start, end = month_bounds(datetime(2024, 12, 31, 23, 59, tzinfo=timezone.utc))
        assert start == datetime(2024, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2025, 1, 1, tzinfo=timezone.utc)


class TestBudgetStatus:
    """Test spend derived from the ledger."""

    def test_new_user_has_full_budget(self, tracker):
        status = tracker.status(UserContext("u1"))
        assert status.current_spend == 0
        assert status.remaining_budget == pytest.approx(0.005)
        assert not status.is_over_budget

    def test_only_current_month_counts(self, tracker, db_path, clock):
        repo = UsageRepository(db_path)
        repo.append(_record("u1", 0.002, clock.now - timedelta(days=1)))
        repo.append(_record("u1", 0.004, datetime(2024, 2, 28, tzinfo=timezone.utc)))
        repo.append(_record("u2", 0.004, clock.now))

        status = tracker.status(UserContext("u1"))
        assert status.current_spend == pytest.approx(0.002)

    def test_tier_budget(self, tracker):
        assert tracker.status(UserContext("u1", tier="plus")).monthly_budget == 0.01

    def test_to_dict(self, tracker):
        data = tracker.status(UserContext("u1")).to_dict()
        assert data["tier"] == "free"
        assert data["period_start"] == "2024-03-01T00:00:00+00:00"


class TestBudgetCheck:
    """Test the enforcement order."""

    def test_free_tier_two_calls_scenario(self, tracker):
        """$0.005 budget: the first $0.003 call passes, the second is refused."""
        user = UserContext("u1")

        first = tracker.check(user, "forum_reply", estimated_cost=0.003)
        assert first.allowed
        tracker.record(user, actual_cost=0.003, feature="forum_reply", model="gpt-5-nano",
                       prompt_tokens=10, completion_tokens=10)

        second = tracker.check(user, "forum_reply", estimated_cost=0.003)
        assert not second.allowed
        assert second.rejection == BudgetRejection.WOULD_EXCEED_BUDGET
        assert second.status.current_spend == pytest.approx(0.003)

    def test_over_budget_rejects_even_free_calls(self, tracker, db_path, clock):
        UsageRepository(db_path).append(_record("u1", 0.005, clock.now))
        decision = tracker.check(UserContext("u1"), "forum_reply", estimated_cost=0.0)
        assert not decision.allowed
        assert decision.rejection == BudgetRejection.OVER_BUDGET
        assert decision.status.is_over_budget

    def test_hourly_feature_limit(self, tracker, db_path, clock):
        repo = UsageRepository(db_path)
        for minutes in (5, 10, 15):
            repo.append(_record("u1", 0.0, clock.now - timedelta(minutes=minutes)))

        decision = tracker.check(UserContext("u1"), "level_feedback", estimated_cost=0.0)
        assert decision.rejection == BudgetRejection.FEATURE_HOURLY_LIMIT

    def test_hourly_window_slides(self, tracker, db_path, clock):
        repo = UsageRepository(db_path)
        for minutes in (61, 70, 80):
            repo.append(_record("u1", 0.0, clock.now - timedelta(minutes=minutes)))

        assert tracker.check(UserContext("u1"), "level_feedback", estimated_cost=0.0).allowed

    def test_daily_feature_limit(self, tracker, db_path, clock):
        repo = UsageRepository(db_path)
        # ten calls earlier today, all outside the trailing hour
        for hours in range(2, 12):
            repo.append(_record("u1", 0.0, clock.now - timedelta(hours=hours)))

        decision = tracker.check(UserContext("u1"), "level_feedback", estimated_cost=0.0)
        assert decision.rejection == BudgetRejection.FEATURE_DAILY_LIMIT

    def test_zero_limit_is_unlimited(self, tracker, db_path, clock):
        repo = UsageRepository(db_path)
        for minutes in range(20):
            repo.append(_record("u1", 0.0, clock.now - timedelta(minutes=minutes), feature="other"))

        assert tracker.check(UserContext("u1"), "other", estimated_cost=0.0).allowed

    def test_negative_estimate_rejected(self, tracker):
        with pytest.raises(InvalidRequestError):
            tracker.check(UserContext("u1"), "forum_reply", estimated_cost=-0.1)

    def test_can_proceed_without_feature(self, tracker):
        user = UserContext("u1")
        assert tracker.can_proceed(user, None, 0.005)
        assert not tracker.can_proceed(user, None, 0.006)

    def test_can_proceed_takes_feature_before_estimate(self, tracker, db_path, clock):
        repo = UsageRepository(db_path)
        for minutes in (5, 10, 15):
            repo.append(_record("u1", 0.0, clock.now - timedelta(minutes=minutes)))

        user = UserContext("u1")
        assert not tracker.can_proceed(user, "level_feedback", 0.0)
        assert tracker.can_proceed(user, "forum_reply", 0.001)
        assert not tracker.can_proceed(user, "forum_reply", 0.006)

    def test_can_proceed_negative_estimate_rejected(self, tracker):
        with pytest.raises(InvalidRequestError):
            tracker.can_proceed(UserContext("u1"), "forum_reply", -0.1)


class TestBudgetRecord:
    """Test ledger writes."""

    def test_record_appends_ledger_row(self, tracker, db_path):
        record = tracker.record(
            UserContext("u1"), actual_cost=0.0001, feature="battle_task_generation",
            model="gpt-5-mini", prompt_tokens=20, completion_tokens=180, request_id="req-1",
        )
        assert record.model_tier == "mini"
        assert record.total_tokens == 200

        rows = UsageRepository(db_path).get_recent_records(user_id="u1")
        assert len(rows) == 1
        assert rows[0].request_id == "req-1"
        assert rows[0].cost == pytest.approx(0.0001)

    def test_unknown_model_raises(self, tracker):
        with pytest.raises(ValueError):
            tracker.record(UserContext("u1"), 0.1, "x", "gpt-4", 1, 1)

    def test_ledger_failure_propagates(self, clock):
        tracker = BudgetTracker(
            repository=UsageRepository("/nonexistent/dir/ledger.db"),
            monthly_budgets={"free": 0.005},
            feature_limits={},
            default_feature_limit=FeatureLimit(0, 0),
            clock=clock,
        )
        with pytest.raises(sqlite3.Error):
            tracker.status(UserContext("u1"))
