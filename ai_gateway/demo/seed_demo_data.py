# ai_gateway/demo/seed_demo_data.py

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from ai_gateway.core.pricing import PRICING_TABLE, calculate_cost
from ai_gateway.core.token_counter import TokenUsage
from ai_gateway.jobs.queue import JobQueue, JobType
from ai_gateway.storage.models import UsageRecord
from ai_gateway.storage.repository import JobRepository, UsageRepository, initialize_schema

DEMO_USERS = [
    {"user_id": "demo-free", "tier": "free"},
    {"user_id": "demo-plus", "tier": "plus"},
    {"user_id": "demo-ultra", "tier": "ultra"},
]

# (user_id, feature, model, prompt_tokens, completion_tokens, hours ago)
DEMO_CALLS = [
    ("demo-free", "level_feedback", "gpt-5-nano", 42, 18, 30),
    ("demo-free", "forum_reply", "gpt-5-nano", 35, 27, 5),
    ("demo-free", "battle_task_generation", "gpt-5-mini", 24, 190, 2),
    ("demo-plus", "level_feedback", "gpt-5-nano", 44, 20, 1),
    ("demo-plus", "onboarding_personalization", "gpt-5-mini", 80, 140, 48),
    ("demo-ultra", "battle_task_generation", "gpt-5-mini", 24, 200, 3),
]


def seed_demo_data(db_path: str, now: Optional[datetime] = None) -> Dict[str, int]:
    """Write a few ledger rows and pending jobs for trying out the CLI.

    Returns:
        Counts of inserted usage records and jobs
    """
    now = now or datetime.now(timezone.utc)
    initialize_schema(db_path)

    records = []
    for user_id, feature, model, prompt_tokens, completion_tokens, hours_ago in DEMO_CALLS:
        usage = TokenUsage(prompt_tokens, completion_tokens)
        records.append(UsageRecord(
            user_id=user_id,
            model_tier=PRICING_TABLE.get_pricing(model).tier,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=calculate_cost(model, usage),
            feature=feature,
            created_at=now - timedelta(hours=hours_ago),
        ))
    UsageRepository(db_path).append_many(records)

    queue = JobQueue(JobRepository(db_path), clock=lambda: now)
    queue.enqueue(JobType.USER_SUMMARY.value, {
        "users": [dict(user, current_level=4, streak_count=6) for user in DEMO_USERS],
        "craving": "sugar",
    })
    queue.enqueue(JobType.BATTLE_TASKS.value, {"users": DEMO_USERS, "craving": "smoking_vaping"})

    return {"usage_records": len(records), "jobs": 2}
