"""
Data models for storage layer.

Defines the durable entities: the usage ledger and queue jobs.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one billed provider call.

    Append-only rows that form the ledger of record for spend.
    Once written, these records must never be modified.
    """
    user_id: str
    model_tier: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    cost: float
    feature: str
    created_at: datetime
    request_id: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class JobStatus(Enum):
    """Queue job lifecycle: pending -> processing -> completed | failed."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Legal transitions; terminal states have no way out
JOB_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


@dataclass(frozen=True)
class QueueJob:
    """Snapshot of a durable queue job row."""
    id: str
    job_type: str
    payload: Dict[str, Any]
    status: JobStatus
    scheduled_at: datetime
    created_at: datetime
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    result_summary: Optional[str] = None
    attempt_count: int = 1
    max_attempts: int = 1
    retry_of: Optional[str] = None

    @property
    def can_retry(self) -> bool:
        return self.attempt_count < self.max_attempts
