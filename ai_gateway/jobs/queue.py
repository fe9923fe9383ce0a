"""
Producer side of the batch job queue.

Jobs are durable rows created here as `pending`; only the worker moves them
forward. Failed jobs are never reopened: a retry is a new job that points
back at the failed one through `retry_of`.
"""

import json
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

from ai_gateway.core.errors import InvalidPayloadError
from ai_gateway.storage.models import QueueJob
from ai_gateway.storage.repository import JobRepository

logger = structlog.get_logger()


class JobType(Enum):
    ONBOARDING_PERSONALIZATION = "onboarding_personalization"
    USER_SUMMARY = "user_summary"
    BATTLE_TASKS = "battle_tasks"


class JobQueue:
    """Enqueue, inspect and sweep queue jobs."""

    def __init__(
        self,
        repository: JobRepository,
        default_max_attempts: int = 1,
        retry_backoff_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = repository
        self.default_max_attempts = default_max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        scheduled_at: Optional[datetime] = None,
        max_attempts: Optional[int] = None
    ) -> str:
        """Add a pending job.

        Args:
            job_type: One of JobType's values
            payload: JSON-serializable job parameters
            scheduled_at: Earliest time the job may run, defaults to now
            max_attempts: Total attempts allowed, defaults to the queue setting

        Returns:
            The new job id

        Raises:
            InvalidPayloadError: If the job type is unknown or payload is malformed
        """
        try:
            JobType(job_type)
        except ValueError:
            raise InvalidPayloadError(f"Unknown job type: {job_type}")
        if not isinstance(payload, dict):
            raise InvalidPayloadError("payload must be a dictionary")
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise InvalidPayloadError(f"payload is not JSON serializable: {e}")

        attempts = max_attempts if max_attempts is not None else self.default_max_attempts
        if attempts <= 0:
            raise InvalidPayloadError("max_attempts must be > 0")

        job_id = self.repository.insert(
            job_type=job_type,
            payload=payload,
            scheduled_at=scheduled_at or self._clock(),
            max_attempts=attempts,
            created_at=self._clock(),
        )
        logger.info("job_enqueued", job_id=job_id, job_type=job_type)
        return job_id

    def retry(self, job: QueueJob, now: Optional[datetime] = None) -> Optional[str]:
        """Enqueue a follow-up attempt for a failed job, with exponential backoff.

        Returns:
            The new job id, or None when the job has no attempts left
        """
        if not job.can_retry:
            return None
        now = now or self._clock()
        delay = self.retry_backoff_seconds * (2 ** (job.attempt_count - 1))
        job_id = self.repository.insert(
            job_type=job.job_type,
            payload=job.payload,
            scheduled_at=now + timedelta(seconds=delay),
            max_attempts=job.max_attempts,
            attempt_count=job.attempt_count + 1,
            retry_of=job.id,
            created_at=now,
        )
        logger.info(
            "job_retry_scheduled",
            job_id=job_id,
            retry_of=job.id,
            attempt=job.attempt_count + 1,
            delay_seconds=delay,
        )
        return job_id

    def get(self, job_id: str) -> Optional[QueueJob]:
        return self.repository.get(job_id)

    def stats(self) -> Dict[str, int]:
        return self.repository.count_by_status()

    def sweep(self, older_than_days: int = 7, now: Optional[datetime] = None) -> int:
        """Delete completed jobs older than the retention window."""
        cutoff = (now or self._clock()) - timedelta(days=older_than_days)
        deleted = self.repository.delete_completed_before(cutoff)
        if deleted:
            logger.info("jobs_swept", deleted=deleted, older_than_days=older_than_days)
        return deleted
