"""
Consumer side of the batch job queue.

A tick fetches due pending jobs, claims each one with a conditional update,
runs its handler and records the terminal status. Several workers may tick
against the same database; a claim that affects no rows means another
worker owns the job and it is skipped.

Every claimed job ends in a terminal state. Terminal writes are retried, a
completion that cannot be written falls back to `failed`, and a job that
still sits in `processing` after `processing_timeout_seconds` is failed by
the next tick.
"""

import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from ai_gateway.config.loader import QueueConfig
from ai_gateway.core.errors import GatewayError
from ai_gateway.core.gateway import InferenceGateway
from ai_gateway.storage.models import QueueJob
from ai_gateway.storage.repository import JobRepository
from .handlers import ResultSink, run_job
from .queue import JobQueue

logger = structlog.get_logger()

MAX_ERROR_LENGTH = 1000

# Each attempt already waits out the connection's lock timeout
TERMINAL_WRITE_ATTEMPTS = 3

STALE_JOB_ERROR = "StaleJob: no terminal status recorded before the processing timeout"


@dataclass
class TickReport:
    """What one worker tick did."""
    fetched: int = 0
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    swept: int = 0
    reaped: int = 0

    def to_dict(self) -> dict:
        return {
            "fetched": self.fetched,
            "claimed": self.claimed,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "retried": self.retried,
            "swept": self.swept,
            "reaped": self.reaped,
        }


class QueueWorker:
    """Processes queue jobs through the inference gateway."""

    def __init__(
        self,
        repository: JobRepository,
        queue: JobQueue,
        gateway: InferenceGateway,
        sink: ResultSink,
        config: Optional[QueueConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = repository
        self.queue = queue
        self.gateway = gateway
        self.sink = sink
        self.config = config or QueueConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def tick(self, now: Optional[datetime] = None, sweep: bool = True) -> TickReport:
        """Process every job due at `now`, up to the configured batch size.

        Args:
            now: Reference time, defaults to the worker clock
            sweep: Also delete completed jobs past the retention window

        Returns:
            TickReport with per-outcome counts
        """
        now = now or self._clock()
        report = TickReport()

        report.reaped = self.repository.fail_stale(
            now - timedelta(seconds=self.config.processing_timeout_seconds), STALE_JOB_ERROR
        )
        if report.reaped:
            logger.warning("stale_jobs_failed", count=report.reaped)

        jobs = self.repository.fetch_pending(now, limit=self.config.batch_size)
        report.fetched = len(jobs)

        for job in jobs:
            if not self.repository.claim(job.id, now):
                report.skipped += 1
                logger.debug("job_claim_skipped", job_id=job.id)
                continue
            report.claimed += 1

            error = self._process(job)
            if error is None:
                report.completed += 1
                continue

            report.failed += 1
            if isinstance(error, GatewayError):
                # Malformed payloads and configuration fail the same way every time
                logger.info("job_retry_skipped", job_id=job.id, error_type=type(error).__name__)
            elif self.queue.retry(job, now=now):
                report.retried += 1

        if sweep:
            report.swept = self.queue.sweep(self.config.retention_days, now=now)

        if report.fetched or report.swept or report.reaped:
            logger.info("worker_tick", **report.to_dict())
        return report

    def _process(self, job: QueueJob) -> Optional[Exception]:
        """Run a claimed job and record its terminal status.

        Returns:
            None when the job completed, otherwise the error that failed it
        """
        log = logger.bind(job_id=job.id, job_type=job.job_type, attempt=job.attempt_count)
        try:
            outcome = run_job(self.gateway, self.sink, job.job_type, job.payload)
        except Exception as e:
            log.exception("job_failed")
            self._record_failure(job, f"{type(e).__name__}: {e}", log)
            return e

        summary = outcome.summary()
        try:
            self._write_terminal(
                lambda: self.repository.complete(job.id, result_summary=summary), log
            )
        except sqlite3.Error as e:
            log.exception("job_completion_not_recorded")
            self._record_failure(
                job, f"Completion not recorded: {type(e).__name__}: {e}", log, result_summary=summary
            )
            return e

        log.info("job_completed", summary=summary)
        return None

    def _record_failure(
        self,
        job: QueueJob,
        message: str,
        log,
        result_summary: Optional[str] = None
    ) -> None:
        try:
            self._write_terminal(
                lambda: self.repository.fail(job.id, message[:MAX_ERROR_LENGTH], result_summary), log
            )
        except sqlite3.Error:
            # The job stays processing until fail_stale picks it up
            log.exception("job_failure_not_recorded")

    def _write_terminal(self, write: Callable[[], bool], log) -> None:
        """Run a terminal status write, retrying database errors."""
        for attempt in range(1, TERMINAL_WRITE_ATTEMPTS + 1):
            try:
                updated = write()
            except sqlite3.Error as e:
                if attempt == TERMINAL_WRITE_ATTEMPTS:
                    raise
                log.warning("terminal_write_retry", attempt=attempt, error=str(e))
                continue
            if not updated:
                log.warning("job_no_longer_processing")
            return

    def run(
        self,
        interval_seconds: float = 60.0,
        max_ticks: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep
    ) -> int:
        """Tick forever (or `max_ticks` times), sleeping between ticks.

        Returns:
            Number of ticks performed
        """
        ticks = 0
        logger.info("worker_started", interval_seconds=interval_seconds)
        try:
            while max_ticks is None or ticks < max_ticks:
                self.tick()
                ticks += 1
                if max_ticks is None or ticks < max_ticks:
                    sleep(interval_seconds)
        except KeyboardInterrupt:
            logger.info("worker_stopped", ticks=ticks)
        return ticks
