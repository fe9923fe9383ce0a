"""
Repository pattern for data access.

Handles database operations for the append-only usage ledger and the
durable job queue. Timestamps are stored as UTC ISO-8601 strings so that
range filters can compare them lexicographically.
"""

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import JobStatus, QueueJob, UsageRecord


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger, queue and job result tables if they don't exist.

    ai_usage_log is an append-only ledger: no UPDATE or DELETE is ever
    issued against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS ai_usage_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                model_tier TEXT NOT NULL,
                model TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                cost REAL NOT NULL,
                feature TEXT NOT NULL,
                created_at TEXT NOT NULL,
                request_id TEXT
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_ai_usage_log_user_created
            ON ai_usage_log (user_id, created_at)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS queue_jobs (
                id TEXT PRIMARY KEY,
                job_type TEXT NOT NULL,
                payload TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                scheduled_at TEXT NOT NULL,
                processed_at TEXT,
                error_message TEXT,
                result_summary TEXT,
                attempt_count INTEGER NOT NULL DEFAULT 1,
                max_attempts INTEGER NOT NULL DEFAULT 1,
                retry_of TEXT,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_queue_jobs_status_scheduled
            ON queue_jobs (status, scheduled_at)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS job_results (
                job_type TEXT NOT NULL,
                user_id TEXT NOT NULL,
                result TEXT NOT NULL,
                stored_at TEXT NOT NULL,
                PRIMARY KEY (job_type, user_id)
            )
        """)
        conn.commit()
    finally:
        conn.close()


class UsageRepository:
    """Append-only access to the usage ledger."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append(self, record: UsageRecord) -> None:
        """Insert a single usage record into the ledger.

        Failures propagate: a lost ledger row would let spend go unaccounted.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO ai_usage_log
                (user_id, model_tier, model, prompt_tokens, completion_tokens,
                 cost, feature, created_at, request_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.user_id,
                record.model_tier,
                record.model,
                record.prompt_tokens,
                record.completion_tokens,
                record.cost,
                record.feature,
                _to_db(record.created_at),
                record.request_id
            ))
            conn.commit()
        finally:
            conn.close()

    def append_many(self, records: List[UsageRecord]) -> None:
        """Insert several records in one transaction."""
        if not records:
            return

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            for record in records:
                conn.execute("""
                    INSERT INTO ai_usage_log
                    (user_id, model_tier, model, prompt_tokens, completion_tokens,
                     cost, feature, created_at, request_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    record.user_id,
                    record.model_tier,
                    record.model,
                    record.prompt_tokens,
                    record.completion_tokens,
                    record.cost,
                    record.feature,
                    _to_db(record.created_at),
                    record.request_id
                ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def sum_cost(self, user_id: str, start: datetime, end: datetime) -> float:
        """Total cost of a user's records with start <= created_at <= end."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT SUM(cost) FROM ai_usage_log
                WHERE user_id = ? AND created_at >= ? AND created_at <= ?
            """, (user_id, _to_db(start), _to_db(end)))
            row = cursor.fetchone()
            return float(row[0] or 0)
        finally:
            conn.close()

    def count_calls(self, user_id: str, feature: str, since: datetime) -> int:
        """Number of billed calls for a user's feature since a point in time."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT COUNT(*) FROM ai_usage_log
                WHERE user_id = ? AND feature = ? AND created_at >= ?
            """, (user_id, feature, _to_db(since)))
            return int(cursor.fetchone()[0])
        finally:
            conn.close()

    def get_recent_records(
        self,
        user_id: Optional[str] = None,
        feature: Optional[str] = None,
        days: Optional[int] = None,
        limit: int = 1000
    ) -> List[UsageRecord]:
        """Get recent usage records with optional filtering.

        Args:
            user_id: Optional filter for a specific user
            feature: Optional filter for a specific feature
            days: Optional number of days to look back
            limit: Maximum number of records to return

        Returns:
            List of usage records ordered by created_at (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT user_id, model_tier, model, prompt_tokens,
                       completion_tokens, cost, feature, created_at, request_id
                FROM ai_usage_log
            """
            params: List[Any] = []
            conditions = []

            if user_id:
                conditions.append("user_id = ?")
                params.append(user_id)
            if feature:
                conditions.append("feature = ?")
                params.append(feature)
            if days is not None:
                conditions.append("created_at >= ?")
                params.append(_to_db(utc_now() - timedelta(days=days)))

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY created_at DESC, id DESC LIMIT ?"
            params.append(limit)

            cursor = conn.execute(query, params)
            return [
                UsageRecord(
                    user_id=row[0],
                    model_tier=row[1],
                    model=row[2],
                    prompt_tokens=row[3],
                    completion_tokens=row[4],
                    cost=row[5],
                    feature=row[6],
                    created_at=_from_db(row[7]),
                    request_id=row[8]
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def get_usage_stats(self, user_id: Optional[str] = None, days: int = 30) -> Dict[str, float]:
        """Aggregate request count, cost and tokens over the last `days` days."""
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT
                    COUNT(*),
                    SUM(cost),
                    AVG(cost),
                    SUM(prompt_tokens + completion_tokens)
                FROM ai_usage_log
                WHERE created_at >= ?
            """
            params: List[Any] = [_to_db(utc_now() - timedelta(days=days))]
            if user_id:
                query += " AND user_id = ?"
                params.append(user_id)

            row = conn.execute(query, params).fetchone()
            return {
                "total_requests": row[0] or 0,
                "total_cost": float(row[1] or 0),
                "avg_cost": float(row[2] or 0),
                "total_tokens": row[3] or 0
            }
        finally:
            conn.close()


_JOB_COLUMNS = """
    id, job_type, payload, status, scheduled_at, processed_at, error_message,
    result_summary, attempt_count, max_attempts, retry_of, created_at
"""


def _row_to_job(row) -> QueueJob:
    return QueueJob(
        id=row[0],
        job_type=row[1],
        payload=json.loads(row[2]),
        status=JobStatus(row[3]),
        scheduled_at=_from_db(row[4]),
        processed_at=_from_db(row[5]),
        error_message=row[6],
        result_summary=row[7],
        attempt_count=row[8],
        max_attempts=row[9],
        retry_of=row[10],
        created_at=_from_db(row[11])
    )


class JobRepository:
    """Durable job records.

    Status updates are conditional on the expected prior status, so an
    update that would skip `processing` or leave a terminal state affects no
    rows and returns False.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert(
        self,
        job_type: str,
        payload: Dict[str, Any],
        scheduled_at: datetime,
        max_attempts: int = 1,
        attempt_count: int = 1,
        retry_of: Optional[str] = None,
        created_at: Optional[datetime] = None
    ) -> str:
        """Insert a pending job and return its id."""
        job_id = str(uuid.uuid4())
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO queue_jobs
                (id, job_type, payload, status, scheduled_at, attempt_count,
                 max_attempts, retry_of, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                job_id,
                job_type,
                json.dumps(payload, sort_keys=True),
                JobStatus.PENDING.value,
                _to_db(scheduled_at),
                attempt_count,
                max_attempts,
                retry_of,
                _to_db(created_at or utc_now())
            ))
            conn.commit()
        finally:
            conn.close()
        return job_id

    def get(self, job_id: str) -> Optional[QueueJob]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM queue_jobs WHERE id = ?", (job_id,)
            ).fetchone()
            return _row_to_job(row) if row else None
        finally:
            conn.close()

    def fetch_pending(self, now: datetime, limit: int = 50) -> List[QueueJob]:
        """Pending jobs due at `now`, oldest scheduled first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT {_JOB_COLUMNS} FROM queue_jobs
                WHERE status = ? AND scheduled_at <= ?
                ORDER BY scheduled_at ASC
                LIMIT ?
            """, (JobStatus.PENDING.value, _to_db(now), limit))
            return [_row_to_job(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def _transition(
        self,
        job_id: str,
        expected: JobStatus,
        target: JobStatus,
        assignments: Dict[str, Any]
    ) -> bool:
        columns = ", ".join(f"{name} = ?" for name in assignments)
        sets = "status = ?" + (", " + columns if columns else "")
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"UPDATE queue_jobs SET {sets} WHERE id = ? AND status = ?",
                (target.value, *assignments.values(), job_id, expected.value)
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def claim(self, job_id: str, now: datetime) -> bool:
        """Move a job from pending to processing.

        Returns False when another worker already claimed it.
        """
        return self._transition(
            job_id, JobStatus.PENDING, JobStatus.PROCESSING, {"processed_at": _to_db(now)}
        )

    def complete(self, job_id: str, result_summary: Optional[str] = None) -> bool:
        return self._transition(
            job_id, JobStatus.PROCESSING, JobStatus.COMPLETED, {"result_summary": result_summary}
        )

    def fail(self, job_id: str, error_message: str, result_summary: Optional[str] = None) -> bool:
        return self._transition(
            job_id,
            JobStatus.PROCESSING,
            JobStatus.FAILED,
            {"error_message": error_message, "result_summary": result_summary}
        )

    def fail_stale(self, claimed_before: datetime, error_message: str) -> int:
        """Fail jobs still processing that were claimed before the cutoff.

        A worker that died or could not write a terminal status leaves its
        job in `processing`; this is the only way such a job ends.
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE queue_jobs SET status = ?, error_message = ?
                WHERE status = ? AND processed_at < ?
            """, (
                JobStatus.FAILED.value,
                error_message,
                JobStatus.PROCESSING.value,
                _to_db(claimed_before)
            ))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def delete_completed_before(self, cutoff: datetime) -> int:
        """Delete completed jobs processed before cutoff. Failed jobs are kept."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                DELETE FROM queue_jobs
                WHERE status = ? AND processed_at < ?
            """, (JobStatus.COMPLETED.value, _to_db(cutoff)))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def count_by_status(self) -> Dict[str, int]:
        conn = get_connection(self.db_path)
        try:
            counts = {status.value: 0 for status in JobStatus}
            cursor = conn.execute("SELECT status, COUNT(*) FROM queue_jobs GROUP BY status")
            for status, count in cursor.fetchall():
                counts[status] = count
            return counts
        finally:
            conn.close()


class JobResultRepository:
    """Generated content from batch jobs, latest result per (job type, user).

    Satisfies the ResultSink protocol, so a worker can write into it directly.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def store(self, job_type: str, user_id: str, result: Dict[str, Any]) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO job_results (job_type, user_id, result, stored_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (job_type, user_id)
                DO UPDATE SET result = excluded.result, stored_at = excluded.stored_at
            """, (job_type, user_id, json.dumps(result, sort_keys=True), _to_db(utc_now())))
            conn.commit()
        finally:
            conn.close()

    def get(self, job_type: str, user_id: str) -> Optional[Dict[str, Any]]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT result FROM job_results WHERE job_type = ? AND user_id = ?",
                (job_type, user_id)
            ).fetchone()
            return json.loads(row[0]) if row else None
        finally:
            conn.close()

    def list_for(self, job_type: str) -> Dict[str, Dict[str, Any]]:
        """All stored results of a job type, keyed by user id."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT user_id, result FROM job_results WHERE job_type = ? ORDER BY user_id",
                (job_type,)
            )
            return {user_id: json.loads(result) for user_id, result in cursor.fetchall()}
        finally:
            conn.close()
