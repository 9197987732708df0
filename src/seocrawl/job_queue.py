"""
Durable, priority-ordered crawl job queue backed by SQLite.

Each job row carries the minimal wire payload plus bookkeeping columns.
The idempotency key is UNIQUE, so concurrent enqueues of the same URL for
the same run collapse into one outstanding job without any extra locking;
the queue is the single source of truth for "already scheduled".

States:
    waiting  -> claimable now
    delayed  -> claimable once available_at passes (retry backoff)
    active   -> claimed by a worker

Completed and abandoned jobs are deleted.
"""

import json
import logging
import random
import sqlite3
import threading
import time
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from seocrawl.constants import (
    DEFAULT_JOB_ATTEMPTS,
    DEFAULT_JOB_TIMEOUT_SECONDS,
    EXPONENTIAL_BACKOFF_BASE,
    INITIAL_BACKOFF_DELAY_SECONDS,
    MAX_BACKOFF_DELAY_SECONDS,
)
from seocrawl.models import CrawlJob, JobState, OriginKind

logger = logging.getLogger(__name__)

SQL_IN_CHUNK = 500

CREATE_QUEUE_SQL = """
CREATE TABLE IF NOT EXISTS crawl_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    idempotency_key TEXT NOT NULL UNIQUE,
    run_id INTEGER NOT NULL,
    priority INTEGER NOT NULL,
    origin_kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    state TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    available_at REAL NOT NULL,
    started_at REAL,
    last_error TEXT
);
CREATE INDEX IF NOT EXISTS idx_crawl_jobs_claim ON crawl_jobs(state, priority DESC, id);
CREATE INDEX IF NOT EXISTS idx_crawl_jobs_run ON crawl_jobs(run_id, state);
"""

PENDING_STATES = (JobState.WAITING.value, JobState.DELAYED.value)


class QueueFullError(Exception):
    """The queue is at capacity or is refusing new work."""

    def __init__(self, message: str, created: int = 0):
        super().__init__(message)
        self.created = created


def calculate_backoff_delay(retry_count: int) -> float:
    """Calculate exponential backoff delay with jitter.

    Args:
        retry_count: Number of retries already attempted (0-indexed)

    Returns:
        Delay in seconds before the job becomes claimable again
    """
    delay = INITIAL_BACKOFF_DELAY_SECONDS * (EXPONENTIAL_BACKOFF_BASE ** retry_count)
    delay = min(delay, MAX_BACKOFF_DELAY_SECONDS)
    # ±25% so retries of a failed batch don't land together
    jitter = delay * random.uniform(-0.25, 0.25)
    return delay + jitter


class JobQueue:
    """
    SQLite-backed work queue shared by all workers.

    Features:
    - Priority ordering (higher first, insertion order within a tier)
    - Idempotent enqueue by key
    - Retry with exponential backoff, abandon after max_attempts
    - Stall recovery for jobs exceeding the wall-clock timeout
    - Per-run holds so paused runs keep their jobs parked
    - Optional capacity limit
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        max_jobs: Optional[int] = None,
        max_attempts: int = DEFAULT_JOB_ATTEMPTS,
        job_timeout: float = DEFAULT_JOB_TIMEOUT_SECONDS,
    ):
        """
        Initialize the queue.

        Args:
            db_path: SQLite file path (or sqlite:/// URL, or :memory:)
            max_jobs: Maximum rows held at once; None means unbounded
            max_attempts: Failed executions before a job is abandoned
            job_timeout: Seconds an active job may run before it counts as stalled
        """
        self.db_path = db_path.replace("sqlite:///", "")
        self.max_jobs = max_jobs
        self.max_attempts = max_attempts
        self.job_timeout = job_timeout
        self.accepting = True

        self._lock = threading.Lock()
        self._held_runs: Set[int] = set()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        with self._lock, self.conn:
            self.conn.executescript(CREATE_QUEUE_SQL)
        logger.debug(f"Job queue ready at {self.db_path}")

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    # Enqueue

    def enqueue(self, job: CrawlJob) -> bool:
        """
        Add a job unless one with the same key is outstanding.

        Returns:
            True if a new job was created

        Raises:
            QueueFullError: If intake is paused or the queue is at capacity
        """
        return self.enqueue_batch([job]) == 1

    def enqueue_batch(self, jobs: Iterable[CrawlJob]) -> int:
        """
        Add jobs, skipping keys that are already outstanding.

        Returns:
            Number of jobs actually created

        Raises:
            QueueFullError: If intake is paused or capacity is reached; the
                error's `created` counts jobs stored before the limit hit
        """
        jobs = list(jobs)
        if not jobs:
            return 0
        if not self.accepting:
            raise QueueFullError("Job queue is not accepting new work")

        now = time.time()
        created = 0
        full = False
        with self._lock, self.conn:
            remaining = None
            if self.max_jobs is not None:
                total = self.conn.execute("SELECT COUNT(*) FROM crawl_jobs").fetchone()[0]
                remaining = self.max_jobs - total

            for job in jobs:
                if remaining is not None and remaining <= 0:
                    full = True
                    break
                cursor = self.conn.execute(
                    """INSERT OR IGNORE INTO crawl_jobs
                       (idempotency_key, run_id, priority, origin_kind, payload, state, available_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (job.idempotency_key, job.run_id, job.priority, job.origin_kind.value,
                     json.dumps(job.to_payload()), JobState.WAITING.value, now),
                )
                if cursor.rowcount:
                    job.id = cursor.lastrowid
                    job.state = JobState.WAITING
                    created += 1
                    if remaining is not None:
                        remaining -= 1

        if full:
            raise QueueFullError(f"Job queue at capacity ({self.max_jobs} jobs)", created=created)
        return created

    # Dispatch

    def claim(self) -> Optional[CrawlJob]:
        """
        Claim the highest-priority available job, marking it active.

        Jobs of held runs are never claimed.

        Returns:
            The claimed job, or None when nothing is available
        """
        now = time.time()
        sql = (
            "SELECT * FROM crawl_jobs WHERE state IN (?, ?) AND available_at <= ?"
        )
        params: List = [*PENDING_STATES, now]
        with self._lock, self.conn:
            if self._held_runs:
                held = sorted(self._held_runs)
                sql += f" AND run_id NOT IN ({', '.join('?' for _ in held)})"
                params.extend(held)
            sql += " ORDER BY priority DESC, id ASC LIMIT 1"

            row = self.conn.execute(sql, params).fetchone()
            if row is None:
                return None
            self.conn.execute(
                "UPDATE crawl_jobs SET state = ?, started_at = ? WHERE id = ?",
                (JobState.ACTIVE.value, now, row["id"]),
            )
        job = self._row_to_job(row)
        job.state = JobState.ACTIVE
        job.started_at = datetime.fromtimestamp(now)
        return job

    def complete(self, job: CrawlJob) -> None:
        """Remove a finished job (success, 404 or policy skip)."""
        self.remove(job)

    def remove(self, job: CrawlJob) -> None:
        with self._lock, self.conn:
            self.conn.execute("DELETE FROM crawl_jobs WHERE id = ?", (job.id,))

    def fail(self, job: CrawlJob, error: str, retryable: bool = True) -> bool:
        """
        Record a failed execution.

        Args:
            job: Active job that failed
            error: Error description kept on the row
            retryable: False abandons the job immediately

        Returns:
            True if the job was rescheduled, False if it was abandoned
        """
        with self._lock, self.conn:
            row = self.conn.execute(
                "SELECT attempts FROM crawl_jobs WHERE id = ?", (job.id,),
            ).fetchone()
            if row is None:
                return False
            return self._fail_locked(job.id, job.url, row["attempts"], error, retryable)

    def _fail_locked(self, job_id: int, url: str, attempts: int, error: str, retryable: bool) -> bool:
        attempts += 1
        if not retryable or attempts >= self.max_attempts:
            self.conn.execute("DELETE FROM crawl_jobs WHERE id = ?", (job_id,))
            logger.warning(f"Abandoned job for {url} after {attempts} attempt(s): {error}")
            return False

        delay = calculate_backoff_delay(attempts - 1)
        self.conn.execute(
            """UPDATE crawl_jobs
               SET state = ?, attempts = ?, available_at = ?, started_at = NULL, last_error = ?
               WHERE id = ?""",
            (JobState.DELAYED.value, attempts, time.time() + delay, error, job_id),
        )
        logger.info(f"Will retry ({attempts}/{self.max_attempts}) after {delay:.1f}s: {url}")
        return True

    def requeue(self, job: CrawlJob) -> None:
        """Return an active job to waiting without counting an attempt."""
        with self._lock, self.conn:
            self.conn.execute(
                "UPDATE crawl_jobs SET state = ?, started_at = NULL WHERE id = ?",
                (JobState.WAITING.value, job.id),
            )

    def recover_stalled(self, now: Optional[float] = None) -> Tuple[int, int]:
        """
        Handle active jobs that exceeded the job timeout.

        Returns:
            (rescheduled, abandoned) counts
        """
        now = now if now is not None else time.time()
        cutoff = now - self.job_timeout
        rescheduled = abandoned = 0
        with self._lock, self.conn:
            rows = self.conn.execute(
                "SELECT id, payload, attempts FROM crawl_jobs WHERE state = ? AND started_at < ?",
                (JobState.ACTIVE.value, cutoff),
            ).fetchall()
            for row in rows:
                url = json.loads(row["payload"])["url"]
                if self._fail_locked(row["id"], url, row["attempts"], "stalled", True):
                    rescheduled += 1
                else:
                    abandoned += 1
        if rows:
            logger.warning(f"Recovered {len(rows)} stalled job(s): {rescheduled} rescheduled, {abandoned} abandoned")
        return rescheduled, abandoned

    def reset_active(self) -> int:
        """Return every active job to waiting; used when a process starts."""
        with self._lock, self.conn:
            cursor = self.conn.execute(
                "UPDATE crawl_jobs SET state = ?, started_at = NULL WHERE state = ?",
                (JobState.WAITING.value, JobState.ACTIVE.value),
            )
        return cursor.rowcount

    def remove_pending(self, run_id: int) -> int:
        """Delete a run's waiting and delayed jobs. Active jobs are left to their workers."""
        with self._lock, self.conn:
            cursor = self.conn.execute(
                "DELETE FROM crawl_jobs WHERE run_id = ? AND state IN (?, ?)",
                (run_id, *PENDING_STATES),
            )
        if cursor.rowcount:
            logger.info(f"Removed {cursor.rowcount} pending job(s) for run {run_id}")
        return cursor.rowcount

    # Lookups

    def has_job(self, idempotency_key: str) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT 1 FROM crawl_jobs WHERE idempotency_key = ?", (idempotency_key,),
            ).fetchone()
        return row is not None

    def existing_keys(self, keys: Iterable[str]) -> Set[str]:
        """Subset of keys that have an outstanding job."""
        key_list = list(dict.fromkeys(keys))
        found: Set[str] = set()
        with self._lock:
            for i in range(0, len(key_list), SQL_IN_CHUNK):
                chunk = key_list[i:i + SQL_IN_CHUNK]
                rows = self.conn.execute(
                    f"SELECT idempotency_key FROM crawl_jobs WHERE idempotency_key IN ({', '.join('?' for _ in chunk)})",
                    chunk,
                ).fetchall()
                found.update(row[0] for row in rows)
        return found

    def counts(self, run_id: Optional[int] = None) -> Dict[str, int]:
        """Outstanding jobs per state, optionally for one run."""
        sql = "SELECT state, COUNT(*) FROM crawl_jobs"
        params: List = []
        if run_id is not None:
            sql += " WHERE run_id = ?"
            params.append(run_id)
        sql += " GROUP BY state"
        result = {state.value: 0 for state in JobState}
        with self._lock:
            for state, count in self.conn.execute(sql, params).fetchall():
                result[state] = count
        return result

    def outstanding(self, run_id: int) -> int:
        return sum(self.counts(run_id).values())

    def pending_count(self, run_id: int, exclude_origin: Optional[OriginKind] = None) -> int:
        """Waiting plus delayed jobs of a run, optionally ignoring one origin kind."""
        sql = "SELECT COUNT(*) FROM crawl_jobs WHERE run_id = ? AND state IN (?, ?)"
        params: List = [run_id, *PENDING_STATES]
        if exclude_origin is not None:
            sql += " AND origin_kind != ?"
            params.append(exclude_origin.value)
        with self._lock:
            return self.conn.execute(sql, params).fetchone()[0]

    def run_ids(self) -> Set[int]:
        """Runs with at least one outstanding job."""
        with self._lock:
            rows = self.conn.execute("SELECT DISTINCT run_id FROM crawl_jobs").fetchall()
        return {row[0] for row in rows}

    # Holds

    def hold_run(self, run_id: int) -> None:
        with self._lock:
            self._held_runs.add(run_id)

    def release_run(self, run_id: int) -> None:
        with self._lock:
            self._held_runs.discard(run_id)

    def is_held(self, run_id: int) -> bool:
        return run_id in self._held_runs

    @property
    def held_runs(self) -> Set[int]:
        return set(self._held_runs)

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> CrawlJob:
        job = CrawlJob.from_payload(json.loads(row["payload"]))
        job.id = row["id"]
        job.state = JobState(row["state"])
        job.attempts = row["attempts"]
        job.available_at = datetime.fromtimestamp(row["available_at"])
        job.started_at = datetime.fromtimestamp(row["started_at"]) if row["started_at"] else None
        job.last_error = row["last_error"]
        return job
