"""Tests for the SQLite-backed job queue."""

import threading
import time

import pytest

from seocrawl.job_queue import JobQueue, QueueFullError, calculate_backoff_delay
from seocrawl.models import CrawlJob, JobState, OriginKind
from seocrawl.url_normalizer import job_identity


def make_job(url: str, run_id: int = 1, priority: int = 20,
             origin: OriginKind = OriginKind.DISCOVERED_LINK, **metadata) -> CrawlJob:
    return CrawlJob(
        url=url,
        run_id=run_id,
        priority=priority,
        idempotency_key=job_identity(run_id, url),
        origin_kind=origin,
        metadata=metadata,
    )


@pytest.fixture
def queue():
    q = JobQueue(max_attempts=3, job_timeout=60)
    yield q
    q.close()


# =============================================================================
# Enqueue
# =============================================================================

class TestEnqueue:
    """Tests for idempotent enqueueing."""

    def test_enqueue_creates_job(self, queue):
        """A new key creates a waiting job."""
        job = make_job("https://example.com/a")

        assert queue.enqueue(job) is True
        assert job.id is not None
        assert queue.counts(1)[JobState.WAITING.value] == 1

    def test_duplicate_key_is_ignored(self, queue):
        """The same run and URL collapse into one job."""
        assert queue.enqueue(make_job("https://example.com/a")) is True
        assert queue.enqueue(make_job("https://example.com/a", priority=100)) is False
        assert queue.outstanding(1) == 1

    def test_same_url_in_other_run(self, queue):
        """Keys are per run."""
        queue.enqueue(make_job("https://example.com/a", run_id=1))
        queue.enqueue(make_job("https://example.com/a", run_id=2))

        assert queue.run_ids() == {1, 2}

    def test_batch_counts_only_new_jobs(self, queue):
        """enqueue_batch returns the number of jobs created."""
        queue.enqueue(make_job("https://example.com/a"))
        created = queue.enqueue_batch([
            make_job("https://example.com/a"),
            make_job("https://example.com/b"),
            make_job("https://example.com/b"),
            make_job("https://example.com/c"),
        ])

        assert created == 2
        assert queue.outstanding(1) == 3

    def test_concurrent_enqueue_is_idempotent(self, queue):
        """Concurrent producers of the same URL create one job."""
        results = []

        def produce():
            results.append(queue.enqueue(make_job("https://example.com/race")))

        threads = [threading.Thread(target=produce) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert queue.outstanding(1) == 1

    def test_capacity_limit(self):
        """Enqueueing past max_jobs raises after storing what fits."""
        queue = JobQueue(max_jobs=2)
        with pytest.raises(QueueFullError) as exc_info:
            queue.enqueue_batch([make_job(f"https://example.com/{i}") for i in range(5)])

        assert exc_info.value.created == 2
        assert queue.outstanding(1) == 2
        queue.close()

    def test_not_accepting(self, queue):
        """A queue that stopped accepting refuses every enqueue."""
        queue.accepting = False

        with pytest.raises(QueueFullError):
            queue.enqueue(make_job("https://example.com/a"))

    def test_payload_round_trip(self, queue):
        """Claimed jobs carry their payload and metadata."""
        queue.enqueue(make_job(
            "https://source.com/post", priority=10, origin=OriginKind.BACKLINK_DISCOVERY,
            discoveredVia="static", targetDomain="example.com",
        ))

        job = queue.claim()

        assert job.url == "https://source.com/post"
        assert job.origin_kind == OriginKind.BACKLINK_DISCOVERY
        assert job.metadata == {"discoveredVia": "static", "targetDomain": "example.com"}
        assert job.to_payload()["runId"] == 1


# =============================================================================
# Dispatch
# =============================================================================

class TestClaim:
    """Tests for priority dispatch."""

    def test_priority_order(self, queue):
        """Higher priority first, insertion order within a tier."""
        queue.enqueue(make_job("https://example.com/link-1", priority=20))
        queue.enqueue(make_job("https://example.com/sitemap", priority=55))
        queue.enqueue(make_job("https://example.com/", priority=100, origin=OriginKind.SEED))
        queue.enqueue(make_job("https://example.com/link-2", priority=20))

        order = []
        while (job := queue.claim()) is not None:
            order.append(job.url)
            queue.complete(job)

        assert order == [
            "https://example.com/",
            "https://example.com/sitemap",
            "https://example.com/link-1",
            "https://example.com/link-2",
        ]

    def test_claim_marks_active(self, queue):
        """A claimed job is active and not claimable again."""
        queue.enqueue(make_job("https://example.com/a"))
        job = queue.claim()

        assert job.state == JobState.ACTIVE
        assert queue.claim() is None
        assert queue.counts(1)[JobState.ACTIVE.value] == 1
        assert queue.has_job(job.idempotency_key)

    def test_complete_removes_job(self, queue):
        """Completed jobs leave the queue, freeing the key."""
        job = make_job("https://example.com/a")
        queue.enqueue(job)
        queue.complete(queue.claim())

        assert queue.outstanding(1) == 0
        assert queue.enqueue(make_job("https://example.com/a")) is True

    def test_held_runs_are_skipped(self, queue):
        """Jobs of a held run stay parked."""
        queue.enqueue(make_job("https://example.com/a", run_id=1, priority=100))
        queue.enqueue(make_job("https://other.com/b", run_id=2, priority=10))
        queue.hold_run(1)

        job = queue.claim()
        assert job.run_id == 2
        queue.complete(job)
        assert queue.claim() is None

        queue.release_run(1)
        assert queue.claim().run_id == 1

    def test_requeue_keeps_attempts(self, queue):
        """requeue returns a job to waiting without counting an attempt."""
        queue.enqueue(make_job("https://example.com/a"))
        queue.requeue(queue.claim())

        job = queue.claim()
        assert job is not None
        assert job.attempts == 0


# =============================================================================
# Failure handling
# =============================================================================

class TestFailures:
    """Tests for retry, abandonment and stall recovery."""

    def test_backoff_delay_bounds(self):
        """Delays double from 2s with ±25% jitter, capped at 30s."""
        for retry, base in [(0, 2.0), (1, 4.0), (2, 8.0), (3, 16.0), (10, 30.0)]:
            delay = calculate_backoff_delay(retry)
            assert base * 0.75 <= delay <= base * 1.25

    def test_fail_reschedules_with_delay(self, queue):
        """A retryable failure delays the job."""
        queue.enqueue(make_job("https://example.com/a"))
        job = queue.claim()

        assert queue.fail(job, "timeout") is True
        assert queue.counts(1)[JobState.DELAYED.value] == 1
        assert queue.claim() is None

    def test_abandon_after_max_attempts(self, queue):
        """The job is dropped once it reaches max_attempts."""
        queue.enqueue(make_job("https://example.com/a"))

        for attempt in range(3):
            job = queue.claim()
            assert job is not None
            rescheduled = queue.fail(job, "boom")
            if rescheduled:
                # Make the delayed job claimable now
                queue.conn.execute("UPDATE crawl_jobs SET available_at = 0")

        assert rescheduled is False
        assert queue.outstanding(1) == 0

    def test_non_retryable_failure_abandons(self, queue):
        """retryable=False drops the job at once."""
        queue.enqueue(make_job("https://example.com/a"))

        assert queue.fail(queue.claim(), "redirect loop", retryable=False) is False
        assert queue.outstanding(1) == 0

    def test_recover_stalled(self, queue):
        """Active jobs older than the timeout are rescheduled."""
        queue.enqueue(make_job("https://example.com/a"))
        queue.claim()

        assert queue.recover_stalled(now=time.time() + 10) == (0, 0)
        assert queue.recover_stalled(now=time.time() + 120) == (1, 0)
        assert queue.counts(1)[JobState.DELAYED.value] == 1

    def test_reset_active(self, queue):
        """Jobs left active by a previous process return to waiting."""
        queue.enqueue(make_job("https://example.com/a"))
        queue.enqueue(make_job("https://example.com/b"))
        queue.claim()
        queue.claim()

        assert queue.reset_active() == 2
        assert queue.counts(1)[JobState.WAITING.value] == 2

    def test_remove_pending_leaves_active(self, queue):
        """Removing a run's queued jobs does not touch the active one."""
        for path in ("a", "b", "c"):
            queue.enqueue(make_job(f"https://example.com/{path}"))
        queue.claim()

        assert queue.remove_pending(1) == 2
        assert queue.counts(1) == {"waiting": 0, "delayed": 0, "active": 1}


class TestLookups:
    """Tests for counting and key lookups."""

    def test_existing_keys(self, queue):
        """existing_keys returns the subset with outstanding jobs."""
        queue.enqueue(make_job("https://example.com/a"))
        keys = [job_identity(1, "https://example.com/a"), job_identity(1, "https://example.com/b")]

        assert queue.existing_keys(keys) == {keys[0]}

    def test_pending_count_excludes_origin(self, queue):
        """Backlink discovery jobs can be left out of pending counts."""
        queue.enqueue(make_job("https://example.com/a"))
        queue.enqueue(make_job("https://source.com/x", priority=10, origin=OriginKind.BACKLINK_DISCOVERY))

        assert queue.pending_count(1) == 2
        assert queue.pending_count(1, exclude_origin=OriginKind.BACKLINK_DISCOVERY) == 1
