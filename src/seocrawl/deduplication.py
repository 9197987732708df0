"""
Three-tier URL deduplication.

Checks, in order, short-circuiting on the first hit:

1. the URL already has a page record in this run
2. the URL already has an outstanding job in this run (waiting, delayed or
   active), answered by the job queue's idempotency key
3. dispatch-time only: the URL has a page record for the same site, in any
   run, inside the retention window

Tier 3 never blocks enqueueing, so link discovery can still walk the site
graph; the skip happens when the job is about to execute. At dispatch the
job being executed is itself outstanding, so tier 2 is not consulted there.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from seocrawl.audit_log import SkipReason
from seocrawl.constants import DEFAULT_RETENTION_DAYS
from seocrawl.database import AbstractDatabase
from seocrawl.job_queue import JobQueue
from seocrawl.url_normalizer import job_identity, normalize_url

logger = logging.getLogger(__name__)


class DeduplicationStore:
    """Decides whether a URL still needs crawling for a run."""

    def __init__(
        self,
        db: AbstractDatabase,
        queue: JobQueue,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ):
        self.db = db
        self.queue = queue
        self.retention_days = retention_days

    def retention_cutoff(self, now: Optional[datetime] = None) -> datetime:
        """Oldest crawl time that still suppresses a re-crawl."""
        return (now or datetime.now()) - timedelta(days=self.retention_days)

    def check(self, url: str, run_id: int, site_id: int, at_dispatch: bool = False) -> Optional[SkipReason]:
        """
        Check a single URL.

        Args:
            url: URL (normalized again here, so raw URLs are accepted)
            run_id: Run the URL would be crawled in
            site_id: Site the run belongs to
            at_dispatch: True for the worker's re-check right before executing

        Returns:
            None if the URL should be crawled, otherwise the reason it should not
        """
        normalized = normalize_url(url)

        if self.db.find_page_record(normalized, run_id=run_id) is not None:
            return SkipReason.DUPLICATE

        if not at_dispatch:
            if self.queue.has_job(job_identity(run_id, normalized)):
                return SkipReason.DUPLICATE
            return None

        if self.retention_days > 0 and self.db.find_page_record(
            normalized, site_id=site_id, since=self.retention_cutoff(),
        ) is not None:
            return SkipReason.RECENT

        return None

    def should_crawl(self, url: str, run_id: int, site_id: int, at_dispatch: bool = False) -> bool:
        return self.check(url, run_id, site_id, at_dispatch) is None

    def classify_batch(
        self,
        urls: Iterable[str],
        run_id: int,
        site_id: int,
        at_dispatch: bool = False,
    ) -> Dict[str, Optional[SkipReason]]:
        """
        Set-based form of check().

        Each tier is one lookup for the whole batch. Repeats inside the
        batch are reported as duplicates of their first occurrence.

        Returns:
            Mapping of normalized URL to skip reason (None = crawl), in
            first-seen order
        """
        result: Dict[str, Optional[SkipReason]] = {}
        for url in urls:
            normalized = normalize_url(url)
            if normalized not in result:
                result[normalized] = None

        pending = list(result)
        if not pending:
            return result

        in_run = self.db.find_crawled_urls(pending, run_id=run_id)
        for url in in_run:
            result[url] = SkipReason.DUPLICATE
        pending = [url for url in pending if url not in in_run]

        if not at_dispatch and pending:
            keys = {job_identity(run_id, url): url for url in pending}
            for key in self.queue.existing_keys(keys):
                result[keys[key]] = SkipReason.DUPLICATE
            return result

        if at_dispatch and pending and self.retention_days > 0:
            recent = self.db.find_crawled_urls(
                pending, site_id=site_id, since=self.retention_cutoff(),
            )
            for url in recent:
                result[url] = SkipReason.RECENT

        return result

    def filter_batch(
        self,
        urls: Iterable[str],
        run_id: int,
        site_id: int,
        at_dispatch: bool = False,
    ) -> List[str]:
        """Normalized URLs from urls that should be crawled, in first-seen order."""
        classified = self.classify_batch(urls, run_id, site_id, at_dispatch)
        accepted = [url for url, reason in classified.items() if reason is None]
        logger.debug(f"Dedup batch for run {run_id}: {len(accepted)}/{len(classified)} accepted")
        return accepted
