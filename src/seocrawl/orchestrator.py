"""
Crawl run orchestration.

A run moves through:

    pending / pending_approval --start--> in_progress
    in_progress --pause--> paused --resume--> in_progress
    in_progress | paused --stop--> stopped
    in_progress --> completed | failed

Every transition is a compare-and-set on the stored status, so concurrent
control requests cannot both win. Workers never receive cancellation
signals: they re-read the run status around every slow step and abandon
the job when the run is no longer in progress. Completion is declared only
by the supervisor's reconciliation pass, never by the worker that happens
to finish the last job.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlsplit

from seocrawl.audit_log import AuditLog, LogCategory, SkipReason
from seocrawl.backlinks import BacklinkGraph, BacklinkSourceFinder, NullSourceFinder
from seocrawl.config import CrawlConfig
from seocrawl.constants import (
    PRIORITY_DISCOVERED_LINK,
    PRIORITY_SEED,
    PRIORITY_SITEMAP_BASE,
    PRIORITY_SITEMAP_SCALE,
    DEFAULT_SITEMAP_PRIORITY_HINT,
)
from seocrawl.database import AbstractDatabase
from seocrawl.deduplication import DeduplicationStore
from seocrawl.extractor import ContentExtractor
from seocrawl.fetch import FetchError, FetchPipeline
from seocrawl.infrastructure.rate_limiter import CrawlDelayLimiter
from seocrawl.job_queue import JobQueue, QueueFullError
from seocrawl.link_filter import select_followable_links
from seocrawl.models import (
    CrawlJob,
    CrawlRun,
    ExtractedPage,
    LinkRecord,
    OriginKind,
    PageRecord,
    RunStatus,
    SitemapEntry,
    TransitionResult,
)
from seocrawl.robots import RobotsCache, RobotsPolicy, RobotsRuleset, RobotsUnavailableError
from seocrawl.sitemap_parser import SitemapDiscoverer, SitemapError
from seocrawl.url_normalizer import is_navigable, job_identity, normalize_url, site_domain

logger = logging.getLogger(__name__)


# Status graph: every status maps to the statuses it may move to.
ALLOWED_TRANSITIONS: Dict[RunStatus, Set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.PENDING_APPROVAL, RunStatus.IN_PROGRESS, RunStatus.FAILED},
    RunStatus.PENDING_APPROVAL: {RunStatus.PENDING_APPROVAL, RunStatus.IN_PROGRESS, RunStatus.FAILED},
    RunStatus.IN_PROGRESS: {RunStatus.PAUSED, RunStatus.STOPPED, RunStatus.COMPLETED, RunStatus.FAILED},
    RunStatus.PAUSED: {RunStatus.IN_PROGRESS, RunStatus.STOPPED},
    RunStatus.STOPPED: set(),
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
}

STARTABLE = (RunStatus.PENDING, RunStatus.PENDING_APPROVAL)


class InvalidTransitionError(Exception):
    """A control request does not apply to the run's current status."""

    def __init__(self, run_id: int, current: Optional[RunStatus], target: RunStatus):
        self.run_id = run_id
        self.current = current
        self.target = target
        if current is None:
            message = f"Run {run_id} not found"
        else:
            message = f"Cannot move run {run_id} from {current.value} to {target.value}"
        super().__init__(message)


class JobOutcome(str, Enum):
    """How a worker finished with a job."""
    CRAWLED = "crawled"
    SKIPPED = "skipped"
    NOT_FOUND = "not_found"
    HELD = "held"
    ABORTED = "aborted"


def sitemap_priority(entry: SitemapEntry) -> int:
    """Queue priority for a sitemap URL from its <priority> hint."""
    hint = entry.priority if entry.priority is not None else DEFAULT_SITEMAP_PRIORITY_HINT
    return PRIORITY_SITEMAP_BASE + int(round(hint * PRIORITY_SITEMAP_SCALE))


class CrawlOrchestrator:
    """
    Drives crawl runs: lifecycle control, seeding and the worker pool.

    Features:
    - Compare-and-set status transitions returning TransitionResult
    - robots.txt verification before anything is queued
    - Sitemap seeding overlapped with crawling
    - Worker pool with per-step run status re-checks
    - Supervisor for holds, stall recovery and completion
    - Pause of all runs when the queue runs out of capacity
    """

    def __init__(
        self,
        db: AbstractDatabase,
        queue: JobQueue,
        fetcher: FetchPipeline,
        config: Optional[CrawlConfig] = None,
        robots: Optional[RobotsPolicy] = None,
        sitemaps: Optional[SitemapDiscoverer] = None,
        extractor: Optional[ContentExtractor] = None,
        dedup: Optional[DeduplicationStore] = None,
        audit: Optional[AuditLog] = None,
        limiter: Optional[CrawlDelayLimiter] = None,
        finder: Optional[BacklinkSourceFinder] = None,
        backlinks: Optional[BacklinkGraph] = None,
    ):
        self.db = db
        self.queue = queue
        self.fetcher = fetcher
        self.config = config or CrawlConfig()
        self.robots = robots or RobotsPolicy(
            fetcher,
            cache=RobotsCache(self.config.robots_ttl),
            user_agent=self.config.user_agent,
            fetch_timeout=self.config.robots_fetch_timeout,
            max_crawl_delay=self.config.max_crawl_delay,
        )
        self.limiter = limiter or CrawlDelayLimiter(self.config.delay_check_interval)
        self.sitemaps = sitemaps or SitemapDiscoverer(
            fetcher,
            head_timeout=self.config.sitemap_head_timeout,
            max_depth=self.config.sitemap_max_depth,
            limiter=self.limiter,
            default_delay=self.config.default_crawl_delay,
            max_delay=self.config.max_crawl_delay,
        )
        self.extractor = extractor or ContentExtractor()
        self.dedup = dedup or DeduplicationStore(db, queue, self.config.retention_days)
        self.audit = audit or AuditLog(db)
        self.backlinks = backlinks or BacklinkGraph(
            db, queue, self.dedup, self.audit, finder or NullSourceFinder(), self.config,
        )

        self._seeding: Dict[int, asyncio.Task] = {}
        self._discovery: Dict[int, Set[asyncio.Task]] = {}
        self._discovery_started: Set[int] = set()
        self._workers: List[asyncio.Task] = []
        self._supervisor: Optional[asyncio.Task] = None
        self._closing = False

    # =========================================================================
    # Runs
    # =========================================================================

    def create_run(self, base_url: str) -> CrawlRun:
        """Create a pending run for base_url's site."""
        normalized = normalize_url(base_url)
        if not is_navigable(normalized):
            raise ValueError(f"Not a crawlable URL: {base_url}")
        site = self.db.get_or_create_site(site_domain(normalized), normalized)
        run = self.db.create_run(site.id)
        logger.info(f"Created run {run.id} for {site.domain}")
        return run

    def _transition(self, run_id: int, target: RunStatus,
                    from_states: Optional[Iterable[RunStatus]] = None) -> CrawlRun:
        """
        Compare-and-set a run's status.

        Raises:
            InvalidTransitionError: If the run is missing, the move is not in
                the status graph, or another writer changed the status first
        """
        run = self.db.get_run(run_id)
        if run is None:
            raise InvalidTransitionError(run_id, None, target)

        allowed = {status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets}
        if from_states is not None:
            allowed &= set(from_states)
        if run.status not in allowed:
            raise InvalidTransitionError(run_id, run.status, target)
        if not self.db.update_run_status(run_id, target, expected=allowed):
            current = self.db.get_run(run_id)
            raise InvalidTransitionError(run_id, current.status if current else None, target)

        logger.info(f"Run {run_id}: {run.status.value} -> {target.value}")
        return self.db.get_run(run_id)

    def _rejected(self, run_id: int, error: Exception) -> TransitionResult:
        current = self.db.get_run(run_id)
        return TransitionResult(
            success=False,
            run_id=run_id,
            status=current.status if current else None,
            message=str(error),
        )

    # =========================================================================
    # Control surface
    # =========================================================================

    async def start(self, run_id: int, skip_robots_check: bool = False) -> TransitionResult:
        """
        Start a pending run.

        Verifies robots.txt first; an unreachable robots.txt moves the run to
        pending_approval unless skip_robots_check records operator approval.
        Queues the base URL, then seeds sitemap URLs in the background.
        """
        try:
            run = self.db.get_run(run_id)
            if run is None or run.status not in STARTABLE:
                raise InvalidTransitionError(run_id, run.status if run else None, RunStatus.IN_PROGRESS)
            return await self._start(run, skip_robots_check)
        except InvalidTransitionError as e:
            logger.warning(str(e))
            return self._rejected(run_id, e)
        except Exception as e:
            logger.error(f"Failed to start run {run_id}: {e}", exc_info=True)
            self.audit.log(run_id, LogCategory.SETUP, f"Setup failed: {e}")
            self.db.update_run_status(run_id, RunStatus.FAILED, expected=STARTABLE)
            return self._rejected(run_id, e)

    async def _start(self, run: CrawlRun, skip_robots_check: bool) -> TransitionResult:
        site = self.db.get_site(run.site_id)
        base_url = site.base_url
        self.audit.log(run.id, LogCategory.SETUP, f"Starting crawl of {base_url}", url=base_url)

        if skip_robots_check:
            self.db.set_robots_approved(run.id, True)

        ruleset: Optional[RobotsRuleset] = None
        try:
            ruleset = await self.robots.get_ruleset(base_url)
        except RobotsUnavailableError as e:
            if not skip_robots_check and not run.robots_approved:
                self._transition(run.id, RunStatus.PENDING_APPROVAL, from_states=STARTABLE)
                self.audit.log(
                    run.id, LogCategory.SETUP,
                    f"robots.txt could not be verified; approval required ({e})",
                    url=base_url,
                )
                return TransitionResult(
                    success=False,
                    run_id=run.id,
                    status=RunStatus.PENDING_APPROVAL,
                    message="robots.txt unavailable; operator approval required",
                )
            self.audit.log(run.id, LogCategory.SETUP, "robots.txt unavailable; crawling with operator approval")

        crawl_delay = self.config.default_crawl_delay
        if ruleset is not None:
            delay = ruleset.crawl_delay(self.config.max_crawl_delay)
            if delay is not None:
                crawl_delay = delay
            self.db.update_site(site.id, robots_txt_url=ruleset.robots_url, crawl_delay=crawl_delay)
            self.audit.log(
                run.id, LogCategory.SETUP,
                f"robots.txt verified ({ruleset.robots_url or 'none, unrestricted'}); crawl delay {crawl_delay}s",
                robots_url=ruleset.robots_url, crawl_delay=crawl_delay,
            )

        sitemap_urls = await self.sitemaps.discover(base_url, ruleset)
        if sitemap_urls:
            self.db.update_site(site.id, sitemap_url=sitemap_urls[0])
        self.audit.log(
            run.id, LogCategory.SETUP, f"Found {len(sitemap_urls)} sitemap(s)", sitemaps=sitemap_urls,
        )

        self._transition(run.id, RunStatus.IN_PROGRESS, from_states=STARTABLE)
        queued = self._begin_crawl(run.id, site.id, base_url, ruleset, sitemap_urls, set())

        return TransitionResult(
            success=True,
            run_id=run.id,
            status=RunStatus.IN_PROGRESS,
            message="Crawl started",
            sitemaps_found=len(sitemap_urls),
            urls_queued=queued,
        )

    def _begin_crawl(
        self,
        run_id: int,
        site_id: int,
        base_url: str,
        ruleset: Optional[RobotsRuleset],
        sitemap_urls: List[str],
        skip_recent: Set[str],
    ) -> int:
        """Queue the base URL and launch background seeding. No awaits: the run
        is already in progress and must never look idle to reconciliation."""
        self.queue.release_run(run_id)
        queued = 0
        seed = normalize_url(base_url)

        if ruleset is not None and not ruleset.is_allowed(seed):
            self.audit.skipped(run_id, seed, SkipReason.ROBOTS)
        elif seed in skip_recent:
            self.audit.skipped(run_id, seed, SkipReason.RECENT)
        elif self.dedup.should_crawl(seed, run_id, site_id):
            job = CrawlJob(
                url=seed,
                run_id=run_id,
                priority=PRIORITY_SEED,
                idempotency_key=job_identity(run_id, seed),
                origin_kind=OriginKind.SEED,
            )
            try:
                if self.queue.enqueue(job):
                    queued = 1
                    self.db.increment_pages_total(run_id)
                    self.audit.log(run_id, LogCategory.QUEUED, f"Queued base URL {seed}", url=seed)
            except QueueFullError as e:
                self._handle_queue_full(e)
                return 0

        previous = self._seeding.get(run_id)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.create_task(
            self._seed_from_sitemaps(run_id, site_id, sitemap_urls, skip_recent, queued),
            name=f"seed-{run_id}",
        )
        self._seeding[run_id] = task
        task.add_done_callback(lambda t, key=run_id: self._seeding_done(key, t))
        return queued

    def _seeding_done(self, run_id: int, task: asyncio.Task) -> None:
        if self._seeding.get(run_id) is task:
            del self._seeding[run_id]

    async def pause(self, run_id: int) -> TransitionResult:
        """Pause a running crawl; its queued jobs stay parked."""
        try:
            self._transition(run_id, RunStatus.PAUSED)
        except InvalidTransitionError as e:
            logger.warning(str(e))
            return self._rejected(run_id, e)

        self.queue.hold_run(run_id)
        self.audit.log(run_id, LogCategory.SETUP, "Crawl paused")
        return TransitionResult(success=True, run_id=run_id, status=RunStatus.PAUSED, message="Crawl paused")

    async def resume(self, run_id: int, skip_recent_urls: Optional[Iterable[str]] = None) -> TransitionResult:
        """
        Resume a paused run and re-seed it from its sitemaps.

        Args:
            run_id: Paused run
            skip_recent_urls: URLs not to queue again; defaults to this run's
                pages crawled within the retention window
        """
        try:
            run = self.db.get_run(run_id)
            if run is None or run.status != RunStatus.PAUSED:
                raise InvalidTransitionError(run_id, run.status if run else None, RunStatus.IN_PROGRESS)

            if skip_recent_urls is None:
                skip_recent_urls = self.recent_urls(run_id)
            skip_recent = {normalize_url(url) for url in skip_recent_urls}

            site = self.db.get_site(run.site_id)
            ruleset = None
            try:
                ruleset = await self.robots.get_ruleset(site.base_url)
            except RobotsUnavailableError as e:
                if not run.robots_approved:
                    logger.warning(f"robots.txt unavailable on resume of run {run_id}: {e}")
            sitemap_urls = await self.sitemaps.discover(site.base_url, ruleset)

            # Manual resume is what re-opens intake after exhaustion
            self.queue.accepting = True
            self._transition(run_id, RunStatus.IN_PROGRESS, from_states=(RunStatus.PAUSED,))
        except InvalidTransitionError as e:
            logger.warning(str(e))
            return self._rejected(run_id, e)

        self.audit.log(
            run_id, LogCategory.SETUP,
            f"Crawl resumed; skipping {len(skip_recent)} recently crawled URL(s)",
            skipped=len(skip_recent),
        )
        queued = self._begin_crawl(run_id, site.id, site.base_url, ruleset, sitemap_urls, skip_recent)
        return TransitionResult(
            success=True,
            run_id=run_id,
            status=RunStatus.IN_PROGRESS,
            message="Crawl resumed",
            sitemaps_found=len(sitemap_urls),
            urls_queued=queued,
        )

    async def stop(self, run_id: int) -> TransitionResult:
        """
        Stop a run for good.

        The stored status is the abort signal; removing not-yet-dispatched
        jobs afterwards is best effort and bounded in time.
        """
        try:
            self._transition(run_id, RunStatus.STOPPED)
        except InvalidTransitionError as e:
            logger.warning(str(e))
            return self._rejected(run_id, e)

        self._cancel_background(run_id)
        removed = 0
        try:
            removed = await asyncio.wait_for(
                asyncio.to_thread(self.queue.remove_pending, run_id),
                timeout=self.config.stop_removal_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Timed out removing queued jobs for stopped run {run_id}")
        except Exception as e:
            logger.error(f"Failed to remove queued jobs for stopped run {run_id}: {e}")
        self.queue.release_run(run_id)

        self.audit.log(run_id, LogCategory.SETUP, f"Crawl stopped; {removed} queued job(s) removed", removed=removed)
        return TransitionResult(success=True, run_id=run_id, status=RunStatus.STOPPED, message="Crawl stopped")

    async def delete_run(self, run_id: int) -> TransitionResult:
        """Delete a run and its data; in-flight jobs abort on their next check."""
        run = self.db.get_run(run_id)
        if run is None:
            return TransitionResult(success=False, run_id=run_id, message=f"Run {run_id} not found")
        self._cancel_background(run_id)
        self.db.delete_run(run_id)
        self.queue.remove_pending(run_id)
        self.queue.release_run(run_id)
        self.backlinks.forget_run(run_id)
        logger.info(f"Deleted run {run_id}")
        return TransitionResult(success=True, run_id=run_id, message="Run deleted")

    def recent_urls(self, run_id: int) -> List[str]:
        """Pages of run crawled within the retention window, if the run started inside it."""
        run = self.db.get_run(run_id)
        if run is None or run.started_at is None:
            return []
        cutoff = datetime.now() - timedelta(days=self.config.retention_days)
        if run.started_at < cutoff:
            return []
        return [page.url for page in self.db.get_page_records(run_id) if page.crawled_at > cutoff]

    def status(self, run_id: int) -> Optional[Dict]:
        """Run counters plus outstanding job counts."""
        run = self.db.get_run(run_id)
        if run is None:
            return None
        return {
            "run_id": run.id,
            "site_id": run.site_id,
            "status": run.status.value,
            "started_at": run.started_at.isoformat() if run.started_at else None,
            "completed_at": run.completed_at.isoformat() if run.completed_at else None,
            "pages_crawled": run.pages_crawled,
            "pages_total": run.pages_total,
            "robots_approved": run.robots_approved,
            "jobs": self.queue.counts(run_id),
            "seeding": run_id in self._seeding,
        }

    def _cancel_background(self, run_id: int) -> None:
        task = self._seeding.pop(run_id, None)
        if task is not None and not task.done():
            task.cancel()
        for task in self._discovery.pop(run_id, set()):
            if not task.done():
                task.cancel()

    async def wait_for_seeding(self, run_id: int) -> None:
        """Wait until background sitemap seeding for run has finished."""
        task = self._seeding.get(run_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # =========================================================================
    # Seeding
    # =========================================================================

    async def _run_halted(self, run_id: int) -> bool:
        run = self.db.get_run(run_id)
        return run is None or run.status != RunStatus.IN_PROGRESS

    async def _seed_from_sitemaps(
        self,
        run_id: int,
        site_id: int,
        sitemap_urls: List[str],
        skip_recent: Set[str],
        already_queued: int,
    ) -> None:
        """Parse, filter and queue every sitemap's URLs for a run."""
        queued = 0
        failed = 0
        try:
            for sitemap_url in sitemap_urls:
                if await self._run_halted(run_id):
                    logger.info(f"Seeding of run {run_id} halted")
                    return
                try:
                    entries = await self.sitemaps.parse(sitemap_url)
                except SitemapError as e:
                    failed += 1
                    logger.warning(f"Sitemap {sitemap_url} failed for run {run_id}: {e}")
                    self.audit.log(
                        run_id, LogCategory.SETUP, f"Failed to parse sitemap {sitemap_url}: {e}",
                        sitemap=sitemap_url,
                    )
                    continue
                queued += await self._seed_entries(run_id, site_id, sitemap_url, entries, skip_recent)

            if sitemap_urls and failed == len(sitemap_urls) and already_queued + queued == 0:
                run = self.db.get_run(run_id)
                if run is not None and run.pages_crawled == 0 and self.queue.outstanding(run_id) == 0:
                    self._fail_run(run_id, "Every sitemap failed and nothing could be queued")
                    return

            self.audit.log(
                run_id, LogCategory.FILTERING,
                f"Sitemap seeding finished: {queued} URL(s) queued from {len(sitemap_urls) - failed} sitemap(s)",
                queued=queued, failed_sitemaps=failed,
            )
        except QueueFullError as e:
            self._handle_queue_full(e)
        except asyncio.CancelledError:
            logger.debug(f"Seeding of run {run_id} cancelled")
            raise
        except Exception as e:
            logger.error(f"Seeding failed for run {run_id}: {e}", exc_info=True)
            self._fail_run(run_id, f"Seeding failed: {e}")

    async def _seed_entries(
        self,
        run_id: int,
        site_id: int,
        sitemap_url: str,
        entries: List[SitemapEntry],
        skip_recent: Set[str],
    ) -> int:
        size = self.config.filter_batch_size
        batches = [entries[i:i + size] for i in range(0, len(entries), size)]
        self.audit.log(
            run_id, LogCategory.FILTERING,
            f"Filtering {len(entries)} URL(s) from {sitemap_url} in {len(batches)} batch(es)",
            sitemap=sitemap_url, urls=len(entries),
        )

        semaphore = asyncio.Semaphore(self.config.concurrent_filter_batches)

        async def run_batch(batch: List[SitemapEntry]) -> int:
            async with semaphore:
                if await self._run_halted(run_id):
                    return 0
                accepted = await self._filter_sitemap_batch(run_id, site_id, batch, skip_recent)
                return self._queue_sitemap_urls(run_id, accepted)

        counts = await asyncio.gather(*(run_batch(batch) for batch in batches))
        return sum(counts)

    async def _filter_sitemap_batch(
        self,
        run_id: int,
        site_id: int,
        batch: List[SitemapEntry],
        skip_recent: Set[str],
    ) -> List[Tuple[str, int]]:
        """Filter order: robots.txt, recent-skip list, then deduplication."""
        approved = self.db.get_run(run_id).robots_approved
        candidates: Dict[str, int] = {}
        robots_skipped = recent_skipped = 0

        for entry in batch:
            url = normalize_url(entry.url)
            if not is_navigable(url) or url in candidates:
                continue
            if not await self._robots_allows(url, approved):
                robots_skipped += 1
                self.audit.skipped(run_id, url, SkipReason.ROBOTS)
                continue
            if url in skip_recent:
                recent_skipped += 1
                self.audit.skipped(run_id, url, SkipReason.RECENT)
                continue
            candidates[url] = sitemap_priority(entry)

        accepted = self.dedup.filter_batch(candidates, run_id, site_id)
        duplicates = len(candidates) - len(accepted)
        if robots_skipped or recent_skipped or duplicates:
            self.audit.log(
                run_id, LogCategory.FILTERING,
                f"Filtered batch: {len(accepted)} accepted, {robots_skipped} robots.txt, "
                f"{recent_skipped} recent, {duplicates} duplicate",
                accepted=len(accepted), robots=robots_skipped, recent=recent_skipped, duplicate=duplicates,
            )
        return [(url, candidates[url]) for url in accepted]

    def _queue_sitemap_urls(self, run_id: int, accepted: List[Tuple[str, int]]) -> int:
        size = self.config.queue_batch_size
        total = 0
        for i in range(0, len(accepted), size):
            chunk = accepted[i:i + size]
            jobs = [
                CrawlJob(
                    url=url,
                    run_id=run_id,
                    priority=priority,
                    idempotency_key=job_identity(run_id, url),
                    origin_kind=OriginKind.SITEMAP,
                )
                for url, priority in chunk
            ]
            try:
                created = self.queue.enqueue_batch(jobs)
            except QueueFullError as e:
                if e.created:
                    self.db.increment_pages_total(run_id, e.created)
                raise
            if created:
                total += created
                self.db.increment_pages_total(run_id, created)
                self.audit.log(run_id, LogCategory.QUEUED, f"Queued {created} sitemap URL(s)", count=created)
        return total

    def _fail_run(self, run_id: int, reason: str) -> None:
        try:
            self._transition(run_id, RunStatus.FAILED)
        except InvalidTransitionError as e:
            logger.debug(f"Not marking run {run_id} failed: {e}")
            return
        self.queue.remove_pending(run_id)
        self.audit.log(run_id, LogCategory.SETUP, f"Crawl failed: {reason}")

    def _handle_queue_full(self, error: QueueFullError) -> None:
        """Stop intake and pause every running crawl until an operator resumes."""
        logger.error(f"Job queue exhausted: {error}; pausing all active runs")
        self.queue.accepting = False
        for run in self.db.list_runs(RunStatus.IN_PROGRESS):
            try:
                self._transition(run.id, RunStatus.PAUSED, from_states=(RunStatus.IN_PROGRESS,))
            except InvalidTransitionError:
                continue
            self.queue.hold_run(run.id)
            self.audit.log(run.id, LogCategory.SETUP, "Job queue at capacity; crawl paused until resumed")

    # =========================================================================
    # Robots
    # =========================================================================

    async def _robots_allows(self, url: str, approved: bool) -> bool:
        try:
            return await self.robots.is_allowed(url)
        except RobotsUnavailableError:
            return approved

    # =========================================================================
    # Workers
    # =========================================================================

    async def _check_run(self, run_id: int) -> Tuple[Optional[CrawlRun], Optional[JobOutcome]]:
        """Current run and, when the job must not continue, how to dispose of it."""
        run = self.db.get_run(run_id)
        if run is None or run.status.is_terminal:
            return run, JobOutcome.ABORTED
        if run.status != RunStatus.IN_PROGRESS:
            return run, JobOutcome.HELD
        return run, None

    async def process_job(self, job: CrawlJob) -> JobOutcome:
        """
        Execute one job.

        Raises:
            FetchError: Retryable fetch failures (the caller reschedules)
        """
        run, halt = await self._check_run(job.run_id)
        if halt:
            return halt
        approved = run.robots_approved

        # Robots at dispatch time, whatever happened at enqueue
        ruleset: Optional[RobotsRuleset] = None
        try:
            ruleset = await self.robots.get_ruleset(job.url)
        except RobotsUnavailableError as e:
            if not approved:
                self.audit.skipped(job.run_id, job.url, SkipReason.ROBOTS_FAILED, error=str(e))
                return JobOutcome.SKIPPED
        if ruleset is not None and not ruleset.is_allowed(job.url):
            self.audit.skipped(job.run_id, job.url, SkipReason.ROBOTS)
            return JobOutcome.SKIPPED

        reason = self.dedup.check(job.url, job.run_id, run.site_id, at_dispatch=True)
        if reason is not None:
            self.audit.skipped(job.run_id, job.url, reason)
            return JobOutcome.SKIPPED

        run, halt = await self._check_run(job.run_id)
        if halt:
            return halt

        host = (urlsplit(job.url).hostname or "").lower()
        delay = ruleset.crawl_delay(self.config.max_crawl_delay) if ruleset is not None else None
        if delay is None:
            delay = self.config.default_crawl_delay
        await self.limiter.wait(host, delay, should_abort=lambda: self._run_halted(job.run_id))

        run, halt = await self._check_run(job.run_id)
        if halt:
            return halt

        async def redirect_guard(url: str) -> bool:
            return await self._robots_allows(url, approved)

        try:
            result = await self.fetcher.fetch(job.url, redirect_guard=redirect_guard)
        except FetchError as e:
            if e.retryable:
                raise
            self.audit.skipped(job.run_id, job.url, SkipReason(e.skip_reason), error=str(e))
            return JobOutcome.SKIPPED

        run, halt = await self._check_run(job.run_id)
        if halt:
            return halt

        if result.status_code == 404:
            self.audit.skipped(job.run_id, job.url, SkipReason.NOT_FOUND, status_code=404)
            return JobOutcome.NOT_FOUND

        page = self._extract(result.text, result.final_url, result.status_code, result.content_type)
        record = PageRecord(
            run_id=job.run_id,
            site_id=run.site_id,
            url=job.url,
            status_code=result.status_code,
            content_hash=page.content_hash,
            title=page.title,
            final_url=result.final_url,
            discovered_via=job.metadata.get("discoveredVia") or job.origin_kind.value,
            links=[
                LinkRecord(href=normalize_url(link.href), text=link.text, rel=link.rel,
                           is_external=link.is_external)
                for link in page.links
            ],
        )

        run, halt = await self._check_run(job.run_id)
        if halt:
            return halt

        stored = self.db.create_page_record(record)
        if stored is None:
            self.audit.skipped(job.run_id, job.url, SkipReason.DUPLICATE_RESULT)
            return JobOutcome.SKIPPED

        self.db.increment_pages_crawled(job.run_id)
        self.audit.log(
            job.run_id, LogCategory.CRAWLED, f"Crawled {job.url} ({result.status_code})",
            url=job.url, status_code=result.status_code, final_url=result.final_url,
            proxy=result.proxy_used, links=len(page.links),
        )

        self.backlinks.derive(stored, stored.links)

        if job.origin_kind != OriginKind.BACKLINK_DISCOVERY:
            await self._follow_links(job, run, page, result.final_url, approved)
            self._maybe_discover_backlinks(run)

        return JobOutcome.CRAWLED

    def _extract(self, html: str, final_url: str, status_code: int, content_type: str) -> ExtractedPage:
        if content_type and "html" not in content_type.lower():
            return ExtractedPage(url=final_url, status_code=status_code)
        return self.extractor.extract(html, final_url, status_code)

    async def _follow_links(self, job: CrawlJob, run: CrawlRun, page: ExtractedPage,
                            final_url: str, approved: bool) -> None:
        urls = select_followable_links(page.links, final_url, self.config.max_links_per_page)
        allowed = [url for url in urls if await self._robots_allows(url, approved)]
        accepted = self.dedup.filter_batch(allowed, job.run_id, run.site_id)
        if not accepted:
            return

        jobs = [
            CrawlJob(
                url=url,
                run_id=job.run_id,
                priority=PRIORITY_DISCOVERED_LINK,
                idempotency_key=job_identity(job.run_id, url),
                origin_kind=OriginKind.DISCOVERED_LINK,
            )
            for url in accepted
        ]
        try:
            created = self.queue.enqueue_batch(jobs)
        except QueueFullError as e:
            created = e.created
            self._handle_queue_full(e)
        if created:
            self.db.increment_pages_total(job.run_id, created)
            self.audit.log(
                job.run_id, LogCategory.QUEUED, f"Queued {created} link(s) found on {job.url}",
                url=job.url, count=created,
            )

    def _maybe_discover_backlinks(self, run: CrawlRun) -> None:
        if not self.config.backlink_discovery or isinstance(self.backlinks.finder, NullSourceFinder):
            return
        if run.id in self._discovery_started:
            return
        self._discovery_started.add(run.id)

        site = self.db.get_site(run.site_id)
        task = asyncio.create_task(self._discover_backlinks(run.id, site.id, site.base_url))
        tasks = self._discovery.setdefault(run.id, set())
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def _discover_backlinks(self, run_id: int, site_id: int, base_url: str) -> None:
        try:
            await self.backlinks.discover_external(
                run_id, site_id, base_url, should_abort=lambda: self._run_halted(run_id),
            )
        except QueueFullError as e:
            self._handle_queue_full(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Backlink discovery failed for run {run_id}: {e}")
            self.audit.log(run_id, LogCategory.BACKLINK_DISCOVERY, f"Backlink discovery failed: {e}")

    async def _handle_job(self, job: CrawlJob) -> None:
        """Run a claimed job and settle it in the queue."""
        try:
            outcome = await asyncio.wait_for(self.process_job(job), timeout=self.config.job_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Job for {job.url} exceeded {self.config.job_timeout}s")
            self._retry_or_abandon(job, "job timeout", SkipReason.MAX_RETRIES)
            return
        except FetchError as e:
            self._retry_or_abandon(job, str(e), SkipReason(e.skip_reason or SkipReason.MAX_RETRIES.value))
            return

        if outcome == JobOutcome.HELD:
            self.queue.requeue(job)
            self.queue.hold_run(job.run_id)
        elif outcome == JobOutcome.ABORTED:
            self.queue.remove(job)
            logger.debug(f"Dropped job for {job.url}: run {job.run_id} no longer active")
        else:
            self.queue.complete(job)

    def _retry_or_abandon(self, job: CrawlJob, error: str, reason: SkipReason) -> None:
        if not self.queue.fail(job, error, retryable=True):
            self.audit.skipped(job.run_id, job.url, reason, error=error)

    async def _worker(self, index: int) -> None:
        logger.debug(f"Worker {index} started")
        while not self._closing:
            job = self.queue.claim()
            if job is None:
                await asyncio.sleep(self.config.queue_poll_interval)
                continue
            try:
                await self._handle_job(job)
            except asyncio.CancelledError:
                self.queue.requeue(job)
                raise
            except Exception as e:
                logger.error(f"Worker {index} failed on {job.url}: {e}", exc_info=True)
                self.queue.fail(job, str(e), retryable=True)

    async def start_workers(self, count: Optional[int] = None) -> None:
        """Launch the worker pool and the supervisor."""
        if self._workers:
            return
        self._closing = False
        recovered = self.queue.reset_active()
        if recovered:
            logger.info(f"Returned {recovered} job(s) from a previous process to the queue")
        await self.reconcile()

        count = count or self.config.worker_count
        self._workers = [asyncio.create_task(self._worker(i), name=f"worker-{i}") for i in range(count)]
        self._supervisor = asyncio.create_task(self._supervise(), name="supervisor")
        logger.info(f"Started {count} worker(s)")

    async def shutdown(self) -> None:
        """Cancel workers and background tasks; in-flight jobs go back to the queue."""
        self._closing = True
        tasks = list(self._workers)
        if self._supervisor is not None:
            tasks.append(self._supervisor)
        tasks.extend(self._seeding.values())
        for run_tasks in self._discovery.values():
            tasks.extend(run_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._supervisor = None
        self._seeding.clear()
        self._discovery.clear()
        logger.info("Orchestrator shut down")

    # =========================================================================
    # Supervisor
    # =========================================================================

    async def _supervise(self) -> None:
        while not self._closing:
            await asyncio.sleep(self.config.reconcile_interval)
            try:
                await self.reconcile()
            except Exception as e:
                logger.error(f"Reconciliation failed: {e}", exc_info=True)

    def _has_background_work(self, run_id: int) -> bool:
        if run_id in self._seeding:
            return True
        return any(not task.done() for task in self._discovery.get(run_id, ()))

    async def reconcile(self) -> List[int]:
        """
        One supervision pass.

        - keep queue holds in line with stored statuses
        - drop queued jobs of stopped, finished or deleted runs
        - recover stalled jobs
        - complete in-progress runs with no outstanding or background work

        Returns:
            Ids of runs marked completed
        """
        queued_runs = self.queue.run_ids()
        for run_id in queued_runs | self.queue.held_runs:
            run = self.db.get_run(run_id)
            if run is None or run.status.is_terminal:
                self.queue.remove_pending(run_id)
                self.queue.release_run(run_id)
            elif run.status == RunStatus.IN_PROGRESS:
                self.queue.release_run(run_id)
            else:
                self.queue.hold_run(run_id)

        self.queue.recover_stalled()

        completed = []
        for run in self.db.list_runs(RunStatus.IN_PROGRESS):
            if self._has_background_work(run.id) or self.queue.outstanding(run.id):
                continue
            try:
                self._transition(run.id, RunStatus.COMPLETED, from_states=(RunStatus.IN_PROGRESS,))
            except InvalidTransitionError:
                continue
            self._discovery_started.discard(run.id)
            self.backlinks.forget_run(run.id)
            refreshed = self.db.get_run(run.id)
            self.audit.log(
                run.id, LogCategory.SETUP,
                f"Crawl completed: {refreshed.pages_crawled} page(s) crawled",
                pages_crawled=refreshed.pages_crawled, pages_total=refreshed.pages_total,
            )
            completed.append(run.id)
        return completed

    async def wait_for_run(self, run_id: int, timeout: Optional[float] = None,
                           poll_interval: float = 0.1) -> Optional[CrawlRun]:
        """
        Wait until a run is finished or paused.

        Returns:
            The run as last read (None if it was deleted)
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while True:
            run = self.db.get_run(run_id)
            if run is None or run.status.is_terminal or run.status in (RunStatus.PAUSED, RunStatus.PENDING_APPROVAL):
                return run
            if deadline is not None and loop.time() >= deadline:
                return run
            await asyncio.sleep(poll_interval)
