"""
Backlink derivation.

Three independent paths produce backlinks, all converging on the storage
uniqueness constraint (target site, source page, link):

- forward: a newly stored page links to URLs that already have page records
- retroactive: a newly stored page is the target of links extracted earlier
- external discovery: a pluggable finder suggests source pages for a site;
  they are queued at low priority and, once crawled, flow into the forward
  path. Sources that were already crawled produce forward backlinks at once.

Duplicates from interleaved forward/retroactive derivation are dropped by
skip-on-conflict inserts; call order is never relied on.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from seocrawl.audit_log import AuditLog, LogCategory
from seocrawl.config import CrawlConfig
from seocrawl.constants import PRIORITY_BACKLINK_DISCOVERY
from seocrawl.database import AbstractDatabase
from seocrawl.deduplication import DeduplicationStore
from seocrawl.job_queue import JobQueue, QueueFullError
from seocrawl.link_filter import is_sitemap_url
from seocrawl.models import Backlink, CrawlJob, LinkRecord, OriginKind, PageRecord
from seocrawl.url_normalizer import is_navigable, job_identity, normalize_url, site_domain

logger = logging.getLogger(__name__)

CRAWL_LABEL = "crawl"

AbortCheck = Callable[[], Awaitable[bool]]


def parse_rel(rel: Optional[str]) -> Tuple[bool, bool, bool]:
    """Split a rel attribute into (is_dofollow, is_sponsored, is_ugc)."""
    tokens = set((rel or "").lower().replace(",", " ").split())
    return "nofollow" not in tokens, "sponsored" in tokens, "ugc" in tokens


def discovery_label(page: PageRecord) -> str:
    """How backlinks sourced from page were discovered."""
    if page.discovered_via in {kind.value for kind in OriginKind}:
        return CRAWL_LABEL
    return page.discovered_via or CRAWL_LABEL


# =============================================================================
# External source finders
# =============================================================================

class BacklinkSourceFinder(ABC):
    """Suggests pages that may link to a target URL.

    Implementations may fail or be rate limited; callers treat any
    exception as "no sources".
    """

    name: str = "external"

    @abstractmethod
    async def find_sources(self, target_url: str, max_results: int) -> List[Dict[str, str]]:
        """
        Find candidate source pages.

        Args:
            target_url: Page or site to find backlinks for
            max_results: Upper bound on returned candidates

        Returns:
            List of {"url": ..., "title": ...}
        """
        pass


class NullSourceFinder(BacklinkSourceFinder):
    """Default finder: external discovery disabled."""

    name = "none"

    async def find_sources(self, target_url: str, max_results: int) -> List[Dict[str, str]]:
        return []


class StaticSourceFinder(BacklinkSourceFinder):
    """Finder returning a fixed mapping of target domain to source URLs."""

    def __init__(self, sources: Dict[str, List[str]], name: str = "static"):
        self.sources = sources
        self.name = name

    async def find_sources(self, target_url: str, max_results: int) -> List[Dict[str, str]]:
        urls = self.sources.get(site_domain(target_url), [])
        return [{"url": url, "title": ""} for url in urls[:max_results]]


# =============================================================================
# Graph
# =============================================================================

@dataclass
class DiscoveryResult:
    """Outcome of one external discovery pass."""
    domain: str
    found: int = 0
    queued: int = 0
    immediate_backlinks: int = 0
    skipped: int = 0
    cached: bool = False


class BacklinkGraph:
    """Derives backlinks from stored pages and drives external discovery."""

    def __init__(
        self,
        db: AbstractDatabase,
        queue: JobQueue,
        dedup: DeduplicationStore,
        audit: AuditLog,
        finder: Optional[BacklinkSourceFinder] = None,
        config: Optional[CrawlConfig] = None,
    ):
        self.db = db
        self.queue = queue
        self.dedup = dedup
        self.audit = audit
        self.finder = finder or NullSourceFinder()
        self.config = config or CrawlConfig()
        self._searched: Dict[str, float] = {}
        self._queued_per_run: Dict[int, int] = {}

    # Forward / retroactive

    def record_forward(self, page: PageRecord, links: Optional[List[LinkRecord]] = None) -> int:
        """
        Create backlinks for page's links whose targets already have page records.

        Args:
            page: Stored page (id assigned)
            links: Stored links of the page; loaded when omitted

        Returns:
            Number of backlinks created
        """
        if links is None:
            links = self.db.get_links(page.id)
        candidates = [link for link in links if link.id is not None and link.href != page.url]
        if not candidates:
            return 0

        target_sites = self.db.find_page_sites(link.href for link in candidates)
        label = discovery_label(page)
        backlinks = []
        for link in candidates:
            for site_id in sorted(target_sites.get(link.href, ())):
                backlinks.append(self._build(site_id, page.id, link, label))

        created = self.db.create_backlinks_batch(backlinks, skip_duplicates=True)
        if created:
            logger.debug(f"Forward: {created} backlink(s) from {page.url}")
        return created

    def record_retroactive(self, page: PageRecord) -> int:
        """
        Create backlinks from earlier-extracted links that point at page.

        Returns:
            Number of backlinks created
        """
        links = self.db.find_links_to(page.url, exclude_page_id=page.id)
        if not links:
            return 0

        labels: Dict[int, str] = {}
        backlinks = []
        for link in links:
            if link.page_id not in labels:
                source = self.db.get_page_record(link.page_id)
                labels[link.page_id] = discovery_label(source) if source else CRAWL_LABEL
            backlinks.append(self._build(page.site_id, link.page_id, link, labels[link.page_id]))

        created = self.db.create_backlinks_batch(backlinks, skip_duplicates=True)
        if created:
            logger.debug(f"Retroactive: {created} backlink(s) to {page.url}")
        return created

    def derive(self, page: PageRecord, links: Optional[List[LinkRecord]] = None) -> int:
        """Run forward and retroactive derivation; failures are logged, never raised."""
        created = 0
        try:
            created += self.record_forward(page, links)
        except Exception as e:
            logger.error(f"Forward backlink derivation failed for {page.url}: {e}")
        try:
            created += self.record_retroactive(page)
        except Exception as e:
            logger.error(f"Retroactive backlink derivation failed for {page.url}: {e}")
        return created

    @staticmethod
    def _build(target_site_id: int, source_page_id: int, link: LinkRecord, label: str) -> Backlink:
        is_dofollow, is_sponsored, is_ugc = parse_rel(link.rel)
        return Backlink(
            target_site_id=target_site_id,
            source_page_id=source_page_id,
            link_id=link.id,
            anchor_text=link.text,
            is_dofollow=is_dofollow,
            is_sponsored=is_sponsored,
            is_ugc=is_ugc,
            discovered_via=label,
        )

    # External discovery

    def _claim_domain(self, run_id: int, domain: str) -> bool:
        """Mark domain searched for run; False if already searched within the TTL."""
        key = f"{run_id}:{domain}"
        now = time.time()
        searched_at = self._searched.get(key)
        if searched_at is not None and now - searched_at < self.config.backlink_domain_cache_ttl:
            return False
        self._searched[key] = now
        return True

    def forget_run(self, run_id: int) -> None:
        prefix = f"{run_id}:"
        for key in [k for k in self._searched if k.startswith(prefix)]:
            del self._searched[key]
        self._queued_per_run.pop(run_id, None)

    async def discover_external(
        self,
        run_id: int,
        site_id: int,
        target_url: str,
        should_abort: Optional[AbortCheck] = None,
        poll_interval: Optional[float] = None,
    ) -> DiscoveryResult:
        """
        Ask the finder for sources linking to target_url's domain and queue them.

        Waits while the run has more ordinary pending jobs than the defer
        threshold. Finder failures are logged and yield an empty result.

        Args:
            run_id: Run the discovered jobs belong to
            site_id: Target site
            target_url: URL whose domain is searched
            should_abort: Async predicate checked while deferring
            poll_interval: Seconds between deferral checks

        Returns:
            DiscoveryResult with counters
        """
        domain = site_domain(target_url)
        result = DiscoveryResult(domain=domain)

        if isinstance(self.finder, NullSourceFinder):
            return result
        if not self._claim_domain(run_id, domain):
            result.cached = True
            return result

        poll_interval = poll_interval if poll_interval is not None else self.config.backlink_defer_poll_interval
        while self.queue.pending_count(run_id, exclude_origin=OriginKind.BACKLINK_DISCOVERY) > self.config.backlink_defer_threshold:
            if should_abort is not None and await should_abort():
                self._searched.pop(f"{run_id}:{domain}", None)
                return result
            await asyncio.sleep(poll_interval)

        if should_abort is not None and await should_abort():
            self._searched.pop(f"{run_id}:{domain}", None)
            return result

        try:
            sources = await self.finder.find_sources(target_url, self.config.backlink_max_results)
        except Exception as e:
            logger.warning(f"Backlink source finder '{self.finder.name}' failed for {domain}: {e}")
            self.audit.log(
                run_id, LogCategory.BACKLINK_DISCOVERY,
                f"Backlink discovery failed for {domain}: {e}", domain=domain, finder=self.finder.name,
            )
            return result

        candidates = self._candidate_urls(sources, domain)
        result.found = len(candidates)
        if not candidates:
            self.audit.log(
                run_id, LogCategory.BACKLINK_DISCOVERY,
                f"No backlink sources found for {domain}", domain=domain, finder=self.finder.name,
            )
            return result

        already_crawled = self.db.find_crawled_urls(candidates)
        for url in already_crawled:
            source = self.db.find_page_record(url)
            if source is not None:
                result.immediate_backlinks += self.record_forward(source)

        to_queue = [url for url in candidates if url not in already_crawled]
        to_queue = self.dedup.filter_batch(to_queue, run_id, site_id)
        result.skipped = len(candidates) - len(already_crawled) - len(to_queue)

        limit = self.config.backlink_crawl_limit
        if limit is not None:
            room = max(0, limit - self._queued_per_run.get(run_id, 0))
            result.skipped += max(0, len(to_queue) - room)
            to_queue = to_queue[:room]

        jobs = [
            CrawlJob(
                url=url,
                run_id=run_id,
                priority=PRIORITY_BACKLINK_DISCOVERY,
                idempotency_key=job_identity(run_id, url),
                origin_kind=OriginKind.BACKLINK_DISCOVERY,
                metadata={"discoveredVia": self.finder.name, "targetDomain": domain},
            )
            for url in to_queue
        ]
        try:
            result.queued = self.queue.enqueue_batch(jobs)
        except QueueFullError as e:
            result.queued = e.created
            raise
        finally:
            self._queued_per_run[run_id] = self._queued_per_run.get(run_id, 0) + result.queued
            if result.queued:
                self.db.increment_pages_total(run_id, result.queued)
            self.audit.log(
                run_id, LogCategory.BACKLINK_DISCOVERY,
                f"Found {result.found} backlink source(s) for {domain}: "
                f"{result.queued} queued, {result.immediate_backlinks} backlink(s) from crawled pages, "
                f"{result.skipped} skipped",
                domain=domain, finder=self.finder.name, found=result.found, queued=result.queued,
                immediate_backlinks=result.immediate_backlinks, skipped=result.skipped,
            )
        return result

    @staticmethod
    def _candidate_urls(sources: List[Dict[str, str]], domain: str) -> List[str]:
        seen: Set[str] = set()
        urls: List[str] = []
        for source in sources:
            url = normalize_url((source or {}).get("url", ""))
            if not is_navigable(url) or url in seen:
                continue
            if is_sitemap_url(url) or site_domain(url) == domain:
                continue
            seen.add(url)
            urls.append(url)
        return urls
