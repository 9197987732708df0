"""Tests for backlink derivation and external discovery."""

import pytest

from seocrawl.audit_log import AuditLog, LogCategory
from seocrawl.backlinks import (
    BacklinkGraph,
    BacklinkSourceFinder,
    StaticSourceFinder,
    discovery_label,
    parse_rel,
)
from seocrawl.config import CrawlConfig
from seocrawl.database import LocalSqliteDatabase
from seocrawl.deduplication import DeduplicationStore
from seocrawl.job_queue import JobQueue, QueueFullError
from seocrawl.models import CrawlJob, LinkRecord, OriginKind, PageRecord

pytest_plugins = ('pytest_asyncio',)


class Env:
    """Storage, queue and graph wired together over in-memory SQLite."""

    def __init__(self, finder=None, **config_overrides):
        self.db = LocalSqliteDatabase(db_url="sqlite:///:memory:")
        self.queue = JobQueue()
        self.audit = AuditLog(self.db)
        self.config = CrawlConfig(**config_overrides)
        self.graph = BacklinkGraph(
            self.db, self.queue, DeduplicationStore(self.db, self.queue),
            self.audit, finder=finder, config=self.config,
        )
        self.target = self.db.get_or_create_site("example.com", "https://example.com")
        self.source = self.db.get_or_create_site("blog.net", "https://blog.net")
        self.target_run = self.db.create_run(self.target.id)
        self.source_run = self.db.create_run(self.source.id)

    def store(self, run, site, url, links=(), discovered_via=OriginKind.SEED.value) -> PageRecord:
        return self.db.create_page_record(PageRecord(
            run_id=run.id, site_id=site.id, url=url, status_code=200,
            discovered_via=discovered_via, links=list(links),
        ))

    def close(self):
        self.queue.close()
        self.db.close()


@pytest.fixture
def env():
    environment = Env()
    yield environment
    environment.close()


class TestHelpers:
    """Tests for rel parsing and discovery labels."""

    def test_parse_rel(self):
        """rel tokens map to dofollow, sponsored and ugc flags."""
        assert parse_rel(None) == (True, False, False)
        assert parse_rel("NoFollow Sponsored") == (False, True, False)
        assert parse_rel("ugc,nofollow") == (False, False, True)

    def test_discovery_label(self):
        """Crawl origins label as crawl; finder names pass through."""
        page = PageRecord(run_id=1, site_id=1, url="https://a.com/", status_code=200)
        assert discovery_label(page) == "crawl"

        page.discovered_via = OriginKind.BACKLINK_DISCOVERY.value
        assert discovery_label(page) == "crawl"

        page.discovered_via = "static"
        assert discovery_label(page) == "static"


class TestDerivation:
    """Tests for forward and retroactive backlink derivation."""

    def test_forward(self, env):
        """A new page linking to a crawled URL yields a backlink."""
        env.store(env.target_run, env.target, "https://example.com/")
        source = env.store(env.source_run, env.source, "https://blog.net/post", links=[
            LinkRecord(href="https://example.com/", text="Great site", rel="ugc", is_external=True),
            LinkRecord(href="https://unknown.org/", is_external=True),
        ])

        assert env.graph.record_forward(source, source.links) == 1

        backlink, = env.db.get_backlinks(env.target.id)
        assert backlink.source_page_id == source.id
        assert backlink.anchor_text == "Great site"
        assert backlink.is_ugc is True
        assert backlink.discovered_via == "crawl"

    def test_retroactive(self, env):
        """A new page that earlier pages linked to yields backlinks."""
        source = env.store(env.source_run, env.source, "https://blog.net/post", links=[
            LinkRecord(href="https://example.com/", text="Example", rel="nofollow", is_external=True),
        ])
        target = env.store(env.target_run, env.target, "https://example.com/")

        assert env.graph.record_retroactive(target) == 1

        backlink, = env.db.get_backlinks(env.target.id)
        assert backlink.source_page_id == source.id
        assert backlink.is_dofollow is False

    def test_derive_is_unique(self, env):
        """Overlapping derivations store each edge once."""
        env.store(env.target_run, env.target, "https://example.com/")
        source = env.store(env.source_run, env.source, "https://blog.net/post", links=[
            LinkRecord(href="https://example.com/", is_external=True),
        ])

        assert env.graph.derive(source, source.links) == 1
        assert env.graph.derive(source, source.links) == 0
        assert env.graph.record_retroactive(env.db.find_page_record("https://example.com/")) == 0
        assert len(env.db.get_backlinks(env.target.id)) == 1

    def test_self_links_are_ignored(self, env):
        """A page linking to itself is not its own backlink."""
        page = env.store(env.target_run, env.target, "https://example.com/", links=[
            LinkRecord(href="https://example.com/"),
        ])

        assert env.graph.record_forward(page) == 0


# =============================================================================
# External discovery
# =============================================================================

class FailingFinder(BacklinkSourceFinder):
    name = "failing"

    async def find_sources(self, target_url, max_results):
        raise RuntimeError("rate limited")


class TestExternalDiscovery:
    """Tests for BacklinkGraph.discover_external."""

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, env):
        """The null finder finds nothing and queues nothing."""
        result = await env.graph.discover_external(env.target_run.id, env.target.id, "https://example.com/")

        assert result.found == 0
        assert env.queue.outstanding(env.target_run.id) == 0

    @pytest.mark.asyncio
    async def test_queues_sources_and_links_crawled_ones(self):
        """New sources are queued; already crawled sources yield backlinks at once."""
        env = Env(finder=StaticSourceFinder({"example.com": [
            "https://news.org/story",
            "https://www.example.com/self",
            "https://blog.net/post",
            "https://news.org/story/",
            "https://news.org/sitemap.xml",
        ]}))
        env.store(env.target_run, env.target, "https://example.com/")
        env.store(env.source_run, env.source, "https://blog.net/post", links=[
            LinkRecord(href="https://example.com/", is_external=True),
        ])

        result = await env.graph.discover_external(env.target_run.id, env.target.id, "https://example.com/")

        assert result.found == 2
        assert result.queued == 1
        assert result.immediate_backlinks == 1
        job = env.queue.claim()
        assert job.url == "https://news.org/story"
        assert job.priority == 10
        assert job.origin_kind == OriginKind.BACKLINK_DISCOVERY
        assert job.metadata == {"discoveredVia": "static", "targetDomain": "example.com"}
        assert env.db.get_run(env.target_run.id).pages_total == 1
        env.close()

    @pytest.mark.asyncio
    async def test_domain_searched_once_per_run(self):
        """A second discovery for the same run and domain is served from cache."""
        env = Env(finder=StaticSourceFinder({"example.com": ["https://news.org/story"]}))

        await env.graph.discover_external(env.target_run.id, env.target.id, "https://example.com/a")
        second = await env.graph.discover_external(env.target_run.id, env.target.id, "https://example.com/b")

        assert second.cached is True
        assert env.queue.outstanding(env.target_run.id) == 1

        env.graph.forget_run(env.target_run.id)
        third = await env.graph.discover_external(env.target_run.id, env.target.id, "https://example.com/")
        assert third.cached is False
        env.close()

    @pytest.mark.asyncio
    async def test_crawl_limit(self):
        """At most backlink_crawl_limit sources are queued per run."""
        env = Env(
            finder=StaticSourceFinder({"example.com": [f"https://site{i}.org/" for i in range(4)]}),
            backlink_crawl_limit=1,
        )

        result = await env.graph.discover_external(env.target_run.id, env.target.id, "https://example.com/")

        assert result.queued == 1
        assert result.skipped == 3
        env.close()

    @pytest.mark.asyncio
    async def test_finder_failure_is_logged(self):
        """A failing finder yields an empty result and an audit entry."""
        env = Env(finder=FailingFinder())

        result = await env.graph.discover_external(env.target_run.id, env.target.id, "https://example.com/")

        assert result.found == 0
        logs = env.audit.get_logs(env.target_run.id, LogCategory.BACKLINK_DISCOVERY)
        assert "rate limited" in logs[0]["message"]
        env.close()

    @pytest.mark.asyncio
    async def test_deferred_until_abort(self):
        """A busy run defers discovery; aborting releases the domain."""
        env = Env(
            finder=StaticSourceFinder({"example.com": ["https://news.org/story"]}),
            backlink_defer_threshold=0,
        )
        env.queue.enqueue(CrawlJob(
            url="https://example.com/busy", run_id=env.target_run.id, priority=20,
            idempotency_key="busy", origin_kind=OriginKind.DISCOVERED_LINK,
        ))

        async def abort():
            return True

        result = await env.graph.discover_external(
            env.target_run.id, env.target.id, "https://example.com/", should_abort=abort, poll_interval=0,
        )

        assert result.found == 0
        assert env.graph._claim_domain(env.target_run.id, "example.com") is True
        env.close()

    @pytest.mark.asyncio
    async def test_queue_full_propagates(self):
        """Queue exhaustion is raised after logging what was queued."""
        env = Env(finder=StaticSourceFinder({"example.com": ["https://news.org/story"]}))
        env.queue.accepting = False

        with pytest.raises(QueueFullError):
            await env.graph.discover_external(env.target_run.id, env.target.id, "https://example.com/")

        logs = env.audit.get_logs(env.target_run.id, LogCategory.BACKLINK_DISCOVERY)
        assert logs[0]["metadata"]["queued"] == 0
        env.close()
