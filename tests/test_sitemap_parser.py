"""Tests for sitemap discovery and parsing."""

import gzip
import time
from collections import defaultdict

import httpx
import pytest

from seocrawl.config import CrawlConfig
from seocrawl.fetch import FetchPipeline
from seocrawl.infrastructure.rate_limiter import CrawlDelayLimiter
from seocrawl.robots import RobotsRuleset
from seocrawl.sitemap_parser import SitemapDiscoverer, SitemapError, origin_variants

pytest_plugins = ('pytest_asyncio',)

URLSET = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url>
    <loc>https://example.com/a</loc>
    <lastmod>2024-01-01</lastmod>
    <priority>0.9</priority>
    <changefreq>daily</changefreq>
  </url>
  <url><loc> https://example.com/b </loc><priority>1.5</priority></url>
  <url><loc>https://example.com/c</loc><priority>high</priority></url>
  <url><loc>https://example.com/a</loc></url>
  <url><priority>0.3</priority></url>
</urlset>
"""

CHILD_ONE = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.com/one</loc></url>
  <url><loc>https://example.com/shared</loc></url>
</urlset>
"""

CHILD_TWO = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.com/shared</loc></url>
  <url><loc>https://example.com/two</loc></url>
</urlset>
"""

INDEX = """<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>https://example.com/sitemap-1.xml</loc></sitemap>
  <sitemap><loc>https://example.com/sitemap-broken.xml</loc></sitemap>
  <sitemap><loc>https://example.com/sitemap-2.xml.gz</loc></sitemap>
</sitemapindex>
"""

DOCUMENTS = {
    "/sitemap.xml": URLSET.encode(),
    "/sitemap_index.xml": INDEX.encode(),
    "/sitemap-1.xml": CHILD_ONE.encode(),
    "/sitemap-2.xml.gz": gzip.compress(CHILD_TWO.encode()),
    "/sitemap-broken.xml": b"<urlset><url><loc>unterminated",
    "/feed.xml": b"<rss><channel></channel></rss>",
    "/wrapped.xml": (
        "<html><body><pre><?xml version=\"1.0\"?>"
        "<urlset xmlns=\"http://www.sitemaps.org/schemas/sitemap/0.9\">"
        "<url><loc>https://example.com/wrapped</loc></url></urlset></pre></body></html>"
    ).encode(),
}


def serve(request: httpx.Request) -> httpx.Response:
    if request.url.host != "example.com" or request.url.scheme != "https":
        return httpx.Response(404)
    body = DOCUMENTS.get(request.url.path)
    if body is None:
        return httpx.Response(404)
    if request.method == "HEAD":
        return httpx.Response(200)
    return httpx.Response(200, content=body, headers={"content-type": "application/xml"})


@pytest.fixture
def fetcher():
    return FetchPipeline(
        config=CrawlConfig(retry_delay=0.0),
        transport_factory=lambda proxy_url: httpx.MockTransport(serve),
    )


class TestOriginVariants:
    """Tests for origin_variants."""

    def test_order(self):
        """Exact origin first, then www toggle, then the other scheme."""
        assert origin_variants("https://www.example.com/x") == [
            "https://www.example.com",
            "https://example.com",
            "http://www.example.com",
            "http://example.com",
        ]


class TestSitemapDiscovery:
    """Tests for SitemapDiscoverer.discover."""

    @pytest.mark.asyncio
    async def test_directives_come_first(self, fetcher):
        """robots.txt Sitemap: directives precede conventional locations."""
        ruleset = RobotsRuleset(
            "https://example.com",
            "User-agent: *\nDisallow:\nSitemap: https://example.com/wrapped.xml\n",
        )

        sitemaps = await SitemapDiscoverer(fetcher).discover("https://example.com/", ruleset)
        await fetcher.aclose()

        assert sitemaps == [
            "https://example.com/wrapped.xml",
            "https://example.com/sitemap.xml",
            "https://example.com/sitemap_index.xml",
        ]

    @pytest.mark.asyncio
    async def test_located_sitemaps_are_deduplicated(self, fetcher):
        """A directive that is also a conventional location appears once."""
        ruleset = RobotsRuleset(
            "https://example.com",
            "User-agent: *\nDisallow:\nSitemap: https://example.com/sitemap.xml\n",
        )

        sitemaps = await SitemapDiscoverer(fetcher).discover("https://example.com/", ruleset)
        await fetcher.aclose()

        assert sitemaps.count("https://example.com/sitemap.xml") == 1

    @pytest.mark.asyncio
    async def test_nothing_found(self):
        """A site without sitemaps yields an empty list."""
        fetcher = FetchPipeline(
            config=CrawlConfig(retry_delay=0.0),
            transport_factory=lambda proxy_url: httpx.MockTransport(lambda request: httpx.Response(404)),
        )
        async with fetcher:
            assert await SitemapDiscoverer(fetcher).discover("https://example.com/") == []

    @pytest.mark.asyncio
    async def test_head_requests_respect_crawl_delay(self):
        """HEAD attempts to one host go through the crawl-delay limiter."""
        seen = defaultdict(list)

        def handler(request):
            seen[request.url.host].append(time.monotonic())
            return httpx.Response(404)

        limiter = CrawlDelayLimiter(check_interval=0.01)
        fetcher = FetchPipeline(
            config=CrawlConfig(retry_delay=0.0),
            transport_factory=lambda proxy_url: httpx.MockTransport(handler),
        )
        async with fetcher:
            discoverer = SitemapDiscoverer(fetcher, limiter=limiter, default_delay=0.05)
            assert await discoverer.discover("https://example.com/") == []

        assert set(seen) == {"example.com", "www.example.com"}
        for times in seen.values():
            times.sort()
            gaps = [later - earlier for earlier, later in zip(times, times[1:])]
            assert min(gaps) >= 0.04
        assert limiter.get_metrics().hosts_tracked == 2


class TestSitemapParsing:
    """Tests for SitemapDiscoverer.parse."""

    @pytest.mark.asyncio
    async def test_parse_urlset(self, fetcher):
        """Entries keep document order, first occurrence and clamped priority."""
        async with fetcher:
            entries = await SitemapDiscoverer(fetcher).parse("https://example.com/sitemap.xml")

        assert [e.url for e in entries] == [
            "https://example.com/a",
            "https://example.com/b",
            "https://example.com/c",
        ]
        first, second, third = entries
        assert first.priority == 0.9
        assert first.lastmod == "2024-01-01"
        assert first.changefreq == "daily"
        assert second.priority == 1.0
        assert third.priority is None

    @pytest.mark.asyncio
    async def test_parse_index_isolates_children(self, fetcher):
        """A broken child sitemap does not stop its siblings."""
        async with fetcher:
            entries = await SitemapDiscoverer(fetcher).parse("https://example.com/sitemap_index.xml")

        assert [e.url for e in entries] == [
            "https://example.com/one",
            "https://example.com/shared",
            "https://example.com/two",
        ]

    @pytest.mark.asyncio
    async def test_index_depth_limit(self, fetcher):
        """Indexes nested deeper than max_depth are not followed."""
        async with fetcher:
            entries = await SitemapDiscoverer(fetcher, max_depth=0).parse(
                "https://example.com/sitemap_index.xml"
            )

        assert entries == []

    @pytest.mark.asyncio
    async def test_html_wrapped_sitemap(self, fetcher):
        """XML served inside an HTML wrapper is recovered."""
        async with fetcher:
            entries = await SitemapDiscoverer(fetcher).parse("https://example.com/wrapped.xml")

        assert [e.url for e in entries] == ["https://example.com/wrapped"]

    @pytest.mark.asyncio
    async def test_missing_sitemap_raises(self, fetcher):
        """A top-level sitemap that cannot be fetched raises SitemapError."""
        async with fetcher:
            with pytest.raises(SitemapError):
                await SitemapDiscoverer(fetcher).parse("https://example.com/missing.xml")

    @pytest.mark.asyncio
    async def test_malformed_sitemap_raises(self, fetcher):
        """Unparseable XML raises SitemapError."""
        async with fetcher:
            with pytest.raises(SitemapError):
                await SitemapDiscoverer(fetcher).parse("https://example.com/sitemap-broken.xml")

    @pytest.mark.asyncio
    async def test_unknown_root_raises(self, fetcher):
        """Documents that are neither urlset nor sitemapindex raise SitemapError."""
        async with fetcher:
            with pytest.raises(SitemapError):
                await SitemapDiscoverer(fetcher).parse("https://example.com/feed.xml")
