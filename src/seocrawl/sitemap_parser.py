"""Sitemap discovery and parsing."""

import asyncio
import gzip
import logging
import re
from typing import List, Optional, Set
from urllib.parse import urlsplit
from xml.etree import ElementTree as ET

from seocrawl.constants import (
    COMMON_SITEMAP_PATHS,
    DEFAULT_CRAWL_DELAY_SECONDS,
    MAX_CRAWL_DELAY_SECONDS,
    MAX_SITEMAP_DEPTH,
    SITEMAP_FETCH_TIMEOUT_SECONDS,
    SITEMAP_HEAD_TIMEOUT_SECONDS,
)
from seocrawl.fetch import FetchError, FetchPipeline
from seocrawl.infrastructure.rate_limiter import CrawlDelayLimiter
from seocrawl.models import SitemapEntry
from seocrawl.robots import RobotsRuleset

logger = logging.getLogger(__name__)


class SitemapError(Exception):
    """A sitemap document could not be fetched or parsed."""


def origin_variants(base_url: str) -> List[str]:
    """Exact origin, www-toggled host, then the other scheme for both."""
    parts = urlsplit(base_url)
    scheme = parts.scheme.lower() or "https"
    host = (parts.hostname or "").lower()
    other_scheme = "http" if scheme == "https" else "https"
    toggled = host[4:] if host.startswith("www.") else f"www.{host}"
    variants = [
        f"{scheme}://{host}",
        f"{scheme}://{toggled}",
        f"{other_scheme}://{host}",
        f"{other_scheme}://{toggled}",
    ]
    return list(dict.fromkeys(variants))


class SitemapDiscoverer:
    """
    Find and parse XML sitemaps.

    Supports:
    - Sitemap: directives from robots.txt
    - Probing conventional sitemap locations
    - Sitemap index files (recursive, each child isolated)
    - Gzipped sitemaps
    """

    # XML namespaces used in sitemaps
    NAMESPACES = {
        'sm': 'http://www.sitemaps.org/schemas/sitemap/0.9',
        'image': 'http://www.google.com/schemas/sitemap-image/1.1',
        'video': 'http://www.google.com/schemas/sitemap-video/1.1',
        'news': 'http://www.google.com/schemas/sitemap-news/0.9',
    }

    def __init__(
        self,
        fetcher: FetchPipeline,
        head_timeout: float = SITEMAP_HEAD_TIMEOUT_SECONDS,
        fetch_timeout: float = SITEMAP_FETCH_TIMEOUT_SECONDS,
        max_depth: int = MAX_SITEMAP_DEPTH,
        limiter: Optional[CrawlDelayLimiter] = None,
        default_delay: float = DEFAULT_CRAWL_DELAY_SECONDS,
        max_delay: float = MAX_CRAWL_DELAY_SECONDS,
    ):
        """
        Initialize the discoverer.

        Args:
            fetcher: Pipeline used for HEAD requests and downloads
            head_timeout: Timeout for each HEAD request
            fetch_timeout: Timeout for each sitemap download
            max_depth: Maximum sitemap index nesting
            limiter: Per-host crawl-delay limiter that HEAD requests go through
            default_delay: HEAD request spacing when robots.txt sets no crawl delay
            max_delay: Upper bound for a robots.txt crawl delay
        """
        self.fetcher = fetcher
        self.head_timeout = head_timeout
        self.fetch_timeout = fetch_timeout
        self.max_depth = max_depth
        self.limiter = limiter
        self.default_delay = default_delay
        self.max_delay = max_delay

    async def discover(self, base_url: str, ruleset: Optional[RobotsRuleset] = None) -> List[str]:
        """
        Find sitemap URLs for a site.

        Args:
            base_url: Site base URL
            ruleset: robots.txt ruleset whose Sitemap: directives come first

        Returns:
            Sitemap URLs, deduplicated, directives before conventional locations
        """
        found: List[str] = []
        if ruleset is not None:
            found.extend(url.strip() for url in ruleset.sitemap_urls if url.strip())

        candidates = [
            f"{origin}{path}"
            for origin in origin_variants(base_url)
            for path in COMMON_SITEMAP_PATHS
        ]
        delay = ruleset.crawl_delay(self.max_delay) if ruleset is not None else None
        if delay is None:
            delay = self.default_delay
        located = await asyncio.gather(*(self._check_location(url, delay) for url in candidates))
        found.extend(url for url in located if url)

        sitemaps = list(dict.fromkeys(found))
        logger.info(f"Discovered {len(sitemaps)} sitemap(s) for {base_url}")
        return sitemaps

    async def _check_location(self, url: str, delay: float) -> Optional[str]:
        if self.limiter is not None:
            await self.limiter.wait((urlsplit(url).hostname or "").lower(), delay)
        try:
            result = await self.fetcher.fetch(
                url,
                method="HEAD",
                timeout=self.head_timeout,
                detect_captcha=False,
                max_attempts=1,
            )
        except FetchError as e:
            logger.debug(f"Sitemap HEAD request failed for {url}: {e}")
            return None
        if 200 <= result.status_code < 300:
            return result.final_url
        return None

    async def parse(self, sitemap_url: str) -> List[SitemapEntry]:
        """
        Parse a sitemap or sitemap index and return all page entries.

        Args:
            sitemap_url: URL of a sitemap or sitemap index

        Returns:
            Entries in document order, first occurrence of each URL kept

        Raises:
            SitemapError: If the top-level document cannot be fetched or parsed
        """
        entries: List[SitemapEntry] = []
        seen_urls: Set[str] = set()
        visited: Set[str] = set()
        await self._parse_document(sitemap_url, entries, seen_urls, visited, depth=0)
        logger.info(f"Parsed {len(entries)} URLs from {sitemap_url}")
        return entries

    async def _parse_document(
        self,
        sitemap_url: str,
        entries: List[SitemapEntry],
        seen_urls: Set[str],
        visited: Set[str],
        depth: int,
    ) -> None:
        if sitemap_url in visited:
            return
        visited.add(sitemap_url)

        content = await self._download(sitemap_url)
        root = self._parse_xml(content, sitemap_url)
        root_tag = root.tag.split('}')[-1] if '}' in root.tag else root.tag

        if root_tag == 'sitemapindex':
            if depth >= self.max_depth:
                logger.warning(f"Sitemap index nesting too deep at {sitemap_url}")
                return
            for child_url in self._child_sitemaps(root):
                try:
                    await self._parse_document(child_url, entries, seen_urls, visited, depth + 1)
                except SitemapError as e:
                    logger.error(f"Skipping child sitemap {child_url}: {e}")
        elif root_tag == 'urlset':
            for entry in self._parse_urlset(root):
                if entry.url not in seen_urls:
                    seen_urls.add(entry.url)
                    entries.append(entry)
        else:
            raise SitemapError(f"Unknown sitemap root element: {root_tag}")

    async def _download(self, sitemap_url: str) -> str:
        try:
            result = await self.fetcher.fetch(
                sitemap_url, timeout=self.fetch_timeout, detect_captcha=False,
            )
        except FetchError as e:
            raise SitemapError(f"Failed to fetch sitemap {sitemap_url}: {e}") from e

        if not 200 <= result.status_code < 300:
            raise SitemapError(f"Failed to fetch sitemap {sitemap_url}: HTTP {result.status_code}")

        raw = result.content
        if raw[:2] == b'\x1f\x8b':
            try:
                raw = gzip.decompress(raw)
            except OSError as e:
                raise SitemapError(f"Corrupt gzip sitemap {sitemap_url}: {e}") from e
        return raw.decode(result.encoding or 'utf-8', errors='replace')

    def _parse_xml(self, content: str, sitemap_url: str) -> ET.Element:
        try:
            return ET.fromstring(self._clean_xml_content(content))
        except ET.ParseError as e:
            raise SitemapError(f"Failed to parse sitemap XML at {sitemap_url}: {e}") from e

    def _clean_xml_content(self, content: str) -> str:
        """Clean XML content by removing any HTML wrapper."""
        content = content.lstrip('\ufeff').strip()

        # Remove DOCTYPE if present
        content = re.sub(r'<!DOCTYPE[^>]*>', '', content)

        # Remove HTML tags if the XML is wrapped
        if '<html' in content.lower():
            match = re.search(r'(<\?xml.*?</(?:urlset|sitemapindex)>)', content, re.DOTALL)
            if match:
                return match.group(1)

            match = re.search(r'(<(?:urlset|sitemapindex).*?</(?:urlset|sitemapindex)>)', content, re.DOTALL)
            if match:
                return match.group(1)

        return content

    def _find_text(self, elem: ET.Element, name: str) -> Optional[str]:
        child = elem.find(f"sm:{name}", self.NAMESPACES)
        if child is None:
            child = elem.find(name)
        if child is not None and child.text:
            return child.text.strip()
        return None

    def _child_sitemaps(self, root: ET.Element) -> List[str]:
        """Child sitemap URLs of a sitemap index."""
        children = []
        for sitemap in root:
            if sitemap.tag.split('}')[-1] == 'sitemap':
                loc = self._find_text(sitemap, 'loc')
                if loc:
                    logger.debug(f"Found child sitemap: {loc}")
                    children.append(loc)
        return children

    def _parse_urlset(self, root: ET.Element) -> List[SitemapEntry]:
        """Parse a urlset element into entries."""
        entries = []
        for url_elem in root:
            if url_elem.tag.split('}')[-1] != 'url':
                continue
            loc = self._find_text(url_elem, 'loc')
            if not loc:
                continue

            priority = None
            raw_priority = self._find_text(url_elem, 'priority')
            if raw_priority:
                try:
                    priority = min(max(float(raw_priority), 0.0), 1.0)
                except ValueError:
                    logger.debug(f"Ignoring invalid sitemap priority {raw_priority!r} for {loc}")

            entries.append(SitemapEntry(
                url=loc,
                lastmod=self._find_text(url_elem, 'lastmod'),
                priority=priority,
                changefreq=self._find_text(url_elem, 'changefreq'),
            ))
        return entries
