"""Turn fetched HTML into the structured data the crawl engine stores."""

import hashlib
import logging
from typing import Dict, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from seocrawl.link_filter import is_same_origin
from seocrawl.models import ExtractedLink, ExtractedPage
from seocrawl.url_normalizer import is_navigable

logger = logging.getLogger(__name__)

IGNORED_HREF_PREFIXES = ("#", "javascript:", "mailto:", "tel:", "data:")


class ContentExtractor:
    """Extracts title, links and a content hash from HTML."""

    def __init__(self, parser: str = "html.parser"):
        self.parser = parser

    def extract(self, html: str, final_url: str, status_code: int = 200) -> ExtractedPage:
        """Extract page data.

        Args:
            html: HTML content
            final_url: URL the content was served from (after redirects)
            status_code: HTTP status code

        Returns:
            ExtractedPage with links resolved against the page's base URL
        """
        soup = BeautifulSoup(html or "", self.parser)

        # <base href> changes how relative links resolve
        base_url = final_url
        base_tag = soup.find("base", href=True)
        if base_tag:
            base_url = urljoin(final_url, base_tag["href"])

        title = soup.find("title")
        title_text = title.get_text(strip=True) if title else None

        description_tag = soup.find("meta", attrs={"name": "description"})
        description = description_tag.get("content") if description_tag else None

        h1_tags = [h1.get_text(strip=True) for h1 in soup.find_all("h1")]

        canonical = soup.find("link", attrs={"rel": "canonical"})
        canonical_url = urljoin(final_url, canonical["href"]) if canonical and canonical.get("href") else None

        robots_meta = soup.find("meta", attrs={"name": "robots"})
        robots_directives = self._parse_robots_meta(robots_meta.get("content") if robots_meta else None)

        links = self._extract_links(soup, base_url, final_url)

        # Hash visible text only so markup churn doesn't change identity
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        text = soup.get_text(separator=" ", strip=True)
        content_hash = hashlib.sha256(text.encode("utf-8")).hexdigest()

        return ExtractedPage(
            url=final_url,
            status_code=status_code,
            title=title_text,
            description=description,
            h1_tags=h1_tags,
            canonical_url=canonical_url,
            robots_directives=robots_directives,
            links=links,
            word_count=len(text.split()),
            content_hash=content_hash,
        )

    def _extract_links(self, soup: BeautifulSoup, base_url: str, page_url: str) -> List[ExtractedLink]:
        links = []
        for anchor in soup.find_all("a", href=True):
            href = anchor["href"].strip()
            if not href or href.lower().startswith(IGNORED_HREF_PREFIXES):
                continue

            absolute_url = urljoin(base_url, href)
            if not is_navigable(absolute_url):
                continue

            rel = anchor.get("rel")
            if isinstance(rel, list):
                rel = " ".join(rel)

            links.append(ExtractedLink(
                href=absolute_url,
                text=anchor.get_text(" ", strip=True) or anchor.get("title") or None,
                rel=rel.lower() if rel else None,
                is_external=not is_same_origin(absolute_url, page_url),
            ))
        return links

    @staticmethod
    def _parse_robots_meta(content: Optional[str]) -> Dict[str, bool]:
        directives: Dict[str, bool] = {}
        if not content:
            return directives
        for token in content.lower().split(","):
            token = token.strip()
            if token:
                directives[token] = True
        return directives
