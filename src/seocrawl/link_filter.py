"""Decide which extracted links are worth following."""

from typing import Iterable, List, Optional
from urllib.parse import urlsplit

from seocrawl.models import ExtractedLink
from seocrawl.url_normalizer import is_navigable, normalize_url

SKIP_EXTENSIONS = {
    '.pdf', '.jpg', '.jpeg', '.png', '.gif', '.svg', '.webp',
    '.zip', '.tar', '.gz', '.mp4', '.mp3', '.avi', '.mov',
    '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx', '.exe',
    '.css', '.js', '.xml', '.json', '.ico', '.woff', '.woff2', '.ttf',
}

# Non-content paths: auth flows, carts, framework assets, APIs
SKIP_PATH_PATTERNS = {
    '/admin',
    '/login',
    '/logout',
    '/register',
    '/signin',
    '/signup',
    '/account/login',
    '/account/register',
    '/checkout/',
    '/cart/',
    '/payment/',
    '/api/',
    '/_next/',
    '/static/',
    '/assets/',
    '/wp-admin/',
    '/cdn-cgi/',
}


def should_skip_path(url: str) -> bool:
    """Check if a URL points at a non-content resource.

    Args:
        url: Absolute URL

    Returns:
        True if the URL should never be crawled as a page
    """
    path_lower = urlsplit(url).path.lower()

    if any(pattern in path_lower for pattern in SKIP_PATH_PATTERNS):
        return True

    return any(path_lower.endswith(ext) for ext in SKIP_EXTENSIONS)


def is_same_origin(url: str, base_url: str) -> bool:
    """Whether two URLs share a host, ignoring a leading www. and the scheme."""
    host = (urlsplit(url).hostname or '').lower()
    base_host = (urlsplit(base_url).hostname or '').lower()
    return host.removeprefix('www.') == base_host.removeprefix('www.')


def is_sitemap_url(url: str) -> bool:
    """Heuristic used to keep sitemap documents out of page queues."""
    path_lower = urlsplit(url).path.lower()
    return 'sitemap' in path_lower or path_lower.endswith(('.xml', '.xml.gz'))


def select_followable_links(
    links: Iterable[ExtractedLink],
    page_url: str,
    limit: Optional[int] = None,
) -> List[str]:
    """Pick internal, crawlable link targets from a page.

    Args:
        links: Links extracted from the page
        page_url: URL the links were found on
        limit: Maximum number of URLs to return

    Returns:
        Normalized URLs in document order, without duplicates
    """
    selected: List[str] = []
    seen = set()

    for link in links:
        if link.is_external:
            continue
        normalized = normalize_url(link.href, page_url)
        if not is_navigable(normalized) or normalized in seen:
            continue
        if not is_same_origin(normalized, page_url) or should_skip_path(normalized):
            continue
        seen.add(normalized)
        selected.append(normalized)
        if limit is not None and len(selected) >= limit:
            break

    return selected
