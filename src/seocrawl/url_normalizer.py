"""
URL canonicalization used as the identity key for deduplication.

Rules, applied in order:
- resolve relative to the base URL
- lowercase scheme and host, drop the port when it is the scheme default
- strip the fragment
- strip the trailing slash except for the root path
- drop session-id path parameters and session/tracking query keys
- sort the remaining query parameters

Input that is not an http(s) URL is returned unchanged.
"""

import hashlib
import re
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

DEFAULT_PORTS = {"http": 80, "https": 443}

# Query keys that carry tracking or affiliate state
TRACKING_QUERY_KEYS = {
    "gclid", "gclsrc", "dclid", "fbclid", "msclkid", "yclid", "twclid",
    "mc_cid", "mc_eid", "_ga", "_gl", "_hsenc", "_hsmi", "igshid",
    "ref", "ref_src", "affiliate", "affiliate_id", "aff", "aff_id",
    "affid", "partner_id", "clickid",
}

TRACKING_QUERY_PREFIXES = ("utm_", "pk_", "mtm_")

# Query keys that carry server-side session identifiers
SESSION_QUERY_KEYS = {
    "sid", "sessionid", "session_id", "phpsessid", "jsessionid",
    "cfid", "cftoken", "zenid", "oscsid",
}

# ;jsessionid=... style path parameters
SESSION_PATH_PARAM = re.compile(
    r";(?:jsessionid|phpsessid|sessionid|sid)=[^/?#;]*", re.IGNORECASE
)


def _is_dropped_query_key(key: str) -> bool:
    key = key.lower()
    if key in TRACKING_QUERY_KEYS or key in SESSION_QUERY_KEYS:
        return True
    if key.startswith("aspsessionid"):
        return True
    return key.startswith(TRACKING_QUERY_PREFIXES)


def normalize_url(url: str, base_url: Optional[str] = None) -> str:
    """Canonicalize a URL for identity comparison.

    Args:
        url: Absolute or relative URL
        base_url: Base used to resolve relative URLs

    Returns:
        Canonical URL string, or the original string if it cannot be parsed
        as an http(s) URL
    """
    if not url or not isinstance(url, str):
        return url

    try:
        resolved = urljoin(base_url, url.strip()) if base_url else url.strip()
        parts = urlsplit(resolved)

        scheme = parts.scheme.lower()
        if scheme not in DEFAULT_PORTS or not parts.hostname:
            return url

        host = parts.hostname.lower()
        port = parts.port  # Raises ValueError on a malformed port
        netloc = host
        if parts.username:
            userinfo = parts.username
            if parts.password:
                userinfo += f":{parts.password}"
            netloc = f"{userinfo}@{host}"
        if port is not None and port != DEFAULT_PORTS[scheme]:
            netloc = f"{netloc}:{port}"

        path = SESSION_PATH_PARAM.sub("", parts.path) or "/"
        if len(path) > 1 and path.endswith("/"):
            path = path.rstrip("/") or "/"

        params = [
            (key, value)
            for key, value in parse_qsl(parts.query, keep_blank_values=True)
            if not _is_dropped_query_key(key)
        ]
        params.sort()
        query = urlencode(params)

        return urlunsplit((scheme, netloc, path, query, ""))
    except ValueError:
        return url


def is_navigable(url: str) -> bool:
    """Whether a string parses as an absolute http(s) URL with a host."""
    if not url or not isinstance(url, str):
        return False
    try:
        parts = urlsplit(url)
        parts.port
    except ValueError:
        return False
    return parts.scheme.lower() in DEFAULT_PORTS and bool(parts.hostname)


def job_identity(run_id, normalized_url: str) -> str:
    """Idempotency key for a URL within a run."""
    digest = hashlib.sha256(f"{run_id}:{normalized_url}".encode("utf-8")).hexdigest()
    return f"{run_id}:{digest[:32]}"


def site_domain(url: str) -> str:
    """Hostname without a leading www., used to identify sites."""
    host = (urlsplit(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def origin_of(url: str) -> str:
    """scheme://host[:port] of a URL."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"
