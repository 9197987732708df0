"""
robots.txt fetching, caching and evaluation.

A ruleset is fetched once per origin and shared read-only by every job for
that origin until its TTL expires; refreshes replace the cache entry rather
than mutating it. Fetching tries the exact origin first, then the www /
non-www host, then the other scheme, stopping at the first 2xx.

When no variant answers, the origin is treated as unavailable rather than
unrestricted: callers must route the run to operator approval.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

from seocrawl.constants import (
    DEFAULT_ROBOTS_FETCH_TIMEOUT_SECONDS,
    DEFAULT_ROBOTS_USER_AGENT,
    MAX_CRAWL_DELAY_SECONDS,
    ROBOTS_CACHE_TTL_SECONDS,
    ROBOTS_FAILURE_TTL_SECONDS,
)
from seocrawl.fetch import FetchError, FetchPipeline
from seocrawl.url_normalizer import origin_of

logger = logging.getLogger(__name__)

NOT_FOUND_STATUSES = {404, 410}


class RobotsUnavailableError(Exception):
    """No robots.txt variant for an origin could be retrieved."""
    retryable = False

    def __init__(self, origin: str, attempts: List[Tuple[str, str]]):
        self.origin = origin
        self.attempts = attempts
        summary = ", ".join(f"{url} -> {outcome}" for url, outcome in attempts)
        super().__init__(f"robots.txt unavailable for {origin}: {summary}")


def robots_url_variants(url: str) -> List[str]:
    """robots.txt URLs to try for a site, in fallback order.

    Order: exact origin, www-toggled host, other scheme, other scheme with
    the www-toggled host.
    """
    parts = urlsplit(url)
    scheme = parts.scheme.lower() or "https"
    host = (parts.hostname or "").lower()
    port = f":{parts.port}" if parts.port else ""
    other_scheme = "http" if scheme == "https" else "https"
    toggled = host[4:] if host.startswith("www.") else f"www.{host}"

    variants = [
        f"{scheme}://{host}{port}/robots.txt",
        f"{scheme}://{toggled}{port}/robots.txt",
        f"{other_scheme}://{host}/robots.txt",
        f"{other_scheme}://{toggled}/robots.txt",
    ]
    return list(dict.fromkeys(variants))


class RobotsRule:
    """One Allow/Disallow line. Supports * wildcards and a trailing $ anchor."""

    __slots__ = ("pattern", "allow", "_regex")

    def __init__(self, pattern: str, allow: bool):
        self.pattern = pattern
        self.allow = allow
        anchored = pattern.endswith("$")
        body = pattern[:-1] if anchored else pattern
        regex = ".*".join(re.escape(part) for part in body.split("*"))
        self._regex = re.compile(regex + ("$" if anchored else ""))

    @property
    def specificity(self) -> int:
        return len(self.pattern)

    def matches(self, path: str) -> bool:
        return self._regex.match(path) is not None

    def __repr__(self) -> str:
        verb = "Allow" if self.allow else "Disallow"
        return f"RobotsRule({verb}: {self.pattern})"


def parse_rules(content: str, user_agent: str) -> List[RobotsRule]:
    """Allow/Disallow rules of the groups that apply to user_agent.

    Groups naming our product token win over the * groups; several matching
    groups are merged.
    """
    token = user_agent.split("/")[0].strip().lower()
    specific: List[RobotsRule] = []
    generic: List[RobotsRule] = []
    agents: List[str] = []
    in_rules = False
    named = False

    for raw_line in content.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if ":" not in line:
            continue
        field_name, value = line.split(":", 1)
        field_name = field_name.strip().lower()
        value = value.strip()

        if field_name == "user-agent":
            if in_rules:
                agents = []
                in_rules = False
            agents.append(value.lower())
        elif field_name in ("allow", "disallow"):
            in_rules = True
            for_us = any(agent and agent != "*" and agent in token for agent in agents)
            named = named or for_us
            if not value:
                continue
            rule = RobotsRule(value, allow=field_name == "allow")
            if for_us:
                specific.append(rule)
            if "*" in agents:
                generic.append(rule)

    return specific if named else generic


class RobotsRuleset:
    """Parsed robots.txt for one origin. Immutable once built."""

    def __init__(
        self,
        origin: str,
        content: str = "",
        robots_url: Optional[str] = None,
        user_agent: str = DEFAULT_ROBOTS_USER_AGENT,
        allow_all: bool = False,
        fetched_at: Optional[float] = None,
    ):
        self.origin = origin
        self.content = content
        self.robots_url = robots_url
        self.user_agent = user_agent
        self.allow_all = allow_all
        self.fetched_at = fetched_at if fetched_at is not None else time.time()

        # Crawl-delay, Request-rate and Sitemap lines
        self._parser = RobotFileParser()
        if robots_url:
            self._parser.set_url(robots_url)
        self._parser.parse(content.splitlines())
        self.sitemap_urls: Tuple[str, ...] = tuple(self._parser.site_maps() or ())
        self.rules: Tuple[RobotsRule, ...] = tuple(parse_rules(content, user_agent))

    @classmethod
    def unrestricted(cls, origin: str, user_agent: str = DEFAULT_ROBOTS_USER_AGENT) -> "RobotsRuleset":
        """Ruleset for an origin that has no robots.txt."""
        return cls(origin=origin, user_agent=user_agent, allow_all=True)

    def _raw_allowed(self, path: str) -> bool:
        """Longest matching rule decides; Allow wins a tie. No match allows."""
        best: Optional[RobotsRule] = None
        for rule in self.rules:
            if not rule.matches(path):
                continue
            if (
                best is None
                or rule.specificity > best.specificity
                or (rule.specificity == best.specificity and rule.allow and not best.allow)
            ):
                best = rule
        return best is None or best.allow

    def is_allowed(self, url: str) -> bool:
        """Check a URL against the rules.

        The exact path, the path with its trailing slash toggled and every
        ancestor directory must all be allowed. Any disallow wins.
        """
        if self.allow_all:
            return True

        parts = urlsplit(url)
        path = parts.path or "/"
        query = f"?{parts.query}" if parts.query else ""

        if not self._raw_allowed(path + query):
            return False
        return self._path_allowed(path)

    def _path_allowed(self, path: str) -> bool:
        if not self._raw_allowed(path):
            return False

        if path != "/":
            toggled = path.rstrip("/") if path.endswith("/") else f"{path}/"
            if toggled and not self._raw_allowed(toggled):
                return False

        parent = _parent_directory(path)
        if parent is None:
            return True
        return self._path_allowed(parent)

    def crawl_delay(self, max_delay: float = MAX_CRAWL_DELAY_SECONDS) -> Optional[float]:
        """Crawl delay for our user agent, clamped to max_delay.

        Returns:
            Delay in seconds, or None when robots.txt sets none
        """
        if self.allow_all:
            return None
        delay = self._parser.crawl_delay(self.user_agent)
        if delay is None:
            rate = self._parser.request_rate(self.user_agent)
            if rate and rate.requests:
                delay = rate.seconds / rate.requests
        if delay is None:
            return None
        return min(float(delay), max_delay)

    def __repr__(self) -> str:
        return f"RobotsRuleset(origin={self.origin!r}, robots_url={self.robots_url!r}, allow_all={self.allow_all})"


def _parent_directory(path: str) -> Optional[str]:
    """'/a/b/c' -> '/a/b/', '/a/b/' -> '/a/', '/a' -> '/', '/' -> None."""
    if path in ("", "/"):
        return None
    trimmed = path.rstrip("/")
    head = trimmed.rsplit("/", 1)[0]
    return f"{head}/" if head else "/"


@dataclass
class _CacheEntry:
    ruleset: RobotsRuleset
    expires_at: float


class RobotsCache:
    """In-memory TTL cache of rulesets keyed by origin.

    Entries are replaced wholesale, never mutated, so readers always see a
    complete ruleset. Origins whose robots.txt could not be retrieved are
    remembered for a shorter time so callers do not refetch them on every
    lookup. One instance per engine; tests create their own.
    """

    def __init__(
        self,
        ttl_seconds: float = ROBOTS_CACHE_TTL_SECONDS,
        failure_ttl_seconds: float = ROBOTS_FAILURE_TTL_SECONDS,
    ):
        self.ttl_seconds = ttl_seconds
        self.failure_ttl_seconds = failure_ttl_seconds
        self._entries: Dict[str, _CacheEntry] = {}
        self._failures: Dict[str, Tuple[RobotsUnavailableError, float]] = {}

    def get(self, origin: str) -> Optional[RobotsRuleset]:
        entry = self._entries.get(origin)
        if entry is None:
            return None
        if time.time() >= entry.expires_at:
            self._entries.pop(origin, None)
            return None
        return entry.ruleset

    def put(self, origin: str, ruleset: RobotsRuleset) -> None:
        self._failures.pop(origin, None)
        self._entries[origin] = _CacheEntry(ruleset, time.time() + self.ttl_seconds)

    def get_failure(self, origin: str) -> Optional[RobotsUnavailableError]:
        """The remembered unavailability of origin, if still fresh."""
        failure = self._failures.get(origin)
        if failure is None:
            return None
        error, expires_at = failure
        if time.time() >= expires_at:
            self._failures.pop(origin, None)
            return None
        return error

    def put_failure(self, origin: str, error: RobotsUnavailableError) -> None:
        self._failures[origin] = (error, time.time() + self.failure_ttl_seconds)

    def invalidate(self, origin: str) -> None:
        self._entries.pop(origin, None)
        self._failures.pop(origin, None)

    def clear(self) -> None:
        self._entries.clear()
        self._failures.clear()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class RobotsPolicy:
    """Resolves the governing ruleset for URLs, fetching on cache miss.

    Concurrent requests for the same origin share one fetch.
    """

    fetcher: FetchPipeline
    cache: RobotsCache = field(default_factory=RobotsCache)
    user_agent: str = DEFAULT_ROBOTS_USER_AGENT
    fetch_timeout: float = DEFAULT_ROBOTS_FETCH_TIMEOUT_SECONDS
    max_crawl_delay: float = MAX_CRAWL_DELAY_SECONDS
    _inflight: Dict[str, asyncio.Future] = field(default_factory=dict, init=False, repr=False)

    async def get_ruleset(self, url: str, force_refresh: bool = False) -> RobotsRuleset:
        """Return the ruleset governing url.

        Raises:
            RobotsUnavailableError: If no robots.txt variant could be retrieved
        """
        origin = origin_of(url).lower()

        if force_refresh:
            self.cache.invalidate(origin)
        else:
            cached = self.cache.get(origin)
            if cached is not None:
                return cached
            failure = self.cache.get_failure(origin)
            if failure is not None:
                raise failure

        task = self._inflight.get(origin)
        if task is None:
            task = asyncio.ensure_future(self._load(origin))
            self._inflight[origin] = task
            task.add_done_callback(lambda _t, key=origin: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    async def is_allowed(self, url: str) -> bool:
        """Check url against its origin's ruleset.

        Raises:
            RobotsUnavailableError: If the ruleset cannot be fetched
        """
        ruleset = await self.get_ruleset(url)
        return ruleset.is_allowed(url)

    async def crawl_delay(self, url: str) -> Optional[float]:
        ruleset = await self.get_ruleset(url)
        return ruleset.crawl_delay(self.max_crawl_delay)

    async def _load(self, origin: str) -> RobotsRuleset:
        try:
            ruleset = await self._fetch_ruleset(origin)
        except RobotsUnavailableError as e:
            self.cache.put_failure(origin, e)
            raise
        self.cache.put(origin, ruleset)
        return ruleset

    async def _fetch_ruleset(self, origin: str) -> RobotsRuleset:
        host = (urlsplit(origin).hostname or "").lower()
        attempts: List[Tuple[str, str]] = []
        exact_host_not_found = False

        for robots_url in robots_url_variants(origin):
            try:
                result = await self.fetcher.fetch(
                    robots_url,
                    timeout=self.fetch_timeout,
                    detect_captcha=False,
                    max_attempts=2,
                )
            except FetchError as e:
                attempts.append((robots_url, type(e).__name__))
                logger.debug(f"robots.txt fetch failed for {robots_url}: {e}")
                continue

            attempts.append((robots_url, str(result.status_code)))

            if 200 <= result.status_code < 300:
                logger.info(f"Loaded robots.txt from {robots_url}")
                return RobotsRuleset(
                    origin=origin,
                    content=result.text,
                    robots_url=robots_url,
                    user_agent=self.user_agent,
                )

            if result.status_code in NOT_FOUND_STATUSES and urlsplit(robots_url).hostname == host:
                exact_host_not_found = True

        if exact_host_not_found:
            logger.info(f"No robots.txt for {origin}; treating as unrestricted")
            return RobotsRuleset.unrestricted(origin, self.user_agent)

        logger.warning(f"robots.txt unavailable for {origin} after {len(attempts)} attempts")
        raise RobotsUnavailableError(origin, attempts)
