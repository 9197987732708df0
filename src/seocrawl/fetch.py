"""
HTTP fetch pipeline.

One logical fetch runs an explicit, ordered attempt plan:

    1. direct connection (short timeout)
    2..n. proxies from the pool, one per step, never repeating a proxy
          within the fetch (longer timeout)

Each step ends in exactly one outcome: success, transport failure, CAPTCHA
or server error. Anything but success moves to the next step after a
backoff delay. Redirects are followed by hand so the chain can be recorded
and checked for loops; redirect failures are policy errors and end the
fetch immediately.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urldefrag, urljoin, urlsplit

import httpx

from seocrawl.config import CrawlConfig
from seocrawl.constants import REDIRECT_STATUS_CODES
from seocrawl.infrastructure.proxy_rotation import ProxyHandle, ProxyPool
from seocrawl.utils.browser_headers import build_headers
from seocrawl.utils.captcha_detector import CaptchaDetection, detect_captcha
from seocrawl.utils.captcha_solver import BaseCaptchaSolver, NoopCaptchaSolver
from seocrawl.utils.session_manager import DIRECT, SessionData, SessionManager

logger = logging.getLogger(__name__)

RedirectGuard = Callable[[str], Awaitable[bool]]
TransportFactory = Callable[[Optional[str]], httpx.AsyncBaseTransport]


# =============================================================================
# Errors
# =============================================================================

class FetchError(Exception):
    """Base class for fetch failures."""
    retryable = True
    skip_reason: Optional[str] = None

    def __init__(self, message: str, url: Optional[str] = None, attempts: Optional[List["AttemptOutcome"]] = None):
        super().__init__(message)
        self.url = url
        self.attempts = attempts or []


class TransientFetchError(FetchError):
    """Every attempt failed with a timeout, connection error or 5xx."""
    retryable = True
    skip_reason = "max-retries"


class RedirectLoopError(FetchError):
    """A redirect pointed back to a URL already in the chain."""
    retryable = False
    skip_reason = "redirect-loop"


class TooManyRedirectsError(FetchError):
    """The redirect chain exceeded the hop limit."""
    retryable = False
    skip_reason = "too-many-redirects"


class RedirectBlockedError(FetchError):
    """A redirect hop was rejected by the caller's guard (e.g. robots.txt)."""
    retryable = False
    skip_reason = "redirect-blocked"


class CaptchaBlockedError(FetchError):
    """Every attempt ended on a CAPTCHA or block page."""
    retryable = False
    skip_reason = "captcha"


# =============================================================================
# Plan and results
# =============================================================================

class AttemptKind(str, Enum):
    DIRECT = "direct"
    PROXY = "proxy"


class AttemptResult(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    CAPTCHA = "captcha"
    SERVER_ERROR = "server_error"
    NO_PROXY = "no_proxy"


@dataclass
class FetchStep:
    """One planned attempt."""
    kind: AttemptKind
    timeout: float


@dataclass
class AttemptOutcome:
    """What happened on one executed attempt."""
    kind: AttemptKind
    egress: str
    result: AttemptResult
    status_code: Optional[int] = None
    detail: Optional[str] = None
    elapsed_ms: float = 0.0


@dataclass
class FetchResult:
    """A completed fetch."""
    url: str
    final_url: str
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    content: bytes = b""
    encoding: Optional[str] = None
    redirect_chain: List[str] = field(default_factory=list)
    proxy_used: Optional[str] = None
    attempts: List[AttemptOutcome] = field(default_factory=list)
    captcha: Optional[CaptchaDetection] = None
    elapsed_ms: float = 0.0

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding or "utf-8", errors="replace")

    @property
    def was_redirected(self) -> bool:
        return len(self.redirect_chain) > 1

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")


# =============================================================================
# Pipeline
# =============================================================================

class FetchPipeline:
    """
    Fetches URLs direct-first with proxy fallback.

    Features:
    - Ordered attempt plan (direct, then distinct proxies)
    - CAPTCHA detection with optional solving and proxy rotation
    - Manual redirect handling with loop detection and hop cap
    - Session affinity per (domain, egress)
    """

    def __init__(
        self,
        config: Optional[CrawlConfig] = None,
        proxy_pool: Optional[ProxyPool] = None,
        captcha_solver: Optional[BaseCaptchaSolver] = None,
        sessions: Optional[SessionManager] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Crawl configuration (timeouts, retries, redirects)
            proxy_pool: Pool used after the direct attempt; None disables proxies
            captcha_solver: Solver for detected CAPTCHAs (no-op if None)
            sessions: Session store for cookie/user-agent affinity
            transport_factory: Builds the httpx transport for an egress
                (proxy URL or None for direct); used to inject test transports
        """
        self.config = config or CrawlConfig()
        self.proxy_pool = proxy_pool
        self.captcha_solver = captcha_solver or NoopCaptchaSolver()
        self.sessions = sessions or SessionManager(self.config.session_idle_ttl)
        self.transport_factory = transport_factory
        self._clients: Dict[str, httpx.AsyncClient] = {}

    async def __aenter__(self) -> "FetchPipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close all HTTP clients."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()

    def _client_for(self, proxy: Optional[ProxyHandle]) -> httpx.AsyncClient:
        key = proxy.key if proxy else DIRECT
        client = self._clients.get(key)
        if client is None:
            proxy_url = proxy.url if proxy else None
            if self.transport_factory is not None:
                client = httpx.AsyncClient(transport=self.transport_factory(proxy_url))
            else:
                client = httpx.AsyncClient(proxy=proxy_url)
            self._clients[key] = client
        return client

    def build_attempt_plan(
        self,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        use_proxies: bool = True,
    ) -> List[FetchStep]:
        """
        Build the ordered attempt plan for one fetch.

        Args:
            timeout: Override for every step's timeout
            max_attempts: Cap on total steps (direct included)
            use_proxies: Whether proxy steps are planned

        Returns:
            Steps in execution order
        """
        plan = [FetchStep(AttemptKind.DIRECT, timeout or self.config.direct_timeout)]

        pool_size = self.proxy_pool.pool_size if self.proxy_pool else 0
        if use_proxies and pool_size:
            proxy_steps = self.config.fetch_retries
            if self.config.aggressive_fetch:
                proxy_steps = max(proxy_steps, pool_size)
            proxy_steps = min(proxy_steps, pool_size)
            plan.extend(
                FetchStep(AttemptKind.PROXY, timeout or self.config.proxy_timeout)
                for _ in range(proxy_steps)
            )

        if max_attempts is not None:
            plan = plan[:max(1, max_attempts)]
        return plan

    def retry_delay(self, retry_index: int) -> float:
        """Delay before the (retry_index + 1)-th retry."""
        delay = self.config.retry_delay * (2 ** retry_index)
        return min(delay, self.config.max_retry_delay)

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        timeout: Optional[float] = None,
        detect_captcha: bool = True,
        redirect_guard: Optional[RedirectGuard] = None,
        max_attempts: Optional[int] = None,
        use_proxies: bool = True,
    ) -> FetchResult:
        """
        Fetch a URL following the attempt plan.

        Args:
            url: Absolute URL
            method: HTTP method (GET or HEAD)
            timeout: Override for per-attempt timeouts
            detect_captcha: Inspect responses for CAPTCHA / block pages
            redirect_guard: Async predicate every redirect hop must satisfy
            max_attempts: Cap on attempts (direct included)
            use_proxies: Allow proxy attempts

        Returns:
            FetchResult of the first successful attempt. Any non-5xx status
            counts as success, including 4xx.

        Raises:
            RedirectLoopError, TooManyRedirectsError, RedirectBlockedError:
                Redirect policy failures
            CaptchaBlockedError: The last attempt ended on a CAPTCHA
            TransientFetchError: Attempts exhausted on transport/5xx failures
        """
        plan = self.build_attempt_plan(timeout, max_attempts, use_proxies)
        domain = (urlsplit(url).hostname or "").lower()
        outcomes: List[AttemptOutcome] = []
        tried_proxies: set = set()
        session: Optional[SessionData] = None
        last_captcha: Optional[CaptchaDetection] = None
        started = time.monotonic()

        for index, step in enumerate(plan):
            if index > 0:
                await asyncio.sleep(self.retry_delay(index - 1))

            proxy: Optional[ProxyHandle] = None
            if step.kind == AttemptKind.PROXY:
                proxy = await self.proxy_pool.next(exclude=tried_proxies)
                if proxy is None:
                    outcomes.append(AttemptOutcome(step.kind, "-", AttemptResult.NO_PROXY))
                    break
                tried_proxies.add(proxy.key)

            egress = proxy.key if proxy else DIRECT
            session = self.sessions.get_session(domain, egress, seed_from=session)
            attempt_started = time.monotonic()

            try:
                response, chain = await self._request(
                    self._client_for(proxy), url, method, step.timeout, session, redirect_guard,
                )
            except FetchError as e:
                # Redirect policy errors: the egress itself worked
                if proxy:
                    await self.proxy_pool.record_success(proxy)
                e.url = url
                e.attempts = outcomes
                raise
            except httpx.TimeoutException as e:
                outcomes.append(AttemptOutcome(
                    step.kind, egress, AttemptResult.TIMEOUT, detail=str(e) or type(e).__name__,
                    elapsed_ms=(time.monotonic() - attempt_started) * 1000,
                ))
                logger.info(f"{step.kind.value} attempt timed out for {url} via {egress}")
                if proxy:
                    await self.proxy_pool.record_failure(proxy, "timeout")
                continue
            except httpx.HTTPError as e:
                outcomes.append(AttemptOutcome(
                    step.kind, egress, AttemptResult.CONNECTION_ERROR, detail=str(e) or type(e).__name__,
                    elapsed_ms=(time.monotonic() - attempt_started) * 1000,
                ))
                logger.info(f"{step.kind.value} attempt failed for {url} via {egress}: {e}")
                if proxy:
                    await self.proxy_pool.record_failure(proxy, "connection_error")
                continue

            elapsed_ms = (time.monotonic() - attempt_started) * 1000
            final_url = chain[-1]
            status = response.status_code

            if detect_captcha:
                detection = detect_captcha_in(status, response, final_url)
                if detection.is_captcha:
                    last_captcha = detection
                    outcomes.append(AttemptOutcome(
                        step.kind, egress, AttemptResult.CAPTCHA, status_code=status,
                        detail=",".join(detection.indicators[:3]), elapsed_ms=elapsed_ms,
                    ))
                    logger.warning(
                        f"CAPTCHA detected on {final_url} via {egress} "
                        f"(type={detection.captcha_type.value}, confidence={detection.confidence:.2f})"
                    )
                    await self._try_solve(detection, final_url)
                    # Rotate whatever the solver said
                    if proxy:
                        await self.proxy_pool.record_failure(proxy, "captcha")
                    continue

            if status >= 500:
                outcomes.append(AttemptOutcome(
                    step.kind, egress, AttemptResult.SERVER_ERROR, status_code=status, elapsed_ms=elapsed_ms,
                ))
                logger.info(f"HTTP {status} for {url} via {egress}")
                if proxy:
                    await self.proxy_pool.record_failure(proxy, f"http_{status}")
                continue

            if proxy:
                await self.proxy_pool.record_success(proxy, elapsed_ms)
            outcomes.append(AttemptOutcome(
                step.kind, egress, AttemptResult.SUCCESS, status_code=status, elapsed_ms=elapsed_ms,
            ))

            return FetchResult(
                url=url,
                final_url=final_url,
                status_code=status,
                headers={k.lower(): v for k, v in response.headers.items()},
                content=response.content,
                encoding=response.encoding,
                redirect_chain=chain,
                proxy_used=proxy.key if proxy else None,
                attempts=outcomes,
                elapsed_ms=(time.monotonic() - started) * 1000,
            )

        executed = [o for o in outcomes if o.result != AttemptResult.NO_PROXY]
        if executed and executed[-1].result == AttemptResult.CAPTCHA:
            raise CaptchaBlockedError(
                f"CAPTCHA on every route for {url} ({last_captcha.captcha_type.value})",
                url=url, attempts=outcomes,
            )

        summary = ", ".join(f"{o.egress}:{o.result.value}" for o in executed) or "no attempts"
        raise TransientFetchError(f"Fetch failed for {url} ({summary})", url=url, attempts=outcomes)

    async def _request(
        self,
        client: httpx.AsyncClient,
        url: str,
        method: str,
        timeout: float,
        session: SessionData,
        redirect_guard: Optional[RedirectGuard],
    ) -> Tuple[httpx.Response, List[str]]:
        """Send a request, following redirects by hand."""
        chain = [url]
        current = url

        while True:
            headers = build_headers(session.user_agent, referer=chain[-2] if len(chain) > 1 else None)
            if session.cookies:
                headers["Cookie"] = "; ".join(f"{name}={value}" for name, value in session.cookies.items())

            response = await client.request(
                method, current, headers=headers, timeout=timeout, follow_redirects=False,
            )
            session.update_cookies(dict(response.cookies.items()))
            client.cookies.clear()

            location = response.headers.get("location")
            if response.status_code not in REDIRECT_STATUS_CODES or not location:
                return response, chain

            next_url = urldefrag(urljoin(current, location))[0]
            if next_url in chain:
                raise RedirectLoopError(f"Redirect loop: {' -> '.join(chain + [next_url])}")
            if len(chain) > self.config.max_redirects:
                raise TooManyRedirectsError(
                    f"More than {self.config.max_redirects} redirects starting at {url}"
                )
            if redirect_guard is not None and not await redirect_guard(next_url):
                raise RedirectBlockedError(f"Redirect to {next_url} blocked")

            logger.debug(f"Redirect {response.status_code}: {current} -> {next_url}")
            chain.append(next_url)
            current = next_url

    async def _try_solve(self, detection: CaptchaDetection, page_url: str) -> None:
        result = await self.captcha_solver.solve(
            detection.site_key, page_url, detection.captcha_type,
        )
        if result.solved:
            logger.info(f"CAPTCHA solved for {page_url}; rotating egress anyway")
        else:
            logger.debug(f"CAPTCHA not solved for {page_url}: {result.status.value} {result.error or ''}")


def detect_captcha_in(status_code: int, response: httpx.Response, final_url: str) -> CaptchaDetection:
    """Run CAPTCHA detection on textual responses only."""
    content_type = response.headers.get("content-type", "")
    body = response.text if ("html" in content_type or "text" in content_type or not content_type) else ""
    return detect_captcha(status_code, body, final_url)
