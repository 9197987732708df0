"""Tests for the direct-first fetch pipeline."""

import httpx
import pytest

from seocrawl.config import CrawlConfig
from seocrawl.fetch import (
    AttemptKind,
    AttemptResult,
    CaptchaBlockedError,
    FetchPipeline,
    RedirectBlockedError,
    RedirectLoopError,
    TooManyRedirectsError,
    TransientFetchError,
)
from seocrawl.infrastructure.proxy_rotation import ProxyConfig, ProxyPool

pytest_plugins = ('pytest_asyncio',)

PAGE = "<html><head><title>OK</title></head><body>Hello</body></html>"
CAPTCHA_PAGE = '<html><body><div class="g-recaptcha" data-sitekey="site-key-123"></div></body></html>'


def make_pool(*hosts: str) -> ProxyPool:
    pool = ProxyPool()
    for host in hosts:
        pool.add_proxy(ProxyConfig(host=host, port=8080))
    return pool


def make_pipeline(direct, proxied=None, pool=None, **config_overrides) -> FetchPipeline:
    """Pipeline with separate handlers for the direct route and for proxies."""
    config = CrawlConfig(retry_delay=0.0, **config_overrides)

    def transport_factory(proxy_url):
        if proxy_url is None:
            return httpx.MockTransport(direct)
        return httpx.MockTransport(proxied or direct)

    return FetchPipeline(config=config, proxy_pool=pool, transport_factory=transport_factory)


def ok(request):
    return httpx.Response(200, html=PAGE)


def timeout(request):
    raise httpx.ConnectTimeout("timed out", request=request)


# =============================================================================
# Attempt plan
# =============================================================================

class TestAttemptPlan:
    """Tests for build_attempt_plan."""

    def test_direct_only_without_pool(self):
        """No pool means a single direct attempt."""
        plan = FetchPipeline().build_attempt_plan()

        assert [step.kind for step in plan] == [AttemptKind.DIRECT]
        assert plan[0].timeout == CrawlConfig().direct_timeout

    def test_direct_then_proxies(self):
        """Proxy steps follow the direct step, capped by fetch_retries."""
        pipeline = FetchPipeline(CrawlConfig(fetch_retries=3), proxy_pool=make_pool("p1", "p2", "p3", "p4", "p5"))
        plan = pipeline.build_attempt_plan()

        assert [step.kind for step in plan] == [AttemptKind.DIRECT] + [AttemptKind.PROXY] * 3
        assert plan[1].timeout == CrawlConfig().proxy_timeout

    def test_proxy_steps_capped_by_pool_size(self):
        """A proxy is never planned twice in one fetch."""
        pipeline = FetchPipeline(CrawlConfig(fetch_retries=3), proxy_pool=make_pool("p1"))

        assert len(pipeline.build_attempt_plan()) == 2

    def test_aggressive_mode_uses_whole_pool(self):
        """Aggressive mode tries every proxy."""
        pipeline = FetchPipeline(
            CrawlConfig(fetch_retries=1, aggressive_fetch=True),
            proxy_pool=make_pool("p1", "p2", "p3", "p4"),
        )

        assert len(pipeline.build_attempt_plan()) == 5

    def test_max_attempts_and_timeout_override(self):
        """Callers can cap attempts and override timeouts."""
        pipeline = FetchPipeline(proxy_pool=make_pool("p1", "p2"))
        plan = pipeline.build_attempt_plan(timeout=3.0, max_attempts=2)

        assert len(plan) == 2
        assert all(step.timeout == 3.0 for step in plan)

    def test_retry_delay_backoff(self):
        """Retry delays double up to the maximum."""
        pipeline = FetchPipeline(CrawlConfig(retry_delay=2.0, max_retry_delay=10.0))

        assert [pipeline.retry_delay(i) for i in range(4)] == [2.0, 4.0, 8.0, 10.0]


# =============================================================================
# Fetching
# =============================================================================

class TestFetch:
    """Tests for FetchPipeline.fetch."""

    @pytest.mark.asyncio
    async def test_direct_success(self):
        """A working direct route needs no proxy."""
        async with make_pipeline(ok, pool=make_pool("p1")) as pipeline:
            result = await pipeline.fetch("https://example.com/")

        assert result.status_code == 200
        assert result.proxy_used is None
        assert "Hello" in result.text
        assert "text/html" in result.content_type
        assert [a.result for a in result.attempts] == [AttemptResult.SUCCESS]

    @pytest.mark.asyncio
    async def test_direct_timeout_falls_back_to_proxy(self):
        """A direct timeout moves to a proxy, which records the success."""
        pool = make_pool("proxy.local")
        async with make_pipeline(timeout, ok, pool=pool) as pipeline:
            result = await pipeline.fetch("https://example.com/")

        assert result.status_code == 200
        assert result.proxy_used == "proxy.local:8080"
        assert [(a.kind, a.result) for a in result.attempts] == [
            (AttemptKind.DIRECT, AttemptResult.TIMEOUT),
            (AttemptKind.PROXY, AttemptResult.SUCCESS),
        ]
        assert pool.proxies[0].stats.success_count == 1

    @pytest.mark.asyncio
    async def test_not_found_is_a_result(self):
        """4xx responses are returned, not retried."""
        async with make_pipeline(lambda request: httpx.Response(404)) as pipeline:
            result = await pipeline.fetch("https://example.com/missing")

        assert result.status_code == 404
        assert len(result.attempts) == 1

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_distinct_proxies(self):
        """5xx everywhere raises a retryable error after each proxy was tried once."""
        pool = make_pool("p1", "p2")
        async with make_pipeline(lambda request: httpx.Response(502), pool=pool) as pipeline:
            with pytest.raises(TransientFetchError) as exc_info:
                await pipeline.fetch("https://example.com/")

        error = exc_info.value
        assert error.retryable is True
        assert error.skip_reason == "max-retries"
        egresses = [a.egress for a in error.attempts]
        assert egresses[0] == "direct"
        assert sorted(egresses[1:]) == ["p1:8080", "p2:8080"]
        assert all(p.stats.total_failures == 1 for p in pool.proxies)

    @pytest.mark.asyncio
    async def test_connection_error_without_pool(self):
        """Without proxies a transport failure ends the fetch."""
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        async with make_pipeline(refuse) as pipeline:
            with pytest.raises(TransientFetchError) as exc_info:
                await pipeline.fetch("https://example.com/")

        assert exc_info.value.attempts[0].result == AttemptResult.CONNECTION_ERROR


class TestRedirects:
    """Tests for manual redirect handling."""

    @pytest.mark.asyncio
    async def test_redirect_chain_recorded(self):
        """Redirects are followed and recorded."""
        def handler(request):
            if request.url.path == "/old":
                return httpx.Response(301, headers={"location": "/new"})
            return httpx.Response(200, html=PAGE)

        async with make_pipeline(handler) as pipeline:
            result = await pipeline.fetch("https://example.com/old")

        assert result.final_url == "https://example.com/new"
        assert result.redirect_chain == ["https://example.com/old", "https://example.com/new"]
        assert result.was_redirected

    @pytest.mark.asyncio
    async def test_redirect_loop(self):
        """A redirect back into the chain is a non-retryable loop."""
        def handler(request):
            target = "/b" if request.url.path == "/a" else "/a"
            return httpx.Response(302, headers={"location": target})

        async with make_pipeline(handler) as pipeline:
            with pytest.raises(RedirectLoopError) as exc_info:
                await pipeline.fetch("https://example.com/a")

        assert exc_info.value.retryable is False
        assert exc_info.value.skip_reason == "redirect-loop"

    @pytest.mark.asyncio
    async def test_too_many_redirects(self):
        """Chains longer than max_redirects fail."""
        def handler(request):
            hop = int(request.url.path.strip("/r") or 0)
            return httpx.Response(302, headers={"location": f"/r{hop + 1}"})

        async with make_pipeline(handler, max_redirects=3) as pipeline:
            with pytest.raises(TooManyRedirectsError):
                await pipeline.fetch("https://example.com/r0")

    @pytest.mark.asyncio
    async def test_redirect_guard_blocks_hop(self):
        """The caller's guard can reject a hop."""
        def handler(request):
            if request.url.path == "/start":
                return httpx.Response(301, headers={"location": "/private/page"})
            return httpx.Response(200, html=PAGE)

        async def guard(url):
            return "/private/" not in url

        async with make_pipeline(handler) as pipeline:
            with pytest.raises(RedirectBlockedError):
                await pipeline.fetch("https://example.com/start", redirect_guard=guard)


class TestCaptchaHandling:
    """Tests for CAPTCHA detection during fetches."""

    @pytest.mark.asyncio
    async def test_captcha_without_proxies_blocks(self):
        """A CAPTCHA on the only route is a non-retryable block."""
        captcha = lambda request: httpx.Response(200, html=CAPTCHA_PAGE)

        async with make_pipeline(captcha) as pipeline:
            with pytest.raises(CaptchaBlockedError) as exc_info:
                await pipeline.fetch("https://example.com/")

        assert exc_info.value.skip_reason == "captcha"
        assert exc_info.value.attempts[0].result == AttemptResult.CAPTCHA

    @pytest.mark.asyncio
    async def test_captcha_rotates_to_proxy(self):
        """A CAPTCHA on the direct route moves on to a proxy."""
        captcha = lambda request: httpx.Response(200, html=CAPTCHA_PAGE)

        async with make_pipeline(captcha, ok, pool=make_pool("p1")) as pipeline:
            result = await pipeline.fetch("https://example.com/")

        assert result.proxy_used == "p1:8080"
        assert result.attempts[0].result == AttemptResult.CAPTCHA

    @pytest.mark.asyncio
    async def test_detection_can_be_disabled(self):
        """detect_captcha=False returns the page as-is."""
        captcha = lambda request: httpx.Response(200, html=CAPTCHA_PAGE)

        async with make_pipeline(captcha) as pipeline:
            result = await pipeline.fetch("https://example.com/", detect_captcha=False)

        assert result.status_code == 200


class TestSessions:
    """Tests for session affinity across fetches."""

    @pytest.mark.asyncio
    async def test_cookies_and_user_agent_persist(self):
        """The same domain and egress reuse cookies and user agent."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, html=PAGE, headers={"set-cookie": "token=abc; Path=/"})

        async with make_pipeline(handler) as pipeline:
            await pipeline.fetch("https://example.com/one")
            await pipeline.fetch("https://example.com/two")

        first, second = seen
        assert "cookie" not in first.headers
        assert second.headers["cookie"] == "token=abc"
        assert first.headers["user-agent"] == second.headers["user-agent"]
