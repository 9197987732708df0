# src/seocrawl/constants.py
"""Centralized constants for the crawl engine.

This module contains magic numbers and default values that are used across
multiple modules. For user-configurable settings, see config.py and
CrawlConfig.
"""

# =============================================================================
# Queue Priority Constants
# =============================================================================

# Higher values are dispatched first.

# Priority of the base URL of a run
PRIORITY_SEED = 100

# Sitemap URLs get this base plus their sitemap priority hint scaled to 0-10
PRIORITY_SITEMAP_BASE = 50

# Scale applied to a sitemap <priority> hint (0.0-1.0)
PRIORITY_SITEMAP_SCALE = 10

# Sitemap <priority> assumed when a sitemap entry carries none
DEFAULT_SITEMAP_PRIORITY_HINT = 0.5

# Links discovered on crawled pages
PRIORITY_DISCOVERED_LINK = 20

# Pages suggested by external backlink discovery
PRIORITY_BACKLINK_DISCOVERY = 10


# =============================================================================
# Fetch Constants
# =============================================================================

# Timeout for the first, direct attempt (seconds)
DEFAULT_DIRECT_TIMEOUT_SECONDS = 15.0

# Timeout for attempts routed through a proxy (seconds)
DEFAULT_PROXY_TIMEOUT_SECONDS = 45.0

# Proxy attempts after the direct attempt, outside aggressive mode
DEFAULT_FETCH_RETRIES = 3

# Initial delay between proxy attempts (seconds)
DEFAULT_RETRY_DELAY_SECONDS = 2.0

# Upper bound for the delay between proxy attempts (seconds)
MAX_RETRY_DELAY_SECONDS = 10.0

# Maximum redirect hops followed for one fetch
DEFAULT_MAX_REDIRECTS = 10

# HTTP statuses treated as redirects
REDIRECT_STATUS_CODES = frozenset({301, 302, 303, 307, 308})

# Idle time after which a domain+proxy session is discarded (seconds)
DEFAULT_SESSION_IDLE_TTL_SECONDS = 600.0


# =============================================================================
# Robots / Sitemap Constants
# =============================================================================

# Lifetime of a cached robots.txt ruleset (seconds)
ROBOTS_CACHE_TTL_SECONDS = 24 * 60 * 60

# How long an origin whose robots.txt could not be retrieved is remembered (seconds)
ROBOTS_FAILURE_TTL_SECONDS = 5 * 60

# Timeout per robots.txt location attempt (seconds)
DEFAULT_ROBOTS_FETCH_TIMEOUT_SECONDS = 8.0

# Crawl delay used when robots.txt specifies none (seconds)
DEFAULT_CRAWL_DELAY_SECONDS = 0.5

# Crawl delays above this are clamped (seconds)
MAX_CRAWL_DELAY_SECONDS = 5.0

# Granularity of crawl-delay waits so pause/stop is observed quickly (seconds)
DELAY_CHECK_INTERVAL_SECONDS = 0.5

# User agent presented to robots.txt rules
DEFAULT_ROBOTS_USER_AGENT = "SEO-Crawler/1.0"

# Conventional sitemap locations checked with HEAD requests
COMMON_SITEMAP_PATHS = (
    "/sitemap.xml",
    "/sitemap_index.xml",
    "/sitemap-index.xml",
    "/sitemapindex.xml",
    "/sitemap/sitemap.xml",
)

# Timeout for each sitemap HEAD request (seconds)
SITEMAP_HEAD_TIMEOUT_SECONDS = 5.0

# Timeout for downloading a sitemap document (seconds)
SITEMAP_FETCH_TIMEOUT_SECONDS = 30.0

# Maximum sitemap index nesting followed
MAX_SITEMAP_DEPTH = 3


# =============================================================================
# Deduplication / Queue Constants
# =============================================================================

# Days a page crawled for a site suppresses re-crawling in later runs
DEFAULT_RETENTION_DAYS = 14

# Wall-clock budget for a single job before it is considered stalled (seconds)
DEFAULT_JOB_TIMEOUT_SECONDS = 300.0

# Attempts a job gets before it is abandoned
DEFAULT_JOB_ATTEMPTS = 3

# Base for exponential backoff calculation
EXPONENTIAL_BACKOFF_BASE = 2

# Initial backoff delay in seconds
INITIAL_BACKOFF_DELAY_SECONDS = 2.0

# Maximum backoff delay in seconds
MAX_BACKOFF_DELAY_SECONDS = 30.0

# Seconds an idle worker sleeps before polling the queue again
QUEUE_POLL_INTERVAL_SECONDS = 0.2


# =============================================================================
# Orchestrator Constants
# =============================================================================

# Default number of concurrent workers
DEFAULT_WORKER_COUNT = 10

# Sitemap URLs filtered per batch
FILTER_BATCH_SIZE = 100

# Sitemap URLs enqueued per queue batch
QUEUE_BATCH_SIZE = 50

# Filtering batches processed concurrently
CONCURRENT_FILTER_BATCHES = 3

# Links followed per crawled page
MAX_LINKS_PER_PAGE = 20

# Seconds between reconciliation / stall recovery sweeps
RECONCILE_INTERVAL_SECONDS = 5.0

# Upper bound for removing queued jobs on stop (seconds)
STOP_REMOVAL_TIMEOUT_SECONDS = 10.0


# =============================================================================
# Backlink Constants
# =============================================================================

# Ordinary pending jobs above which backlink discovery is deferred
BACKLINK_DEFER_THRESHOLD = 50

# Lifetime of the per-run "domain already searched" cache (seconds)
BACKLINK_DOMAIN_CACHE_TTL_SECONDS = 24 * 60 * 60

# Candidate sources requested from a finder per domain
BACKLINK_MAX_RESULTS = 100

# Seconds between checks while backlink discovery is deferred
BACKLINK_DEFER_POLL_SECONDS = 5.0


# =============================================================================
# CAPTCHA Constants
# =============================================================================

# Maximum time a solver may poll for a solution (seconds)
CAPTCHA_SOLVE_TIMEOUT_SECONDS = 120

# Seconds between solver status polls
CAPTCHA_POLL_INTERVAL_SECONDS = 5.0
