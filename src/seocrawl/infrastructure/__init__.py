"""
Infrastructure Package.

Provides proxy rotation and per-host crawl-delay spacing for the fetch
pipeline and the worker pool.
"""

from .proxy_rotation import (
    ProxyPool,
    ProxyPoolConfig,
    ProxyConfig,
    ProxyHandle,
    ProxyHealth,
    ProxyType,
    RotationStrategy,
    create_proxy_pool_from_env,
)
from .rate_limiter import (
    CrawlDelayLimiter,
    DelayMetrics,
)

__all__ = [
    # Proxy rotation
    "ProxyPool",
    "ProxyPoolConfig",
    "ProxyConfig",
    "ProxyHandle",
    "ProxyHealth",
    "ProxyType",
    "RotationStrategy",
    "create_proxy_pool_from_env",
    # Crawl delay
    "CrawlDelayLimiter",
    "DelayMetrics",
]
