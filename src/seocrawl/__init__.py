"""robots.txt-governed site crawler with backlink discovery."""

__version__ = "0.1.0"

from seocrawl.config import CrawlConfig, settings
from seocrawl.models import (
    Backlink,
    CrawlJob,
    CrawlRun,
    JobState,
    LinkRecord,
    OriginKind,
    PageRecord,
    RunStatus,
    Site,
    SitemapEntry,
    TransitionResult,
)
from seocrawl.database import AbstractDatabase, LocalSqliteDatabase, get_db_client
from seocrawl.audit_log import AuditLog, LogCategory, SkipReason
from seocrawl.fetch import FetchPipeline, FetchResult, FetchError
from seocrawl.robots import RobotsPolicy, RobotsRuleset, RobotsUnavailableError
from seocrawl.sitemap_parser import SitemapDiscoverer
from seocrawl.job_queue import JobQueue, QueueFullError
from seocrawl.deduplication import DeduplicationStore
from seocrawl.backlinks import BacklinkGraph, BacklinkSourceFinder, NullSourceFinder, StaticSourceFinder
from seocrawl.orchestrator import CrawlOrchestrator, InvalidTransitionError

__all__ = [
    # Core
    "CrawlOrchestrator",
    "InvalidTransitionError",
    "FetchPipeline",
    "FetchResult",
    "FetchError",
    "RobotsPolicy",
    "RobotsRuleset",
    "RobotsUnavailableError",
    "SitemapDiscoverer",
    "JobQueue",
    "QueueFullError",
    "DeduplicationStore",
    "BacklinkGraph",
    "BacklinkSourceFinder",
    "NullSourceFinder",
    "StaticSourceFinder",
    # Storage
    "AbstractDatabase",
    "LocalSqliteDatabase",
    "get_db_client",
    "AuditLog",
    "LogCategory",
    "SkipReason",
    # Models
    "Backlink",
    "CrawlJob",
    "CrawlRun",
    "JobState",
    "LinkRecord",
    "OriginKind",
    "PageRecord",
    "RunStatus",
    "Site",
    "SitemapEntry",
    "TransitionResult",
    "CrawlConfig",
    "settings",
]
