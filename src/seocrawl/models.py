"""Data models shared by the crawl engine."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RunStatus(str, Enum):
    """Lifecycle states of a crawl run."""
    PENDING = "pending"
    PENDING_APPROVAL = "pending_approval"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.STOPPED, RunStatus.COMPLETED, RunStatus.FAILED)

    @property
    def halts_work(self) -> bool:
        """Whether in-flight jobs must abort when they observe this status."""
        return self in (RunStatus.PAUSED, RunStatus.STOPPED)


class OriginKind(str, Enum):
    """How a URL entered the queue."""
    SEED = "seed"
    SITEMAP = "sitemap"
    DISCOVERED_LINK = "discovered-link"
    BACKLINK_DISCOVERY = "backlink-discovery"


class JobState(str, Enum):
    """Queue-side state of an outstanding job."""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"


@dataclass
class Site:
    """A website crawled by one or more runs."""

    id: int
    domain: str
    base_url: str
    robots_txt_url: Optional[str] = None
    sitemap_url: Optional[str] = None
    crawl_delay: Optional[float] = None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class CrawlRun:
    """One crawl session for one site."""

    id: int
    site_id: int
    status: RunStatus = RunStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    pages_crawled: int = 0
    pages_total: int = 0
    robots_approved: bool = False
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class CrawlJob:
    """One URL's unit of work.

    The first six fields are the persisted payload; the rest is queue
    bookkeeping.
    """

    url: str
    run_id: int
    priority: int
    idempotency_key: str
    origin_kind: OriginKind
    metadata: Dict[str, Any] = field(default_factory=dict)

    id: Optional[int] = None
    state: JobState = JobState.WAITING
    attempts: int = 0
    available_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to the queue wire shape."""
        payload = {
            "url": self.url,
            "runId": self.run_id,
            "priority": self.priority,
            "idempotencyKey": self.idempotency_key,
            "originKind": self.origin_kind.value,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CrawlJob":
        """Deserialize from the queue wire shape."""
        return cls(
            url=payload["url"],
            run_id=payload["runId"],
            priority=payload["priority"],
            idempotency_key=payload["idempotencyKey"],
            origin_kind=OriginKind(payload["originKind"]),
            metadata=payload.get("metadata") or {},
        )


@dataclass
class LinkRecord:
    """An outgoing link stored for a crawled page."""

    href: str  # Normalized target URL
    text: Optional[str] = None
    rel: Optional[str] = None
    is_external: bool = False
    id: Optional[int] = None
    page_id: Optional[int] = None


@dataclass
class PageRecord:
    """Persisted result of a successful fetch."""

    run_id: int
    site_id: int
    url: str  # Normalized
    status_code: int
    content_hash: Optional[str] = None
    title: Optional[str] = None
    final_url: Optional[str] = None
    discovered_via: str = OriginKind.SEED.value
    crawled_at: datetime = field(default_factory=datetime.now)
    id: Optional[int] = None
    links: List[LinkRecord] = field(default_factory=list)


@dataclass
class Backlink:
    """A directed edge from a source page to a target site."""

    target_site_id: int
    source_page_id: int
    link_id: int
    anchor_text: Optional[str] = None
    is_dofollow: bool = True
    is_sponsored: bool = False
    is_ugc: bool = False
    discovered_via: str = "crawl"
    id: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class SitemapEntry:
    """A URL listed in a sitemap."""

    url: str
    lastmod: Optional[str] = None
    priority: Optional[float] = None
    changefreq: Optional[str] = None


@dataclass
class ExtractedLink:
    """A link found in page HTML."""

    href: str  # Absolute URL
    text: Optional[str] = None
    rel: Optional[str] = None
    is_external: bool = False


@dataclass
class ExtractedPage:
    """Structured data extracted from a fetched HTML page."""

    url: str
    status_code: int
    title: Optional[str] = None
    description: Optional[str] = None
    h1_tags: List[str] = field(default_factory=list)
    canonical_url: Optional[str] = None
    robots_directives: Dict[str, bool] = field(default_factory=dict)
    links: List[ExtractedLink] = field(default_factory=list)
    word_count: int = 0
    content_hash: Optional[str] = None


@dataclass
class TransitionResult:
    """Outcome of an operator control request."""

    success: bool
    run_id: int
    status: Optional[RunStatus] = None
    message: str = ""
    sitemaps_found: int = 0
    urls_queued: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "success": self.success,
            "run_id": self.run_id,
            "status": self.status.value if self.status else None,
            "message": self.message,
            "sitemaps_found": self.sitemaps_found,
            "urls_queued": self.urls_queued,
        }
