"""Categorized, operator-facing event stream for crawl runs."""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from seocrawl.database import AbstractDatabase

logger = logging.getLogger(__name__)


class LogCategory(str, Enum):
    """Categories of the per-run log stream."""
    SETUP = "setup"
    FILTERING = "filtering"
    QUEUED = "queued"
    CRAWLED = "crawled"
    SKIPPED = "skipped"
    BACKLINK_DISCOVERY = "backlink-discovery"


class SkipReason(str, Enum):
    """Reasons attached to skipped events."""
    ROBOTS = "robots.txt"
    ROBOTS_FAILED = "robots.txt-failed"
    DUPLICATE = "duplicate"
    DUPLICATE_RESULT = "duplicate-result"
    RECENT = "recent"
    NOT_FOUND = "404"
    REDIRECT_LOOP = "redirect-loop"
    TOO_MANY_REDIRECTS = "too-many-redirects"
    REDIRECT_BLOCKED = "redirect-blocked"
    CAPTCHA = "captcha"
    MAX_RETRIES = "max-retries"


_LEVELS = {
    LogCategory.SKIPPED: logging.DEBUG,
    LogCategory.QUEUED: logging.DEBUG,
    LogCategory.CRAWLED: logging.INFO,
}


class AuditLog:
    """Writes run events to storage and mirrors them to the Python logger.

    Storage failures are logged and swallowed; an audit write never fails the
    job that produced it.
    """

    def __init__(self, db: AbstractDatabase):
        self.db = db

    def log(self, run_id: int, category: LogCategory, message: str, **metadata: Any) -> None:
        """Record an event for a run.

        Args:
            run_id: Run the event belongs to
            category: Event category
            message: Human-readable message
            **metadata: Structured details (url, reason, counts...)
        """
        level = _LEVELS.get(category, logging.INFO)
        logger.log(level, f"[run {run_id}] [{category.value}] {message}")

        clean = {
            key: value.value if isinstance(value, Enum) else value
            for key, value in metadata.items()
            if value is not None
        }
        try:
            self.db.add_audit_log(run_id, category.value, message, clean)
        except Exception as e:
            logger.error(f"Failed to store audit log for run {run_id}: {e}")

    def skipped(self, run_id: int, url: str, reason: SkipReason, message: Optional[str] = None, **metadata: Any) -> None:
        """Record a skipped URL with its reason."""
        self.log(
            run_id,
            LogCategory.SKIPPED,
            message or f"Skipped {url} ({reason.value})",
            url=url,
            reason=reason,
            **metadata,
        )

    def get_logs(self, run_id: int, category: Optional[LogCategory] = None,
                 limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent events for a run, newest first."""
        return self.db.get_audit_logs(run_id, category.value if category else None, limit)
