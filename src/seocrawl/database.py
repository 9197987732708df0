"""Persistence layer for sites, crawl runs, pages, links, backlinks and audit logs."""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set
import logging

from seocrawl.config import settings
from seocrawl.models import Backlink, CrawlRun, LinkRecord, PageRecord, RunStatus, Site

logger = logging.getLogger(__name__)

# sqlite's default host parameter limit is 999 on older builds
SQL_IN_CHUNK = 500

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS sites (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    domain TEXT NOT NULL UNIQUE,
    base_url TEXT NOT NULL,
    robots_txt_url TEXT,
    sitemap_url TEXT,
    crawl_delay REAL,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS crawl_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    site_id INTEGER NOT NULL REFERENCES sites(id) ON DELETE CASCADE,
    status TEXT NOT NULL,
    started_at TIMESTAMP,
    completed_at TIMESTAMP,
    pages_crawled INTEGER NOT NULL DEFAULT 0,
    pages_total INTEGER NOT NULL DEFAULT 0,
    robots_approved INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS page_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER NOT NULL REFERENCES crawl_runs(id) ON DELETE CASCADE,
    site_id INTEGER NOT NULL,
    url TEXT NOT NULL,
    status_code INTEGER NOT NULL,
    content_hash TEXT,
    title TEXT,
    final_url TEXT,
    discovered_via TEXT,
    crawled_at TIMESTAMP NOT NULL,
    UNIQUE(run_id, url)
);
CREATE INDEX IF NOT EXISTS idx_page_records_site_url ON page_records(site_id, url, crawled_at);
CREATE INDEX IF NOT EXISTS idx_page_records_url ON page_records(url);

CREATE TABLE IF NOT EXISTS links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    page_id INTEGER NOT NULL REFERENCES page_records(id) ON DELETE CASCADE,
    href TEXT NOT NULL,
    text TEXT,
    rel TEXT,
    is_external INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_links_href ON links(href);

CREATE TABLE IF NOT EXISTS backlinks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    target_site_id INTEGER NOT NULL,
    source_page_id INTEGER NOT NULL REFERENCES page_records(id) ON DELETE CASCADE,
    link_id INTEGER NOT NULL REFERENCES links(id) ON DELETE CASCADE,
    anchor_text TEXT,
    is_dofollow INTEGER NOT NULL DEFAULT 1,
    is_sponsored INTEGER NOT NULL DEFAULT 0,
    is_ugc INTEGER NOT NULL DEFAULT 0,
    discovered_via TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL,
    UNIQUE(target_site_id, source_page_id, link_id)
);

CREATE TABLE IF NOT EXISTS audit_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER NOT NULL,
    category TEXT NOT NULL,
    message TEXT NOT NULL,
    metadata TEXT,
    created_at TIMESTAMP NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_audit_logs_run ON audit_logs(run_id, category);
"""


def _chunks(items: List[Any], size: int = SQL_IN_CHUNK):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class AbstractDatabase(ABC):
    """Abstract base class defining the persistence contract used by the crawl engine.

    Every method must be safe to call concurrently from multiple workers.
    """

    @abstractmethod
    def connect(self) -> None:
        """Establish database connection."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close database connection."""
        pass

    @abstractmethod
    def create_schema(self) -> None:
        """Create the necessary database tables."""
        pass

    # Sites and runs

    @abstractmethod
    def get_or_create_site(self, domain: str, base_url: str) -> Site:
        """Return the site for a domain, creating it if needed."""
        pass

    @abstractmethod
    def get_site(self, site_id: int) -> Optional[Site]:
        pass

    @abstractmethod
    def update_site(self, site_id: int, **fields: Any) -> None:
        """Update robots_txt_url, sitemap_url or crawl_delay of a site."""
        pass

    @abstractmethod
    def create_run(self, site_id: int, status: RunStatus = RunStatus.PENDING) -> CrawlRun:
        pass

    @abstractmethod
    def get_run(self, run_id: int) -> Optional[CrawlRun]:
        """Return the run, or None if it does not exist (e.g. deleted)."""
        pass

    @abstractmethod
    def list_runs(self, status: Optional[RunStatus] = None) -> List[CrawlRun]:
        pass

    @abstractmethod
    def delete_run(self, run_id: int) -> None:
        pass

    @abstractmethod
    def update_run_status(
        self,
        run_id: int,
        status: RunStatus,
        expected: Optional[Iterable[RunStatus]] = None,
    ) -> bool:
        """Set a run's status.

        Args:
            run_id: Run to update
            status: New status
            expected: If given, only update when the current status is one of these

        Returns:
            True if the row was updated
        """
        pass

    @abstractmethod
    def set_robots_approved(self, run_id: int, approved: bool) -> None:
        pass

    @abstractmethod
    def increment_pages_crawled(self, run_id: int, amount: int = 1) -> None:
        pass

    @abstractmethod
    def increment_pages_total(self, run_id: int, amount: int = 1) -> None:
        pass

    # Pages and links

    @abstractmethod
    def create_page_record(self, record: PageRecord) -> Optional[PageRecord]:
        """Persist a page and its links.

        Returns:
            The stored record with ids assigned, or None when a record for
            (run_id, url) already exists
        """
        pass

    @abstractmethod
    def find_page_record(
        self,
        url: str,
        run_id: Optional[int] = None,
        site_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> Optional[PageRecord]:
        pass

    @abstractmethod
    def find_crawled_urls(
        self,
        urls: Iterable[str],
        run_id: Optional[int] = None,
        site_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> Set[str]:
        """Set-based form of find_page_record. Returns the subset already stored."""
        pass

    @abstractmethod
    def find_page_sites(self, urls: Iterable[str]) -> Dict[str, Set[int]]:
        """Map each URL with a page record in any site to the ids of those sites."""
        pass

    @abstractmethod
    def find_links_to(self, href: str, exclude_page_id: Optional[int] = None) -> List[LinkRecord]:
        """Links (with page_id) across all sites whose normalized href is href."""
        pass

    @abstractmethod
    def get_page_record(self, page_id: int) -> Optional[PageRecord]:
        pass

    @abstractmethod
    def get_page_records(self, run_id: int) -> List[PageRecord]:
        pass

    @abstractmethod
    def get_links(self, page_id: int) -> List[LinkRecord]:
        pass

    # Backlinks

    @abstractmethod
    def create_backlinks_batch(self, backlinks: List[Backlink], skip_duplicates: bool = True) -> int:
        """Insert backlinks.

        Returns:
            Number of rows actually created
        """
        pass

    @abstractmethod
    def get_backlinks(self, target_site_id: int) -> List[Backlink]:
        pass

    # Audit log

    @abstractmethod
    def add_audit_log(self, run_id: int, category: str, message: str,
                      metadata: Optional[Dict[str, Any]] = None) -> None:
        pass

    @abstractmethod
    def get_audit_logs(self, run_id: int, category: Optional[str] = None,
                       limit: int = 100) -> List[Dict[str, Any]]:
        pass


class LocalSqliteDatabase(AbstractDatabase):
    """SQLite database implementation for local storage."""

    def __init__(self, db_url: Optional[str] = None):
        """Initialize local SQLite database.

        Args:
            db_url: Database URL (sqlite:///path/to/db.db or sqlite:///:memory:).
                Defaults to settings.DATABASE_URL.
        """
        self.db_url = db_url or settings.DATABASE_URL
        self.db_path = self.db_url.replace("sqlite:///", "")
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self.connect()
        self.create_schema()

    def connect(self) -> None:
        """Establish SQLite connection."""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        logger.debug(f"Connected to local SQLite database: {self.db_path}")

    def close(self) -> None:
        """Close SQLite connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Closed local SQLite connection")

    def create_schema(self) -> None:
        """Create tables if they don't exist."""
        with self._lock, self.conn:
            self.conn.executescript(CREATE_TABLES_SQL)
        logger.debug("Schema verified/created for local SQLite")

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchall()

    # Sites and runs

    @staticmethod
    def _row_to_site(row: sqlite3.Row) -> Site:
        return Site(
            id=row["id"],
            domain=row["domain"],
            base_url=row["base_url"],
            robots_txt_url=row["robots_txt_url"],
            sitemap_url=row["sitemap_url"],
            crawl_delay=row["crawl_delay"],
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> CrawlRun:
        return CrawlRun(
            id=row["id"],
            site_id=row["site_id"],
            status=RunStatus(row["status"]),
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            pages_crawled=row["pages_crawled"],
            pages_total=row["pages_total"],
            robots_approved=bool(row["robots_approved"]),
            created_at=_parse_ts(row["created_at"]),
        )

    def get_or_create_site(self, domain: str, base_url: str) -> Site:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT OR IGNORE INTO sites (domain, base_url, created_at) VALUES (?, ?, ?)",
                (domain, base_url, _ts(datetime.now())),
            )
            row = self.conn.execute("SELECT * FROM sites WHERE domain = ?", (domain,)).fetchone()
        return self._row_to_site(row)

    def get_site(self, site_id: int) -> Optional[Site]:
        rows = self._query("SELECT * FROM sites WHERE id = ?", (site_id,))
        return self._row_to_site(rows[0]) if rows else None

    def update_site(self, site_id: int, **fields: Any) -> None:
        allowed = {"robots_txt_url", "sitemap_url", "crawl_delay", "base_url"}
        updates = {k: v for k, v in fields.items() if k in allowed}
        if not updates:
            return
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with self._lock, self.conn:
            self.conn.execute(
                f"UPDATE sites SET {assignments} WHERE id = ?",
                (*updates.values(), site_id),
            )

    def create_run(self, site_id: int, status: RunStatus = RunStatus.PENDING) -> CrawlRun:
        with self._lock, self.conn:
            cursor = self.conn.execute(
                "INSERT INTO crawl_runs (site_id, status, created_at) VALUES (?, ?, ?)",
                (site_id, status.value, _ts(datetime.now())),
            )
            run_id = cursor.lastrowid
        return self.get_run(run_id)

    def get_run(self, run_id: int) -> Optional[CrawlRun]:
        rows = self._query("SELECT * FROM crawl_runs WHERE id = ?", (run_id,))
        return self._row_to_run(rows[0]) if rows else None

    def list_runs(self, status: Optional[RunStatus] = None) -> List[CrawlRun]:
        if status is None:
            rows = self._query("SELECT * FROM crawl_runs ORDER BY id")
        else:
            rows = self._query("SELECT * FROM crawl_runs WHERE status = ? ORDER BY id", (status.value,))
        return [self._row_to_run(row) for row in rows]

    def delete_run(self, run_id: int) -> None:
        with self._lock, self.conn:
            self.conn.execute("DELETE FROM crawl_runs WHERE id = ?", (run_id,))

    def update_run_status(
        self,
        run_id: int,
        status: RunStatus,
        expected: Optional[Iterable[RunStatus]] = None,
    ) -> bool:
        now = _ts(datetime.now())
        sql = "UPDATE crawl_runs SET status = ?"
        params: List[Any] = [status.value]

        if status == RunStatus.IN_PROGRESS:
            sql += ", started_at = COALESCE(started_at, ?), completed_at = NULL"
            params.append(now)
        elif status.is_terminal:
            sql += ", completed_at = ?"
            params.append(now)

        sql += " WHERE id = ?"
        params.append(run_id)

        if expected is not None:
            expected_values = [s.value for s in expected]
            sql += f" AND status IN ({', '.join('?' for _ in expected_values)})"
            params.extend(expected_values)

        with self._lock, self.conn:
            cursor = self.conn.execute(sql, params)
        return cursor.rowcount > 0

    def set_robots_approved(self, run_id: int, approved: bool) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "UPDATE crawl_runs SET robots_approved = ? WHERE id = ?",
                (1 if approved else 0, run_id),
            )

    def increment_pages_crawled(self, run_id: int, amount: int = 1) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "UPDATE crawl_runs SET pages_crawled = pages_crawled + ? WHERE id = ?",
                (amount, run_id),
            )

    def increment_pages_total(self, run_id: int, amount: int = 1) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "UPDATE crawl_runs SET pages_total = pages_total + ? WHERE id = ?",
                (amount, run_id),
            )

    # Pages and links

    @staticmethod
    def _row_to_page(row: sqlite3.Row) -> PageRecord:
        return PageRecord(
            id=row["id"],
            run_id=row["run_id"],
            site_id=row["site_id"],
            url=row["url"],
            status_code=row["status_code"],
            content_hash=row["content_hash"],
            title=row["title"],
            final_url=row["final_url"],
            discovered_via=row["discovered_via"],
            crawled_at=_parse_ts(row["crawled_at"]),
        )

    @staticmethod
    def _row_to_link(row: sqlite3.Row) -> LinkRecord:
        return LinkRecord(
            id=row["id"],
            page_id=row["page_id"],
            href=row["href"],
            text=row["text"],
            rel=row["rel"],
            is_external=bool(row["is_external"]),
        )

    def create_page_record(self, record: PageRecord) -> Optional[PageRecord]:
        with self._lock:
            try:
                with self.conn:
                    cursor = self.conn.execute(
                        """INSERT INTO page_records
                           (run_id, site_id, url, status_code, content_hash, title,
                            final_url, discovered_via, crawled_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        (record.run_id, record.site_id, record.url, record.status_code,
                         record.content_hash, record.title, record.final_url,
                         record.discovered_via, _ts(record.crawled_at)),
                    )
                    record.id = cursor.lastrowid
                    for link in record.links:
                        link_cursor = self.conn.execute(
                            "INSERT INTO links (page_id, href, text, rel, is_external) VALUES (?, ?, ?, ?, ?)",
                            (record.id, link.href, link.text, link.rel, 1 if link.is_external else 0),
                        )
                        link.id = link_cursor.lastrowid
                        link.page_id = record.id
            except sqlite3.IntegrityError as e:
                if "UNIQUE" not in str(e):
                    raise
                record.id = None
                for link in record.links:
                    link.id = None
                    link.page_id = None
                logger.debug(f"Page record already exists for run {record.run_id}: {record.url}")
                return None
        return record

    def find_page_record(
        self,
        url: str,
        run_id: Optional[int] = None,
        site_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> Optional[PageRecord]:
        sql = "SELECT * FROM page_records WHERE url = ?"
        params: List[Any] = [url]
        if run_id is not None:
            sql += " AND run_id = ?"
            params.append(run_id)
        if site_id is not None:
            sql += " AND site_id = ?"
            params.append(site_id)
        if since is not None:
            sql += " AND crawled_at >= ?"
            params.append(_ts(since))
        sql += " ORDER BY crawled_at DESC LIMIT 1"
        rows = self._query(sql, params)
        return self._row_to_page(rows[0]) if rows else None

    def find_crawled_urls(
        self,
        urls: Iterable[str],
        run_id: Optional[int] = None,
        site_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> Set[str]:
        url_list = list(dict.fromkeys(urls))
        found: Set[str] = set()
        for chunk in _chunks(url_list):
            sql = f"SELECT DISTINCT url FROM page_records WHERE url IN ({', '.join('?' for _ in chunk)})"
            params: List[Any] = list(chunk)
            if run_id is not None:
                sql += " AND run_id = ?"
                params.append(run_id)
            if site_id is not None:
                sql += " AND site_id = ?"
                params.append(site_id)
            if since is not None:
                sql += " AND crawled_at >= ?"
                params.append(_ts(since))
            found.update(row["url"] for row in self._query(sql, params))
        return found

    def find_page_sites(self, urls: Iterable[str]) -> Dict[str, Set[int]]:
        url_list = list(dict.fromkeys(urls))
        result: Dict[str, Set[int]] = {}
        for chunk in _chunks(url_list):
            rows = self._query(
                f"SELECT DISTINCT url, site_id FROM page_records WHERE url IN ({', '.join('?' for _ in chunk)})",
                chunk,
            )
            for row in rows:
                result.setdefault(row["url"], set()).add(row["site_id"])
        return result

    def find_links_to(self, href: str, exclude_page_id: Optional[int] = None) -> List[LinkRecord]:
        sql = "SELECT * FROM links WHERE href = ?"
        params: List[Any] = [href]
        if exclude_page_id is not None:
            sql += " AND page_id != ?"
            params.append(exclude_page_id)
        return [self._row_to_link(row) for row in self._query(sql, params)]

    def get_page_record(self, page_id: int) -> Optional[PageRecord]:
        rows = self._query("SELECT * FROM page_records WHERE id = ?", (page_id,))
        return self._row_to_page(rows[0]) if rows else None

    def get_page_records(self, run_id: int) -> List[PageRecord]:
        rows = self._query("SELECT * FROM page_records WHERE run_id = ? ORDER BY id", (run_id,))
        return [self._row_to_page(row) for row in rows]

    def get_links(self, page_id: int) -> List[LinkRecord]:
        rows = self._query("SELECT * FROM links WHERE page_id = ? ORDER BY id", (page_id,))
        return [self._row_to_link(row) for row in rows]

    # Backlinks

    def create_backlinks_batch(self, backlinks: List[Backlink], skip_duplicates: bool = True) -> int:
        if not backlinks:
            return 0
        verb = "INSERT OR IGNORE" if skip_duplicates else "INSERT"
        rows = [
            (b.target_site_id, b.source_page_id, b.link_id, b.anchor_text,
             int(b.is_dofollow), int(b.is_sponsored), int(b.is_ugc),
             b.discovered_via, _ts(b.created_at))
            for b in backlinks
        ]
        with self._lock, self.conn:
            before = self.conn.total_changes
            self.conn.executemany(
                f"""{verb} INTO backlinks
                    (target_site_id, source_page_id, link_id, anchor_text,
                     is_dofollow, is_sponsored, is_ugc, discovered_via, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
            created = self.conn.total_changes - before
        return created

    def get_backlinks(self, target_site_id: int) -> List[Backlink]:
        rows = self._query(
            "SELECT * FROM backlinks WHERE target_site_id = ? ORDER BY id", (target_site_id,)
        )
        return [
            Backlink(
                id=row["id"],
                target_site_id=row["target_site_id"],
                source_page_id=row["source_page_id"],
                link_id=row["link_id"],
                anchor_text=row["anchor_text"],
                is_dofollow=bool(row["is_dofollow"]),
                is_sponsored=bool(row["is_sponsored"]),
                is_ugc=bool(row["is_ugc"]),
                discovered_via=row["discovered_via"],
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    # Audit log

    def add_audit_log(self, run_id: int, category: str, message: str,
                      metadata: Optional[Dict[str, Any]] = None) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO audit_logs (run_id, category, message, metadata, created_at) VALUES (?, ?, ?, ?, ?)",
                (run_id, category, message, json.dumps(metadata or {}, default=str), _ts(datetime.now())),
            )

    def get_audit_logs(self, run_id: int, category: Optional[str] = None,
                       limit: int = 100) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM audit_logs WHERE run_id = ?"
        params: List[Any] = [run_id]
        if category:
            sql += " AND category = ?"
            params.append(category)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        return [
            {
                "id": row["id"],
                "run_id": row["run_id"],
                "category": row["category"],
                "message": row["message"],
                "metadata": json.loads(row["metadata"]) if row["metadata"] else {},
                "created_at": row["created_at"],
            }
            for row in self._query(sql, params)
        ]


def get_db_client(
    backend: Optional[str] = None,
    **kwargs,
) -> AbstractDatabase:
    """Factory function to create the appropriate database client.

    Args:
        backend: Database backend ('local'). Defaults to settings.DB_BACKEND.
        **kwargs: Additional arguments passed to the database constructor.

    Returns:
        An instance of AbstractDatabase.

    Raises:
        ValueError: If an unknown backend is specified.
    """
    backend = backend or settings.DB_BACKEND

    if backend == "local":
        logger.info("Using local SQLite database backend")
        return LocalSqliteDatabase(**kwargs)
    else:
        raise ValueError(
            f"Unknown database backend: '{backend}'. "
            "Supported backends: 'local'"
        )
