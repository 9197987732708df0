from dotenv import load_dotenv
from dataclasses import dataclass, fields
from typing import Optional
from pathlib import Path
import json
import os

import yaml

from seocrawl import constants

load_dotenv()  # Loads variables from .env file


class Settings:
    """
    Manages process-level settings loaded from environment variables.
    """
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///seocrawl.db")  # Default to SQLite
    DB_BACKEND = os.getenv("DB_BACKEND", "local")

    USER_AGENT = os.getenv("USER_AGENT", constants.DEFAULT_ROBOTS_USER_AGENT)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # CAPTCHA solving ('none' or 'mock')
    CAPTCHA_SERVICE = os.getenv("CAPTCHA_SERVICE", "none")


settings = Settings()


@dataclass
class CrawlConfig:
    """Tunables for the crawl engine."""

    # Workers
    worker_count: int = constants.DEFAULT_WORKER_COUNT
    user_agent: str = constants.DEFAULT_ROBOTS_USER_AGENT

    # Fetch pipeline
    direct_timeout: float = constants.DEFAULT_DIRECT_TIMEOUT_SECONDS
    proxy_timeout: float = constants.DEFAULT_PROXY_TIMEOUT_SECONDS
    fetch_retries: int = constants.DEFAULT_FETCH_RETRIES
    retry_delay: float = constants.DEFAULT_RETRY_DELAY_SECONDS
    max_retry_delay: float = constants.MAX_RETRY_DELAY_SECONDS
    max_redirects: int = constants.DEFAULT_MAX_REDIRECTS
    aggressive_fetch: bool = False
    session_idle_ttl: float = constants.DEFAULT_SESSION_IDLE_TTL_SECONDS
    captcha_timeout: int = constants.CAPTCHA_SOLVE_TIMEOUT_SECONDS

    # Robots / sitemaps
    robots_ttl: float = constants.ROBOTS_CACHE_TTL_SECONDS
    robots_fetch_timeout: float = constants.DEFAULT_ROBOTS_FETCH_TIMEOUT_SECONDS
    default_crawl_delay: float = constants.DEFAULT_CRAWL_DELAY_SECONDS
    max_crawl_delay: float = constants.MAX_CRAWL_DELAY_SECONDS
    delay_check_interval: float = constants.DELAY_CHECK_INTERVAL_SECONDS
    sitemap_head_timeout: float = constants.SITEMAP_HEAD_TIMEOUT_SECONDS
    sitemap_max_depth: int = constants.MAX_SITEMAP_DEPTH

    # Deduplication / queue
    retention_days: int = constants.DEFAULT_RETENTION_DAYS
    job_timeout: float = constants.DEFAULT_JOB_TIMEOUT_SECONDS
    job_attempts: int = constants.DEFAULT_JOB_ATTEMPTS
    queue_max_jobs: Optional[int] = None  # None means unbounded
    queue_poll_interval: float = constants.QUEUE_POLL_INTERVAL_SECONDS

    # Seeding / link following
    filter_batch_size: int = constants.FILTER_BATCH_SIZE
    queue_batch_size: int = constants.QUEUE_BATCH_SIZE
    concurrent_filter_batches: int = constants.CONCURRENT_FILTER_BATCHES
    max_links_per_page: int = constants.MAX_LINKS_PER_PAGE
    reconcile_interval: float = constants.RECONCILE_INTERVAL_SECONDS
    stop_removal_timeout: float = constants.STOP_REMOVAL_TIMEOUT_SECONDS

    # Backlinks
    backlink_discovery: bool = True
    backlink_defer_threshold: int = constants.BACKLINK_DEFER_THRESHOLD
    backlink_domain_cache_ttl: float = constants.BACKLINK_DOMAIN_CACHE_TTL_SECONDS
    backlink_max_results: int = constants.BACKLINK_MAX_RESULTS
    backlink_crawl_limit: Optional[int] = None  # None means no limit
    backlink_defer_poll_interval: float = constants.BACKLINK_DEFER_POLL_SECONDS

    @classmethod
    def from_env(cls) -> "CrawlConfig":
        """Load configuration from environment variables.

        Environment variables are prefixed with SEOCRAWL_
        e.g., SEOCRAWL_WORKER_COUNT=4 or SEOCRAWL_BACKLINK_CRAWL_LIMIT=300

        Returns:
            CrawlConfig with values from environment
        """
        config = cls()
        prefix = "SEOCRAWL_"

        for field_name in config.__dataclass_fields__:
            env_value = os.getenv(f"{prefix}{field_name.upper()}")
            if env_value is not None:
                config._set_from_string(field_name, env_value)

        return config

    @classmethod
    def from_file(cls, path: str) -> "CrawlConfig":
        """Load configuration from a YAML or JSON file.

        Args:
            path: Path to a .yaml/.yml or .json file

        Returns:
            CrawlConfig with values from file (defaults when the file is missing)
        """
        config = cls()
        file_path = Path(path)

        if not file_path.exists():
            return config

        with open(file_path, 'r') as f:
            if file_path.suffix.lower() in ('.yaml', '.yml'):
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)

        crawl_section = data.get('crawl', data)

        for field_name in config.__dataclass_fields__:
            if field_name in crawl_section:
                setattr(config, field_name, crawl_section[field_name])

        return config

    def _set_from_string(self, field_name: str, raw: str) -> None:
        default = getattr(self, field_name)
        try:
            if raw.lower() in ("none", "nolimit", ""):
                if field_name in ("queue_max_jobs", "backlink_crawl_limit"):
                    setattr(self, field_name, None)
                return
            if isinstance(default, bool):
                setattr(self, field_name, raw.lower() in ("1", "true", "yes", "on"))
            elif isinstance(default, int) or field_name in ("queue_max_jobs", "backlink_crawl_limit"):
                setattr(self, field_name, int(raw))
            elif isinstance(default, float):
                setattr(self, field_name, float(raw))
            else:
                setattr(self, field_name, raw)
        except ValueError:
            pass  # Keep default if conversion fails

    def to_dict(self) -> dict:
        """Convert configuration to dictionary.

        Returns:
            Dictionary of all configuration values
        """
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def save_to_file(self, path: str) -> None:
        """Save current configuration to a YAML or JSON file.

        Args:
            path: Path to save configuration
        """
        with open(path, 'w') as f:
            if Path(path).suffix.lower() in ('.yaml', '.yml'):
                yaml.safe_dump({'crawl': self.to_dict()}, f, sort_keys=False)
            else:
                json.dump({'crawl': self.to_dict()}, f, indent=2)
