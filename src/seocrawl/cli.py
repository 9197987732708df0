"""Command-line interface for the crawl engine."""

import asyncio
import json
import sys
from typing import Optional

from seocrawl.audit_log import AuditLog, LogCategory
from seocrawl.config import CrawlConfig, settings
from seocrawl.database import get_db_client
from seocrawl.fetch import FetchPipeline
from seocrawl.infrastructure.proxy_rotation import create_proxy_pool_from_env
from seocrawl.job_queue import JobQueue
from seocrawl.logging_config import get_logger, setup_logging
from seocrawl.orchestrator import CrawlOrchestrator
from seocrawl.utils.captcha_solver import get_solver

logger = get_logger(__name__)


def load_config(path: Optional[str]) -> CrawlConfig:
    """Config file when given, otherwise SEOCRAWL_* environment overrides."""
    if path:
        return CrawlConfig.from_file(path)
    return CrawlConfig.from_env()


def build_orchestrator(args) -> CrawlOrchestrator:
    """Wire the engine from CLI arguments and environment settings."""
    config = load_config(args.config)
    if getattr(args, "workers", None):
        config.worker_count = args.workers

    db_url = args.db or settings.DATABASE_URL
    db = get_db_client(db_url=db_url)
    queue = JobQueue(
        db_path=db_url,
        max_jobs=config.queue_max_jobs,
        max_attempts=config.job_attempts,
        job_timeout=config.job_timeout,
    )

    solver = get_solver()
    solver.timeout_seconds = config.captcha_timeout
    fetcher = FetchPipeline(
        config=config,
        proxy_pool=create_proxy_pool_from_env(),
        captcha_solver=solver,
    )
    return CrawlOrchestrator(db, queue, fetcher, config=config)


async def close_orchestrator(orchestrator: CrawlOrchestrator) -> None:
    await orchestrator.shutdown()
    await orchestrator.fetcher.aclose()
    orchestrator.queue.close()
    orchestrator.db.close()


def print_result(result) -> None:
    """Print a TransitionResult."""
    mark = "✅" if result.success else "❌"
    status = result.status.value if result.status else "unknown"
    print(f"{mark} Run {result.run_id}: {result.message} (status: {status})")
    if result.sitemaps_found or result.urls_queued:
        print(f"   Sitemaps found: {result.sitemaps_found}, URLs queued: {result.urls_queued}")


def print_status(status: Optional[dict]) -> None:
    if status is None:
        print("Run not found")
        return
    print(f"\n{'=' * 60}")
    print(f"Run {status['run_id']} (site {status['site_id']})")
    print(f"{'=' * 60}")
    print(f"  Status: {status['status']}")
    print(f"  Started: {status['started_at'] or '-'}")
    print(f"  Completed: {status['completed_at'] or '-'}")
    print(f"  Pages crawled: {status['pages_crawled']} / {status['pages_total']} queued")
    jobs = status["jobs"]
    print(f"  Jobs: {jobs['waiting']} waiting, {jobs['delayed']} delayed, {jobs['active']} active")


async def _drive(orchestrator: CrawlOrchestrator, result, workers: Optional[int]) -> int:
    """Run the worker pool until the run stops making progress here."""
    print_result(result)
    if not result.success:
        return 1

    await orchestrator.start_workers(workers)
    try:
        run = await orchestrator.wait_for_run(result.run_id)
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\n⚠️  Interrupted; pausing run.")
        logger.warning(f"Interrupted while crawling run {result.run_id}; pausing")
        await orchestrator.pause(result.run_id)
        raise
    print_status(orchestrator.status(run.id) if run else None)
    return 0


async def _crawl_command(args) -> int:
    orchestrator = build_orchestrator(args)
    try:
        run = orchestrator.create_run(args.url)
        print(f"Created run {run.id} for {args.url}")
        result = await orchestrator.start(run.id, skip_robots_check=args.approve)
        return await _drive(orchestrator, result, args.workers)
    finally:
        await close_orchestrator(orchestrator)


async def _start_command(args) -> int:
    orchestrator = build_orchestrator(args)
    try:
        result = await orchestrator.start(args.run_id, skip_robots_check=args.approve)
        return await _drive(orchestrator, result, args.workers)
    finally:
        await close_orchestrator(orchestrator)


async def _resume_command(args) -> int:
    orchestrator = build_orchestrator(args)
    try:
        result = await orchestrator.resume(args.run_id, skip_recent_urls=args.skip_url)
        return await _drive(orchestrator, result, args.workers)
    finally:
        await close_orchestrator(orchestrator)


async def _control_command(args) -> int:
    orchestrator = build_orchestrator(args)
    try:
        action = getattr(orchestrator, args.command)
        result = await action(args.run_id)
        print_result(result)
        return 0 if result.success else 1
    finally:
        await close_orchestrator(orchestrator)


def status_command(args) -> int:
    """Show a run's counters."""
    orchestrator = build_orchestrator(args)
    try:
        status = orchestrator.status(args.run_id)
        if args.output == "json":
            print(json.dumps(status, indent=2, default=str))
        else:
            print_status(status)
        return 0 if status else 1
    finally:
        orchestrator.queue.close()
        orchestrator.db.close()


def logs_command(args) -> int:
    """Show a run's categorized log stream, newest first."""
    db = get_db_client(db_url=args.db or settings.DATABASE_URL)
    try:
        category = LogCategory(args.category) if args.category else None
        entries = AuditLog(db).get_logs(args.run_id, category, args.limit)
    finally:
        db.close()

    if args.output == "json":
        print(json.dumps(entries, indent=2, default=str))
        return 0
    for entry in entries:
        reason = entry["metadata"].get("reason")
        suffix = f" [{reason}]" if reason else ""
        print(f"{entry['created_at']}  {entry['category']:<18} {entry['message']}{suffix}")
    return 0


def _run_async(coro) -> int:
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        return 130


def main():
    """Main CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="seocrawl - robots.txt-governed site crawler with backlink discovery"
    )

    # Global flags (before subcommands)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL.upper() if settings.LOG_LEVEL else "INFO",
        help="Set logging verbosity (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        help="Write logs to file in addition to console",
    )
    parser.add_argument(
        "--db",
        help="Database URL (default: DATABASE_URL or sqlite:///seocrawl.db)",
    )
    parser.add_argument(
        "--config",
        help="YAML or JSON crawl configuration file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    crawl_parser = subparsers.add_parser("crawl", help="Create a run for a site and crawl it.")
    crawl_parser.add_argument("url", help="Base URL of the site")
    crawl_parser.add_argument(
        "--approve",
        action="store_true",
        help="Crawl even if robots.txt cannot be retrieved",
    )
    crawl_parser.add_argument("--workers", type=int, help="Concurrent workers (default: 10)")
    crawl_parser.set_defaults(func=lambda args: _run_async(_crawl_command(args)))

    start_parser = subparsers.add_parser("start", help="Start (or approve) a pending run.")
    start_parser.add_argument("run_id", type=int)
    start_parser.add_argument("--approve", action="store_true", help="Approve a run awaiting robots.txt approval")
    start_parser.add_argument("--workers", type=int, help="Concurrent workers (default: 10)")
    start_parser.set_defaults(func=lambda args: _run_async(_start_command(args)))

    for name, help_text in (("pause", "Pause a running crawl."), ("stop", "Stop a crawl permanently.")):
        control_parser = subparsers.add_parser(name, help=help_text)
        control_parser.add_argument("run_id", type=int)
        control_parser.set_defaults(func=lambda args: _run_async(_control_command(args)))

    resume_parser = subparsers.add_parser("resume", help="Resume a paused crawl.")
    resume_parser.add_argument("run_id", type=int)
    resume_parser.add_argument(
        "--skip-url",
        action="append",
        help="URL not to queue again (repeatable; default: pages crawled recently in this run)",
    )
    resume_parser.add_argument("--workers", type=int, help="Concurrent workers (default: 10)")
    resume_parser.set_defaults(func=lambda args: _run_async(_resume_command(args)))

    status_parser = subparsers.add_parser("status", help="Show run status.")
    status_parser.add_argument("run_id", type=int)
    status_parser.add_argument("--output", "-o", choices=["text", "json"], default="text")
    status_parser.set_defaults(func=status_command)

    logs_parser = subparsers.add_parser("logs", help="Show a run's log stream.")
    logs_parser.add_argument("run_id", type=int)
    logs_parser.add_argument("--category", choices=[c.value for c in LogCategory])
    logs_parser.add_argument("--limit", type=int, default=100)
    logs_parser.add_argument("--output", "-o", choices=["text", "json"], default="text")
    logs_parser.set_defaults(func=logs_command)

    args = parser.parse_args()

    # Configure logging based on flags
    setup_logging(
        level=args.log_level,
        log_file=getattr(args, 'log_file', None),
    )

    if hasattr(args, "func"):
        sys.exit(args.func(args))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
