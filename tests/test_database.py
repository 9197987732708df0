# tests/test_database.py
import pytest
from datetime import datetime, timedelta

from seocrawl.audit_log import AuditLog, LogCategory, SkipReason
from seocrawl.database import LocalSqliteDatabase, get_db_client
from seocrawl.models import Backlink, LinkRecord, PageRecord, RunStatus


@pytest.fixture
def test_db(tmp_path):
    """Pytest fixture to set up and tear down a test database."""
    db = LocalSqliteDatabase(db_url=f"sqlite:///{tmp_path / 'test_crawl.db'}")
    yield db
    db.close()


def make_page(run_id, site_id, url, links=None, **kwargs):
    return PageRecord(
        run_id=run_id,
        site_id=site_id,
        url=url,
        status_code=200,
        links=links or [],
        **kwargs,
    )


def test_get_or_create_site_is_idempotent(test_db):
    """The same domain always maps to one site."""
    first = test_db.get_or_create_site("example.com", "https://example.com")
    second = test_db.get_or_create_site("example.com", "https://example.com")

    assert first.id == second.id
    assert test_db.get_site(first.id).domain == "example.com"


def test_update_site_ignores_unknown_fields(test_db):
    """Only known site columns are updated."""
    site = test_db.get_or_create_site("example.com", "https://example.com")
    test_db.update_site(site.id, crawl_delay=1.5, robots_txt_url="https://example.com/robots.txt", bogus=1)

    updated = test_db.get_site(site.id)
    assert updated.crawl_delay == 1.5
    assert updated.robots_txt_url == "https://example.com/robots.txt"


def test_update_run_status_compare_and_set(test_db):
    """A transition only applies when the current status is expected."""
    site = test_db.get_or_create_site("example.com", "https://example.com")
    run = test_db.create_run(site.id)

    assert test_db.update_run_status(run.id, RunStatus.IN_PROGRESS, expected=[RunStatus.PENDING])
    assert not test_db.update_run_status(run.id, RunStatus.PAUSED, expected=[RunStatus.PENDING])

    current = test_db.get_run(run.id)
    assert current.status == RunStatus.IN_PROGRESS
    assert current.started_at is not None
    assert current.completed_at is None


def test_terminal_status_sets_completed_at(test_db):
    """Terminal statuses stamp completed_at."""
    site = test_db.get_or_create_site("example.com", "https://example.com")
    run = test_db.create_run(site.id, status=RunStatus.IN_PROGRESS)

    test_db.update_run_status(run.id, RunStatus.STOPPED)

    assert test_db.get_run(run.id).completed_at is not None
    assert [r.id for r in test_db.list_runs(RunStatus.STOPPED)] == [run.id]


def test_run_counters(test_db):
    """Page counters increment atomically."""
    site = test_db.get_or_create_site("example.com", "https://example.com")
    run = test_db.create_run(site.id)

    test_db.increment_pages_total(run.id, 3)
    test_db.increment_pages_crawled(run.id)
    test_db.set_robots_approved(run.id, True)

    current = test_db.get_run(run.id)
    assert current.pages_total == 3
    assert current.pages_crawled == 1
    assert current.robots_approved is True


def test_create_page_record_with_links(test_db):
    """Page records store their outgoing links."""
    site = test_db.get_or_create_site("example.com", "https://example.com")
    run = test_db.create_run(site.id)
    page = make_page(run.id, site.id, "https://example.com/", links=[
        LinkRecord(href="https://example.com/a", text="A"),
        LinkRecord(href="https://other.com/", text="Other", rel="nofollow", is_external=True),
    ])

    stored = test_db.create_page_record(page)

    assert stored.id is not None
    links = test_db.get_links(stored.id)
    assert [link.href for link in links] == ["https://example.com/a", "https://other.com/"]
    assert links[1].is_external is True
    assert all(link.page_id == stored.id for link in links)


def test_duplicate_page_record_returns_none(test_db):
    """A second record for the same run and URL is not stored."""
    site = test_db.get_or_create_site("example.com", "https://example.com")
    run = test_db.create_run(site.id)
    test_db.create_page_record(make_page(run.id, site.id, "https://example.com/"))

    duplicate = make_page(run.id, site.id, "https://example.com/", links=[LinkRecord(href="https://example.com/x")])

    assert test_db.create_page_record(duplicate) is None
    assert duplicate.id is None
    assert len(test_db.get_page_records(run.id)) == 1


def test_find_page_record_filters(test_db):
    """Lookups filter by run, site and crawl time."""
    site = test_db.get_or_create_site("example.com", "https://example.com")
    old_run = test_db.create_run(site.id)
    new_run = test_db.create_run(site.id)
    test_db.create_page_record(make_page(
        old_run.id, site.id, "https://example.com/a",
        crawled_at=datetime.now() - timedelta(days=10),
    ))

    url = "https://example.com/a"
    assert test_db.find_page_record(url, run_id=old_run.id) is not None
    assert test_db.find_page_record(url, run_id=new_run.id) is None
    assert test_db.find_page_record(url, site_id=site.id, since=datetime.now() - timedelta(days=30)) is not None
    assert test_db.find_page_record(url, site_id=site.id, since=datetime.now() - timedelta(days=7)) is None


def test_find_crawled_urls(test_db):
    """Batch lookup returns the subset with page records."""
    site = test_db.get_or_create_site("example.com", "https://example.com")
    run = test_db.create_run(site.id)
    test_db.create_page_record(make_page(run.id, site.id, "https://example.com/a"))

    found = test_db.find_crawled_urls(["https://example.com/a", "https://example.com/b"], run_id=run.id)

    assert found == {"https://example.com/a"}


def test_find_page_sites_and_links_to(test_db):
    """Pages map to their sites and links can be found by target."""
    target = test_db.get_or_create_site("example.com", "https://example.com")
    source = test_db.get_or_create_site("blog.net", "https://blog.net")
    target_run = test_db.create_run(target.id)
    source_run = test_db.create_run(source.id)

    test_db.create_page_record(make_page(target_run.id, target.id, "https://example.com/"))
    linking = test_db.create_page_record(make_page(
        source_run.id, source.id, "https://blog.net/post",
        links=[LinkRecord(href="https://example.com/", is_external=True)],
    ))

    assert test_db.find_page_sites(["https://example.com/", "https://nowhere.org/"]) == {
        "https://example.com/": {target.id},
    }
    assert len(test_db.find_links_to("https://example.com/")) == 1
    assert test_db.find_links_to("https://example.com/", exclude_page_id=linking.id) == []


def test_backlinks_are_unique(test_db):
    """The same (target, source page, link) is stored once."""
    target = test_db.get_or_create_site("example.com", "https://example.com")
    source = test_db.get_or_create_site("blog.net", "https://blog.net")
    run = test_db.create_run(source.id)
    page = test_db.create_page_record(make_page(
        run.id, source.id, "https://blog.net/post",
        links=[LinkRecord(href="https://example.com/", text="Example", is_external=True)],
    ))
    link = page.links[0]

    backlink = Backlink(target_site_id=target.id, source_page_id=page.id, link_id=link.id, anchor_text="Example")
    assert test_db.create_backlinks_batch([backlink, backlink]) == 1
    assert test_db.create_backlinks_batch([backlink]) == 0

    stored = test_db.get_backlinks(target.id)
    assert len(stored) == 1
    assert stored[0].anchor_text == "Example"
    assert stored[0].discovered_via == "crawl"


def test_delete_run_cascades(test_db):
    """Deleting a run removes its pages and links."""
    site = test_db.get_or_create_site("example.com", "https://example.com")
    run = test_db.create_run(site.id)
    test_db.create_page_record(make_page(
        run.id, site.id, "https://example.com/", links=[LinkRecord(href="https://example.com/a")],
    ))

    test_db.delete_run(run.id)

    assert test_db.get_run(run.id) is None
    assert test_db.find_links_to("https://example.com/a") == []


def test_audit_log_round_trip(test_db):
    """Audit events are stored newest first with their metadata."""
    site = test_db.get_or_create_site("example.com", "https://example.com")
    run = test_db.create_run(site.id)
    audit = AuditLog(test_db)

    audit.log(run.id, LogCategory.SETUP, "Starting crawl", sitemaps=2)
    audit.skipped(run.id, "https://example.com/private/x", SkipReason.ROBOTS)

    logs = audit.get_logs(run.id)
    assert [entry["category"] for entry in logs] == ["skipped", "setup"]
    assert logs[0]["metadata"] == {"url": "https://example.com/private/x", "reason": "robots.txt"}

    skipped = audit.get_logs(run.id, category=LogCategory.SKIPPED)
    assert len(skipped) == 1


def test_audit_log_swallows_storage_errors(test_db):
    """A failing audit write does not raise."""
    audit = AuditLog(test_db)
    test_db.close()

    audit.log(1, LogCategory.SETUP, "still fine")


def test_get_db_client_unknown_backend():
    """Unknown backends are rejected."""
    with pytest.raises(ValueError):
        get_db_client(backend="postgres")
