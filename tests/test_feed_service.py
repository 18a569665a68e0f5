"""Tests for feed import, linking and templates."""

import os

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from feedsync.database.database import Base
from feedsync.exceptions import NotFoundError, ParseError, ValidationError
from feedsync.models import AtomFeed, Project
from feedsync.services.atom_client import FeedTestResult, ProjectDetail
from feedsync.services.feed_service import FeedService

SERVICE_DOCUMENT = """<?xml version="1.0" encoding="utf-8"?>
<service xmlns="http://www.w3.org/2007/app" xmlns:atom="http://www.w3.org/2005/Atom">
  <workspace>
    <atom:title>Report Server</atom:title>
    <collection href="http://srv/ReportServer?%2FPM%2FProject%20Summary&amp;rs:Format=ATOM">
      <atom:title>Project Summary</atom:title>
    </collection>
    <collection href="http://srv/ReportServer?%2FSales%2FOpportunity%20List&amp;rs:Format=ATOM">
      <atom:title>Opportunity List</atom:title>
    </collection>
    <collection>
      <atom:title>Broken</atom:title>
    </collection>
  </workspace>
</service>
"""


class FakeClient:
    """Stands in for AtomFeedClient in network operations."""

    instances = []

    def __init__(self, timeout=None):
        self.timeout = timeout
        self.calls = []
        FakeClient.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def test_feed(self, url):
        self.calls.append(("test_feed", url))
        if "broken" in url:
            return FeedTestResult(success=False, error="HTTP 500: Report not found")
        return FeedTestResult(success=True, record_count=2, sample_fields=["ID", "Name1"])

    async def fetch_project_detail(self, detail_feed_url, external_id, tablixes=None):
        self.calls.append(("fetch_project_detail", external_id))
        if external_id == "missing":
            return None
        return ProjectDetail(fields={"Tablix1_Company": "Acme"}, status="In Progress", tablixes_with_data=1)


@pytest.fixture
def db_session():
    """Create a test database session."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def feed_service(tmp_path):
    FakeClient.instances = []
    return FeedService(client_factory=FakeClient, template_dir=str(tmp_path / "templates"))


def _feed(db, name, feed_type, url, **kwargs):
    feed = AtomFeed(name=name, feed_type=feed_type, feed_url=url, **kwargs)
    db.add(feed)
    db.commit()
    return feed


class TestImport:
    """Test ATOMSVC import."""

    def test_import_classifies_and_reports_skips(self, db_session, feed_service):
        result = feed_service.import_feeds(db_session, SERVICE_DOCUMENT)

        assert [(feed.name, feed.feed_type) for feed in result["imported"]] == [
            ("Project Summary", "PROJECTS"),
            ("Opportunity List", "OPPORTUNITIES"),
        ]
        assert result["skipped"][0]["title"] == "Broken"
        assert result["failed"] == []
        assert all(feed.is_active for feed in result["imported"])

    def test_reimport_updates_in_place(self, db_session, feed_service):
        first = feed_service.import_feeds(db_session, SERVICE_DOCUMENT)
        second = feed_service.import_feeds(db_session, SERVICE_DOCUMENT.replace("Project Summary<", "Projects Renamed<"))

        assert db_session.query(AtomFeed).count() == 2
        assert [feed.id for feed in second["imported"]] == [feed.id for feed in first["imported"]]
        assert second["imported"][0].name == "Projects Renamed"

    def test_type_override(self, db_session, feed_service):
        result = feed_service.import_feeds(db_session, SERVICE_DOCUMENT, feed_type_override="PROJECT_DETAIL")
        assert {feed.feed_type for feed in result["imported"]} == {"PROJECT_DETAIL"}

    def test_invalid_override_writes_nothing(self, db_session, feed_service):
        with pytest.raises(ValidationError):
            feed_service.import_feeds(db_session, SERVICE_DOCUMENT, feed_type_override="INVOICES")
        assert db_session.query(AtomFeed).count() == 0

    def test_malformed_document_writes_nothing(self, db_session, feed_service):
        with pytest.raises(ParseError):
            feed_service.import_feeds(db_session, "<?xml version='1.0'?><service><workspace></service>")
        assert db_session.query(AtomFeed).count() == 0

    def test_plain_atom_needs_url(self, db_session, feed_service):
        content = '<feed xmlns="http://www.w3.org/2005/Atom"><title>Open Service Tickets</title></feed>'

        without_url = feed_service.import_feeds(db_session, content)
        with_url = feed_service.import_feeds(db_session, content, feed_url="http://srv/ReportServer?%2FService%2FOpen")

        assert without_url["imported"] == []
        assert len(without_url["skipped"]) == 1
        assert with_url["imported"][0].feed_type == "SERVICE_TICKETS"
        assert with_url["imported"][0].feed_url == "http://srv/ReportServer?%2FService%2FOpen"

    def test_import_feed_file(self, db_session, feed_service, tmp_path):
        path = tmp_path / "reports.atomsvc"
        path.write_text("\ufeff" + SERVICE_DOCUMENT, encoding="utf-8")

        result = feed_service.import_feed_file(db_session, str(path))

        assert len(result["imported"]) == 2

    def test_import_missing_file(self, db_session, feed_service, tmp_path):
        with pytest.raises(NotFoundError):
            feed_service.import_feed_file(db_session, str(tmp_path / "missing.atomsvc"))


class TestFeedEditing:
    """Test updates, deletion and detail links."""

    def test_update_feed(self, db_session, feed_service):
        feed = _feed(db_session, "Projects", "PROJECTS", "http://srv/p")

        updated = feed_service.update_feed(db_session, feed.id, name="  Weekly Projects ", is_active=False)

        assert updated.name == "Weekly Projects"
        assert updated.is_active is False

    def test_update_validates_before_writing(self, db_session, feed_service):
        feed = _feed(db_session, "Projects", "PROJECTS", "http://srv/p")

        with pytest.raises(ValidationError):
            feed_service.update_feed(db_session, feed.id, name="Renamed", feed_type="INVOICES")

        db_session.refresh(feed)
        assert feed.name == "Projects"

    def test_get_unknown_feed(self, db_session, feed_service):
        with pytest.raises(NotFoundError):
            feed_service.get_feed(db_session, 99)

    def test_link_and_unlink(self, db_session, feed_service):
        summary = _feed(db_session, "Projects", "PROJECTS", "http://srv/p")
        detail = _feed(db_session, "Detail", "PROJECT_DETAIL", "http://srv/d")

        linked = feed_service.link_detail_feed(db_session, summary.id, detail.id)
        assert linked.detail_feed_id == detail.id
        assert feed_service.get_detail_feed(db_session, summary.id).id == detail.id

        unlinked = feed_service.unlink_detail_feed(db_session, summary.id)
        assert unlinked.detail_feed_id is None
        assert feed_service.get_detail_feed(db_session, summary.id) is None

    def test_link_rejects_wrong_types(self, db_session, feed_service):
        summary = _feed(db_session, "Projects", "PROJECTS", "http://srv/p")
        tickets = _feed(db_session, "Tickets", "SERVICE_TICKETS", "http://srv/t")
        detail = _feed(db_session, "Detail", "PROJECT_DETAIL", "http://srv/d")

        with pytest.raises(ValidationError):
            feed_service.link_detail_feed(db_session, summary.id, tickets.id)
        with pytest.raises(ValidationError):
            feed_service.link_detail_feed(db_session, tickets.id, detail.id)
        with pytest.raises(NotFoundError):
            feed_service.link_detail_feed(db_session, summary.id, 999)

    def test_retyping_detail_feed_unlinks_summaries(self, db_session, feed_service):
        detail = _feed(db_session, "Detail", "PROJECT_DETAIL", "http://srv/d")
        summary = _feed(db_session, "Projects", "PROJECTS", "http://srv/p", detail_feed_id=detail.id)

        feed_service.update_feed(db_session, detail.id, feed_type="PROJECTS")

        db_session.refresh(summary)
        assert summary.detail_feed_id is None

    def test_retyping_summary_clears_its_link(self, db_session, feed_service):
        detail = _feed(db_session, "Detail", "PROJECT_DETAIL", "http://srv/d")
        summary = _feed(db_session, "Projects", "PROJECTS", "http://srv/p", detail_feed_id=detail.id)

        updated = feed_service.update_feed(db_session, summary.id, feed_type="OPPORTUNITIES")

        assert updated.detail_feed_id is None

    def test_delete_detail_feed_unlinks(self, db_session, feed_service):
        detail = _feed(db_session, "Detail", "PROJECT_DETAIL", "http://srv/d")
        summary = _feed(db_session, "Projects", "PROJECTS", "http://srv/p", detail_feed_id=detail.id)
        detail_id = detail.id

        feed_service.delete_feed(db_session, detail_id)

        db_session.refresh(summary)
        assert summary.detail_feed_id is None
        assert db_session.get(AtomFeed, detail_id) is None

    def test_list_detail_feeds(self, db_session, feed_service):
        _feed(db_session, "Projects", "PROJECTS", "http://srv/p")
        _feed(db_session, "Detail B", "PROJECT_DETAIL", "http://srv/d2")
        _feed(db_session, "Detail A", "PROJECT_DETAIL", "http://srv/d1")

        assert [feed.name for feed in feed_service.list_detail_feeds(db_session)] == ["Detail A", "Detail B"]


class TestNetworkOperations:
    """Test feed tests and project detail lookups."""

    @pytest.mark.asyncio
    async def test_feed_test_success(self, db_session, feed_service):
        feed = _feed(db_session, "Opportunity List", "OPPORTUNITIES", "http://srv/ReportServer?%2FSales")

        result = await feed_service.test_feed(db_session, feed.id)

        assert result["success"] is True
        assert result["record_count"] == 2
        assert result["sample_fields"] == ["ID", "Name1"]
        assert result["classified_type"] == "OPPORTUNITIES"
        assert FakeClient.instances[0].timeout is not None

    @pytest.mark.asyncio
    async def test_feed_test_failure_is_reported(self, db_session, feed_service):
        feed = _feed(db_session, "Projects", "PROJECTS", "http://srv/broken")

        result = await feed_service.test_feed(db_session, feed.id)

        assert result["success"] is False
        assert result["error"] == "HTTP 500: Report not found"

    @pytest.mark.asyncio
    async def test_project_detail_requires_link(self, db_session, feed_service):
        _feed(db_session, "Projects", "PROJECTS", "http://srv/p")

        result = await feed_service.fetch_project_detail(db_session, "100")

        assert result["success"] is False
        assert FakeClient.instances == []

    @pytest.mark.asyncio
    async def test_project_detail_defaults_to_first_project(self, db_session, feed_service):
        detail = _feed(db_session, "Detail", "PROJECT_DETAIL", "http://srv/d")
        _feed(db_session, "Projects", "PROJECTS", "http://srv/p", detail_feed_id=detail.id)
        db_session.add(Project(external_id="2399"))
        db_session.commit()

        result = await feed_service.fetch_project_detail(db_session)

        assert result == {
            "success": True,
            "project_id": "2399",
            "status": "In Progress",
            "tablixes_with_data": 1,
            "field_count": 1,
            "fields": {"Tablix1_Company": "Acme"},
        }

    @pytest.mark.asyncio
    async def test_project_detail_without_data(self, db_session, feed_service):
        detail = _feed(db_session, "Detail", "PROJECT_DETAIL", "http://srv/d")
        _feed(db_session, "Projects", "PROJECTS", "http://srv/p", detail_feed_id=detail.id)

        result = await feed_service.fetch_project_detail(db_session, "missing")

        assert result["success"] is False
        assert result["project_id"] == "missing"


class TestTemplates:
    """Test YAML feed templates."""

    def test_export_bundles_detail_with_summary(self, db_session, feed_service):
        detail = _feed(db_session, "Project Detail", "PROJECT_DETAIL", "http://srv/d")
        _feed(db_session, "PM Summary", "PROJECTS", "http://srv/p", detail_feed_id=detail.id)
        _feed(db_session, "Open Tickets", "SERVICE_TICKETS", "http://srv/t")

        result = feed_service.export_templates(db_session)

        assert sorted(result["exported"]) == ["open_tickets.yaml", "pm_summary.yaml"]
        assert result["errors"] == []
        with open(os.path.join(feed_service.template_dir, "pm_summary.yaml"), encoding="utf-8") as f:
            data = yaml.safe_load(f)
        assert data["name"] == "PM Summary"
        assert data["feeds"][0] == {
            "name": "PM Summary",
            "feed_type": "PROJECTS",
            "feed_url": "http://srv/p",
            "detail_feed": "Project Detail",
        }
        assert data["feeds"][1]["feed_type"] == "PROJECT_DETAIL"

    def test_duplicate_names_get_distinct_files(self, db_session, feed_service):
        _feed(db_session, "Tickets", "SERVICE_TICKETS", "http://srv/t1")
        _feed(db_session, "Tickets", "SERVICE_TICKETS", "http://srv/t2")

        assert sorted(feed_service.export_templates(db_session)["exported"]) == ["tickets.yaml", "tickets_2.yaml"]

    def test_round_trip_restores_link(self, db_session, feed_service, tmp_path):
        detail = _feed(db_session, "Project Detail", "PROJECT_DETAIL", "http://srv/d")
        _feed(db_session, "PM Summary", "PROJECTS", "http://srv/p", detail_feed_id=detail.id)
        feed_service.export_templates(db_session)

        engine = create_engine("sqlite:///:memory:")
        Base.metadata.create_all(bind=engine)
        fresh = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
        try:
            result = feed_service.import_template(fresh, "pm_summary.yaml")

            feeds = {feed.name: feed for feed in result["imported"]}
            assert feeds["PM Summary"].detail_feed_id == feeds["Project Detail"].id
            assert fresh.query(AtomFeed).count() == 2
        finally:
            fresh.close()

    def test_list_templates(self, db_session, feed_service):
        _feed(db_session, "Open Tickets", "SERVICE_TICKETS", "http://srv/t")
        feed_service.export_templates(db_session)
        with open(os.path.join(feed_service.template_dir, "broken.yaml"), "w", encoding="utf-8") as f:
            f.write("feeds: []\n")

        assert feed_service.list_templates() == [
            {"filename": "open_tickets.yaml", "name": "Open Tickets", "feed_count": 1}
        ]

    def test_list_templates_without_directory(self, feed_service):
        assert feed_service.list_templates() == []

    def test_import_template_rejects_paths(self, db_session, feed_service):
        with pytest.raises(ValidationError):
            feed_service.import_template(db_session, "../secrets.yaml")
        with pytest.raises(ValidationError):
            feed_service.import_template(db_session, "feeds.txt")
        with pytest.raises(NotFoundError):
            feed_service.import_template(db_session, "missing.yaml")

    def test_import_template_validates_entries(self, db_session, feed_service):
        os.makedirs(feed_service.template_dir)
        with open(os.path.join(feed_service.template_dir, "bad.yaml"), "w", encoding="utf-8") as f:
            yaml.safe_dump({"name": "Bad", "feeds": [{"name": "X", "feed_type": "INVOICES", "feed_url": "http://x"}]}, f)

        with pytest.raises(ValidationError):
            feed_service.import_template(db_session, "bad.yaml")
        assert db_session.query(AtomFeed).count() == 0
