"""Feed management service for ATOMSVC imports, detail links and templates."""

import logging
import os
import re
from typing import Any, Callable, Dict, List, Optional

import yaml
from sqlalchemy.orm import Session

from feedsync.config import settings
from feedsync.exceptions import NotFoundError, ValidationError
from feedsync.models import AtomFeed, Project
from feedsync.models.enums import FeedType
from feedsync.services.atom_client import AtomFeedClient
from feedsync.services.atomsvc_parser import Failed, Found, Skipped, classify_feed_type, parse_atomsvc
from feedsync.services.validation import validate_feed_type, validate_id, validate_non_empty_string

logger = logging.getLogger(__name__)

TEMPLATE_EXTENSIONS = (".yaml", ".yml")
_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9_-]+")


def feed_to_dict(feed: AtomFeed) -> Dict[str, Any]:
    """Serialize a feed for API responses."""
    return {
        "id": feed.id,
        "name": feed.name,
        "feed_type": feed.feed_type,
        "feed_url": feed.feed_url,
        "detail_feed_id": feed.detail_feed_id,
        "is_active": bool(feed.is_active),
        "last_sync": feed.last_sync.isoformat() if feed.last_sync else None,
        "created_at": feed.created_at.isoformat() if feed.created_at else None,
        "updated_at": feed.updated_at.isoformat() if feed.updated_at else None,
    }


class FeedService:
    """Service for managing ATOM feed descriptors."""

    def __init__(
        self,
        client_factory: Optional[Callable[..., AtomFeedClient]] = None,
        template_dir: Optional[str] = None,
    ):
        """Initialize feed service.

        Args:
            client_factory: Creates feed clients (defaults to AtomFeedClient).
            template_dir: Directory holding feed templates (defaults to settings.template_dir).
        """
        self.client_factory = client_factory or AtomFeedClient
        self.template_dir = template_dir or settings.template_dir

    def list_feeds(self, db: Session) -> List[AtomFeed]:
        return db.query(AtomFeed).order_by(AtomFeed.feed_type, AtomFeed.name).all()

    def get_feed(self, db: Session, feed_id: int) -> AtomFeed:
        """Get a feed by ID.

        Raises:
            ValidationError: If the id is invalid.
            NotFoundError: If no such feed exists.
        """
        validate_id(feed_id, "feed id")
        feed = db.get(AtomFeed, feed_id)
        if feed is None:
            raise NotFoundError(f"Feed {feed_id} not found")
        return feed

    def import_feeds(
        self,
        db: Session,
        content: str,
        feed_type_override: Optional[str] = None,
        feed_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Import feeds from ATOMSVC (or plain ATOM) content.

        A feed whose URL already exists is renamed and retyped in place.
        The whole document is parsed before anything is written.

        Args:
            db: Database session.
            content: Raw XML text.
            feed_type_override: Use this type instead of keyword classification.
            feed_url: URL for a plain ATOM document, which carries none itself.

        Returns:
            Dict with ``imported`` feeds plus ``skipped`` and ``failed`` items.

        Raises:
            ValidationError: If the override type is invalid.
            ParseError: If the XML cannot be parsed.
        """
        override = validate_feed_type(feed_type_override) if feed_type_override else None
        outcomes = parse_atomsvc(content)

        imported: List[AtomFeed] = []
        skipped: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []

        for outcome in outcomes:
            if isinstance(outcome, Skipped):
                skipped.append({"title": outcome.title, "reason": outcome.reason})
                continue
            if isinstance(outcome, Failed):
                failed.append({"title": outcome.title, "error": outcome.error})
                continue

            descriptor = outcome.descriptor
            url = descriptor.feed_url or (feed_url or "").strip()
            if not url:
                skipped.append({"title": descriptor.name, "reason": "ATOM document has no feed URL; supply one"})
                continue

            feed_type = override or (
                descriptor.feed_type if descriptor.feed_url else classify_feed_type(url, descriptor.name)
            )
            imported.append(self._upsert_feed(db, descriptor.name, url, feed_type))

        db.commit()
        for feed in imported:
            db.refresh(feed)

        logger.info(f"Imported {len(imported)} feeds ({len(skipped)} skipped, {len(failed)} failed)")
        return {"imported": imported, "skipped": skipped, "failed": failed}

    def import_feed_file(self, db: Session, file_path: str, feed_type_override: Optional[str] = None) -> Dict[str, Any]:
        """Import feeds from an ATOMSVC file on disk."""
        validate_non_empty_string(file_path, "file path")
        if not os.path.isfile(file_path):
            raise NotFoundError(f"File not found: {file_path}")

        with open(file_path, "r", encoding="utf-8-sig") as f:
            content = f.read()

        return self.import_feeds(db, content, feed_type_override=feed_type_override)

    def _upsert_feed(self, db: Session, name: str, feed_url: str, feed_type: FeedType) -> AtomFeed:
        existing = db.query(AtomFeed).filter(AtomFeed.feed_url == feed_url).first()
        if existing is not None:
            logger.info(f"Feed URL already imported, updating feed {existing.id} ({name})")
            existing.name = name
            self._apply_feed_type(db, existing, feed_type)
            return existing

        feed = AtomFeed(name=name, feed_url=feed_url, feed_type=feed_type.value, is_active=True)
        db.add(feed)
        db.flush()
        return feed

    def _apply_feed_type(self, db: Session, feed: AtomFeed, feed_type: FeedType) -> None:
        if feed.feed_type == feed_type.value:
            return

        if feed.feed_type == FeedType.PROJECTS.value:
            feed.detail_feed_id = None
        elif feed.feed_type == FeedType.PROJECT_DETAIL.value:
            unlinked = (
                db.query(AtomFeed)
                .filter(AtomFeed.detail_feed_id == feed.id)
                .update({AtomFeed.detail_feed_id: None}, synchronize_session="fetch")
            )
            if unlinked:
                logger.info(f"Unlinked {unlinked} summary feed(s) from retyped detail feed {feed.id}")

        feed.feed_type = feed_type.value

    def delete_feed(self, db: Session, feed_id: int) -> None:
        feed = self.get_feed(db, feed_id)
        db.query(AtomFeed).filter(AtomFeed.detail_feed_id == feed.id).update(
            {AtomFeed.detail_feed_id: None}, synchronize_session="fetch"
        )
        db.delete(feed)
        db.commit()
        logger.info(f"Deleted feed {feed_id}")

    def update_feed(
        self,
        db: Session,
        feed_id: int,
        name: Optional[str] = None,
        feed_type: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> AtomFeed:
        """Rename, retype or (de)activate a feed.

        All arguments are validated before anything changes.
        """
        new_name = validate_non_empty_string(name, "name") if name is not None else None
        new_type = validate_feed_type(feed_type) if feed_type is not None else None
        if is_active is not None and not isinstance(is_active, bool):
            raise ValidationError("Invalid is_active: must be a boolean")

        feed = self.get_feed(db, feed_id)
        if new_name is not None:
            feed.name = new_name
        if new_type is not None:
            self._apply_feed_type(db, feed, new_type)
        if is_active is not None:
            feed.is_active = is_active

        db.commit()
        db.refresh(feed)
        return feed

    def set_feed_active(self, db: Session, feed_id: int, is_active: bool) -> AtomFeed:
        return self.update_feed(db, feed_id, is_active=is_active)

    def link_detail_feed(self, db: Session, summary_feed_id: int, detail_feed_id: int) -> AtomFeed:
        """Link a PROJECT_DETAIL feed to a PROJECTS feed for adaptive sync.

        Raises:
            NotFoundError: If either feed does not exist.
            ValidationError: If the feed types do not allow the link.
        """
        summary = self.get_feed(db, summary_feed_id)
        detail = self.get_feed(db, detail_feed_id)

        if summary.feed_type != FeedType.PROJECTS.value:
            raise ValidationError("Cannot link: summary feed must be PROJECTS type")
        if detail.feed_type != FeedType.PROJECT_DETAIL.value:
            raise ValidationError("Cannot link: detail feed must be PROJECT_DETAIL type")

        summary.detail_feed_id = detail.id
        db.commit()
        db.refresh(summary)
        logger.info(f"Linked detail feed {detail.id} to summary feed {summary.id}")
        return summary

    def unlink_detail_feed(self, db: Session, summary_feed_id: int) -> AtomFeed:
        feed = self.get_feed(db, summary_feed_id)
        feed.detail_feed_id = None
        db.commit()
        db.refresh(feed)
        logger.info(f"Unlinked detail feed from summary feed {summary_feed_id}")
        return feed

    def get_detail_feed(self, db: Session, summary_feed_id: int) -> Optional[AtomFeed]:
        feed = self.get_feed(db, summary_feed_id)
        if not feed.detail_feed_id:
            return None
        return db.get(AtomFeed, feed.detail_feed_id)

    def list_detail_feeds(self, db: Session) -> List[AtomFeed]:
        return (
            db.query(AtomFeed)
            .filter(AtomFeed.feed_type == FeedType.PROJECT_DETAIL.value)
            .order_by(AtomFeed.name)
            .all()
        )

    async def test_feed(self, db: Session, feed_id: int) -> Dict[str, Any]:
        """Fetch and parse a feed without persisting anything.

        Returns:
            Dict with success flag, record count, sample fields, error and
            the type keyword classification would assign.
        """
        feed = self.get_feed(db, feed_id)

        async with self.client_factory(timeout=settings.feed_test_timeout_seconds) as client:
            result = await client.test_feed(feed.feed_url)

        if result.success:
            logger.info(f"Test successful: {result.record_count} records, fields: {', '.join(result.sample_fields)}")
        else:
            logger.warning(f"Test failed for feed {feed_id}: {result.error}")

        return {
            "success": result.success,
            "record_count": result.record_count,
            "sample_fields": result.sample_fields,
            "error": result.error,
            "classified_type": classify_feed_type(feed.feed_url, feed.name).value,
        }

    async def fetch_project_detail(self, db: Session, external_id: Optional[str] = None) -> Dict[str, Any]:
        """Fetch one project's detail through the first linked detail feed.

        Used to inspect which detail fields a report exposes.
        """
        summary = (
            db.query(AtomFeed)
            .filter(
                AtomFeed.feed_type == FeedType.PROJECTS.value,
                AtomFeed.detail_feed_id.isnot(None),
                AtomFeed.is_active.is_(True),
            )
            .order_by(AtomFeed.id)
            .first()
        )
        detail_feed = db.get(AtomFeed, summary.detail_feed_id) if summary is not None else None
        if detail_feed is None:
            return {
                "success": False,
                "error": "No PROJECTS feed with linked detail feed found. Please link a PROJECT_DETAIL feed first.",
            }

        if external_id is None:
            project = db.query(Project).order_by(Project.id).first()
            if project is None:
                return {"success": False, "error": "No projects in database. Please run a sync first."}
            external_id = project.external_id
        else:
            external_id = validate_non_empty_string(external_id, "external id")

        async with self.client_factory(timeout=settings.feed_test_timeout_seconds) as client:
            detail = await client.fetch_project_detail(detail_feed.feed_url, external_id)

        if detail is None:
            return {
                "success": False,
                "project_id": external_id,
                "error": f"No detail data returned for project {external_id}.",
            }

        return {
            "success": True,
            "project_id": external_id,
            "status": detail.status,
            "tablixes_with_data": detail.tablixes_with_data,
            "field_count": len(detail.fields),
            "fields": detail.fields,
        }

    def list_templates(self) -> List[Dict[str, Any]]:
        """List the feed templates in the template directory."""
        if not os.path.isdir(self.template_dir):
            return []

        templates = []
        for filename in sorted(os.listdir(self.template_dir)):
            if not filename.lower().endswith(TEMPLATE_EXTENSIONS):
                continue
            try:
                data = self._load_template(filename)
            except ValidationError as e:
                logger.warning(f"Skipping unreadable template {filename}: {e.message}")
                continue
            templates.append({"filename": filename, "name": data["name"], "feed_count": len(data["feeds"])})
        return templates

    def export_templates(self, db: Session, directory: Optional[str] = None) -> Dict[str, Any]:
        """Write one template per summary feed (with its detail feed) and per unlinked feed.

        Returns:
            Dict with ``exported`` filenames and ``errors``.
        """
        directory = directory or self.template_dir
        os.makedirs(directory, exist_ok=True)

        feeds = self.list_feeds(db)
        by_id = {feed.id: feed for feed in feeds}
        bundled_detail_ids = {feed.detail_feed_id for feed in feeds if feed.detail_feed_id in by_id}

        exported: List[str] = []
        errors: List[str] = []
        used_names = set()

        for feed in feeds:
            if feed.id in bundled_detail_ids:
                continue

            entries = [self._template_entry(feed, by_id.get(feed.detail_feed_id))]
            if feed.detail_feed_id in by_id:
                entries.append(self._template_entry(by_id[feed.detail_feed_id]))

            filename = self._template_filename(feed.name, used_names)
            path = os.path.join(directory, filename)
            try:
                with open(path, "w", encoding="utf-8") as f:
                    yaml.safe_dump({"name": feed.name, "feeds": entries}, f, default_flow_style=False, sort_keys=False)
                exported.append(filename)
            except (IOError, OSError) as e:
                logger.error(f"Failed to write template {path}: {e}")
                errors.append(f"{filename}: {e}")

        logger.info(f"Exported {len(exported)} templates to {directory}")
        return {"exported": exported, "errors": errors}

    def import_template(self, db: Session, filename: str) -> Dict[str, Any]:
        """Import the feeds of one template and restore its detail links."""
        data = self._load_template(filename)

        imported: Dict[str, AtomFeed] = {}
        for entry in data["feeds"]:
            feed = self._upsert_feed(db, entry["name"], entry["feed_url"], entry["feed_type"])
            imported[entry["name"]] = feed

        for entry in data["feeds"]:
            detail_name = entry.get("detail_feed")
            if not detail_name:
                continue
            summary = imported[entry["name"]]
            detail = imported.get(detail_name)
            if (
                detail is not None
                and summary.feed_type == FeedType.PROJECTS.value
                and detail.feed_type == FeedType.PROJECT_DETAIL.value
            ):
                summary.detail_feed_id = detail.id
            else:
                logger.warning(f"Template {filename}: cannot restore detail link '{detail_name}' for '{entry['name']}'")

        db.commit()
        feeds = list(imported.values())
        for feed in feeds:
            db.refresh(feed)

        logger.info(f"Imported template {filename} with {len(feeds)} feeds")
        return {"imported": feeds, "skipped": [], "failed": []}

    def _load_template(self, filename: str) -> Dict[str, Any]:
        validate_non_empty_string(filename, "filename")
        if os.path.basename(filename) != filename or not filename.lower().endswith(TEMPLATE_EXTENSIONS):
            raise ValidationError(f"Invalid template filename: {filename}")

        path = os.path.join(self.template_dir, filename)
        if not os.path.isfile(path):
            raise NotFoundError(f"Template not found: {filename}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValidationError(f"Template {filename} is not valid YAML: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("feeds"), list) or not data["feeds"]:
            raise ValidationError(f"Template {filename} must define a non-empty 'feeds' list")

        feeds = []
        for index, entry in enumerate(data["feeds"]):
            if not isinstance(entry, dict):
                raise ValidationError(f"Template {filename}: feed {index} must be a mapping")
            feeds.append({
                "name": validate_non_empty_string(entry.get("name"), f"feeds[{index}].name"),
                "feed_type": validate_feed_type(entry.get("feed_type")),
                "feed_url": validate_non_empty_string(entry.get("feed_url"), f"feeds[{index}].feed_url"),
                "detail_feed": entry.get("detail_feed"),
            })

        return {"name": str(data.get("name") or os.path.splitext(filename)[0]), "feeds": feeds}

    @staticmethod
    def _template_entry(feed: AtomFeed, detail_feed: Optional[AtomFeed] = None) -> Dict[str, Any]:
        entry = {"name": feed.name, "feed_type": feed.feed_type, "feed_url": feed.feed_url}
        if detail_feed is not None:
            entry["detail_feed"] = detail_feed.name
        return entry

    @staticmethod
    def _template_filename(name: str, used: set) -> str:
        base = _UNSAFE_FILENAME.sub("_", name).strip("_").lower() or "feed"
        candidate = f"{base}.yaml"
        counter = 2
        while candidate in used:
            candidate = f"{base}_{counter}.yaml"
            counter += 1
        used.add(candidate)
        return candidate
