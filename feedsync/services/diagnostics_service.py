"""Read-only diagnostics for adaptive (detail) sync."""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from feedsync.config import settings
from feedsync.models import AtomFeed, DetailField, Project
from feedsync.models.enums import FeedType

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 5
URL_PREVIEW_LENGTH = 100


def _load_json(value: Optional[str], label: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except ValueError:
        logger.warning(f"Unreadable {label} JSON in diagnostics")
        return {}
    return data if isinstance(data, dict) else {}


class DiagnosticsService:
    """Explains how detail feeds are wired and how much detail data exists."""

    def __init__(self, adaptive_sync_enabled: Optional[bool] = None):
        self.adaptive_sync_enabled = (
            adaptive_sync_enabled if adaptive_sync_enabled is not None else settings.adaptive_sync_enabled
        )

    def get_detail_sync_config_diagnostics(self, db: Session) -> Dict[str, Any]:
        """Describe PROJECTS feeds, PROJECT_DETAIL feeds and the links between them."""
        projects_feeds = (
            db.query(AtomFeed).filter(AtomFeed.feed_type == FeedType.PROJECTS.value).order_by(AtomFeed.name).all()
        )
        detail_feeds = (
            db.query(AtomFeed)
            .filter(AtomFeed.feed_type == FeedType.PROJECT_DETAIL.value)
            .order_by(AtomFeed.name)
            .all()
        )
        detail_by_id = {feed.id: feed for feed in detail_feeds}

        linked_pairs = []
        for feed in projects_feeds:
            detail = detail_by_id.get(feed.detail_feed_id) if feed.detail_feed_id else None
            if detail is not None:
                linked_pairs.append({
                    "projects_feed_id": feed.id,
                    "projects_feed_name": feed.name,
                    "detail_feed_id": detail.id,
                    "detail_feed_name": detail.name,
                })

        return {
            "adaptive_sync_enabled": self.adaptive_sync_enabled,
            "projects_feeds": [
                {
                    "id": feed.id,
                    "name": feed.name,
                    "is_active": bool(feed.is_active),
                    "has_detail_link": feed.detail_feed_id is not None,
                    "detail_feed_id": feed.detail_feed_id,
                }
                for feed in projects_feeds
            ],
            "detail_feeds": [
                {
                    "id": feed.id,
                    "name": feed.name,
                    "is_active": bool(feed.is_active),
                    "feed_url": feed.feed_url if len(feed.feed_url) <= URL_PREVIEW_LENGTH
                    else feed.feed_url[:URL_PREVIEW_LENGTH] + "...",
                }
                for feed in detail_feeds
            ],
            "linked_pairs": linked_pairs,
        }

    def get_project_detail_diagnostics(self, db: Session) -> Dict[str, Any]:
        """Summarize detail coverage across stored projects."""
        total_projects = db.query(Project).count()
        with_detail = (
            db.query(Project)
            .filter(Project.detail_data.isnot(None), Project.detail_data != "", Project.detail_data != "{}")
            .order_by(Project.id)
        )

        samples = with_detail.limit(SAMPLE_SIZE).all()
        sample_detail = None
        if samples:
            detail = _load_json(samples[0].detail_data, "detail_data")
            sample_detail = {
                "external_id": samples[0].external_id,
                "field_count": len(detail),
                "fields": sorted(detail.keys()),
            }

        sample_raw = None
        first_project = db.query(Project).order_by(Project.id).first()
        if first_project is not None:
            raw = _load_json(first_project.raw_data, "raw_data")
            sample_raw = {
                "external_id": first_project.external_id,
                "all_fields": list(raw.keys()),
                "id_fields": {
                    key: value for key, value in raw.items()
                    if "id" in key.lower() or "rec" in key.lower()
                },
            }

        return {
            "projects_with_detail_data": with_detail.count(),
            "total_projects": total_projects,
            "sample_external_ids": [project.external_id for project in samples],
            "sample_detail_data": sample_detail,
            "sample_raw_data_fields": sample_raw,
        }

    def get_available_detail_fields(self, db: Session) -> List[str]:
        """Get every detail field name seen so far, sorted."""
        return [name for (name,) in db.query(DetailField.field_name).order_by(DetailField.field_name).all()]
