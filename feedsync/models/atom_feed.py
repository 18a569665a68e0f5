"""ATOM feed database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey, CheckConstraint, Index
from feedsync.database.database import Base


class AtomFeed(Base):
    """Model for storing SSRS report feeds imported from ATOMSVC documents."""

    __tablename__ = "atom_feeds"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    feed_type = Column(String, nullable=False)
    feed_url = Column(Text, nullable=False)
    # Only meaningful on PROJECTS feeds; points at a PROJECT_DETAIL feed
    detail_feed_id = Column(Integer, ForeignKey("atom_feeds.id", ondelete="SET NULL"), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_sync = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "feed_type IN ('PROJECTS', 'OPPORTUNITIES', 'SERVICE_TICKETS', 'PROJECT_DETAIL')",
            name='ck_feed_type'
        ),
        Index('ix_atom_feeds_feed_type', 'feed_type'),
    )
