"""Sync change audit models."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import relationship, backref
from feedsync.database.database import Base


class SyncChange(Base):
    """One CREATED or UPDATED outcome for an entity during a sync run."""

    __tablename__ = "sync_changes"

    id = Column(Integer, primary_key=True, index=True)
    sync_run_id = Column(Integer, ForeignKey("sync_runs.id", ondelete="CASCADE"), nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(Integer, nullable=False)
    external_id = Column(String, nullable=True)
    change_type = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationship
    sync_run = relationship("SyncRun", backref=backref("changes", cascade="all, delete-orphan", passive_deletes=True))
    field_changes = relationship(
        "SyncFieldChange",
        order_by="SyncFieldChange.position",
        cascade="all, delete-orphan",
        passive_deletes=True,
        back_populates="change",
    )

    # Constraints
    __table_args__ = (
        CheckConstraint("change_type IN ('CREATED', 'UPDATED')", name='ck_change_type'),
        Index('ix_sync_changes_sync_run_id', 'sync_run_id'),
    )


class SyncFieldChange(Base):
    """Old and new value of a single field within a SyncChange."""

    __tablename__ = "sync_field_changes"

    id = Column(Integer, primary_key=True, index=True)
    change_id = Column(Integer, ForeignKey("sync_changes.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    field_name = Column(String, nullable=False)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)

    change = relationship("SyncChange", back_populates="field_changes")
