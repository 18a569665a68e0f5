"""Sync run database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, CheckConstraint, Index
from feedsync.database.database import Base


class SyncRun(Base):
    """Model for tracking feed sync history.

    Rows in COMPLETED or FAILED status are final; the sync service never
    writes to them again. Cancellation is recorded as FAILED with
    ``is_cancelled`` set.
    """

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)
    sync_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="PENDING")
    triggered_by = Column(String, nullable=False, default="MANUAL")
    is_cancelled = Column(Boolean, default=False, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    records_processed = Column(Integer, default=0, nullable=False)
    records_created = Column(Integer, default=0, nullable=False)
    records_updated = Column(Integer, default=0, nullable=False)
    records_unchanged = Column(Integer, default=0, nullable=False)
    records_failed = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Constraints
    __table_args__ = (
        CheckConstraint("status IN ('PENDING', 'RUNNING', 'COMPLETED', 'FAILED')", name='ck_sync_run_status'),
        CheckConstraint("sync_type IN ('PROJECTS', 'OPPORTUNITIES', 'SERVICE_TICKETS')", name='ck_sync_run_type'),
        CheckConstraint("triggered_by IN ('MANUAL', 'SCHEDULED', 'VERSION_BUMP')", name='ck_sync_run_trigger'),
        Index('ix_sync_runs_status', 'status'),
        Index('ix_sync_runs_sync_type', 'sync_type'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in ("COMPLETED", "FAILED")
