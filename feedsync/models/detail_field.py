"""Detail field discovery model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime
from feedsync.database.database import Base


class DetailField(Base):
    """Field name observed at least once in a merged project detail payload."""

    __tablename__ = "detail_fields"

    id = Column(Integer, primary_key=True, index=True)
    field_name = Column(String, nullable=False, unique=True)
    first_seen_at = Column(DateTime, default=datetime.utcnow)
    first_seen_run_id = Column(Integer, nullable=True)
