"""Project database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, Text
from feedsync.database.database import Base


class Project(Base):
    """Project record synchronized from a PROJECTS feed."""

    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String, nullable=False, unique=True, index=True)
    client_name = Column(String, nullable=True)
    project_name = Column(String, nullable=True)
    project_manager = Column(String, nullable=True)
    budget = Column(Float, nullable=True)
    spent = Column(Float, nullable=True)
    hours_estimate = Column(Float, nullable=True)
    hours_actual = Column(Float, nullable=True)
    hours_remaining = Column(Float, nullable=True)
    status = Column(String, nullable=True, index=True)
    is_active = Column(Boolean, default=True, index=True)
    notes = Column(Text, nullable=True)
    raw_data = Column(Text, nullable=True)
    detail_data = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
