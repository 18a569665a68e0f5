"""Service ticket database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, DateTime, Text
from feedsync.database.database import Base


class ServiceTicket(Base):
    """Service ticket synchronized from a SERVICE_TICKETS feed."""

    __tablename__ = "service_tickets"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String, nullable=False, unique=True, index=True)
    summary = Column(Text, nullable=True)
    status = Column(String, nullable=True, index=True)
    priority = Column(String, nullable=True, index=True)
    assigned_to = Column(String, nullable=True, index=True)
    company_name = Column(String, nullable=True, index=True)
    board_name = Column(String, nullable=True, index=True)
    created_date = Column(String, nullable=True)
    last_updated = Column(String, nullable=True)
    due_date = Column(String, nullable=True)
    hours_estimate = Column(Float, nullable=True)
    hours_actual = Column(Float, nullable=True)
    hours_remaining = Column(Float, nullable=True)
    budget = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)
    raw_data = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
