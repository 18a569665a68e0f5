"""Opportunity database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, DateTime, Text
from feedsync.database.database import Base


class Opportunity(Base):
    """Sales opportunity synchronized from an OPPORTUNITIES feed."""

    __tablename__ = "opportunities"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String, nullable=False, unique=True, index=True)
    opportunity_name = Column(String, nullable=True)
    company_name = Column(String, nullable=True, index=True)
    sales_rep = Column(String, nullable=True, index=True)
    stage = Column(String, nullable=True, index=True)
    expected_revenue = Column(Float, nullable=True)
    close_date = Column(String, nullable=True)
    probability = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    raw_data = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
