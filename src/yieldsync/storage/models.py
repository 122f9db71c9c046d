from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text
from sqlalchemy.sql import func

from .database import Base


class OperatorRow(Base):
    """Persisted OperatorRecord, one row per operator address."""
    __tablename__ = "operators"

    address = Column(String, primary_key=True, index=True)
    stake = Column(Float, nullable=False, default=0.0)
    accuracy_score = Column(Integer, nullable=False, default=5000)
    total_slashed = Column(Float, default=0.0)
    accurate_reports = Column(Integer, default=0)
    inaccurate_reports = Column(Integer, default=0)
    flagged_for_deregistration = Column(Boolean, default=False)

    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class EventRow(Base):
    """
    Append-only event journal.
    Payload is the event's JSON-encoded fields.
    """
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String, index=True, nullable=False)
    timestamp = Column(Float, index=True, nullable=False)
    task_id = Column(Integer, index=True, nullable=True)
    asset = Column(String, index=True, nullable=True)
    payload = Column(Text, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
