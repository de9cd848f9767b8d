import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text

from funnel_backend.db import Base


class Visitor(Base):
    """Last-seen record for an anonymous browser/device token."""

    __tablename__ = "visitors"

    id: int = Column(Integer, primary_key=True)
    visitor_id: str = Column(String(128), nullable=False, unique=True)
    user_agent: Optional[str] = Column(Text, nullable=True)
    ip_address: Optional[str] = Column(String(64), nullable=True)
    meta: Dict[str, Any] = Column(JSON, nullable=True)
    first_seen_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False
    )
    last_seen_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False, index=True
    )


class Touchpoint(Base):
    """One tracked interaction. Append-only; duplicates are kept."""

    __tablename__ = "touchpoints"

    id: int = Column(Integer, primary_key=True, index=True)
    visitor_id: str = Column(String(128), nullable=False)
    lead_id: Optional[int] = Column(Integer, ForeignKey("leads.id"), nullable=True, index=True)
    event_type: str = Column(String(64), nullable=False, index=True)
    event_data: Dict[str, Any] = Column(JSON, nullable=True)
    page_url: Optional[str] = Column(Text, nullable=True)
    user_agent: Optional[str] = Column(Text, nullable=True)
    ip_address: Optional[str] = Column(String(64), nullable=True)
    referrer: Optional[str] = Column(Text, nullable=True)
    created_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False, index=True
    )

    __table_args__ = (
        Index("ix_touchpoints_visitor_created", "visitor_id", "created_at"),
    )
