import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from funnel_backend.db import Base


class LeadStatus:
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    NEGOTIATION = "negotiation"
    WON = "won"
    LOST = "lost"
    # Set only by a merge; never reachable through a status change.
    MERGED = "merged"


# Allowed sales-pipeline moves. Any stage can drop to lost; lost can be
# reopened as contacted.
LEAD_STATUS_TRANSITIONS = {
    LeadStatus.NEW: (LeadStatus.CONTACTED, LeadStatus.LOST),
    LeadStatus.CONTACTED: (LeadStatus.QUALIFIED, LeadStatus.LOST),
    LeadStatus.QUALIFIED: (LeadStatus.NEGOTIATION, LeadStatus.LOST),
    LeadStatus.NEGOTIATION: (LeadStatus.WON, LeadStatus.LOST),
    LeadStatus.WON: (LeadStatus.LOST,),
    LeadStatus.LOST: (LeadStatus.CONTACTED,),
}


class Lead(Base):
    """Canonical identity: one row per real-world prospect once stitched."""

    __tablename__ = "leads"

    id: int = Column(Integer, primary_key=True, index=True)
    owner_id: Optional[str] = Column(String(64), index=True, nullable=True)
    status: str = Column(String(32), index=True, nullable=False, default=LeadStatus.NEW)
    source_system: Optional[str] = Column(String(64), nullable=True)
    merged_into_id: Optional[int] = Column(
        Integer, ForeignKey("leads.id"), nullable=True, index=True
    )
    created_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False, index=True
    )
    updated_at: datetime.datetime = Column(
        DateTime,
        default=datetime.datetime.utcnow,
        onupdate=datetime.datetime.utcnow,
        nullable=False,
    )

    emails = relationship(
        "LeadEmail",
        back_populates="lead",
        order_by="LeadEmail.id",
        lazy="selectin",
    )
    visitor_ids = relationship(
        "LeadVisitorId",
        back_populates="lead",
        order_by="LeadVisitorId.id",
        lazy="selectin",
    )

    @property
    def primary_email(self) -> Optional[str]:
        for row in self.emails:
            if row.is_primary:
                return row.email
        return None

    def touch(self) -> None:
        """Update the `updated_at` timestamp."""
        self.updated_at = datetime.datetime.utcnow()


class LeadEmail(Base):
    """An email known to belong to a lead. An email maps to exactly one lead."""

    __tablename__ = "lead_emails"

    id: int = Column(Integer, primary_key=True)
    lead_id: int = Column(Integer, ForeignKey("leads.id"), nullable=False, index=True)
    email: str = Column(String(255), nullable=False, unique=True)
    is_primary: bool = Column(Boolean, nullable=False, default=False)
    verified: bool = Column(Boolean, nullable=False, default=False)
    source_system: Optional[str] = Column(String(64), nullable=True)
    source_action: Optional[str] = Column(String(64), nullable=True)
    created_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False
    )

    lead = relationship("Lead", back_populates="emails")


# At most one primary email per lead.
Index(
    "uq_lead_emails_one_primary",
    LeadEmail.lead_id,
    unique=True,
    sqlite_where=LeadEmail.is_primary.is_(True),
    postgresql_where=LeadEmail.is_primary.is_(True),
)


class LeadVisitorId(Base):
    """Link from an anonymous visitor token to a lead. First writer wins."""

    __tablename__ = "lead_visitor_ids"

    id: int = Column(Integer, primary_key=True)
    lead_id: int = Column(Integer, ForeignKey("leads.id"), nullable=False, index=True)
    visitor_id: str = Column(String(128), nullable=False, unique=True)
    source: Optional[str] = Column(String(64), nullable=True)
    first_linked_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False
    )
    last_seen_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False
    )

    lead = relationship("Lead", back_populates="visitor_ids")


class LeadMergeEvent(Base):
    """Audit trail for explicit lead merges."""

    __tablename__ = "lead_merge_events"

    id: int = Column(Integer, primary_key=True)
    source_lead_id: int = Column(Integer, ForeignKey("leads.id"), nullable=False, index=True)
    target_lead_id: int = Column(Integer, ForeignKey("leads.id"), nullable=False, index=True)
    reason: Optional[str] = Column(Text, nullable=True)
    moved_emails: int = Column(Integer, nullable=False, default=0)
    moved_visitor_ids: int = Column(Integer, nullable=False, default=0)
    moved_touchpoints: int = Column(Integer, nullable=False, default=0)
    created_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False
    )


class LeadStatusHistory(Base):
    """One row per accepted lead status change."""

    __tablename__ = "lead_status_history"

    id: int = Column(Integer, primary_key=True)
    lead_id: int = Column(Integer, ForeignKey("leads.id"), nullable=False, index=True)
    changed_by: Optional[str] = Column(String(64), nullable=True)
    old_status: str = Column(String(32), nullable=False)
    new_status: str = Column(String(32), nullable=False)
    comment: Optional[str] = Column(Text, nullable=True)
    created_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False, index=True
    )
