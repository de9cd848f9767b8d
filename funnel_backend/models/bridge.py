import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String

from funnel_backend.db import Base


class BridgeAssociation(Base):
    """
    Short-lived email <-> visitor pairing waiting to be consumed.

    Written when a page reveals both identifiers at once (form submit, opt-in)
    and read later by a webhook that only knows the email.
    """

    __tablename__ = "bridge_associations"

    id: int = Column(Integer, primary_key=True)
    email: str = Column(String(255), nullable=False, index=True)
    visitor_id: str = Column(String(128), nullable=False)
    source_action: Optional[str] = Column(String(64), nullable=True)
    event_data: Dict[str, Any] = Column(JSON, nullable=True)
    owner_id: Optional[str] = Column(String(64), nullable=True)
    processed: bool = Column(Boolean, nullable=False, default=False)
    expires_at: datetime.datetime = Column(DateTime, nullable=False, index=True)
    created_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_bridge_email_processed_created", "email", "processed", "created_at"),
    )
