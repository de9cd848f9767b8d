from __future__ import annotations

import datetime
import logging
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime, Float, Integer, String

from funnel_backend.db import Base

logger = logging.getLogger("funnel.models.funnel_progress")


class FunnelStage(str, Enum):
    """
    Funnel stages tracked per visitor.

    No row at all is the initial state. RDV_RESCHEDULED is a transient
    signal: it is accepted but never becomes the current stage.
    """

    RDV_SCHEDULED = "rdv_scheduled"
    RDV_RESCHEDULED = "rdv_rescheduled"
    RDV_COMPLETED = "rdv_completed"
    RDV_CANCELED = "rdv_canceled"
    PAYMENT_SUCCEEDED = "payment_succeeded"


# Column holding the timestamp for each stage that has one.
STAGE_TIMESTAMP_COLUMNS: Dict[FunnelStage, str] = {
    FunnelStage.RDV_SCHEDULED: "rdv_scheduled_at",
    FunnelStage.RDV_COMPLETED: "rdv_completed_at",
    FunnelStage.RDV_CANCELED: "rdv_canceled_at",
    FunnelStage.PAYMENT_SUCCEEDED: "payment_at",
}


class FunnelProgress(Base):
    """Current funnel stage + historical stage timestamps for one visitor."""

    __tablename__ = "funnel_progress"

    id: int = Column(Integer, primary_key=True)
    visitor_id: str = Column(String(128), nullable=False, unique=True)
    current_stage: str = Column(String(32), nullable=False, index=True)

    rdv_scheduled_at: Optional[datetime.datetime] = Column(DateTime, nullable=True)
    rdv_completed_at: Optional[datetime.datetime] = Column(DateTime, nullable=True)
    rdv_canceled_at: Optional[datetime.datetime] = Column(DateTime, nullable=True)
    payment_at: Optional[datetime.datetime] = Column(DateTime, nullable=True)

    amount: Optional[float] = Column(Float, nullable=True)
    product_id: Optional[str] = Column(String(128), nullable=True)
    payment_data: Optional[Dict[str, Any]] = Column(JSON, nullable=True)

    user_id: str = Column(String(64), nullable=False, index=True)
    created_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False
    )
    updated_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False
    )


def touch_progress_for_update(progress: FunnelProgress) -> None:
    """
    Helper to update the `updated_at` timestamp.
    Should be called before any commit that mutates a FunnelProgress row.
    """
    progress.updated_at = datetime.datetime.utcnow()
    logger.debug(
        "FunnelProgress visitor_id=%s touched for update at %s",
        progress.visitor_id,
        progress.updated_at,
    )
