from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class FunnelProgressResponse(BaseModel):
    id: int
    visitor_id: str
    current_stage: str
    rdv_scheduled_at: Optional[datetime] = None
    rdv_completed_at: Optional[datetime] = None
    rdv_canceled_at: Optional[datetime] = None
    payment_at: Optional[datetime] = None
    amount: Optional[float] = None
    product_id: Optional[str] = None
    payment_data: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FunnelProgressLookup(BaseModel):
    """`progress` is null for a visitor that has not reached any stage yet."""

    visitor_id: str
    progress: Optional[FunnelProgressResponse] = None
