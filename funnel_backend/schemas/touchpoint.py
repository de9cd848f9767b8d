from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TouchpointCreate(BaseModel):
    """
    Tracking-script payload. ip_address / user_agent / referrer are taken from
    the request itself when not supplied.
    """

    visitor_id: str = Field(..., min_length=1, max_length=128)
    event_type: str = Field(..., min_length=1, max_length=64)
    event_data: Dict[str, Any] = Field(default_factory=dict)
    lead_id: Optional[int] = None
    page_url: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    referrer: Optional[str] = None


class TouchpointResponse(BaseModel):
    id: int
    visitor_id: str
    lead_id: Optional[int] = None
    event_type: str
    event_data: Optional[Dict[str, Any]] = None
    page_url: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    referrer: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TouchpointPage(BaseModel):
    items: List[TouchpointResponse]
    total: int
    page: int
    limit: int
