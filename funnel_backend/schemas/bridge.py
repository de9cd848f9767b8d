from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class BridgeAssociateRequest(BaseModel):
    """
    Sent by the tracking script when a page reveals both identifiers at once
    (form submit, opt-in, checkout redirect).
    """

    email: EmailStr
    visitor_id: str = Field(..., min_length=1, max_length=128)
    source_action: Optional[str] = Field(default=None, max_length=64)
    event_data: Dict[str, Any] = Field(default_factory=dict)


class BridgeAssociationResponse(BaseModel):
    id: int
    email: str
    visitor_id: str
    source_action: Optional[str] = None
    processed: bool
    expires_at: datetime
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BridgePurgeResponse(BaseModel):
    purged: int = Field(..., description="Expired associations deleted.")
