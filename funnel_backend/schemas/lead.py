from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LeadEmailView(BaseModel):
    email: str
    is_primary: bool
    verified: bool
    source_system: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeadVisitorView(BaseModel):
    visitor_id: str
    source: Optional[str] = None
    first_linked_at: datetime
    last_seen_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeadResponse(BaseModel):
    id: int
    owner_id: Optional[str] = None
    status: str
    source_system: Optional[str] = None
    merged_into_id: Optional[int] = None
    primary_email: Optional[str] = None
    emails: List[LeadEmailView] = Field(default_factory=list)
    visitor_ids: List[LeadVisitorView] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeadMergeRequest(BaseModel):
    source_lead_id: int
    target_lead_id: int
    reason: Optional[str] = Field(default=None, max_length=500)


class LeadMergeResponse(BaseModel):
    id: int
    source_lead_id: int
    target_lead_id: int
    reason: Optional[str] = None
    moved_emails: int
    moved_visitor_ids: int
    moved_touchpoints: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeadStatusUpdate(BaseModel):
    status: str = Field(..., min_length=1, max_length=32, description="Target pipeline status.")
    comment: Optional[str] = Field(default=None, max_length=1000)
    changed_by: Optional[str] = Field(default=None, max_length=64)


class LeadStatusHistoryView(BaseModel):
    id: int
    lead_id: int
    changed_by: Optional[str] = None
    old_status: str
    new_status: str
    comment: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
