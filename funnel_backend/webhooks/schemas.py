import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, EmailStr, Field


class CalendlyWebhookPayload(BaseModel):
    """Calendly v2 webhook envelope. The invitee resource sits under `payload`."""

    event: str = Field(
        ...,
        description="Calendly event name, e.g. 'invitee.created' or 'invitee.canceled'.",
    )
    created_at: Optional[str] = Field(
        default=None,
        description="When Calendly emitted the event (ISO-8601).",
    )
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Invitee resource: email, name, tracking, scheduled_event, rescheduled...",
    )


class OptinPayload(BaseModel):
    """Email capture from a landing page: both identifiers are known at once."""

    email: EmailStr
    visitor_id: str = Field(..., min_length=1, max_length=128)
    source_action: str = Field(default="optin", max_length=64)
    page_url: Optional[str] = None
    owner_id: Optional[str] = None
    event_data: Dict[str, Any] = Field(default_factory=dict)


class NormalizedEventPayload(BaseModel):
    """
    An event already reduced to the pipeline tuple by an upstream relay
    (iClosed, Zapier, a CRM automation...).
    """

    event_type: str = Field(..., min_length=1, max_length=64)
    source: str = Field(default="api", max_length=64)
    email: Optional[EmailStr] = None
    visitor_id: Optional[str] = Field(default=None, max_length=128)
    event_data: Dict[str, Any] = Field(default_factory=dict)
    owner_id: Optional[str] = None
    page_url: Optional[str] = None
    occurred_at: Optional[datetime.datetime] = Field(
        default=None,
        description="When the event happened upstream; defaults to receipt time.",
    )
    amount: Optional[float] = None
    product_id: Optional[str] = None
    use_bridge: bool = Field(
        default=True,
        description="Allow an email-only event to borrow a visitor_id from the bridge.",
    )


class WebhookResult(BaseModel):
    """
    Outcome of one webhook delivery. `processed=false` means the event was
    accepted but dropped (missing identity, unsupported type); the provider
    should not retry it.
    """

    processed: bool
    event_type: Optional[str] = None
    lead_id: Optional[int] = None
    visitor_id: Optional[str] = None
    visitor_source: Optional[str] = None
    touchpoint_id: Optional[int] = None
    funnel_stage: Optional[str] = None
    skipped_reason: Optional[str] = None
    detail: Optional[str] = None
