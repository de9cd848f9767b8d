from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from sqlalchemy.orm import Session

from funnel_backend.services.bridge_store import claim_association, release_association
from funnel_backend.services.errors import StitchingError
from funnel_backend.services.funnel_progress import is_funnel_stage, update_funnel_progress
from funnel_backend.services.identity_resolver import (
    IdentityCriteria,
    normalize_email,
    normalize_visitor_id,
    resolve_lead,
)
from funnel_backend.services.touchpoints import create_touchpoint

logger = logging.getLogger("funnel.services.event_pipeline")


@dataclass
class IdentityEvent:
    """A provider event reduced to identity fragments + what happened."""

    event_type: str
    source: str
    email: Optional[str] = None
    visitor_id: Optional[str] = None
    event_data: Dict[str, Any] = field(default_factory=dict)
    owner_id: Optional[str] = None
    page_url: Optional[str] = None
    stage_timestamp: Optional[Union[datetime.datetime, str]] = None
    amount: Optional[float] = None
    product_id: Optional[str] = None
    # Cancellations refer to an earlier booking; a bridge hit there would
    # attach them to whoever last opted in with that email.
    use_bridge: bool = True


@dataclass
class PipelineResult:
    lead_id: int
    visitor_id: Optional[str]
    visitor_source: Optional[str]
    touchpoint_id: Optional[int] = None
    funnel_stage: Optional[str] = None
    skipped_reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "lead_id": self.lead_id,
            "visitor_id": self.visitor_id,
            "visitor_source": self.visitor_source,
            "touchpoint_id": self.touchpoint_id,
            "funnel_stage": self.funnel_stage,
            "skipped_reason": self.skipped_reason,
        }


def process_identity_event(db: Session, event: IdentityEvent) -> PipelineResult:
    """
    Run one normalized event through resolve -> touchpoint -> funnel.

    - Identity resolution errors propagate.
    - Without a visitor_id (payload or bridge) the touchpoint and funnel
      update are skipped rather than attributed to a guessed visitor.
    - A failed touchpoint write is logged and swallowed.
    - Funnel update errors propagate so the provider redelivers. A bridge
      association claimed for this event is released first, so the
      redelivery can claim it again.
    """
    email = normalize_email(event.email)
    visitor_id = normalize_visitor_id(event.visitor_id)
    visitor_source = "payload" if visitor_id else None
    claimed_id: Optional[int] = None

    if visitor_id is None and email and event.use_bridge:
        try:
            claim = claim_association(db, email)
        except StitchingError:
            logger.exception("Bridge lookup failed for email=%s; continuing without it", email)
            claim = None
        if claim is not None:
            claimed_id, visitor_id = claim
            visitor_source = "bridge"

    try:
        return _run_stages(db, event, email, visitor_id, visitor_source)
    except StitchingError:
        if claimed_id is not None:
            _release_claim(db, claimed_id)
        raise


def _release_claim(db: Session, association_id: int) -> None:
    try:
        release_association(db, association_id)
    except StitchingError:
        logger.exception(
            "Could not release bridge association id=%s after a failed event",
            association_id,
        )


def _run_stages(
    db: Session,
    event: IdentityEvent,
    email: Optional[str],
    visitor_id: Optional[str],
    visitor_source: Optional[str],
) -> PipelineResult:
    lead = resolve_lead(
        db,
        IdentityCriteria(email=email, visitor_id=visitor_id),
        owner_id=event.owner_id,
        source=event.source,
    )
    result = PipelineResult(lead_id=lead.id, visitor_id=visitor_id, visitor_source=visitor_source)

    if visitor_id is None:
        logger.warning(
            "No visitor_id for %s event (source=%s, lead_id=%s); skipping touchpoint and funnel update",
            event.event_type,
            event.source,
            lead.id,
        )
        result.skipped_reason = "no_visitor_id"
        return result

    try:
        touchpoint = create_touchpoint(
            db,
            visitor_id=visitor_id,
            event_type=event.event_type,
            event_data={**event.event_data, "source": event.source},
            lead_id=lead.id,
            page_url=event.page_url,
        )
        result.touchpoint_id = touchpoint.id
    except StitchingError:
        logger.exception(
            "Partial write: lead %s resolved but touchpoint %s for visitor_id=%s was not recorded",
            lead.id,
            event.event_type,
            visitor_id,
        )

    if is_funnel_stage(event.event_type):
        progress = update_funnel_progress(
            db,
            visitor_id=visitor_id,
            current_stage=event.event_type,
            owner_id=event.owner_id,
            stage_timestamp=event.stage_timestamp,
            amount=event.amount,
            product_id=event.product_id,
            payment_data=event.event_data or None,
        )
        result.funnel_stage = progress.current_stage if progress is not None else None

    logger.info(
        "Processed %s event (source=%s): lead_id=%s visitor_id=%s (%s) touchpoint_id=%s stage=%s",
        event.event_type,
        event.source,
        result.lead_id,
        visitor_id,
        visitor_source,
        result.touchpoint_id,
        result.funnel_stage,
    )
    return result
