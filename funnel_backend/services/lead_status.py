from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from funnel_backend.models.lead import LEAD_STATUS_TRANSITIONS, Lead, LeadStatus, LeadStatusHistory
from funnel_backend.services.errors import InvalidTransition, NotFound, StorageError
from funnel_backend.services.identity_resolver import get_lead

logger = logging.getLogger("funnel.services.lead_status")


def is_valid_transition(from_status: str, to_status: str) -> bool:
    return to_status in LEAD_STATUS_TRANSITIONS.get(from_status, ())


def transition_lead_status(
    db: Session,
    lead_id: int,
    new_status: str,
    *,
    changed_by: Optional[str] = None,
    comment: Optional[str] = None,
) -> Lead:
    """
    Move a lead along the sales pipeline and record the change.

    The status update and its history row are committed together. Merged
    leads are tombstones and cannot change status; same-status and unknown
    moves are rejected with InvalidTransition.
    """
    lead = get_lead(db, lead_id)
    new_status = (new_status or "").strip().lower()
    old_status = lead.status

    if old_status == LeadStatus.MERGED:
        raise InvalidTransition(
            f"Lead {lead_id} was merged into {lead.merged_into_id}; change that lead instead."
        )
    if not is_valid_transition(old_status, new_status):
        allowed = ", ".join(LEAD_STATUS_TRANSITIONS.get(old_status, ())) or "none"
        raise InvalidTransition(
            f"Invalid status transition from {old_status} to {new_status or '<empty>'} "
            f"(allowed: {allowed})"
        )

    try:
        lead.status = new_status
        lead.touch()
        db.add(
            LeadStatusHistory(
                lead_id=lead.id,
                changed_by=changed_by,
                old_status=old_status,
                new_status=new_status,
                comment=comment,
            )
        )
        db.commit()
        db.refresh(lead)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to change status of lead %s to %s", lead_id, new_status)
        raise StorageError(f"Failed to change lead status: {exc}") from exc

    logger.info(
        "Lead %s status %s -> %s (changed_by=%s)",
        lead_id,
        old_status,
        new_status,
        changed_by,
    )
    return lead


def list_status_history(db: Session, lead_id: int) -> List[LeadStatusHistory]:
    """Status changes for a lead, newest first."""
    try:
        if db.get(Lead, lead_id) is None:
            raise NotFound(f"Lead with id {lead_id} not found")
        rows = db.execute(
            select(LeadStatusHistory)
            .where(LeadStatusHistory.lead_id == lead_id)
            .order_by(LeadStatusHistory.created_at.desc(), LeadStatusHistory.id.desc())
        ).scalars().all()
    except SQLAlchemyError as exc:
        logger.exception("Failed to load status history for lead %s", lead_id)
        raise StorageError(f"Failed to load status history for lead {lead_id}: {exc}") from exc

    return list(rows)
