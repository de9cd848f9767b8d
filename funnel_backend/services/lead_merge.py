from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from funnel_backend.models.lead import Lead, LeadEmail, LeadMergeEvent, LeadStatus, LeadVisitorId
from funnel_backend.models.touchpoint import Touchpoint
from funnel_backend.services.errors import MergeConflict, NotFound, StorageError

logger = logging.getLogger("funnel.services.lead_merge")


def merge_leads(
    db: Session,
    *,
    source_lead_id: int,
    target_lead_id: int,
    reason: Optional[str] = None,
) -> LeadMergeEvent:
    """
    Fold `source` into `target` in a single transaction.

    Emails move over as non-primary, visitor links and touchpoint lead tags
    are re-pointed, and the source is kept as a `merged` tombstone pointing
    at the target. An audit row records what moved.
    """
    if source_lead_id == target_lead_id:
        raise MergeConflict("Cannot merge a lead into itself.")

    try:
        source = db.get(Lead, source_lead_id)
        target = db.get(Lead, target_lead_id)
    except SQLAlchemyError as exc:
        logger.exception("Failed to load leads for merge %s -> %s", source_lead_id, target_lead_id)
        raise StorageError(f"Failed to load leads for merge: {exc}") from exc

    if source is None or target is None:
        missing = source_lead_id if source is None else target_lead_id
        raise NotFound(f"Lead with id {missing} not found")
    if source.status == LeadStatus.MERGED:
        raise MergeConflict(f"Lead {source_lead_id} was already merged into {source.merged_into_id}.")
    if target.status == LeadStatus.MERGED:
        raise MergeConflict(f"Lead {target_lead_id} is itself merged into {target.merged_into_id}.")
    if (source.owner_id or None) != (target.owner_id or None):
        raise MergeConflict("Cannot merge leads belonging to different owners.")

    logger.info("Merging lead %s into %s (reason=%s)", source_lead_id, target_lead_id, reason)

    try:
        moved_emails = db.execute(
            update(LeadEmail)
            .where(LeadEmail.lead_id == source_lead_id)
            .values(lead_id=target_lead_id, is_primary=False)
            .execution_options(synchronize_session=False)
        ).rowcount
        moved_visitor_ids = db.execute(
            update(LeadVisitorId)
            .where(LeadVisitorId.lead_id == source_lead_id)
            .values(lead_id=target_lead_id)
            .execution_options(synchronize_session=False)
        ).rowcount
        moved_touchpoints = db.execute(
            update(Touchpoint)
            .where(Touchpoint.lead_id == source_lead_id)
            .values(lead_id=target_lead_id)
            .execution_options(synchronize_session=False)
        ).rowcount

        # Target had no emails of its own: promote the oldest one.
        has_primary = db.execute(
            select(LeadEmail.id).where(
                LeadEmail.lead_id == target_lead_id,
                LeadEmail.is_primary.is_(True),
            )
        ).first()
        if has_primary is None:
            oldest_id = db.execute(
                select(LeadEmail.id)
                .where(LeadEmail.lead_id == target_lead_id)
                .order_by(LeadEmail.created_at.asc(), LeadEmail.id.asc())
                .limit(1)
            ).scalar_one_or_none()
            if oldest_id is not None:
                db.execute(
                    update(LeadEmail)
                    .where(LeadEmail.id == oldest_id)
                    .values(is_primary=True)
                    .execution_options(synchronize_session=False)
                )

        source.status = LeadStatus.MERGED
        source.merged_into_id = target_lead_id
        source.touch()
        target.touch()

        merge_event = LeadMergeEvent(
            source_lead_id=source_lead_id,
            target_lead_id=target_lead_id,
            reason=reason,
            moved_emails=moved_emails,
            moved_visitor_ids=moved_visitor_ids,
            moved_touchpoints=moved_touchpoints,
        )
        db.add(merge_event)
        db.commit()
        db.refresh(merge_event)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to merge lead %s into %s", source_lead_id, target_lead_id)
        raise StorageError(f"Failed to merge leads: {exc}") from exc

    logger.info(
        "Merged lead %s into %s (emails=%d, visitor_ids=%d, touchpoints=%d)",
        source_lead_id,
        target_lead_id,
        moved_emails,
        moved_visitor_ids,
        moved_touchpoints,
    )
    return merge_event
