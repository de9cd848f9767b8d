from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from funnel_backend.models.lead import Lead, LeadEmail, LeadStatus, LeadVisitorId
from funnel_backend.services.errors import InvalidCriteria, NotFound, StorageError

logger = logging.getLogger("funnel.services.identity_resolver")

# Each lost first-sight race costs one attempt.
MAX_RESOLVE_ATTEMPTS = 3

# Guards against a corrupt merged_into_id cycle.
_MAX_MERGE_HOPS = 10


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    value = email.strip().lower()
    return value or None


def normalize_visitor_id(visitor_id: Optional[str]) -> Optional[str]:
    if visitor_id is None:
        return None
    value = visitor_id.strip()
    return value or None


@dataclass(frozen=True)
class IdentityCriteria:
    """Identity fragments carried by one inbound event."""

    email: Optional[str] = None
    visitor_id: Optional[str] = None

    def normalized(self) -> "IdentityCriteria":
        return IdentityCriteria(
            email=normalize_email(self.email),
            visitor_id=normalize_visitor_id(self.visitor_id),
        )

    @property
    def is_empty(self) -> bool:
        return not self.email and not self.visitor_id


def resolve_lead(
    db: Session,
    criteria: IdentityCriteria,
    owner_id: Optional[str] = None,
    source: str = "api",
) -> Lead:
    """
    Find or create the canonical lead for the given identity fragments.

    Lookup order is email first, then visitor_id; a miss on both creates a
    new lead carrying whatever was supplied (email as primary). Identifiers
    not yet linked to the resolved lead are linked, unless another lead
    already owns them, in which case they are left alone.

    Lead creation runs inside a savepoint guarded by the unique indexes on
    email and visitor_id. Losing that race rolls the savepoint back and the
    lookup is retried, so concurrent first-sight events converge on one lead.
    """
    criteria = criteria.normalized()
    if criteria.is_empty:
        raise InvalidCriteria("At least one of email or visitor_id must be provided.")

    logger.info(
        "Resolving lead (email=%s, visitor_id=%s, owner=%s, source=%s)",
        criteria.email,
        criteria.visitor_id,
        owner_id,
        source,
    )

    try:
        for attempt in range(1, MAX_RESOLVE_ATTEMPTS + 1):
            lead, matched_by = _find_existing(db, criteria)

            if lead is not None:
                _link_missing_identifiers(db, lead, criteria, matched_by, source)
                db.commit()
                logger.info("Resolved lead id=%s via %s", lead.id, matched_by)
                return lead

            lead = _create_lead(db, criteria, owner_id, source)
            if lead is not None:
                db.commit()
                logger.info("Created lead id=%s (source=%s)", lead.id, source)
                return lead

            logger.warning(
                "Lost first-sight race for email=%s visitor_id=%s (attempt %d/%d); re-resolving",
                criteria.email,
                criteria.visitor_id,
                attempt,
                MAX_RESOLVE_ATTEMPTS,
            )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(
            "Store failure while resolving lead (email=%s, visitor_id=%s)",
            criteria.email,
            criteria.visitor_id,
        )
        raise StorageError(f"Failed to resolve lead: {exc}") from exc

    raise StorageError(
        f"Could not resolve lead after {MAX_RESOLVE_ATTEMPTS} attempts "
        f"(email={criteria.email}, visitor_id={criteria.visitor_id})"
    )


def _find_existing(
    db: Session,
    criteria: IdentityCriteria,
) -> Tuple[Optional[Lead], Optional[str]]:
    if criteria.email:
        email_row = db.execute(
            select(LeadEmail).where(LeadEmail.email == criteria.email)
        ).scalar_one_or_none()
        if email_row is not None:
            lead = _follow_merges(db, db.get(Lead, email_row.lead_id))
            if lead is not None:
                return lead, "email"

    if criteria.visitor_id:
        visitor_row = db.execute(
            select(LeadVisitorId).where(LeadVisitorId.visitor_id == criteria.visitor_id)
        ).scalar_one_or_none()
        if visitor_row is not None:
            lead = _follow_merges(db, db.get(Lead, visitor_row.lead_id))
            if lead is not None:
                return lead, "visitor_id"

    return None, None


def _follow_merges(db: Session, lead: Optional[Lead]) -> Optional[Lead]:
    hops = 0
    while (
        lead is not None
        and lead.status == LeadStatus.MERGED
        and lead.merged_into_id is not None
        and hops < _MAX_MERGE_HOPS
    ):
        lead = db.get(Lead, lead.merged_into_id)
        hops += 1
    return lead


def _create_lead(
    db: Session,
    criteria: IdentityCriteria,
    owner_id: Optional[str],
    source: str,
) -> Optional[Lead]:
    """Insert lead + identifiers atomically. Returns None if a racer won."""
    now = datetime.datetime.utcnow()
    try:
        with db.begin_nested():
            lead = Lead(owner_id=owner_id, status=LeadStatus.NEW, source_system=source)
            db.add(lead)
            db.flush()

            if criteria.email:
                db.add(
                    LeadEmail(
                        lead_id=lead.id,
                        email=criteria.email,
                        is_primary=True,
                        source_system=source,
                        source_action="lead_stitching",
                    )
                )
            if criteria.visitor_id:
                db.add(
                    LeadVisitorId(
                        lead_id=lead.id,
                        visitor_id=criteria.visitor_id,
                        source=source,
                        first_linked_at=now,
                        last_seen_at=now,
                    )
                )
            db.flush()
    except IntegrityError:
        logger.info(
            "Identity already claimed while creating lead (email=%s, visitor_id=%s)",
            criteria.email,
            criteria.visitor_id,
        )
        return None

    return lead


def _link_missing_identifiers(
    db: Session,
    lead: Lead,
    criteria: IdentityCriteria,
    matched_by: Optional[str],
    source: str,
) -> None:
    now = datetime.datetime.utcnow()
    linked = False

    if criteria.visitor_id:
        link = db.execute(
            select(LeadVisitorId).where(LeadVisitorId.visitor_id == criteria.visitor_id)
        ).scalar_one_or_none()

        if link is None:
            linked |= _insert_identifier(
                db,
                LeadVisitorId(
                    lead_id=lead.id,
                    visitor_id=criteria.visitor_id,
                    source=source,
                    first_linked_at=now,
                    last_seen_at=now,
                ),
                lead_id=lead.id,
                label=f"visitor_id={criteria.visitor_id}",
            )
        elif link.lead_id == lead.id:
            link.last_seen_at = now
        else:
            logger.warning(
                "visitor_id=%s already linked to lead %s; not reassigning to lead %s (matched by %s)",
                criteria.visitor_id,
                link.lead_id,
                lead.id,
                matched_by,
            )

    if criteria.email:
        email_row = db.execute(
            select(LeadEmail).where(LeadEmail.email == criteria.email)
        ).scalar_one_or_none()

        if email_row is None:
            linked |= _insert_identifier(
                db,
                LeadEmail(
                    lead_id=lead.id,
                    email=criteria.email,
                    # Only lead creation sets a primary email.
                    is_primary=False,
                    source_system=source,
                    source_action="lead_stitching",
                ),
                lead_id=lead.id,
                label=f"email={criteria.email}",
            )
        elif email_row.lead_id != lead.id:
            logger.warning(
                "email=%s belongs to lead %s; not linking to lead %s",
                criteria.email,
                email_row.lead_id,
                lead.id,
            )

    if linked:
        lead.touch()


def _insert_identifier(db: Session, row: object, *, lead_id: int, label: str) -> bool:
    """
    Link one identifier. Failures are logged and swallowed: the lead itself
    is already resolved, and a later event can retry the link.
    """
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        logger.warning("Could not link %s to lead %s: already claimed", label, lead_id)
        return False
    except SQLAlchemyError:
        logger.exception("Partial write: failed to link %s to lead %s", label, lead_id)
        return False

    logger.info("Linked %s to lead %s", label, lead_id)
    return True


def get_lead(db: Session, lead_id: int) -> Lead:
    try:
        lead = db.get(Lead, lead_id)
    except SQLAlchemyError as exc:
        logger.exception("Failed to load lead id=%s", lead_id)
        raise StorageError(f"Failed to load lead {lead_id}: {exc}") from exc

    if lead is None:
        raise NotFound(f"Lead with id {lead_id} not found")
    return lead


def find_lead_by_visitor(db: Session, visitor_id: str) -> Optional[Lead]:
    """Return the lead a visitor is linked to, or None."""
    visitor_id = normalize_visitor_id(visitor_id)
    if not visitor_id:
        return None
    try:
        return _find_existing(db, IdentityCriteria(visitor_id=visitor_id))[0]
    except SQLAlchemyError as exc:
        logger.exception("Failed to look up lead for visitor_id=%s", visitor_id)
        raise StorageError(f"Failed to look up visitor {visitor_id}: {exc}") from exc


def find_lead_by_email(db: Session, email: str) -> Optional[Lead]:
    email = normalize_email(email)
    if not email:
        return None
    try:
        return _find_existing(db, IdentityCriteria(email=email))[0]
    except SQLAlchemyError as exc:
        logger.exception("Failed to look up lead for email=%s", email)
        raise StorageError(f"Failed to look up email {email}: {exc}") from exc
