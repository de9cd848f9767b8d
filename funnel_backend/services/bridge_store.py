from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from funnel_backend.config import settings
from funnel_backend.models.bridge import BridgeAssociation
from funnel_backend.services.errors import InvalidCriteria, StorageError
from funnel_backend.services.identity_resolver import normalize_email, normalize_visitor_id

logger = logging.getLogger("funnel.services.bridge_store")

# How many competing candidates a consumer will try before giving up.
MAX_CLAIM_ATTEMPTS = 5


def record_association(
    db: Session,
    *,
    email: str,
    visitor_id: str,
    source_action: Optional[str] = None,
    event_data: Optional[Dict[str, Any]] = None,
    owner_id: Optional[str] = None,
    ttl: Optional[datetime.timedelta] = None,
) -> BridgeAssociation:
    """Store a fresh, unprocessed email <-> visitor pairing."""
    clean_email = normalize_email(email)
    clean_visitor_id = normalize_visitor_id(visitor_id)
    if not clean_email or not clean_visitor_id:
        raise InvalidCriteria("Both email and visitor_id are required for a bridge association.")

    now = datetime.datetime.utcnow()
    if ttl is None:
        ttl = datetime.timedelta(days=settings.bridge_ttl_days)

    association = BridgeAssociation(
        email=clean_email,
        visitor_id=clean_visitor_id,
        source_action=source_action,
        event_data=event_data or {},
        owner_id=owner_id,
        processed=False,
        expires_at=now + ttl,
        created_at=now,
    )

    try:
        db.add(association)
        db.commit()
        db.refresh(association)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(
            "Failed to record bridge association (email=%s, visitor_id=%s)",
            clean_email,
            clean_visitor_id,
        )
        raise StorageError(f"Failed to record bridge association: {exc}") from exc

    logger.info(
        "Recorded bridge association id=%s email=%s visitor_id=%s (source_action=%s, expires_at=%s)",
        association.id,
        association.email,
        association.visitor_id,
        source_action,
        association.expires_at,
    )
    return association


def claim_association(
    db: Session,
    email: str,
    now: Optional[datetime.datetime] = None,
) -> Optional[Tuple[int, str]]:
    """
    Claim the newest live association for an email.

    Returns ``(association_id, visitor_id)`` or None. The claim is a
    conditional UPDATE on `processed = false`; a zero rowcount means a
    concurrent consumer took that row first, so the next candidate is tried.
    Each association is handed out at most once unless released again with
    `release_association`.
    """
    clean_email = normalize_email(email)
    if not clean_email:
        return None

    now = now or datetime.datetime.utcnow()

    try:
        for _ in range(MAX_CLAIM_ATTEMPTS):
            candidate = db.execute(
                select(BridgeAssociation.id, BridgeAssociation.visitor_id)
                .where(
                    BridgeAssociation.email == clean_email,
                    BridgeAssociation.processed.is_(False),
                    BridgeAssociation.expires_at > now,
                )
                .order_by(BridgeAssociation.created_at.desc(), BridgeAssociation.id.desc())
                .limit(1)
            ).first()

            if candidate is None:
                logger.info("No live bridge association for email=%s", clean_email)
                return None

            claimed = db.execute(
                update(BridgeAssociation)
                .where(
                    BridgeAssociation.id == candidate.id,
                    BridgeAssociation.processed.is_(False),
                )
                .values(processed=True)
                .execution_options(synchronize_session=False)
            )
            db.commit()

            if claimed.rowcount == 1:
                logger.info(
                    "Claimed bridge association id=%s: email=%s -> visitor_id=%s",
                    candidate.id,
                    clean_email,
                    candidate.visitor_id,
                )
                return candidate.id, candidate.visitor_id

            logger.info(
                "Bridge association id=%s claimed concurrently; trying next candidate",
                candidate.id,
            )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to claim bridge association for email=%s", clean_email)
        raise StorageError(f"Failed to claim bridge association: {exc}") from exc

    logger.warning(
        "Gave up claiming a bridge association for email=%s after %d attempts",
        clean_email,
        MAX_CLAIM_ATTEMPTS,
    )
    return None


def consume_association(
    db: Session,
    email: str,
    now: Optional[datetime.datetime] = None,
) -> Optional[str]:
    """Claim the newest live association for an email and return its visitor_id."""
    claim = claim_association(db, email, now=now)
    return claim[1] if claim is not None else None


def release_association(db: Session, association_id: int) -> None:
    """Put a claimed association back so a redelivered event can claim it."""
    try:
        db.execute(
            update(BridgeAssociation)
            .where(BridgeAssociation.id == association_id)
            .values(processed=False)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to release bridge association id=%s", association_id)
        raise StorageError(f"Failed to release bridge association {association_id}: {exc}") from exc

    logger.info("Released bridge association id=%s", association_id)


def purge_expired(db: Session, now: Optional[datetime.datetime] = None) -> int:
    """Delete associations past their TTL. Returns the number removed."""
    now = now or datetime.datetime.utcnow()
    try:
        result = db.execute(
            delete(BridgeAssociation)
            .where(BridgeAssociation.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to purge expired bridge associations")
        raise StorageError(f"Failed to purge bridge associations: {exc}") from exc

    logger.info("Purged %d expired bridge associations", result.rowcount)
    return result.rowcount
