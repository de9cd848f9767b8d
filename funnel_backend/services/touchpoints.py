from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from funnel_backend.models.touchpoint import Touchpoint, Visitor
from funnel_backend.services.errors import InvalidCriteria, NotFound, StorageError
from funnel_backend.services.identity_resolver import normalize_visitor_id

logger = logging.getLogger("funnel.services.touchpoints")


def upsert_visitor(
    db: Session,
    visitor_id: str,
    *,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Visitor:
    """Create the visitor record or bump its last_seen_at."""
    now = datetime.datetime.utcnow()
    visitor = db.execute(
        select(Visitor).where(Visitor.visitor_id == visitor_id)
    ).scalar_one_or_none()

    if visitor is None:
        visitor = Visitor(
            visitor_id=visitor_id,
            user_agent=user_agent,
            ip_address=ip_address,
            meta=meta or {},
            first_seen_at=now,
            last_seen_at=now,
        )
        db.add(visitor)
    else:
        visitor.last_seen_at = now
        visitor.user_agent = user_agent or visitor.user_agent
        visitor.ip_address = ip_address or visitor.ip_address
        visitor.meta = {**(visitor.meta or {}), **(meta or {})}

    db.flush()
    return visitor


def create_touchpoint(
    db: Session,
    *,
    visitor_id: str,
    event_type: str,
    event_data: Optional[Dict[str, Any]] = None,
    lead_id: Optional[int] = None,
    page_url: Optional[str] = None,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
    referrer: Optional[str] = None,
) -> Touchpoint:
    """
    Append one touchpoint. Never deduplicates: a redelivered webhook yields a
    second row. The visitor last-seen bump is best-effort.
    """
    clean_visitor_id = normalize_visitor_id(visitor_id)
    if not clean_visitor_id:
        raise InvalidCriteria("visitor_id is required to record a touchpoint.")
    if not event_type or not event_type.strip():
        raise InvalidCriteria("event_type is required to record a touchpoint.")

    try:
        with db.begin_nested():
            upsert_visitor(
                db,
                clean_visitor_id,
                user_agent=user_agent,
                ip_address=ip_address,
                meta={"last_event_type": event_type, "last_page_url": page_url},
            )
    except SQLAlchemyError:
        logger.exception("Failed to upsert visitor %s; continuing with touchpoint", clean_visitor_id)

    touchpoint = Touchpoint(
        visitor_id=clean_visitor_id,
        lead_id=lead_id,
        event_type=event_type.strip(),
        event_data=event_data or {},
        page_url=page_url,
        user_agent=user_agent,
        ip_address=ip_address,
        referrer=referrer,
    )

    try:
        db.add(touchpoint)
        db.commit()
        db.refresh(touchpoint)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(
            "Failed to create touchpoint (visitor_id=%s, event_type=%s)",
            clean_visitor_id,
            event_type,
        )
        raise StorageError(f"Failed to create touchpoint: {exc}") from exc

    logger.info(
        "Created touchpoint id=%s (visitor_id=%s, lead_id=%s, event_type=%s)",
        touchpoint.id,
        touchpoint.visitor_id,
        touchpoint.lead_id,
        touchpoint.event_type,
    )
    return touchpoint


def get_touchpoint(db: Session, touchpoint_id: int) -> Touchpoint:
    try:
        touchpoint = db.get(Touchpoint, touchpoint_id)
    except SQLAlchemyError as exc:
        logger.exception("Failed to load touchpoint id=%s", touchpoint_id)
        raise StorageError(f"Failed to load touchpoint {touchpoint_id}: {exc}") from exc

    if touchpoint is None:
        raise NotFound(f"Touchpoint with id {touchpoint_id} not found")
    return touchpoint


def list_touchpoints(
    db: Session,
    *,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Touchpoint], int]:
    """Newest first, paginated. Returns (rows, total_count)."""
    page = max(page, 1)
    offset = (page - 1) * limit

    try:
        total: int = db.execute(select(func.count(Touchpoint.id))).scalar_one()
        rows: List[Touchpoint] = list(
            db.execute(
                select(Touchpoint)
                .order_by(Touchpoint.created_at.desc(), Touchpoint.id.desc())
                .offset(offset)
                .limit(limit)
            )
            .scalars()
            .all()
        )
    except SQLAlchemyError as exc:
        logger.exception("Failed to list touchpoints (page=%d, limit=%d)", page, limit)
        raise StorageError(f"Failed to list touchpoints: {exc}") from exc

    logger.debug("Fetched %d of %d touchpoints (page=%d, limit=%d)", len(rows), total, page, limit)
    return rows, total


def list_touchpoints_by_visitor(db: Session, visitor_id: str) -> List[Touchpoint]:
    """Chronological replay of one visitor's touchpoints (by write time)."""
    clean_visitor_id = normalize_visitor_id(visitor_id)
    if not clean_visitor_id:
        return []

    try:
        rows = (
            db.execute(
                select(Touchpoint)
                .where(Touchpoint.visitor_id == clean_visitor_id)
                .order_by(Touchpoint.created_at.asc(), Touchpoint.id.asc())
            )
            .scalars()
            .all()
        )
    except SQLAlchemyError as exc:
        logger.exception("Failed to list touchpoints for visitor_id=%s", clean_visitor_id)
        raise StorageError(f"Failed to list touchpoints for {clean_visitor_id}: {exc}") from exc

    logger.debug("Fetched %d touchpoints for visitor_id=%s", len(rows), clean_visitor_id)
    return list(rows)
