from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from funnel_backend.models.funnel_progress import (
    STAGE_TIMESTAMP_COLUMNS,
    FunnelProgress,
    FunnelStage,
    touch_progress_for_update,
)
from funnel_backend.services.errors import InvalidCriteria, InvalidStage, StorageError
from funnel_backend.services.identity_resolver import normalize_visitor_id

logger = logging.getLogger("funnel.services.funnel_progress")

SYSTEM_OWNER = "system"


def parse_stage(stage: Union[str, FunnelStage]) -> FunnelStage:
    try:
        return FunnelStage(stage)
    except ValueError as exc:
        raise InvalidStage(f"Unknown funnel stage: {stage!r}") from exc


def is_funnel_stage(event_type: Optional[str]) -> bool:
    return event_type in {stage.value for stage in FunnelStage}


def _coerce_timestamp(value: Optional[Union[datetime.datetime, str]]) -> Optional[datetime.datetime]:
    """Accept datetimes or ISO-8601 strings; store naive UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable stage timestamp %r; using now", value)
            return None
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


def read_funnel_progress(db: Session, visitor_id: str) -> Optional[FunnelProgress]:
    """Point read. A visitor with no row is simply at the initial stage."""
    clean_visitor_id = normalize_visitor_id(visitor_id)
    if not clean_visitor_id:
        return None
    try:
        return db.execute(
            select(FunnelProgress).where(FunnelProgress.visitor_id == clean_visitor_id)
        ).scalar_one_or_none()
    except SQLAlchemyError as exc:
        logger.exception("Failed to read funnel progress for visitor_id=%s", clean_visitor_id)
        raise StorageError(f"Failed to read funnel progress: {exc}") from exc


def update_funnel_progress(
    db: Session,
    *,
    visitor_id: str,
    current_stage: Union[str, FunnelStage],
    owner_id: Optional[str] = None,
    stage_timestamp: Optional[Union[datetime.datetime, str]] = None,
    amount: Optional[float] = None,
    product_id: Optional[str] = None,
    payment_data: Optional[Dict[str, Any]] = None,
) -> Optional[FunnelProgress]:
    """
    Record a stage for a visitor (find-or-create by visitor_id).

    The stage always overwrites current_stage, with no check against the
    previous stage: the last write wins. The stage's own timestamp column is
    set, and the other stage timestamps are kept as history.

    rdv_rescheduled only touches an existing row and never becomes the
    current stage; with no row it is a no-op and returns None.
    """
    clean_visitor_id = normalize_visitor_id(visitor_id)
    if not clean_visitor_id:
        raise InvalidCriteria("visitor_id is required to update funnel progress.")

    stage = parse_stage(current_stage)
    timestamp = _coerce_timestamp(stage_timestamp) or datetime.datetime.utcnow()

    logger.info(
        "Updating funnel progress for visitor_id=%s, stage=%s",
        clean_visitor_id,
        stage.value,
    )

    try:
        progress = db.execute(
            select(FunnelProgress).where(FunnelProgress.visitor_id == clean_visitor_id)
        ).scalar_one_or_none()

        if stage is FunnelStage.RDV_RESCHEDULED:
            if progress is None:
                logger.info(
                    "rdv_rescheduled for unknown visitor_id=%s; awaiting a fresh rdv_scheduled",
                    clean_visitor_id,
                )
                return None
            touch_progress_for_update(progress)
            db.commit()
            db.refresh(progress)
            logger.info(
                "rdv_rescheduled noted for visitor_id=%s; stage stays %s",
                clean_visitor_id,
                progress.current_stage,
            )
            return progress

        if progress is None:
            progress = FunnelProgress(
                visitor_id=clean_visitor_id,
                current_stage=stage.value,
                user_id=owner_id or SYSTEM_OWNER,
                created_at=datetime.datetime.utcnow(),
            )
            try:
                with db.begin_nested():
                    db.add(progress)
                    db.flush()
                created = True
            except IntegrityError:
                # Concurrent first write for this visitor; update theirs.
                progress = db.execute(
                    select(FunnelProgress).where(FunnelProgress.visitor_id == clean_visitor_id)
                ).scalar_one()
                created = False
        else:
            created = False

        _apply_stage(
            progress,
            stage,
            timestamp,
            owner_id=owner_id,
            amount=amount,
            product_id=product_id,
            payment_data=payment_data,
        )
        touch_progress_for_update(progress)
        db.commit()
        db.refresh(progress)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(
            "Failed to update funnel progress (visitor_id=%s, stage=%s)",
            clean_visitor_id,
            stage.value,
        )
        raise StorageError(f"Failed to update funnel progress: {exc}") from exc

    logger.info(
        "%s funnel progress id=%s visitor_id=%s stage=%s",
        "Created" if created else "Updated",
        progress.id,
        progress.visitor_id,
        progress.current_stage,
    )
    return progress


def _apply_stage(
    progress: FunnelProgress,
    stage: FunnelStage,
    timestamp: datetime.datetime,
    *,
    owner_id: Optional[str],
    amount: Optional[float],
    product_id: Optional[str],
    payment_data: Optional[Dict[str, Any]],
) -> None:
    progress.current_stage = stage.value
    if owner_id:
        progress.user_id = owner_id

    setattr(progress, STAGE_TIMESTAMP_COLUMNS[stage], timestamp)

    if stage is FunnelStage.PAYMENT_SUCCEEDED:
        if amount is not None:
            progress.amount = amount
        if product_id:
            progress.product_id = product_id
        if payment_data:
            progress.payment_data = payment_data
