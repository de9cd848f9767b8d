import logging
from typing import Any, List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from funnel_backend.auth import authenticated_admin
from funnel_backend.db import get_db
from funnel_backend.schemas.lead import (
    LeadMergeRequest,
    LeadMergeResponse,
    LeadResponse,
    LeadStatusHistoryView,
    LeadStatusUpdate,
)
from funnel_backend.services.errors import InvalidTransition, MergeConflict, NotFound, StorageError
from funnel_backend.services.identity_resolver import find_lead_by_visitor, get_lead
from funnel_backend.services.lead_merge import merge_leads
from funnel_backend.services.lead_status import list_status_history, transition_lead_status

logger = logging.getLogger("funnel.routers.leads")

router = APIRouter(
    prefix="/leads",
    tags=["leads"],
)


def _store_unavailable(exc: StorageError) -> HTTPException:
    logger.error("Lead store error: %s", exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Lead store unavailable.",
    )


@router.get(
    "/by-visitor/{visitor_id}",
    response_model=LeadResponse,
    summary="Lead a visitor token is stitched to",
)
def read_lead_by_visitor(
    visitor_id: str,
    db: Session = Depends(get_db),
) -> LeadResponse:
    try:
        lead = find_lead_by_visitor(db, visitor_id)
    except StorageError as exc:
        raise _store_unavailable(exc) from exc

    if lead is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No lead linked to visitor {visitor_id}",
        )
    return LeadResponse.model_validate(lead)


@router.get(
    "/{lead_id}",
    response_model=LeadResponse,
    summary="Fetch one lead with its emails and visitor tokens",
)
def read_lead(
    lead_id: int,
    db: Session = Depends(get_db),
) -> LeadResponse:
    try:
        lead = get_lead(db, lead_id)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StorageError as exc:
        raise _store_unavailable(exc) from exc

    return LeadResponse.model_validate(lead)


@router.post(
    "/merge",
    response_model=LeadMergeResponse,
    summary="Merge one lead into another (admin)",
    description="Requires X-Admin-Secret when ADMIN_DASHBOARD_SECRET is configured.",
)
def merge(
    payload: LeadMergeRequest,
    db: Session = Depends(get_db),
    admin: Any = Depends(authenticated_admin),
) -> LeadMergeResponse:
    try:
        merge_event = merge_leads(
            db,
            source_lead_id=payload.source_lead_id,
            target_lead_id=payload.target_lead_id,
            reason=payload.reason,
        )
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except MergeConflict as exc:
        logger.warning("Lead merge rejected: %s", exc)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StorageError as exc:
        raise _store_unavailable(exc) from exc

    return LeadMergeResponse.model_validate(merge_event)


@router.patch(
    "/{lead_id}/status",
    response_model=LeadResponse,
    summary="Move a lead to another pipeline status (admin)",
    description=(
        "Allowed moves: new -> contacted|lost, contacted -> qualified|lost, "
        "qualified -> negotiation|lost, negotiation -> won|lost, won -> lost, "
        "lost -> contacted. Requires X-Admin-Secret when ADMIN_DASHBOARD_SECRET is configured."
    ),
)
def update_status(
    lead_id: int,
    payload: LeadStatusUpdate,
    db: Session = Depends(get_db),
    admin: Any = Depends(authenticated_admin),
) -> LeadResponse:
    try:
        lead = transition_lead_status(
            db,
            lead_id,
            payload.status,
            changed_by=payload.changed_by,
            comment=payload.comment,
        )
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidTransition as exc:
        logger.warning("Lead status change rejected: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StorageError as exc:
        raise _store_unavailable(exc) from exc

    return LeadResponse.model_validate(lead)


@router.get(
    "/{lead_id}/status-history",
    response_model=List[LeadStatusHistoryView],
    summary="Status changes for a lead, newest first",
)
def read_status_history(
    lead_id: int,
    db: Session = Depends(get_db),
) -> List[LeadStatusHistoryView]:
    try:
        rows = list_status_history(db, lead_id)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StorageError as exc:
        raise _store_unavailable(exc) from exc

    return [LeadStatusHistoryView.model_validate(row) for row in rows]
