import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from funnel_backend.auth import authenticated_admin
from funnel_backend.config import settings
from funnel_backend.db import get_db
from funnel_backend.schemas.bridge import (
    BridgeAssociateRequest,
    BridgeAssociationResponse,
    BridgePurgeResponse,
)
from funnel_backend.services.bridge_store import purge_expired, record_association
from funnel_backend.services.errors import InvalidCriteria, StorageError

logger = logging.getLogger("funnel.routers.bridge")

router = APIRouter(
    prefix="/bridge",
    tags=["bridge"],
)


@router.post(
    "/associate",
    response_model=BridgeAssociationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record an email <-> visitor pairing",
    description=(
        "Called by the tracking script when a page reveals both the visitor token "
        "and an email. A later email-only webhook consumes the pairing once."
    ),
)
def associate(
    payload: BridgeAssociateRequest,
    db: Session = Depends(get_db),
) -> BridgeAssociationResponse:
    try:
        association = record_association(
            db,
            email=payload.email,
            visitor_id=payload.visitor_id,
            source_action=payload.source_action,
            event_data=payload.event_data,
            owner_id=settings.default_owner_id,
        )
    except InvalidCriteria as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Bridge store unavailable.",
        ) from exc

    return BridgeAssociationResponse.model_validate(association)


@router.post(
    "/purge",
    response_model=BridgePurgeResponse,
    summary="Delete expired bridge associations (admin)",
    description="Requires X-Admin-Secret when ADMIN_DASHBOARD_SECRET is configured.",
)
def purge(
    db: Session = Depends(get_db),
    admin: Any = Depends(authenticated_admin),
) -> BridgePurgeResponse:
    try:
        purged = purge_expired(db)
    except StorageError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Bridge store unavailable.",
        ) from exc

    return BridgePurgeResponse(purged=purged)
