import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from funnel_backend.db import get_db
from funnel_backend.schemas.funnel import FunnelProgressLookup, FunnelProgressResponse
from funnel_backend.services.errors import StorageError
from funnel_backend.services.funnel_progress import read_funnel_progress

logger = logging.getLogger("funnel.routers.funnel")

router = APIRouter(
    prefix="/funnel-progress",
    tags=["funnel"],
)


@router.get(
    "/{visitor_id}",
    response_model=FunnelProgressLookup,
    summary="Current funnel stage for a visitor",
)
def get_funnel_progress(
    visitor_id: str,
    db: Session = Depends(get_db),
) -> FunnelProgressLookup:
    try:
        progress = read_funnel_progress(db, visitor_id)
    except StorageError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Funnel store unavailable.",
        ) from exc

    return FunnelProgressLookup(
        visitor_id=visitor_id,
        progress=FunnelProgressResponse.model_validate(progress) if progress else None,
    )
