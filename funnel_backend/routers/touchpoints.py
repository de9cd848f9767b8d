import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from funnel_backend.db import get_db
from funnel_backend.schemas.touchpoint import TouchpointCreate, TouchpointPage, TouchpointResponse
from funnel_backend.services.errors import InvalidCriteria, NotFound, StorageError
from funnel_backend.services.touchpoints import (
    create_touchpoint,
    get_touchpoint,
    list_touchpoints,
    list_touchpoints_by_visitor,
)

logger = logging.getLogger("funnel.routers.touchpoints")

router = APIRouter(
    prefix="/touchpoints",
    tags=["touchpoints"],
)


def _store_unavailable(exc: StorageError) -> HTTPException:
    logger.error("Touchpoint store error: %s", exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Touchpoint store unavailable.",
    )


@router.post(
    "",
    response_model=TouchpointResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a tracked interaction",
)
def record_touchpoint(
    payload: TouchpointCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> TouchpointResponse:
    client_ip = request.client.host if request.client else None

    try:
        touchpoint = create_touchpoint(
            db,
            visitor_id=payload.visitor_id,
            event_type=payload.event_type,
            event_data=payload.event_data,
            lead_id=payload.lead_id,
            page_url=payload.page_url,
            user_agent=payload.user_agent or request.headers.get("user-agent"),
            ip_address=payload.ip_address or client_ip,
            referrer=payload.referrer or request.headers.get("referer"),
        )
    except InvalidCriteria as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StorageError as exc:
        raise _store_unavailable(exc) from exc

    return TouchpointResponse.model_validate(touchpoint)


@router.get(
    "",
    response_model=TouchpointPage,
    summary="List touchpoints, newest first",
)
def list_all_touchpoints(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
) -> TouchpointPage:
    try:
        rows, total = list_touchpoints(db, page=page, limit=limit)
    except StorageError as exc:
        raise _store_unavailable(exc) from exc

    return TouchpointPage(
        items=[TouchpointResponse.model_validate(row) for row in rows],
        total=total,
        page=page,
        limit=limit,
    )


@router.get(
    "/visitor/{visitor_id}",
    response_model=List[TouchpointResponse],
    summary="A visitor's touchpoints in chronological order",
)
def visitor_touchpoints(
    visitor_id: str,
    db: Session = Depends(get_db),
) -> List[TouchpointResponse]:
    try:
        rows = list_touchpoints_by_visitor(db, visitor_id)
    except StorageError as exc:
        raise _store_unavailable(exc) from exc

    return [TouchpointResponse.model_validate(row) for row in rows]


@router.get(
    "/{touchpoint_id}",
    response_model=TouchpointResponse,
    summary="Fetch one touchpoint",
)
def read_touchpoint(
    touchpoint_id: int,
    db: Session = Depends(get_db),
) -> TouchpointResponse:
    try:
        touchpoint = get_touchpoint(db, touchpoint_id)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StorageError as exc:
        raise _store_unavailable(exc) from exc

    return TouchpointResponse.model_validate(touchpoint)
