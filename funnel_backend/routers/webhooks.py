import logging
from typing import Callable, Optional, TypeVar

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from funnel_backend.db import get_db
from funnel_backend.services.errors import StorageError
from funnel_backend.webhooks.schemas import (
    CalendlyWebhookPayload,
    NormalizedEventPayload,
    OptinPayload,
    WebhookResult,
)
from funnel_backend.webhooks.services import (
    AuthenticationError,
    handle_calendly,
    handle_normalized_event,
    handle_optin,
    validate_api_key,
)

logger = logging.getLogger("funnel.routers.webhooks")

router = APIRouter(
    prefix="/webhooks",
    tags=["webhooks"],
)

T = TypeVar("T")


def require_webhook_key(
    x_webhook_key: Optional[str] = Header(default=None, alias="X-Webhook-Key"),
) -> None:
    try:
        validate_api_key(x_webhook_key)
    except AuthenticationError as exc:
        logger.warning("Webhook authentication failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc


def _deliver(name: str, handler: Callable[[], T]) -> T:
    """
    Run a webhook handler. A store failure maps to 503 so the provider
    redelivers; anything unexpected is a 500.
    """
    try:
        return handler()
    except StorageError as exc:
        logger.error("%s webhook hit a store failure: %s", name, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Temporarily unable to record event; retry later.",
        ) from exc
    except Exception as exc:  # pragma: no cover - safety net
        logger.exception("Unexpected error during %s webhook", name)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Unexpected error during {name} webhook.",
        ) from exc


@router.post(
    "/calendly",
    response_model=WebhookResult,
    summary="Calendly invitee.created / invitee.canceled",
    description=(
        "Requires X-Webhook-Key header if WEBHOOK_API_KEYS is configured. "
        "Pass ?owner_id= to attribute leads to a tenant."
    ),
    dependencies=[Depends(require_webhook_key)],
)
def calendly_webhook(
    payload: CalendlyWebhookPayload,
    owner_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> WebhookResult:
    return _deliver("calendly", lambda: handle_calendly(db, payload, owner_id=owner_id))


@router.post(
    "/optin",
    response_model=WebhookResult,
    summary="Email capture with a known visitor token",
    dependencies=[Depends(require_webhook_key)],
)
def optin_webhook(
    payload: OptinPayload,
    db: Session = Depends(get_db),
) -> WebhookResult:
    return _deliver("optin", lambda: handle_optin(db, payload))


@router.post(
    "/events",
    response_model=WebhookResult,
    summary="Pre-normalized identity event",
    description="For relays (iClosed, Zapier...) that already map to event_type/email/visitor_id.",
    dependencies=[Depends(require_webhook_key)],
)
def normalized_event_webhook(
    payload: NormalizedEventPayload,
    db: Session = Depends(get_db),
) -> WebhookResult:
    return _deliver("events", lambda: handle_normalized_event(db, payload))
