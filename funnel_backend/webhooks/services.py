# funnel_backend/webhooks/services.py
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from funnel_backend.config import settings
from funnel_backend.services.bridge_store import record_association
from funnel_backend.services.errors import InvalidCriteria, InvalidStage
from funnel_backend.services.event_pipeline import IdentityEvent, process_identity_event
from funnel_backend.webhooks.normalizers import (
    STRIPE_CHECKOUT_COMPLETED,
    calendly_to_event,
    stripe_session_to_event,
)
from funnel_backend.webhooks.schemas import (
    CalendlyWebhookPayload,
    NormalizedEventPayload,
    OptinPayload,
    WebhookResult,
)

logger = logging.getLogger("funnel.webhooks.services")

LEAD_CAPTURE = "lead_capture"


class WebhookError(Exception):
    """Base exception for webhook-related failures."""


class AuthenticationError(WebhookError):
    """Raised when a webhook request is not properly authenticated."""


def validate_api_key(api_key: Optional[str]) -> None:
    """Validate the provided key against WEBHOOK_API_KEYS."""
    if not settings.webhook_api_keys:
        logger.warning(
            "WEBHOOK_API_KEYS not configured. Accepting webhook without API key restriction."
        )
        return

    if not api_key:
        raise AuthenticationError("Missing webhook API key.")

    if api_key not in settings.webhook_api_keys:
        raise AuthenticationError("Invalid webhook API key.")


def _dropped(event_type: Optional[str], reason: str) -> WebhookResult:
    return WebhookResult(processed=False, event_type=event_type, skipped_reason=reason, detail=reason)


def _run_pipeline(db: Session, event: IdentityEvent) -> WebhookResult:
    """
    Run one event through the pipeline. Bad input is acknowledged and
    dropped; StorageError propagates so the router can ask for a retry.
    """
    if event.owner_id is None:
        event.owner_id = settings.default_owner_id

    try:
        result = process_identity_event(db, event)
    except (InvalidCriteria, InvalidStage) as exc:
        logger.warning("Dropping %s event from %s: %s", event.event_type, event.source, exc)
        return _dropped(event.event_type, str(exc))

    return WebhookResult(processed=True, event_type=event.event_type, **result.as_dict())


def handle_calendly(
    db: Session,
    payload: CalendlyWebhookPayload,
    owner_id: Optional[str] = None,
) -> WebhookResult:
    logger.info("Calendly webhook received (event=%s)", payload.event)

    event = calendly_to_event(
        payload.event,
        payload.payload,
        created_at=payload.created_at,
        owner_id=owner_id,
    )
    if event is None:
        return _dropped(payload.event, "unsupported_event")

    if not event.email and not event.visitor_id:
        logger.warning("Calendly %s carries neither email nor visitor_id; dropping", payload.event)
        return _dropped(event.event_type, "missing_identity")

    return _run_pipeline(db, event)


def handle_stripe_event(
    db: Session,
    event: Dict[str, Any],
    owner_id: Optional[str] = None,
) -> WebhookResult:
    """Handle an already-verified Stripe event."""
    event_type: str = event.get("type", "")
    logger.info("Processing Stripe event type=%s id=%s", event_type, event.get("id"))

    if event_type != STRIPE_CHECKOUT_COMPLETED:
        logger.debug("Unhandled Stripe event type=%s; ignoring", event_type)
        return _dropped(event_type, "unsupported_event")

    session_obj: Dict[str, Any] = (event.get("data") or {}).get("object") or {}
    identity_event = stripe_session_to_event(
        session_obj,
        event_created=event.get("created"),
        owner_id=owner_id,
    )

    if not identity_event.email:
        logger.warning(
            "checkout.session.completed %s has no customer email; skipping",
            session_obj.get("id"),
        )
        return _dropped(identity_event.event_type, "missing_email")

    return _run_pipeline(db, identity_event)


def handle_optin(db: Session, payload: OptinPayload) -> WebhookResult:
    """
    Record the email <-> visitor pairing for later email-only webhooks, then
    stitch the capture itself.
    """
    owner_id = payload.owner_id or settings.default_owner_id

    try:
        record_association(
            db,
            email=payload.email,
            visitor_id=payload.visitor_id,
            source_action=payload.source_action,
            event_data=payload.event_data,
            owner_id=owner_id,
        )
    except InvalidCriteria as exc:
        logger.warning("Dropping opt-in: %s", exc)
        return _dropped(LEAD_CAPTURE, str(exc))

    return _run_pipeline(
        db,
        IdentityEvent(
            event_type=LEAD_CAPTURE,
            source=payload.source_action,
            email=payload.email,
            visitor_id=payload.visitor_id,
            event_data=payload.event_data,
            owner_id=owner_id,
            page_url=payload.page_url,
        ),
    )


def handle_normalized_event(db: Session, payload: NormalizedEventPayload) -> WebhookResult:
    if not payload.email and not payload.visitor_id:
        return _dropped(payload.event_type, "missing_identity")

    return _run_pipeline(
        db,
        IdentityEvent(
            event_type=payload.event_type.strip(),
            source=payload.source.lower().strip() or "api",
            email=payload.email,
            visitor_id=payload.visitor_id,
            event_data=payload.event_data,
            owner_id=payload.owner_id,
            page_url=payload.page_url,
            stage_timestamp=payload.occurred_at,
            amount=payload.amount,
            product_id=payload.product_id,
            use_bridge=payload.use_bridge,
        ),
    )
