from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from funnel_backend.config import settings
from funnel_backend.db import get_db
from funnel_backend.services.errors import StorageError
from funnel_backend.webhooks.schemas import WebhookResult
from funnel_backend.webhooks.services import handle_stripe_event

logger = logging.getLogger("funnel.routers.stripe_webhooks")

# Configure Stripe from env-backed settings
stripe.api_key = settings.stripe_api_key

router = APIRouter(
    prefix="/stripe",
    tags=["stripe"],
)


def _get_webhook_secret() -> Optional[str]:
    secret = settings.stripe_webhook_secret
    if not secret:
        logger.warning(
            "STRIPE_WEBHOOK_SECRET is not set; Stripe events are accepted unverified. "
            "Set this env var in production."
        )
    return secret


def _parse_event(payload_str: str, stripe_signature: Optional[str]) -> Dict[str, Any]:
    secret = _get_webhook_secret()
    if secret:
        if not stripe_signature:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Missing Stripe-Signature header",
            )
        try:
            # Verification only; the event body is read from the raw JSON below.
            stripe.Webhook.construct_event(
                payload=payload_str,
                sig_header=stripe_signature,
                secret=secret,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe signature verification failed: %s", exc)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid Stripe signature",
            ) from exc
        except ValueError as exc:
            logger.warning("Stripe webhook payload is not valid JSON: %s", exc)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid payload",
            ) from exc

    try:
        event = json.loads(payload_str)
    except ValueError as exc:
        logger.warning("Stripe webhook payload is not valid JSON: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from exc

    if not isinstance(event, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    return event


@router.post("/webhook", response_model=WebhookResult)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    owner_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> WebhookResult:
    """
    Stripe webhook endpoint.

    Expected flow:
    - Stripe sends events to /stripe/webhook
    - We verify the signature using STRIPE_WEBHOOK_SECRET (when configured)
    - On `checkout.session.completed`:
        - resolve the lead from the customer email
        - take visitor_id from session metadata, else from the bridge
        - record a payment touchpoint and move the funnel to payment_succeeded

    Returns 200 for handled and ignored events so Stripe doesn't retry;
    503 when the store is unavailable so it does.
    """
    payload = await request.body()
    payload_str = payload.decode("utf-8")

    logger.info("Received Stripe webhook (len=%s)", len(payload_str))

    event = _parse_event(payload_str, stripe_signature)

    try:
        return handle_stripe_event(db, event, owner_id=owner_id)
    except StorageError as exc:
        logger.error("Stripe webhook hit a store failure: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Temporarily unable to record payment; retry later.",
        ) from exc
