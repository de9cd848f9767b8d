import datetime
import logging
from typing import Any, Dict, Optional

from funnel_backend.models.funnel_progress import FunnelStage
from funnel_backend.services.event_pipeline import IdentityEvent

logger = logging.getLogger("funnel.webhooks.normalizers")

CALENDLY_INVITEE_CREATED = "invitee.created"
CALENDLY_INVITEE_CANCELED = "invitee.canceled"

STRIPE_CHECKOUT_COMPLETED = "checkout.session.completed"

# Stripe sends these amounts in whole units, not cents.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
        "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
    }
)


def extract_calendly_visitor_id(tracking: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    Pull the visitor token out of Calendly's UTM tracking block.

    The tracking script passes it in one of three shapes:
    - utm_source=visitor_id & utm_medium=<token>
    - utm_content=visitor_<...>
    - fd_tlid=<token>
    """
    if not tracking:
        return None

    if tracking.get("utm_source") == "visitor_id" and tracking.get("utm_medium"):
        logger.debug("Calendly visitor_id found in utm_medium")
        return str(tracking["utm_medium"])

    utm_content = tracking.get("utm_content")
    if isinstance(utm_content, str) and utm_content.startswith("visitor_"):
        logger.debug("Calendly visitor_id found in utm_content")
        return utm_content

    if tracking.get("fd_tlid"):
        logger.debug("Calendly visitor_id found in fd_tlid")
        return str(tracking["fd_tlid"])

    return None


def calendly_to_event(
    event_name: str,
    invitee: Dict[str, Any],
    *,
    created_at: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> Optional[IdentityEvent]:
    """Map a Calendly invitee webhook to an identity event, or None if unsupported."""
    tracking = invitee.get("tracking") or {}
    scheduled_event = invitee.get("scheduled_event") or {}

    if event_name == CALENDLY_INVITEE_CREATED:
        stage = FunnelStage.RDV_SCHEDULED
        use_bridge = True
    elif event_name == CALENDLY_INVITEE_CANCELED:
        # Calendly reschedules by canceling the old invitee with rescheduled=true.
        stage = FunnelStage.RDV_RESCHEDULED if invitee.get("rescheduled") else FunnelStage.RDV_CANCELED
        use_bridge = False
    else:
        logger.info("Unsupported Calendly event %s; ignoring", event_name)
        return None

    cancellation = invitee.get("cancellation") or {}
    event_data: Dict[str, Any] = {
        "calendly_event": event_name,
        "invitee_name": invitee.get("name"),
        "invitee_uri": invitee.get("uri"),
        "event_uri": scheduled_event.get("uri"),
        "start_time": scheduled_event.get("start_time"),
        "end_time": scheduled_event.get("end_time"),
        "tracking": tracking,
    }
    if stage is not FunnelStage.RDV_SCHEDULED:
        event_data["rescheduled"] = bool(invitee.get("rescheduled"))
        event_data["cancel_reason"] = cancellation.get("reason")
        event_data["canceled_by"] = cancellation.get("canceled_by")

    return IdentityEvent(
        event_type=stage.value,
        source="calendly",
        email=invitee.get("email"),
        visitor_id=extract_calendly_visitor_id(tracking),
        event_data=event_data,
        owner_id=owner_id,
        stage_timestamp=cancellation.get("created_at") or created_at,
        use_bridge=use_bridge,
    )


def _stripe_timestamp(value: Any) -> Optional[datetime.datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.datetime.fromtimestamp(int(value), tz=datetime.timezone.utc)
    except (TypeError, ValueError, OverflowError):
        logger.warning("Invalid Stripe timestamp %r", value)
        return None


def stripe_amount(amount_total: Any, currency: Optional[str]) -> Optional[float]:
    """Convert a Stripe minor-unit amount to major units for its currency."""
    if amount_total is None:
        return None
    if (currency or "").lower() in ZERO_DECIMAL_CURRENCIES:
        return float(amount_total)
    return amount_total / 100


def stripe_session_to_event(
    session: Dict[str, Any],
    *,
    event_created: Any = None,
    owner_id: Optional[str] = None,
) -> IdentityEvent:
    """
    Map a completed Checkout Session to a payment_succeeded event.

    Email comes from customer_email or customer_details.email; the visitor
    token from metadata (visitor_id or fd_visitor_id). amount_total is in
    minor units and is converted to major units, except for zero-decimal
    currencies.
    """
    metadata: Dict[str, Any] = session.get("metadata") or {}
    customer_details: Dict[str, Any] = session.get("customer_details") or {}

    email = session.get("customer_email") or customer_details.get("email")
    visitor_id = metadata.get("visitor_id") or metadata.get("fd_visitor_id")

    amount_total = session.get("amount_total")
    amount = stripe_amount(amount_total, session.get("currency"))

    payment_data: Dict[str, Any] = {
        "session_id": session.get("id"),
        "payment_intent": session.get("payment_intent"),
        "customer": session.get("customer"),
        "currency": session.get("currency"),
        "amount_total": amount_total,
        "payment_status": session.get("payment_status"),
        "metadata": metadata,
    }

    return IdentityEvent(
        event_type=FunnelStage.PAYMENT_SUCCEEDED.value,
        source="stripe",
        email=email,
        visitor_id=visitor_id,
        event_data=payment_data,
        owner_id=owner_id or metadata.get("owner_id"),
        stage_timestamp=_stripe_timestamp(event_created or session.get("created")),
        amount=amount,
        product_id=metadata.get("product_id"),
    )
