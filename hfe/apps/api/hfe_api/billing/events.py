"""Provider payload → EntitlementEvent normalization.

RevenueCat already speaks the engine's event vocabulary; Stripe events are
mapped onto it here so both ingestors feed the same state machine.
"""

from typing import Optional

from hfe_api.billing.stripe_client import subscription_period_end
from hfe_api.entitlements.rails import CardRail, PlatformRail
from hfe_api.entitlements.transitions import EntitlementEvent, EventType
from hfe_api.errors import ValidationError

PROVIDER_REVENUECAT = "revenuecat"
PROVIDER_STRIPE = "stripe"

_EVENT_TYPES = {t.value: t for t in EventType}

# Subscription statuses after which the customer no longer has access
STRIPE_TERMINAL_STATUSES = frozenset({"canceled", "unpaid", "incomplete_expired"})
STRIPE_RENEWING_STATUSES = frozenset({"active", "trialing"})


# ---------------------------------------------------------------------------
# RevenueCat (platform in-app purchase)
# ---------------------------------------------------------------------------


def revenuecat_event_body(payload: dict) -> dict:
    """Return payload["event"] after checking the required fields.

    Raises:
        ValidationError: Body is not an object or lacks event.type / event.app_user_id
    """
    event = payload.get("event") if isinstance(payload, dict) else None
    if not isinstance(event, dict):
        raise ValidationError("Missing 'event' object")
    if not event.get("type"):
        raise ValidationError("Missing event.type")
    if not event.get("app_user_id"):
        raise ValidationError("Missing event.app_user_id")
    return event


def revenuecat_occurred_at_ms(event: dict) -> Optional[int]:
    """Event time in epoch ms.

    event_timestamp_ms is preferred; older payloads only carry purchase and
    expiration times, and an EXPIRATION happens at the expiration time.
    """
    value = event.get("event_timestamp_ms")
    if not value and event.get("type") == EventType.EXPIRATION.value:
        value = event.get("expiration_at_ms")
    if not value:
        value = event.get("purchased_at_ms")
    return int(value) if value else None


def parse_revenuecat_event(payload: dict) -> Optional[EntitlementEvent]:
    """Normalize a RevenueCat webhook body.

    Returns None for event types the engine does not act on (TRANSFER,
    PRODUCT_CHANGE, ...), which are acknowledged and ignored.

    Raises:
        ValidationError: Required fields missing
    """
    event = revenuecat_event_body(payload)
    event_type = _EVENT_TYPES.get(event["type"])
    if event_type is None:
        return None

    occurred_at_ms = revenuecat_occurred_at_ms(event)
    if occurred_at_ms is None:
        raise ValidationError("Missing event timestamp")

    expires = event.get("expiration_at_ms")
    return EntitlementEvent(
        type=event_type,
        user_id=event["app_user_id"],
        occurred_at_ms=occurred_at_ms,
        rail=PlatformRail(
            original_transaction_id=(
                event.get("original_transaction_id") or event.get("transaction_id")
            ),
            customer_id=event["app_user_id"],
        ),
        expires_at_ms=int(expires) if expires else None,
        product_id=event.get("product_id"),
        event_id=event.get("id"),
    )


# ---------------------------------------------------------------------------
# Stripe (card provider)
# ---------------------------------------------------------------------------


def stripe_event_object(payload: dict) -> dict:
    """Return data.object of a Stripe event.

    Raises:
        ValidationError: id, type or data.object missing
    """
    if not isinstance(payload, dict) or not payload.get("id") or not payload.get("type"):
        raise ValidationError("Missing event id or type")
    obj = (payload.get("data") or {}).get("object")
    if not isinstance(obj, dict):
        raise ValidationError("Missing data.object")
    return obj


def stripe_occurred_at_ms(payload: dict) -> int:
    # Stripe timestamps have second resolution
    return int(payload.get("created") or 0) * 1000


def stripe_metadata_user_id(obj: dict) -> Optional[str]:
    """User id we attached at checkout (client_reference_id or metadata)."""
    if obj.get("client_reference_id"):
        return obj["client_reference_id"]
    metadata = obj.get("metadata") or {}
    if metadata.get("user_id"):
        return metadata["user_id"]
    details = obj.get("subscription_details") or {}
    return (details.get("metadata") or {}).get("user_id")


def invoice_subscription_id(invoice: dict) -> Optional[str]:
    """Subscription id of an invoice (moved under parent in newer API versions)."""
    if invoice.get("subscription"):
        return invoice["subscription"]
    parent = invoice.get("parent") or {}
    return (parent.get("subscription_details") or {}).get("subscription")


def invoice_period_end(invoice: dict) -> Optional[int]:
    """Service period end of the invoice's first line, epoch seconds."""
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines:
        end = (lines[0].get("period") or {}).get("end")
        if end:
            return int(end)
    return None


def stripe_subscription_event_type(subscription: dict) -> Optional[EventType]:
    """Lifecycle event implied by a customer.subscription.updated object.

    Terminal status wins over the cancel flag; past_due is a billing issue and
    statuses with nothing to report (incomplete, paused) map to None.
    """
    status = subscription.get("status")
    if status in STRIPE_TERMINAL_STATUSES:
        return EventType.EXPIRATION
    if subscription.get("cancel_at_period_end"):
        return EventType.CANCELLATION
    if status in STRIPE_RENEWING_STATUSES:
        return EventType.RENEWAL
    if status == "past_due":
        return EventType.BILLING_ISSUE
    return None


def card_event(
    event_type: EventType,
    *,
    user_id: str,
    payload: dict,
    customer_id: Optional[str],
    subscription_id: Optional[str],
    period_end: Optional[int] = None,
) -> EntitlementEvent:
    return EntitlementEvent(
        type=event_type,
        user_id=user_id,
        occurred_at_ms=stripe_occurred_at_ms(payload),
        rail=CardRail(customer_id=customer_id, subscription_id=subscription_id),
        expires_at_ms=period_end * 1000 if period_end else None,
        event_id=payload.get("id"),
    )


def subscription_card_event(
    subscription: dict, *, user_id: str, payload: dict
) -> Optional[EntitlementEvent]:
    event_type = (
        EventType.EXPIRATION
        if payload.get("type") == "customer.subscription.deleted"
        else stripe_subscription_event_type(subscription)
    )
    if event_type is None:
        return None
    return card_event(
        event_type,
        user_id=user_id,
        payload=payload,
        customer_id=subscription.get("customer"),
        subscription_id=subscription.get("id"),
        period_end=subscription_period_end(subscription),
    )
