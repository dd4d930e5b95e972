"""Deferred webhook processing (runs in the worker, not in the request).

The HTTP ingestors authenticate and enqueue; process_webhook_message() applies
the side effects behind the dedup gate:

  dedup acquired → provider handler → mark done
  handler error  → mark failed, re-raise (message stays on the queue)
  duplicate      → no side effects
  claim held     → WebhookInProgress (message stays on the queue)
  deleted user   → no side effects (tombstoned account)

A PaymentRailConflict is a business rejection, not a processing failure: it is
audited, logged and marked done so redelivery does not loop on it.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from hfe_api.accounts.tombstones import is_account_deleted
from hfe_api.billing.events import (
    PROVIDER_REVENUECAT,
    PROVIDER_STRIPE,
    card_event,
    invoice_period_end,
    invoice_subscription_id,
    parse_revenuecat_event,
    stripe_event_object,
    stripe_metadata_user_id,
    subscription_card_event,
)
from hfe_api.billing.stripe_client import subscription_period_end
from hfe_api.billing.webhook_dedup import (
    DedupClaim,
    WebhookInProgress,
    get_revenuecat_dedup_key,
    get_stripe_dedup_key,
    mark_dedup_done,
    mark_dedup_failed,
    try_acquire_dedup,
)
from hfe_api.db.models import CardCustomerMapping, CardOrder, CardSubscriptionRecord
from hfe_api.db.upsert import insert_or_ignore
from hfe_api.entitlements.store import ApplyResult, EntitlementStore
from hfe_api.entitlements.transitions import EntitlementEvent, EventType
from hfe_api.errors import PaymentRailConflict
from hfe_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)

OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_UNRESOLVED = "unresolved_user"
OUTCOME_ORDER_RECORDED = "order_recorded"
OUTCOME_RAIL_CONFLICT = "rail_conflict"
OUTCOME_ACCOUNT_DELETED = ApplyResult.ACCOUNT_DELETED.value

_DEDUP_KEYS = {
    PROVIDER_REVENUECAT: get_revenuecat_dedup_key,
    PROVIDER_STRIPE: get_stripe_dedup_key,
}


def _subject(provider: str, payload: dict) -> tuple[Optional[str], Optional[str]]:
    """(event_type, user_id) for logging, best effort."""
    if provider == PROVIDER_REVENUECAT:
        event = payload.get("event") or {}
        return event.get("type"), event.get("app_user_id")
    obj = (payload.get("data") or {}).get("object") or {}
    return payload.get("type"), stripe_metadata_user_id(obj) if isinstance(obj, dict) else None


def process_webhook_message(db: Session, message: dict) -> str:
    """Apply one queued webhook; returns an outcome label.

    Raises:
        ValueError: Unknown provider or no derivable dedup key (poison message)
        WebhookInProgress: Another attempt holds a live claim on this event
        Exception: Any processing failure, after the ledger is marked failed
    """
    provider = message.get("provider")
    payload = message.get("payload") or {}
    if provider not in _DEDUP_KEYS:
        raise ValueError(f"Unknown webhook provider: {provider!r}")

    dedup_key = _DEDUP_KEYS[provider](payload)
    event_type, user_id = _subject(provider, payload)

    claim = try_acquire_dedup(db, provider, dedup_key, message.get("payload_hash"))
    if claim is DedupClaim.IN_PROGRESS:
        raise WebhookInProgress(provider, dedup_key)
    if claim is DedupClaim.DUPLICATE:
        logger.info(
            "WEBHOOK_ALREADY_PROCESSED",
            extra={"provider": provider, "event_type": event_type, "user_id": user_id},
        )
        return OUTCOME_DUPLICATE

    try:
        if provider == PROVIDER_REVENUECAT:
            outcome = _process_revenuecat(db, payload)
        else:
            outcome = _process_stripe(db, payload)
    except PaymentRailConflict as exc:
        db.rollback()
        logger.error(
            "WEBHOOK_RAIL_CONFLICT",
            extra={
                "provider": provider,
                "event_type": event_type,
                "user_id": user_id,
                "error_msg": exc.log_detail,
            },
        )
        outcome = OUTCOME_RAIL_CONFLICT
    except Exception as exc:
        db.rollback()
        mark_dedup_failed(db, provider, dedup_key)
        logger.error(
            "WEBHOOK_PROCESSING_FAILED",
            extra={
                "provider": provider,
                "event_type": event_type,
                "user_id": user_id,
                "error_type": type(exc).__name__,
                "error_msg": sanitize_str(str(exc)),
            },
        )
        raise

    mark_dedup_done(db, provider, dedup_key)
    logger.info(
        "WEBHOOK_PROCESSED",
        extra={
            "provider": provider,
            "event_type": event_type,
            "user_id": user_id,
            "outcome": outcome,
        },
    )
    return outcome


def _apply(db: Session, event: EntitlementEvent, source: str) -> str:
    store = EntitlementStore(db)
    try:
        return store.apply(event, source=source).value
    except PaymentRailConflict as exc:
        # Raised before the row is touched; pending mirror updates commit with the audit
        store.record_rejected(event, source=source, notes=f"rail_conflict: {exc.log_detail}")
        raise


# ---------------------------------------------------------------------------
# RevenueCat
# ---------------------------------------------------------------------------


def _process_revenuecat(db: Session, payload: dict) -> str:
    event = parse_revenuecat_event(payload)
    if event is None:
        logger.info(
            "REVENUECAT_EVENT_IGNORED",
            extra={"event_type": (payload.get("event") or {}).get("type")},
        )
        return OUTCOME_IGNORED
    return _apply(db, event, PROVIDER_REVENUECAT)


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


def _resolve_stripe_user(db: Session, obj: dict, customer_id: Optional[str]) -> Optional[str]:
    user_id = stripe_metadata_user_id(obj)
    if user_id or not customer_id:
        return user_id

    # Newest mapping first; a remapped (soft-deleted) customer still belongs to its user
    mapped = db.execute(
        select(CardCustomerMapping.user_id)
        .where(CardCustomerMapping.customer_id == customer_id)
        .order_by(CardCustomerMapping.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if mapped:
        return mapped

    return db.execute(
        select(CardSubscriptionRecord.user_id).where(
            CardSubscriptionRecord.customer_id == customer_id
        )
    ).scalar_one_or_none()


def _mirror_subscription(
    db: Session, *, user_id: str, customer_id: str, create: bool = False, **fields
) -> None:
    """Refresh the local CardSubscriptionRecord for customer_id (no commit).

    Only a completed checkout creates the record; later subscription and invoice
    events update it when present and are otherwise skipped.
    """
    if create:
        insert_or_ignore(
            db,
            CardSubscriptionRecord,
            {"user_id": user_id, "customer_id": customer_id},
            index_elements=["customer_id"],
        )
    record = db.execute(
        select(CardSubscriptionRecord).where(CardSubscriptionRecord.customer_id == customer_id)
    ).scalar_one_or_none()
    if record is None:
        logger.info(
            "CARD_SUBSCRIPTION_MIRROR_SKIPPED",
            extra={"user_id": user_id, "customer_id": customer_id},
        )
        return
    for name, value in fields.items():
        if value is not None:
            setattr(record, name, value)


def _process_stripe(db: Session, payload: dict) -> str:
    obj = stripe_event_object(payload)
    event_type = payload["type"]
    customer_id = obj.get("customer")

    user_id = _resolve_stripe_user(db, obj, customer_id)
    if not user_id or not customer_id:
        logger.warning(
            "STRIPE_EVENT_USER_UNRESOLVED",
            extra={"event_type": event_type, "customer_id": customer_id},
        )
        return OUTCOME_UNRESOLVED

    if is_account_deleted(db, user_id):
        logger.info(
            "STRIPE_EVENT_FOR_DELETED_ACCOUNT",
            extra={"event_type": event_type, "user_id": user_id},
        )
        return OUTCOME_ACCOUNT_DELETED

    if event_type == "checkout.session.completed":
        return _stripe_checkout_completed(db, payload, obj, user_id, customer_id)

    if event_type in ("invoice.paid", "invoice.payment_failed"):
        subscription_id = invoice_subscription_id(obj)
        if not subscription_id:
            # One-time invoice, not a subscription cycle
            return OUTCOME_IGNORED
        period_end = invoice_period_end(obj)
        paid = event_type == "invoice.paid"
        _mirror_subscription(
            db,
            user_id=user_id,
            customer_id=customer_id,
            subscription_id=subscription_id,
            status="active" if paid else "past_due",
            current_period_end=period_end if paid else None,
        )
        event = card_event(
            EventType.RENEWAL if paid else EventType.BILLING_ISSUE,
            user_id=user_id,
            payload=payload,
            customer_id=customer_id,
            subscription_id=subscription_id,
            period_end=period_end,
        )
        return _apply_and_commit(db, event)

    if event_type in (
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    ):
        _mirror_subscription(
            db,
            user_id=user_id,
            customer_id=customer_id,
            subscription_id=obj.get("id"),
            price_id=_subscription_price_id(obj),
            status=obj.get("status"),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            current_period_end=subscription_period_end(obj),
        )
        if event_type == "customer.subscription.created":
            db.commit()
            return OUTCOME_IGNORED
        event = subscription_card_event(obj, user_id=user_id, payload=payload)
        if event is None:
            db.commit()
            return OUTCOME_IGNORED
        return _apply_and_commit(db, event)

    logger.info("STRIPE_EVENT_IGNORED", extra={"event_type": event_type})
    return OUTCOME_IGNORED


def _stripe_checkout_completed(
    db: Session, payload: dict, session: dict, user_id: str, customer_id: str
) -> str:
    if session.get("mode") == "payment":
        inserted = insert_or_ignore(
            db,
            CardOrder,
            {
                "user_id": user_id,
                "customer_id": customer_id,
                "checkout_session_id": session["id"],
                "payment_intent_id": session.get("payment_intent"),
                "amount_subtotal": session.get("amount_subtotal"),
                "amount_total": session.get("amount_total"),
                "currency": session.get("currency"),
                "payment_status": session.get("payment_status"),
                "status": "completed",
            },
            index_elements=["checkout_session_id"],
        )
        db.commit()
        if inserted:
            logger.info(
                "CARD_ORDER_RECORDED",
                extra={"user_id": user_id, "checkout_session_id": session["id"]},
            )
        return OUTCOME_ORDER_RECORDED

    subscription_id = session.get("subscription")
    _mirror_subscription(
        db,
        user_id=user_id,
        customer_id=customer_id,
        create=True,
        subscription_id=subscription_id,
        status="active",
    )
    event = card_event(
        EventType.INITIAL_PURCHASE,
        user_id=user_id,
        payload=payload,
        customer_id=customer_id,
        subscription_id=subscription_id,
    )
    return _apply_and_commit(db, event)


def _apply_and_commit(db: Session, event: EntitlementEvent) -> str:
    outcome = _apply(db, event, PROVIDER_STRIPE)
    # Stale/unchanged results do not commit inside the store; the mirror update still must
    db.commit()
    return outcome


def _subscription_price_id(subscription: dict) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return (items[0].get("price") or {}).get("id")
    return None
