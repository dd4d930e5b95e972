"""Deferred webhook processing behind the dedup ledger."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import func, select, update

from hfe_api.accounts.tombstones import record_account_deleted
from hfe_api.billing.processor import process_webhook_message
from hfe_api.billing.webhook_dedup import DedupClaim, WebhookInProgress, try_acquire_dedup
from hfe_api.config.env import get_dedup_lease_seconds
from hfe_api.db.models import (
    CardCustomerMapping,
    CardOrder,
    CardSubscriptionRecord,
    SubscriptionAudit,
    UserEntitlement,
    WebhookDedupEvent,
)
from hfe_api.entitlements.rails import CardRail, PlatformRail
from hfe_api.entitlements.store import EntitlementStore
from hfe_api.errors import ConfigurationError

from billing_fixtures import BASE_MS, DAY_MS, TEST_USER_ID, card_rail, platform_rail, purchase

LATER_S = BASE_MS // 1000 + 3600


def _rc_message(event_id="rc-1", event_type="INITIAL_PURCHASE", at_ms=BASE_MS, **fields):
    event = {
        "id": event_id,
        "type": event_type,
        "app_user_id": TEST_USER_ID,
        "event_timestamp_ms": at_ms,
        "expiration_at_ms": at_ms + 30 * DAY_MS,
        "original_transaction_id": "otid-1",
        "product_id": "hf_premium_monthly",
    }
    event.update(fields)
    return {"provider": "revenuecat", "payload": {"event": event}, "payload_hash": "h" * 64}


def _stripe_message(event_id, event_type, obj, created=LATER_S):
    return {
        "provider": "stripe",
        "payload": {"id": event_id, "type": event_type, "created": created, "data": {"object": obj}},
        "payload_hash": "s" * 64,
    }


def _checkout_completed(mode="subscription", event_id="evt_cs_1", **fields):
    obj = {
        "id": "cs_1",
        "object": "checkout.session",
        "mode": mode,
        "customer": "cus_A",
        "subscription": "sub_A" if mode == "subscription" else None,
        "client_reference_id": TEST_USER_ID,
        "amount_subtotal": 4999,
        "amount_total": 4999,
        "currency": "usd",
        "payment_status": "paid",
        "payment_intent": "pi_1" if mode == "payment" else None,
    }
    obj.update(fields)
    return _stripe_message(event_id, "checkout.session.completed", obj)


def _ledger_status(db, dedup_key):
    return db.execute(
        select(WebhookDedupEvent.status).where(WebhookDedupEvent.dedup_key == dedup_key)
    ).scalar_one()


def _map_customer(db, customer_id="cus_A", user_id=TEST_USER_ID):
    db.add(CardCustomerMapping(user_id=user_id, customer_id=customer_id))
    db.commit()


# ── Ledger ───────────────────────────────────────────────────────────────────


def test_first_delivery_applies_and_redelivery_is_duplicate(db_session):
    message = _rc_message()

    assert process_webhook_message(db_session, message) == "applied"
    assert process_webhook_message(db_session, message) == "duplicate"

    assert _ledger_status(db_session, "ev_rc-1") == "done"
    audits = db_session.execute(select(SubscriptionAudit)).scalars().all()
    assert len(audits) == 1


def test_failed_processing_is_reclaimed_on_redelivery(db_session):
    message = _rc_message()

    with patch("hfe_api.billing.processor._process_revenuecat", side_effect=RuntimeError("db blip")):
        with pytest.raises(RuntimeError):
            process_webhook_message(db_session, message)

    assert _ledger_status(db_session, "ev_rc-1") == "failed"
    assert db_session.get(UserEntitlement, TEST_USER_ID) is None

    assert process_webhook_message(db_session, message) == "applied"
    assert _ledger_status(db_session, "ev_rc-1") == "done"
    assert EntitlementStore(db_session).get(TEST_USER_ID).status == "premium"


def test_unknown_provider_is_rejected(db_session):
    with pytest.raises(ValueError):
        process_webhook_message(db_session, {"provider": "paypal", "payload": {}})


def test_message_without_dedup_key_is_rejected(db_session):
    with pytest.raises(ValueError):
        process_webhook_message(db_session, {"provider": "stripe", "payload": {"type": "invoice.paid"}})


# ── RevenueCat ───────────────────────────────────────────────────────────────


def test_revenuecat_purchase_sets_platform_rail(db_session):
    process_webhook_message(db_session, _rc_message())

    snapshot = EntitlementStore(db_session).get(TEST_USER_ID)
    assert snapshot.status == "premium"
    assert snapshot.rail == PlatformRail(original_transaction_id="otid-1", customer_id=TEST_USER_ID)
    assert snapshot.renewal_date == datetime.fromtimestamp((BASE_MS + 30 * DAY_MS) / 1000, tz=timezone.utc)


def test_revenuecat_unhandled_type_is_ignored(db_session):
    outcome = process_webhook_message(db_session, _rc_message(event_type="TRANSFER"))

    assert outcome == "ignored"
    assert _ledger_status(db_session, "ev_rc-1") == "done"


def test_out_of_order_expiration_is_stale(db_session):
    process_webhook_message(db_session, _rc_message("rc-new", at_ms=BASE_MS + 10_000))

    outcome = process_webhook_message(
        db_session, _rc_message("rc-old", event_type="EXPIRATION", at_ms=BASE_MS)
    )

    assert outcome == "stale"
    assert EntitlementStore(db_session).get(TEST_USER_ID).status == "premium"


def test_revenuecat_cancellation_then_expiration(db_session):
    process_webhook_message(db_session, _rc_message("rc-1"))
    process_webhook_message(db_session, _rc_message("rc-2", event_type="CANCELLATION", at_ms=BASE_MS + 1))
    assert EntitlementStore(db_session).get(TEST_USER_ID).cancel_at_period_end is True

    process_webhook_message(db_session, _rc_message("rc-3", event_type="EXPIRATION", at_ms=BASE_MS + 2))

    snapshot = EntitlementStore(db_session).get(TEST_USER_ID)
    assert snapshot.status == "free"
    assert snapshot.cancel_at_period_end is False


# ── Stripe ───────────────────────────────────────────────────────────────────


def test_subscription_checkout_makes_user_premium_on_card(db_session):
    outcome = process_webhook_message(db_session, _checkout_completed())

    assert outcome == "applied"
    snapshot = EntitlementStore(db_session).get(TEST_USER_ID)
    assert snapshot.status == "premium"
    assert snapshot.rail == CardRail(customer_id="cus_A", subscription_id="sub_A")

    record = db_session.execute(select(CardSubscriptionRecord)).scalar_one()
    assert (record.subscription_id, record.status) == ("sub_A", "active")


def test_payment_checkout_records_order_only(db_session):
    outcome = process_webhook_message(db_session, _checkout_completed(mode="payment"))

    assert outcome == "order_recorded"
    order = db_session.execute(select(CardOrder)).scalar_one()
    assert (order.checkout_session_id, order.amount_total, order.payment_intent_id) == ("cs_1", 4999, "pi_1")
    assert db_session.get(UserEntitlement, TEST_USER_ID) is None


def test_subscription_deleted_resolves_user_through_mapping(db_session):
    _map_customer(db_session)
    purchase(db_session, TEST_USER_ID, card_rail("cus_A", "sub_A"))
    db_session.add(CardSubscriptionRecord(
        user_id=TEST_USER_ID, customer_id="cus_A", subscription_id="sub_A", status="active"
    ))
    db_session.commit()
    subscription = {
        "id": "sub_A",
        "object": "subscription",
        "customer": "cus_A",
        "status": "canceled",
        "cancel_at_period_end": False,
        "items": {"data": [{"price": {"id": "price_monthly"}, "current_period_end": LATER_S}]},
    }

    outcome = process_webhook_message(
        db_session, _stripe_message("evt_del", "customer.subscription.deleted", subscription)
    )

    assert outcome == "applied"
    snapshot = EntitlementStore(db_session).get(TEST_USER_ID)
    assert snapshot.status == "free"
    assert snapshot.rail == card_rail("cus_A", "sub_A")

    record = db_session.execute(select(CardSubscriptionRecord)).scalar_one()
    assert (record.status, record.price_id, record.current_period_end) == ("canceled", "price_monthly", LATER_S)


def test_subscription_updated_with_cancel_flag_is_cancellation(db_session):
    _map_customer(db_session)
    purchase(db_session, TEST_USER_ID, card_rail("cus_A", "sub_A"))
    subscription = {
        "id": "sub_A",
        "customer": "cus_A",
        "status": "active",
        "cancel_at_period_end": True,
        "current_period_end": LATER_S,
    }

    process_webhook_message(db_session, _stripe_message("evt_upd", "customer.subscription.updated", subscription))

    snapshot = EntitlementStore(db_session).get(TEST_USER_ID)
    assert snapshot.status == "premium"
    assert snapshot.cancel_at_period_end is True


def test_invoice_paid_renews_and_moves_renewal_date(db_session):
    _map_customer(db_session)
    purchase(db_session, TEST_USER_ID, card_rail("cus_A", "sub_A"))
    period_end = LATER_S + 30 * 86_400
    invoice = {
        "id": "in_1",
        "object": "invoice",
        "customer": "cus_A",
        "parent": {"subscription_details": {"subscription": "sub_A"}},
        "lines": {"data": [{"period": {"start": LATER_S, "end": period_end}}]},
    }

    outcome = process_webhook_message(db_session, _stripe_message("evt_inv", "invoice.paid", invoice))

    assert outcome == "applied"
    snapshot = EntitlementStore(db_session).get(TEST_USER_ID)
    assert snapshot.renewal_date == datetime.fromtimestamp(period_end, tz=timezone.utc)


def test_one_time_invoice_is_ignored(db_session):
    _map_customer(db_session)
    invoice = {"id": "in_2", "customer": "cus_A", "lines": {"data": []}}

    assert process_webhook_message(db_session, _stripe_message("evt_inv2", "invoice.paid", invoice)) == "ignored"


def test_card_purchase_while_platform_renews_is_rejected_and_audited(db_session):
    purchase(db_session, TEST_USER_ID, platform_rail())

    outcome = process_webhook_message(db_session, _checkout_completed())

    assert outcome == "rail_conflict"
    snapshot = EntitlementStore(db_session).get(TEST_USER_ID)
    assert snapshot.rail == platform_rail()

    rejected = db_session.execute(
        select(SubscriptionAudit).where(SubscriptionAudit.notes.is_not(None))
    ).scalar_one()
    assert rejected.notes.startswith("rail_conflict")
    assert rejected.new_payment_method == "platform_iap"
    # Redelivery must not loop on a business rejection
    assert _ledger_status(db_session, "ev_evt_cs_1") == "done"


def test_event_for_unknown_customer_is_unresolved(db_session):
    subscription = {"id": "sub_X", "customer": "cus_unknown", "status": "active"}

    outcome = process_webhook_message(
        db_session, _stripe_message("evt_x", "customer.subscription.updated", subscription)
    )

    assert outcome == "unresolved_user"
    assert db_session.execute(select(UserEntitlement)).scalars().all() == []


def test_unhandled_stripe_type_is_ignored(db_session):
    obj = {"id": "pi_1", "customer": "cus_A", "metadata": {"user_id": TEST_USER_ID}}

    outcome = process_webhook_message(db_session, _stripe_message("evt_pi", "payment_intent.created", obj))

    assert outcome == "ignored"


def test_subscription_event_without_local_record_does_not_create_one(db_session):
    _map_customer(db_session)
    purchase(db_session, TEST_USER_ID, card_rail("cus_A", "sub_A"))
    subscription = {
        "id": "sub_A",
        "customer": "cus_A",
        "status": "active",
        "cancel_at_period_end": True,
        "current_period_end": LATER_S,
    }

    outcome = process_webhook_message(
        db_session, _stripe_message("evt_upd2", "customer.subscription.updated", subscription)
    )

    assert outcome == "applied"
    assert db_session.execute(select(CardSubscriptionRecord)).scalars().all() == []


def test_stripe_event_for_deleted_account_has_no_side_effects(db_session):
    record_account_deleted(db_session, TEST_USER_ID)
    db_session.commit()

    outcome = process_webhook_message(db_session, _checkout_completed())

    assert outcome == "account_deleted"
    assert db_session.execute(select(CardSubscriptionRecord)).scalars().all() == []
    assert db_session.get(UserEntitlement, TEST_USER_ID) is None
    assert _ledger_status(db_session, "ev_evt_cs_1") == "done"


# ── Claim lease ──────────────────────────────────────────────────────────────


def _claim(db, dedup_key="ev_rc-1", age_seconds=0):
    """Leave a 'processing' claim behind, as a worker that died mid-message would."""
    assert try_acquire_dedup(db, "revenuecat", dedup_key) is DedupClaim.ACQUIRED
    if age_seconds:
        claimed_at = datetime.now(timezone.utc) - timedelta(seconds=age_seconds)
        db.execute(
            update(WebhookDedupEvent)
            .where(WebhookDedupEvent.dedup_key == dedup_key)
            .values(first_seen_at=claimed_at, last_seen_at=claimed_at)
        )
        db.commit()


def test_expired_processing_claim_is_reclaimed(db_session):
    _claim(db_session, age_seconds=600)

    assert process_webhook_message(db_session, _rc_message()) == "applied"

    count = db_session.execute(select(func.count()).select_from(UserEntitlement)).scalar_one()
    assert count == 1
    assert _ledger_status(db_session, "ev_rc-1") == "done"


def test_live_processing_claim_is_not_acknowledged(db_session):
    _claim(db_session)

    with pytest.raises(WebhookInProgress):
        process_webhook_message(db_session, _rc_message())

    assert db_session.get(UserEntitlement, TEST_USER_ID) is None
    assert _ledger_status(db_session, "ev_rc-1") == "processing"


def test_claim_lease_follows_configuration(db_session, monkeypatch):
    monkeypatch.setenv("WEBHOOK_PROCESSING_LEASE_SECONDS", "30")
    _claim(db_session, age_seconds=60)

    assert try_acquire_dedup(db_session, "revenuecat", "ev_rc-1") is DedupClaim.ACQUIRED


def test_done_event_stays_duplicate_past_the_lease(db_session):
    process_webhook_message(db_session, _rc_message())

    assert try_acquire_dedup(db_session, "revenuecat", "ev_rc-1", lease_seconds=1) is DedupClaim.DUPLICATE


@pytest.mark.parametrize("raw", ["soon", "0", "-5"])
def test_invalid_lease_setting_is_rejected(monkeypatch, raw):
    monkeypatch.setenv("WEBHOOK_PROCESSING_LEASE_SECONDS", raw)

    with pytest.raises(ConfigurationError):
        get_dedup_lease_seconds()
