"""Shared test doubles and seeding helpers for the API tests."""

from typing import Callable, Optional

from sqlalchemy.orm import Session

from hfe_api.billing.stripe_client import OPEN_SUBSCRIPTION_STATUSES
from hfe_api.entitlements.rails import CardRail, PaymentRail, PlatformRail
from hfe_api.entitlements.store import EntitlementStore
from hfe_api.entitlements.transitions import EntitlementEvent, EventType

TEST_USER_ID = "user-1"
TEST_USER_EMAIL = "user1@example.com"
BASE_MS = 1_700_000_000_000
DAY_MS = 86_400_000


class FakeStripeClient:
    """In-memory stand-in for StripeBillingClient.

    Records every call in `calls`; `on_create_customer` runs once, after the
    customer is created, to interleave a concurrent request.
    """

    env = "sandbox"

    def __init__(self):
        self.calls: list[tuple] = []
        self.customers: dict[str, dict] = {}
        self.subscriptions: dict[str, list[dict]] = {}
        self.on_create_customer: Optional[Callable[[], None]] = None
        self.fail_on: dict[str, Exception] = {}
        self._seq = 0

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise self.fail_on[operation]

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        self.calls.append(("create_customer", user_id))
        self._maybe_fail("create_customer")
        self._seq += 1
        customer_id = f"cus_test_{self._seq}"
        self.customers[customer_id] = {"user_id": user_id, "email": email, "deleted": False}
        hook, self.on_create_customer = self.on_create_customer, None
        if hook is not None:
            hook()
        return customer_id

    def customer_exists(self, customer_id: str) -> bool:
        self.calls.append(("customer_exists", customer_id))
        customer = self.customers.get(customer_id)
        return customer is not None and not customer["deleted"]

    def delete_customer(self, customer_id: str) -> None:
        self.calls.append(("delete_customer", customer_id))
        self._maybe_fail("delete_customer")
        if customer_id in self.customers:
            self.customers[customer_id]["deleted"] = True

    def create_checkout_session(self, *, customer_id, user_id, price_id, mode, success_url, cancel_url):
        self.calls.append(("create_checkout_session", customer_id, price_id, mode))
        self._maybe_fail("create_checkout_session")
        self._seq += 1
        return f"cs_test_{self._seq}", f"https://checkout.stripe.test/c/cs_test_{self._seq}"

    def add_subscription(self, customer_id: str, subscription_id: str, status: str = "active",
                         current_period_end: int = 1_702_592_000) -> dict:
        subscription = {
            "id": subscription_id,
            "customer": customer_id,
            "status": status,
            "cancel_at_period_end": False,
            "current_period_end": current_period_end,
        }
        self.subscriptions.setdefault(customer_id, []).append(subscription)
        return subscription

    def _find(self, subscription_id: str) -> dict:
        for subs in self.subscriptions.values():
            for sub in subs:
                if sub["id"] == subscription_id:
                    return sub
        raise KeyError(subscription_id)

    def list_open_subscriptions(self, customer_id: str) -> list[dict]:
        self.calls.append(("list_open_subscriptions", customer_id))
        self._maybe_fail("list_open_subscriptions")
        return [
            dict(s) for s in self.subscriptions.get(customer_id, [])
            if s["status"] in OPEN_SUBSCRIPTION_STATUSES
        ]

    def cancel_subscription_now(self, subscription_id: str) -> dict:
        self.calls.append(("cancel_subscription_now", subscription_id))
        self._maybe_fail("cancel_subscription_now")
        sub = self._find(subscription_id)
        sub["status"] = "canceled"
        return dict(sub)

    def cancel_at_period_end(self, subscription_id: str) -> dict:
        self.calls.append(("cancel_at_period_end", subscription_id))
        self._maybe_fail("cancel_at_period_end")
        sub = self._find(subscription_id)
        sub["cancel_at_period_end"] = True
        return dict(sub)

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]


def purchase(db: Session, user_id: str, rail: PaymentRail, *, at_ms: int = BASE_MS,
             expires_ms: Optional[int] = None, source: str = "seed") -> None:
    """Drive user_id to premium through the store, as a webhook would."""
    EntitlementStore(db).apply(
        EntitlementEvent(
            type=EventType.INITIAL_PURCHASE,
            user_id=user_id,
            occurred_at_ms=at_ms,
            rail=rail,
            expires_at_ms=expires_ms or at_ms + 30 * DAY_MS,
        ),
        source=source,
    )


def card_rail(customer_id: str = "cus_seed", subscription_id: str = "sub_seed") -> CardRail:
    return CardRail(customer_id=customer_id, subscription_id=subscription_id)


def platform_rail(otid: str = "otid-1", user_id: str = TEST_USER_ID) -> PlatformRail:
    return PlatformRail(original_transaction_id=otid, customer_id=user_id)
