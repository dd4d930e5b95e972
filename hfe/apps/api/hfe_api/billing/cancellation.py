"""Cancellation Coordinator: route a cancel request to the user's payment rail.

    cardProvider  → Stripe: cancel at period end (default) or immediately
                    (non-production only, for QA re-testing of the purchase flow)
    platformIAP   → no server-side cancel API; hand back the settings deep link
                    and manual instructions
    none          → NotFoundError

A premium record without a rail is refused with DataIntegrityError rather than
guessing which provider to call.
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional, assert_never

from sqlalchemy import select
from sqlalchemy.orm import Session

from hfe_api.billing.stripe_client import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    StripeBillingClient,
    get_stripe_client,
    subscription_period_end,
)
from hfe_api.config.env import is_production_env
from hfe_api.db.models import CardCustomerMapping, CardSubscriptionRecord
from hfe_api.entitlements.rails import CardRail, NoRail, PlatformRail
from hfe_api.entitlements.store import EntitlementStore, check_invariants
from hfe_api.entitlements.transitions import EntitlementEvent, EventType
from hfe_api.errors import NotFoundError, ProviderStateMismatch
from hfe_api.sdk.manage import PLATFORM_INSTRUCTIONS, PLATFORM_MANAGE_URL

logger = logging.getLogger(__name__)

SOURCE_CANCELLATION = "cancellation"

NO_SUBSCRIPTION_MESSAGE = "No active subscription found"


@dataclass(frozen=True)
class CancellationResult:
    success: bool
    subscription_id: Optional[str] = None
    cancel_at_period_end: Optional[bool] = None
    current_period_end: Optional[int] = None
    manage_url: Optional[str] = None
    instructions: Optional[str] = None

    def to_response(self) -> dict:
        keys = {
            "success": "success",
            "subscription_id": "subscriptionId",
            "cancel_at_period_end": "cancelAtPeriodEnd",
            "current_period_end": "currentPeriodEnd",
            "manage_url": "manageUrl",
            "instructions": "instructions",
        }
        return {keys[k]: v for k, v in asdict(self).items() if v is not None}


class CancellationCoordinator:
    def __init__(
        self,
        db: Session,
        stripe_client_getter: Callable[[], StripeBillingClient] = get_stripe_client,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self._get_stripe = stripe_client_getter
        self._clock = clock

    def cancel(self, user_id: str, *, immediate: bool = False) -> CancellationResult:
        """Cancel the user's subscription on whichever rail it lives.

        Raises:
            DataIntegrityError: premium without payment method
            NotFoundError: No active subscription
            ProviderError: Stripe failure after one retry
        """
        store = EntitlementStore(self.db)
        snapshot = store.get_or_default(user_id)
        check_invariants(snapshot)

        rail = snapshot.rail
        match rail:
            case NoRail():
                raise NotFoundError(NO_SUBSCRIPTION_MESSAGE)
            case PlatformRail():
                logger.info("PLATFORM_CANCEL_REDIRECT", extra={"user_id": user_id})
                return CancellationResult(
                    success=True,
                    manage_url=PLATFORM_MANAGE_URL,
                    instructions=PLATFORM_INSTRUCTIONS,
                )
            case CardRail():
                return self._cancel_card(store, user_id, rail, immediate=immediate)
            case _:
                assert_never(rail)

    def _cancel_card(
        self, store: EntitlementStore, user_id: str, rail: CardRail, *, immediate: bool
    ) -> CancellationResult:
        if immediate and is_production_env():
            logger.warning("IMMEDIATE_CANCEL_REFUSED_IN_PRODUCTION", extra={"user_id": user_id})
            immediate = False

        customer_id = rail.customer_id or self._mapped_customer(user_id)
        if not customer_id:
            raise NotFoundError(NO_SUBSCRIPTION_MESSAGE)

        stripe_client = self._get_stripe()
        try:
            subscriptions = stripe_client.list_open_subscriptions(customer_id)
        except ProviderStateMismatch as exc:
            raise NotFoundError(
                NO_SUBSCRIPTION_MESSAGE,
                log_detail=f"customer {customer_id} missing in {stripe_client.env}",
            ) from exc

        active = next(
            (s for s in subscriptions if s.get("status") in ACTIVE_SUBSCRIPTION_STATUSES), None
        )
        if active is None:
            raise NotFoundError(
                NO_SUBSCRIPTION_MESSAGE,
                log_detail=f"no active subscription for customer {customer_id}",
            )

        if immediate:
            updated = stripe_client.cancel_subscription_now(active["id"])
            event_type = EventType.EXPIRATION
        else:
            updated = stripe_client.cancel_at_period_end(active["id"])
            event_type = EventType.CANCELLATION

        period_end = subscription_period_end(updated) or subscription_period_end(active)
        self._mirror(
            user_id,
            customer_id,
            subscription_id=active["id"],
            status=updated.get("status"),
            cancel_at_period_end=bool(updated.get("cancel_at_period_end")),
            current_period_end=period_end,
        )

        # Whole seconds, like provider event timestamps, so the webhook echo is not stale
        now_ms = int(self._clock()) * 1000
        store.apply(
            EntitlementEvent(
                type=event_type,
                user_id=user_id,
                occurred_at_ms=now_ms,
                rail=CardRail(customer_id=customer_id, subscription_id=active["id"]),
            ),
            source=SOURCE_CANCELLATION,
            notes="immediate" if immediate else "period_end",
        )
        self.db.commit()

        logger.info(
            "CARD_SUBSCRIPTION_CANCELLED",
            extra={
                "user_id": user_id,
                "subscription_id": active["id"],
                "immediate": immediate,
                "current_period_end": period_end,
            },
        )
        return CancellationResult(
            success=True,
            subscription_id=active["id"],
            cancel_at_period_end=bool(updated.get("cancel_at_period_end")),
            current_period_end=period_end,
        )

    def _mapped_customer(self, user_id: str) -> Optional[str]:
        return self.db.execute(
            select(CardCustomerMapping.customer_id).where(
                CardCustomerMapping.user_id == user_id,
                CardCustomerMapping.deleted_at.is_(None),
            )
        ).scalar_one_or_none()

    def _mirror(self, user_id: str, customer_id: str, **fields) -> None:
        record = self.db.execute(
            select(CardSubscriptionRecord).where(CardSubscriptionRecord.customer_id == customer_id)
        ).scalar_one_or_none()
        if record is None:
            record = CardSubscriptionRecord(user_id=user_id, customer_id=customer_id)
            self.db.add(record)
        for name, value in fields.items():
            if value is not None:
                setattr(record, name, value)
