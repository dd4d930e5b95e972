"""Checkout Initiator for the card payment rail.

Resolves (or creates) the caller's Stripe customer and opens a hosted checkout
session for an allow-listed price.

Customer mapping rules:
  - One live mapping per user, guarded by the partial unique index on
    card_customer_mappings(user_id) WHERE deleted_at IS NULL. Creation is an
    INSERT ... ON CONFLICT DO NOTHING; the loser of a concurrent race deletes the
    customer it just created and uses the winner's mapping.
  - Mapping and not_started subscription placeholder are written in one
    transaction. If that transaction fails, the freshly created Stripe customer
    is deleted (compensating cleanup) and the request fails retryably.
  - A mapped customer that no longer exists in the current Stripe environment
    (sandbox/live key switch) is replaced: the old mapping is soft-deleted and a
    new one inserted. The replacement customer is deleted only if that remap
    fails.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hfe_api.billing.stripe_client import StripeBillingClient, get_stripe_client
from hfe_api.config.env import get_allowed_price_ids
from hfe_api.db.models import CardCustomerMapping, CardSubscriptionRecord
from hfe_api.db.upsert import insert_or_ignore
from hfe_api.entitlements.rails import CardRail
from hfe_api.entitlements.store import EntitlementStore
from hfe_api.errors import (
    ConfigurationError,
    GENERIC_RETRY_MESSAGE,
    ProviderError,
    ProviderStateMismatch,
    ValidationError,
)
from hfe_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)

CHECKOUT_MODES = ("subscription", "payment")

_LIVE = text("deleted_at IS NULL")


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str


class CheckoutInitiator:
    """Create hosted checkout sessions for authenticated users."""

    def __init__(
        self,
        db: Session,
        stripe_client_getter: Callable[[], StripeBillingClient] = get_stripe_client,
        allowed_price_ids: Optional[frozenset[str]] = None,
    ):
        self.db = db
        self._get_stripe = stripe_client_getter
        self._allowed_price_ids = allowed_price_ids

    def create_session(
        self,
        *,
        user_id: str,
        email: Optional[str],
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Validate the request, resolve the customer and open the session.

        Raises:
            ConfigurationError: Price allow-list is empty
            ValidationError: price_id not allow-listed or mode unknown (no Stripe call made)
            PaymentRailConflict: User is premium on another rail
            ProviderError: Stripe or mapping failure (after compensating cleanup)
        """
        self._validate(price_id=price_id, mode=mode)

        if mode == "subscription":
            EntitlementStore(self.db).ensure_can_start_purchase(user_id, CardRail())

        stripe_client = self._get_stripe()
        customer_id = self._resolve_customer(stripe_client, user_id, email, mode, price_id)

        session_id, url = stripe_client.create_checkout_session(
            customer_id=customer_id,
            user_id=user_id,
            price_id=price_id,
            mode=mode,
            success_url=success_url,
            cancel_url=cancel_url,
        )
        logger.info(
            "CHECKOUT_SESSION_CREATED",
            extra={
                "user_id": user_id,
                "customer_id": customer_id,
                "session_id": session_id,
                "price_id": price_id,
                "mode": mode,
                "stripe_env": stripe_client.env,
            },
        )
        return CheckoutSession(session_id=session_id, url=url)

    def _validate(self, *, price_id: str, mode: str) -> None:
        allowed = (
            self._allowed_price_ids
            if self._allowed_price_ids is not None
            else get_allowed_price_ids()
        )
        if not allowed:
            raise ConfigurationError(
                "Subscription temporarily unavailable",
                log_detail="price allow-list is empty (STRIPE_PRICE_ID_SANDBOX/PROD unset)",
            )
        if mode not in CHECKOUT_MODES:
            raise ValidationError(f"Invalid mode. Must be one of: {', '.join(CHECKOUT_MODES)}")
        if price_id not in allowed:
            logger.warning("CHECKOUT_PRICE_REJECTED", extra={"price_id": sanitize_str(price_id)})
            raise ValidationError("Invalid product selected")

    # ------------------------------------------------------------------
    # Customer resolution
    # ------------------------------------------------------------------

    def _live_mapping(self, user_id: str) -> Optional[CardCustomerMapping]:
        stmt = select(CardCustomerMapping).where(
            CardCustomerMapping.user_id == user_id,
            CardCustomerMapping.deleted_at.is_(None),
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def _resolve_customer(
        self,
        stripe_client: StripeBillingClient,
        user_id: str,
        email: Optional[str],
        mode: str,
        price_id: str,
    ) -> str:
        mapping = self._live_mapping(user_id)
        if mapping is None:
            return self._create_mapped_customer(stripe_client, user_id, email, mode, price_id)

        if not stripe_client.customer_exists(mapping.customer_id):
            logger.warning(
                "STRIPE_CUSTOMER_MISSING_IN_ENV",
                extra={
                    "user_id": user_id,
                    "customer_id": mapping.customer_id,
                    "stripe_env": stripe_client.env,
                },
            )
            return self._remap_customer(stripe_client, mapping, user_id, email, mode, price_id)

        if mode == "subscription":
            self._commit_placeholder(user_id, mapping.customer_id, price_id)
        return mapping.customer_id

    def _create_mapped_customer(
        self,
        stripe_client: StripeBillingClient,
        user_id: str,
        email: Optional[str],
        mode: str,
        price_id: str,
    ) -> str:
        customer_id = stripe_client.create_customer(user_id, email)

        try:
            inserted = insert_or_ignore(
                self.db,
                CardCustomerMapping,
                {"user_id": user_id, "customer_id": customer_id},
                index_elements=["user_id"],
                index_where=_LIVE,
            )
            if inserted and mode == "subscription":
                self._insert_placeholder(user_id, customer_id, price_id)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            self._delete_orphan_customer(stripe_client, customer_id, user_id)
            raise ProviderError(
                GENERIC_RETRY_MESSAGE,
                log_detail=f"customer mapping insert failed: {sanitize_str(str(exc))}",
            ) from exc

        if inserted:
            logger.info(
                "CARD_CUSTOMER_MAPPED",
                extra={"user_id": user_id, "customer_id": customer_id},
            )
            return customer_id

        # A concurrent request mapped this user first; use its customer
        logger.info(
            "CARD_CUSTOMER_MAPPING_RACE_LOST",
            extra={"user_id": user_id, "customer_id": customer_id},
        )
        self._delete_orphan_customer(stripe_client, customer_id, user_id)
        winner = self._live_mapping(user_id)
        if winner is None:
            raise ProviderError(
                GENERIC_RETRY_MESSAGE,
                log_detail=f"mapping conflict for user {user_id} but no live mapping found",
            )
        if mode == "subscription":
            self._commit_placeholder(user_id, winner.customer_id, price_id)
        return winner.customer_id

    def _remap_customer(
        self,
        stripe_client: StripeBillingClient,
        mapping: CardCustomerMapping,
        user_id: str,
        email: Optional[str],
        mode: str,
        price_id: str,
    ) -> str:
        old_customer_id = mapping.customer_id
        new_customer_id = stripe_client.create_customer(user_id, email)

        try:
            retired = self.db.execute(
                update(CardCustomerMapping)
                .where(
                    CardCustomerMapping.id == mapping.id,
                    CardCustomerMapping.deleted_at.is_(None),
                )
                .values(deleted_at=datetime.now(timezone.utc))
            ).rowcount == 1
            inserted = retired and insert_or_ignore(
                self.db,
                CardCustomerMapping,
                {"user_id": user_id, "customer_id": new_customer_id},
                index_elements=["user_id"],
                index_where=_LIVE,
            )
            if not inserted:
                self.db.rollback()
            else:
                if mode == "subscription":
                    self._insert_placeholder(user_id, new_customer_id, price_id)
                self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            self._delete_orphan_customer(stripe_client, new_customer_id, user_id)
            raise ProviderError(
                GENERIC_RETRY_MESSAGE,
                log_detail=f"customer remap failed: {sanitize_str(str(exc))}",
            ) from exc

        if not inserted:
            # Another request already remapped this user
            self._delete_orphan_customer(stripe_client, new_customer_id, user_id)
            winner = self._live_mapping(user_id)
            if winner is None:
                raise ProviderError(
                    GENERIC_RETRY_MESSAGE,
                    log_detail=f"remap conflict for user {user_id} but no live mapping found",
                )
            if mode == "subscription":
                self._commit_placeholder(user_id, winner.customer_id, price_id)
            return winner.customer_id

        logger.info(
            "CARD_CUSTOMER_REMAPPED",
            extra={
                "user_id": user_id,
                "old_customer_id": old_customer_id,
                "customer_id": new_customer_id,
                "stripe_env": stripe_client.env,
            },
        )
        return new_customer_id

    # ------------------------------------------------------------------
    # Placeholder / compensation
    # ------------------------------------------------------------------

    def _insert_placeholder(self, user_id: str, customer_id: str, price_id: str) -> None:
        insert_or_ignore(
            self.db,
            CardSubscriptionRecord,
            {
                "user_id": user_id,
                "customer_id": customer_id,
                "price_id": price_id,
                "status": "not_started",
            },
            index_elements=["customer_id"],
        )

    def _commit_placeholder(self, user_id: str, customer_id: str, price_id: str) -> None:
        try:
            self._insert_placeholder(user_id, customer_id, price_id)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise ProviderError(
                GENERIC_RETRY_MESSAGE,
                log_detail=f"subscription placeholder insert failed: {sanitize_str(str(exc))}",
            ) from exc

    def _delete_orphan_customer(
        self, stripe_client: StripeBillingClient, customer_id: str, user_id: str
    ) -> None:
        try:
            stripe_client.delete_customer(customer_id)
        except (ProviderError, ProviderStateMismatch) as exc:
            # Original failure is what the caller needs; the orphan is logged for ops
            logger.error(
                "STRIPE_ORPHAN_CUSTOMER_CLEANUP_FAILED",
                extra={
                    "user_id": user_id,
                    "customer_id": customer_id,
                    "error_msg": exc.log_detail,
                },
            )
