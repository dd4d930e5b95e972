"""SQLAlchemy ORM models for the entitlement engine."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BIGINT,
    BOOLEAN,
    INTEGER,
    TEXT,
    TIMESTAMP,
    CheckConstraint,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGINT identity on PostgreSQL; SQLite only autoincrements INTEGER PRIMARY KEY
BigIntId = BIGINT().with_variant(INTEGER(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class UserEntitlement(Base):
    """Canonical per-user subscription state (single source of truth).

    Created on the first confirmed purchase webhook, never on checkout initiation.
    Mutated only through EntitlementStore, which enforces the premium-has-rail
    invariant before every write; the CHECK constraint backs it at the database.
    """

    __tablename__ = "user_entitlements"

    user_id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    subscription_status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default="free"
    )  # free | premium
    payment_method: Mapped[str] = mapped_column(
        TEXT, nullable=False, default="none"
    )  # none | card_provider | platform_iap

    card_customer_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    card_subscription_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    platform_original_transaction_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    platform_customer_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    renewal_date: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    total_usage_count: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)

    # Epoch ms of the newest provider event applied (ordering guard)
    last_event_ms: Mapped[Optional[int]] = mapped_column(BIGINT, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "subscription_status IN ('free', 'premium')",
            name="ck_user_entitlements_status",
        ),
        CheckConstraint(
            "payment_method IN ('none', 'card_provider', 'platform_iap')",
            name="ck_user_entitlements_payment_method",
        ),
        CheckConstraint(
            "subscription_status <> 'premium' OR payment_method <> 'none'",
            name="ck_user_entitlements_premium_has_rail",
        ),
        Index("idx_user_entitlements_card_customer", "card_customer_id"),
        Index("idx_user_entitlements_platform_customer", "platform_customer_id"),
    )


class CardCustomerMapping(Base):
    """Local user → card provider customer, soft-deleted on remap.

    At most one live row (deleted_at IS NULL) per user, guarded by a partial
    unique index so concurrent checkouts cannot both insert.
    """

    __tablename__ = "card_customer_mappings"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    customer_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_card_customer_mappings_live_user",
            "user_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        Index("idx_card_customer_mappings_customer", "customer_id"),
    )


class CardSubscriptionRecord(Base):
    """Mirror of the card provider subscription for one customer.

    Created as 'not_started' before the checkout session exists so an abandoned
    checkout stays traceable; webhooks move it to the provider's status.
    """

    __tablename__ = "card_subscription_records"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    customer_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    subscription_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    price_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default="not_started"
    )  # not_started | active | trialing | past_due | canceled | unpaid | incomplete | ...
    cancel_at_period_end: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    current_period_end: Mapped[Optional[int]] = mapped_column(BIGINT, nullable=True)  # epoch seconds
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("customer_id", name="uq_card_subscription_records_customer"),
        Index("idx_card_subscription_records_user", "user_id"),
        Index("idx_card_subscription_records_subscription", "subscription_id"),
    )


class CardOrder(Base):
    """One-time card payment (mode=payment checkout) history."""

    __tablename__ = "card_orders"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    customer_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    checkout_session_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    amount_subtotal: Mapped[Optional[int]] = mapped_column(BIGINT, nullable=True)
    amount_total: Mapped[Optional[int]] = mapped_column(BIGINT, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    payment_status: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="completed")
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("checkout_session_id", name="uq_card_orders_checkout_session"),
        Index("idx_card_orders_user", "user_id"),
        Index("idx_card_orders_customer", "customer_id"),
    )


class UsageHistory(Base):
    """One row per analysis a user ran (written by the analysis collaborator)."""

    __tablename__ = "usage_history"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    kind: Mapped[str] = mapped_column(TEXT, nullable=False, default="analysis")
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_usage_history_user", "user_id"),)


class IngredientFeedback(Base):
    """User-submitted feedback on an ingredient verdict."""

    __tablename__ = "ingredient_feedback"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    ingredient: Mapped[str] = mapped_column(TEXT, nullable=False)
    verdict: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    comment: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_ingredient_feedback_user", "user_id"),)


class SubscriptionAudit(Base):
    """Append-only log of entitlement status / rail changes."""

    __tablename__ = "subscription_audit"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    old_status: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    new_status: Mapped[str] = mapped_column(TEXT, nullable=False)
    old_payment_method: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    new_payment_method: Mapped[str] = mapped_column(TEXT, nullable=False)
    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    source: Mapped[str] = mapped_column(TEXT, nullable=False)  # revenuecat | stripe | cancellation
    notes: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_subscription_audit_user_changed", "user_id", "changed_at"),)


class WebhookDedupEvent(Base):
    """Webhook idempotency ledger.

    At most one successful processing per (provider, dedup_key), even when the
    same event is delivered concurrently or redelivered from the queue.

    Atomic gate: INSERT ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
      → row returned  : first/re-processing handler → continue
      → no row        : duplicate, or another attempt holds a live lease
    A "failed" row, or a "processing" row whose lease expired, is reclaimed.
    """

    __tablename__ = "webhook_dedup_events"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)

    provider: Mapped[str] = mapped_column(TEXT, nullable=False)     # revenuecat | stripe
    dedup_key: Mapped[str] = mapped_column(TEXT, nullable=False)    # ev_<id> | tx_<type>_<tid> | ts_...

    first_seen_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    # Claim time of the current attempt; a "processing" row older than the lease
    # belongs to a worker that died and may be reclaimed
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default="processing"
    )  # processing | done | failed

    # SHA-256 hex of the webhook body (never the raw payload)
    request_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "dedup_key", name="uq_webhook_dedup_events"),
        Index("idx_webhook_dedup_status", "status"),
        Index("idx_webhook_dedup_first_seen", "first_seen_at"),
    )


class DeletedAccount(Base):
    """Tombstone for a deleted account.

    Keyed by sha256(user_id) so no row names the user after deletion. Provider
    events keep arriving for deleted users (platform billing outlives the
    account; our own subscription cancels echo back as webhooks); the store and
    the webhook processor refuse every event whose user has a tombstone.
    """

    __tablename__ = "deleted_accounts"

    user_id_hash: Mapped[str] = mapped_column(TEXT, primary_key=True)
    deleted_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )


# Tables holding user-owned child rows, deleted best-effort on account removal
USER_CHILD_TABLES = (UsageHistory, IngredientFeedback, SubscriptionAudit)
