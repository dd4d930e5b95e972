"""Entitlement Store: the only writer of user_entitlements.

Every write goes through _write(), which enforces the premium-has-rail invariant
before touching the row. apply() adds the ordering guard (reject events older
than the last applied one) and the rail-switch guard, then runs the pure state
machine and records an audit row for each effective change.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from hfe_api.accounts.tombstones import is_account_deleted
from hfe_api.db.models import SubscriptionAudit, UserEntitlement
from hfe_api.entitlements.rails import (
    NoRail,
    PaymentRail,
    api_name_of,
    method_of,
    rail_columns,
    rail_from_columns,
    same_kind,
)
from hfe_api.entitlements.transitions import (
    EntitlementEvent,
    EntitlementSnapshot,
    EventType,
    apply_event,
)
from hfe_api.errors import DataIntegrityError, PaymentRailConflict, SUPPORT_CONTACT_MESSAGE

logger = logging.getLogger(__name__)

FREE_TIER_ANALYSIS_LIMIT = 10

# Rows are created by the first purchase event, never by checkout initiation.
# A renewal for an unknown user is a lost purchase or a deleted account.
_ROW_CREATING_EVENTS = frozenset({EventType.INITIAL_PURCHASE})


class ApplyResult(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    STALE = "stale"
    ACCOUNT_DELETED = "account_deleted"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes for timezone-aware columns."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def snapshot_from_row(row: UserEntitlement) -> EntitlementSnapshot:
    return EntitlementSnapshot(
        user_id=row.user_id,
        status=row.subscription_status,
        rail=rail_from_columns(
            row.payment_method,
            card_customer_id=row.card_customer_id,
            card_subscription_id=row.card_subscription_id,
            platform_original_transaction_id=row.platform_original_transaction_id,
            platform_customer_id=row.platform_customer_id,
        ),
        renewal_date=_as_utc(row.renewal_date),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        total_usage_count=row.total_usage_count or 0,
        last_event_ms=row.last_event_ms,
    )


def check_invariants(snapshot: EntitlementSnapshot) -> None:
    """Raise DataIntegrityError if snapshot is premium without a payment rail."""
    if snapshot.is_premium and isinstance(snapshot.rail, NoRail):
        raise DataIntegrityError(
            SUPPORT_CONTACT_MESSAGE,
            log_detail=f"premium entitlement without payment method for user {snapshot.user_id}",
        )


def _check_rail_switch(current: EntitlementSnapshot, rail: PaymentRail) -> None:
    if current.is_premium and not current.cancel_at_period_end and not same_kind(current.rail, rail):
        raise PaymentRailConflict(
            "You already have an active subscription on another payment method. "
            "Cancel it before subscribing again.",
            log_detail=(
                f"rail switch blocked for user {current.user_id}: "
                f"{method_of(current.rail)} -> {method_of(rail)}"
            ),
        )


def query_view(snapshot: EntitlementSnapshot) -> dict:
    """Entitlement query result as returned to clients."""
    return {
        "status": snapshot.status,
        "paymentMethod": api_name_of(snapshot.rail),
        "renewalDate": snapshot.renewal_date.isoformat() if snapshot.renewal_date else None,
        "cancelsAtPeriodEnd": snapshot.cancel_at_period_end,
        "totalUsageCount": snapshot.total_usage_count,
        "canAnalyze": (
            snapshot.is_premium or snapshot.total_usage_count < FREE_TIER_ANALYSIS_LIMIT
        ),
    }


class EntitlementStore:
    """Read and write entitlement records within one database session."""

    def __init__(self, db: Session):
        self.db = db

    def _load_row(self, user_id: str, *, for_update: bool = False) -> Optional[UserEntitlement]:
        stmt = select(UserEntitlement).where(UserEntitlement.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get(self, user_id: str) -> Optional[EntitlementSnapshot]:
        row = self._load_row(user_id)
        return snapshot_from_row(row) if row is not None else None

    def get_or_default(self, user_id: str) -> EntitlementSnapshot:
        """Stored snapshot, or the implicit free/no-rail state for unknown users."""
        return self.get(user_id) or EntitlementSnapshot(user_id=user_id)

    def ensure_can_start_purchase(self, user_id: str, rail: PaymentRail) -> None:
        """Reject a purchase on a new rail while another rail is still active.

        Switching is allowed once the user is free or the old subscription is
        set to end at period end.

        Raises:
            PaymentRailConflict: Another rail is premium and renewing
        """
        _check_rail_switch(self.get_or_default(user_id), rail)

    def apply(self, event: EntitlementEvent, *, source: str, notes: Optional[str] = None) -> ApplyResult:
        """Apply event to the user's record and commit.

        Events for deleted accounts are refused without touching any row.

        Raises:
            PaymentRailConflict: INITIAL_PURCHASE on a second rail while the first renews
            DataIntegrityError: The resulting record would break the invariant
        """
        if is_account_deleted(self.db, event.user_id):
            logger.info(
                "ENTITLEMENT_EVENT_FOR_DELETED_ACCOUNT",
                extra={"user_id": event.user_id, "event_type": event.type.value},
            )
            return ApplyResult.ACCOUNT_DELETED

        row = self._load_row(event.user_id, for_update=True)
        current = snapshot_from_row(row) if row is not None else EntitlementSnapshot(user_id=event.user_id)

        if current.last_event_ms is not None and event.occurred_at_ms < current.last_event_ms:
            logger.info(
                "ENTITLEMENT_STALE_EVENT_IGNORED",
                extra={
                    "user_id": event.user_id,
                    "event_type": event.type.value,
                    "event_ms": event.occurred_at_ms,
                    "last_event_ms": current.last_event_ms,
                },
            )
            return ApplyResult.STALE

        if event.type is EventType.INITIAL_PURCHASE:
            _check_rail_switch(current, event.rail)

        if row is None and event.type not in _ROW_CREATING_EVENTS:
            logger.info(
                "ENTITLEMENT_EVENT_FOR_UNKNOWN_USER",
                extra={"user_id": event.user_id, "event_type": event.type.value},
            )
            return ApplyResult.UNCHANGED

        new = apply_event(current, event)
        if row is not None and new == current:
            return ApplyResult.UNCHANGED

        self._write(row, current, new, event_type=event.type.value, source=source, notes=notes)
        self.db.commit()

        logger.info(
            "ENTITLEMENT_UPDATED",
            extra={
                "user_id": event.user_id,
                "event_type": event.type.value,
                "old_status": current.status,
                "new_status": new.status,
                "payment_method": method_of(new.rail),
                "cancel_at_period_end": new.cancel_at_period_end,
                "source": source,
            },
        )
        return ApplyResult.APPLIED

    def record_rejected(self, event: EntitlementEvent, *, source: str, notes: str) -> None:
        """Audit an event that was refused (the record itself is unchanged)."""
        current = self.get_or_default(event.user_id)
        self.db.add(
            SubscriptionAudit(
                user_id=event.user_id,
                old_status=current.status,
                new_status=current.status,
                old_payment_method=method_of(current.rail),
                new_payment_method=method_of(current.rail),
                event_type=event.type.value,
                source=source,
                notes=notes,
            )
        )
        self.db.commit()

    def _write(
        self,
        row: Optional[UserEntitlement],
        old: EntitlementSnapshot,
        new: EntitlementSnapshot,
        *,
        event_type: str,
        source: str,
        notes: Optional[str],
    ) -> None:
        check_invariants(new)

        if row is None:
            row = UserEntitlement(user_id=new.user_id)
            self.db.add(row)

        row.subscription_status = new.status
        for column, value in rail_columns(new.rail).items():
            setattr(row, column, value)
        row.renewal_date = new.renewal_date
        row.cancel_at_period_end = new.cancel_at_period_end
        row.last_event_ms = new.last_event_ms
        row.updated_at = datetime.now(timezone.utc)

        self.db.add(
            SubscriptionAudit(
                user_id=new.user_id,
                old_status=old.status,
                new_status=new.status,
                old_payment_method=method_of(old.rail),
                new_payment_method=method_of(new.rail),
                event_type=event_type,
                source=source,
                notes=notes,
            )
        )
