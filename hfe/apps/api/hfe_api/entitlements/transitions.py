"""Entitlement state machine.

apply_event(current, event) -> new is a pure function: no I/O, no clock. Both
webhook ingestors and the cancellation coordinator translate their inputs into
EntitlementEvent values and run them through here, so replaying an event always
yields the same snapshot as applying it once.

    INITIAL_PURCHASE  free → premium, set rail and ids
    RENEWAL           stays premium, refresh ids and renewal date
    CANCELLATION      no status change, cancel_at_period_end = True
    EXPIRATION        premium → free, ids retained for history
    BILLING_ISSUE     no change (provider grace period precedes EXPIRATION)

Events that arrive for a rail other than the user's current one (for example the
old card subscription expiring after the user moved to in-app purchase) leave the
record untouched.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from hfe_api.entitlements.rails import NoRail, PaymentRail, merge_ids, same_kind

STATUS_FREE = "free"
STATUS_PREMIUM = "premium"


class EventType(str, Enum):
    INITIAL_PURCHASE = "INITIAL_PURCHASE"
    RENEWAL = "RENEWAL"
    CANCELLATION = "CANCELLATION"
    EXPIRATION = "EXPIRATION"
    BILLING_ISSUE = "BILLING_ISSUE"


@dataclass(frozen=True)
class EntitlementSnapshot:
    """Immutable view of one user_entitlements row."""

    user_id: str
    status: str = STATUS_FREE
    rail: PaymentRail = NoRail()
    renewal_date: Optional[datetime] = None
    cancel_at_period_end: bool = False
    total_usage_count: int = 0
    last_event_ms: Optional[int] = None

    @property
    def is_premium(self) -> bool:
        return self.status == STATUS_PREMIUM


@dataclass(frozen=True)
class EntitlementEvent:
    """Provider-neutral lifecycle event for one user."""

    type: EventType
    user_id: str
    occurred_at_ms: int
    rail: PaymentRail
    expires_at_ms: Optional[int] = None
    product_id: Optional[str] = None
    event_id: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.rail, NoRail):
            raise ValueError("EntitlementEvent requires a concrete payment rail")


def ms_to_datetime(ms: Optional[int]) -> Optional[datetime]:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def apply_event(current: EntitlementSnapshot, event: EntitlementEvent) -> EntitlementSnapshot:
    """Return the snapshot that results from applying event to current."""
    last_event_ms = max(current.last_event_ms or 0, event.occurred_at_ms)
    has_rail = not isinstance(current.rail, NoRail)

    if event.type is EventType.INITIAL_PURCHASE:
        return replace(
            current,
            status=STATUS_PREMIUM,
            rail=merge_ids(current.rail, event.rail),
            renewal_date=ms_to_datetime(event.expires_at_ms) or current.renewal_date,
            cancel_at_period_end=False,
            last_event_ms=last_event_ms,
        )

    # Lifecycle events only concern the rail the user is currently on
    if has_rail and not same_kind(current.rail, event.rail):
        return current

    if event.type is EventType.RENEWAL:
        return replace(
            current,
            status=STATUS_PREMIUM,
            rail=merge_ids(current.rail, event.rail),
            renewal_date=ms_to_datetime(event.expires_at_ms) or current.renewal_date,
            cancel_at_period_end=False,
            last_event_ms=last_event_ms,
        )

    if event.type is EventType.CANCELLATION:
        return replace(
            current,
            rail=current.rail if has_rail else event.rail,
            cancel_at_period_end=True,
            last_event_ms=last_event_ms,
        )

    if event.type is EventType.EXPIRATION:
        return replace(
            current,
            status=STATUS_FREE,
            rail=merge_ids(current.rail, event.rail) if has_rail else event.rail,
            cancel_at_period_end=False,
            last_event_ms=last_event_ms,
        )

    if event.type is EventType.BILLING_ISSUE:
        return replace(current, last_event_ms=last_event_ms)

    raise ValueError(f"Unhandled event type: {event.type!r}")
