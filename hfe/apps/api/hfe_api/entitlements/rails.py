"""Payment rail sum type.

A user's payment method is exactly one of NoRail, CardRail or PlatformRail.
Branch on it with ``match`` and end every match with ``assert_never`` so a new
rail cannot silently fall through an existing code path.
"""

from dataclasses import dataclass
from typing import Optional, Union, assert_never

# Column values stored in user_entitlements.payment_method
METHOD_NONE = "none"
METHOD_CARD = "card_provider"
METHOD_PLATFORM = "platform_iap"


@dataclass(frozen=True)
class NoRail:
    """User never completed a purchase on any rail."""


@dataclass(frozen=True)
class CardRail:
    """Card payment provider (Stripe) subscription."""

    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class PlatformRail:
    """Platform in-app purchase, brokered by RevenueCat."""

    original_transaction_id: Optional[str] = None
    customer_id: Optional[str] = None


PaymentRail = Union[NoRail, CardRail, PlatformRail]


def method_of(rail: PaymentRail) -> str:
    """Storage value for the rail's payment_method column."""
    match rail:
        case NoRail():
            return METHOD_NONE
        case CardRail():
            return METHOD_CARD
        case PlatformRail():
            return METHOD_PLATFORM
        case _:
            assert_never(rail)


def api_name_of(rail: PaymentRail) -> str:
    """Name used in API responses (none / cardProvider / platformIAP)."""
    match rail:
        case NoRail():
            return "none"
        case CardRail():
            return "cardProvider"
        case PlatformRail():
            return "platformIAP"
        case _:
            assert_never(rail)


def same_kind(a: PaymentRail, b: PaymentRail) -> bool:
    return type(a) is type(b)


def merge_ids(current: PaymentRail, incoming: PaymentRail) -> PaymentRail:
    """Refresh identifiers from incoming, keeping current ones the event omits.

    Different rail kinds do not merge; incoming wins.
    """
    match (current, incoming):
        case (CardRail(), CardRail()):
            return CardRail(
                customer_id=incoming.customer_id or current.customer_id,
                subscription_id=incoming.subscription_id or current.subscription_id,
            )
        case (PlatformRail(), PlatformRail()):
            return PlatformRail(
                original_transaction_id=(
                    incoming.original_transaction_id or current.original_transaction_id
                ),
                customer_id=incoming.customer_id or current.customer_id,
            )
        case _:
            return incoming


def rail_from_columns(
    payment_method: str,
    *,
    card_customer_id: Optional[str] = None,
    card_subscription_id: Optional[str] = None,
    platform_original_transaction_id: Optional[str] = None,
    platform_customer_id: Optional[str] = None,
) -> PaymentRail:
    """Rebuild the rail from its stored columns.

    Raises:
        ValueError: Unknown payment_method value
    """
    if payment_method == METHOD_NONE:
        return NoRail()
    if payment_method == METHOD_CARD:
        return CardRail(customer_id=card_customer_id, subscription_id=card_subscription_id)
    if payment_method == METHOD_PLATFORM:
        return PlatformRail(
            original_transaction_id=platform_original_transaction_id,
            customer_id=platform_customer_id,
        )
    raise ValueError(f"Unknown payment_method: {payment_method!r}")


def rail_columns(rail: PaymentRail) -> dict[str, Optional[str]]:
    """Column values for persisting rail.

    Identifier columns of the other rail are left untouched (None means
    "not set by this rail"); the caller merges them onto the row.
    """
    match rail:
        case NoRail():
            return {"payment_method": METHOD_NONE}
        case CardRail(customer_id=customer_id, subscription_id=subscription_id):
            return {
                "payment_method": METHOD_CARD,
                "card_customer_id": customer_id,
                "card_subscription_id": subscription_id,
            }
        case PlatformRail(original_transaction_id=otid, customer_id=customer_id):
            return {
                "payment_method": METHOD_PLATFORM,
                "platform_original_transaction_id": otid,
                "platform_customer_id": customer_id,
            }
        case _:
            assert_never(rail)
