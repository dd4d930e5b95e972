"""Subscription management branching for client screens.

management_options() turns an entitlement query result into what the manage
screen may offer. open_platform_subscription_settings() is the deep-link with
manual-instructions fallback for the platform IAP rail, which has no server-side
cancel API.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

logger = logging.getLogger(__name__)

PLATFORM_MANAGE_URL = "app-settings:root=SUBSCRIPTIONS_AND_BILLING"

PLATFORM_INSTRUCTIONS = (
    "To manage your subscription:\n\n"
    "1. Open the Settings app\n"
    "2. Tap your Apple ID at the top\n"
    "3. Tap Subscriptions\n"
    "4. Find Health Freak\n"
    "5. Manage or cancel your subscription"
)

CARD_CANCEL_NOTE = (
    "Cancelling your subscription will stop future billing. You can continue using "
    "premium features until the end of your current billing period."
)
PLATFORM_NOTE = (
    "Apple subscriptions are managed through your iPhone Settings. You can cancel or "
    "modify your subscription there at any time."
)
CANCELLATION_WARNING = "Your subscription is set to cancel and will not renew."


def management_options(view: dict) -> dict:
    """Actions available for an entitlement query result.

    cardProvider + renewing   → cancel button
    cardProvider + cancelling → no cancel button, cancellation warning
    platformIAP               → settings deep link only
    """
    method = view.get("paymentMethod")
    premium = view.get("status") == "premium"
    cancelling = bool(view.get("cancelsAtPeriodEnd"))

    is_card = premium and method == "cardProvider"
    is_platform = premium and method == "platformIAP"

    options = {
        "paymentMethod": method,
        "showCancelButton": is_card and not cancelling,
        "showCancellationWarning": premium and cancelling,
        "showSettingsLink": is_platform,
        "expiresOn": view.get("renewalDate") if cancelling else None,
        "renewsOn": view.get("renewalDate") if premium and not cancelling else None,
        "note": None,
        "instructions": None,
    }
    if is_card:
        options["note"] = CANCELLATION_WARNING if cancelling else CARD_CANCEL_NOTE
    elif is_platform:
        options["note"] = PLATFORM_NOTE
        options["instructions"] = PLATFORM_INSTRUCTIONS
    return options


def format_period_date(iso_value: Optional[str]) -> Optional[str]:
    """'2026-11-18T00:00:00+00:00' -> 'November 18, 2026'."""
    if not iso_value:
        return None
    moment = datetime.fromisoformat(iso_value)
    return f"{moment.strftime('%B')} {moment.day}, {moment.year}"


def open_platform_subscription_settings(
    opener: Callable[[str], bool],
    show_instructions: Callable[[str], None],
) -> bool:
    """Open the platform subscription settings, or show manual steps.

    opener(url) returns False when the URL cannot be opened (wrong OS, scheme
    not supported) and may raise OSError; both fall back to show_instructions.
    Returns True if the deep link was opened.
    """
    try:
        opened = opener(PLATFORM_MANAGE_URL)
    except OSError as exc:
        logger.warning("PLATFORM_DEEP_LINK_FAILED", extra={"error_type": type(exc).__name__})
        opened = False

    if not opened:
        show_instructions(PLATFORM_INSTRUCTIONS)
        return False
    return True
