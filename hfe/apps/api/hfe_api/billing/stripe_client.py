"""Stripe API client for the card payment rail.

Stripe API Reference:
- Customers: https://docs.stripe.com/api/customers
- Checkout Sessions: https://docs.stripe.com/api/checkout/sessions
- Subscriptions: https://docs.stripe.com/api/subscriptions
- Webhooks: https://docs.stripe.com/webhooks#verify-events

Every call passes api_key explicitly (no module-global stripe.api_key) and goes
through _call(), which retries a transient failure exactly once and maps the
rest onto the engine's error taxonomy.
"""

import json
import logging
import uuid
from typing import Any, Callable, Optional

import stripe

from hfe_api.config.env import get_stripe_secret_key, get_stripe_webhook_secret
from hfe_api.errors import GENERIC_RETRY_MESSAGE, ProviderError, ProviderStateMismatch
from hfe_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)

# Subscription statuses that still bill or may bill again
OPEN_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "past_due", "unpaid", "incomplete", "paused"})
# Statuses the cancellation flow treats as "an active subscription exists"
ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "past_due"})


def subscription_period_end(subscription: dict) -> Optional[int]:
    """current_period_end in epoch seconds.

    Newer API versions moved the field from the subscription onto its items.
    """
    value = subscription.get("current_period_end")
    if value:
        return int(value)
    items = (subscription.get("items") or {}).get("data") or []
    if items and items[0].get("current_period_end"):
        return int(items[0]["current_period_end"])
    return None


class StripeBillingClient:
    """Stripe client scoped to one secret key (one provider environment).

    Environment Variables:
    - STRIPE_SECRET_KEY: sk_test_* (sandbox) or sk_live_* (live)
    - STRIPE_WEBHOOK_SECRET: whsec_* (only needed for construct_event)
    """

    def __init__(self, secret_key: Optional[str] = None):
        self.secret_key = secret_key or get_stripe_secret_key()
        self.env = "live" if self.secret_key.startswith(("sk_live_", "rk_live_")) else "sandbox"

    def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Invoke a Stripe SDK function with one retry on transient failure.

        Raises:
            ProviderStateMismatch: Object does not exist in this Stripe environment
            ProviderError: Any other Stripe failure (after the retry, if transient)
        """
        for attempt in (1, 2):
            try:
                return fn(*args, api_key=self.secret_key, **kwargs)
            except TRANSIENT_ERRORS as exc:
                if attempt == 2:
                    raise ProviderError(
                        GENERIC_RETRY_MESSAGE,
                        log_detail=f"stripe {operation} failed after retry: {sanitize_str(str(exc))}",
                    ) from exc
                logger.warning(
                    "STRIPE_TRANSIENT_RETRY",
                    extra={"operation": operation, "error_type": type(exc).__name__},
                )
            except stripe.InvalidRequestError as exc:
                if getattr(exc, "code", None) == "resource_missing":
                    raise ProviderStateMismatch(
                        f"{operation}: object missing in {self.env} environment"
                    ) from exc
                raise ProviderError(
                    GENERIC_RETRY_MESSAGE,
                    log_detail=f"stripe {operation} rejected: {sanitize_str(str(exc))}",
                ) from exc
            except stripe.StripeError as exc:
                raise ProviderError(
                    GENERIC_RETRY_MESSAGE,
                    log_detail=f"stripe {operation} failed: {sanitize_str(str(exc))}",
                ) from exc

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Create a customer tagged with our user id; returns the customer id."""
        # Same idempotency key across the retry so a timed-out create is not duplicated
        customer = self._call(
            "customer.create",
            stripe.Customer.create,
            email=email,
            metadata={"user_id": user_id},
            idempotency_key=f"customer-create-{user_id}-{uuid.uuid4().hex}",
        )
        logger.info(
            "STRIPE_CUSTOMER_CREATED",
            extra={"user_id": user_id, "customer_id": customer["id"], "stripe_env": self.env},
        )
        return customer["id"]

    def customer_exists(self, customer_id: str) -> bool:
        """True if the customer exists (and is not deleted) in this environment."""
        try:
            customer = self._call("customer.retrieve", stripe.Customer.retrieve, customer_id)
        except ProviderStateMismatch:
            return False
        return not customer.get("deleted", False)

    def delete_customer(self, customer_id: str) -> None:
        """Delete a customer; an already-missing customer counts as deleted."""
        try:
            self._call("customer.delete", stripe.Customer.delete, customer_id)
        except ProviderStateMismatch:
            logger.info("STRIPE_CUSTOMER_ALREADY_GONE", extra={"customer_id": customer_id})
            return
        logger.info("STRIPE_CUSTOMER_DELETED", extra={"customer_id": customer_id})

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        user_id: str,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
    ) -> tuple[str, str]:
        """Create a hosted checkout session; returns (session_id, url)."""
        params: dict[str, Any] = {
            "customer": customer_id,
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "mode": mode,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "metadata": {"user_id": user_id, "price_id": price_id},
        }
        if mode == "subscription":
            params["subscription_data"] = {"metadata": {"user_id": user_id}}

        session = self._call("checkout.session.create", stripe.checkout.Session.create, **params)
        return session["id"], session["url"]

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def list_open_subscriptions(self, customer_id: str) -> list[dict]:
        """All subscriptions of the customer that are not canceled/expired."""
        result = self._call(
            "subscription.list",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=100,
        )
        return [sub for sub in result["data"] if sub.get("status") in OPEN_SUBSCRIPTION_STATUSES]

    def cancel_subscription_now(self, subscription_id: str) -> dict:
        """Cancel immediately (access ends now)."""
        return self._call("subscription.cancel", stripe.Subscription.cancel, subscription_id)

    def cancel_at_period_end(self, subscription_id: str) -> dict:
        """Stop renewal; access continues through the paid period."""
        return self._call(
            "subscription.modify",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def construct_event(self, payload: bytes, signature: str) -> dict:
        """Verify Stripe-Signature and parse the event.

        Raises:
            ConfigurationError: STRIPE_WEBHOOK_SECRET not set
            stripe.SignatureVerificationError: Signature invalid
            ValueError: Payload is not valid JSON
        """
        secret = get_stripe_webhook_secret()
        stripe.Webhook.construct_event(payload, signature, secret)
        # Hand back plain dicts so the event can be queued as JSON
        return json.loads(payload)


_stripe_client: Optional[StripeBillingClient] = None


def get_stripe_client() -> StripeBillingClient:
    """Get global Stripe client instance (singleton).

    Raises:
        ConfigurationError: STRIPE_SECRET_KEY not set
    """
    global _stripe_client
    if _stripe_client is None:
        _stripe_client = StripeBillingClient()
    return _stripe_client
