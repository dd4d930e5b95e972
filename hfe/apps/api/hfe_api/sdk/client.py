"""HTTP client for the entitlement API, used as the EntitlementCache fetcher."""

import logging
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)


class EntitlementApiClient:
    """Calls GET /v1/entitlements/me with the signed-in user's access token.

    Args:
        base_url: API origin, e.g. "https://api.example.com"
        token_provider: returns the current session access token
        transport: optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        token_provider: Callable[[], str],
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._transport = transport
        self._timeout = timeout

    async def fetch_entitlement(self, user_id: str) -> dict:
        """
        Returns:
            Entitlement view dict (status, paymentMethod, renewalDate, ...)

        Raises:
            httpx.HTTPStatusError: If the API answers with an error status
        """
        headers = {"Authorization": f"Bearer {self._token_provider()}"}

        async with httpx.AsyncClient(
            base_url=self.base_url, transport=self._transport, timeout=self._timeout
        ) as client:
            response = await client.get("/v1/entitlements/me", headers=headers)
            response.raise_for_status()
            view = response.json()

        logger.info(
            "ENTITLEMENT_FETCHED",
            extra={
                "user_id": user_id,
                "status": view.get("status"),
                "payment_method": view.get("paymentMethod"),
            },
        )
        return view

    # EntitlementCache expects a plain async callable
    __call__ = fetch_entitlement
