"""Payment processor API client (subscription lookups for resync).

Only read endpoints are used; checkout and portal flows live elsewhere.

Environment Variables:
- STRIPE_SECRET_KEY: processor secret key (sk_test_* or sk_live_*)
- STRIPE_API_BASE: API base URL (default https://api.stripe.com)
"""

import logging
from typing import Optional

import httpx

from ent_api.config.env import get_stripe_api_base, get_stripe_secret_key

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class StripeClient:
    """Thin async client over the subscriptions API.

    Args:
        secret_key: API key; resolved from the environment when omitted
        base_url: API base URL
        transport: optional httpx transport (tests inject a MockTransport)
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.secret_key = secret_key or get_stripe_secret_key()
        self.base_url = (base_url or get_stripe_api_base()).rstrip("/")
        self.env = "sandbox" if self.secret_key.startswith("sk_test_") else "live"
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.secret_key}"},
            timeout=self._timeout,
            transport=self._transport,
        )

    async def get_subscription(self, subscription_id: str) -> Optional[dict]:
        """Retrieve one subscription.

        Returns:
            Subscription dict, or None if the processor does not know it

        Raises:
            httpx.HTTPStatusError: On non-404 API errors
            httpx.RequestError: On network failures
        """
        async with self._client() as client:
            response = await client.get(f"/v1/subscriptions/{subscription_id}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
            result = response.json()
            logger.info(
                "Subscription retrieved",
                extra={
                    "event": "stripe.subscription.retrieved",
                    "subscription_id": subscription_id,
                    "status": result.get("status"),
                },
            )
            return result

    async def list_customer_subscriptions(self, customer_id: str, limit: int = 10) -> list[dict]:
        """List a customer's subscriptions (all statuses), newest first.

        Raises:
            httpx.HTTPStatusError: On API errors
            httpx.RequestError: On network failures
        """
        async with self._client() as client:
            response = await client.get(
                "/v1/subscriptions",
                params={"customer": customer_id, "status": "all", "limit": limit},
            )
            response.raise_for_status()
            subscriptions = response.json().get("data") or []
            return sorted(subscriptions, key=lambda s: s.get("created") or 0, reverse=True)


def get_stripe_client() -> StripeClient:
    """Build a client from the environment.

    Raises:
        ValueError: If STRIPE_SECRET_KEY is not set
    """
    return StripeClient()
