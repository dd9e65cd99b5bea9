"""Coinbase Commerce client: charges and webhook signatures."""
import hashlib
import hmac
from typing import Any, Dict, Optional

import httpx
import structlog

from payout_engine.config import Settings, get_settings
from payout_engine.integrations.base import ApiClient

logger = structlog.get_logger(__name__)

COINBASE_COMMERCE_URL = "https://api.commerce.coinbase.com"
API_VERSION = "2018-03-22"


def verify_webhook_signature(raw_body: bytes, signature: str, shared_secret: str) -> bool:
    """
    Check an X-CC-Webhook-Signature header.

    The signature is the hex HMAC-SHA256 of the raw request body keyed with
    the webhook shared secret.
    """
    if not signature or not shared_secret:
        return False
    expected = hmac.new(shared_secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


class CoinbaseClient(ApiClient):
    """Coinbase Commerce API client."""

    provider = "coinbase"

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
        **kwargs: Any,
    ):
        settings = settings or get_settings()
        super().__init__(COINBASE_COMMERCE_URL, http_client, **kwargs)
        self.api_key = settings.coinbase_api_key
        self.webhook_secret = settings.coinbase_webhook_secret

    async def _auth_headers(self) -> Dict[str, str]:
        return {"X-CC-Api-Key": self.api_key, "X-CC-Version": API_VERSION}

    async def create_charge(
        self,
        name: str,
        description: str,
        amount: str,
        metadata: Dict[str, Any],
        currency: str = "USD",
    ) -> Dict[str, Any]:
        """
        Create a fixed-price charge.

        Args:
            name: Charge name
            description: Charge description
            amount: Decimal string in `currency`
            metadata: Attached verbatim; echoed back on webhooks
            currency: Pricing currency

        Returns:
            dict: Charge object (id, code, hosted_url, timeline, ...)
        """
        # Commerce has no idempotency header, so a retried POST is a second charge
        response = await self._request(
            "POST",
            "/charges",
            retry=False,
            json={
                "name": name,
                "description": description,
                "pricing_type": "fixed_price",
                "local_price": {"amount": amount, "currency": currency},
                "metadata": metadata,
            },
        )
        charge = response.json()["data"]
        logger.info("coinbase_charge_created", charge_id=charge.get("id"), code=charge.get("code"))
        return charge

    async def get_charge(self, charge_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/charges/{charge_id}")
        return response.json()["data"]

    def verify_webhook(self, raw_body: bytes, signature: str) -> bool:
        return verify_webhook_signature(raw_body, signature, self.webhook_secret)
