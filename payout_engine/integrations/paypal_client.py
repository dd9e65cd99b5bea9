"""
PayPal Payouts client.

- OAuth client-credentials token, cached until expiry
- One-item payout batches with sender_batch_id / PayPal-Request-Id idempotency
- Batch status polling
- Webhook signature verification through PayPal's verify API
"""
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
import structlog

from payout_engine.config import Settings, get_settings
from payout_engine.integrations.base import ApiClient

logger = structlog.get_logger(__name__)

WEBHOOK_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


class PayPalClient(ApiClient):
    """PayPal REST client for the Payouts API."""

    provider = "paypal"

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
        **kwargs: Any,
    ):
        settings = settings or get_settings()
        super().__init__(settings.paypal_base_url, http_client, **kwargs)
        self.client_id = settings.paypal_client_id
        self.client_secret = settings.paypal_client_secret
        self.webhook_id = settings.paypal_webhook_id

    async def _fetch_token(self) -> Tuple[str, int]:
        response = await self._request(
            "POST",
            "/v1/oauth2/token",
            authenticated=False,
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        body = response.json()
        return body["access_token"], int(body.get("expires_in", 32400))

    async def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {await self._bearer_token()}"}

    async def create_payout(
        self,
        receiver_email: str,
        amount: str,
        sender_batch_id: str,
        note: str = "Payment for approved content submission",
        currency: str = "USD",
    ) -> Dict[str, Any]:
        """
        Submit a payout batch with a single item.

        Args:
            receiver_email: PayPal account email of the creator
            amount: Decimal string, two places
            sender_batch_id: Our idempotency key; PayPal rejects reuse
            note: Note shown to the receiver
            currency: ISO currency code

        Returns:
            dict: batch_header from PayPal (payout_batch_id, batch_status)
        """
        payload = {
            "sender_batch_header": {
                "sender_batch_id": sender_batch_id,
                "recipient_type": "EMAIL",
                "email_subject": "You have received a payment!",
                "email_message": "You have received a payment from our platform for your content submission.",
            },
            "items": [
                {
                    "recipient_type": "EMAIL",
                    "amount": {"value": amount, "currency": currency},
                    "receiver": receiver_email,
                    "note": note,
                    "sender_item_id": sender_batch_id,
                }
            ],
        }
        response = await self._request(
            "POST",
            "/v1/payments/payouts",
            json=payload,
            headers={"PayPal-Request-Id": sender_batch_id},
        )
        batch_header = response.json()["batch_header"]
        logger.info(
            "paypal_payout_created",
            payout_batch_id=batch_header.get("payout_batch_id"),
            batch_status=batch_header.get("batch_status"),
        )
        return batch_header

    async def get_payout_batch(self, payout_batch_id: str) -> Dict[str, Any]:
        """Fetch a payout batch (batch_header.batch_status plus items)."""
        response = await self._request("GET", f"/v1/payments/payouts/{payout_batch_id}")
        return response.json()

    async def verify_webhook_signature(
        self, headers: Mapping[str, str], event: Dict[str, Any]
    ) -> bool:
        """
        Ask PayPal whether a webhook delivery is authentic.

        Args:
            headers: Delivery headers (case-insensitive mapping)
            event: Parsed webhook body

        Returns:
            bool: True if PayPal answers SUCCESS
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        payload: Dict[str, Any] = {
            field: lowered.get(header, "") for field, header in WEBHOOK_HEADERS.items()
        }
        payload["webhook_id"] = self.webhook_id
        payload["webhook_event"] = event

        response = await self._request(
            "POST", "/v1/notifications/verify-webhook-signature", json=payload
        )
        status = response.json().get("verification_status")
        if status != "SUCCESS":
            logger.warning("paypal_webhook_verification_failed", verification_status=status)
        return status == "SUCCESS"
