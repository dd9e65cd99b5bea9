"""
Dwolla client for ACH transfers.

Resources are addressed by URL: creating one returns its URL in the
Location header, and that URL is what we store and pass around.
"""
from typing import Any, Dict, Optional, Tuple

import httpx
import structlog

from payout_engine.config import Settings, get_settings
from payout_engine.integrations.base import ApiClient, ProviderError, ProviderErrorType

logger = structlog.get_logger(__name__)

HAL_JSON = "application/vnd.dwolla.v1.hal+json"


class DwollaClient(ApiClient):
    """Dwolla API client using an application (client-credentials) token."""

    provider = "dwolla"

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
        **kwargs: Any,
    ):
        settings = settings or get_settings()
        super().__init__(settings.dwolla_base_url, http_client, **kwargs)
        self.key = settings.dwolla_key
        self.secret = settings.dwolla_secret
        self.master_funding_source = settings.dwolla_master_funding_source

    def _extract_error(self, body: Any) -> Tuple[Optional[str], Optional[str]]:
        if isinstance(body, dict):
            embedded = (body.get("_embedded") or {}).get("errors") or []
            if embedded:
                first = embedded[0]
                return first.get("code") or body.get("code"), first.get("message")
        return super()._extract_error(body)

    async def _fetch_token(self) -> Tuple[str, int]:
        response = await self._request(
            "POST",
            "/token",
            authenticated=False,
            auth=(self.key, self.secret),
            data={"grant_type": "client_credentials"},
        )
        body = response.json()
        return body["access_token"], int(body.get("expires_in", 3600))

    async def _auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {await self._bearer_token()}",
            "Accept": HAL_JSON,
        }

    def _location(self, response: httpx.Response) -> str:
        location = response.headers.get("location")
        if not location:
            raise ProviderError(
                "Dwolla response is missing the Location header",
                provider=self.provider,
                error_type=ProviderErrorType.PERMANENT,
                status_code=response.status_code,
            )
        return location

    async def create_receive_only_customer(
        self, first_name: str, last_name: str, email: str
    ) -> str:
        """Create a receive-only customer and return its URL."""
        response = await self._request(
            "POST",
            "/customers",
            json={
                "firstName": first_name,
                "lastName": last_name,
                "email": email,
                "type": "receive-only",
            },
            headers={"Content-Type": HAL_JSON},
        )
        customer_url = self._location(response)
        logger.info("dwolla_customer_created", customer_url=customer_url)
        return customer_url

    async def create_funding_source(
        self, customer_url: str, plaid_token: str, name: str
    ) -> str:
        """Attach a bank account (via Plaid processor token) and return its URL."""
        response = await self._request(
            "POST",
            f"{customer_url}/funding-sources",
            json={"plaidToken": plaid_token, "name": name},
            headers={"Content-Type": HAL_JSON},
        )
        funding_source_url = self._location(response)
        logger.info("dwolla_funding_source_created", funding_source_url=funding_source_url)
        return funding_source_url

    async def create_transfer(
        self,
        destination_funding_source: str,
        amount: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Transfer from the platform master funding source to a destination.

        Args:
            destination_funding_source: Creator funding source URL
            amount: Decimal string, two places
            idempotency_key: Replayed requests with the same key are not re-executed
            metadata: Free-form metadata attached to the transfer

        Returns:
            str: Transfer URL
        """
        payload: Dict[str, Any] = {
            "_links": {
                "source": {"href": self.master_funding_source},
                "destination": {"href": destination_funding_source},
            },
            "amount": {"currency": "USD", "value": amount},
        }
        if metadata:
            payload["metadata"] = metadata

        response = await self._request(
            "POST",
            "/transfers",
            json=payload,
            headers={"Content-Type": HAL_JSON, "Idempotency-Key": idempotency_key},
        )
        return self._location(response)

    async def get_transfer(self, transfer_url: str) -> Dict[str, Any]:
        """Fetch a transfer resource (status: pending, processed, failed, cancelled)."""
        response = await self._request("GET", transfer_url)
        return response.json()
