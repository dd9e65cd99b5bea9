"""
Plaid client for bank account linking.

Covers the calls ACH verification needs:
- /link/token/create
- /item/public_token/exchange
- /auth/get
- /processor/token/create (hand-off to Dwolla)
"""
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from payout_engine.config import Settings, get_settings
from payout_engine.integrations.base import ApiClient

logger = structlog.get_logger(__name__)


class PlaidClient(ApiClient):
    """Plaid API client. Credentials travel in the request body."""

    provider = "plaid"

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
        **kwargs: Any,
    ):
        settings = settings or get_settings()
        super().__init__(settings.plaid_base_url, http_client, **kwargs)
        self.client_id = settings.plaid_client_id
        self.secret = settings.plaid_secret
        self.client_name = settings.plaid_client_name
        self.webhook_url = settings.plaid_webhook_url

    def _extract_error(self, body: Any) -> Tuple[Optional[str], Optional[str]]:
        if isinstance(body, dict) and "error_code" in body:
            return body.get("error_code"), body.get("display_message") or body.get(
                "error_message"
            )
        return super()._extract_error(body)

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = {"client_id": self.client_id, "secret": self.secret, **payload}
        response = await self._request("POST", path, json=body)
        return response.json()

    async def create_link_token(self, user_id: str) -> str:
        """
        Create a Link token for connecting a bank account.

        Args:
            user_id: Our id for the account owner

        Returns:
            str: link_token for the client-side Plaid Link flow
        """
        payload: Dict[str, Any] = {
            "user": {"client_user_id": user_id},
            "client_name": self.client_name,
            "products": ["auth"],
            "country_codes": ["US"],
            "language": "en",
        }
        if self.webhook_url:
            payload["webhook"] = self.webhook_url

        data = await self._post("/link/token/create", payload)
        logger.info("plaid_link_token_created", user_id=user_id, expiration=data.get("expiration"))
        return data["link_token"]

    async def exchange_public_token(self, public_token: str) -> Tuple[str, str]:
        """Exchange a Link public token for (access_token, item_id)."""
        data = await self._post("/item/public_token/exchange", {"public_token": public_token})
        return data["access_token"], data["item_id"]

    async def get_auth_accounts(self, access_token: str) -> List[Dict[str, Any]]:
        """
        Accounts on an item with their ACH numbers joined in.

        Returns:
            List of {account_id, name, subtype, mask, account, routing}
        """
        data = await self._post("/auth/get", {"access_token": access_token})
        numbers = {n["account_id"]: n for n in (data.get("numbers") or {}).get("ach", [])}
        accounts = []
        for account in data.get("accounts", []):
            ach = numbers.get(account["account_id"], {})
            accounts.append(
                {
                    "account_id": account["account_id"],
                    "name": account.get("name"),
                    "subtype": account.get("subtype"),
                    "mask": account.get("mask"),
                    "account": ach.get("account"),
                    "routing": ach.get("routing"),
                }
            )
        return accounts

    async def create_processor_token(
        self, access_token: str, account_id: str, processor: str = "dwolla"
    ) -> str:
        """Create a processor token that lets Dwolla pull the account's numbers."""
        data = await self._post(
            "/processor/token/create",
            {"access_token": access_token, "account_id": account_id, "processor": processor},
        )
        return data["processor_token"]
