"""
Payment rail adapters.

Every rail satisfies the same contract:
- disburse(amount, destination, idempotency_key) -> DisbursementResult
- fetch_status(external_ref) -> SettlementStatus

The three adapters share no implementation. RailRegistry dispatches on the
Rail enum. Provider failures surface as RailError carrying the provider's
error code.
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, Union

import structlog

from payout_engine.core.calculator import to_money
from payout_engine.core.exceptions import RailError, ValidationError
from payout_engine.database.models import Rail
from payout_engine.integrations.base import ProviderError
from payout_engine.integrations.coinbase_client import CoinbaseClient
from payout_engine.integrations.dwolla_client import DwollaClient
from payout_engine.integrations.paypal_client import PayPalClient

logger = structlog.get_logger(__name__)


class SettlementStatus(str, Enum):
    """Where a disbursement stands on the provider side."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class DisbursementResult:
    external_ref: str
    provider_status: Optional[str] = None


class RailAdapter(Protocol):
    rail: Rail

    async def disburse(
        self, amount: Decimal, destination: Mapping[str, Any], idempotency_key: str
    ) -> DisbursementResult: ...

    async def fetch_status(self, external_ref: str) -> SettlementStatus: ...


def _rail_error(rail: Rail, error: ProviderError) -> RailError:
    return RailError(
        error.message,
        rail=rail.value,
        code=error.code or (str(error.status_code) if error.status_code else None),
        transient=error.is_transient,
    )


def _amount(amount: Decimal) -> str:
    return str(to_money(amount))


class AchRail:
    """ACH via Dwolla: master funding source -> creator's verified funding source."""

    rail = Rail.ACH

    # Dwolla transfer statuses
    COMPLETED = {"processed"}
    FAILED = {"failed", "cancelled"}

    def __init__(self, client: DwollaClient):
        self.client = client

    async def disburse(
        self, amount: Decimal, destination: Mapping[str, Any], idempotency_key: str
    ) -> DisbursementResult:
        funding_source = destination.get("funding_source_url")
        if not funding_source:
            raise RailError(
                "Bank account has no verified funding source",
                rail=self.rail.value,
                code="funding_source_missing",
            )

        try:
            transfer_url = await self.client.create_transfer(
                funding_source,
                _amount(amount),
                idempotency_key,
                metadata={"idempotency_key": idempotency_key},
            )
        except ProviderError as e:
            raise _rail_error(self.rail, e) from e

        logger.info("ach_transfer_created", transfer_url=transfer_url)
        return DisbursementResult(external_ref=transfer_url, provider_status="pending")

    async def fetch_status(self, external_ref: str) -> SettlementStatus:
        try:
            transfer = await self.client.get_transfer(external_ref)
        except ProviderError as e:
            raise _rail_error(self.rail, e) from e

        status = (transfer.get("status") or "").lower()
        if status in self.COMPLETED:
            return SettlementStatus.COMPLETED
        if status in self.FAILED:
            return SettlementStatus.FAILED
        return SettlementStatus.PENDING


class PayPalRail:
    """PayPal Payouts: one-item batch per disbursement."""

    rail = Rail.PAYPAL

    COMPLETED = {"SUCCESS"}
    FAILED = {"DENIED", "CANCELED"}
    FAILED_ITEM = {"FAILED", "RETURNED", "BLOCKED", "REFUNDED", "REVERSED"}

    def __init__(self, client: PayPalClient):
        self.client = client

    async def disburse(
        self, amount: Decimal, destination: Mapping[str, Any], idempotency_key: str
    ) -> DisbursementResult:
        email = destination.get("email")
        if not email:
            raise RailError(
                "PayPal destination has no email", rail=self.rail.value, code="receiver_missing"
            )

        try:
            batch_header = await self.client.create_payout(email, _amount(amount), idempotency_key)
        except ProviderError as e:
            raise _rail_error(self.rail, e) from e

        return DisbursementResult(
            external_ref=batch_header["payout_batch_id"],
            provider_status=batch_header.get("batch_status"),
        )

    async def fetch_status(self, external_ref: str) -> SettlementStatus:
        try:
            batch = await self.client.get_payout_batch(external_ref)
        except ProviderError as e:
            raise _rail_error(self.rail, e) from e

        batch_status = (batch.get("batch_header") or {}).get("batch_status", "")
        item_statuses = {item.get("transaction_status") for item in batch.get("items") or []}
        if batch_status in self.FAILED or item_statuses & self.FAILED_ITEM:
            return SettlementStatus.FAILED
        if batch_status in self.COMPLETED:
            return SettlementStatus.COMPLETED
        return SettlementStatus.PENDING


class CryptoRail:
    """
    Crypto via Coinbase Commerce charges.

    The charge is priced in USD; the requested cryptocurrency and wallet
    address travel in metadata. Settlement is confirmed by webhook or by
    polling the charge timeline.
    """

    rail = Rail.CRYPTO

    COMPLETED = {"COMPLETED", "RESOLVED"}
    FAILED = {"EXPIRED", "CANCELED"}

    def __init__(self, client: CoinbaseClient):
        self.client = client

    async def disburse(
        self, amount: Decimal, destination: Mapping[str, Any], idempotency_key: str
    ) -> DisbursementResult:
        currency = destination.get("currency")
        address = destination.get("address")
        if not currency or not address:
            raise RailError(
                "Crypto destination needs currency and address",
                rail=self.rail.value,
                code="destination_incomplete",
            )

        try:
            charge = await self.client.create_charge(
                name="Creator payout",
                description=f"{currency} payout to {address}",
                amount=_amount(amount),
                metadata={
                    "idempotency_key": idempotency_key,
                    "crypto_currency": currency,
                    "wallet_address": address,
                },
            )
        except ProviderError as e:
            raise _rail_error(self.rail, e) from e

        timeline = charge.get("timeline") or []
        status = timeline[-1].get("status") if timeline else "NEW"
        return DisbursementResult(external_ref=charge["id"], provider_status=status)

    async def fetch_status(self, external_ref: str) -> SettlementStatus:
        try:
            charge = await self.client.get_charge(external_ref)
        except ProviderError as e:
            raise _rail_error(self.rail, e) from e

        timeline = charge.get("timeline") or []
        status = (timeline[-1].get("status") if timeline else "NEW") or "NEW"
        if status in self.COMPLETED:
            return SettlementStatus.COMPLETED
        if status in self.FAILED:
            return SettlementStatus.FAILED
        return SettlementStatus.PENDING


class RailRegistry:
    """Rail enum -> adapter."""

    def __init__(self, adapters: Iterable[RailAdapter]):
        self._adapters: Dict[Rail, RailAdapter] = {a.rail: a for a in adapters}

    def get(self, rail: Union[Rail, str]) -> RailAdapter:
        try:
            return self._adapters[Rail(rail)]
        except (KeyError, ValueError) as e:
            raise ValidationError(f"Payment rail {rail} is not available", field="rail") from e

    def __contains__(self, rail: object) -> bool:
        try:
            return Rail(rail) in self._adapters
        except ValueError:
            return False


def build_default_rails() -> RailRegistry:
    """Registry wired to the real Dwolla, PayPal and Coinbase clients."""
    return RailRegistry(
        [
            AchRail(DwollaClient()),
            PayPalRail(PayPalClient()),
            CryptoRail(CoinbaseClient()),
        ]
    )
