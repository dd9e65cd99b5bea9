"""
Payment method registry.

Payout destinations per owner, one record per rail:
- Synchronous per-rail validation before anything is persisted
- Two-phase ACH: link token on add, Plaid/Dwolla verification later
- Exactly one default method per owner
- Soft delete only; transactions keep a snapshot of the details
"""
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payout_engine.core.exceptions import NotFoundError, RailError, ValidationError
from payout_engine.database.models import PaymentMethod, Rail, VerificationStatus
from payout_engine.integrations.base import ProviderError
from payout_engine.integrations.dwolla_client import DwollaClient
from payout_engine.integrations.plaid_client import PlaidClient

logger = structlog.get_logger(__name__)

ACCOUNT_NUMBER_RE = re.compile(r"^\d{4,17}$")
ROUTING_NUMBER_RE = re.compile(r"^\d{9}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
ACCOUNT_TYPES = ("checking", "savings")

WALLET_PATTERNS = {
    "BTC": re.compile(r"^[13][a-km-zA-HJ-NP-Z1-9]{25,34}$|^bc1[a-z0-9]{39,59}$"),
    "ETH": re.compile(r"^0x[a-fA-F0-9]{40}$"),
    # USDC lives on Ethereum
    "USDC": re.compile(r"^0x[a-fA-F0-9]{40}$"),
}


def _require(details: Mapping[str, Any], field: str) -> str:
    value = details.get(field)
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required", field=field)
    return str(value).strip()


def _validate_email(details: Mapping[str, Any]) -> str:
    email = _require(details, "email")
    if not EMAIL_RE.match(email):
        raise ValidationError("Invalid email format", field="email")
    return email


def validate_ach(details: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Validate bank details and return what we store.

    The full account number is never stored, only its last four digits.
    """
    account_number = _require(details, "account_number")
    if not ACCOUNT_NUMBER_RE.match(account_number):
        raise ValidationError("Account number must be 4 to 17 digits", field="account_number")

    routing_number = _require(details, "routing_number")
    if not ROUTING_NUMBER_RE.match(routing_number):
        raise ValidationError("Routing number must be exactly 9 digits", field="routing_number")

    account_type = _require(details, "account_type").lower()
    if account_type not in ACCOUNT_TYPES:
        raise ValidationError(
            f"Account type must be one of: {', '.join(ACCOUNT_TYPES)}", field="account_type"
        )

    return {
        "account_holder": _require(details, "account_holder"),
        "email": _validate_email(details),
        "account_type": account_type,
        "routing_number": routing_number,
        "account_mask": account_number[-4:],
    }


def validate_paypal(details: Mapping[str, Any]) -> Dict[str, Any]:
    return {"email": _validate_email(details).lower()}


def validate_crypto(details: Mapping[str, Any]) -> Dict[str, Any]:
    currency = _require(details, "currency").upper()
    pattern = WALLET_PATTERNS.get(currency)
    if pattern is None:
        raise ValidationError(f"Unsupported currency: {currency}", field="currency")

    address = _require(details, "address")
    if not pattern.match(address):
        raise ValidationError(f"Invalid {currency} wallet address format", field="address")
    return {"currency": currency, "address": address}


VALIDATORS = {
    Rail.ACH: validate_ach,
    Rail.PAYPAL: validate_paypal,
    Rail.CRYPTO: validate_crypto,
}


def validate_details(rail: Union[Rail, str], details: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Validate rail-specific details.

    Raises:
        ValidationError: Naming the offending field
    """
    try:
        rail = Rail(rail)
    except ValueError as e:
        raise ValidationError(f"Unsupported payment rail: {rail}", field="type") from e
    if not isinstance(details, Mapping):
        raise ValidationError("details must be an object", field="details")
    return VALIDATORS[rail](details)


@dataclass
class AddResult:
    """Outcome of adding a method. ACH additions carry a Plaid link token."""

    method: PaymentMethod
    link_token: Optional[str] = None


class PaymentMethodRegistry:
    """
    CRUD and verification for payout destinations.

    Plaid and Dwolla clients are injected; they are only used for ACH.
    """

    def __init__(
        self,
        plaid: Optional[PlaidClient] = None,
        dwolla: Optional[DwollaClient] = None,
    ):
        self.plaid = plaid or PlaidClient()
        self.dwolla = dwolla or DwollaClient()

    async def _clear_other_defaults(
        self, owner_id: uuid.UUID, keep_id: uuid.UUID, db: AsyncSession
    ) -> None:
        await db.execute(
            update(PaymentMethod)
            .where(
                PaymentMethod.owner_id == owner_id,
                PaymentMethod.id != keep_id,
                PaymentMethod.is_default.is_(True),
            )
            .values(is_default=False)
        )

    async def add(
        self,
        owner_id: uuid.UUID,
        rail: Union[Rail, str],
        details: Mapping[str, Any],
        db: AsyncSession,
        is_default: bool = False,
    ) -> AddResult:
        """
        Register a payout destination.

        PayPal and crypto methods are verified on creation. ACH methods are
        persisted, a Plaid link token is requested, and the method waits in
        `pending` until verify() is called with the resulting public token.

        Args:
            owner_id: Owner of the method
            rail: ach, paypal or crypto
            details: Rail-specific fields
            db: Database session
            is_default: Make this the owner's only default method

        Returns:
            AddResult: Persisted method, plus a link token for ACH

        Raises:
            ValidationError: Invalid details; nothing is persisted
            RailError: Plaid could not issue a link token; nothing is persisted
        """
        stored = validate_details(rail, details)
        rail = Rail(rail)

        method = PaymentMethod(
            id=uuid.uuid4(),
            owner_id=owner_id,
            type=rail.value,
            details=stored,
            status=(
                VerificationStatus.UNVERIFIED.value
                if rail is Rail.ACH
                else VerificationStatus.VERIFIED.value
            ),
            is_active=True,
            is_default=is_default,
        )
        if is_default:
            await self._clear_other_defaults(owner_id, method.id, db)
        db.add(method)
        await db.flush()

        link_token = None
        if rail is Rail.ACH:
            try:
                link_token = await self.plaid.create_link_token(str(owner_id))
            except ProviderError as e:
                await db.rollback()
                logger.error(
                    "plaid_link_token_failed",
                    owner_id=str(owner_id),
                    error_code=e.code,
                    error_message=e.message,
                )
                raise RailError(
                    "Failed to create bank connection token",
                    rail=rail.value,
                    code=e.code,
                    transient=e.is_transient,
                ) from e
            method.status = VerificationStatus.PENDING.value

        await db.commit()

        logger.info(
            "payment_method_added",
            method_id=str(method.id),
            owner_id=str(owner_id),
            rail=rail.value,
            status=method.status,
            is_default=is_default,
        )
        return AddResult(method=method, link_token=link_token)

    async def verify(
        self,
        method_id: uuid.UUID,
        public_token: str,
        db: AsyncSession,
        owner_id: Optional[uuid.UUID] = None,
    ) -> PaymentMethod:
        """
        Complete ACH verification with a Plaid Link public token.

        Exchanges the token, picks the linked account matching the stored
        mask, hands it to Dwolla through a processor token and stores the
        resulting funding source.

        Raises:
            NotFoundError: Unknown method, or not owned by owner_id
            ValidationError: Not an ACH method, inactive, or the linked
                account does not match
            RailError: Plaid or Dwolla failed; the method is unchanged
        """
        method = await self.get(method_id, db, owner_id=owner_id)
        if method.type != Rail.ACH.value:
            raise ValidationError("Only bank accounts need verification", field="payment_method_id")
        if not method.is_active:
            raise ValidationError("Payment method is not active", field="payment_method_id")
        if method.status == VerificationStatus.VERIFIED.value:
            return method
        if not public_token:
            raise ValidationError("public_token is required", field="public_token")

        details = dict(method.details)
        try:
            access_token, item_id = await self.plaid.exchange_public_token(public_token)
            accounts = await self.plaid.get_auth_accounts(access_token)
            account = next(
                (a for a in accounts if a.get("mask") == details["account_mask"]), None
            )
            if account is None:
                raise ValidationError(
                    "Linked bank account does not match the account on file",
                    field="public_token",
                )

            processor_token = await self.plaid.create_processor_token(
                access_token, account["account_id"]
            )
            first_name, _, last_name = details["account_holder"].partition(" ")
            customer_url = await self.dwolla.create_receive_only_customer(
                first_name, last_name or first_name, details["email"]
            )
            funding_source_url = await self.dwolla.create_funding_source(
                customer_url,
                processor_token,
                name=f"{details['account_type'].title()} ...{details['account_mask']}",
            )
        except ProviderError as e:
            logger.error(
                "ach_verification_failed",
                method_id=str(method_id),
                provider=e.provider,
                error_code=e.code,
                error_message=e.message,
            )
            raise RailError(
                "Failed to verify bank account",
                rail=Rail.ACH.value,
                code=e.code,
                transient=e.is_transient,
            ) from e

        details.update(
            plaid_item_id=item_id,
            plaid_account_id=account["account_id"],
            bank_account_name=account.get("name"),
            dwolla_customer_url=customer_url,
            funding_source_url=funding_source_url,
            verified_at=datetime.now(timezone.utc).isoformat(),
        )
        method.details = details
        method.status = VerificationStatus.VERIFIED.value
        await db.commit()

        logger.info("payment_method_verified", method_id=str(method_id))
        return method

    async def get(
        self,
        method_id: uuid.UUID,
        db: AsyncSession,
        owner_id: Optional[uuid.UUID] = None,
    ) -> PaymentMethod:
        """
        Raises:
            NotFoundError: Missing, or owned by someone other than owner_id
        """
        method = await db.get(PaymentMethod, method_id)
        if method is None or (owner_id is not None and method.owner_id != owner_id):
            raise NotFoundError(f"Payment method {method_id} not found")
        return method

    async def list_methods(
        self,
        owner_id: uuid.UUID,
        db: AsyncSession,
        include_inactive: bool = False,
    ) -> List[PaymentMethod]:
        """Owner's methods, default first."""
        query = select(PaymentMethod).where(PaymentMethod.owner_id == owner_id)
        if not include_inactive:
            query = query.where(PaymentMethod.is_active.is_(True))
        result = await db.execute(
            query.order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at)
        )
        return list(result.scalars().all())

    async def set_default(
        self, method_id: uuid.UUID, owner_id: uuid.UUID, db: AsyncSession
    ) -> PaymentMethod:
        """Make a method the owner's only default, in one database transaction."""
        method = await self.get(method_id, db, owner_id=owner_id)
        if not method.is_active:
            raise ValidationError(
                "Inactive payment methods cannot be default", field="payment_method_id"
            )
        await self._clear_other_defaults(owner_id, method.id, db)
        method.is_default = True
        await db.commit()
        logger.info("payment_method_default_set", method_id=str(method_id), owner_id=str(owner_id))
        return method

    async def deactivate(
        self, method_id: uuid.UUID, owner_id: uuid.UUID, db: AsyncSession
    ) -> PaymentMethod:
        """Soft delete. The row stays so transaction history can reference it."""
        method = await self.get(method_id, db, owner_id=owner_id)
        method.is_active = False
        method.is_default = False
        await db.commit()
        logger.info("payment_method_deactivated", method_id=str(method_id))
        return method

    @staticmethod
    def ensure_disbursable(method: PaymentMethod) -> None:
        """
        Check a method can receive money right now.

        Raises:
            ValidationError: Inactive, unverified ACH, or details that no
                longer validate
        """
        if not method.is_active:
            raise ValidationError("Payment method is not active", field="payment_method_id")
        if method.type == Rail.ACH.value:
            if method.status != VerificationStatus.VERIFIED.value:
                raise ValidationError(
                    "Bank account must be verified before payouts", field="payment_method_id"
                )
            return
        validate_details(method.type, method.details)
