"""
Settlement webhook handler for PayPal and Coinbase Commerce.

Implements:
- Signature verification (PayPal verify API, Coinbase HMAC)
- Event deduplication using the webhook_events table
- Routing by (provider, event type) to settlement handlers
"""
import json
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payout_engine.core.exceptions import NotFoundError, PayoutEngineError
from payout_engine.database.models import Rail, WebhookEvent
from payout_engine.integrations.base import ProviderError
from payout_engine.integrations.coinbase_client import CoinbaseClient
from payout_engine.integrations.paypal_client import PayPalClient
from payout_engine.integrations.rails import SettlementStatus
from payout_engine.monitoring.metrics import metrics

if TYPE_CHECKING:
    from payout_engine.core.orchestrator import TransactionOrchestrator

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any], AsyncSession], Awaitable[Dict[str, Any]]]

COINBASE_OUTCOMES = {
    "charge:confirmed": SettlementStatus.COMPLETED,
    "charge:resolved": SettlementStatus.COMPLETED,
    "charge:failed": SettlementStatus.FAILED,
}

PAYPAL_BATCH_OUTCOMES = {
    "PAYMENT.PAYOUTSBATCH.SUCCESS": SettlementStatus.COMPLETED,
    "PAYMENT.PAYOUTSBATCH.DENIED": SettlementStatus.FAILED,
}

PAYPAL_ITEM_OUTCOMES = {
    "PAYMENT.PAYOUTS-ITEM.SUCCEEDED": SettlementStatus.COMPLETED,
    "PAYMENT.PAYOUTS-ITEM.FAILED": SettlementStatus.FAILED,
    "PAYMENT.PAYOUTS-ITEM.RETURNED": SettlementStatus.FAILED,
    "PAYMENT.PAYOUTS-ITEM.BLOCKED": SettlementStatus.FAILED,
}


class WebhookError(PayoutEngineError):
    """Raised when a webhook cannot be verified or processed."""

    error_code = "webhook_error"
    http_status = 400


class WebhookHandler:
    """
    Handles provider settlement webhooks with deduplication.

    Settlement goes through the injected orchestrator, so webhook and
    polling reconciliation share one transition table.
    """

    def __init__(
        self,
        orchestrator: "TransactionOrchestrator",
        paypal_client: Optional[PayPalClient] = None,
        coinbase_client: Optional[CoinbaseClient] = None,
    ):
        self.orchestrator = orchestrator
        self.paypal_client = paypal_client or PayPalClient()
        self.coinbase_client = coinbase_client or CoinbaseClient()
        self.event_handlers: Dict[Tuple[str, str], EventHandler] = {}

        for event_type in COINBASE_OUTCOMES:
            self.register_handler("coinbase", event_type, self.handle_coinbase_charge)
        for event_type in PAYPAL_BATCH_OUTCOMES:
            self.register_handler("paypal", event_type, self.handle_paypal_batch)
        for event_type in PAYPAL_ITEM_OUTCOMES:
            self.register_handler("paypal", event_type, self.handle_paypal_item)

        logger.info("webhook_handler_initialized")

    def register_handler(self, provider: str, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a provider event type.

        Example:
            async def handle_charge_pending(event, db):
                ...

            handler.register_handler("coinbase", "charge:pending", handle_charge_pending)
        """
        self.event_handlers[(provider, event_type)] = handler
        logger.debug("webhook_handler_registered", provider=provider, event_type=event_type)

    @staticmethod
    def _parse(raw_body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise WebhookError(f"Webhook body is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise WebhookError("Webhook body must be a JSON object")
        return payload

    def verify_coinbase(self, raw_body: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify an X-CC-Webhook-Signature and return the inner event.

        Raises:
            WebhookError: Bad signature or malformed body
        """
        if not self.coinbase_client.verify_webhook(raw_body, signature):
            logger.error("webhook_signature_verification_failed", provider="coinbase")
            raise WebhookError("Invalid webhook signature", provider="coinbase")

        event = self._parse(raw_body).get("event")
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise WebhookError("Coinbase webhook has no event", provider="coinbase")
        return event

    async def verify_paypal(self, headers: Mapping[str, str], raw_body: bytes) -> Dict[str, Any]:
        """
        Verify a PayPal delivery through the verify-webhook-signature API.

        Raises:
            WebhookError: Verification failed or PayPal unreachable
        """
        event = self._parse(raw_body)
        try:
            verified = await self.paypal_client.verify_webhook_signature(headers, event)
        except ProviderError as e:
            logger.error("webhook_verification_error", provider="paypal", error=e.message)
            raise WebhookError(f"Webhook verification failed: {e.message}", provider="paypal") from e

        if not verified:
            logger.error("webhook_signature_verification_failed", provider="paypal")
            raise WebhookError("Invalid webhook signature", provider="paypal")
        if not event.get("id") or not event.get("event_type"):
            raise WebhookError("PayPal webhook has no event id or type", provider="paypal")
        return event

    async def is_event_processed(self, provider: str, event_id: str, db: AsyncSession) -> bool:
        result = await db.execute(
            select(WebhookEvent.id).where(
                WebhookEvent.provider == provider, WebhookEvent.event_id == event_id
            )
        )
        return result.first() is not None

    async def mark_event_processed(
        self, provider: str, event_id: str, event_type: str, db: AsyncSession
    ) -> bool:
        """Store the delivery. False if another delivery stored it first."""
        db.add(WebhookEvent(provider=provider, event_id=event_id, event_type=event_type))
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return False
        return True

    async def process_event(
        self,
        provider: str,
        event_id: str,
        event_type: str,
        event: Dict[str, Any],
        db: AsyncSession,
    ) -> Dict[str, Any]:
        """
        Process a verified webhook event once.

        Returns:
            Dict[str, Any]: status is duplicate, no_handler or success

        Raises:
            WebhookError: If the handler fails
        """
        logger.info(
            "processing_webhook_event", provider=provider, event_id=event_id, event_type=event_type
        )

        if await self.is_event_processed(provider, event_id, db):
            logger.info(
                "webhook_event_already_processed", provider=provider, event_id=event_id
            )
            metrics.record_webhook_event(provider, event_type, "duplicate")
            return {"status": "duplicate", "event_id": event_id, "message": "Event already processed"}

        handler = self.event_handlers.get((provider, event_type))
        if handler is None:
            logger.info("webhook_no_handler", provider=provider, event_type=event_type)
            await self.mark_event_processed(provider, event_id, event_type, db)
            metrics.record_webhook_event(provider, event_type, "ignored")
            return {"status": "no_handler", "event_id": event_id, "event_type": event_type}

        try:
            result = await handler(event, db)
        except PayoutEngineError as e:
            await db.rollback()
            metrics.record_webhook_event(provider, event_type, "error")
            logger.error(
                "webhook_event_processing_failed",
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                error=e.message,
            )
            raise WebhookError(f"Failed to process event {event_id}: {e.message}") from e

        await self.mark_event_processed(provider, event_id, event_type, db)
        metrics.record_webhook_event(provider, event_type, "success")
        logger.info(
            "webhook_event_processed_successfully",
            provider=provider,
            event_id=event_id,
            event_type=event_type,
        )
        return {"status": "success", "event_id": event_id, "event_type": event_type, "result": result}

    async def _settle(
        self,
        rail: Rail,
        external_ref: Optional[str],
        outcome: SettlementStatus,
        db: AsyncSession,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not external_ref:
            return {"matched": False, "reason": "No external reference in event"}
        try:
            transaction = await self.orchestrator.settle_by_external_ref(
                external_ref, outcome, db, reason=reason, rail=rail, source=f"webhook:{rail.value}"
            )
        except NotFoundError:
            logger.warning(
                "webhook_transaction_not_found", rail=rail.value, external_ref=external_ref
            )
            return {"matched": False, "external_ref": external_ref}
        return {
            "matched": True,
            "transaction_id": str(transaction.id),
            "status": transaction.status,
        }

    async def handle_coinbase_charge(
        self, event: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        """charge:confirmed / charge:resolved / charge:failed."""
        charge = event.get("data") or {}
        outcome = COINBASE_OUTCOMES[event["type"]]
        return await self._settle(
            Rail.CRYPTO,
            charge.get("id"),
            outcome,
            db,
            reason="Coinbase charge failed" if outcome is SettlementStatus.FAILED else None,
        )

    async def handle_paypal_batch(
        self, event: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        """PAYMENT.PAYOUTSBATCH.SUCCESS / DENIED."""
        header = (event.get("resource") or {}).get("batch_header") or {}
        outcome = PAYPAL_BATCH_OUTCOMES[event["event_type"]]
        return await self._settle(
            Rail.PAYPAL,
            header.get("payout_batch_id"),
            outcome,
            db,
            reason="PayPal payout batch denied" if outcome is SettlementStatus.FAILED else None,
        )

    async def handle_paypal_item(
        self, event: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        """PAYMENT.PAYOUTS-ITEM.*; our batches carry one item."""
        resource = event.get("resource") or {}
        outcome = PAYPAL_ITEM_OUTCOMES[event["event_type"]]
        reason = None
        if outcome is SettlementStatus.FAILED:
            errors = resource.get("errors") or {}
            reason = errors.get("message") or f"PayPal payout item {resource.get('transaction_status')}"
        return await self._settle(
            Rail.PAYPAL, resource.get("payout_batch_id"), outcome, db, reason=reason
        )

    async def handle_coinbase(
        self, raw_body: bytes, signature: str, db: AsyncSession
    ) -> Dict[str, Any]:
        event = self.verify_coinbase(raw_body, signature)
        return await self.process_event("coinbase", event["id"], event["type"], event, db)

    async def handle_paypal(
        self, headers: Mapping[str, str], raw_body: bytes, db: AsyncSession
    ) -> Dict[str, Any]:
        event = await self.verify_paypal(headers, raw_body)
        return await self.process_event("paypal", event["id"], event["event_type"], event, db)
