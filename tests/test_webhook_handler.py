"""
Tests for settlement webhooks.
"""
import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from payout_engine.database.models import Rail, WebhookEvent
from payout_engine.integrations.base import ProviderError, ProviderErrorType
from payout_engine.integrations.coinbase_client import CoinbaseClient
from payout_engine.integrations.paypal_client import PayPalClient
from payout_engine.integrations.webhook_handler import WebhookError, WebhookHandler

ETH_ADDRESS = "0x742d35Cc6634C0532925a3b844Bc454e4438f44e"


def _sign(body: bytes, secret: str = "coinbase-webhook-secret") -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _coinbase_body(event_id: str, event_type: str, charge_id: str) -> bytes:
    return json.dumps(
        {"id": 1, "event": {"id": event_id, "type": event_type, "data": {"id": charge_id}}}
    ).encode()


def _paypal_body(event_id: str, event_type: str, resource: dict) -> bytes:
    return json.dumps({"id": event_id, "event_type": event_type, "resource": resource}).encode()


@pytest.fixture
def paypal_client():
    client = AsyncMock(spec=PayPalClient)
    client.verify_webhook_signature.return_value = True
    return client


@pytest.fixture
def webhooks(orchestrator, paypal_client, test_settings):
    return WebhookHandler(
        orchestrator,
        paypal_client=paypal_client,
        coinbase_client=CoinbaseClient(settings=test_settings),
    )


@pytest_asyncio.fixture
async def crypto_tx(orchestrator, registry, test_db, owner_id):
    added = await registry.add(
        owner_id, Rail.CRYPTO, {"currency": "ETH", "address": ETH_ADDRESS}, test_db
    )
    return await orchestrator.initiate(owner_id, added.method.id, Decimal("100"), test_db)


@pytest_asyncio.fixture
async def paypal_tx(orchestrator, test_db, owner_id, paypal_method):
    return await orchestrator.initiate(owner_id, paypal_method.id, Decimal("100"), test_db)


async def _stored_events(db) -> int:
    return (await db.execute(select(func.count()).select_from(WebhookEvent))).scalar_one()


@pytest.mark.unit
class TestCoinbaseWebhooks:
    """Test Coinbase Commerce deliveries."""

    @pytest.mark.asyncio
    async def test_confirmed_charge_completes_transaction(
        self, webhooks, orchestrator, test_db, crypto_tx
    ):
        body = _coinbase_body("evt-1", "charge:confirmed", crypto_tx.external_id)

        result = await webhooks.handle_coinbase(body, _sign(body), test_db)

        assert result["status"] == "success"
        assert result["result"]["matched"] is True
        tx = await orchestrator.get_transaction(crypto_tx.id, test_db)
        assert tx.status == "completed"

    @pytest.mark.asyncio
    async def test_failed_charge_fails_transaction(
        self, webhooks, orchestrator, test_db, crypto_tx
    ):
        body = _coinbase_body("evt-2", "charge:failed", crypto_tx.external_id)

        await webhooks.handle_coinbase(body, _sign(body), test_db)

        tx = await orchestrator.get_transaction(crypto_tx.id, test_db)
        assert tx.status == "failed"
        assert tx.error_message == "Coinbase charge failed"

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, webhooks, test_db, crypto_tx):
        body = _coinbase_body("evt-3", "charge:confirmed", crypto_tx.external_id)

        with pytest.raises(WebhookError):
            await webhooks.handle_coinbase(body, _sign(body, "wrong-secret"), test_db)
        assert await _stored_events(test_db) == 0

    @pytest.mark.asyncio
    async def test_duplicate_delivery_processed_once(
        self, webhooks, orchestrator, test_db, crypto_tx
    ):
        body = _coinbase_body("evt-4", "charge:confirmed", crypto_tx.external_id)

        first = await webhooks.handle_coinbase(body, _sign(body), test_db)
        second = await webhooks.handle_coinbase(body, _sign(body), test_db)

        assert first["status"] == "success"
        assert second["status"] == "duplicate"
        assert await _stored_events(test_db) == 1

    @pytest.mark.asyncio
    async def test_unhandled_event_type_recorded(self, webhooks, test_db):
        body = _coinbase_body("evt-5", "charge:created", "charge-x")

        result = await webhooks.handle_coinbase(body, _sign(body), test_db)

        assert result["status"] == "no_handler"
        assert await webhooks.is_event_processed("coinbase", "evt-5", test_db)

    @pytest.mark.asyncio
    async def test_unknown_charge_is_not_an_error(self, webhooks, test_db):
        body = _coinbase_body("evt-6", "charge:confirmed", "charge-unknown")

        result = await webhooks.handle_coinbase(body, _sign(body), test_db)

        assert result["status"] == "success"
        assert result["result"]["matched"] is False

    @pytest.mark.asyncio
    async def test_invalid_transition_raises_webhook_error(
        self, webhooks, orchestrator, test_db, crypto_tx
    ):
        await orchestrator.settle(crypto_tx.id, "failed", test_db)
        body = _coinbase_body("evt-7", "charge:confirmed", crypto_tx.external_id)

        with pytest.raises(WebhookError):
            await webhooks.handle_coinbase(body, _sign(body), test_db)

        # Not marked processed, so a later redelivery is examined again
        assert not await webhooks.is_event_processed("coinbase", "evt-7", test_db)


@pytest.mark.unit
class TestPayPalWebhooks:
    """Test PayPal Payouts deliveries."""

    @pytest.mark.asyncio
    async def test_batch_success(self, webhooks, orchestrator, paypal_client, test_db, paypal_tx):
        headers = {"PAYPAL-TRANSMISSION-ID": "t-1"}
        body = _paypal_body(
            "WH-1",
            "PAYMENT.PAYOUTSBATCH.SUCCESS",
            {"batch_header": {"payout_batch_id": paypal_tx.external_id}},
        )

        result = await webhooks.handle_paypal(headers, body, test_db)

        assert result["status"] == "success"
        assert (await orchestrator.get_transaction(paypal_tx.id, test_db)).status == "completed"
        paypal_client.verify_webhook_signature.assert_awaited_once()
        assert paypal_client.verify_webhook_signature.await_args.args[0] == headers

    @pytest.mark.asyncio
    async def test_item_failure_reason(self, webhooks, orchestrator, test_db, paypal_tx):
        body = _paypal_body(
            "WH-2",
            "PAYMENT.PAYOUTS-ITEM.RETURNED",
            {
                "payout_batch_id": paypal_tx.external_id,
                "transaction_status": "RETURNED",
                "errors": {"message": "Receiver has not claimed the payment"},
            },
        )

        await webhooks.handle_paypal({}, body, test_db)

        tx = await orchestrator.get_transaction(paypal_tx.id, test_db)
        assert tx.status == "failed"
        assert tx.error_message == "Receiver has not claimed the payment"

    @pytest.mark.asyncio
    async def test_verification_failure(self, webhooks, paypal_client, test_db):
        paypal_client.verify_webhook_signature.return_value = False
        body = _paypal_body("WH-3", "PAYMENT.PAYOUTSBATCH.SUCCESS", {})

        with pytest.raises(WebhookError):
            await webhooks.handle_paypal({}, body, test_db)

    @pytest.mark.asyncio
    async def test_verification_api_unreachable(self, webhooks, paypal_client, test_db):
        paypal_client.verify_webhook_signature.side_effect = ProviderError(
            "timeout", provider="paypal", error_type=ProviderErrorType.TRANSIENT
        )
        body = _paypal_body("WH-4", "PAYMENT.PAYOUTSBATCH.SUCCESS", {})

        with pytest.raises(WebhookError):
            await webhooks.handle_paypal({}, body, test_db)

    @pytest.mark.asyncio
    async def test_malformed_body(self, webhooks, test_db):
        with pytest.raises(WebhookError):
            await webhooks.handle_paypal({}, b"not json", test_db)

    @pytest.mark.asyncio
    async def test_custom_handler(self, webhooks, test_db):
        seen = []

        async def handle_held(event, db):
            seen.append(event["id"])
            return {"held": True}

        webhooks.register_handler("paypal", "PAYMENT.PAYOUTS-ITEM.HELD", handle_held)
        body = _paypal_body("WH-5", "PAYMENT.PAYOUTS-ITEM.HELD", {})

        result = await webhooks.handle_paypal({}, body, test_db)

        assert result["result"] == {"held": True}
        assert seen == ["WH-5"]
