"""
Tests for the transaction orchestrator.
"""
import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select

from payout_engine.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    RailError,
    ValidationError,
)
from payout_engine.core.orchestrator import can_transition
from payout_engine.database.models import (
    PayoutStatus,
    Rail,
    TransactionEvent,
    TransactionStatus,
)
from payout_engine.integrations.rails import SettlementStatus

INSTAGRAM_URL = "https://www.instagram.com/p/CxYz123/"


async def _events(db, transaction_id):
    result = await db.execute(
        select(TransactionEvent.event_type)
        .where(TransactionEvent.transaction_id == transaction_id)
        .order_by(TransactionEvent.id)
    )
    return list(result.scalars().all())


async def _approved_record(ledger, campaign, db, creator_id, views=42_000):
    link = await ledger.register_link(campaign.id, creator_id, INSTAGRAM_URL, db)
    record = await ledger.record_views(campaign.id, link.id, "instagram", views, db)
    return await ledger.approve_payout(record.id, campaign.brand_id, db)


@pytest.mark.unit
class TestTransitionTable:
    """Test allowed state changes."""

    @pytest.mark.parametrize(
        "from_status,to_status",
        [
            ("pending", "processing"),
            ("pending", "failed"),
            ("processing", "completed"),
            ("processing", "failed"),
            ("completed", "refunded"),
        ],
    )
    def test_allowed(self, from_status, to_status):
        assert can_transition(from_status, to_status)

    @pytest.mark.parametrize("to_status", list(TransactionStatus))
    def test_failed_is_terminal(self, to_status):
        assert not can_transition(TransactionStatus.FAILED, to_status)

    @pytest.mark.parametrize(
        "from_status,to_status",
        [
            ("pending", "completed"),
            ("processing", "pending"),
            ("completed", "failed"),
            ("refunded", "completed"),
        ],
    )
    def test_forbidden(self, from_status, to_status):
        assert not can_transition(from_status, to_status)


@pytest.mark.unit
class TestInitiate:
    """Test payout initiation."""

    @pytest.mark.asyncio
    async def test_paypal_payout_disburses_net(
        self, orchestrator, fake_rails, test_db, owner_id, paypal_method
    ):
        tx = await orchestrator.initiate(owner_id, paypal_method.id, Decimal("1000"), test_db)

        assert tx.status == TransactionStatus.PROCESSING.value
        assert tx.amount == Decimal("1000.00")
        assert tx.platform_fee == Decimal("100.00")
        assert tx.processing_fee == Decimal("29.00")
        assert tx.fee == Decimal("129.00")
        assert tx.net_amount == Decimal("871.00")
        assert tx.external_id == "paypal-ref-1"
        assert tx.idempotency_key == f"payout-{tx.id}"
        assert tx.payment_method_snapshot == {"email": "creator@example.com"}

        call = fake_rails[Rail.PAYPAL].calls[0]
        assert call["amount"] == Decimal("871.00")
        assert call["idempotency_key"] == tx.idempotency_key
        assert await _events(test_db, tx.id) == ["transaction.created", "transaction.processing"]

    @pytest.mark.asyncio
    async def test_ach_payout_uses_funding_source(
        self, orchestrator, fake_rails, test_db, owner_id, ach_method
    ):
        tx = await orchestrator.initiate(owner_id, ach_method.id, "250", test_db)

        assert tx.payment_method == Rail.ACH.value
        assert tx.processing_fee == Decimal("2.50")
        destination = fake_rails[Rail.ACH].calls[0]["destination"]
        assert destination["funding_source_url"].endswith("/fs-1")

    @pytest.mark.asyncio
    async def test_rail_failure_persisted(
        self, orchestrator, fake_rails, test_db, owner_id, paypal_method
    ):
        fake_rails[Rail.PAYPAL].error = RailError(
            "Receiver is unregistered", rail="paypal", code="RECEIVER_UNREGISTERED"
        )

        tx = await orchestrator.initiate(owner_id, paypal_method.id, Decimal("100"), test_db)

        assert tx.status == TransactionStatus.FAILED.value
        assert tx.error_code == "RECEIVER_UNREGISTERED"
        assert tx.error_message == "Receiver is unregistered"
        assert tx.processed_at is not None
        assert await _events(test_db, tx.id) == ["transaction.created", "transaction.failed"]

        stored = await orchestrator.get_transaction(tx.id, test_db)
        assert stored.status == "failed"

    @pytest.mark.asyncio
    async def test_unexpected_rail_exception_fails_transaction(
        self, orchestrator, fake_rails, test_db, owner_id, paypal_method
    ):
        fake_rails[Rail.PAYPAL].error = ConnectionResetError("socket closed")

        tx = await orchestrator.initiate(owner_id, paypal_method.id, Decimal("100"), test_db)

        assert tx.status == TransactionStatus.FAILED.value
        assert tx.error_code == "internal_error"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount,message",
        [
            (Decimal("10"), "Minimum payout amount is $25"),
            (Decimal("20000.01"), "Maximum payout amount is $20000"),
            (Decimal("0"), "Amount must be positive"),
            (Decimal("-5"), "Amount must be positive"),
        ],
    )
    async def test_amount_limits(
        self, orchestrator, fake_rails, test_db, owner_id, paypal_method, amount, message
    ):
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.initiate(owner_id, paypal_method.id, amount, test_db)

        assert exc_info.value.message == message
        assert fake_rails[Rail.PAYPAL].calls == []
        assert await orchestrator.list_transactions(owner_id, test_db) == []

    @pytest.mark.asyncio
    async def test_other_owners_method_not_found(
        self, orchestrator, fake_rails, test_db, paypal_method
    ):
        with pytest.raises(NotFoundError):
            await orchestrator.initiate(uuid.uuid4(), paypal_method.id, Decimal("100"), test_db)
        assert fake_rails[Rail.PAYPAL].calls == []

    @pytest.mark.asyncio
    async def test_unverified_ach_rejected_before_rail_call(
        self, orchestrator, registry, fake_rails, test_db, owner_id
    ):
        added = await registry.add(
            owner_id,
            Rail.ACH,
            {
                "account_number": "000123456789",
                "routing_number": "110000000",
                "account_type": "checking",
                "account_holder": "Jane Creator",
                "email": "jane@example.com",
            },
            test_db,
        )

        with pytest.raises(ValidationError):
            await orchestrator.initiate(owner_id, added.method.id, Decimal("100"), test_db)
        assert fake_rails[Rail.ACH].calls == []

    @pytest.mark.asyncio
    async def test_same_source_returns_live_transaction(
        self, orchestrator, fake_rails, test_db, owner_id, paypal_method
    ):
        source_id = uuid.uuid4()

        first = await orchestrator.initiate(
            owner_id, paypal_method.id, Decimal("100"), test_db, source_record_id=source_id
        )
        second = await orchestrator.initiate(
            owner_id, paypal_method.id, Decimal("100"), test_db, source_record_id=source_id
        )

        assert first.id == second.id
        assert len(fake_rails[Rail.PAYPAL].calls) == 1

    @pytest.mark.asyncio
    async def test_failed_transaction_allows_retry(
        self, orchestrator, fake_rails, test_db, owner_id, paypal_method
    ):
        source_id = uuid.uuid4()
        fake_rails[Rail.PAYPAL].error = RailError("Timeout", rail="paypal", transient=True)
        failed = await orchestrator.initiate(
            owner_id, paypal_method.id, Decimal("100"), test_db, source_record_id=source_id
        )

        fake_rails[Rail.PAYPAL].error = None
        retried = await orchestrator.initiate(
            owner_id, paypal_method.id, Decimal("100"), test_db, source_record_id=source_id
        )

        assert failed.status == "failed"
        assert retried.id != failed.id
        assert retried.status == "processing"
        # Each attempt carries its own idempotency key
        keys = [call["idempotency_key"] for call in fake_rails[Rail.PAYPAL].calls]
        assert keys == [failed.idempotency_key, retried.idempotency_key]


@pytest.mark.integration
class TestRecordPayouts:
    """Test paying approved view-tracking records."""

    @pytest.mark.asyncio
    async def test_pending_record_cannot_be_paid(
        self, orchestrator, ledger, campaign, test_db, owner_id, paypal_method
    ):
        link = await ledger.register_link(campaign.id, owner_id, INSTAGRAM_URL, test_db)
        record = await ledger.record_views(campaign.id, link.id, "instagram", 42_000, test_db)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.initiate_for_record(record.id, paypal_method.id, test_db)

    @pytest.mark.asyncio
    async def test_approved_record_paid_and_marked_on_completion(
        self, orchestrator, ledger, campaign, test_db, owner_id, paypal_method
    ):
        record = await _approved_record(ledger, campaign, test_db, owner_id)

        tx = await orchestrator.initiate_for_record(
            record.id, paypal_method.id, test_db, owner_id=owner_id
        )
        assert tx.amount == Decimal("420.00")
        assert tx.source_record_id == record.id
        assert tx.campaign_id == campaign.id

        await orchestrator.settle(tx.id, SettlementStatus.COMPLETED, test_db)

        record = await ledger.get_record(record.id, test_db)
        assert record.payout_status == PayoutStatus.PAID.value

        again = await orchestrator.initiate_for_record(record.id, paypal_method.id, test_db)
        assert again.id == tx.id

    @pytest.mark.asyncio
    async def test_record_of_other_creator_hidden(
        self, orchestrator, ledger, campaign, test_db, owner_id, paypal_method
    ):
        record = await _approved_record(ledger, campaign, test_db, owner_id)

        with pytest.raises(NotFoundError):
            await orchestrator.initiate_for_record(
                record.id, paypal_method.id, test_db, owner_id=uuid.uuid4()
            )

    @pytest.mark.asyncio
    async def test_amount_must_equal_approved_payout(
        self, orchestrator, ledger, campaign, test_db, owner_id, paypal_method
    ):
        record = await _approved_record(ledger, campaign, test_db, owner_id)

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.initiate_for_record(
                record.id, paypal_method.id, test_db, owner_id=owner_id, amount="9999.00"
            )
        assert exc_info.value.field == "amount"
        assert (await ledger.get_record(record.id, test_db)).payout_status == "approved"

        tx = await orchestrator.initiate_for_record(
            record.id, paypal_method.id, test_db, owner_id=owner_id, amount="420"
        )
        assert tx.amount == Decimal("420.00")


@pytest.mark.unit
class TestSettlement:
    """Test settlement and refunds."""

    @pytest_asyncio.fixture
    async def processing_tx(self, orchestrator, test_db, owner_id, paypal_method):
        return await orchestrator.initiate(owner_id, paypal_method.id, Decimal("100"), test_db)

    @pytest.mark.asyncio
    async def test_settle_completed(self, orchestrator, test_db, processing_tx):
        tx = await orchestrator.settle(processing_tx.id, "completed", test_db)

        assert tx.status == "completed"
        assert tx.processed_at is not None
        events = await _events(test_db, tx.id)
        assert events[-1] == "transaction.completed"

    @pytest.mark.asyncio
    async def test_settle_repeated_is_noop(self, orchestrator, test_db, processing_tx):
        await orchestrator.settle(processing_tx.id, "completed", test_db)
        await orchestrator.settle(processing_tx.id, "completed", test_db)

        events = await _events(test_db, processing_tx.id)
        assert events.count("transaction.completed") == 1

    @pytest.mark.asyncio
    async def test_settle_pending_changes_nothing(self, orchestrator, test_db, processing_tx):
        tx = await orchestrator.settle(processing_tx.id, SettlementStatus.PENDING, test_db)
        assert tx.status == "processing"

    @pytest.mark.asyncio
    async def test_settle_failed_records_reason(self, orchestrator, test_db, processing_tx):
        tx = await orchestrator.settle(
            processing_tx.id, "failed", test_db, reason="Account closed", source="webhook:paypal"
        )
        assert tx.status == "failed"
        assert tx.error_message == "Account closed"

        with pytest.raises(InvalidTransitionError):
            await orchestrator.settle(processing_tx.id, "completed", test_db)

    @pytest.mark.asyncio
    async def test_settle_unknown_transaction(self, orchestrator, test_db):
        with pytest.raises(NotFoundError):
            await orchestrator.settle(uuid.uuid4(), "completed", test_db)

    @pytest.mark.asyncio
    async def test_settle_rejects_refund_outcome(self, orchestrator, test_db, processing_tx):
        with pytest.raises(ValidationError):
            await orchestrator.settle(processing_tx.id, "refunded", test_db)

    @pytest.mark.asyncio
    async def test_settle_by_external_ref(self, orchestrator, test_db, processing_tx):
        tx = await orchestrator.settle_by_external_ref(
            processing_tx.external_id, "completed", test_db, rail=Rail.PAYPAL
        )
        assert tx.id == processing_tx.id
        assert tx.status == "completed"

        with pytest.raises(NotFoundError):
            await orchestrator.settle_by_external_ref("missing-ref", "completed", test_db)

    @pytest.mark.asyncio
    async def test_refund_only_from_completed(self, orchestrator, test_db, processing_tx):
        with pytest.raises(InvalidTransitionError):
            await orchestrator.refund(processing_tx.id, test_db)

        await orchestrator.settle(processing_tx.id, "completed", test_db)
        tx = await orchestrator.refund(processing_tx.id, test_db, reason="chargeback")

        assert tx.status == "refunded"
        assert (await _events(test_db, tx.id))[-1] == "transaction.refunded"


@pytest.mark.unit
class TestQueries:
    """Test transaction listing."""

    @pytest.mark.asyncio
    async def test_list_filters_by_status(
        self, orchestrator, fake_rails, test_db, owner_id, paypal_method
    ):
        ok = await orchestrator.initiate(owner_id, paypal_method.id, Decimal("100"), test_db)
        fake_rails[Rail.PAYPAL].error = RailError("Denied", rail="paypal")
        await orchestrator.initiate(owner_id, paypal_method.id, Decimal("50"), test_db)

        everything = await orchestrator.list_transactions(owner_id, test_db)
        processing = await orchestrator.list_transactions(owner_id, test_db, status="processing")

        assert len(everything) == 2
        assert [tx.id for tx in processing] == [ok.id]
        assert await orchestrator.list_transactions(uuid.uuid4(), test_db) == []
        assert [tx.id for tx in await orchestrator.list_processing(test_db)] == [ok.id]

    @pytest.mark.asyncio
    async def test_get_transaction_hides_other_owner(
        self, orchestrator, test_db, owner_id, paypal_method
    ):
        tx = await orchestrator.initiate(owner_id, paypal_method.id, Decimal("100"), test_db)

        assert (await orchestrator.get_transaction(tx.id, test_db, owner_id=owner_id)).id == tx.id
        with pytest.raises(NotFoundError):
            await orchestrator.get_transaction(tx.id, test_db, owner_id=uuid.uuid4())
