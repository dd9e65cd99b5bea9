"""
Tests for the reconciliation engine.
"""
import uuid
from decimal import Decimal

import pytest

from payout_engine.core.exceptions import RailError
from payout_engine.core.reconciliation import ReconciliationEngine
from payout_engine.database.models import PayoutStatus, Rail
from payout_engine.integrations.rails import SettlementStatus


@pytest.mark.integration
class TestReconciliation:
    """Test polling rails for settlement."""

    @pytest.mark.asyncio
    async def test_completed_settles_and_marks_record_paid(
        self, orchestrator, ledger, fake_rails, campaign, test_db, owner_id, paypal_method
    ):
        link = await ledger.register_link(
            campaign.id, owner_id, "https://www.instagram.com/p/CxYz123/", test_db
        )
        record = await ledger.record_views(campaign.id, link.id, "instagram", 42_000, test_db)
        await ledger.approve_payout(record.id, campaign.brand_id, test_db)
        tx = await orchestrator.initiate_for_record(record.id, paypal_method.id, test_db)

        fake_rails[Rail.PAYPAL].status = SettlementStatus.COMPLETED
        summary = await ReconciliationEngine(orchestrator).reconcile(test_db)

        assert summary == {"checked": 1, "completed": 1, "failed": 0, "pending": 0, "errors": 0}
        assert (await orchestrator.get_transaction(tx.id, test_db)).status == "completed"
        assert (await ledger.get_record(record.id, test_db)).payout_status == PayoutStatus.PAID.value

        # Nothing left to reconcile
        again = await ReconciliationEngine(orchestrator).reconcile(test_db)
        assert again["checked"] == 0

    @pytest.mark.asyncio
    async def test_failed_and_pending(
        self, orchestrator, fake_rails, test_db, owner_id, paypal_method, ach_method
    ):
        paypal_tx = await orchestrator.initiate(owner_id, paypal_method.id, Decimal("100"), test_db)
        ach_tx = await orchestrator.initiate(owner_id, ach_method.id, Decimal("100"), test_db)

        fake_rails[Rail.PAYPAL].status = SettlementStatus.FAILED
        fake_rails[Rail.ACH].status = SettlementStatus.PENDING
        summary = await ReconciliationEngine(orchestrator).reconcile(test_db)

        assert summary["failed"] == 1
        assert summary["pending"] == 1
        failed = await orchestrator.get_transaction(paypal_tx.id, test_db)
        assert failed.status == "failed"
        assert failed.error_message == "paypal reported failed"
        assert (await orchestrator.get_transaction(ach_tx.id, test_db)).status == "processing"

    @pytest.mark.asyncio
    async def test_rail_error_does_not_stop_run(
        self, orchestrator, fake_rails, test_db, owner_id, paypal_method, ach_method
    ):
        await orchestrator.initiate(owner_id, paypal_method.id, Decimal("100"), test_db)
        ach_tx = await orchestrator.initiate(owner_id, ach_method.id, Decimal("100"), test_db)

        fake_rails[Rail.PAYPAL].status_error = RailError("PayPal down", rail="paypal", transient=True)
        fake_rails[Rail.ACH].status = SettlementStatus.COMPLETED
        summary = await ReconciliationEngine(orchestrator).reconcile(test_db)

        assert summary["errors"] == 1
        assert summary["completed"] == 1
        assert (await orchestrator.get_transaction(ach_tx.id, test_db)).status == "completed"

    @pytest.mark.asyncio
    async def test_unknown_source_record_still_completes(
        self, orchestrator, fake_rails, test_db, owner_id, paypal_method
    ):
        """A source id outside the ledger is logged, not fatal."""
        tx = await orchestrator.initiate(
            owner_id, paypal_method.id, Decimal("100"), test_db, source_record_id=uuid.uuid4()
        )

        fake_rails[Rail.PAYPAL].status = SettlementStatus.COMPLETED
        summary = await ReconciliationEngine(orchestrator).reconcile(test_db)

        assert summary["completed"] == 1
        assert (await orchestrator.get_transaction(tx.id, test_db)).status == "completed"

    @pytest.mark.asyncio
    async def test_run_once_uses_session_factory(
        self, orchestrator, fake_rails, session_factory, test_db, owner_id, paypal_method
    ):
        await orchestrator.initiate(owner_id, paypal_method.id, Decimal("100"), test_db)
        fake_rails[Rail.PAYPAL].status = SettlementStatus.COMPLETED

        engine = ReconciliationEngine(orchestrator, session_factory=session_factory, batch_size=10)
        summary = await engine.run_once()

        assert summary["completed"] == 1
