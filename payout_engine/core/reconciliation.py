"""
Reconciliation engine for payouts awaiting settlement.

Polls each rail for transactions still in processing and feeds the outcome
back through the orchestrator:
- completed -> transaction completed, source record marked paid
- failed -> transaction failed
- pending -> left alone until the next run
"""
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from payout_engine.core.exceptions import PayoutEngineError, RailError
from payout_engine.core.orchestrator import TransactionOrchestrator
from payout_engine.database.connection import get_session_factory
from payout_engine.integrations.rails import SettlementStatus
from payout_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReconciliationEngine:
    """
    Settles processing transactions by asking the rail that carried them.

    Rail failures on a single transaction are logged and counted; the run
    moves on to the next transaction.
    """

    def __init__(
        self,
        orchestrator: TransactionOrchestrator,
        session_factory: Optional[Callable[[], Any]] = None,
        batch_size: int = 100,
    ):
        self.orchestrator = orchestrator
        self.session_factory = session_factory
        self.batch_size = batch_size
        logger.info("reconciliation_engine_initialized", batch_size=batch_size)

    async def reconcile(self, db: AsyncSession) -> Dict[str, int]:
        """
        Run one reconciliation pass.

        Args:
            db: Database session

        Returns:
            Dict[str, int]: Counts of checked, completed, failed, pending and
                errored transactions
        """
        summary = {"checked": 0, "completed": 0, "failed": 0, "pending": 0, "errors": 0}

        transactions = await self.orchestrator.list_processing(db, limit=self.batch_size)
        logger.info("reconciliation_started", processing=len(transactions))

        for transaction in transactions:
            summary["checked"] += 1
            rail = transaction.payment_method
            try:
                adapter = self.orchestrator.rails.get(rail)
                outcome = await adapter.fetch_status(transaction.external_id)
            except RailError as e:
                summary["errors"] += 1
                metrics.record_settlement(rail, "error")
                logger.warning(
                    "reconciliation_status_fetch_failed",
                    transaction_id=str(transaction.id),
                    rail=rail,
                    error=e.message,
                    error_code=e.code,
                )
                continue

            if outcome is SettlementStatus.PENDING:
                summary["pending"] += 1
                continue

            try:
                await self.orchestrator.settle(
                    transaction.id,
                    outcome,
                    db,
                    reason=f"{rail} reported {outcome.value}"
                    if outcome is SettlementStatus.FAILED
                    else None,
                )
            except PayoutEngineError as e:
                summary["errors"] += 1
                logger.error(
                    "reconciliation_settle_failed",
                    transaction_id=str(transaction.id),
                    error=e.message,
                )
                continue

            summary[outcome.value] += 1

        metrics.mark_reconciliation_run()
        logger.info("reconciliation_completed", **summary)
        return summary

    async def run_once(self) -> Dict[str, int]:
        """One pass in a fresh session."""
        session_factory = self.session_factory or get_session_factory()
        async with session_factory() as db:
            return await self.reconcile(db)
