"""
Transaction orchestrator.

The only component that creates or mutates Transactions. Payout flow:
1. Validate amount and payment method (before any external call)
2. Acquire the per-key lock
3. Return the live transaction for the source record, if there is one
4. Create and commit a pending transaction
5. Call the rail with the net amount
6. Move to processing (external ref stored) or failed (error stored)
7. Release lock

Settlement (webhooks, reconciliation) and refunds go through the same
transition table, and every change writes an audit event.
"""
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payout_engine.config import Settings, get_settings
from payout_engine.core.calculator import DEFAULT_FEE_SCHEDULE, FeeSchedule, Number, to_money
from payout_engine.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    RailError,
    ValidationError,
)
from payout_engine.core.ledger import ViewTrackingLedger
from payout_engine.core.locks import KeyedLock, LocalKeyedLock, build_lock
from payout_engine.core.registry import PaymentMethodRegistry
from payout_engine.database.models import (
    PayoutStatus,
    Rail,
    Transaction,
    TransactionEvent,
    TransactionStatus,
)
from payout_engine.integrations.rails import RailRegistry, SettlementStatus, build_default_rails
from payout_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TRANSITIONS: Dict[TransactionStatus, frozenset] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.PROCESSING, TransactionStatus.FAILED}),
    TransactionStatus.PROCESSING: frozenset(
        {TransactionStatus.COMPLETED, TransactionStatus.FAILED}
    ),
    TransactionStatus.COMPLETED: frozenset({TransactionStatus.REFUNDED}),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
}


def can_transition(
    from_status: Union[TransactionStatus, str], to_status: Union[TransactionStatus, str]
) -> bool:
    return TransactionStatus(to_status) in TRANSITIONS[TransactionStatus(from_status)]


class TransactionOrchestrator:
    """
    Creates payout transactions and drives them through their states.

    Rails, registry, ledger, lock and fee schedule are all injected.
    """

    def __init__(
        self,
        rails: RailRegistry,
        registry: PaymentMethodRegistry,
        ledger: Optional[ViewTrackingLedger] = None,
        lock: Optional[KeyedLock] = None,
        fee_schedule: FeeSchedule = DEFAULT_FEE_SCHEDULE,
        settings: Optional[Settings] = None,
    ):
        self.rails = rails
        self.registry = registry
        self.ledger = ledger or ViewTrackingLedger()
        self.lock = lock or LocalKeyedLock()
        self.fee_schedule = fee_schedule
        self.settings = settings or get_settings()

        logger.info("transaction_orchestrator_initialized")

    def payout_limits(self, rail: Rail) -> Tuple[Decimal, Decimal]:
        """(minimum, maximum) gross payout for a rail."""
        return (
            getattr(self.settings, f"{rail.value}_min_payout"),
            getattr(self.settings, f"{rail.value}_max_payout"),
        )

    def _validate_amount(self, amount: Number, rail: Rail) -> Decimal:
        """
        Raises:
            ValidationError: Non-positive or outside the rail's limits
        """
        gross = to_money(amount)
        if gross <= 0:
            raise ValidationError("Amount must be positive", field="amount")

        minimum, maximum = self.payout_limits(rail)
        if gross < minimum:
            raise ValidationError(f"Minimum payout amount is ${minimum}", field="amount")
        if gross > maximum:
            raise ValidationError(f"Maximum payout amount is ${maximum}", field="amount")
        return gross

    @staticmethod
    def _record_event(
        db: AsyncSession,
        transaction_id: uuid.UUID,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: uuid.UUID,
    ) -> None:
        """Add an audit trail row to the session."""
        db.add(
            TransactionEvent(
                transaction_id=transaction_id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=correlation_id,
            )
        )

    def _transition(
        self,
        transaction: Transaction,
        to_status: TransactionStatus,
        db: AsyncSession,
        correlation_id: uuid.UUID,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Apply a state change through the transition table.

        Raises:
            InvalidTransitionError: If the table does not allow it
        """
        from_status = TransactionStatus(transaction.status)
        if not can_transition(from_status, to_status):
            raise InvalidTransitionError(
                f"Cannot move transaction from {from_status.value} to {to_status.value}",
                transaction_id=str(transaction.id),
            )

        transaction.status = to_status.value
        if to_status in (TransactionStatus.COMPLETED, TransactionStatus.FAILED):
            transaction.processed_at = datetime.now(timezone.utc)

        self._record_event(
            db,
            transaction.id,
            f"transaction.{to_status.value}",
            {"from_status": from_status.value, "to_status": to_status.value, **(event_data or {})},
            correlation_id,
        )
        metrics.record_transition(from_status.value, to_status.value)

    async def _find_live(
        self, source_record_id: uuid.UUID, db: AsyncSession
    ) -> Optional[Transaction]:
        result = await db.execute(
            select(Transaction)
            .where(
                Transaction.source_record_id == source_record_id,
                Transaction.status != TransactionStatus.FAILED.value,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def initiate(
        self,
        owner_id: uuid.UUID,
        method_id: uuid.UUID,
        amount: Number,
        db: AsyncSession,
        source_record_id: Optional[uuid.UUID] = None,
        campaign_id: Optional[uuid.UUID] = None,
    ) -> Transaction:
        """
        Pay `amount` (gross) to an owner through one of their payment methods.

        Args:
            owner_id: Recipient; must own the method
            method_id: Payment method to pay into
            amount: Gross amount; fees are deducted and the net is disbursed
            db: Database session
            source_record_id: Payout record this pays for; at most one
                non-failed transaction exists per source
            campaign_id: Campaign the payout belongs to

        Returns:
            Transaction: In processing, or failed with the rail's error. If a
                live transaction already exists for the source, that one.

        Raises:
            ValidationError: Bad amount, or a method that cannot receive money
            NotFoundError: Method missing or not owned by owner_id
            LockUnavailableError: Another worker holds the payout lock
        """
        correlation_id = uuid.uuid4()

        method = await self.registry.get(method_id, db, owner_id=owner_id)
        self.registry.ensure_disbursable(method)
        rail = Rail(method.type)
        adapter = self.rails.get(rail)
        gross = self._validate_amount(amount, rail)
        fees = self.fee_schedule.compute_fees(gross, rail)

        lock_key = (
            f"source:{source_record_id}"
            if source_record_id is not None
            else f"owner:{owner_id}:{method_id}:{gross}"
        )

        logger.info(
            "payout_initiation_started",
            correlation_id=str(correlation_id),
            owner_id=str(owner_id),
            rail=rail.value,
            amount=str(gross),
            source_record_id=str(source_record_id) if source_record_id else None,
        )

        async with self.lock.hold(lock_key):
            if source_record_id is not None:
                existing = await self._find_live(source_record_id, db)
                if existing is not None:
                    logger.info(
                        "payout_idempotent_return",
                        correlation_id=str(correlation_id),
                        transaction_id=str(existing.id),
                        status=existing.status,
                    )
                    metrics.record_duplicate_disbursement(rail.value)
                    return existing

            transaction_id = uuid.uuid4()
            transaction = Transaction(
                id=transaction_id,
                owner_id=owner_id,
                source_record_id=source_record_id,
                campaign_id=campaign_id,
                payment_method_id=method.id,
                payment_method=rail.value,
                payment_method_snapshot=dict(method.details),
                transaction_type="payout",
                amount=fees.gross,
                platform_fee=fees.platform_fee,
                processing_fee=fees.processing_fee,
                fee=fees.total_fees,
                net_amount=fees.net_amount,
                currency="USD",
                status=TransactionStatus.PENDING.value,
                idempotency_key=f"payout-{transaction_id}",
            )
            db.add(transaction)
            self._record_event(
                db,
                transaction_id,
                "transaction.created",
                {"status": TransactionStatus.PENDING.value, "rail": rail.value, **fees.as_dict()},
                correlation_id,
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                if source_record_id is not None:
                    existing = await self._find_live(source_record_id, db)
                    if existing is not None:
                        logger.info(
                            "payout_concurrent_duplicate_resolved",
                            correlation_id=str(correlation_id),
                            transaction_id=str(existing.id),
                        )
                        metrics.record_duplicate_disbursement(rail.value)
                        return existing
                raise

            started = time.perf_counter()
            try:
                result = await adapter.disburse(
                    fees.net_amount, transaction.payment_method_snapshot, transaction.idempotency_key
                )
            except RailError as e:
                transaction.error_message = e.message
                transaction.error_code = e.code
                self._transition(
                    transaction,
                    TransactionStatus.FAILED,
                    db,
                    correlation_id,
                    {"error": e.message, "error_code": e.code, "transient": e.transient},
                )
                await db.commit()
                metrics.record_disbursement(
                    rail.value, "failed", float(gross), time.perf_counter() - started
                )
                logger.error(
                    "payout_disbursement_failed",
                    correlation_id=str(correlation_id),
                    transaction_id=str(transaction_id),
                    rail=rail.value,
                    error=e.message,
                    error_code=e.code,
                )
                return transaction
            except Exception as e:
                transaction.error_message = str(e) or e.__class__.__name__
                transaction.error_code = "internal_error"
                self._transition(
                    transaction,
                    TransactionStatus.FAILED,
                    db,
                    correlation_id,
                    {"error": transaction.error_message, "error_code": "internal_error"},
                )
                await db.commit()
                metrics.record_disbursement(
                    rail.value, "failed", float(gross), time.perf_counter() - started
                )
                logger.exception(
                    "payout_disbursement_error",
                    correlation_id=str(correlation_id),
                    transaction_id=str(transaction_id),
                    rail=rail.value,
                )
                return transaction

            transaction.external_id = result.external_ref
            self._transition(
                transaction,
                TransactionStatus.PROCESSING,
                db,
                correlation_id,
                {"external_id": result.external_ref, "provider_status": result.provider_status},
            )
            await db.commit()
            metrics.record_disbursement(
                rail.value, "processing", float(gross), time.perf_counter() - started
            )

        logger.info(
            "payout_disbursement_submitted",
            correlation_id=str(correlation_id),
            transaction_id=str(transaction_id),
            rail=rail.value,
            external_id=result.external_ref,
            net_amount=str(fees.net_amount),
        )
        return transaction

    async def initiate_for_record(
        self,
        record_id: uuid.UUID,
        method_id: uuid.UUID,
        db: AsyncSession,
        owner_id: Optional[uuid.UUID] = None,
        amount: Optional[Number] = None,
    ) -> Transaction:
        """
        Pay out an approved view-tracking record to its creator.

        Args:
            record_id: Approved view-tracking record
            method_id: Creator's destination payment method
            db: Database session
            owner_id: Requesting creator; another creator's record is not found
            amount: Amount the caller expects to be paid; must equal the record's payout

        Raises:
            NotFoundError: Record missing, or not the requester's
            ValidationError: `amount` differs from the approved payout
            InvalidTransitionError: Record is not approved
        """
        record = await self.ledger.get_record(record_id, db)
        if owner_id is not None and record.creator_id != owner_id:
            raise NotFoundError(f"View tracking record {record_id} not found")
        if amount is not None and to_money(amount) != record.payout_calculated:
            raise ValidationError(
                f"Amount must equal the approved payout of ${record.payout_calculated}",
                field="amount",
            )

        if record.payout_status == PayoutStatus.PAID.value:
            existing = await self._find_live(record.id, db)
            if existing is not None:
                return existing
        if record.payout_status != PayoutStatus.APPROVED.value:
            raise InvalidTransitionError(
                f"Payout is {record.payout_status}; only approved payouts can be paid",
                record_id=str(record_id),
            )

        return await self.initiate(
            record.creator_id,
            method_id,
            record.payout_calculated,
            db,
            source_record_id=record.id,
            campaign_id=record.campaign_id,
        )

    async def settle(
        self,
        transaction_id: uuid.UUID,
        outcome: Union[SettlementStatus, TransactionStatus, str],
        db: AsyncSession,
        reason: Optional[str] = None,
        source: str = "reconciliation",
    ) -> Transaction:
        """
        Record an asynchronous settlement outcome.

        Repeating an outcome the transaction already has is a no-op, and a
        pending outcome changes nothing.

        Args:
            transaction_id: Transaction to settle
            outcome: completed or failed (pending is ignored)
            db: Database session
            reason: Failure reason from the provider
            source: Who reported it (reconciliation, webhook:<provider>)

        Raises:
            NotFoundError: Unknown transaction
            InvalidTransitionError: e.g. settling a failed transaction as completed
        """
        target = TransactionStatus(getattr(outcome, "value", outcome))
        if target is TransactionStatus.PENDING:
            return await self.get_transaction(transaction_id, db)
        if target not in (TransactionStatus.COMPLETED, TransactionStatus.FAILED):
            raise ValidationError(f"Unsupported settlement outcome: {target.value}", field="outcome")

        correlation_id = uuid.uuid4()
        async with self.lock.hold(f"transaction:{transaction_id}"):
            transaction = await db.get(Transaction, transaction_id, populate_existing=True)
            if transaction is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            if transaction.status == target.value:
                return transaction

            if target is TransactionStatus.FAILED and reason:
                transaction.error_message = reason
            self._transition(
                transaction, target, db, correlation_id, {"source": source, "reason": reason}
            )

            if target is TransactionStatus.COMPLETED and transaction.source_record_id:
                try:
                    await self.ledger.mark_paid(transaction.source_record_id, db)
                except (NotFoundError, InvalidTransitionError) as e:
                    # Source ids may point at records outside the ledger
                    logger.warning(
                        "source_record_not_marked_paid",
                        transaction_id=str(transaction_id),
                        source_record_id=str(transaction.source_record_id),
                        reason=e.message,
                    )

            await db.commit()

        metrics.record_settlement(transaction.payment_method, target.value)
        logger.info(
            "transaction_settled",
            correlation_id=str(correlation_id),
            transaction_id=str(transaction_id),
            status=target.value,
            source=source,
        )
        return transaction

    async def settle_by_external_ref(
        self,
        external_ref: str,
        outcome: Union[SettlementStatus, TransactionStatus, str],
        db: AsyncSession,
        reason: Optional[str] = None,
        rail: Optional[Rail] = None,
        source: str = "reconciliation",
    ) -> Transaction:
        """Settle the transaction a rail knows as `external_ref`."""
        query = select(Transaction).where(Transaction.external_id == external_ref)
        if rail is not None:
            query = query.where(Transaction.payment_method == Rail(rail).value)
        result = await db.execute(query)
        transaction = result.scalars().first()
        if transaction is None:
            raise NotFoundError(f"No transaction with external reference {external_ref}")
        return await self.settle(transaction.id, outcome, db, reason=reason, source=source)

    async def refund(
        self,
        transaction_id: uuid.UUID,
        db: AsyncSession,
        reason: Optional[str] = None,
    ) -> Transaction:
        """
        Manually mark a completed payout as refunded.

        Raises:
            NotFoundError: Unknown transaction
            InvalidTransitionError: Transaction is not completed
        """
        correlation_id = uuid.uuid4()
        async with self.lock.hold(f"transaction:{transaction_id}"):
            transaction = await db.get(Transaction, transaction_id, populate_existing=True)
            if transaction is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            self._transition(
                transaction,
                TransactionStatus.REFUNDED,
                db,
                correlation_id,
                {"reason": reason},
            )
            await db.commit()

        logger.info(
            "transaction_refunded",
            correlation_id=str(correlation_id),
            transaction_id=str(transaction_id),
            reason=reason,
        )
        return transaction

    async def get_transaction(
        self,
        transaction_id: uuid.UUID,
        db: AsyncSession,
        owner_id: Optional[uuid.UUID] = None,
    ) -> Transaction:
        transaction = await db.get(Transaction, transaction_id)
        if transaction is None or (owner_id is not None and transaction.owner_id != owner_id):
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    async def list_transactions(
        self,
        owner_id: uuid.UUID,
        db: AsyncSession,
        status: Optional[Union[TransactionStatus, str]] = None,
        transaction_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Transaction]:
        """Owner's transactions, newest first."""
        query = select(Transaction).where(Transaction.owner_id == owner_id)
        if status is not None:
            query = query.where(Transaction.status == TransactionStatus(status).value)
        if transaction_type is not None:
            query = query.where(Transaction.transaction_type == transaction_type)
        if start is not None:
            query = query.where(Transaction.created_at >= start)
        if end is not None:
            query = query.where(Transaction.created_at <= end)

        result = await db.execute(
            query.order_by(Transaction.created_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())

    async def list_processing(
        self, db: AsyncSession, limit: int = 100
    ) -> List[Transaction]:
        """Transactions awaiting settlement, oldest first."""
        result = await db.execute(
            select(Transaction)
            .where(
                Transaction.status == TransactionStatus.PROCESSING.value,
                Transaction.external_id.is_not(None),
            )
            .order_by(Transaction.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())


def build_orchestrator(settings: Optional[Settings] = None) -> TransactionOrchestrator:
    """Orchestrator wired to the real provider clients and configured lock backend."""
    settings = settings or get_settings()
    return TransactionOrchestrator(
        rails=build_default_rails(),
        registry=PaymentMethodRegistry(),
        lock=build_lock(settings),
        settings=settings,
    )
