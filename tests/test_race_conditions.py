"""
Race condition tests for concurrent payout requests.

Tests the per-source lock and the live-transaction unique index under
concurrent load.
"""
import asyncio
import uuid
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from payout_engine.core.exceptions import LockUnavailableError
from payout_engine.core.locks import LocalKeyedLock, RedisKeyedLock
from payout_engine.core.orchestrator import TransactionOrchestrator
from payout_engine.database.models import Rail, Transaction, TransactionStatus


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_payouts_same_source(
        self, orchestrator, fake_rails, session_factory, owner_id, paypal_method
    ) -> None:
        """
        Test concurrent payout requests for the same source record.

        Should create one transaction and call the rail once, with every
        caller getting that transaction back.
        """
        fake_rails[Rail.PAYPAL].delay = 0.05
        source_id = uuid.uuid4()

        async def request_payout() -> Transaction:
            async with session_factory() as db:
                return await orchestrator.initiate(
                    owner_id, paypal_method.id, Decimal("100"), db, source_record_id=source_id
                )

        results = await asyncio.gather(*(request_payout() for _ in range(5)))

        assert len({tx.id for tx in results}) == 1, "Multiple transactions for one source"
        assert len(fake_rails[Rail.PAYPAL].calls) == 1
        assert len(orchestrator.lock) == 0

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_payouts_different_sources(
        self, orchestrator, fake_rails, session_factory, owner_id, paypal_method
    ) -> None:
        """
        Test concurrent payout requests for different source records.

        Should create distinct transactions.
        """

        async def request_payout() -> Transaction:
            async with session_factory() as db:
                return await orchestrator.initiate(
                    owner_id,
                    paypal_method.id,
                    Decimal("100"),
                    db,
                    source_record_id=uuid.uuid4(),
                )

        results = await asyncio.gather(*(request_payout() for _ in range(3)))

        assert len({tx.id for tx in results}) == 3
        assert len({tx.idempotency_key for tx in results}) == 3
        assert len(fake_rails[Rail.PAYPAL].calls) == 3

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_unique_index_resolves_duplicate_from_other_worker(
        self, orchestrator, fake_rails, test_db, owner_id, paypal_method
    ) -> None:
        """
        Test a second worker that misses the live check.

        The database rejects the insert and the existing transaction is
        returned without calling the rail.
        """
        source_id = uuid.uuid4()
        existing = Transaction(
            id=uuid.uuid4(),
            owner_id=owner_id,
            source_record_id=source_id,
            payment_method_id=paypal_method.id,
            payment_method=Rail.PAYPAL.value,
            payment_method_snapshot={"email": "creator@example.com"},
            amount=Decimal("100.00"),
            platform_fee=Decimal("10.00"),
            processing_fee=Decimal("2.90"),
            fee=Decimal("12.90"),
            net_amount=Decimal("87.10"),
            status=TransactionStatus.PROCESSING.value,
            external_id="other-worker-ref",
            idempotency_key="payout-other-worker",
        )
        test_db.add(existing)
        await test_db.commit()

        real_find_live = orchestrator._find_live
        lookups = []

        async def find_live_missing_first(source_record_id, db):
            lookups.append(source_record_id)
            if len(lookups) == 1:
                return None
            return await real_find_live(source_record_id, db)

        with patch.object(orchestrator, "_find_live", new=find_live_missing_first):
            tx = await orchestrator.initiate(
                owner_id, paypal_method.id, Decimal("100"), test_db, source_record_id=source_id
            )

        assert tx.id == existing.id
        assert len(lookups) == 2
        assert fake_rails[Rail.PAYPAL].calls == []

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_settlement_applied_once(
        self, orchestrator, session_factory, test_db, owner_id, paypal_method
    ) -> None:
        """
        Test a webhook and a reconciliation pass settling at the same time.
        """
        tx = await orchestrator.initiate(owner_id, paypal_method.id, Decimal("100"), test_db)

        async def settle(source: str) -> Transaction:
            async with session_factory() as db:
                return await orchestrator.settle(tx.id, "completed", db, source=source)

        results = await asyncio.gather(settle("webhook:paypal"), settle("reconciliation"))

        assert {r.status for r in results} == {"completed"}


class TestKeyedLocks:
    """Test lock backends."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_local_lock_serializes_same_key(self) -> None:
        lock = LocalKeyedLock()
        order = []

        async def worker(name: str) -> None:
            async with lock.hold("source:1"):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (
            ["a-start", "a-end", "b-start", "b-end"],
            ["b-start", "b-end", "a-start", "a-end"],
        )
        assert len(lock) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_local_lock_different_keys_do_not_block(self) -> None:
        lock = LocalKeyedLock()

        async with lock.hold("source:1"):
            await asyncio.wait_for(self._enter(lock, "source:2"), timeout=1)

    @staticmethod
    async def _enter(lock: LocalKeyedLock, key: str) -> None:
        async with lock.hold(key):
            pass

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_lock_acquire_and_release(self) -> None:
        redlock = MagicMock()
        handle = MagicMock()
        redlock.lock.return_value = handle

        lock = RedisKeyedLock(ttl_seconds=30, redlock=redlock)
        async with lock.hold("source:abc"):
            redlock.lock.assert_called_once_with("payout:lock:source:abc", 30000)
            redlock.unlock.assert_not_called()

        redlock.unlock.assert_called_once_with(handle)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_lock_unavailable(self) -> None:
        redlock = MagicMock()
        redlock.lock.return_value = False

        lock = RedisKeyedLock(ttl_seconds=30, redlock=redlock)
        with pytest.raises(LockUnavailableError):
            async with lock.hold("source:abc"):
                pytest.fail("lock body must not run")

        redlock.unlock.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lock_unavailable_propagates_from_initiate(
        self, rail_registry, registry, ledger, test_settings, fake_rails, test_db, owner_id, paypal_method
    ) -> None:
        redlock = MagicMock()
        redlock.lock.return_value = False
        orchestrator = TransactionOrchestrator(
            rail_registry,
            registry,
            ledger=ledger,
            lock=RedisKeyedLock(ttl_seconds=30, redlock=redlock),
            settings=test_settings,
        )

        with pytest.raises(LockUnavailableError):
            await orchestrator.initiate(
                owner_id, paypal_method.id, Decimal("100"), test_db, source_record_id=uuid.uuid4()
            )
        assert fake_rails[Rail.PAYPAL].calls == []
