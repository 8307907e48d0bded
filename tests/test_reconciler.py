"""Tests for duplicate cleanup and accidental-duplicate prevention."""

import asyncio
import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from balance_guard.config import DuplicateSettings
from balance_guard.models.audit import AuditEventType
from balance_guard.models.backup import InsertAction
from balance_guard.models.transaction import Transaction
from balance_guard.reconcile import DuplicateReconciler, find_duplicate_ids
from balance_guard.services.storage import InMemoryTransactionStore, StorageConnectionError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FailingDeleteStore(InMemoryTransactionStore):
    """Deletes succeed for the first ``ok_batches`` calls, then fail."""

    def __init__(self, records, ok_batches):
        super().__init__(records)
        self.ok_batches = ok_batches
        self.delete_calls = 0

    async def delete_many(self, ids):
        self.delete_calls += 1
        if self.delete_calls > self.ok_batches:
            raise StorageConnectionError("delete failed")
        return await super().delete_many(ids)


class FailingQueryStore(InMemoryTransactionStore):
    async def find_by_content(self, key, created_after, limit=1):
        raise StorageConnectionError("query failed")


class BlockingFetchStore(InMemoryTransactionStore):
    """fetch_page waits until released."""

    def __init__(self, records):
        super().__init__(records)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_page(self, offset, limit):
        self.started.set()
        await self.release.wait()
        return await super().fetch_page(offset, limit)


class SlowInsertStore(InMemoryTransactionStore):
    """insert_one waits until released, so a second click can arrive mid-insert."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def insert_one(self, record):
        self.started.set()
        await self.release.wait()
        return await super().insert_one(record)


def _reconciler(store, audit_logger=None, **settings):
    return DuplicateReconciler(
        store,
        settings=DuplicateSettings(**settings),
        page_size=2,
        audit_logger=audit_logger,
        clock=lambda: NOW,
    )


def _candidate(**overrides):
    data = dict(type="income", amount=Decimal("1000"), currency="USD",
                category="salary", description="Salary", date="2024-01-01")
    data.update(overrides)
    return Transaction(**data)


class TestFindDuplicateIds:
    """Tests for content-duplicate detection."""

    def test_keeps_oldest_of_each_key(self, make_record):
        """Test that the first-created row survives."""
        a = make_record("Salary")
        b = make_record("Rent", 500, "rent", type="expense")
        c = make_record("Salary")
        assert find_duplicate_ids([c, b, a]) == [c["id"]]

    def test_order_independent(self, make_record):
        """Test that any permutation marks the same rows."""
        records = [make_record("Salary"), make_record("Rent", 500, "rent"),
                   make_record("Salary"), make_record("Salary"), make_record("Rent", 500, "rent")]
        expected = set(find_duplicate_ids(records))
        rng = random.Random(3)
        for _ in range(10):
            shuffled = list(records)
            rng.shuffle(shuffled)
            assert set(find_duplicate_ids(shuffled)) == expected
        assert len(expected) == 3


class TestBulkCleanup:
    """Tests for bulk duplicate cleanup."""

    def test_end_to_end_three_transactions(self, make_record):
        """Test the salary/rent/salary ledger loses exactly one row."""
        store = InMemoryTransactionStore([
            make_record("Salary", 1000, "salary", date="2024-01-01"),
            make_record("Rent", 500, "rent", type="expense", date="2024-01-02"),
            make_record("Salary", 1000, "salary", date="2024-01-01"),
        ])

        result = asyncio.run(_reconciler(store).cleanup_duplicates())

        assert result.success
        assert result.duplicates_removed == 1
        assert [r["id"] for r in store.records] == ["tx-1", "tx-2"]

    def test_no_duplicates(self, make_record):
        """Test a clean ledger is left alone."""
        store = InMemoryTransactionStore([make_record("A"), make_record("B")])
        result = asyncio.run(_reconciler(store).cleanup_duplicates())

        assert result.success
        assert result.duplicates_removed == 0
        assert len(store.records) == 2

    def test_partial_failure_reports_removed_count(self, make_record, audit_logger, audit_storage):
        """Test that a failing batch stops the cleanup and reports progress."""
        records = [make_record("Salary") for _ in range(6)]
        store = FailingDeleteStore(records, ok_batches=1)

        result = asyncio.run(_reconciler(store, audit_logger, cleanup_batch_size=2).cleanup_duplicates())

        assert not result.success
        assert result.duplicates_removed == 2
        assert len(store.records) == 4
        assert store.delete_calls == 2

        events = asyncio.run(audit_storage.get_recent_events())
        assert events[0].event_type == AuditEventType.CLEANUP_FAILED

    def test_single_flight(self, make_record):
        """Test that a second cleanup during the first is rejected."""
        records = [make_record("Salary"), make_record("Salary")]

        async def scenario():
            store = BlockingFetchStore(records)
            reconciler = _reconciler(store)
            first = asyncio.create_task(reconciler.cleanup_duplicates())
            await store.started.wait()
            assert reconciler.is_cleanup_running
            second = await reconciler.cleanup_duplicates()
            store.release.set()
            return await first, second, reconciler

        first, second, reconciler = asyncio.run(scenario())

        assert first.success and first.duplicates_removed == 1
        assert second.skipped
        assert not second.success
        assert not reconciler.is_cleanup_running


class TestAccidentalDuplicates:
    """Tests for write-time duplicate prevention."""

    def _store_with_existing(self, minutes_ago):
        existing = _candidate().to_record()
        existing.update(id="existing", created_at=(NOW - timedelta(minutes=minutes_ago)).isoformat())
        return InMemoryTransactionStore([existing])

    def test_four_minutes_apart_is_duplicate(self):
        """Test an identical submission inside the window is flagged."""
        reconciler = _reconciler(self._store_with_existing(4))

        result = asyncio.run(reconciler.check_for_accidental_duplicate(_candidate().to_record()))

        assert result.is_accidental_duplicate
        assert result.existing_transaction_id == "existing"
        assert result.time_diff_minutes == 4

    def test_six_minutes_apart_is_not_duplicate(self):
        """Test an identical submission outside the window is allowed."""
        reconciler = _reconciler(self._store_with_existing(6))

        result = asyncio.run(reconciler.check_for_accidental_duplicate(_candidate().to_record()))

        assert not result.is_accidental_duplicate

    def test_minutes_are_floored(self):
        """Test elapsed time is reported in whole minutes."""
        store = self._store_with_existing(0)
        store._records[0]["created_at"] = (NOW - timedelta(minutes=2, seconds=59)).isoformat()

        result = asyncio.run(_reconciler(store).check_for_accidental_duplicate(_candidate().to_record()))

        assert result.time_diff_minutes == 2

    def test_different_content_is_not_duplicate(self):
        """Test a different amount inside the window is allowed."""
        reconciler = _reconciler(self._store_with_existing(1))

        result = asyncio.run(reconciler.check_for_accidental_duplicate(
            _candidate(amount=Decimal("1001")).to_record()
        ))

        assert not result.is_accidental_duplicate

    @pytest.mark.parametrize("kwargs", [{"intentional": True}, {"source": "duplicate-action"}])
    def test_intentional_duplicate_bypasses_check(self, kwargs):
        """Test that a deliberate duplicate is always allowed."""
        reconciler = _reconciler(self._store_with_existing(1))

        result = asyncio.run(reconciler.check_for_accidental_duplicate(_candidate().to_record(), **kwargs))

        assert not result.is_accidental_duplicate
        assert "Intentional" in result.message

    def test_store_error_allows_insert_and_clears_pending(self):
        """Test that a failing lookup never blocks data entry."""
        reconciler = _reconciler(FailingQueryStore())

        result = asyncio.run(reconciler.check_for_accidental_duplicate(_candidate().to_record()))

        assert not result.is_accidental_duplicate
        assert "Error checking" in result.message
        assert reconciler.pending_count == 0

    def test_pending_released_after_check(self):
        """Test the in-flight marker is removed on success too."""
        reconciler = _reconciler(self._store_with_existing(1))
        asyncio.run(reconciler.check_for_accidental_duplicate(_candidate().to_record()))
        assert reconciler.pending_count == 0


class TestSafeInsert:
    """Tests for the guarded single insert."""

    def test_inserts_new_transaction(self):
        """Test a fresh transaction is stored."""
        store = InMemoryTransactionStore(clock=lambda: NOW)
        result = asyncio.run(_reconciler(store).safe_insert(_candidate()))

        assert result.action == InsertAction.INSERTED
        assert result.id
        assert store.records[0]["created_at"] == NOW.isoformat()

    def test_second_submission_is_rejected(self):
        """Test submitting the same transaction twice within the window."""
        store = InMemoryTransactionStore(clock=lambda: NOW)
        reconciler = _reconciler(store)

        first = asyncio.run(reconciler.safe_insert(_candidate()))
        second = asyncio.run(reconciler.safe_insert(_candidate()))

        assert first.action == InsertAction.INSERTED
        assert second.action == InsertAction.DUPLICATE
        assert second.id == first.id
        assert len(store.records) == 1

    def test_double_click_during_insert(self):
        """Test a second click while the first insert is still in flight."""
        async def scenario():
            store = SlowInsertStore(clock=lambda: NOW)
            reconciler = _reconciler(store)

            first = asyncio.create_task(reconciler.safe_insert(_candidate()))
            await store.started.wait()
            second = await reconciler.safe_insert(_candidate())
            store.release.set()
            return await first, second, store, reconciler

        first, second, store, reconciler = asyncio.run(scenario())

        assert first.action == InsertAction.INSERTED
        assert second.action == InsertAction.DUPLICATE
        assert "double-click" in second.message
        assert len(store.records) == 1
        assert reconciler.pending_count == 0

    def test_intentional_duplicate_is_inserted(self):
        """Test the explicit duplicate action."""
        store = InMemoryTransactionStore(clock=lambda: NOW)
        reconciler = _reconciler(store)

        asyncio.run(reconciler.safe_insert(_candidate()))
        result = asyncio.run(reconciler.safe_insert(_candidate(), source="duplicate-action"))

        assert result.action == InsertAction.INSERTED
        assert len(store.records) == 2

    def test_clear_pending(self):
        """Test the in-flight set can be reset."""
        reconciler = _reconciler(InMemoryTransactionStore())
        reconciler._pending.add(_candidate().content_key)
        assert reconciler.pending_count == 1
        reconciler.clear_pending()
        assert reconciler.pending_count == 0
