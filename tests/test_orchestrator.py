"""
Integration tests for the backup orchestrator.

Everything runs against in-memory stores with small page and batch sizes
(see conftest.py), so pagination and batching are exercised everywhere.
"""

import asyncio
import json

import pytest

from balance_guard.models.audit import AuditEventType
from balance_guard.models.backup import MergeMode, Snapshot, SnapshotSource
from balance_guard.services.storage import (
    InMemoryKeyValueStore,
    InMemorySnapshotStore,
    InMemoryTransactionStore,
    StorageConnectionError,
    StorageError,
)


class ControllableStore(InMemoryTransactionStore):
    """Ledger whose reads and batch inserts can be made to fail on demand."""

    def __init__(self, records=None):
        super().__init__(records)
        self.fail_reads = False
        self.insert_batches_allowed = None
        self.insert_calls = 0

    async def fetch_page(self, offset, limit):
        if self.fail_reads:
            raise StorageConnectionError("ledger unreachable")
        return await super().fetch_page(offset, limit)

    async def insert_many(self, records):
        self.insert_calls += 1
        if self.insert_batches_allowed is not None and self.insert_calls > self.insert_batches_allowed:
            raise StorageConnectionError("insert failed")
        return await super().insert_many(records)


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


class BlockingInsertStore(InMemoryTransactionStore):
    """insert_many waits until released."""

    def __init__(self, records):
        super().__init__(records)
        self.inserting = asyncio.Event()
        self.release = asyncio.Event()

    async def insert_many(self, records):
        self.inserting.set()
        await self.release.wait()
        return await super().insert_many(records)


class SizeLimitedSnapshotStore(InMemorySnapshotStore):
    """Primary snapshot store that refuses snapshots above a row count."""

    def __init__(self, max_transactions):
        super().__init__()
        self.max_transactions = max_transactions

    async def save_snapshot(self, snapshot):
        if snapshot.transaction_count > self.max_transactions:
            raise StorageError("snapshot too large")
        return await super().save_snapshot(snapshot)


class DownSnapshotStore(InMemorySnapshotStore):
    """Primary snapshot store that is unreachable."""

    async def save_snapshot(self, snapshot):
        raise StorageConnectionError("primary down")

    async def list_snapshots(self):
        raise StorageConnectionError("primary down")

    async def get_snapshot(self, snapshot_id):
        raise StorageConnectionError("primary down")


@pytest.fixture
def ledger(make_record):
    return [
        make_record("Salary", 1000, "salary", date="2024-01-01"),
        make_record("Rent", 500, "rent", type="expense", date="2024-01-02"),
        make_record("Groceries", 82.35, "food", type="expense", date="2024-01-05"),
    ]


def _event_types(audit_storage):
    return {e.event_type for e in asyncio.run(audit_storage.get_recent_events())}


class TestBackup:
    """Tests for creating and listing backups."""

    def test_backup_captures_whole_ledger(self, build_orchestrator, ledger, audit_storage):
        """Test a backup spans every page of the ledger."""
        orchestrator = build_orchestrator(InMemoryTransactionStore(ledger))

        result = asyncio.run(orchestrator.create_backup())

        assert result.success
        assert result.message == "Backup created with 3 transactions"
        assert result.info.transaction_count == 3
        assert result.info.description == "Automatic backup - 3 transactions"
        assert not result.stored_locally_only
        assert {AuditEventType.BACKUP_STARTED, AuditEventType.BACKUP_COMPLETED} <= _event_types(audit_storage)

    def test_backup_is_listed(self, build_orchestrator, ledger):
        """Test that a created backup shows up in the listing."""
        orchestrator = build_orchestrator(InMemoryTransactionStore(ledger))
        result = asyncio.run(orchestrator.create_backup("Manual backup"))

        backups = asyncio.run(orchestrator.list_backups())

        assert [b.id for b in backups] == [result.info.id]
        assert backups[0].description == "Manual backup"
        assert backups[0].date_range.start == "2024-01-01"

    def test_concurrent_backup_is_rejected(self, build_orchestrator, ledger):
        """Test that a second backup while one runs is skipped, not queued."""
        async def scenario():
            store = BlockingFetchStore(ledger)
            orchestrator = build_orchestrator(store)
            first = asyncio.create_task(orchestrator.create_backup())
            await store.started.wait()
            second = await orchestrator.create_backup()
            store.release.set()
            return await first, second, orchestrator

        first, second, orchestrator = asyncio.run(scenario())

        assert first.success
        assert second.skipped
        assert not second.success
        assert second.message == "Backup already in progress"
        assert not orchestrator.is_backup_running
        assert len(asyncio.run(orchestrator.list_backups())) == 1

    def test_backup_refused_by_primary_is_listed(self, build_orchestrator, make_record):
        """Test a backup kept only locally is listed next to the primary's backups."""
        store = InMemoryTransactionStore([make_record("Salary")])
        orchestrator = build_orchestrator(store, primary_snapshots=SizeLimitedSnapshotStore(3))
        small = asyncio.run(orchestrator.create_backup())
        asyncio.run(store.insert_many([make_record(f"Item {i}", i + 1, "misc", type="expense") for i in range(5)]))
        large = asyncio.run(orchestrator.create_backup())

        backups = {b.id: b for b in asyncio.run(orchestrator.list_backups())}

        assert not small.stored_locally_only
        assert large.success
        assert large.stored_locally_only
        assert set(backups) == {small.info.id, large.info.id}
        assert backups[small.info.id].source == SnapshotSource.PRIMARY
        assert backups[large.info.id].source == SnapshotSource.LOCAL
        assert backups[large.info.id].transaction_count == 6

    def test_primary_outage_stores_locally(self, build_orchestrator, ledger, audit_storage):
        """Test a backup during a primary outage is kept in the local cache."""
        orchestrator = build_orchestrator(InMemoryTransactionStore(ledger), primary_snapshots=DownSnapshotStore())

        result = asyncio.run(orchestrator.create_backup())

        assert result.success
        assert result.stored_locally_only
        assert "stored locally only" in result.message
        assert result.info.source == SnapshotSource.LOCAL
        assert AuditEventType.FALLBACK_USED in _event_types(audit_storage)

    def test_backup_fails_when_no_store_accepts_it(self, build_orchestrator, ledger, audit_storage):
        """Test the failure result when primary and local both reject the snapshot."""
        orchestrator = build_orchestrator(
            InMemoryTransactionStore(ledger),
            primary_snapshots=DownSnapshotStore(),
            local_storage=InMemoryKeyValueStore(max_bytes=10),
        )

        result = asyncio.run(orchestrator.create_backup())

        assert not result.success
        assert result.message.startswith("Backup failed:")
        assert AuditEventType.BACKUP_FAILED in _event_types(audit_storage)

    def test_backup_fails_when_ledger_unreadable(self, build_orchestrator, ledger):
        """Test a read failure produces a failed result, not an exception."""
        store = ControllableStore(ledger)
        store.fail_reads = True

        result = asyncio.run(build_orchestrator(store).create_backup())

        assert not result.success
        assert "ledger unreachable" in result.message

    def test_backup_reports_integrity_issues_but_succeeds(self, build_orchestrator, ledger):
        """Test that a dirty ledger is still backed up."""
        ledger[0]["amount"] = -1
        result = asyncio.run(build_orchestrator(InMemoryTransactionStore(ledger)).create_backup())

        assert result.success
        assert "1 transactions have invalid values" in result.integrity_issues

    def test_backup_does_not_move_regression_baseline(self, build_orchestrator, ledger):
        """Test that backups leave the data-loss baseline alone."""
        orchestrator = build_orchestrator(InMemoryTransactionStore(ledger))
        asyncio.run(orchestrator.create_backup())
        assert orchestrator.checker.last_count is None


class TestVerifyBackup:
    """Tests for backup verification."""

    def test_valid_backup(self, build_orchestrator, ledger):
        """Test an untouched backup verifies."""
        orchestrator = build_orchestrator(InMemoryTransactionStore(ledger))
        backup = asyncio.run(orchestrator.create_backup())

        result = asyncio.run(orchestrator.verify_backup(backup.info.id))

        assert result.valid
        assert result.message == "Backup is valid with 3 transactions"

    def test_missing_backup(self, build_orchestrator):
        """Test an unknown id."""
        result = asyncio.run(build_orchestrator().verify_backup("nope"))
        assert not result.valid
        assert result.message == "Backup not found"

    def test_empty_backup(self, build_orchestrator):
        """Test a backup of an empty ledger is not considered valid."""
        orchestrator = build_orchestrator()
        backup = asyncio.run(orchestrator.create_backup())

        result = asyncio.run(orchestrator.verify_backup(backup.info.id))

        assert not result.valid
        assert result.message == "Backup contains no transactions"

    def test_incomplete_rows(self, build_orchestrator, ledger):
        """Test rows missing required fields fail verification."""
        primary = InMemorySnapshotStore()
        del ledger[0]["category"]
        asyncio.run(primary.save_snapshot(Snapshot(transactions=ledger)))
        orchestrator = build_orchestrator(primary_snapshots=primary)
        snapshot_id = asyncio.run(primary.list_snapshots())[0].id

        result = asyncio.run(orchestrator.verify_backup(snapshot_id))

        assert not result.valid
        assert result.message == "1 transactions in backup are missing required fields"

    def test_tampered_backup(self, build_orchestrator, ledger):
        """Test a backup whose contents no longer match its checksum."""
        primary = InMemorySnapshotStore()
        tampered = Snapshot(transactions=ledger, checksum="0" * 64)
        asyncio.run(primary.save_snapshot(tampered))

        result = asyncio.run(build_orchestrator(primary_snapshots=primary).verify_backup(tampered.id))

        assert not result.valid
        assert "checksum mismatch" in result.message


class TestRestore:
    """Tests for restoring from a backup."""

    def test_merge_into_intact_ledger_changes_nothing(self, build_orchestrator, ledger):
        """Test that merging a backup into the ledger it came from is a no-op."""
        store = InMemoryTransactionStore(ledger)
        orchestrator = build_orchestrator(store)
        backup = asyncio.run(orchestrator.create_backup())

        result = asyncio.run(orchestrator.restore_from_backup(backup.info.id, MergeMode.MERGE))

        assert result.success
        assert result.transactions_restored == 0
        assert result.conflicts_resolved == 3
        assert store.records == ledger

    def test_merge_restores_missing_rows(self, build_orchestrator, ledger):
        """Test that lost rows come back without touching the survivors."""
        store = InMemoryTransactionStore(ledger)
        orchestrator = build_orchestrator(store)
        backup = asyncio.run(orchestrator.create_backup())
        asyncio.run(store.delete_many([ledger[0]["id"], ledger[2]["id"]]))

        result = asyncio.run(orchestrator.restore_from_backup(backup.info.id))

        assert result.success
        assert result.transactions_restored == 2
        assert result.conflicts_resolved == 1
        assert sorted(r["id"] for r in store.records) == sorted(r["id"] for r in ledger)

    def test_merge_skips_content_duplicates_with_new_ids(self, build_orchestrator, ledger):
        """Test that a row re-entered under a new id is not restored twice."""
        store = InMemoryTransactionStore(ledger)
        orchestrator = build_orchestrator(store)
        backup = asyncio.run(orchestrator.create_backup())
        asyncio.run(store.delete_all())
        asyncio.run(store.insert_one(dict(ledger[0], id="re-entered")))

        result = asyncio.run(orchestrator.restore_from_backup(backup.info.id, "merge"))

        assert result.transactions_restored == 2
        assert result.conflicts_resolved == 1
        assert len(store.records) == 3

    def test_merge_newer_behaves_like_merge(self, build_orchestrator, ledger):
        """Test the merge-newer mode is accepted and resolves like merge."""
        store = InMemoryTransactionStore(ledger)
        orchestrator = build_orchestrator(store)
        backup = asyncio.run(orchestrator.create_backup())

        result = asyncio.run(orchestrator.restore_from_backup(backup.info.id, MergeMode.MERGE_NEWER))

        assert result.success
        assert result.mode == MergeMode.MERGE_NEWER
        assert result.conflicts_resolved == 3

    def test_replace_restores_exact_backup(self, build_orchestrator, ledger, make_record):
        """Test that replace leaves exactly the backed up rows."""
        store = InMemoryTransactionStore(ledger)
        orchestrator = build_orchestrator(store)
        backup = asyncio.run(orchestrator.create_backup())

        asyncio.run(store.delete_many([ledger[1]["id"]]))
        asyncio.run(store.insert_one(make_record("Coffee", 4, "food", type="expense")))
        asyncio.run(store.insert_one(make_record("Bonus", 300, "salary")))

        result = asyncio.run(orchestrator.restore_from_backup(backup.info.id, MergeMode.REPLACE))

        assert result.success
        assert result.transactions_restored == 3
        assert store.records == ledger

    def test_partial_batch_failure_is_reported(self, build_orchestrator, make_record, audit_storage):
        """Test a failing batch stops the restore and reports what landed."""
        records = [make_record(f"Item {i}", i + 1, "misc", type="expense") for i in range(5)]
        store = ControllableStore(records)
        orchestrator = build_orchestrator(store)
        backup = asyncio.run(orchestrator.create_backup())
        store.insert_batches_allowed = 1

        result = asyncio.run(orchestrator.restore_from_backup(backup.info.id, MergeMode.REPLACE))

        assert not result.success
        assert result.transactions_restored == 2
        assert result.message.startswith("Restore stopped after 2 transactions")
        assert len(store.records) == 2
        assert AuditEventType.RESTORE_FAILED in _event_types(audit_storage)

    def test_pre_restore_backup(self, build_orchestrator, ledger):
        """Test the optional safety backup is taken and reported."""
        orchestrator = build_orchestrator(InMemoryTransactionStore(ledger))
        backup = asyncio.run(orchestrator.create_backup())

        result = asyncio.run(orchestrator.restore_from_backup(
            backup.info.id, MergeMode.REPLACE, create_backup_before_restore=True
        ))

        assert result.success
        assert result.pre_restore_backup_id
        backups = asyncio.run(orchestrator.list_backups())
        assert len(backups) == 2
        assert any(b.description.startswith("Pre-restore backup") for b in backups)

    def test_failed_pre_restore_backup_aborts(self, build_orchestrator, ledger):
        """Test that nothing is written when the safety backup fails."""
        store = ControllableStore(ledger)
        orchestrator = build_orchestrator(store)
        backup = asyncio.run(orchestrator.create_backup())
        store.fail_reads = True

        result = asyncio.run(orchestrator.restore_from_backup(
            backup.info.id, MergeMode.REPLACE, create_backup_before_restore=True
        ))

        assert not result.success
        assert result.message.startswith("Pre-restore backup failed, restore aborted")
        assert store.records == ledger

    def test_tampered_backup_is_refused(self, build_orchestrator, ledger, make_record):
        """Test that a modified backup is never applied."""
        primary = InMemorySnapshotStore()
        tampered = Snapshot(transactions=ledger, checksum="0" * 64)
        asyncio.run(primary.save_snapshot(tampered))
        store = InMemoryTransactionStore([make_record("Keep me")])

        result = asyncio.run(
            build_orchestrator(store, primary_snapshots=primary)
            .restore_from_backup(tampered.id, MergeMode.REPLACE)
        )

        assert not result.success
        assert "checksum mismatch" in result.message
        assert len(store.records) == 1

    def test_backup_during_restore_waits_for_it(self, build_orchestrator, ledger, make_record):
        """Test a backup requested mid-restore runs after it and captures the restored ledger."""
        async def scenario():
            store = BlockingInsertStore(ledger)
            primary = InMemorySnapshotStore()
            orchestrator = build_orchestrator(store, primary_snapshots=primary)
            source = await orchestrator.create_backup()
            await store.insert_one(make_record("Bonus", 300, "salary"))
            finished = []

            async def tracked(name, operation):
                result = await operation
                finished.append(name)
                return result

            restore = asyncio.create_task(tracked(
                "restore", orchestrator.restore_from_backup(source.info.id, MergeMode.REPLACE)
            ))
            await store.inserting.wait()
            backup = asyncio.create_task(tracked("backup", orchestrator.create_backup("During restore")))
            for _ in range(5):
                await asyncio.sleep(0)
            waiting = not backup.done()
            store.release.set()

            restored, during = await asyncio.gather(restore, backup)
            snapshot = await primary.get_snapshot(during.info.id)
            return waiting, finished, restored, during, snapshot

        waiting, finished, restored, during, snapshot = asyncio.run(scenario())

        assert waiting
        assert finished == ["restore", "backup"]
        assert restored.success
        assert during.success
        assert not during.skipped
        assert during.info.transaction_count == 3
        assert sorted(t["id"] for t in snapshot.transactions) == sorted(r["id"] for r in ledger)

    def test_unknown_backup(self, build_orchestrator):
        """Test restoring an id that does not exist."""
        result = asyncio.run(build_orchestrator().restore_from_backup("missing"))
        assert not result.success
        assert result.message == "Backup not found"

    def test_restore_during_primary_outage_uses_local_copy(self, build_orchestrator, ledger):
        """Test that a locally stored backup can be restored while the primary is down."""
        store = InMemoryTransactionStore(ledger)
        orchestrator = build_orchestrator(store, primary_snapshots=DownSnapshotStore())
        backup = asyncio.run(orchestrator.create_backup())
        asyncio.run(store.delete_all())

        result = asyncio.run(orchestrator.restore_from_backup(backup.info.id))

        assert result.success
        assert result.transactions_restored == 3

    def test_restore_resets_regression_baseline(self, build_orchestrator, ledger, make_record):
        """Test that restoring a smaller backup is not reported as data loss."""
        store = InMemoryTransactionStore(ledger)
        orchestrator = build_orchestrator(store)
        backup = asyncio.run(orchestrator.create_backup())
        asyncio.run(store.insert_one(make_record("Bonus", 300, "salary")))
        asyncio.run(orchestrator.run_integrity_check())

        asyncio.run(orchestrator.restore_from_backup(backup.info.id, MergeMode.REPLACE))
        report = asyncio.run(orchestrator.run_integrity_check())

        assert report.passed
        assert not report.data_loss_detected


class TestImportExport:
    """Tests for the interchange file round trip through the ledger."""

    def test_export_then_import_into_empty_ledger(self, build_orchestrator, ledger):
        """Test that an exported ledger can be loaded elsewhere."""
        text = asyncio.run(build_orchestrator(InMemoryTransactionStore(ledger)).export_ledger())
        assert json.loads(text)["totalTransactions"] == 3

        target = InMemoryTransactionStore()
        result = asyncio.run(build_orchestrator(target).import_transactions(text))

        assert result.success
        assert result.transactions_restored == 3
        assert sorted(r["id"] for r in target.records) == sorted(r["id"] for r in ledger)

    def test_import_merge_skips_existing(self, build_orchestrator, ledger):
        """Test importing into the same ledger only reports conflicts."""
        store = InMemoryTransactionStore(ledger)
        orchestrator = build_orchestrator(store)
        text = asyncio.run(orchestrator.export_ledger())

        result = asyncio.run(orchestrator.import_transactions(text))

        assert result.transactions_restored == 0
        assert result.conflicts_resolved == 3
        assert len(store.records) == 3

    def test_invalid_import_changes_nothing(self, build_orchestrator, ledger):
        """Test that a broken file is rejected before any write."""
        store = InMemoryTransactionStore(ledger)

        result = asyncio.run(build_orchestrator(store).import_transactions("{broken", MergeMode.REPLACE))

        assert not result.success
        assert result.message.startswith("Invalid import data")
        assert store.records == ledger

    def test_export_propagates_read_errors(self, build_orchestrator, ledger):
        """Test the export raises when the ledger cannot be read."""
        store = ControllableStore(ledger)
        store.fail_reads = True
        with pytest.raises(StorageConnectionError):
            asyncio.run(build_orchestrator(store).export_ledger())


class TestIntegrityAndCleanup:
    """Tests for live-ledger checks and duplicate cleanup."""

    def test_data_loss_is_alerted_and_audited(self, build_orchestrator, ledger, audit_storage):
        """Test a shrinking ledger raises an alert and a critical audit event."""
        store = InMemoryTransactionStore(ledger)
        orchestrator = build_orchestrator(store)
        asyncio.run(orchestrator.run_integrity_check())
        asyncio.run(store.delete_many([ledger[0]["id"]]))

        report = asyncio.run(orchestrator.run_integrity_check())

        assert report.data_loss_detected
        assert len(orchestrator.get_alerts()) == 1
        assert AuditEventType.DATA_LOSS_DETECTED in _event_types(audit_storage)

    def test_integrity_check_waits_for_running_restore(self, build_orchestrator, ledger, audit_storage):
        """Test a check during a replace restore never sees the half-rebuilt ledger."""
        async def scenario():
            store = BlockingInsertStore(ledger)
            orchestrator = build_orchestrator(store)
            source = await orchestrator.create_backup()
            await orchestrator.run_integrity_check()

            restore = asyncio.create_task(
                orchestrator.restore_from_backup(source.info.id, MergeMode.REPLACE)
            )
            await store.inserting.wait()
            check = asyncio.create_task(orchestrator.run_integrity_check())
            for _ in range(5):
                await asyncio.sleep(0)
            waiting = not check.done()
            store.release.set()

            restored, report = await asyncio.gather(restore, check)
            return waiting, restored, report, orchestrator

        waiting, restored, report, orchestrator = asyncio.run(scenario())

        assert waiting
        assert restored.success
        assert report.transaction_count == 3
        assert report.passed
        assert not report.data_loss_detected
        assert orchestrator.get_alerts() == []
        assert AuditEventType.DATA_LOSS_DETECTED not in _event_types(audit_storage)

    def test_unreadable_ledger_fails_the_check(self, build_orchestrator, ledger):
        """Test a read error becomes a failed report."""
        store = ControllableStore(ledger)
        store.fail_reads = True

        report = asyncio.run(build_orchestrator(store).run_integrity_check())

        assert not report.passed
        assert report.issues[0].startswith("Database error")

    def test_cleanup_removes_duplicates_without_false_data_loss(self, build_orchestrator, ledger):
        """Test that a cleanup shrinking the ledger is not reported as loss."""
        store = InMemoryTransactionStore(ledger + [dict(ledger[0], id="copy")])
        orchestrator = build_orchestrator(store)
        asyncio.run(orchestrator.run_integrity_check())

        result = asyncio.run(orchestrator.cleanup_duplicates())
        report = asyncio.run(orchestrator.run_integrity_check())

        assert result.success
        assert result.duplicates_removed == 1
        assert report.passed
        assert orchestrator.get_alerts() == []

    def test_concurrent_cleanup_is_rejected(self, build_orchestrator, ledger):
        """Test a second cleanup request while one is pending."""
        async def scenario():
            store = BlockingFetchStore(ledger)
            orchestrator = build_orchestrator(store)
            first = asyncio.create_task(orchestrator.cleanup_duplicates())
            await store.started.wait()
            second = await orchestrator.cleanup_duplicates()
            store.release.set()
            return await first, second

        first, second = asyncio.run(scenario())

        assert first.success
        assert second.skipped
