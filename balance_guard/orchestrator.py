"""
Backup/Restore Orchestrator for Balance Guard

This module ties together the stores, the integrity checker and the
duplicate reconciler, and defines the end-to-end flows for:
1. Backup (fetch all pages -> validate -> checksum -> snapshot -> mirror)
2. Restore (fetch snapshot -> verify -> safety backup -> plan -> batch insert)
3. Import (parse file -> plan -> batch insert)
4. Integrity check and duplicate cleanup on the live ledger

DESIGN DECISION: The orchestrator enforces the boundaries:
- Every public operation returns a result object, never raises on store errors
- Backup, restore, import, cleanup and integrity checks never overlap
  (one shared lock)
- A second backup request while one is running is rejected, not queued
- Every step is audited

Partial failures are reported, never rolled back: a restore that fails on
batch K leaves batches 1..K-1 in place and says so. The pre-restore safety
backup is the way back.
"""

import asyncio
from typing import Optional, Sequence
from uuid import UUID

import structlog

from balance_guard.audit import AuditLogger, create_correlation_id
from balance_guard.config import BackupSettings, get_settings
from balance_guard.models.backup import (
    BackupInfo,
    BackupResult,
    CleanupResult,
    MergeMode,
    RestoreResult,
    SnapshotSource,
    VerificationResult,
)
from balance_guard.models.integrity import DataLossAlert, IntegrityReport
from balance_guard.models.transaction import (
    TransactionRecord,
    content_key,
    missing_required_fields,
)
from balance_guard.reconcile import DuplicateReconciler
from balance_guard.services.export import SnapshotFormatError, export_data, import_data
from balance_guard.services.fallback_cache import LocalSnapshotCache
from balance_guard.services.snapshots import SnapshotStore, snapshot_info
from balance_guard.services.storage import (
    BatchWriteError,
    FileKeyValueStore,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsSnapshotStore,
    GoogleSheetsTransactionStore,
    InMemorySnapshotStore,
    InMemoryTransactionStore,
    StorageError,
    TransactionStoreInterface,
    fetch_all_transactions,
    run_in_batches,
)
from balance_guard.validation import IntegrityChecker, compute_checksum

logger = structlog.get_logger(__name__)


class BackupOrchestrator:
    """
    Drives backup, restore and ledger hygiene for one ledger.

    Construct once and share; the single-flight flags and the lock only
    work if every caller goes through the same instance.
    """

    def __init__(
        self,
        transactions: TransactionStoreInterface,
        snapshots: SnapshotStore,
        checker: Optional[IntegrityChecker] = None,
        reconciler: Optional[DuplicateReconciler] = None,
        settings: Optional[BackupSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._transactions = transactions
        self._snapshots = snapshots
        self._settings = settings or get_settings().backup
        self._audit = audit_logger or AuditLogger()
        self._checker = checker or IntegrityChecker()
        self._reconciler = reconciler or DuplicateReconciler(
            transactions,
            page_size=self._settings.page_size,
            audit_logger=self._audit,
        )

        # Guards every operation that reads or mutates the whole ledger
        self._lock = asyncio.Lock()
        self._backup_running = False
        self._cleanup_requested = False

    @property
    def checker(self) -> IntegrityChecker:
        return self._checker

    @property
    def reconciler(self) -> DuplicateReconciler:
        return self._reconciler

    @property
    def is_backup_running(self) -> bool:
        return self._backup_running

    async def _fetch_ledger(self) -> list[TransactionRecord]:
        return await fetch_all_transactions(self._transactions, self._settings.page_size)

    # =========================================================================
    # BACKUP
    # =========================================================================

    async def create_backup(self, description: Optional[str] = None) -> BackupResult:
        """
        Snapshot the whole ledger.

        Returns immediately with ``skipped=True`` if a backup is already
        running. Waits for a running restore, import or cleanup.
        """
        correlation_id = create_correlation_id()

        if self._backup_running:
            logger.info("backup_skipped", reason="already running")
            await self._audit.log_backup_skipped("Backup already in progress", correlation_id)
            return BackupResult(
                success=False,
                message="Backup already in progress",
                skipped=True,
            )

        self._backup_running = True
        try:
            async with self._lock:
                return await self._backup(description, correlation_id)
        finally:
            self._backup_running = False

    async def _backup(
        self,
        description: Optional[str],
        correlation_id: UUID,
    ) -> BackupResult:
        """Backup body; the caller holds the lock."""
        await self._audit.log_backup_started(description or "", correlation_id)

        try:
            records = await self._fetch_ledger()
            report = self._checker.check(records, track=False)

            snapshot = self._snapshots.build_snapshot(
                records,
                description or f"Automatic backup - {len(records)} transactions",
            )
            source = await self._snapshots.save_snapshot(snapshot)

        except StorageError as e:
            logger.error("backup_failed", error=str(e))
            await self._audit.log_backup_failed(str(e), correlation_id)
            return BackupResult(success=False, message=f"Backup failed: {e}")

        except Exception as e:
            logger.exception("backup_unexpected_error")
            await self._audit.log_error(type(e).__name__, str(e), {"operation": "backup"}, correlation_id)
            await self._audit.log_backup_failed(str(e), correlation_id)
            return BackupResult(success=False, message=f"Backup failed: {e}")

        locally_only = source == SnapshotSource.LOCAL
        info = snapshot_info(snapshot, source)

        await self._audit.log_backup_completed(
            snapshot_id=snapshot.id,
            transaction_count=snapshot.transaction_count,
            checksum=snapshot.checksum,
            locally_only=locally_only,
            correlation_id=correlation_id,
        )
        logger.info(
            "backup_completed",
            snapshot_id=snapshot.id,
            transaction_count=snapshot.transaction_count,
            locally_only=locally_only,
        )

        message = f"Backup created with {snapshot.transaction_count} transactions"
        if locally_only:
            message += " (stored locally only, primary store unavailable)"

        return BackupResult(
            success=True,
            message=message,
            info=info,
            stored_locally_only=locally_only,
            integrity_issues=report.issues,
        )

    async def list_backups(self) -> list[BackupInfo]:
        """Stored backups, newest first. Empty when no store can answer."""
        try:
            return await self._snapshots.list_infos()
        except StorageError as e:
            logger.error("list_backups_failed", error=str(e))
            return []

    async def verify_backup(self, backup_id: str) -> VerificationResult:
        """Check that a stored backup exists, is complete and is unmodified."""
        try:
            snapshot = await self._snapshots.get_snapshot(backup_id)
        except StorageError as e:
            return VerificationResult(valid=False, message=f"Verification failed: {e}")

        if snapshot is None:
            return VerificationResult(valid=False, message="Backup not found")

        if not snapshot.transactions:
            return VerificationResult(valid=False, message="Backup contains no transactions")

        incomplete = sum(1 for t in snapshot.transactions if missing_required_fields(t))
        if incomplete:
            return VerificationResult(
                valid=False,
                message=f"{incomplete} transactions in backup are missing required fields",
            )

        if snapshot.checksum and compute_checksum(snapshot.transactions) != snapshot.checksum:
            return VerificationResult(
                valid=False,
                message="Backup checksum mismatch - contents were modified",
            )

        return VerificationResult(
            valid=True,
            message=f"Backup is valid with {snapshot.transaction_count} transactions",
        )

    # =========================================================================
    # RESTORE AND IMPORT
    # =========================================================================

    async def restore_from_backup(
        self,
        backup_id: str,
        mode: MergeMode = MergeMode.MERGE,
        create_backup_before_restore: bool = False,
    ) -> RestoreResult:
        """
        Restore the ledger from a stored backup.

        Args:
            backup_id: Snapshot to restore
            mode: replace, merge or merge-newer
            create_backup_before_restore: Snapshot the current ledger first;
                if that backup fails nothing is restored
        """
        mode = MergeMode(mode)
        correlation_id = create_correlation_id()

        async with self._lock:
            try:
                return await self._restore(
                    backup_id, mode, create_backup_before_restore, correlation_id
                )
            except Exception as e:
                logger.exception("restore_unexpected_error")
                await self._audit.log_error(
                    type(e).__name__, str(e), {"operation": "restore", "backup_id": backup_id}, correlation_id
                )
                return await self._restore_failed(
                    backup_id, mode, f"Restore failed: {e}", correlation_id
                )

    async def _restore(
        self,
        backup_id: str,
        mode: MergeMode,
        create_backup_before_restore: bool,
        correlation_id: UUID,
    ) -> RestoreResult:
        """Restore body; the caller holds the lock."""
        await self._audit.log_restore_started(backup_id, mode.value, correlation_id)

        try:
            snapshot = await self._snapshots.get_snapshot(backup_id)
        except StorageError as e:
            return await self._restore_failed(
                backup_id, mode, f"Failed to load backup: {e}", correlation_id
            )

        if snapshot is None:
            return await self._restore_failed(
                backup_id, mode, "Backup not found", correlation_id
            )

        if (
            self._settings.verify_checksum_on_restore
            and snapshot.checksum
            and compute_checksum(snapshot.transactions) != snapshot.checksum
        ):
            return await self._restore_failed(
                backup_id,
                mode,
                "Backup checksum mismatch - refusing to restore modified data",
                correlation_id,
            )

        pre_restore_id = None
        if create_backup_before_restore:
            safety = await self._backup(
                f"Pre-restore backup before restoring {backup_id}",
                correlation_id,
            )
            if not safety.success:
                return await self._restore_failed(
                    backup_id,
                    mode,
                    f"Pre-restore backup failed, restore aborted: {safety.message}",
                    correlation_id,
                )
            pre_restore_id = safety.info.id

        return await self._apply(
            snapshot.transactions,
            mode,
            backup_id,
            correlation_id,
            pre_restore_id,
        )

    async def import_transactions(
        self,
        text: str,
        mode: MergeMode = MergeMode.MERGE,
    ) -> RestoreResult:
        """Apply an export file to the ledger through the restore pipeline."""
        mode = MergeMode(mode)
        correlation_id = create_correlation_id()

        try:
            records = import_data(text)
        except SnapshotFormatError as e:
            logger.warning("import_rejected", error=str(e))
            return RestoreResult(success=False, message=str(e), mode=mode)

        async with self._lock:
            await self._audit.log_restore_started("import", mode.value, correlation_id)
            try:
                return await self._apply(records, mode, "import", correlation_id)
            except Exception as e:
                logger.exception("import_unexpected_error")
                await self._audit.log_error(type(e).__name__, str(e), {"operation": "import"}, correlation_id)
                return await self._restore_failed(
                    "import", mode, f"Import failed: {e}", correlation_id
                )

    async def _apply(
        self,
        records: Sequence[TransactionRecord],
        mode: MergeMode,
        source_id: str,
        correlation_id: UUID,
        pre_restore_id: Optional[str] = None,
    ) -> RestoreResult:
        """Write ``records`` into the ledger under ``mode``; the caller holds the lock."""
        to_insert = list(records)
        conflicts = 0

        try:
            if mode == MergeMode.REPLACE:
                removed = await self._transactions.delete_all()
                logger.info("restore_cleared_ledger", removed=removed)
            else:
                if mode == MergeMode.MERGE_NEWER:
                    logger.info("merge_newer_as_merge", note="timestamps are not compared")
                current = await self._fetch_ledger()
                to_insert, conflicts = self._plan_merge(records, current)
                logger.info("restore_merge_plan", new=len(to_insert), conflicts=conflicts)

        except StorageError as e:
            action = "clear current transactions" if mode == MergeMode.REPLACE else "read current transactions"
            return await self._restore_failed(
                source_id,
                mode,
                f"Failed to {action}: {e}",
                correlation_id,
                pre_restore_id=pre_restore_id,
            )

        try:
            restored = await run_in_batches(
                to_insert,
                self._settings.restore_batch_size,
                self._transactions.insert_many,
                label="restore_insert",
            )
        except BatchWriteError as e:
            self._checker.clear_baseline()
            return await self._restore_failed(
                source_id,
                mode,
                f"Restore stopped after {e.completed} transactions: {e}",
                correlation_id,
                restored=e.completed,
                conflicts=conflicts,
                pre_restore_id=pre_restore_id,
            )

        self._checker.clear_baseline()
        await self._audit.log_restore_completed(
            source_id=source_id,
            mode=mode.value,
            restored=restored,
            conflicts=conflicts,
            correlation_id=correlation_id,
        )

        return RestoreResult(
            success=True,
            message=f"Restore completed: {restored} restored, {conflicts} conflicts skipped",
            transactions_restored=restored,
            conflicts_resolved=conflicts,
            mode=mode,
            pre_restore_backup_id=pre_restore_id,
        )

    @staticmethod
    def _plan_merge(
        incoming: Sequence[TransactionRecord],
        current: Sequence[TransactionRecord],
    ) -> tuple[list[TransactionRecord], int]:
        """Split ``incoming`` into rows to insert and a count of conflicts."""
        existing_ids = {t.get("id") for t in current}
        existing_keys = {content_key(t) for t in current}

        to_insert = []
        conflicts = 0
        for record in incoming:
            if record.get("id") in existing_ids or content_key(record) in existing_keys:
                conflicts += 1
            else:
                to_insert.append(record)
        return to_insert, conflicts

    async def _restore_failed(
        self,
        source_id: str,
        mode: MergeMode,
        message: str,
        correlation_id: UUID,
        restored: int = 0,
        conflicts: int = 0,
        pre_restore_id: Optional[str] = None,
    ) -> RestoreResult:
        logger.error("restore_failed", source_id=source_id, mode=mode.value, error=message)
        await self._audit.log_restore_failed(
            source_id=source_id,
            mode=mode.value,
            restored=restored,
            error_message=message,
            correlation_id=correlation_id,
        )
        return RestoreResult(
            success=False,
            message=message,
            transactions_restored=restored,
            conflicts_resolved=conflicts,
            mode=mode,
            pre_restore_backup_id=pre_restore_id,
        )

    # =========================================================================
    # INTEGRITY AND HYGIENE
    # =========================================================================

    async def run_integrity_check(self) -> IntegrityReport:
        """
        Check the live ledger and update the regression baseline.

        Waits for a running restore, import or cleanup, so a half-rebuilt
        ledger is never compared against the baseline.
        """
        if self._lock.locked():
            logger.info("integrity_check_waiting", reason="ledger operation in progress")

        async with self._lock:
            try:
                records = await self._fetch_ledger()
            except StorageError as e:
                logger.error("integrity_fetch_failed", error=str(e))
                return IntegrityReport.failure(f"Database error: {e}")

            previous_count = self._checker.last_count
            report = self._checker.check(records)

        await self._audit.log_integrity_checked(
            passed=report.passed,
            transaction_count=report.transaction_count,
            issues=report.issues,
            checksum=report.checksum,
        )
        if report.data_loss_detected:
            await self._audit.log_data_loss(previous_count or 0, report.transaction_count)

        return report

    async def cleanup_duplicates(self) -> CleanupResult:
        """Remove content duplicates; rejected while another cleanup is pending."""
        if self._cleanup_requested or self._reconciler.is_cleanup_running:
            return CleanupResult(
                success=False,
                message="Cleanup already in progress",
                skipped=True,
            )

        self._cleanup_requested = True
        try:
            async with self._lock:
                result = await self._reconciler.cleanup_duplicates()
        finally:
            self._cleanup_requested = False

        if result.duplicates_removed:
            self._checker.clear_baseline()
        return result

    async def export_ledger(self) -> str:
        """
        Export the live ledger as an interchange file.

        Raises:
            StorageError: If the ledger cannot be read
        """
        async with self._lock:
            records = await self._fetch_ledger()
        return export_data(records, self._settings.export_version)

    def get_alerts(self) -> list[DataLossAlert]:
        return self._checker.get_alerts()


def create_app_components(
    use_storage: bool = True,
) -> tuple[BackupOrchestrator, Optional[GoogleSheetsClient]]:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to initialize Google Sheets storage.
                    Set to False to run against an in-memory ledger.

    Returns:
        (orchestrator, sheets_client)
    """
    settings = get_settings()
    sheets_client = None
    transactions = None
    primary_snapshots = None
    audit_logger = None

    if use_storage:
        try:
            sheets_client = GoogleSheetsClient()
            transactions = GoogleSheetsTransactionStore(sheets_client)
            primary_snapshots = GoogleSheetsSnapshotStore(sheets_client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Storage not configured - continue without it
            logger.warning("storage_not_configured", error=str(e))
            sheets_client = None

    if sheets_client is None:
        transactions = InMemoryTransactionStore()
        primary_snapshots = InMemorySnapshotStore()
        audit_logger = AuditLogger()  # Local-only logging

    local_cache = LocalSnapshotCache(
        FileKeyValueStore(settings.backup.local_cache_dir, settings.backup.local_max_bytes),
        max_snapshots=settings.backup.local_max_snapshots,
    )

    snapshots = SnapshotStore(
        primary_snapshots,
        fallback=local_cache,
        settings=settings.backup,
        audit_logger=audit_logger,
    )
    checker = IntegrityChecker(settings.integrity)
    reconciler = DuplicateReconciler(
        transactions,
        settings=settings.duplicates,
        page_size=settings.backup.page_size,
        audit_logger=audit_logger,
    )

    orchestrator = BackupOrchestrator(
        transactions,
        snapshots,
        checker=checker,
        reconciler=reconciler,
        settings=settings.backup,
        audit_logger=audit_logger,
    )

    return orchestrator, sheets_client
