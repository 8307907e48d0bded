"""
Duplicate Reconciler

Two separate jobs share this module:

1. BULK CLEANUP - scan the whole ledger oldest first, keep the first row
   of every content key and delete the rest in bounded batches.

2. ACCIDENTAL DUPLICATE PREVENTION - at write time, reject a second
   identical submission (double-click, form resubmit) that is either
   still in flight or was stored within the last few minutes.

DESIGN DECISION: Duplicates are defined by content key, never by id.
The store assigns ids, so two clicks on "save" produce two different ids
for what the user meant to be one transaction.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional, Sequence

import structlog

from balance_guard.audit.logger import AuditLogger
from balance_guard.config import DuplicateSettings, get_settings
from balance_guard.models.backup import (
    CleanupResult,
    DuplicateCheckResult,
    InsertAction,
    SafeInsertResult,
)
from balance_guard.models.transaction import (
    ContentKey,
    Transaction,
    TransactionRecord,
    content_key,
    created_at_sort_key,
    parse_timestamp,
    utc_now,
)
from balance_guard.services.storage.interface import (
    BatchWriteError,
    StorageError,
    TransactionStoreInterface,
)
from balance_guard.services.storage.paging import fetch_all_transactions, run_in_batches

logger = structlog.get_logger(__name__)

# Insert source that marks a deliberate copy of an existing row
INTENTIONAL_SOURCE = "duplicate-action"


def find_duplicate_ids(records: Sequence[Mapping[str, Any]]) -> list[str]:
    """
    Ids of every row whose content key was already seen.

    Rows are visited by created_at ascending, so the oldest row of each
    key survives no matter what order ``records`` arrived in.
    """
    seen: set[ContentKey] = set()
    duplicates: list[str] = []

    for record in sorted(records, key=created_at_sort_key):
        key = content_key(record)
        if key in seen:
            duplicates.append(record.get("id"))
        else:
            seen.add(key)

    return duplicates


class DuplicateReconciler:
    """
    Stateful duplicate handling for one ledger.

    State:
    - a single-flight flag for bulk cleanup
    - the set of content keys with an insert currently in flight
    """

    def __init__(
        self,
        store: TransactionStoreInterface,
        settings: Optional[DuplicateSettings] = None,
        page_size: Optional[int] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._settings = settings or get_settings().duplicates
        self._page_size = page_size or get_settings().backup.page_size
        self._audit = audit_logger or AuditLogger()
        self._clock = clock

        self._cleanup_running = False
        self._pending: set[ContentKey] = set()

    @property
    def is_cleanup_running(self) -> bool:
        return self._cleanup_running

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def clear_pending(self) -> None:
        """Drop all in-flight markers (e.g. after a crashed form submit)."""
        self._pending.clear()

    # =========================================================================
    # BULK CLEANUP
    # =========================================================================

    async def cleanup_duplicates(self) -> CleanupResult:
        """
        Remove every content duplicate from the ledger.

        A second call while one is running returns immediately with
        ``skipped=True``. A failing delete batch stops the cleanup; rows
        removed by earlier batches stay removed and are reported.
        """
        if self._cleanup_running:
            logger.info("cleanup_skipped", reason="already running")
            await self._audit.log_cleanup_skipped()
            return CleanupResult(
                success=False,
                message="Cleanup already in progress",
                skipped=True,
            )

        self._cleanup_running = True
        try:
            return await self._cleanup()
        except Exception as e:
            logger.exception("cleanup_unexpected_error")
            await self._audit.log_cleanup_failed(0, str(e))
            return CleanupResult(success=False, message=f"Unexpected error: {e}")
        finally:
            self._cleanup_running = False

    async def _cleanup(self) -> CleanupResult:
        try:
            records = await fetch_all_transactions(self._store, self._page_size)
        except StorageError as e:
            logger.error("cleanup_fetch_failed", error=str(e))
            await self._audit.log_cleanup_failed(0, str(e))
            return CleanupResult(
                success=False,
                message=f"Error fetching transactions: {e}",
            )

        duplicate_ids = find_duplicate_ids(records)
        if not duplicate_ids:
            logger.info("cleanup_no_duplicates", scanned=len(records))
            return CleanupResult(success=True, message="No duplicate transactions found")

        logger.info("cleanup_started", scanned=len(records), duplicates=len(duplicate_ids))

        try:
            removed = await run_in_batches(
                duplicate_ids,
                self._settings.cleanup_batch_size,
                self._store.delete_many,
                label="delete_duplicates",
            )
        except BatchWriteError as e:
            await self._audit.log_cleanup_failed(e.completed, str(e))
            return CleanupResult(
                success=False,
                message=f"Cleanup failed after removing {e.completed} duplicates: {e}",
                duplicates_removed=e.completed,
            )

        await self._audit.log_duplicates_removed(removed, len(records))
        return CleanupResult(
            success=True,
            message=f"Cleaned up {removed} duplicate transactions",
            duplicates_removed=removed,
        )

    # =========================================================================
    # ACCIDENTAL DUPLICATE PREVENTION
    # =========================================================================

    async def check_for_accidental_duplicate(
        self,
        candidate: Mapping[str, Any],
        intentional: bool = False,
        source: Optional[str] = None,
    ) -> DuplicateCheckResult:
        """
        Decide whether ``candidate`` repeats a very recent submission.

        The caller decides what to do with a positive answer. Lookup
        errors are reported as "not a duplicate" so a flaky store never
        blocks data entry.
        """
        if intentional or source == INTENTIONAL_SOURCE:
            return DuplicateCheckResult(
                is_accidental_duplicate=False,
                message="Intentional duplicate - allowed",
            )

        key = content_key(candidate)
        if key in self._pending:
            return self._in_flight_result()

        self._pending.add(key)
        try:
            return await self._find_recent(key)
        finally:
            self._pending.discard(key)

    async def safe_insert(
        self,
        transaction: Transaction,
        intentional: bool = False,
        source: Optional[str] = None,
    ) -> SafeInsertResult:
        """
        Insert ``transaction`` unless it is an accidental duplicate.

        The in-flight marker is held across both the check and the insert,
        so a second click arriving while the first insert is still running
        is rejected too.
        """
        record = {
            k: v for k, v in transaction.to_record().items()
            if v is not None
        }

        if intentional or source == INTENTIONAL_SOURCE:
            return await self._insert(record, None)

        key = transaction.content_key
        if key in self._pending:
            check = self._in_flight_result()
            return SafeInsertResult(
                action=InsertAction.DUPLICATE,
                message=check.message,
                duplicate_check=check,
            )

        self._pending.add(key)
        try:
            check = await self._find_recent(key)
            if check.is_accidental_duplicate:
                return SafeInsertResult(
                    action=InsertAction.DUPLICATE,
                    message=check.message,
                    id=check.existing_transaction_id,
                    duplicate_check=check,
                )
            return await self._insert(record, check)
        finally:
            self._pending.discard(key)

    async def _insert(
        self,
        record: TransactionRecord,
        check: Optional[DuplicateCheckResult],
    ) -> SafeInsertResult:
        try:
            stored = await self._store.insert_one(record)
        except StorageError as e:
            logger.error("safe_insert_failed", error=str(e))
            return SafeInsertResult(
                action=InsertAction.ERROR,
                message=f"Failed to insert transaction: {e}",
                duplicate_check=check,
            )

        return SafeInsertResult(
            action=InsertAction.INSERTED,
            message="Transaction created successfully",
            id=stored.get("id"),
            duplicate_check=check,
        )

    async def _find_recent(self, key: ContentKey) -> DuplicateCheckResult:
        now = self._clock()
        window_start = now - timedelta(minutes=self._settings.window_minutes)

        try:
            matches = await self._store.find_by_content(key, created_after=window_start, limit=1)
        except StorageError as e:
            logger.warning("duplicate_check_failed", error=str(e))
            return DuplicateCheckResult(
                is_accidental_duplicate=False,
                message=f"Error checking for accidental duplicates: {e}",
            )

        if not matches:
            return DuplicateCheckResult(
                is_accidental_duplicate=False,
                message="No accidental duplicate found",
            )

        existing = matches[0]
        created = parse_timestamp(existing.get("created_at"))
        minutes = int((now - created).total_seconds() // 60) if created else 0

        await self._audit.log_accidental_duplicate(existing.get("id"), minutes)
        return DuplicateCheckResult(
            is_accidental_duplicate=True,
            message=f"Accidental duplicate detected (created {minutes} minutes ago)",
            existing_transaction_id=existing.get("id"),
            time_diff_minutes=minutes,
        )

    @staticmethod
    def _in_flight_result() -> DuplicateCheckResult:
        return DuplicateCheckResult(
            is_accidental_duplicate=True,
            message="Transaction is currently being processed (possible double-click)",
        )
