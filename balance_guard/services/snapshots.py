"""
Snapshot Store

Durable storage of immutable ledger snapshots with a local fallback.

Write path: primary store first, then a mirror into the local cache. If
the primary fails the local copy alone is enough; if both fail the caller
gets a StorageError.

Read path: primary first. A single snapshot is read from the local cache
only when the primary raises or does not have it. Listings take the
primary's entries and add local entries whose id the primary lacks; if
the primary raises, the listing comes from the local cache alone.
"""

from typing import Any, Mapping, Optional, Sequence

import structlog

from balance_guard.audit.logger import AuditLogger
from balance_guard.config import BackupSettings, get_settings
from balance_guard.models.backup import BackupInfo, Snapshot, SnapshotSource
from balance_guard.models.transaction import utc_now
from balance_guard.services.fallback_cache import LocalSnapshotCache
from balance_guard.services.storage.interface import SnapshotStoreInterface, StorageError
from balance_guard.validation.checksum import compute_checksum, compute_date_range

logger = structlog.get_logger(__name__)


def snapshot_info(snapshot: Snapshot, source: SnapshotSource = SnapshotSource.PRIMARY) -> BackupInfo:
    """Listing metadata for ``snapshot``."""
    return BackupInfo(
        id=snapshot.id,
        timestamp=snapshot.timestamp,
        transaction_count=snapshot.transaction_count,
        date_range=compute_date_range(snapshot.transactions),
        size=len(snapshot.to_json().encode("utf-8")),
        checksum=snapshot.checksum,
        description=snapshot.description,
        version=snapshot.version,
        source=source,
    )


def _merge_newest_first(primary: list, local: list) -> list:
    """Primary entries plus local entries with ids the primary lacks, newest first."""
    known = {entry.id for entry in primary}
    merged = list(primary) + [entry for entry in local if entry.id not in known]
    merged.sort(key=lambda entry: entry.timestamp, reverse=True)
    return merged


class SnapshotStore:
    """Primary snapshot storage with a local mirror."""

    def __init__(
        self,
        primary: SnapshotStoreInterface,
        fallback: Optional[LocalSnapshotCache] = None,
        settings: Optional[BackupSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._primary = primary
        self._fallback = fallback
        self._settings = settings or get_settings().backup
        self._audit = audit_logger or AuditLogger()

    @property
    def fallback(self) -> Optional[LocalSnapshotCache]:
        return self._fallback

    def build_snapshot(
        self,
        transactions: Sequence[Mapping[str, Any]],
        description: str,
        version: Optional[str] = None,
    ) -> Snapshot:
        """Capture ``transactions`` with a fresh timestamp and checksum."""
        records = [dict(t) for t in transactions]
        return Snapshot(
            transactions=records,
            timestamp=utc_now(),
            version=version or self._settings.snapshot_version,
            description=description,
            checksum=compute_checksum(records),
        )

    async def create_snapshot(
        self,
        transactions: Sequence[Mapping[str, Any]],
        description: str,
        version: Optional[str] = None,
    ) -> Snapshot:
        """
        Build and store a snapshot.

        Raises:
            StorageError: If neither the primary nor the local store took it
        """
        snapshot = self.build_snapshot(transactions, description, version)
        await self.save_snapshot(snapshot)
        return snapshot

    async def save_snapshot(self, snapshot: Snapshot) -> SnapshotSource:
        """
        Store ``snapshot`` on the primary and mirror it locally.

        Returns:
            PRIMARY when the primary store accepted it, LOCAL when only the
            local mirror did

        Raises:
            StorageError: If both writes failed
        """
        primary_error: Optional[StorageError] = None
        try:
            await self._primary.save_snapshot(snapshot)
        except StorageError as e:
            primary_error = e
            logger.warning("snapshot_primary_save_failed", snapshot_id=snapshot.id, error=str(e))

        local_error: Optional[StorageError] = None
        if self._fallback is not None:
            try:
                if not self._fallback.save(snapshot, snapshot_info(snapshot, SnapshotSource.LOCAL)):
                    raise StorageError("older than every locally retained snapshot")
            except StorageError as e:
                local_error = e
                logger.warning("snapshot_local_save_failed", snapshot_id=snapshot.id, error=str(e))

        if primary_error is None:
            return SnapshotSource.PRIMARY

        if self._fallback is None or local_error is not None:
            raise StorageError(
                f"Snapshot could not be stored: primary: {primary_error}; "
                f"local: {local_error or 'no local cache configured'}"
            ) from primary_error

        await self._audit.log_fallback_used("save_snapshot", str(primary_error))
        return SnapshotSource.LOCAL

    async def list_snapshots(self) -> list[Snapshot]:
        """All snapshots, newest first; primary copies win on id collisions."""
        try:
            snapshots = await self._primary.list_snapshots()
        except StorageError as e:
            return await self._local_or_raise("list_snapshots", e, lambda c: c.list_snapshots())

        if self._fallback is None:
            return snapshots
        return _merge_newest_first(snapshots, self._fallback.list_snapshots())

    async def list_infos(self) -> list[BackupInfo]:
        """
        Listing metadata for every snapshot, newest first.

        Snapshots the primary does not have (stored locally during an
        outage, or refused by the primary) are listed from the local cache.
        """
        try:
            snapshots = await self._primary.list_snapshots()
        except StorageError as e:
            return await self._local_or_raise("list_backups", e, lambda c: c.list_infos())

        infos = [snapshot_info(s, SnapshotSource.PRIMARY) for s in snapshots]
        if self._fallback is None:
            return infos
        return _merge_newest_first(infos, self._fallback.list_infos())

    async def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        """The snapshot with ``snapshot_id``, or None if no store has it."""
        try:
            snapshot = await self._primary.get_snapshot(snapshot_id)
        except StorageError as e:
            return await self._local_or_raise("get_snapshot", e, lambda c: c.get(snapshot_id))

        if snapshot is not None or self._fallback is None:
            return snapshot
        return self._fallback.get(snapshot_id)

    async def _local_or_raise(self, operation: str, error: StorageError, read):
        if self._fallback is None:
            raise error
        logger.warning("snapshot_read_fallback", operation=operation, error=str(error))
        await self._audit.log_fallback_used(operation, str(error))
        return read(self._fallback)
