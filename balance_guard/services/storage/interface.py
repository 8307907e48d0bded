"""
Abstract Storage Interface

DESIGN DECISION: We define abstract interfaces for every store the core
talks to. This allows us to:
1. Swap Google Sheets for Postgres/Supabase later
2. Use in-memory storage for testing
3. Keep the backup/restore logic decoupled from any backend schema

Three stores exist:
- TransactionStoreInterface: the live ledger (remote, authoritative)
- SnapshotStoreInterface: durable snapshot storage (remote, primary)
- KeyValueStoreInterface: local durable key/value storage used only as
  the fallback cache

All remote calls are async (each one is a suspension point). The local
key/value store is synchronous, like browser local storage.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Sequence

from balance_guard.models.audit import AuditEvent
from balance_guard.models.backup import Snapshot
from balance_guard.models.transaction import ContentKey, TransactionRecord


class TransactionStoreInterface(ABC):
    """
    Abstract interface over the transaction ledger.

    All operations are scoped to the authenticated user by the
    implementation; callers never pass a user id.
    """

    @abstractmethod
    async def fetch_page(self, offset: int, limit: int) -> list[TransactionRecord]:
        """
        Read one page of transactions ordered by created_at ascending.

        Args:
            offset: Number of rows to skip
            limit: Maximum number of rows to return

        Returns:
            Up to ``limit`` records; fewer means the end was reached

        Raises:
            StorageError: If the store cannot be read
        """
        pass

    @abstractmethod
    async def insert_one(self, record: TransactionRecord) -> TransactionRecord:
        """
        Insert a single transaction.

        The store assigns created_at/updated_at when missing.

        Returns:
            The stored record

        Raises:
            DuplicateError: If the id already exists
            StorageError: If the insert fails
        """
        pass

    @abstractmethod
    async def insert_many(self, records: Sequence[TransactionRecord]) -> int:
        """
        Insert a batch of transactions, preserving their ids and timestamps.

        The batch is all-or-nothing.

        Returns:
            Number of rows inserted

        Raises:
            DuplicateError: If any id already exists
            StorageError: If the insert fails
        """
        pass

    @abstractmethod
    async def delete_many(self, ids: Sequence[str]) -> int:
        """
        Delete transactions by id.

        Returns:
            Number of rows deleted
        """
        pass

    @abstractmethod
    async def delete_all(self) -> int:
        """
        Delete every transaction of the current user.

        Returns:
            Number of rows deleted
        """
        pass

    @abstractmethod
    async def find_by_content(
        self,
        key: ContentKey,
        created_after: datetime,
        limit: int = 1,
    ) -> list[TransactionRecord]:
        """
        Find transactions with the given content key created at or after
        ``created_after``.

        Returns:
            Matching records, newest first
        """
        pass


class SnapshotStoreInterface(ABC):
    """
    Abstract interface for durable snapshot storage.

    Snapshots are append-only: they are never modified after being saved.
    """

    @abstractmethod
    async def save_snapshot(self, snapshot: Snapshot) -> Snapshot:
        """
        Persist a snapshot.

        Raises:
            StorageError: If the snapshot cannot be stored
        """
        pass

    @abstractmethod
    async def list_snapshots(self) -> list[Snapshot]:
        """Return all snapshots, newest first."""
        pass

    @abstractmethod
    async def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        """Return a snapshot by id, or None if it doesn't exist."""
        pass


class KeyValueStoreInterface(ABC):
    """
    Abstract local key/value storage (string values).

    Used only by the local fallback cache.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value for ``key`` or None."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """
        Store ``value`` under ``key``.

        Raises:
            QuotaExceededError: If local storage is full
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove ``key`` if present."""
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        """Return all keys starting with ``prefix``."""
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert an entity whose id already exists."""
    pass


class StorageConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass


class QuotaExceededError(StorageError):
    """Local storage has no room left."""
    pass


class BatchWriteError(StorageError):
    """
    A multi-batch write failed part way through.

    Batches before ``batch_index`` were written and are NOT rolled back.
    """

    def __init__(self, message: str, completed: int, batch_index: int):
        super().__init__(message)
        self.completed = completed
        self.batch_index = batch_index
