"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
Google Sheets is the remote backend; in-memory and file-backed stores cover
tests, local-only mode and the local fallback cache.
"""

from balance_guard.services.storage.interface import (
    AuditStorageInterface,
    BatchWriteError,
    DuplicateError,
    KeyValueStoreInterface,
    QuotaExceededError,
    SnapshotStoreInterface,
    StorageConnectionError,
    StorageError,
    TransactionStoreInterface,
)
from balance_guard.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryKeyValueStore,
    InMemorySnapshotStore,
    InMemoryTransactionStore,
)
from balance_guard.services.storage.local_file import FileKeyValueStore
from balance_guard.services.storage.paging import (
    batched,
    fetch_all_transactions,
    run_in_batches,
)
from balance_guard.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsSnapshotStore,
    GoogleSheetsTransactionStore,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "KeyValueStoreInterface",
    "SnapshotStoreInterface",
    "TransactionStoreInterface",
    # Exceptions
    "BatchWriteError",
    "DuplicateError",
    "QuotaExceededError",
    "StorageConnectionError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryKeyValueStore",
    "InMemorySnapshotStore",
    "InMemoryTransactionStore",
    # Local files
    "FileKeyValueStore",
    # Paging helpers
    "batched",
    "fetch_all_transactions",
    "run_in_batches",
    # Google Sheets implementation
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsSnapshotStore",
    "GoogleSheetsTransactionStore",
]
