"""
In-Memory Storage Implementation

Used by the test suite and by the local-only mode when no remote backend
is configured. Behaves like the remote stores where it matters:
- pages are ordered by created_at ascending
- inserting an existing id raises DuplicateError
- batch inserts are all-or-nothing
"""

from datetime import datetime
from typing import Callable, Optional, Sequence

from balance_guard.models.audit import AuditEvent
from balance_guard.models.backup import Snapshot
from balance_guard.models.transaction import (
    ContentKey,
    TransactionRecord,
    content_key,
    created_at_sort_key,
    parse_timestamp,
    utc_now,
)
from balance_guard.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    KeyValueStoreInterface,
    QuotaExceededError,
    SnapshotStoreInterface,
    TransactionStoreInterface,
)


class InMemoryTransactionStore(TransactionStoreInterface):
    """Ledger held in a Python list."""

    def __init__(
        self,
        records: Optional[Sequence[TransactionRecord]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._clock = clock
        self._records: list[TransactionRecord] = [dict(r) for r in records or []]

    @property
    def records(self) -> list[TransactionRecord]:
        """Copy of the stored rows in creation order."""
        return [dict(r) for r in sorted(self._records, key=created_at_sort_key)]

    def _ids(self) -> set:
        return {r.get("id") for r in self._records}

    async def fetch_page(self, offset: int, limit: int) -> list[TransactionRecord]:
        ordered = sorted(self._records, key=created_at_sort_key)
        return [dict(r) for r in ordered[offset:offset + limit]]

    async def insert_one(self, record: TransactionRecord) -> TransactionRecord:
        row = dict(record)
        if row.get("id") in self._ids():
            raise DuplicateError(f"Transaction already exists: {row.get('id')}")
        now = self._clock().isoformat()
        if not row.get("created_at"):
            row["created_at"] = now
        if not row.get("updated_at"):
            row["updated_at"] = now
        self._records.append(row)
        return dict(row)

    async def insert_many(self, records: Sequence[TransactionRecord]) -> int:
        existing = self._ids()
        batch_ids = [r.get("id") for r in records]
        clashes = [i for i in batch_ids if i in existing]
        if clashes or len(set(batch_ids)) != len(batch_ids):
            raise DuplicateError(f"Duplicate transaction ids in batch: {clashes or batch_ids}")

        now = self._clock().isoformat()
        for record in records:
            row = dict(record)
            row.setdefault("created_at", now)
            row.setdefault("updated_at", now)
            self._records.append(row)
        return len(records)

    async def delete_many(self, ids: Sequence[str]) -> int:
        wanted = set(ids)
        before = len(self._records)
        self._records = [r for r in self._records if r.get("id") not in wanted]
        return before - len(self._records)

    async def delete_all(self) -> int:
        count = len(self._records)
        self._records = []
        return count

    async def find_by_content(
        self,
        key: ContentKey,
        created_after: datetime,
        limit: int = 1,
    ) -> list[TransactionRecord]:
        matches = []
        for record in self._records:
            created = parse_timestamp(record.get("created_at"))
            if created is None or created < created_after:
                continue
            if content_key(record) == key:
                matches.append(dict(record))
        matches.sort(key=created_at_sort_key, reverse=True)
        return matches[:limit]


class InMemorySnapshotStore(SnapshotStoreInterface):
    """Snapshots held in a dict keyed by id."""

    def __init__(self):
        self._snapshots: dict[str, Snapshot] = {}

    async def save_snapshot(self, snapshot: Snapshot) -> Snapshot:
        self._snapshots[snapshot.id] = snapshot
        return snapshot

    async def list_snapshots(self) -> list[Snapshot]:
        return sorted(self._snapshots.values(), key=lambda s: s.timestamp, reverse=True)

    async def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        return self._snapshots.get(snapshot_id)


class InMemoryKeyValueStore(KeyValueStoreInterface):
    """Dict-backed key/value store with an optional byte quota."""

    def __init__(self, max_bytes: Optional[int] = None):
        self._data: dict[str, str] = {}
        self._max_bytes = max_bytes

    def _size_with(self, key: str, value: str) -> int:
        total = sum(len(k) + len(v.encode("utf-8")) for k, v in self._data.items() if k != key)
        return total + len(key) + len(value.encode("utf-8"))

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self._max_bytes is not None and self._size_with(key, value) > self._max_bytes:
            raise QuotaExceededError(f"Local storage quota exceeded writing {key}")
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return sorted(self._events, key=lambda e: e.timestamp, reverse=True)[:limit]
