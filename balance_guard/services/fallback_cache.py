"""
Local Fallback Cache

Best-effort mirror of snapshots in local durable storage, so backups can
still be listed and restored while the primary store is unreachable.

Two keys per snapshot, both derived from the snapshot timestamp:
    backup-<millis>-<id>        full snapshot JSON
    backup-info-<millis>-<id>   BackupInfo JSON (cheap listing)

Retention is bounded: the cache keeps the most recent snapshots by
timestamp, not by insertion order. A new snapshot evicts the oldest ones,
or is not kept at all when it is older than everything retained.
The cache is never authoritative; the primary store wins whenever it
answers.
"""

from typing import Optional

import structlog

from balance_guard.models.backup import BackupInfo, Snapshot, SnapshotSource
from balance_guard.services.storage.interface import KeyValueStoreInterface, StorageError

logger = structlog.get_logger(__name__)

DATA_PREFIX = "backup-"
INFO_PREFIX = "backup-info-"


def _millis(snapshot: Snapshot) -> int:
    return int(snapshot.timestamp.timestamp() * 1000)


def _suffix(snapshot: Snapshot) -> str:
    return f"{_millis(snapshot):015d}-{snapshot.id}"


def _parse_suffix(suffix: str) -> tuple[int, str]:
    millis, _, snapshot_id = suffix.partition("-")
    return int(millis), snapshot_id


class LocalSnapshotCache:
    """Bounded snapshot mirror on top of a key/value store."""

    def __init__(self, storage: KeyValueStoreInterface, max_snapshots: int = 10):
        if max_snapshots < 1:
            raise ValueError("max_snapshots must be at least 1")
        self._storage = storage
        self._max_snapshots = max_snapshots

    @property
    def max_snapshots(self) -> int:
        return self._max_snapshots

    def _suffixes(self) -> list[str]:
        """Stored snapshot suffixes, oldest first."""
        suffixes = [
            key[len(DATA_PREFIX):]
            for key in self._storage.keys(DATA_PREFIX)
            if not key.startswith(INFO_PREFIX)
        ]
        return sorted(suffixes, key=_parse_suffix)

    def _find_suffix(self, snapshot_id: str) -> Optional[str]:
        for suffix in self._suffixes():
            if _parse_suffix(suffix)[1] == snapshot_id:
                return suffix
        return None

    def _drop(self, suffix: str) -> None:
        self._storage.remove(DATA_PREFIX + suffix)
        self._storage.remove(INFO_PREFIX + suffix)

    def count(self) -> int:
        return len(self._suffixes())

    def save(self, snapshot: Snapshot, info: BackupInfo) -> bool:
        """
        Store ``snapshot`` and its listing entry.

        Returns:
            False if the cache is full of newer snapshots and this one was
            not kept

        Raises:
            StorageError: If local storage rejects the write (e.g. quota)
        """
        existing = self._find_suffix(snapshot.id)
        if existing:
            self._drop(existing)

        suffix = _suffix(snapshot)
        suffixes = sorted(self._suffixes() + [suffix], key=_parse_suffix)
        evicted = suffixes[:max(len(suffixes) - self._max_snapshots, 0)]
        if suffix in evicted:
            logger.info("local_snapshot_not_retained", snapshot_id=snapshot.id, reason="older than retained")
            return False

        for oldest in evicted:
            self._drop(oldest)
            logger.info("local_snapshot_evicted", suffix=oldest)

        local_info = info.model_copy(update={"source": SnapshotSource.LOCAL})
        try:
            self._storage.set(DATA_PREFIX + suffix, snapshot.to_json())
            self._storage.set(INFO_PREFIX + suffix, local_info.model_dump_json())
        except StorageError:
            self._drop(suffix)
            raise

        logger.info("local_snapshot_saved", snapshot_id=snapshot.id, retained=len(suffixes) - len(evicted))
        return True

    def list_infos(self) -> list[BackupInfo]:
        """Listing entries, newest first. Unreadable entries are skipped."""
        infos = []
        for suffix in reversed(self._suffixes()):
            raw = self._storage.get(INFO_PREFIX + suffix)
            if raw is None:
                continue
            try:
                infos.append(BackupInfo.model_validate_json(raw))
            except ValueError as e:
                logger.warning("local_info_unreadable", suffix=suffix, error=str(e))
        return infos

    def list_snapshots(self) -> list[Snapshot]:
        """Full snapshots, newest first. Unreadable entries are skipped."""
        snapshots = []
        for suffix in reversed(self._suffixes()):
            snapshot = self._load(suffix)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    def get(self, snapshot_id: str) -> Optional[Snapshot]:
        suffix = self._find_suffix(snapshot_id)
        if suffix is None:
            return None
        return self._load(suffix)

    def remove(self, snapshot_id: str) -> bool:
        suffix = self._find_suffix(snapshot_id)
        if suffix is None:
            return False
        self._drop(suffix)
        return True

    def _load(self, suffix: str) -> Optional[Snapshot]:
        raw = self._storage.get(DATA_PREFIX + suffix)
        if raw is None:
            return None
        try:
            return Snapshot.from_json(raw)
        except ValueError as e:
            logger.warning("local_snapshot_unreadable", suffix=suffix, error=str(e))
            return None
