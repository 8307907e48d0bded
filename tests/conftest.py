"""
Shared fixtures for the Balance Guard test suite.

Every test gets its own settings (no .env leakage, local cache under the
test's tmp_path) and in-memory stores; nothing talks to Google Sheets.
"""

import os
from datetime import datetime, timedelta, timezone
from itertools import count
from pathlib import Path

import pytest

from balance_guard.audit import AuditLogger
from balance_guard.config import (
    BackupSettings,
    DuplicateSettings,
    IntegritySettings,
    get_settings,
)
from balance_guard.orchestrator import BackupOrchestrator
from balance_guard.reconcile import DuplicateReconciler
from balance_guard.services.fallback_cache import LocalSnapshotCache
from balance_guard.services.snapshots import SnapshotStore
from balance_guard.services.storage import (
    InMemoryAuditStorage,
    InMemoryKeyValueStore,
    InMemorySnapshotStore,
    InMemoryTransactionStore,
)
from balance_guard.validation import IntegrityChecker

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _isolate_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point the local cache at tmp_path and drop any cached settings."""
    monkeypatch.setenv("BALANCE_BACKUP_LOCAL_CACHE_DIR", os.fspath(tmp_path / "cache"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def make_record():
    """
    Factory for store records.

    Each call gets a fresh id and a created_at one minute after the
    previous record, so creation order is the call order.
    """
    ids = count(1)

    def _make(
        description: str = "Salary",
        amount=1000,
        category: str = "salary",
        type: str = "income",
        currency: str = "USD",
        date: str = "2024-01-01",
        **overrides,
    ) -> dict:
        n = next(ids)
        record = {
            "id": f"tx-{n}",
            "type": type,
            "amount": amount,
            "currency": currency,
            "category": category,
            "description": description,
            "date": date,
            "created_at": (BASE_TIME + timedelta(minutes=n)).isoformat(),
            "updated_at": (BASE_TIME + timedelta(minutes=n)).isoformat(),
        }
        record.update(overrides)
        return record

    return _make


@pytest.fixture
def backup_settings() -> BackupSettings:
    return BackupSettings(page_size=2, restore_batch_size=2, local_max_snapshots=3)


@pytest.fixture
def integrity_settings() -> IntegritySettings:
    return IntegritySettings()


@pytest.fixture
def duplicate_settings() -> DuplicateSettings:
    return DuplicateSettings(cleanup_batch_size=2)


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage) -> AuditLogger:
    return AuditLogger(audit_storage)


@pytest.fixture
def build_orchestrator(backup_settings, integrity_settings, duplicate_settings, audit_logger):
    """
    Factory wiring an orchestrator around the given stores.

    Small page and batch sizes make every test exercise pagination and
    batching.
    """

    def _build(
        transactions=None,
        primary_snapshots=None,
        local_storage=None,
    ) -> BackupOrchestrator:
        transactions = transactions if transactions is not None else InMemoryTransactionStore()
        cache = LocalSnapshotCache(
            local_storage if local_storage is not None else InMemoryKeyValueStore(),
            max_snapshots=backup_settings.local_max_snapshots,
        )
        snapshots = SnapshotStore(
            primary_snapshots if primary_snapshots is not None else InMemorySnapshotStore(),
            fallback=cache,
            settings=backup_settings,
            audit_logger=audit_logger,
        )
        reconciler = DuplicateReconciler(
            transactions,
            settings=duplicate_settings,
            page_size=backup_settings.page_size,
            audit_logger=audit_logger,
        )
        return BackupOrchestrator(
            transactions,
            snapshots,
            checker=IntegrityChecker(integrity_settings),
            reconciler=reconciler,
            settings=backup_settings,
            audit_logger=audit_logger,
        )

    return _build
