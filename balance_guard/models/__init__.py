"""
Data Models Package

This package contains all Pydantic models used in Balance Guard.
All data flowing through the system must conform to these schemas.
"""

from balance_guard.models.transaction import (
    REQUIRED_FIELDS,
    ContentKey,
    Transaction,
    TransactionRecord,
    TransactionType,
    content_key,
    json_default,
    utc_now,
)
from balance_guard.models.integrity import (
    AlertSeverity,
    DataLossAlert,
    DateRange,
    IntegrityReport,
    IntegrityStats,
)
from balance_guard.models.backup import (
    BackupInfo,
    BackupResult,
    CleanupResult,
    DuplicateCheckResult,
    ExportData,
    InsertAction,
    MergeMode,
    RestoreResult,
    SafeInsertResult,
    Snapshot,
    SnapshotSource,
    VerificationResult,
)
from balance_guard.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Transaction models
    "REQUIRED_FIELDS",
    "ContentKey",
    "Transaction",
    "TransactionRecord",
    "TransactionType",
    "content_key",
    "json_default",
    "utc_now",
    # Integrity models
    "AlertSeverity",
    "DataLossAlert",
    "DateRange",
    "IntegrityReport",
    "IntegrityStats",
    # Backup models
    "BackupInfo",
    "BackupResult",
    "CleanupResult",
    "DuplicateCheckResult",
    "ExportData",
    "InsertAction",
    "MergeMode",
    "RestoreResult",
    "SafeInsertResult",
    "Snapshot",
    "SnapshotSource",
    "VerificationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
