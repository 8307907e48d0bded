"""
Backup Models for Balance Guard

Snapshots and the result objects returned by every public backup, restore
and duplicate-handling operation.

DESIGN DECISION: Every public operation returns a result object carrying
success/failure plus a human-readable message. Callers always know whether
data was mutated, even when the operation failed half way.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from balance_guard.models.integrity import DateRange
from balance_guard.models.transaction import (
    TransactionRecord,
    json_default,
    utc_now,
)


# =============================================================================
# ENUMS
# =============================================================================

class MergeMode(str, Enum):
    """
    Conflict-resolution strategy applied during restore.

    MERGE_NEWER is accepted but currently resolves exactly like MERGE.
    """
    REPLACE = "replace"
    MERGE = "merge"
    MERGE_NEWER = "merge-newer"


class SnapshotSource(str, Enum):
    """Where a snapshot was read from."""
    PRIMARY = "primary"
    LOCAL = "local"


class InsertAction(str, Enum):
    """Outcome of a safe insert."""
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    ERROR = "error"


# =============================================================================
# SNAPSHOT
# =============================================================================

class Snapshot(BaseModel):
    """
    Immutable capture of the full transaction set at a point in time.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique snapshot identifier"
    )
    transactions: list[TransactionRecord] = Field(
        default_factory=list,
        description="Records in store order (created_at ascending)"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the snapshot was taken (UTC)"
    )
    version: str = Field(
        default="2.0",
        description="Snapshot format version"
    )
    description: str = Field(
        default="",
        max_length=500,
        description="Free text, e.g. 'Automatic backup - 42 transactions'"
    )
    checksum: str = Field(
        default="",
        description="Content hash of the transactions"
    )

    @property
    def transaction_count(self) -> int:
        return len(self.transactions)

    def to_payload(self) -> dict[str, Any]:
        """JSON-compatible dict (timestamps as ISO strings)."""
        return {
            "id": self.id,
            "transactions": self.transactions,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "description": self.description,
            "checksum": self.checksum,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), default=json_default, separators=(",", ":"))

    def transactions_json(self) -> str:
        """Raw transaction payload, as mirrored to local storage."""
        return json.dumps(self.transactions, default=json_default, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> 'Snapshot':
        return cls.model_validate(json.loads(text))


class BackupInfo(BaseModel):
    """Metadata describing one stored snapshot."""

    id: str
    timestamp: datetime
    transaction_count: int = Field(ge=0)
    date_range: DateRange = Field(default_factory=DateRange)
    size: int = Field(default=0, ge=0, description="Bytes of the JSON payload")
    checksum: str = ""
    description: str = ""
    version: str = ""
    source: SnapshotSource = SnapshotSource.PRIMARY


# =============================================================================
# OPERATION RESULTS
# =============================================================================

class BackupResult(BaseModel):
    """Outcome of a backup request."""

    success: bool
    message: str
    skipped: bool = Field(
        default=False,
        description="True when rejected because a backup was already running"
    )
    info: Optional[BackupInfo] = None
    stored_locally_only: bool = False
    integrity_issues: list[str] = Field(default_factory=list)


class RestoreResult(BaseModel):
    """Outcome of a restore (or import) request."""

    success: bool
    message: str
    transactions_restored: int = Field(default=0, ge=0)
    conflicts_resolved: int = Field(default=0, ge=0)
    mode: MergeMode = MergeMode.MERGE
    pre_restore_backup_id: Optional[str] = None


class VerificationResult(BaseModel):
    """Outcome of a snapshot verification."""

    valid: bool
    message: str


class CleanupResult(BaseModel):
    """Outcome of a bulk duplicate cleanup."""

    success: bool
    message: str
    duplicates_removed: int = Field(default=0, ge=0)
    skipped: bool = False


class DuplicateCheckResult(BaseModel):
    """Outcome of an accidental-duplicate check."""

    is_accidental_duplicate: bool
    message: str
    existing_transaction_id: Optional[str] = None
    time_diff_minutes: Optional[int] = None


class SafeInsertResult(BaseModel):
    """Outcome of a guarded single insert."""

    action: InsertAction
    message: str
    id: Optional[str] = None
    duplicate_check: Optional[DuplicateCheckResult] = None


# =============================================================================
# EXPORT FORMAT
# =============================================================================

class ExportData(BaseModel):
    """
    Interchange format for exported ledgers.

    Field names on the wire are camelCase to stay compatible with files
    exported by earlier versions of the app.
    """
    model_config = ConfigDict(populate_by_name=True)

    transactions: list[TransactionRecord]
    export_date: str = Field(..., alias="exportDate")
    version: str
    total_transactions: int = Field(..., ge=0, alias="totalTransactions")
