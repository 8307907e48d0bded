"""
Audit Models for Balance Guard

Every backup, restore, cleanup and integrity check is logged for audit
purposes. This provides:
1. Complete traceability of every ledger mutation
2. Debugging information when a restore goes wrong
3. A record of when data loss was first noticed

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from balance_guard.models.transaction import utc_now


class AuditEventType(str, Enum):
    """
    Types of events we audit.
    """
    # Backup
    BACKUP_STARTED = "backup_started"
    BACKUP_COMPLETED = "backup_completed"
    BACKUP_FAILED = "backup_failed"
    BACKUP_SKIPPED = "backup_skipped"

    # Restore
    RESTORE_STARTED = "restore_started"
    RESTORE_COMPLETED = "restore_completed"
    RESTORE_FAILED = "restore_failed"

    # Integrity
    INTEGRITY_CHECK_PASSED = "integrity_check_passed"
    INTEGRITY_CHECK_FAILED = "integrity_check_failed"
    DATA_LOSS_DETECTED = "data_loss_detected"

    # Duplicates
    DUPLICATES_REMOVED = "duplicates_removed"
    CLEANUP_FAILED = "cleanup_failed"
    CLEANUP_SKIPPED = "cleanup_skipped"
    ACCIDENTAL_DUPLICATE_DETECTED = "accidental_duplicate_detected"

    # Storage
    FALLBACK_USED = "fallback_used"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'snapshot', 'transaction', 'ledger')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one restore)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_message]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            self.entity_id or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.backup_completed(snapshot_id, count, ...)
        event = AuditEventBuilder.data_loss_detected(previous, current)
    """

    @staticmethod
    def backup_started(
        description: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BACKUP_STARTED,
            entity_type="ledger",
            correlation_id=correlation_id,
            description=f"Backup started: {description}"[:500],
        )

    @staticmethod
    def backup_completed(
        snapshot_id: str,
        transaction_count: int,
        checksum: str,
        locally_only: bool,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BACKUP_COMPLETED,
            severity=AuditSeverity.WARNING if locally_only else AuditSeverity.INFO,
            entity_type="snapshot",
            entity_id=snapshot_id,
            correlation_id=correlation_id,
            description=f"Backup created with {transaction_count} transactions",
            details={
                "transaction_count": transaction_count,
                "checksum": checksum,
                "stored_locally_only": locally_only,
            },
        )

    @staticmethod
    def backup_failed(
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BACKUP_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="ledger",
            correlation_id=correlation_id,
            description="Backup failed",
            error_message=error_message,
        )

    @staticmethod
    def backup_skipped(
        reason: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BACKUP_SKIPPED,
            entity_type="ledger",
            correlation_id=correlation_id,
            description=f"Backup skipped: {reason}",
        )

    @staticmethod
    def restore_started(
        source_id: str,
        mode: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RESTORE_STARTED,
            entity_type="snapshot",
            entity_id=source_id,
            correlation_id=correlation_id,
            description=f"Restore started in {mode} mode",
            details={"mode": mode},
        )

    @staticmethod
    def restore_completed(
        source_id: str,
        mode: str,
        restored: int,
        conflicts: int,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RESTORE_COMPLETED,
            entity_type="snapshot",
            entity_id=source_id,
            correlation_id=correlation_id,
            description=f"Restore completed: {restored} restored, {conflicts} conflicts skipped",
            details={
                "mode": mode,
                "transactions_restored": restored,
                "conflicts_resolved": conflicts,
            },
        )

    @staticmethod
    def restore_failed(
        source_id: str,
        mode: str,
        restored: int,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RESTORE_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="snapshot",
            entity_id=source_id,
            correlation_id=correlation_id,
            description=f"Restore failed after {restored} transactions were written",
            details={
                "mode": mode,
                "transactions_restored": restored,
            },
            error_message=error_message,
        )

    @staticmethod
    def integrity_checked(
        passed: bool,
        transaction_count: int,
        issues: list[str],
        checksum: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.INTEGRITY_CHECK_PASSED
                if passed
                else AuditEventType.INTEGRITY_CHECK_FAILED
            ),
            severity=AuditSeverity.INFO if passed else AuditSeverity.WARNING,
            entity_type="ledger",
            description=(
                f"Integrity check {'passed' if passed else 'failed'} "
                f"on {transaction_count} transactions"
            ),
            details={
                "transaction_count": transaction_count,
                "issues": issues,
                "checksum": checksum,
            },
        )

    @staticmethod
    def data_loss_detected(
        previous_count: int,
        transaction_count: int
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DATA_LOSS_DETECTED,
            severity=AuditSeverity.CRITICAL,
            entity_type="ledger",
            description=(
                f"Potential data loss: {previous_count - transaction_count} "
                f"transactions missing"
            ),
            details={
                "previous_count": previous_count,
                "transaction_count": transaction_count,
            },
        )

    @staticmethod
    def duplicates_removed(
        removed: int,
        scanned: int
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DUPLICATES_REMOVED,
            entity_type="ledger",
            description=f"Removed {removed} duplicate transactions",
            details={
                "duplicates_removed": removed,
                "transactions_scanned": scanned,
            },
        )

    @staticmethod
    def cleanup_failed(
        removed: int,
        error_message: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CLEANUP_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="ledger",
            description=f"Duplicate cleanup failed after removing {removed} transactions",
            details={"duplicates_removed": removed},
            error_message=error_message,
        )

    @staticmethod
    def cleanup_skipped() -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CLEANUP_SKIPPED,
            entity_type="ledger",
            description="Duplicate cleanup skipped: already in progress",
        )

    @staticmethod
    def accidental_duplicate(
        existing_id: Optional[str],
        minutes_ago: Optional[int]
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCIDENTAL_DUPLICATE_DETECTED,
            severity=AuditSeverity.WARNING,
            entity_type="transaction",
            entity_id=existing_id,
            description="Accidental duplicate submission detected",
            details={"minutes_ago": minutes_ago},
        )

    @staticmethod
    def fallback_used(
        operation: str,
        error_message: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FALLBACK_USED,
            severity=AuditSeverity.WARNING,
            entity_type="snapshot",
            description=f"Primary store unavailable for {operation}; used local fallback",
            details={"operation": operation},
            error_message=error_message,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
