"""
Audit Logger

DESIGN DECISION: Every backup, restore, cleanup and integrity check is
logged. This provides:
1. Complete traceability of ledger mutations
2. Debugging capability when a restore goes wrong
3. A record of when data loss was first noticed

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (a broken audit sink never breaks a backup)
- Supports correlation IDs to trace related events
"""

import logging
import sys
from typing import Optional
from uuid import UUID, uuid4

import structlog

from balance_guard.models.audit import AuditEvent, AuditEventBuilder
from balance_guard.services.storage.interface import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(level: str = "INFO") -> None:
    """
    Attach a stderr handler to the stdlib root logger.

    structlog renders JSON and hands it to the stdlib logger, so entry
    points only need to decide the level and the stream.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
    )


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence), when configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("balance_guard.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_backup_started(
        self,
        description: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.backup_started(description, correlation_id))

    async def log_backup_completed(
        self,
        snapshot_id: str,
        transaction_count: int,
        checksum: str,
        locally_only: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.backup_completed(
            snapshot_id=snapshot_id,
            transaction_count=transaction_count,
            checksum=checksum,
            locally_only=locally_only,
            correlation_id=correlation_id,
        ))

    async def log_backup_failed(
        self,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.backup_failed(error_message, correlation_id))

    async def log_backup_skipped(
        self,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.backup_skipped(reason, correlation_id))

    async def log_restore_started(
        self,
        source_id: str,
        mode: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.restore_started(source_id, mode, correlation_id))

    async def log_restore_completed(
        self,
        source_id: str,
        mode: str,
        restored: int,
        conflicts: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.restore_completed(
            source_id=source_id,
            mode=mode,
            restored=restored,
            conflicts=conflicts,
            correlation_id=correlation_id,
        ))

    async def log_restore_failed(
        self,
        source_id: str,
        mode: str,
        restored: int,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.restore_failed(
            source_id=source_id,
            mode=mode,
            restored=restored,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_integrity_checked(
        self,
        passed: bool,
        transaction_count: int,
        issues: list[str],
        checksum: str,
    ) -> None:
        await self.log(AuditEventBuilder.integrity_checked(
            passed=passed,
            transaction_count=transaction_count,
            issues=issues,
            checksum=checksum,
        ))

    async def log_data_loss(
        self,
        previous_count: int,
        transaction_count: int,
    ) -> None:
        await self.log(AuditEventBuilder.data_loss_detected(previous_count, transaction_count))

    async def log_duplicates_removed(self, removed: int, scanned: int) -> None:
        await self.log(AuditEventBuilder.duplicates_removed(removed, scanned))

    async def log_cleanup_failed(self, removed: int, error_message: str) -> None:
        await self.log(AuditEventBuilder.cleanup_failed(removed, error_message))

    async def log_cleanup_skipped(self) -> None:
        await self.log(AuditEventBuilder.cleanup_skipped())

    async def log_accidental_duplicate(
        self,
        existing_id: Optional[str],
        minutes_ago: Optional[int],
    ) -> None:
        await self.log(AuditEventBuilder.accidental_duplicate(existing_id, minutes_ago))

    async def log_fallback_used(self, operation: str, error_message: str) -> None:
        await self.log(AuditEventBuilder.fallback_used(operation, error_message))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new backup or restore.
    Pass it through all subsequent operations.
    """
    return uuid4()
