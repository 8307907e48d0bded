"""
Integrity Models for Balance Guard

Reports and alerts produced by the integrity checker. None of these are
persisted: reports are returned to the caller, alerts live in a bounded
in-memory buffer.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from balance_guard.models.transaction import utc_now


class AlertSeverity(str, Enum):
    """Severity of a data-loss alert."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DateRange(BaseModel):
    """Earliest and latest transaction date observed (ISO strings)."""

    start: Optional[str] = None
    end: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.start is None and self.end is None


class IntegrityReport(BaseModel):
    """
    Result of one integrity check.

    ``passed`` is True only when ``issues`` is empty.
    """

    passed: bool
    issues: list[str] = Field(default_factory=list)
    transaction_count: int = Field(default=0, ge=0)
    date_range: DateRange = Field(default_factory=DateRange)
    checksum: str = ""
    checked_at: datetime = Field(default_factory=utc_now)

    # Alert raised by this check, if any
    data_loss_detected: bool = False

    @classmethod
    def failure(cls, message: str) -> 'IntegrityReport':
        """Report for a check that could not run at all."""
        return cls(passed=False, issues=[message])


class DataLossAlert(BaseModel):
    """Raised when the transaction count drops between two checks."""

    severity: AlertSeverity
    message: str
    timestamp: datetime = Field(default_factory=utc_now)
    transaction_count: int = Field(ge=0)
    previous_count: int = Field(ge=0)

    @property
    def lost_count(self) -> int:
        return self.previous_count - self.transaction_count


class IntegrityStats(BaseModel):
    """Running statistics of the integrity checker."""

    total_checks: int = 0
    passed_checks: int = 0
    failed_checks: int = 0
    critical_alerts: int = 0
    last_check_time: Optional[datetime] = None
