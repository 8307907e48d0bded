"""
Integrity Checker

Validates a full transaction set and remembers just enough state (last
count, last checksum) to notice regressions on the NEXT call.

DESIGN DECISION: Checks accumulate issues instead of failing fast. One
malformed row must never hide what is wrong with the rest of the ledger,
so every check runs on every call and contributes zero or more issue
strings to the report.

Checks, in order:
1. Count regression     - fewer rows than last time raises a CRITICAL alert
2. Required fields      - every required field present and non-null
3. Data types           - amount numeric, text fields are strings
4. Values               - amount > 0, type is a known transaction type
5. Date validity        - parses and falls inside the configured years
6. Duplicates           - repeated ids plus repeated content keys
7. Checksum drift       - same count but different hash since last check
"""

from collections import deque
from datetime import date
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

import structlog

from balance_guard.config import IntegritySettings, get_settings
from balance_guard.models.integrity import (
    AlertSeverity,
    DataLossAlert,
    IntegrityReport,
    IntegrityStats,
)
from balance_guard.models.transaction import (
    TransactionType,
    content_key,
    missing_required_fields,
    parse_record_date,
)
from balance_guard.validation.checksum import compute_checksum, compute_date_range

logger = structlog.get_logger(__name__)

_STRING_FIELDS = ("type", "currency", "category", "description")
_TRANSACTION_TYPES = {t.value for t in TransactionType}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


class IntegrityChecker:
    """
    Stateful integrity checker.

    Construct once and share. The only mutable state is the regression
    baseline (last count and checksum), the bounded alert buffer and the
    running statistics; ``reset()`` clears all of it.
    """

    def __init__(self, settings: Optional[IntegritySettings] = None):
        self._settings = settings or get_settings().integrity
        self._last_count: Optional[int] = None
        self._last_checksum: Optional[str] = None
        self._alerts: deque[DataLossAlert] = deque(maxlen=self._settings.max_alerts)
        self._stats = IntegrityStats()

    @property
    def last_count(self) -> Optional[int]:
        return self._last_count

    @property
    def last_checksum(self) -> Optional[str]:
        return self._last_checksum

    # =========================================================================
    # CHECK
    # =========================================================================

    def check(
        self,
        records: Sequence[Mapping[str, Any]],
        track: bool = True,
    ) -> IntegrityReport:
        """
        Run every check over ``records``.

        Args:
            records: The full ledger as returned by the store
            track: Update the regression baseline afterwards. Pass False
                   to validate a set (e.g. a snapshot) without affecting
                   the next check of the live ledger.

        Returns:
            IntegrityReport; ``passed`` iff no issue was found
        """
        count = len(records)
        issues: list[str] = []
        data_loss = False

        if track and self._last_count is not None and count < self._last_count:
            data_loss = True
            lost = self._last_count - count
            issues.append(
                f"POTENTIAL DATA LOSS: {lost} transactions missing "
                f"(was {self._last_count}, now {count})"
            )
            self._add_alert(DataLossAlert(
                severity=AlertSeverity.CRITICAL,
                message=f"Potential data loss detected: {lost} transactions missing",
                transaction_count=count,
                previous_count=self._last_count,
            ))

        incomplete = sum(1 for r in records if missing_required_fields(r))
        if incomplete:
            issues.append(f"{incomplete} transactions missing required fields")

        bad_types = sum(1 for r in records if self._has_bad_types(r))
        if bad_types:
            issues.append(f"{bad_types} transactions have invalid data types")

        bad_values = sum(1 for r in records if self._has_bad_values(r))
        if bad_values:
            issues.append(f"{bad_values} transactions have invalid values")

        bad_dates = sum(1 for r in records if not self._has_valid_date(r))
        if bad_dates:
            issues.append(f"{bad_dates} transactions have invalid dates")

        duplicates = self.count_duplicates(records)
        if duplicates:
            issues.append(f"{duplicates} duplicate transactions detected")

        checksum = compute_checksum(records)
        if (
            track
            and self._last_checksum is not None
            and self._last_count == count
            and self._last_checksum != checksum
        ):
            issues.append("Data checksum changed - possible data corruption")

        if track:
            self._last_count = count
            self._last_checksum = checksum

        report = IntegrityReport(
            passed=not issues,
            issues=issues,
            transaction_count=count,
            date_range=compute_date_range(records),
            checksum=checksum,
            data_loss_detected=data_loss,
        )
        self._record(report)

        if report.passed:
            logger.info("integrity_check_passed", transaction_count=count)
        else:
            logger.warning("integrity_check_failed", transaction_count=count, issues=issues)

        return report

    @staticmethod
    def count_duplicates(records: Sequence[Mapping[str, Any]]) -> int:
        """Repeated ids plus repeated content keys (a row can count twice)."""
        seen_ids: set = set()
        seen_keys: set = set()
        duplicates = 0

        for record in records:
            record_id = record.get("id")
            if record_id in seen_ids:
                duplicates += 1
            else:
                seen_ids.add(record_id)

            key = content_key(record)
            if key in seen_keys:
                duplicates += 1
            else:
                seen_keys.add(key)

        return duplicates

    @staticmethod
    def _has_bad_types(record: Mapping[str, Any]) -> bool:
        if not _is_number(record.get("amount")):
            return True
        if any(not isinstance(record.get(f), str) for f in _STRING_FIELDS):
            return True
        return not isinstance(record.get("date"), (str, date))

    @staticmethod
    def _has_bad_values(record: Mapping[str, Any]) -> bool:
        amount = record.get("amount")
        if _is_number(amount) and amount <= 0:
            return True
        kind = record.get("type")
        return isinstance(kind, str) and kind not in _TRANSACTION_TYPES

    def _has_valid_date(self, record: Mapping[str, Any]) -> bool:
        parsed = parse_record_date(record.get("date"))
        if parsed is None:
            return False
        return self._settings.min_year <= parsed.year <= self._settings.max_year

    # =========================================================================
    # ALERTS AND STATISTICS
    # =========================================================================

    def _add_alert(self, alert: DataLossAlert) -> None:
        self._alerts.append(alert)
        if alert.severity == AlertSeverity.CRITICAL:
            self._stats.critical_alerts += 1
            logger.critical(
                "data_loss_alert",
                message=alert.message,
                previous_count=alert.previous_count,
                transaction_count=alert.transaction_count,
            )

    def _record(self, report: IntegrityReport) -> None:
        self._stats.total_checks += 1
        if report.passed:
            self._stats.passed_checks += 1
        else:
            self._stats.failed_checks += 1
        self._stats.last_check_time = report.checked_at

    def get_alerts(self) -> list[DataLossAlert]:
        """Buffered alerts, oldest first."""
        return list(self._alerts)

    def clear_alerts(self) -> None:
        self._alerts.clear()

    def stats(self) -> IntegrityStats:
        return self._stats.model_copy()

    def clear_baseline(self) -> None:
        """Forget the last count and checksum after a deliberate ledger change."""
        self._last_count = None
        self._last_checksum = None
        logger.info("integrity_baseline_cleared")

    def reset(self) -> None:
        """Forget the baseline, alerts and statistics."""
        self._last_count = None
        self._last_checksum = None
        self._alerts.clear()
        self._stats = IntegrityStats()
