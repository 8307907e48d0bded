"""
Export / import of the ledger interchange file.

File shape (kept field-for-field compatible with earlier exports):

    {
      "transactions": [...],
      "exportDate": "2024-01-31T12:00:00+00:00",
      "version": "1.0.0",
      "totalTransactions": 42
    }
"""

import json
from typing import Any, Optional, Sequence

import structlog
from pydantic import ValidationError

from balance_guard.config import get_settings
from balance_guard.models.backup import ExportData
from balance_guard.models.transaction import Transaction, TransactionRecord, json_default, utc_now

logger = structlog.get_logger(__name__)

# Older exports used camelCase timestamps
_LEGACY_KEYS = {"createdAt": "created_at", "updatedAt": "updated_at"}

_MAX_REPORTED_ERRORS = 5


class SnapshotFormatError(ValueError):
    """An import file is not a valid ledger export."""


def export_data(records: Sequence[TransactionRecord], version: Optional[str] = None) -> str:
    """Serialize ``records`` as a pretty-printed export file."""
    payload = ExportData(
        transactions=[dict(r) for r in records],
        export_date=utc_now().isoformat(),
        version=version or get_settings().backup.export_version,
        total_transactions=len(records),
    )
    return json.dumps(payload.model_dump(by_alias=True), indent=2, default=json_default)


def _normalize_keys(record: dict[str, Any]) -> dict[str, Any]:
    return {_LEGACY_KEYS.get(k, k): v for k, v in record.items()}


def import_data(text: str) -> list[TransactionRecord]:
    """
    Parse and validate an export file.

    Every transaction is validated against the Transaction model; the
    returned records are normalized (upper-case currency, ISO dates) and
    ready to be inserted.

    Raises:
        SnapshotFormatError: If the file is not JSON, lacks a transactions
            array, or contains invalid transactions
    """
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise SnapshotFormatError(f"Invalid import data: {e}") from e

    if not isinstance(payload, dict) or not isinstance(payload.get("transactions"), list):
        raise SnapshotFormatError("Invalid import data: missing transactions array")

    records: list[TransactionRecord] = []
    errors: list[str] = []

    for index, raw in enumerate(payload["transactions"]):
        if not isinstance(raw, dict):
            errors.append(f"#{index}: not an object")
            continue
        try:
            transaction = Transaction.from_record(_normalize_keys(raw))
        except ValidationError as e:
            errors.append(f"#{index}: {e.errors()[0]['msg']}")
            continue
        records.append({k: v for k, v in transaction.to_record().items() if v is not None})

    if errors:
        shown = "; ".join(errors[:_MAX_REPORTED_ERRORS])
        raise SnapshotFormatError(f"{len(errors)} invalid transactions in import: {shown}")

    logger.info(
        "import_parsed",
        transactions=len(records),
        export_date=payload.get("exportDate"),
        version=payload.get("version"),
    )
    return records
