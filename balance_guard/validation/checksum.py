"""
Ledger checksum and date range.

The checksum is a SHA-256 over a canonical projection of every record:

1. Project each record onto CHECKSUM_FIELDS (id, business fields, created_at)
2. Canonicalize values (numeric amounts normalized, dates as ISO strings)
3. Sort by created_at, ties broken by the serialized projection
4. Serialize with sorted keys and no whitespace, hash, render lowercase hex

Backends do not guarantee return order, so the sort makes the hash
independent of how the rows arrived.
"""

import hashlib
import json
from datetime import date, datetime
from typing import Any, Iterable, Mapping

from balance_guard.models.integrity import DateRange
from balance_guard.models.transaction import (
    CHECKSUM_FIELDS,
    canonical_amount,
    json_default,
    parse_record_date,
)


def _canonical_value(field: str, value: Any) -> Any:
    if field == "amount":
        return canonical_amount(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _project(record: Mapping[str, Any]) -> dict[str, Any]:
    return {f: _canonical_value(f, record.get(f)) for f in CHECKSUM_FIELDS}


def _serialize(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=json_default)


def compute_checksum(records: Iterable[Mapping[str, Any]]) -> str:
    """Content hash of a transaction set, independent of input order."""
    keyed = sorted(
        (str(p["created_at"] or ""), _serialize(p))
        for p in map(_project, records)
    )
    payload = "[" + ",".join(serialized for _, serialized in keyed) + "]"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compute_date_range(records: Iterable[Mapping[str, Any]]) -> DateRange:
    """Earliest and latest parseable transaction date."""
    dates = sorted(
        d for d in (parse_record_date(r.get("date")) for r in records)
        if d is not None
    )
    if not dates:
        return DateRange()
    return DateRange(start=dates[0].isoformat(), end=dates[-1].isoformat())
