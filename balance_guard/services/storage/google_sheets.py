"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is used as the remote backend because:
1. Users can see their ledger and backups directly in Sheets
2. No database setup required
3. Google keeps its own revision history on top of our snapshots

TRADEOFFS:
- Not suitable for high-volume data (we're fine for a personal ledger)
- No transactions (batches are written one append call at a time)
- Limited query capabilities (we filter in Python)
- A cell holds at most 50,000 characters, so a large snapshot's
  transactions JSON is split over continuation rows that share its id

The implementation follows the abstract interfaces, so we can swap
to Postgres/Supabase later without changing backup logic.
"""

import json
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Sequence
from uuid import UUID

import gspread
from google.oauth2.service_account import Credentials
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from balance_guard.config import GoogleSheetsSettings, get_settings
from balance_guard.models.audit import AuditEvent, AuditEventType, AuditSeverity
from balance_guard.models.backup import Snapshot
from balance_guard.models.transaction import (
    ContentKey,
    TransactionRecord,
    content_key,
    created_at_sort_key,
    json_default,
    parse_timestamp,
    utc_now,
)
from balance_guard.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    SnapshotStoreInterface,
    StorageConnectionError,
    StorageError,
    TransactionStoreInterface,
)


# Column mappings for Transactions sheet
TRANSACTION_COLUMNS = [
    "id",
    "type",
    "amount",
    "currency",
    "category",
    "description",
    "date",
    "created_at",
    "updated_at",
]

# Column mappings for Backups sheet
BACKUP_COLUMNS = [
    "id",
    "timestamp",
    "version",
    "description",
    "checksum",
    "transaction_count",
    "transactions_json",
    "part",
]

# Column mappings for Audit sheet
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
]

# Google Sheets hard limit on characters per cell
SHEETS_CELL_LIMIT = 50000

# Retry transient failures only; duplicates and missing rows are final
_retry_storage = retry(
    retry=retry_if_exception_type(StorageConnectionError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = settings or get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise StorageConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise StorageConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise StorageConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def _get_or_create_sheet(self, title: str, columns: list[str], rows: int) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            # Create the sheet with headers
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet

    def get_transactions_sheet(self) -> gspread.Worksheet:
        """Get or create the Transactions worksheet."""
        return self._get_or_create_sheet(
            self._settings.transactions_sheet_name, TRANSACTION_COLUMNS, rows=1000
        )

    def get_backups_sheet(self) -> gspread.Worksheet:
        """Get or create the Backups worksheet."""
        return self._get_or_create_sheet(
            self._settings.backups_sheet_name, BACKUP_COLUMNS, rows=100
        )

    def get_audit_sheet(self) -> gspread.Worksheet:
        """Get or create the Audit worksheet."""
        return self._get_or_create_sheet(
            self._settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000
        )


def _safe_get(row: list, index: int) -> Optional[str]:
    """Cell value or None for blank/missing cells."""
    try:
        return row[index] if row[index] != "" else None
    except IndexError:
        return None


def _cell(value) -> str:
    """Render a record value as sheet text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    try:
        return str(json_default(value))
    except TypeError:
        return str(value)


def _parse_amount(raw: Optional[str]):
    # Unparseable amounts are kept as text so integrity checks can report them
    if raw is None:
        return None
    try:
        return Decimal(raw)
    except InvalidOperation:
        return raw


class GoogleSheetsTransactionStore(TransactionStoreInterface):
    """
    Google Sheets implementation of the transaction ledger.

    One transaction per row. Blank cells are read back as None so missing
    fields surface in integrity checks.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _record_to_row(self, record: TransactionRecord) -> list:
        """Convert a record to a spreadsheet row."""
        return [_cell(record.get(column)) for column in TRANSACTION_COLUMNS]

    def _row_to_record(self, row: list) -> TransactionRecord:
        """Convert a spreadsheet row to a record."""
        record = {column: _safe_get(row, i) for i, column in enumerate(TRANSACTION_COLUMNS)}
        record["amount"] = _parse_amount(record["amount"])
        return record

    def _all_rows(self) -> list[list]:
        try:
            sheet = self._client.get_transactions_sheet()
            return [row for row in sheet.get_all_values()[1:] if row and row[0]]
        except StorageError:
            raise
        except Exception as e:
            raise StorageConnectionError(f"Failed to read transactions: {e}")

    @_retry_storage
    async def fetch_page(self, offset: int, limit: int) -> list[TransactionRecord]:
        """Read one page ordered by created_at."""
        records = [self._row_to_record(row) for row in self._all_rows()]
        records.sort(key=created_at_sort_key)
        return records[offset:offset + limit]

    @_retry_storage
    async def insert_one(self, record: TransactionRecord) -> TransactionRecord:
        """Append a single transaction."""
        existing_ids = {row[0] for row in self._all_rows()}
        if record.get("id") in existing_ids:
            raise DuplicateError(f"Transaction already exists: {record.get('id')}")

        row = dict(record)
        now = utc_now().isoformat()
        row["created_at"] = row.get("created_at") or now
        row["updated_at"] = row.get("updated_at") or now
        try:
            sheet = self._client.get_transactions_sheet()
            sheet.append_row(self._record_to_row(row), value_input_option="RAW")
        except Exception as e:
            raise StorageConnectionError(f"Failed to insert transaction: {e}")
        return row

    @_retry_storage
    async def insert_many(self, records: Sequence[TransactionRecord]) -> int:
        """Append a batch of transactions in one API call."""
        existing_ids = {row[0] for row in self._all_rows()}
        clashes = [r.get("id") for r in records if r.get("id") in existing_ids]
        if clashes:
            raise DuplicateError(f"Transactions already exist: {clashes}")

        now = utc_now().isoformat()
        rows = []
        for record in records:
            row = dict(record)
            row["created_at"] = row.get("created_at") or now
            row["updated_at"] = row.get("updated_at") or now
            rows.append(self._record_to_row(row))
        try:
            sheet = self._client.get_transactions_sheet()
            sheet.append_rows(rows, value_input_option="RAW")
        except Exception as e:
            raise StorageConnectionError(f"Failed to insert transactions: {e}")
        return len(rows)

    @_retry_storage
    async def delete_many(self, ids: Sequence[str]) -> int:
        """Delete rows by id (bottom-up so row indexes stay valid)."""
        wanted = set(ids)
        try:
            sheet = self._client.get_transactions_sheet()
            all_rows = sheet.get_all_values()
            targets = [
                idx for idx, row in enumerate(all_rows[1:], start=2)
                if row and row[0] in wanted
            ]
            for idx in reversed(targets):
                sheet.delete_rows(idx)
            return len(targets)
        except Exception as e:
            raise StorageConnectionError(f"Failed to delete transactions: {e}")

    @_retry_storage
    async def delete_all(self) -> int:
        """Delete every data row, keeping the header."""
        try:
            sheet = self._client.get_transactions_sheet()
            count = len(sheet.get_all_values()) - 1
            if count > 0:
                sheet.delete_rows(2, count + 1)
            return max(count, 0)
        except Exception as e:
            raise StorageConnectionError(f"Failed to clear transactions: {e}")

    @_retry_storage
    async def find_by_content(
        self,
        key: ContentKey,
        created_after: datetime,
        limit: int = 1,
    ) -> list[TransactionRecord]:
        """Filter rows by content key and creation time."""
        matches = []
        for row in self._all_rows():
            record = self._row_to_record(row)
            created = parse_timestamp(record.get("created_at"))
            if created is None or created < created_after:
                continue
            if content_key(record) == key:
                matches.append(record)
        matches.sort(key=created_at_sort_key, reverse=True)
        return matches[:limit]


def _parse_part(raw: Optional[str]) -> tuple[int, int]:
    """(index, total) from a part cell; rows without one hold a whole snapshot."""
    if not raw:
        return 0, 1
    index, _, total = raw.partition("/")
    return int(index), int(total)


class GoogleSheetsSnapshotStore(SnapshotStoreInterface):
    """
    Google Sheets implementation of snapshot storage.

    The first row of a snapshot carries its metadata. The transactions JSON
    is cut into chunks of at most ``chunk_size`` characters; every chunk
    after the first goes on a continuation row holding only the id, the
    chunk and an ``<index>/<total>`` part marker. A snapshot with a missing
    part is unreadable.
    """

    def __init__(
        self,
        client: Optional[GoogleSheetsClient] = None,
        chunk_size: int = SHEETS_CELL_LIMIT,
    ):
        if not 0 < chunk_size <= SHEETS_CELL_LIMIT:
            raise ValueError(f"chunk_size must be between 1 and {SHEETS_CELL_LIMIT}")
        self._client = client or GoogleSheetsClient()
        self._chunk_size = chunk_size

    def _snapshot_to_rows(self, snapshot: Snapshot) -> list[list]:
        payload = snapshot.transactions_json()
        size = self._chunk_size
        chunks = [payload[i:i + size] for i in range(0, len(payload), size)] or [""]
        total = len(chunks)

        rows = [[
            snapshot.id,
            snapshot.timestamp.isoformat(),
            snapshot.version,
            snapshot.description,
            snapshot.checksum,
            str(snapshot.transaction_count),
            chunks[0],
            f"0/{total}",
        ]]
        for index, chunk in enumerate(chunks[1:], start=1):
            rows.append([snapshot.id, "", "", "", "", "", chunk, f"{index}/{total}"])
        return rows

    def _rows_to_snapshot(self, rows: list[list]) -> Snapshot:
        parts = sorted(rows, key=lambda r: _parse_part(_safe_get(r, 7)))
        head = parts[0]
        _, total = _parse_part(_safe_get(head, 7))
        found = [_parse_part(_safe_get(r, 7))[0] for r in parts]
        if found != list(range(total)):
            raise ValueError(f"expected {total} parts, found parts {found}")

        payload = "".join(_safe_get(r, 6) or "" for r in parts)
        return Snapshot(
            id=_safe_get(head, 0),
            timestamp=datetime.fromisoformat(_safe_get(head, 1)),
            version=_safe_get(head, 2) or "",
            description=_safe_get(head, 3) or "",
            checksum=_safe_get(head, 4) or "",
            transactions=json.loads(payload or "[]"),
        )

    def _backup_rows(self, action: str) -> list[list]:
        try:
            sheet = self._client.get_backups_sheet()
            return sheet.get_all_values()[1:]
        except Exception as e:
            raise StorageConnectionError(f"Failed to {action}: {e}")

    @_retry_storage
    async def save_snapshot(self, snapshot: Snapshot) -> Snapshot:
        """Append the snapshot's rows in a single call."""
        rows = self._snapshot_to_rows(snapshot)
        try:
            sheet = self._client.get_backups_sheet()
            sheet.append_rows(rows, value_input_option="RAW")
            return snapshot
        except Exception as e:
            raise StorageConnectionError(f"Failed to save snapshot: {e}")

    @_retry_storage
    async def list_snapshots(self) -> list[Snapshot]:
        """All snapshots, newest first. Malformed or incomplete ones are skipped."""
        groups: dict[str, list[list]] = {}
        for row in self._backup_rows("list snapshots"):
            if row and row[0]:
                groups.setdefault(row[0], []).append(row)

        snapshots = []
        for rows in groups.values():
            try:
                snapshots.append(self._rows_to_snapshot(rows))
            except (ValueError, TypeError):
                continue
        snapshots.sort(key=lambda s: s.timestamp, reverse=True)
        return snapshots

    @_retry_storage
    async def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        """Retrieve a snapshot by its ID."""
        rows = [
            row for row in self._backup_rows("get snapshot")
            if row and row[0] == snapshot_id
        ]
        if not rows:
            return None
        try:
            return self._rows_to_snapshot(rows)
        except (ValueError, TypeError) as e:
            raise StorageError(f"Snapshot {snapshot_id} is unreadable: {e}")


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        return AuditEvent(
            event_id=UUID(_safe_get(row, 0)),
            timestamp=datetime.fromisoformat(_safe_get(row, 1)),
            event_type=AuditEventType(_safe_get(row, 2)),
            severity=AuditSeverity(_safe_get(row, 3)),
            entity_type=_safe_get(row, 4),
            entity_id=_safe_get(row, 5),
            correlation_id=UUID(_safe_get(row, 6)) if _safe_get(row, 6) else None,
            description=_safe_get(row, 7) or "",
            details=json.loads(_safe_get(row, 8)) if _safe_get(row, 8) else {},
            error_message=_safe_get(row, 9),
        )

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            sheet = self._client.get_audit_sheet()
            sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except Exception as e:
            raise StorageError(f"Failed to write audit event: {e}")

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get recent events."""
        try:
            sheet = self._client.get_audit_sheet()
            all_rows = sheet.get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

        events = []
        for row in all_rows:
            if row and row[0]:
                try:
                    events.append(self._row_to_event(row))
                except (ValueError, TypeError):
                    continue

        # Sort newest first
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]


__all__ = [
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsSnapshotStore",
    "GoogleSheetsTransactionStore",
]
