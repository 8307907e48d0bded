"""
Transaction Models for Balance Guard

Two views of a transaction exist in this system:

1. RECORDS - plain mappings exactly as the transaction store returns them
   (snake_case keys: id, type, amount, currency, category, description,
   date, created_at, updated_at). Snapshots, checksums and integrity checks
   work on records so that a malformed row can be REPORTED instead of
   crashing the whole check.

2. Transaction - the strict Pydantic model used to validate new writes and
   imported files before they reach the store.

DESIGN DECISION: Duplicate detection uses a content key built from the
business fields only. Storage-assigned fields (id, created_at, updated_at)
never take part, so two rows with different ids but identical content are
duplicates.
"""

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping, NamedTuple, Optional
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


# Type alias for a raw transaction row
TransactionRecord = dict[str, Any]

# The model has a field named "date"; keep an unshadowed name for the type
CalendarDate = date

REQUIRED_FIELDS: tuple[str, ...] = (
    "id",
    "type",
    "amount",
    "currency",
    "category",
    "description",
    "date",
)

# Fields hashed by the checksum (order is irrelevant, keys are sorted)
CHECKSUM_FIELDS: tuple[str, ...] = REQUIRED_FIELDS + ("created_at",)

MIN_YEAR = 1900
MAX_YEAR = 2100


def utc_now() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class TransactionType(str, Enum):
    """Kinds of ledger entries."""
    INCOME = "income"
    EXPENSE = "expense"
    INVESTMENT = "investment"


# =============================================================================
# CONTENT KEY
# =============================================================================

class ContentKey(NamedTuple):
    """
    Business identity of a transaction.

    Equal content keys mean duplicate transactions, regardless of id.
    """
    type: Any
    amount: Any
    currency: Any
    category: Any
    description: Any
    date: Any


def canonical_amount(value: Any) -> Any:
    """
    Normalize a numeric amount so 1000, 1000.0 and Decimal("1000.00")
    compare and hash identically.

    Non-numeric values (including bools) are returned unchanged so a
    string amount never collides with a real number.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        try:
            return Decimal(str(value)).normalize()
        except InvalidOperation:
            return value
    return value


def _canonical_date(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def content_key(record: Mapping[str, Any]) -> ContentKey:
    """Build the content key of a record or of a model dump."""
    return ContentKey(
        type=_enum_value(record.get("type")),
        amount=canonical_amount(record.get("amount")),
        currency=record.get("currency"),
        category=record.get("category"),
        description=record.get("description"),
        date=_canonical_date(record.get("date")),
    )


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def parse_record_date(value: Any) -> Optional[date]:
    """
    Parse the ``date`` field of a record.

    Accepts date/datetime objects and ISO-8601 strings (date only or full
    timestamp). Returns None when the value cannot be parsed.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None


# =============================================================================
# TRANSACTION MODEL
# =============================================================================

class Transaction(BaseModel):
    """
    A validated ledger transaction.

    Used for new inserts and imported files. Records fetched from the
    store are only converted to this model when they are about to be
    written somewhere else.
    """
    model_config = ConfigDict(str_strip_whitespace=True, use_enum_values=False)

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        min_length=1,
        description="Opaque unique identifier"
    )
    type: TransactionType = Field(
        ...,
        description="income, expense or investment"
    )
    amount: Decimal = Field(
        ...,
        gt=0,
        description="Positive amount in the transaction currency"
    )
    currency: str = Field(
        ...,
        min_length=1,
        max_length=10,
        description="ISO currency code"
    )
    category: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Category from the fixed taxonomy"
    )
    description: str = Field(
        default="",
        max_length=500,
        description="Free text; required to be longer for category 'other'"
    )
    date: CalendarDate = Field(
        ...,
        description="Calendar date of the transaction"
    )

    # Backend-assigned timestamps
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Currency codes are stored upper-case."""
        return v.upper()

    @field_validator('date')
    @classmethod
    def validate_year(cls, v: CalendarDate) -> CalendarDate:
        """Dates must fall inside the supported calendar window."""
        if not MIN_YEAR <= v.year <= MAX_YEAR:
            raise ValueError(f"Date year must be between {MIN_YEAR} and {MAX_YEAR}")
        return v

    @model_validator(mode='after')
    def validate_other_description(self) -> 'Transaction':
        """Category 'other' needs a meaningful description."""
        if self.category == "other" and len(self.description) < 5:
            raise ValueError(
                "Please provide a more detailed description for 'other' category "
                "(at least 5 characters)"
            )
        return self

    @property
    def content_key(self) -> ContentKey:
        return content_key(self.to_record())

    def to_record(self) -> TransactionRecord:
        """Convert to a JSON-friendly store record."""
        return {
            "id": self.id,
            "type": self.type.value,
            "amount": self.amount,
            "currency": self.currency,
            "category": self.category,
            "description": self.description,
            "date": self.date.isoformat(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> 'Transaction':
        """Validate a store record (raises pydantic.ValidationError)."""
        return cls.model_validate(dict(record))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a created_at/updated_at value into an aware datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def created_at_sort_key(record: Mapping[str, Any]) -> tuple:
    """Order by creation time; rows without a timestamp sort first."""
    parsed = parse_timestamp(record.get("created_at"))
    return (parsed is not None, parsed or datetime.min.replace(tzinfo=timezone.utc))


def missing_required_fields(record: Mapping[str, Any]) -> list[str]:
    """Return the required fields that are absent or None."""
    return [f for f in REQUIRED_FIELDS if record.get(f) is None]


def json_default(value: Any) -> Any:
    """
    ``json.dumps`` hook for record values.

    Decimals become plain JSON numbers (not strings) so exported files keep
    the numeric amounts previous exports used.
    """
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
