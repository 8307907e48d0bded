"""Checksum computation and ledger integrity checks."""

from balance_guard.validation.checksum import compute_checksum, compute_date_range
from balance_guard.validation.integrity import IntegrityChecker

__all__ = ["IntegrityChecker", "compute_checksum", "compute_date_range"]
