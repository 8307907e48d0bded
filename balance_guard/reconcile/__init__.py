"""Duplicate detection and cleanup."""

from balance_guard.reconcile.duplicates import DuplicateReconciler, find_duplicate_ids

__all__ = ["DuplicateReconciler", "find_duplicate_ids"]
