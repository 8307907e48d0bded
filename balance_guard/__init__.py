"""
Balance Guard - Source Package

Backup, restore and data-integrity tooling for a personal finance
transaction ledger.

DESIGN PRINCIPLES:
1. No operation leaves the caller guessing whether data was mutated
2. Integrity findings are accumulated, never fail-fast
3. Storage failures fall back locally, never silently
4. Every backup, restore and cleanup is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Balance Guard Team"
