"""
CONTENT RAIL - Core Module

Ledger entries, the licensing engine and the error taxonomy.
"""

from .errors import (
    ContentRailError,
    ValidationError,
    AuthorizationError,
    NotFoundError,
    ContentInactive,
    BudgetError,
    PaymentRailError,
)
from .ledger import ContentEntry, License, LedgerStore, parse_fingerprint, fingerprint_of
from .licensing import LicensingEngine

__all__ = [
    "ContentRailError",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "ContentInactive",
    "BudgetError",
    "PaymentRailError",
    "ContentEntry",
    "License",
    "LedgerStore",
    "parse_fingerprint",
    "fingerprint_of",
    "LicensingEngine",
]
