"""
CONTENT RAIL - Billing Module

Spending Guard: per-agent daily budget and per-item price ceiling.
- Rolling 24-hour window
- Check and commit in one locked step
- Reservations can be released when a transfer does not confirm
"""

from .spending import SpendingGuard, SpendingLedger, Reservation

__all__ = [
    "SpendingGuard",
    "SpendingLedger",
    "Reservation",
]
