"""
CONTENT RAIL - Settlement Module

Agent-side payment orchestration:
- Tracking tags tying transfers to purchases
- Payment rail interface and in-memory rail
- Licensing clients (in-process and HTTP)
- The orchestrator with sequential, parallel and atomic strategies
"""

from .tracking import encode_tracking_tag, decode_tracking_tag, TrackingTag
from .rail import PaymentRail, InMemoryPaymentRail, TransferInstruction, TransferReceipt, BatchReceipt
from .client import LicensingClient, LocalLicensingClient, HttpLicensingClient, ContentQuote
from .orchestrator import (
    PaymentOrchestrator,
    SettlementStrategy,
    SettlementResult,
    ItemOutcome,
    PurchaseRecord,
)

__all__ = [
    "encode_tracking_tag",
    "decode_tracking_tag",
    "TrackingTag",
    "PaymentRail",
    "InMemoryPaymentRail",
    "TransferInstruction",
    "TransferReceipt",
    "BatchReceipt",
    "LicensingClient",
    "LocalLicensingClient",
    "HttpLicensingClient",
    "ContentQuote",
    "PaymentOrchestrator",
    "SettlementStrategy",
    "SettlementResult",
    "ItemOutcome",
    "PurchaseRecord",
]
