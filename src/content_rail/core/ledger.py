"""
Ledger Entry Store

Holds registered content and issued licenses. Pure data plus invariants;
the LicensingEngine owns an instance and performs all locking.

Fingerprints are 32-byte content hashes. At the boundary they travel as
0x-prefixed hex strings.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, Optional, Tuple, Union

from .errors import InvalidFingerprint, InvalidPrice

FINGERPRINT_SIZE = 32

FingerprintLike = Union[bytes, str]


def parse_fingerprint(value: FingerprintLike) -> bytes:
    """Normalize a fingerprint given as raw bytes or (0x-)hex text."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        text = value.strip()
        if text[:2].lower() == "0x":
            text = text[2:]
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raise InvalidFingerprint(f"Fingerprint is not valid hex: {value!r}")
    else:
        raise InvalidFingerprint(f"Unsupported fingerprint type: {type(value).__name__}")

    if len(raw) != FINGERPRINT_SIZE:
        raise InvalidFingerprint(
            f"Fingerprint must be {FINGERPRINT_SIZE} bytes, got {len(raw)}"
        )
    return raw


def fingerprint_hex(fingerprint: bytes) -> str:
    return "0x" + fingerprint.hex()


def fingerprint_of(content: bytes) -> bytes:
    """Derive a fingerprint from the content body (SHA-256)."""
    return hashlib.sha256(content).digest()


def normalize_identity(identity: str) -> str:
    return identity.strip().lower()


@dataclass
class ContentEntry:
    """A piece of priced content. Never deleted."""
    fingerprint: bytes
    price: int
    owner: str
    uri: str
    created_at: datetime
    active: bool = True
    revenue: int = 0
    access_count: int = 0

    def __post_init__(self):
        if self.price <= 0:
            raise InvalidPrice("Price must be greater than zero", price=self.price)

    @property
    def fingerprint_hex(self) -> str:
        return fingerprint_hex(self.fingerprint)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contentHash": self.fingerprint_hex,
            "price": str(self.price),
            "contentOwner": self.owner,
            "contentURI": self.uri,
            "active": self.active,
            "totalRevenue": str(self.revenue),
            "accessCount": self.access_count,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class License:
    """Proof that ``holder`` paid for ``fingerprint`` until ``expiry``."""
    holder: str
    fingerprint: bytes
    expiry: datetime
    price_paid: int
    transfer_ref: str
    issued_at: datetime
    active: bool = True

    def is_valid(self, now: datetime) -> bool:
        return self.active and self.expiry > now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agentAddress": self.holder,
            "contentHash": fingerprint_hex(self.fingerprint),
            "expiry": self.expiry.isoformat(),
            "pricePaid": str(self.price_paid),
            "txHash": self.transfer_ref,
            "issuedAt": self.issued_at.isoformat(),
            "active": self.active,
        }


class LedgerStore:
    """In-memory store of content entries and licenses."""

    def __init__(self):
        self._content: Dict[bytes, ContentEntry] = {}
        self._licenses: Dict[Tuple[str, bytes], License] = {}

    def get_content(self, fingerprint: bytes) -> Optional[ContentEntry]:
        return self._content.get(fingerprint)

    def has_content(self, fingerprint: bytes) -> bool:
        return fingerprint in self._content

    def add_content(self, entry: ContentEntry) -> None:
        self._content[entry.fingerprint] = entry

    def iter_content(self) -> Iterator[ContentEntry]:
        return iter(list(self._content.values()))

    def get_license(self, holder: str, fingerprint: bytes) -> Optional[License]:
        return self._licenses.get((holder, fingerprint))

    def put_license(self, license: License) -> None:
        # Overwrites any earlier license for the same pair.
        self._licenses[(license.holder, license.fingerprint)] = license

    def clear(self) -> None:
        self._content.clear()
        self._licenses.clear()

    def __len__(self) -> int:
        return len(self._content)
