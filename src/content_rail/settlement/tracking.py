"""
Tracking Tags

Every transfer carries a 32-byte tag that ties it back to the purchase it
pays for. The tag is derived from the content fingerprint, the purchase
timestamp and the item's index within its settlement call:

    LIC:<first 12 hex digits of fingerprint>:<ms timestamp, hex>:<index, hex>

The text is UTF-8 encoded, truncated to 32 bytes and left-padded with zero
bytes. Tags are for off-ledger correlation only and carry no authority.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from ..config import TRACKING_FINGERPRINT_HEX, TRACKING_TAG_PREFIX
from ..core.clock import to_millis
from ..core.errors import ValidationError
from ..core.ledger import FingerprintLike, parse_fingerprint

TAG_SIZE = 32
TAG_PREFIX = TRACKING_TAG_PREFIX
FINGERPRINT_PREFIX_HEX = TRACKING_FINGERPRINT_HEX


@dataclass(frozen=True)
class TrackingTag:
    """Decoded view of a tag."""
    fingerprint_prefix: str
    timestamp_ms: int
    index: int

    def matches(self, fingerprint: FingerprintLike) -> bool:
        fp = parse_fingerprint(fingerprint)
        return fp.hex()[:FINGERPRINT_PREFIX_HEX] == self.fingerprint_prefix


def encode_tracking_tag(
    fingerprint: FingerprintLike,
    timestamp: Union[datetime, int],
    index: int = 0,
) -> bytes:
    """Build the fixed-width tag for one purchase item."""
    if index < 0:
        raise ValidationError("Tag index must not be negative")
    fp = parse_fingerprint(fingerprint)
    millis = to_millis(timestamp) if isinstance(timestamp, datetime) else int(timestamp)

    text = f"{TAG_PREFIX}:{fp.hex()[:FINGERPRINT_PREFIX_HEX]}:{millis:x}:{index:x}"
    raw = text.encode("utf-8")[:TAG_SIZE]
    return raw.rjust(TAG_SIZE, b"\x00")


def decode_tracking_tag(tag: Union[bytes, str]) -> Optional[TrackingTag]:
    """Recover the fields of a tag, or None if it is not one of ours."""
    if isinstance(tag, str):
        text = tag[2:] if tag[:2].lower() == "0x" else tag
        try:
            tag = bytes.fromhex(text)
        except ValueError:
            return None
    if len(tag) != TAG_SIZE:
        return None

    try:
        text = tag.lstrip(b"\x00").decode("utf-8")
        prefix, fp_prefix, millis, index = text.split(":")
        if prefix != TAG_PREFIX:
            return None
        return TrackingTag(
            fingerprint_prefix=fp_prefix,
            timestamp_ms=int(millis, 16),
            index=int(index, 16),
        )
    except ValueError:
        return None


def tag_hex(tag: bytes) -> str:
    return "0x" + tag.hex()
