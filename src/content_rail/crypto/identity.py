"""
Agent Identities and Access Proofs

An agent is identified by its Ed25519 public key, rendered as a 0x-prefixed
hex address. To read licensed content the agent signs
``"<unix seconds>,<content hash>"``; the gateway checks the timestamp is
fresh and the signature verifies against the claimed address.
"""

import base64
import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
import structlog

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from ..config import PROOF_MAX_SKEW_SECONDS
from ..core.ledger import FingerprintLike, fingerprint_hex, parse_fingerprint

logger = structlog.get_logger()

ADDRESS_PREFIX = "0x"
PUBLIC_KEY_SIZE = 32


@dataclass(frozen=True)
class AccessProof:
    """Signed statement that an agent wants to read one piece of content now."""
    timestamp: int  # unix seconds
    signature: str  # base64

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "signature": self.signature}


def proof_message(fingerprint: FingerprintLike, timestamp: int) -> bytes:
    return f"{timestamp},{fingerprint_hex(parse_fingerprint(fingerprint))}".encode("utf-8")


class AgentIdentity:
    """An Ed25519 key pair used as an agent's paying identity."""

    def __init__(self, private_key_bytes: Optional[bytes] = None):
        if private_key_bytes:
            self._private_key = ed25519.Ed25519PrivateKey.from_private_bytes(private_key_bytes)
        else:
            self._private_key = ed25519.Ed25519PrivateKey.generate()
        self._public_key = self._private_key.public_key()

        public_bytes = self._public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self._address = ADDRESS_PREFIX + public_bytes.hex()
        self._key_id = hashlib.sha256(public_bytes).hexdigest()[:16]

    @classmethod
    def generate(cls) -> "AgentIdentity":
        identity = cls()
        logger.info("agent_identity_created", address=identity.address)
        return identity

    @classmethod
    def from_hex(cls, private_key_hex: str) -> "AgentIdentity":
        text = private_key_hex[2:] if private_key_hex.startswith(ADDRESS_PREFIX) else private_key_hex
        return cls(bytes.fromhex(text))

    @property
    def address(self) -> str:
        return self._address

    @property
    def key_id(self) -> str:
        return self._key_id

    def private_key_hex(self) -> str:
        raw = self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return ADDRESS_PREFIX + raw.hex()

    def sign(self, data: bytes) -> str:
        return base64.b64encode(self._private_key.sign(data)).decode("utf-8")

    def sign_access(self, fingerprint: FingerprintLike, now: datetime) -> AccessProof:
        timestamp = int(now.timestamp())
        return AccessProof(
            timestamp=timestamp,
            signature=self.sign(proof_message(fingerprint, timestamp)),
        )


def public_key_from_address(address: str) -> Optional[ed25519.Ed25519PublicKey]:
    """The verifying key behind an address, or None if it is not a key address."""
    if not address or not address.lower().startswith(ADDRESS_PREFIX):
        return None
    try:
        raw = bytes.fromhex(address[len(ADDRESS_PREFIX):])
    except ValueError:
        return None
    if len(raw) != PUBLIC_KEY_SIZE:
        return None
    return ed25519.Ed25519PublicKey.from_public_bytes(raw)


def verify_access_proof(
    address: str,
    fingerprint: FingerprintLike,
    proof: AccessProof,
    now: datetime,
    max_skew_seconds: int = PROOF_MAX_SKEW_SECONDS,
) -> Tuple[bool, Optional[str]]:
    """
    Check an access proof.

    Returns (valid, error_code); error_code is SIGNATURE_EXPIRED or
    INVALID_SIGNATURE when invalid.
    """
    if abs(int(now.timestamp()) - int(proof.timestamp)) > max_skew_seconds:
        return False, "SIGNATURE_EXPIRED"

    public_key = public_key_from_address(address)
    if public_key is None:
        return False, "INVALID_SIGNATURE"

    try:
        signature = base64.b64decode(proof.signature, validate=True)
        public_key.verify(signature, proof_message(fingerprint, proof.timestamp))
    except (InvalidSignature, ValueError) as e:
        logger.warning("access_proof_rejected", address=address, error=str(e) or type(e).__name__)
        return False, "INVALID_SIGNATURE"

    return True, None
