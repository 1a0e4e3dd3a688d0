"""
Access Gateway

Decides, per request, whether a caller may read a piece of content.

Policy:
- unknown content is NOT_FOUND, disabled content is FORBIDDEN
- human (non-automated) callers read for free
- automated callers must identify themselves, prove freshness with a signed
  access proof, and hold a valid license; otherwise they are told what to
  pay and to whom (PAYMENT_REQUIRED)
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Dict, List, Optional
import structlog

from ..config import (
    DEFAULT_CURRENCY,
    PROOF_MAX_SKEW_SECONDS,
    TRACKING_FINGERPRINT_HEX,
    TRACKING_TAG_PREFIX,
    ServerSettings,
)
from ..core.clock import Clock, to_millis
from ..core.errors import ContentNotFound
from ..core.ledger import FingerprintLike, normalize_identity, parse_fingerprint
from ..core.licensing import LicensingEngine
from ..crypto.identity import AccessProof, verify_access_proof

logger = structlog.get_logger()

AUTOMATED_AGENT_MARKERS = ("AI-Agent-Crawler", "Bot", "Crawler")


def is_automated_agent(user_agent: Optional[str]) -> bool:
    """Classify a caller by its User-Agent header."""
    if not user_agent:
        return False
    return any(marker in user_agent for marker in AUTOMATED_AGENT_MARKERS)


class GateDecision(Enum):
    """Gateway decision outcomes."""
    ALLOWED = "ALLOWED"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"


@dataclass
class AccessDecision:
    """Result of one access request."""
    kind: GateDecision
    content_hash: str
    code: Optional[str] = None
    reason: Optional[str] = None
    uri: Optional[str] = None
    price: Optional[int] = None
    license_expiry: Optional[datetime] = None
    payment_instructions: Optional[Dict[str, str]] = None

    @property
    def allowed(self) -> bool:
        return self.kind == GateDecision.ALLOWED

    def to_dict(self) -> Dict[str, Any]:
        if self.allowed:
            data: Dict[str, Any] = {
                "allowed": True,
                "reason": self.reason,
                "contentURI": self.uri,
            }
            if self.license_expiry is not None:
                data["licenseExpiry"] = int(self.license_expiry.timestamp())
            return data

        data = {
            "allowed": False,
            "error": self.reason,
            "code": self.code,
            "contentHash": self.content_hash,
        }
        if self.price is not None:
            data["price"] = str(self.price)
            data["currency"] = DEFAULT_CURRENCY
        if self.payment_instructions is not None:
            data["paymentInstructions"] = self.payment_instructions
        return data


@dataclass
class AccessLogEntry:
    content_hash: str
    agent: str
    timestamp: datetime
    type: str = "access"


@dataclass
class GatewayConfig:
    proof_max_skew_seconds: int = PROOF_MAX_SKEW_SECONDS
    token: Optional[str] = None
    contract_address: Optional[str] = None


class AccessGateway:
    """
    Gates content reads on license state.

    Gateway reads do not touch the engine's access count; that counter moves
    only when a license is issued. Licensed reads are kept in the gateway's
    own access log.
    """

    def __init__(
        self,
        engine: LicensingEngine,
        settings: Optional[ServerSettings] = None,
        clock: Optional[Clock] = None,
        config: Optional[GatewayConfig] = None,
    ):
        settings = settings or ServerSettings()
        self.engine = engine
        self.config = config or GatewayConfig(
            token=settings.token,
            contract_address=settings.contract_address,
        )
        self._clock = clock or engine.now
        self._lock = Lock()
        self.access_log: List[AccessLogEntry] = []

        # Metrics
        self._total_requests = 0
        self._allowed_count = 0
        self._payment_required_count = 0
        self._denied_count = 0

    def decide(
        self,
        fingerprint: FingerprintLike,
        caller: Optional[str] = None,
        proof: Optional[AccessProof] = None,
        automated: bool = True,
    ) -> AccessDecision:
        """
        Decide one access request.

        Args:
            fingerprint: Content being requested
            caller: Claimed agent address, if any
            proof: Signed access proof for ``caller``
            automated: Whether the caller is an automated agent

        Returns:
            AccessDecision
        """
        fp = parse_fingerprint(fingerprint)
        with self._lock:
            self._total_requests += 1

        try:
            entry = self.engine.get_content(fp)
        except ContentNotFound as e:
            return self._deny(GateDecision.NOT_FOUND, fp, e.code, "Content not found")

        content_hash = entry.fingerprint_hex
        if not entry.active:
            return self._deny(GateDecision.FORBIDDEN, fp, "CONTENT_INACTIVE", "Content not available")

        if not automated:
            self._count_allowed()
            return AccessDecision(
                kind=GateDecision.ALLOWED,
                content_hash=content_hash,
                reason="Regular user access",
                uri=entry.uri,
            )

        if not caller:
            return self._payment_required(entry, "PAYMENT_REQUIRED", include_instructions=False)

        if proof is not None:
            valid, code = verify_access_proof(
                caller,
                fp,
                proof,
                now=self._clock(),
                max_skew_seconds=self.config.proof_max_skew_seconds,
            )
            if not valid:
                reason = "Signature expired" if code == "SIGNATURE_EXPIRED" else "Invalid signature"
                return self._deny(GateDecision.FORBIDDEN, fp, code, reason, caller=caller)

            license = self.engine.get_license(caller, fp)
            if license is not None:
                with self._lock:
                    self.access_log.append(AccessLogEntry(
                        content_hash=content_hash,
                        agent=normalize_identity(caller),
                        timestamp=self._clock(),
                    ))
                self._count_allowed()
                logger.info("licensed_access", content_hash=content_hash, agent=caller)
                return AccessDecision(
                    kind=GateDecision.ALLOWED,
                    content_hash=content_hash,
                    reason="Valid license",
                    uri=entry.uri,
                    license_expiry=license.expiry,
                )

        return self._payment_required(entry, "LICENSE_REQUIRED", include_instructions=True)

    def _payment_required(self, entry, code: str, include_instructions: bool) -> AccessDecision:
        instructions = None
        if include_instructions:
            instructions = {
                "token": self.config.token,
                "amount": str(entry.price),
                "to": entry.owner,
                "memoFormat": (
                    f"{TRACKING_TAG_PREFIX}:{entry.fingerprint.hex()[:TRACKING_FINGERPRINT_HEX]}"
                    f":{to_millis(self._clock()):x}:0"
                ),
            }
            if self.config.contract_address:
                instructions["contractAddress"] = self.config.contract_address

        with self._lock:
            self._payment_required_count += 1
        logger.info("payment_required", content_hash=entry.fingerprint_hex, code=code, price=entry.price)
        return AccessDecision(
            kind=GateDecision.PAYMENT_REQUIRED,
            content_hash=entry.fingerprint_hex,
            code=code,
            reason="Payment Required",
            price=entry.price,
            payment_instructions=instructions,
        )

    def _deny(
        self,
        kind: GateDecision,
        fingerprint: bytes,
        code: str,
        reason: str,
        caller: Optional[str] = None,
    ) -> AccessDecision:
        with self._lock:
            self._denied_count += 1
        logger.warning("access_denied", content_hash="0x" + fingerprint.hex(), code=code, agent=caller)
        return AccessDecision(
            kind=kind,
            content_hash="0x" + fingerprint.hex(),
            code=code,
            reason=reason,
        )

    def _count_allowed(self) -> None:
        with self._lock:
            self._allowed_count += 1

    def get_metrics(self) -> Dict[str, Any]:
        """Get gateway metrics."""
        with self._lock:
            return {
                "total_requests": self._total_requests,
                "allowed": self._allowed_count,
                "payment_required": self._payment_required_count,
                "denied": self._denied_count,
                "licensed_accesses": len(self.access_log),
            }
