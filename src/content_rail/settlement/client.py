"""
Licensing Clients

The orchestrator never touches the licensing engine directly. It talks to a
LicensingClient, which is either in-process (LocalLicensingClient) or the
HTTP API (HttpLicensingClient).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional
import httpx
import structlog

from ..config import ServerSettings
from ..core.errors import ContentNotFound, LicensingUnavailable, error_from_code
from ..core.ledger import ContentEntry, FingerprintLike, fingerprint_hex, parse_fingerprint
from ..core.licensing import LicensingEngine
from ..crypto.identity import AccessProof

if TYPE_CHECKING:
    from ..enforcement.gateway import AccessDecision, AccessGateway

logger = structlog.get_logger()

AGENT_USER_AGENT = "AI-Agent-Crawler/1.0"


@dataclass(frozen=True)
class ContentQuote:
    """What a payer needs to know to buy a license."""
    fingerprint: bytes
    price: int
    owner: str
    uri: str
    active: bool

    @property
    def fingerprint_hex(self) -> str:
        return fingerprint_hex(self.fingerprint)

    @classmethod
    def from_entry(cls, entry: ContentEntry) -> "ContentQuote":
        return cls(
            fingerprint=entry.fingerprint,
            price=entry.price,
            owner=entry.owner,
            uri=entry.uri,
            active=entry.active,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentQuote":
        return cls(
            fingerprint=parse_fingerprint(data["contentHash"]),
            price=int(data["price"]),
            owner=data["contentOwner"],
            uri=data["contentURI"],
            active=bool(data["active"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contentHash": self.fingerprint_hex,
            "price": str(self.price),
            "owner": self.owner,
            "uri": self.uri,
            "active": self.active,
        }


class LicensingClient(ABC):
    """Licensing operations the paying agent relies on."""

    @abstractmethod
    async def get_content(self, fingerprint: FingerprintLike) -> ContentQuote:
        """Price and owner of a piece of content. Raises ContentNotFound."""
        pass

    @abstractmethod
    async def has_valid_license(self, holder: str, fingerprint: FingerprintLike) -> bool:
        pass

    @abstractmethod
    async def record_license(
        self,
        holder: str,
        fingerprint: FingerprintLike,
        price_paid: int,
        transfer_ref: str,
    ) -> Dict[str, Any]:
        """Report a confirmed transfer. Returns the issued license."""
        pass

    @abstractmethod
    async def request_access(
        self,
        fingerprint: FingerprintLike,
        holder: Optional[str] = None,
        proof: Optional[AccessProof] = None,
    ) -> "AccessDecision":
        pass


class LocalLicensingClient(LicensingClient):
    """Calls an in-process engine and gateway."""

    def __init__(self, engine: LicensingEngine, gateway: Optional["AccessGateway"] = None):
        self.engine = engine
        if gateway is None:
            from ..enforcement.gateway import AccessGateway
            gateway = AccessGateway(engine)
        self.gateway = gateway

    async def get_content(self, fingerprint: FingerprintLike) -> ContentQuote:
        return ContentQuote.from_entry(self.engine.get_content(fingerprint))

    async def has_valid_license(self, holder: str, fingerprint: FingerprintLike) -> bool:
        return self.engine.has_valid_license(holder, fingerprint)

    async def record_license(
        self,
        holder: str,
        fingerprint: FingerprintLike,
        price_paid: int,
        transfer_ref: str,
    ) -> Dict[str, Any]:
        return self.engine.record_license(holder, fingerprint, price_paid, transfer_ref).to_dict()

    async def request_access(
        self,
        fingerprint: FingerprintLike,
        holder: Optional[str] = None,
        proof: Optional[AccessProof] = None,
    ) -> "AccessDecision":
        return self.gateway.decide(fingerprint, caller=holder, proof=proof, automated=True)


class HttpLicensingClient(LicensingClient):
    """
    Talks to the content rail HTTP API.

    Error bodies of the form ``{"detail": {"error": ..., "code": ...}}`` are
    turned back into the matching ContentRailError subclass. Transport
    failures (connect, timeout, protocol) raise LicensingUnavailable.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        settings = ServerSettings.from_env()
        self.base_url = (base_url or settings.backend_url).rstrip("/")
        self.api_key = api_key or settings.api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpLicensingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _headers(self) -> Dict[str, str]:
        return {"X-API-Key": self.api_key}

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("licensing_api_unreachable", method=method, url=url, error=str(e))
            raise LicensingUnavailable(
                f"Licensing service unavailable: {e.__class__.__name__}",
                url=url,
            ) from e

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> None:
        if response.is_success:
            return
        try:
            body = response.json()
        except ValueError:
            body = {}
        detail = body.get("detail", body) if isinstance(body, dict) else {}
        if isinstance(detail, dict):
            message = detail.get("error") or response.reason_phrase
            code = detail.get("code")
        else:
            message, code = str(detail), None
        logger.warning("licensing_api_error", status=response.status_code, code=code, error=message)
        raise error_from_code(code, message, status=response.status_code)

    async def get_content(self, fingerprint: FingerprintLike) -> ContentQuote:
        content_hash = fingerprint_hex(parse_fingerprint(fingerprint))
        response = await self._request("GET", f"/api/content/{content_hash}")
        if response.status_code == 404:
            raise ContentNotFound(f"Content not found: {content_hash}")
        self._raise_for_error(response)
        return ContentQuote.from_dict(response.json())

    async def has_valid_license(self, holder: str, fingerprint: FingerprintLike) -> bool:
        response = await self._request(
            "GET",
            "/api/license/check",
            params={
                "agentAddress": holder,
                "contentHash": fingerprint_hex(parse_fingerprint(fingerprint)),
            },
        )
        self._raise_for_error(response)
        return bool(response.json()["hasLicense"])

    async def record_license(
        self,
        holder: str,
        fingerprint: FingerprintLike,
        price_paid: int,
        transfer_ref: str,
    ) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            "/api/license/buy",
            json={
                "contentHash": fingerprint_hex(parse_fingerprint(fingerprint)),
                "agentAddress": holder,
                "txHash": transfer_ref,
                "pricePaid": str(price_paid),
            },
            headers=self._headers(),
        )
        self._raise_for_error(response)
        return response.json()["license"]

    async def request_access(
        self,
        fingerprint: FingerprintLike,
        holder: Optional[str] = None,
        proof: Optional[AccessProof] = None,
    ) -> "AccessDecision":
        from ..enforcement.gateway import AccessDecision, GateDecision

        content_hash = fingerprint_hex(parse_fingerprint(fingerprint))
        payload: Dict[str, Any] = {"agentAddress": holder}
        if proof is not None:
            payload.update(proof.to_dict())

        response = await self._request(
            "POST",
            f"/api/content/{content_hash}/access",
            json=payload,
            headers={"User-Agent": AGENT_USER_AGENT},
        )
        kinds = {
            200: GateDecision.ALLOWED,
            402: GateDecision.PAYMENT_REQUIRED,
            403: GateDecision.FORBIDDEN,
            404: GateDecision.NOT_FOUND,
        }
        if response.status_code not in kinds:
            self._raise_for_error(response)
        body = response.json()
        return AccessDecision(
            kind=kinds[response.status_code],
            content_hash=content_hash,
            code=body.get("code"),
            reason=body.get("reason") or body.get("error"),
            uri=body.get("contentURI"),
            price=int(body["price"]) if body.get("price") is not None else None,
            license_expiry=(
                datetime.fromtimestamp(body["licenseExpiry"], tz=timezone.utc)
                if body.get("licenseExpiry") is not None else None
            ),
            payment_instructions=body.get("paymentInstructions"),
        )
