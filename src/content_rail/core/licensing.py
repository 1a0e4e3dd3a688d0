"""
Licensing Engine

The authority over content registration, pricing and license issuance.
Consulted by the paying agent (price lookups, license recording) and by
the access gateway (license checks).

Invariants:
- price > 0 at registration and after every price update
- an entry's owner never changes
- a license exists only because a confirmed transfer was reported
- revenue and access count only grow, one step per issued license
"""

from datetime import datetime
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional
import structlog

from ..config import LICENSE_DURATION
from .clock import Clock, utc_now
from .errors import (
    AlreadyRegistered,
    ContentInactive,
    ContentNotFound,
    ContentRailError,
    InvalidPrice,
    MissingField,
    NotOwner,
)
from .ledger import (
    ContentEntry,
    FingerprintLike,
    LedgerStore,
    License,
    fingerprint_hex,
    normalize_identity,
    parse_fingerprint,
)

logger = structlog.get_logger()


class LicensingEngine:
    """
    Registers content, issues licenses and keeps revenue/access accounting.

    The store is injected and owned by the engine for its lifetime. All
    writes go through a single lock so that two payers licensing the same
    content at once never lose a counter increment.
    """

    def __init__(self, store: Optional[LedgerStore] = None, clock: Clock = utc_now):
        self._store = store if store is not None else LedgerStore()
        self._clock = clock
        self._lock = Lock()

    @property
    def store(self) -> LedgerStore:
        return self._store

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def register_content(
        self,
        fingerprint: FingerprintLike,
        price: int,
        uri: str,
        owner: str,
    ) -> ContentEntry:
        """Create a new content entry. Fails if the fingerprint exists."""
        fp = parse_fingerprint(fingerprint)
        if not uri:
            raise MissingField("Content URI is required")
        if not owner:
            raise MissingField("Owner is required")
        if price <= 0:
            raise InvalidPrice("Price must be greater than zero", price=price)

        with self._lock:
            if self._store.has_content(fp):
                raise AlreadyRegistered(
                    f"Content already registered: {fingerprint_hex(fp)}"
                )
            entry = ContentEntry(
                fingerprint=fp,
                price=price,
                owner=normalize_identity(owner),
                uri=uri,
                created_at=self.now(),
            )
            self._store.add_content(entry)

        logger.info(
            "content_registered",
            content_hash=entry.fingerprint_hex,
            owner=entry.owner,
            price=price,
        )
        return entry

    def get_content(self, fingerprint: FingerprintLike) -> ContentEntry:
        fp = parse_fingerprint(fingerprint)
        entry = self._store.get_content(fp)
        if entry is None:
            raise ContentNotFound(f"Content not found: {fingerprint_hex(fp)}")
        return entry

    def update_price(self, fingerprint: FingerprintLike, new_price: int, caller: str) -> ContentEntry:
        """Owner-only price change."""
        with self._lock:
            entry = self.get_content(fingerprint)
            self._require_owner(entry, caller)
            if new_price <= 0:
                raise InvalidPrice("Price must be greater than zero", price=new_price)
            old_price = entry.price
            entry.price = new_price

        logger.info(
            "content_price_updated",
            content_hash=entry.fingerprint_hex,
            old_price=old_price,
            new_price=new_price,
        )
        return entry

    def toggle_active(self, fingerprint: FingerprintLike, caller: str) -> bool:
        """Owner-only switch of the active flag. Returns the new flag."""
        with self._lock:
            entry = self.get_content(fingerprint)
            self._require_owner(entry, caller)
            entry.active = not entry.active
            active = entry.active

        logger.info("content_status_toggled", content_hash=entry.fingerprint_hex, active=active)
        return active

    def _require_owner(self, entry: ContentEntry, caller: str) -> None:
        if not caller or normalize_identity(caller) != entry.owner:
            logger.warning(
                "owner_check_failed",
                content_hash=entry.fingerprint_hex,
                caller=caller,
            )
            raise NotOwner("Only the content owner may modify this entry")

    # ------------------------------------------------------------------
    # Licenses
    # ------------------------------------------------------------------

    def record_license(
        self,
        holder: str,
        fingerprint: FingerprintLike,
        price_paid: int,
        transfer_ref: str,
    ) -> License:
        """
        Record a license after a confirmed transfer.

        This is the only way a License comes into existence. A re-purchase
        replaces the previous license with a fresh 30-day expiry.
        """
        if not holder:
            raise MissingField("Holder is required")
        if not transfer_ref:
            raise MissingField("Transfer reference is required")

        with self._lock:
            entry = self.get_content(fingerprint)
            if not entry.active:
                raise ContentInactive(f"Content not available: {entry.fingerprint_hex}")

            now = self.now()
            license = License(
                holder=normalize_identity(holder),
                fingerprint=entry.fingerprint,
                expiry=now + LICENSE_DURATION,
                price_paid=price_paid,
                transfer_ref=transfer_ref,
                issued_at=now,
            )
            self._store.put_license(license)
            entry.revenue += entry.price
            entry.access_count += 1

        logger.info(
            "license_recorded",
            holder=license.holder,
            content_hash=entry.fingerprint_hex,
            price_paid=price_paid,
            tx_hash=transfer_ref,
            expiry=license.expiry.isoformat(),
        )
        return license

    def record_licenses(
        self,
        holder: str,
        fingerprints: Iterable[FingerprintLike],
        transfer_ref: str,
    ) -> List[Dict[str, Any]]:
        """Record one license per fingerprint, each at its current price."""
        results = []
        for fingerprint in fingerprints:
            try:
                entry = self.get_content(fingerprint)
                license = self.record_license(holder, entry.fingerprint, entry.price, transfer_ref)
                results.append({
                    "contentHash": entry.fingerprint_hex,
                    "success": True,
                    "pricePaid": str(license.price_paid),
                })
            except ContentRailError as e:
                logger.warning("batch_license_item_failed", content_hash=str(fingerprint), error=e.message)
                results.append({
                    "contentHash": fingerprint if isinstance(fingerprint, str) else fingerprint_hex(fingerprint),
                    "success": False,
                    "error": e.message,
                    "code": e.code,
                })
        return results

    def get_license(self, holder: str, fingerprint: FingerprintLike) -> Optional[License]:
        """The holder's license if it is currently valid."""
        fp = parse_fingerprint(fingerprint)
        license = self._store.get_license(normalize_identity(holder), fp)
        if license is not None and license.is_valid(self.now()):
            return license
        return None

    def has_valid_license(self, holder: str, fingerprint: FingerprintLike) -> bool:
        return self.get_license(holder, fingerprint) is not None

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def creator_stats(self, owner: str) -> Dict[str, Any]:
        owner_id = normalize_identity(owner)
        contents = [c for c in self._store.iter_content() if c.owner == owner_id]
        return {
            "address": owner,
            "contentCount": len(contents),
            "totalRevenue": str(sum(c.revenue for c in contents)),
            "totalAccesses": sum(c.access_count for c in contents),
            "contents": [
                {
                    "contentHash": c.fingerprint_hex,
                    "price": str(c.price),
                    "totalRevenue": str(c.revenue),
                    "accessCount": c.access_count,
                    "active": c.active,
                }
                for c in contents
            ],
        }

    def overview(self) -> Dict[str, Any]:
        contents = list(self._store.iter_content())
        total_price = sum(c.price for c in contents)
        return {
            "totalContent": len(contents),
            "activeContent": sum(1 for c in contents if c.active),
            "totalRevenue": str(sum(c.revenue for c in contents)),
            "totalAccesses": sum(c.access_count for c in contents),
            "avgPrice": str(total_price // len(contents)) if contents else "0",
        }

    def shutdown(self) -> None:
        with self._lock:
            count = len(self._store)
            self._store.clear()
        logger.info("licensing_engine_shutdown", content_count=count)
