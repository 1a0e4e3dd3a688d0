"""
Payment Orchestrator

Agent-side settlement core. For a set of content fingerprints it:

1. drops content the agent already validly licenses (unless forced)
2. resolves prices through the licensing client
3. reserves budget with the spending guard
4. pays content owners over the payment rail with one of three strategies
5. reports every confirmed transfer back as a license and keeps a
   purchase log

Strategies:
- SEQUENTIAL: one item at a time; each item re-checks its license and
  reserves its own budget right before paying. Failures stay on the item.
- PARALLEL: every transfer in flight at once, each on its own ordering
  lane. The total is reserved up front; a failed transfer only fails its
  own item and gives its amount back.
- ATOMIC: one all-or-nothing rail submission. Either every license is
  issued or none is.

No license is ever recorded for a transfer the rail did not confirm.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
import structlog

from ..billing.spending import SpendingGuard
from ..config import AgentConfig
from ..core.clock import Clock, utc_now
from ..core.errors import (
    BudgetError,
    ContentInactive,
    ContentRailError,
    NotFoundError,
    PaymentRailError,
    ValidationError,
)
from ..core.ledger import FingerprintLike, fingerprint_hex, parse_fingerprint
from ..crypto.identity import AgentIdentity
from .client import ContentQuote, LicensingClient
from .rail import PaymentRail, TransferInstruction, TransferReceipt
from .tracking import encode_tracking_tag, tag_hex

logger = structlog.get_logger()

RECENT_PURCHASES = 10


class SettlementStrategy(Enum):
    """How a set of purchases is submitted to the rail."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    ATOMIC = "atomic-batch"


@dataclass
class ItemOutcome:
    """What happened to one requested fingerprint."""
    fingerprint: bytes
    price: int = 0
    success: bool = False
    skipped: bool = False
    transfer_ref: Optional[str] = None
    tracking_tag: Optional[bytes] = None
    lane: Optional[int] = None
    license_recorded: bool = False
    error: Optional[str] = None
    code: Optional[str] = None

    @property
    def failed(self) -> bool:
        return not self.success and not self.skipped

    def fail(self, error: ContentRailError) -> "ItemOutcome":
        self.success = False
        self.error = error.message
        self.code = error.code
        return self

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "contentHash": fingerprint_hex(self.fingerprint),
            "price": str(self.price),
            "success": self.success,
            "skipped": self.skipped,
        }
        if self.transfer_ref:
            data["txHash"] = self.transfer_ref
            data["licenseRecorded"] = self.license_recorded
        if self.tracking_tag:
            data["memo"] = tag_hex(self.tracking_tag)
        if self.lane is not None:
            data["lane"] = self.lane
        if self.error:
            data["error"] = self.error
            data["code"] = self.code
        return data


@dataclass
class SettlementResult:
    """Outcome of one orchestrator call, items in input order."""
    method: str
    outcomes: List[ItemOutcome] = field(default_factory=list)
    transfer_ref: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None

    @property
    def successful(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.failed)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.skipped)

    @property
    def total_price(self) -> int:
        return sum(o.price for o in self.outcomes if o.success)

    @property
    def status(self) -> str:
        if self.error is None and self.successful == 0 and self.failed == 0:
            return "skipped"
        if self.failed == 0 and self.error is None:
            return "complete"
        if self.successful == 0:
            return "failed"
        return "partial"

    @property
    def success(self) -> bool:
        return self.status in ("complete", "skipped")

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "status": self.status,
            "method": self.method,
            "purchases": [o.to_dict() for o in self.outcomes],
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "totalPrice": str(self.total_price),
        }
        if self.transfer_ref:
            data["txHash"] = self.transfer_ref
        if self.error:
            data["error"] = self.error
            data["code"] = self.code
        return data


@dataclass(frozen=True)
class PurchaseRecord:
    """Immutable record of one settled purchase."""
    fingerprint: bytes
    price: int
    transfer_ref: str
    timestamp: datetime
    tracking_tag: bytes
    method: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contentHash": fingerprint_hex(self.fingerprint),
            "price": str(self.price),
            "txHash": self.transfer_ref,
            "timestamp": self.timestamp.isoformat(),
            "memo": tag_hex(self.tracking_tag),
            "method": self.method,
        }


class PurchaseLog:
    """Append-only purchase history."""

    def __init__(self):
        self._records: List[PurchaseRecord] = []
        self._lock = Lock()

    def append(self, record: PurchaseRecord) -> None:
        with self._lock:
            self._records.append(record)

    def recent(self, count: int = RECENT_PURCHASES) -> List[PurchaseRecord]:
        with self._lock:
            return list(self._records[-count:])

    @property
    def total_spent(self) -> int:
        with self._lock:
            return sum(r.price for r in self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[PurchaseRecord]:
        with self._lock:
            return iter(list(self._records))


class PaymentOrchestrator:
    """
    Buys content licenses on behalf of one agent.

    The agent's identity is the paying account on the rail and the license
    holder on the licensing side. The spending guard defaults to the limits
    in ``config``.
    """

    def __init__(
        self,
        identity: AgentIdentity,
        client: LicensingClient,
        rail: PaymentRail,
        config: Optional[AgentConfig] = None,
        guard: Optional[SpendingGuard] = None,
        clock: Clock = utc_now,
    ):
        self.identity = identity
        self.client = client
        self.rail = rail
        self.config = config or AgentConfig()
        self._clock = clock
        self.guard = guard or SpendingGuard(
            daily_ceiling=self.config.daily_spending_limit,
            per_item_ceiling=self.config.max_price_per_item,
            clock=clock,
        )
        self.purchases = PurchaseLog()

    @property
    def address(self) -> str:
        return self.identity.address

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def purchase_license(self, fingerprint: FingerprintLike, force: bool = False) -> SettlementResult:
        """
        Buy a single license.

        Budget rejections raise BudgetError; every other condition (already
        licensed, not found, rail rejection) is reported in the result.
        """
        fp = parse_fingerprint(fingerprint)
        outcome = await self._settle_one(0, fp, force=force, raise_budget=True)
        return self._finish(SettlementResult(method=SettlementStrategy.SEQUENTIAL.value, outcomes=[outcome]))

    async def purchase_batch(
        self,
        fingerprints: Sequence[FingerprintLike],
        atomic: bool = False,
        force: bool = False,
    ) -> SettlementResult:
        """Buy several licenses with the strategy the configuration prefers."""
        if self.config.enable_parallel and not atomic:
            strategy = SettlementStrategy.PARALLEL
        elif self.config.enable_batching:
            strategy = SettlementStrategy.ATOMIC
        else:
            strategy = SettlementStrategy.SEQUENTIAL
        return await self.purchase(fingerprints, strategy, force=force)

    async def purchase(
        self,
        fingerprints: Sequence[FingerprintLike],
        strategy: SettlementStrategy = SettlementStrategy.SEQUENTIAL,
        force: bool = False,
    ) -> SettlementResult:
        """Buy licenses for every fingerprint using ``strategy``."""
        fps = self._validate_request(fingerprints)
        logger.info(
            "purchase_started",
            agent=self.address,
            strategy=strategy.value,
            items=len(fps),
            force=force,
        )

        if strategy == SettlementStrategy.SEQUENTIAL:
            result = await self._run_sequential(fps, force)
        elif strategy == SettlementStrategy.PARALLEL:
            result = await self._run_parallel(fps, force)
        else:
            result = await self._run_atomic(fps, force)
        return self._finish(result)

    def _validate_request(self, fingerprints: Sequence[FingerprintLike]) -> List[bytes]:
        fps = [parse_fingerprint(f) for f in fingerprints]
        if not fps:
            raise ValidationError("No content to purchase")
        if len(fps) > self.config.max_batch_size:
            raise ValidationError(
                f"Batch of {len(fps)} exceeds max batch size {self.config.max_batch_size}"
            )
        if len(set(fps)) != len(fps):
            raise ValidationError("Duplicate content in purchase request")
        return fps

    def _finish(self, result: SettlementResult) -> SettlementResult:
        logger.info(
            "purchase_complete",
            agent=self.address,
            method=result.method,
            status=result.status,
            successful=result.successful,
            failed=result.failed,
            skipped=result.skipped,
            total_price=result.total_price,
        )
        return result

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _already_licensed(self, fingerprint: bytes, force: bool) -> bool:
        if force:
            return False
        return await self.client.has_valid_license(self.address, fingerprint)

    async def _quote(self, fingerprint: bytes) -> ContentQuote:
        """Price lookup. Raises ContentNotFound or ContentInactive."""
        quote = await self.client.get_content(fingerprint)
        if not quote.active:
            raise ContentInactive(f"Content not available: {quote.fingerprint_hex}")
        return quote

    def _book(
        self,
        outcome: ItemOutcome,
        receipt: TransferReceipt,
        method: SettlementStrategy,
        timestamp: datetime,
    ) -> None:
        """Mark a confirmed transfer settled and append its purchase record."""
        outcome.success = True
        outcome.transfer_ref = receipt.transfer_ref
        self.purchases.append(PurchaseRecord(
            fingerprint=outcome.fingerprint,
            price=outcome.price,
            transfer_ref=receipt.transfer_ref,
            timestamp=timestamp,
            tracking_tag=outcome.tracking_tag,
            method=method.value,
        ))

    async def _report_license(self, outcome: ItemOutcome) -> None:
        """Record the license for a booked outcome. Failures stay on the outcome."""
        try:
            await self.client.record_license(
                self.address,
                outcome.fingerprint,
                outcome.price,
                outcome.transfer_ref,
            )
            outcome.license_recorded = True
        except ContentRailError as e:
            # The payment stands; the license must be reconciled from the rail.
            logger.error(
                "license_record_failed",
                agent=self.address,
                content_hash=fingerprint_hex(outcome.fingerprint),
                tx_hash=outcome.transfer_ref,
                error=e.message,
                code=e.code,
            )
            outcome.error = e.message
            outcome.code = e.code

    # ------------------------------------------------------------------
    # Sequential
    # ------------------------------------------------------------------

    async def _run_sequential(self, fps: List[bytes], force: bool) -> SettlementResult:
        result = SettlementResult(method=SettlementStrategy.SEQUENTIAL.value)
        for index, fp in enumerate(fps):
            result.outcomes.append(await self._settle_one(index, fp, force=force, raise_budget=False))
        return result

    async def _settle_one(self, index: int, fp: bytes, force: bool, raise_budget: bool) -> ItemOutcome:
        outcome = ItemOutcome(fingerprint=fp)

        try:
            if await self._already_licensed(fp, force):
                logger.info("purchase_skipped", agent=self.address, content_hash=fingerprint_hex(fp))
                outcome.skipped = True
                return outcome
            quote = await self._quote(fp)
        except ContentRailError as e:
            logger.warning("purchase_item_unavailable", content_hash=fingerprint_hex(fp), code=e.code)
            return outcome.fail(e)
        outcome.price = quote.price

        try:
            reservation = self.guard.reserve(self.address, quote.price)
        except BudgetError as e:
            if raise_budget:
                raise
            return outcome.fail(e)

        timestamp = self._clock()
        outcome.tracking_tag = encode_tracking_tag(fp, timestamp, index)
        try:
            receipt = await self.rail.transfer(
                to=quote.owner,
                amount=quote.price,
                token=self.config.token,
                memo=outcome.tracking_tag,
                fee_sponsored=self.config.use_fee_sponsorship,
            )
        except PaymentRailError as e:
            self.guard.release(reservation)
            logger.error("transfer_failed", agent=self.address, content_hash=fingerprint_hex(fp), error=e.message)
            return outcome.fail(e)

        if not receipt.confirmed:
            self.guard.release(reservation)
            logger.error("transfer_unconfirmed", agent=self.address, tx_hash=receipt.transfer_ref)
            outcome.error, outcome.code = "Transfer not confirmed", "TRANSFER_FAILED"
            return outcome

        self._book(outcome, receipt, SettlementStrategy.SEQUENTIAL, timestamp)
        await self._report_license(outcome)
        return outcome

    # ------------------------------------------------------------------
    # Up-front preparation for parallel and atomic
    # ------------------------------------------------------------------

    async def _prepare(
        self,
        fps: List[bytes],
        force: bool,
    ) -> Tuple[List[ItemOutcome], List[Tuple[int, ContentQuote]], List[ItemOutcome]]:
        """
        Skip licensed items and quote the rest.

        Returns (outcomes in input order, payable (index, quote) pairs,
        outcomes of items that could not be checked or quoted).
        """
        outcomes = [ItemOutcome(fingerprint=fp) for fp in fps]
        payable: List[Tuple[int, ContentQuote]] = []
        unavailable: List[ItemOutcome] = []

        for index, fp in enumerate(fps):
            try:
                if await self._already_licensed(fp, force):
                    outcomes[index].skipped = True
                    continue
                quote = await self._quote(fp)
            except ContentRailError as e:
                logger.warning("purchase_item_unavailable", content_hash=fingerprint_hex(fp), code=e.code)
                unavailable.append(outcomes[index].fail(e))
                continue
            outcomes[index].price = quote.price
            payable.append((index, quote))

        return outcomes, payable, unavailable

    # ------------------------------------------------------------------
    # Parallel
    # ------------------------------------------------------------------

    async def _run_parallel(self, fps: List[bytes], force: bool) -> SettlementResult:
        result = SettlementResult(method=SettlementStrategy.PARALLEL.value)
        result.outcomes, payable, _ = await self._prepare(fps, force)
        if not payable:
            return result

        reservation = self.guard.reserve_many(self.address, [q.price for _, q in payable])

        timestamp = self._clock()
        for index, _ in payable:
            outcome = result.outcomes[index]
            outcome.tracking_tag = encode_tracking_tag(outcome.fingerprint, timestamp, index)
            outcome.lane = index + 1

        receipts = await asyncio.gather(
            *(
                self.rail.transfer(
                    to=quote.owner,
                    amount=quote.price,
                    token=self.config.token,
                    memo=result.outcomes[index].tracking_tag,
                    fee_sponsored=self.config.use_fee_sponsorship,
                    lane=result.outcomes[index].lane,
                )
                for index, quote in payable
            ),
            return_exceptions=True,
        )

        for (index, quote), receipt in zip(payable, receipts):
            outcome = result.outcomes[index]
            if isinstance(receipt, BaseException):
                if not isinstance(receipt, Exception):
                    raise receipt
                self.guard.release(reservation, quote.price)
                error = receipt if isinstance(receipt, ContentRailError) else PaymentRailError(str(receipt))
                logger.error(
                    "parallel_transfer_failed",
                    agent=self.address,
                    content_hash=quote.fingerprint_hex,
                    lane=outcome.lane,
                    error=error.message,
                )
                outcome.fail(error)
            elif not receipt.confirmed:
                self.guard.release(reservation, quote.price)
                outcome.error, outcome.code = "Transfer not confirmed", "TRANSFER_FAILED"
            else:
                self._book(outcome, receipt, SettlementStrategy.PARALLEL, timestamp)

        # Every confirmed transfer is booked before any license call.
        for outcome in result.outcomes:
            if outcome.success:
                await self._report_license(outcome)

        logger.info(
            "parallel_purchase_complete",
            agent=self.address,
            successful=result.successful,
            attempted=len(payable),
        )
        return result

    # ------------------------------------------------------------------
    # Atomic batch
    # ------------------------------------------------------------------

    async def _run_atomic(self, fps: List[bytes], force: bool) -> SettlementResult:
        result = SettlementResult(method=SettlementStrategy.ATOMIC.value)
        result.outcomes, payable, unavailable = await self._prepare(fps, force)

        if unavailable:
            first = unavailable[0]
            self._abort(result, f"Batch aborted: {first.error}", first.code)
            return result
        if not payable:
            return result

        reservation = self.guard.reserve_many(self.address, [q.price for _, q in payable])

        timestamp = self._clock()
        instructions = []
        for index, quote in payable:
            outcome = result.outcomes[index]
            outcome.tracking_tag = encode_tracking_tag(outcome.fingerprint, timestamp, index)
            instructions.append(TransferInstruction(
                to=quote.owner,
                amount=quote.price,
                token=self.config.token,
                memo=outcome.tracking_tag,
            ))

        try:
            batch = await self.rail.submit_batch(instructions, fee_sponsored=self.config.use_fee_sponsorship)
        except PaymentRailError as e:
            self.guard.release(reservation)
            logger.error("atomic_batch_failed", agent=self.address, items=len(instructions), error=e.message)
            self._abort(result, e.message, e.code)
            return result

        if not batch.all_confirmed:
            self.guard.release(reservation)
            logger.error("atomic_batch_unconfirmed", agent=self.address, tx_hash=batch.transfer_ref)
            self._abort(result, "Batch transaction failed", "BATCH_FAILED")
            return result

        result.transfer_ref = batch.transfer_ref
        for (index, _), receipt in zip(payable, batch.receipts):
            self._book(result.outcomes[index], receipt, SettlementStrategy.ATOMIC, timestamp)
        for index, _ in payable:
            await self._report_license(result.outcomes[index])

        logger.info(
            "atomic_batch_complete",
            agent=self.address,
            tx_hash=batch.transfer_ref,
            items=len(payable),
            total_price=batch.total_amount,
        )
        return result

    @staticmethod
    def _abort(result: SettlementResult, error: str, code: Optional[str]) -> None:
        """Fail every non-skipped item of an atomic call."""
        result.error, result.code = error, code
        for outcome in result.outcomes:
            if outcome.skipped:
                continue
            outcome.success = False
            if outcome.error is None:
                outcome.error, outcome.code = error, code

    # ------------------------------------------------------------------
    # Content access and stats
    # ------------------------------------------------------------------

    async def check_content(self, fingerprint: FingerprintLike) -> Optional[ContentQuote]:
        """Price and owner of a piece of content, or None if unknown."""
        try:
            return await self.client.get_content(fingerprint)
        except NotFoundError:
            return None

    async def has_license(self, fingerprint: FingerprintLike) -> bool:
        return await self.client.has_valid_license(self.address, fingerprint)

    async def retrieve_content(self, fingerprint: FingerprintLike):
        """Sign a fresh access proof and ask the gateway for the content."""
        fp = parse_fingerprint(fingerprint)
        proof = self.identity.sign_access(fp, self._clock())
        decision = await self.client.request_access(fp, holder=self.address, proof=proof)
        logger.info(
            "content_access_requested",
            agent=self.address,
            content_hash=fingerprint_hex(fp),
            decision=decision.kind.value,
        )
        return decision

    def get_stats(self) -> Dict[str, Any]:
        snapshot = self.guard.snapshot(self.address)
        return {
            "address": self.address,
            "totalSpent": str(self.purchases.total_spent),
            "spentToday": snapshot["spent"],
            "dailyLimit": snapshot["dailyCeiling"],
            "remainingToday": snapshot["remaining"],
            "totalPurchases": len(self.purchases),
            "purchaseHistory": [r.to_dict() for r in self.purchases.recent(RECENT_PURCHASES)],
        }
