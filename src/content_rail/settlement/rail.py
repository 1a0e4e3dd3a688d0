"""
Payment Rail

The settlement layer does not move money itself. It drives an external
instant-transfer rail through the PaymentRail interface:

- transfer(): one stablecoin transfer, optionally fee-sponsored, optionally
  carrying a 32-byte tracking tag, optionally on an independent ordering
  lane so that several transfers from one account can settle concurrently
- submit_batch(): several tagged transfers bundled into one all-or-nothing
  submission

InMemoryPaymentRail simulates a rail with balances, per-lane sequence
numbers and fee sponsorship. It backs the test suite and the CLI
simulation.
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from threading import Lock
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import structlog

from ..config import DEFAULT_TOKEN
from ..core.clock import Clock, utc_now
from ..core.errors import BatchFailed, TransferFailed

logger = structlog.get_logger()


@dataclass(frozen=True)
class TransferInstruction:
    """One transfer to submit, alone or inside a batch."""
    to: str
    amount: int
    token: str = DEFAULT_TOKEN
    memo: Optional[bytes] = None
    lane: Optional[int] = None


@dataclass
class TransferReceipt:
    """Rail confirmation for a single transfer (or one leg of a batch)."""
    transfer_ref: str
    confirmed: bool
    sender: str
    to: str
    amount: int
    token: str
    memo: Optional[bytes] = None
    lane: int = 0
    sequence: int = 0
    block_number: int = 0
    fee_payer: Optional[str] = None
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transactionHash": self.transfer_ref,
            "status": "success" if self.confirmed else "reverted",
            "from": self.sender,
            "to": self.to,
            "amount": str(self.amount),
            "token": self.token,
            "memo": "0x" + self.memo.hex() if self.memo else None,
            "lane": self.lane,
            "sequence": self.sequence,
            "blockNumber": self.block_number,
            "feePayer": self.fee_payer,
        }


@dataclass
class BatchReceipt:
    """Rail confirmation for an atomic batch."""
    transfer_ref: str
    all_confirmed: bool
    receipts: List[TransferReceipt] = field(default_factory=list)
    block_number: int = 0

    @property
    def total_amount(self) -> int:
        return sum(r.amount for r in self.receipts)


class PaymentRail(ABC):
    """Interface to an instant stablecoin transfer rail."""

    @property
    @abstractmethod
    def account(self) -> str:
        """The paying account this rail client signs for."""
        pass

    @abstractmethod
    async def transfer(
        self,
        to: str,
        amount: int,
        token: str = DEFAULT_TOKEN,
        memo: Optional[bytes] = None,
        fee_sponsored: bool = False,
        lane: Optional[int] = None,
    ) -> TransferReceipt:
        """Submit one transfer and wait for its receipt. Raises TransferFailed."""
        pass

    @abstractmethod
    async def submit_batch(
        self,
        instructions: Sequence[TransferInstruction],
        fee_sponsored: bool = False,
    ) -> BatchReceipt:
        """Submit an all-or-nothing bundle. Raises BatchFailed."""
        pass


RejectRule = Callable[[TransferInstruction], Optional[str]]


class InMemoryPaymentRail(PaymentRail):
    """
    Simulated rail shared by every account it knows about.

    ``reject_if`` lets callers inject rail-level rejections: it receives each
    instruction and returns a reason string to reject it, or None.
    """

    SPONSOR = "fee-sponsor"

    def __init__(
        self,
        account: str,
        balances: Optional[Dict[str, int]] = None,
        token: str = DEFAULT_TOKEN,
        fee: int = 0,
        latency: float = 0.0,
        reject_if: Optional[RejectRule] = None,
        clock: Clock = utc_now,
    ):
        self._account = account.lower()
        self.token = token
        self.fee = fee
        self.latency = latency
        self.reject_if = reject_if
        self._clock = clock

        self._balances: Dict[Tuple[str, str], int] = {}
        for holder, amount in (balances or {}).items():
            self.fund(holder, amount, token)

        self._lane_sequences: Dict[int, int] = {}
        self._block_number = 0
        self._lock = Lock()
        self.receipts: List[TransferReceipt] = []
        self.sponsored_fees = 0
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def account(self) -> str:
        return self._account

    def fund(self, holder: str, amount: int, token: Optional[str] = None) -> None:
        key = (holder.lower(), token or self.token)
        self._balances[key] = self._balances.get(key, 0) + amount

    def balance_of(self, holder: str, token: Optional[str] = None) -> int:
        return self._balances.get((holder.lower(), token or self.token), 0)

    async def transfer(
        self,
        to: str,
        amount: int,
        token: str = DEFAULT_TOKEN,
        memo: Optional[bytes] = None,
        fee_sponsored: bool = False,
        lane: Optional[int] = None,
    ) -> TransferReceipt:
        instruction = TransferInstruction(to=to, amount=amount, token=token, memo=memo, lane=lane)

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)

            with self._lock:
                fee = 0 if fee_sponsored else self.fee
                reason = self._check(instruction, extra_debit=fee)
                if reason:
                    logger.warning("rail_transfer_rejected", to=to, amount=amount, lane=lane, reason=reason)
                    raise TransferFailed(reason, to=to, amount=amount)

                receipt = self._apply(instruction, fee_sponsored=fee_sponsored, fee=fee)
                self._block_number += 1
                receipt.block_number = self._block_number
                receipt.transfer_ref = self._transfer_ref(receipt)
                self.receipts.append(receipt)
        finally:
            self.in_flight -= 1

        logger.debug(
            "rail_transfer_confirmed",
            tx_hash=receipt.transfer_ref,
            to=to,
            amount=amount,
            lane=receipt.lane,
            sequence=receipt.sequence,
        )
        return receipt

    async def submit_batch(
        self,
        instructions: Sequence[TransferInstruction],
        fee_sponsored: bool = False,
    ) -> BatchReceipt:
        if not instructions:
            raise BatchFailed("Batch contains no transfers")

        if self.latency:
            await asyncio.sleep(self.latency)

        with self._lock:
            fee = 0 if fee_sponsored else self.fee
            pending: Dict[str, int] = {}
            for index, instruction in enumerate(instructions):
                already = pending.get(instruction.token, 0)
                reason = self._check(instruction, extra_debit=already + (fee if index == 0 else 0))
                if reason:
                    logger.warning("rail_batch_rejected", index=index, reason=reason)
                    raise BatchFailed(f"Sub-transfer {index} invalid: {reason}", index=index)
                pending[instruction.token] = already + instruction.amount

            self._block_number += 1
            receipts = []
            for index, instruction in enumerate(instructions):
                receipt = self._apply(
                    instruction,
                    fee_sponsored=fee_sponsored,
                    fee=fee if index == 0 else 0,
                )
                receipt.block_number = self._block_number
                receipts.append(receipt)

            transfer_ref = self._transfer_ref(receipts[0], salt=f"batch:{len(receipts)}")
            for receipt in receipts:
                receipt.transfer_ref = transfer_ref
            self.receipts.extend(receipts)

        logger.debug("rail_batch_confirmed", tx_hash=transfer_ref, transfers=len(receipts))
        return BatchReceipt(
            transfer_ref=transfer_ref,
            all_confirmed=True,
            receipts=receipts,
            block_number=self._block_number,
        )

    def _check(self, instruction: TransferInstruction, extra_debit: int = 0) -> Optional[str]:
        """Reason the instruction would be rejected, or None. Caller holds the lock."""
        if instruction.amount <= 0:
            return "amount must be positive"
        if not instruction.to:
            return "missing recipient"
        if instruction.memo is not None and len(instruction.memo) != 32:
            return "memo must be 32 bytes"
        if self.reject_if is not None:
            reason = self.reject_if(instruction)
            if reason:
                return reason
        available = self.balance_of(self._account, instruction.token)
        if available < instruction.amount + extra_debit:
            return f"insufficient balance: have {available}, need {instruction.amount + extra_debit}"
        return None

    def _apply(self, instruction: TransferInstruction, fee_sponsored: bool, fee: int) -> TransferReceipt:
        """Move funds and advance the lane sequence. Caller holds the lock."""
        sender_key = (self._account, instruction.token)
        recipient_key = (instruction.to.lower(), instruction.token)
        self._balances[sender_key] -= instruction.amount + fee
        self._balances[recipient_key] = self._balances.get(recipient_key, 0) + instruction.amount
        if fee_sponsored:
            self.sponsored_fees += self.fee

        lane = instruction.lane or 0
        sequence = self._lane_sequences.get(lane, 0)
        self._lane_sequences[lane] = sequence + 1

        return TransferReceipt(
            transfer_ref="",
            confirmed=True,
            sender=self._account,
            to=instruction.to.lower(),
            amount=instruction.amount,
            token=instruction.token,
            memo=instruction.memo,
            lane=lane,
            sequence=sequence,
            fee_payer=self.SPONSOR if fee_sponsored else self._account,
            timestamp=self._clock(),
        )

    def _transfer_ref(self, receipt: TransferReceipt, salt: str = "") -> str:
        material = f"{receipt.sender}:{receipt.lane}:{receipt.sequence}:{self._block_number}:{salt}"
        return "0x" + hashlib.sha256(material.encode("utf-8")).hexdigest()

    def lane_sequence(self, lane: int) -> int:
        """Next sequence number on a lane."""
        return self._lane_sequences.get(lane, 0)
