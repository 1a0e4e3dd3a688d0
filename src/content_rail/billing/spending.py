"""
Spending Guard

Per-payer daily budget enforcement for autonomous agents.

Every transfer is preceded by a reservation. A reservation either passes
both ceilings and is committed in the same locked step, or is rejected
and leaves the ledger untouched. Concurrent reservations for the same
payer therefore can never jointly overshoot the daily ceiling.

The window is rolling: it opens with the first committed reservation and
resets to zero once 24 hours have passed since the last reset, not at a
calendar boundary. Rejected reservations and limit changes never open it.
"""

from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Dict, Optional, Sequence, Tuple
import structlog

from ..config import SPENDING_WINDOW
from ..core.clock import Clock, utc_now
from ..core.errors import DailyCeilingExceeded, PerItemCeilingExceeded, ValidationError

logger = structlog.get_logger()


@dataclass
class SpendingLedger:
    """Spend in the current window for one payer."""
    payer: str
    daily_ceiling: int
    per_item_ceiling: int
    window_start: Optional[datetime] = None
    spent: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.daily_ceiling - self.spent)


@dataclass(frozen=True)
class Reservation:
    """A committed slice of a payer's daily budget."""
    payer: str
    amount: int
    window_start: datetime


class SpendingGuard:
    """
    Enforces per-item and daily ceilings.

    Default ceilings apply to every payer; ``set_limits`` overrides them for
    one payer (the per-agent spending limit).
    """

    def __init__(
        self,
        daily_ceiling: int,
        per_item_ceiling: int,
        clock: Clock = utc_now,
    ):
        if daily_ceiling <= 0 or per_item_ceiling <= 0:
            raise ValidationError("Spending ceilings must be positive")
        self.daily_ceiling = daily_ceiling
        self.per_item_ceiling = per_item_ceiling
        self._clock = clock
        self._ledgers: Dict[str, SpendingLedger] = {}
        self._lock = Lock()

    def set_limits(
        self,
        payer: str,
        daily_ceiling: Optional[int] = None,
        per_item_ceiling: Optional[int] = None,
    ) -> SpendingLedger:
        with self._lock:
            ledger = self._ledger(payer)
            if daily_ceiling is not None:
                if daily_ceiling <= 0:
                    raise ValidationError("Daily ceiling must be positive")
                ledger.daily_ceiling = daily_ceiling
            if per_item_ceiling is not None:
                if per_item_ceiling <= 0:
                    raise ValidationError("Per-item ceiling must be positive")
                ledger.per_item_ceiling = per_item_ceiling

        logger.info(
            "spending_limits_set",
            payer=payer,
            daily_ceiling=ledger.daily_ceiling,
            per_item_ceiling=ledger.per_item_ceiling,
        )
        return ledger

    def reserve(self, payer: str, amount: int) -> Reservation:
        """Check both ceilings for one item and commit the spend."""
        return self._reserve(payer, (amount,))

    def reserve_many(self, payer: str, amounts: Sequence[int]) -> Reservation:
        """
        Check every amount against the per-item ceiling and the total against
        the daily ceiling, then commit the total. All or nothing.
        """
        return self._reserve(payer, tuple(amounts))

    def _reserve(self, payer: str, amounts: Tuple[int, ...]) -> Reservation:
        if any(a <= 0 for a in amounts):
            raise ValidationError("Reservation amounts must be positive")
        total = sum(amounts)

        with self._lock:
            ledger = self._ledgers.get(payer) or self._new_ledger(payer)
            self._roll_window(ledger)

            for amount in amounts:
                if amount > ledger.per_item_ceiling:
                    logger.warning(
                        "spending_rejected",
                        payer=payer,
                        reason="per_item_ceiling",
                        amount=amount,
                        ceiling=ledger.per_item_ceiling,
                    )
                    raise PerItemCeilingExceeded(
                        f"Price {amount} exceeds per-item ceiling {ledger.per_item_ceiling}",
                        payer=payer,
                        amount=amount,
                        limit=ledger.per_item_ceiling,
                    )

            if ledger.spent + total > ledger.daily_ceiling:
                logger.warning(
                    "spending_rejected",
                    payer=payer,
                    reason="daily_ceiling",
                    amount=total,
                    spent=ledger.spent,
                    ceiling=ledger.daily_ceiling,
                )
                raise DailyCeilingExceeded(
                    f"Daily spending limit would be exceeded "
                    f"({ledger.spent} + {total} > {ledger.daily_ceiling})",
                    payer=payer,
                    amount=total,
                    limit=ledger.daily_ceiling,
                )

            if ledger.window_start is None:
                ledger.window_start = self._clock()
            self._ledgers[payer] = ledger
            ledger.spent += total
            reservation = Reservation(payer=payer, amount=total, window_start=ledger.window_start)
            spent = ledger.spent

        logger.debug("spending_reserved", payer=payer, amount=total, spent=spent)
        return reservation

    def release(self, reservation: Reservation, amount: Optional[int] = None) -> int:
        """
        Give back (part of) a reservation whose transfer did not confirm.

        A no-op once the window has rolled over; a reset is never undone.
        Returns the amount actually released.
        """
        amount = reservation.amount if amount is None else min(amount, reservation.amount)
        with self._lock:
            ledger = self._ledgers.get(reservation.payer)
            if ledger is None or ledger.window_start != reservation.window_start:
                return 0
            released = min(amount, ledger.spent)
            ledger.spent -= released

        logger.debug("spending_released", payer=reservation.payer, amount=released)
        return released

    def remaining(self, payer: str) -> int:
        """Daily ceiling minus spend in the current window. Read-only."""
        with self._lock:
            daily_ceiling, _, spent = self._effective(payer)
            return max(0, daily_ceiling - spent)

    def spent(self, payer: str) -> int:
        with self._lock:
            return self._effective(payer)[2]

    def limits(self, payer: str) -> Tuple[int, int]:
        """(daily ceiling, per-item ceiling) for a payer."""
        with self._lock:
            daily_ceiling, per_item_ceiling, _ = self._effective(payer)
            return daily_ceiling, per_item_ceiling

    def snapshot(self, payer: str) -> Dict[str, Any]:
        with self._lock:
            daily_ceiling, per_item_ceiling, spent = self._effective(payer)
            ledger = self._ledgers.get(payer)
            return {
                "payer": payer,
                "spent": str(spent),
                "dailyCeiling": str(daily_ceiling),
                "perItemCeiling": str(per_item_ceiling),
                "remaining": str(max(0, daily_ceiling - spent)),
                "windowStart": ledger.window_start.isoformat() if ledger and ledger.window_start else None,
            }

    def _effective(self, payer: str) -> Tuple[int, int, int]:
        """Ceilings and spend as the next reservation would see them."""
        ledger = self._ledgers.get(payer)
        if ledger is None:
            return self.daily_ceiling, self.per_item_ceiling, 0
        spent = ledger.spent
        if ledger.window_start is not None and self._clock() - ledger.window_start >= SPENDING_WINDOW:
            spent = 0
        return ledger.daily_ceiling, ledger.per_item_ceiling, spent

    def _new_ledger(self, payer: str) -> SpendingLedger:
        return SpendingLedger(
            payer=payer,
            daily_ceiling=self.daily_ceiling,
            per_item_ceiling=self.per_item_ceiling,
        )

    def _ledger(self, payer: str) -> SpendingLedger:
        """Get or create a payer's ledger. Caller holds the lock."""
        ledger = self._ledgers.get(payer)
        if ledger is None:
            ledger = self._new_ledger(payer)
            self._ledgers[payer] = ledger
        return ledger

    def _roll_window(self, ledger: SpendingLedger) -> None:
        """Reset the window if 24h have passed since the last reset."""
        now = self._clock()
        if ledger.window_start is not None and now - ledger.window_start >= SPENDING_WINDOW:
            logger.info("daily_spending_reset", payer=ledger.payer, previous_spent=ledger.spent)
            ledger.spent = 0
            ledger.window_start = now
