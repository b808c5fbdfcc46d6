import asyncio
import inspect
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)

ALREADY_RESERVED = 'ALREADY_RESERVED'
BELOW_MINIMUM = 'BELOW_MINIMUM'
INSUFFICIENT_FUNDS = 'INSUFFICIENT_FUNDS'
BALANCE_UNAVAILABLE = 'BALANCE_UNAVAILABLE'
INVALID_PERCENT = 'INVALID_PERCENT'


@dataclass
class AllocationReservation:
    symbol: str
    reserved_amount: float
    timestamp: datetime
    order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'reserved_amount': self.reserved_amount,
            'order_id': self.order_id,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ReservationResult:
    success: bool
    amount: float = 0.0
    reason: Optional[str] = None
    reason_code: Optional[str] = None


async def _read_balance(balance_source: Any) -> float:
    getter = getattr(balance_source, 'get_available_balance', None)
    if getter is None:
        getter = balance_source
    value = getter()
    if inspect.isawaitable(value):
        value = await value
    return float(value)


class AllocationManager:
    """Capital reservation ledger.

    A reservation is admitted only if its amount fits in the balance read at
    reservation time minus everything already reserved. The read, the check
    and the record happen under one lock.
    """

    def __init__(self, min_notional: float = 10.0):
        self.min_notional = float(min_notional)
        self._reservations: Dict[str, AllocationReservation] = {}
        self._lock = asyncio.Lock()
        self._last_balance = 0.0

    @property
    def total_reserved(self) -> float:
        return sum(r.reserved_amount for r in self._reservations.values())

    async def reserve_funds(self, symbol: str, allocation_percent: float, balance_source: Any) -> ReservationResult:
        if not (allocation_percent > 0 and allocation_percent <= 100):
            return ReservationResult(False, 0.0, f"Invalid allocation percent {allocation_percent}", INVALID_PERCENT)

        async with self._lock:
            if symbol in self._reservations:
                return ReservationResult(False, 0.0, f"Funds already reserved for {symbol}", ALREADY_RESERVED)

            try:
                balance = await _read_balance(balance_source)
            except Exception as exc:
                logger.warning("Balance read failed while reserving %s: %s", symbol, exc)
                return ReservationResult(False, 0.0, f"Balance unavailable: {exc}", BALANCE_UNAVAILABLE)
            if not math.isfinite(balance) or balance < 0:
                return ReservationResult(False, 0.0, f"Balance unavailable: {balance}", BALANCE_UNAVAILABLE)
            self._last_balance = balance

            amount = balance * allocation_percent / 100
            if amount < self.min_notional:
                return ReservationResult(
                    False,
                    amount,
                    f"Allocation {amount:.2f} below minimum notional {self.min_notional:.2f}",
                    BELOW_MINIMUM,
                )

            available = balance - self.total_reserved
            if amount > available:
                return ReservationResult(
                    False,
                    amount,
                    f"Insufficient funds: need {amount:.2f}, available {available:.2f}",
                    INSUFFICIENT_FUNDS,
                )

            self._reservations[symbol] = AllocationReservation(
                symbol=symbol,
                reserved_amount=amount,
                timestamp=datetime.now(timezone.utc),
            )

        logger.info("Reserved %.2f for %s (%.2f%% of %.2f)", amount, symbol, allocation_percent, balance)
        return ReservationResult(True, amount)

    def update_reservation(self, symbol: str, order_id: str) -> bool:
        reservation = self._reservations.get(symbol)
        if reservation is None:
            return False
        reservation.order_id = order_id
        return True

    def release_funds(self, symbol: str) -> bool:
        reservation = self._reservations.pop(symbol, None)
        if reservation is None:
            return False
        logger.info("Released %.2f reserved for %s", reservation.reserved_amount, symbol)
        return True

    def has_reservation(self, symbol: str) -> bool:
        return symbol in self._reservations

    def get_reservation(self, symbol: str) -> Optional[AllocationReservation]:
        return self._reservations.get(symbol)

    def reservations(self) -> List[AllocationReservation]:
        return [self._reservations[s] for s in sorted(self._reservations)]

    def get_allocation_status(self) -> Dict[str, Any]:
        total_reserved = self.total_reserved
        balance = self._last_balance
        return {
            'total_reserved': total_reserved,
            'total_balance': balance,
            'percentage_used': total_reserved / balance * 100 if balance > 0 else 0.0,
            'reservations': [r.to_dict() for r in self.reservations()],
        }

    def clear_all_reservations(self) -> int:
        count = len(self._reservations)
        self._reservations.clear()
        logger.warning("Cleared %s reservations", count)
        return count

    def cleanup_stale_reservations(self, max_age: timedelta, now: Optional[datetime] = None) -> List[str]:
        """Drop reservations older than ``max_age`` that never got an order id."""
        now = now or datetime.now(timezone.utc)
        stale = [
            symbol
            for symbol, r in self._reservations.items()
            if r.order_id is None and now - r.timestamp > max_age
        ]
        for symbol in stale:
            self._reservations.pop(symbol, None)
            logger.warning("Dropped stale reservation for %s", symbol)
        return stale
