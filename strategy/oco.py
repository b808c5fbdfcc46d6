"""Stateless take-profit / stop-loss bracket arithmetic."""
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple


logger = logging.getLogger(__name__)

STOP_LIMIT_BUFFER = 0.001

TAKE_PROFIT = 'TAKE_PROFIT'
STOP_LOSS = 'STOP_LOSS'


@dataclass(frozen=True)
class OCOPrices:
    take_profit_price: float
    stop_loss_price: float
    stop_limit_price: float


@dataclass(frozen=True)
class OCOCheckResult:
    triggered: bool
    kind: Optional[str] = None
    exit_price: Optional[float] = None


class OCOOrderService:

    @staticmethod
    def calculate_oco_prices(entry_price: float, profit_percent: float, stop_loss_percent: float) -> OCOPrices:
        if not math.isfinite(entry_price) or entry_price <= 0:
            raise ValueError(f"Entry price must be positive, got {entry_price}")
        if profit_percent <= 0 or stop_loss_percent <= 0:
            raise ValueError(
                f"Profit and stop-loss percentages must be positive, got {profit_percent} and {stop_loss_percent}"
            )
        take_profit = entry_price * (1 + profit_percent / 100)
        stop_loss = entry_price * (1 - stop_loss_percent / 100)
        stop_limit = entry_price * (1 - stop_loss_percent / 100 - STOP_LIMIT_BUFFER)
        return OCOPrices(take_profit, stop_loss, stop_limit)

    @staticmethod
    def check_oco_condition(current_price: float, take_profit_price: float, stop_loss_price: float) -> OCOCheckResult:
        # Take-profit is evaluated first
        if current_price >= take_profit_price:
            return OCOCheckResult(True, TAKE_PROFIT, current_price)
        if current_price <= stop_loss_price:
            return OCOCheckResult(True, STOP_LOSS, current_price)
        return OCOCheckResult(False)

    @staticmethod
    def calculate_profit_loss(entry_price: float, exit_price: float, quantity: float) -> Tuple[float, float]:
        pnl = quantity * (exit_price - entry_price)
        cost = quantity * entry_price
        pnl_percent = pnl / cost * 100 if cost else 0.0
        return pnl, pnl_percent

    @staticmethod
    def validate_oco_prices(entry_price: float, take_profit_price: float, stop_loss_price: float) -> Tuple[bool, List[str]]:
        errors = []
        if take_profit_price <= entry_price:
            errors.append("Take profit price must be above entry price")
        if stop_loss_price >= entry_price:
            errors.append("Stop loss price must be below entry price")
        if stop_loss_price <= 0:
            errors.append("Stop loss price must be positive")
        return not errors, errors

    @staticmethod
    def format_price(price: float, decimals: int = 8) -> str:
        return f"{price:.{decimals}f}"

    @staticmethod
    def calculate_allocation_amount(balance: float, allocation_percent: float) -> float:
        return balance * allocation_percent / 100

    @staticmethod
    def calculate_position_size(allocation_amount: float, entry_price: float) -> float:
        if entry_price <= 0:
            raise ValueError(f"Entry price must be positive, got {entry_price}")
        return allocation_amount / entry_price
