import uuid
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Union

from api.metrics import metrics

from strategy.execution_types import Fill, OcoTicket, OrderTicket


class PaperTradingSimulator:
    """Virtual spot account: quote balance, base-asset holdings and resting brackets."""

    def __init__(self, quote_asset: str = "USDT", initial_balance: float = 10000.0) -> None:
        self.quote_asset = quote_asset
        self.initial_balance = float(initial_balance)
        self._balance = float(initial_balance)
        self._holdings: Dict[str, float] = {}
        self._orders: Dict[str, OrderTicket] = {}
        self._brackets: Dict[str, OcoTicket] = {}
        metrics.update_balance(self._balance)

    @property
    def balance(self) -> float:
        return self._balance

    @property
    def holdings(self) -> Mapping[str, float]:
        return MappingProxyType(self._holdings)

    @property
    def open_orders(self) -> Mapping[str, OrderTicket]:
        return MappingProxyType(self._orders)

    def holding(self, asset: str) -> float:
        return self._holdings.get(asset, 0.0)

    def has_bracket(self, order_list_id: str) -> bool:
        return order_list_id in self._brackets

    def market_buy(self, symbol: str, base_asset: str, quote_amount: float, price: float) -> Fill:
        if quote_amount <= 0 or price <= 0:
            raise ValueError(f"Invalid paper buy for {symbol}: amount={quote_amount} price={price}")
        if quote_amount > self._balance + 1e-9:
            raise ValueError(
                f"Insufficient paper balance for {symbol}: need {quote_amount:.2f}, have {self._balance:.2f}"
            )
        qty = quote_amount / price
        self._balance -= quote_amount
        self._holdings[base_asset] = self._holdings.get(base_asset, 0.0) + qty
        metrics.update_balance(self._balance)
        return Fill(symbol, "BUY", qty, price, self._new_id(), quote_amount, paper=True)

    def market_sell(self, symbol: str, base_asset: str, qty: float, price: float) -> Fill:
        held = self._holdings.get(base_asset, 0.0)
        qty = min(qty, held)
        if qty <= 0 or price <= 0:
            raise ValueError(f"Nothing to sell for {symbol}: held={held} price={price}")
        proceeds = qty * price
        remaining = held - qty
        if remaining <= 1e-12:
            self._holdings.pop(base_asset, None)
        else:
            self._holdings[base_asset] = remaining
        self._balance += proceeds
        metrics.update_balance(self._balance)
        return Fill(symbol, "SELL", qty, price, self._new_id(), proceeds, paper=True)

    def place_oco(
        self,
        symbol: str,
        qty: float,
        take_profit_price: float,
        stop_loss_price: float,
        stop_limit_price: float,
    ) -> OcoTicket:
        list_id = self._new_id()
        limit_leg = OrderTicket(symbol, "SELL", "LIMIT_MAKER", qty, "NEW", price=take_profit_price,
                                client_order_id=f"{list_id}-tp")
        stop_leg = OrderTicket(symbol, "SELL", "STOP_LOSS_LIMIT", qty, "NEW", price=stop_limit_price,
                               stop_price=stop_loss_price, client_order_id=f"{list_id}-sl")
        ticket = OcoTicket(symbol, list_id, qty, take_profit_price, stop_loss_price, stop_limit_price,
                           [limit_leg, stop_leg])
        self._brackets[list_id] = ticket
        for leg in ticket.orders:
            self._orders[leg.id] = leg
        return ticket

    def cancel(self, order_id: Optional[str] = None) -> Union[int, bool]:
        if order_id is None:
            cancelled = len(self._brackets)
            self._orders.clear()
            self._brackets.clear()
            return cancelled
        bracket = self._brackets.pop(order_id, None)
        if bracket is None:
            return False
        for leg in bracket.orders:
            self._orders.pop(leg.id, None)
        return True

    def equity(self, prices: Mapping[str, float]) -> float:
        """Quote balance plus holdings marked at ``prices`` (keyed by base asset)."""
        value = self._balance
        for asset, qty in self._holdings.items():
            value += qty * prices.get(asset, 0.0)
        return value

    @staticmethod
    def _new_id() -> str:
        return f"paper-{uuid.uuid4().hex[:8]}"
