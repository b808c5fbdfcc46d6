from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class OrderTicket:
    """Normalized view of an order acknowledgement across live and paper flows."""

    symbol: str
    side: str
    type: str
    quantity: float
    status: Optional[str] = None
    price: Optional[float] = None
    stop_price: Optional[float] = None
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.exchange_order_id is not None:
            return str(self.exchange_order_id)
        if self.client_order_id:
            return self.client_order_id
        return "order"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "quantity": self.quantity,
            "price": self.price,
            "stop_price": self.stop_price,
            "client_order_id": self.client_order_id,
            "exchange_order_id": self.exchange_order_id,
        }


@dataclass
class Fill:
    """Executed market order: average price and filled base quantity."""

    symbol: str
    side: str
    quantity: float
    price: float
    order_id: str
    quote_amount: float = 0.0
    paper: bool = False

    def __post_init__(self) -> None:
        if not self.quote_amount:
            self.quote_amount = self.quantity * self.price

    def as_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "quantity": self.quantity,
            "price": self.price,
            "order_id": self.order_id,
            "quote_amount": self.quote_amount,
            "paper": self.paper,
        }


@dataclass
class OcoTicket:
    """A take-profit / stop-loss bracket resting on the exchange (or simulated)."""

    symbol: str
    order_list_id: str
    quantity: float
    take_profit_price: float
    stop_loss_price: float
    stop_limit_price: float
    orders: List[OrderTicket] = field(default_factory=list)

    @property
    def order_ids(self) -> List[str]:
        return [order.id for order in self.orders]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "order_list_id": self.order_list_id,
            "quantity": self.quantity,
            "take_profit_price": self.take_profit_price,
            "stop_loss_price": self.stop_loss_price,
            "stop_limit_price": self.stop_limit_price,
            "orders": [order.as_dict() for order in self.orders],
        }


@dataclass
class BracketStatus:
    """Exchange-side state of a bracket whose cancel did not go through."""

    order_list_id: str
    resting: bool
    filled_quantity: float = 0.0
    filled_quote: float = 0.0

    @property
    def average_price(self) -> Optional[float]:
        if self.filled_quantity <= 0:
            return None
        return self.filled_quote / self.filled_quantity
