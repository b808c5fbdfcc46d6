import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient

from strategy.execution_types import BracketStatus, Fill, OcoTicket, OrderTicket


__all__ = ["BinanceTransport", "SymbolInfo", "Kline", "AssetBalance", "BinanceAPIError"]


@dataclass(frozen=True)
class Kline:
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: datetime
    quote_volume: float
    trades: int
    taker_buy_volume: float

    @property
    def price_change(self) -> float:
        return (self.close - self.open) / self.open if self.open > 0 else math.nan


@dataclass(frozen=True)
class AssetBalance:
    asset: str
    free: float
    locked: float

    @property
    def total(self) -> float:
        return self.free + self.locked


@dataclass
class SymbolInfo:
    symbol: str
    base_asset: Optional[str]
    quote_asset: Optional[str]
    price_tick: Optional[float]
    amount_step: Optional[float]
    min_notional: Optional[float]
    raw: Dict[str, Any]

    def round_quantity(self, qty: float) -> float:
        if not self.amount_step:
            return qty
        steps = math.floor(qty / self.amount_step + 1e-9)
        return round(steps * self.amount_step, 12)

    def round_price(self, price: float) -> float:
        if not self.price_tick:
            return price
        return round(round(price / self.price_tick) * self.price_tick, 12)


def _ms_to_datetime(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class BinanceTransport:
    """Thin adapter around the Binance spot REST API with typed responses."""

    def __init__(self, rest: Optional[BinanceRESTClient] = None) -> None:
        self._rest: Optional[BinanceRESTClient] = rest
        self._lock = asyncio.Lock()
        self._symbol_info: Dict[str, SymbolInfo] = {}

    def _client(self) -> BinanceRESTClient:
        if self._rest is None:
            self._rest = BinanceRESTClient()
        return self._rest

    async def get_klines(
        self,
        symbol: str,
        interval: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        limit: int = 500,
    ) -> List[Kline]:
        params = {
            "symbol": symbol,
            "interval": interval,
            "startTime": start_time,
            "endTime": end_time,
            "limit": limit,
        }
        payload = await self._client().get("/api/v3/klines", params=params)
        if not isinstance(payload, list):
            return []
        klines: List[Kline] = []
        for row in payload:
            kline = self._parse_kline(row)
            if kline is not None:
                klines.append(kline)
        return klines

    async def get_current_price(self, symbol: str) -> Optional[float]:
        payload = await self._client().get("/api/v3/ticker/price", params={"symbol": symbol})
        if not isinstance(payload, dict):
            return None
        return self._as_float(payload.get("price"))

    async def get_account_info(self) -> Dict[str, AssetBalance]:
        payload = await self._client().get("/api/v3/account", signed=True)
        if not isinstance(payload, dict):
            return {}
        balances: Dict[str, AssetBalance] = {}
        for item in payload.get("balances") or []:
            asset = item.get("asset")
            if not asset:
                continue
            balances[asset] = AssetBalance(
                asset=asset,
                free=self._as_float(item.get("free")) or 0.0,
                locked=self._as_float(item.get("locked")) or 0.0,
            )
        return balances

    async def get_free_balance(self, asset: str) -> float:
        balances = await self.get_account_info()
        balance = balances.get(asset)
        return balance.free if balance else 0.0

    async def fetch_symbol_info(self, symbol: str) -> Optional[SymbolInfo]:
        cached = self._symbol_info.get(symbol)
        if cached is not None:
            return cached
        data = await self._client().get("/api/v3/exchangeInfo", params={"symbol": symbol})
        if not isinstance(data, dict):
            return None
        symbols = data.get("symbols") or []
        if not symbols:
            return None
        info = self._parse_symbol_info(symbols[0])
        self._symbol_info[symbol] = info
        return info

    async def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        quantity: Optional[float] = None,
        quote_order_qty: Optional[float] = None,
        price: Optional[float] = None,
        time_in_force: Optional[str] = None,
    ) -> Optional[OrderTicket]:
        if quantity is None and quote_order_qty is None:
            raise ValueError("Either quantity or quote_order_qty must be provided")
        params = {
            "symbol": symbol,
            "side": side.upper(),
            "type": order_type.upper(),
            "quantity": self._fmt(quantity),
            "quoteOrderQty": self._fmt(quote_order_qty),
            "price": self._fmt(price),
            "timeInForce": time_in_force,
            "newOrderRespType": "FULL",
        }
        data = await self._client().post("/api/v3/order", params=params, signed=True)
        return self._parse_order_ack(data)

    async def market_order(
        self,
        symbol: str,
        side: str,
        quantity: Optional[float] = None,
        quote_order_qty: Optional[float] = None,
    ) -> Fill:
        ticket = await self.place_order(symbol, side, "MARKET", quantity=quantity, quote_order_qty=quote_order_qty)
        if ticket is None:
            raise BinanceAPIError(0, None, "Empty order acknowledgement", "")
        return self._fill_from_ticket(ticket)

    async def place_oco_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        take_profit_price: float,
        stop_price: float,
        stop_limit_price: float,
    ) -> OcoTicket:
        params = {
            "symbol": symbol,
            "side": side.upper(),
            "quantity": self._fmt(quantity),
            "price": self._fmt(take_profit_price),
            "stopPrice": self._fmt(stop_price),
            "stopLimitPrice": self._fmt(stop_limit_price),
            "stopLimitTimeInForce": "GTC",
            "newOrderRespType": "RESULT",
        }
        data = await self._client().post("/api/v3/order/oco", params=params, signed=True)
        if not isinstance(data, dict):
            raise BinanceAPIError(0, None, "Unexpected OCO acknowledgement", str(data))
        orders = []
        for report in data.get("orderReports") or []:
            ticket = self._parse_order_ack(report)
            if ticket:
                orders.append(ticket)
        return OcoTicket(
            symbol=symbol,
            order_list_id=str(data.get("orderListId")),
            quantity=quantity,
            take_profit_price=take_profit_price,
            stop_loss_price=stop_price,
            stop_limit_price=stop_limit_price,
            orders=orders,
        )

    async def cancel_order(
        self,
        symbol: str,
        order_id: Optional[int] = None,
        client_order_id: Optional[str] = None,
    ) -> None:
        if order_id is None and not client_order_id:
            raise ValueError("Either order_id or client_order_id must be provided")
        params: Dict[str, Any] = {"symbol": symbol}
        if order_id is not None:
            params["orderId"] = order_id
        if client_order_id:
            params["origClientOrderId"] = client_order_id
        await self._client().delete("/api/v3/order", params=params, signed=True)

    async def cancel_order_list(self, symbol: str, order_list_id: int) -> None:
        await self._client().delete(
            "/api/v3/orderList",
            params={"symbol": symbol, "orderListId": order_list_id},
            signed=True,
        )

    async def get_order_list_status(self, symbol: str, order_list_id: int) -> BracketStatus:
        data = await self._client().get("/api/v3/orderList", params={"orderListId": order_list_id}, signed=True)
        if not isinstance(data, dict):
            raise BinanceAPIError(0, None, "Unexpected order list payload", str(data))
        status = BracketStatus(str(order_list_id), resting=data.get("listOrderStatus") == "EXECUTING")
        if status.resting:
            return status
        for leg in data.get("orders") or []:
            order = await self._client().get(
                "/api/v3/order",
                params={"symbol": symbol, "orderId": leg.get("orderId")},
                signed=True,
            )
            if not isinstance(order, dict):
                continue
            executed = self._as_float(order.get("executedQty")) or 0.0
            quote = self._as_float(order.get("cummulativeQuoteQty")) or 0.0
            if executed > 0 and not quote:
                quote = executed * (self._as_float(order.get("price")) or 0.0)
            status.filled_quantity += executed
            status.filled_quote += quote
        return status

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderTicket]:
        params = {"symbol": symbol} if symbol else None
        payload = await self._client().get("/api/v3/openOrders", params=params, signed=True)
        if not isinstance(payload, list):
            return []
        orders: List[OrderTicket] = []
        for item in payload:
            ticket = self._parse_order_ack(item)
            if ticket:
                orders.append(ticket)
        return orders

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    def _parse_kline(self, row: Any) -> Optional[Kline]:
        if not isinstance(row, (list, tuple)) or len(row) < 10:
            return None
        values = [self._as_float(row[i]) for i in (1, 2, 3, 4, 5, 7, 9)]
        if any(v is None for v in values):
            return None
        open_, high, low, close, volume, quote_volume, taker_buy = values
        return Kline(
            open_time=_ms_to_datetime(row[0]),
            open=open_,
            high=high,
            low=low,
            close=close,
            volume=volume,
            close_time=_ms_to_datetime(row[6]),
            quote_volume=quote_volume,
            trades=self._as_int(row[8]) or 0,
            taker_buy_volume=taker_buy,
        )

    def _parse_symbol_info(self, payload: Dict[str, Any]) -> SymbolInfo:
        price_tick = None
        amount_step = None
        min_notional = None
        for filt in payload.get("filters", []):
            ftype = filt.get("filterType")
            if ftype == "PRICE_FILTER" and price_tick is None:
                price_tick = self._as_float(filt.get("tickSize"))
            elif ftype == "LOT_SIZE" and amount_step is None:
                amount_step = self._as_float(filt.get("stepSize"))
            elif ftype in ("NOTIONAL", "MIN_NOTIONAL") and min_notional is None:
                min_notional = self._as_float(filt.get("minNotional"))
        return SymbolInfo(
            symbol=payload.get("symbol"),
            base_asset=payload.get("baseAsset"),
            quote_asset=payload.get("quoteAsset"),
            price_tick=price_tick,
            amount_step=amount_step,
            min_notional=min_notional,
            raw=payload,
        )

    def _parse_order_ack(self, payload: Any) -> Optional[OrderTicket]:
        if not isinstance(payload, dict):
            return None
        qty_val = payload.get("executedQty") or payload.get("origQty") or payload.get("quantity")
        return OrderTicket(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").upper(),
            type=payload.get("type") or "MARKET",
            quantity=self._as_float(qty_val) or 0.0,
            status=payload.get("status"),
            price=self._as_float(payload.get("price")),
            stop_price=self._as_float(payload.get("stopPrice")),
            client_order_id=payload.get("clientOrderId"),
            exchange_order_id=self._as_int(payload.get("orderId")),
            raw=payload,
        )

    def _fill_from_ticket(self, ticket: OrderTicket) -> Fill:
        executed = self._as_float(ticket.raw.get("executedQty")) or ticket.quantity
        quote = self._as_float(ticket.raw.get("cummulativeQuoteQty")) or 0.0
        if executed <= 0:
            raise BinanceAPIError(0, None, f"Order {ticket.id} not filled (status={ticket.status})", str(ticket.raw))
        avg_price = quote / executed if quote else (ticket.price or 0.0)
        return Fill(
            symbol=ticket.symbol,
            side=ticket.side,
            quantity=executed,
            price=avg_price,
            order_id=ticket.id,
            quote_amount=quote,
        )

    @staticmethod
    def _fmt(value: Optional[float]) -> Optional[str]:
        if value is None:
            return None
        return format(value, ".8f").rstrip("0").rstrip(".")

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
