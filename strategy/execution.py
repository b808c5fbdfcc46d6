import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional

from strategy.execution_types import BracketStatus, Fill, OcoTicket
from strategy.oco import OCOPrices
from strategy.simulators.paper import PaperTradingSimulator
from strategy.transports.binance import BinanceAPIError, BinanceTransport


logger = logging.getLogger(__name__)


def _log_transport_error(action: str, error: Exception) -> None:
    if isinstance(error, BinanceAPIError):
        logger.error("Binance %s failed (code=%s, msg=%s)", action, error.code, error.msg)
    else:
        logger.error("%s failed: %s", action, error)


class ExecutionAdapter(ABC):
    """Order execution seam shared by paper and live trading.

    Market orders raise on failure so the caller can release capital and
    cool the symbol down; cancellations report failure through their return
    value and ``bracket_status`` tells a resting bracket from a filled one.
    """

    is_live = False

    def __init__(self, quote_asset: str = "USDT"):
        self.quote_asset = quote_asset
        self._prices: Dict[str, float] = {}

    async def initialize(self) -> None:
        return None

    def update_price(self, symbol: str, price: float) -> None:
        if price and price > 0:
            self._prices[symbol] = float(price)

    def last_price(self, symbol: str) -> Optional[float]:
        return self._prices.get(symbol)

    @abstractmethod
    async def get_current_price(self, symbol: str) -> float:
        ...

    @abstractmethod
    async def get_available_balance(self) -> float:
        ...

    @abstractmethod
    async def market_buy(self, symbol: str, base_asset: str, quote_amount: float) -> Fill:
        ...

    @abstractmethod
    async def market_sell(self, symbol: str, base_asset: str, qty: float) -> Fill:
        ...

    @abstractmethod
    async def place_oco(self, symbol: str, qty: float, prices: OCOPrices) -> Optional[OcoTicket]:
        ...

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        ...

    @abstractmethod
    async def bracket_status(self, symbol: str, order_id: str) -> BracketStatus:
        ...

    @abstractmethod
    async def cancel_all_open_orders(self, symbols: Iterable[str]) -> int:
        ...

    @abstractmethod
    async def remaining_quantity(self, symbol: str, base_asset: str, qty: float) -> float:
        ...

    async def close(self) -> None:
        return None


class PaperExecutionAdapter(ExecutionAdapter):
    """Virtual fills at the current price against a PaperTradingSimulator."""

    def __init__(
        self,
        simulator: Optional[PaperTradingSimulator] = None,
        transport: Optional[BinanceTransport] = None,
        quote_asset: str = "USDT",
    ):
        super().__init__(quote_asset)
        self.simulator = simulator or PaperTradingSimulator(quote_asset)
        self.transport = transport

    async def get_current_price(self, symbol: str) -> float:
        cached = self._prices.get(symbol)
        if cached is not None:
            return cached
        if self.transport is None:
            raise RuntimeError(f"No price available for {symbol}")
        price = await self.transport.get_current_price(symbol)
        if not price:
            raise RuntimeError(f"No price available for {symbol}")
        self.update_price(symbol, price)
        return price

    async def get_available_balance(self) -> float:
        return self.simulator.balance

    async def market_buy(self, symbol: str, base_asset: str, quote_amount: float) -> Fill:
        price = await self.get_current_price(symbol)
        fill = self.simulator.market_buy(symbol, base_asset, quote_amount, price)
        logger.info("[PAPER] Bought %.8f %s at %.8f (%.2f %s)", fill.quantity, symbol, price, quote_amount,
                    self.quote_asset)
        return fill

    async def market_sell(self, symbol: str, base_asset: str, qty: float) -> Fill:
        price = await self.get_current_price(symbol)
        fill = self.simulator.market_sell(symbol, base_asset, qty, price)
        logger.info("[PAPER] Sold %.8f %s at %.8f", fill.quantity, symbol, price)
        return fill

    async def place_oco(self, symbol: str, qty: float, prices: OCOPrices) -> Optional[OcoTicket]:
        return self.simulator.place_oco(
            symbol, qty, prices.take_profit_price, prices.stop_loss_price, prices.stop_limit_price
        )

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        return bool(self.simulator.cancel(order_id))

    async def bracket_status(self, symbol: str, order_id: str) -> BracketStatus:
        return BracketStatus(order_id, resting=self.simulator.has_bracket(order_id))

    async def cancel_all_open_orders(self, symbols: Iterable[str]) -> int:
        cancelled = int(self.simulator.cancel())
        logger.info("Paper cancel-all completed: %s brackets", cancelled)
        return cancelled

    async def remaining_quantity(self, symbol: str, base_asset: str, qty: float) -> float:
        return min(qty, self.simulator.holding(base_asset))

    async def close(self) -> None:
        if self.transport is not None:
            await self.transport.close()


class LiveExecutionAdapter(ExecutionAdapter):
    """Real spot orders through BinanceTransport."""

    is_live = True

    def __init__(self, transport: Optional[BinanceTransport] = None, quote_asset: str = "USDT"):
        super().__init__(quote_asset)
        self.transport = transport or BinanceTransport()

    async def initialize(self) -> None:
        try:
            balances = await self.transport.get_account_info()
        except Exception as exc:
            raise RuntimeError(f"Live execution could not initialize: {exc}") from exc
        free = balances.get(self.quote_asset)
        logger.info("Live execution ready; free %s balance %.2f", self.quote_asset, free.free if free else 0.0)

    async def get_current_price(self, symbol: str) -> float:
        price = await self.transport.get_current_price(symbol)
        if not price:
            raise RuntimeError(f"No price available for {symbol}")
        self.update_price(symbol, price)
        return price

    async def get_available_balance(self) -> float:
        return await self.transport.get_free_balance(self.quote_asset)

    async def market_buy(self, symbol: str, base_asset: str, quote_amount: float) -> Fill:
        info = await self.transport.fetch_symbol_info(symbol)
        amount = round(quote_amount, 2)
        if info and info.min_notional and amount < info.min_notional:
            raise ValueError(f"Order {amount} below exchange minimum {info.min_notional} for {symbol}")
        fill = await self.transport.market_order(symbol, "BUY", quote_order_qty=amount)
        logger.info("[LIVE] Bought %.8f %s at %.8f", fill.quantity, symbol, fill.price)
        return fill

    async def market_sell(self, symbol: str, base_asset: str, qty: float) -> Fill:
        info = await self.transport.fetch_symbol_info(symbol)
        quantity = info.round_quantity(qty) if info else qty
        fill = await self.transport.market_order(symbol, "SELL", quantity=quantity)
        logger.info("[LIVE] Sold %.8f %s at %.8f", fill.quantity, symbol, fill.price)
        return fill

    async def place_oco(self, symbol: str, qty: float, prices: OCOPrices) -> Optional[OcoTicket]:
        info = await self.transport.fetch_symbol_info(symbol)
        if info:
            qty = info.round_quantity(qty)
            take_profit = info.round_price(prices.take_profit_price)
            stop = info.round_price(prices.stop_loss_price)
            stop_limit = info.round_price(prices.stop_limit_price)
        else:
            take_profit, stop, stop_limit = prices.take_profit_price, prices.stop_loss_price, prices.stop_limit_price
        try:
            return await self.transport.place_oco_order(symbol, "SELL", qty, take_profit, stop, stop_limit)
        except Exception as exc:
            # The position stays open and is still guarded by the cycle's price checks
            _log_transport_error(f"OCO order for {symbol}", exc)
            return None

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        try:
            await self.transport.cancel_order_list(symbol, int(order_id))
            return True
        except (TypeError, ValueError):
            logger.error("Invalid order list id %s for %s", order_id, symbol)
            return False
        except Exception as exc:
            _log_transport_error(f"cancel order list {order_id}", exc)
            return False

    async def bracket_status(self, symbol: str, order_id: str) -> BracketStatus:
        status = await self.transport.get_order_list_status(symbol, int(order_id))
        logger.info("Order list %s for %s: resting=%s filled=%.8f", order_id, symbol, status.resting,
                    status.filled_quantity)
        return status

    async def cancel_all_open_orders(self, symbols: Iterable[str]) -> int:
        cancelled = 0
        for symbol in symbols:
            try:
                orders = await self.transport.get_open_orders(symbol)
            except Exception as exc:
                _log_transport_error(f"open orders for {symbol}", exc)
                continue
            for order in orders:
                try:
                    await self.transport.cancel_order(
                        symbol,
                        order_id=order.exchange_order_id,
                        client_order_id=None if order.exchange_order_id is not None else order.client_order_id,
                    )
                    cancelled += 1
                except Exception as exc:
                    _log_transport_error(f"cancel order {order.id}", exc)
        logger.info("Cancel-all completed: %s orders", cancelled)
        return cancelled

    async def remaining_quantity(self, symbol: str, base_asset: str, qty: float) -> float:
        free = await self.transport.get_free_balance(base_asset)
        return min(qty, free)

    async def close(self) -> None:
        await self.transport.close()


def build_execution_adapter(
    enable_live: bool,
    quote_asset: str = "USDT",
    paper_initial_balance: float = 10000.0,
    transport: Optional[BinanceTransport] = None,
) -> ExecutionAdapter:
    transport = transport or BinanceTransport()
    if enable_live:
        logger.warning("Live trading enabled: orders will be sent to the exchange")
        return LiveExecutionAdapter(transport, quote_asset)
    logger.info("Paper trading with %.2f %s virtual balance", paper_initial_balance, quote_asset)
    simulator = PaperTradingSimulator(quote_asset, paper_initial_balance)
    return PaperExecutionAdapter(simulator, transport, quote_asset)
