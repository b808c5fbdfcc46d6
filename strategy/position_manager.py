import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ingest.market_data import MarketDataService
from ingest.price_stream import PriceStream
from orchestration.events import (
    EmergencyStop,
    EventBus,
    LiveTradeExecuted,
    PaperTrade,
    RiskLimitHit,
    SignalProcessed,
    SignalsChecked,
    Started,
    Stopped,
    TradingError,
    ZScoreCalculated,
    ZScoreReversal,
)
from rating.engine import RatingEngine
from risk.allocation import AllocationManager
from risk.risk_manager import RiskManager
from strategy.execution import ExecutionAdapter
from strategy.execution_types import BracketStatus
from strategy.oco import OCOOrderService
from strategy.parameters import ParameterSetManager, TradingParameterSet
from strategy.signal_generator import BUY, SELL, SignalBatch, SignalGenerator, TradingSignal, ZScoreResult


logger = logging.getLogger(__name__)

REVERSAL = 'Z_SCORE_REVERSAL'
MANUAL = 'MANUAL'

QTY_EPSILON = 1e-12


class ExitDeferred(RuntimeError):
    """An exit could not complete because the exchange still holds the bracket."""


class PositionState(Enum):
    FLAT = 'flat'
    ENTERING = 'entering'
    OPEN = 'open'
    CLOSING = 'closing'


@dataclass
class Position:
    symbol: str
    base_asset: str
    quote_asset: str
    parameters: TradingParameterSet
    state: PositionState = PositionState.ENTERING
    entry_price: float = 0.0
    quantity: float = 0.0
    entry_time: Optional[datetime] = None
    take_profit_price: float = 0.0
    stop_loss_price: float = 0.0
    stop_limit_price: float = 0.0
    reservation_amount: float = 0.0
    entry_notional: float = 0.0
    entry_order_id: Optional[str] = None
    oco_order_id: Optional[str] = None
    last_price: float = 0.0
    unrealized_pnl: float = 0.0
    unrealized_pnl_percent: float = 0.0

    @property
    def order_refs(self) -> List[str]:
        return [ref for ref in (self.entry_order_id, self.oco_order_id) if ref]

    def mark(self, price: float) -> None:
        self.last_price = price
        if self.quantity > 0 and self.entry_price > 0:
            self.unrealized_pnl, self.unrealized_pnl_percent = OCOOrderService.calculate_profit_loss(
                self.entry_price, price, self.quantity
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'state': self.state.value,
            'entry_price': self.entry_price,
            'quantity': self.quantity,
            'entry_time': self.entry_time.isoformat() if self.entry_time else None,
            'take_profit_price': self.take_profit_price,
            'stop_loss_price': self.stop_loss_price,
            'reservation_amount': self.reservation_amount,
            'order_refs': self.order_refs,
            'last_price': self.last_price,
            'unrealized_pnl': self.unrealized_pnl,
            'unrealized_pnl_percent': self.unrealized_pnl_percent,
        }


@dataclass(frozen=True)
class ClosedTrade:
    symbol: str
    reason: str
    entry_price: float
    exit_price: float
    quantity: float
    pnl: float
    pnl_percent: float
    exit_time: datetime


@dataclass
class CycleReport:
    timestamp: datetime
    intervals_processed: int = 0
    signals: int = 0
    entries: List[str] = field(default_factory=list)
    exits: List[ClosedTrade] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    duration_s: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'intervals_processed': self.intervals_processed,
            'signals': self.signals,
            'entries': list(self.entries),
            'exits': [{'symbol': t.symbol, 'reason': t.reason, 'pnl': t.pnl} for t in self.exits],
            'skipped': dict(self.skipped),
            'errors': dict(self.errors),
            'duration_s': self.duration_s,
        }


@dataclass
class PositionManagerSettings:
    max_positions: int = 5
    cycle_interval_s: float = 3600.0
    initial_delay_s: float = 0.0
    quote_asset: str = 'USDT'

    @classmethod
    def from_config(cls, trading: Mapping[str, Any], quote_asset: str = 'USDT') -> 'PositionManagerSettings':
        return cls(
            max_positions=int(trading.get('max_positions', 5)),
            cycle_interval_s=float(trading.get('cycle_interval_s', 3600)),
            initial_delay_s=float(trading.get('initial_delay_s', 0)),
            quote_asset=quote_asset,
        )


class PositionManager:
    """Fixed-period control loop: ratings, signals, exits, then entries.

    All state mutation happens inside ``run_cycle`` (or ``emergency_stop``)
    under one lock, so cycles never overlap and stream prices are only
    applied from inside a cycle.
    """

    def __init__(
        self,
        rating_engine: RatingEngine,
        signal_generator: SignalGenerator,
        allocation_manager: AllocationManager,
        risk_manager: RiskManager,
        execution: ExecutionAdapter,
        market_data: MarketDataService,
        parameters: ParameterSetManager,
        events: Optional[EventBus] = None,
        settings: Optional[PositionManagerSettings] = None,
        price_stream: Optional[PriceStream] = None,
    ):
        self.rating_engine = rating_engine
        self.signal_generator = signal_generator
        self.allocation = allocation_manager
        self.risk = risk_manager
        self.execution = execution
        self.market_data = market_data
        self.parameters = parameters
        self.events = events or EventBus()
        self.settings = settings or PositionManagerSettings()
        self.price_stream = price_stream

        self.positions: Dict[str, Position] = {}
        self.closed_trades: List[ClosedTrade] = []
        self.last_batch: Optional[SignalBatch] = None
        self.last_report: Optional[CycleReport] = None
        self.running = False
        self.halted = False
        self._cycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()

    # Balance and equity

    async def allocatable_balance(self) -> float:
        """Free quote balance plus the capital already spent on open positions."""
        free = await self.execution.get_available_balance()
        committed = sum(
            p.entry_notional for p in self.positions.values()
            if p.state in (PositionState.OPEN, PositionState.CLOSING)
        )
        return free + committed

    async def equity(self) -> float:
        free = await self.execution.get_available_balance()
        return free + sum(p.quantity * p.last_price for p in self.positions.values() if p.quantity > 0)

    # Cycle

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        async with self._cycle_lock:
            now = now or datetime.now(timezone.utc)
            report = CycleReport(timestamp=now)
            if self.halted:
                report.skipped['*'] = 'halted'
                return report
            started = time.monotonic()

            await self._refresh_ratings(now, report)

            batch = self._generate_signals(now)
            self.last_batch = batch
            report.signals = len(batch.signals)
            for result in batch.z_scores.values():
                await self._emit_z_score(result, now)

            for symbol in sorted(self.positions):
                if self.halted:
                    break
                await self._guarded('exit', symbol, report, self._evaluate_exit(self.positions[symbol], batch, now, report))

            buys = sorted(
                (s for s in batch.signals if s.side == BUY),
                key=lambda s: (-s.z_score, s.symbol),
            )
            risk_reported = False
            for signal in buys:
                if self.halted:
                    break
                limit = self.risk.check_entry_allowed(now)
                if limit:
                    if not risk_reported:
                        risk_reported = True
                        logger.warning("Risk limit %s hit; new entries suspended", limit)
                        await self.events.emit(RiskLimitHit(
                            kind=limit,
                            daily_pnl=self.risk.daily_pnl,
                            drawdown=self.risk.drawdown,
                            timestamp=now,
                        ))
                    await self._skip(signal, limit, report, now)
                    continue
                await self._guarded('entry', signal.symbol, report, self._evaluate_entry(signal, now, report))

            strong = sum(1 for s in batch.signals if s.strength >= 1.5)
            await self.events.emit(SignalsChecked(
                total_signals=len(batch.signals),
                strong_signals=strong,
                buy_signals=sum(1 for s in batch.signals if s.side == BUY),
                sell_signals=sum(1 for s in batch.signals if s.side == SELL),
                rated_symbols=len(batch.statistics.ratings_by_symbol),
                timestamp=now,
            ))

            await self._housekeeping(now)
            report.duration_s = time.monotonic() - started
            self.last_report = report
            logger.info(
                "Cycle complete: %s intervals, %s signals, %s entries, %s exits, %s open positions (%.2fs)",
                report.intervals_processed,
                report.signals,
                len(report.entries),
                len(report.exits),
                len(self.positions),
                report.duration_s,
            )
            return report

    async def _refresh_ratings(self, now: datetime, report: CycleReport) -> None:
        snapshot = await self.market_data.fetch_all(now)
        for symbol, error in snapshot.failures.items():
            report.errors[symbol] = error
            await self.events.emit(TradingError(stage='market_data', error=error, symbol=symbol, timestamp=now))

        for symbol, price in self.market_data.latest_prices(snapshot).items():
            self.execution.update_price(symbol, price)
        if self.price_stream is not None:
            for symbol, update in self.price_stream.drain().items():
                self.execution.update_price(symbol, update.price)

        batches = self.market_data.build_observations(snapshot)
        for interval_ts, observations in batches:
            self.rating_engine.process_interval(observations, interval_ts)
            ratings = self._tradable_ratings()
            self.signal_generator.record_interval(ratings, interval_ts, self.active_parameter_sets(sorted(ratings)))
        report.intervals_processed = len(batches)

    def _tradable_ratings(self) -> Dict[str, float]:
        ratings: Dict[str, float] = {}
        for pair in self.market_data.pairs:
            if pair.quote_asset != self.settings.quote_asset:
                continue
            state = self.rating_engine.get_state(pair.base_asset)
            if state is not None:
                ratings[pair.symbol] = state.rating
        return ratings

    def active_parameter_sets(self, symbols: Optional[List[str]] = None) -> Dict[str, TradingParameterSet]:
        configured = self.parameters.all()
        if configured:
            return configured
        return {symbol: self.parameters.default_for(symbol) for symbol in (symbols or [])}

    def _generate_signals(self, now: datetime) -> SignalBatch:
        ratings = self._tradable_ratings()
        parameter_sets = self.active_parameter_sets(sorted(ratings))
        # The newest history entry tracks the live cross-section between rating periods
        return self.signal_generator.generate_signals(ratings, parameter_sets, now, replace_latest=True)

    async def _guarded(self, stage: str, symbol: str, report: CycleReport, step) -> None:
        try:
            await step
        except Exception as exc:
            logger.exception("%s step failed for %s", stage, symbol)
            report.errors[symbol] = f"{stage}: {exc}"
            await self.events.emit(TradingError(stage=stage, error=str(exc), symbol=symbol))

    async def _emit_z_score(self, result: ZScoreResult, now: datetime) -> None:
        await self.events.emit(ZScoreCalculated(
            symbol=result.symbol,
            rating=result.rating,
            raw_z_score=result.raw_z_score,
            moving_average_z_score=result.moving_average_z_score,
            degraded=result.degraded,
            timestamp=now,
        ))

    async def _skip(self, signal: TradingSignal, reason: str, report: CycleReport, now: datetime) -> None:
        report.skipped[signal.symbol] = reason
        logger.debug("Skipping %s %s: %s", signal.side, signal.symbol, reason)
        await self.events.emit(SignalProcessed(
            symbol=signal.symbol,
            side=signal.side,
            z_score=signal.z_score,
            action='skipped',
            reason=reason,
            timestamp=now,
        ))

    # Exits

    async def _evaluate_exit(self, position: Position, batch: SignalBatch, now: datetime, report: CycleReport) -> None:
        if position.state != PositionState.OPEN:
            return
        price = await self.execution.get_current_price(position.symbol)
        position.mark(price)

        z = batch.z_scores.get(position.symbol)
        threshold = position.parameters.z_score_threshold
        if z is not None and z.moving_average_z_score <= -threshold:
            logger.info(
                "Z-score reversal for %s (%.3f <= -%.3f); exiting",
                position.symbol,
                z.moving_average_z_score,
                threshold,
            )
            trade = await self._close_position(position, REVERSAL, now, reversal_z=z.moving_average_z_score)
            report.exits.append(trade)
            return

        check = OCOOrderService.check_oco_condition(price, position.take_profit_price, position.stop_loss_price)
        if check.triggered:
            logger.info("%s hit for %s at %.8f", check.kind, position.symbol, price)
            trade = await self._close_position(position, check.kind, now)
            report.exits.append(trade)

    async def _close_position(self, position: Position, reason: str, now: datetime,
                              reversal_z: Optional[float] = None) -> ClosedTrade:
        symbol = position.symbol
        position.state = PositionState.CLOSING

        bracket_cancelled = False
        bracket: Optional[BracketStatus] = None
        if position.oco_order_id:
            bracket_cancelled = await self.execution.cancel_order(symbol, position.oco_order_id)
            if not bracket_cancelled:
                bracket = await self._confirm_bracket_done(position)
        if reversal_z is not None:
            await self.events.emit(ZScoreReversal(
                symbol=symbol,
                z_score=reversal_z,
                threshold=position.parameters.z_score_threshold,
                bracket_cancelled=bracket_cancelled,
                timestamp=now,
            ))

        try:
            remaining = await self.execution.remaining_quantity(symbol, position.base_asset, position.quantity)
            if bracket is not None:
                remaining = min(remaining, max(position.quantity - bracket.filled_quantity, 0.0))
            fill = None
            if remaining > QTY_EPSILON:
                fill = await self.execution.market_sell(symbol, position.base_asset, remaining)
        except Exception:
            position.state = PositionState.OPEN
            if bracket_cancelled:
                position.oco_order_id = None
            raise

        sold_qty = fill.quantity if fill else 0.0
        proceeds = fill.quote_amount if fill else 0.0
        if bracket is not None:
            proceeds += bracket.filled_quote
            accounted = sold_qty + bracket.filled_quantity
        else:
            bracket_qty = max(position.quantity - sold_qty, 0.0)
            if bracket_qty > QTY_EPSILON:
                # Partially filled before the cancel landed
                proceeds += bracket_qty * self._bracket_fill_price(position)
            accounted = position.quantity
        exit_price = proceeds / accounted if accounted > QTY_EPSILON else position.last_price
        pnl, pnl_percent = OCOOrderService.calculate_profit_loss(position.entry_price, exit_price, position.quantity)

        trade = ClosedTrade(symbol, reason, position.entry_price, exit_price, position.quantity, pnl, pnl_percent, now)
        self._finalize_exit(position, trade, now)

        order_id = fill.order_id if fill else (position.oco_order_id or '')
        await self._emit_trade('SELL', symbol, position.quantity, exit_price, order_id, reason, pnl, now)
        return trade

    async def _confirm_bracket_done(self, position: Position) -> BracketStatus:
        """Exchange view of a bracket that could not be cancelled.

        A bracket that is still resting (or whose state cannot be read) keeps
        the position OPEN with its reservation so the next cycle retries.
        """
        try:
            status = await self.execution.bracket_status(position.symbol, position.oco_order_id)
        except Exception:
            position.state = PositionState.OPEN
            raise
        if status.resting:
            position.state = PositionState.OPEN
            raise ExitDeferred(
                f"Bracket {position.oco_order_id} for {position.symbol} is still resting; exit deferred"
            )
        logger.warning(
            "Bracket %s for %s completed before cancel (%.8f filled)",
            position.oco_order_id,
            position.symbol,
            status.filled_quantity,
        )
        return status

    def _bracket_fill_price(self, position: Position) -> float:
        if position.last_price >= position.take_profit_price:
            return position.take_profit_price
        if position.last_price <= position.stop_loss_price:
            return position.stop_limit_price or position.stop_loss_price
        return position.last_price

    def _finalize_exit(self, position: Position, trade: ClosedTrade, now: datetime) -> None:
        self.allocation.release_funds(position.symbol)
        self.risk.record_realized_pnl(trade.pnl, now)
        self.positions.pop(position.symbol, None)
        self.closed_trades.append(trade)
        logger.info(
            "Closed %s (%s): %.8f @ %.8f -> %.8f, PnL %.2f (%.2f%%)",
            trade.symbol,
            trade.reason,
            trade.quantity,
            trade.entry_price,
            trade.exit_price,
            trade.pnl,
            trade.pnl_percent,
        )

    async def close_position(self, symbol: str, reason: str = MANUAL) -> Optional[ClosedTrade]:
        async with self._cycle_lock:
            position = self.positions.get(symbol)
            if position is None or position.state != PositionState.OPEN:
                return None
            position.mark(await self.execution.get_current_price(symbol))
            return await self._close_position(position, reason, datetime.now(timezone.utc))

    # Entries

    async def _evaluate_entry(self, signal: TradingSignal, now: datetime, report: CycleReport) -> None:
        symbol = signal.symbol
        params = self.active_parameter_sets([symbol]).get(symbol) or self.parameters.get(symbol)

        if self.risk.in_cooldown(symbol, now):
            await self._skip(signal, 'cooldown', report, now)
            return
        if symbol in self.positions:
            await self._skip(signal, 'position_exists', report, now)
            return
        if len(self.positions) >= self.settings.max_positions:
            await self._skip(signal, 'max_positions', report, now)
            return

        reservation = await self.allocation.reserve_funds(symbol, params.allocation_percent, self.allocatable_balance)
        if not reservation.success:
            logger.info("No allocation for %s: %s", symbol, reservation.reason)
            await self._skip(signal, reservation.reason_code or 'allocation', report, now)
            return

        position = Position(
            symbol=symbol,
            base_asset=params.base_asset,
            quote_asset=params.quote_asset,
            parameters=params,
            reservation_amount=reservation.amount,
        )
        self.positions[symbol] = position

        try:
            fill = await self.execution.market_buy(symbol, params.base_asset, reservation.amount)
        except Exception as exc:
            self.positions.pop(symbol, None)
            self.allocation.release_funds(symbol)
            self.risk.set_cooldown(symbol, now)
            logger.error("Entry failed for %s: %s", symbol, exc)
            report.errors[symbol] = f"entry: {exc}"
            await self.events.emit(TradingError(stage='entry', error=str(exc), symbol=symbol, timestamp=now))
            await self._skip(signal, 'entry_failed', report, now)
            return

        prices = OCOOrderService.calculate_oco_prices(fill.price, params.profit_percent, params.stop_loss_percent)
        position.entry_price = fill.price
        position.quantity = fill.quantity
        position.entry_notional = fill.quote_amount
        position.entry_time = now
        position.entry_order_id = fill.order_id
        position.take_profit_price = prices.take_profit_price
        position.stop_loss_price = prices.stop_loss_price
        position.stop_limit_price = prices.stop_limit_price
        position.state = PositionState.OPEN
        position.mark(fill.price)
        self.allocation.update_reservation(symbol, fill.order_id)

        bracket = await self.execution.place_oco(symbol, fill.quantity, prices)
        if bracket is not None:
            position.oco_order_id = bracket.order_list_id
        else:
            logger.warning("No bracket resting for %s; exits rely on cycle price checks", symbol)

        report.entries.append(symbol)
        await self._emit_trade('BUY', symbol, fill.quantity, fill.price, fill.order_id, None, None, now)
        await self.events.emit(SignalProcessed(
            symbol=symbol,
            side=signal.side,
            z_score=signal.z_score,
            action='entered',
            timestamp=now,
        ))

    async def _emit_trade(self, side: str, symbol: str, qty: float, price: float, order_id: str,
                          reason: Optional[str], pnl: Optional[float], now: datetime) -> None:
        event_type = LiveTradeExecuted if self.execution.is_live else PaperTrade
        await self.events.emit(event_type(
            symbol=symbol,
            side=side,
            quantity=qty,
            price=price,
            order_id=order_id,
            reason=reason,
            pnl=pnl,
            timestamp=now,
        ))

    async def _housekeeping(self, now: datetime) -> None:
        max_age = timedelta(seconds=max(self.settings.cycle_interval_s * 2, 60))
        self.allocation.cleanup_stale_reservations(max_age, now)
        try:
            self.risk.update_equity(await self.equity())
        except Exception as exc:
            logger.warning("Equity update failed: %s", exc)

    # Emergency stop

    async def emergency_stop(self, reason: str = 'manual') -> EmergencyStop:
        self.halted = True
        async with self._cycle_lock:
            cancelled = 0
            symbols = sorted(self.positions)
            for symbol in symbols:
                position = self.positions[symbol]
                if not position.oco_order_id:
                    continue
                try:
                    if await self.execution.cancel_order(symbol, position.oco_order_id):
                        cancelled += 1
                except Exception as exc:
                    logger.error("Emergency cancel failed for %s: %s", symbol, exc)
            try:
                cancelled += await self.execution.cancel_all_open_orders(self.market_data.symbols)
            except Exception as exc:
                logger.error("Emergency cancel-all failed: %s", exc)

            cleared_reservations = self.allocation.clear_all_reservations()
            cleared_positions = len(self.positions)
            self.positions.clear()
            event = EmergencyStop(
                reason=reason,
                cancelled_orders=cancelled,
                cleared_positions=cleared_positions,
                cleared_reservations=cleared_reservations,
            )
            await self.events.emit(event)
        self.stop()
        return event

    # Loop

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._stop_event.clear()
        await self.events.emit(Started(live=self.execution.is_live))
        logger.info(
            "Control loop started (%s mode, every %ss)",
            'live' if self.execution.is_live else 'paper',
            self.settings.cycle_interval_s,
        )
        await self._sleep(self.settings.initial_delay_s)
        while self.running and not self.halted:
            try:
                await self.run_cycle()
            except Exception as exc:
                logger.exception("Cycle failed")
                await self.events.emit(TradingError(stage='cycle', error=str(exc)))
            # Next cycle is scheduled only after this one completed
            await self._sleep(self.settings.cycle_interval_s)
        self.running = False
        await self.events.emit(Stopped(reason='emergency_stop' if self.halted else 'shutdown'))

    async def _sleep(self, seconds: float) -> None:
        if seconds <= 0 or not self.running:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        self.running = False
        self._stop_event.set()

    # Status

    def get_z_scores(self) -> Dict[str, Dict[str, Any]]:
        if self.last_batch is None:
            return {}
        return {symbol: z.to_dict() for symbol, z in sorted(self.last_batch.z_scores.items())}

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'halted': self.halted,
            'live': self.execution.is_live,
            'open_positions': len(self.positions),
            'max_positions': self.settings.max_positions,
            'positions': [self.positions[s].to_dict() for s in sorted(self.positions)],
            'allocation': self.allocation.get_allocation_status(),
            'risk': self.risk.get_status(),
            'closed_trades': len(self.closed_trades),
            'last_cycle': self.last_report.to_dict() if self.last_report else None,
        }
