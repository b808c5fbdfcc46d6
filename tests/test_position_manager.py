import asyncio
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, '.')

from ingest.market_data import MarketDataService, PairSpec
from orchestration.events import ALL_EVENTS, EventBus
from rating.engine import RatingEngine
from risk.allocation import AllocationManager
from risk.risk_manager import RiskManager
from strategy.execution import LiveExecutionAdapter, PaperExecutionAdapter
from strategy.execution_types import BracketStatus, Fill
from strategy.oco import TAKE_PROFIT
from strategy.parameters import ParameterSetManager, TradingParameterSet
from strategy.position_manager import REVERSAL, ExitDeferred, PositionManager, PositionManagerSettings, PositionState
from strategy.signal_generator import SignalGenerator
from strategy.simulators.paper import PaperTradingSimulator
from strategy.transports.binance import BinanceAPIError, Kline


BASES = ['ADA', 'AVAX', 'BNB', 'BTC', 'DOGE', 'DOT', 'ETH', 'LINK', 'SOL', 'XRP']


class FakeTransport:
    def __init__(self, failing=(), klines=None):
        self.failing = set(failing)
        self.klines = klines or {}

    async def get_klines(self, symbol, interval, limit=50):
        if symbol in self.failing:
            raise RuntimeError(f"timeout fetching {symbol}")
        return list(self.klines.get(symbol, []))

    async def close(self):
        return None


class StuckBracketTransport:
    """Live transport whose order-list cancel fails with a 503."""

    def __init__(self, resting=True, filled=0.0, filled_quote=0.0, free=0.0):
        self.resting = resting
        self.filled = filled
        self.filled_quote = filled_quote
        self.free = free
        self.sells = []

    async def get_current_price(self, symbol):
        return 97.0

    async def get_free_balance(self, asset):
        return 10000.0 if asset == "USDT" else self.free

    async def fetch_symbol_info(self, symbol):
        return None

    async def cancel_order_list(self, symbol, order_list_id):
        raise BinanceAPIError(503, None, "Service Unavailable", "")

    async def get_order_list_status(self, symbol, order_list_id):
        return BracketStatus(str(order_list_id), self.resting, self.filled, self.filled_quote)

    async def market_order(self, symbol, side, quantity=None, quote_order_qty=None):
        self.sells.append(quantity)
        return Fill(symbol, side, quantity, 97.0, "sell-1")

    async def close(self):
        return None


class FlakyPaperAdapter(PaperExecutionAdapter):
    def __init__(self, failing_buys=(), **kwargs):
        super().__init__(**kwargs)
        self.failing_buys = set(failing_buys)

    async def market_buy(self, symbol, base_asset, quote_amount):
        if symbol in self.failing_buys:
            raise RuntimeError(f"order rejected for {symbol}")
        return await super().market_buy(symbol, base_asset, quote_amount)


def _params(symbol, threshold=2.5, period=1):
    return TradingParameterSet(
        symbol=symbol,
        base_asset=symbol[:-4],
        quote_asset='USDT',
        z_score_threshold=threshold,
        moving_averages=period,
        profit_percent=5.0,
        stop_loss_percent=2.0,
        allocation_percent=10.0,
    )


def build_manager(symbols=('SOLUSDT',), threshold=2.5, failing_buys=(), failing_fetch=(), max_positions=5,
                  risk=None, klines=None, period=1):
    pairs = [PairSpec(f"{base}USDT", base, 'USDT') for base in BASES]
    market_data = MarketDataService(FakeTransport(failing_fetch, klines), pairs)
    parameters = ParameterSetManager()
    parameters.set_parameter_sets([_params(symbol, threshold, period) for symbol in symbols])
    execution = FlakyPaperAdapter(
        failing_buys=failing_buys,
        simulator=PaperTradingSimulator('USDT', 10000.0),
    )
    for pair in pairs:
        execution.update_price(pair.symbol, 100.0)

    bus = EventBus()
    events = []
    bus.subscribe(ALL_EVENTS, events.append)
    manager = PositionManager(
        RatingEngine(),
        SignalGenerator(),
        AllocationManager(),
        risk or RiskManager(cooldown_period_min=60),
        execution,
        market_data,
        parameters,
        events=bus,
        settings=PositionManagerSettings(max_positions=max_positions, cycle_interval_s=3600),
    )
    return manager, events


def set_ratings(manager, **overrides):
    for base in BASES:
        manager.rating_engine.ensure_asset_exists(base).rating = overrides.get(base, 1500.0)


def names(events):
    return [event.name for event in events]


def _now():
    return datetime.now(timezone.utc)


def test_strong_signal_opens_position_with_bracket():
    manager, events = build_manager()
    set_ratings(manager, SOL=1800.0)

    report = asyncio.run(manager.run_cycle(_now()))

    assert report.entries == ['SOLUSDT']
    position = manager.positions['SOLUSDT']
    assert position.state == PositionState.OPEN
    assert position.quantity == pytest.approx(10.0)
    assert position.take_profit_price == pytest.approx(105.0)
    assert position.stop_loss_price == pytest.approx(98.0)
    assert position.oco_order_id is not None
    assert len(manager.execution.simulator.open_orders) == 2

    reservation = manager.allocation.get_reservation('SOLUSDT')
    assert reservation.reserved_amount == pytest.approx(1000.0)
    assert reservation.order_id == position.entry_order_id
    assert asyncio.run(manager.allocatable_balance()) == pytest.approx(10000.0)

    assert 'paperTrade' in names(events)
    assert names(events)[-1] == 'signalsChecked'


def test_reversal_exits_and_cancels_bracket():
    manager, events = build_manager()
    set_ratings(manager, SOL=1800.0)
    asyncio.run(manager.run_cycle(_now()))

    set_ratings(manager, SOL=1200.0)
    manager.execution.update_price('SOLUSDT', 101.0)
    report = asyncio.run(manager.run_cycle(_now()))

    assert [t.reason for t in report.exits] == [REVERSAL]
    assert report.exits[0].pnl == pytest.approx(10.0)
    assert 'SOLUSDT' not in manager.positions
    assert not manager.allocation.has_reservation('SOLUSDT')
    assert manager.execution.simulator.open_orders == {}
    reversal = [e for e in events if e.name == 'zScoreReversal'][0]
    assert reversal.bracket_cancelled
    assert manager.risk.total_realized_pnl == pytest.approx(10.0)


def test_take_profit_exit_releases_capital():
    manager, events = build_manager()
    set_ratings(manager, SOL=1800.0)
    asyncio.run(manager.run_cycle(_now()))

    set_ratings(manager)
    manager.execution.update_price('SOLUSDT', 106.0)
    report = asyncio.run(manager.run_cycle(_now()))

    assert [t.reason for t in report.exits] == [TAKE_PROFIT]
    assert report.exits[0].pnl == pytest.approx(60.0)
    assert manager.positions == {}
    assert manager.execution.simulator.balance == pytest.approx(10060.0)
    assert manager.allocation.total_reserved == 0.0


def test_exits_are_evaluated_before_entries():
    manager, events = build_manager(symbols=('SOLUSDT', 'XRPUSDT'), threshold=2.0, max_positions=1)
    set_ratings(manager, SOL=1800.0)
    asyncio.run(manager.run_cycle(_now()))
    assert list(manager.positions) == ['SOLUSDT']

    # SOL reverses while XRP becomes the outlier; the freed slot is reused in the same cycle
    set_ratings(manager, SOL=1300.0, XRP=1700.0)
    report = asyncio.run(manager.run_cycle(_now()))
    assert [t.symbol for t in report.exits] == ['SOLUSDT']
    assert report.entries == ['XRPUSDT']


def test_failed_entry_releases_funds_and_cools_down():
    manager, events = build_manager(failing_buys=('SOLUSDT',))
    set_ratings(manager, SOL=1800.0)
    now = _now()

    report = asyncio.run(manager.run_cycle(now))
    assert report.entries == []
    assert 'SOLUSDT' in report.errors
    assert manager.positions == {}
    assert not manager.allocation.has_reservation('SOLUSDT')
    assert manager.risk.in_cooldown('SOLUSDT', now)
    assert 'tradingError' in names(events)

    report = asyncio.run(manager.run_cycle(now))
    assert report.skipped['SOLUSDT'] == 'cooldown'


def test_one_symbol_failure_does_not_block_others():
    manager, events = build_manager(symbols=('ADAUSDT', 'SOLUSDT'), threshold=1.5, failing_buys=('ADAUSDT',))
    set_ratings(manager, ADA=1800.0, SOL=1800.0)

    report = asyncio.run(manager.run_cycle(_now()))
    assert report.entries == ['SOLUSDT']
    assert 'ADAUSDT' in report.errors


def test_market_data_failure_is_reported_and_cycle_continues():
    manager, events = build_manager(failing_fetch=('BTCUSDT',))
    set_ratings(manager, SOL=1800.0)

    report = asyncio.run(manager.run_cycle(_now()))
    assert 'BTCUSDT' in report.errors
    assert report.entries == ['SOLUSDT']
    errors = [e for e in events if e.name == 'tradingError']
    assert errors[0].stage == 'market_data'


def test_max_positions_limits_entries():
    manager, events = build_manager(symbols=('ADAUSDT', 'SOLUSDT'), threshold=1.5, max_positions=1)
    set_ratings(manager, ADA=1800.0, SOL=1800.0)

    report = asyncio.run(manager.run_cycle(_now()))
    assert report.entries == ['ADAUSDT']
    assert report.skipped['SOLUSDT'] == 'max_positions'


def test_risk_limit_suspends_entries():
    risk = RiskManager(max_daily_loss=100.0)
    manager, events = build_manager(risk=risk)
    now = _now()
    risk.record_realized_pnl(-150.0, now)
    set_ratings(manager, SOL=1800.0)

    report = asyncio.run(manager.run_cycle(now))
    assert report.entries == []
    assert report.skipped['SOLUSDT'] == 'dailyLoss'
    assert names(events).count('riskLimitHit') == 1


def test_emergency_stop_clears_state_and_halts():
    manager, events = build_manager()
    set_ratings(manager, SOL=1800.0)
    asyncio.run(manager.run_cycle(_now()))

    stop = asyncio.run(manager.emergency_stop('test'))
    assert stop.cancelled_orders == 1
    assert stop.cleared_positions == 1
    assert stop.cleared_reservations == 1
    assert manager.positions == {}
    assert manager.allocation.total_reserved == 0.0
    assert manager.halted

    report = asyncio.run(manager.run_cycle(_now()))
    assert report.skipped == {'*': 'halted'}
    assert 'emergencyStop' in names(events)


def test_manual_close():
    manager, events = build_manager()
    set_ratings(manager, SOL=1800.0)
    asyncio.run(manager.run_cycle(_now()))
    manager.execution.update_price('SOLUSDT', 99.0)

    trade = asyncio.run(manager.close_position('SOLUSDT'))
    assert trade.reason == 'MANUAL'
    assert trade.pnl == pytest.approx(-10.0)
    assert asyncio.run(manager.close_position('SOLUSDT')) is None


def test_defaults_apply_when_no_parameter_sets_loaded():
    manager, events = build_manager(symbols=())
    manager.parameters.defaults = {'z_score_threshold': 2.5, 'moving_averages': 1}
    set_ratings(manager, SOL=1800.0)

    report = asyncio.run(manager.run_cycle(_now()))
    assert report.entries == ['SOLUSDT']
    assert len(manager.get_z_scores()) == len(BASES)


def test_status_snapshot():
    manager, events = build_manager()
    set_ratings(manager, SOL=1800.0)
    asyncio.run(manager.run_cycle(_now()))

    status = manager.get_status()
    assert status['open_positions'] == 1
    assert status['positions'][0]['symbol'] == 'SOLUSDT'
    assert status['last_cycle']['entries'] == ['SOLUSDT']
    assert not status['live']


def _open_live_position(transport):
    manager, events = build_manager()
    set_ratings(manager, SOL=1800.0)
    asyncio.run(manager.run_cycle(_now()))
    manager.execution = LiveExecutionAdapter(transport, 'USDT')
    manager.positions['SOLUSDT'].oco_order_id = '17'
    set_ratings(manager)
    return manager, events


def test_failed_cancel_with_resting_bracket_keeps_position():
    transport = StuckBracketTransport(resting=True)
    manager, events = _open_live_position(transport)

    with pytest.raises(ExitDeferred):
        asyncio.run(manager.close_position('SOLUSDT'))
    position = manager.positions['SOLUSDT']
    assert position.state == PositionState.OPEN
    assert position.oco_order_id == '17'
    assert manager.allocation.has_reservation('SOLUSDT')
    assert transport.sells == []
    assert manager.closed_trades == []

    # The stop-loss check in the cycle retries and defers again
    report = asyncio.run(manager.run_cycle(_now()))
    assert report.exits == []
    assert report.errors['SOLUSDT'].startswith('exit')
    assert manager.positions['SOLUSDT'].state == PositionState.OPEN


def test_failed_cancel_with_filled_bracket_books_exchange_fill():
    transport = StuckBracketTransport(resting=False, filled=10.0, filled_quote=979.0)
    manager, events = _open_live_position(transport)

    trade = asyncio.run(manager.close_position('SOLUSDT'))
    assert trade.exit_price == pytest.approx(97.9)
    assert trade.pnl == pytest.approx(-21.0)
    assert transport.sells == []
    assert 'SOLUSDT' not in manager.positions
    assert not manager.allocation.has_reservation('SOLUSDT')


def test_failed_cancel_with_partial_bracket_sells_the_rest():
    transport = StuckBracketTransport(resting=False, filled=4.0, filled_quote=420.0, free=6.0)
    manager, events = _open_live_position(transport)

    trade = asyncio.run(manager.close_position('SOLUSDT'))
    assert transport.sells == [pytest.approx(6.0)]
    assert trade.exit_price == pytest.approx((420.0 + 6.0 * 97.0) / 10.0)
    assert 'SOLUSDT' not in manager.positions


def _hourly_bars(count, now):
    start = now.replace(minute=0, second=0, microsecond=0) - timedelta(hours=count)
    bars = []
    for i in range(count):
        open_time = start + timedelta(hours=i)
        close_time = open_time + timedelta(hours=1) - timedelta(milliseconds=1)
        bars.append(Kline(open_time, 100.0, 101.0, 99.0, 100.5, 10.0, close_time, 1005.0, 5, 6.0))
    return bars


def test_lookback_bars_warm_up_z_score_history():
    now = datetime(2024, 1, 2, 12, 30, tzinfo=timezone.utc)
    klines = {f"{base}USDT": _hourly_bars(20, now) for base in BASES}
    manager, events = build_manager(klines=klines, period=10)

    report = asyncio.run(manager.run_cycle(now))
    assert report.intervals_processed == 20
    z = manager.get_z_scores()['SOLUSDT']
    assert z['history_length'] == 20
    assert not z['degraded']

    # No new closed bar: history stays one entry per rating period
    report = asyncio.run(manager.run_cycle(now + timedelta(minutes=10)))
    assert report.intervals_processed == 0
    assert manager.signal_generator.history_length('SOLUSDT') == 20
