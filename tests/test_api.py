import asyncio
import sys

from fastapi.testclient import TestClient

sys.path.insert(0, '.')

import api.fastapi_server as server
from main import TradingSystem


CONFIG = {
    'exchange': {'quote_asset': 'USDT', 'min_notional': 10.0},
    'universe': {'base_assets': ['BTC', 'ETH', 'SOL'], 'interval': '1h', 'lookback_bars': 5},
    'trading': {
        'enable_live_trading': False,
        'paper_initial_balance': 5000.0,
        'max_positions': 2,
        'defaults': {'z_score_threshold': 1.2, 'moving_averages': 1},
    },
    'risk': {'max_daily_loss': 100.0},
    'stream': {'enabled': False},
    'monitoring': {},
}


class FakeTransport:
    async def get_klines(self, symbol, interval, limit=50):
        return []

    async def close(self):
        return None


def _system():
    system = TradingSystem(CONFIG, transport=FakeTransport())
    for base, rating in (('BTC', 1700.0), ('ETH', 1500.0), ('SOL', 1300.0)):
        system.rating_engine.ensure_asset_exists(base).rating = rating
        system.execution.update_price(f"{base}USDT", 100.0)
    return system


def test_system_wires_config_sections():
    system = _system()
    assert not system.live
    assert [pair.symbol for pair in system.pairs] == ['BTCUSDT', 'ETHUSDT', 'SOLUSDT']
    assert system.price_stream is None
    assert system.position_manager.settings.max_positions == 2
    assert system.risk_manager.max_daily_loss == 100.0

    report = asyncio.run(system.run_cycle())
    assert report.entries == ['BTCUSDT']
    assert system.recorder.counts['paperTrade'] == 1


def test_endpoints_require_system():
    server.trading_system = None
    client = TestClient(server.app)
    assert client.get('/api/positions').status_code == 503
    assert client.get('/health').json()['system_running'] is False


def test_endpoints_report_state():
    system = _system()
    asyncio.run(system.run_cycle())
    server.trading_system = system
    client = TestClient(server.app)
    try:
        positions = client.get('/api/positions').json()
        assert positions['count'] == 1
        assert positions['positions'][0]['symbol'] == 'BTCUSDT'

        allocation = client.get('/api/allocation').json()
        assert allocation['total_reserved'] == 500.0

        zscores = client.get('/api/zscores').json()
        assert zscores['count'] == 3

        ratings = client.get('/api/ratings').json()
        assert {r['symbol'] for r in ratings['ratings']} == {'BTC', 'ETH', 'SOL'}

        events = client.get('/api/events', params={'name': 'paperTrade'}).json()
        assert len(events['events']) == 1

        stop = client.post('/api/emergency-stop').json()
        assert stop['cleared_positions'] == 1
        assert client.get('/health').json()['halted'] is True
    finally:
        server.trading_system = None
