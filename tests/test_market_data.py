import asyncio
import json
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, '.')

from ingest.market_data import MarketDataService, build_universe
from ingest.price_stream import PriceStream, PriceUpdate, parse_mini_ticker
from strategy.transports.binance import BinanceTransport


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
HOUR_MS = 3600 * 1000


def _ms(dt):
    return int(dt.timestamp() * 1000)


def _row(open_time, open_, close, volume=100.0, taker_buy=60.0):
    start = _ms(open_time)
    return [start, str(open_), str(max(open_, close)), str(min(open_, close)), str(close), str(volume),
            start + HOUR_MS - 1, str(volume * close), 10, str(taker_buy), str(taker_buy * close), '0']


class FakeREST:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def get(self, path, params=None, signed=False):
        self.calls.append((path, params, signed))
        if isinstance(self.responses, dict):
            value = self.responses[path]
            if isinstance(value, dict) and params and params.get('symbol') in value:
                value = value[params['symbol']]
            if isinstance(value, Exception):
                raise value
            return value
        return self.responses

    async def post(self, path, params=None, signed=False):
        self.calls.append((path, params, signed))
        return self.responses[path]

    async def delete(self, path, params=None, signed=False):
        self.calls.append((path, params, signed))
        return {}

    async def close(self):
        return None


def test_build_universe_with_cross_pairs():
    pairs = build_universe({'base_assets': ['ETH', 'BTC'], 'extra_pairs': ['ETH/BTC']}, 'USDT')
    assert [p.symbol for p in pairs] == ['BTCUSDT', 'ETHBTC', 'ETHUSDT']
    cross = [p for p in pairs if p.symbol == 'ETHBTC'][0]
    assert (cross.base_asset, cross.quote_asset) == ('ETH', 'BTC')


def test_klines_become_interval_batches():
    fetched_at = T0 + timedelta(hours=2, minutes=30)
    klines = {
        'BTCUSDT': [_row(T0, 100, 105), _row(T0 + timedelta(hours=1), 105, 104), _row(T0 + timedelta(hours=2), 104, 110)],
        'ETHUSDT': [_row(T0, 10, 10), _row(T0 + timedelta(hours=1), 10, 11)],
    }
    rest = FakeREST({'/api/v3/klines': klines})
    pairs = build_universe({'base_assets': ['BTC', 'ETH']}, 'USDT')
    service = MarketDataService(BinanceTransport(rest), pairs, interval='1h', lookback_bars=3)

    snapshot = asyncio.run(service.fetch_all(fetched_at))
    assert snapshot.failures == {}
    assert service.latest_prices(snapshot) == {'BTCUSDT': 110.0, 'ETHUSDT': 11.0}

    batches = service.build_observations(snapshot)
    # The bar opened at 02:00 is still forming and must be ignored
    assert [ts for ts, _ in batches] == [T0, T0 + timedelta(hours=1)]
    first = batches[0][1]
    assert [obs.base_asset for obs in first] == ['BTC', 'ETH']
    assert first[0].price_change == pytest.approx(0.05)
    assert first[0].volume_metrics.taker_buy_volume == 60.0

    # Already processed intervals are not replayed
    assert service.build_observations(snapshot) == []


def test_fetch_failures_are_isolated():
    rest = FakeREST({'/api/v3/klines': {'BTCUSDT': [_row(T0, 100, 101)], 'ETHUSDT': RuntimeError('rate limited')}})
    pairs = build_universe({'base_assets': ['BTC', 'ETH']}, 'USDT')
    service = MarketDataService(BinanceTransport(rest), pairs)

    snapshot = asyncio.run(service.fetch_all(T0 + timedelta(hours=2)))
    assert list(snapshot.klines) == ['BTCUSDT']
    assert snapshot.failures == {'ETHUSDT': 'rate limited'}

    assert [ts for ts, _ in service.build_observations(snapshot)] == [T0]

    # ETH recovers: its missed bar is still rated, BTC's is not replayed
    rest.responses['/api/v3/klines'] = {
        'BTCUSDT': [_row(T0, 100, 101), _row(T0 + timedelta(hours=1), 101, 102)],
        'ETHUSDT': [_row(T0, 10, 11), _row(T0 + timedelta(hours=1), 11, 12)],
    }
    snapshot = asyncio.run(service.fetch_all(T0 + timedelta(hours=2)))
    batches = service.build_observations(snapshot)
    assert [ts for ts, _ in batches] == [T0, T0 + timedelta(hours=1)]
    assert [o.base_asset for o in batches[0][1]] == ['ETH']
    assert [o.base_asset for o in batches[1][1]] == ['BTC', 'ETH']
    assert service.last_processed == {'BTCUSDT': T0 + timedelta(hours=1), 'ETHUSDT': T0 + timedelta(hours=1)}


def test_transport_parses_account_and_symbol_filters():
    rest = FakeREST({
        '/api/v3/account': {'balances': [{'asset': 'USDT', 'free': '1250.5', 'locked': '10'}]},
        '/api/v3/exchangeInfo': {'symbols': [{
            'symbol': 'BTCUSDT',
            'baseAsset': 'BTC',
            'quoteAsset': 'USDT',
            'filters': [
                {'filterType': 'PRICE_FILTER', 'tickSize': '0.01'},
                {'filterType': 'LOT_SIZE', 'stepSize': '0.00001'},
                {'filterType': 'NOTIONAL', 'minNotional': '5'},
            ],
        }]},
    })
    transport = BinanceTransport(rest)

    assert asyncio.run(transport.get_free_balance('USDT')) == 1250.5
    assert asyncio.run(transport.get_free_balance('BTC')) == 0.0
    info = asyncio.run(transport.fetch_symbol_info('BTCUSDT'))
    assert info.min_notional == 5.0
    assert info.round_quantity(0.123456) == pytest.approx(0.12345)
    assert info.round_price(97.9049) == pytest.approx(97.9)
    asyncio.run(transport.fetch_symbol_info('BTCUSDT'))
    assert sum(1 for path, _, _ in rest.calls if path == '/api/v3/exchangeInfo') == 1


def test_transport_market_order_fill_and_oco():
    rest = FakeREST({
        '/api/v3/order': {'symbol': 'BTCUSDT', 'side': 'BUY', 'type': 'MARKET', 'orderId': 42,
                          'status': 'FILLED', 'executedQty': '0.02', 'cummulativeQuoteQty': '1000'},
        '/api/v3/order/oco': {'orderListId': 7, 'orderReports': [
            {'symbol': 'BTCUSDT', 'orderId': 43, 'side': 'SELL', 'type': 'LIMIT_MAKER', 'origQty': '0.02'},
            {'symbol': 'BTCUSDT', 'orderId': 44, 'side': 'SELL', 'type': 'STOP_LOSS_LIMIT', 'origQty': '0.02'},
        ]},
    })
    transport = BinanceTransport(rest)

    fill = asyncio.run(transport.market_order('BTCUSDT', 'BUY', quote_order_qty=1000))
    assert fill.quantity == 0.02
    assert fill.price == pytest.approx(50000.0)
    assert fill.order_id == '42'

    ticket = asyncio.run(transport.place_oco_order('BTCUSDT', 'SELL', 0.02, 52500.0, 49000.0, 48950.0))
    assert ticket.order_list_id == '7'
    assert ticket.order_ids == ['43', '44']
    _, params, signed = rest.calls[-1]
    assert signed
    assert params['stopLimitTimeInForce'] == 'GTC'
    assert params['price'] == '52500'


class OrderListREST(FakeREST):
    async def get(self, path, params=None, signed=False):
        self.calls.append((path, params, signed))
        if path == '/api/v3/orderList':
            return self.responses[path]
        return self.responses[path][params['orderId']]


def test_transport_order_list_status():
    executing = OrderListREST({'/api/v3/orderList': {'orderListId': 7, 'listOrderStatus': 'EXECUTING'}})
    status = asyncio.run(BinanceTransport(executing).get_order_list_status('BTCUSDT', 7))
    assert status.resting
    assert len(executing.calls) == 1

    done = OrderListREST({
        '/api/v3/orderList': {'orderListId': 7, 'listOrderStatus': 'ALL_DONE', 'orders': [
            {'symbol': 'BTCUSDT', 'orderId': 43}, {'symbol': 'BTCUSDT', 'orderId': 44},
        ]},
        '/api/v3/order': {
            43: {'orderId': 43, 'status': 'FILLED', 'executedQty': '0.02', 'cummulativeQuoteQty': '1050'},
            44: {'orderId': 44, 'status': 'EXPIRED', 'executedQty': '0', 'cummulativeQuoteQty': '0'},
        },
    })
    status = asyncio.run(BinanceTransport(done).get_order_list_status('BTCUSDT', 7))
    assert not status.resting
    assert status.filled_quantity == pytest.approx(0.02)
    assert status.average_price == pytest.approx(52500.0)
    assert done.calls[-1][1] == {'symbol': 'BTCUSDT', 'orderId': 44}


def test_mini_ticker_parsing_and_drain():
    raw = json.dumps({'stream': 'btcusdt@miniTicker', 'data': {
        'e': '24hrMiniTicker', 'E': _ms(T0), 's': 'BTCUSDT', 'c': '50123.4'}})
    update = parse_mini_ticker(raw)
    assert update.symbol == 'BTCUSDT'
    assert update.price == 50123.4
    assert parse_mini_ticker(json.dumps({'e': 'trade'})) is None
    assert parse_mini_ticker('{"e": "24hrMiniTicker", "c": ') is None
    assert parse_mini_ticker('not json') is None
    assert parse_mini_ticker(json.dumps({'e': '24hrMiniTicker', 's': 'BTCUSDT', 'c': '1', 'E': 'soon'})) is None

    async def scenario():
        stream = PriceStream(['ETHUSDT', 'BTCUSDT'], queue_size=2)
        stream.publish(PriceUpdate('BTCUSDT', 1.0, T0))
        stream.publish(PriceUpdate('BTCUSDT', 2.0, T0))
        stream.publish(PriceUpdate('ETHUSDT', 3.0, T0))
        return stream, stream.drain()

    stream, latest = asyncio.run(scenario())
    assert stream.url.endswith('?streams=btcusdt@miniTicker/ethusdt@miniTicker')
    assert stream.dropped == 1
    assert {s: u.price for s, u in latest.items()} == {'BTCUSDT': 2.0, 'ETHUSDT': 3.0}
    assert stream.drain() == {}
