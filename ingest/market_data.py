import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from rating.engine import Observation
from strategy.transports.binance import BinanceTransport, Kline


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PairSpec:
    symbol: str
    base_asset: str
    quote_asset: str


@dataclass
class MarketSnapshot:
    fetched_at: datetime
    klines: Dict[str, List[Kline]] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    def latest_close(self, symbol: str) -> Optional[float]:
        bars = self.klines.get(symbol)
        return bars[-1].close if bars else None


def build_universe(section: Mapping[str, Any], quote_asset: str) -> List[PairSpec]:
    """Every base asset against the quote asset, plus configured cross pairs."""
    pairs: Dict[str, PairSpec] = {}
    for base in section.get('base_assets') or []:
        symbol = f"{base}{quote_asset}"
        pairs[symbol] = PairSpec(symbol, base, quote_asset)
    for extra in section.get('extra_pairs') or []:
        if isinstance(extra, Mapping):
            pair = PairSpec(extra['symbol'], extra['base'], extra['quote'])
        else:
            base, quote = str(extra).split('/', 1)
            pair = PairSpec(f"{base}{quote}", base, quote)
        pairs[pair.symbol] = pair
    return [pairs[symbol] for symbol in sorted(pairs)]


class MarketDataService:
    """Fetches klines for the monitored pairs and turns closed bars into observations."""

    def __init__(self, transport: BinanceTransport, pairs: Sequence[PairSpec], interval: str = '1h',
                 lookback_bars: int = 50):
        self.transport = transport
        self.pairs = list(pairs)
        self.interval = interval
        self.lookback_bars = int(lookback_bars)
        self.last_processed: Dict[str, datetime] = {}

    @property
    def symbols(self) -> List[str]:
        return [pair.symbol for pair in self.pairs]

    async def fetch_all(self, now: Optional[datetime] = None) -> MarketSnapshot:
        now = now or datetime.now(timezone.utc)
        results = await asyncio.gather(
            *(self.transport.get_klines(pair.symbol, self.interval, limit=self.lookback_bars) for pair in self.pairs),
            return_exceptions=True,
        )
        snapshot = MarketSnapshot(fetched_at=now)
        # Merge by symbol once every request has returned
        for pair, result in sorted(zip(self.pairs, results), key=lambda item: item[0].symbol):
            if isinstance(result, BaseException):
                snapshot.failures[pair.symbol] = str(result) or type(result).__name__
                logger.warning("Kline fetch failed for %s: %s", pair.symbol, result)
                continue
            snapshot.klines[pair.symbol] = list(result)
        return snapshot

    def build_observations(self, snapshot: MarketSnapshot) -> List[Tuple[datetime, List[Observation]]]:
        """Group unprocessed closed bars into per-interval observation batches, oldest first."""
        by_interval: Dict[datetime, List[Observation]] = {}
        latest: Dict[str, datetime] = {}
        for pair in self.pairs:
            for bar in snapshot.klines.get(pair.symbol, ()):
                if bar.close_time >= snapshot.fetched_at:
                    continue
                seen = self.last_processed.get(pair.symbol)
                if seen is not None and bar.open_time <= seen:
                    continue
                obs = Observation.from_kline(
                    pair.base_asset,
                    pair.quote_asset,
                    bar.open,
                    bar.close,
                    bar.open_time,
                    volume=bar.volume,
                    taker_buy_volume=bar.taker_buy_volume,
                )
                by_interval.setdefault(bar.open_time, []).append(obs)
                latest[pair.symbol] = bar.open_time

        batches = []
        for ts in sorted(by_interval):
            observations = sorted(by_interval[ts], key=lambda o: (o.base_asset, o.quote_asset))
            batches.append((ts, observations))
        # Tracked per pair so a pair whose fetch failed catches up next cycle
        self.last_processed.update(latest)
        return batches

    def latest_prices(self, snapshot: MarketSnapshot) -> Dict[str, float]:
        prices = {}
        for symbol in snapshot.klines:
            close = snapshot.latest_close(symbol)
            if close:
                prices[symbol] = close
        return prices
