import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, List, Mapping, Optional

import numpy as np

from strategy.parameters import TradingParameterSet


logger = logging.getLogger(__name__)

BUY = 'BUY'
SELL = 'SELL'


@dataclass(frozen=True)
class ZScoreHistoryEntry:
    timestamp: datetime
    raw_z_score: float
    rating: float


@dataclass(frozen=True)
class CrossSectionalSnapshot:
    timestamp: datetime
    ratings_by_symbol: Dict[str, float]
    mean: float
    stddev: float


@dataclass
class ZScoreResult:
    symbol: str
    rating: float
    raw_z_score: float
    moving_average_z_score: float
    history_length: int
    degraded: bool = False

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'rating': self.rating,
            'raw_z_score': self.raw_z_score,
            'moving_average_z_score': self.moving_average_z_score,
            'history_length': self.history_length,
            'degraded': self.degraded,
        }


@dataclass
class TradingSignal:
    symbol: str
    side: str
    z_score: float
    threshold: float
    rating: float
    timestamp: datetime

    @property
    def strength(self) -> float:
        return abs(self.z_score) / self.threshold if self.threshold else 0.0

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'side': self.side,
            'z_score': self.z_score,
            'threshold': self.threshold,
            'rating': self.rating,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class SignalBatch:
    signals: List[TradingSignal]
    z_scores: Dict[str, ZScoreResult]
    statistics: CrossSectionalSnapshot
    degraded_symbols: List[str] = field(default_factory=list)

    def signal_for(self, symbol: str) -> Optional[TradingSignal]:
        for signal in self.signals:
            if signal.symbol == symbol:
                return signal
        return None


class SignalGenerator:
    """Turns a cross-section of ratings into z-scores and threshold signals.

    Each completed rating period adds one raw z-score per rated symbol to
    that symbol's bounded history (``record_interval``, or every
    ``generate_signals`` call by default). The signal is taken on the
    moving average of the last ``movingAverages`` entries.
    """

    def __init__(self, history_slack: int = 10, default_period: int = 10):
        self.history_slack = int(history_slack)
        self.default_period = int(default_period)
        self._capacity = self.default_period + self.history_slack
        self._history: Dict[str, Deque[ZScoreHistoryEntry]] = {}
        self.last_snapshot: Optional[CrossSectionalSnapshot] = None

    @property
    def history_capacity(self) -> int:
        return self._capacity

    def _resize(self, parameter_sets: Mapping[str, TradingParameterSet]) -> None:
        periods = [p.moving_averages for p in parameter_sets.values()] or [self.default_period]
        capacity = max(max(periods), 1) + self.history_slack
        if capacity == self._capacity:
            return
        logger.debug("Resizing z-score history from %s to %s entries", self._capacity, capacity)
        self._capacity = capacity
        for symbol, history in self._history.items():
            self._history[symbol] = deque(history, maxlen=capacity)

    def _append(self, symbol: str, entry: ZScoreHistoryEntry, replace_latest: bool = False) -> None:
        history = self._history.get(symbol)
        if history is None:
            history = deque(maxlen=self._capacity)
            self._history[symbol] = history
        if replace_latest and history:
            history[-1] = entry
        else:
            history.append(entry)

    def _record(self, snapshot: CrossSectionalSnapshot, replace_latest: bool = False) -> None:
        for symbol, rating in snapshot.ratings_by_symbol.items():
            raw_z = (rating - snapshot.mean) / snapshot.stddev if snapshot.stddev > 0 else 0.0
            self._append(symbol, ZScoreHistoryEntry(snapshot.timestamp, raw_z, rating), replace_latest)

    def record_interval(
        self,
        ratings: Mapping[str, float],
        timestamp: datetime,
        parameter_sets: Optional[Mapping[str, TradingParameterSet]] = None,
    ) -> CrossSectionalSnapshot:
        """Append the cross-section of one completed rating period to the history."""
        if parameter_sets is not None:
            self._resize(parameter_sets)
        snapshot = self.compute_snapshot(ratings, timestamp)
        self._record(snapshot)
        return snapshot

    def compute_snapshot(self, ratings: Mapping[str, float], timestamp: datetime) -> CrossSectionalSnapshot:
        ordered = {symbol: float(ratings[symbol]) for symbol in sorted(ratings)}
        if not ordered:
            return CrossSectionalSnapshot(timestamp, {}, 0.0, 0.0)
        values = np.fromiter(ordered.values(), dtype=float)
        mean = float(values.mean())
        stddev = float(values.std())
        return CrossSectionalSnapshot(timestamp, ordered, mean, stddev)

    def generate_signals(
        self,
        ratings: Mapping[str, float],
        parameter_sets: Mapping[str, TradingParameterSet],
        timestamp: Optional[datetime] = None,
        replace_latest: bool = False,
    ) -> SignalBatch:
        """Score the current cross-section and emit threshold signals.

        With ``replace_latest`` the current z-scores overwrite each symbol's
        newest entry instead of adding one, so the history keeps one entry
        per rating period.
        """
        now = timestamp or datetime.now(timezone.utc)
        self._resize(parameter_sets)
        snapshot = self.compute_snapshot(ratings, now)
        self.last_snapshot = snapshot
        self._record(snapshot, replace_latest)

        z_scores: Dict[str, ZScoreResult] = {}
        signals: List[TradingSignal] = []
        degraded: List[str] = []
        for symbol in sorted(parameter_sets):
            params = parameter_sets[symbol]
            history = self._history.get(symbol)
            if not params.enabled or not history:
                continue
            latest = history[-1]
            period = max(int(params.moving_averages), 1)
            is_degraded = len(history) < period
            ma_z = latest.raw_z_score if is_degraded else self.moving_average(symbol, period)
            if is_degraded:
                degraded.append(symbol)
            z_scores[symbol] = ZScoreResult(
                symbol=symbol,
                rating=latest.rating,
                raw_z_score=latest.raw_z_score,
                moving_average_z_score=ma_z,
                history_length=len(history),
                degraded=is_degraded,
            )

            side = None
            if ma_z >= params.z_score_threshold:
                side = BUY
            elif ma_z <= -params.z_score_threshold:
                side = SELL
            if side:
                signals.append(TradingSignal(symbol, side, ma_z, params.z_score_threshold, latest.rating, now))

        if degraded:
            logger.debug("Moving-average z degraded to raw z for %s", ", ".join(degraded))
        logger.info(
            "Generated %s signals across %s rated symbols (mean=%.2f stddev=%.2f)",
            len(signals),
            len(snapshot.ratings_by_symbol),
            snapshot.mean,
            snapshot.stddev,
        )
        return SignalBatch(signals, z_scores, snapshot, degraded)

    def moving_average(self, symbol: str, period: int) -> float:
        history = self._history.get(symbol)
        if not history:
            return 0.0
        recent = list(history)[-period:]
        return float(np.mean([entry.raw_z_score for entry in recent]))

    def history(self, symbol: str) -> List[ZScoreHistoryEntry]:
        return list(self._history.get(symbol, ()))

    def history_length(self, symbol: str) -> int:
        return len(self._history.get(symbol, ()))

    def clear_history(self, symbol: Optional[str] = None) -> None:
        if symbol is None:
            self._history.clear()
        else:
            self._history.pop(symbol, None)
