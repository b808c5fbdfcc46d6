import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from rating.glicko_math import (
    INITIAL_RATING,
    Opponent,
    compute_variance,
    from_internal_scale,
    score_sum,
    solve_volatility,
    to_internal_scale,
)
from rating.hybrid_score import ScoreResult, VolumeMetrics, calculate_hybrid_score


logger = logging.getLogger(__name__)


@dataclass
class RatingSettings:
    tau: float = 0.5
    initial_rating: float = INITIAL_RATING
    initial_rd: float = 350.0
    initial_volatility: float = 0.06
    min_rating: float = 800.0
    max_rating: float = 2200.0
    min_rd: float = 50.0
    max_rd: float = 350.0
    min_volatility: float = 0.001
    max_volatility: float = 0.5
    solver_epsilon: float = 1e-6
    solver_max_iterations: int = 100

    @classmethod
    def from_dict(cls, data: Optional[Mapping]) -> 'RatingSettings':
        data = dict(data or {})
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        settings = cls(**known)
        settings.solver_max_iterations = int(settings.solver_max_iterations)
        return settings


@dataclass
class AssetRatingState:
    symbol: str
    rating: float
    rating_deviation: float
    volatility: float
    last_updated: datetime
    games_played: int = 0

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'rating': self.rating,
            'rating_deviation': self.rating_deviation,
            'volatility': self.volatility,
            'last_updated': self.last_updated.isoformat(),
            'games_played': self.games_played,
        }


@dataclass(frozen=True)
class Game:
    opponent_rating: float
    opponent_rd: float
    score: float


@dataclass
class Observation:
    base_asset: str
    quote_asset: str
    price_change: float
    timestamp: datetime
    volume_metrics: Optional[VolumeMetrics] = None
    open_price: Optional[float] = None
    close_price: Optional[float] = None

    @classmethod
    def from_kline(
        cls,
        base_asset: str,
        quote_asset: str,
        open_price: float,
        close_price: float,
        timestamp: datetime,
        volume: Optional[float] = None,
        taker_buy_volume: Optional[float] = None,
    ) -> 'Observation':
        change = (close_price - open_price) / open_price if open_price > 0 else math.nan
        metrics = None
        if volume is not None and taker_buy_volume is not None:
            metrics = VolumeMetrics(volume=volume, taker_buy_volume=taker_buy_volume)
        return cls(
            base_asset=base_asset,
            quote_asset=quote_asset,
            price_change=change,
            timestamp=timestamp,
            volume_metrics=metrics,
            open_price=open_price,
            close_price=close_price,
        )


class RatingStore:
    """Per-engine mapping of asset symbol to its rating state."""

    def __init__(self, initial_states: Optional[Iterable[AssetRatingState]] = None):
        self._states: Dict[str, AssetRatingState] = {}
        for state in initial_states or ():
            self._states[state.symbol] = state

    def get(self, symbol: str) -> Optional[AssetRatingState]:
        return self._states.get(symbol)

    def put(self, state: AssetRatingState) -> None:
        self._states[state.symbol] = state

    def symbols(self) -> List[str]:
        return sorted(self._states)

    def snapshot(self) -> Dict[str, AssetRatingState]:
        return {symbol: replace(state) for symbol, state in self._states.items()}

    def values(self) -> Iterator[AssetRatingState]:
        return iter(self._states.values())

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._states

    def __len__(self) -> int:
        return len(self._states)


class RatingEngine:
    """Glicko-2 ratings for a closed pool of assets playing pairwise games."""

    def __init__(self, store: Optional[RatingStore] = None, settings: Optional[RatingSettings] = None):
        self.store = store if store is not None else RatingStore()
        self.settings = settings or RatingSettings()
        self.clamp_events = 0
        self.data_quality_events = 0
        self.solver_aborts = 0

    def ensure_asset_exists(self, symbol: str, now: Optional[datetime] = None) -> AssetRatingState:
        state = self.store.get(symbol)
        if state is None:
            state = AssetRatingState(
                symbol=symbol,
                rating=self.settings.initial_rating,
                rating_deviation=self.settings.initial_rd,
                volatility=self.settings.initial_volatility,
                last_updated=now or datetime.now(timezone.utc),
            )
            self.store.put(state)
        return state

    def get_state(self, symbol: str) -> Optional[AssetRatingState]:
        state = self.store.get(symbol)
        return replace(state) if state is not None else None

    def ratings(self, symbols: Optional[Iterable[str]] = None) -> Dict[str, float]:
        wanted = self.store.symbols() if symbols is None else symbols
        out: Dict[str, float] = {}
        for symbol in wanted:
            state = self.store.get(symbol)
            if state is not None:
                out[symbol] = state.rating
        return out

    def score_observation(self, observation: Observation) -> ScoreResult:
        result = calculate_hybrid_score(
            observation.price_change,
            observation.volume_metrics,
            observation.open_price,
            observation.close_price,
        )
        if result.data_quality_issue:
            self.data_quality_events += 1
            logger.warning(
                "Data-quality issue for %s/%s at %s (%s); scoring as draw",
                observation.base_asset,
                observation.quote_asset,
                observation.timestamp,
                result.data_quality_issue,
            )
        return result

    def process_observation(
        self,
        base: str,
        quote: str,
        price_change: float,
        timestamp: datetime,
        volume_metrics: Optional[VolumeMetrics] = None,
        open_price: Optional[float] = None,
        close_price: Optional[float] = None,
    ) -> Tuple[float, float]:
        """Score one pair interval and apply it to both assets immediately."""
        observation = Observation(base, quote, price_change, timestamp, volume_metrics, open_price, close_price)
        result = self.score_observation(observation)
        base_state = self.ensure_asset_exists(base, timestamp)
        quote_state = self.ensure_asset_exists(quote, timestamp)

        base_game = Game(quote_state.rating, quote_state.rating_deviation, result.score)
        quote_game = Game(base_state.rating, base_state.rating_deviation, result.opponent_score)
        new_base = self.update_rating(base_state, [base_game], timestamp)
        new_quote = self.update_rating(quote_state, [quote_game], timestamp)
        self.store.put(new_base)
        self.store.put(new_quote)
        return result.score, result.opponent_score

    def process_interval(self, observations: Sequence[Observation], timestamp: Optional[datetime] = None) -> List[Tuple[float, float]]:
        """Apply one interval's observations as a single rating period.

        Opponent strengths are frozen at the start of the interval so the
        order of observations does not matter. Ratings are re-centred once
        after every game of the interval has been applied. Assets with no
        game in the interval only have their deviation inflated.
        """
        if not observations:
            return []
        period_ts = timestamp or max(obs.timestamp for obs in observations)
        for obs in observations:
            self.ensure_asset_exists(obs.base_asset, obs.timestamp)
            self.ensure_asset_exists(obs.quote_asset, obs.timestamp)
        frozen = self.store.snapshot()

        games: Dict[str, List[Game]] = {}
        scores: List[Tuple[float, float]] = []
        for obs in observations:
            result = self.score_observation(obs)
            base_state = frozen[obs.base_asset]
            quote_state = frozen[obs.quote_asset]
            games.setdefault(obs.base_asset, []).append(
                Game(quote_state.rating, quote_state.rating_deviation, result.score)
            )
            games.setdefault(obs.quote_asset, []).append(
                Game(base_state.rating, base_state.rating_deviation, result.opponent_score)
            )
            scores.append((result.score, result.opponent_score))

        for symbol in sorted(games):
            self.store.put(self.update_rating(frozen[symbol], games[symbol], period_ts))
        for symbol in self.store.symbols():
            if symbol not in games:
                self.apply_decay(symbol)

        self.normalize_ratings()
        return scores

    def update_rating(self, state: AssetRatingState, games: Sequence[Game], now: Optional[datetime] = None) -> AssetRatingState:
        """Return the post-period state for ``state`` after ``games``.

        Never returns NaN or Infinity: a non-finite result discards the
        update and the prior state is returned unchanged.
        """
        s = self.settings
        mu, phi = to_internal_scale(state.rating, state.rating_deviation)
        sigma = state.volatility
        opponents = []
        for game in games:
            mu_j, phi_j = to_internal_scale(game.opponent_rating, game.opponent_rd)
            opponents.append(Opponent(mu_j, phi_j, game.score))

        v = compute_variance(mu, opponents) if opponents else math.inf
        if not math.isfinite(v):
            # No informative games: only the deviation grows
            phi_star = math.sqrt(phi * phi + sigma * sigma)
            new_mu, new_phi, new_sigma = mu, phi_star, sigma
        else:
            improvement = score_sum(mu, opponents)
            delta = v * improvement
            solved = solve_volatility(
                sigma, delta, phi, v, s.tau,
                epsilon=s.solver_epsilon,
                max_iterations=s.solver_max_iterations,
            )
            if solved.aborted:
                self.solver_aborts += 1
                logger.warning(
                    "Volatility solver aborted for %s after %s iterations; keeping sigma=%.6f",
                    state.symbol,
                    solved.iterations,
                    sigma,
                )
            new_sigma = solved.sigma
            phi_star = math.sqrt(phi * phi + new_sigma * new_sigma)
            new_phi = 1.0 / math.sqrt(1.0 / (phi_star * phi_star) + 1.0 / v)
            new_mu = mu + new_phi * new_phi * improvement

        rating, rd = from_internal_scale(new_mu, new_phi)
        if not all(map(math.isfinite, (rating, rd, new_sigma))):
            self.clamp_events += 1
            logger.warning(
                "Discarding non-finite update for %s (rating=%s rd=%s sigma=%s)",
                state.symbol,
                rating,
                rd,
                new_sigma,
            )
            return replace(state)

        return AssetRatingState(
            symbol=state.symbol,
            rating=self._clamp(state.symbol, 'rating', rating, s.min_rating, s.max_rating),
            rating_deviation=self._clamp(state.symbol, 'rating_deviation', rd, s.min_rd, s.max_rd),
            volatility=self._clamp(state.symbol, 'volatility', new_sigma, s.min_volatility, s.max_volatility),
            last_updated=now or state.last_updated,
            games_played=state.games_played + len(games),
        )

    def normalize_ratings(self) -> float:
        """Shift every rating so the pool mean returns to the initial rating."""
        states = list(self.store.values())
        if not states:
            return 0.0
        mean = sum(state.rating for state in states) / len(states)
        adjustment = self.settings.initial_rating - mean
        for state in states:
            state.rating = self._clamp(
                state.symbol,
                'rating',
                state.rating + adjustment,
                self.settings.min_rating,
                self.settings.max_rating,
            )
        return adjustment

    def apply_decay(self, symbol: str) -> None:
        """Grow the deviation of an idle asset by one period of volatility."""
        state = self.store.get(symbol)
        if state is None:
            return
        mu, phi = to_internal_scale(state.rating, state.rating_deviation)
        new_phi = math.sqrt(phi * phi + state.volatility * state.volatility)
        _, rd = from_internal_scale(mu, new_phi)
        state.rating_deviation = min(rd, self.settings.max_rd)

    def _clamp(self, symbol: str, name: str, value: float, lower: float, upper: float) -> float:
        if lower <= value <= upper:
            return value
        clamped = max(lower, min(upper, value))
        self.clamp_events += 1
        # Deviation settles on its floor routinely; only rating clamps are noteworthy
        level = logging.WARNING if name == 'rating' else logging.DEBUG
        logger.log(level, "Clamped %s %s from %.6f to %.6f", symbol, name, value, clamped)
        return clamped
