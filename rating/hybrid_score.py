import math
from dataclasses import dataclass
from typing import Optional

DRAW_THRESHOLD = 1e-4

WIN_HIGH = 1.0
WIN_LOW = 0.75
DRAW = 0.5
LOSS_LOW = 0.25
LOSS_HIGH = 0.0

HYBRID_SCORES = (LOSS_HIGH, LOSS_LOW, DRAW, WIN_LOW, WIN_HIGH)


@dataclass(frozen=True)
class VolumeMetrics:
    volume: float
    taker_buy_volume: float

    @property
    def taker_sell_volume(self) -> float:
        return self.volume - self.taker_buy_volume

    @property
    def buy_dominant(self) -> bool:
        return self.taker_buy_volume > self.taker_sell_volume


@dataclass(frozen=True)
class ScoreResult:
    score: float
    confidence: str
    data_quality_issue: Optional[str] = None

    @property
    def opponent_score(self) -> float:
        return 1.0 - self.score


def price_change(open_price: float, close_price: float) -> float:
    if open_price <= 0:
        raise ValueError(f"Open price must be positive, got {open_price}")
    return (close_price - open_price) / open_price


def _validate(
    change: float,
    volume_metrics: Optional[VolumeMetrics],
    open_price: Optional[float],
    close_price: Optional[float],
) -> Optional[str]:
    if not math.isfinite(change):
        return "non_finite_price_change"
    for label, price in (("open", open_price), ("close", close_price)):
        if price is not None and (not math.isfinite(price) or price <= 0):
            return f"non_positive_{label}_price"
    if volume_metrics is not None:
        if volume_metrics.volume < 0 or volume_metrics.taker_buy_volume < 0:
            return "negative_volume"
        if volume_metrics.taker_buy_volume > volume_metrics.volume:
            return "taker_buy_exceeds_volume"
    return None


def calculate_hybrid_score(
    change: float,
    volume_metrics: Optional[VolumeMetrics] = None,
    open_price: Optional[float] = None,
    close_price: Optional[float] = None,
) -> ScoreResult:
    """Classify one interval of a pair into a discrete game result for the base asset.

    Price direction decides the winner; taker volume dominance decides how
    decisive the win is. Without usable volume the result falls back to the
    low-confidence score for the observed direction. Invalid inputs are
    scored as a draw and flagged.
    """
    issue = _validate(change, volume_metrics, open_price, close_price)
    if issue is not None:
        return ScoreResult(DRAW, "neutral", issue)

    if abs(change) < DRAW_THRESHOLD:
        return ScoreResult(DRAW, "neutral")

    price_up = change > 0
    if volume_metrics is None or volume_metrics.volume == 0:
        return ScoreResult(WIN_LOW if price_up else LOSS_LOW, "low")

    if price_up:
        if volume_metrics.buy_dominant:
            return ScoreResult(WIN_HIGH, "high")
        return ScoreResult(WIN_LOW, "low")
    if volume_metrics.buy_dominant:
        return ScoreResult(LOSS_LOW, "low")
    return ScoreResult(LOSS_HIGH, "high")
