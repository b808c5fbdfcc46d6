"""Typed trading events and the callback registry that delivers them."""
import inspect
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Dict, List, Optional


logger = logging.getLogger(__name__)

ALL_EVENTS = '*'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TradingEvent:
    name: ClassVar[str] = 'event'
    timestamp: datetime = field(default_factory=_utcnow, kw_only=True)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload['event'] = self.name
        payload['timestamp'] = self.timestamp.isoformat()
        return payload


@dataclass(frozen=True)
class Started(TradingEvent):
    name: ClassVar[str] = 'started'
    live: bool = False


@dataclass(frozen=True)
class Stopped(TradingEvent):
    name: ClassVar[str] = 'stopped'
    reason: str = 'shutdown'


@dataclass(frozen=True)
class SignalsChecked(TradingEvent):
    name: ClassVar[str] = 'signalsChecked'
    total_signals: int = 0
    strong_signals: int = 0
    buy_signals: int = 0
    sell_signals: int = 0
    rated_symbols: int = 0


@dataclass(frozen=True)
class SignalProcessed(TradingEvent):
    name: ClassVar[str] = 'signalProcessed'
    symbol: str = ''
    side: str = ''
    z_score: float = 0.0
    action: str = ''
    reason: Optional[str] = None


@dataclass(frozen=True)
class LiveTradeExecuted(TradingEvent):
    name: ClassVar[str] = 'liveTradeExecuted'
    symbol: str = ''
    side: str = ''
    quantity: float = 0.0
    price: float = 0.0
    order_id: str = ''
    reason: Optional[str] = None
    pnl: Optional[float] = None


@dataclass(frozen=True)
class PaperTrade(TradingEvent):
    name: ClassVar[str] = 'paperTrade'
    symbol: str = ''
    side: str = ''
    quantity: float = 0.0
    price: float = 0.0
    order_id: str = ''
    reason: Optional[str] = None
    pnl: Optional[float] = None


@dataclass(frozen=True)
class ZScoreCalculated(TradingEvent):
    name: ClassVar[str] = 'zScoreCalculated'
    symbol: str = ''
    rating: float = 0.0
    raw_z_score: float = 0.0
    moving_average_z_score: float = 0.0
    degraded: bool = False


@dataclass(frozen=True)
class ZScoreReversal(TradingEvent):
    name: ClassVar[str] = 'zScoreReversal'
    symbol: str = ''
    z_score: float = 0.0
    threshold: float = 0.0
    bracket_cancelled: bool = False


@dataclass(frozen=True)
class RiskLimitHit(TradingEvent):
    name: ClassVar[str] = 'riskLimitHit'
    kind: str = ''
    daily_pnl: float = 0.0
    drawdown: float = 0.0


@dataclass(frozen=True)
class EmergencyStop(TradingEvent):
    name: ClassVar[str] = 'emergencyStop'
    reason: str = ''
    cancelled_orders: int = 0
    cleared_positions: int = 0
    cleared_reservations: int = 0


@dataclass(frozen=True)
class TradingError(TradingEvent):
    name: ClassVar[str] = 'tradingError'
    stage: str = ''
    error: str = ''
    symbol: Optional[str] = None


EventCallback = Callable[[TradingEvent], Any]


class EventBus:
    """Callback registry keyed by event name (``'*'`` receives everything).

    Callbacks run in subscription order; coroutine results are awaited. A
    failing subscriber is logged and never propagates to the emitter.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[EventCallback]] = {}

    def subscribe(self, name: str, callback: EventCallback) -> None:
        self._subscribers.setdefault(name, []).append(callback)

    def unsubscribe(self, name: str, callback: EventCallback) -> None:
        callbacks = self._subscribers.get(name, [])
        if callback in callbacks:
            callbacks.remove(callback)

    async def emit(self, event: TradingEvent) -> None:
        callbacks = list(self._subscribers.get(event.name, ())) + list(self._subscribers.get(ALL_EVENTS, ()))
        for callback in callbacks:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error("Event subscriber %r failed on %s: %s", callback, event.name, exc)
