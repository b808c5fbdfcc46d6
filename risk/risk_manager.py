import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional


logger = logging.getLogger(__name__)

DAILY_LOSS = 'dailyLoss'
MAX_DRAWDOWN = 'maxDrawdown'


class RiskManager:
    def __init__(self, max_daily_loss: float = 0.0, max_drawdown: float = 0.0, cooldown_period_min: float = 60.0):
        self.max_daily_loss = float(max_daily_loss or 0.0)
        self.max_drawdown = float(max_drawdown or 0.0)
        self.cooldown_period = timedelta(minutes=float(cooldown_period_min))

        self.daily_pnl = 0.0
        self.total_realized_pnl = 0.0
        self.peak_equity = 0.0
        self.current_equity = 0.0
        self._day: Optional[date] = None
        self._cooldowns: Dict[str, datetime] = {}

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> 'RiskManager':
        return cls(
            max_daily_loss=section.get('max_daily_loss', 0.0),
            max_drawdown=section.get('max_drawdown', 0.0),
            cooldown_period_min=section.get('cooldown_period_min', 60.0),
        )

    def _roll_day(self, now: datetime) -> None:
        today = now.astimezone(timezone.utc).date()
        if self._day != today:
            if self._day is not None:
                logger.info("Daily P&L reset (previous day %.2f)", self.daily_pnl)
            self._day = today
            self.daily_pnl = 0.0

    def record_realized_pnl(self, pnl: float, now: Optional[datetime] = None) -> None:
        self._roll_day(now or datetime.now(timezone.utc))
        self.daily_pnl += pnl
        self.total_realized_pnl += pnl

    def update_equity(self, equity: float) -> None:
        self.current_equity = equity
        if equity > self.peak_equity:
            self.peak_equity = equity

    @property
    def drawdown(self) -> float:
        if self.peak_equity <= 0:
            return 0.0
        return max(0.0, (self.peak_equity - self.current_equity) / self.peak_equity)

    def check_entry_allowed(self, now: Optional[datetime] = None) -> Optional[str]:
        """Return the name of the limit that blocks new entries, if any."""
        self._roll_day(now or datetime.now(timezone.utc))
        if self.max_daily_loss > 0 and self.daily_pnl <= -self.max_daily_loss:
            return DAILY_LOSS
        if self.max_drawdown > 0 and self.drawdown >= self.max_drawdown:
            return MAX_DRAWDOWN
        return None

    def set_cooldown(self, symbol: str, now: Optional[datetime] = None) -> datetime:
        until = (now or datetime.now(timezone.utc)) + self.cooldown_period
        self._cooldowns[symbol] = until
        logger.info("Cooldown set for %s until %s", symbol, until.isoformat())
        return until

    def in_cooldown(self, symbol: str, now: Optional[datetime] = None) -> bool:
        until = self._cooldowns.get(symbol)
        if until is None:
            return False
        if (now or datetime.now(timezone.utc)) >= until:
            self._cooldowns.pop(symbol, None)
            return False
        return True

    def clear_cooldown(self, symbol: Optional[str] = None) -> None:
        if symbol is None:
            self._cooldowns.clear()
        else:
            self._cooldowns.pop(symbol, None)

    def cooldowns(self) -> Dict[str, str]:
        return {symbol: until.isoformat() for symbol, until in sorted(self._cooldowns.items())}

    def get_status(self) -> Dict[str, Any]:
        return {
            'daily_pnl': self.daily_pnl,
            'total_realized_pnl': self.total_realized_pnl,
            'peak_equity': self.peak_equity,
            'current_equity': self.current_equity,
            'drawdown': self.drawdown,
            'cooldowns': self.cooldowns(),
        }
