import logging
from typing import Optional

from api.alerts import AlertWebhook
from api.metrics import MetricsCollector
from orchestration.events import (
    EmergencyStop,
    EventBus,
    LiveTradeExecuted,
    PaperTrade,
    RiskLimitHit,
    SignalProcessed,
    SignalsChecked,
    TradingError,
    ZScoreCalculated,
)


logger = logging.getLogger(__name__)


class MonitoringService:
    """Bridges trading events onto Prometheus metrics and the alert webhook."""

    def __init__(self, metrics: MetricsCollector, alerts: Optional[AlertWebhook] = None):
        self.metrics = metrics
        self.alerts = alerts

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(ZScoreCalculated.name, self.handle_z_score)
        bus.subscribe(SignalsChecked.name, self.handle_signals_checked)
        bus.subscribe(SignalProcessed.name, self.handle_signal)
        bus.subscribe(LiveTradeExecuted.name, self.handle_trade)
        bus.subscribe(PaperTrade.name, self.handle_trade)
        bus.subscribe(RiskLimitHit.name, self.handle_risk_limit)
        bus.subscribe(EmergencyStop.name, self.handle_emergency_stop)
        bus.subscribe(TradingError.name, self.handle_error)

    def handle_z_score(self, event: ZScoreCalculated) -> None:
        self.metrics.update_z_score(event.symbol, event.moving_average_z_score)

    def handle_signals_checked(self, event: SignalsChecked) -> None:
        self.metrics.record_signals('BUY', event.buy_signals)
        self.metrics.record_signals('SELL', event.sell_signals)

    def handle_signal(self, event: SignalProcessed) -> None:
        if event.reason == 'entry_failed':
            self.metrics.record_cooldown()

    def handle_trade(self, event) -> None:
        if event.side == 'BUY':
            self.metrics.record_entry(paper=isinstance(event, PaperTrade))
        else:
            self.metrics.record_exit(event.reason or 'unknown')
            self.metrics.record_pnl(event.pnl)

    async def handle_risk_limit(self, event: RiskLimitHit) -> None:
        self.metrics.record_risk_limit(event.kind)
        if self.alerts:
            await self.alerts.risk_limit_alert(event.kind, {'daily_pnl': event.daily_pnl, 'drawdown': event.drawdown})

    async def handle_emergency_stop(self, event: EmergencyStop) -> None:
        logger.critical("Emergency stop: %s", event.reason)
        if self.alerts:
            await self.alerts.emergency_stop_alert(event.reason, event.cancelled_orders)

    async def handle_error(self, event: TradingError) -> None:
        self.metrics.record_trading_error(event.stage)
        if event.stage == 'market_data' and event.symbol:
            self.metrics.record_fetch_failure(event.symbol)
        if self.alerts:
            await self.alerts.trading_error_alert(event.symbol, event.stage, event.error)
