import errno
import logging
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from config import config
from config.utils import get_config_section


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(get_config_section(config, 'monitoring').get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.cycles = Counter('trading_cycles_total', 'Total control-loop cycles completed')
        self.cycle_latency = Histogram('trading_cycle_seconds', 'Wall time of one control-loop cycle')
        self.signals = Counter('signals_generated_total', 'Signals generated', ['side'])
        self.z_score = Gauge('moving_average_z_score', 'Latest moving-average z-score', ['symbol'])
        self.rating = Gauge('asset_rating', 'Latest Glicko-2 rating', ['symbol'])

        self.open_positions = Gauge('open_positions', 'Open positions')
        self.reserved_capital = Gauge('reserved_capital', 'Capital held by allocation reservations')
        self.balance = Gauge('quote_balance', 'Free quote-asset balance')
        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL')

        self.entries = Counter('position_entries_total', 'Positions opened', ['mode'])
        self.exits = Counter('position_exits_total', 'Positions closed', ['reason'])
        self.risk_limits = Counter('risk_limit_hits_total', 'Entries blocked by a risk limit', ['kind'])
        self.cooldowns = Counter('symbol_cooldowns_total', 'Per-symbol cooldowns set after failed entries')
        self.trading_errors = Counter('trading_errors_total', 'Per-symbol errors isolated by the control loop', ['stage'])

        self.rating_clamps = Gauge('rating_clamp_events', 'Rating engine clamp events since start')
        self.data_quality = Gauge('data_quality_events', 'Observations scored as draws due to bad data')
        self.fetch_failures = Counter('market_data_failures_total', 'Failed kline fetches', ['symbol'])
        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects')

    def record_cycle(self, seconds: float):
        self.cycles.inc()
        self.cycle_latency.observe(seconds)

    def record_signals(self, side: str, count: int = 1):
        if count > 0:
            self.signals.labels(side=side).inc(count)

    def update_z_score(self, symbol: str, value: float):
        self.z_score.labels(symbol=symbol).set(value)

    def update_ratings(self, ratings: Dict[str, float]):
        for symbol, value in ratings.items():
            self.rating.labels(symbol=symbol).set(value)

    def update_positions(self, count: int):
        self.open_positions.set(count)

    def update_reserved(self, amount: float):
        self.reserved_capital.set(amount)

    def update_balance(self, amount: float):
        self.balance.set(amount)

    def record_pnl(self, pnl: float):
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def record_entry(self, paper: bool):
        self.entries.labels(mode='paper' if paper else 'live').inc()

    def record_exit(self, reason: str):
        self.exits.labels(reason=reason).inc()

    def record_risk_limit(self, kind: str):
        self.risk_limits.labels(kind=kind).inc()

    def record_cooldown(self):
        self.cooldowns.inc()

    def record_trading_error(self, stage: str):
        self.trading_errors.labels(stage=stage).inc()

    def update_engine_health(self, clamp_events: int, data_quality_events: int):
        self.rating_clamps.set(clamp_events)
        self.data_quality.set(data_quality_events)

    def record_fetch_failure(self, symbol: str):
        self.fetch_failures.labels(symbol=symbol).inc()

    def record_reconnect(self):
        self.reconnect_count.inc()


def start_metrics_server(port: int = 9090) -> Optional[int]:
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error
    return None


metrics = MetricsCollector()
