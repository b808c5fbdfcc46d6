import asyncio
import logging
from pathlib import Path
from typing import Any, List, Optional

from api.alerts import AlertWebhook
from api.metrics import metrics, start_metrics_server
from config import config
from config.utils import get_config_section
from ingest.market_data import MarketDataService, build_universe
from ingest.price_stream import DEFAULT_STREAM_URL, PriceStream
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.event_recorder import EventRecorder
from monitoring.logging_utils import setup_logging
from orchestration.events import ALL_EVENTS, EventBus
from orchestration.services import MonitoringService
from rating.engine import RatingEngine, RatingSettings
from risk.allocation import AllocationManager
from risk.risk_manager import RiskManager
from strategy.execution import ExecutionAdapter, build_execution_adapter
from strategy.parameters import ParameterSetManager
from strategy.position_manager import CycleReport, PositionManager, PositionManagerSettings
from strategy.signal_generator import SignalGenerator
from strategy.transports.binance import BinanceTransport


logger = logging.getLogger(__name__)


class TradingSystem:
    """Wire configuration into the rating, signal, allocation and execution components."""

    def __init__(self, config_obj: Optional[Any] = None, execution: Optional[ExecutionAdapter] = None,
                 transport: Optional[BinanceTransport] = None):
        self.config = config_obj or config
        self.exchange_cfg = get_config_section(self.config, 'exchange')
        self.universe_cfg = get_config_section(self.config, 'universe')
        self.trading_cfg = get_config_section(self.config, 'trading')
        self.risk_cfg = get_config_section(self.config, 'risk')
        self.rating_cfg = get_config_section(self.config, 'rating')
        self.signals_cfg = get_config_section(self.config, 'signals')
        self.stream_cfg = get_config_section(self.config, 'stream')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')

        self.quote_asset = self.exchange_cfg.get('quote_asset', 'USDT')
        self.live = bool(self.trading_cfg.get('enable_live_trading', False))

        self.transport = transport or BinanceTransport()
        self.execution = execution or build_execution_adapter(
            self.live,
            quote_asset=self.quote_asset,
            paper_initial_balance=float(self.trading_cfg.get('paper_initial_balance', 10000.0)),
            transport=self.transport,
        )

        self.parameters = ParameterSetManager(self.trading_cfg.get('defaults') or {}, self.quote_asset)
        self.rating_engine = RatingEngine(settings=RatingSettings.from_dict(self.rating_cfg))
        defaults = self.trading_cfg.get('defaults') or {}
        self.signal_generator = SignalGenerator(
            history_slack=int(self.signals_cfg.get('history_slack', 10)),
            default_period=int(defaults.get('moving_averages', 10)),
        )
        self.allocation = AllocationManager(min_notional=float(self.exchange_cfg.get('min_notional', 10.0)))
        self.risk_manager = RiskManager.from_config(self.risk_cfg)

        self.pairs = build_universe(self.universe_cfg, self.quote_asset)
        self.market_data = MarketDataService(
            self.transport,
            self.pairs,
            interval=self.universe_cfg.get('interval', '1h'),
            lookback_bars=int(self.universe_cfg.get('lookback_bars', 50)),
        )
        self.price_stream: Optional[PriceStream] = None
        if self.stream_cfg.get('enabled', False):
            self.price_stream = PriceStream(
                [pair.symbol for pair in self.pairs],
                url=self.stream_cfg.get('url') or DEFAULT_STREAM_URL,
                reconnect_backoff=self.stream_cfg.get('reconnect_backoff') or [1, 2, 5, 10, 30],
            )

        self.events = EventBus()
        self.recorder = EventRecorder(self.monitoring_cfg.get('event_log'))
        self.events.subscribe(ALL_EVENTS, self.recorder.record)
        self.monitoring = MonitoringService(metrics, AlertWebhook(self.monitoring_cfg.get('alert_webhook')))
        self.monitoring.attach(self.events)

        self.position_manager = PositionManager(
            self.rating_engine,
            self.signal_generator,
            self.allocation,
            self.risk_manager,
            self.execution,
            self.market_data,
            self.parameters,
            events=self.events,
            settings=PositionManagerSettings.from_config(self.trading_cfg, self.quote_asset),
            price_stream=self.price_stream,
        )
        self.running = False
        self._recorded_report: Optional[CycleReport] = None

    def load_parameters(self) -> None:
        parameter_file = self.trading_cfg.get('parameter_file')
        if not parameter_file:
            logger.info("No parameter file configured; using global defaults for every symbol")
            return
        path = Path(parameter_file)
        if not path.exists():
            logger.warning("Parameter file %s not found; using global defaults", path)
            return
        self.parameters.load_from_file(str(path))

    async def initialize(self) -> None:
        self.load_parameters()
        await self.execution.initialize()
        logger.info(
            "Initialized %s pairs (%s mode), %s parameter sets",
            len(self.pairs),
            'live' if self.live else 'paper',
            len(self.parameters.all()),
        )

    async def run_cycle(self) -> CycleReport:
        report = await self.position_manager.run_cycle()
        self.publish_metrics()
        return report

    def publish_metrics(self) -> None:
        metrics.update_ratings(self.rating_engine.ratings())
        metrics.update_positions(len(self.position_manager.positions))
        metrics.update_reserved(self.allocation.total_reserved)
        metrics.update_engine_health(self.rating_engine.clamp_events, self.rating_engine.data_quality_events)
        report = self.position_manager.last_report
        if report is not None and report is not self._recorded_report:
            self._recorded_report = report
            metrics.record_cycle(report.duration_s)

    async def _publish_loop(self, interval_s: float = 15.0) -> None:
        while self.running:
            self.publish_metrics()
            await asyncio.sleep(interval_s)

    async def start(self):
        await self.initialize()
        start_metrics_server(int(self.monitoring_cfg.get('prometheus_port', 9090)))
        self.running = True

        tasks: List[asyncio.Task] = [
            asyncio.create_task(self.position_manager.start()),
            asyncio.create_task(self._publish_loop()),
        ]
        if self.price_stream is not None:
            tasks.append(asyncio.create_task(self.price_stream.run()))

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        self.position_manager.stop()
        if self.price_stream is not None:
            self.price_stream.stop()
        await self.execution.close()
        await self.transport.close()

    async def emergency_stop(self, reason: str = 'manual'):
        return await self.position_manager.emergency_stop(reason)


async def main():
    system = TradingSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()


if __name__ == "__main__":
    setup_logging(get_config_section(config, 'monitoring').get('log_level', 'INFO'))
    asyncio.run(main())
