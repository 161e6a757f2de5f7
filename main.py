import asyncio
import logging
from typing import List

from ingest.bar_router import BarRouter
from ingest.historical_bars import AlpacaHistoricalBars
from ingest.websocket_client import AlpacaBarStream
from orchestration.scheduler import SessionScheduler
from orchestration.state_store import build_state_store
from strategy.execution import BracketOrderManager
from strategy.market_types import Bar
from strategy.monitor import MonitoringStateMachine
from strategy.simulators.paper import PaperBroker
from api.metrics import start_metrics_server
from config import config
from monitoring.logging_utils import resolve_level, setup_logging
from monitoring.async_utils import run_tasks_with_cleanup


logger = logging.getLogger(__name__)


class TradingSystem:
    """Wire the state store, broker gateway, state machine, bar stream and scheduler."""

    def __init__(self, config_obj=None, gateway=None, price_source=None, clock=None):
        self.config = config_obj or config
        self.monitoring_cfg = self.config.section('monitoring')
        self.symbols: List[str] = self.config.symbols

        self.store = build_state_store(self.config.section('storage'))
        self.order_manager = BracketOrderManager(gateway)
        self.price_source = price_source or AlpacaHistoricalBars()
        self.machine = MonitoringStateMachine(
            self.store,
            self.order_manager,
            strategy_cfg=self.config.section('strategy'),
            session_cfg=self.config.section('session'),
        )
        self.router = BarRouter(
            self.handle_bar,
            self.config.section('websocket').get('queue_maxsize', 500),
        )
        self.scheduler = SessionScheduler(
            self.symbols,
            self.machine,
            self.price_source,
            self.order_manager,
            clock=clock,
            session_cfg=self.config.section('session'),
        )
        self.stream = AlpacaBarStream(
            self.symbols,
            self.router.route_batch,
            in_window=self.scheduler.in_session,
            clock=self.scheduler.clock.now,
        )
        self.scheduler.stream = self.stream
        self.running = False

    async def initialize(self):
        await self.store.initialize()
        logger.info(
            "Trading %s symbols via %s gateway",
            len(self.symbols),
            "paper simulator" if self.order_manager.paper_mode else "Alpaca",
        )

    async def handle_bar(self, bar: Bar):
        gateway = self.order_manager.gateway
        if isinstance(gateway, PaperBroker):
            gateway.on_bar(bar)
        await self.machine.on_bar(bar)

    async def start(self):
        self.running = True
        await self.initialize()

        port = self.monitoring_cfg.get('prometheus_port')
        if port:
            start_metrics_server(int(port))

        tasks = [
            asyncio.create_task(self.scheduler.run()),
        ]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        await self.scheduler.stop()
        await self.router.stop()
        await self.order_manager.close()
        close_source = getattr(self.price_source, 'close', None)
        if close_source is not None:
            await close_source()
        await self.store.close()


async def main():
    system = TradingSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()

if __name__ == "__main__":
    setup_logging(resolve_level(config.section('monitoring').get('log_level')))
    asyncio.run(main())
