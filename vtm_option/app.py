import asyncio
import logging
import signal
from datetime import date, datetime
from typing import Callable, Optional

from prometheus_client import start_http_server

from vtm_option.config import Settings, settings as default_settings
from vtm_option.execution.simulator import PaperBroker
from vtm_option.models.trading_models import parse_direction
from vtm_option.persistence.db import Database
from vtm_option.providers.broker_rest import BrokerGateway, BrokerRest
from vtm_option.risk.money_management import build_stake_strategy
from vtm_option.services.contract_monitor import ContractMonitor
from vtm_option.services.scheduler import Scheduler, run_gc
from vtm_option.services.signal_service import SignalPipeline
from vtm_option.services.trading_engine import (EntryStrategy,
                                                FixedDirectionEntry,
                                                TradingEngine)
from vtm_option.utils.logging_config import configure_logging
from vtm_option.utils.time_utils import local_today, utcnow

logger = logging.getLogger("app")


class TradingAutomation:
    """Wires the repository, broker gateway and the three jobs together.

    run_trading_loop, run_signal_pipeline and run_contract_monitor are the
    scheduler entry points; each is safe to call repeatedly.
    """

    def __init__(self, db: Database, broker: BrokerGateway, cfg: Settings = default_settings,
                 entry_strategy: Optional[EntryStrategy] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.broker = broker
        self.cfg = cfg
        self._clock = clock
        self.engine = TradingEngine(
            db, broker,
            stake_strategy=build_stake_strategy(cfg),
            entry_strategy=entry_strategy or _entry_strategy_from(cfg),
            cfg=cfg,
            clock=clock,
        )
        self.signal_pipeline = SignalPipeline(db, self.engine, cfg=cfg, clock=clock)
        self.contract_monitor = ContractMonitor(db, broker, cfg=cfg, clock=clock)
        self.last_signal_cleanup: Optional[date] = None
        self.scheduler = self._build_scheduler()

    def _build_scheduler(self) -> Scheduler:
        scheduler = Scheduler(
            tick_seconds=self.cfg.SCHEDULER_TICK_SECONDS,
            maintenance_interval=self.cfg.MAINTENANCE_INTERVAL_SECONDS,
            maintenance=self.run_maintenance,
        )
        scheduler.add_job("trading_loop", self.cfg.TRADING_LOOP_INTERVAL, self.run_trading_loop)
        scheduler.add_job("signal_processor", self.cfg.SIGNAL_PROCESSOR_INTERVAL, self.run_signal_pipeline)
        scheduler.add_job("contract_monitor", self.cfg.CONTRACT_MONITOR_INTERVAL, self.run_contract_monitor)
        return scheduler

    async def run_trading_loop(self):
        await self.engine.process_trading_loop()
        await self.engine.cleanup_stale_sessions()
        await self.engine.perform_health_check()

    async def run_signal_pipeline(self):
        await self.signal_pipeline.process_unprocessed_signals(self.cfg.SIGNAL_BATCH_SIZE)
        # Once per local calendar day, whenever the first run of that day happens
        today = local_today(self._clock(), self.cfg.APP_TIMEZONE)
        if self.last_signal_cleanup != today:
            await self.signal_pipeline.cleanup_old_signals(self.cfg.SIGNAL_RETENTION_DAYS)
            self.last_signal_cleanup = today

    async def run_contract_monitor(self):
        await self.contract_monitor.process_contract_results()

    async def run_maintenance(self):
        await run_gc()
        if not await self.db.ping():
            logger.warning("Maintenance: database ping failed")

    async def start(self):
        await self.db.connect()

    async def run(self):
        await self.scheduler.run_forever()

    def stop(self):
        self.scheduler.stop()

    async def close(self):
        await self.broker.close()
        await self.db.disconnect()


def _entry_strategy_from(cfg: Settings) -> Optional[EntryStrategy]:
    if not cfg.AUTO_ENTRY_DIRECTION:
        return None
    return FixedDirectionEntry(parse_direction(cfg.AUTO_ENTRY_DIRECTION), cfg.DEFAULT_ASSET)


def build_broker(cfg: Settings) -> BrokerGateway:
    if cfg.BROKER_MODE == "rest":
        if not cfg.BROKER_BASE_URL:
            raise ValueError("BROKER_BASE_URL is required when BROKER_MODE=rest")
        return BrokerRest(cfg.BROKER_BASE_URL, cfg.BROKER_API_TOKEN, timeout=cfg.BROKER_TIMEOUT_SEC)
    return PaperBroker(
        settle_after=cfg.PAPER_SETTLE_SECONDS,
        payout_rate=cfg.PAPER_PAYOUT_RATE,
        win_probability=cfg.PAPER_WIN_PROBABILITY,
    )


def build_automation(cfg: Settings = default_settings) -> TradingAutomation:
    return TradingAutomation(Database(cfg.DATABASE_URL), build_broker(cfg), cfg=cfg)


async def run(cfg: Settings = default_settings):
    """Process entry: connect (failing loudly if storage is down), schedule until signalled."""
    configure_logging(cfg.LOG_LEVEL)
    logger.info("Starting VTM Option scheduler (broker=%s)", cfg.BROKER_MODE)
    automation = build_automation(cfg)
    try:
        await automation.start()

        if cfg.METRICS_PORT > 0:
            start_http_server(cfg.METRICS_PORT)
            logger.info("Metrics exposed on port %d", cfg.METRICS_PORT)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, automation.stop)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no signal handler support
                pass

        await automation.run()
    finally:
        await automation.close()
        logger.info("Shutdown complete")
