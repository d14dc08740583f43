"""
Process entry point.

Architecture:
    CycleScheduler (window boundaries)
        -> MarketWorker per symbol
            -> MarketDiscovery (Gamma) -> OrderExecutionEngine.reconcile
            -> drift check (exchange position vs PositionLedger)
            -> MarketDataClient (CLOB book) -> DecisionEngine -> OrderExecutionEngine
            -> TelemetrySink
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from dotenv import load_dotenv

from .config import BotConfig
from .cycle import MarketWorker
from .decision import DecisionEngine, RiskLimits
from .errors import AuthError, BotError, ConfigurationError
from .exchange import Exchange
from .execution import OrderExecutionEngine
from .gamma_client import MarketDiscovery
from .journal_sqlite import EventJournalSQLite
from .ledger import PositionLedger
from .market_data import MarketDataClient
from .paper_exchange import PaperExchange
from .scheduler import CycleScheduler
from .strategy import ArbitrageStrategy, Strategy, ThresholdStrategy
from .telemetry import JournalTelemetrySink, LogTelemetrySink, MultiSink, TelemetrySink
from .time_utils import Clock
from .util import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_AUTH = 2
EXIT_STARTUP = 3


def build_strategy(config: BotConfig) -> Strategy:
    """
    Build the strategy named by STRATEGY.

    Raises:
        ConfigurationError: if the name is unknown
    """
    if config.strategy == "threshold":
        return ThresholdStrategy(
            entry_price=config.entry_price,
            take_profit_price=config.take_profit_price,
            stop_loss_price=config.stop_loss_price,
            target_size=config.target_size,
        )
    if config.strategy == "arbitrage":
        return ArbitrageStrategy(
            min_profit=config.min_profit_threshold,
            slippage=config.slippage,
            target_size=config.target_size,
            balance_threshold=config.position_balance_threshold,
        )
    raise ConfigurationError(f"Unknown strategy: {config.strategy}")


class BotApp:
    """Builds the components from config and runs the scheduler."""

    def __init__(
        self,
        config: BotConfig,
        exchange: Optional[Exchange] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the application.

        Args:
            config: Bot configuration (already validated)
            exchange: Exchange override; defaults to paper or live per DRY_RUN
            clock: Time source
        """
        self.config = config
        self.clock = clock or Clock()
        self.exchange = exchange

        self.journal: Optional[EventJournalSQLite] = None
        self.ledger: Optional[PositionLedger] = None
        self.discovery: Optional[MarketDiscovery] = None
        self.market_data: Optional[MarketDataClient] = None
        self.execution: Optional[OrderExecutionEngine] = None
        self.workers: list[MarketWorker] = []
        self.scheduler: Optional[CycleScheduler] = None

        self._shutdown_event = asyncio.Event()

    def _build_exchange(self) -> Exchange:
        if self.config.dry_run:
            logger.info("DRY_RUN enabled: using paper exchange")
            return PaperExchange()
        from .clob_exchange import ClobExchange
        return ClobExchange(self.config)

    def _setup_components(self) -> None:
        """Initialize all components."""
        cfg = self.config

        if cfg.journal_path:
            self.journal = EventJournalSQLite(db_path=cfg.journal_path)
            self.journal.init_schema()
            self.ledger = PositionLedger.load(self.journal)
        else:
            self.ledger = PositionLedger()

        if self.exchange is None:
            self.exchange = self._build_exchange()

        http_kwargs = dict(
            timeout_seconds=cfg.http_timeout_secs,
            max_attempts=cfg.max_attempts,
            backoff_base_seconds=cfg.backoff_base_secs,
            backoff_max_seconds=cfg.backoff_max_secs,
            sleep=self.clock.sleep,
        )
        self.discovery = MarketDiscovery(
            base_url=cfg.gamma_api_url,
            slug_template=cfg.market_slug_template,
            **http_kwargs,
        )
        self.market_data = MarketDataClient(
            base_url=cfg.pm_rest_url,
            clock=self.clock,
            stale_threshold_ms=cfg.stale_threshold_ms,
            wind_down_ms=cfg.wind_down_ms,
            **http_kwargs,
        )

        limits = RiskLimits(
            max_position=cfg.max_position,
            max_order_size=cfg.max_order_size,
            min_order_size=cfg.min_order_size,
        )
        self.execution = OrderExecutionEngine(
            exchange=self.exchange,
            ledger=self.ledger,
            limits=limits,
            journal=self.journal,
            clock=self.clock,
            max_attempts=cfg.max_attempts,
            backoff_base_seconds=cfg.backoff_base_secs,
            backoff_max_seconds=cfg.backoff_max_secs,
            max_trades_per_day=cfg.max_trades_per_day,
            retention_ms=cfg.record_retention_ms,
        )

        strategy = build_strategy(cfg)
        logger.info(f"Strategy: {strategy.name} ({cfg.strategy_version})")
        decision_engine = DecisionEngine(
            strategy=strategy,
            limits=limits,
            strategy_version=cfg.strategy_version,
            stale_threshold_ms=cfg.stale_threshold_ms,
        )

        telemetry: TelemetrySink = LogTelemetrySink()
        if self.journal is not None:
            telemetry = MultiSink(telemetry, JournalTelemetrySink(self.journal))

        self.workers = [
            MarketWorker(
                symbol=symbol,
                discovery=self.discovery,
                market_data=self.market_data,
                decision_engine=decision_engine,
                execution=self.execution,
                ledger=self.ledger,
                telemetry=telemetry,
                clock=self.clock,
                drift_tolerance=cfg.drift_tolerance,
                kill_switch=cfg.kill_switch,
                eval_interval_ms=cfg.eval_interval_ms,
            )
            for symbol in cfg.crypto_symbols
        ]

        self.scheduler = CycleScheduler(
            workers=self.workers,
            clock=self.clock,
            window_ms=cfg.window_ms,
            deadline_margin_ms=cfg.deadline_margin_ms,
            start_delay_ms=int(cfg.cycle_start_delay_secs * 1000),
            overrun_policy=cfg.overrun_policy,
            shutdown_grace_secs=cfg.shutdown_grace_secs,
        )

    async def start(self) -> None:
        """
        Start the application.

        Raises:
            AuthError: if the exchange rejects the credentials
        """
        logger.info(
            f"Starting poly-5min-bot: markets={','.join(self.config.crypto_symbols)} "
            f"dry_run={self.config.dry_run} kill_switch={self.config.kill_switch}"
        )
        self._setup_components()

        await self.exchange.initialize()

        # Settle orders left open by a previous run
        open_records = self.execution.open_records()
        if open_records:
            logger.info(f"Reconciling {len(open_records)} open orders from previous run")
            await self.execution.reconcile()

        self.scheduler.start()
        logger.info("poly-5min-bot started")

    async def stop(self) -> None:
        """Stop the application."""
        logger.info("Stopping poly-5min-bot...")

        if self.scheduler:
            await self.scheduler.shutdown()
        if self.discovery:
            await self.discovery.close()
        if self.market_data:
            await self.market_data.close()
        if self.exchange:
            await self.exchange.close()
        if self.journal:
            self.journal.close()

        if self.ledger:
            for (market_id, token_id), pos in self.ledger.positions().items():
                logger.info(
                    f"Final position {market_id} token {token_id}: qty={pos.quantity} "
                    f"avg={pos.avg_entry_price:.4f} realized_pnl={pos.realized_pnl:.4f}"
                )

        logger.info("poly-5min-bot stopped")

    def request_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    def resume_halted(self) -> None:
        """Operator action: resume every halted market."""
        for worker in self.workers:
            if worker.halted:
                worker.resume()

    async def run(self) -> None:
        """
        Run the application until shutdown signal.

        SIGINT/SIGTERM shut down gracefully; SIGHUP resumes halted markets.
        """
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown)
        loop.add_signal_handler(signal.SIGHUP, self.resume_halted)

        try:
            await self.start()
            await self._shutdown_event.wait()
        finally:
            await self.stop()


def main() -> int:
    """Entry point for the application."""
    load_dotenv()

    try:
        config = BotConfig.from_env()
    except ConfigurationError as e:
        setup_logging("poly_5min_bot")
        logger.error(f"Config error: {e}")
        return EXIT_CONFIG

    setup_logging("poly_5min_bot", level=config.log_level)

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config error: {error}")
        return EXIT_CONFIG

    app = BotApp(config)
    try:
        asyncio.run(app.run())
    except AuthError as e:
        logger.critical(f"Authentication failed at startup: {e}")
        return EXIT_AUTH
    except BotError as e:
        logger.critical(f"Startup failed: {type(e).__name__}: {e}")
        return EXIT_STARTUP
    except KeyboardInterrupt:
        pass

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
