"""EngineManager — builds the per-strategy runtimes and runs the engine.

Each enabled strategy in ``strategies.json`` gets a ``StrategyRuntime``
with its own candles, levels and signal state; all of them share one
``TradingEngine``, ``PositionManager`` and ``RiskManager``.  A strategy
whose configuration cannot be resolved is logged and skipped without
affecting its siblings.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from leveltrade.broker.base import HistoricalClient, InstrumentResolver
from leveltrade.broker.smartapi_client import SUPPORTED_INTERVALS
from leveltrade.config import Config
from leveltrade.engine import (
    COMMANDS,
    BoundaryEvent,
    SquareOffEvent,
    StrategyRuntime,
    TradingEngine,
)
from leveltrade.errors import ConfigurationError
from leveltrade.execution.position_manager import SHUTDOWN, PositionManager
from leveltrade.models.strategy_config import StrategyConfig
from leveltrade.risk.risk_manager import RiskManager
from leveltrade.strategy.models import Instrument
from leveltrade.strategy.registry import get_entry_policy
from leveltrade.strategy.session_filter import IST

logger = logging.getLogger("leveltrade.engine_manager")


class EngineManager:
    """Lifecycle manager for the trading engine and its strategies.

    Args:
        config: Global ``Config`` loaded from ``.env``.
        history: Shared historical candle client.
        strategies: Strategy configurations (disabled ones are skipped).
        positions: Shared ``PositionManager``.
        risk: Shared ``RiskManager``.
        notifier: Notification channel (Telegram or log).
        feed: Tick feed.
        resolver: Instrument master, required by option-mapped strategies.
        trade_log: ``TradeRepo`` used to seed daily P&L.
    """

    def __init__(
        self,
        config: Config,
        history: HistoricalClient,
        strategies: list[StrategyConfig],
        positions: PositionManager,
        risk: RiskManager,
        notifier,
        feed=None,
        resolver: Optional[InstrumentResolver] = None,
        trade_log=None,
    ) -> None:
        self._config = config
        self._history = history
        self._strategies = [s for s in strategies if s.enabled]
        self._positions = positions
        self._risk = risk
        self._notifier = notifier
        self._feed = feed
        self._resolver = resolver
        self._trade_log = trade_log
        self._engine: Optional[TradingEngine] = None
        self._tasks: list[asyncio.Task] = []
        self._clock_running = False
        self.failed: dict[str, str] = {}

    # ── Public API ───────────────────────────────────────────────────────

    @property
    def engine(self) -> TradingEngine:
        if self._engine is None:
            self.build_engine()
        return self._engine

    @property
    def strategy_names(self) -> list[str]:
        return list(self.engine.runtimes.keys())

    def build_engine(self) -> TradingEngine:
        """Resolve every strategy and construct the shared engine.

        Call **once** before :meth:`run_all`.
        """
        runtimes: list[StrategyRuntime] = []
        for cfg in self._strategies:
            try:
                runtimes.append(self._build_runtime(cfg))
            except ConfigurationError as exc:
                self.failed[cfg.name] = str(exc)
                logger.error("Strategy '%s' skipped: %s", cfg.name, exc)
                self._notifier.notify(f"[{cfg.name}] Not started: {exc}")
                continue
            logger.info(
                "Registered strategy '%s' → %s on %s (%s)",
                cfg.name, cfg.entry_policy, cfg.underlying, cfg.token,
            )

        self._engine = TradingEngine(
            config=self._config,
            runtimes=runtimes,
            history=self._history,
            positions=self._positions,
            risk=self._risk,
            notifier=self._notifier,
            feed=self._feed,
            resolver=self._resolver,
            trade_log=self._trade_log,
        )
        self._register_commands()
        return self._engine

    def _build_runtime(self, cfg: StrategyConfig) -> StrategyRuntime:
        try:
            policy = get_entry_policy(cfg.entry_policy)
        except KeyError as exc:
            raise ConfigurationError(str(exc), strategy=cfg.name) from exc

        if cfg.candle_interval_minutes not in SUPPORTED_INTERVALS:
            raise ConfigurationError(
                f"unsupported candle interval {cfg.candle_interval_minutes}m "
                f"(available: {', '.join(str(m) for m in SUPPORTED_INTERVALS)})",
                strategy=cfg.name,
            )

        if cfg.is_option_mapped:
            if self._resolver is None:
                raise ConfigurationError(
                    "option_band needs an instrument master", strategy=cfg.name
                )
            today = datetime.now(IST).date()
            if self._resolver.resolve_expiry(cfg.underlying, cfg.expiry, today) is None:
                raise ConfigurationError(
                    f"no {cfg.underlying} option expiry matches '{cfg.expiry}'",
                    strategy=cfg.name,
                )

        instrument = self._resolver.get(cfg.token) if self._resolver is not None else None
        if instrument is None:
            instrument = Instrument(
                token=cfg.token,
                symbol=cfg.underlying,
                exchange=cfg.exchange,
                lot_size=cfg.lot_size,
                name=cfg.underlying,
            )
        return StrategyRuntime(cfg, instrument, policy)

    def _register_commands(self) -> None:
        for name in COMMANDS:
            self._notifier.on_command(name, self._command_handler(name))

    def _command_handler(self, name: str):
        async def handler(args: list[str]) -> str:
            return await self.execute(name, args)

        return handler

    async def execute(self, name: str, args=()) -> str:
        """Run an operator command inside the engine and return its reply."""
        return await self.engine.execute(name, tuple(args))

    def status(self) -> dict:
        data = self.engine.status()
        data["failed"] = dict(self.failed)
        return data

    def levels(self) -> dict:
        return self.engine.levels()

    def positions(self) -> dict:
        return self.engine.positions()

    # ── Running ──────────────────────────────────────────────────────────

    async def initialize(self, now: Optional[datetime] = None) -> None:
        await self.engine.initialize(now)
        logger.info(
            "Initialised %d strategy(ies); %d failed",
            len(self.engine.runtimes), len(self.failed),
        )

    async def run_all(self, with_clock: bool = True) -> None:
        """Initialise, then run the engine, feed, clock and notifier together.

        Returns when the engine stops (see :meth:`stop_all`).
        """
        engine = self.engine
        await self.initialize()

        self._tasks = []
        if self._feed is not None:
            self._tasks.append(asyncio.create_task(self._feed.run()))
        if with_clock:
            self._tasks.append(asyncio.create_task(self._clock_loop()))
        notifier_run = getattr(self._notifier, "run", None)
        if notifier_run is not None:
            self._tasks.append(asyncio.create_task(notifier_run()))

        try:
            await engine.run()
        finally:
            self._clock_running = False
            if self._feed is not None:
                self._feed.stop()
            notifier_stop = getattr(self._notifier, "stop", None)
            if notifier_stop is not None:
                notifier_stop()
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            flush = getattr(self._notifier, "flush", None)
            if flush is not None:
                await flush()

    async def _clock_loop(self, period: float = 1.0) -> None:
        """Post the wall-clock time so candles close and square-off fires on time."""
        self._clock_running = True
        while self._clock_running:
            self.engine.post(BoundaryEvent(datetime.now(IST)))
            await asyncio.sleep(period)

    def stop_all(self) -> None:
        """Square off everything and stop the engine after queued events."""
        engine = self.engine
        engine.post(SquareOffEvent(SHUTDOWN))
        engine.stop()
        logger.info("Shutdown requested: squaring off and stopping engine.")

