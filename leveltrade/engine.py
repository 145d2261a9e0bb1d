"""LevelTrade — Trading engine (event queue + synchronous dispatch).

Every state change happens inside :meth:`TradingEngine.dispatch`, which
consumes events from one ``asyncio.Queue``:

* ``TickEvent`` — a last-traded price from the feed.
* ``BoundaryEvent`` — wall-clock minute ticks (candle close, square-off).
* ``ConfirmationEvent`` — result of a confirmation task (history I/O).
* ``CommandEvent`` — an operator command with a reply future.
* ``SquareOffEvent`` — forced flattening (end of day / shutdown).

I/O runs in tasks that post their result back to the queue, so strategy
state is never touched concurrently.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Optional

from leveltrade.broker.base import HistoricalClient, InstrumentResolver
from leveltrade.config import Config
from leveltrade.errors import DataUnavailable, EntryRejected
from leveltrade.execution.position_manager import (
    END_OF_DAY,
    MANUAL,
    SEGMENTS,
    PositionEvent,
    PositionManager,
    segment_of,
)
from leveltrade.models.strategy_config import StrategyConfig
from leveltrade.risk.risk_manager import RiskManager
from leveltrade.risk.sl_tp import calculate_exit_levels
from leveltrade.strategy.candles import CandleAggregator, candle_floor
from leveltrade.strategy.indicators import atr, latest_rsi
from leveltrade.strategy.levels import IndicatorSettings, LevelEngine
from leveltrade.strategy.models import Candle, EntryRequest, Instrument, Signal, Tick
from leveltrade.strategy.registry import EntryContext, EntryPlan, EntryPolicy
from leveltrade.strategy.session_filter import (
    is_entry_allowed,
    is_market_open,
    is_square_off_due,
    is_trading_day,
    session_close,
    to_ist,
)
from leveltrade.strategy.signals import NO_CANDLE, TIMED_OUT, SignalStateMachine, evaluate_retest

logger = logging.getLogger("leveltrade")

# Exchange whose square-off time applies to each segment.
_SEGMENT_EXCHANGE = {"equity": "NSE", "commodity": "MCX"}

COMMANDS = (
    "status", "pnl", "positions", "levels", "halt", "resume",
    "recompute", "stop", "start", "squareoff",
)


# ── Events ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TickEvent:
    token: str
    price: float
    time: datetime


@dataclass(frozen=True)
class BoundaryEvent:
    time: datetime


@dataclass(frozen=True)
class ConfirmationEvent:
    """Outcome of one strategy's confirmation I/O."""

    strategy: str
    signals: tuple[Signal, ...]
    candle: Optional[Candle] = None
    error: str = ""  # rejects every signal when set
    plan: Optional[EntryPlan] = None
    plan_index: Optional[int] = None  # signal the plan was built for
    plan_error: str = ""


@dataclass(frozen=True)
class CommandEvent:
    name: str
    args: tuple[str, ...] = ()
    reply: Optional[asyncio.Future] = field(default=None, compare=False)


@dataclass(frozen=True)
class SquareOffEvent:
    reason: str
    segment: Optional[str] = None  # None = every segment


_STOP = object()


# ── Per-strategy state ───────────────────────────────────────────────────


class StrategyRuntime:
    """Candles, levels and signal state owned by one strategy.

    Args:
        config: The strategy's settings.
        instrument: The signal instrument (the underlying).
        policy: Entry policy resolved from ``config.entry_policy``.
    """

    def __init__(
        self, config: StrategyConfig, instrument: Instrument, policy: EntryPolicy
    ) -> None:
        self.config = config
        self.instrument = instrument
        self.policy = policy
        self.candles = CandleAggregator(config.candle_interval_minutes, config.max_candles)
        self.levels = LevelEngine()
        self.signals = SignalStateMachine(config)
        self.running = config.enabled
        self.last_candle_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def token(self) -> str:
        return self.instrument.token

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.config.candle_interval_minutes)

    @property
    def indicator_settings(self) -> IndicatorSettings:
        cfg = self.config
        return IndicatorSettings(
            bollinger_period=cfg.bollinger.period,
            bollinger_k=cfg.bollinger.k,
            rsi_period=cfg.rsi.period,
            atr_period=cfg.atr.period,
        )


# ── Engine ───────────────────────────────────────────────────────────────


class TradingEngine:
    """Drives every strategy from one event queue.

    Args:
        config: Application configuration (square-off times).
        runtimes: One ``StrategyRuntime`` per strategy.
        history: Historical candle source (backfill and confirmation).
        positions: Shared ``PositionManager``.
        risk: Shared ``RiskManager``.
        notifier: Notification channel for alerts.
        feed: Optional feed; traded instruments are subscribed on it.
        resolver: Optional instrument master for option entries.
        trade_log: Optional ``TradeRepo`` used to seed daily P&L.
    """

    def __init__(
        self,
        config: Config,
        runtimes: list[StrategyRuntime],
        history: HistoricalClient,
        positions: PositionManager,
        risk: RiskManager,
        notifier,
        feed=None,
        resolver: Optional[InstrumentResolver] = None,
        trade_log=None,
    ) -> None:
        self._config = config
        self._runtimes: dict[str, StrategyRuntime] = {rt.name: rt for rt in runtimes}
        self._history = history
        self._positions = positions
        self._risk = risk
        self._notifier = notifier
        self._feed = feed
        self._resolver = resolver
        self._trade_log = trade_log

        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()
        self._running = False
        self._now: Optional[datetime] = None
        self._last_minute: Optional[datetime] = None
        self._session_date: Optional[date] = None
        self._squared_off: set[str] = set()
        self.started_at: Optional[datetime] = None
        self.last_tick_at: Optional[datetime] = None

    @property
    def runtimes(self) -> dict[str, StrategyRuntime]:
        return dict(self._runtimes)

    @property
    def running(self) -> bool:
        return self._running

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self, now: Optional[datetime] = None) -> None:
        """Backfill history, compute levels and subscribe the feed."""
        now = to_ist(now or datetime.now().astimezone())
        self.started_at = now
        self._start_session(now.date())
        self._now = now

        for rt in self._runtimes.values():
            await self._backfill(rt, now)

        if self._feed is not None:
            self._feed.on_tick(self._on_feed_tick)
            self._feed.subscribe([rt.instrument for rt in self._runtimes.values()])
            restored = [p.instrument for p in self._positions.positions]
            restored += [p.request.instrument for p in self._positions.pending]
            if restored:
                self._feed.subscribe(restored)

    async def _backfill(self, rt: StrategyRuntime, now: datetime) -> None:
        cfg = rt.config
        try:
            candles = await self._history.get_historical_candles(
                rt.instrument,
                cfg.candle_interval_minutes,
                now - timedelta(days=cfg.history_days),
                now,
            )
        except DataUnavailable as exc:
            logger.warning("[%s] Backfill failed: %s", rt.name, exc)
            self._notify(f"[{rt.name}] Backfill failed: {exc}")
            return
        except Exception as exc:
            logger.exception("[%s] Backfill failed; strategy stopped", rt.name)
            rt.running = False
            self._notify(f"[{rt.name}] Not started: backfill failed: {exc}")
            return

        live_open = candle_floor(now, cfg.candle_interval_minutes)
        closed = [
            replace(c, open_time=to_ist(c.open_time))
            for c in candles
            if to_ist(c.open_time) < live_open
        ]
        rt.candles.seed(rt.token, closed)
        if closed:
            rt.last_candle_at = closed[-1].open_time
            self._refresh(rt, closed[-1].close, now)
        logger.info(
            "[%s] Backfilled %d candle(s) for %s; %d level(s)",
            rt.name,
            len(closed),
            rt.instrument.symbol,
            len(rt.levels.levels(rt.token).for_kind("both")),
        )

    def post(self, event) -> None:
        self._queue.put_nowait(event)

    def _on_feed_tick(self, tick: Tick) -> None:
        self.post(TickEvent(tick.token, tick.price, tick.time))

    async def run(self) -> None:
        """Consume events until :meth:`stop`."""
        self._running = True
        logger.info("Engine running with %d strategy(ies)", len(self._runtimes))
        while True:
            event = await self._queue.get()
            if event is _STOP:
                break
            try:
                self.dispatch(event)
            except Exception:
                logger.exception("Error handling %s", type(event).__name__)
        self._running = False
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Engine stopped")

    def stop(self) -> None:
        """Stop after the events already queued."""
        self.post(_STOP)

    async def drain(self) -> None:
        """Dispatch queued events and wait for confirmation tasks until idle.

        Used by replays and tests in place of :meth:`run`.
        """
        while True:
            while not self._queue.empty():
                event = self._queue.get_nowait()
                if event is not _STOP:
                    self.dispatch(event)
            in_flight = [t for t in self._tasks if not t.done()]
            if in_flight:
                await asyncio.wait(in_flight)
            elif self._queue.empty():
                break

    async def wait_idle(self, poll: float = 0.05) -> None:
        """Wait until :meth:`run` has consumed the queue and no confirmation is in flight."""
        while not self._queue.empty() or self._tasks:
            await asyncio.sleep(poll)

    async def execute(self, name: str, args: tuple[str, ...] = ()) -> str:
        """Queue an operator command and wait for its reply."""
        reply = asyncio.get_running_loop().create_future()
        self.post(CommandEvent(name, tuple(args), reply))
        return await reply

    # ── Dispatch ─────────────────────────────────────────────────────────

    def dispatch(self, event) -> None:
        if isinstance(event, TickEvent):
            self._on_tick(event)
        elif isinstance(event, BoundaryEvent):
            self._advance_clock(to_ist(event.time))
        elif isinstance(event, ConfirmationEvent):
            self._on_confirmation(event)
        elif isinstance(event, CommandEvent):
            self._on_command(event)
        elif isinstance(event, SquareOffEvent):
            self._square_off(event.reason, event.segment, self._now or datetime.now().astimezone())
        else:
            raise TypeError(f"Unknown event {event!r}")

    # ── Clock ────────────────────────────────────────────────────────────

    def _advance_clock(self, now: datetime) -> None:
        if self._now is None or now > self._now:
            self._now = now
        if self._session_date != now.date():
            self._start_session(now.date())

        minute = now.replace(second=0, microsecond=0)
        if self._last_minute is not None and minute <= self._last_minute:
            return
        self._last_minute = minute

        for rt in self._runtimes.values():
            exchange = rt.instrument.exchange
            seed_next = (
                is_market_open(minute, exchange) and minute.time() < session_close(exchange)
            )
            finalized = rt.candles.on_interval_boundary(rt.token, minute, seed_next)
            if finalized is not None:
                self._on_candle_closed(rt, finalized, now)
            if rt.signals.busy_expired(now):
                logger.warning("[%s] Confirmation lost; releasing busy flag", rt.name)
                rt.signals.end_confirmation()

        for event in self._positions.expire_pending(now):
            self._notify_position(event)

        if is_trading_day(minute):
            for segment in SEGMENTS:
                if segment in self._squared_off:
                    continue
                if is_square_off_due(
                    minute,
                    _SEGMENT_EXCHANGE[segment],
                    self._config.equity_square_off,
                    self._config.commodity_square_off,
                ):
                    self._square_off(END_OF_DAY, segment, now)

    def _start_session(self, day: date) -> None:
        previous = self._session_date
        self._session_date = day
        if self._risk.state.session_date != day:
            seed = self._trade_log.realized_pnl(day) if self._trade_log is not None else 0.0
            self._risk.reset(day, seed)
        if previous is not None:
            self._positions.reset_session()
            self._squared_off.clear()
            for rt in self._runtimes.values():
                rt.signals.clear_watches()
            logger.info("New session %s", day)
            self._notify(f"New session {day.isoformat()}")

    # ── Ticks and candles ────────────────────────────────────────────────

    def _on_tick(self, event: TickEvent) -> None:
        now = to_ist(event.time)
        self._advance_clock(now)
        self.last_tick_at = now

        for rt in self._runtimes.values():
            if rt.token != event.token:
                continue
            if not is_market_open(now, rt.instrument.exchange):
                continue
            finalized = rt.candles.on_tick(rt.token, event.price, now)
            if finalized is not None:
                self._on_candle_closed(rt, finalized, now)
            if rt.config.indicator_cadence == "tick":
                rt.levels.compute_indicators(
                    rt.token, self._with_live(rt), rt.indicator_settings, now
                )
            if self._accepts_touches(rt, now) and self._near_level(rt, event.price):
                touched = rt.signals.on_tick(
                    rt.instrument, event.price, now, rt.levels.levels(rt.token)
                )
                for signal in touched:
                    self._notify(
                        f"[{rt.name}] Touch alert: {rt.instrument.symbol} "
                        f"{event.price:.2f} near {signal.level.kind} {signal.level.price:.2f}"
                    )

        for position_event in self._positions.on_tick(event.token, event.price, now):
            self._notify_position(position_event)

    def _accepts_touches(self, rt: StrategyRuntime, now: datetime) -> bool:
        if not rt.running or self._risk.state.trading_halted:
            return False
        if self._positions.is_segment_closed(segment_of(rt.instrument)):
            return False
        return is_entry_allowed(
            now,
            rt.instrument.exchange,
            self._config.equity_square_off,
            self._config.commodity_square_off,
        )

    def _near_level(self, rt: StrategyRuntime, price: float) -> bool:
        distance = rt.levels.distance_to_nearest(rt.token, price, rt.config.direction)
        return distance is not None and distance <= rt.config.proximity_pct / 100.0

    def _with_live(self, rt: StrategyRuntime) -> list[Candle]:
        candles = rt.candles.candles(rt.token)
        live = rt.candles.live_candle(rt.token)
        return candles + [live] if live is not None else candles

    def _refresh(self, rt: StrategyRuntime, price: float, now: datetime) -> None:
        candles = rt.candles.candles(rt.token)
        rt.levels.refresh(rt.token, candles, price, rt.config.sr, now)
        rt.levels.compute_indicators(rt.token, candles, rt.indicator_settings, now)

    def _on_candle_closed(self, rt: StrategyRuntime, candle: Candle, now: datetime) -> None:
        rt.last_candle_at = candle.open_time
        price = rt.candles.last_price(rt.token) or candle.close
        self._refresh(rt, price, now)

        due = rt.signals.take_due(candle.open_time + rt.interval)
        if due:
            self._start_confirmation(rt, due, now)

    # ── Confirmation ─────────────────────────────────────────────────────

    def _start_confirmation(
        self, rt: StrategyRuntime, signals: list[Signal], now: datetime
    ) -> None:
        rt.signals.begin_confirmation(now)
        candle = None
        if rt.config.confirmation_source == "aggregated":
            candle = rt.candles.candle_at(rt.token, signals[0].candle_time)
        context = (
            rt.levels.levels(rt.token),
            tuple(rt.candles.candles(rt.token)),
        )
        task = asyncio.get_running_loop().create_task(
            self._confirm(rt, tuple(signals), candle, context, now)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _confirm(
        self,
        rt: StrategyRuntime,
        signals: tuple[Signal, ...],
        candle: Optional[Candle],
        context: tuple,
        now: datetime,
    ) -> None:
        try:
            event = await asyncio.wait_for(
                self._confirm_io(rt, signals, candle, context, now),
                timeout=rt.config.confirmation_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("[%s] Confirmation timed out", rt.name)
            event = ConfirmationEvent(rt.name, signals, error=TIMED_OUT)
        except DataUnavailable as exc:
            logger.warning("[%s] Confirmation candle unavailable: %s", rt.name, exc)
            event = ConfirmationEvent(rt.name, signals, error=NO_CANDLE)
        except Exception as exc:
            logger.exception("[%s] Confirmation failed", rt.name)
            event = ConfirmationEvent(rt.name, signals, error=f"confirmation failed: {exc}")
        self.post(event)

    async def _confirm_io(
        self,
        rt: StrategyRuntime,
        signals: tuple[Signal, ...],
        candle: Optional[Candle],
        context: tuple,
        now: datetime,
    ) -> ConfirmationEvent:
        window = signals[0].candle_time
        if candle is None:
            candle = await self._fetch_candle(rt, window)

        # Decide which signal (if any) trades; dispatch re-applies the verdicts.
        plan_index = None
        for i, signal in enumerate(signals):
            confirmed, _ = evaluate_retest(candle, signal.level.price, signal.level.kind)
            if confirmed:
                plan_index = i
                break
        if plan_index is None:
            return ConfirmationEvent(rt.name, signals, candle=candle)

        levels, local_candles = context
        ctx = EntryContext(
            config=rt.config,
            signal=signals[plan_index],
            candle=candle,
            history=self._history,
            resolver=self._resolver,
            levels=levels,
            local_candles=local_candles,
            now=now,
        )
        try:
            plan = await rt.policy.plan(ctx)
        except EntryRejected as exc:
            return ConfirmationEvent(
                rt.name, signals, candle=candle, plan_index=plan_index, plan_error=exc.reason
            )
        except DataUnavailable as exc:
            return ConfirmationEvent(
                rt.name, signals, candle=candle, plan_index=plan_index, plan_error=str(exc)
            )
        return ConfirmationEvent(
            rt.name, signals, candle=candle, plan=plan, plan_index=plan_index
        )

    async def _fetch_candle(self, rt: StrategyRuntime, window: datetime) -> Candle:
        candles = await self._history.get_historical_candles(
            rt.instrument,
            rt.config.candle_interval_minutes,
            window,
            window + rt.interval,
        )
        for candle in candles:
            if to_ist(candle.open_time) == window:
                return replace(candle, open_time=window)
        raise DataUnavailable(
            f"no {rt.config.candle_interval_minutes}m candle at {window:%H:%M}",
            symbol=rt.instrument.symbol,
        )

    def _on_confirmation(self, event: ConfirmationEvent) -> None:
        rt = self._runtimes.get(event.strategy)
        if rt is None:
            return
        rt.signals.end_confirmation()
        now = self._now or datetime.now().astimezone()

        for signal in event.signals:
            if event.error:
                rt.signals.reject(signal, event.error)
            else:
                rt.signals.confirm(signal, event.candle)
            verdict = "Confirmed" if signal.state == "confirmed" else "Rejected"
            self._notify(
                f"[{rt.name}] {verdict}: {signal.instrument.symbol} "
                f"{signal.level.kind} {signal.level.price:.2f}: {signal.reason}"
            )

        if event.plan_index is None:
            return
        signal = event.signals[event.plan_index]
        if event.plan_error or event.plan is None:
            self._notify(f"[{rt.name}] No entry: {event.plan_error}")
            return
        if not rt.running or self._risk.state.trading_halted:
            self._notify(f"[{rt.name}] No entry: trading paused")
            return

        request, why = self._build_request(rt, signal, event.plan, now)
        if request is None:
            self._notify(f"[{rt.name}] No entry: {why}")
            return

        result = self._positions.submit(request, now)
        if result is None:
            return
        if result.kind in ("opened", "armed"):
            rt.signals.record_trade(signal, now)
            if self._feed is not None and request.instrument.token != rt.token:
                self._feed.subscribe([request.instrument])
        self._notify_position(result)

    def _build_request(
        self, rt: StrategyRuntime, signal: Signal, plan: EntryPlan, now: datetime
    ) -> tuple[Optional[EntryRequest], str]:
        cfg = rt.config
        if not is_entry_allowed(
            now,
            plan.instrument.exchange,
            self._config.equity_square_off,
            self._config.commodity_square_off,
        ):
            return None, f"entries closed for {plan.instrument.exchange}"

        value, atr_value = self._entry_indicators(rt, plan)
        if cfg.rsi.enabled:
            if value is None:
                logger.info("[%s] RSI gate skipped: not enough candles", rt.name)
            elif plan.side == "long" and value >= cfg.rsi.overbought:
                return None, f"RSI {value:.1f} at or above {cfg.rsi.overbought:g}"
            elif plan.side == "short" and value <= cfg.rsi.oversold:
                return None, f"RSI {value:.1f} at or below {cfg.rsi.oversold:g}"

        if not cfg.atr.enabled:
            atr_value = None
        exits = calculate_exit_levels(
            plan.price, plan.side, atr_value, cfg.targets, cfg.atr, plan.levels_beyond
        )
        request = EntryRequest(
            instrument=plan.instrument,
            side=plan.side,
            price=plan.price,
            stop_loss=exits.stop_loss,
            targets=exits.targets,
            quantity=cfg.lots,
            strategy=cfg.name,
            reason=f"{signal.reason} {signal.level.price:.2f}",
            atr=atr_value,
            immediate=plan.immediate,
            level_exit=plan.level_exit,
            created_at=now,
            expires_at=None
            if plan.immediate
            else now + timedelta(minutes=cfg.pending_expiry_minutes),
            trail_activation=cfg.trailing.activation_multiple if cfg.trailing.enabled else None,
            trail_multiple=cfg.trailing.trail_multiple if cfg.trailing.enabled else None,
        )
        return request, ""

    def _entry_indicators(
        self, rt: StrategyRuntime, plan: EntryPlan
    ) -> tuple[Optional[float], Optional[float]]:
        """RSI and ATR behind an entry.

        Signal-instrument entries read the strategy's indicator snapshot,
        which is as fresh as ``indicator_cadence`` keeps it.  Entries on
        another instrument (options) use the candles the policy fetched.
        """
        if plan.instrument.token == rt.token:
            snapshot = rt.levels.indicators(rt.token)
            return snapshot.rsi, snapshot.atr
        candles = list(plan.candles)
        return (
            latest_rsi([c.close for c in candles], rt.config.rsi.period),
            atr(candles, rt.config.atr.period),
        )

    # ── Square-off ───────────────────────────────────────────────────────

    def _square_off(self, reason: str, segment: Optional[str], now: datetime) -> None:
        events = self._positions.close_all(reason, now, segment)
        if segment is None:
            self._squared_off.update(SEGMENTS)
            self._risk.halt_for_session()
        else:
            self._squared_off.add(segment)
        for event in events:
            self._notify_position(event)
        logger.info(
            "Square-off (%s) for %s: %d event(s)", reason, segment or "all segments", len(events)
        )
        self._notify(f"Square-off ({reason}) for {segment or 'all segments'}")

    # ── Commands ─────────────────────────────────────────────────────────

    def _on_command(self, event: CommandEvent) -> None:
        try:
            text = self.run_command(event.name, event.args)
        except Exception as exc:
            logger.exception("Command /%s failed", event.name)
            text = f"/{event.name} failed: {exc}"
        if event.reply is not None and not event.reply.done():
            event.reply.set_result(text)

    def run_command(self, name: str, args: tuple[str, ...] = ()) -> str:
        """Execute an operator command; only call from dispatch."""
        now = self._now or datetime.now().astimezone()
        if name == "status":
            return self._format_status()
        if name == "pnl":
            realized = self._risk.daily_pnl
            unrealized = self._positions.unrealized_pnl
            return (
                f"Realized {realized:+.2f} | Unrealized {unrealized:+.2f} | "
                f"Total {realized + unrealized:+.2f}"
            )
        if name == "positions":
            return self._format_positions()
        if name == "levels":
            return self._format_levels(args)
        if name == "halt":
            self._risk.manual_halt()
            return "Trading halted"
        if name == "resume":
            _, message = self._risk.manual_resume()
            return message
        if name == "recompute":
            names = self._recompute(args, now)
            return f"Recomputed levels for {', '.join(names) or 'no strategies'}"
        if name in ("stop", "start"):
            return self._set_running(name, args)
        if name == "squareoff":
            events = self._positions.close_all(MANUAL, now, block=False)
            for position_event in events:
                self._notify_position(position_event)
            return f"Squared off {sum(1 for e in events if e.kind == 'closed')} position(s)"
        raise KeyError(f"unknown command '{name}'")

    def _set_running(self, name: str, args: tuple[str, ...]) -> str:
        if not args:
            return f"Usage: /{name} <strategy>"
        rt = self._runtimes.get(args[0])
        if rt is None:
            return f"Unknown strategy '{args[0]}'"
        rt.running = name == "start"
        if not rt.running:
            rt.signals.clear_watches()
        logger.info("Strategy '%s' %s", rt.name, "started" if rt.running else "stopped")
        return f"Strategy '{rt.name}' {'started' if rt.running else 'stopped'}"

    def _recompute(self, args: tuple[str, ...], now: datetime) -> list[str]:
        selected = [rt for rt in self._runtimes.values() if not args or rt.name in args]
        done = []
        for rt in selected:
            price = rt.candles.last_price(rt.token)
            if price is None:
                continue
            self._refresh(rt, price, now)
            done.append(rt.name)
        return done

    # ── Snapshots ────────────────────────────────────────────────────────

    def status(self) -> dict:
        state = self._risk.state
        return {
            "running": self._running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "session_date": state.session_date.isoformat() if state.session_date else None,
            "trading_halted": state.trading_halted,
            "halt_reason": state.halt_reason,
            "realized_pnl": round(self._risk.daily_pnl, 2),
            "unrealized_pnl": round(self._positions.unrealized_pnl, 2),
            "open_positions": len(self._positions.positions),
            "pending_entries": len(self._positions.pending),
            "strategies": {
                rt.name: {
                    "underlying": rt.config.underlying,
                    "token": rt.token,
                    "entry_policy": rt.config.entry_policy,
                    "running": rt.running,
                    "busy": rt.signals.busy,
                    "watches": len(rt.signals.watches),
                    "last_candle_at": (
                        rt.last_candle_at.isoformat() if rt.last_candle_at else None
                    ),
                }
                for rt in self._runtimes.values()
            },
        }

    def levels(self) -> dict:
        result = {}
        for rt in self._runtimes.values():
            level_set = rt.levels.levels(rt.token)
            snap = rt.levels.indicators(rt.token)
            result[rt.name] = {
                "symbol": rt.instrument.symbol,
                "token": rt.token,
                "reference_price": level_set.reference_price,
                "refreshed_at": (
                    level_set.refreshed_at.isoformat() if level_set.refreshed_at else None
                ),
                "supports": [
                    {"price": round(lvl.price, 2), "strength": lvl.strength}
                    for lvl in level_set.supports
                ],
                "resistances": [
                    {"price": round(lvl.price, 2), "strength": lvl.strength}
                    for lvl in level_set.resistances
                ],
                "rsi": snap.rsi,
                "atr": snap.atr,
                "bollinger": (
                    {
                        "upper": snap.bollinger.upper,
                        "middle": snap.bollinger.middle,
                        "lower": snap.bollinger.lower,
                    }
                    if snap.bollinger
                    else None
                ),
            }
        return result

    def positions(self) -> dict:
        return {
            "positions": [
                {
                    "symbol": p.instrument.symbol,
                    "token": p.instrument.token,
                    "strategy": p.strategy,
                    "side": p.side,
                    "lots": p.quantity,
                    "entry_price": p.entry_price,
                    "ltp": p.ltp,
                    "stop_loss": p.stop_loss,
                    "targets": list(p.targets),
                    "status": p.status,
                    "trailing_active": bool(p.trailing and p.trailing.active),
                    "atr": p.atr,
                    "unrealized_pnl": round(p.unrealized_pnl, 2),
                    "entry_time": p.entry_time.isoformat(),
                }
                for p in self._positions.positions
            ],
            "pending": [
                {
                    "symbol": e.request.instrument.symbol,
                    "token": e.token,
                    "strategy": e.request.strategy,
                    "side": e.request.side,
                    "trigger_price": e.request.price,
                    "stop_loss": e.request.stop_loss,
                    "expires_at": (
                        e.request.expires_at.isoformat() if e.request.expires_at else None
                    ),
                }
                for e in self._positions.pending
            ],
        }

    def _format_status(self) -> str:
        status = self.status()
        halted = status["halt_reason"] if status["trading_halted"] else "no"
        lines = [
            f"Session {status['session_date']} | halted: {halted}",
            f"P&L realized {status['realized_pnl']:+.2f} "
            f"unrealized {status['unrealized_pnl']:+.2f}",
            f"Open {status['open_positions']} | pending {status['pending_entries']}",
        ]
        for name, info in status["strategies"].items():
            state = "running" if info["running"] else "stopped"
            lines.append(f"{name}: {state}, {info['watches']} watch(es)")
        return "\n".join(lines)

    def _format_positions(self) -> str:
        snapshot = self.positions()
        if not snapshot["positions"] and not snapshot["pending"]:
            return "No open positions"
        lines = [
            f"{p['symbol']} {p['side']} x{p['lots']} @ {p['entry_price']:.2f} "
            f"LTP {p['ltp']:.2f} SL {p['stop_loss']:.2f} P&L {p['unrealized_pnl']:+.2f}"
            for p in snapshot["positions"]
        ]
        lines += [
            f"{e['symbol']} armed {e['side']} @ {e['trigger_price']:.2f} SL {e['stop_loss']:.2f}"
            for e in snapshot["pending"]
        ]
        return "\n".join(lines)

    def _format_levels(self, args: tuple[str, ...]) -> str:
        lines = []
        for name, info in self.levels().items():
            if args and name not in args:
                continue
            supports = ", ".join(f"{lvl['price']:.2f}" for lvl in info["supports"]) or "-"
            resistances = ", ".join(f"{lvl['price']:.2f}" for lvl in info["resistances"]) or "-"
            lines.append(f"{name} ({info['symbol']}) S: {supports} | R: {resistances}")
        return "\n".join(lines) or "No levels"

    # ── Notifications ────────────────────────────────────────────────────

    def _notify(self, message: str) -> None:
        self._notifier.notify(message)

    def _notify_position(self, event: PositionEvent) -> None:
        prefix = f"[{event.strategy}] " if event.strategy else ""
        self._notify(prefix + event.message())
