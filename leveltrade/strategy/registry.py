"""Entry policy registry — maps ``StrategyConfig.entry_policy`` to a policy.

A policy turns a confirmed retest into an ``EntryPlan``: what to trade,
on which side, at what price, and whether to fill now or arm a trigger.
Policies may do I/O (option history) and raise ``EntryRejected`` with a
human-readable reason when no entry can be planned.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol, runtime_checkable

from leveltrade.broker.base import HistoricalClient, InstrumentResolver
from leveltrade.broker.instruments import atm_strike
from leveltrade.errors import EntryRejected
from leveltrade.models.strategy_config import StrategyConfig
from leveltrade.strategy.indicators import bollinger_bands
from leveltrade.strategy.models import Candle, Instrument, LevelExit, LevelSet, Signal


@dataclass(frozen=True)
class EntryPlan:
    """What a confirmed signal should trade."""

    instrument: Instrument
    side: str  # "long" or "short"
    price: float
    immediate: bool
    candles: tuple[Candle, ...] = ()  # traded instrument history for ATR/RSI
    level_exit: Optional[LevelExit] = None
    levels_beyond: tuple[float, ...] = ()  # target candidates, closest first


@dataclass(frozen=True)
class EntryContext:
    """Everything a policy may look at."""

    config: StrategyConfig
    signal: Signal
    candle: Candle  # the confirming candle
    history: HistoricalClient
    resolver: Optional[InstrumentResolver]
    levels: LevelSet
    local_candles: tuple[Candle, ...]
    now: datetime


@runtime_checkable
class EntryPolicy(Protocol):
    async def plan(self, ctx: EntryContext) -> EntryPlan:
        ...


def _signal_side(ctx: EntryContext) -> str:
    if ctx.signal.level.kind == "support":
        return "long"
    if not ctx.config.allow_short:
        raise EntryRejected("short entries disabled for this strategy")
    return "short"


def _opposite_level_exit(ctx: EntryContext, price: float, upward: bool) -> Optional[LevelExit]:
    """Exit on the signal instrument reaching the next level against the entry."""
    if upward:
        above = [lvl.price for lvl in ctx.levels.resistances if lvl.price > price]
        return LevelExit(ctx.signal.instrument.token, min(above), "above") if above else None
    below = [lvl.price for lvl in ctx.levels.supports if lvl.price < price]
    return LevelExit(ctx.signal.instrument.token, max(below), "below") if below else None


def _signal_level_exit(ctx: EntryContext, price: float, side: str) -> Optional[LevelExit]:
    # in ``levels`` mode the opposite level is already the first target
    if ctx.config.targets.mode == "levels":
        return None
    return _opposite_level_exit(ctx, price, side == "long")


def _levels_beyond(levels: LevelSet, price: float, side: str) -> tuple[float, ...]:
    prices = [lvl.price for lvl in levels.for_kind("both")]
    if side == "long":
        return tuple(sorted(p for p in prices if p > price))
    return tuple(sorted((p for p in prices if p < price), reverse=True))


class CandleClosePolicy:
    """Trade the signal instrument at the confirming candle's close, now."""

    async def plan(self, ctx: EntryContext) -> EntryPlan:
        side = _signal_side(ctx)
        price = ctx.candle.close
        return EntryPlan(
            instrument=ctx.signal.instrument,
            side=side,
            price=price,
            immediate=True,
            candles=ctx.local_candles,
            level_exit=_signal_level_exit(ctx, price, side),
            levels_beyond=_levels_beyond(ctx.levels, price, side),
        )


class CandleLowPolicy:
    """Arm the signal instrument at the confirming candle's low (high for shorts)."""

    async def plan(self, ctx: EntryContext) -> EntryPlan:
        side = _signal_side(ctx)
        price = ctx.candle.low if side == "long" else ctx.candle.high
        return EntryPlan(
            instrument=ctx.signal.instrument,
            side=side,
            price=price,
            immediate=False,
            candles=ctx.local_candles,
            level_exit=_signal_level_exit(ctx, price, side),
            levels_beyond=_levels_beyond(ctx.levels, price, side),
        )


class OptionBandPolicy:
    """Arm the ATM option at its own lower Bollinger Band.

    Support retests buy the CE, resistance retests buy the PE.  The
    position also exits when the underlying reaches the opposite level.
    """

    async def plan(self, ctx: EntryContext) -> EntryPlan:
        config = ctx.config
        if ctx.resolver is None:
            raise EntryRejected("no instrument master for option resolution")

        is_call = ctx.signal.level.kind == "support"
        option_type = "CE" if is_call else "PE"
        underlying_price = ctx.candle.close

        expiry = ctx.resolver.resolve_expiry(config.underlying, config.expiry, ctx.now.date())
        if expiry is None:
            raise EntryRejected(f"no {config.underlying} expiry for '{config.expiry}'")
        strike = atm_strike(underlying_price, config.strike_step)
        option = ctx.resolver.find_option(config.underlying, strike, expiry, option_type)
        if option is None:
            raise EntryRejected(
                f"no {config.underlying} {strike:g} {option_type} contract for {expiry}"
            )

        candles = await ctx.history.get_historical_candles(
            option,
            config.candle_interval_minutes,
            ctx.now - timedelta(days=config.history_days),
            ctx.now,
        )
        bands = bollinger_bands(
            [c.close for c in candles], config.bollinger.period, config.bollinger.k
        )
        if bands is None:
            raise EntryRejected(f"insufficient {option.symbol} history for Bollinger Bands")

        level_exit = _opposite_level_exit(ctx, underlying_price, is_call)

        return EntryPlan(
            instrument=option,
            side="long",
            price=round(bands.lower, 2),
            immediate=False,
            candles=tuple(candles),
            level_exit=level_exit,
        )


ENTRY_POLICY_REGISTRY: dict[str, type] = {
    "candle_close": CandleClosePolicy,
    "candle_low": CandleLowPolicy,
    "option_band": OptionBandPolicy,
}


def get_entry_policy(name: str) -> EntryPolicy:
    """Look up and instantiate an entry policy by registry key.

    Raises ``KeyError`` if the policy name is not registered.
    """
    if name not in ENTRY_POLICY_REGISTRY:
        raise KeyError(
            f"Unknown entry policy '{name}'. "
            f"Available: {', '.join(ENTRY_POLICY_REGISTRY.keys())}"
        )
    return ENTRY_POLICY_REGISTRY[name]()
