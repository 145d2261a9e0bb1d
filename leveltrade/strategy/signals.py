"""Level retest signals — touch detection and bar-close confirmation.

Per (instrument, level) the lifecycle is::

    idle → touched → confirmed | rejected → idle

A touch is recorded when a tick comes within the proximity band of a
level.  It is judged exactly once, when the candle window it happened in
has closed, against that completed candle:

- Support retest: bullish candle that opened above the level, traded
  down to it and closed back above it.
- Resistance retest: bearish candle that opened below the level, traded
  up to it and closed back below it.

Watches and level cooldowns are keyed by ``(token, Level.key)`` so they
survive a level refresh that rebuilds the ``Level`` objects.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from leveltrade.models.strategy_config import StrategyConfig
from leveltrade.strategy.candles import candle_floor
from leveltrade.strategy.models import Candle, Instrument, LevelSet, Signal

logger = logging.getLogger("leveltrade")

# Rejection reasons, reported verbatim to the notification channel.
NOT_BULLISH = "not a bullish candle"
OPENED_BELOW = "opened below level"
CLOSED_BELOW = "closed below level"
NOT_BEARISH = "not a bearish candle"
OPENED_ABOVE = "opened above level"
CLOSED_ABOVE = "closed above level"
DID_NOT_TEST = "did not test level"
NO_CANDLE = "confirmation candle unavailable"
TIMED_OUT = "confirmation timed out"

SUPPORT_CONFIRMED = "bullish retest of support"
RESISTANCE_CONFIRMED = "bearish retest of resistance"


def evaluate_retest(candle: Candle, level_price: float, kind: str) -> tuple[bool, str]:
    """Judge a completed candle against the level it touched.

    Returns ``(confirmed, reason)``.  Conditions are checked in a fixed
    order and the first failure is the reason.
    """
    if kind == "support":
        if not candle.is_bullish:
            return False, NOT_BULLISH
        if candle.open <= level_price:
            return False, OPENED_BELOW
        if candle.low > level_price:
            return False, DID_NOT_TEST
        if candle.close <= level_price:
            return False, CLOSED_BELOW
        return True, SUPPORT_CONFIRMED

    if kind == "resistance":
        if not candle.is_bearish:
            return False, NOT_BEARISH
        if candle.open >= level_price:
            return False, OPENED_ABOVE
        if candle.high < level_price:
            return False, DID_NOT_TEST
        if candle.close >= level_price:
            return False, CLOSED_ABOVE
        return True, RESISTANCE_CONFIRMED

    raise ValueError(f"kind must be 'support' or 'resistance', got '{kind}'")


def within_proximity(price: float, level_price: float, proximity_pct: float) -> bool:
    """``|price - level| / price ≤ proximity_pct / 100``."""
    if price <= 0:
        return False
    return abs(price - level_price) / price <= proximity_pct / 100.0


class SignalStateMachine:
    """Touch/confirm state for one strategy.

    Args:
        config: The strategy this machine serves.
    """

    def __init__(self, config: StrategyConfig) -> None:
        self._config = config
        self._interval = timedelta(minutes=config.candle_interval_minutes)
        self._watches: dict[tuple[str, float], Signal] = {}
        self._level_cooldowns: dict[tuple[str, float], datetime] = {}
        self._busy_since: Optional[datetime] = None

    # ── Busy flag ────────────────────────────────────────────────────────

    @property
    def busy(self) -> bool:
        return self._busy_since is not None

    def begin_confirmation(self, now: datetime) -> None:
        self._busy_since = now

    def end_confirmation(self) -> None:
        self._busy_since = None

    def busy_expired(self, now: datetime) -> bool:
        """True when a confirmation has outlived twice its timeout.

        The engine uses this to recover the flag if a continuation was
        lost; normal timeouts are reported by the confirmation itself.
        """
        if self._busy_since is None:
            return False
        limit = timedelta(seconds=2 * self._config.confirmation_timeout_seconds)
        return now - self._busy_since > limit

    # ── Touches ──────────────────────────────────────────────────────────

    def on_tick(
        self,
        instrument: Instrument,
        price: float,
        now: datetime,
        levels: LevelSet,
    ) -> list[Signal]:
        """Record touches for levels within the proximity band.

        Returns the newly touched signals (already watched levels, levels
        on cooldown and every level while busy are skipped).
        """
        if self.busy:
            return []

        window = candle_floor(now, self._config.candle_interval_minutes)
        touched: list[Signal] = []
        for level in levels.for_kind("both"):
            if not self._config.watches(level.kind):
                continue
            if not within_proximity(price, level.price, self._config.proximity_pct):
                continue
            key = (instrument.token, level.key)
            existing = self._watches.get(key)
            if existing is not None and existing.candle_time == window:
                continue
            if self.is_level_on_cooldown(instrument.token, level.key, now):
                continue
            signal = Signal(
                level=level,
                instrument=instrument,
                candle_time=window,
                touched_price=price,
            )
            self._watches[key] = signal
            touched.append(signal)
            logger.info(
                "[%s] %s touched %s %.2f at %.2f",
                self._config.name,
                instrument.symbol,
                level.kind,
                level.price,
                price,
            )
        return touched

    def take_due(self, boundary: datetime) -> list[Signal]:
        """Remove and return watches whose candle window closed by *boundary*."""
        due = [
            (key, sig)
            for key, sig in self._watches.items()
            if sig.candle_time + self._interval <= boundary
        ]
        for key, _ in due:
            del self._watches[key]
        return [sig for _, sig in due]

    @property
    def watches(self) -> list[Signal]:
        return list(self._watches.values())

    def clear_watches(self) -> None:
        self._watches.clear()

    # ── Confirmation ─────────────────────────────────────────────────────

    def confirm(self, signal: Signal, candle: Optional[Candle]) -> Signal:
        """Apply the bar-close rule to *signal* (mutated and returned)."""
        if candle is None:
            return self.reject(signal, NO_CANDLE)
        confirmed, reason = evaluate_retest(candle, signal.level.price, signal.level.kind)
        signal.state = "confirmed" if confirmed else "rejected"
        signal.reason = reason
        return signal

    @staticmethod
    def reject(signal: Signal, reason: str) -> Signal:
        signal.state = "rejected"
        signal.reason = reason
        return signal

    # ── Level cooldowns ──────────────────────────────────────────────────

    def record_trade(self, signal: Signal, now: datetime) -> None:
        """Start the level cooldown after a trade was taken at *signal*'s level."""
        key = (signal.instrument.token, signal.level.key)
        self._level_cooldowns[key] = now + timedelta(
            minutes=self._config.level_cooldown_minutes
        )

    def is_level_on_cooldown(self, token: str, level_key: float, now: datetime) -> bool:
        expiry = self._level_cooldowns.get((token, level_key))
        if expiry is None:
            return False
        if now >= expiry:
            del self._level_cooldowns[(token, level_key)]
            return False
        return True
