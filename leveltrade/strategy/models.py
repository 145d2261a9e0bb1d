"""Strategy data models — typed representations shared by the trading core."""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional


# Levels closer than this are the same level for watch and cooldown state.
LEVEL_KEY_DECIMALS = 2


@dataclass(frozen=True)
class Instrument:
    """Reference data for one tradable token (never mutated by the core)."""

    token: str
    symbol: str
    exchange: str  # "NSE", "NFO", "BSE", "BFO", "MCX"
    lot_size: int = 1
    tick_size: float = 0.05
    kind: str = "underlying"  # "underlying" or "option"
    option_type: Optional[str] = None  # "CE" or "PE"
    strike: Optional[float] = None
    expiry: Optional[date] = None
    name: str = ""  # underlying name for derivatives, e.g. "NIFTY"

    @property
    def is_option(self) -> bool:
        return self.kind == "option"

    @property
    def is_commodity(self) -> bool:
        return self.exchange.startswith("MCX")


@dataclass(frozen=True)
class Candle:
    """A single finalized candlestick bar."""

    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int = 0

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open


@dataclass(frozen=True)
class Tick:
    """A last-traded-price update from the broker feed."""

    token: str
    price: float
    time: datetime


@dataclass(frozen=True)
class Level:
    """A support or resistance price level."""

    price: float
    strength: int  # number of merged pivots
    kind: str  # "support" or "resistance"

    @property
    def key(self) -> float:
        """Stable identity across refreshes (rounded price)."""
        return round(self.price, LEVEL_KEY_DECIMALS)


@dataclass(frozen=True)
class LevelSet:
    """Supports (closest-below first) and resistances (closest-above first)."""

    supports: tuple[Level, ...] = ()
    resistances: tuple[Level, ...] = ()
    reference_price: float = 0.0
    refreshed_at: Optional[datetime] = None

    def for_kind(self, kind: str) -> tuple[Level, ...]:
        if kind == "support":
            return self.supports
        if kind == "resistance":
            return self.resistances
        return self.supports + self.resistances


@dataclass
class Signal:
    """A level touch being watched until its candle closes."""

    level: Level
    instrument: Instrument
    candle_time: datetime
    state: str = "touched"  # "touched", "confirmed", "rejected", "expired"
    reason: str = ""
    touched_price: float = 0.0


@dataclass(frozen=True)
class LevelExit:
    """Structural exit: leave when *token* trades through *price*."""

    token: str
    price: float
    direction: str  # "above" or "below"

    def is_hit(self, price: float) -> bool:
        if self.direction == "above":
            return price >= self.price
        return price <= self.price


@dataclass(frozen=True)
class EntryRequest:
    """An entry produced by a confirmed signal, handed to the PositionManager.

    ``immediate`` requests fill at ``price``; the rest are armed and fill
    when the instrument's LTP reaches ``price`` before ``expires_at``.
    Trailing is disabled when either trail multiple is ``None``.
    """

    instrument: Instrument
    side: str  # "long" or "short"
    price: float
    stop_loss: float
    targets: tuple[float, ...]
    quantity: int  # lots
    strategy: str
    reason: str
    atr: Optional[float] = None
    immediate: bool = True
    level_exit: Optional[LevelExit] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    trail_activation: Optional[float] = None
    trail_multiple: Optional[float] = None


@dataclass(frozen=True)
class TradeRecord:
    """One fill written to the trade log."""

    time: datetime
    instrument: str
    action: str  # "BUY" or "SELL"
    price: float
    quantity: int
    reason: str
    strategy: str = ""
    pnl: Optional[float] = None
    extra: dict = field(default_factory=dict)
