"""Technical indicators — SMA, σ, Bollinger Bands, RSI, ATR. Pure functions, no I/O.

Insufficient input never raises: scalar indicators return ``None`` and
series indicators return an empty list, so callers can skip the decision
for this cycle.
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence

from leveltrade.strategy.models import Candle


@dataclass(frozen=True)
class BollingerBands:
    """One Bollinger Band reading."""

    middle: float
    upper: float
    lower: float


def sma(values: Sequence[float], period: int) -> Optional[float]:
    """Arithmetic mean of the last *period* values."""
    if period <= 0 or len(values) < period:
        return None
    window = values[-period:]
    return sum(window) / period


def stddev(values: Sequence[float], period: int) -> Optional[float]:
    """Population standard deviation of the last *period* values."""
    mean = sma(values, period)
    if mean is None:
        return None
    window = values[-period:]
    variance = sum((x - mean) ** 2 for x in window) / period
    return math.sqrt(variance)


# ── Bollinger Bands ──────────────────────────────────────────────────────


def bollinger_bands(
    values: Sequence[float],
    period: int = 20,
    k: float = 2.0,
) -> Optional[BollingerBands]:
    """Bollinger Bands over the last *period* values.

    Middle = SMA(*period*), Upper/Lower = middle ± *k* × σ.
    """
    middle = sma(values, period)
    sigma = stddev(values, period)
    if middle is None or sigma is None:
        return None
    return BollingerBands(
        middle=middle,
        upper=middle + k * sigma,
        lower=middle - k * sigma,
    )


# ── RSI ──────────────────────────────────────────────────────────────────


def _rsi_from_avgs(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        # No losses in the window: RS is infinite. A flat window is neutral.
        return 50.0 if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def rsi(closes: Sequence[float], period: int = 14) -> list[float]:
    """Wilder's Relative Strength Index.

    Algorithm:
        1. delta = close[i] - close[i-1]
        2. Seed average gain/loss = simple average of the first *period* deltas.
        3. Subsequent: avg = (prev_avg × (period-1) + current) / period
        4. RSI = 100 - 100 / (1 + avg_gain / avg_loss)

    Returns one value per close from index *period* onwards (the last
    element is the most recent reading).  Returns ``[]`` when fewer than
    ``period + 1`` closes are supplied.
    """
    if period <= 0 or len(closes) < period + 1:
        return []

    deltas = [closes[i] - closes[i - 1] for i in range(1, len(closes))]
    gains = [max(d, 0.0) for d in deltas]
    losses = [abs(min(d, 0.0)) for d in deltas]

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    values = [_rsi_from_avgs(avg_gain, avg_loss)]

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        values.append(_rsi_from_avgs(avg_gain, avg_loss))

    return values


def latest_rsi(closes: Sequence[float], period: int = 14) -> Optional[float]:
    """Most recent RSI reading, or ``None`` on insufficient data."""
    series = rsi(closes, period)
    return series[-1] if series else None


# ── ATR ──────────────────────────────────────────────────────────────────


def true_ranges(candles: Sequence[Candle]) -> list[float]:
    """True range of every candle after the first.

    TR = max(high - low, |high - prev_close|, |low - prev_close|)
    """
    ranges: list[float] = []
    for i in range(1, len(candles)):
        high = candles[i].high
        low = candles[i].low
        prev_close = candles[i - 1].close
        ranges.append(max(high - low, abs(high - prev_close), abs(low - prev_close)))
    return ranges


def atr_series(candles: Sequence[Candle], period: int = 14) -> list[float]:
    """Wilder-smoothed Average True Range series.

    The first value is the simple average of the first *period* true
    ranges; each later value is ``(prev × (period-1) + tr) / period``.
    Requires ``period + 1`` candles.
    """
    if period <= 0 or len(candles) < period + 1:
        return []

    trs = true_ranges(candles)
    current = sum(trs[:period]) / period
    values = [current]
    for tr in trs[period:]:
        current = (current * (period - 1) + tr) / period
        values.append(current)
    return values


def atr(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    """Latest ATR value, or ``None`` on insufficient data."""
    series = atr_series(candles, period)
    return series[-1] if series else None
