"""Support/Resistance level detection from pivot highs/lows — pure functions."""

from dataclasses import dataclass
from typing import Sequence

from leveltrade.strategy.models import Candle, Level, LevelSet


@dataclass(frozen=True)
class SRSettings:
    """Tuning for pivot detection and zone merging."""

    reaction_lookback: int = 5
    levels_to_return: int = 6
    merge_threshold_pct: float = 0.75  # merge pivots within 0.75 % of the zone average
    min_reactions: int = 2  # 1 keeps single-touch pivots ("every-touch" policy)


def _find_pivot_highs(candles: Sequence[Candle], window: int) -> list[float]:
    """Identify pivot high prices.

    A pivot high is a candle whose high is strictly higher than the highs
    of the *window* candles on each side.
    """
    highs: list[float] = []
    for i in range(window, len(candles) - window):
        high = candles[i].high
        is_pivot = True
        for j in range(1, window + 1):
            if candles[i - j].high >= high or candles[i + j].high >= high:
                is_pivot = False
                break
        if is_pivot:
            highs.append(high)
    return highs


def _find_pivot_lows(candles: Sequence[Candle], window: int) -> list[float]:
    """Identify pivot low prices.

    A pivot low is a candle whose low is strictly lower than the lows of
    the *window* candles on each side.
    """
    lows: list[float] = []
    for i in range(window, len(candles) - window):
        low = candles[i].low
        is_pivot = True
        for j in range(1, window + 1):
            if candles[i - j].low <= low or candles[i + j].low <= low:
                is_pivot = False
                break
        if is_pivot:
            lows.append(low)
    return lows


def _merge_pivots(
    pivots: list[float], merge_threshold_pct: float
) -> list[tuple[float, int]]:
    """Group nearby pivots into zones.

    A pivot joins the current zone when it is within *merge_threshold_pct*
    percent of the zone's running average.  Returns ``(average, count)``
    tuples in ascending price order.
    """
    if not pivots:
        return []

    ordered = sorted(pivots)
    zones: list[list[float]] = []
    current: list[float] = [ordered[0]]

    for price in ordered[1:]:
        average = sum(current) / len(current)
        if average > 0 and (price - average) / average * 100.0 <= merge_threshold_pct:
            current.append(price)
        else:
            zones.append(current)
            current = [price]
    zones.append(current)

    return [(sum(z) / len(z), len(z)) for z in zones]


def detect_support_resistance(
    candles: Sequence[Candle],
    current_price: float,
    settings: SRSettings = SRSettings(),
) -> LevelSet:
    """Detect support and resistance levels relative to *current_price*.

    Zones below the current price are supports, zones at or above it are
    resistances.  Supports are ordered closest-below first, resistances
    closest-above first, each truncated to ``settings.levels_to_return``.

    Returns an empty ``LevelSet`` when there are not enough candles or the
    price is not positive.
    """
    if current_price <= 0 or len(candles) < 2 * settings.reaction_lookback + 1:
        return LevelSet(reference_price=current_price)

    pivots = _find_pivot_highs(candles, settings.reaction_lookback)
    pivots += _find_pivot_lows(candles, settings.reaction_lookback)

    zones = [
        (price, count)
        for price, count in _merge_pivots(pivots, settings.merge_threshold_pct)
        if count >= settings.min_reactions
    ]

    supports = [
        Level(price=price, strength=count, kind="support")
        for price, count in zones
        if price < current_price
    ]
    resistances = [
        Level(price=price, strength=count, kind="resistance")
        for price, count in zones
        if price >= current_price
    ]
    supports.sort(key=lambda lvl: lvl.price, reverse=True)
    resistances.sort(key=lambda lvl: lvl.price)

    limit = settings.levels_to_return
    return LevelSet(
        supports=tuple(supports[:limit]),
        resistances=tuple(resistances[:limit]),
        reference_price=current_price,
    )
