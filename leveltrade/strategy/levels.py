"""LevelEngine — per-instrument S/R levels and volatility indicators.

Holds the latest ``LevelSet`` and ``IndicatorSnapshot`` for every
instrument it has been asked about.  Every refresh replaces the previous
set wholesale; levels are never mutated in place.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from leveltrade.strategy.indicators import BollingerBands, atr, bollinger_bands, latest_rsi
from leveltrade.strategy.models import Candle, Level, LevelSet
from leveltrade.strategy.sr_zones import SRSettings, detect_support_resistance

logger = logging.getLogger("leveltrade")


@dataclass(frozen=True)
class IndicatorSettings:
    """Periods used by :meth:`LevelEngine.compute_indicators`."""

    bollinger_period: int = 20
    bollinger_k: float = 2.0
    rsi_period: int = 14
    atr_period: int = 14


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Indicator readings for one instrument; any field may be ``None``."""

    bollinger: Optional[BollingerBands] = None
    rsi: Optional[float] = None
    atr: Optional[float] = None
    computed_at: Optional[datetime] = None


class LevelEngine:
    """Computes and caches levels and indicators per instrument token."""

    def __init__(self) -> None:
        self._levels: dict[str, LevelSet] = {}
        self._indicators: dict[str, IndicatorSnapshot] = {}

    # ── Mutation ─────────────────────────────────────────────────────────

    def refresh(
        self,
        token: str,
        candles: Sequence[Candle],
        current_price: float,
        settings: SRSettings = SRSettings(),
        now: Optional[datetime] = None,
    ) -> LevelSet:
        """Recompute S/R levels for *token* against *current_price*."""
        detected = detect_support_resistance(candles, current_price, settings)
        level_set = LevelSet(
            supports=detected.supports,
            resistances=detected.resistances,
            reference_price=current_price,
            refreshed_at=now,
        )
        self._levels[token] = level_set
        logger.debug(
            "Levels for %s @ %.2f: S=%s R=%s",
            token,
            current_price,
            [round(lvl.price, 2) for lvl in level_set.supports],
            [round(lvl.price, 2) for lvl in level_set.resistances],
        )
        return level_set

    def compute_indicators(
        self,
        token: str,
        candles: Sequence[Candle],
        settings: IndicatorSettings = IndicatorSettings(),
        now: Optional[datetime] = None,
    ) -> IndicatorSnapshot:
        """Recompute Bollinger Bands, RSI and ATR for *token*."""
        closes = [c.close for c in candles]
        snapshot = IndicatorSnapshot(
            bollinger=bollinger_bands(closes, settings.bollinger_period, settings.bollinger_k),
            rsi=latest_rsi(closes, settings.rsi_period),
            atr=atr(candles, settings.atr_period),
            computed_at=now,
        )
        self._indicators[token] = snapshot
        return snapshot

    # ── Queries ──────────────────────────────────────────────────────────

    def levels(self, token: str) -> LevelSet:
        return self._levels.get(token, LevelSet())

    def indicators(self, token: str) -> IndicatorSnapshot:
        return self._indicators.get(token, IndicatorSnapshot())

    def nearest(self, token: str, price: float, kind: str = "both") -> Optional[Level]:
        """Level of *kind* closest to *price*, or ``None`` when there are none."""
        candidates = self.levels(token).for_kind(kind)
        if not candidates:
            return None
        return min(candidates, key=lambda lvl: abs(lvl.price - price))

    def distance_to_nearest(
        self, token: str, price: float, kind: str = "both"
    ) -> Optional[float]:
        """Fractional distance ``|price - level| / price`` to the nearest level."""
        level = self.nearest(token, price, kind)
        if level is None or price <= 0:
            return None
        return abs(price - level.price) / price

