"""Candle aggregation — folds a live tick stream into fixed-interval OHLCV candles."""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from leveltrade.strategy.models import Candle

logger = logging.getLogger("leveltrade")

DEFAULT_MAX_CANDLES = 100


def candle_floor(time: datetime, interval_minutes: int) -> datetime:
    """Start of the candle that contains *time*.

    Aligned to the start of the day, so 15-minute candles open at
    :00/:15/:30/:45 (and the 09:15 session open lands on a boundary).
    """
    minute_of_day = time.hour * 60 + time.minute
    offset = minute_of_day % interval_minutes
    return time.replace(second=0, microsecond=0) - timedelta(minutes=offset)


@dataclass
class _LiveCandle:
    """The mutable in-progress candle."""

    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int = 0

    def update(self, price: float) -> None:
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.close = price
        self.volume += 1

    def freeze(self) -> Candle:
        return Candle(
            open_time=self.open_time,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
        )


class _Series:
    """Finalized candles for one instrument plus the in-progress one."""

    def __init__(self, max_candles: int) -> None:
        self.finalized: deque[Candle] = deque(maxlen=max_candles)
        self.live: Optional[_LiveCandle] = None


class CandleAggregator:
    """Per-instrument tick → candle aggregation.

    Args:
        interval_minutes: Candle interval (e.g. 15).
        max_candles: Finalized candles kept per instrument; oldest dropped.
    """

    def __init__(
        self,
        interval_minutes: int = 15,
        max_candles: int = DEFAULT_MAX_CANDLES,
    ) -> None:
        if interval_minutes <= 0:
            raise ValueError(f"interval_minutes must be positive, got {interval_minutes}")
        self.interval_minutes = interval_minutes
        self._max_candles = max_candles
        self._series: dict[str, _Series] = {}

    # ── Mutation ─────────────────────────────────────────────────────────

    def seed(self, token: str, candles: Iterable[Candle]) -> None:
        """Backfill finalized candles from history (oldest first).

        Candles at or after the in-progress candle's open are skipped so
        the series never holds duplicate open times.
        """
        series = self._get(token)
        live_open = series.live.open_time if series.live else None
        last_open = series.finalized[-1].open_time if series.finalized else None
        for candle in sorted(candles, key=lambda c: c.open_time):
            if live_open is not None and candle.open_time >= live_open:
                continue
            if last_open is not None and candle.open_time <= last_open:
                continue
            series.finalized.append(candle)
            last_open = candle.open_time

    def on_tick(self, token: str, price: float, time: datetime) -> Optional[Candle]:
        """Apply a tick.

        When the tick belongs to a later interval than the in-progress
        candle, that candle is finalized first and returned.
        """
        series = self._get(token)
        bucket = candle_floor(time, self.interval_minutes)
        finalized: Optional[Candle] = None

        if series.live is not None and bucket > series.live.open_time:
            same_day = bucket.date() == series.live.open_time.date()
            finalized = self._finalize(series, bucket, same_day)

        if series.live is None:
            series.live = _LiveCandle(bucket, price, price, price, price, 1)
        else:
            if bucket < series.live.open_time:
                logger.debug("Late tick for %s at %s folded into live candle", token, time)
            series.live.update(price)
        return finalized

    def on_interval_boundary(
        self, token: str, boundary: datetime, seed_next: bool = True
    ) -> Optional[Candle]:
        """Close the in-progress candle at *boundary*.

        Seeds the next candle at the boundary with the last known price so
        a silent instrument still produces a well-formed candle.  No candle
        is seeded when *seed_next* is false (session close) or the boundary
        falls on a later day; the next tick then opens a fresh one.  Calling
        twice for the same boundary is a no-op.
        """
        series = self._series.get(token)
        if series is None or series.live is None:
            return None
        boundary = candle_floor(boundary, self.interval_minutes)
        if boundary <= series.live.open_time:
            return None
        same_day = boundary.date() == series.live.open_time.date()
        return self._finalize(series, boundary, seed_next and same_day)

    def _finalize(self, series: _Series, next_open: datetime, seed_next: bool = True) -> Candle:
        live = series.live
        candle = live.freeze()
        series.finalized.append(candle)
        if seed_next:
            last = live.close
            series.live = _LiveCandle(next_open, last, last, last, last, 0)
        else:
            series.live = None
        return candle

    def _get(self, token: str) -> _Series:
        series = self._series.get(token)
        if series is None:
            series = _Series(self._max_candles)
            self._series[token] = series
        return series

    # ── Queries ──────────────────────────────────────────────────────────

    def candles(self, token: str) -> list[Candle]:
        """Finalized candles, oldest first."""
        series = self._series.get(token)
        return list(series.finalized) if series else []

    def live_candle(self, token: str) -> Optional[Candle]:
        """Snapshot of the in-progress candle."""
        series = self._series.get(token)
        if series is None or series.live is None:
            return None
        return series.live.freeze()

    def last_price(self, token: str) -> Optional[float]:
        series = self._series.get(token)
        if series is None or series.live is None:
            return None
        return series.live.close

    def candle_at(self, token: str, open_time: datetime) -> Optional[Candle]:
        """Finalized candle that opened at *open_time*."""
        for candle in reversed(self.candles(token)):
            if candle.open_time == open_time:
                return candle
            if candle.open_time < open_time:
                break
        return None
