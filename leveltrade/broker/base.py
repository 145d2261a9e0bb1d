"""Broker collaborator protocols.

The trading core depends only on these interfaces; ``SmartApiClient``,
``ScripMaster`` and the feeds in ``leveltrade.broker.feed`` implement them,
and tests substitute in-memory fakes.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Awaitable, Callable, Optional, Protocol, Sequence, Union, runtime_checkable

from leveltrade.strategy.models import Candle, Instrument, Tick

TickHandler = Callable[[Tick], Union[None, Awaitable[None]]]


@runtime_checkable
class HistoricalClient(Protocol):
    """Historical candle source."""

    async def get_historical_candles(
        self,
        instrument: Instrument,
        interval_minutes: int,
        from_time: datetime,
        to_time: datetime,
    ) -> list[Candle]:
        """Candles oldest-first; raises ``DataUnavailable`` when none."""
        ...


@runtime_checkable
class BrokerFeed(Protocol):
    """Live tick source."""

    def subscribe(self, instruments: Sequence[Instrument]) -> None:
        ...

    def on_tick(self, handler: TickHandler) -> None:
        ...


@runtime_checkable
class InstrumentResolver(Protocol):
    """Instrument master lookups."""

    def get(self, token: str) -> Optional[Instrument]:
        ...

    def find_option(
        self,
        underlying: str,
        strike: float,
        expiry: date,
        option_type: str,
    ) -> Optional[Instrument]:
        ...

    def resolve_expiry(
        self, underlying: str, preference: str, today: Optional[date] = None
    ) -> Optional[date]:
        ...
