"""Tick feeds.

``QueueFeed`` fans ticks out to registered handlers; the concrete feeds
below are the producers that push into it:

- ``LtpPollingFeed`` polls the broker's LTP endpoint for every subscribed
  instrument (paper sessions without a streaming socket).
- ``ReplayFeed`` replays a ``token,price,time`` CSV file.
"""

import asyncio
import csv
import inspect
import logging
import pathlib
from datetime import datetime
from typing import Optional, Sequence

import httpx

from leveltrade.broker.base import TickHandler
from leveltrade.errors import DataUnavailable
from leveltrade.strategy.models import Instrument, Tick
from leveltrade.strategy.session_filter import IST, to_ist

logger = logging.getLogger("leveltrade")


class QueueFeed:
    """In-process feed: producers call :meth:`push`, consumers :meth:`on_tick`."""

    def __init__(self) -> None:
        self._handlers: list[TickHandler] = []
        self._instruments: dict[str, Instrument] = {}
        self._stopped = asyncio.Event()

    def subscribe(self, instruments: Sequence[Instrument]) -> None:
        for inst in instruments:
            if inst.token not in self._instruments:
                self._instruments[inst.token] = inst
                logger.info("Subscribed %s (%s)", inst.symbol, inst.token)

    @property
    def subscribed(self) -> list[Instrument]:
        return list(self._instruments.values())

    def on_tick(self, handler: TickHandler) -> None:
        self._handlers.append(handler)

    async def push(self, tick: Tick) -> None:
        for handler in self._handlers:
            result = handler(tick)
            if inspect.isawaitable(result):
                await result

    async def run(self) -> None:
        """Idle until :meth:`stop`; producers push from elsewhere."""
        await self._stopped.wait()

    def stop(self) -> None:
        self._stopped.set()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()


class LtpPollingFeed(QueueFeed):
    """Polls last traded prices over REST.

    Args:
        client: Object with ``async get_ltp(instrument) -> float | None``.
        poll_seconds: Pause between polling rounds.
    """

    def __init__(self, client, poll_seconds: float = 2.0) -> None:
        super().__init__()
        self._client = client
        self._poll_seconds = poll_seconds

    async def poll_once(self, now: Optional[datetime] = None) -> int:
        """Poll every subscribed instrument once; returns ticks pushed."""
        pushed = 0
        for inst in self.subscribed:
            try:
                price = await self._client.get_ltp(inst)
            except (httpx.HTTPError, DataUnavailable, ValueError) as exc:
                logger.warning("LTP poll for %s failed: %s", inst.symbol, exc)
                continue
            if price is None:
                continue
            await self.push(Tick(inst.token, price, now or datetime.now(IST)))
            pushed += 1
        return pushed

    async def run(self) -> None:
        while not self.stopped:
            await self.poll_once()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._poll_seconds)
            except asyncio.TimeoutError:
                pass


def read_ticks(path: str | pathlib.Path) -> list[Tick]:
    """Parse a ``token,price,time`` CSV (header required, ISO-8601 times)."""
    ticks: list[Tick] = []
    with open(path, newline="", encoding="utf-8") as fh:
        for row in csv.DictReader(fh):
            ticks.append(
                Tick(
                    token=str(row["token"]).strip(),
                    price=float(row["price"]),
                    time=to_ist(datetime.fromisoformat(row["time"].strip())),
                )
            )
    ticks.sort(key=lambda t: t.time)
    return ticks


class ReplayFeed(QueueFeed):
    """Replays recorded ticks in time order.

    Args:
        path: CSV file with ``token,price,time`` columns.
        speed: ``0`` replays as fast as possible; ``n`` sleeps the recorded
            gap divided by ``n`` between ticks.
    """

    def __init__(self, path: str | pathlib.Path, speed: float = 0.0) -> None:
        super().__init__()
        self._path = pathlib.Path(path)
        self._speed = speed
        self.finished = asyncio.Event()

    async def run(self) -> None:
        ticks = read_ticks(self._path)
        logger.info("Replaying %d ticks from %s", len(ticks), self._path)
        previous: Optional[datetime] = None
        for tick in ticks:
            if self.stopped:
                break
            if self._speed > 0 and previous is not None:
                gap = (tick.time - previous).total_seconds() / self._speed
                if gap > 0:
                    await asyncio.sleep(gap)
            else:
                await asyncio.sleep(0)
            await self.push(tick)
            previous = tick.time
        self.finished.set()
