"""PositionManager — open/pending positions and their exit rules.

Fills are simulated at the observed LTP.  Every tick of an instrument
with exposure is evaluated in this order:

1. Stop-loss (fixed, breakeven or trailing, whichever is tightest).
2. Trailing-stop activation / ratchet.
3. Targets: the first of two targets scales half the lots out and moves
   the stop to cost; the final target closes the position.

Independently, a tick on a position's ``level_exit`` token closes the
position once price trades through that level.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from leveltrade.risk.risk_manager import RiskManager
from leveltrade.risk.trailing_stop import TrailingStop
from leveltrade.strategy.models import EntryRequest, Instrument, LevelExit, TradeRecord

logger = logging.getLogger("leveltrade")

# Exit reasons
STOP_LOSS_HIT = "StopLossHit"
TARGET_HIT = "TargetHit"
PARTIAL_TARGET = "PartialTarget"
LEVEL_HIT = "LevelHit"
END_OF_DAY = "EndOfDay"
SHUTDOWN = "Shutdown"
MANUAL = "Manual"
EXPIRED = "Expired"
GAP_THROUGH_STOP = "GapThroughStop"

SEGMENTS = ("equity", "commodity")


def segment_of(instrument: Instrument) -> str:
    return "commodity" if instrument.is_commodity else "equity"


@dataclass
class Position:
    """An open (or partially closed) position in one instrument."""

    instrument: Instrument
    side: str  # "long" or "short"
    entry_price: float
    quantity: int  # lots still open
    initial_quantity: int
    stop_loss: float
    targets: tuple[float, ...]
    entry_time: datetime
    strategy: str = ""
    atr: Optional[float] = None
    trailing: Optional[TrailingStop] = None
    level_exit: Optional[LevelExit] = None
    status: str = "open"  # "open", "partially_closed", "closed"
    ltp: float = 0.0
    realized_pnl: float = 0.0
    reason: str = ""

    @property
    def sign(self) -> int:
        return 1 if self.side == "long" else -1

    def pnl_at(self, price: float, lots: Optional[int] = None) -> float:
        lots = self.quantity if lots is None else lots
        return (price - self.entry_price) * lots * self.instrument.lot_size * self.sign

    @property
    def unrealized_pnl(self) -> float:
        return self.pnl_at(self.ltp)

    def stop_hit(self, price: float) -> bool:
        if self.side == "long":
            return price <= self.stop_loss
        return price >= self.stop_loss

    def target_hit(self, price: float) -> bool:
        if not self.targets:
            return False
        if self.side == "long":
            return price >= self.targets[0]
        return price <= self.targets[0]


@dataclass
class PendingEntry:
    """An armed entry waiting for the LTP to reach its trigger."""

    request: EntryRequest
    armed_at: datetime

    @property
    def token(self) -> str:
        return self.request.instrument.token

    def is_expired(self, now: datetime) -> bool:
        return self.request.expires_at is not None and now >= self.request.expires_at


@dataclass(frozen=True)
class PositionEvent:
    """Something that happened to a position, for notification."""

    kind: str  # "opened", "armed", "blocked", "partial", "closed", "expired", "cancelled"
    symbol: str
    reason: str
    price: float = 0.0
    quantity: int = 0
    pnl: Optional[float] = None
    strategy: str = ""

    def message(self) -> str:
        text = f"{self.kind.upper()} {self.symbol}"
        if self.quantity:
            text += f" x{self.quantity}"
        if self.price:
            text += f" @ {self.price:.2f}"
        if self.pnl is not None:
            text += f" | P&L {self.pnl:+.2f}"
        if self.reason:
            text += f" | {self.reason}"
        return text


class PositionManager:
    """Owns every open and pending position, one per instrument token.

    Args:
        risk: Shared ``RiskManager`` that receives every realized P&L delta.
        trade_log: Object with ``append(TradeRecord)`` (e.g. ``TradeRepo``).
        store: Object with ``save(positions, pending)`` (e.g. ``PositionStore``).
    """

    def __init__(self, risk: RiskManager, trade_log=None, store=None) -> None:
        self._risk = risk
        self._trade_log = trade_log
        self._store = store
        self._positions: dict[str, Position] = {}
        self._pending: dict[str, PendingEntry] = {}
        self._closed_segments: set[str] = set()

    # ── Entries ──────────────────────────────────────────────────────────

    def submit(self, request: EntryRequest, now: datetime) -> Optional[PositionEvent]:
        """Open or arm an entry.

        Returns ``None`` for a duplicate on an instrument that already has
        an open or pending position, a ``blocked`` event when risk or the
        session forbids the entry, otherwise ``opened``/``armed``.
        """
        instrument = request.instrument
        token = instrument.token
        if token in self._positions or token in self._pending:
            logger.debug("Duplicate entry for %s ignored", instrument.symbol)
            return None

        if segment_of(instrument) in self._closed_segments:
            return self._blocked(request, "entries closed for this session")
        allowed, why = self._risk.can_enter(token, now)
        if not allowed:
            return self._blocked(request, why)

        if request.immediate:
            return self._open(request, request.price, now)

        self._pending[token] = PendingEntry(request=request, armed_at=now)
        self._persist()
        logger.info(
            "Armed %s %s @ %.2f (SL %.2f)",
            request.side, instrument.symbol, request.price, request.stop_loss,
        )
        return PositionEvent(
            kind="armed",
            symbol=instrument.symbol,
            reason=request.reason,
            price=request.price,
            quantity=request.quantity,
            strategy=request.strategy,
        )

    def _blocked(self, request: EntryRequest, why: str) -> PositionEvent:
        logger.info("Entry on %s blocked: %s", request.instrument.symbol, why)
        return PositionEvent(
            kind="blocked",
            symbol=request.instrument.symbol,
            reason=why,
            strategy=request.strategy,
        )

    def _open(self, request: EntryRequest, price: float, now: datetime) -> PositionEvent:
        trailing = None
        if (
            request.atr
            and request.trail_activation is not None
            and request.trail_multiple is not None
        ):
            trailing = TrailingStop(
                entry_price=price,
                atr=request.atr,
                side=request.side,
                activation_multiple=request.trail_activation,
                trail_multiple=request.trail_multiple,
            )
        position = Position(
            instrument=request.instrument,
            side=request.side,
            entry_price=price,
            quantity=request.quantity,
            initial_quantity=request.quantity,
            stop_loss=request.stop_loss,
            targets=tuple(request.targets),
            entry_time=now,
            strategy=request.strategy,
            atr=request.atr,
            trailing=trailing,
            level_exit=request.level_exit,
            ltp=price,
            reason=request.reason,
        )
        self._positions[request.instrument.token] = position
        self._record(
            position,
            action="BUY" if position.side == "long" else "SELL",
            price=price,
            lots=position.quantity,
            reason=request.reason,
            now=now,
        )
        self._persist()
        logger.info(
            "Opened %s %s x%d @ %.2f SL %.2f targets %s",
            position.side, position.instrument.symbol, position.quantity,
            price, position.stop_loss, position.targets,
        )
        return PositionEvent(
            kind="opened",
            symbol=position.instrument.symbol,
            reason=request.reason,
            price=price,
            quantity=position.quantity,
            strategy=position.strategy,
        )

    # ── Tick evaluation ──────────────────────────────────────────────────

    def on_tick(self, token: str, price: float, now: datetime) -> list[PositionEvent]:
        """Evaluate pending fills, exits and level exits for one tick."""
        events: list[PositionEvent] = []

        pending = self._pending.get(token)
        if pending is not None:
            event = self._evaluate_pending(pending, price, now)
            if event is not None:
                events.append(event)

        position = self._positions.get(token)
        if position is not None:
            events.extend(self._evaluate(position, price, now))

        for pos in list(self._positions.values()):
            exit_rule = pos.level_exit
            if exit_rule is not None and exit_rule.token == token and exit_rule.is_hit(price):
                events.append(self._close(pos, pos.ltp, LEVEL_HIT, now))

        return events

    def expire_pending(self, now: datetime) -> list[PositionEvent]:
        """Drop armed entries past their expiry even if no tick arrived."""
        events: list[PositionEvent] = []
        for token, pending in list(self._pending.items()):
            if not pending.is_expired(now):
                continue
            del self._pending[token]
            logger.info("Pending %s expired unfilled", pending.request.instrument.symbol)
            events.append(
                PositionEvent(
                    kind="expired",
                    symbol=pending.request.instrument.symbol,
                    reason=EXPIRED,
                    price=pending.request.price,
                    strategy=pending.request.strategy,
                )
            )
        if events:
            self._persist()
        return events

    def _evaluate_pending(
        self, pending: PendingEntry, price: float, now: datetime
    ) -> Optional[PositionEvent]:
        request = pending.request
        if pending.is_expired(now):
            del self._pending[pending.token]
            self._persist()
            return PositionEvent(
                kind="expired",
                symbol=request.instrument.symbol,
                reason=EXPIRED,
                price=request.price,
                strategy=request.strategy,
            )

        if request.side == "long":
            gapped = price <= request.stop_loss
            reached = price <= request.price
        else:
            gapped = price >= request.stop_loss
            reached = price >= request.price

        if gapped:
            del self._pending[pending.token]
            self._persist()
            logger.info(
                "Pending %s cancelled: %.2f is through stop %.2f",
                request.instrument.symbol, price, request.stop_loss,
            )
            return PositionEvent(
                kind="cancelled",
                symbol=request.instrument.symbol,
                reason=GAP_THROUGH_STOP,
                price=price,
                strategy=request.strategy,
            )
        if reached:
            del self._pending[pending.token]
            return self._open(request, price, now)
        return None

    def _evaluate(self, pos: Position, price: float, now: datetime) -> list[PositionEvent]:
        pos.ltp = price

        if pos.stop_hit(price):
            return [self._close(pos, price, STOP_LOSS_HIT, now)]

        if pos.trailing is not None:
            trail = pos.trailing.update(price)
            if trail is not None:
                if pos.side == "long":
                    pos.stop_loss = max(pos.stop_loss, trail)
                else:
                    pos.stop_loss = min(pos.stop_loss, trail)
                self._persist()
                logger.debug("Trailing stop for %s → %.2f", pos.instrument.symbol, pos.stop_loss)

        if pos.target_hit(price):
            if len(pos.targets) > 1:
                return [self._scale_out(pos, price, now)]
            return [self._close(pos, price, TARGET_HIT, now)]
        return []

    def _scale_out(self, pos: Position, price: float, now: datetime) -> PositionEvent:
        lots = min(pos.initial_quantity // 2, pos.quantity - 1)
        pnl: Optional[float] = None
        if lots > 0:
            pnl = pos.pnl_at(price, lots)
            pos.quantity -= lots
            pos.realized_pnl += pnl
            self._record(
                pos,
                action="SELL" if pos.side == "long" else "BUY",
                price=price,
                lots=lots,
                reason=PARTIAL_TARGET,
                now=now,
                pnl=pnl,
            )
            self._risk.on_realized_pnl(pnl)

        if pos.side == "long":
            pos.stop_loss = max(pos.stop_loss, pos.entry_price)
        else:
            pos.stop_loss = min(pos.stop_loss, pos.entry_price)
        pos.targets = pos.targets[1:]
        pos.status = "partially_closed"
        self._persist()
        logger.info(
            "Scaled out %d lot(s) of %s @ %.2f; stop to cost %.2f, next target %s",
            lots, pos.instrument.symbol, price, pos.stop_loss, pos.targets,
        )
        return PositionEvent(
            kind="partial",
            symbol=pos.instrument.symbol,
            reason=PARTIAL_TARGET,
            price=price,
            quantity=lots,
            pnl=pnl,
            strategy=pos.strategy,
        )

    def _close(self, pos: Position, price: float, reason: str, now: datetime) -> PositionEvent:
        pnl = pos.pnl_at(price)
        lots = pos.quantity
        del self._positions[pos.instrument.token]
        pos.status = "closed"
        pos.ltp = price
        pos.realized_pnl += pnl
        self._record(
            pos,
            action="SELL" if pos.side == "long" else "BUY",
            price=price,
            lots=lots,
            reason=reason,
            now=now,
            pnl=pnl,
        )
        self._risk.on_realized_pnl(pnl)
        self._risk.start_cooldown(pos.instrument.token, now, pnl=pos.realized_pnl)
        self._persist()
        logger.info(
            "Closed %s x%d @ %.2f (%s) P&L %.2f",
            pos.instrument.symbol, lots, price, reason, pnl,
        )
        return PositionEvent(
            kind="closed",
            symbol=pos.instrument.symbol,
            reason=reason,
            price=price,
            quantity=lots,
            pnl=pnl,
            strategy=pos.strategy,
        )

    # ── Forced exits ─────────────────────────────────────────────────────

    def close_all(
        self,
        reason: str,
        now: datetime,
        segment: Optional[str] = None,
        block: bool = True,
    ) -> list[PositionEvent]:
        """Square off every position (or one segment) at its last price.

        Pending entries are cancelled.  With *block* the segment accepts
        no new entries until :meth:`reset_session`.
        """
        segments = SEGMENTS if segment is None else (segment,)
        if block:
            self._closed_segments.update(segments)
        events: list[PositionEvent] = []

        for token, pending in list(self._pending.items()):
            if segment_of(pending.request.instrument) in segments:
                del self._pending[token]
                events.append(
                    PositionEvent(
                        kind="cancelled",
                        symbol=pending.request.instrument.symbol,
                        reason=reason,
                        strategy=pending.request.strategy,
                    )
                )

        for pos in list(self._positions.values()):
            if segment_of(pos.instrument) in segments:
                events.append(self._close(pos, pos.ltp, reason, now))

        self._persist()
        return events

    def reset_session(self) -> None:
        self._closed_segments.clear()

    def is_segment_closed(self, segment: str) -> bool:
        return segment in self._closed_segments

    # ── Persistence ──────────────────────────────────────────────────────

    def restore(self, positions: list[Position], pending: list[PendingEntry]) -> None:
        """Reload state saved by a previous run (no trades are logged)."""
        for pos in positions:
            self._positions[pos.instrument.token] = pos
        for entry in pending:
            self._pending[entry.token] = entry
        if positions or pending:
            logger.info(
                "Restored %d position(s) and %d pending entr(ies)",
                len(positions), len(pending),
            )

    def _record(
        self,
        pos: Position,
        action: str,
        price: float,
        lots: int,
        reason: str,
        now: datetime,
        pnl: Optional[float] = None,
    ) -> None:
        if self._trade_log is None:
            return
        self._trade_log.append(
            TradeRecord(
                time=now,
                instrument=pos.instrument.symbol,
                action=action,
                price=price,
                quantity=lots * pos.instrument.lot_size,
                reason=reason,
                strategy=pos.strategy,
                pnl=pnl,
                extra={"token": pos.instrument.token, "lots": lots},
            )
        )

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save(self.positions, self.pending)

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def positions(self) -> list[Position]:
        return list(self._positions.values())

    @property
    def pending(self) -> list[PendingEntry]:
        return list(self._pending.values())

    @property
    def unrealized_pnl(self) -> float:
        return sum(pos.unrealized_pnl for pos in self._positions.values())
