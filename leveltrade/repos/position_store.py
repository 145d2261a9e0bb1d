"""JSON snapshot of open and pending positions for restart recovery.

Timestamps are written as ISO-8601 strings and rehydrated to
``datetime``/``date`` on load.
"""

import json
import logging
import pathlib
from dataclasses import asdict
from datetime import date, datetime
from typing import Optional

from leveltrade.execution.position_manager import PendingEntry, Position
from leveltrade.risk.trailing_stop import TrailingStop
from leveltrade.strategy.models import EntryRequest, Instrument, LevelExit

logger = logging.getLogger("leveltrade")

_VERSION = 1


# ── Encoding ─────────────────────────────────────────────────────────────


def _iso(value: Optional[datetime | date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _instrument_to_dict(inst: Instrument) -> dict:
    data = asdict(inst)
    data["expiry"] = _iso(inst.expiry)
    return data


def _instrument_from_dict(data: dict) -> Instrument:
    data = dict(data)
    if data.get("expiry"):
        data["expiry"] = date.fromisoformat(data["expiry"])
    return Instrument(**data)


def _level_exit_from_dict(data: Optional[dict]) -> Optional[LevelExit]:
    return LevelExit(**data) if data else None


def position_to_dict(pos: Position) -> dict:
    return {
        "instrument": _instrument_to_dict(pos.instrument),
        "side": pos.side,
        "entry_price": pos.entry_price,
        "quantity": pos.quantity,
        "initial_quantity": pos.initial_quantity,
        "stop_loss": pos.stop_loss,
        "targets": list(pos.targets),
        "entry_time": _iso(pos.entry_time),
        "strategy": pos.strategy,
        "atr": pos.atr,
        "trailing": pos.trailing.to_dict() if pos.trailing else None,
        "level_exit": asdict(pos.level_exit) if pos.level_exit else None,
        "status": pos.status,
        "ltp": pos.ltp,
        "realized_pnl": pos.realized_pnl,
        "reason": pos.reason,
    }


def position_from_dict(data: dict) -> Position:
    trailing = None
    if data.get("trailing"):
        trailing = TrailingStop(
            entry_price=data["entry_price"], side=data["side"], **data["trailing"]
        )
    return Position(
        instrument=_instrument_from_dict(data["instrument"]),
        side=data["side"],
        entry_price=data["entry_price"],
        quantity=data["quantity"],
        initial_quantity=data["initial_quantity"],
        stop_loss=data["stop_loss"],
        targets=tuple(data["targets"]),
        entry_time=datetime.fromisoformat(data["entry_time"]),
        strategy=data.get("strategy", ""),
        atr=data.get("atr"),
        trailing=trailing,
        level_exit=_level_exit_from_dict(data.get("level_exit")),
        status=data.get("status", "open"),
        ltp=data.get("ltp", data["entry_price"]),
        realized_pnl=data.get("realized_pnl", 0.0),
        reason=data.get("reason", ""),
    )


def pending_to_dict(entry: PendingEntry) -> dict:
    req = entry.request
    return {
        "armed_at": _iso(entry.armed_at),
        "instrument": _instrument_to_dict(req.instrument),
        "side": req.side,
        "price": req.price,
        "stop_loss": req.stop_loss,
        "targets": list(req.targets),
        "quantity": req.quantity,
        "strategy": req.strategy,
        "reason": req.reason,
        "atr": req.atr,
        "level_exit": asdict(req.level_exit) if req.level_exit else None,
        "created_at": _iso(req.created_at),
        "expires_at": _iso(req.expires_at),
        "trail_activation": req.trail_activation,
        "trail_multiple": req.trail_multiple,
    }


def pending_from_dict(data: dict) -> PendingEntry:
    def _dt(key: str) -> Optional[datetime]:
        return datetime.fromisoformat(data[key]) if data.get(key) else None

    request = EntryRequest(
        instrument=_instrument_from_dict(data["instrument"]),
        side=data["side"],
        price=data["price"],
        stop_loss=data["stop_loss"],
        targets=tuple(data["targets"]),
        quantity=data["quantity"],
        strategy=data.get("strategy", ""),
        reason=data.get("reason", ""),
        atr=data.get("atr"),
        immediate=False,
        level_exit=_level_exit_from_dict(data.get("level_exit")),
        created_at=_dt("created_at"),
        expires_at=_dt("expires_at"),
        trail_activation=data.get("trail_activation"),
        trail_multiple=data.get("trail_multiple"),
    )
    return PendingEntry(request=request, armed_at=_dt("armed_at"))


# ── Store ────────────────────────────────────────────────────────────────


class PositionStore:
    """Reads and writes the position snapshot file.

    Args:
        path: JSON file location (parent directories are created).
    """

    def __init__(self, path: str | pathlib.Path) -> None:
        self._path = pathlib.Path(path)

    def save(self, positions: list[Position], pending: list[PendingEntry]) -> None:
        snapshot = {
            "version": _VERSION,
            "saved_at": datetime.now().astimezone().isoformat(),
            "positions": [position_to_dict(p) for p in positions],
            "pending": [pending_to_dict(p) for p in pending],
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
        tmp.replace(self._path)

    def load(self) -> tuple[list[Position], list[PendingEntry]]:
        """Return the saved snapshot; empty when no file exists."""
        if not self._path.exists():
            return [], []
        data = json.loads(self._path.read_text(encoding="utf-8"))
        positions = [position_from_dict(p) for p in data.get("positions", [])]
        pending = [pending_from_dict(p) for p in data.get("pending", [])]
        logger.info(
            "Loaded %d position(s), %d pending from %s",
            len(positions), len(pending), self._path,
        )
        return positions, pending

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)
