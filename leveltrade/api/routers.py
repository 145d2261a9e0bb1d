"""Internal API routers — /status, /levels, /positions, /trades and controls.

No business logic, no DB access. Delegates to the engine manager and the
trade repository injected at startup.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

logger = logging.getLogger("leveltrade")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_trade_repo = None  # Set via configure_routers()
_engine_manager = None  # Set via configure_routers()
_mode: str = "idle"


def configure_routers(trade_repo, engine_manager=None, mode: str = "paper") -> None:
    """Inject dependencies from the application startup.

    Args:
        trade_repo: A ``TradeRepo`` instance (or duck-type for tests).
        engine_manager: An ``EngineManager`` instance for status and controls.
        mode: Run mode reported by ``/status``.
    """
    global _trade_repo, _engine_manager, _mode  # noqa: PLW0603
    _trade_repo = trade_repo
    _engine_manager = engine_manager
    _mode = mode


def _require_manager():
    if _engine_manager is None:
        raise HTTPException(status_code=503, detail="Engine not running")
    return _engine_manager


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Engine, risk and per-strategy status."""
    if _engine_manager is None:
        return {"mode": _mode, "running": False, "strategies": {}}
    return {"mode": _mode, **_engine_manager.status()}


@router.get("/levels")
async def get_levels(strategy: Optional[str] = Query(default=None)):
    """Current support/resistance levels and indicators per strategy."""
    levels = _require_manager().levels()
    if strategy is None:
        return {"levels": levels}
    if strategy not in levels:
        raise HTTPException(status_code=404, detail=f"Unknown strategy: {strategy}")
    return {"levels": {strategy: levels[strategy]}}


@router.get("/positions")
async def get_positions():
    """Open positions and armed entries."""
    if _engine_manager is None:
        return {"positions": [], "pending": []}
    return _engine_manager.positions()


@router.get("/trades")
async def get_trades(
    limit: int = Query(default=20, ge=1, le=500),
    session_date: Optional[date] = Query(default=None),
    strategy: Optional[str] = Query(default=None),
):
    """Return recent trade log entries."""
    if _trade_repo is None:
        return {"trades": [], "total": 0}
    return _trade_repo.get_trades(limit=limit, session_date=session_date, strategy=strategy)


# ── Control actions ──────────────────────────────────────────────────────


@router.post("/halt")
async def halt():
    """Stop new entries until resumed."""
    reply = await _require_manager().execute("halt")
    logger.warning("Trading halted via API.")
    return {"status": "halted", "message": reply}


@router.post("/resume")
async def resume():
    """Resume entries (refused after a limit breach or session end)."""
    reply = await _require_manager().execute("resume")
    logger.info("Resume requested via API: %s", reply)
    return {"message": reply}


@router.post("/recompute")
async def recompute(strategy: Optional[str] = Query(default=None)):
    """Recompute levels from the current candle series."""
    args = (strategy,) if strategy else ()
    reply = await _require_manager().execute("recompute", args)
    return {"message": reply}
