"""Daily risk state — realized P&L, halts and per-instrument cooldowns.

Pure state, no I/O.  The halt triggered by a limit breach is sticky: only
a manual resume (refused while P&L is still beyond a limit) or the next
session reset clears it.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

logger = logging.getLogger("leveltrade")


@dataclass
class DailyRiskState:
    """Process-wide risk state for one trading session."""

    session_date: Optional[date] = None
    realized_pnl: float = 0.0
    trading_halted: bool = False
    halt_reason: Optional[str] = None  # "manual", "limit", "session_end"
    cooldowns: dict[str, datetime] = field(default_factory=dict)


class RiskManager:
    """Tracks daily P&L and enforces loss/profit limits and cooldowns.

    Args:
        max_daily_loss: Signed loss threshold (e.g. ``-5000``).
        max_daily_profit: Profit threshold (e.g. ``10000``).
        halt_on_limit: Halt when a threshold is reached.
        cooldown_minutes: Re-entry cooldown after an exit.
        cooldown_after_loss_only: Start cooldowns only after losing exits.
    """

    def __init__(
        self,
        max_daily_loss: float = -5000.0,
        max_daily_profit: float = 10000.0,
        halt_on_limit: bool = True,
        cooldown_minutes: int = 15,
        cooldown_after_loss_only: bool = False,
    ) -> None:
        self.max_daily_loss = max_daily_loss
        self.max_daily_profit = max_daily_profit
        self.halt_on_limit = halt_on_limit
        self.cooldown_minutes = cooldown_minutes
        self.cooldown_after_loss_only = cooldown_after_loss_only
        self.state = DailyRiskState()

    # ── Mutation ─────────────────────────────────────────────────────────

    def reset(self, session_date: date, realized_pnl: float = 0.0) -> None:
        """Start a new session, optionally seeded with P&L already realized."""
        self.state = DailyRiskState(session_date=session_date)
        if realized_pnl:
            self.on_realized_pnl(realized_pnl)
        logger.info(
            "Risk state reset for %s (realized P&L %.2f)", session_date, realized_pnl
        )

    def on_realized_pnl(self, delta: float) -> None:
        """Add a realized P&L delta and apply the limit halt."""
        self.state.realized_pnl += delta
        if not self.halt_on_limit or self.state.trading_halted:
            return
        if self.limit_breached:
            self.state.trading_halted = True
            self.state.halt_reason = "limit"
            logger.warning(
                "Daily limit reached (P&L %.2f) — trading halted", self.state.realized_pnl
            )

    def start_cooldown(
        self, instrument: str, now: datetime, pnl: Optional[float] = None
    ) -> None:
        if self.cooldown_minutes <= 0:
            return
        if self.cooldown_after_loss_only and (pnl is None or pnl >= 0):
            return
        self.state.cooldowns[instrument] = now + timedelta(minutes=self.cooldown_minutes)

    def manual_halt(self) -> None:
        if self.state.trading_halted:
            return
        self.state.trading_halted = True
        self.state.halt_reason = "manual"

    def manual_resume(self) -> tuple[bool, str]:
        """Clear a halt.  Refused while a limit is breached or after session end."""
        if not self.state.trading_halted:
            return True, "Trading is not halted"
        if self.state.halt_reason == "session_end":
            return False, "Session has ended; trading resumes next session"
        if self.limit_breached:
            return False, (
                f"Daily P&L {self.state.realized_pnl:.2f} is beyond a limit "
                f"({self.max_daily_loss:.2f} / {self.max_daily_profit:.2f})"
            )
        self.state.trading_halted = False
        self.state.halt_reason = None
        return True, "Trading resumed"

    def halt_for_session(self) -> None:
        """Halt until the next session reset (end of day, shutdown)."""
        self.state.trading_halted = True
        self.state.halt_reason = "session_end"

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def daily_pnl(self) -> float:
        return self.state.realized_pnl

    @property
    def limit_breached(self) -> bool:
        pnl = self.state.realized_pnl
        return pnl <= self.max_daily_loss or pnl >= self.max_daily_profit

    def is_on_cooldown(self, instrument: str, now: datetime) -> bool:
        expiry = self.state.cooldowns.get(instrument)
        if expiry is None:
            return False
        if now >= expiry:
            del self.state.cooldowns[instrument]
            return False
        return True

    def can_enter(self, instrument: str, now: datetime) -> tuple[bool, str]:
        """Return ``(allowed, reason)`` for a new entry on *instrument*."""
        if self.state.trading_halted:
            return False, f"trading halted ({self.state.halt_reason})"
        if self.is_on_cooldown(instrument, now):
            return False, "instrument on cooldown"
        return True, ""
