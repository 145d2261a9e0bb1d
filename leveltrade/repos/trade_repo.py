"""Trade repository — SQLite trade log."""

from datetime import date
from typing import Optional

from leveltrade.repos.db import get_connection
from leveltrade.strategy.models import TradeRecord
from leveltrade.strategy.session_filter import to_ist


class TradeRepo:
    """Append-only log of fills.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def append(self, record: TradeRecord) -> int:
        """Insert one fill and return its ``id``."""
        traded_at = to_ist(record.time)
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO trades
                    (traded_at, session_date, instrument, token, action,
                     price, quantity, pnl, reason, strategy)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    traded_at.isoformat(),
                    traded_at.date().isoformat(),
                    record.instrument,
                    record.extra.get("token"),
                    record.action,
                    record.price,
                    record.quantity,
                    record.pnl,
                    record.reason,
                    record.strategy,
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_trades(
        self,
        limit: int = 50,
        session_date: Optional[date] = None,
        strategy: Optional[str] = None,
    ) -> dict:
        """Return recent fills, newest first.

        Returns:
            ``{"trades": [...], "total": int}``
        """
        conn = get_connection(self._db_path)
        try:
            conditions: list[str] = []
            params: list = []

            if session_date:
                conditions.append("session_date = ?")
                params.append(session_date.isoformat())
            if strategy:
                conditions.append("strategy = ?")
                params.append(strategy)

            where_clause = ""
            if conditions:
                where_clause = "WHERE " + " AND ".join(conditions)

            rows = conn.execute(
                f"SELECT * FROM trades {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) FROM trades {where_clause}",
                params,
            ).fetchone()[0]

            trades = [dict(row) for row in rows]
            return {"trades": trades, "total": total}
        finally:
            conn.close()

    def realized_pnl(self, session_date: date) -> float:
        """Sum of realized P&L recorded for *session_date*."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT COALESCE(SUM(pnl), 0) FROM trades WHERE session_date = ?",
                (session_date.isoformat(),),
            ).fetchone()
            return float(row[0])
        finally:
            conn.close()
