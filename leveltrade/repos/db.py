"""Database initialization and connection management.

Creates the schema on first boot, provides connection factory.
"""

import pathlib
import sqlite3


_SCHEMA = """
CREATE TABLE IF NOT EXISTS trades (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    traded_at     TEXT    NOT NULL,
    session_date  TEXT    NOT NULL,
    instrument    TEXT    NOT NULL,
    token         TEXT,
    action        TEXT    NOT NULL CHECK (action IN ('BUY', 'SELL')),
    price         REAL    NOT NULL,
    quantity      INTEGER NOT NULL,
    pnl           REAL,
    reason        TEXT    NOT NULL,
    strategy      TEXT    NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_trades_session_date ON trades (session_date);
"""


def init_db(db_path: str) -> None:
    """Initialize the database, creating tables that don't exist yet.

    Args:
        db_path: Path to the SQLite database file (or ``":memory:"``).
    """
    if db_path != ":memory:":
        pathlib.Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(_SCHEMA)
    finally:
        conn.close()


def get_connection(db_path: str) -> sqlite3.Connection:
    """Return a new SQLite connection with row-factory enabled.

    Callers are responsible for closing the connection.
    """
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn
