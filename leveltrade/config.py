"""LevelTrade — application configuration.

Loads .env variables into a typed config object.
Validates required variables on startup.
"""

import os
from dataclasses import dataclass
from datetime import time

from dotenv import load_dotenv


_REQUIRED_VARS = [
    "BROKER_API_KEY",
    "BROKER_JWT_TOKEN",
    "BROKER_CLIENT_CODE",
]


def _parse_clock(value: str) -> time:
    """Parse ``HH:MM`` into a ``datetime.time``."""
    hour, minute = value.strip().split(":")
    return time(int(hour), int(minute))


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    broker_api_key: str
    broker_jwt_token: str
    broker_client_code: str
    broker_base_url: str
    telegram_bot_token: str
    telegram_chat_id: str
    strategies_path: str
    scrip_master_path: str
    positions_path: str
    db_path: str
    log_level: str
    health_port: int
    max_daily_loss: float  # signed, e.g. -5000
    max_daily_profit: float
    halt_on_limit: bool
    trade_cooldown_minutes: int
    equity_square_off: time  # IST, NSE/BSE
    commodity_square_off: time  # IST, MCX

    @property
    def telegram_enabled(self) -> bool:
        """Telegram is used only when both token and chat id are set."""
        return bool(self.telegram_bot_token and self.telegram_chat_id)


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    return Config(
        broker_api_key=os.environ["BROKER_API_KEY"],
        broker_jwt_token=os.environ["BROKER_JWT_TOKEN"],
        broker_client_code=os.environ["BROKER_CLIENT_CODE"],
        broker_base_url=os.environ.get(
            "BROKER_BASE_URL", "https://apiconnect.angelbroking.com"
        ),
        telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN", ""),
        telegram_chat_id=os.environ.get("TELEGRAM_CHAT_ID", ""),
        strategies_path=os.environ.get("STRATEGIES_PATH", "strategies.json"),
        scrip_master_path=os.environ.get("SCRIP_MASTER_PATH", "data/scrip_master.json"),
        positions_path=os.environ.get("POSITIONS_PATH", "data/positions.json"),
        db_path=os.environ.get("DB_PATH", "data/leveltrade.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        health_port=int(os.environ.get("HEALTH_PORT", "8080")),
        max_daily_loss=float(os.environ.get("MAX_DAILY_LOSS", "-5000")),
        max_daily_profit=float(os.environ.get("MAX_DAILY_PROFIT", "10000")),
        halt_on_limit=_parse_bool(os.environ.get("HALT_ON_LIMIT", "true")),
        trade_cooldown_minutes=int(os.environ.get("TRADE_COOLDOWN_MINUTES", "15")),
        equity_square_off=_parse_clock(os.environ.get("EQUITY_SQUARE_OFF", "15:15")),
        commodity_square_off=_parse_clock(os.environ.get("COMMODITY_SQUARE_OFF", "23:15")),
    )
