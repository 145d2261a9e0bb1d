"""Session filter — pure functions over IST wall-clock time.

NSE/BSE (and their derivative segments) trade 09:15–15:30 IST, MCX trades
09:00–23:30 IST.  New entries stop at the square-off time of the segment,
and that is also when open positions are force-closed.
"""

from datetime import datetime, time, timedelta, timezone

IST = timezone(timedelta(hours=5, minutes=30), "IST")

EQUITY_OPEN = time(9, 15)
COMMODITY_OPEN = time(9, 0)
EQUITY_CLOSE = time(15, 30)
COMMODITY_CLOSE = time(23, 30)
EQUITY_SQUARE_OFF = time(15, 15)
COMMODITY_SQUARE_OFF = time(23, 15)


def to_ist(moment: datetime) -> datetime:
    """Convert *moment* to IST; naive datetimes are assumed to be IST already."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=IST)
    return moment.astimezone(IST)


def is_commodity_exchange(exchange: str) -> bool:
    return exchange.upper().startswith("MCX")


def session_open(exchange: str) -> time:
    return COMMODITY_OPEN if is_commodity_exchange(exchange) else EQUITY_OPEN


def session_close(exchange: str) -> time:
    return COMMODITY_CLOSE if is_commodity_exchange(exchange) else EQUITY_CLOSE


def square_off_time(
    exchange: str,
    equity_square_off: time = EQUITY_SQUARE_OFF,
    commodity_square_off: time = COMMODITY_SQUARE_OFF,
) -> time:
    """Clock time at which *exchange* positions are closed and entries stop."""
    if is_commodity_exchange(exchange):
        return commodity_square_off
    return equity_square_off


def is_trading_day(moment: datetime) -> bool:
    """Monday–Friday.  Exchange holidays are not modelled."""
    return to_ist(moment).weekday() < 5


def is_market_open(moment: datetime, exchange: str) -> bool:
    """Return True while *exchange* is trading: open to close, both inclusive."""
    local = to_ist(moment)
    if local.weekday() >= 5:
        return False
    return session_open(exchange) <= local.time() <= session_close(exchange)


def is_entry_allowed(
    moment: datetime,
    exchange: str,
    equity_square_off: time = EQUITY_SQUARE_OFF,
    commodity_square_off: time = COMMODITY_SQUARE_OFF,
) -> bool:
    """Return True if a new position may be opened on *exchange* at *moment*.

    Window: session open (inclusive) to square-off time (exclusive).
    """
    local = to_ist(moment)
    if local.weekday() >= 5:
        return False
    cutoff = square_off_time(exchange, equity_square_off, commodity_square_off)
    return session_open(exchange) <= local.time() < cutoff


def is_square_off_due(
    moment: datetime,
    exchange: str,
    equity_square_off: time = EQUITY_SQUARE_OFF,
    commodity_square_off: time = COMMODITY_SQUARE_OFF,
) -> bool:
    """Return True once *moment* has reached the square-off time of *exchange*."""
    cutoff = square_off_time(exchange, equity_square_off, commodity_square_off)
    return to_ist(moment).time() >= cutoff
