"""SmartAPI REST async client.

Handles the REST calls the bot needs from the broker: historical candles
and last traded prices.  Session login and order placement stay outside
the trading core (fills are simulated at the LTP).
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Sequence

import httpx

from leveltrade.config import Config
from leveltrade.errors import DataUnavailable
from leveltrade.strategy.models import Candle, Instrument
from leveltrade.strategy.session_filter import IST, to_ist

logger = logging.getLogger("leveltrade")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}

_CANDLE_PATH = "/rest/secure/angelbroking/historical/v1/getCandleData"
_LTP_PATH = "/rest/secure/angelbroking/order/v1/getLtpData"

_INTERVALS = {
    1: "ONE_MINUTE",
    3: "THREE_MINUTE",
    5: "FIVE_MINUTE",
    10: "TEN_MINUTE",
    15: "FIFTEEN_MINUTE",
    30: "THIRTY_MINUTE",
    60: "ONE_HOUR",
}

SUPPORTED_INTERVALS = tuple(_INTERVALS)

_DATE_FORMAT = "%Y-%m-%d %H:%M"


def interval_name(minutes: int) -> str:
    """SmartAPI interval name for *minutes*; raises ``ValueError`` if unsupported."""
    try:
        return _INTERVALS[minutes]
    except KeyError:
        raise ValueError(
            f"Unsupported candle interval {minutes}m. "
            f"Available: {', '.join(str(m) for m in _INTERVALS)}"
        ) from None


def parse_candle_rows(rows: Sequence[Sequence]) -> list[Candle]:
    """Convert ``[timestamp, o, h, l, c, v]`` rows into IST candles, oldest first."""
    candles: list[Candle] = []
    for row in rows:
        opened = datetime.fromisoformat(str(row[0]))
        if opened.tzinfo is None:
            opened = opened.replace(tzinfo=IST)
        candles.append(
            Candle(
                open_time=opened.astimezone(IST),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=int(row[5]) if len(row) > 5 else 0,
            )
        )
    candles.sort(key=lambda c: c.open_time)
    return candles


class SmartApiClient:
    """Async client wrapping the SmartAPI REST endpoints."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._base_url = config.broker_base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {config.broker_jwt_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-UserType": "USER",
            "X-SourceID": "WEB",
            "X-ClientLocalIP": "127.0.0.1",
            "X-ClientPublicIP": "127.0.0.1",
            "X-MACAddress": "00-00-00-00-00-00",
            "X-PrivateKey": config.broker_api_key,
        }

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        **kwargs,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504) and rate-limits
        (429).  Non-retryable errors are raised immediately.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(_MAX_RETRIES):
            try:
                async with httpx.AsyncClient() as client:
                    resp = await getattr(client, method)(
                        url,
                        headers=self._headers,
                        timeout=30.0,
                        **kwargs,
                    )

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "SmartAPI %s %s returned %d — retry %d/%d in %.1fs",
                        method.upper(), url, resp.status_code,
                        attempt + 1, _MAX_RETRIES, delay,
                    )
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    if attempt + 1 < _MAX_RETRIES:
                        await asyncio.sleep(delay)
                    continue

                resp.raise_for_status()
                return resp

            except httpx.TransportError as exc:
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "SmartAPI %s %s transport error (%s) — retry %d/%d in %.1fs",
                    method.upper(), url, exc,
                    attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                if attempt + 1 < _MAX_RETRIES:
                    await asyncio.sleep(delay)

        # All retries exhausted: raise the last error
        raise last_exc  # type: ignore[misc]

    # ── Candle data ──────────────────────────────────────────────────────

    async def get_historical_candles(
        self,
        instrument: Instrument,
        interval_minutes: int,
        from_time: datetime,
        to_time: datetime,
    ) -> list[Candle]:
        """Fetch candles for *instrument* between *from_time* and *to_time*.

        Returns:
            List of ``Candle`` objects ordered oldest-first.

        Raises:
            DataUnavailable: On transport/HTTP failure, an API error status
                or an empty result.
        """
        url = f"{self._base_url}{_CANDLE_PATH}"
        payload = {
            "exchange": instrument.exchange,
            "symboltoken": instrument.token,
            "interval": interval_name(interval_minutes),
            "fromdate": to_ist(from_time).strftime(_DATE_FORMAT),
            "todate": to_ist(to_time).strftime(_DATE_FORMAT),
        }

        try:
            resp = await self._request_with_retry("post", url, json=payload)
        except httpx.HTTPError as exc:
            raise DataUnavailable(
                f"Candle request for {instrument.symbol} failed: {exc}",
                symbol=instrument.symbol,
            ) from exc

        try:
            data = resp.json()
        except ValueError as exc:
            raise DataUnavailable(
                f"Candle response for {instrument.symbol} is not JSON: {exc}",
                symbol=instrument.symbol,
            ) from exc
        if not isinstance(data, dict):
            raise DataUnavailable(
                f"Unexpected candle response for {instrument.symbol}",
                symbol=instrument.symbol,
            )
        if not data.get("status", False):
            raise DataUnavailable(
                f"Candle request for {instrument.symbol} rejected: {data.get('message', 'unknown error')}",
                symbol=instrument.symbol,
            )
        rows = data.get("data") or []
        if not rows:
            raise DataUnavailable(
                f"No candles for {instrument.symbol} between {payload['fromdate']} and {payload['todate']}",
                symbol=instrument.symbol,
            )
        return parse_candle_rows(rows)

    # ── Quotes ───────────────────────────────────────────────────────────

    async def get_ltp(self, instrument: Instrument) -> Optional[float]:
        """Last traded price of *instrument*, or ``None`` if the API has none."""
        url = f"{self._base_url}{_LTP_PATH}"
        payload = {
            "exchange": instrument.exchange,
            "tradingsymbol": instrument.symbol,
            "symboltoken": instrument.token,
        }
        resp = await self._request_with_retry("post", url, json=payload)
        try:
            data = resp.json()
        except ValueError:
            logger.warning("LTP response for %s is not JSON", instrument.symbol)
            return None
        if not isinstance(data, dict) or not data.get("status", False) or not data.get("data"):
            logger.warning(
                "LTP for %s unavailable: %s",
                instrument.symbol,
                data.get("message", "") if isinstance(data, dict) else "",
            )
            return None
        try:
            return float(data["data"]["ltp"])
        except (KeyError, TypeError, ValueError):
            logger.warning("LTP response for %s has no usable price", instrument.symbol)
            return None
