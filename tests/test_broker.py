"""Tests for leveltrade.broker — SmartAPI client, instrument master and feeds."""

import json
from datetime import date, datetime, time

import httpx
import pytest

from leveltrade.broker import smartapi_client
from leveltrade.broker.feed import LtpPollingFeed, QueueFeed, ReplayFeed, read_ticks
from leveltrade.broker.instruments import ScripMaster, atm_strike, instrument_from_row, normalize_name
from leveltrade.broker.smartapi_client import SmartApiClient, interval_name, parse_candle_rows
from leveltrade.config import Config
from leveltrade.errors import DataUnavailable
from leveltrade.strategy.models import Instrument, Tick
from leveltrade.strategy.session_filter import IST

RELIANCE = Instrument(token="2885", symbol="RELIANCE-EQ", exchange="NSE")


def _make_config(**overrides) -> Config:
    defaults = dict(
        broker_api_key="key-123",
        broker_jwt_token="jwt-abc",
        broker_client_code="A123456",
        broker_base_url="https://broker.test",
        telegram_bot_token="",
        telegram_chat_id="",
        strategies_path="strategies.json",
        scrip_master_path="data/scrip_master.json",
        positions_path="data/positions.json",
        db_path="data/leveltrade.db",
        log_level="INFO",
        health_port=8080,
        max_daily_loss=-5000.0,
        max_daily_profit=10000.0,
        halt_on_limit=True,
        trade_cooldown_minutes=15,
        equity_square_off=time(15, 15),
        commodity_square_off=time(23, 15),
    )
    defaults.update(overrides)
    return Config(**defaults)


# ── Mock SmartAPI responses ──────────────────────────────────────────────

MOCK_CANDLES_RESPONSE = {
    "status": True,
    "message": "SUCCESS",
    "data": [
        ["2024-03-04T09:30:00+05:30", 2950.0, 2962.5, 2948.0, 2960.0, 120345],
        ["2024-03-04T09:15:00+05:30", 2940.0, 2955.0, 2935.5, 2950.0, 98000],
    ],
}

MOCK_LTP_RESPONSE = {
    "status": True,
    "message": "SUCCESS",
    "data": {"exchange": "NSE", "tradingsymbol": "RELIANCE-EQ", "symboltoken": "2885", "ltp": 2961.35},
}


# ── SmartApiClient ───────────────────────────────────────────────────────


class TestSmartApiClient:
    @pytest.mark.asyncio
    async def test_historical_candles(self, monkeypatch):
        client = SmartApiClient(_make_config())
        captured = {}

        async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
            captured["url"] = url
            captured["headers"] = headers
            captured["body"] = json
            return httpx.Response(200, json=MOCK_CANDLES_RESPONSE, request=httpx.Request("POST", url))

        monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

        start = datetime(2024, 3, 4, 9, 15, tzinfo=IST)
        end = datetime(2024, 3, 4, 9, 45, tzinfo=IST)
        candles = await client.get_historical_candles(RELIANCE, 15, start, end)

        assert [c.open_time for c in candles] == [start, datetime(2024, 3, 4, 9, 30, tzinfo=IST)]
        assert candles[1].close == pytest.approx(2960.0)
        assert candles[1].volume == 120345
        assert captured["url"] == "https://broker.test/rest/secure/angelbroking/historical/v1/getCandleData"
        assert captured["body"] == {
            "exchange": "NSE",
            "symboltoken": "2885",
            "interval": "FIFTEEN_MINUTE",
            "fromdate": "2024-03-04 09:15",
            "todate": "2024-03-04 09:45",
        }
        assert captured["headers"]["Authorization"] == "Bearer jwt-abc"
        assert captured["headers"]["X-PrivateKey"] == "key-123"

    @pytest.mark.asyncio
    async def test_empty_history_raises(self, monkeypatch):
        client = SmartApiClient(_make_config())

        async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
            body = {"status": True, "message": "SUCCESS", "data": []}
            return httpx.Response(200, json=body, request=httpx.Request("POST", url))

        monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

        with pytest.raises(DataUnavailable) as exc_info:
            await client.get_historical_candles(
                RELIANCE, 15, datetime(2024, 3, 4, 9, 15), datetime(2024, 3, 4, 9, 30)
            )
        assert exc_info.value.symbol == "RELIANCE-EQ"

    @pytest.mark.asyncio
    async def test_rejected_status_raises(self, monkeypatch):
        client = SmartApiClient(_make_config())

        async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
            body = {"status": False, "message": "Invalid Token", "data": None}
            return httpx.Response(200, json=body, request=httpx.Request("POST", url))

        monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

        with pytest.raises(DataUnavailable, match="Invalid Token"):
            await client.get_historical_candles(
                RELIANCE, 15, datetime(2024, 3, 4, 9, 15), datetime(2024, 3, 4, 9, 30)
            )

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, monkeypatch):
        client = SmartApiClient(_make_config())
        monkeypatch.setattr(smartapi_client, "_RETRY_BASE_DELAY", 0.0)
        calls = []

        async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
            calls.append(url)
            if len(calls) < 3:
                return httpx.Response(503, request=httpx.Request("POST", url))
            return httpx.Response(200, json=MOCK_LTP_RESPONSE, request=httpx.Request("POST", url))

        monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

        assert await client.get_ltp(RELIANCE) == pytest.approx(2961.35)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_become_data_unavailable(self, monkeypatch):
        client = SmartApiClient(_make_config())
        monkeypatch.setattr(smartapi_client, "_RETRY_BASE_DELAY", 0.0)

        async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
            raise httpx.ConnectError("connection refused", request=httpx.Request("POST", url))

        monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

        with pytest.raises(DataUnavailable, match="failed"):
            await client.get_historical_candles(
                RELIANCE, 15, datetime(2024, 3, 4, 9, 15), datetime(2024, 3, 4, 9, 30)
            )

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, monkeypatch):
        client = SmartApiClient(_make_config())
        calls = []

        async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
            calls.append(url)
            return httpx.Response(401, request=httpx.Request("POST", url))

        monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

        with pytest.raises(httpx.HTTPStatusError):
            await client.get_ltp(RELIANCE)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_ltp_unavailable(self, monkeypatch):
        client = SmartApiClient(_make_config())

        async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
            body = {"status": False, "message": "No data", "data": None}
            return httpx.Response(200, json=body, request=httpx.Request("POST", url))

        monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

        assert await client.get_ltp(RELIANCE) is None

    @pytest.mark.asyncio
    async def test_non_json_history_raises_data_unavailable(self, monkeypatch):
        client = SmartApiClient(_make_config())

        async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
            return httpx.Response(
                200, text="<html>maintenance</html>", request=httpx.Request("POST", url)
            )

        monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

        with pytest.raises(DataUnavailable, match="not JSON") as exc_info:
            await client.get_historical_candles(
                RELIANCE, 15, datetime(2024, 3, 4, 9, 15), datetime(2024, 3, 4, 9, 30)
            )
        assert exc_info.value.symbol == "RELIANCE-EQ"

    @pytest.mark.asyncio
    async def test_non_json_ltp_is_none(self, monkeypatch):
        client = SmartApiClient(_make_config())

        async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
            return httpx.Response(
                200, text="<html>maintenance</html>", request=httpx.Request("POST", url)
            )

        monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

        assert await client.get_ltp(RELIANCE) is None

    @pytest.mark.asyncio
    async def test_ltp_without_price_is_none(self, monkeypatch):
        client = SmartApiClient(_make_config())

        async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
            body = {"status": True, "message": "SUCCESS", "data": {"symboltoken": "2885"}}
            return httpx.Response(200, json=body, request=httpx.Request("POST", url))

        monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

        assert await client.get_ltp(RELIANCE) is None


class TestCandleParsing:
    def test_interval_names(self):
        assert interval_name(1) == "ONE_MINUTE"
        assert interval_name(60) == "ONE_HOUR"

    def test_unsupported_interval(self):
        with pytest.raises(ValueError, match="Unsupported"):
            interval_name(7)

    def test_naive_timestamps_are_ist(self):
        candles = parse_candle_rows([["2024-03-04 09:15:00", 1, 2, 0.5, 1.5]])
        assert candles[0].open_time == datetime(2024, 3, 4, 9, 15, tzinfo=IST)
        assert candles[0].volume == 0


# ── Instrument master ────────────────────────────────────────────────────


def _option_row(token, expiry, strike, option_type, name="NIFTY"):
    return {
        "token": token,
        "symbol": f"{name}{expiry[:5]}{expiry[-2:]}{int(strike)}{option_type}",
        "name": name,
        "expiry": expiry,
        "strike": f"{strike * 100:.6f}",
        "lotsize": "50",
        "instrumenttype": "OPTIDX",
        "exch_seg": "NFO",
        "tick_size": "5.000000",
    }


MASTER_ROWS = [
    {"token": "99926000", "symbol": "Nifty 50", "name": "NIFTY", "expiry": "", "strike": "-1",
     "lotsize": "1", "instrumenttype": "AMXIDX", "exch_seg": "NSE", "tick_size": "5"},
    {"token": "2885", "symbol": "RELIANCE-EQ", "name": "RELIANCE", "expiry": "", "strike": "-1",
     "lotsize": "1", "instrumenttype": "", "exch_seg": "NSE", "tick_size": "5"},
    _option_row("43001", "07MAR2024", 22000, "CE"),
    _option_row("43002", "07MAR2024", 22000, "PE"),
    _option_row("43003", "14MAR2024", 22000, "CE"),
    _option_row("43004", "28MAR2024", 22000, "CE"),
    _option_row("43005", "04APR2024", 22000, "CE"),
    _option_row("43006", "29FEB2024", 22000, "CE"),
    {"token": "", "symbol": "BROKEN"},
]


class TestScripMaster:
    def test_parses_rows(self):
        master = ScripMaster.from_rows(MASTER_ROWS)
        assert len(master) == 8
        option = master.get("43001")
        assert option.is_option
        assert option.strike == 22000.0
        assert option.expiry == date(2024, 3, 7)
        assert option.option_type == "CE"
        assert option.lot_size == 50
        assert option.tick_size == pytest.approx(0.05)
        index = master.get("99926000")
        assert not index.is_option
        assert index.strike is None

    def test_instrument_from_row_requires_token(self):
        assert instrument_from_row({"symbol": "X"}) is None

    @pytest.mark.parametrize(
        "preference, expected",
        [
            ("nearest", date(2024, 3, 7)),
            ("next", date(2024, 3, 14)),
            ("monthly", date(2024, 3, 28)),
            ("2024-03-28", date(2024, 3, 28)),
            ("2024-03-21", None),
        ],
    )
    def test_resolve_expiry(self, preference, expected):
        master = ScripMaster.from_rows(MASTER_ROWS)
        assert master.resolve_expiry("NIFTY", preference, today=date(2024, 3, 1)) == expected

    def test_resolve_expiry_unknown_preference(self):
        master = ScripMaster.from_rows(MASTER_ROWS)
        with pytest.raises(ValueError):
            master.resolve_expiry("NIFTY", "weekly", today=date(2024, 3, 1))

    def test_resolve_expiry_unknown_underlying(self):
        master = ScripMaster.from_rows(MASTER_ROWS)
        assert master.resolve_expiry("BANKNIFTY", "nearest", today=date(2024, 3, 1)) is None

    def test_find_option(self):
        master = ScripMaster.from_rows(MASTER_ROWS)
        assert master.find_option("Nifty", 22000, date(2024, 3, 7), "PE").token == "43002"
        assert master.find_option("NIFTY", 22050, date(2024, 3, 7), "PE") is None

    def test_atm_strike(self):
        assert atm_strike(22024.0, 50) == 22000
        assert atm_strike(22026.0, 50) == 22050
        with pytest.raises(ValueError):
            atm_strike(22000.0, 0)

    def test_normalize_name(self):
        assert normalize_name("Nifty 50") == "NIFTY50"

    @pytest.mark.asyncio
    async def test_load_uses_local_copy(self, tmp_path, monkeypatch):
        path = tmp_path / "scrip_master.json"
        path.write_text(json.dumps(MASTER_ROWS))

        async def _fail_get(self, url, *, timeout=None):
            raise AssertionError("download not expected")

        monkeypatch.setattr(httpx.AsyncClient, "get", _fail_get)
        master = await ScripMaster.load(path)
        assert master.get("2885").symbol == "RELIANCE-EQ"

    @pytest.mark.asyncio
    async def test_load_downloads_when_missing(self, tmp_path, monkeypatch):
        path = tmp_path / "data" / "scrip_master.json"

        async def _mock_get(self, url, *, timeout=None):
            return httpx.Response(200, json=MASTER_ROWS, request=httpx.Request("GET", url))

        monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
        master = await ScripMaster.load(path)
        assert path.exists()
        assert master.get("43004").expiry == date(2024, 3, 28)

    @pytest.mark.asyncio
    async def test_load_fails_without_local_copy(self, tmp_path, monkeypatch):
        async def _mock_get(self, url, *, timeout=None):
            return httpx.Response(500, request=httpx.Request("GET", url))

        monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
        with pytest.raises(httpx.HTTPStatusError):
            await ScripMaster.load(tmp_path / "scrip_master.json")


# ── Feeds ────────────────────────────────────────────────────────────────


class TestFeeds:
    @pytest.mark.asyncio
    async def test_queue_feed_fans_out_to_sync_and_async_handlers(self):
        feed = QueueFeed()
        seen_sync, seen_async = [], []

        async def _async_handler(tick):
            seen_async.append(tick)

        feed.on_tick(seen_sync.append)
        feed.on_tick(_async_handler)
        tick = Tick("2885", 100.0, datetime(2024, 3, 4, 9, 20, tzinfo=IST))
        await feed.push(tick)
        assert seen_sync == [tick]
        assert seen_async == [tick]

    def test_subscribe_dedups(self):
        feed = QueueFeed()
        feed.subscribe([RELIANCE, RELIANCE])
        assert feed.subscribed == [RELIANCE]

    @pytest.mark.asyncio
    async def test_ltp_polling_feed(self):
        class FakeClient:
            async def get_ltp(self, instrument):
                if instrument.token == "2885":
                    return 2961.35
                return None

        feed = LtpPollingFeed(FakeClient())
        ticks = []
        feed.on_tick(ticks.append)
        feed.subscribe([RELIANCE, Instrument(token="1594", symbol="INFY-EQ", exchange="NSE")])
        now = datetime(2024, 3, 4, 10, 0, tzinfo=IST)
        assert await feed.poll_once(now) == 1
        assert ticks == [Tick("2885", 2961.35, now)]

    @pytest.mark.asyncio
    async def test_ltp_polling_survives_http_errors(self):
        class FailingClient:
            async def get_ltp(self, instrument):
                raise httpx.ConnectError("down")

        feed = LtpPollingFeed(FailingClient())
        feed.subscribe([RELIANCE])
        assert await feed.poll_once() == 0

    @pytest.mark.asyncio
    async def test_ltp_polling_survives_bad_responses(self):
        class FlakyClient:
            async def get_ltp(self, instrument):
                if instrument.token == "2885":
                    raise DataUnavailable("bad body", symbol=instrument.symbol)
                raise ValueError("Expecting value")

        feed = LtpPollingFeed(FlakyClient())
        feed.subscribe([RELIANCE, Instrument(token="1594", symbol="INFY-EQ", exchange="NSE")])
        assert await feed.poll_once() == 0

    @pytest.mark.asyncio
    async def test_ltp_polling_over_non_json_body(self, monkeypatch):
        async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
            return httpx.Response(
                200, text="<html>maintenance</html>", request=httpx.Request("POST", url)
            )

        monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

        feed = LtpPollingFeed(SmartApiClient(_make_config()))
        feed.subscribe([RELIANCE])
        assert await feed.poll_once() == 0

    def test_read_ticks_sorted_and_ist(self, tmp_path):
        path = tmp_path / "ticks.csv"
        path.write_text(
            "token,price,time\n"
            "2885,101.5,2024-03-04T09:16:00\n"
            "2885,101.0,2024-03-04T03:45:30+00:00\n"
        )
        ticks = read_ticks(path)
        assert [t.price for t in ticks] == [101.0, 101.5]
        assert ticks[0].time == datetime(2024, 3, 4, 9, 15, 30, tzinfo=IST)
        assert ticks[1].time == datetime(2024, 3, 4, 9, 16, tzinfo=IST)

    @pytest.mark.asyncio
    async def test_replay_feed(self, tmp_path):
        path = tmp_path / "ticks.csv"
        path.write_text(
            "token,price,time\n"
            "2885,100.0,2024-03-04T09:15:05\n"
            "2885,100.5,2024-03-04T09:15:10\n"
        )
        feed = ReplayFeed(path)
        ticks = []
        feed.on_tick(ticks.append)
        await feed.run()
        assert [t.price for t in ticks] == [100.0, 100.5]
        assert feed.finished.is_set()
