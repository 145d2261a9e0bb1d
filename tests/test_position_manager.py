"""Tests for the PositionManager — fills, exits, scale-outs and square-off."""

import random
from datetime import datetime, timedelta

import pytest

from leveltrade.execution.position_manager import (
    END_OF_DAY,
    EXPIRED,
    GAP_THROUGH_STOP,
    LEVEL_HIT,
    PARTIAL_TARGET,
    STOP_LOSS_HIT,
    TARGET_HIT,
    PositionManager,
    segment_of,
)
from leveltrade.risk.risk_manager import RiskManager
from leveltrade.strategy.models import EntryRequest, Instrument, LevelExit
from leveltrade.strategy.session_filter import IST

STOCK = Instrument(token="2885", symbol="RELIANCE", exchange="NSE", lot_size=10)
CRUDE = Instrument(token="4001", symbol="CRUDEOIL", exchange="MCX", lot_size=100)
OPTION = Instrument(
    token="43210", symbol="NIFTY24MAR22000CE", exchange="NFO", lot_size=50, kind="option",
    option_type="CE", strike=22000.0, name="NIFTY",
)
NOW = datetime(2024, 3, 4, 10, 0, tzinfo=IST)


class FakeTradeLog:
    def __init__(self):
        self.records = []

    def append(self, record):
        self.records.append(record)


class FakeStore:
    def __init__(self):
        self.saves = 0
        self.last = None

    def save(self, positions, pending):
        self.saves += 1
        self.last = (list(positions), list(pending))


def _request(**overrides) -> EntryRequest:
    defaults = dict(
        instrument=STOCK,
        side="long",
        price=100.0,
        stop_loss=98.0,
        targets=(110.0,),
        quantity=1,
        strategy="reliance",
        reason="bullish retest of support 99.80",
    )
    defaults.update(overrides)
    return EntryRequest(**defaults)


def _position(pm, token):
    return next((p for p in pm.positions if p.instrument.token == token), None)


def _exposed(pm, token):
    return _position(pm, token) is not None or any(e.token == token for e in pm.pending)


def _manager(**risk_overrides):
    risk_defaults = dict(max_daily_loss=-1e9, max_daily_profit=1e9, cooldown_minutes=15)
    risk_defaults.update(risk_overrides)
    risk = RiskManager(**risk_defaults)
    log = FakeTradeLog()
    store = FakeStore()
    return PositionManager(risk, trade_log=log, store=store), risk, log, store


# ── Entries ──────────────────────────────────────────────────────────────


class TestEntries:
    def test_immediate_entry_opens_and_logs(self):
        pm, _, log, store = _manager()
        event = pm.submit(_request(), NOW)
        assert event.kind == "opened"
        assert event.price == 100.0
        pos = _position(pm, "2885")
        assert pos.status == "open"
        assert pos.ltp == 100.0
        assert log.records[0].action == "BUY"
        assert log.records[0].quantity == 10
        assert store.saves >= 1

    def test_short_entry_logs_sell(self):
        pm, _, log, _ = _manager()
        pm.submit(_request(side="short", stop_loss=102.0, targets=(95.0,)), NOW)
        assert log.records[0].action == "SELL"

    def test_duplicate_is_noop(self):
        pm, _, log, _ = _manager()
        pm.submit(_request(), NOW)
        assert pm.submit(_request(price=101.0), NOW) is None
        assert len(pm.positions) == 1
        assert _position(pm, "2885").entry_price == 100.0
        assert len(log.records) == 1

    def test_duplicate_of_pending_is_noop(self):
        pm, _, _, _ = _manager()
        pm.submit(_request(immediate=False, price=99.0), NOW)
        assert pm.submit(_request(), NOW) is None
        assert pm.positions == []

    def test_halt_blocks_entry(self):
        pm, risk, _, _ = _manager()
        risk.manual_halt()
        event = pm.submit(_request(), NOW)
        assert event.kind == "blocked"
        assert "halted" in event.reason
        assert not _exposed(pm, "2885")

    def test_armed_entry_fills_at_trigger(self):
        pm, _, _, _ = _manager()
        event = pm.submit(_request(immediate=False, price=99.5, stop_loss=98.0), NOW)
        assert event.kind == "armed"
        assert _position(pm, "2885") is None
        assert pm.on_tick("2885", 100.0, NOW + timedelta(minutes=1)) == []
        events = pm.on_tick("2885", 99.4, NOW + timedelta(minutes=2))
        assert [e.kind for e in events] == ["opened"]
        assert _position(pm, "2885").entry_price == 99.4
        assert pm.pending == []

    def test_gap_through_stop_cancels_pending(self):
        pm, _, log, _ = _manager()
        pm.submit(_request(immediate=False, price=99.5, stop_loss=98.0), NOW)
        events = pm.on_tick("2885", 97.5, NOW + timedelta(minutes=1))
        assert [(e.kind, e.reason) for e in events] == [("cancelled", GAP_THROUGH_STOP)]
        assert not _exposed(pm, "2885")
        assert log.records == []

    def test_short_gap_guard(self):
        pm, _, _, _ = _manager()
        pm.submit(
            _request(side="short", immediate=False, price=100.5, stop_loss=102.0, targets=(95.0,)),
            NOW,
        )
        events = pm.on_tick("2885", 102.5, NOW + timedelta(minutes=1))
        assert events[0].reason == GAP_THROUGH_STOP

    def test_pending_expires_on_tick(self):
        pm, _, _, _ = _manager()
        pm.submit(
            _request(immediate=False, price=99.5, expires_at=NOW + timedelta(minutes=30)), NOW
        )
        events = pm.on_tick("2885", 99.4, NOW + timedelta(minutes=30))
        assert [(e.kind, e.reason) for e in events] == [("expired", EXPIRED)]
        assert _position(pm, "2885") is None

    def test_expire_pending_without_ticks(self):
        pm, _, _, store = _manager()
        pm.submit(
            _request(immediate=False, price=99.5, expires_at=NOW + timedelta(minutes=30)), NOW
        )
        assert pm.expire_pending(NOW + timedelta(minutes=29)) == []
        saves = store.saves
        events = pm.expire_pending(NOW + timedelta(minutes=31))
        assert [e.kind for e in events] == ["expired"]
        assert pm.pending == []
        assert store.saves == saves + 1


# ── Exits ────────────────────────────────────────────────────────────────


class TestExits:
    def test_stop_loss(self):
        pm, risk, log, _ = _manager()
        pm.submit(_request(), NOW)
        events = pm.on_tick("2885", 97.9, NOW + timedelta(minutes=5))
        assert [(e.kind, e.reason) for e in events] == [("closed", STOP_LOSS_HIT)]
        assert events[0].pnl == pytest.approx(-21.0)
        assert risk.daily_pnl == pytest.approx(-21.0)
        assert log.records[-1].action == "SELL"
        assert log.records[-1].pnl == pytest.approx(-21.0)

    def test_single_target(self):
        pm, risk, _, _ = _manager()
        pm.submit(_request(quantity=2), NOW)
        events = pm.on_tick("2885", 110.5, NOW)
        assert [(e.kind, e.reason) for e in events] == [("closed", TARGET_HIT)]
        assert events[0].pnl == pytest.approx(10.5 * 2 * 10)
        assert pm.positions == []

    def test_short_pnl_sign(self):
        pm, risk, _, _ = _manager()
        pm.submit(_request(side="short", stop_loss=102.0, targets=(95.0,)), NOW)
        events = pm.on_tick("2885", 95.0, NOW)
        assert events[0].pnl == pytest.approx(50.0)

    def test_trailing_stop_walkthrough(self):
        """Entry 100, ATR 2: activates at 103, ratchets at 105, exits at 104."""
        pm, _, _, _ = _manager()
        pm.submit(
            _request(
                atr=2.0, stop_loss=98.0, targets=(120.0,),
                trail_activation=1.0, trail_multiple=0.5,
            ),
            NOW,
        )
        pos = _position(pm, "2885")
        assert pm.on_tick("2885", 103.0, NOW) == []
        assert pos.stop_loss == pytest.approx(102.0)
        pm.on_tick("2885", 105.0, NOW)
        assert pos.stop_loss == pytest.approx(104.0)
        pm.on_tick("2885", 104.5, NOW)
        assert pos.stop_loss == pytest.approx(104.0)
        events = pm.on_tick("2885", 104.0, NOW)
        assert [(e.kind, e.reason, e.price) for e in events] == [("closed", STOP_LOSS_HIT, 104.0)]

    def test_no_trailing_without_atr(self):
        pm, _, _, _ = _manager()
        pm.submit(_request(trail_activation=1.0, trail_multiple=0.5), NOW)
        assert _position(pm, "2885").trailing is None

    def test_stop_never_loosens(self):
        rng = random.Random(5)
        pm, _, _, _ = _manager()
        pm.submit(
            _request(
                atr=1.5, stop_loss=98.5, targets=(1000.0,),
                trail_activation=1.0, trail_multiple=0.5,
            ),
            NOW,
        )
        price = 100.0
        last_stop = 98.5
        for _ in range(500):
            price += rng.uniform(-0.4, 0.6)
            pm.on_tick("2885", round(price, 2), NOW)
            pos = _position(pm, "2885")
            if pos is None:
                break
            assert pos.stop_loss >= last_stop
            last_stop = pos.stop_loss

    def test_partial_exit_moves_stop_to_cost(self):
        pm, risk, log, _ = _manager()
        pm.submit(_request(quantity=4, targets=(102.0, 105.0)), NOW)
        events = pm.on_tick("2885", 102.0, NOW)
        assert [(e.kind, e.reason, e.quantity) for e in events] == [("partial", PARTIAL_TARGET, 2)]
        pos = _position(pm, "2885")
        assert pos.quantity == 2
        assert pos.stop_loss == 100.0
        assert pos.targets == (105.0,)
        assert pos.status == "partially_closed"
        assert risk.daily_pnl == pytest.approx(40.0)

        events = pm.on_tick("2885", 105.0, NOW)
        assert [(e.kind, e.reason) for e in events] == [("closed", TARGET_HIT)]
        assert events[0].pnl == pytest.approx(100.0)
        assert risk.daily_pnl == pytest.approx(140.0)
        assert [r.quantity for r in log.records] == [40, 20, 20]

    def test_partial_then_stop_at_cost(self):
        pm, risk, _, _ = _manager()
        pm.submit(_request(quantity=2, targets=(102.0, 105.0)), NOW)
        pm.on_tick("2885", 102.0, NOW)
        events = pm.on_tick("2885", 100.0, NOW)
        assert events[0].reason == STOP_LOSS_HIT
        assert events[0].pnl == pytest.approx(0.0)
        assert risk.daily_pnl == pytest.approx(20.0)

    def test_single_lot_rolls_target_without_closing(self):
        pm, risk, log, _ = _manager()
        pm.submit(_request(quantity=1, targets=(102.0, 105.0)), NOW)
        events = pm.on_tick("2885", 102.0, NOW)
        assert events[0].kind == "partial"
        assert events[0].quantity == 0
        assert events[0].pnl is None
        pos = _position(pm, "2885")
        assert pos.quantity == 1
        assert pos.stop_loss == 100.0
        assert pos.targets == (105.0,)
        assert len(log.records) == 1
        assert risk.daily_pnl == 0.0

    def test_level_exit_on_underlying_tick(self):
        pm, _, _, _ = _manager()
        pm.submit(
            _request(
                instrument=OPTION, price=120.0, stop_loss=96.0, targets=(180.0,),
                level_exit=LevelExit(token="26000", price=21900.0, direction="below"),
            ),
            NOW,
        )
        pm.on_tick("43210", 118.0, NOW)
        assert pm.on_tick("26000", 21950.0, NOW) == []
        events = pm.on_tick("26000", 21899.0, NOW)
        assert [(e.kind, e.reason, e.price) for e in events] == [("closed", LEVEL_HIT, 118.0)]
        assert events[0].pnl == pytest.approx(-2.0 * 50)

    def test_cooldown_after_exit(self):
        pm, _, _, _ = _manager(cooldown_minutes=15)
        pm.submit(_request(), NOW)
        pm.on_tick("2885", 97.0, NOW)
        event = pm.submit(_request(), NOW + timedelta(minutes=5))
        assert event.kind == "blocked"
        assert event.reason == "instrument on cooldown"
        assert pm.submit(_request(), NOW + timedelta(minutes=15)).kind == "opened"

    def test_unrealized_pnl(self):
        pm, _, _, _ = _manager()
        pm.submit(_request(quantity=2), NOW)
        pm.on_tick("2885", 101.5, NOW)
        assert pm.unrealized_pnl == pytest.approx(30.0)


# ── Square-off ───────────────────────────────────────────────────────────


class TestSquareOff:
    def test_segment_square_off_blocks_new_entries(self):
        pm, _, _, _ = _manager()
        pm.submit(_request(), NOW)
        pm.submit(_request(instrument=CRUDE, price=6500.0, stop_loss=6450.0, targets=(6600.0,)), NOW)
        pm.on_tick("2885", 101.0, NOW)

        events = pm.close_all(END_OF_DAY, NOW, segment="equity")
        assert [(e.kind, e.reason, e.price) for e in events] == [("closed", END_OF_DAY, 101.0)]
        assert pm.is_segment_closed("equity")
        assert not pm.is_segment_closed("commodity")
        assert _position(pm, "4001") is not None

        later = NOW + timedelta(hours=1)
        assert pm.submit(_request(), later).kind == "blocked"
        pm.reset_session()
        assert pm.submit(_request(), later).kind == "opened"

    def test_close_all_cancels_pending(self):
        pm, _, _, _ = _manager()
        pm.submit(_request(immediate=False, price=99.0), NOW)
        events = pm.close_all(END_OF_DAY, NOW)
        assert [e.kind for e in events] == ["cancelled"]
        assert pm.pending == []

    def test_manual_close_all_does_not_block(self):
        pm, _, _, _ = _manager()
        pm.submit(_request(), NOW)
        pm.close_all("Manual", NOW, block=False)
        assert not pm.is_segment_closed("equity")

    def test_segment_of(self):
        assert segment_of(STOCK) == "equity"
        assert segment_of(OPTION) == "equity"
        assert segment_of(CRUDE) == "commodity"


class TestPnlConservation:
    def test_realized_pnl_matches_trade_log(self):
        """Risk state's realized P&L equals the sum of logged exit P&L."""
        rng = random.Random(17)
        pm, risk, log, _ = _manager(cooldown_minutes=0)
        now = NOW
        for _ in range(40):
            side = rng.choice(["long", "short"])
            sign = 1 if side == "long" else -1
            entry = 100.0
            pm.submit(
                _request(
                    side=side,
                    quantity=rng.randint(1, 5),
                    stop_loss=entry - sign * 2.0,
                    targets=(entry + sign * 2.0, entry + sign * 4.0),
                    atr=1.0, trail_activation=1.0, trail_multiple=0.5,
                ),
                now,
            )
            price = entry
            while _position(pm, "2885") is not None:
                price += rng.uniform(-0.5, 0.5)
                now += timedelta(seconds=1)
                pm.on_tick("2885", round(price, 2), now)
        logged = sum(r.pnl for r in log.records if r.pnl is not None)
        assert risk.daily_pnl == pytest.approx(logged)
