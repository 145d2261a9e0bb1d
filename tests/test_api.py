"""Tests for the internal FastAPI endpoints."""

from datetime import date

import pytest
from fastapi.testclient import TestClient

from leveltrade.api.routers import configure_routers
from leveltrade.main import app

client = TestClient(app)


class FakeManager:
    def __init__(self):
        self.commands = []

    def status(self):
        return {
            "running": True,
            "trading_halted": False,
            "strategies": {"reliance": {"running": True}},
            "failed": {},
        }

    def levels(self):
        return {
            "reliance": {
                "symbol": "RELIANCE-EQ",
                "supports": [{"price": 99.5, "strength": 3}],
                "resistances": [{"price": 110.5, "strength": 3}],
            }
        }

    def positions(self):
        return {"positions": [{"symbol": "RELIANCE-EQ", "side": "long"}], "pending": []}

    async def execute(self, name, args=()):
        self.commands.append((name, tuple(args)))
        return {"halt": "Trading halted", "resume": "Trading resumed"}.get(
            name, "Recomputed levels for reliance"
        )


class FakeTradeRepo:
    def __init__(self):
        self.calls = []

    def get_trades(self, limit=20, session_date=None, strategy=None):
        self.calls.append((limit, session_date, strategy))
        return {"trades": [{"symbol": "RELIANCE-EQ", "pnl": 120.0}], "total": 1}


@pytest.fixture(autouse=True)
def _reset_routers():
    configure_routers(trade_repo=None, engine_manager=None, mode="idle")
    yield
    configure_routers(trade_repo=None, engine_manager=None, mode="idle")


class TestReadEndpoints:
    def test_health(self):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_status_without_engine(self):
        assert client.get("/status").json() == {"mode": "idle", "running": False, "strategies": {}}

    def test_status_with_engine(self):
        configure_routers(trade_repo=None, engine_manager=FakeManager(), mode="paper")
        body = client.get("/status").json()
        assert body["mode"] == "paper"
        assert body["running"] is True
        assert "reliance" in body["strategies"]

    def test_levels(self):
        configure_routers(trade_repo=None, engine_manager=FakeManager())
        body = client.get("/levels").json()
        assert body["levels"]["reliance"]["supports"][0]["price"] == 99.5

    def test_levels_for_one_strategy(self):
        configure_routers(trade_repo=None, engine_manager=FakeManager())
        assert list(client.get("/levels", params={"strategy": "reliance"}).json()["levels"]) == [
            "reliance"
        ]
        assert client.get("/levels", params={"strategy": "nifty"}).status_code == 404

    def test_levels_without_engine(self):
        assert client.get("/levels").status_code == 503

    def test_positions(self):
        assert client.get("/positions").json() == {"positions": [], "pending": []}
        configure_routers(trade_repo=None, engine_manager=FakeManager())
        assert client.get("/positions").json()["positions"][0]["side"] == "long"

    def test_trades(self):
        assert client.get("/trades").json() == {"trades": [], "total": 0}
        repo = FakeTradeRepo()
        configure_routers(trade_repo=repo)
        body = client.get(
            "/trades", params={"limit": 5, "session_date": "2024-03-04", "strategy": "reliance"}
        ).json()
        assert body["total"] == 1
        assert repo.calls == [(5, date(2024, 3, 4), "reliance")]

    def test_trades_limit_validated(self):
        configure_routers(trade_repo=FakeTradeRepo())
        assert client.get("/trades", params={"limit": 0}).status_code == 422


class TestControls:
    def test_halt_and_resume(self):
        manager = FakeManager()
        configure_routers(trade_repo=None, engine_manager=manager)
        assert client.post("/halt").json() == {"status": "halted", "message": "Trading halted"}
        assert client.post("/resume").json() == {"message": "Trading resumed"}
        assert manager.commands == [("halt", ()), ("resume", ())]

    def test_recompute_one_strategy(self):
        manager = FakeManager()
        configure_routers(trade_repo=None, engine_manager=manager)
        client.post("/recompute", params={"strategy": "reliance"})
        assert manager.commands == [("recompute", ("reliance",))]

    def test_controls_without_engine(self):
        assert client.post("/halt").status_code == 503
