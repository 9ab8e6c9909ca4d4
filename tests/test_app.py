from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from crypto_crash.app import create_app
from crypto_crash.db import Ledger
from crypto_crash.events import ROUND_START

from conftest import FixedPriceOracle, ManualClock


@pytest.fixture
def app(ledger, oracle, config, clock):
    return create_app(ledger=ledger, oracle=oracle, config=config, clock=clock, run_scheduler=False)


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def live_round(app, ledger, crash_at):
    crash_at("2.50")
    await ledger.seed_player("alice", {"btc": Decimal("0.001")})
    return await app.state.engine.start_round(run_clock=False)


def bet_body(player_id="alice", usd=10, currency="btc"):
    return {"playerId": player_id, "usdAmount": usd, "currency": currency}


class TestBetEndpoint:
    async def test_accepted(self, client, live_round):
        resp = await client.post("/api/game/bet", json=bet_body())
        assert resp.status_code == 200
        body = resp.json()
        assert body["multiplier"] == 1.0
        assert body["bet"] == {
            "playerId": "alice",
            "usdAmount": 10.0,
            "cryptoAmount": 0.00016666,
            "currency": "btc",
            "priceAtTime": 60000.0,
        }

    async def test_no_round_is_conflict(self, client):
        resp = await client.post("/api/game/bet", json=bet_body())
        assert resp.status_code == 409
        assert resp.json()["error"] == "RoundNotAcceptingBets"

    async def test_duplicate_is_conflict(self, client, live_round):
        await client.post("/api/game/bet", json=bet_body())
        resp = await client.post("/api/game/bet", json=bet_body())
        assert resp.status_code == 409
        assert resp.json()["error"] == "DuplicateBet"

    async def test_insufficient_balance(self, client, live_round):
        resp = await client.post("/api/game/bet", json=bet_body(usd=1000))
        assert resp.status_code == 402
        assert resp.json()["error"] == "InsufficientBalance"

    async def test_price_unavailable(self, client, oracle, live_round):
        oracle.prices["btc"] = None
        resp = await client.post("/api/game/bet", json=bet_body())
        assert resp.status_code == 503
        assert resp.json()["error"] == "PriceUnavailable"

    async def test_unsupported_currency(self, client, live_round):
        resp = await client.post("/api/game/bet", json=bet_body(currency="doge"))
        assert resp.status_code == 422
        assert resp.json()["error"] == "InvalidInput"

    @pytest.mark.parametrize(
        "body",
        [
            {"playerId": "bad id", "usdAmount": 10, "currency": "btc"},
            {"playerId": "alice", "usdAmount": 0, "currency": "btc"},
            {"playerId": "alice", "usdAmount": -1, "currency": "btc"},
            {"playerId": "alice", "currency": "btc"},
        ],
    )
    async def test_request_validation(self, client, live_round, body):
        resp = await client.post("/api/game/bet", json=body)
        assert resp.status_code == 422


class TestCashoutEndpoint:
    async def test_cashout(self, client, clock, live_round):
        await client.post("/api/game/bet", json=bet_body())
        clock.advance(8)

        resp = await client.post("/api/game/cashout", json={"playerId": "alice"})
        assert resp.status_code == 200
        assert resp.json() == {
            "playerId": "alice",
            "multiplier": 1.8,
            "cryptoPayout": 0.000299988,
            "usdPayout": 18.0,
        }

    async def test_after_crash(self, client, clock, live_round):
        await client.post("/api/game/bet", json=bet_body())
        clock.advance(20)

        resp = await client.post("/api/game/cashout", json={"playerId": "alice"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "RoundAlreadyCrashed"

    async def test_without_bet(self, client, live_round):
        resp = await client.post("/api/game/cashout", json={"playerId": "alice"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "NoBetThisRound"


class TestReadEndpoints:
    async def test_balance(self, client, live_round):
        resp = await client.get("/api/game/balance/alice")
        assert resp.status_code == 200
        assert resp.json() == {
            "playerId": "alice",
            "balances": {"btc": 0.001, "eth": 0.0},
            "usdEquivalent": {"btc": 60.0, "eth": 0.0},
        }

    async def test_balance_unknown_player(self, client):
        resp = await client.get("/api/game/balance/nobody")
        assert resp.status_code == 404

    async def test_state_hides_seed(self, client, live_round):
        resp = await client.get("/api/game/state")
        body = resp.json()
        assert body["status"] == "pending"
        assert body["roundId"] == live_round.round_id
        assert body["hash"] == live_round.hash
        assert body["seed"] is None

    async def test_rounds_and_verify(self, client, app, clock, live_round):
        clock.advance(20)
        await app.state.engine.tick()

        rounds = (await client.get("/api/game/rounds")).json()
        assert [r["roundId"] for r in rounds] == [live_round.round_id]
        assert rounds[0]["seed"] == live_round.seed

        resp = await client.get(f"/api/game/rounds/{live_round.round_id}/verify")
        assert resp.status_code == 200
        body = resp.json()
        assert body["hashValid"] is True
        # the pinned crash point is not what the seed derives
        assert body["crashPointValid"] is False
        assert body["verified"] is False

    async def test_verify_honest_round(self, client, app, clock, ledger):
        rnd = await app.state.engine.start_round(run_clock=False)
        clock.advance(1000)
        await app.state.engine.tick()

        body = (await client.get(f"/api/game/rounds/{rnd.round_id}/verify")).json()
        assert body["verified"] is True
        assert body["crashPoint"] == float(rnd.crash_point)

    async def test_verify_pending_round(self, client, live_round):
        resp = await client.get(f"/api/game/rounds/{live_round.round_id}/verify")
        assert resp.status_code == 409
        assert resp.json()["error"] == "RoundStillRunning"

    async def test_verify_missing_round(self, client):
        resp = await client.get("/api/game/rounds/42/verify")
        assert resp.status_code == 404


def test_websocket_streams_events_and_reports_errors(tmp_path):
    ledger = Ledger(f"sqlite+aiosqlite:///{tmp_path / 'ws.db'}")
    oracle = FixedPriceOracle({"btc": Decimal("60000"), "eth": Decimal("3000")})
    app = create_app(ledger=ledger, oracle=oracle, clock=ManualClock(), run_scheduler=False)

    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"action": "dance"})
            assert ws.receive_json()["data"]["error"] == "InvalidInput"

            ws.send_json({"action": "cashout", "playerId": "alice"})
            assert ws.receive_json()["data"]["error"] == "NoActiveRound"

            rnd = client.portal.call(app.state.engine.start_round, False)
            event = ws.receive_json()
            assert event == {"type": ROUND_START, "data": {"roundId": rnd.round_id, "hash": rnd.hash}}

        assert app.state.bus.subscriber_count == 0
