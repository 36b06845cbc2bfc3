"""
Tests for arena_api.py — HTTP routes and the /ws event stream:
  - Health, market proxies, state, trades, weights, debate log
  - start-cycle / stop-cycle (409 when a cycle is in flight)
  - Unknown agent → 404
  - WebSocket snapshot on connect, ping/pong, live cycle_status delivery
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import time

import pytest
from fastapi.testclient import TestClient

from arena_api import ArenaRuntime, app, get_runtime, set_runtime
from arena_config import ArenaConfig
from records import CycleStatus


# ─── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def runtime():
    rt = ArenaRuntime.from_config(ArenaConfig(pacing_delay=0.0, price_interval=60.0))
    set_runtime(rt)
    yield rt
    set_runtime(None)


@pytest.fixture
def client(runtime):
    with TestClient(app) as c:
        yield c


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


# ─── Health & Market ──────────────────────────────────────────────────────────


class TestHealth:
    def test_health_ok(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["cycle_status"] == "idle"
        assert data["subscribers"] == 0
        assert data["market_feed"]["configured"] is False
        assert data["decision_source"]["configured_agents"] == []

    def test_runtime_override(self, runtime):
        assert get_runtime() is runtime


class TestMarket:
    def test_candles(self, client, runtime):
        resp = client.get("/api/market/candles/nvda")
        assert resp.status_code == 200
        data = resp.json()
        assert data["ticker"] == "NVDA"
        assert len(data["candles"]) == 100
        assert {"time", "open", "high", "low", "close", "volume"} <= set(data["candles"][0])
        assert runtime.streamer.focus == "NVDA"

    def test_quote(self, client):
        resp = client.get("/api/market/quote/aapl")
        assert resp.status_code == 200
        data = resp.json()
        assert data["ticker"] == "AAPL"
        assert abs(data["price"] - 178.50) <= 2.5
        assert data["source"] == "synthetic"


# ─── Trading ──────────────────────────────────────────────────────────────────


class TestTrading:
    def test_initial_state(self, client):
        data = client.get("/api/trading/state").json()
        assert data["status"] == "idle"
        assert data["stock_votes"] == {}

    def test_start_cycle_runs_to_trade(self, client, runtime):
        resp = client.post("/api/trading/start-cycle", json={"ticker": "msft"})
        assert resp.status_code == 200
        assert resp.json()["ok"] is True

        assert wait_for(lambda: len(client.get("/api/trades").json()) == 1)
        state = client.get("/api/trading/state").json()
        assert state["status"] == "trading"
        assert sum(state["stock_votes"].values()) == pytest.approx(4.0)
        assert len(client.get("/api/debate/messages").json()) == 8

    def test_start_without_body(self, client):
        resp = client.post("/api/trading/start-cycle")
        assert resp.status_code == 200

    def test_start_refused_while_running(self, client, runtime):
        runtime.orchestrator.is_running = lambda: True
        resp = client.post("/api/trading/start-cycle", json={})
        assert resp.status_code == 409

    def test_stop_when_idle(self, client):
        resp = client.post("/api/trading/stop-cycle")
        assert resp.status_code == 200
        assert resp.json()["state"]["status"] == "idle"

    def test_stop_active_cycle(self, client, runtime):
        runtime.store.update_cycle_state(status=CycleStatus.STOCK_SELECTION)
        resp = client.post("/api/trading/stop-cycle")
        assert resp.json()["state"]["status"] == "stopped"
        assert client.get("/api/trading/state").json()["status"] == "stopped"


class TestTrades:
    def test_empty(self, client):
        assert client.get("/api/trades").json() == []

    @pytest.mark.parametrize("limit", [0, 501])
    def test_limit_bounds(self, client, limit):
        assert client.get(f"/api/trades?limit={limit}").status_code == 422


class TestEvents:
    def test_stop_event_logged(self, client, runtime):
        runtime.store.update_cycle_state(status=CycleStatus.TRADING)
        client.post("/api/trading/stop-cycle")
        events = client.get("/api/events").json()
        assert events[-1]["type"] == "cycle_status"
        assert events[-1]["data"]["status"] == "stopped"
        assert client.get("/health").json()["broadcaster"]["published"] >= 1

    def test_limit_must_be_positive(self, client):
        assert client.get("/api/events?limit=0").status_code == 422


# ─── Weights ──────────────────────────────────────────────────────────────────


class TestWeights:
    def test_list(self, client):
        data = client.get("/api/ai/weights").json()
        assert [w["agent"] for w in data] == ["chatgpt", "gemini", "grok", "deepseek"]
        assert all(w["selection_weight"] == 1.0 for w in data)

    def test_override(self, client, runtime):
        resp = client.post("/api/ai/weights/Grok", json={"strategy_weight": 1.5})
        assert resp.status_code == 200
        assert resp.json()["strategy_weight"] == 1.5
        assert resp.json()["selection_weight"] == 1.0

    def test_unknown_agent(self, client):
        resp = client.post("/api/ai/weights/claude", json={"selection_weight": 2.0})
        assert resp.status_code == 404
        assert "claude" in resp.json()["detail"]


# ─── WebSocket ────────────────────────────────────────────────────────────────


class TestWebSocket:
    def test_snapshot_on_connect(self, client):
        with client.websocket_connect("/ws") as ws:
            data = ws.receive_json()
            assert data["type"] == "cycle_status"
            assert data["data"]["status"] == "idle"
            assert "timestamp" in data

    def test_mid_cycle_snapshot(self, client, runtime):
        runtime.store.update_cycle_state(
            status=CycleStatus.STRATEGY_DEBATE,
            selected_ticker="AAPL",
            stock_votes={"AAPL": 3.0, "NVDA": 1.0},
            strategy_votes={"Scalping": 1.05},
        )
        with client.websocket_connect("/ws") as ws:
            data = ws.receive_json()["data"]
            assert data["status"] == "strategy_debate"
            assert data["selected_ticker"] == "AAPL"
            assert data["strategy_votes"] == {"Scalping": 1.05}

    def test_ping_pong(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "ping"})
            response = ws.receive_json()
            assert response["type"] == "pong"
            assert "timestamp" in response

    def test_receives_published_status(self, client, runtime):
        runtime.store.update_cycle_state(status=CycleStatus.TRADING)
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            client.post("/api/trading/stop-cycle")
            event = ws.receive_json()
            assert event["type"] == "cycle_status"
            assert event["data"]["status"] == "stopped"

    def test_subscriber_released_on_close(self, client, runtime):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            assert runtime.broadcaster.subscriber_count == 1
        assert wait_for(lambda: runtime.broadcaster.subscriber_count == 0)
