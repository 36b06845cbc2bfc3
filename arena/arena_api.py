"""
arena_api.py — FastAPI server for the Trading Arena.

Endpoints:
    GET  /health                      — liveness, subscriber count, stats
    GET  /api/market/candles/{ticker} — recent bars (also moves the live chart)
    GET  /api/market/quote/{ticker}   — point quote
    GET  /api/trading/state           — current CycleState
    POST /api/trading/start-cycle     — start a cycle ({"ticker": ...} optional)
    POST /api/trading/stop-cycle      — request cooperative stop
    GET  /api/trades?limit=50         — trade log, newest first
    GET  /api/ai/weights              — all agent weights
    POST /api/ai/weights/{agent}      — override weights for one agent
    GET  /api/debate/messages         — debate log of the current cycle
    GET  /api/events?limit=50         — recently published events
    WS   /ws                          — event stream

WebSocket protocol:
    Server → client: {"type", "data", "timestamp"} envelopes of kind
        price_update, debate_message, cycle_status, trade_executed.
        One cycle_status snapshot is sent immediately on connect.
    Client → server: {"type": "ping"} → {"type": "pong"}

Usage:
    uvicorn arena_api:app --port 5000
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from arena_config import ArenaConfig
from broadcaster import Broadcaster
from cycle_orchestrator import CycleOrchestrator
from decision_source import DecisionSource
from market_feed import MarketFeed
from price_stream import PriceStreamer
from records import Agent, Event
from state_store import ArenaStore, MemoryStore, UnknownAgentError


WS_RECEIVE_TIMEOUT = 30.0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── Runtime ──────────────────────────────────────────────────────────────────


@dataclass
class ArenaRuntime:
    """Everything one arena process owns, wired together."""
    config: ArenaConfig
    store: ArenaStore
    broadcaster: Broadcaster
    source: DecisionSource
    feed: MarketFeed
    orchestrator: CycleOrchestrator
    streamer: PriceStreamer

    @classmethod
    def from_config(cls, config: ArenaConfig) -> "ArenaRuntime":
        store = MemoryStore()
        broadcaster = Broadcaster()
        source = DecisionSource(api_keys=config.api_keys, timeout=config.provider_timeout)
        feed = MarketFeed(api_key=config.alpha_vantage_key)
        streamer = PriceStreamer(
            feed, broadcaster,
            interval=config.price_interval,
            default_ticker=config.fallback_ticker,
        )
        orchestrator = CycleOrchestrator(
            store, broadcaster, source, feed,
            pacing_delay=config.pacing_delay,
            trade_quantity=config.trade_quantity,
            fallback_ticker=config.fallback_ticker,
            fallback_strategy=config.fallback_strategy,
            min_weight=config.min_weight,
            critique_round=config.critique_round,
            on_focus=streamer.set_focus,
        )
        return cls(config, store, broadcaster, source, feed, orchestrator, streamer)


_runtime: Optional[ArenaRuntime] = None


def get_runtime() -> ArenaRuntime:
    """Return the process runtime, building it from the environment on first use."""
    global _runtime
    if _runtime is None:
        _runtime = ArenaRuntime.from_config(ArenaConfig.from_env())
    return _runtime


def set_runtime(runtime: Optional[ArenaRuntime]) -> None:
    """Override the global runtime (used in tests)."""
    global _runtime
    _runtime = runtime


# ─── App ──────────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    runtime = get_runtime()
    await runtime.streamer.start()
    try:
        yield
    finally:
        await runtime.streamer.stop()
        await runtime.orchestrator.shutdown()
        await runtime.source.aclose()


app = FastAPI(
    title="Trading Arena API",
    description="Multi-agent trading cycles with real-time event streaming",
    version="1.0.0",
    lifespan=lifespan,
)


class StartCycleRequest(BaseModel):
    ticker: Optional[str] = Field(default=None, max_length=10)


class WeightUpdate(BaseModel):
    selection_weight: Optional[float] = None
    strategy_weight: Optional[float] = None
    execution_weight: Optional[float] = None


# ─── Routes ───────────────────────────────────────────────────────────────────


@app.get("/health")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    return {
        "status": "ok",
        "timestamp": _now(),
        "cycle_status": runtime.store.get_cycle_state().status.value,
        "subscribers": runtime.broadcaster.subscriber_count,
        "broadcaster": runtime.broadcaster.get_stats(),
        "orchestrator": runtime.orchestrator.get_stats(),
        "decision_source": runtime.source.get_stats(),
        "market_feed": runtime.feed.status.to_dict(),
        "price_stream": runtime.streamer.get_stats(),
    }


@app.get("/api/market/candles/{ticker}")
async def get_candles(ticker: str) -> Dict[str, Any]:
    """Recent bars for `ticker`; the live chart switches to it."""
    runtime = get_runtime()
    ticker = ticker.upper()
    runtime.streamer.set_focus(ticker)
    bars = await runtime.feed.get_recent_bars(ticker)
    return {"ticker": ticker, "candles": [b.to_dict() for b in bars]}


@app.get("/api/market/quote/{ticker}")
async def get_quote(ticker: str) -> Dict[str, Any]:
    ticker = ticker.upper()
    quote = await get_runtime().feed.get_quote(ticker)
    return {"ticker": ticker, **quote.to_dict()}


@app.get("/api/trading/state")
async def trading_state() -> Dict[str, Any]:
    return get_runtime().store.get_cycle_state().to_dict()


@app.post("/api/trading/start-cycle")
async def start_cycle(body: Optional[StartCycleRequest] = None) -> Dict[str, Any]:
    """Start a trading cycle in the background."""
    orchestrator = get_runtime().orchestrator
    if orchestrator.is_running():
        raise HTTPException(status_code=409, detail="Cycle already running")

    ticker = body.ticker if body else None
    started = await orchestrator.start_cycle(ticker)
    if not started:
        raise HTTPException(status_code=409, detail="Cycle already running")

    return {
        "ok": True,
        "message": "Cycle started",
        "state": orchestrator.state.to_dict(),
    }


@app.post("/api/trading/stop-cycle")
async def stop_cycle() -> Dict[str, Any]:
    state = await get_runtime().orchestrator.stop_cycle()
    return {"ok": True, "message": "Cycle stopped", "state": state.to_dict()}


@app.get("/api/trades")
async def list_trades(limit: int = 50) -> List[Dict[str, Any]]:
    """Return the last N trades, newest first (default 50)."""
    if limit < 1 or limit > 500:
        raise HTTPException(status_code=422, detail="limit must be 1–500")
    return [t.to_dict() for t in get_runtime().store.get_trades(limit=limit)]


@app.get("/api/ai/weights")
async def list_weights() -> List[Dict[str, Any]]:
    return [w.to_dict() for w in get_runtime().store.get_agent_weights()]


@app.post("/api/ai/weights/{agent_id}")
async def update_weights(agent_id: str, body: WeightUpdate) -> Dict[str, Any]:
    """Overwrite one agent's weights with the supplied values."""
    agent = Agent.parse(agent_id)
    if agent is None:
        raise UnknownAgentError(agent_id)
    updated = get_runtime().store.set_agent_weight(
        agent, **body.model_dump(exclude_none=True)
    )
    logger.info(f"Weights overridden for {agent.value}: {updated.to_dict()}")
    return updated.to_dict()


@app.get("/api/debate/messages")
async def debate_messages() -> List[Dict[str, Any]]:
    return [m.to_dict() for m in get_runtime().store.get_debate_messages()]


@app.get("/api/events")
async def recent_events(limit: int = 50) -> List[Dict[str, Any]]:
    """Return recently published events, oldest first."""
    if limit < 1:
        raise HTTPException(status_code=422, detail="limit must be at least 1")
    return get_runtime().broadcaster.recent_events(min(limit, 200))


# ─── WebSocket Route ──────────────────────────────────────────────────────────


@app.websocket("/ws")
async def websocket_events(websocket: WebSocket):
    """
    Event stream for observers.

    On connect: one cycle_status snapshot of the current CycleState.
    On message: answers ping with pong; anything else is ignored.
    On disconnect: the subscription is released.
    """
    runtime = get_runtime()
    await websocket.accept()
    handle = await runtime.broadcaster.subscribe(
        websocket, snapshot=lambda: Event.cycle_status(runtime.store.get_cycle_state()),
    )
    try:
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_json(), timeout=WS_RECEIVE_TIMEOUT)
                if isinstance(data, dict) and data.get("type") == "ping":
                    await websocket.send_json({"type": "pong", "timestamp": _now()})
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "keepalive", "timestamp": _now()})
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning(f"WS error: {e}")
    finally:
        runtime.broadcaster.unsubscribe(handle)


# ─── Error Handlers ───────────────────────────────────────────────────────────


@app.exception_handler(UnknownAgentError)
async def unknown_agent_handler(request: Any, exc: UnknownAgentError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": f"Agent not found: {exc.agent}"})


@app.exception_handler(Exception)
async def generic_error_handler(request: Any, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal error: {exc}"},
    )
