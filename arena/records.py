"""
records.py — Core records for the Trading Arena.

Agents, weights, debate log entries, cycle state, trades, candles and the
event envelope pushed to WebSocket subscribers. Records are frozen
dataclasses: every mutation produces a new record and replaces the old one
whole, so an observer never sees a half-applied update.

Usage:
    state = CycleState(status=CycleStatus.STOCK_SELECTION)
    state = state.replace(stock_votes={"AAPL": 1.0})
    event = Event.cycle_status(state)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ─── Enumerations ─────────────────────────────────────────────────────────────


class Agent(str, Enum):
    """The fixed set of decision identities, in debate order."""
    CHATGPT = "chatgpt"
    GEMINI = "gemini"
    GROK = "grok"
    DEEPSEEK = "deepseek"

    @classmethod
    def parse(cls, value: str) -> Optional["Agent"]:
        try:
            return cls(value.lower())
        except ValueError:
            return None


AGENT_ORDER: List[Agent] = [Agent.CHATGPT, Agent.GEMINI, Agent.GROK, Agent.DEEPSEEK]

AGENT_NAMES: Dict[Agent, str] = {
    Agent.CHATGPT: "ChatGPT",
    Agent.GEMINI: "Gemini",
    Agent.GROK: "Grok",
    Agent.DEEPSEEK: "DeepSeek",
}


class CycleStatus(str, Enum):
    IDLE = "idle"
    STOCK_SELECTION = "stock_selection"
    STRATEGY_DEBATE = "strategy_debate"
    TRADING = "trading"
    STOPPED = "stopped"


class PromptKind(str, Enum):
    SELECT_ASSET = "select-asset"
    SELECT_STRATEGY = "select-strategy"
    CRITIQUE = "critique"


class MessageKind(str, Enum):
    PROPOSAL = "proposal"
    CRITIQUE = "critique"
    VOTE = "vote"


class TradeAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class EventType(str, Enum):
    PRICE_UPDATE = "price_update"
    DEBATE_MESSAGE = "debate_message"
    CYCLE_STATUS = "cycle_status"
    TRADE_EXECUTED = "trade_executed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


# ─── Agent Weights ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class WeightDelta:
    """Additive change applied to an AgentWeight."""
    selection: float = 0.0
    strategy: float = 0.0
    execution: float = 0.0


@dataclass(frozen=True)
class AgentWeight:
    """Influence of one agent over each kind of vote."""
    agent: Agent
    selection_weight: float = 1.0
    strategy_weight: float = 1.0
    execution_weight: float = 1.0   # reserved, never scored

    def apply(self, delta: WeightDelta) -> "AgentWeight":
        return replace(
            self,
            selection_weight=self.selection_weight + delta.selection,
            strategy_weight=self.strategy_weight + delta.strategy,
            execution_weight=self.execution_weight + delta.execution,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent.value,
            "selection_weight": round(self.selection_weight, 6),
            "strategy_weight": round(self.strategy_weight, 6),
            "execution_weight": round(self.execution_weight, 6),
        }


# ─── Proposals & Debate ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class Proposal:
    """A structured reply from a decision source."""
    agent: Agent
    kind: PromptKind
    candidate: str          # ticker, strategy name, or critique text
    justification: str
    source: str = "fallback"   # "provider" | "fallback"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent.value,
            "kind": self.kind.value,
            "candidate": self.candidate,
            "justification": self.justification,
            "source": self.source,
        }


@dataclass(frozen=True)
class DebateMessage:
    agent: Agent
    message: str
    kind: MessageKind
    ticker: Optional[str] = None
    strategy: Optional[str] = None
    timestamp: str = field(default_factory=_now)
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent": self.agent.value,
            "message": self.message,
            "kind": self.kind.value,
            "ticker": self.ticker,
            "strategy": self.strategy,
            "timestamp": self.timestamp,
        }


# ─── Cycle State ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CycleState:
    """Progress of the current trading cycle. Exactly one exists at a time."""
    status: CycleStatus = CycleStatus.IDLE
    selected_ticker: Optional[str] = None
    selected_strategy: Optional[str] = None
    stock_votes: Dict[str, float] = field(default_factory=dict)
    strategy_votes: Dict[str, float] = field(default_factory=dict)

    def replace(self, **changes: Any) -> "CycleState":
        for key in ("stock_votes", "strategy_votes"):
            if key in changes:
                changes[key] = dict(changes[key])
        return replace(self, **changes)

    @property
    def is_active(self) -> bool:
        return self.status in (
            CycleStatus.STOCK_SELECTION,
            CycleStatus.STRATEGY_DEBATE,
            CycleStatus.TRADING,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "selected_ticker": self.selected_ticker,
            "selected_strategy": self.selected_strategy,
            "stock_votes": dict(self.stock_votes),
            "strategy_votes": dict(self.strategy_votes),
        }


# ─── Trades & Market Data ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Trade:
    ticker: str
    action: TradeAction
    quantity: float
    price: float
    strategy: str
    pnl: Optional[float] = None
    timestamp: str = field(default_factory=_now)
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ticker": self.ticker,
            "action": self.action.value,
            "quantity": self.quantity,
            "price": round(self.price, 4),
            "strategy": self.strategy,
            "pnl": self.pnl,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Candlestick:
    """One OHLCV bar; `time` is a Unix timestamp in seconds."""
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(frozen=True)
class Quote:
    price: float
    change: float
    change_percent: float
    source: str = "synthetic"   # "alphavantage" | "synthetic"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": round(self.price, 4),
            "change": round(self.change, 4),
            "change_percent": round(self.change_percent, 4),
            "source": self.source,
        }


# ─── Event Envelope ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Event:
    """Envelope pushed to every subscriber: kind tag, payload, timestamp."""
    type: EventType
    data: Dict[str, Any]
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    @classmethod
    def cycle_status(cls, state: CycleState) -> "Event":
        return cls(EventType.CYCLE_STATUS, state.to_dict())

    @classmethod
    def debate_message(cls, message: DebateMessage) -> "Event":
        return cls(EventType.DEBATE_MESSAGE, message.to_dict())

    @classmethod
    def trade_executed(cls, trade: Trade) -> "Event":
        return cls(EventType.TRADE_EXECUTED, trade.to_dict())

    @classmethod
    def price_update(cls, ticker: str, candles: List[Candlestick]) -> "Event":
        return cls(
            EventType.PRICE_UPDATE,
            {"ticker": ticker, "candles": [c.to_dict() for c in candles]},
        )
