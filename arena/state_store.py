"""
state_store.py — Persistence collaborator for the Trading Arena.

Holds the process-wide records the cycle engine reads and writes: agent
weights, the current CycleState, the debate log and the trade log.

ArenaStore is the abstract contract; MemoryStore keeps everything in
process memory. Every MemoryStore mutation is a whole-record replacement
done without suspending, so concurrent asyncio tasks never observe a
partially applied update.

Usage:
    store = MemoryStore()
    store.update_cycle_state(status=CycleStatus.STOCK_SELECTION)
    store.update_agent_weight(Agent.GROK, WeightDelta(selection=0.05))
    store.get_trades(limit=10)   # newest first
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from records import (
    AGENT_ORDER,
    Agent,
    AgentWeight,
    CycleState,
    DebateMessage,
    Trade,
    WeightDelta,
)


class UnknownAgentError(KeyError):
    """Raised when a weight operation names an agent the store doesn't know."""

    def __init__(self, agent: Any) -> None:
        super().__init__(f"Agent not found: {agent}")
        self.agent = agent


# ─── Contract ─────────────────────────────────────────────────────────────────


class ArenaStore(ABC):
    """Record store consumed by the orchestrator and the HTTP layer."""

    # Agent weights
    @abstractmethod
    def get_agent_weights(self) -> List[AgentWeight]: ...

    @abstractmethod
    def get_agent_weight(self, agent: Agent) -> Optional[AgentWeight]: ...

    @abstractmethod
    def update_agent_weight(
        self, agent: Agent, delta: WeightDelta, floor: Optional[float] = None
    ) -> AgentWeight: ...

    @abstractmethod
    def set_agent_weight(self, agent: Agent, **values: float) -> AgentWeight: ...

    # Cycle state
    @abstractmethod
    def get_cycle_state(self) -> CycleState: ...

    @abstractmethod
    def update_cycle_state(self, **partial: Any) -> CycleState: ...

    # Debate log
    @abstractmethod
    def create_debate_message(self, message: DebateMessage) -> DebateMessage: ...

    @abstractmethod
    def get_debate_messages(self) -> List[DebateMessage]: ...

    @abstractmethod
    def clear_debate_messages(self) -> None: ...

    # Trade log
    @abstractmethod
    def create_trade(self, trade: Trade) -> Trade: ...

    @abstractmethod
    def get_trades(self, limit: Optional[int] = None) -> List[Trade]: ...


# ─── In-Memory Implementation ─────────────────────────────────────────────────

_WEIGHT_FIELDS = ("selection_weight", "strategy_weight", "execution_weight")


class MemoryStore(ArenaStore):
    """Process-resident store. One weight record per agent, created up front."""

    def __init__(self, agents: Optional[List[Agent]] = None) -> None:
        self._weights: Dict[Agent, AgentWeight] = {
            agent: AgentWeight(agent=agent) for agent in (agents or AGENT_ORDER)
        }
        self._cycle_state = CycleState()
        self._debate: List[DebateMessage] = []
        self._trades: List[Trade] = []

    # ── Agent weights ─────────────────────────────────────────────────────────

    def get_agent_weights(self) -> List[AgentWeight]:
        return list(self._weights.values())

    def get_agent_weight(self, agent: Agent) -> Optional[AgentWeight]:
        return self._weights.get(agent)

    def update_agent_weight(
        self, agent: Agent, delta: WeightDelta, floor: Optional[float] = None
    ) -> AgentWeight:
        current = self._weights.get(agent)
        if current is None:
            raise UnknownAgentError(agent)
        updated = current.apply(delta)
        if floor is not None:
            updated = AgentWeight(
                agent=agent,
                selection_weight=max(floor, updated.selection_weight),
                strategy_weight=max(floor, updated.strategy_weight),
                execution_weight=updated.execution_weight,
            )
        self._weights[agent] = updated
        return updated

    def set_agent_weight(self, agent: Agent, **values: float) -> AgentWeight:
        current = self._weights.get(agent)
        if current is None:
            raise UnknownAgentError(agent)
        unknown = set(values) - set(_WEIGHT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown weight fields: {sorted(unknown)}")
        merged = {name: getattr(current, name) for name in _WEIGHT_FIELDS}
        merged.update({k: float(v) for k, v in values.items() if v is not None})
        updated = AgentWeight(agent=agent, **merged)
        self._weights[agent] = updated
        return updated

    # ── Cycle state ───────────────────────────────────────────────────────────

    def get_cycle_state(self) -> CycleState:
        return self._cycle_state

    def update_cycle_state(self, **partial: Any) -> CycleState:
        self._cycle_state = self._cycle_state.replace(**partial)
        return self._cycle_state

    # ── Debate log ────────────────────────────────────────────────────────────

    def create_debate_message(self, message: DebateMessage) -> DebateMessage:
        self._debate = self._debate + [message]
        return message

    def get_debate_messages(self) -> List[DebateMessage]:
        return list(self._debate)

    def clear_debate_messages(self) -> None:
        self._debate = []

    # ── Trade log ─────────────────────────────────────────────────────────────

    def create_trade(self, trade: Trade) -> Trade:
        self._trades = self._trades + [trade]
        return trade

    def get_trades(self, limit: Optional[int] = None) -> List[Trade]:
        newest_first = list(reversed(self._trades))
        return newest_first[:limit] if limit is not None else newest_first
