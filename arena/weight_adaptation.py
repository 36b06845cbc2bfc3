"""
weight_adaptation.py — Post-cycle agent weight updates.

Once a cycle has resolved its winning ticker, each agent is scored:

    winner  — its own stock ballot was for the winning ticker with weight > 0
    loser   — everyone else (including agents that never voted)

    selection weight  += +0.05 (winner) | -0.02 (loser)
    strategy weight   += +0.10 (winner) | -0.05 (loser)
    execution weight     unchanged

No clamping unless a floor is configured. Without a floor, repeated losses can
push a weight below zero, at which point that agent's ballots subtract from
the candidates it picks. A warning is logged once a weight reaches zero.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from loguru import logger

from records import Agent, AgentWeight, WeightDelta
from state_store import ArenaStore
from voting import Ballot


WINNER_DELTA = WeightDelta(selection=0.05, strategy=0.10)
LOSER_DELTA = WeightDelta(selection=-0.02, strategy=-0.05)


@dataclass
class AdaptationResult:
    winning_ticker: str
    winners: Set[Agent] = field(default_factory=set)
    updated: Dict[Agent, AgentWeight] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "winning_ticker": self.winning_ticker,
            "winners": sorted(a.value for a in self.winners),
            "weights": [w.to_dict() for w in self.updated.values()],
        }


def winning_agents(ballots: Iterable[Ballot], winning_ticker: str) -> Set[Agent]:
    """Agents whose own stock ballot carried positive weight for the winner."""
    winners: Set[Agent] = set()
    for ballot in ballots:
        if ballot.candidate == winning_ticker and ballot.weight > 0:
            agent = Agent.parse(ballot.agent_id)
            if agent is not None:
                winners.add(agent)
    return winners


def adapt_weights(
    store: ArenaStore,
    stock_ballots: List[Ballot],
    winning_ticker: str,
    floor: Optional[float] = None,
) -> AdaptationResult:
    """Apply the winner/loser deltas to every agent the store knows."""
    winners = winning_agents(stock_ballots, winning_ticker)
    result = AdaptationResult(winning_ticker=winning_ticker, winners=winners)

    for current in store.get_agent_weights():
        delta = WINNER_DELTA if current.agent in winners else LOSER_DELTA
        updated = store.update_agent_weight(current.agent, delta, floor=floor)
        result.updated[current.agent] = updated
        if updated.selection_weight <= 0 or updated.strategy_weight <= 0:
            logger.warning(
                "Agent {} weight is non-positive (selection={:.2f}, strategy={:.2f}); "
                "its ballots no longer add weight to its picks",
                current.agent.value, updated.selection_weight, updated.strategy_weight,
            )

    logger.info(
        "Weights adapted for {}: winners={}",
        winning_ticker, sorted(a.value for a in winners) or "none",
    )
    return result
