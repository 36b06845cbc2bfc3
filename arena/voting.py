"""
voting.py — Weighted ballot tallies for the Trading Arena.

A tally maps a candidate (ticker or strategy name) to the summed weight of
every ballot cast for it during one phase. Tallies are never mutated in
place: add_ballot returns a new mapping so the previous snapshot stays valid
for anyone still holding it.

Winner resolution:
    1. Highest accumulated weight wins.
    2. Ties are broken lexicographically (case-sensitive, ascending), so the
       result never depends on which agent happened to vote first.
    3. An empty tally resolves to the caller's default.

Usage:
    tally = add_ballot({}, "AAPL", 1.0)
    tally = add_ballot(tally, "NVDA", 1.0)
    tally = add_ballot(tally, "AAPL", 1.0)
    resolve_winner(tally, "AAPL")   # → "AAPL"
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Tuple


Tally = Dict[str, float]


@dataclass(frozen=True)
class Ballot:
    """One agent's weighted vote for a candidate."""
    agent_id: str
    candidate: str
    weight: float


def add_ballot(tally: Mapping[str, float], candidate: str, weight: float) -> Tally:
    """Return a copy of `tally` with `weight` added to `candidate`."""
    if not candidate:
        raise ValueError("candidate must be a non-empty string")
    updated = dict(tally)
    updated[candidate] = updated.get(candidate, 0.0) + float(weight)
    return updated


def rank(tally: Mapping[str, float]) -> List[Tuple[str, float]]:
    """Candidates ordered by weight descending, then name ascending."""
    return sorted(tally.items(), key=lambda item: (-item[1], item[0]))


def resolve_winner(tally: Mapping[str, float], default: str) -> str:
    """Pick the winning candidate, or `default` when nobody voted."""
    if not tally:
        return default
    return rank(tally)[0][0]
