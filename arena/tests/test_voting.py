"""
Tests for voting.py — weighted tallies and winner resolution:
  - add_ballot accumulation and immutability
  - resolve_winner: largest weight, lexicographic tie-break, empty default
  - Negative weights subtract from a candidate
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from voting import add_ballot, rank, resolve_winner


class TestAddBallot:
    def test_first_ballot_creates_entry(self):
        assert add_ballot({}, "AAPL", 1.0) == {"AAPL": 1.0}

    def test_same_candidate_sums(self):
        tally = add_ballot({}, "AAPL", 1.0)
        tally = add_ballot(tally, "AAPL", 0.5)
        assert tally["AAPL"] == pytest.approx(1.5)

    def test_returns_new_mapping(self):
        original = {"AAPL": 1.0}
        updated = add_ballot(original, "NVDA", 2.0)
        assert original == {"AAPL": 1.0}
        assert updated == {"AAPL": 1.0, "NVDA": 2.0}

    def test_empty_candidate_rejected(self):
        with pytest.raises(ValueError):
            add_ballot({}, "", 1.0)

    def test_negative_weight_subtracts(self):
        tally = add_ballot({"AAPL": 1.0}, "AAPL", -0.25)
        assert tally["AAPL"] == pytest.approx(0.75)


class TestResolveWinner:
    def test_three_to_one_scenario(self):
        tally = {}
        for ticker in ("AAPL", "AAPL", "NVDA", "AAPL"):
            tally = add_ballot(tally, ticker, 1.0)
        assert tally == {"AAPL": 3.0, "NVDA": 1.0}
        assert resolve_winner(tally, "MSFT") == "AAPL"

    def test_largest_weight_wins_over_count(self):
        tally = {"AAPL": 1.0, "NVDA": 1.2}
        assert resolve_winner(tally, "AAPL") == "NVDA"

    def test_empty_tally_uses_default(self):
        assert resolve_winner({}, "AAPL") == "AAPL"

    def test_tie_broken_lexicographically(self):
        assert resolve_winner({"NVDA": 2.0, "AAPL": 2.0}, "X") == "AAPL"

    def test_tie_break_ignores_insertion_order(self):
        first = add_ballot(add_ballot({}, "MSFT", 1.0), "GOOGL", 1.0)
        second = add_ballot(add_ballot({}, "GOOGL", 1.0), "MSFT", 1.0)
        assert resolve_winner(first, "X") == resolve_winner(second, "X") == "GOOGL"

    def test_all_negative_still_picks_highest(self):
        assert resolve_winner({"AAPL": -0.5, "NVDA": -0.1}, "X") == "NVDA"


class TestRank:
    def test_rank_order(self):
        assert rank({"B": 1.0, "A": 1.0, "C": 3.0}) == [("C", 3.0), ("A", 1.0), ("B", 1.0)]
