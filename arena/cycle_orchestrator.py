"""
cycle_orchestrator.py — Trading cycle state machine.

Drives one cycle end to end:

    idle → stock_selection → strategy_debate → trading
             (stopped reachable from any active phase)

  1. Start: clear the debate log, reset CycleState, publish.
  2. Stock selection: each agent in turn proposes a ticker; the ballot is
     weighted by the agent's selection weight; message + tally published.
  3. Winner resolved (fallback ticker if nobody voted) → strategy_debate.
  4. Optional critique round on the winning ticker (no tally).
  5. Strategy debate: same loop, strategy proposals, strategy weights.
  6. Winner resolved (fallback strategy) → trading.
  7. Execution: quote → Trade → trade_executed.
  8. Weight adaptation.

Cancellation is cooperative. Each cycle gets its own CancelToken, checked
before and after every external call and after the pacing delay; stop_cycle()
flips CycleState to stopped and trips the token. Any other exception forces
stopped and publishes it. Only one cycle runs at a time: start_cycle()
refuses while the previous cycle's task is still alive.

Usage:
    orchestrator = CycleOrchestrator(store, broadcaster, source, feed)
    await orchestrator.start_cycle("AAPL")   # True, runs in background
    await orchestrator.stop_cycle()
    await orchestrator.wait_for_cycle()
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from broadcaster import Broadcaster
from decision_source import DecisionSource
from market_feed import MarketFeed
from records import (
    AGENT_ORDER,
    Agent,
    CycleState,
    CycleStatus,
    DebateMessage,
    Event,
    MessageKind,
    Proposal,
    Trade,
    TradeAction,
)
from state_store import ArenaStore
from voting import Ballot, Tally, add_ballot, resolve_winner
from weight_adaptation import AdaptationResult, adapt_weights


DEFAULT_FALLBACK_TICKER = "AAPL"
DEFAULT_FALLBACK_STRATEGY = "Momentum Trading"


class CycleCancelled(Exception):
    """Raised inside a cycle once it has been stopped."""


class CancelToken:
    """Per-cycle stop flag. sleep() wakes early when the token is tripped."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise CycleCancelled()

    async def sleep(self, delay: float) -> None:
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass


class CycleOrchestrator:
    """
    Owns cycle execution for one process.

    Collaborators are injected: the store holds CycleState and the logs, the
    broadcaster fans events out, the decision source and market feed are the
    two external dependencies. `on_focus` is told which ticker the live chart
    should follow.
    """

    def __init__(
        self,
        store: ArenaStore,
        broadcaster: Broadcaster,
        decision_source: DecisionSource,
        feed: MarketFeed,
        pacing_delay: float = 1.0,
        trade_quantity: float = 10.0,
        fallback_ticker: str = DEFAULT_FALLBACK_TICKER,
        fallback_strategy: str = DEFAULT_FALLBACK_STRATEGY,
        min_weight: Optional[float] = None,
        critique_round: bool = False,
        agents: Optional[List[Agent]] = None,
        on_focus: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.source = decision_source
        self.feed = feed
        self.pacing_delay = pacing_delay
        self.trade_quantity = trade_quantity
        self.fallback_ticker = fallback_ticker
        self.fallback_strategy = fallback_strategy
        self.min_weight = min_weight
        self.critique_round = critique_round
        self.agents: List[Agent] = list(AGENT_ORDER if agents is None else agents)
        self.on_focus = on_focus

        self._task: Optional[asyncio.Task] = None
        self._token: Optional[CancelToken] = None
        self._lock = asyncio.Lock()
        self.last_adaptation: Optional[AdaptationResult] = None
        self._counts: Dict[str, int] = {
            "started": 0, "completed": 0, "stopped": 0, "failed": 0,
        }

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start_cycle(self, ticker: Optional[str] = None) -> bool:
        """Begin a cycle in the background. False if one is still in flight."""
        async with self._lock:
            if self.is_running():
                logger.warning("Cycle already in flight, start refused")
                return False

            token = self._begin(ticker)
            self._task = asyncio.create_task(self._run(token), name="arena-cycle")
            self._task.add_done_callback(self._on_task_done)
            return True

    async def stop_cycle(self) -> CycleState:
        """Request cooperative cancellation. No-op when stopped or idle."""
        state = self.store.get_cycle_state()
        if state.status in (CycleStatus.STOPPED, CycleStatus.IDLE):
            logger.debug(f"stop_cycle ignored, status is {state.status.value}")
            return state

        if self._token is not None:
            self._token.cancel()
        state = self.store.update_cycle_state(status=CycleStatus.STOPPED)
        logger.info("Cycle stopped on request")
        await self.broadcaster.publish(Event.cycle_status(state))
        return state

    async def run_cycle(self, ticker: Optional[str] = None) -> Optional[Trade]:
        """Run one cycle inline and return its trade (None if it did not finish)."""
        if self.is_running():
            raise RuntimeError("a cycle is already running")
        token = self._begin(ticker)
        return await self._run(token)

    async def wait_for_cycle(self, timeout: Optional[float] = None) -> None:
        if self._task is not None and not self._task.done():
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)

    async def shutdown(self) -> None:
        """Trip the token and cancel the background task (app shutdown)."""
        if self._token is not None:
            self._token.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def state(self) -> CycleState:
        return self.store.get_cycle_state()

    def get_stats(self) -> Dict[str, Any]:
        return {**self._counts, "running": self.is_running()}

    # ── Cycle ─────────────────────────────────────────────────────────────────

    def _begin(self, ticker: Optional[str]) -> CancelToken:
        """Reset logs and state for a new cycle; nothing here suspends."""
        if ticker:
            self._focus(ticker.upper())
        token = CancelToken()
        self._token = token
        self._counts["started"] += 1
        self.store.clear_debate_messages()
        self.store.update_cycle_state(
            status=CycleStatus.STOCK_SELECTION,
            selected_ticker=None,
            selected_strategy=None,
            stock_votes={},
            strategy_votes={},
        )
        logger.info(f"Cycle #{self._counts['started']} started")
        return token

    async def _run(self, token: CancelToken) -> Optional[Trade]:
        try:
            trade = await self._run_phases(token)
            self._counts["completed"] += 1
            return trade
        except CycleCancelled:
            self._counts["stopped"] += 1
            logger.info("Cycle aborted after stop request")
            return None
        except Exception as e:
            self._counts["failed"] += 1
            logger.exception(f"Cycle failed: {e}")
            state = self.store.update_cycle_state(status=CycleStatus.STOPPED)
            await self.broadcaster.publish(Event.cycle_status(state))
            return None

    async def _run_phases(self, token: CancelToken) -> Trade:
        await self._publish_state(token)

        # Stock selection
        stock_ballots, proposals = await self._stock_selection(token)
        ticker = resolve_winner(self.store.get_cycle_state().stock_votes, self.fallback_ticker)
        self._checkpoint(token)
        state = self.store.update_cycle_state(
            status=CycleStatus.STRATEGY_DEBATE, selected_ticker=ticker
        )
        logger.info(f"Stock selection resolved: {ticker} {dict(state.stock_votes)}")
        self._focus(ticker)
        await self._publish_state(token)

        if self.critique_round:
            await self._critique(token, ticker, proposals)

        # Strategy debate
        await self._strategy_debate(token, ticker)
        strategy = resolve_winner(
            self.store.get_cycle_state().strategy_votes, self.fallback_strategy
        )
        self._checkpoint(token)
        self.store.update_cycle_state(
            status=CycleStatus.TRADING, selected_strategy=strategy
        )
        logger.info(f"Strategy debate resolved: {strategy!r}")
        await self._publish_state(token)

        # Execution
        trade = await self._execute(token, ticker, strategy)
        self.last_adaptation = adapt_weights(
            self.store, stock_ballots, ticker, floor=self.min_weight
        )
        return trade

    async def _stock_selection(
        self, token: CancelToken
    ) -> Tuple[List[Ballot], List[Proposal]]:
        tally: Tally = {}
        ballots: List[Ballot] = []
        proposals: List[Proposal] = []

        for agent in self.agents:
            self._checkpoint(token)
            proposal = await self.source.propose_stock(agent)
            self._checkpoint(token)

            weight = self._weight(agent, "selection_weight")
            tally = add_ballot(tally, proposal.candidate, weight)
            ballots.append(Ballot(agent.value, proposal.candidate, weight))
            proposals.append(proposal)
            message = self.store.create_debate_message(DebateMessage(
                agent=agent,
                message=f"I propose {proposal.candidate}. {proposal.justification}",
                kind=MessageKind.PROPOSAL,
                ticker=proposal.candidate,
            ))
            self.store.update_cycle_state(stock_votes=tally)

            await self._publish_message(token, message)
            await self._publish_state(token)
            await self._pace(token)

        return ballots, proposals

    async def _strategy_debate(self, token: CancelToken, ticker: str) -> List[Ballot]:
        tally: Tally = {}
        ballots: List[Ballot] = []

        for agent in self.agents:
            self._checkpoint(token)
            proposal = await self.source.propose_strategy(agent, ticker)
            self._checkpoint(token)

            weight = self._weight(agent, "strategy_weight")
            tally = add_ballot(tally, proposal.candidate, weight)
            ballots.append(Ballot(agent.value, proposal.candidate, weight))
            message = self.store.create_debate_message(DebateMessage(
                agent=agent,
                message=f"For {ticker}, I suggest {proposal.candidate}: {proposal.justification}",
                kind=MessageKind.PROPOSAL,
                ticker=ticker,
                strategy=proposal.candidate,
            ))
            self.store.update_cycle_state(strategy_votes=tally)

            await self._publish_message(token, message)
            await self._publish_state(token)
            await self._pace(token)

        return ballots

    async def _critique(
        self, token: CancelToken, ticker: str, proposals: List[Proposal]
    ) -> None:
        backing = next((p for p in proposals if p.candidate == ticker), None)
        subject = f"Trade {ticker}. {backing.justification}" if backing else f"Trade {ticker}."

        for agent in self.agents:
            self._checkpoint(token)
            reply = await self.source.critique(agent, subject)
            self._checkpoint(token)

            message = self.store.create_debate_message(DebateMessage(
                agent=agent,
                message=reply.candidate,
                kind=MessageKind.CRITIQUE,
                ticker=ticker,
            ))
            await self._publish_message(token, message)
            await self._pace(token)

    async def _execute(self, token: CancelToken, ticker: str, strategy: str) -> Trade:
        self._checkpoint(token)
        quote = await self.feed.get_quote(ticker)
        self._checkpoint(token)

        trade = self.store.create_trade(Trade(
            ticker=ticker,
            action=TradeAction.BUY,
            quantity=self.trade_quantity,
            price=quote.price,
            strategy=strategy,
        ))
        logger.info(
            f"Trade executed: {trade.action.value} {trade.quantity:g} {ticker} "
            f"@ ${trade.price:.2f} ({strategy})"
        )
        await self.broadcaster.publish(Event.trade_executed(trade))
        return trade

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _checkpoint(self, token: CancelToken) -> None:
        """Abort when this cycle's token is tripped or the state says stopped."""
        token.check()
        if self.store.get_cycle_state().status is CycleStatus.STOPPED:
            raise CycleCancelled()

    async def _pace(self, token: CancelToken) -> None:
        await token.sleep(self.pacing_delay)
        self._checkpoint(token)

    def _weight(self, agent: Agent, field: str) -> float:
        record = self.store.get_agent_weight(agent)
        return getattr(record, field) if record is not None else 1.0

    async def _publish_message(self, token: CancelToken, message: DebateMessage) -> None:
        self._checkpoint(token)
        await self.broadcaster.publish(Event.debate_message(message))

    async def _publish_state(self, token: CancelToken) -> None:
        """
        Publish the stored CycleState as it is at send time.

        A stop can land while this send is still suspended on a slow
        subscriber, in which case some observers got the running status after
        the stopped one. Re-send the stopped state so it is the last status
        every observer sees, then abort.
        """
        self._checkpoint(token)
        await self.broadcaster.publish(Event.cycle_status(self.store.get_cycle_state()))
        state = self.store.get_cycle_state()
        if state.status is CycleStatus.STOPPED:
            await self.broadcaster.publish(Event.cycle_status(state))
        self._checkpoint(token)

    def _focus(self, ticker: str) -> None:
        if self.on_focus is not None:
            self.on_focus(ticker)

    def _on_task_done(self, task: asyncio.Task) -> None:
        try:
            exc = task.exception()
            if exc:
                logger.error(f"Cycle task raised: {exc}")
        except asyncio.CancelledError:
            logger.debug("Cycle task cancelled")
