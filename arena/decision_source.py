"""
decision_source.py — Multi-provider decision sources for the Trading Arena.

Each agent identity is backed by one external LLM provider:

    chatgpt  → OpenAI chat completions               (OPENAI_API_KEY)
    gemini   → Google GenAI generate_content          (GEMINI_API_KEY)
    grok     → xAI through the OpenAI SDK, base_url   (XAI_API_KEY)
    deepseek → DeepSeek through the OpenAI SDK        (DEEPSEEK_API_KEY)

Decision flow for propose(agent, kind, context):
  1. No credential for the agent → local synthesis.
  2. One SDK call to the provider (SDK retries disabled).
  3. Pull the reply text out of the SDK response, then decode its JSON into
     a fixed schema.
  4. Any failure along the way (timeout, API error, empty reply, bad JSON,
     schema mismatch) → the same local synthesis path.

Synthesis never raises. It rotates through a small curated list, offset by
a per-agent bias plus the current second, so agents disagree with each other
and repeated calls move around instead of repeating one answer.

Usage:
    source = DecisionSource(api_keys={Agent.CHATGPT: "sk-..."})
    proposal = await source.propose(Agent.CHATGPT, PromptKind.SELECT_ASSET)
    proposal.candidate      # "NVDA"
    proposal.source         # "provider" | "fallback"
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import httpx
from google import genai
from google.genai import types as genai_types
from loguru import logger
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field

from records import Agent, PromptKind, Proposal


# ─── Prompts ──────────────────────────────────────────────────────────────────

STOCK_PROPOSAL_PROMPT = """You are a ruthless hedge fund trader. Propose ONE liquid stock ticker for the next short-term trade.
Choose from major stocks like AAPL, MSFT, GOOGL, AMZN, NVDA, META, TSLA, etc.
Provide a brief justification using current market conditions, technicals, or catalysts.
Respond ONLY with JSON in this exact format: {"ticker": "SYMBOL", "justification": "Your reasoning"}"""

STRATEGY_PROMPT = """You are a quantitative trading strategist. Propose a trading strategy for {ticker}.
Choose from strategies like: momentum scalping, mean reversion, breakout trading, swing trading, etc.
Provide a brief description of how to execute it.
Respond ONLY with JSON in this exact format: {{"strategy": "Strategy Name", "description": "How to execute"}}"""

CRITIQUE_PROMPT = """You are a critical hedge fund analyst. Review this proposal and provide constructive criticism:
Proposal: {proposal}
Be concise but insightful. Point out risks or improvements.
Respond ONLY with JSON in this exact format: {{"critique": "Your critique"}}"""


# ─── Fallback Material ────────────────────────────────────────────────────────

STOCK_UNIVERSE: List[str] = ["NVDA", "AAPL", "MSFT", "GOOGL", "AMZN", "META", "TSLA"]

FALLBACK_STRATEGIES: List[Tuple[str, str]] = [
    ("Momentum Breakout", "Buy on price breakout above resistance with volume confirmation"),
    ("Mean Reversion", "Enter when RSI shows oversold conditions, exit at mean"),
    ("Scalping", "Quick 5-minute trades capturing small price movements"),
    ("Swing Trading", "Hold positions for 2-5 days following trend momentum"),
]

JUSTIFICATIONS: List[str] = [
    "Strong momentum with increasing institutional buying",
    "Undervalued relative to sector peers with upcoming catalyst",
    "Technical breakout forming on daily chart with volume",
    "Positive earnings revision trend and analyst upgrades",
]

CRITIQUES: List[str] = [
    "{subject} looks crowded; a tight stop is essential if momentum fades.",
    "{subject} ignores the macro calendar; size down ahead of data releases.",
    "{subject} depends on volume confirmation that may not arrive intraday.",
    "{subject} has a sound thesis, but the exit plan needs to be defined up front.",
]

AGENT_BIAS: Dict[Agent, int] = {
    Agent.CHATGPT: 0,
    Agent.GEMINI: 1,
    Agent.GROK: 2,
    Agent.DEEPSEEK: 3,
}


# ─── Providers ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProviderSpec:
    """How to reach the model behind one agent."""
    protocol: str                   # "openai" | "gemini"
    model: str
    base_url: Optional[str] = None  # OpenAI-compatible endpoints only
    json_mode: bool = False


PROVIDERS: Dict[Agent, ProviderSpec] = {
    Agent.CHATGPT: ProviderSpec("openai", "gpt-4o", "https://api.openai.com/v1", json_mode=True),
    Agent.GEMINI: ProviderSpec("gemini", "gemini-2.5-flash"),
    Agent.GROK: ProviderSpec("openai", "grok-2-1212", "https://api.x.ai/v1"),
    Agent.DEEPSEEK: ProviderSpec("openai", "deepseek-chat", "https://api.deepseek.com/v1"),
}


class ProviderError(Exception):
    """Provider answered, but not with anything usable."""


# ─── Reply Schemas ────────────────────────────────────────────────────────────


class TickerReply(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    ticker: str = Field(min_length=1, max_length=10, pattern=r"^[A-Za-z][A-Za-z0-9.\-]*$")
    justification: str = ""


class StrategyReply(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    strategy: str = Field(min_length=1, max_length=80)
    description: str = ""


def extract_json_object(text: str) -> Dict[str, Any]:
    """Pull the outermost {...} block out of a model reply."""
    text = text.strip()
    start = text.find("{")
    end = text.rfind("}") + 1
    if start == -1 or end <= start:
        raise ProviderError("no JSON object in reply")
    data = json.loads(text[start:end])
    if not isinstance(data, dict):
        raise ProviderError("reply JSON is not an object")
    return data


def build_prompt(kind: PromptKind, context: Mapping[str, Any]) -> str:
    if kind is PromptKind.SELECT_ASSET:
        return STOCK_PROPOSAL_PROMPT
    if kind is PromptKind.SELECT_STRATEGY:
        return STRATEGY_PROMPT.format(ticker=context.get("ticker", "the selected stock"))
    return CRITIQUE_PROMPT.format(proposal=context.get("proposal", ""))


# ─── Decision Source ──────────────────────────────────────────────────────────


class DecisionSource:
    """
    Resolves (agent, prompt kind, context) into a Proposal.

    Provider replies and local synthesis come back as the same Proposal type;
    `Proposal.source` records which one produced it.

    SDK clients are built lazily, one per agent, and reused. `transport` is
    handed to the underlying httpx client of each SDK; `clients` supplies
    prebuilt SDK clients instead.
    """

    def __init__(
        self,
        api_keys: Optional[Mapping[Agent, str]] = None,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
        providers: Optional[Mapping[Agent, ProviderSpec]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clients: Optional[Mapping[Agent, Any]] = None,
    ) -> None:
        self.api_keys: Dict[Agent, str] = {k: v for k, v in (api_keys or {}).items() if v}
        self.timeout = timeout
        self.providers: Dict[Agent, ProviderSpec] = dict(providers or PROVIDERS)
        self._clock = clock
        self._transport = transport
        self._clients: Dict[Agent, Any] = dict(clients or {})
        self._calls = 0
        self._provider_calls = 0
        self._fallbacks = 0

        configured = sorted(a.value for a in self.api_keys)
        if configured:
            logger.info(f"DecisionSource: providers configured for {configured}")
        else:
            logger.info("DecisionSource: no provider keys, every agent uses local synthesis")

    # ── Public API ────────────────────────────────────────────────────────────

    async def propose(
        self,
        agent: Agent,
        kind: PromptKind,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Proposal:
        """Ask `agent` for a proposal. Never raises for provider problems."""
        context = context or {}
        self._calls += 1

        api_key = self.api_keys.get(agent)
        endpoint = self.providers.get(agent)
        if not api_key or endpoint is None:
            logger.debug(f"DecisionSource: {agent.value} has no credential, synthesizing")
            return self.fallback(agent, kind, context)

        try:
            self._provider_calls += 1
            text = await self._call_provider(agent, endpoint, api_key, build_prompt(kind, context), kind)
            proposal = self._decode(agent, kind, text)
            logger.debug(f"DecisionSource: {agent.value} {kind.value} → {proposal.candidate!r}")
            return proposal
        except Exception as e:
            logger.warning(
                f"DecisionSource: {agent.value} provider failed ({type(e).__name__}: {e}), "
                f"using fallback"
            )
            return self.fallback(agent, kind, context)

    async def propose_stock(self, agent: Agent) -> Proposal:
        return await self.propose(agent, PromptKind.SELECT_ASSET)

    async def propose_strategy(self, agent: Agent, ticker: str) -> Proposal:
        return await self.propose(agent, PromptKind.SELECT_STRATEGY, {"ticker": ticker})

    async def critique(self, agent: Agent, proposal: str) -> Proposal:
        return await self.propose(agent, PromptKind.CRITIQUE, {"proposal": proposal})

    def fallback(
        self,
        agent: Agent,
        kind: PromptKind,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Proposal:
        """Synthesize a structurally valid proposal without any network access."""
        context = context or {}
        self._fallbacks += 1
        bias = AGENT_BIAS.get(agent, 0)
        slot = bias + int(self._clock())

        if kind is PromptKind.SELECT_ASSET:
            return Proposal(
                agent=agent,
                kind=kind,
                candidate=STOCK_UNIVERSE[slot % len(STOCK_UNIVERSE)],
                justification=JUSTIFICATIONS[bias % len(JUSTIFICATIONS)],
            )
        if kind is PromptKind.SELECT_STRATEGY:
            name, description = FALLBACK_STRATEGIES[slot % len(FALLBACK_STRATEGIES)]
            return Proposal(agent=agent, kind=kind, candidate=name, justification=description)

        subject = str(context.get("proposal") or "This proposal")
        text = CRITIQUES[slot % len(CRITIQUES)].format(subject=subject)
        return Proposal(agent=agent, kind=kind, candidate=text, justification=text)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "calls": self._calls,
            "provider_calls": self._provider_calls,
            "fallbacks": self._fallbacks,
            "configured_agents": sorted(a.value for a in self.api_keys),
        }

    # ── Provider Calls ────────────────────────────────────────────────────────

    def _client(self, agent: Agent, endpoint: ProviderSpec, api_key: str) -> Any:
        """Return the cached SDK client for `agent`, creating it on first use."""
        client = self._clients.get(agent)
        if client is not None:
            return client

        if endpoint.protocol == "gemini":
            options: Dict[str, Any] = {"timeout": int(self.timeout * 1000)}
            if self._transport is not None:
                options["async_client_args"] = {"transport": self._transport}
            client = genai.Client(
                api_key=api_key, http_options=genai_types.HttpOptions(**options)
            )
        else:
            http_client = None
            if self._transport is not None:
                http_client = httpx.AsyncClient(transport=self._transport, timeout=self.timeout)
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=endpoint.base_url,
                timeout=self.timeout,
                max_retries=0,
                http_client=http_client,
            )
        self._clients[agent] = client
        return client

    async def _call_provider(
        self,
        agent: Agent,
        endpoint: ProviderSpec,
        api_key: str,
        prompt: str,
        kind: PromptKind,
    ) -> str:
        client = self._client(agent, endpoint, api_key)
        if endpoint.protocol == "gemini":
            response = await client.aio.models.generate_content(
                model=endpoint.model, contents=prompt
            )
            text = response.text or ""
        else:
            extra: Dict[str, Any] = {}
            if endpoint.json_mode:
                extra["response_format"] = {"type": "json_object"}
            completion = await client.chat.completions.create(
                model=endpoint.model,
                messages=[{"role": "user", "content": prompt}],
                **extra,
            )
            choices = getattr(completion, "choices", None)
            if not choices:
                raise ProviderError(f"no choices in {kind.value} completion")
            text = choices[0].message.content or ""

        if not text.strip():
            raise ProviderError(f"empty {kind.value} reply")
        return text

    async def aclose(self) -> None:
        """Close the OpenAI-compatible clients this source created."""
        for client in self._clients.values():
            if isinstance(client, AsyncOpenAI):
                await client.close()
        self._clients.clear()

    def _decode(self, agent: Agent, kind: PromptKind, text: str) -> Proposal:
        """Strict parse into the reply schema for `kind`; raises on mismatch."""
        if kind is PromptKind.SELECT_ASSET:
            reply = TickerReply.model_validate(extract_json_object(text))
            return Proposal(
                agent=agent,
                kind=kind,
                candidate=reply.ticker.upper(),
                justification=reply.justification or "Technical analysis suggests upside potential",
                source="provider",
            )
        if kind is PromptKind.SELECT_STRATEGY:
            reply = StrategyReply.model_validate(extract_json_object(text))
            return Proposal(
                agent=agent,
                kind=kind,
                candidate=reply.strategy.strip(),
                justification=reply.description
                or "Follow price momentum with stop-loss protection",
                source="provider",
            )

        # Critiques are free text; a JSON wrapper is optional.
        critique = text.strip()
        try:
            data = extract_json_object(text)
            wrapped = data.get("critique") or data.get("response")
            if isinstance(wrapped, str) and wrapped.strip():
                critique = wrapped.strip()
        except (ProviderError, ValueError):
            pass
        return Proposal(
            agent=agent, kind=kind, candidate=critique, justification=critique, source="provider"
        )
