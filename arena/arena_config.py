"""
arena_config.py — Runtime configuration for the Trading Arena.

All settings come from the environment (populated from `.env` by
python-dotenv in main.py). Missing provider credentials are not an error:
the affected agent or feed simply runs on local synthesis.

Usage:
    load_dotenv()
    config = ArenaConfig.from_env()
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from records import Agent


# ─── Constants ────────────────────────────────────────────────────────────────

DEFAULT_PACING_DELAY = 1.0         # seconds between agent turns
DEFAULT_PRICE_INTERVAL = 5.0       # seconds between live candles
DEFAULT_PROVIDER_TIMEOUT = 30.0    # HTTP timeout for decision sources
DEFAULT_TRADE_QUANTITY = 10.0
DEFAULT_FALLBACK_TICKER = "AAPL"
DEFAULT_FALLBACK_STRATEGY = "Momentum Trading"
DEFAULT_PORT = 5000

AGENT_KEY_ENV: Dict[Agent, str] = {
    Agent.CHATGPT: "OPENAI_API_KEY",
    Agent.GEMINI: "GEMINI_API_KEY",
    Agent.GROK: "XAI_API_KEY",
    Agent.DEEPSEEK: "DEEPSEEK_API_KEY",
}


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _optional_float(env: Mapping[str, str], name: str) -> Optional[float]:
    raw = env.get(name, "").strip()
    if not raw:
        return None
    return _float(env, name, 0.0)


def _flag(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "").strip().lower() in ("1", "true", "yes", "on")


# ─── Config ───────────────────────────────────────────────────────────────────


@dataclass
class ArenaConfig:
    """Configuration for one arena process."""
    api_keys: Dict[Agent, str] = field(default_factory=dict)
    alpha_vantage_key: str = ""
    pacing_delay: float = DEFAULT_PACING_DELAY
    price_interval: float = DEFAULT_PRICE_INTERVAL
    provider_timeout: float = DEFAULT_PROVIDER_TIMEOUT
    trade_quantity: float = DEFAULT_TRADE_QUANTITY
    fallback_ticker: str = DEFAULT_FALLBACK_TICKER
    fallback_strategy: str = DEFAULT_FALLBACK_STRATEGY
    min_weight: Optional[float] = None
    critique_round: bool = False
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.pacing_delay < 0:
            raise ValueError("pacing_delay must be >= 0")
        if self.price_interval <= 0:
            raise ValueError("price_interval must be positive")
        if self.provider_timeout <= 0:
            raise ValueError("provider_timeout must be positive")
        if self.trade_quantity <= 0:
            raise ValueError("trade_quantity must be positive")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ArenaConfig":
        env = os.environ if env is None else env
        keys = {
            agent: env.get(var, "").strip()
            for agent, var in AGENT_KEY_ENV.items()
            if env.get(var, "").strip()
        }
        port_raw = env.get("ARENA_PORT", "").strip()
        try:
            port = int(port_raw) if port_raw else DEFAULT_PORT
        except ValueError:
            raise ValueError(f"ARENA_PORT must be an integer, got {port_raw!r}") from None

        return cls(
            api_keys=keys,
            alpha_vantage_key=env.get("ALPHA_VANTAGE_API_KEY", "").strip(),
            pacing_delay=_float(env, "ARENA_PACING_DELAY", DEFAULT_PACING_DELAY),
            price_interval=_float(env, "ARENA_PRICE_INTERVAL", DEFAULT_PRICE_INTERVAL),
            provider_timeout=_float(env, "ARENA_PROVIDER_TIMEOUT", DEFAULT_PROVIDER_TIMEOUT),
            trade_quantity=_float(env, "ARENA_TRADE_QUANTITY", DEFAULT_TRADE_QUANTITY),
            fallback_ticker=env.get("ARENA_FALLBACK_TICKER", DEFAULT_FALLBACK_TICKER).strip().upper()
            or DEFAULT_FALLBACK_TICKER,
            fallback_strategy=env.get("ARENA_FALLBACK_STRATEGY", DEFAULT_FALLBACK_STRATEGY).strip()
            or DEFAULT_FALLBACK_STRATEGY,
            min_weight=_optional_float(env, "ARENA_MIN_WEIGHT"),
            critique_round=_flag(env, "ARENA_CRITIQUE_ROUND"),
            host=env.get("ARENA_HOST", "0.0.0.0").strip() or "0.0.0.0",
            port=port,
            log_level=env.get("ARENA_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )

    def configured_agents(self) -> list[str]:
        return sorted(agent.value for agent in self.api_keys)
