"""
market_feed.py — Equity bars and quotes for the Trading Arena.

Fetches 5-minute intraday bars and point quotes from Alpha Vantage when an
ALPHA_VANTAGE_API_KEY is configured. Falls back to local synthesis whenever
the key is missing, the provider signals rate limiting or an advisory notice,
returns an empty series, or the request fails outright.

Key features:
  - Alpha Vantage TIME_SERIES_INTRADAY / GLOBAL_QUOTE over httpx
  - Short TTL cache for bar series (the free tier allows ~5 calls/minute)
  - Synthetic bars: per-ticker base price, slow sinusoidal drift plus
    bounded noise, high/low widened beyond open/close
  - generate_live_candle() for the still-forming bar of the live chart
  - Feed status counters for the health endpoint

Usage:
    feed = MarketFeed(api_key=os.getenv("ALPHA_VANTAGE_API_KEY", ""))
    bars = await feed.get_recent_bars("AAPL")       # 100 bars, ascending
    quote = await feed.get_quote("AAPL")
    live = feed.generate_live_candle(bars[-1], "AAPL")
"""

from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import httpx
from loguru import logger

from records import Candlestick, Quote


# ─── Constants ────────────────────────────────────────────────────────────────

ALPHA_VANTAGE_URL = "https://www.alphavantage.co/query"
DEFAULT_TIMEOUT = 8.0               # HTTP request timeout
BAR_COUNT = 100
BAR_INTERVAL_SECONDS = 300          # 5-minute bars
BARS_CACHE_TTL = 60.0               # seconds before a cached series expires
SERIES_KEY = "Time Series (5min)"
MARKET_TZ = ZoneInfo("America/New_York")

BAR_VOLATILITY = 0.002              # 0.2% of base price per synthetic bar
LIVE_VOLATILITY = 0.001             # 0.1% of last close per live candle
QUOTE_SWING = 5.0                   # synthetic quote moves within ±2.5

# Starting prices for synthesis (approximate USD)
BASE_PRICES: Dict[str, float] = {
    "AAPL": 178.50,
    "MSFT": 378.25,
    "GOOGL": 141.80,
    "AMZN": 178.90,
    "NVDA": 495.22,
    "META": 505.75,
    "TSLA": 248.50,
    "AMD": 165.30,
    "NFLX": 485.20,
    "JPM": 195.40,
}
DEFAULT_BASE_PRICE = 150.0


class FeedError(Exception):
    """Provider reply unusable (rate limit, notice, empty series)."""


# ─── Data Classes ─────────────────────────────────────────────────────────────


@dataclass
class FeedStatus:
    """Runtime status for the MarketFeed."""
    configured:     bool = False
    api_available:  bool = False
    last_api_call:  float = 0.0
    request_count:  int = 0
    fallback_count: int = 0
    error_count:    int = 0
    cached_tickers: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "configured": self.configured,
            "api_available": self.api_available,
            "last_api_call": self.last_api_call,
            "request_count": self.request_count,
            "fallback_count": self.fallback_count,
            "error_count": self.error_count,
            "cached_tickers": self.cached_tickers,
        }


# ─── Synthesis ────────────────────────────────────────────────────────────────


def base_price(ticker: str) -> float:
    return BASE_PRICES.get(ticker.upper(), DEFAULT_BASE_PRICE)


def synthesize_bars(
    ticker: str,
    count: int = BAR_COUNT,
    now: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> List[Candlestick]:
    """
    Walk `count` bars forward from the ticker's base price, ending at `now`.

    close = open + sin(i / 20) * vol + uniform(-vol, vol)
    high  = max(open, close) + uniform(0, vol)
    low   = min(open, close) - uniform(0, vol)
    """
    rng = rng or random.Random()
    now = int(time.time()) if now is None else now
    base = base_price(ticker)
    volatility = base * BAR_VOLATILITY

    bars: List[Candlestick] = []
    current = base
    for i in range(count - 1, -1, -1):
        trend = math.sin(i / 20) * volatility
        noise = (rng.random() - 0.5) * volatility * 2
        open_ = current
        close = open_ + trend + noise
        high = max(open_, close) + rng.random() * volatility
        low = min(open_, close) - rng.random() * volatility
        bars.append(Candlestick(
            time=now - i * BAR_INTERVAL_SECONDS,
            open=round(open_, 2),
            high=round(high, 2),
            low=round(low, 2),
            close=round(close, 2),
            volume=rng.randint(100_000, 1_099_999),
        ))
        current = close
    return bars


def generate_live_candle(
    last: Optional[Candlestick],
    ticker: str,
    now: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> Candlestick:
    """One new bar seeded from the previous close (or the base price)."""
    rng = rng or random.Random()
    now = int(time.time()) if now is None else now
    seed = last.close if last is not None else base_price(ticker)
    volatility = seed * LIVE_VOLATILITY
    change = (rng.random() - 0.5) * volatility * 2

    open_ = seed
    close = seed + change
    high = max(open_, close) + rng.random() * volatility
    low = min(open_, close) - rng.random() * volatility
    return Candlestick(
        time=now,
        open=round(open_, 2),
        high=round(high, 2),
        low=round(low, 2),
        close=round(close, 2),
        volume=rng.randint(10_000, 109_999),
    )


def synthesize_quote(ticker: str, rng: Optional[random.Random] = None) -> Quote:
    rng = rng or random.Random()
    base = base_price(ticker)
    change = (rng.random() - 0.5) * QUOTE_SWING
    return Quote(
        price=base + change,
        change=change,
        change_percent=change / base * 100,
        source="synthetic",
    )


# ─── Bar Cache ────────────────────────────────────────────────────────────────


class BarCache:
    """Simple TTL cache for bar series, keyed by ticker."""

    def __init__(self, ttl: float = BARS_CACHE_TTL) -> None:
        self._ttl = ttl
        self._store: Dict[str, Tuple[float, List[Candlestick]]] = {}

    def get(self, ticker: str) -> Optional[List[Candlestick]]:
        entry = self._store.get(ticker)
        if entry is None:
            return None
        stored_at, bars = entry
        if (time.time() - stored_at) > self._ttl:
            return None
        return list(bars)

    def set(self, ticker: str, bars: List[Candlestick]) -> None:
        self._store[ticker] = (time.time(), list(bars))

    def size(self) -> int:
        return len(self._store)


# ─── Main MarketFeed ──────────────────────────────────────────────────────────


class MarketFeed:
    """
    Bars and quotes for a ticker, from Alpha Vantage or local synthesis.

    Architecture:
        Alpha Vantage HTTP API → BarCache → callers
                       ↓ (no key / notice / error)
                  synthesis → BarCache → callers
    """

    def __init__(
        self,
        api_key: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        cache_ttl: float = BARS_CACHE_TTL,
        rng: Optional[random.Random] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._timeout = timeout
        self._cache = BarCache(cache_ttl)
        self._rng = rng or random.Random()
        self._transport = transport
        self._status = FeedStatus(configured=bool(api_key))

    # ── Bars ──────────────────────────────────────────────────────────────────

    async def get_recent_bars(self, ticker: str) -> List[Candlestick]:
        """
        Return up to 100 bars for `ticker`, oldest first.

        Priority:
          1. Fresh cache entry
          2. Alpha Vantage intraday series (if a key is configured)
          3. Synthesis
        """
        ticker = ticker.upper()
        cached = self._cache.get(ticker)
        if cached is not None:
            return cached

        bars: Optional[List[Candlestick]] = None
        if self._api_key:
            try:
                bars = await self._fetch_intraday(ticker)
            except Exception as exc:
                self._status.api_available = False
                self._status.error_count += 1
                logger.warning(f"Alpha Vantage bars failed for {ticker}: {exc}, using synthetic data")
        else:
            logger.debug(f"No Alpha Vantage key, synthesizing bars for {ticker}")

        if bars is None:
            self._status.fallback_count += 1
            bars = synthesize_bars(ticker, rng=self._rng)

        self._cache.set(ticker, bars)
        self._status.cached_tickers = self._cache.size()
        return bars

    def generate_live_candle(
        self, last: Optional[Candlestick], ticker: str, now: Optional[int] = None
    ) -> Candlestick:
        return generate_live_candle(last, ticker.upper(), now=now, rng=self._rng)

    # ── Quotes ────────────────────────────────────────────────────────────────

    async def get_quote(self, ticker: str) -> Quote:
        """Point quote for `ticker`; never raises for provider problems."""
        ticker = ticker.upper()
        if self._api_key:
            try:
                return await self._fetch_global_quote(ticker)
            except Exception as exc:
                self._status.api_available = False
                self._status.error_count += 1
                logger.warning(f"Alpha Vantage quote failed for {ticker}: {exc}, using synthetic quote")

        self._status.fallback_count += 1
        return synthesize_quote(ticker, self._rng)

    # ── Alpha Vantage ─────────────────────────────────────────────────────────

    async def _query(self, params: Dict[str, str]) -> Dict[str, Any]:
        self._status.request_count += 1
        self._status.last_api_call = time.time()
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.get(ALPHA_VANTAGE_URL, params={**params, "apikey": self._api_key})
            resp.raise_for_status()
            data = resp.json()

        if not isinstance(data, dict):
            raise FeedError("unexpected payload")
        notice = data.get("Note") or data.get("Information")
        if notice:
            raise FeedError(f"provider notice: {notice}")
        return data

    async def _fetch_intraday(self, ticker: str) -> List[Candlestick]:
        data = await self._query({
            "function": "TIME_SERIES_INTRADAY",
            "symbol": ticker,
            "interval": "5min",
            "outputsize": "compact",
        })
        series = data.get(SERIES_KEY)
        if not series:
            raise FeedError("empty time series")

        bars = [self._parse_bar(stamp, values) for stamp, values in series.items()]
        bars.sort(key=lambda b: b.time, reverse=True)
        bars = sorted(bars[:BAR_COUNT], key=lambda b: b.time)

        self._status.api_available = True
        logger.debug(f"Alpha Vantage {ticker} → {len(bars)} bars")
        return bars

    async def _fetch_global_quote(self, ticker: str) -> Quote:
        data = await self._query({"function": "GLOBAL_QUOTE", "symbol": ticker})
        quote = data.get("Global Quote")
        if not quote:
            raise FeedError("empty quote")

        result = Quote(
            price=float(quote["05. price"]),
            change=float(quote["09. change"]),
            change_percent=float(str(quote["10. change percent"]).rstrip("%")),
            source="alphavantage",
        )
        self._status.api_available = True
        return result

    @staticmethod
    def _parse_bar(stamp: str, values: Dict[str, str]) -> Candlestick:
        moment = datetime.strptime(stamp, "%Y-%m-%d %H:%M:%S").replace(tzinfo=MARKET_TZ)
        return Candlestick(
            time=int(moment.timestamp()),
            open=float(values["1. open"]),
            high=float(values["2. high"]),
            low=float(values["3. low"]),
            close=float(values["4. close"]),
            volume=int(values["5. volume"]),
        )

    # ── Status ────────────────────────────────────────────────────────────────

    @property
    def status(self) -> FeedStatus:
        return self._status

    def is_live(self) -> bool:
        return self._status.api_available

    def cache_size(self) -> int:
        return self._cache.size()
