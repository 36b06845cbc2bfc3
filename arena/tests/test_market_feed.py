"""
Tests for market_feed.py — MarketFeed and synthesis helpers:
  - Synthetic bars: count, spacing, ordering, OHLC consistency
  - Live candle seeded from the previous close
  - Alpha Vantage parsing via httpx.MockTransport
  - Rate-limit notices, empty series and HTTP errors fall back
  - Bar cache and status counters
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import random

import httpx
import pytest

from market_feed import (
    BAR_COUNT,
    BAR_INTERVAL_SECONDS,
    BASE_PRICES,
    DEFAULT_BASE_PRICE,
    MarketFeed,
    base_price,
    generate_live_candle,
    synthesize_bars,
    synthesize_quote,
)
from records import Candlestick


# ─── Fixtures ─────────────────────────────────────────────────────────────────


INTRADAY_PAYLOAD = {
    "Meta Data": {"2. Symbol": "AAPL"},
    "Time Series (5min)": {
        "2024-01-02 16:00:00": {
            "1. open": "185.10", "2. high": "185.40", "3. low": "184.90",
            "4. close": "185.30", "5. volume": "120000",
        },
        "2024-01-02 15:55:00": {
            "1. open": "184.80", "2. high": "185.20", "3. low": "184.70",
            "4. close": "185.10", "5. volume": "98000",
        },
        "2024-01-02 15:50:00": {
            "1. open": "184.50", "2. high": "184.90", "3. low": "184.40",
            "4. close": "184.80", "5. volume": "87000",
        },
    },
}

QUOTE_PAYLOAD = {
    "Global Quote": {
        "01. symbol": "AAPL",
        "05. price": "185.3000",
        "09. change": "1.2000",
        "10. change percent": "0.6519%",
    }
}


def av_feed(payload, status=200):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status, json=payload)

    feed = MarketFeed(api_key="demo", rng=random.Random(7), transport=httpx.MockTransport(handler))
    return feed, calls


def assert_consistent(bar: Candlestick):
    assert bar.high >= max(bar.open, bar.close)
    assert bar.low <= min(bar.open, bar.close)


# ─── Synthesis ────────────────────────────────────────────────────────────────


class TestSynthesizeBars:
    def test_count_and_spacing(self):
        bars = synthesize_bars("AAPL", now=1_700_000_000, rng=random.Random(1))
        assert len(bars) == BAR_COUNT
        assert bars[-1].time == 1_700_000_000
        gaps = {b.time - a.time for a, b in zip(bars, bars[1:])}
        assert gaps == {BAR_INTERVAL_SECONDS}

    def test_starts_at_base_price(self):
        bars = synthesize_bars("NVDA", rng=random.Random(1))
        assert bars[0].open == BASE_PRICES["NVDA"]

    def test_ohlc_consistent(self):
        for bar in synthesize_bars("MSFT", rng=random.Random(3)):
            assert_consistent(bar)
            assert 100_000 <= bar.volume < 1_100_000

    def test_stays_near_base(self):
        bars = synthesize_bars("AAPL", rng=random.Random(5))
        base = BASE_PRICES["AAPL"]
        assert all(abs(b.close - base) < base * 0.5 for b in bars)

    def test_unknown_ticker_uses_default_base(self):
        assert base_price("ZZZZ") == DEFAULT_BASE_PRICE
        assert synthesize_bars("ZZZZ", count=1, rng=random.Random(1))[0].open == DEFAULT_BASE_PRICE

    def test_base_price_case_insensitive(self):
        assert base_price("aapl") == BASE_PRICES["AAPL"]


class TestLiveCandle:
    def test_seeded_from_last_close(self):
        last = Candlestick(time=100, open=10.0, high=10.5, low=9.5, close=10.2, volume=1)
        candle = generate_live_candle(last, "AAPL", now=400, rng=random.Random(2))
        assert candle.open == 10.2
        assert candle.time == 400
        assert_consistent(candle)
        assert 10_000 <= candle.volume < 110_000

    def test_no_previous_bar_uses_base(self):
        candle = generate_live_candle(None, "TSLA", rng=random.Random(2))
        assert candle.open == BASE_PRICES["TSLA"]

    def test_moves_within_volatility(self):
        last = Candlestick(time=0, open=200.0, high=200.0, low=200.0, close=200.0)
        rng = random.Random(9)
        for _ in range(50):
            candle = generate_live_candle(last, "X", rng=rng)
            assert abs(candle.close - 200.0) <= 0.21


class TestSyntheticQuote:
    def test_within_band(self):
        rng = random.Random(4)
        for _ in range(50):
            quote = synthesize_quote("AAPL", rng)
            assert abs(quote.price - BASE_PRICES["AAPL"]) <= 2.5
            assert quote.change == pytest.approx(quote.price - BASE_PRICES["AAPL"])
            assert quote.source == "synthetic"


# ─── MarketFeed ───────────────────────────────────────────────────────────────


class TestMarketFeedWithoutKey:
    @pytest.mark.asyncio
    async def test_synthesizes_bars(self):
        feed = MarketFeed(rng=random.Random(1))
        bars = await feed.get_recent_bars("aapl")
        assert len(bars) == BAR_COUNT
        assert bars[0].open == BASE_PRICES["AAPL"]
        assert feed.status.fallback_count == 1
        assert feed.status.request_count == 0

    @pytest.mark.asyncio
    async def test_cache_returns_same_series(self):
        feed = MarketFeed(rng=random.Random(1))
        first = await feed.get_recent_bars("AAPL")
        second = await feed.get_recent_bars("AAPL")
        assert first == second
        assert feed.status.fallback_count == 1
        assert feed.cache_size() == 1

    @pytest.mark.asyncio
    async def test_expired_cache_regenerates(self):
        feed = MarketFeed(cache_ttl=-1.0, rng=random.Random(1))
        await feed.get_recent_bars("AAPL")
        await feed.get_recent_bars("AAPL")
        assert feed.status.fallback_count == 2

    @pytest.mark.asyncio
    async def test_synthetic_quote(self):
        feed = MarketFeed(rng=random.Random(1))
        quote = await feed.get_quote("nvda")
        assert abs(quote.price - BASE_PRICES["NVDA"]) <= 2.5
        assert quote.source == "synthetic"


class TestAlphaVantage:
    @pytest.mark.asyncio
    async def test_intraday_parsed_ascending(self):
        feed, calls = av_feed(INTRADAY_PAYLOAD)
        bars = await feed.get_recent_bars("aapl")
        assert [b.close for b in bars] == [184.80, 185.10, 185.30]
        assert bars[0].time < bars[1].time < bars[2].time
        assert bars[1].time - bars[0].time == 300
        assert bars[0].volume == 87000
        assert feed.is_live()

        params = calls[0].url.params
        assert params["function"] == "TIME_SERIES_INTRADAY"
        assert params["symbol"] == "AAPL"
        assert params["interval"] == "5min"
        assert params["apikey"] == "demo"

    @pytest.mark.asyncio
    async def test_series_capped_at_bar_count(self):
        series = {
            f"2024-01-0{1 + i // 200} {(i % 200) // 12 + 4:02d}:{(i % 12) * 5:02d}:00": {
                "1. open": "10", "2. high": "11", "3. low": "9", "4. close": "10", "5. volume": "1",
            }
            for i in range(150)
        }
        feed, _ = av_feed({"Time Series (5min)": series})
        bars = await feed.get_recent_bars("AAPL")
        assert len(bars) == BAR_COUNT
        assert bars == sorted(bars, key=lambda b: b.time)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"Note": "Thank you for using Alpha Vantage! Our standard API call frequency is 5 calls per minute."},
        {"Information": "The **demo** API key is for demo purposes only."},
        {"Time Series (5min)": {}},
        {"Meta Data": {}},
    ])
    async def test_unusable_payload_falls_back(self, payload):
        feed, _ = av_feed(payload)
        bars = await feed.get_recent_bars("AAPL")
        assert len(bars) == BAR_COUNT
        assert bars[0].open == BASE_PRICES["AAPL"]
        assert feed.status.error_count == 1
        assert feed.status.fallback_count == 1
        assert not feed.is_live()

    @pytest.mark.asyncio
    async def test_http_error_falls_back(self):
        feed, _ = av_feed({"error": "boom"}, status=502)
        quote = await feed.get_quote("AAPL")
        assert quote.source == "synthetic"
        assert feed.status.error_count == 1

    @pytest.mark.asyncio
    async def test_global_quote(self):
        feed, calls = av_feed(QUOTE_PAYLOAD)
        quote = await feed.get_quote("AAPL")
        assert quote.price == 185.3
        assert quote.change == 1.2
        assert quote.change_percent == pytest.approx(0.6519)
        assert quote.source == "alphavantage"
        assert calls[0].url.params["function"] == "GLOBAL_QUOTE"

    @pytest.mark.asyncio
    async def test_empty_quote_falls_back(self):
        feed, _ = av_feed({"Global Quote": {}})
        quote = await feed.get_quote("AAPL")
        assert quote.source == "synthetic"

    @pytest.mark.asyncio
    async def test_status_counters(self):
        feed, _ = av_feed(INTRADAY_PAYLOAD)
        await feed.get_recent_bars("AAPL")
        status = feed.status.to_dict()
        assert status["configured"] is True
        assert status["request_count"] == 1
        assert status["cached_tickers"] == 1
