"""
price_stream.py — Live chart updates for Trading Arena observers.

A background loop that, every `interval` seconds and only while somebody is
subscribed, appends one still-forming candle to a rolling bar series for the
focus ticker and publishes `price_update {ticker, candles}`.

The series is seeded from MarketFeed.get_recent_bars() whenever the focus
ticker changes, then grows one generate_live_candle() per tick and keeps the
last 100 bars. The focus follows whatever the user last looked at or started
a cycle on, and the winner of each stock selection.

Usage:
    streamer = PriceStreamer(feed, broadcaster, interval=5.0)
    await streamer.start()
    streamer.set_focus("NVDA")
    await streamer.stop()
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

from loguru import logger

from broadcaster import Broadcaster
from market_feed import BAR_COUNT, MarketFeed
from records import Candlestick, Event


class PriceStreamer:
    """Periodic price_update publisher."""

    def __init__(
        self,
        feed: MarketFeed,
        broadcaster: Broadcaster,
        interval: float = 5.0,
        default_ticker: str = "AAPL",
        max_bars: int = BAR_COUNT,
    ) -> None:
        self.feed = feed
        self.broadcaster = broadcaster
        self.interval = interval
        self.max_bars = max_bars

        self._focus = default_ticker.upper()
        self._series: List[Candlestick] = []
        self._series_ticker: Optional[str] = None

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._ticks = 0
        self._published = 0
        self._errors = 0

    # ── Focus ─────────────────────────────────────────────────────────────────

    @property
    def focus(self) -> str:
        return self._focus

    def set_focus(self, ticker: str) -> None:
        ticker = ticker.upper()
        if ticker != self._focus:
            logger.debug(f"Live chart focus: {self._focus} → {ticker}")
            self._focus = ticker

    # ── One Tick ──────────────────────────────────────────────────────────────

    async def tick(self) -> Optional[Event]:
        """Extend the series by one candle and publish it. None if nobody listens."""
        self._ticks += 1
        if not self.broadcaster.has_subscribers():
            return None

        ticker = self._focus
        if self._series_ticker != ticker or not self._series:
            self._series = await self.feed.get_recent_bars(ticker)
            self._series_ticker = ticker

        last = self._series[-1] if self._series else None
        now = int(time.time())
        if last is not None and now <= last.time:
            now = last.time + 1
        candle = self.feed.generate_live_candle(last, ticker, now=now)
        self._series = (self._series + [candle])[-self.max_bars:]

        event = Event.price_update(ticker, self._series)
        await self.broadcaster.publish(event)
        self._published += 1
        return event

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> bool:
        if self.is_running():
            return False
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="price-stream")
        logger.info(f"Price stream started (every {self.interval:g}s, focus {self._focus})")
        return True

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task and not self._task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=5.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                self._task.cancel()
                logger.warning("Price stream forcefully cancelled")
        logger.info("Price stream stopped")

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as exc:
                self._errors += 1
                logger.warning(f"Price stream tick failed: {exc}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.is_running(),
            "focus": self._focus,
            "ticks": self._ticks,
            "published": self._published,
            "errors": self._errors,
            "bars": len(self._series),
        }
