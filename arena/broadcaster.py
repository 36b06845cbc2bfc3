"""
broadcaster.py — In-process event fan-out for Trading Arena observers.

Keeps the set of live subscribers (WebSocket connections in production, any
object with an async ``send_json`` in tests) and pushes every published
Event to all of them.

Delivery rules:
  - Best effort, not durable: a subscriber only sees events published while
    it is subscribed.
  - A new subscriber is sent one catch-up snapshot right away. The snapshot
    is built at the moment the subscriber joins, and publishes to it wait
    until that snapshot has been sent, so nothing older than the snapshot
    reaches it afterwards.
  - A subscriber whose send fails is dropped from the live set. publish()
    never raises because of a broken subscriber.
  - publish() iterates over a snapshot of the set, so subscribe/unsubscribe
    during a fan-out is safe.

Usage:
    broadcaster = Broadcaster()
    handle = await broadcaster.subscribe(
        websocket, snapshot=lambda: Event.cycle_status(store.get_cycle_state())
    )
    await broadcaster.publish(Event.trade_executed(trade))
    broadcaster.unsubscribe(handle)
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Callable, Dict, List, Optional, Protocol

from loguru import logger

from records import Event


class Subscriber(Protocol):
    async def send_json(self, data: Any) -> None: ...


class Subscription:
    """Handle returned by subscribe(); identifies one live subscriber."""

    _ids = itertools.count(1)

    def __init__(self, subscriber: Subscriber) -> None:
        self.id = next(self._ids)
        self.subscriber = subscriber
        self.delivered = 0
        self.ready = asyncio.Event()

    async def send(self, payload: Dict[str, Any]) -> None:
        await self.subscriber.send_json(payload)
        self.delivered += 1

    def __repr__(self) -> str:
        return f"Subscription(id={self.id}, delivered={self.delivered})"


class Broadcaster:
    """Manages live subscriptions and event fan-out."""

    def __init__(self, max_log: int = 200) -> None:
        self._subscriptions: Dict[int, Subscription] = {}
        self._event_log: List[Dict[str, Any]] = []
        self._max_log = max_log
        self._published = 0
        self._pruned = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def has_subscribers(self) -> bool:
        return bool(self._subscriptions)

    async def subscribe(
        self,
        subscriber: Subscriber,
        snapshot: Optional[Callable[[], Event]] = None,
    ) -> Subscription:
        """
        Add `subscriber` to the live set and send it `snapshot()`, if given.

        Joining and building the snapshot happen without yielding, so any
        event published later is newer than the snapshot.
        """
        handle = Subscription(subscriber)
        self._subscriptions[handle.id] = handle
        logger.info(f"Subscriber {handle.id} joined — {self.subscriber_count} live")
        if snapshot is None:
            handle.ready.set()
            return handle

        payload = snapshot().to_dict()
        try:
            await self._deliver(handle, payload)
        finally:
            handle.ready.set()
        return handle

    def unsubscribe(self, handle: Subscription) -> None:
        if self._subscriptions.pop(handle.id, None) is not None:
            logger.info(f"Subscriber {handle.id} left — {self.subscriber_count} live")

    async def publish(self, event: Event) -> int:
        """Send `event` to every live subscriber; returns how many accepted it."""
        payload = event.to_dict()
        self._log_event(payload)
        self._published += 1

        delivered = 0
        for handle in list(self._subscriptions.values()):
            if not handle.ready.is_set():
                await handle.ready.wait()
                if handle.id not in self._subscriptions:
                    continue
            if await self._deliver(handle, payload):
                delivered += 1
        return delivered

    async def _deliver(self, handle: Subscription, payload: Dict[str, Any]) -> bool:
        try:
            await handle.send(payload)
            return True
        except Exception as e:
            logger.debug(f"Dropping subscriber {handle.id}: {type(e).__name__}: {e}")
            self._pruned += 1
            self.unsubscribe(handle)
            return False

    def _log_event(self, payload: Dict[str, Any]) -> None:
        self._event_log.append(payload)
        if len(self._event_log) > self._max_log:
            self._event_log.pop(0)

    def recent_events(self, n: int = 50) -> List[Dict[str, Any]]:
        return self._event_log[-n:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "subscribers": self.subscriber_count,
            "published": self._published,
            "pruned": self._pruned,
        }
