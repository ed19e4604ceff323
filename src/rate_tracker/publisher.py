from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from .events import AverageUpdate, InitialData, PriceUpdate, average_from_record, make_event
from .models import HourlyAverageRecord, utc_now
from .repository import HourlyRateStore

logger = logging.getLogger(__name__)

_subscriber_ids = itertools.count(1)


@dataclass(eq=False)
class Subscriber:
    queue: asyncio.Queue[dict[str, Any]]
    id: int = field(default_factory=lambda: next(_subscriber_ids))

    def offer(self, event: dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("subscriber %s queue full; dropping %s", self.id, event.get("event"))
            return False
        return True


class PublishSink(Protocol):
    def publish_live_tick(self, symbol: str, price: float, timestamp_ms: int) -> None: ...

    def publish_preliminary_average(self, symbol: str, average: float) -> None: ...

    async def publish_hourly_average(self, symbol: str) -> None: ...

    def publish_initial_snapshot(
        self,
        subscriber: Subscriber,
        symbol: str,
        recent_averages: Sequence[HourlyAverageRecord],
    ) -> None: ...


class EventBroadcaster:
    """Fans events out to attached subscribers.

    Live ticks are throttled per symbol: the first tick in a window goes out
    immediately and the latest one seen during the window is sent when it
    closes.
    """

    def __init__(
        self,
        *,
        store: HourlyRateStore,
        throttle_seconds: float = 1.0,
        queue_size: int = 256,
    ) -> None:
        self._store = store
        self._throttle_seconds = throttle_seconds
        self._queue_size = queue_size
        self._subscribers: dict[int, Subscriber] = {}
        self._last_tick_sent: dict[str, float] = {}
        self._pending_ticks: dict[str, PriceUpdate] = {}
        self._trailing_timers: dict[str, asyncio.TimerHandle] = {}

    def attach(self) -> Subscriber:
        subscriber = Subscriber(queue=asyncio.Queue(maxsize=self._queue_size))
        self._subscribers[subscriber.id] = subscriber
        logger.info("Subscriber attached: %s (total: %s)", subscriber.id, len(self._subscribers))
        return subscriber

    def detach(self, subscriber: Subscriber) -> None:
        if self._subscribers.pop(subscriber.id, None) is not None:
            logger.info("Subscriber detached: %s (total: %s)", subscriber.id, len(self._subscribers))

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def broadcast(self, event: dict[str, Any]) -> int:
        delivered = 0
        for subscriber in list(self._subscribers.values()):
            if subscriber.offer(event):
                delivered += 1
        return delivered

    def publish_live_tick(self, symbol: str, price: float, timestamp_ms: int) -> None:
        update = PriceUpdate(symbol=symbol, price=price, timestamp=timestamp_ms)
        if self._throttle_seconds <= 0:
            self.broadcast(make_event("price:update", update))
            return

        now = time.monotonic()
        last_sent = self._last_tick_sent.get(symbol)
        if last_sent is None or now - last_sent >= self._throttle_seconds:
            self._last_tick_sent[symbol] = now
            self._pending_ticks.pop(symbol, None)
            self.broadcast(make_event("price:update", update))
            return

        self._pending_ticks[symbol] = update
        if symbol not in self._trailing_timers:
            delay = self._throttle_seconds - (now - last_sent)
            self._trailing_timers[symbol] = asyncio.get_running_loop().call_later(
                delay,
                self._flush_pending_tick,
                symbol,
            )

    def _flush_pending_tick(self, symbol: str) -> None:
        self._trailing_timers.pop(symbol, None)
        update = self._pending_ticks.pop(symbol, None)
        if update is None:
            return
        self._last_tick_sent[symbol] = time.monotonic()
        self.broadcast(make_event("price:update", update))

    def publish_preliminary_average(self, symbol: str, average: float) -> None:
        update = AverageUpdate(symbol=symbol, average_price=average, hour=utc_now())
        self.broadcast(make_event("hourly-average", update))
        logger.info("Broadcast initial average for %s: %s", symbol, average)

    async def publish_hourly_average(self, symbol: str) -> None:
        try:
            recent = await asyncio.to_thread(self._store.find_recent, symbol, 1)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to broadcast hourly average for %s: %s", symbol, exc)
            return

        if not recent:
            return

        update = average_from_record(recent[0])
        self.broadcast(make_event("hourly:average", update))
        logger.info("Broadcast hourly average for %s: %s", symbol, update.average_price)

    def publish_initial_snapshot(
        self,
        subscriber: Subscriber,
        symbol: str,
        recent_averages: Sequence[HourlyAverageRecord],
    ) -> None:
        payload = InitialData(
            symbol=symbol,
            averages=[average_from_record(record) for record in recent_averages],
        )
        subscriber.offer(make_event("initial:data", payload))

    async def send_initial_data(self, subscriber: Subscriber, symbols: Iterable[str], limit: int = 24) -> None:
        try:
            for symbol in symbols:
                recent = await asyncio.to_thread(self._store.find_recent, symbol, limit)
                if recent:
                    self.publish_initial_snapshot(subscriber, symbol, recent)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to send initial data to subscriber %s: %s", subscriber.id, exc)
            return
        logger.info("Sent initial data to subscriber %s", subscriber.id)

    def close(self) -> None:
        for handle in self._trailing_timers.values():
            handle.cancel()
        self._trailing_timers.clear()
        self._pending_ticks.clear()
