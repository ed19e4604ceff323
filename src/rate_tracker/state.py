from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque


@dataclass
class RuntimeEvent:
    ts: float
    level: str
    message: str
    data: dict = field(default_factory=dict)


class RuntimeState:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started_ts = time.time()
        self._latest_prices: dict[str, dict] = {}
        self._trade_count = 0
        self._last_cycle: dict | None = None
        self._last_cleanup: dict | None = None
        self._events: Deque[RuntimeEvent] = deque(maxlen=200)

    def set_tick(self, symbol: str, price: float, timestamp_ms: int) -> None:
        with self._lock:
            self._latest_prices[symbol] = {"price": price, "timestamp": timestamp_ms}
            self._trade_count += 1

    def get_latest_price(self, symbol: str) -> float | None:
        with self._lock:
            latest = self._latest_prices.get(symbol)
            return latest["price"] if latest else None

    def set_last_cycle(self, summary: dict) -> None:
        with self._lock:
            self._last_cycle = summary

    def set_last_cleanup(self, summary: dict) -> None:
        with self._lock:
            self._last_cleanup = summary

    def add_event(self, level: str, message: str, data: dict | None = None) -> None:
        with self._lock:
            self._events.append(
                RuntimeEvent(
                    ts=time.time(),
                    level=level,
                    message=message,
                    data=data or {},
                )
            )

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "started_ts": self._started_ts,
                "trade_count": self._trade_count,
                "latest_prices": {symbol: dict(value) for symbol, value in self._latest_prices.items()},
                "last_cycle": self._last_cycle,
                "last_cleanup": self._last_cleanup,
                "events": [
                    {
                        "ts": e.ts,
                        "level": e.level,
                        "message": e.message,
                        "data": e.data,
                    }
                    for e in list(self._events)
                ],
            }
