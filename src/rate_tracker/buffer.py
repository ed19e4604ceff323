from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable

from . import aggregator
from .models import PriceSample

logger = logging.getLogger(__name__)


class PriceBuffer:
    """Per-symbol price samples collected since the last successful flush.

    Also tracks the one-shot "initial average" timer for each symbol. Once a
    symbol's initial average has been emitted the flag stays set for the
    lifetime of the buffer, even across ``clear``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._samples: dict[str, list[PriceSample]] = {}
        self._initial_average_sent: set[str] = set()
        self._initial_timers: dict[str, asyncio.TimerHandle] = {}

    def add_sample(self, symbol: str, price: float, timestamp_ms: int) -> bool:
        """Append a sample; returns True when it is the symbol's first one."""
        with self._lock:
            samples = self._samples.get(symbol)
            is_first = samples is None
            if is_first:
                samples = []
                self._samples[symbol] = samples
            samples.append(PriceSample(price=price, timestamp_ms=timestamp_ms))
            return is_first

    def get_samples(self, symbol: str) -> list[PriceSample] | None:
        with self._lock:
            samples = self._samples.get(symbol)
            return list(samples) if samples is not None else None

    def has_samples(self, symbol: str) -> bool:
        with self._lock:
            return bool(self._samples.get(symbol))

    def get_average(self, symbol: str) -> float | None:
        with self._lock:
            return aggregator.average(self._samples.get(symbol))

    def sample_count(self, symbol: str) -> int:
        with self._lock:
            return len(self._samples.get(symbol, ()))

    def clear(self, symbol: str, *, persisted_count: int | None = None) -> None:
        """Drop a symbol's samples.

        With ``persisted_count`` only the oldest ``persisted_count`` samples
        are dropped; anything appended after they were read stays buffered.
        """
        with self._lock:
            samples = self._samples.get(symbol)
            if samples is None:
                return
            if persisted_count is not None and persisted_count < len(samples):
                del samples[:persisted_count]
                return
            del self._samples[symbol]

    def list_symbols(self) -> set[str]:
        with self._lock:
            return {symbol for symbol, samples in self._samples.items() if samples}

    def schedule_initial_average(
        self,
        symbol: str,
        callback: Callable[[], None],
        delay_seconds: float = 2.0,
    ) -> None:
        with self._lock:
            if symbol in self._initial_average_sent or symbol in self._initial_timers:
                return
            loop = asyncio.get_running_loop()
            self._initial_timers[symbol] = loop.call_later(
                delay_seconds,
                self._fire_initial_average,
                symbol,
                callback,
            )

    def _fire_initial_average(self, symbol: str, callback: Callable[[], None]) -> None:
        with self._lock:
            if symbol in self._initial_average_sent:
                return
            self._initial_average_sent.add(symbol)
            self._initial_timers.pop(symbol, None)
        try:
            callback()
        except Exception:  # noqa: BLE001
            logger.exception("initial average callback failed for %s", symbol)

    def was_initial_average_sent(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._initial_average_sent

    def pending_timer_count(self) -> int:
        with self._lock:
            return len(self._initial_timers)

    def clear_all_timers(self) -> None:
        with self._lock:
            for handle in self._initial_timers.values():
                handle.cancel()
            self._initial_timers.clear()
