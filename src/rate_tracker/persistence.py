from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from . import aggregator
from .buffer import PriceBuffer
from .models import HourlyAverageRecord, ensure_utc, utc_now
from .publisher import PublishSink
from .repository import HourlyRateStore
from .scheduler import PeriodicSchedule
from .state import RuntimeState

logger = logging.getLogger(__name__)


class PersistenceCycle:
    """Flushes buffered prices to the store on an hourly trigger and prunes old rows daily."""

    def __init__(
        self,
        *,
        buffer: PriceBuffer,
        store: HourlyRateStore,
        sink: PublishSink,
        retention_days: int = 7,
        hourly_schedule: PeriodicSchedule | None = None,
        retention_schedule: PeriodicSchedule | None = None,
        state: RuntimeState | None = None,
    ) -> None:
        self._buffer = buffer
        self._store = store
        self._sink = sink
        self._retention_days = retention_days
        self._hourly_schedule = hourly_schedule or PeriodicSchedule(interval_seconds=3600)
        self._retention_schedule = retention_schedule or PeriodicSchedule(interval_seconds=86400)
        self._state = state
        self._cycle_lock = asyncio.Lock()

    async def run_hourly_cycle(self, now: datetime | None = None) -> list[str]:
        async with self._cycle_lock:
            return await self._run_hourly_cycle(now)

    async def _run_hourly_cycle(self, now: datetime | None) -> list[str]:
        logger.info("Calculating hourly averages...")
        hour = aggregator.round_to_hour(ensure_utc(now) if now is not None else utc_now())
        persisted: list[tuple[str, int]] = []
        failed: list[str] = []

        for symbol in sorted(self._buffer.list_symbols()):
            samples = self._buffer.get_samples(symbol)
            average = aggregator.average(samples)
            if average is None:
                continue

            try:
                record = HourlyAverageRecord(
                    symbol=symbol,
                    average_price=aggregator.to_price_decimal(average),
                    hour=hour,
                )
                await asyncio.to_thread(self._store.save, record)
            except Exception as exc:  # noqa: BLE001
                failed.append(symbol)
                logger.error("Failed to save hourly average for %s: %s", symbol, exc)
                continue

            persisted.append((symbol, len(samples)))
            logger.info("Saved hourly average for %s: %.8f (%s samples)", symbol, average, len(samples))

            try:
                await self._sink.publish_hourly_average(symbol)
            except Exception as exc:  # noqa: BLE001
                logger.error("Failed to publish hourly average for %s: %s", symbol, exc)

        for symbol, sample_count in persisted:
            self._buffer.clear(symbol, persisted_count=sample_count)

        saved_symbols = [symbol for symbol, _ in persisted]
        if self._state is not None:
            summary = {"hour": hour.isoformat(), "persisted": saved_symbols, "failed": failed}
            self._state.set_last_cycle(summary)
            if failed:
                self._state.add_event("warning", "hourly_average_save_failed", summary)
        return saved_symbols

    async def run_retention_cleanup(self, now: datetime | None = None) -> int | None:
        cutoff = aggregator.days_ago(self._retention_days, now)
        try:
            deleted_count = await asyncio.to_thread(self._store.delete_older_than, cutoff)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to cleanup old data: %s", exc)
            if self._state is not None:
                self._state.add_event("error", "retention_cleanup_failed", {"reason": str(exc)})
            return None

        logger.info("Cleaned up old data: %s records deleted", deleted_count)
        if self._state is not None:
            self._state.set_last_cleanup({"cutoff": cutoff.isoformat(), "deleted": deleted_count})
        return deleted_count

    async def run(self) -> None:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._run_periodic(self._hourly_schedule, self.run_hourly_cycle, "hourly-average"))
            tg.create_task(self._run_periodic(self._retention_schedule, self.run_retention_cleanup, "retention"))

    async def _run_periodic(
        self,
        schedule: PeriodicSchedule,
        job: Callable[[], Awaitable[Any]],
        name: str,
    ) -> None:
        while True:
            await schedule.wait_for_next()
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("%s job failed: %s", name, exc)
