from __future__ import annotations

import asyncio
import logging

from .buffer import PriceBuffer
from .config import Config, load_config
from .feed import MarketFeed, build_feed_url
from .ingestion import IngestionCoordinator
from .persistence import PersistenceCycle
from .publisher import EventBroadcaster
from .repository import HourlyRateRepository
from .scheduler import PeriodicSchedule
from .state import RuntimeState
from .stream_client import StreamClient

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


class RateService:
    """Owns the feed, buffers, store and persistence cycle for one process."""

    def __init__(
        self,
        config: Config,
        *,
        repository: HourlyRateRepository | None = None,
        client: StreamClient | None = None,
    ) -> None:
        self.config = config
        self.state = RuntimeState()
        self.buffer = PriceBuffer()
        self.repository = repository or HourlyRateRepository(config.db_path)
        self.broadcaster = EventBroadcaster(
            store=self.repository,
            throttle_seconds=config.live_tick_throttle_seconds,
        )
        self.coordinator = IngestionCoordinator(
            buffer=self.buffer,
            sink=self.broadcaster,
            initial_average_delay_seconds=config.initial_average_delay_seconds,
            state=self.state,
        )
        self.client = client or StreamClient(
            max_reconnect_attempts=config.max_reconnect_attempts,
            base_delay_seconds=config.reconnect_base_delay_seconds,
            max_delay_seconds=config.reconnect_max_delay_seconds,
            ping_interval_seconds=config.ws_ping_interval_seconds,
        )
        self.feed = MarketFeed(
            client=self.client,
            coordinator=self.coordinator,
            url=build_feed_url(config.feed_ws_url, config.finnhub_api_key),
            symbols=config.symbols,
            state=self.state,
        )
        self.cycle = PersistenceCycle(
            buffer=self.buffer,
            store=self.repository,
            sink=self.broadcaster,
            retention_days=config.retention_days,
            hourly_schedule=PeriodicSchedule(interval_seconds=config.hourly_cycle_seconds),
            retention_schedule=PeriodicSchedule(interval_seconds=config.retention_cycle_seconds),
            state=self.state,
        )
        self._cycle_task: asyncio.Task[None] | None = None

    @property
    def symbols(self) -> tuple[str, ...]:
        return self.config.symbols

    async def start(self) -> None:
        if self._cycle_task is not None and not self._cycle_task.done():
            return
        logger.info("Starting rate service for %s", ", ".join(self.config.symbols))
        self.feed.start()
        self._cycle_task = asyncio.create_task(self.cycle.run(), name="persistence-cycle")

    async def stop(self) -> None:
        logger.info("Stopping rate service")
        if self._cycle_task is not None:
            self._cycle_task.cancel()
            try:
                await self._cycle_task
            except asyncio.CancelledError:
                pass
            self._cycle_task = None

        try:
            await self.feed.stop()
        finally:
            self.buffer.clear_all_timers()
            self.broadcaster.close()

    def current_average(self, symbol: str) -> float | None:
        return self.buffer.get_average(symbol)

    async def recent_averages(self, symbol: str, limit: int | None = None):
        return await asyncio.to_thread(
            self.repository.find_recent,
            symbol,
            limit or self.config.recent_averages_limit,
        )

    def snapshot(self) -> dict:
        return {
            "feed": {
                "status": self.client.get_status(),
                "reconnect_attempts": self.client.reconnect_attempts,
                "reconnect_exhausted": self.client.reconnect_exhausted,
                "symbols": list(self.config.symbols),
            },
            "buffers": {symbol: self.buffer.sample_count(symbol) for symbol in sorted(self.buffer.list_symbols())},
            "subscribers": self.broadcaster.subscriber_count(),
            **self.state.snapshot(),
        }


async def run(service: RateService | None = None) -> None:
    service = service or RateService(load_config())
    await service.start()
    try:
        await asyncio.Event().wait()
    finally:
        await service.stop()
