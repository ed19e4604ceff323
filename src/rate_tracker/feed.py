from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from urllib.parse import urlencode

from .ingestion import IngestionCoordinator
from .state import RuntimeState
from .stream_client import StreamClient

logger = logging.getLogger(__name__)


def build_feed_url(base_url: str, api_key: str) -> str:
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{urlencode({'token': api_key})}"


class MarketFeed:
    """Owns the feed subscription: connects, replays subscriptions on every open."""

    def __init__(
        self,
        *,
        client: StreamClient,
        coordinator: IngestionCoordinator,
        url: str,
        symbols: Sequence[str],
        state: RuntimeState | None = None,
    ) -> None:
        self._client = client
        self._coordinator = coordinator
        self._url = url
        self._symbols = list(symbols)
        self._state = state

    @property
    def symbols(self) -> list[str]:
        return list(self._symbols)

    def start(self) -> None:
        self._client.on_open(self._handle_open)
        self._client.on_message(self._coordinator.handle_message)
        self._client.on_error(self._handle_error)
        self._client.on_close(self._handle_close)
        self._client.connect(self._url)

    async def stop(self) -> None:
        try:
            if self._client.is_connected():
                for symbol in self._symbols:
                    await self.unsubscribe(symbol)
        finally:
            await self._client.disconnect()

    async def subscribe(self, symbol: str) -> bool:
        sent = await self._client.send(json.dumps({"type": "subscribe", "symbol": symbol}))
        if sent:
            logger.info("[Feed WS] Subscribed to %s", symbol)
        else:
            logger.warning("[Feed WS] Cannot subscribe to %s: not connected", symbol)
        return sent

    async def unsubscribe(self, symbol: str) -> bool:
        sent = await self._client.send(json.dumps({"type": "unsubscribe", "symbol": symbol}))
        if sent:
            logger.info("[Feed WS] Unsubscribed from %s", symbol)
        return sent

    async def _handle_open(self) -> None:
        for symbol in self._symbols:
            await self.subscribe(symbol)
        if self._state is not None:
            self._state.add_event("info", "feed_connected", {"symbols": self.symbols})

    def _handle_error(self, exc: BaseException) -> None:
        if self._state is not None:
            self._state.add_event("warning", "feed_error", {"reason": str(exc)})

    def _handle_close(self) -> None:
        if self._state is not None:
            self._state.add_event("warning", "feed_closed", {"reconnect_attempts": self._client.reconnect_attempts})
