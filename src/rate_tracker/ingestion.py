from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field

from .buffer import PriceBuffer
from .models import Trade
from .publisher import PublishSink
from .state import RuntimeState

logger = logging.getLogger(__name__)


class MalformedMessageError(ValueError):
    pass


@dataclass(frozen=True)
class FeedMessage:
    type: str
    trades: list[Trade] = field(default_factory=list)


def _parse_trade(entry: object) -> Trade:
    if not isinstance(entry, dict):
        raise MalformedMessageError(f"trade entry must be an object, got {type(entry).__name__}")
    try:
        symbol = entry["s"]
        price = entry["p"]
        timestamp = entry["t"]
        volume = entry.get("v", 0.0)
    except KeyError as exc:
        raise MalformedMessageError(f"trade entry missing field {exc}") from exc

    if not isinstance(symbol, str) or not symbol:
        raise MalformedMessageError("trade entry has no symbol")
    try:
        trade = Trade(
            symbol=symbol,
            price=float(price),
            timestamp_ms=int(timestamp),
            volume=float(volume) if volume is not None else 0.0,
        )
    except (TypeError, ValueError, OverflowError) as exc:
        raise MalformedMessageError(f"trade entry for {symbol} has invalid numbers") from exc
    if not math.isfinite(trade.price):
        raise MalformedMessageError(f"trade entry for {symbol} has non-finite price")
    return trade


def parse_feed_message(raw: str | bytes) -> FeedMessage:
    """Decode one feed frame; raises MalformedMessageError on anything unreadable."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedMessageError(f"invalid json: {exc}") from exc

    if not isinstance(data, dict):
        raise MalformedMessageError("message must be a json object")

    msg_type = str(data.get("type", "")).strip().lower()
    if msg_type != "trade":
        return FeedMessage(type=msg_type)

    entries = data.get("data")
    if entries is None:
        return FeedMessage(type=msg_type)
    if not isinstance(entries, list):
        raise MalformedMessageError("trade data must be a list")

    return FeedMessage(type=msg_type, trades=[_parse_trade(entry) for entry in entries])


class IngestionCoordinator:
    def __init__(
        self,
        *,
        buffer: PriceBuffer,
        sink: PublishSink,
        initial_average_delay_seconds: float = 2.0,
        state: RuntimeState | None = None,
    ) -> None:
        self._buffer = buffer
        self._sink = sink
        self._initial_average_delay_seconds = initial_average_delay_seconds
        self._state = state

    def handle_message(self, raw: str | bytes) -> None:
        try:
            message = parse_feed_message(raw)
        except MalformedMessageError as exc:
            logger.error("Failed to parse message: %s", exc)
            return

        if message.type == "ping":
            return

        if message.type != "trade":
            logger.debug("Ignoring feed message of type %r", message.type)
            return

        for trade in message.trades:
            self.ingest_trade(trade)

    def ingest_trade(self, trade: Trade) -> None:
        logger.debug("Trade received: %s - %.2f at %s", trade.symbol, trade.price, trade.timestamp_ms)
        is_first = self._buffer.add_sample(trade.symbol, trade.price, trade.timestamp_ms)
        if is_first:
            self._buffer.schedule_initial_average(
                trade.symbol,
                lambda: self._emit_preliminary_average(trade.symbol),
                self._initial_average_delay_seconds,
            )

        if self._state is not None:
            self._state.set_tick(trade.symbol, trade.price, trade.timestamp_ms)
        self._sink.publish_live_tick(trade.symbol, trade.price, trade.timestamp_ms)

    def _emit_preliminary_average(self, symbol: str) -> None:
        average = self._buffer.get_average(symbol)
        if average is None:
            return

        logger.info(
            "Broadcasting average for %s: %.8f (%s samples)",
            symbol,
            average,
            self._buffer.sample_count(symbol),
        )
        self._sink.publish_preliminary_average(symbol, average)
