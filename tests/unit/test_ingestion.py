import asyncio
import json

import pytest

from src.rate_tracker.buffer import PriceBuffer
from src.rate_tracker.ingestion import IngestionCoordinator, MalformedMessageError, parse_feed_message
from src.rate_tracker.models import Trade
from src.rate_tracker.state import RuntimeState

from tests.fakes import RecordingSink, real_sleep, wait_for


def _trade_message(*entries: dict) -> str:
    return json.dumps({"type": "trade", "data": list(entries)})


def test_parse_feed_message_maps_trade_entries() -> None:
    message = parse_feed_message(
        _trade_message(
            {"s": "BINANCE:ETHUSDC", "p": 1850.5, "t": 1700000000000, "v": 0.25},
            {"s": "BINANCE:ETHBTC", "p": "0.0521", "t": 1700000000001},
        )
    )

    assert message.type == "trade"
    assert message.trades == [
        Trade(symbol="BINANCE:ETHUSDC", price=1850.5, timestamp_ms=1700000000000, volume=0.25),
        Trade(symbol="BINANCE:ETHBTC", price=0.0521, timestamp_ms=1700000000001, volume=0.0),
    ]


def test_parse_feed_message_rejects_malformed_input() -> None:
    with pytest.raises(MalformedMessageError, match="invalid json"):
        parse_feed_message("{not json")

    with pytest.raises(MalformedMessageError, match="json object"):
        parse_feed_message("[1, 2]")

    with pytest.raises(MalformedMessageError, match="missing field"):
        parse_feed_message(_trade_message({"s": "ETH", "t": 1}))

    with pytest.raises(MalformedMessageError, match="invalid numbers"):
        parse_feed_message(_trade_message({"s": "ETH", "p": "abc", "t": 1}))


def test_ping_and_unknown_messages_change_nothing() -> None:
    buffer = PriceBuffer()
    sink = RecordingSink()
    coordinator = IngestionCoordinator(buffer=buffer, sink=sink)

    coordinator.handle_message('{"type":"ping"}')
    coordinator.handle_message('{"type":"news","data":[{"s":"ETH","p":1,"t":1}]}')
    coordinator.handle_message('{"type":"trade"}')

    assert buffer.list_symbols() == set()
    assert sink.event_count() == 0


def test_malformed_message_is_logged_and_dropped(caplog: pytest.LogCaptureFixture) -> None:
    buffer = PriceBuffer()
    sink = RecordingSink()
    coordinator = IngestionCoordinator(buffer=buffer, sink=sink)

    coordinator.handle_message(b"\xff\xfe garbage")
    coordinator.handle_message(
        _trade_message({"s": "ETH", "p": 1.0, "t": 1}, {"s": "ETH", "p": None, "t": 2})
    )

    assert "Failed to parse message" in caplog.text
    assert buffer.list_symbols() == set()
    assert sink.event_count() == 0


def test_trade_batch_buffers_and_publishes_every_tick() -> None:
    async def _run() -> None:
        buffer = PriceBuffer()
        sink = RecordingSink()
        state = RuntimeState()
        coordinator = IngestionCoordinator(buffer=buffer, sink=sink, initial_average_delay_seconds=60.0, state=state)

        coordinator.handle_message(
            _trade_message(
                {"s": "BINANCE:ETHUSDC", "p": 1850.5, "t": 1000, "v": 1},
                {"s": "BINANCE:ETHUSDC", "p": 1860.0, "t": 2000, "v": 1},
            )
        )

        assert buffer.get_average("BINANCE:ETHUSDC") == 1855.25
        assert sink.live_ticks == [
            ("BINANCE:ETHUSDC", 1850.5, 1000),
            ("BINANCE:ETHUSDC", 1860.0, 2000),
        ]
        assert buffer.pending_timer_count() == 1
        assert state.get_latest_price("BINANCE:ETHUSDC") == 1860.0
        buffer.clear_all_timers()

    asyncio.run(_run())


def test_preliminary_average_published_once_after_delay() -> None:
    async def _run() -> None:
        buffer = PriceBuffer()
        sink = RecordingSink()
        coordinator = IngestionCoordinator(buffer=buffer, sink=sink, initial_average_delay_seconds=0.02)

        coordinator.handle_message(_trade_message({"s": "ETH", "p": 100.0, "t": 1}))
        coordinator.handle_message(_trade_message({"s": "ETH", "p": 200.0, "t": 2}))
        assert sink.preliminary == []

        await wait_for(lambda: sink.preliminary != [])
        coordinator.handle_message(_trade_message({"s": "ETH", "p": 300.0, "t": 3}))
        await real_sleep(0.05)

        assert sink.preliminary == [("ETH", 150.0)]

    asyncio.run(_run())


def test_preliminary_average_skipped_when_buffer_emptied() -> None:
    async def _run() -> None:
        buffer = PriceBuffer()
        sink = RecordingSink()
        coordinator = IngestionCoordinator(buffer=buffer, sink=sink, initial_average_delay_seconds=0.01)

        coordinator.handle_message(_trade_message({"s": "ETH", "p": 100.0, "t": 1}))
        buffer.clear("ETH")
        await wait_for(lambda: buffer.was_initial_average_sent("ETH"))

        assert sink.preliminary == []

    asyncio.run(_run())


def test_non_finite_prices_are_rejected() -> None:
    for price in ("1e999", "nan", "-inf"):
        with pytest.raises(MalformedMessageError, match="non-finite price"):
            parse_feed_message(_trade_message({"s": "ETH", "p": price, "t": 1}))

    with pytest.raises(MalformedMessageError, match="non-finite price"):
        parse_feed_message('{"type":"trade","data":[{"s":"ETH","p":Infinity,"t":1}]}')


def test_overflowing_price_never_reaches_the_buffer() -> None:
    buffer = PriceBuffer()
    sink = RecordingSink()
    coordinator = IngestionCoordinator(buffer=buffer, sink=sink)

    coordinator.handle_message(_trade_message({"s": "ETH", "p": "1e999", "t": 1}))

    assert buffer.list_symbols() == set()
    assert sink.event_count() == 0
