from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from src.rate_tracker.api import create_app
from src.rate_tracker.config import Config
from src.rate_tracker.main import RateService
from src.rate_tracker.models import HourlyAverageRecord
from src.rate_tracker.repository import HourlyRateRepository
from src.rate_tracker.stream_client import StreamClient

from tests.fakes import FakeConnector

HOUR = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _config(db_path: str) -> Config:
    return Config(
        finnhub_api_key="test-key",
        feed_ws_url="wss://feed.test",
        symbols=("BINANCE:ETHUSDC", "BINANCE:ETHBTC"),
        initial_average_delay_seconds=2.0,
        max_reconnect_attempts=10,
        reconnect_base_delay_seconds=1.0,
        reconnect_max_delay_seconds=64.0,
        ws_ping_interval_seconds=15,
        retention_days=7,
        hourly_cycle_seconds=3600,
        retention_cycle_seconds=86400,
        live_tick_throttle_seconds=0,
        recent_averages_limit=24,
        db_path=db_path,
        api_port=3000,
    )


@pytest.fixture
def service(tmp_path) -> RateService:
    db_path = str(tmp_path / "rates.sqlite3")
    return RateService(
        _config(db_path),
        repository=HourlyRateRepository(db_path),
        client=StreamClient(connector=FakeConnector()),
    )


def test_healthz(service: RateService) -> None:
    client = TestClient(create_app(service))

    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_status_reports_feed_and_buffers(service: RateService) -> None:
    service.buffer.add_sample("BINANCE:ETHUSDC", 1850.5, 1000)
    service.state.add_event("info", "feed_connected")
    client = TestClient(create_app(service))

    body = client.get("/status").json()

    assert body["feed"]["status"] == "disconnected"
    assert body["feed"]["reconnect_exhausted"] is False
    assert body["feed"]["symbols"] == ["BINANCE:ETHUSDC", "BINANCE:ETHBTC"]
    assert body["buffers"] == {"BINANCE:ETHUSDC": 1}
    assert body["subscribers"] == 0
    assert body["events"][-1]["message"] == "feed_connected"


def test_current_average(service: RateService) -> None:
    client = TestClient(create_app(service))

    missing = client.get("/rates/BINANCE:ETHUSDC/current")
    assert missing.status_code == 404

    service.buffer.add_sample("BINANCE:ETHUSDC", 1850.5, 1000)
    service.buffer.add_sample("BINANCE:ETHUSDC", 1860.0, 2000)
    response = client.get("/rates/BINANCE:ETHUSDC/current")

    assert response.status_code == 200
    assert response.json() == {"symbol": "BINANCE:ETHUSDC", "average_price": 1855.25, "samples": 2}


def test_recent_averages_newest_first_with_limit(service: RateService) -> None:
    for offset in range(3):
        service.repository.save(
            HourlyAverageRecord(
                symbol="BINANCE:ETHBTC",
                average_price=Decimal("0.05") + offset,
                hour=HOUR - timedelta(hours=offset),
            )
        )
    client = TestClient(create_app(service))

    response = client.get("/rates/BINANCE:ETHBTC/recent", params={"limit": 2})

    assert response.status_code == 200
    items = response.json()["items"]
    assert [item["average_price"] for item in items] == [0.05, 1.05]
    assert client.get("/rates/BINANCE:ETHBTC/recent", params={"limit": 0}).status_code == 422


def test_admin_hourly_cycle_persists_buffered_symbols(service: RateService) -> None:
    service.buffer.add_sample("BINANCE:ETHUSDC", 10.0, 1)
    service.buffer.add_sample("BINANCE:ETHUSDC", 20.0, 2)
    client = TestClient(create_app(service))

    response = client.post("/admin/hourly-cycle")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "persisted": ["BINANCE:ETHUSDC"]}
    assert service.buffer.has_samples("BINANCE:ETHUSDC") is False
    [record] = service.repository.find_recent("BINANCE:ETHUSDC")
    assert record.average_price == Decimal("15")


def test_websocket_sends_initial_data_then_hourly_average(service: RateService) -> None:
    service.repository.save(
        HourlyAverageRecord(symbol="BINANCE:ETHBTC", average_price=Decimal("0.0521"), hour=HOUR)
    )

    with TestClient(create_app(service)) as client:
        with client.websocket_connect("/ws") as websocket:
            initial = websocket.receive_json()
            assert initial["event"] == "initial:data"
            assert initial["data"]["symbol"] == "BINANCE:ETHBTC"
            assert initial["data"]["averages"][0]["average_price"] == 0.0521

            service.buffer.add_sample("BINANCE:ETHUSDC", 100.0, 1)
            assert client.post("/admin/hourly-cycle").status_code == 200

            event = websocket.receive_json()
            assert event["event"] == "hourly:average"
            assert event["data"]["symbol"] == "BINANCE:ETHUSDC"
            assert event["data"]["average_price"] == 100.0
