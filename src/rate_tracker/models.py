from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum


@dataclass(frozen=True)
class Trade:
    symbol: str
    price: float
    timestamp_ms: int
    volume: float = 0.0


@dataclass(frozen=True)
class PriceSample:
    price: float
    timestamp_ms: int


@dataclass(frozen=True)
class HourlyAverageRecord:
    symbol: str
    average_price: Decimal
    hour: datetime
    created_at: datetime | None = None
    id: int | None = None


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
