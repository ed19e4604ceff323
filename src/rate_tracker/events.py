from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from .models import HourlyAverageRecord, ensure_utc

EventName = Literal["price:update", "hourly-average", "hourly:average", "initial:data"]


class PriceUpdate(BaseModel):
    symbol: str
    price: float
    timestamp: int


class AverageUpdate(BaseModel):
    symbol: str
    average_price: float
    hour: datetime


class InitialData(BaseModel):
    symbol: str
    averages: list[AverageUpdate] = Field(default_factory=list)


class StreamEvent(BaseModel):
    event: EventName
    data: dict[str, Any]


def average_from_record(record: HourlyAverageRecord) -> AverageUpdate:
    return AverageUpdate(
        symbol=record.symbol,
        average_price=float(record.average_price),
        hour=ensure_utc(record.hour),
    )


def make_event(name: EventName, payload: BaseModel) -> dict[str, Any]:
    return StreamEvent(event=name, data=payload.model_dump(mode="json")).model_dump(mode="json")
