from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta
from decimal import ROUND_HALF_EVEN, Decimal
from statistics import fmean

from .models import PriceSample, ensure_utc, utc_now

PRICE_QUANTUM = Decimal("0.00000001")


def average(samples: Sequence[PriceSample] | None) -> float | None:
    if not samples:
        return None
    return fmean(sample.price for sample in samples)


def round_to_hour(instant: datetime) -> datetime:
    return instant.replace(minute=0, second=0, microsecond=0)


def days_ago(days: int, now: datetime | None = None) -> datetime:
    reference = ensure_utc(now) if now is not None else utc_now()
    return reference - timedelta(days=days)


def to_price_decimal(value: float) -> Decimal:
    # repr keeps the shortest exact float text, so 1855.25 stays 1855.25
    return Decimal(repr(float(value))).quantize(PRICE_QUANTUM, rounding=ROUND_HALF_EVEN)
