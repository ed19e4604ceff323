from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass


@dataclass
class PeriodicSchedule:
    """Fires on wall-clock multiples of ``interval_seconds`` since the epoch.

    3600 lands on the top of every hour and 86400 on UTC midnight.
    """

    interval_seconds: int

    def next_run_ts(self, now_ts: float | None = None) -> float:
        now_ts = now_ts if now_ts is not None else time.time()
        slot = int(now_ts // self.interval_seconds)
        return float((slot + 1) * self.interval_seconds)

    async def wait_for_next(self) -> float:
        target_ts = self.next_run_ts()
        while True:
            remaining = target_ts - time.time()
            if remaining <= 0:
                return target_ts
            await asyncio.sleep(min(remaining, 2.0))
