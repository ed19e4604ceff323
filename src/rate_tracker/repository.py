from __future__ import annotations

import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Protocol

from .aggregator import to_price_decimal
from .models import HourlyAverageRecord, ensure_utc, utc_now


class HourlyRateStore(Protocol):
    def save(self, record: HourlyAverageRecord) -> HourlyAverageRecord: ...

    def find_recent(self, symbol: str, limit: int = 24) -> list[HourlyAverageRecord]: ...

    def delete_older_than(self, cutoff: datetime) -> int: ...


def _to_iso(value: datetime) -> str:
    return ensure_utc(value).isoformat(timespec="microseconds")


class HourlyRateRepository:
    def __init__(self, db_path: str = "data/rates.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._bootstrap()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _bootstrap(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS hourly_rates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL,
                    average_price TEXT NOT NULL,
                    hour TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_hourly_rates_symbol_hour
                ON hourly_rates (symbol, hour)
                """
            )

    def _row_to_record(self, row: sqlite3.Row) -> HourlyAverageRecord:
        return HourlyAverageRecord(
            id=row["id"],
            symbol=row["symbol"],
            average_price=Decimal(row["average_price"]),
            hour=datetime.fromisoformat(row["hour"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def save(self, record: HourlyAverageRecord) -> HourlyAverageRecord:
        """Insert one hourly average; a second row for (symbol, hour) raises IntegrityError."""
        average_price = record.average_price
        if not isinstance(average_price, Decimal):
            average_price = to_price_decimal(average_price)
        created_at = _to_iso(record.created_at or utc_now())

        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO hourly_rates (symbol, average_price, hour, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (record.symbol, str(average_price), _to_iso(record.hour), created_at),
            )
            row = conn.execute("SELECT * FROM hourly_rates WHERE id = ?", (cursor.lastrowid,)).fetchone()
            if row is None:
                raise RuntimeError("failed to fetch saved hourly rate")
            return self._row_to_record(row)

    def find_recent(self, symbol: str, limit: int = 24) -> list[HourlyAverageRecord]:
        limit = max(1, limit)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM hourly_rates
                WHERE symbol = ?
                ORDER BY hour DESC
                LIMIT ?
                """,
                (symbol, limit),
            ).fetchall()
            return [self._row_to_record(row) for row in rows]

    def delete_older_than(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM hourly_rates WHERE hour < ?", (_to_iso(cutoff),))
            return int(cursor.rowcount)
