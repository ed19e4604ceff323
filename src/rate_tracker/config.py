from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

DEFAULT_SYMBOLS = ("BINANCE:ETHUSDC", "BINANCE:ETHUSDT", "BINANCE:ETHBTC")


@dataclass(frozen=True)
class Config:
    finnhub_api_key: str
    feed_ws_url: str
    symbols: tuple[str, ...]
    initial_average_delay_seconds: float
    max_reconnect_attempts: int
    reconnect_base_delay_seconds: float
    reconnect_max_delay_seconds: float
    ws_ping_interval_seconds: int
    retention_days: int
    hourly_cycle_seconds: int
    retention_cycle_seconds: int
    live_tick_throttle_seconds: float
    recent_averages_limit: int
    db_path: str
    api_port: int



def _symbols_from_env(value: str | None) -> tuple[str, ...]:
    if value is None:
        return DEFAULT_SYMBOLS
    symbols = [item.strip() for item in value.split(",")]
    return tuple(symbol for symbol in symbols if symbol)



def _millis_from_env(name: str, default_ms: int) -> float:
    return int(os.getenv(name, str(default_ms))) / 1000.0



def load_config() -> Config:
    load_dotenv()

    finnhub_api_key = os.getenv("FINNHUB_API_KEY", "").strip()
    if not finnhub_api_key:
        raise ValueError("FINNHUB_API_KEY is required")

    symbols = _symbols_from_env(os.getenv("FEED_SYMBOLS"))
    if not symbols:
        raise ValueError("FEED_SYMBOLS must name at least one symbol")

    max_reconnect_attempts = int(os.getenv("MAX_RECONNECT_ATTEMPTS", "10"))
    if max_reconnect_attempts < 0:
        raise ValueError("MAX_RECONNECT_ATTEMPTS must be >= 0")

    hourly_cycle_seconds = int(os.getenv("HOURLY_CYCLE_SECONDS", "3600"))
    retention_cycle_seconds = int(os.getenv("RETENTION_CYCLE_SECONDS", "86400"))
    if hourly_cycle_seconds <= 0 or retention_cycle_seconds <= 0:
        raise ValueError("cycle cadences must be > 0")

    retention_days = int(os.getenv("RETENTION_DAYS", "7"))
    if retention_days < 0:
        raise ValueError("RETENTION_DAYS must be >= 0")

    return Config(
        finnhub_api_key=finnhub_api_key,
        feed_ws_url=os.getenv("FEED_WS_URL", "wss://ws.finnhub.io").strip(),
        symbols=symbols,
        initial_average_delay_seconds=_millis_from_env("INITIAL_AVERAGE_DELAY_MS", 2000),
        max_reconnect_attempts=max_reconnect_attempts,
        reconnect_base_delay_seconds=_millis_from_env("RECONNECT_BASE_DELAY_MS", 1000),
        reconnect_max_delay_seconds=_millis_from_env("RECONNECT_MAX_DELAY_MS", 64000),
        ws_ping_interval_seconds=int(os.getenv("WS_PING_INTERVAL_SECONDS", "15")),
        retention_days=retention_days,
        hourly_cycle_seconds=hourly_cycle_seconds,
        retention_cycle_seconds=retention_cycle_seconds,
        live_tick_throttle_seconds=float(os.getenv("LIVE_TICK_THROTTLE_SECONDS", "1.0")),
        recent_averages_limit=int(os.getenv("RECENT_AVERAGES_LIMIT", "24")),
        db_path=os.getenv("RATES_DB_PATH", "data/rates.sqlite3").strip(),
        api_port=int(os.getenv("API_PORT", "3000")),
    )
