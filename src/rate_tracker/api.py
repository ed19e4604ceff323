from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from .events import AverageUpdate, average_from_record
from .main import RateService

logger = logging.getLogger(__name__)


class CurrentAverageResponse(BaseModel):
    symbol: str
    average_price: float
    samples: int


class RecentAveragesResponse(BaseModel):
    symbol: str
    items: list[AverageUpdate]


class HourlyCycleResponse(BaseModel):
    ok: bool
    persisted: list[str]


def _service(request: Request) -> RateService:
    return request.app.state.rate_service


def create_app(service: RateService) -> FastAPI:
    app = FastAPI(title="Rate Tracker API", version="0.1.0")
    app.state.rate_service = service

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"ok": True}

    @app.get("/status")
    async def status(request: Request) -> dict:
        return _service(request).snapshot()

    @app.get("/rates/{symbol}/current")
    async def current_average(symbol: str, request: Request) -> dict:
        rate_service = _service(request)
        average = rate_service.current_average(symbol)
        if average is None:
            raise HTTPException(status_code=404, detail="no buffered prices for symbol")
        response = CurrentAverageResponse(
            symbol=symbol,
            average_price=average,
            samples=rate_service.buffer.sample_count(symbol),
        )
        return response.model_dump(mode="json")

    @app.get("/rates/{symbol}/recent")
    async def recent_averages(
        symbol: str,
        request: Request,
        limit: int = Query(default=24, ge=1, le=168),
    ) -> dict:
        records = await _service(request).recent_averages(symbol, limit)
        response = RecentAveragesResponse(
            symbol=symbol,
            items=[average_from_record(record) for record in records],
        )
        return response.model_dump(mode="json")

    @app.post("/admin/hourly-cycle")
    async def run_hourly_cycle(request: Request) -> dict:
        persisted = await _service(request).cycle.run_hourly_cycle()
        return HourlyCycleResponse(ok=True, persisted=persisted).model_dump(mode="json")

    @app.websocket("/ws")
    async def subscribe(websocket: WebSocket) -> None:
        rate_service: RateService = websocket.app.state.rate_service
        broadcaster = rate_service.broadcaster
        await websocket.accept()
        subscriber = broadcaster.attach()

        async def forward_events() -> None:
            await broadcaster.send_initial_data(
                subscriber,
                rate_service.symbols,
                rate_service.config.recent_averages_limit,
            )
            while True:
                event = await subscriber.queue.get()
                await websocket.send_json(event)

        sender = asyncio.create_task(forward_events(), name=f"subscriber-{subscriber.id}")
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("Subscriber %s disconnected", subscriber.id)
        finally:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            except Exception as exc:  # noqa: BLE001
                logger.warning("Subscriber %s stream ended with error: %s", subscriber.id, exc)
            broadcaster.detach(subscriber)

    return app
