from __future__ import annotations

import asyncio

import uvicorn

from .api import create_app
from .config import load_config
from .main import RateService, run


async def serve() -> None:
    config = load_config()
    rate_service = RateService(config)

    server = uvicorn.Server(
        uvicorn.Config(
            app=create_app(rate_service),
            host="0.0.0.0",
            port=config.api_port,
            log_level="info",
        )
    )

    runner = asyncio.create_task(run(rate_service), name="rate-service")
    try:
        await server.serve()
    finally:
        # uvicorn owns the signal handlers; once it returns the service must go too
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass


if __name__ == "__main__":
    asyncio.run(serve())
