from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import websockets

from .models import ConnectionState

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], Awaitable[None] | None]
ConnectionHandler = Callable[[], Awaitable[None] | None]
ErrorHandler = Callable[[BaseException], Awaitable[None] | None]
Connector = Callable[..., Awaitable[Any]]

_STATUS_NAMES = {
    ConnectionState.DISCONNECTED: "disconnected",
    ConnectionState.CONNECTING: "connecting",
    ConnectionState.OPEN: "connected",
    ConnectionState.CLOSING: "closing",
    ConnectionState.CLOSED: "closed",
}


def backoff_delay(attempt: int, base_seconds: float = 1.0, max_seconds: float = 64.0) -> float:
    return min(base_seconds * (2**attempt), max_seconds)


class StreamClient:
    """One outbound websocket connection with bounded exponential-backoff reconnects."""

    def __init__(
        self,
        *,
        max_reconnect_attempts: int = 10,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 64.0,
        ping_interval_seconds: int = 15,
        connector: Connector | None = None,
    ) -> None:
        self.max_reconnect_attempts = max_reconnect_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.ping_interval_seconds = ping_interval_seconds
        self._connector = connector or websockets.connect
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0
        self._reconnect_exhausted = False
        self._shutting_down = False
        self._url: str | None = None
        self._ws: Any = None
        self._connection_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._on_open: ConnectionHandler | None = None
        self._on_message: MessageHandler | None = None
        self._on_error: ErrorHandler | None = None
        self._on_close: ConnectionHandler | None = None

    def on_open(self, handler: ConnectionHandler) -> None:
        self._on_open = handler

    def on_message(self, handler: MessageHandler) -> None:
        self._on_message = handler

    def on_error(self, handler: ErrorHandler) -> None:
        self._on_error = handler

    def on_close(self, handler: ConnectionHandler) -> None:
        self._on_close = handler

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnect_exhausted(self) -> bool:
        return self._reconnect_exhausted

    @property
    def url(self) -> str | None:
        return self._url

    def connect(self, url: str) -> None:
        if self._state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            return

        self._url = url
        self._shutting_down = False
        self._state = ConnectionState.CONNECTING
        self._reconnect_exhausted = False
        logger.info("[Feed WS] Connecting (attempt %s)", self._reconnect_attempts + 1)
        self._connection_task = asyncio.get_running_loop().create_task(
            self._run_connection(url),
            name="feed-ws-connection",
        )

    async def send(self, payload: str) -> bool:
        if self._ws is None or self._state != ConnectionState.OPEN:
            logger.warning("[Feed WS] Cannot send message: not connected")
            return False

        try:
            await self._ws.send(payload)
        except Exception as exc:  # noqa: BLE001
            logger.error("[Feed WS] Failed to send message: %s", exc)
            return False
        return True

    async def disconnect(self) -> None:
        logger.info("[Feed WS] Disconnecting")
        self._shutting_down = True

        reconnect_task, self._reconnect_task = self._reconnect_task, None
        await self._cancel(reconnect_task)

        connection_task, self._connection_task = self._connection_task, None
        await self._cancel(connection_task)

        ws, self._ws = self._ws, None
        if ws is not None:
            self._state = ConnectionState.CLOSING
            try:
                await ws.close()
            except Exception as exc:  # noqa: BLE001
                logger.warning("[Feed WS] Error while closing: %s", exc)

        self._state = ConnectionState.DISCONNECTED
        logger.info("[Feed WS] Disconnected")

    def get_status(self) -> str:
        return _STATUS_NAMES.get(self._state, "unknown")

    def is_connected(self) -> bool:
        return self._state == ConnectionState.OPEN

    async def _cancel(self, task: asyncio.Task[None] | None) -> None:
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run_connection(self, url: str) -> None:
        try:
            ws = await self._connector(url, ping_interval=self.ping_interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("[Feed WS] Failed to open connection: %s", exc)
            await self._handle_error(exc)
            await self._handle_close()
            return

        self._ws = ws
        await self._handle_open()
        try:
            async for raw in ws:
                await self._dispatch(self._on_message, raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            await self._handle_error(exc)
        if self._state == ConnectionState.DISCONNECTED:
            return
        await self._handle_close()

    async def _handle_open(self) -> None:
        self._state = ConnectionState.OPEN
        self._reconnect_attempts = 0
        logger.info("[Feed WS] Connected")
        await self._dispatch(self._on_open)

    async def _handle_error(self, exc: BaseException) -> None:
        logger.error("[Feed WS] Error: %s", exc)
        await self._dispatch(self._on_error, exc)

    async def _handle_close(self) -> None:
        logger.warning("[Feed WS] Connection closed")
        self._ws = None
        self._state = ConnectionState.CLOSED
        await self._dispatch(self._on_close)
        if self._state == ConnectionState.DISCONNECTED:
            return
        self._schedule_reconnect()

    async def _dispatch(self, handler: Callable[..., Any] | None, *args: Any) -> None:
        if handler is None:
            return
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("[Feed WS] Handler %s failed", getattr(handler, "__name__", handler))

    def _schedule_reconnect(self) -> None:
        if self._shutting_down:
            return

        if self._reconnect_attempts >= self.max_reconnect_attempts:
            self._reconnect_exhausted = True
            logger.error(
                "[Feed WS] Max reconnection attempts (%s) reached. Stopping reconnection.",
                self.max_reconnect_attempts,
            )
            return

        if not self._url:
            logger.error("[Feed WS] Cannot reconnect: URL not set")
            return

        delay = backoff_delay(self._reconnect_attempts, self.base_delay_seconds, self.max_delay_seconds)
        self._reconnect_attempts += 1
        logger.info("[Feed WS] Reconnecting in %ss", delay)

        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_after(delay),
            name="feed-ws-reconnect",
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if self._url and not self._shutting_down:
            self.connect(self._url)
