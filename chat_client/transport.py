import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from logging_config import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[str, Any], Awaitable[Any]]


class Transport(ABC):
    """Event channel the room controller talks through."""

    def bind(self, handler: EventHandler) -> None:
        self.handler = handler

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...

    @abstractmethod
    async def emit(self, event: str, data: Any = None) -> None:
        ...


class WebSocketTransport(Transport):
    """JSON {"event", "data"} frames over one WebSocket. Reconnects on every connect()."""

    def __init__(self, url: str):
        self.url = url
        self.handler: Optional[EventHandler] = None
        self._ws = None
        self._reader: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        if self._ws is not None:
            return
        self._ws = await websockets.connect(self.url)
        self._reader = asyncio.create_task(self._read_loop(self._ws))
        logger.info(f"Connected to {self.url}")

    async def disconnect(self) -> None:
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if ws is not None:
            await ws.close()
            logger.info(f"Disconnected from {self.url}")

    async def emit(self, event: str, data: Any = None) -> None:
        if self._ws is None:
            raise ConnectionError("Transport is not connected")
        await self._ws.send(json.dumps({"event": event, "data": data}))

    async def _read_loop(self, ws) -> None:
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                    event = frame["event"]
                except (json.JSONDecodeError, KeyError, TypeError) as e:
                    logger.warning(f"Ignoring malformed frame from server: {e}")
                    continue
                if self.handler is None:
                    continue
                try:
                    await self.handler(event, frame.get("data"))
                except Exception as e:
                    logger.error(f"Error handling {event} event: {e}", exc_info=True)
        except ConnectionClosed as e:
            logger.info(f"Connection to {self.url} closed: {e}")
