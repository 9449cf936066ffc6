"""WebSocket fan-out of service events."""

import asyncio
import json
import logging

from fastapi import WebSocket

from fileway.events import Event, EventChannel

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks WebSocket clients and forwards every service event to them."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"WebSocket client connected. Total: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"WebSocket client disconnected. Total: {len(self._connections)}")

    async def broadcast(self, event: Event) -> None:
        """Send one event to every client, dropping clients that went away."""
        message = json.dumps({"event": event.type.value, "data": event.data})
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)

    async def pump(self, channel: EventChannel) -> None:
        """Forward events from a service channel until cancelled."""
        async for event in channel:
            try:
                await self.broadcast(event)
            except Exception as e:
                logger.error(f"Event broadcast error: {e}")
