"""WebSocket handler for real-time events."""

import asyncio
import json
import logging

from fastapi import WebSocket
from pydantic import BaseModel

from events import EventType

logger = logging.getLogger(__name__)


class EventBroadcaster:
    """Manages UI WebSocket clients and pushes engine events to them."""

    def __init__(self) -> None:
        self._clients: list[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients.append(websocket)
        logger.info(f"WebSocket client connected. Total: {len(self._clients)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._clients:
                self._clients.remove(websocket)
        logger.info(f"WebSocket client disconnected. Total: {len(self._clients)}")

    async def broadcast(self, event: str, data: dict) -> None:
        """Broadcast an event to all connected WebSocket clients."""
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._clients:
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
            for ws in dead:
                self._clients.remove(ws)

    async def handle_event(self, event_type: EventType, payload: BaseModel) -> None:
        """EventBus subscriber. File payloads stay on the server side."""
        await self.broadcast(event_type.value, payload.model_dump(mode="json", exclude={"payload"}))
