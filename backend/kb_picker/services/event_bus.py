from typing import Dict, Optional
from fastapi import WebSocket
import asyncio
import logging

from kb_picker.core.events import IndexingEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Fans indexing events out to websocket subscribers.

    A subscriber may watch one knowledge base; ``None`` receives every event.
    """

    def __init__(self):
        self.connections: Dict[WebSocket, Optional[str]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, job_id: Optional[str] = None):
        await websocket.accept()
        async with self._lock:
            self.connections[websocket] = job_id

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            self.connections.pop(websocket, None)

    async def broadcast(self, event: dict, job_id: Optional[str] = None):
        """Send event to every subscriber watching job_id (or everything)."""
        disconnected = set()

        for ws, watched in list(self.connections.items()):
            if watched is not None and job_id is not None and watched != job_id:
                continue
            try:
                await ws.send_json(event)
            except Exception:
                disconnected.add(ws)

        if disconnected:
            logger.debug("Dropping %d closed websocket(s)", len(disconnected))
            async with self._lock:
                for ws in disconnected:
                    self.connections.pop(ws, None)

    async def publish(self, event: IndexingEvent):
        """Emitter handed to sessions: one message per indexing event."""
        await self.broadcast(event.model_dump(mode="json"), job_id=event.job_id)


# Singleton instance
event_bus = EventBus()
