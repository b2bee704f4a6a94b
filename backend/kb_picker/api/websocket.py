from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from kb_picker.services.event_bus import event_bus

router = APIRouter()


# TODO: [SECURITY] Add WebSocket authentication before production deployment
# See: https://fastapi.tiangolo.com/advanced/websockets/#handling-disconnections-and-multiple-clients
@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, knowledge_base_id: Optional[str] = None):
    """Stream indexing events, optionally for a single knowledge base."""
    await event_bus.connect(websocket, knowledge_base_id)
    try:
        while True:
            # Clients only listen; incoming text just keeps the socket open
            await websocket.receive_text()
    except WebSocketDisconnect:
        await event_bus.disconnect(websocket)
