import asyncio
from typing import Any, Dict, List

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from .. import auth
from ..logging_config import get_logger
from ..notify import ChangeNotifier, Listener

router = APIRouter()
logger = get_logger("ws")


class ConnectionManager:
    def __init__(self) -> None:
        self.active: List[WebSocket] = []

    def connect(self, websocket: WebSocket) -> None:
        self.active.append(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.active:
            self.active.remove(websocket)

    async def broadcast(self, message: Dict[str, Any]) -> None:
        for connection in list(self.active):
            try:
                await connection.send_json(message)
            except (WebSocketDisconnect, RuntimeError):
                self.disconnect(connection)


def bridge(notifier: ChangeNotifier, manager: ConnectionManager, loop: asyncio.AbstractEventLoop) -> Listener:
    """Forward store change events (published on worker threads) to websocket clients."""

    def forward(event: Dict[str, Any]) -> None:
        if manager.active:
            loop.call_soon_threadsafe(lambda: loop.create_task(manager.broadcast(event)))

    notifier.subscribe(forward)
    return forward


@router.websocket("/ws/signals")
async def signal_stream(websocket: WebSocket) -> None:
    """Commit notifications (``signals_committed``) for map clients to re-query on.

    Clients may send text frames as keep-alives; they are ignored.
    """

    await websocket.accept()
    if not auth.websocket_authorized(websocket):
        await websocket.close(code=1008)
        return

    manager: ConnectionManager = websocket.app.state.ws_manager
    manager.connect(websocket)
    await websocket.send_json({"type": "subscribed"})
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)
        logger.info("ws_client_disconnected", remaining=len(manager.active))
