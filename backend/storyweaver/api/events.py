from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from storyweaver.api.deps import verify_ws_token
from storyweaver.services.scheduler import scheduler
from storyweaver.utils.time import utc_now
from storyweaver.websocket.manager import manager

router = APIRouter()


@router.websocket("/events")
async def events(websocket: WebSocket) -> None:
    """Push job status changes; a client may send "worker" to get a snapshot."""
    if not await verify_ws_token(websocket):
        return
    await manager.connect(websocket)
    await websocket.send_json(
        {"type": "connected", "timestamp": utc_now(), "worker": scheduler.snapshot()}
    )
    try:
        while True:
            message = await websocket.receive_text()
            if message.strip() == "worker":
                await websocket.send_json(
                    {"type": "worker", "timestamp": utc_now(), "worker": scheduler.snapshot()}
                )
    except WebSocketDisconnect:
        manager.disconnect(websocket)
