import asyncio
import hmac
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from ..config import get_settings
from ..domain.notifications import AccessBroadcaster, AccessEvent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["access"])


async def _forward(websocket: WebSocket, queue: "asyncio.Queue[AccessEvent]") -> None:
    while True:
        event = await queue.get()
        await websocket.send_json(event.to_message())


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws/access")
async def access_stream(websocket: WebSocket, token: str | None = Query(default=None)) -> None:
    """Stream addAccess/removeAccess events to a door controller."""
    expected = get_settings().access_stream_token
    if expected and not hmac.compare_digest(token or "", expected):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    broadcaster = getattr(websocket.app.state, "access_notifier", None)
    if not isinstance(broadcaster, AccessBroadcaster):
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    await websocket.accept()
    queue = broadcaster.subscribe()
    logger.info("access stream subscribed (%d subscribers)", broadcaster.subscriber_count)
    tasks = [
        asyncio.create_task(_forward(websocket, queue)),
        asyncio.create_task(_wait_for_disconnect(websocket)),
    ]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            # Re-raises send failures from the forwarding task.
            task.result()
    except WebSocketDisconnect:
        pass
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        broadcaster.unsubscribe(queue)
        logger.info("access stream closed (%d subscribers)", broadcaster.subscriber_count)
