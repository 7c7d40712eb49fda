import asyncio
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from loguru import logger
from ...services.runtime import get_pipeline

router = APIRouter(tags=["notifications"])

ALL_TOPICS = "*"


@router.websocket("/ws/topics/{topic:path}")
async def stream_topic(websocket: WebSocket, topic: str):
    """
    Stream notifications for one topic as JSON messages.

    Topics: batch/{id}/status, document/{id}/status, errors, broadcast,
    or * for everything.
    """
    await websocket.accept()
    hub = get_pipeline().notifications
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    # The hub may publish from worker threads
    def forward(_topic: str, message: dict) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, message)

    if topic == ALL_TOPICS:
        subscription = hub.subscribe_all(forward)
    else:
        subscription = hub.subscribe(topic, forward)
    logger.debug("WebSocket subscribed", topic=topic)

    async def watch_disconnect() -> None:
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            queue.put_nowait(None)

    watcher = asyncio.create_task(watch_disconnect())
    try:
        while True:
            message = await queue.get()
            if message is None:
                break
            await websocket.send_json(message)
    except WebSocketDisconnect:
        pass
    finally:
        watcher.cancel()
        hub.unsubscribe(subscription)
        logger.debug("WebSocket unsubscribed", topic=topic)
