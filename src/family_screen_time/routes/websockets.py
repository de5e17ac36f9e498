import asyncio
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from family_screen_time.managers.errors import ScreenTimeError
from family_screen_time.managers.logging_manager import get_logger
from family_screen_time.managers.notification_bus import NotificationBus, event_payload
from family_screen_time.models.screen_time_models import GUARDIANS_AUDIENCE, ActorRole, child_audience

logger = get_logger(prefix="[WebSocket]")

router = APIRouter()


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def _stream_events(websocket: WebSocket, bus: NotificationBus, family_id: str, audience: str, after: int) -> int:
    """
    Replay logged events after ``after``, then forward live ones. Returns the last sequence sent.

    Live channels are open before the log is read, so an event published during
    the replay waits in the subscription instead of being lost.
    """
    last_sequence = after
    try:
        async with bus.subscribe(family_id, [audience]) as live:
            async for event in bus.replay(family_id, audience, after):
                if event.sequence <= last_sequence:
                    continue
                await websocket.send_json(event_payload(event))
                last_sequence = event.sequence

            async for payload in live:
                sequence = payload.get("sequence", 0)
                # Already replayed from the log
                if sequence and sequence <= last_sequence:
                    continue
                await websocket.send_json(payload)
                last_sequence = sequence or last_sequence
    except ScreenTimeError as e:
        logger.error("Event stream for family %s failed: %s", family_id, e)
        await websocket.close(code=1011)
    except WebSocketDisconnect:
        pass
    return last_sequence


@router.websocket("/ws/families/{family_id}")
async def family_events_websocket(
    websocket: WebSocket,
    family_id: str,
    viewer_type: ActorRole = Query(...),
    viewer_id: Optional[str] = Query(None),
    after: int = Query(0, ge=0),
):
    """
    Stream a family's change events to one viewer.

    Events logged after ``after`` are replayed first, then live events follow.
    A guardian receives every event of the family, a child only the events
    addressed to them. Each message carries its ``sequence`` so a client can
    resume from the last one it saw after reconnecting.
    """
    if viewer_type == ActorRole.CHILD and not viewer_id:
        await websocket.close(code=1008)
        return

    store = websocket.app.state.store
    bus = websocket.app.state.bus
    audience = GUARDIANS_AUDIENCE if viewer_type == ActorRole.GUARDIAN else child_audience(viewer_id)

    try:
        await store.get_family_record(family_id)
    except ScreenTimeError as e:
        logger.warning("Refusing event stream for family %s: %s", family_id, e)
        await websocket.close(code=1008)
        return

    await websocket.accept()
    logger.info("Event stream opened for %s on family %s (after=%d)", audience, family_id, after)

    stream = asyncio.create_task(_stream_events(websocket, bus, family_id, audience, after))
    watcher = asyncio.create_task(_wait_for_disconnect(websocket))
    _, pending = await asyncio.wait({stream, watcher}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    if not stream.cancelled() and stream.exception() is not None:
        logger.error("Event stream for family %s crashed", family_id, exc_info=stream.exception())

    logger.info("Event stream closed for %s on family %s", audience, family_id)
