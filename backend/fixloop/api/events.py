"""
Session Event Stream
====================

WebSocket endpoint streaming a session's events as JSON, in sequence
order. Clients reconnect with ``?since=<last sequence>`` to replay what
they missed.
"""

import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from fixloop.api.deps import get_ws_orchestrator
from fixloop.core.engine.orchestrator import Orchestrator
from fixloop.core.errors import SessionNotFoundError

logger = structlog.get_logger()

router = APIRouter(tags=["events"])


@router.websocket("/sessions/{session_id}/events")
async def session_events(
    websocket: WebSocket,
    session_id: str,
    since: Optional[int] = None,
    orchestrator: Orchestrator = Depends(get_ws_orchestrator),
):
    try:
        subscription = await orchestrator.subscribe(session_id, since=since)
    except SessionNotFoundError:
        await websocket.close(code=4404, reason="Session not found")
        return

    await websocket.accept()
    client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
    logger.info("Event stream connected", session_id=session_id, client=client, since=since)

    async def _watch_disconnect() -> None:
        # Incoming messages are ignored
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            return

    disconnected = asyncio.create_task(_watch_disconnect())
    try:
        while True:
            next_event = asyncio.ensure_future(subscription.__anext__())
            await asyncio.wait({next_event, disconnected}, return_when=asyncio.FIRST_COMPLETED)
            if disconnected.done():
                next_event.cancel()
                break
            try:
                event = next_event.result()
            except StopAsyncIteration:
                await websocket.close()
                break
            await websocket.send_text(event.to_json())
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("Event stream error", session_id=session_id, error=str(e))
    finally:
        disconnected.cancel()
        await orchestrator.bus.unsubscribe(subscription)
        logger.info("Event stream disconnected", session_id=session_id, client=client)
