"""
huddle.api.socket — Real-time channel (``/api/ws``)
====================================================

The access token is read from ``?token=`` or an ``Authorization: Bearer``
header.  An invalid token closes the socket with code 4401 before it joins
any room.
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy import Engine

from huddle.api.deps import get_engine, get_hub, resolve_token
from huddle.database.engine import run_db
from huddle.realtime.handlers import SocketContext, dispatch
from huddle.realtime.hub import Hub, chat_room
from huddle.services import chat_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

POLICY_VIOLATION = 4401


def _socket_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if token:
        return token
    authorization = websocket.headers.get("authorization", "")
    if authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


@router.websocket("/ws")
async def realtime(
    websocket: WebSocket,
    engine: Engine = Depends(get_engine),
    hub: Hub = Depends(get_hub),
):
    await websocket.accept()
    user = await run_db(resolve_token, engine, _socket_token(websocket))
    if user is None:
        logger.warning("Socket rejected: invalid token")
        await websocket.close(code=POLICY_VIOLATION, reason="Invalid token")
        return

    hub.bind_loop()
    hub.connect(websocket, user.id)
    for chat_id in await run_db(chat_service.user_chat_ids, engine, user.id):
        hub.join(websocket, chat_room(chat_id))
    logger.info("Socket connected: user %s (%d open)", user.id, hub.connection_count)

    ctx = SocketContext(
        hub=hub, engine=engine, socket=websocket,
        user_id=user.id, username=user.username, roles=user.roles,
    )
    try:
        while True:
            text = await websocket.receive_text()
            try:
                raw = json.loads(text)
            except ValueError:
                raw = None
            await dispatch(ctx, raw)
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket)
        logger.info("Socket disconnected: user %s", user.id)
