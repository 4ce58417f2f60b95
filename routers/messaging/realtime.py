import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool

from auth import decode_access_token, token_from_connection
from core.db import get_db_context
from core.presence import PresenceDirectory
from core.users import get_user_by_id
from routers.dependencies import get_presence
from utils.fanout import Broadcaster

from .service import (
    handle_client_event as service_handle_client_event,
    handle_connect as service_handle_connect,
    handle_disconnect as service_handle_disconnect,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])


def _load_user_id(token: str) -> Optional[int]:
    try:
        user_id = decode_access_token(token)
    except HTTPException:
        return None
    with get_db_context() as db:
        user = get_user_by_id(db, user_id=user_id)
        return user.user_id if user else None


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    presence: PresenceDirectory = Depends(get_presence),
):
    """
    Realtime channel. Authenticates with the session cookie or `?token=`,
    then streams `{"event", "data"}` frames. Clients may send typingOn/typingOff.

    No database session is held while the socket is idle: each inbound frame and
    the disconnect bookkeeping open their own short-lived session.
    """
    token = token_from_connection(websocket)
    user_id = await run_in_threadpool(_load_user_id, token) if token else None
    if user_id is None:
        logger.info("WS rejected: missing or invalid session")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    broadcaster = Broadcaster(presence)
    await websocket.accept()
    await service_handle_connect(
        user_id=user_id, handle=websocket, presence=presence, broadcaster=broadcaster
    )
    try:
        while True:
            raw = await websocket.receive_text()
            with get_db_context() as db:
                await service_handle_client_event(
                    db, user_id=user_id, raw=raw, broadcaster=broadcaster
                )
    except WebSocketDisconnect:
        pass
    finally:
        with get_db_context() as db:
            await service_handle_disconnect(
                db, user_id=user_id, handle=websocket, presence=presence, broadcaster=broadcaster
            )
