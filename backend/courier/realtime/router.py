"""WebSocket endpoint and presence lookup.

Endpoints:
    - WebSocket /ws?userId=<id>: the live messaging channel
    - GET /presence/{user_id}: online status from the connection registry

The client is already authenticated by the time it opens the socket; the
handshake only associates the connection with a known user id. Unknown
ids are refused with close code 1008 before the socket is accepted.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket

from ..conversations import ID_PATTERN, validate_id
from ..hub import MessagingHub, get_hub
from .handler import open_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def messaging_websocket(
    websocket: WebSocket,
    userId: Optional[str] = Query(None, description="Authenticated user ID"),
    hub: MessagingHub = Depends(get_hub),
) -> None:
    """Live messaging channel for one device of one user.

    Protocol Message Types (client -> server):
        - join-room / leave-room: subscribe to a community or direct thread
        - send-message: send a message (acked with message-ack)
        - mark-read: read receipts
        - delete-message: delete for me / for everyone
        - typing: typing indicator
        - ping: keepalive, answered with pong
    """
    if not userId or not ID_PATTERN.match(userId):
        logger.warning("[WS] Rejecting connection without a valid userId")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    if not await asyncio.to_thread(hub.directory.user_exists, userId):
        logger.warning(f"[WS] Rejecting connection for unknown user {userId}")
        await websocket.close(code=1008)
        return

    await open_session(websocket, hub, userId)


@router.get("/presence/{user_id}")
async def get_presence(user_id: str, hub: MessagingHub = Depends(get_hub)) -> dict:
    """Whether a user currently has at least one live connection."""
    validate_id(user_id, "userId")
    return {
        "userId": user_id,
        "online": hub.registry.is_online(user_id),
        "connections": len(hub.registry.connections_for(user_id)),
    }
