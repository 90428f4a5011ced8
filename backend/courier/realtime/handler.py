"""Per-connection WebSocket protocol handler.

Each accepted WebSocket gets one ConnectionSession, which walks through

    CONNECTING -> IDENTIFIED -> DISCONNECTED

Frames from one connection are handled strictly one at a time, in arrival
order. A frame that cannot be parsed, or whose ``type`` is unknown, is
logged and skipped; a frame that fails validation or authorization gets an
``error`` event back. Neither closes the connection.

Disconnect (client close, transport error or a missed heartbeat) always
runs the same cleanup exactly once: unregister from the connection
registry, then leave every room.
"""
import asyncio
import json
import logging
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PayloadError

from ..conversations import ConversationRef
from ..errors import AuthorizationError, MessagingError, TransportError, ValidationError
from ..hub import MessagingHub
from .events import (
    ClientEvent,
    DeleteMessagePayload,
    JoinRoomPayload,
    LeaveRoomPayload,
    MarkReadPayload,
    SendMessagePayload,
    ServerEvent,
    TypingPayload,
    build_event,
)

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    IDENTIFIED = "identified"
    DISCONNECTED = "disconnected"


def _payload_error(exc: PayloadError) -> ValidationError:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    detail = first.get("msg", "invalid payload")
    return ValidationError(f"Invalid payload: {location} {detail}".strip())


class ConnectionSession:
    """Protocol state machine for one WebSocket connection."""

    def __init__(self, websocket: WebSocket, hub: MessagingHub, user_id: str) -> None:
        self.websocket = websocket
        self.hub = hub
        self.user_id = user_id
        self.connection_id = str(uuid.uuid4())
        self.state = ConnectionState.CONNECTING
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            ClientEvent.JOIN_ROOM.value: self._on_join_room,
            ClientEvent.LEAVE_ROOM.value: self._on_leave_room,
            ClientEvent.SEND_MESSAGE.value: self._on_send_message,
            ClientEvent.MARK_READ.value: self._on_mark_read,
            ClientEvent.DELETE_MESSAGE.value: self._on_delete_message,
            ClientEvent.TYPING.value: self._on_typing,
            ClientEvent.PING.value: self._on_ping,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def identify(self) -> None:
        """Register the (already accepted) connection and confirm it to the client."""
        came_online = self.hub.registry.register(
            self.user_id, self.connection_id, self.websocket
        )
        self.state = ConnectionState.IDENTIFIED
        logger.info(
            f"[WS] {self.user_id} identified on {self.connection_id}"
            f"{' (now online)' if came_online else ''}"
        )
        await self.websocket.send_json(build_event(
            ServerEvent.CONNECTED,
            connectionId=self.connection_id,
            userId=self.user_id,
        ))

    async def run(self) -> None:
        """Main receive loop; returns once the connection is gone."""
        try:
            while self.state == ConnectionState.IDENTIFIED:
                raw = await self._receive()
                if raw is None:
                    continue
                await self.handle_frame(raw)
        except WebSocketDisconnect as e:
            logger.info(f"[WS] {self.user_id} disconnected ({e.code}) from {self.connection_id}")
        except asyncio.TimeoutError:
            logger.info(f"[WS] Heartbeat missed on {self.connection_id}; closing")
            await self._close_transport(code=1001)
        except TransportError as e:
            logger.info(f"[WS] Transport error on {self.connection_id}: {e}")
        finally:
            await self.close()

    async def _receive(self) -> Optional[str]:
        """Next text frame, or None for a frame that is skipped.

        Raises:
            WebSocketDisconnect: The client closed the connection.
            asyncio.TimeoutError: No frame within the heartbeat timeout.
            TransportError: The socket failed underneath us.
        """
        timeout = self.hub.settings.messaging.heartbeat_timeout_seconds
        try:
            if timeout > 0:
                message = await asyncio.wait_for(self.websocket.receive(), timeout=timeout)
            else:
                message = await self.websocket.receive()
        except RuntimeError as e:
            # Starlette raises RuntimeError when receiving on a closed socket.
            raise TransportError(str(e)) from e

        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(code=message.get("code", 1000), reason=message.get("reason"))
        text = message.get("text")
        if text is None:
            logger.warning(f"[WS] Ignoring binary frame on {self.connection_id}")
        return text
    async def _close_transport(self, code: int = 1000) -> None:
        try:
            await self.websocket.close(code=code)
        except RuntimeError:
            pass

    async def close(self) -> None:
        """Disconnect cleanup. Runs once; later calls are no-ops."""
        if self.state == ConnectionState.DISCONNECTED:
            return
        self.state = ConnectionState.DISCONNECTED

        self.hub.registry.unregister(self.connection_id)
        left = self.hub.rooms.leave_all(self.connection_id)
        logger.info(
            f"[WS] Cleaned up {self.connection_id} ({len(left)} room(s)); "
            f"{self.user_id} online={self.hub.registry.is_online(self.user_id)}"
        )

        for conversation_id in left:
            conversation = ConversationRef.parse(conversation_id)
            if not conversation.is_direct:
                await self._broadcast_presence(conversation)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle_frame(self, raw: str) -> None:
        """Parse and dispatch one client frame."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"[WS] Ignoring malformed frame on {self.connection_id}")
            return
        if not isinstance(data, dict):
            logger.warning(f"[WS] Ignoring non-object frame on {self.connection_id}")
            return

        event_type = data.get("type")
        if not isinstance(event_type, str):
            logger.warning(f"[WS] Ignoring frame without a string type on {self.connection_id}")
            return
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"[WS] Ignoring unknown event {event_type!r} on {self.connection_id}")
            return

        logger.debug(f"[WS] {self.user_id} -> {event_type}")
        try:
            await handler(data)
        except PayloadError as e:
            await self._send_error(_payload_error(e), event_type, data)
        except MessagingError as e:
            if isinstance(e, AuthorizationError):
                logger.warning(f"[WS] Forbidden {event_type} by {self.user_id}: {e.reason}")
            await self._send_error(e, event_type, data)
        except Exception:
            logger.exception(f"[WS] Unhandled error in {event_type} on {self.connection_id}")
            await self._send_error(MessagingError("Internal error"), event_type, data)

    async def _send(self, event: Dict[str, Any]) -> None:
        await self.hub.engine.push([self.connection_id], event)

    async def _send_error(self, error: MessagingError, event_type: str, data: Dict[str, Any]) -> None:
        await self._send(build_event(
            ServerEvent.ERROR,
            code=error.code,
            error=error.message,
            requestType=event_type,
            clientMessageId=data.get("clientMessageId"),
        ))

    async def _broadcast_presence(self, conversation: ConversationRef) -> None:
        subscribers = self.hub.rooms.subscribers(conversation.id)
        online = sorted({
            owner for owner in (self.hub.registry.owner_of(cid) for cid in subscribers)
            if owner is not None
        })
        await self.hub.engine.push(subscribers, build_event(
            ServerEvent.PRESENCE,
            conversationId=conversation.id,
            communityId=conversation.community_id,
            onlineUserIds=online,
        ))

    # =========================================================================
    # Event handlers
    # =========================================================================

    async def _on_join_room(self, data: Dict[str, Any]) -> None:
        payload = JoinRoomPayload.model_validate(data)
        conversation = payload.resolve(self.user_id)
        await self.hub.engine.authorize(self.user_id, conversation)

        is_new = self.hub.rooms.join(self.connection_id, conversation.id)
        await self._send(build_event(
            ServerEvent.JOINED_ROOM,
            conversationId=conversation.id,
            kind=conversation.kind.value,
            communityId=conversation.community_id,
            peerId=conversation.peer_of(self.user_id) if conversation.is_direct else None,
        ))
        if is_new and not conversation.is_direct:
            await self._broadcast_presence(conversation)

    async def _on_leave_room(self, data: Dict[str, Any]) -> None:
        payload = LeaveRoomPayload.model_validate(data)
        conversation = payload.resolve(self.user_id)

        was_member = self.hub.rooms.leave(self.connection_id, conversation.id)
        await self._send(build_event(ServerEvent.LEFT_ROOM, conversationId=conversation.id))
        if was_member and not conversation.is_direct:
            await self._broadcast_presence(conversation)

    async def _on_send_message(self, data: Dict[str, Any]) -> None:
        payload = SendMessagePayload.model_validate(data)
        conversation = payload.resolve(self.user_id)
        # The ack reaches this connection through the engine's fan-out.
        await self.hub.engine.send(self.user_id, conversation, payload)

    async def _on_mark_read(self, data: Dict[str, Any]) -> None:
        payload = MarkReadPayload.model_validate(data)
        conversation = payload.resolve(self.user_id)
        await self.hub.engine.mark_read(self.user_id, conversation, payload.messageIds)

    async def _on_delete_message(self, data: Dict[str, Any]) -> None:
        payload = DeleteMessagePayload.model_validate(data)
        conversation = payload.resolve(self.user_id)
        await self.hub.engine.delete(
            self.user_id, conversation, payload.messageIds, payload.scope
        )

    async def _on_typing(self, data: Dict[str, Any]) -> None:
        payload = TypingPayload.model_validate(data)
        conversation = payload.resolve(self.user_id)

        if conversation.is_direct:
            targets = self.hub.registry.connections_for(conversation.peer_of(self.user_id))
        else:
            if not self.hub.rooms.is_subscribed(self.connection_id, conversation.id):
                return
            targets = self.hub.rooms.subscribers(conversation.id) - {self.connection_id}
        await self.hub.engine.push(targets, build_event(
            ServerEvent.TYPING,
            conversationId=conversation.id,
            userId=self.user_id,
            isTyping=payload.isTyping,
        ))

    async def _on_ping(self, data: Dict[str, Any]) -> None:
        await self._send(build_event(ServerEvent.PONG, ts=time.time()))


async def open_session(websocket: WebSocket, hub: MessagingHub, user_id: str) -> Optional[ConnectionSession]:
    """Accept, identify and serve one WebSocket until it disconnects."""
    await websocket.accept()
    session = ConnectionSession(websocket, hub, user_id)
    try:
        await session.identify()
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.info(f"[WS] {user_id} dropped during handshake: {e}")
        await session.close()
        return None
    await session.run()
    return session
