"""WebSocket event vocabulary.

Every frame is a JSON object with a ``type`` field. Client frames carry the
conversation they target as one of ``conversationId``, ``communityId`` or
``peerId``; the server resolves it against the connection's own user id.

Client -> server:
    join-room, leave-room, send-message, mark-read, delete-message,
    typing, ping

Server -> client:
    connected, joined-room, left-room, message-ack, message-new,
    message-read, message-deleted, presence, typing, pong, error
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..conversations import ConversationRef
from ..messages.schemas import DeleteScope, MessageDraft


class ClientEvent(str, Enum):
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    SEND_MESSAGE = "send-message"
    MARK_READ = "mark-read"
    DELETE_MESSAGE = "delete-message"
    TYPING = "typing"
    PING = "ping"


class ServerEvent(str, Enum):
    CONNECTED = "connected"
    JOINED_ROOM = "joined-room"
    LEFT_ROOM = "left-room"
    MESSAGE_ACK = "message-ack"
    MESSAGE_NEW = "message-new"
    MESSAGE_READ = "message-read"
    MESSAGE_DELETED = "message-deleted"
    PRESENCE = "presence"
    TYPING = "typing"
    PONG = "pong"
    ERROR = "error"


def build_event(event: ServerEvent, **data: Any) -> Dict[str, Any]:
    """Frame for a server event."""
    return {"type": event.value, **data}


class ConversationTarget(BaseModel):
    conversationId: Optional[str] = Field(None, description="Canonical conversation id")
    communityId: Optional[str] = Field(None, description="Community id")
    peerId: Optional[str] = Field(None, description="Other participant of a direct thread")

    def resolve(self, user_id: str) -> ConversationRef:
        return ConversationRef.resolve(
            user_id,
            conversation_id=self.conversationId,
            community_id=self.communityId,
            peer_id=self.peerId,
        )


class JoinRoomPayload(ConversationTarget):
    pass


class LeaveRoomPayload(ConversationTarget):
    pass


class SendMessagePayload(ConversationTarget, MessageDraft):
    pass


class MarkReadPayload(ConversationTarget):
    messageIds: Optional[List[str]] = Field(None, description="Omit to mark everything read")


class DeleteMessagePayload(ConversationTarget):
    messageIds: List[str] = Field(..., min_length=1)
    scope: DeleteScope = Field(DeleteScope.EVERYONE)


class TypingPayload(ConversationTarget):
    isTyping: bool = Field(True)
