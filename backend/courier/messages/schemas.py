"""Pydantic schemas for messages.

This module defines the data models shared by the WebSocket protocol, the
HTTP fallback endpoints and the DuckDB message store:
- Message: a persisted message as clients see it
- MessageDraft: what a sender submits (text and/or a media reference)
- MediaReference: opaque URL plus a type tag, produced by an upload
- MarkReadRequest / DeleteMessagesRequest: HTTP request bodies
- HistoryPage: one page of paginated history

Field names are camelCase because they go over the wire unchanged.
"""
import time
import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ..conversations import ConversationKind

# Body stored in place of the original content once a message is deleted.
DELETED_PLACEHOLDER = "This message was deleted"


class MessageType(str, Enum):
    """Type of message body."""
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"


class MessageStatus(str, Enum):
    """Delivery status shown to the sender.

    Attributes:
        SENT: Persisted, nobody has read it yet.
        DELIVERED: At least one recipient has read it.
        READ: Every recipient has read it.
    """
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class DeleteScope(str, Enum):
    """Who a deletion applies to.

    Attributes:
        ME: Hide the messages from the requester's own history only.
        EVERYONE: Tombstone the messages for all participants.
    """
    ME = "me"
    EVERYONE = "everyone"


class MediaReference(BaseModel):
    """Attachment produced by an upload, referenced by URL."""
    url: str = Field(..., min_length=1, description="Public URL or path of the stored file")
    type: MediaType = Field(..., description="Media type tag")
    fileName: Optional[str] = Field(None, description="Original file name")
    fileSize: Optional[int] = Field(None, ge=0, description="Size in bytes")
    duration: Optional[float] = Field(None, ge=0, description="Duration in seconds (audio/video)")


class MessageDraft(BaseModel):
    """An outgoing message before validation and persistence."""
    content: str = Field("", description="Message text")
    type: Optional[MessageType] = Field(None, description="Body type; inferred from media when omitted")
    media: Optional[MediaReference] = Field(None, description="Attachment reference")
    replyTo: Optional[str] = Field(None, description="Id of the message being replied to")
    clientMessageId: Optional[str] = Field(
        None, max_length=128, description="Client-generated id used to de-duplicate retries"
    )


class Message(BaseModel):
    """A persisted message.

    Attributes:
        id: Server-assigned message id.
        conversationId: Canonical conversation id (community:<id> or dm:<a>:<b>).
        kind: community or direct.
        communityId: Community id (community messages only).
        senderId: Sender's user id.
        recipientId: The other participant (direct messages only).
        content: Text body, or a placeholder for media-only messages.
        ts: Unix timestamp assigned by the server.
        readBy: User ids that have read the message, in read order.
        isDeleted: True once tombstoned.
        isRead: Direct messages only, whether the recipient has read it.
        status, readCount, totalRecipients: Receipt summary for the sender.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique message ID")
    conversationId: str = Field(..., description="Conversation this message belongs to")
    kind: ConversationKind = Field(..., description="community or direct")
    communityId: Optional[str] = Field(None, description="Community ID")
    senderId: str = Field(..., description="Sender's user ID")
    recipientId: Optional[str] = Field(None, description="Recipient user ID for direct messages")
    content: str = Field("", description="Message text")
    type: MessageType = Field(MessageType.TEXT, description="Body type")
    media: Optional[MediaReference] = Field(None, description="Attachment reference")
    replyTo: Optional[str] = Field(None, description="Id of the message replied to")
    clientMessageId: Optional[str] = Field(None, description="Client-generated retry id")
    ts: float = Field(default_factory=time.time, description="Unix timestamp")
    readBy: List[str] = Field(default_factory=list, description="Readers")
    isDeleted: bool = Field(False, description="Tombstone flag")
    isRead: Optional[bool] = Field(None, description="Read flag (direct messages)")
    status: Optional[MessageStatus] = Field(None, description="Receipt status")
    readCount: Optional[int] = Field(None, description="Number of recipients that read it")
    totalRecipients: Optional[int] = Field(None, description="Number of recipients")

    def with_receipts(self, total_recipients: int) -> "Message":
        """Copy of this message with the receipt summary filled in."""
        read_count = len([uid for uid in self.readBy if uid != self.senderId])
        update = {
            "status": message_status(read_count, total_recipients),
            "readCount": read_count,
            "totalRecipients": total_recipients,
        }
        if self.kind == ConversationKind.DIRECT:
            update["isRead"] = self.recipientId in self.readBy
        return self.model_copy(update=update)


class SendMessageRequest(MessageDraft):
    """JSON body of POST .../messages."""
    userId: Optional[str] = Field(None, description="Sender's user ID (taken from the path for direct threads)")


class MarkReadRequest(BaseModel):
    userId: Optional[str] = Field(None, description="Reader's user ID")
    messageIds: Optional[List[str]] = Field(
        None, description="Messages to mark; omit to mark every unread message"
    )


class DeleteMessagesRequest(BaseModel):
    userId: Optional[str] = Field(None, description="Requester's user ID")
    messageIds: List[str] = Field(..., min_length=1, description="Messages to delete")
    scope: DeleteScope = Field(DeleteScope.EVERYONE, description="me or everyone")


class HistoryPage(BaseModel):
    messages: List[Message]
    hasMore: bool


class DirectThreadSummary(BaseModel):
    """One entry of a user's direct conversation list."""
    conversationId: str
    peerId: str
    lastMessage: Message
    unreadCount: int


def message_status(read_count: int, total_recipients: int) -> MessageStatus:
    """Receipt status from how many of the recipients have read a message."""
    if total_recipients > 0 and read_count >= total_recipients:
        return MessageStatus.READ
    if read_count > 0:
        return MessageStatus.DELIVERED
    return MessageStatus.SENT


def media_placeholder(media: MediaReference) -> str:
    """Body text for a message that carries only an attachment."""
    if media.type == MediaType.IMAGE:
        return "Photo"
    if media.type == MediaType.VIDEO:
        return "Video"
    if media.type == MediaType.AUDIO:
        return "Voice message"
    return media.fileName or "File"
