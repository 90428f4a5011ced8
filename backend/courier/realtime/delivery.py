"""Delivery engine shared by the WebSocket protocol and the HTTP fallback.

Both transports hand outgoing messages, read receipts and deletions to the
same DeliveryEngine, so a client that retries over HTTP after a failed
live send gets exactly the same validation, persistence and fan-out.

Send pipeline:
    validate -> authorize -> de-duplicate -> persist -> fan out -> defer

Fan-out pushes ``message-ack`` to every live connection of the sender and
``message-new`` to every live connection of each recipient:
    - direct thread: all connections of the peer (room membership not needed)
    - community: only connections subscribed to the community room
Recipients that got no live push and have a push token get a row in the
push outbox. Nothing is retried server-side.

Performance Notes:
    - Store and directory calls run in worker threads, bounded by
      ``persistence_timeout_seconds``
    - Pushes use asyncio.gather(); a failed send to one connection never
      affects the others
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from ..config import MessagingSettings
from ..conversations import ConversationRef, validate_id
from ..directory.service import DirectoryService
from ..errors import (
    AuthorizationError,
    MessagingError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from ..messages.schemas import (
    DeleteScope,
    DirectThreadSummary,
    HistoryPage,
    Message,
    MessageDraft,
    MessageType,
    media_placeholder,
)
from ..messages.store import MessageStore
from ..notifications.outbox import PushOutbox, notification_text
from .events import ServerEvent, build_event
from .registry import ConnectionRegistry
from .rooms import RoomManager

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReceipt:
    """Outcome of a send.

    Attributes:
        message: The persisted message, with receipt summary.
        delivered_to: Recipients that got at least one live push.
        notified: Recipients queued for a push notification.
        duplicate: True if the clientMessageId had already been stored.
    """
    message: Message
    delivered_to: List[str] = field(default_factory=list)
    notified: List[str] = field(default_factory=list)
    duplicate: bool = False


class DeliveryEngine:
    """Validate, persist and fan out messages for both transports."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        rooms: RoomManager,
        store: MessageStore,
        directory: DirectoryService,
        outbox: Optional[PushOutbox] = None,
        settings: Optional[MessagingSettings] = None,
    ) -> None:
        self.registry = registry
        self.rooms = rooms
        self.store = store
        self.directory = directory
        self.outbox = outbox
        self.settings = settings or MessagingSettings()

    # =========================================================================
    # Blocking calls
    # =========================================================================

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking store/directory call off the event loop, with a timeout."""
        timeout = self.settings.persistence_timeout_seconds
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args),
                timeout=timeout if timeout > 0 else None,
            )
        except MessagingError:
            raise
        except asyncio.TimeoutError:
            logger.error(f"[Delivery] {fn.__name__} timed out after {timeout}s")
            raise PersistenceError("Message store timed out")
        except Exception as e:
            logger.error(f"[Delivery] {fn.__name__} failed: {e}")
            raise PersistenceError("Message store unavailable") from e

    # =========================================================================
    # Authorization
    # =========================================================================

    async def _require_user(self, user_id: str) -> None:
        validate_id(user_id, "userId")
        if not await self._call(self.directory.user_exists, user_id):
            raise NotFoundError("User not found")

    async def authorize(self, user_id: str, conversation: ConversationRef) -> None:
        """Check that *user_id* may act on *conversation*.

        Raises:
            NotFoundError: If the user, peer or community does not exist.
            AuthorizationError: If the user is not a participant/member.
        """
        await self._require_user(user_id)
        if conversation.is_direct:
            if not conversation.includes(user_id):
                raise AuthorizationError(f"{user_id} is not part of {conversation.id}")
            await self._require_user(conversation.peer_of(user_id))
            return

        if not await self._call(self.directory.community_exists, conversation.community_id):
            raise NotFoundError("Community not found")
        if self.settings.enforce_community_membership:
            is_member = await self._call(
                self.directory.is_member, conversation.community_id, user_id
            )
            if not is_member:
                raise AuthorizationError(
                    f"{user_id} is not a member of {conversation.community_id}"
                )

    async def _participants(self, conversation: ConversationRef) -> List[str]:
        """Both users of a direct thread, or every member of a community."""
        if conversation.is_direct:
            return list(conversation.participants)
        return await self._call(self.directory.members, conversation.community_id)

    async def _recipients(self, sender_id: str, conversation: ConversationRef) -> List[str]:
        """Everyone who should eventually see a message from *sender_id*."""
        return [uid for uid in await self._participants(conversation) if uid != sender_id]

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def push(self, connection_ids: Iterable[str], event: Dict[str, Any]) -> Set[str]:
        """Send one event to many connections concurrently.

        Returns:
            The connection ids the event was written to.
        """
        connection_ids = list(connection_ids)
        if not connection_ids:
            return set()

        results = await asyncio.gather(
            *[self._safe_send(cid, event) for cid in connection_ids],
            return_exceptions=True,
        )
        return {cid for cid, ok in zip(connection_ids, results) if ok is True}

    async def _safe_send(self, connection_id: str, event: Dict[str, Any]) -> bool:
        transport = self.registry.transport_for(connection_id)
        if transport is None:
            return False
        try:
            await transport.send_json(event)
            return True
        except Exception as e:
            # The connection's own receive loop notices the drop and cleans up.
            logger.debug(f"[Delivery] Failed to send to {connection_id}: {e}")
            return False

    def _live_targets(
        self, sender_id: str, conversation: ConversationRef, recipients: List[str]
    ) -> Dict[str, Set[str]]:
        """Live connection ids per recipient."""
        if conversation.is_direct:
            return {uid: self.registry.connections_for(uid) for uid in recipients}

        wanted = set(recipients)
        targets: Dict[str, Set[str]] = {}
        for cid in self.rooms.subscribers(conversation.id):
            owner = self.registry.owner_of(cid)
            if owner is None or owner == sender_id:
                continue
            if self.settings.enforce_community_membership and owner not in wanted:
                continue
            targets.setdefault(owner, set()).add(cid)
        return targets

    # =========================================================================
    # Send
    # =========================================================================

    def build_message(
        self, sender_id: str, conversation: ConversationRef, draft: MessageDraft
    ) -> Message:
        """Validate a draft and turn it into an unsaved Message.

        Raises:
            ValidationError: Empty or oversized payload, or a media type
                without a media reference.
        """
        validate_id(sender_id, "userId")
        content = (draft.content or "").strip()
        media = draft.media

        if not content and media is None:
            raise ValidationError("Message must contain text or media")
        max_length = self.settings.max_content_length
        if len(content) > max_length:
            raise ValidationError(f"Message exceeds {max_length} characters")

        msg_type = draft.type or (MessageType(media.type.value) if media else MessageType.TEXT)
        if msg_type != MessageType.TEXT and media is None:
            raise ValidationError(f"A media reference is required for {msg_type.value} messages")
        if not content:
            content = media_placeholder(media)

        return Message(
            conversationId=conversation.id,
            kind=conversation.kind,
            communityId=conversation.community_id,
            senderId=sender_id,
            recipientId=conversation.peer_of(sender_id) if conversation.is_direct else None,
            content=content,
            type=msg_type,
            media=media,
            replyTo=draft.replyTo,
            clientMessageId=draft.clientMessageId,
        )

    async def send(
        self,
        sender_id: str,
        conversation: ConversationRef,
        draft: MessageDraft,
    ) -> DeliveryReceipt:
        """Validate, persist and fan out one message.

        Raises:
            ValidationError, NotFoundError, AuthorizationError: Nothing stored.
            PersistenceError: Store failed or timed out; nothing pushed.
        """
        message = self.build_message(sender_id, conversation, draft)
        await self.authorize(sender_id, conversation)
        recipients = await self._recipients(sender_id, conversation)

        if draft.clientMessageId:
            existing = await self._call(
                self.store.find_by_client_id, sender_id, draft.clientMessageId
            )
            if existing is not None and existing.conversationId == conversation.id:
                logger.info(
                    f"[Delivery] Duplicate clientMessageId {draft.clientMessageId} "
                    f"from {sender_id}; re-acking {existing.id}"
                )
                presented = existing.with_receipts(len(recipients))
                await self.push(
                    self.registry.connections_for(sender_id),
                    build_event(
                        ServerEvent.MESSAGE_ACK,
                        clientMessageId=draft.clientMessageId,
                        message=presented.model_dump(mode="json"),
                    ),
                )
                return DeliveryReceipt(message=presented, duplicate=True)

        stored = await self._call(self.store.append, message)
        presented = stored.with_receipts(len(recipients))
        payload = presented.model_dump(mode="json")

        targets = self._live_targets(sender_id, conversation, recipients)
        recipient_connections = {cid for cids in targets.values() for cid in cids}
        ack, delivered = await asyncio.gather(
            self.push(
                self.registry.connections_for(sender_id),
                build_event(
                    ServerEvent.MESSAGE_ACK,
                    clientMessageId=draft.clientMessageId,
                    message=payload,
                ),
            ),
            self.push(recipient_connections, build_event(ServerEvent.MESSAGE_NEW, message=payload)),
        )
        delivered_to = sorted(
            uid for uid, cids in targets.items() if cids & delivered
        )
        logger.info(
            f"[Delivery] {stored.id} in {conversation.id}: acked on {len(ack)} connection(s), "
            f"pushed to {len(delivered_to)}/{len(recipients)} recipient(s)"
        )

        offline = [uid for uid in recipients if uid not in delivered_to]
        notified = await self._defer_to_notifications(stored, conversation, offline)
        return DeliveryReceipt(
            message=presented,
            delivered_to=delivered_to,
            notified=notified,
        )

    async def _defer_to_notifications(
        self, message: Message, conversation: ConversationRef, user_ids: List[str]
    ) -> List[str]:
        """Queue push notifications; failures are logged and never raised."""
        if self.outbox is None or not user_ids:
            return []

        notified: List[str] = []
        try:
            sender = await self._call(self.directory.get_user, message.senderId)
            sender_name = (sender.username if sender else None) or message.senderId
            community_name = None
            if not conversation.is_direct:
                community = await self._call(
                    self.directory.get_community, conversation.community_id
                )
                community_name = community.name if community else None
            title, body = notification_text(message, sender_name, community_name)

            for user_id in user_ids:
                target = await self._call(self.directory.get_push_target, user_id)
                if target is None:
                    continue
                await self._call(self.outbox.enqueue, target, message, title, body)
                notified.append(user_id)
        except Exception as e:
            logger.warning(f"[Delivery] Could not queue notifications for {message.id}: {e}")
        return notified

    # =========================================================================
    # Read receipts
    # =========================================================================

    async def mark_read(
        self,
        user_id: str,
        conversation: ConversationRef,
        message_ids: Optional[List[str]] = None,
    ) -> List[Message]:
        """Mark messages read by *user_id* and notify their senders.

        Messages already read, deleted, or sent by the reader are skipped,
        so repeating a call emits nothing. ``message_ids=None`` marks every
        unread message in the conversation.

        Returns:
            The messages newly read by this call.
        """
        await self.authorize(user_id, conversation)
        newly_read: List[Message] = await self._call(
            self.store.mark_read, conversation.id, user_id, message_ids
        )
        if not newly_read:
            return []

        by_sender: Dict[str, List[Message]] = {}
        for message in newly_read:
            by_sender.setdefault(message.senderId, []).append(message)

        participants = await self._participants(conversation)

        read_at = time.time()
        sends = []
        for sender_id, messages in by_sender.items():
            total = len([uid for uid in participants if uid != sender_id])
            receipts = [m.with_receipts(total) for m in messages]
            sends.append(self.push(
                self.registry.connections_for(sender_id),
                build_event(
                    ServerEvent.MESSAGE_READ,
                    conversationId=conversation.id,
                    readerId=user_id,
                    readAt=read_at,
                    messageIds=[m.id for m in receipts],
                    receipts=[
                        {
                            "messageId": m.id,
                            "readBy": m.readBy,
                            "status": m.status.value,
                            "readCount": m.readCount,
                            "totalRecipients": m.totalRecipients,
                        }
                        for m in receipts
                    ],
                ),
            ))
        await asyncio.gather(*sends)
        logger.info(
            f"[Delivery] {user_id} read {len(newly_read)} message(s) in {conversation.id}"
        )
        return newly_read

    # =========================================================================
    # Deletion
    # =========================================================================

    async def delete(
        self,
        requester_id: str,
        conversation: ConversationRef,
        message_ids: List[str],
        scope: DeleteScope = DeleteScope.EVERYONE,
    ) -> List[str]:
        """Delete messages for everyone (tombstone) or hide them for the requester.

        Deleting for everyone is allowed for the sender of a message and for
        community owners/admins. Messages the requester may not delete are
        skipped.

        Returns:
            Ids affected by this call.

        Raises:
            NotFoundError: None of the ids belong to the conversation.
            AuthorizationError: None of the messages may be deleted by the requester.
        """
        if not message_ids:
            raise ValidationError("messageIds is required")
        await self.authorize(requester_id, conversation)

        messages = [
            m for m in await self._call(self.store.get_many, message_ids)
            if m.conversationId == conversation.id
        ]
        if not messages:
            raise NotFoundError("Message not found")

        if scope == DeleteScope.ME:
            hidden = await self._call(
                self.store.hide_for, requester_id, [m.id for m in messages]
            )
            if hidden:
                await self.push(
                    self.registry.connections_for(requester_id),
                    build_event(
                        ServerEvent.MESSAGE_DELETED,
                        conversationId=conversation.id,
                        messageIds=hidden,
                        scope=DeleteScope.ME.value,
                        deletedBy=requester_id,
                    ),
                )
            return hidden

        is_admin = False
        if not conversation.is_direct:
            is_admin = await self._call(
                self.directory.is_admin, conversation.community_id, requester_id
            )
        allowed = [m.id for m in messages if is_admin or m.senderId == requester_id]
        if not allowed:
            raise AuthorizationError(
                f"{requester_id} may not delete messages in {conversation.id}"
            )

        deleted = [m.id for m in await self._call(self.store.soft_delete, allowed)]
        if not deleted:
            return []

        if conversation.is_direct:
            audience: Set[str] = set()
            for uid in conversation.participants:
                audience |= self.registry.connections_for(uid)
        else:
            audience = self.rooms.subscribers(conversation.id)
            audience |= self.registry.connections_for(requester_id)
        await self.push(
            audience,
            build_event(
                ServerEvent.MESSAGE_DELETED,
                conversationId=conversation.id,
                messageIds=deleted,
                scope=DeleteScope.EVERYONE.value,
                deletedBy=requester_id,
            ),
        )
        logger.info(f"[Delivery] {requester_id} deleted {len(deleted)} message(s) in {conversation.id}")
        return deleted

    # =========================================================================
    # History
    # =========================================================================

    async def history(
        self,
        viewer_id: str,
        conversation: ConversationRef,
        before: Optional[float] = None,
        limit: Optional[int] = None,
        before_id: Optional[str] = None,
    ) -> HistoryPage:
        """One page of history, oldest first, as seen by *viewer_id*.

        Pass the id of the oldest message already held as *before_id* to
        page back without gaps; *before* filters by timestamp only.
        """
        await self.authorize(viewer_id, conversation)
        if limit is None:
            limit = self.settings.default_page_size
        limit = max(1, min(limit, self.settings.max_page_size))

        messages, has_more = await self._call(
            self.store.list_for_conversation,
            conversation.id,
            viewer_id,
            before,
            limit,
            before_id,
        )

        participants = await self._participants(conversation)
        presented = [
            m.with_receipts(len([uid for uid in participants if uid != m.senderId]))
            for m in messages
        ]
        return HistoryPage(messages=presented, hasMore=has_more)

    async def direct_threads(self, user_id: str) -> List[DirectThreadSummary]:
        """The user's direct conversation list with last message and unread count."""
        await self._require_user(user_id)
        threads = await self._call(self.store.direct_threads, user_id)
        return [
            DirectThreadSummary(
                conversationId=conversation_id,
                peerId=ConversationRef.parse(conversation_id).peer_of(user_id),
                lastMessage=last.with_receipts(1),
                unreadCount=unread,
            )
            for conversation_id, last, unread in threads
        ]
