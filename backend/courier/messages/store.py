"""DuckDB-based message store.

This module is the persistence boundary of the messaging core. Everything
else reaches stored messages through MessageStore; the delivery engine
calls it from worker threads, so every method takes the instance lock
around the shared DuckDB connection.

Database Schema:
    messages table:
        - seq: Insertion order, the sole ordering authority for history
        - id: Message id (primary key)
        - conversation_id, kind, community_id, sender_id, recipient_id
        - content, type, media_* columns, reply_to, client_message_id
        - ts: Server timestamp (pagination cursor)
        - is_deleted / deleted_at: Tombstone
    message_reads table:
        - (message_id, user_id) primary key, read_at
    message_hidden table:
        - (message_id, user_id) primary key; "delete for me"

Usage:
    store = MessageStore(db_path="messages.duckdb")
    store.append(message)
    messages, has_more = store.list_for_conversation("community:c1", "alice")
"""
import logging
import threading
import time
from typing import Dict, Iterable, List, Optional, Tuple

import duckdb

from ..conversations import ConversationKind
from ..errors import NotFoundError
from .schemas import (
    DELETED_PLACEHOLDER,
    MediaReference,
    Message,
    MessageType,
)

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = """
    id, conversation_id, kind, community_id, sender_id, recipient_id,
    content, type, media_url, media_type, media_file_name, media_file_size,
    media_duration, reply_to, client_message_id, ts, is_deleted
"""


def _placeholders(values: List[str]) -> str:
    return ", ".join("?" for _ in values)


class MessageStore:
    """Persistent message storage on DuckDB.

    Attributes:
        _db_path: Path to the DuckDB database file (":memory:" for tests).
    """

    _db_path: str = "messages.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create the schema if it doesn't exist."""
        with self._lock:
            conn = self._get_connection()
            conn.execute("CREATE SEQUENCE IF NOT EXISTS message_seq START 1")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    seq BIGINT DEFAULT nextval('message_seq'),
                    id VARCHAR PRIMARY KEY,
                    conversation_id VARCHAR NOT NULL,
                    kind VARCHAR NOT NULL,
                    community_id VARCHAR,
                    sender_id VARCHAR NOT NULL,
                    recipient_id VARCHAR,
                    content VARCHAR NOT NULL,
                    type VARCHAR NOT NULL,
                    media_url VARCHAR,
                    media_type VARCHAR,
                    media_file_name VARCHAR,
                    media_file_size BIGINT,
                    media_duration DOUBLE,
                    reply_to VARCHAR,
                    client_message_id VARCHAR,
                    ts DOUBLE NOT NULL,
                    is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
                    deleted_at DOUBLE
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_messages_conversation
                ON messages(conversation_id)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS message_reads (
                    message_id VARCHAR NOT NULL,
                    user_id VARCHAR NOT NULL,
                    read_at DOUBLE NOT NULL,
                    PRIMARY KEY (message_id, user_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS message_hidden (
                    message_id VARCHAR NOT NULL,
                    user_id VARCHAR NOT NULL,
                    PRIMARY KEY (message_id, user_id)
                )
            """)

    # =========================================================================
    # Row mapping
    # =========================================================================

    def _read_by(self, message_ids: List[str]) -> Dict[str, List[str]]:
        if not message_ids:
            return {}
        rows = self._get_connection().execute(
            f"""
            SELECT message_id, user_id FROM message_reads
            WHERE message_id IN ({_placeholders(message_ids)})
            ORDER BY read_at, user_id
            """,
            message_ids,
        ).fetchall()
        readers: Dict[str, List[str]] = {}
        for message_id, user_id in rows:
            readers.setdefault(message_id, []).append(user_id)
        return readers

    def _to_messages(self, rows: List[tuple]) -> List[Message]:
        readers = self._read_by([row[0] for row in rows])
        messages = []
        for row in rows:
            (message_id, conversation_id, kind, community_id, sender_id, recipient_id,
             content, msg_type, media_url, media_type, media_file_name, media_file_size,
             media_duration, reply_to, client_message_id, ts, is_deleted) = row
            media = None
            if media_url:
                media = MediaReference(
                    url=media_url,
                    type=media_type,
                    fileName=media_file_name,
                    fileSize=media_file_size,
                    duration=media_duration,
                )
            messages.append(Message(
                id=message_id,
                conversationId=conversation_id,
                kind=ConversationKind(kind),
                communityId=community_id,
                senderId=sender_id,
                recipientId=recipient_id,
                content=content,
                type=MessageType(msg_type),
                media=media,
                replyTo=reply_to,
                clientMessageId=client_message_id,
                ts=ts,
                readBy=readers.get(message_id, []),
                isDeleted=bool(is_deleted),
            ))
        return messages

    def _fetch_by_ids(self, message_ids: List[str]) -> List[Message]:
        if not message_ids:
            return []
        rows = self._get_connection().execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE id IN ({_placeholders(message_ids)})
            ORDER BY seq
            """,
            message_ids,
        ).fetchall()
        return self._to_messages(rows)

    # =========================================================================
    # Writes
    # =========================================================================

    def append(self, message: Message) -> Message:
        """Persist a new message and return it as stored."""
        media = message.media
        with self._lock:
            self._get_connection().execute(
                """
                INSERT INTO messages (
                    id, conversation_id, kind, community_id, sender_id, recipient_id,
                    content, type, media_url, media_type, media_file_name,
                    media_file_size, media_duration, reply_to, client_message_id, ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    message.id,
                    message.conversationId,
                    message.kind.value,
                    message.communityId,
                    message.senderId,
                    message.recipientId,
                    message.content,
                    message.type.value,
                    media.url if media else None,
                    media.type.value if media else None,
                    media.fileName if media else None,
                    media.fileSize if media else None,
                    media.duration if media else None,
                    message.replyTo,
                    message.clientMessageId,
                    message.ts,
                ],
            )
        logger.debug(f"[Store] Appended {message.id} to {message.conversationId}")
        return message

    def mark_read(
        self,
        conversation_id: str,
        reader_id: str,
        message_ids: Optional[Iterable[str]] = None,
    ) -> List[Message]:
        """Record *reader_id* as a reader of messages in a conversation.

        Only messages that belong to the conversation, are not tombstoned,
        were not sent by the reader and are not already read by them are
        updated. ``message_ids=None`` means every such message.

        Returns:
            The newly read messages, with updated readBy.
        """
        with self._lock:
            conn = self._get_connection()
            query = """
                SELECT m.id FROM messages m
                WHERE m.conversation_id = ?
                  AND NOT m.is_deleted
                  AND m.sender_id <> ?
                  AND NOT EXISTS (
                      SELECT 1 FROM message_reads r
                      WHERE r.message_id = m.id AND r.user_id = ?
                  )
            """
            params: list = [conversation_id, reader_id, reader_id]
            if message_ids is not None:
                ids = list(dict.fromkeys(message_ids))
                if not ids:
                    return []
                query += f" AND m.id IN ({_placeholders(ids)})"
                params.extend(ids)
            query += " ORDER BY m.seq"
            newly_read = [row[0] for row in conn.execute(query, params).fetchall()]

            now = time.time()
            for message_id in newly_read:
                conn.execute(
                    "INSERT INTO message_reads (message_id, user_id, read_at) VALUES (?, ?, ?)",
                    [message_id, reader_id, now],
                )
            return self._fetch_by_ids(newly_read)

    def soft_delete(self, message_ids: List[str]) -> List[Message]:
        """Tombstone messages. Already-deleted ids are skipped.

        Returns:
            The messages tombstoned by this call.
        """
        if not message_ids:
            return []
        with self._lock:
            conn = self._get_connection()
            rows = conn.execute(
                f"""
                SELECT id FROM messages
                WHERE id IN ({_placeholders(message_ids)}) AND NOT is_deleted
                """,
                message_ids,
            ).fetchall()
            ids = [row[0] for row in rows]
            if not ids:
                return []
            conn.execute(
                f"""
                UPDATE messages
                SET is_deleted = TRUE,
                    deleted_at = ?,
                    content = ?,
                    media_url = NULL,
                    media_type = NULL,
                    media_file_name = NULL,
                    media_file_size = NULL,
                    media_duration = NULL
                WHERE id IN ({_placeholders(ids)})
                """,
                [time.time(), DELETED_PLACEHOLDER, *ids],
            )
            return self._fetch_by_ids(ids)

    def hide_for(self, user_id: str, message_ids: List[str]) -> List[str]:
        """Hide messages from one user's history ("delete for me").

        Returns:
            Ids hidden by this call.
        """
        if not message_ids:
            return []
        with self._lock:
            conn = self._get_connection()
            existing = conn.execute(
                f"""
                SELECT m.id FROM messages m
                WHERE m.id IN ({_placeholders(message_ids)})
                  AND NOT EXISTS (
                      SELECT 1 FROM message_hidden h
                      WHERE h.message_id = m.id AND h.user_id = ?
                  )
                """,
                [*message_ids, user_id],
            ).fetchall()
            hidden = [row[0] for row in existing]
            for message_id in hidden:
                conn.execute(
                    "INSERT INTO message_hidden (message_id, user_id) VALUES (?, ?)",
                    [message_id, user_id],
                )
            return hidden

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, message_id: str) -> Optional[Message]:
        with self._lock:
            messages = self._fetch_by_ids([message_id])
        return messages[0] if messages else None

    def get_many(self, message_ids: List[str]) -> List[Message]:
        """Messages by id, in insertion order. Unknown ids are skipped."""
        with self._lock:
            return self._fetch_by_ids(list(dict.fromkeys(message_ids)))

    def find_by_client_id(self, sender_id: str, client_message_id: str) -> Optional[Message]:
        """Look up a message by the sender's client-generated id."""
        with self._lock:
            rows = self._get_connection().execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE sender_id = ? AND client_message_id = ?
                ORDER BY seq
                LIMIT 1
                """,
                [sender_id, client_message_id],
            ).fetchall()
            messages = self._to_messages(rows)
        return messages[0] if messages else None

    def list_for_conversation(
        self,
        conversation_id: str,
        viewer_id: Optional[str] = None,
        before: Optional[float] = None,
        limit: int = 50,
        before_id: Optional[str] = None,
    ) -> Tuple[List[Message], bool]:
        """Get one page of history for a conversation.

        Tombstoned messages and messages hidden for the viewer are left out.

        Args:
            conversation_id: Canonical conversation id.
            viewer_id: User the page is for.
            before: Unix timestamp cursor. Returns messages older than this.
            limit: Maximum number of messages to return.
            before_id: Message id cursor. Returns messages stored before
                that message; unlike ``before`` it never skips messages
                that share a timestamp.

        Returns:
            Tuple of (messages oldest first, whether older messages exist).
        """
        query = f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages m
            WHERE m.conversation_id = ? AND NOT m.is_deleted
        """
        params: list = [conversation_id]
        if viewer_id is not None:
            query += """
              AND NOT EXISTS (
                  SELECT 1 FROM message_hidden h
                  WHERE h.message_id = m.id AND h.user_id = ?
              )
            """
            params.append(viewer_id)
        if before is not None:
            query += " AND m.ts < ?"
            params.append(before)
        if before_id is not None:
            # seq is bound once the cursor message is found below
            query += " AND m.seq < ?"
        query += f" ORDER BY m.seq DESC LIMIT {int(limit) + 1}"

        with self._lock:
            conn = self._get_connection()
            if before_id is not None:
                cursor = conn.execute(
                    "SELECT seq FROM messages WHERE id = ? AND conversation_id = ?",
                    [before_id, conversation_id],
                ).fetchone()
                if cursor is None:
                    raise NotFoundError("Message not found")
                params.append(cursor[0])
            rows = conn.execute(query, params).fetchall()
            has_more = len(rows) > limit
            messages = self._to_messages(rows[:limit])
        messages.reverse()
        return messages, has_more

    def direct_threads(self, user_id: str) -> List[Tuple[str, Message, int]]:
        """A user's direct threads, most recently active first.

        Returns:
            List of (conversation id, last visible message, unread count).
        """
        with self._lock:
            rows = self._get_connection().execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages m
                WHERE m.kind = ?
                  AND (m.sender_id = ? OR m.recipient_id = ?)
                  AND NOT m.is_deleted
                  AND NOT EXISTS (
                      SELECT 1 FROM message_hidden h
                      WHERE h.message_id = m.id AND h.user_id = ?
                  )
                ORDER BY m.seq DESC
                """,
                [ConversationKind.DIRECT.value, user_id, user_id, user_id],
            ).fetchall()
            messages = self._to_messages(rows)

        threads: Dict[str, Tuple[Message, int]] = {}
        for message in messages:
            last, unread = threads.get(message.conversationId, (message, 0))
            if message.recipientId == user_id and user_id not in message.readBy:
                unread += 1
            threads[message.conversationId] = (last, unread)
        return [(conversation_id, last, unread) for conversation_id, (last, unread) in threads.items()]

    def count(self, conversation_id: Optional[str] = None) -> int:
        """Number of stored messages, tombstones included."""
        with self._lock:
            if conversation_id is None:
                row = self._get_connection().execute("SELECT COUNT(*) FROM messages").fetchone()
            else:
                row = self._get_connection().execute(
                    "SELECT COUNT(*) FROM messages WHERE conversation_id = ?",
                    [conversation_id],
                ).fetchone()
        return row[0] if row else 0

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
