"""DuckDB-backed push outbox.

When a message reaches a recipient with no live connection and a
registered push token, the delivery engine leaves a row here. Sending the
actual push is the job of an external dispatcher that polls ``pending()``
and calls ``mark_dispatched()``.

Database Schema:
    push_outbox table:
        - id: Auto-incrementing primary key
        - user_id, push_token, platform: Where to send
        - title, body: Notification text
        - message_id, conversation_id: What it is about
        - created_at, dispatched_at
"""
import logging
import threading
import time
from typing import List, Optional

import duckdb
from pydantic import BaseModel, Field

from ..directory.schemas import PushTarget
from ..messages.schemas import Message

logger = logging.getLogger(__name__)

# Maximum characters of message text copied into a notification body
PREVIEW_LENGTH = 100


class PushNotification(BaseModel):
    id: int
    userId: str
    pushToken: str
    platform: Optional[str] = None
    title: str
    body: str
    messageId: str
    conversationId: str
    createdAt: float = Field(default_factory=time.time)
    dispatchedAt: Optional[float] = None


def notification_text(message: Message, sender_name: str, community_name: Optional[str] = None):
    """Title and body for a new-message notification."""
    body = message.content
    if len(body) > PREVIEW_LENGTH:
        body = body[:PREVIEW_LENGTH - 3] + "..."
    if community_name:
        return community_name, f"{sender_name}: {body}"
    return sender_name, body


class PushOutbox:
    """Queue of notifications waiting for an external dispatcher."""

    _db_path: str = "push_outbox.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        with self._lock:
            conn = self._get_connection()
            conn.execute("CREATE SEQUENCE IF NOT EXISTS push_outbox_id_seq START 1")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS push_outbox (
                    id INTEGER DEFAULT nextval('push_outbox_id_seq') PRIMARY KEY,
                    user_id VARCHAR NOT NULL,
                    push_token VARCHAR NOT NULL,
                    platform VARCHAR,
                    title VARCHAR NOT NULL,
                    body VARCHAR NOT NULL,
                    message_id VARCHAR NOT NULL,
                    conversation_id VARCHAR NOT NULL,
                    created_at DOUBLE NOT NULL,
                    dispatched_at DOUBLE
                )
            """)

    def enqueue(self, target: PushTarget, message: Message, title: str, body: str) -> int:
        """Queue one notification and return its id."""
        with self._lock:
            row = self._get_connection().execute(
                """
                INSERT INTO push_outbox (
                    user_id, push_token, platform, title, body,
                    message_id, conversation_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                [
                    target.userId,
                    target.pushToken,
                    target.platform.value if target.platform else None,
                    title,
                    body,
                    message.id,
                    message.conversationId,
                    time.time(),
                ],
            ).fetchone()
        logger.debug(f"[Outbox] Queued push for {target.userId} about {message.id}")
        return row[0]

    def pending(self, limit: int = 100) -> List[PushNotification]:
        """Undispatched notifications, oldest first."""
        with self._lock:
            rows = self._get_connection().execute(
                f"""
                SELECT id, user_id, push_token, platform, title, body,
                       message_id, conversation_id, created_at, dispatched_at
                FROM push_outbox
                WHERE dispatched_at IS NULL
                ORDER BY id
                LIMIT {int(limit)}
                """
            ).fetchall()
        return [
            PushNotification(
                id=row[0],
                userId=row[1],
                pushToken=row[2],
                platform=row[3],
                title=row[4],
                body=row[5],
                messageId=row[6],
                conversationId=row[7],
                createdAt=row[8],
                dispatchedAt=row[9],
            )
            for row in rows
        ]

    def mark_dispatched(self, notification_ids: List[int]) -> None:
        if not notification_ids:
            return
        placeholders = ", ".join("?" for _ in notification_ids)
        with self._lock:
            self._get_connection().execute(
                f"UPDATE push_outbox SET dispatched_at = ? WHERE id IN ({placeholders})",
                [time.time(), *notification_ids],
            )

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
