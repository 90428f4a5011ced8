"""Room manager.

A room is the live-subscription set for one conversation id. Membership
lives only as long as the connection that joined, and is kept indexed both
ways so a disconnect can drop every membership of a connection without
scanning all rooms.

Rooms enforce no access control; callers authorize joins beforehand.
"""
import logging
from typing import Dict, Set

logger = logging.getLogger(__name__)


class RoomManager:
    """Conversation id <-> connection id subscriptions."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[str]] = {}
        self._rooms_by_connection: Dict[str, Set[str]] = {}

    def join(self, connection_id: str, conversation_id: str) -> bool:
        """Subscribe a connection to a room. Joining twice is a no-op.

        Returns:
            True if the membership is new.
        """
        subscribers = self._subscribers.setdefault(conversation_id, set())
        if connection_id in subscribers:
            return False
        subscribers.add(connection_id)
        self._rooms_by_connection.setdefault(connection_id, set()).add(conversation_id)
        logger.debug(f"[Rooms] {connection_id} joined {conversation_id}")
        return True

    def leave(self, connection_id: str, conversation_id: str) -> bool:
        """Unsubscribe a connection from one room.

        Returns:
            True if the connection was subscribed.
        """
        subscribers = self._subscribers.get(conversation_id)
        if not subscribers or connection_id not in subscribers:
            return False

        subscribers.discard(connection_id)
        if not subscribers:
            del self._subscribers[conversation_id]

        rooms = self._rooms_by_connection.get(connection_id)
        if rooms is not None:
            rooms.discard(conversation_id)
            if not rooms:
                del self._rooms_by_connection[connection_id]
        return True

    def leave_all(self, connection_id: str) -> Set[str]:
        """Drop every membership of a connection (called once on disconnect).

        Returns:
            The conversation ids the connection was subscribed to.
        """
        rooms = self._rooms_by_connection.pop(connection_id, set())
        for conversation_id in rooms:
            subscribers = self._subscribers.get(conversation_id)
            if subscribers is None:
                continue
            subscribers.discard(connection_id)
            if not subscribers:
                del self._subscribers[conversation_id]
        if rooms:
            logger.debug(f"[Rooms] {connection_id} left {len(rooms)} room(s)")
        return rooms

    def subscribers(self, conversation_id: str) -> Set[str]:
        """Connection ids currently subscribed to a room (a copy)."""
        return set(self._subscribers.get(conversation_id, ()))

    def rooms_for(self, connection_id: str) -> Set[str]:
        return set(self._rooms_by_connection.get(connection_id, ()))

    def is_subscribed(self, connection_id: str, conversation_id: str) -> bool:
        return connection_id in self._subscribers.get(conversation_id, ())

    def room_count(self) -> int:
        return len(self._subscribers)

    def clear(self) -> None:
        self._subscribers.clear()
        self._rooms_by_connection.clear()
