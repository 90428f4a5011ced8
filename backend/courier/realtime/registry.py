"""Connection registry.

Maps each user id to the set of live connection ids it owns (one per
device) and each connection id to its owner and transport handle. A user
is online exactly while that set is non-empty.

Thread Safety:
    Designed for a single asyncio event loop. None of the methods await,
    so each call is atomic with respect to other coroutines.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """A live transport session."""

    connection_id: str
    user_id: str
    transport: Any = None


class ConnectionRegistry:
    """In-memory user <-> connection index. Lookups never raise."""

    def __init__(self) -> None:
        self._by_user: Dict[str, Set[str]] = {}
        self._connections: Dict[str, Connection] = {}

    def register(self, user_id: str, connection_id: str, transport: Any = None) -> bool:
        """Add a live connection for *user_id*.

        Returns:
            True if this made the user online (first connection).
        """
        existing = self._connections.get(connection_id)
        if existing is not None and existing.user_id != user_id:
            # Connection ids are unique; re-registering under another user moves it.
            self.unregister(connection_id)

        self._connections[connection_id] = Connection(connection_id, user_id, transport)
        connections = self._by_user.setdefault(user_id, set())
        came_online = not connections
        connections.add(connection_id)
        logger.debug(
            f"[Registry] {user_id} registered {connection_id} "
            f"({len(connections)} live connection(s))"
        )
        return came_online

    def unregister(self, connection_id: str) -> Optional[str]:
        """Remove a connection. Unknown ids are a no-op.

        Returns:
            The owning user id, or None if the connection was not registered.
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None

        user_connections = self._by_user.get(connection.user_id)
        if user_connections is not None:
            user_connections.discard(connection_id)
            if not user_connections:
                del self._by_user[connection.user_id]
                logger.debug(f"[Registry] {connection.user_id} is now offline")
        return connection.user_id

    def connections_for(self, user_id: str) -> Set[str]:
        """Live connection ids of *user_id* (a copy; empty if unknown)."""
        return set(self._by_user.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        return bool(self._by_user.get(user_id))

    def owner_of(self, connection_id: str) -> Optional[str]:
        connection = self._connections.get(connection_id)
        return connection.user_id if connection else None

    def transport_for(self, connection_id: str) -> Any:
        connection = self._connections.get(connection_id)
        return connection.transport if connection else None

    def online_users(self) -> List[str]:
        return sorted(self._by_user)

    def connection_count(self) -> int:
        return len(self._connections)

    def clear(self) -> None:
        self._by_user.clear()
        self._connections.clear()
