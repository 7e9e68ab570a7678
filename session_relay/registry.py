"""
Connection Registry.

Owns the mapping from connection id to live Connection. A room is never
stored: it is the partition of this mapping by ``interview_id``, computed
on every lookup.

Thread Safety:
    All mutations and scans must run on the single event loop that owns the
    relay. Methods never await, so each call is atomic with respect to other
    coroutines on that loop. Sharing one registry across threads requires
    external locking.

Last Grunted: 10/19/2026
"""

import logging
from typing import Iterator, Optional

from .models import Connection


__all__ = ["ConnectionRegistry"]


logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """
    In-memory registry of open connections.

    Example:
        >>> registry = ConnectionRegistry()
        >>> registry.add(connection)
        >>> peers = registry.room_members("interview-1", exclude=connection.connection_id)
        >>> registry.remove(connection.connection_id)
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._connections.values()))

    def add(self, connection: Connection) -> None:
        """
        Register a newly accepted connection.

        Raises:
            ValueError: If the connection id is already registered.
        """
        if connection.connection_id in self._connections:
            raise ValueError(f"Duplicate connection id {connection.connection_id}")
        self._connections[connection.connection_id] = connection
        logger.debug(
            "Registered %s (total=%d)", connection.connection_id, len(self._connections)
        )

    def remove(self, connection_id: str) -> Optional[Connection]:
        """
        Remove a connection.

        Returns:
            The removed connection, or None if it was not registered.
        """
        removed = self._connections.pop(connection_id, None)
        if removed is not None:
            logger.debug("Unregistered %s (total=%d)", connection_id, len(self._connections))
        return removed

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def room_members(
        self, interview_id: str, exclude: Optional[str] = None
    ) -> list[Connection]:
        """
        Snapshot of the connections in one room.

        Args:
            interview_id: Room to select.
            exclude: Connection id to leave out (usually the sender).

        Returns:
            List of matching connections in registration order.
        """
        return [
            connection
            for connection_id, connection in self._connections.items()
            if connection.interview_id == interview_id and connection_id != exclude
        ]

    def rooms(self) -> dict[str, int]:
        """Return open connection counts keyed by interview id."""
        counts: dict[str, int] = {}
        for connection in self._connections.values():
            counts[connection.interview_id] = counts.get(connection.interview_id, 0) + 1
        return counts

    def idle_since(self, cutoff: float) -> list[Connection]:
        """Connections whose last activity is older than ``cutoff`` (monotonic)."""
        return [
            connection
            for connection in self._connections.values()
            if connection.last_activity < cutoff
        ]
