"""User -> live push connection mapping.

At most one connection is mapped per user. A newer authenticated connection
replaces the older one, and the older socket is closed. Lookups verify the
mapped connection is still open and drop the entry when it is not, so a
stale mapping never survives a dispatch attempt.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from backend.app.core.websocket import ConnectionManager

logger = logging.getLogger(__name__)

# Close code sent to a connection evicted by a newer one for the same user
CLOSE_CODE_REPLACED = 4001


@dataclass(slots=True)
class ConnectionRecord:
    user_id: int
    connection_id: str
    username: str | None = None
    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "connection_id": self.connection_id,
            "connected_at": self.connected_at,
            "last_activity": self.last_activity,
        }


class ConnectionRegistry:
    def __init__(self, connections: ConnectionManager):
        self._connections = connections
        self._by_user: dict[int, ConnectionRecord] = {}
        self._by_connection: dict[str, int] = {}

    async def register(self, user_id: int, connection_id: str, username: str | None = None) -> ConnectionRecord:
        """Map ``user_id`` to ``connection_id``, evicting any previous connection.

        The mapping is swapped before the old socket is closed, so a dispatch
        racing with the eviction already sees the new connection.
        """
        previous = self._by_user.get(user_id)
        record = ConnectionRecord(user_id=user_id, connection_id=connection_id, username=username)
        self._by_user[user_id] = record
        self._by_connection[connection_id] = user_id

        if previous is not None and previous.connection_id != connection_id:
            self._by_connection.pop(previous.connection_id, None)
            logger.info(
                "User %s reconnected; evicting connection %s in favour of %s",
                user_id,
                previous.connection_id,
                connection_id,
            )
            await self._connections.close(
                previous.connection_id, code=CLOSE_CODE_REPLACED, reason="replaced by a newer connection"
            )
        else:
            logger.info("User %s registered on connection %s", user_id, connection_id)
        return record

    def lookup(self, user_id: int) -> str | None:
        """Return the user's live connection id, dropping a stale entry."""
        record = self._by_user.get(user_id)
        if record is None:
            return None
        if self._connections.is_connected(record.connection_id):
            return record.connection_id

        logger.info("Connection %s for user %s is no longer open; removing mapping", record.connection_id, user_id)
        self._drop(record)
        return None

    def get(self, user_id: int) -> ConnectionRecord | None:
        return self._by_user.get(user_id)

    def user_for(self, connection_id: str) -> int | None:
        return self._by_connection.get(connection_id)

    def remove(self, user_id: int) -> bool:
        record = self._by_user.get(user_id)
        if record is None:
            return False
        self._drop(record)
        return True

    def remove_by_connection(self, connection_id: str) -> int | None:
        """Drop the mapping owned by ``connection_id``.

        A connection that was already replaced owns nothing, so this is a no-op
        for evicted sockets and never touches the newer mapping.
        """
        user_id = self._by_connection.get(connection_id)
        if user_id is None:
            return None
        record = self._by_user.get(user_id)
        if record is not None and record.connection_id == connection_id:
            self._drop(record)
        else:
            self._by_connection.pop(connection_id, None)
        return user_id

    def touch(self, connection_id: str) -> None:
        user_id = self._by_connection.get(connection_id)
        if user_id is None:
            return
        record = self._by_user.get(user_id)
        if record is not None and record.connection_id == connection_id:
            record.last_activity = time.time()

    def active_users(self) -> list[ConnectionRecord]:
        return sorted(self._by_user.values(), key=lambda r: r.user_id)

    def prune(self, idle_seconds: float | None = None) -> list[int]:
        """Remove mappings whose connection is closed or idle for too long.

        Returns the user ids that were removed.
        """
        now = time.time()
        removed = []
        for record in list(self._by_user.values()):
            stale = not self._connections.is_connected(record.connection_id)
            idle = idle_seconds is not None and now - record.last_activity > idle_seconds
            if stale or idle:
                self._drop(record)
                removed.append(record.user_id)
        if removed:
            logger.info("Pruned %s connection mapping(s): users %s", len(removed), removed)
        return removed

    def __len__(self) -> int:
        return len(self._by_user)

    def _drop(self, record: ConnectionRecord) -> None:
        self._by_user.pop(record.user_id, None)
        self._by_connection.pop(record.connection_id, None)
