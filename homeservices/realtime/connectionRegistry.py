import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Set, Protocol

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """The part of ``fastapi.WebSocket`` the registry uses."""

    async def send_json(self, data: Any, mode: str = "text") -> None: ...

    async def close(self, code: int = 1000, reason: str = None) -> None: ...


def user_room(user_id) -> str:
    return f"user_{user_id}"


def booking_room(booking_id) -> str:
    return f"booking_{booking_id}"


class ConnectionRegistry:
    """
    In-process registry of live connections and room memberships.

    One instance per application, created in the lifespan and closed on shutdown.
    Delivery is best effort: a socket that fails to receive is dropped.
    """

    def __init__(self):
        self._user_connections: Dict[str, Set[Connection]] = defaultdict(set)
        self._rooms: Dict[str, Set[Connection]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self._closed = False

    async def connect(self, user_id, connection: Connection) -> None:
        if self._closed:
            raise RuntimeError("Connection registry is closed")
        async with self._lock:
            self._user_connections[str(user_id)].add(connection)
            self._rooms[user_room(user_id)].add(connection)
        logger.info(f"User {user_id} connected ({len(self._user_connections[str(user_id)])} open connections)")

    async def disconnect(self, user_id, connection: Connection) -> None:
        async with self._lock:
            self._discard(str(user_id), connection)
        logger.info(f"User {user_id} disconnected")

    async def join(self, room: str, connection: Connection) -> None:
        async with self._lock:
            self._rooms[room].add(connection)

    async def leave(self, room: str, connection: Connection) -> None:
        async with self._lock:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection)
                if not members:
                    del self._rooms[room]

    def is_online(self, user_id) -> bool:
        return bool(self._user_connections.get(str(user_id)))

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    async def broadcast(self, room: str, event: str, payload: Dict[str, Any]) -> int:
        """Send ``event`` to every member of ``room``. Returns how many sockets received it."""
        members = list(self._rooms.get(room, ()))
        delivered = 0
        dead = []
        for connection in members:
            try:
                await connection.send_json({"event": event, "data": payload})
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping connection in {room} after failed send of {event}: {e}")
                dead.append(connection)

        if dead:
            async with self._lock:
                for connection in dead:
                    self._discard(None, connection)
        return delivered

    async def close(self) -> None:
        self._closed = True
        async with self._lock:
            connections = {c for members in self._user_connections.values() for c in members}
            self._user_connections.clear()
            self._rooms.clear()

        for connection in connections:
            try:
                await connection.close(code=1001)
            except Exception as e:
                logger.debug(f"Ignoring error while closing connection: {e}")
        logger.info(f"Connection registry closed ({len(connections)} connections)")

    def _discard(self, user_id, connection: Connection) -> None:
        user_ids = [user_id] if user_id is not None else list(self._user_connections)
        for uid in user_ids:
            connections = self._user_connections.get(uid)
            if connections is not None:
                connections.discard(connection)
                if not connections:
                    del self._user_connections[uid]
        for room in list(self._rooms):
            self._rooms[room].discard(connection)
            if not self._rooms[room]:
                del self._rooms[room]
