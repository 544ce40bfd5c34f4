from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ParticipantConnection:
    connection_id: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    room_id: Optional[str] = None
    joined_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.username or self.user_id or f"User_{self.connection_id[:8]}"


class MembershipTracker:
    """Presence bookkeeping for watch party rooms.

    Not authoritative over playback or room lifetime; the registry is. Every
    method is synchronous so each call is atomic on the event loop.
    """

    def __init__(self):
        self._connections: Dict[str, ParticipantConnection] = {}
        self._rooms: Dict[str, Dict[str, ParticipantConnection]] = {}

    def add(self, room_id: str, connection: ParticipantConnection) -> ParticipantConnection:
        if connection.room_id and connection.room_id != room_id:
            self.remove(connection.connection_id)
        connection.room_id = room_id
        connection.joined_at = datetime.now(timezone.utc)
        self._connections[connection.connection_id] = connection
        self._rooms.setdefault(room_id, {})[connection.connection_id] = connection
        logger.debug(f"Tracking {connection.connection_id} ({connection.display_name}) in room {room_id}")
        return connection

    def remove(self, connection_id: str) -> Optional[ParticipantConnection]:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None
        room_id = connection.room_id
        members = self._rooms.get(room_id)
        if members is not None:
            members.pop(connection_id, None)
            if not members:
                del self._rooms[room_id]
        connection.room_id = None
        logger.debug(f"Stopped tracking {connection_id} in room {room_id}")
        return connection

    def drop_room(self, room_id: str) -> List[ParticipantConnection]:
        members = self._rooms.pop(room_id, {})
        for connection_id, connection in members.items():
            self._connections.pop(connection_id, None)
            connection.room_id = None
        return list(members.values())

    def get(self, connection_id: str) -> Optional[ParticipantConnection]:
        return self._connections.get(connection_id)

    def room_of(self, connection_id: str) -> Optional[str]:
        connection = self._connections.get(connection_id)
        return connection.room_id if connection else None

    def participants(self, room_id: str) -> List[ParticipantConnection]:
        return sorted(self._rooms.get(room_id, {}).values(), key=lambda c: c.joined_at)

    def connections_of(self, room_id: str, user_id: str) -> List[str]:
        return [cid for cid, c in self._rooms.get(room_id, {}).items() if c.user_id == user_id]

    def is_present(self, room_id: str, user_id: str) -> bool:
        return bool(self.connections_of(room_id, user_id))

    def count(self, room_id: str) -> int:
        """Number of distinct identities in a room (a user with two tabs counts once)."""
        members = self._rooms.get(room_id, {})
        return len({c.user_id or c.connection_id for c in members.values()})
