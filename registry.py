import asyncio
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from errors import InvalidPlaybackState, RoomFull, RoomNotFound, Unauthorized
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RoomSnapshot:
    """Immutable copy of a room's state, safe to hand out after the lock is released."""

    room_id: str
    host_id: Optional[str]
    current_time: float
    is_playing: bool
    position: float
    participant_count: int
    created_at: datetime


@dataclass(eq=False)
class Room:
    room_id: str
    host_id: Optional[str]
    current_time: float = 0.0
    is_playing: bool = False
    updated_at: float = field(default_factory=time.monotonic)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # connection id -> user id
    participants: Dict[str, Optional[str]] = field(default_factory=dict)
    # monotonic time the room last became empty, None while occupied
    empty_since: Optional[float] = field(default_factory=time.monotonic)
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def live_position(self, now: float = None) -> float:
        if not self.is_playing:
            return self.current_time
        now = time.monotonic() if now is None else now
        return self.current_time + max(0.0, now - self.updated_at)

    def identity_count(self) -> int:
        return len({uid if uid is not None else cid for cid, uid in self.participants.items()})

    def snapshot(self, now: float = None) -> RoomSnapshot:
        return RoomSnapshot(
            room_id=self.room_id,
            host_id=self.host_id,
            current_time=self.current_time,
            is_playing=self.is_playing,
            position=self.live_position(now),
            participant_count=len(self.participants),
            created_at=self.created_at,
        )


class RoomRegistry:
    """In-memory table of live rooms.

    Each room's fields are guarded by `room.lock`. `self._lock` only guards the
    table itself and is always taken after (never around) a room lock.
    """

    def __init__(self):
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()

    def __len__(self):
        return len(self._rooms)

    def __contains__(self, room_id: str):
        return room_id in self._rooms

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def room_ids(self) -> List[str]:
        return list(self._rooms)

    async def get_or_create(self, room_id: str, host_id: Optional[str]) -> Room:
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                room = Room(room_id=room_id, host_id=host_id)
                self._rooms[room_id] = room
                logger.info(f"Created room {room_id} with host {host_id}")
            return room

    async def snapshot(self, room_id: str) -> Optional[RoomSnapshot]:
        room = self._rooms.get(room_id)
        if room is None:
            return None
        async with room.lock:
            if room.closed:
                return None
            return room.snapshot()

    async def join(
        self,
        room_id: str,
        host_id: Optional[str],
        connection_id: str,
        user_id: Optional[str],
        max_participants: int = None,
    ) -> Tuple[RoomSnapshot, bool]:
        """Add a connection to a room, creating the room if needed.

        Returns the snapshot taken after the join and whether the room was created.
        Raises RoomFull when a new identity would exceed `max_participants`.
        """
        while True:
            async with self._lock:
                room = self._rooms.get(room_id)
                created = room is None
                if created:
                    room = Room(room_id=room_id, host_id=host_id)
                    self._rooms[room_id] = room
                    logger.info(f"Created room {room_id} with host {host_id}")

            async with room.lock:
                if room.closed:
                    # lost a race with the last leave, start over with a fresh room
                    logger.debug(f"Room {room_id} closed while joining, retrying")
                    continue

                already_present = user_id is not None and user_id in room.participants.values()
                if max_participants and not already_present and room.identity_count() >= max_participants:
                    raise RoomFull(room_id, f"Room {room_id} is full ({max_participants} participants)")

                room.participants[connection_id] = user_id
                room.empty_since = None
                logger.debug(f"Connection {connection_id} joined room {room_id} ({len(room.participants)} connections)")
                return room.snapshot(), created

    async def leave(self, room_id: str, connection_id: str) -> Tuple[bool, bool]:
        """Remove a connection from a room.

        Returns (was_member, room_removed). Leaving an unknown room is a no-op.
        """
        room = self._rooms.get(room_id)
        if room is None:
            return False, False

        async with room.lock:
            if room.closed or connection_id not in room.participants:
                return False, False
            del room.participants[connection_id]
            if room.participants:
                return True, False
            room.closed = True
            async with self._lock:
                if self._rooms.get(room_id) is room:
                    del self._rooms[room_id]
        logger.info(f"Last participant left room {room_id}, room removed")
        return True, True

    async def update_state(
        self, room_id: str, current_time: float, is_playing: bool, requester_id: Optional[str]
    ) -> RoomSnapshot:
        try:
            current_time = float(current_time)
        except (TypeError, ValueError):
            raise InvalidPlaybackState(room_id, f"Invalid current time: {current_time!r}")
        if not math.isfinite(current_time) or current_time < 0:
            raise InvalidPlaybackState(room_id, f"Invalid current time: {current_time!r}")

        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFound(room_id)

        async with room.lock:
            if room.closed:
                raise RoomNotFound(room_id)
            if requester_id is None or requester_id != room.host_id:
                raise Unauthorized(room_id, f"Only the host can update playback in room {room_id}")
            room.current_time = current_time
            room.is_playing = bool(is_playing)
            room.updated_at = time.monotonic()
            logger.debug(f"Room {room_id} playback: time={current_time} playing={room.is_playing}")
            return room.snapshot(room.updated_at)

    async def remove(self, room_id: str) -> bool:
        room = self._rooms.get(room_id)
        if room is None:
            return False
        async with room.lock:
            if room.closed:
                return False
            room.closed = True
            async with self._lock:
                if self._rooms.get(room_id) is room:
                    del self._rooms[room_id]
        logger.info(f"Room {room_id} removed")
        return True

    async def sweep_idle(self, max_idle_seconds: float, now: float = None) -> List[str]:
        """Remove rooms that have been empty for longer than `max_idle_seconds`."""
        now = time.monotonic() if now is None else now
        removed = []
        for room_id in self.room_ids():
            room = self._rooms.get(room_id)
            if room is None:
                continue
            async with room.lock:
                if room.closed or room.participants or room.empty_since is None:
                    continue
                if now - room.empty_since < max_idle_seconds:
                    continue
                room.closed = True
                async with self._lock:
                    if self._rooms.get(room_id) is room:
                        del self._rooms[room_id]
            removed.append(room_id)
        if removed:
            logger.info(f"Swept {len(removed)} idle rooms: {removed}")
        return removed
