import redis
from datetime import datetime, timezone
from typing import List, Optional

from backend import RedisBackend
from errors import RoomNotFound, Unauthorized
from logging_config import get_logger
from membership import MembershipTracker, ParticipantConnection
from registry import RoomRegistry, RoomSnapshot
from schemas.events import (
    Error,
    Participant,
    PlaybackStateChanged,
    ReceiveMessage,
    RoomState,
    UserJoined,
    UserLeft,
    WatchPartyEnded,
)
from transport import ConnectionManager

logger = get_logger(__name__)


def room_group(room_id: str) -> str:
    return f"room:{room_id}"


class SyncRelay:
    """Bridges watch party hub calls to the room registry and fans the results out.

    Registry calls take the room lock; every send happens after the registry
    call returns, so no lock is held across network I/O.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        membership: MembershipTracker,
        transport: ConnectionManager,
        store: Optional[RedisBackend] = None,
    ):
        self.registry = registry
        self.membership = membership
        self.transport = transport
        self.store = store

    def _party(self, room_id: str) -> Optional[dict]:
        if self.store is None:
            return None
        try:
            return self.store.get_watch_party(room_id)
        except redis.RedisError as e:
            logger.warning(f"Could not read watch party record for room {room_id}: {e}")
            return None

    def participants(self, room_id: str) -> List[Participant]:
        return [
            Participant(
                connection_id=c.connection_id,
                user_id=c.user_id,
                username=c.display_name,
                joined_at=c.joined_at,
            )
            for c in self.membership.participants(room_id)
        ]

    def room_state(self, snapshot: RoomSnapshot, user_id: Optional[str] = None) -> RoomState:
        return RoomState(
            room_id=snapshot.room_id,
            host_id=snapshot.host_id,
            is_host=user_id is not None and user_id == snapshot.host_id,
            current_time=snapshot.current_time,
            position=snapshot.position,
            is_playing=snapshot.is_playing,
            participants=self.participants(snapshot.room_id),
        )

    async def on_join(self, room_id: str, connection: ParticipantConnection) -> RoomSnapshot:
        """Join a room, creating it with this identity as host if it does not exist.

        The caller gets a RoomState so it can seek to the live position; everybody
        else gets UserJoined. Raises RoomNotFound for an ended party and RoomFull
        when the party is at capacity.
        """
        party = self._party(room_id)
        if party is not None and not party.get("is_active", True):
            raise RoomNotFound(room_id, f"Watch party {room_id} has ended")

        host_id = party.get("host_id") if party else connection.user_id
        max_participants = party.get("max_participants") if party else None

        previous = self.membership.room_of(connection.connection_id)
        if previous == room_id:
            snapshot = await self.registry.snapshot(room_id)
            if snapshot is not None:
                logger.debug(f"Connection {connection.connection_id} already in room {room_id}, resending state")
                await self.transport.send(connection.connection_id, self.room_state(snapshot, connection.user_id))
                return snapshot
        elif previous is not None:
            await self.on_leave(previous, connection.connection_id)

        snapshot, created = await self.registry.join(
            room_id, host_id, connection.connection_id, connection.user_id, max_participants
        )
        self.membership.add(room_id, connection)
        group = room_group(room_id)
        self.transport.add_to_group(group, connection.connection_id)
        logger.info(
            f"User {connection.display_name} joined room {room_id} "
            f"({'created' if created else 'existing'}, host={snapshot.host_id})"
        )

        await self.transport.send(connection.connection_id, self.room_state(snapshot, connection.user_id))
        await self.transport.send_to_group(
            group,
            UserJoined(
                room_id=room_id,
                user_id=connection.user_id,
                username=connection.display_name,
                participant_count=self.membership.count(room_id),
            ),
            exclude=[connection.connection_id],
        )
        return snapshot

    async def on_leave(self, room_id: str, connection_id: str) -> bool:
        """Leave a room. Returns False when the connection was not in it."""
        was_member, removed = await self.registry.leave(room_id, connection_id)
        connection = self.membership.get(connection_id)
        if connection is not None and connection.room_id == room_id:
            self.membership.remove(connection_id)
        group = room_group(room_id)
        self.transport.remove_from_group(group, connection_id)

        if not was_member:
            logger.debug(f"Connection {connection_id} was not in room {room_id}, nothing to leave")
            return False

        display_name = connection.display_name if connection else f"User_{connection_id[:8]}"
        logger.info(f"User {display_name} left room {room_id}{' (room removed)' if removed else ''}")
        if not removed:
            await self.transport.send_to_group(
                group,
                UserLeft(
                    room_id=room_id,
                    user_id=connection.user_id if connection else None,
                    username=display_name,
                    participant_count=self.membership.count(room_id),
                ),
            )
        return True

    async def on_disconnect(self, connection_id: str) -> bool:
        room_id = self.membership.room_of(connection_id)
        if room_id is None:
            return False
        return await self.on_leave(room_id, connection_id)

    async def leave_user(self, room_id: str, user_id: str) -> int:
        """Take every connection of a user out of a room."""
        left = 0
        for connection_id in self.membership.connections_of(room_id, user_id):
            if await self.on_leave(room_id, connection_id):
                left += 1
        return left

    async def on_playback_update(
        self,
        room_id: str,
        requester_id: Optional[str],
        current_time: float,
        is_playing: bool,
        connection_id: Optional[str] = None,
    ) -> Optional[RoomSnapshot]:
        """Apply a host playback update and relay it to the rest of the room.

        `connection_id` is the sender's connection, which is skipped. Without one
        (REST callers) every connection of the requester is skipped instead.
        A missing room is a no-op returning None. Unauthorized propagates so
        the caller decides whom to tell.
        """
        try:
            snapshot = await self.registry.update_state(room_id, current_time, is_playing, requester_id)
        except RoomNotFound:
            logger.debug(f"Playback update for missing room {room_id} ignored")
            return None
        except Unauthorized:
            logger.warning(f"Rejected playback update from {requester_id} in room {room_id}: not the host")
            raise

        if connection_id is not None:
            exclude = [connection_id]
        else:
            exclude = self.membership.connections_of(room_id, requester_id)
        await self.transport.send_to_group(
            room_group(room_id),
            PlaybackStateChanged(
                room_id=room_id,
                current_time=snapshot.current_time,
                is_playing=snapshot.is_playing,
            ),
            exclude=exclude,
        )
        return snapshot

    async def on_message(self, room_id: str, connection: ParticipantConnection, text: str) -> ReceiveMessage:
        """Broadcast a chat message to the whole room, sender included."""
        event = ReceiveMessage(
            room_id=room_id,
            user_id=connection.user_id,
            username=connection.display_name,
            message=text,
            created_at=datetime.now(timezone.utc),
        )
        await self.transport.send_to_group(room_group(room_id), event)
        if self.store is not None:
            try:
                self.store.add_message(room_id, event.model_dump(mode="json", exclude={"event"}))
            except redis.RedisError as e:
                logger.warning(f"Could not store message for room {room_id}: {e}")
        return event

    async def end(self, room_id: str, requester_id: Optional[str]) -> bool:
        """Host ends the party: the room is torn down, then its members are told."""
        party = self._party(room_id)
        snapshot = await self.registry.snapshot(room_id)
        host_id = snapshot.host_id if snapshot else (party or {}).get("host_id")
        if snapshot is None and (party is None or not party.get("is_active", True)):
            raise RoomNotFound(room_id)
        if requester_id is None or requester_id != host_id:
            raise Unauthorized(room_id, f"Only the host can end watch party {room_id}")

        if party is not None:
            try:
                self.store.end_watch_party(room_id)
            except redis.RedisError as e:
                logger.warning(f"Could not mark watch party {room_id} inactive: {e}")

        # closed before the fan-out: a join from here on starts a fresh room
        await self.registry.remove(room_id)
        self.membership.drop_room(room_id)
        members = self.transport.discard_group(room_group(room_id))
        await self.transport.send_to_each(members, WatchPartyEnded(room_id=room_id))
        logger.info(f"Watch party {room_id} ended by {requester_id}")
        return True

    async def reject(self, connection_id: str, error: Exception, room_id: str = None):
        """Tell only the offending connection what went wrong."""
        code = getattr(error, "code", "BadRequest")
        await self.transport.send(connection_id, Error(code=code, message=str(error), room_id=room_id))
