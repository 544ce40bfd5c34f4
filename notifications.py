from fastapi import WebSocket

from logging_config import get_logger
from presence import PresenceCounter
from schemas.events import OnlineCountUpdated, WatchPartyInvite
from transport import ConnectionManager

logger = get_logger(__name__)


class NotificationsHub:
    """Online presence and per-user notifications over one shared hub."""

    def __init__(self, transport: ConnectionManager, presence: PresenceCounter = None):
        self.transport = transport
        self.presence = presence or PresenceCounter()

    @property
    def online_count(self) -> int:
        return self.presence.count

    async def connected(self, connection_id: str, websocket: WebSocket, user_id: str = None) -> int:
        self.transport.connect(connection_id, websocket, user_id)
        count = self.presence.increment()
        logger.info(f"Notification connection {connection_id} opened (user={user_id}, online={count})")
        await self.transport.broadcast(OnlineCountUpdated(count=count))
        return count

    async def disconnected(self, connection_id: str) -> int:
        if connection_id not in self.transport.connections:
            return self.presence.count
        self.transport.disconnect(connection_id)
        count = self.presence.decrement()
        logger.info(f"Notification connection {connection_id} closed (online={count})")
        await self.transport.broadcast(OnlineCountUpdated(count=count))
        return count

    async def notify_watch_party_invite(self, invitee_id: str, invite: WatchPartyInvite) -> int:
        delivered = await self.transport.send_to_user(invitee_id, invite)
        logger.info(f"Invite to room {invite.room_id} sent to {invitee_id} ({delivered} connections)")
        return delivered
