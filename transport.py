import asyncio
from typing import Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from constants import SEND_TIMEOUT_SECONDS
from logging_config import get_logger
from schemas.events import HubModel

logger = get_logger(__name__)


class ConnectionManager:
    """Connections and groups for one hub.

    Only tracks the WebSockets of this process. Sends are dispatched to every
    connection concurrently, each with its own timeout, and a failed send is
    logged and skipped; the receive loop of that connection notices the
    disconnect and cleans up.
    """

    def __init__(self, name: str, send_timeout: float = SEND_TIMEOUT_SECONDS):
        self.name = name
        self.send_timeout = send_timeout
        # Format: {connection_id: websocket}
        self.connections: Dict[str, WebSocket] = {}
        # Format: {connection_id: user_id}
        self.users: Dict[str, Optional[str]] = {}
        # Format: {group: {connection_id, ...}}
        self.groups: Dict[str, Set[str]] = {}

    def connect(self, connection_id: str, websocket: WebSocket, user_id: str = None):
        self.connections[connection_id] = websocket
        self.users[connection_id] = user_id
        logger.debug(f"[{self.name}] Connection {connection_id} registered (user={user_id}, total={len(self.connections)})")

    def disconnect(self, connection_id: str) -> List[str]:
        """Forget a connection and drop it from every group. Returns the groups it was in."""
        self.connections.pop(connection_id, None)
        self.users.pop(connection_id, None)
        left = []
        for group in list(self.groups):
            members = self.groups[group]
            if connection_id in members:
                members.discard(connection_id)
                left.append(group)
                if not members:
                    del self.groups[group]
        logger.debug(f"[{self.name}] Connection {connection_id} unregistered (total={len(self.connections)})")
        return left

    def add_to_group(self, group: str, connection_id: str):
        self.groups.setdefault(group, set()).add(connection_id)

    def remove_from_group(self, group: str, connection_id: str):
        members = self.groups.get(group)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.groups[group]

    def discard_group(self, group: str) -> Set[str]:
        return self.groups.pop(group, set())

    def group_members(self, group: str) -> Set[str]:
        return set(self.groups.get(group, ()))

    def user_connections(self, user_id: str) -> List[str]:
        return [cid for cid, uid in self.users.items() if uid is not None and uid == user_id]

    async def send(self, connection_id: str, event: HubModel) -> int:
        return await self._fan_out([connection_id], event)

    async def send_to_group(self, group: str, event: HubModel, exclude: Iterable[str] = ()) -> int:
        excluded = set(exclude)
        targets = [cid for cid in self.groups.get(group, ()) if cid not in excluded]
        return await self._fan_out(targets, event)

    async def send_to_each(self, connection_ids: Iterable[str], event: HubModel) -> int:
        return await self._fan_out(list(connection_ids), event)

    async def send_to_user(self, user_id: str, event: HubModel) -> int:
        return await self._fan_out(self.user_connections(user_id), event)

    async def broadcast(self, event: HubModel) -> int:
        return await self._fan_out(list(self.connections), event)

    async def _fan_out(self, connection_ids: List[str], event: HubModel) -> int:
        """Send one event to many connections. Returns the number of successful sends."""
        payload = event.to_json()
        send_tasks = []
        targets = []
        for conn_id in connection_ids:
            ws = self.connections.get(conn_id)
            if ws is None:
                continue
            targets.append(conn_id)
            send_tasks.append(asyncio.wait_for(ws.send_text(payload), timeout=self.send_timeout))

        if not send_tasks:
            return 0

        results = await asyncio.gather(*send_tasks, return_exceptions=True)
        delivered = 0
        for conn_id, result in zip(targets, results):
            if isinstance(result, asyncio.TimeoutError):
                logger.warning(f"[{self.name}] Timed out sending {getattr(event, 'event', 'event')} to {conn_id}")
            elif isinstance(result, Exception):
                logger.warning(f"[{self.name}] Error sending to connection {conn_id}: {result}")
            else:
                delivered += 1
        logger.debug(f"[{self.name}] Delivered {getattr(event, 'event', 'event')} to {delivered}/{len(targets)} connections")
        return delivered
