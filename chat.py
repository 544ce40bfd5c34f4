from datetime import datetime, timezone

from logging_config import get_logger
from schemas.events import ChatMessage, SystemMessage
from transport import ConnectionManager

logger = get_logger(__name__)

ANONYMOUS_NAME = "User"


def chat_group(room: str) -> str:
    return f"chat:{room}"


class ChatRelay:
    """Plain group chat: no state beyond the transport's groups."""

    def __init__(self, transport: ConnectionManager):
        self.transport = transport

    async def join(self, room: str, connection_id: str, username: str = None):
        name = username or ANONYMOUS_NAME
        self.transport.add_to_group(chat_group(room), connection_id)
        logger.info(f"{name} joined chat room {room}")
        await self.transport.send_to_group(
            chat_group(room), SystemMessage(room=room, message=f"{name} joined room {room}")
        )

    async def leave(self, room: str, connection_id: str, username: str = None):
        name = username or ANONYMOUS_NAME
        group = chat_group(room)
        if connection_id not in self.transport.group_members(group):
            return
        self.transport.remove_from_group(group, connection_id)
        logger.info(f"{name} left chat room {room}")
        await self.transport.send_to_group(group, SystemMessage(room=room, message=f"{name} left room {room}"))

    async def send(self, room: str, message: str, username: str = None) -> ChatMessage:
        event = ChatMessage(
            room=room,
            user=username or ANONYMOUS_NAME,
            message=message,
            created_at=datetime.now(timezone.utc),
        )
        await self.transport.send_to_group(chat_group(room), event)
        return event

    async def disconnect(self, connection_id: str, username: str = None):
        for group in self.transport.disconnect(connection_id):
            room = group.split(":", 1)[1]
            await self.transport.send_to_group(
                group, SystemMessage(room=room, message=f"{username or ANONYMOUS_NAME} left room {room}")
            )
