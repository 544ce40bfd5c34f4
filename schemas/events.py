from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from constants import MESSAGE_MAX_LENGTH


class HubModel(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# ---------------------------------------------------------------------------
# Watch party hub, client -> server
# ---------------------------------------------------------------------------

class JoinRoom(HubModel):
    target: Literal["JoinRoom"]
    room_id: str = Field(min_length=1, max_length=64)


class LeaveRoom(HubModel):
    target: Literal["LeaveRoom"]
    room_id: str = Field(min_length=1, max_length=64)


class UpdatePlaybackState(HubModel):
    target: Literal["UpdatePlaybackState"]
    room_id: str = Field(min_length=1, max_length=64)
    current_time: float = Field(ge=0, allow_inf_nan=False)
    is_playing: bool


class SendMessage(HubModel):
    target: Literal["SendMessage"]
    room_id: str = Field(min_length=1, max_length=64)
    message: str = Field(min_length=1, max_length=MESSAGE_MAX_LENGTH)


class EndWatchParty(HubModel):
    target: Literal["EndWatchParty"]
    room_id: str = Field(min_length=1, max_length=64)


WatchPartyInbound = Annotated[
    Union[JoinRoom, LeaveRoom, UpdatePlaybackState, SendMessage, EndWatchParty],
    Field(discriminator="target"),
]
watchparty_inbound = TypeAdapter(WatchPartyInbound)


# ---------------------------------------------------------------------------
# Watch party hub, server -> client
# ---------------------------------------------------------------------------

class Participant(HubModel):
    connection_id: str
    user_id: Optional[str] = None
    username: str
    joined_at: Optional[datetime] = None


class RoomState(HubModel):
    event: Literal["RoomState"] = "RoomState"
    room_id: str
    host_id: Optional[str] = None
    is_host: bool = False
    current_time: float
    position: float
    is_playing: bool
    participants: List[Participant] = []


class UserJoined(HubModel):
    event: Literal["UserJoined"] = "UserJoined"
    room_id: str
    user_id: Optional[str] = None
    username: str
    participant_count: int


class UserLeft(HubModel):
    event: Literal["UserLeft"] = "UserLeft"
    room_id: str
    user_id: Optional[str] = None
    username: str
    participant_count: int


class PlaybackStateChanged(HubModel):
    event: Literal["PlaybackStateChanged"] = "PlaybackStateChanged"
    room_id: str
    current_time: float
    is_playing: bool


class ReceiveMessage(HubModel):
    event: Literal["ReceiveMessage"] = "ReceiveMessage"
    room_id: str
    user_id: Optional[str] = None
    username: str
    message: str
    created_at: datetime


class WatchPartyEnded(HubModel):
    event: Literal["WatchPartyEnded"] = "WatchPartyEnded"
    room_id: str


class Error(HubModel):
    event: Literal["Error"] = "Error"
    code: str
    message: str
    room_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Chat hub
# ---------------------------------------------------------------------------

class ChatJoinRoom(HubModel):
    target: Literal["JoinRoom"]
    room: str = Field(min_length=1, max_length=64)


class ChatLeaveRoom(HubModel):
    target: Literal["LeaveRoom"]
    room: str = Field(min_length=1, max_length=64)


class ChatSendMessage(HubModel):
    target: Literal["SendMessage"]
    room: str = Field(min_length=1, max_length=64)
    message: str = Field(min_length=1, max_length=MESSAGE_MAX_LENGTH)


ChatInbound = Annotated[
    Union[ChatJoinRoom, ChatLeaveRoom, ChatSendMessage],
    Field(discriminator="target"),
]
chat_inbound = TypeAdapter(ChatInbound)


class SystemMessage(HubModel):
    event: Literal["SystemMessage"] = "SystemMessage"
    room: str
    message: str


class ChatMessage(HubModel):
    event: Literal["ReceiveMessage"] = "ReceiveMessage"
    room: str
    user: str
    message: str
    created_at: datetime


# ---------------------------------------------------------------------------
# Notifications hub
# ---------------------------------------------------------------------------

class OnlineCountUpdated(HubModel):
    event: Literal["OnlineCountUpdated"] = "OnlineCountUpdated"
    count: int


class WatchPartyInvite(HubModel):
    event: Literal["WatchPartyInvite"] = "WatchPartyInvite"
    room_id: str
    room_name: str
    host_name: str
    movie_id: Optional[int] = None
