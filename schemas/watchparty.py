from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from constants import MESSAGE_MAX_LENGTH


class CreateWatchPartyRequest(BaseModel):
    movie_id: int
    room_name: Optional[str] = Field(None, max_length=200)
    max_participants: Optional[int] = Field(None, ge=1, le=100)

class CreateWatchPartyResponse(BaseModel):
    room_id: str
    room_name: str
    movie_id: int
    host_id: str
    created_at: str
    ws_url: str

class JoinWatchPartyResponse(BaseModel):
    ws_url: str
    room_id: str
    is_host: bool

class PlaybackStateRequest(BaseModel):
    current_time: float = Field(ge=0, allow_inf_nan=False)
    is_playing: bool

class PlaybackStateResponse(BaseModel):
    room_id: str
    current_time: float
    is_playing: bool

class SendMessageRequest(BaseModel):
    message: str = Field(min_length=1, max_length=MESSAGE_MAX_LENGTH)

class InviteRequest(BaseModel):
    invitee_id: str = Field(min_length=1)

class InviteResponse(BaseModel):
    success: bool
    delivered: int

class SuccessResponse(BaseModel):
    success: bool = True

class OnlineUser(BaseModel):
    user_id: Optional[str]
    user_name: str
    joined_at: Optional[datetime]

class WatchPartyDetailsResponse(BaseModel):
    room_id: str
    room_name: Optional[str]
    movie_id: Optional[int]
    host_id: Optional[str]
    current_time: float
    position: float
    is_playing: bool
    is_live: bool
    participants: list[OnlineUser] = []
    participant_count: int
    max_participants: Optional[int]
    message_count: int
    created_at: Optional[str]

class WatchPartyMessage(BaseModel):
    user_id: Optional[str]
    user_name: Optional[str]
    message: str
    created_at: str

class PresenceResponse(BaseModel):
    online_count: int
