from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from schemas.watchparty import (
    CreateWatchPartyRequest, CreateWatchPartyResponse, JoinWatchPartyResponse, PlaybackStateRequest,
    PlaybackStateResponse, SendMessageRequest, InviteRequest, InviteResponse, SuccessResponse,
    OnlineUser, WatchPartyDetailsResponse, WatchPartyMessage,
)
from schemas.events import WatchPartyInvite
from backend import redis_backend
from constants import DEFAULT_MAX_PARTICIPANTS, DEFAULT_ROOM_NAME, INVITE_TTL_SECONDS
from errors import RoomNotFound, Unauthorized
from membership import ParticipantConnection
import uuid
from datetime import datetime, timezone
from typing import Optional
from dataclasses import dataclass
from logging_config import get_logger

logger = get_logger(__name__)

watchparty_router = APIRouter(prefix="/api/v2/watchparty", tags=["watchparty"])


@dataclass
class Identity:
    user_id: str
    username: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.username or self.user_id


def current_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
) -> Identity:
    # Identity is established upstream; these headers carry the authenticated user.
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return Identity(user_id=x_user_id.strip(), username=x_user_name.strip() if x_user_name else None)


def generate_room_id() -> str:
    return uuid.uuid4().hex[:8].upper()


def hub_url(request: Request) -> str:
    # Construct WebSocket URL using request's base URL
    base_url = str(request.base_url).rstrip('/')
    ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_base}/hubs/watchparty"


def load_room(request: Request, room_id: str):
    """Return (party record or None, live snapshot or None); 404 when neither exists."""
    party = redis_backend.get_active_watch_party(room_id)
    room = request.app.state.registry.get(room_id)
    if party is None and room is None:
        logger.warning(f"Watch party {room_id} not found")
        raise HTTPException(status_code=404, detail="Watch party not found")
    return party, room


@watchparty_router.post("/create", response_model=CreateWatchPartyResponse)
async def create_watch_party(body: CreateWatchPartyRequest, request: Request, identity: Identity = Depends(current_identity)):
    logger.info(f"Watch party creation request from {identity.user_id}, movie: {body.movie_id}")
    room_id = generate_room_id()
    room_name = body.room_name or DEFAULT_ROOM_NAME
    max_participants = body.max_participants or DEFAULT_MAX_PARTICIPANTS
    created_at = datetime.now(timezone.utc).isoformat()

    try:
        redis_backend.create_watch_party(room_id, {
            "room_name": room_name,
            "movie_id": body.movie_id,
            "host_id": identity.user_id,
            "host_name": identity.display_name,
            "max_participants": max_participants,
            "is_active": True,
            "created_at": created_at,
        })
    except Exception as e:
        logger.error(f"Error creating watch party: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create watch party")

    await request.app.state.registry.get_or_create(room_id, identity.user_id)
    logger.info(f"Watch party {room_id} created by {identity.user_id}: name={room_name}, max_participants={max_participants}")

    return CreateWatchPartyResponse(
        room_id=room_id,
        room_name=room_name,
        movie_id=body.movie_id,
        host_id=identity.user_id,
        created_at=created_at,
        ws_url=hub_url(request),
    )


@watchparty_router.post("/{room_id}/join", response_model=JoinWatchPartyResponse)
async def join_watch_party(room_id: str, request: Request, identity: Identity = Depends(current_identity)):
    # Participants actually join over the hub; this validates access and returns where to connect.
    logger.info(f"Join request for watch party {room_id} from {identity.user_id}")
    party, room = load_room(request, room_id)
    membership = request.app.state.membership

    max_participants = (party or {}).get("max_participants")
    current_count = membership.count(room_id)
    if max_participants and current_count >= max_participants and not membership.is_present(room_id, identity.user_id):
        logger.warning(f"Join failed: watch party {room_id} is full ({current_count}/{max_participants})")
        raise HTTPException(status_code=403, detail="Watch party is full")

    host_id = room.host_id if room is not None else party.get("host_id")
    return JoinWatchPartyResponse(ws_url=hub_url(request), room_id=room_id, is_host=host_id == identity.user_id)


@watchparty_router.post("/{room_id}/leave", response_model=SuccessResponse)
async def leave_watch_party(room_id: str, request: Request, identity: Identity = Depends(current_identity)):
    left = await request.app.state.relay.leave_user(room_id, identity.user_id)
    logger.info(f"Leave request for watch party {room_id} from {identity.user_id}: {left} connections removed")
    return SuccessResponse()


@watchparty_router.post("/{room_id}/playback", response_model=PlaybackStateResponse)
async def update_playback(room_id: str, body: PlaybackStateRequest, request: Request, identity: Identity = Depends(current_identity)):
    try:
        snapshot = await request.app.state.relay.on_playback_update(
            room_id, identity.user_id, body.current_time, body.is_playing
        )
    except Unauthorized:
        raise HTTPException(status_code=403, detail="Only the host can update playback state")
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Watch party not found")
    return PlaybackStateResponse(room_id=room_id, current_time=snapshot.current_time, is_playing=snapshot.is_playing)


@watchparty_router.post("/{room_id}/message", response_model=SuccessResponse)
async def send_message(room_id: str, body: SendMessageRequest, request: Request, identity: Identity = Depends(current_identity)):
    if room_id not in request.app.state.registry:
        raise HTTPException(status_code=404, detail="Watch party not found")
    membership = request.app.state.membership
    if not membership.is_present(room_id, identity.user_id):
        logger.warning(f"Message rejected: {identity.user_id} is not connected to watch party {room_id}")
        raise HTTPException(status_code=403, detail="You are not a participant of this watch party")

    sender = ParticipantConnection(connection_id=f"rest-{identity.user_id}", user_id=identity.user_id, username=identity.username)
    await request.app.state.relay.on_message(room_id, sender, body.message)
    return SuccessResponse()


@watchparty_router.get("/{room_id}", response_model=WatchPartyDetailsResponse)
async def get_watch_party(room_id: str, request: Request):
    party, _ = load_room(request, room_id)
    party = party or {}
    snapshot = await request.app.state.registry.snapshot(room_id)
    membership = request.app.state.membership

    participants = [
        OnlineUser(user_id=c.user_id, user_name=c.display_name, joined_at=c.joined_at)
        for c in membership.participants(room_id)
    ]
    room_name = party.get("room_name")
    return WatchPartyDetailsResponse(
        room_id=room_id,
        room_name=str(room_name) if room_name is not None else None,
        movie_id=party.get("movie_id"),
        host_id=snapshot.host_id if snapshot else party.get("host_id"),
        current_time=snapshot.current_time if snapshot else 0.0,
        position=snapshot.position if snapshot else 0.0,
        is_playing=snapshot.is_playing if snapshot else False,
        is_live=snapshot is not None,
        participants=participants,
        participant_count=membership.count(room_id),
        max_participants=party.get("max_participants"),
        message_count=redis_backend.message_count(room_id),
        created_at=party.get("created_at") or (snapshot.created_at.isoformat() if snapshot else None),
    )


@watchparty_router.get("/{room_id}/messages", response_model=list[WatchPartyMessage])
async def get_messages(room_id: str, limit: int = Query(50, ge=1, le=200)):
    messages = redis_backend.get_messages(room_id, limit)
    return [
        WatchPartyMessage(
            user_id=m.get("user_id"),
            user_name=m.get("username"),
            message=str(m.get("message", "")),
            created_at=str(m.get("created_at", "")),
        )
        for m in messages
    ]


@watchparty_router.post("/{room_id}/end", response_model=SuccessResponse)
async def end_watch_party(room_id: str, request: Request, identity: Identity = Depends(current_identity)):
    logger.info(f"End request for watch party {room_id} from {identity.user_id}")
    try:
        await request.app.state.relay.end(room_id, identity.user_id)
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Watch party not found")
    except Unauthorized:
        raise HTTPException(status_code=403, detail="Only the host can end the watch party")
    return SuccessResponse()


@watchparty_router.post("/{room_id}/invite", response_model=InviteResponse)
async def invite_user(room_id: str, body: InviteRequest, request: Request, identity: Identity = Depends(current_identity)):
    party, room = load_room(request, room_id)
    party = party or {}
    host_id = room.host_id if room is not None else party.get("host_id")
    if host_id != identity.user_id:
        logger.warning(f"Invite rejected: {identity.user_id} is not the host of watch party {room_id}")
        raise HTTPException(status_code=403, detail="Only the host can invite users")

    invite = WatchPartyInvite(
        room_id=room_id,
        room_name=str(party.get("room_name") or DEFAULT_ROOM_NAME),
        host_name=identity.display_name,
        movie_id=party.get("movie_id"),
    )
    redis_backend.create_invite(room_id, body.invitee_id, invite.model_dump(mode="json"), ttl=INVITE_TTL_SECONDS)
    delivered = await request.app.state.notifications.notify_watch_party_invite(body.invitee_id, invite)
    return InviteResponse(success=True, delivered=delivered)
