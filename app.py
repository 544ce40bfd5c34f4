from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from contextlib import asynccontextmanager
from routers.watchparty import watchparty_router
from schemas.watchparty import PresenceResponse
from schemas.events import (
    watchparty_inbound, chat_inbound, Error,
    JoinRoom, LeaveRoom, UpdatePlaybackState, SendMessage, EndWatchParty,
    ChatJoinRoom, ChatLeaveRoom, ChatSendMessage,
)
from backend import redis_backend
from registry import RoomRegistry
from membership import MembershipTracker, ParticipantConnection
from transport import ConnectionManager
from relay import SyncRelay
from chat import ChatRelay
from notifications import NotificationsHub
from errors import RoomNotFound, WatchPartyError
from constants import LOG_LEVEL, LOG_FILE, CORS_ORIGINS, ROOM_IDLE_SECONDS, SWEEP_INTERVAL_SECONDS
import uuid
import asyncio
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


async def sweep_idle_rooms(registry: RoomRegistry, interval: float, max_idle: float):
    """Background task removing live rooms nobody joined (or everybody left) for a while."""
    while True:
        await asyncio.sleep(interval)
        try:
            await registry.sweep_idle(max_idle)
        except Exception as e:
            logger.error(f"Error sweeping idle rooms: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = asyncio.create_task(
        sweep_idle_rooms(app.state.registry, SWEEP_INTERVAL_SECONDS, ROOM_IDLE_SECONDS)
    )
    logger.info("Idle room sweeper started")
    try:
        yield
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        logger.info("Idle room sweeper stopped")


async def handle_watchparty_call(relay: SyncRelay, connection: ParticipantConnection, call):
    connection_id = connection.connection_id
    try:
        if isinstance(call, JoinRoom):
            await relay.on_join(call.room_id, connection)
        elif isinstance(call, LeaveRoom):
            await relay.on_leave(call.room_id, connection_id)
        elif isinstance(call, UpdatePlaybackState):
            await relay.on_playback_update(
                call.room_id, connection.user_id, call.current_time, call.is_playing, connection_id
            )
        elif isinstance(call, SendMessage):
            await relay.on_message(call.room_id, connection, call.message)
        elif isinstance(call, EndWatchParty):
            try:
                await relay.end(call.room_id, connection.user_id)
            except RoomNotFound:
                logger.debug(f"End request for missing room {call.room_id} ignored")
    except WatchPartyError as e:
        logger.info(f"{e.code} for connection {connection_id} in room {e.room_id}: {e}")
        await relay.reject(connection_id, e, room_id=e.room_id)


async def handle_chat_call(chat: ChatRelay, connection_id: str, username: str, call):
    if isinstance(call, ChatJoinRoom):
        await chat.join(call.room, connection_id, username)
    elif isinstance(call, ChatLeaveRoom):
        await chat.leave(call.room, connection_id, username)
    elif isinstance(call, ChatSendMessage):
        await chat.send(call.room, call.message, username)


def create_app() -> FastAPI:
    app = FastAPI(title="Watch Party", lifespan=lifespan)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # One connection manager per hub, like one hub class per endpoint
    app.state.registry = RoomRegistry()
    app.state.membership = MembershipTracker()
    app.state.watchparty_hub = ConnectionManager("watchparty")
    app.state.chat_hub = ConnectionManager("chat")
    app.state.relay = SyncRelay(app.state.registry, app.state.membership, app.state.watchparty_hub, redis_backend)
    app.state.chat = ChatRelay(app.state.chat_hub)
    app.state.notifications = NotificationsHub(ConnectionManager("notifications"))

    app.include_router(watchparty_router)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "active_rooms": len(app.state.registry),
            "online_count": app.state.notifications.online_count,
        }

    @app.get("/api/v2/presence", response_model=PresenceResponse)
    async def presence():
        return PresenceResponse(online_count=app.state.notifications.online_count)

    @app.websocket("/hubs/watchparty")
    async def watchparty_endpoint(websocket: WebSocket, user_id: str = None, username: str = None):
        """Watch party hub.

        Query parameters:
        - user_id: authenticated user id (required)
        - username: display name shown to other participants
        """
        if not user_id:
            logger.info("Watch party connection rejected: no user identity")
            await websocket.close(code=1008, reason="Authentication required")
            return

        relay: SyncRelay = app.state.relay
        transport: ConnectionManager = app.state.watchparty_hub
        connection_id = str(uuid.uuid4())
        connection = ParticipantConnection(connection_id=connection_id, user_id=user_id, username=username)

        await websocket.accept()
        transport.connect(connection_id, websocket, user_id)
        logger.info(f"Watch party connection {connection_id} accepted for user {user_id}")

        try:
            message_count = 0
            while True:
                data = await websocket.receive_text()
                message_count += 1
                logger.debug(f"Received message #{message_count} from connection {connection_id}")
                try:
                    call = watchparty_inbound.validate_json(data)
                except ValidationError as e:
                    logger.debug(f"Invalid hub call from {connection_id}: {e.errors()}")
                    await transport.send(connection_id, Error(code="BadRequest", message="Invalid hub call"))
                    continue
                await handle_watchparty_call(relay, connection, call)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected normally for connection {connection_id}")
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
        finally:
            # Cleanup on disconnect
            await relay.on_disconnect(connection_id)
            transport.disconnect(connection_id)

    @app.websocket("/hubs/chat")
    async def chat_endpoint(websocket: WebSocket, user_id: str = None, username: str = None):
        if not user_id:
            logger.info("Chat connection rejected: no user identity")
            await websocket.close(code=1008, reason="Authentication required")
            return

        chat: ChatRelay = app.state.chat
        connection_id = str(uuid.uuid4())
        await websocket.accept()
        chat.transport.connect(connection_id, websocket, user_id)
        logger.info(f"Chat connection {connection_id} accepted for user {user_id}")

        try:
            while True:
                data = await websocket.receive_text()
                try:
                    call = chat_inbound.validate_json(data)
                except ValidationError:
                    await chat.transport.send(connection_id, Error(code="BadRequest", message="Invalid hub call"))
                    continue
                await handle_chat_call(chat, connection_id, username, call)
        except WebSocketDisconnect:
            logger.info(f"Chat connection {connection_id} disconnected")
        except Exception as e:
            logger.error(f"Chat error for connection {connection_id}: {e}", exc_info=True)
        finally:
            await chat.disconnect(connection_id, username)

    @app.websocket("/hubs/notifications")
    async def notifications_endpoint(websocket: WebSocket, user_id: str = None):
        # Anonymous connections count towards presence too
        notifications: NotificationsHub = app.state.notifications
        connection_id = str(uuid.uuid4())
        await websocket.accept()
        await notifications.connected(connection_id, websocket, user_id)
        try:
            while True:
                # Nothing is expected from clients; keep reading to notice the disconnect
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug(f"Notification connection {connection_id} disconnected")
        except Exception as e:
            logger.error(f"Notification error for connection {connection_id}: {e}", exc_info=True)
        finally:
            await notifications.disconnected(connection_id)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
