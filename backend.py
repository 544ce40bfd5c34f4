import redis
import json
from datetime import datetime, timezone
from typing import List, Optional
from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_DB, MESSAGE_HISTORY_MAX, WATCHPARTY_TTL_SECONDS, INVITE_TTL_SECONDS
from redis_keys import REDIS_META_KEY, REDIS_MESSAGES_KEY, REDIS_INVITE_KEY
from logging_config import get_logger

logger = get_logger(__name__)


def _encode(data: dict) -> dict:
    # JSON-encode every value, strings included; None is skipped
    encoded = {}
    for k, v in data.items():
        if v is None:
            continue
        if isinstance(v, datetime):
            v = v.isoformat()
        encoded[k] = json.dumps(v, default=str)
    return encoded


def _decode(data: dict) -> dict:
    result = {}
    for k, v in data.items():
        try:
            result[k] = json.loads(v)
        except (json.JSONDecodeError, TypeError):
            result[k] = v
    return result


class RedisBackend:
    """Watch party records and chat history.

    Live playback state never goes through here; it lives in the room registry.
    """

    def __init__(self, redis_client: redis.Redis = None):
        if redis_client is None:
            # redis-py connects lazily, on the first command
            redis_client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, db=REDIS_DB, decode_responses=True)
            logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
        self.redis_client = redis_client

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    def create_watch_party(self, room_id: str, party_data: dict, ttl: int = WATCHPARTY_TTL_SECONDS):
        logger.info(f"Creating watch party {room_id} with TTL {ttl} seconds")
        key = REDIS_META_KEY.format(slug=room_id)
        self.redis_client.hset(key, mapping=_encode(party_data))
        if ttl:
            self.redis_client.expire(key, ttl)
        logger.debug(f"Watch party {room_id} created successfully with key: {key}")
        return room_id

    def get_watch_party(self, room_id: str) -> Optional[dict]:
        logger.debug(f"Fetching watch party {room_id}")
        key = REDIS_META_KEY.format(slug=room_id)
        party_data = self.redis_client.hgetall(key)
        if not party_data:
            logger.debug(f"Watch party {room_id} not found in Redis")
            return None
        party = _decode(party_data)
        # room ids like "1234ABCD" are strings even when they look numeric
        party["room_id"] = room_id
        if "host_id" in party and party["host_id"] is not None:
            party["host_id"] = str(party["host_id"])
        return party

    def get_active_watch_party(self, room_id: str) -> Optional[dict]:
        party = self.get_watch_party(room_id)
        if party is None or not party.get("is_active", True):
            return None
        return party

    def end_watch_party(self, room_id: str) -> bool:
        key = REDIS_META_KEY.format(slug=room_id)
        if not self.redis_client.exists(key):
            logger.debug(f"Cannot end watch party {room_id}: not found")
            return False
        self.redis_client.hset(key, mapping=_encode({
            "is_active": False,
            "ended_at": datetime.now(timezone.utc).isoformat(),
        }))
        logger.info(f"Watch party {room_id} marked inactive")
        return True

    def add_message(self, room_id: str, message: dict, ttl: int = WATCHPARTY_TTL_SECONDS) -> int:
        """Append a chat message to the room history, keeping the newest MESSAGE_HISTORY_MAX."""
        key = REDIS_MESSAGES_KEY.format(slug=room_id)
        pipe = self.redis_client.pipeline()
        pipe.rpush(key, json.dumps(message, default=str))
        pipe.ltrim(key, -MESSAGE_HISTORY_MAX, -1)
        if ttl:
            pipe.expire(key, ttl)
        pipe.llen(key)
        results = pipe.execute()
        logger.debug(f"Stored message in room {room_id} history ({results[-1]} messages)")
        return results[-1]

    def get_messages(self, room_id: str, limit: int = 50) -> List[dict]:
        """Most recent `limit` messages, oldest first."""
        if limit <= 0:
            return []
        key = REDIS_MESSAGES_KEY.format(slug=room_id)
        raw = self.redis_client.lrange(key, -limit, -1)
        messages = []
        for item in raw:
            try:
                messages.append(json.loads(item))
            except json.JSONDecodeError:
                logger.warning(f"Skipping unreadable message in room {room_id} history")
        return messages

    def message_count(self, room_id: str) -> int:
        return self.redis_client.llen(REDIS_MESSAGES_KEY.format(slug=room_id))

    def create_invite(self, room_id: str, invitee_id: str, invite_data: dict, ttl: int = INVITE_TTL_SECONDS):
        key = REDIS_INVITE_KEY.format(slug=room_id, user_id=invitee_id)
        self.redis_client.set(key, json.dumps(invite_data, default=str), ex=ttl)
        logger.debug(f"Stored invite for {invitee_id} to room {room_id} with TTL {ttl}")
        return True

    def get_invite(self, room_id: str, invitee_id: str) -> Optional[dict]:
        raw = self.redis_client.get(REDIS_INVITE_KEY.format(slug=room_id, user_id=invitee_id))
        return json.loads(raw) if raw else None


redis_backend = RedisBackend()
