import asyncio
import itertools
import json

import fakeredis
import pytest
from fastapi.testclient import TestClient

from backend import RedisBackend, redis_backend
from membership import MembershipTracker, ParticipantConnection
from registry import RoomRegistry
from relay import SyncRelay
from transport import ConnectionManager


class FakeWebSocket:
    """Records what the server sends. Can be made slow or broken."""

    def __init__(self, delay: float = 0, fail: bool = False):
        self.delay = delay
        self.fail = fail
        self.sent = []

    async def send_text(self, data: str):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(json.loads(data))

    def events(self, name: str = None):
        return [m for m in self.sent if name is None or m.get("event") == name]

    def clear(self):
        self.sent.clear()


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    client = fakeredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr(redis_backend, "redis_client", client)
    return client


@pytest.fixture
def store(fake_redis):
    return RedisBackend(fake_redis)


@pytest.fixture
def relay():
    return SyncRelay(RoomRegistry(), MembershipTracker(), ConnectionManager("test", send_timeout=0.5))


@pytest.fixture
def connect():
    """Register a fake connection on a relay's transport: connect(relay, "alice") -> (connection, ws)."""
    counter = itertools.count(1)

    def _connect(relay, user_id, username=None, **ws_kwargs):
        ws = FakeWebSocket(**ws_kwargs)
        connection_id = f"conn-{user_id}-{next(counter)}"
        relay.transport.connect(connection_id, ws, user_id)
        return ParticipantConnection(connection_id=connection_id, user_id=user_id, username=username), ws

    return _connect


@pytest.fixture
def app():
    from app import create_app
    return create_app()


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
