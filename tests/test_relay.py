import asyncio

import fakeredis
import pytest

from app import handle_watchparty_call
from backend import RedisBackend
from errors import RoomFull, RoomNotFound, Unauthorized
from membership import MembershipTracker
from registry import RoomRegistry
from relay import SyncRelay, room_group
from transport import ConnectionManager
from schemas.events import UpdatePlaybackState


def run(coro):
    return asyncio.run(coro)


def stored_relay(store):
    return SyncRelay(RoomRegistry(), MembershipTracker(), ConnectionManager("test"), store)


def test_first_join_creates_room_with_reset_state(relay, connect):
    alice, alice_ws = connect(relay, "alice", "Alice")

    snapshot = run(relay.on_join("r1", alice))

    assert (snapshot.current_time, snapshot.is_playing) == (0.0, False)
    assert snapshot.host_id == "alice"
    state = alice_ws.events("RoomState")
    assert len(state) == 1
    assert state[0]["isHost"] is True
    assert state[0]["currentTime"] == 0.0
    assert state[0]["isPlaying"] is False
    assert [p["userId"] for p in state[0]["participants"]] == ["alice"]
    # nobody else to tell
    assert alice_ws.events("UserJoined") == []


def test_user_joined_goes_to_others_only(relay, connect):
    alice, alice_ws = connect(relay, "alice")
    bob, bob_ws = connect(relay, "bob", "Bob")

    async def scenario():
        await relay.on_join("r1", alice)
        await relay.on_join("r1", bob)

    run(scenario())

    joined = alice_ws.events("UserJoined")
    assert len(joined) == 1
    assert joined[0]["userId"] == "bob"
    assert joined[0]["username"] == "Bob"
    assert joined[0]["participantCount"] == 2
    assert bob_ws.events("UserJoined") == []
    assert bob_ws.events("RoomState")[0]["isHost"] is False


def test_host_update_reaches_everyone_but_the_host(relay, connect):
    host, host_ws = connect(relay, "host")
    p1, p1_ws = connect(relay, "p1")
    p2, p2_ws = connect(relay, "p2")

    async def scenario():
        for c in (host, p1, p2):
            await relay.on_join("r1", c)
        return await relay.on_playback_update("r1", "host", 42.5, True, host.connection_id)

    snapshot = run(scenario())

    assert (snapshot.current_time, snapshot.is_playing) == (42.5, True)
    for ws in (p1_ws, p2_ws):
        changed = ws.events("PlaybackStateChanged")
        assert len(changed) == 1
        assert changed[0]["currentTime"] == 42.5
        assert changed[0]["isPlaying"] is True
    assert host_ws.events("PlaybackStateChanged") == []


def test_non_host_update_changes_nothing_and_broadcasts_nothing(relay, connect):
    host, host_ws = connect(relay, "host")
    guest, guest_ws = connect(relay, "guest")

    async def scenario():
        await relay.on_join("r1", host)
        await relay.on_join("r1", guest)
        await relay.on_playback_update("r1", "host", 12.0, False, host.connection_id)
        with pytest.raises(Unauthorized):
            await relay.on_playback_update("r1", "guest", 100.0, False, guest.connection_id)
        return await relay.registry.snapshot("r1")

    snapshot = run(scenario())

    assert (snapshot.current_time, snapshot.is_playing) == (12.0, False)
    assert host_ws.events("PlaybackStateChanged") == []
    assert len(guest_ws.events("PlaybackStateChanged")) == 1


def test_hub_tells_only_the_rejected_sender(relay, connect):
    host, host_ws = connect(relay, "host")
    guest, guest_ws = connect(relay, "guest")
    call = UpdatePlaybackState(target="UpdatePlaybackState", room_id="r1", current_time=100, is_playing=False)

    async def scenario():
        await relay.on_join("r1", host)
        await relay.on_join("r1", guest)
        await handle_watchparty_call(relay, guest, call)

    run(scenario())

    errors = guest_ws.events("Error")
    assert len(errors) == 1
    assert errors[0]["code"] == "Unauthorized"
    assert host_ws.events("Error") == []
    assert host_ws.events("PlaybackStateChanged") == []


def test_update_for_missing_room_is_noop(relay):
    assert run(relay.on_playback_update("ghost", "alice", 5.0, True, "c1")) is None


def test_all_leave_then_rejoin_starts_at_zero(relay, connect):
    alice, _ = connect(relay, "alice")
    bob, bob_ws = connect(relay, "bob")

    async def scenario():
        await relay.on_join("r1", alice)
        await relay.on_join("r1", bob)
        await relay.on_playback_update("r1", "alice", 300.0, True, alice.connection_id)
        await relay.on_leave("r1", alice.connection_id)
        await relay.on_leave("r1", bob.connection_id)
        removed = "r1" not in relay.registry
        snapshot = await relay.on_join("r1", bob)
        return removed, snapshot

    removed, snapshot = run(scenario())

    assert removed
    assert (snapshot.current_time, snapshot.is_playing) == (0.0, False)
    assert snapshot.host_id == "bob"
    assert bob_ws.events("RoomState")[-1]["currentTime"] == 0.0


def test_leave_broadcasts_user_left_to_remaining(relay, connect):
    alice, alice_ws = connect(relay, "alice")
    bob, bob_ws = connect(relay, "bob")

    async def scenario():
        await relay.on_join("r1", alice)
        await relay.on_join("r1", bob)
        first = await relay.on_leave("r1", bob.connection_id)
        again = await relay.on_leave("r1", bob.connection_id)
        return first, again

    assert run(scenario()) == (True, False)
    left = alice_ws.events("UserLeft")
    assert len(left) == 1
    assert left[0]["userId"] == "bob"
    assert left[0]["participantCount"] == 1
    assert relay.membership.count("r1") == 1
    assert relay.transport.group_members(room_group("r1")) == {alice.connection_id}


def test_disconnect_counts_as_leave(relay, connect):
    alice, alice_ws = connect(relay, "alice")
    bob, _ = connect(relay, "bob")

    async def scenario():
        await relay.on_join("r1", alice)
        await relay.on_join("r1", bob)
        return await relay.on_disconnect(bob.connection_id), await relay.on_disconnect("never-joined")

    assert run(scenario()) == (True, False)
    assert len(alice_ws.events("UserLeft")) == 1


def test_joining_another_room_leaves_the_previous_one(relay, connect):
    alice, _ = connect(relay, "alice")
    bob, bob_ws = connect(relay, "bob")

    async def scenario():
        await relay.on_join("r1", alice)
        await relay.on_join("r1", bob)
        await relay.on_join("r2", alice)

    run(scenario())

    assert relay.membership.room_of(alice.connection_id) == "r2"
    assert [c.user_id for c in relay.membership.participants("r1")] == ["bob"]
    assert len(bob_ws.events("UserLeft")) == 1


def test_message_is_broadcast_to_sender_too(relay, connect):
    alice, alice_ws = connect(relay, "alice", "Alice")
    bob, bob_ws = connect(relay, "bob")

    async def scenario():
        await relay.on_join("r1", alice)
        await relay.on_join("r1", bob)
        return await relay.on_message("r1", alice, "hello")

    event = run(scenario())

    for ws in (alice_ws, bob_ws):
        received = ws.events("ReceiveMessage")
        assert len(received) == 1
        assert received[0]["userId"] == "alice"
        assert received[0]["username"] == "Alice"
        assert received[0]["message"] == "hello"
        assert received[0]["createdAt"]
    assert event.created_at.tzinfo is not None


def test_message_history_is_stored(connect, store):
    relay = stored_relay(store)
    alice, _ = connect(relay, "alice")

    async def scenario():
        await relay.on_join("r1", alice)
        await relay.on_message("r1", alice, "one")
        await relay.on_message("r1", alice, "two")

    run(scenario())

    messages = store.get_messages("r1")
    assert [m["message"] for m in messages] == ["one", "two"]
    assert messages[0]["user_id"] == "alice"


def test_rest_update_skips_all_host_connections(relay, connect):
    tab1, tab1_ws = connect(relay, "host")
    tab2, tab2_ws = connect(relay, "host")
    guest, guest_ws = connect(relay, "guest")

    async def scenario():
        for c in (tab1, tab2, guest):
            await relay.on_join("r1", c)
        await relay.on_playback_update("r1", "host", 8.0, True)

    run(scenario())

    assert tab1_ws.events("PlaybackStateChanged") == []
    assert tab2_ws.events("PlaybackStateChanged") == []
    assert len(guest_ws.events("PlaybackStateChanged")) == 1


def test_end_by_host_tears_down_room(relay, connect):
    host, host_ws = connect(relay, "host")
    guest, guest_ws = connect(relay, "guest")

    async def scenario():
        await relay.on_join("r1", host)
        await relay.on_join("r1", guest)
        with pytest.raises(Unauthorized):
            await relay.end("r1", "guest")
        await relay.end("r1", "host")
        with pytest.raises(RoomNotFound):
            await relay.end("r1", "host")

    run(scenario())

    assert len(host_ws.events("WatchPartyEnded")) == 1
    assert len(guest_ws.events("WatchPartyEnded")) == 1
    assert "r1" not in relay.registry
    assert relay.membership.participants("r1") == []
    assert relay.membership.room_of(guest.connection_id) is None


def test_party_record_sets_host_and_capacity(connect, store):
    relay = stored_relay(store)
    store.create_watch_party("ABCD1234", {"host_id": "alice", "max_participants": 2, "is_active": True})
    bob, bob_ws = connect(relay, "bob")
    carol, _ = connect(relay, "carol")
    dave, _ = connect(relay, "dave")

    async def scenario():
        await relay.on_join("ABCD1234", bob)
        await relay.on_join("ABCD1234", carol)
        with pytest.raises(RoomFull):
            await relay.on_join("ABCD1234", dave)

    run(scenario())

    assert bob_ws.events("RoomState")[0]["hostId"] == "alice"
    assert bob_ws.events("RoomState")[0]["isHost"] is False
    assert relay.membership.room_of(dave.connection_id) is None


def test_ended_party_cannot_be_joined(connect, store):
    relay = stored_relay(store)
    store.create_watch_party("DONE0001", {"host_id": "alice", "is_active": True})
    store.end_watch_party("DONE0001")
    alice, _ = connect(relay, "alice")

    with pytest.raises(RoomNotFound):
        run(relay.on_join("DONE0001", alice))
    assert "DONE0001" not in relay.registry


def test_numeric_looking_host_id_keeps_control(connect, store):
    relay = stored_relay(store)
    store.create_watch_party("AB12CD34", {"host_id": "1e3", "is_active": True})
    host, _ = connect(relay, "1e3")
    guest, guest_ws = connect(relay, "guest")

    async def scenario():
        await relay.on_join("AB12CD34", host)
        await relay.on_join("AB12CD34", guest)
        return await relay.on_playback_update("AB12CD34", "1e3", 10.0, True, host.connection_id)

    snapshot = run(scenario())

    assert snapshot.host_id == "1e3"
    assert guest_ws.events("PlaybackStateChanged")[0]["currentTime"] == 10.0


def test_rejoining_the_same_room_is_not_announced_again(relay, connect):
    alice, alice_ws = connect(relay, "alice")
    bob, bob_ws = connect(relay, "bob")

    async def scenario():
        await relay.on_join("r1", alice)
        await relay.on_join("r1", bob)
        first_joined_at = bob.joined_at
        await relay.on_join("r1", bob)
        return first_joined_at

    first_joined_at = run(scenario())

    assert len(alice_ws.events("UserJoined")) == 1
    assert len(bob_ws.events("RoomState")) == 2
    assert bob.joined_at == first_joined_at
    assert relay.membership.count("r1") == 2


def test_store_outage_does_not_stop_the_room(connect):
    server = fakeredis.FakeServer()
    server.connected = False
    relay = stored_relay(RedisBackend(fakeredis.FakeRedis(server=server, decode_responses=True)))
    alice, alice_ws = connect(relay, "alice")
    bob, bob_ws = connect(relay, "bob")

    async def scenario():
        await relay.on_join("r1", alice)
        await relay.on_join("r1", bob)
        await relay.on_message("r1", alice, "still here")
        await relay.end("r1", "alice")

    run(scenario())

    assert bob_ws.events("RoomState")[0]["hostId"] == "alice"
    assert bob_ws.events("ReceiveMessage")[0]["message"] == "still here"
    assert alice_ws.events("ReceiveMessage")[0]["message"] == "still here"
    assert len(bob_ws.events("WatchPartyEnded")) == 1
    assert "r1" not in relay.registry


def test_join_during_slow_end_never_lands_in_the_ended_room(relay, connect):
    host, host_ws = connect(relay, "host")
    guest, guest_ws = connect(relay, "guest", delay=0.2)
    late, late_ws = connect(relay, "late")

    async def late_join():
        await asyncio.sleep(0.05)
        await relay.on_join("r1", late)

    async def scenario():
        await relay.on_join("r1", host)
        await relay.on_join("r1", guest)
        await asyncio.gather(relay.end("r1", "host"), late_join())

    run(scenario())

    assert len(host_ws.events("WatchPartyEnded")) == 1
    assert len(guest_ws.events("WatchPartyEnded")) == 1
    # the late joiner started a new room of its own
    state = late_ws.events("RoomState")
    assert len(state) == 1
    assert state[0]["hostId"] == "late"
    assert [p["userId"] for p in state[0]["participants"]] == ["late"]
    assert relay.membership.room_of(late.connection_id) == "r1"
    assert relay.registry.get("r1").participants == {late.connection_id: "late"}
    assert relay.membership.room_of(guest.connection_id) is None
