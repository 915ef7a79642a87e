import asyncio

import pytest

from fakes import FakeWebSocket
from hordelink.net.rendezvous import RoomDirectoryClient
from hordelink.shared.errors import RendezvousUnavailable, RoomFull, RoomNotFound


def _service(message):
    """Minimal rendezvous service behaviour."""
    kind = message["type"]
    if kind == "create-room":
        return [{"type": "room-created", "code": "AB3K"}]
    if kind == "join-room":
        if message["code"] == "FULL":
            return [{"type": "error", "reason": "room-full", "request": "join-room"}]
        if message["code"] != "AB3K":
            return [{"type": "error", "reason": "room-not-found", "request": "join-room"}]
        return [{"type": "room-joined", "code": "AB3K", "slot": 1, "members": ["host-1", "peer-2"]}]
    if kind == "list-rooms":
        return [{"type": "room-list", "rooms": [{"code": "AB3K", "occupancy": 1, "capacity": 4}]}]
    return []


def _client(websocket, **kwargs):
    websocket.feed({"type": "your-id", "id": "peer-2"})

    async def connect(url, **options):
        return websocket

    return RoomDirectoryClient("ws://test", connect=connect, **kwargs)


def test_connect_learns_identity():
    async def scenario():
        client = _client(FakeWebSocket(_service))
        peer_id = await client.connect()
        await client.close()
        return peer_id

    assert asyncio.run(scenario()) == "peer-2"


def test_create_and_list_rooms():
    async def scenario():
        client = _client(FakeWebSocket(_service))
        await client.connect()
        code = await client.create_room()
        rooms = await client.list_rooms()
        await client.close()
        return code, rooms

    code, rooms = asyncio.run(scenario())

    assert code == "AB3K"
    assert rooms[0].code == "AB3K"
    assert rooms[0].occupancy == 1


def test_join_room_reports_slot_and_host():
    async def scenario():
        client = _client(FakeWebSocket(_service))
        await client.connect()
        result = await client.join_room("AB3K")
        await client.close()
        return result

    result = asyncio.run(scenario())

    assert result.slot == 1
    assert result.host_id == "host-1"
    assert result.members == {0: "host-1", 1: "peer-2"}


def test_join_errors_are_typed():
    async def scenario():
        client = _client(FakeWebSocket(_service))
        await client.connect()
        with pytest.raises(RoomNotFound) as missing:
            await client.join_room("ZZZZ")
        with pytest.raises(RoomFull) as full:
            await client.join_room("FULL")
        await client.close()
        return missing.value, full.value

    missing, full = asyncio.run(scenario())

    assert missing.code == "ZZZZ"
    assert full.code == "FULL"


def test_unanswered_request_times_out():
    lost = []

    async def scenario():
        websocket = FakeWebSocket(lambda message: [])
        client = _client(websocket, response_timeout=0.05)
        client.on_disconnect = lambda: lost.append(True)
        await client.connect()
        with pytest.raises(RendezvousUnavailable):
            await client.create_room()
        await asyncio.sleep(0)
        return client, websocket

    client, websocket = asyncio.run(scenario())

    # A silent service counts as a lost link
    assert not client.connected
    assert websocket.closed
    assert lost == [True]


def test_relayed_offer_reaches_callback():
    offers = []

    async def scenario():
        websocket = FakeWebSocket(_service)
        client = _client(websocket)

        async def on_offer(from_id, sdp):
            offers.append((from_id, sdp))

        client.on_offer = on_offer
        await client.connect()
        websocket.feed({"type": "offer", "fromId": "host-1", "sdp": "v=0"})
        for _ in range(5):
            await asyncio.sleep(0)
        await client.close()

    asyncio.run(scenario())

    assert offers == [("host-1", "v=0")]


def test_outbound_offer_is_addressed():
    async def scenario():
        websocket = FakeWebSocket(_service)
        client = _client(websocket)
        await client.connect()
        await client.send_offer("host-1", "v=0")
        await client.close()
        return websocket.sent

    sent = asyncio.run(scenario())

    assert sent == [{"type": "offer", "targetId": "host-1", "sdp": "v=0"}]


def test_link_loss_notifies_and_fails_requests():
    lost = []

    async def scenario():
        websocket = FakeWebSocket(lambda message: [])
        client = _client(websocket, response_timeout=5.0)
        client.on_disconnect = lambda: lost.append(True)
        await client.connect()
        request = asyncio.ensure_future(client.create_room())
        await asyncio.sleep(0)
        websocket.drop()
        with pytest.raises(RendezvousUnavailable):
            await request
        return client

    client = asyncio.run(scenario())

    assert lost == [True]
    assert not client.connected


def test_deliberate_close_does_not_notify():
    lost = []

    async def scenario():
        client = _client(FakeWebSocket(_service))
        client.on_disconnect = lambda: lost.append(True)
        await client.connect()
        await client.close()
        await asyncio.sleep(0)

    asyncio.run(scenario())

    assert lost == []


def test_backoff_doubles_then_gives_up():
    delays = []

    async def refuse(url, **options):
        raise OSError("connection refused")

    async def fake_sleep(delay):
        delays.append(delay)

    async def scenario():
        client = RoomDirectoryClient("ws://test", connect=refuse)
        with pytest.raises(RendezvousUnavailable):
            await client.connect_with_backoff(max_attempts=5, base_delay=1.0, max_delay=5.0, sleep=fake_sleep)

    asyncio.run(scenario())

    assert delays == [1.0, 2.0, 4.0, 5.0]
