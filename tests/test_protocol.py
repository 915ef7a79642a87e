import json

import pytest

from hordelink.shared.protocol import (
    JoinResult, Message, MessageType, PlayerState, Room, SignalType, Vector2, WorldSnapshot,
    create_action_request, create_event_message, decode_signal, encode_signal,
)


def _player(player_id="p1", slot=1):
    return PlayerState(
        id=player_id, slot=slot, position=Vector2(10.0, 20.0), angle=0.5,
        health=80.0, money=30, wood=5, equipped="pistol", inventory=["pistol"],
    )


def test_message_without_seq_omits_the_field():
    raw = Message(MessageType.START_GAME).to_json()

    assert "seq" not in json.loads(raw)


def test_message_keeps_type_seq_and_data():
    raw = Message(MessageType.SHOOT, {"angle": 1.0}, seq=4).to_json()
    message = Message.from_json(raw)

    assert message.type == MessageType.SHOOT
    assert message.seq == 4
    assert message.data == {"angle": 1.0}


def test_unknown_message_type_is_rejected():
    with pytest.raises(ValueError):
        Message.from_json(json.dumps({"type": "teleport", "data": {}}))


def test_non_object_message_is_rejected():
    with pytest.raises(ValueError):
        Message.from_json("[1, 2, 3]")


def test_snapshot_survives_the_wire():
    snapshot = WorldSnapshot(tick=12, wave=2, wave_active=True, game_over=False, players=[_player()])

    decoded = WorldSnapshot.from_dict(json.loads(json.dumps(snapshot.to_dict())))

    assert decoded == snapshot


def test_event_message_uses_event_type_as_tag():
    event = {"type": "gather", "event_id": 3, "tree_id": "t1", "tree_wood": 90}

    message = create_event_message(event, seq=9)

    assert message.type == MessageType.GATHER
    assert "type" not in message.data
    assert message.data["event_id"] == 3


def test_action_request_carries_request_id():
    message = create_action_request(MessageType.PLACE_WALL, 7, 2, x=1.0, y=2.0)

    assert message.data == {"request_id": 7, "x": 1.0, "y": 2.0}
    assert message.seq == 2


def test_signals_are_flat_objects():
    raw = encode_signal(SignalType.OFFER, targetId="p2", sdp="v=0")

    assert json.loads(raw) == {"type": "offer", "targetId": "p2", "sdp": "v=0"}
    assert decode_signal(raw)["type"] == "offer"


def test_signal_without_type_is_rejected():
    with pytest.raises(ValueError):
        decode_signal(json.dumps({"code": "AB3K"}))


def test_join_result_host_is_slot_zero():
    result = JoinResult(code="AB3K", slot=1, members={0: "host-1", 1: "peer-2"})

    assert result.host_id == "host-1"


def test_room_slot_lookup():
    room = Room(code="AB3K", host_id="host-1", member_slots={0: "host-1", 2: "peer-3"})

    assert room.slot_of("peer-3") == 2
    assert room.slot_of("nobody") is None
