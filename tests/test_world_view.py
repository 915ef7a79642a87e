from dataclasses import fields

from hordelink.client.prediction import ClientSidePrediction, UpdateThrottle
from hordelink.client.world_view import (
    PLAYER_FIELD_OWNERSHIP, ClientPhase, ClientWorldView, FieldOwner, merge_local_player,
)
from hordelink.shared.constants import WORLD_WIDTH
from hordelink.shared.protocol import (
    MessageType, PlayerState, TreeState, Vector2, WorldSnapshot, ZombieState,
)


def _player(player_id, x=1500.0, y=1500.0, **overrides):
    values = dict(id=player_id, slot=1, position=Vector2(x, y), angle=0.0, health=100.0,
                  money=0, wood=0, equipped="pistol", inventory=["pistol"])
    values.update(overrides)
    return PlayerState(**values)


def _snapshot(tick=1, players=(), zombies=(), trees=(), game_over=False):
    return WorldSnapshot(tick=tick, wave=1, wave_active=True, game_over=game_over,
                         players=list(players), zombies=list(zombies), trees=list(trees))


def _view():
    prediction = ClientSidePrediction()
    return ClientWorldView("peer-2", prediction), prediction


def test_every_player_field_has_an_owner():
    assert set(PLAYER_FIELD_OWNERSHIP) == {f.name for f in fields(PlayerState)}


def test_only_position_and_angle_are_local():
    local = {name for name, owner in PLAYER_FIELD_OWNERSHIP.items() if owner == FieldOwner.LOCAL}

    assert local == {"position", "angle"}


def test_merge_takes_each_field_from_its_owner():
    predicted = _player("peer-2", x=10.0, angle=1.5, health=100.0)
    confirmed = _player("peer-2", x=99.0, angle=0.0, health=40.0, money=25)

    merged = merge_local_player(predicted, confirmed)

    assert merged.position == Vector2(10.0, 1500.0)
    assert merged.angle == 1.5
    assert merged.health == 40.0
    assert merged.money == 25


def test_first_snapshot_seeds_prediction():
    view, prediction = _view()

    view.apply_snapshot(_snapshot(players=[_player("peer-2", x=1560.0)]))

    assert prediction.initialized
    assert view.local_player.position == Vector2(1560.0, 1500.0)
    assert view.phase == ClientPhase.PLAYING


def test_small_drift_keeps_predicted_position():
    view, prediction = _view()
    view.apply_snapshot(_snapshot(tick=1, players=[_player("peer-2")]))
    prediction.set_direction(1, 0)
    prediction.update(0.2)

    view.apply_snapshot(_snapshot(tick=2, players=[_player("peer-2", health=70.0)]))

    local = view.local_player
    assert local.position.x == 1550.0
    assert local.health == 70.0


def test_large_desync_snaps_to_host():
    view, prediction = _view()
    view.apply_snapshot(_snapshot(tick=1, players=[_player("peer-2")]))

    view.apply_snapshot(_snapshot(tick=2, players=[_player("peer-2", x=100.0, y=100.0)]))

    assert prediction.wire_position() == Vector2(100.0, 100.0)


def test_remote_entities_are_replaced_wholesale():
    view, _ = _view()
    view.apply_snapshot(_snapshot(
        tick=1,
        players=[_player("host-1"), _player("peer-3")],
        zombies=[ZombieState("z1", Vector2(0, 0), 50.0)],
    ))

    view.apply_snapshot(_snapshot(tick=2, players=[_player("host-1")]))

    assert set(view.players) == {"host-1"}
    assert view.zombies == {}


def test_remote_player_update_moves_avatar():
    view, _ = _view()
    view.apply_snapshot(_snapshot(players=[_player("host-1")]))

    applied = view.apply_remote_player_update(
        {"player_id": "host-1", "position": {"x": 1520.0, "y": 1500.0}, "angle": 2.0})

    assert applied
    assert view.players["host-1"].position.x == 1520.0
    assert not view.apply_remote_player_update({"player_id": "ghost", "position": {"x": 0, "y": 0}})


def test_gather_event_depletes_tree():
    view, _ = _view()
    view.apply_snapshot(_snapshot(
        players=[_player("peer-2")],
        trees=[TreeState("t1", Vector2(1500, 1550), 10)],
    ))

    view.apply_event(MessageType.GATHER, {"event_id": 4, "player_id": "peer-2", "tree_id": "t1",
                                          "amount": 10, "tree_wood": 0, "player_wood": 10})

    assert "t1" not in view.trees
    assert view.local_player.wood == 10


def test_duplicate_shoot_event_adds_one_bullet():
    view, _ = _view()
    event = {"event_id": 9, "player_id": "host-1",
             "bullet": {"id": "b1", "owner_id": "host-1",
                        "position": {"x": 1.0, "y": 1.0}, "velocity": {"x": 900.0, "y": 0.0}}}

    assert view.apply_event(MessageType.SHOOT, event)
    assert not view.apply_event(MessageType.SHOOT, event)
    assert list(view.bullets) == ["b1"]


def test_clear_returns_to_waiting():
    view, _ = _view()
    view.apply_snapshot(_snapshot(players=[_player("peer-2"), _player("host-1")]))

    view.clear()

    assert view.local_player is None
    assert view.players == {}
    assert view.phase == ClientPhase.WAITING


def test_prediction_stays_inside_world():
    prediction = ClientSidePrediction()
    prediction.reset(Vector2(WORLD_WIDTH - 25.0, 1500.0))
    prediction.set_direction(3, 0)

    prediction.update(1.0)

    assert prediction.wire_position().x == WORLD_WIDTH - prediction.ruleset.player_radius


def test_throttle_sends_first_update_immediately():
    throttle = UpdateThrottle(rate=15, keepalive=1.0)

    assert throttle.due(0.0, ("a",))
    throttle.mark_sent(0.0, ("a",))
    assert not throttle.due(0.01, ("b",))
    assert throttle.due(0.1, ("b",))
