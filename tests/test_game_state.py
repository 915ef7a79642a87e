import random

from pygame.math import Vector2 as Vec

from hordelink.host.game_state import (
    BuyIntent, GameState, GatherIntent, MoveIntent, PlaceWallIntent, ShootIntent,
    StartWaveIntent, Tree, Zombie,
)
from hordelink.shared.ruleset import SimulationRuleset

DT = 1.0 / 30


def _game(**rules):
    state = GameState(SimulationRuleset(**rules), random.Random(3))
    state.add_player("host-1", 0)
    state.add_player("peer-2", 1)
    state.start_game()
    return state


def _types(events):
    return [e["type"] for e in events]


def test_nothing_happens_before_start():
    state = GameState(rng=random.Random(1))
    state.add_player("host-1", 0)
    state.queue_intent("host-1", MoveIntent(direction=(1, 0), angle=0.0))

    assert state.update(DT) == []
    assert state.tick == 0
    assert state.pending_intents == 0


def test_start_game_keeps_spawn_clear_of_trees():
    state = _game()

    assert len(state.trees) == 20
    spawn = Vec(1500, 1500)
    assert all(t.position.distance_to(spawn) >= 200 for t in state.trees.values())


def test_players_spawn_side_by_side():
    state = _game()

    assert state.players["host-1"].position == Vec(1500, 1500)
    assert state.players["peer-2"].position == Vec(1560, 1500)


def test_intents_apply_on_next_tick_in_arrival_order():
    state = _game()
    state.queue_intent("peer-2", MoveIntent(direction=(1, 0), angle=0.0))
    state.queue_intent("peer-2", MoveIntent(direction=(0, 1), angle=1.0))
    assert state.pending_intents == 2

    state.update(DT)

    player = state.players["peer-2"]
    assert state.pending_intents == 0
    assert player.angle == 1.0
    assert player.position.x == 1560
    assert player.position.y > 1500


def test_reported_position_within_drift_is_accepted():
    state = _game()
    state.queue_intent("peer-2", MoveIntent(direction=(0, 0), angle=0.0, position=(1600.0, 1500.0)))

    state.update(DT)

    assert state.players["peer-2"].position == Vec(1600, 1500)


def test_reported_position_beyond_drift_is_ignored():
    state = _game()
    state.queue_intent("peer-2", MoveIntent(direction=(0, 0), angle=0.0, position=(2500.0, 1500.0)))

    state.update(DT)

    assert state.players["peer-2"].position == Vec(1560, 1500)


def test_gather_range_uses_host_position():
    state = _game()
    state.trees["t-far"] = Tree("t-far", Vec(1560, 1800), 100)
    # Client claims to stand next to the tree; too far from where the host has them
    state.queue_intent("peer-2", MoveIntent(direction=(0, 0), angle=0.0, position=(1560.0, 1760.0)))
    state.queue_intent("peer-2", GatherIntent(tree_id="t-far", request_id=1))

    events = state.update(DT)

    assert events == []
    assert state.trees["t-far"].wood == 100
    assert state.players["peer-2"].wood == 0


def test_gather_in_range_moves_wood():
    state = _game()
    state.trees["t-near"] = Tree("t-near", Vec(1560, 1550), 15)

    state.queue_intent("peer-2", GatherIntent(tree_id="t-near", request_id=1))
    first = state.update(DT)
    state.queue_intent("peer-2", GatherIntent(tree_id="t-near", request_id=2))
    second = state.update(DT)

    assert first[0]["amount"] == 10
    assert first[0]["tree_wood"] == 5
    assert second[0]["player_wood"] == 15
    assert "t-near" not in state.trees


def test_one_bullet_per_cooldown():
    state = _game()
    state.queue_intent("host-1", ShootIntent(angle=0.0, request_id=1))
    state.queue_intent("host-1", ShootIntent(angle=0.0, request_id=2))

    events = state.update(DT)

    assert _types(events) == ["shoot"]
    assert events[0]["request_id"] == 1
    assert len(state.bullets) == 1


def test_bullet_kills_zombie_and_pays_shooter():
    state = _game()
    state.zombies["z-1"] = Zombie("z-1", Vec(1560, 1500), 20.0, previous=Vec(1560, 1500))
    state.players["peer-2"].position = Vec(1500, 2500)  # Out of the way
    state.queue_intent("host-1", ShootIntent(angle=0.0, request_id=1))

    state.update(DT)

    assert "z-1" not in state.zombies
    assert state.players["host-1"].money == 10
    assert state.bullets == {}


def test_walls_cost_wood_and_need_range():
    state = _game(starting_wood=30)

    state.queue_intent("host-1", PlaceWallIntent(x=1500.0, y=1400.0, request_id=1))
    placed = state.update(DT)
    state.queue_intent("host-1", PlaceWallIntent(x=1500.0, y=1300.0, request_id=2))
    refused = state.update(DT)

    assert _types(placed) == ["place-wall"]
    assert placed[0]["player_wood"] == 10
    assert refused == []
    assert len(state.walls) == 1


def test_buying_a_weapon_equips_it():
    state = _game(starting_money=200)
    state.queue_intent("peer-2", BuyIntent(item="rifle", request_id=1))

    events = state.update(DT)

    player = state.players["peer-2"]
    assert events[0]["item"] == "rifle"
    assert player.money == 50
    assert player.equipped == "rifle"
    assert player.inventory == ["pistol", "rifle"]


def test_cannot_afford_item():
    state = _game()
    state.queue_intent("peer-2", BuyIntent(item="shotgun", request_id=1))

    assert state.update(DT) == []
    assert state.players["peer-2"].inventory == ["pistol"]


def test_cannot_equip_unowned_weapon():
    state = _game()
    state.queue_intent("peer-2", MoveIntent(direction=(0, 0), angle=0.0, equipped="shotgun"))

    state.update(DT)

    assert state.players["peer-2"].equipped == "pistol"


def test_only_one_wave_at_a_time():
    state = _game()
    state.queue_intent("host-1", StartWaveIntent(request_id=1))
    state.queue_intent("peer-2", StartWaveIntent(request_id=1))

    events = state.update(DT)

    assert _types(events) == ["start-wave"]
    assert state.wave == 1
    assert len(state.zombies) == 5


def test_removed_player_intents_are_dropped():
    state = _game()
    state.queue_intent("peer-2", ShootIntent(angle=0.0, request_id=1))

    state.remove_player("peer-2")

    assert state.pending_intents == 0
    assert "peer-2" not in state.players


def test_game_over_when_everyone_is_down():
    state = _game()
    for player in state.players.values():
        player.health = 0

    events = state.update(DT)

    assert _types(events) == ["game-over"]
    assert state.game_over
    assert state.update(DT) == []


def test_reset_respawns_seated_players_into_an_empty_world():
    state = _game()
    state.queue_intent("host-1", StartWaveIntent(request_id=1))
    state.update(DT)
    for player in state.players.values():
        player.health = 0
    state.update(DT)

    state.reset()

    assert not state.game_over and not state.game_started
    assert (state.tick, state.wave, state.wave_active) == (0, 0, False)
    assert state.zombies == {} and state.trees == {}
    peer = state.players["peer-2"]
    assert peer.alive and peer.health == state.ruleset.player_max_health
    assert peer.position == Vec(1560, 1500)
    assert state.update(DT) == []  # Waits for start_game again


def test_snapshot_lists_every_entity():
    state = _game()
    snapshot = state.get_snapshot()

    assert snapshot.tick == 0
    assert {p.id for p in snapshot.players} == {"host-1", "peer-2"}
    assert len(snapshot.trees) == 20
