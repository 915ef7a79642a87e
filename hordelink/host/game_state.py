"""
Host-side game state manager: authoritative players, zombies, bullets,
walls and trees. Single source of truth for all shared entities; clients only
send intents, which are validated here against the host's own view.
"""

import itertools
import math
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from pygame.math import Vector2 as Vec

from hordelink.shared.constants import (
    WORLD_WIDTH, WORLD_HEIGHT, PLAYER_SPAWN_X, PLAYER_SPAWN_Y, MAX_POSITION_DRIFT,
)
from hordelink.shared.protocol import (
    Vector2, PlayerState, ZombieState, BulletState, WallState, TreeState,
    WorldSnapshot, MessageType,
)
from hordelink.shared.ruleset import SimulationRuleset


def _wire(vec: Vec) -> Vector2:
    return Vector2(vec.x, vec.y)


@dataclass
class Player:
    """Host-side player representation."""
    id: str
    slot: int
    position: Vec
    health: float
    money: int
    wood: int
    equipped: str
    inventory: List[str] = field(default_factory=list)
    angle: float = 0.0
    alive: bool = True
    direction: Vec = field(default_factory=Vec)
    last_shot: float = -math.inf

    def to_state(self) -> PlayerState:
        """Convert to PlayerState for network transmission."""
        return PlayerState(
            id=self.id,
            slot=self.slot,
            position=_wire(self.position),
            angle=self.angle,
            health=self.health,
            money=self.money,
            wood=self.wood,
            equipped=self.equipped,
            inventory=list(self.inventory),
            alive=self.alive,
        )


@dataclass
class Zombie:
    id: str
    position: Vec
    health: float
    previous: Vec = field(default_factory=Vec)
    killed_by: Optional[str] = None

    def to_state(self) -> ZombieState:
        return ZombieState(id=self.id, position=_wire(self.position), health=self.health)


@dataclass
class Bullet:
    id: str
    owner_id: str
    position: Vec
    velocity: Vec
    damage: float
    ttl: float
    spent: bool = False

    def to_state(self) -> BulletState:
        return BulletState(
            id=self.id,
            owner_id=self.owner_id,
            position=_wire(self.position),
            velocity=_wire(self.velocity),
        )


@dataclass
class Wall:
    id: str
    owner_id: str
    position: Vec
    health: float

    def to_state(self) -> WallState:
        return WallState(id=self.id, owner_id=self.owner_id, position=_wire(self.position), health=self.health)


@dataclass
class Tree:
    id: str
    position: Vec
    wood: int

    def to_state(self) -> TreeState:
        return TreeState(id=self.id, position=_wire(self.position), wood=self.wood)


# =============================================================================
# INTENTS - what a player asked for. Advisory until the host applies them.
# =============================================================================

@dataclass
class MoveIntent:
    direction: Tuple[float, float]
    angle: float
    equipped: Optional[str] = None
    position: Optional[Tuple[float, float]] = None  # Client's predicted position


@dataclass
class ShootIntent:
    angle: float
    request_id: int = 0


@dataclass
class GatherIntent:
    tree_id: str
    request_id: int = 0


@dataclass
class PlaceWallIntent:
    x: float
    y: float
    request_id: int = 0


@dataclass
class BuyIntent:
    item: str
    request_id: int = 0


@dataclass
class StartWaveIntent:
    request_id: int = 0


Intent = Union[MoveIntent, ShootIntent, GatherIntent, PlaceWallIntent, BuyIntent, StartWaveIntent]


class GameState:
    """
    Authoritative game state manager.
    All game logic and validation happens here, one tick at a time.
    """

    def __init__(self, ruleset: Optional[SimulationRuleset] = None,
                 rng: Optional[random.Random] = None):
        self.ruleset = ruleset or SimulationRuleset()
        self.rng = rng or random.Random()

        self.players: Dict[str, Player] = {}
        self.zombies: Dict[str, Zombie] = {}
        self.bullets: Dict[str, Bullet] = {}
        self.walls: Dict[str, Wall] = {}
        self.trees: Dict[str, Tree] = {}

        self.tick = 0
        self.time = 0.0  # Simulation clock, advances by dt each tick
        self.wave = 0
        self.wave_active = False
        self.game_started = False
        self.game_over = False

        self._intent_queue: List[Tuple[str, Intent]] = []
        self._ids = itertools.count(1)
        self._event_ids = itertools.count(1)

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    def add_player(self, player_id: str, slot: int) -> Player:
        """Add a player avatar. Slot 0 spawns dead centre, others beside it."""
        if player_id in self.players:
            return self.players[player_id]
        rules = self.ruleset
        player = Player(
            id=player_id,
            slot=slot,
            position=Vec(PLAYER_SPAWN_X + slot * 60, PLAYER_SPAWN_Y),
            health=rules.player_max_health,
            money=rules.starting_money,
            wood=rules.starting_wood,
            equipped=rules.starting_weapon,
            inventory=[rules.starting_weapon],
        )
        self.players[player_id] = player
        return player

    def remove_player(self, player_id: str) -> Optional[Player]:
        """Remove a player's avatar. Their walls stay standing."""
        self._intent_queue = [(pid, i) for pid, i in self._intent_queue if pid != player_id]
        return self.players.pop(player_id, None)

    def start_game(self):
        """Start the game and scatter the trees."""
        self.game_started = True
        self.game_over = False
        spawn = Vec(PLAYER_SPAWN_X, PLAYER_SPAWN_Y)
        margin = self.ruleset.tree_radius
        while len(self.trees) < self.ruleset.tree_count:
            pos = Vec(
                self.rng.uniform(margin, WORLD_WIDTH - margin),
                self.rng.uniform(margin, WORLD_HEIGHT - margin),
            )
            if pos.distance_to(spawn) < 200:
                continue  # Keep the spawn clear
            tree_id = f"t{next(self._ids)}"
            self.trees[tree_id] = Tree(tree_id, pos, self.ruleset.tree_wood)

    def queue_intent(self, player_id: str, intent: Intent):
        """Queue an intent for the next tick."""
        self._intent_queue.append((player_id, intent))

    @property
    def pending_intents(self) -> int:
        return len(self._intent_queue)

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def update(self, delta_time: float) -> List[Dict]:
        """
        Advance one tick. Order is fixed: intents, movement, collision,
        bookkeeping. Returns the discrete events that happened.
        """
        events: List[Dict] = []

        if not self.game_started or self.game_over:
            self._intent_queue.clear()
            return events

        self.tick += 1
        self.time += delta_time

        # Intents queued from here on belong to the next tick
        intents, self._intent_queue = self._intent_queue, []
        for player_id, intent in intents:
            self._apply_intent(player_id, intent, events)

        self._move_players(delta_time)
        self._move_zombies(delta_time)
        self._move_bullets(delta_time)

        self._resolve_collisions(delta_time)

        self._bookkeeping(events)
        return events

    def _event(self, events: List[Dict], msg_type: MessageType, **data) -> Dict:
        event = {"type": msg_type.value, "event_id": next(self._event_ids)}
        event.update(data)
        events.append(event)
        return event

    def _apply_intent(self, player_id: str, intent: Intent, events: List[Dict]):
        player = self.players.get(player_id)
        if player is None or not player.alive:
            return

        if isinstance(intent, MoveIntent):
            self._apply_move(player, intent)
        elif isinstance(intent, ShootIntent):
            self._apply_shoot(player, intent, events)
        elif isinstance(intent, GatherIntent):
            self._apply_gather(player, intent, events)
        elif isinstance(intent, PlaceWallIntent):
            self._apply_place_wall(player, intent, events)
        elif isinstance(intent, BuyIntent):
            self._apply_buy(player, intent, events)
        elif isinstance(intent, StartWaveIntent):
            if self.wave_active:
                print(f"[HOST] Wave {self.wave} still running, start-wave from {player.id} refused")
                return
            self._start_wave(player, intent, events)

    def _apply_move(self, player: Player, intent: MoveIntent):
        direction = Vec(intent.direction)
        if direction.length_squared() > 1.0:
            direction = direction.normalize()
        player.direction = direction
        player.angle = intent.angle

        if intent.equipped is not None and intent.equipped != player.equipped:
            if intent.equipped in player.inventory:
                player.equipped = intent.equipped
            else:
                print(f"[HOST] {player.id} tried to equip unowned {intent.equipped!r}")

        if intent.position is not None:
            reported = Vec(intent.position)
            # Small prediction drift is fine, anything bigger is ignored
            if reported.distance_to(player.position) <= MAX_POSITION_DRIFT:
                player.position = self._clamp(reported, self.ruleset.player_radius)

    def _apply_shoot(self, player: Player, intent: ShootIntent, events: List[Dict]):
        weapon = self.ruleset.shop.get(player.equipped)
        if weapon is None or weapon.fire_cooldown <= 0:
            print(f"[HOST] {player.id} cannot shoot with {player.equipped!r}")
            return
        if self.time - player.last_shot < weapon.fire_cooldown:
            return  # Still cooling down
        player.last_shot = self.time
        player.angle = intent.angle

        aim = Vec(math.cos(intent.angle), math.sin(intent.angle))
        bullet = Bullet(
            id=f"b{next(self._ids)}",
            owner_id=player.id,
            position=player.position + aim * self.ruleset.player_radius,
            velocity=aim * self.ruleset.bullet_speed,
            damage=weapon.damage,
            ttl=self.ruleset.bullet_lifetime,
        )
        self.bullets[bullet.id] = bullet
        self._event(events, MessageType.SHOOT, player_id=player.id,
                    request_id=intent.request_id, bullet=bullet.to_state().to_dict())

    def _apply_gather(self, player: Player, intent: GatherIntent, events: List[Dict]):
        tree = self.trees.get(intent.tree_id)
        if tree is None or tree.wood <= 0:
            return
        # Range is checked against where *we* think the player is
        if player.position.distance_to(tree.position) > self.ruleset.gather_range:
            print(f"[HOST] Gather from {player.id} out of range of {tree.id}")
            return
        amount = min(self.ruleset.gather_amount, tree.wood)
        tree.wood -= amount
        player.wood += amount
        self._event(events, MessageType.GATHER, player_id=player.id, request_id=intent.request_id,
                    tree_id=tree.id, amount=amount, tree_wood=tree.wood, player_wood=player.wood)

    def _apply_place_wall(self, player: Player, intent: PlaceWallIntent, events: List[Dict]):
        rules = self.ruleset
        pos = Vec(intent.x, intent.y)
        if player.wood < rules.wall_cost:
            print(f"[HOST] {player.id} lacks wood for a wall")
            return
        if player.position.distance_to(pos) > rules.build_range:
            print(f"[HOST] Wall from {player.id} out of build range")
            return
        if pos != self._clamp(pos, rules.wall_size / 2):
            return
        if any(w.position.distance_to(pos) < rules.wall_size for w in self.walls.values()):
            return
        player.wood -= rules.wall_cost
        wall = Wall(f"w{next(self._ids)}", player.id, pos, rules.wall_health)
        self.walls[wall.id] = wall
        self._event(events, MessageType.PLACE_WALL, player_id=player.id, request_id=intent.request_id,
                    wall=wall.to_state().to_dict(), player_wood=player.wood)

    def _apply_buy(self, player: Player, intent: BuyIntent, events: List[Dict]):
        item = self.ruleset.shop.get(intent.item)
        if item is None:
            print(f"[HOST] Unknown shop item {intent.item!r}")
            return
        is_weapon = item.fire_cooldown > 0
        if is_weapon and item.name in player.inventory:
            return
        if player.money < item.price:
            print(f"[HOST] {player.id} cannot afford {item.name}")
            return
        player.money -= item.price
        if is_weapon:
            player.inventory.append(item.name)
            player.equipped = item.name
        else:
            player.health = min(self.ruleset.player_max_health, player.health + self.ruleset.medkit_heal)
        self._event(events, MessageType.BUY_ITEM, player_id=player.id, request_id=intent.request_id,
                    item=item.name, player_money=player.money, inventory=list(player.inventory),
                    equipped=player.equipped, health=player.health)

    def _start_wave(self, player: Player, intent: StartWaveIntent, events: List[Dict]):
        rules = self.ruleset
        self.wave += 1
        self.wave_active = True
        count = rules.zombies_first_wave + (self.wave - 1) * rules.zombies_per_wave_growth
        for _ in range(count):
            self._spawn_zombie()
        print(f"[HOST] Wave {self.wave} started by {player.id} with {count} zombies")
        self._event(events, MessageType.START_WAVE, player_id=player.id,
                    request_id=intent.request_id, wave=self.wave, zombie_count=count)

    def _spawn_zombie(self):
        """Spawn a zombie somewhere along the world edge."""
        r = self.ruleset.zombie_radius
        edge = self.rng.randrange(4)
        along = self.rng.uniform(r, (WORLD_WIDTH if edge < 2 else WORLD_HEIGHT) - r)
        if edge == 0:
            pos = Vec(along, r)
        elif edge == 1:
            pos = Vec(along, WORLD_HEIGHT - r)
        elif edge == 2:
            pos = Vec(r, along)
        else:
            pos = Vec(WORLD_WIDTH - r, along)
        zombie = Zombie(f"z{next(self._ids)}", pos, self.ruleset.zombie_health, previous=Vec(pos))
        self.zombies[zombie.id] = zombie

    # -------------------------------------------------------------------------
    # Movement
    # -------------------------------------------------------------------------

    @staticmethod
    def _clamp(pos: Vec, radius: float) -> Vec:
        return Vec(
            max(radius, min(WORLD_WIDTH - radius, pos.x)),
            max(radius, min(WORLD_HEIGHT - radius, pos.y)),
        )

    def _move_players(self, dt: float):
        speed = self.ruleset.player_speed
        for player in self.players.values():
            if not player.alive or player.direction.length_squared() == 0:
                continue
            player.position = self._clamp(player.position + player.direction * speed * dt,
                                          self.ruleset.player_radius)

    def _move_zombies(self, dt: float):
        alive = [p for p in self.players.values() if p.alive]
        step = self.ruleset.zombie_speed * dt
        for zombie in self.zombies.values():
            zombie.previous = Vec(zombie.position)
            if not alive:
                continue
            target = min(alive, key=lambda p: zombie.position.distance_squared_to(p.position))
            delta = target.position - zombie.position
            distance = delta.length()
            if distance > 0:
                zombie.position = zombie.position + delta * min(1.0, step / distance)

    def _move_bullets(self, dt: float):
        for bullet in self.bullets.values():
            bullet.position = bullet.position + bullet.velocity * dt
            bullet.ttl -= dt

    # -------------------------------------------------------------------------
    # Collision - everyone has moved, resolve against that view
    # -------------------------------------------------------------------------

    def _resolve_collisions(self, dt: float):
        rules = self.ruleset

        hit_radius = rules.zombie_radius + rules.bullet_radius
        for bullet in self.bullets.values():
            for zombie in self.zombies.values():
                if zombie.health <= 0:
                    continue
                if bullet.position.distance_to(zombie.position) < hit_radius:
                    zombie.health -= bullet.damage
                    if zombie.health <= 0 and zombie.killed_by is None:
                        zombie.killed_by = bullet.owner_id
                    bullet.spent = True
                    break  # One zombie per bullet

        block_radius = rules.wall_size / 2 + rules.zombie_radius
        for zombie in self.zombies.values():
            for wall in self.walls.values():
                if wall.health > 0 and zombie.position.distance_to(wall.position) < block_radius:
                    zombie.position = zombie.previous
                    wall.health -= rules.zombie_wall_damage * dt
                    break

        touch_radius = rules.player_radius + rules.zombie_radius
        for player in self.players.values():
            if not player.alive:
                continue
            for zombie in self.zombies.values():
                if zombie.health > 0 and zombie.position.distance_to(player.position) < touch_radius:
                    player.health -= rules.zombie_damage * dt

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    def _bookkeeping(self, events: List[Dict]):
        for zombie_id in [z.id for z in self.zombies.values() if z.health <= 0]:
            zombie = self.zombies.pop(zombie_id)
            killer = self.players.get(zombie.killed_by) if zombie.killed_by else None
            if killer is not None:
                killer.money += self.ruleset.zombie_kill_reward

        for bullet_id in [b.id for b in self.bullets.values()
                          if b.spent or b.ttl <= 0 or not self._in_world(b.position)]:
            del self.bullets[bullet_id]

        for wall_id in [w.id for w in self.walls.values() if w.health <= 0]:
            del self.walls[wall_id]

        for tree_id in [t.id for t in self.trees.values() if t.wood <= 0]:
            del self.trees[tree_id]

        for player in self.players.values():
            if player.alive and player.health <= 0:
                player.alive = False
                player.health = 0.0
                player.direction = Vec()
                print(f"[HOST] Player {player.id} is down")

        if self.wave_active and not self.zombies:
            self.wave_active = False
            print(f"[HOST] Wave {self.wave} cleared")

        if self.players and not any(p.alive for p in self.players.values()):
            self.game_over = True
            self._event(events, MessageType.GAME_OVER, wave=self.wave)
            print(f"[HOST] Game over on wave {self.wave}")

    @staticmethod
    def _in_world(pos: Vec) -> bool:
        return 0 <= pos.x <= WORLD_WIDTH and 0 <= pos.y <= WORLD_HEIGHT

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def get_snapshot(self) -> WorldSnapshot:
        """Get current world state for network transmission."""
        return WorldSnapshot(
            tick=self.tick,
            wave=self.wave,
            wave_active=self.wave_active,
            game_over=self.game_over,
            players=[p.to_state() for p in self.players.values()],
            zombies=[z.to_state() for z in self.zombies.values()],
            bullets=[b.to_state() for b in self.bullets.values()],
            walls=[w.to_state() for w in self.walls.values()],
            trees=[t.to_state() for t in self.trees.values()],
        )

    def reset(self):
        """Wipe the world for a rematch. Seated players respawn with fresh stats."""
        seated = [(p.id, p.slot) for p in self.players.values()]
        self.players.clear()
        self.zombies.clear()
        self.bullets.clear()
        self.walls.clear()
        self.trees.clear()
        self._intent_queue.clear()
        self.tick = 0
        self.time = 0.0
        self.wave = 0
        self.wave_active = False
        self.game_started = False
        self.game_over = False
        for player_id, slot in seated:
            self.add_player(player_id, slot)
