"""
Client-side view of the shared world.
Everything non-local is replaced wholesale from host snapshots. The local
avatar is merged through an explicit per-field ownership table: fields the
client predicts stay local, the rest follow the host.
"""

import copy
from collections import deque
from dataclasses import fields
from enum import Enum
from typing import Any, Deque, Dict, Optional, Set

from hordelink.shared.constants import DESYNC_SNAP_DISTANCE, EVENT_DEDUP_WINDOW
from hordelink.shared.protocol import (
    MessageType, PlayerState, ZombieState, BulletState, WallState, TreeState,
    Vector2, WorldSnapshot,
)
from hordelink.client.prediction import ClientSidePrediction


class FieldOwner(str, Enum):
    LOCAL = "local"  # Predicted by this client, never overwritten by snapshots
    HOST = "host"    # Host-confirmed, snapshots always win


# Every PlayerState field must be listed here
PLAYER_FIELD_OWNERSHIP: Dict[str, FieldOwner] = {
    "id": FieldOwner.HOST,
    "slot": FieldOwner.HOST,
    "position": FieldOwner.LOCAL,
    "angle": FieldOwner.LOCAL,
    "health": FieldOwner.HOST,
    "money": FieldOwner.HOST,
    "wood": FieldOwner.HOST,
    "equipped": FieldOwner.HOST,
    "inventory": FieldOwner.HOST,
    "alive": FieldOwner.HOST,
}


def merge_local_player(predicted: PlayerState, confirmed: PlayerState) -> PlayerState:
    """Build the local avatar from the predicted and host-confirmed copies."""
    values = {}
    for f in fields(PlayerState):
        owner = PLAYER_FIELD_OWNERSHIP[f.name]
        source = predicted if owner == FieldOwner.LOCAL else confirmed
        values[f.name] = copy.deepcopy(getattr(source, f.name))
    return PlayerState(**values)


class ClientPhase(str, Enum):
    WAITING = "waiting"
    PLAYING = "playing"
    GAME_OVER = "game_over"


class ClientWorldView:
    """What this client believes the world looks like."""

    def __init__(self, local_id: str, prediction: ClientSidePrediction):
        self.local_id = local_id
        self.prediction = prediction

        self.players: Dict[str, PlayerState] = {}  # Remote players only
        self.zombies: Dict[str, ZombieState] = {}
        self.bullets: Dict[str, BulletState] = {}
        self.walls: Dict[str, WallState] = {}
        self.trees: Dict[str, TreeState] = {}

        self.tick = 0
        self.wave = 0
        self.wave_active = False
        self.phase = ClientPhase.WAITING

        self._confirmed_local: Optional[PlayerState] = None
        self._applied_order: Deque[Any] = deque()
        self._applied_ids: Set[Any] = set()

    @property
    def game_over(self) -> bool:
        return self.phase == ClientPhase.GAME_OVER

    @property
    def local_player(self) -> Optional[PlayerState]:
        """Local avatar: predicted position/angle + host-confirmed everything else."""
        if self._confirmed_local is None:
            return None
        predicted = copy.deepcopy(self._confirmed_local)
        predicted.position = self.prediction.wire_position()
        predicted.angle = self.prediction.angle
        return merge_local_player(predicted, self._confirmed_local)

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def apply_snapshot(self, snapshot: WorldSnapshot):
        """Replace all remote state; merge the local avatar field by field."""
        self.tick = snapshot.tick
        self.wave = snapshot.wave
        self.wave_active = snapshot.wave_active
        if snapshot.game_over:
            self.phase = ClientPhase.GAME_OVER
        elif self.phase == ClientPhase.WAITING:
            self.phase = ClientPhase.PLAYING

        confirmed_local: Optional[PlayerState] = None
        remote: Dict[str, PlayerState] = {}
        for player in snapshot.players:
            if player.id == self.local_id:
                confirmed_local = player
            else:
                remote[player.id] = player
        self.players = remote
        self._merge_local(confirmed_local)

        self.zombies = {z.id: z for z in snapshot.zombies}
        self.bullets = {b.id: b for b in snapshot.bullets}
        self.walls = {w.id: w for w in snapshot.walls}
        self.trees = {t.id: t for t in snapshot.trees}

    def _merge_local(self, confirmed: Optional[PlayerState]):
        self._confirmed_local = confirmed
        if confirmed is None:
            return
        if not self.prediction.initialized:
            self.prediction.reset(confirmed.position, confirmed.angle)
            return
        dx = confirmed.position.x - self.prediction.position.x
        dy = confirmed.position.y - self.prediction.position.y
        if (dx * dx + dy * dy) ** 0.5 > DESYNC_SNAP_DISTANCE:
            # Respawn, teleport or a real desync: only then does the host move us
            print("[CLIENT] Large position desync, snapping to host position")
            self.prediction.reset(confirmed.position, self.prediction.angle)

    def apply_remote_player_update(self, data: Dict[str, Any]) -> bool:
        """Between-snapshot position relay for someone else's avatar."""
        player = self.players.get(data.get("player_id"))
        if player is None:
            return False
        if data.get("position"):
            player.position = Vector2.from_dict(data["position"])
        if data.get("angle") is not None:
            player.angle = float(data["angle"])
        if data.get("equipped"):
            player.equipped = data["equipped"]
        return True

    # -------------------------------------------------------------------------
    # Discrete events
    # -------------------------------------------------------------------------

    def _remember(self, event_id: Any) -> bool:
        """False if we already applied this event."""
        if event_id in self._applied_ids:
            return False
        self._applied_ids.add(event_id)
        self._applied_order.append(event_id)
        while len(self._applied_order) > EVENT_DEDUP_WINDOW:
            self._applied_ids.discard(self._applied_order.popleft())
        return True

    def _player(self, player_id: str) -> Optional[PlayerState]:
        if player_id == self.local_id:
            return self._confirmed_local
        return self.players.get(player_id)

    def apply_event(self, msg_type: MessageType, data: Dict[str, Any]) -> bool:
        """Apply a relayed event once. Returns False for duplicates."""
        event_id = data.get("event_id")
        if event_id is not None and not self._remember(event_id):
            return False

        player = self._player(data.get("player_id", ""))

        if msg_type == MessageType.SHOOT:
            bullet = BulletState.from_dict(data["bullet"])
            self.bullets.setdefault(bullet.id, bullet)

        elif msg_type == MessageType.PLACE_WALL:
            wall = WallState.from_dict(data["wall"])
            self.walls.setdefault(wall.id, wall)
            if player is not None:
                player.wood = data["player_wood"]

        elif msg_type == MessageType.GATHER:
            tree_id = data["tree_id"]
            if data["tree_wood"] <= 0:
                self.trees.pop(tree_id, None)
            elif tree_id in self.trees:
                self.trees[tree_id].wood = data["tree_wood"]
            if player is not None:
                player.wood = data["player_wood"]

        elif msg_type == MessageType.BUY_ITEM:
            if player is not None:
                player.money = data["player_money"]
                player.inventory = list(data["inventory"])
                player.equipped = data["equipped"]
                player.health = data["health"]

        elif msg_type == MessageType.START_WAVE:
            self.wave = data["wave"]
            self.wave_active = True

        elif msg_type == MessageType.GAME_OVER:
            self.phase = ClientPhase.GAME_OVER

        else:
            return False
        return True

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    def start(self):
        if self.phase == ClientPhase.WAITING:
            self.phase = ClientPhase.PLAYING

    def remove_player(self, player_id: str):
        self.players.pop(player_id, None)

    def clear(self):
        self.players.clear()
        self.zombies.clear()
        self.bullets.clear()
        self.walls.clear()
        self.trees.clear()
        self._confirmed_local = None
        self.prediction.initialized = False  # Next snapshot seeds it again
        self._applied_order.clear()
        self._applied_ids.clear()
        self.tick = 0
        self.wave = 0
        self.wave_active = False
        self.phase = ClientPhase.WAITING
