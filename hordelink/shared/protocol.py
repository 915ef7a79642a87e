"""
Wire protocol for hordelink.
Two vocabularies live here: the peer data-channel messages (host <-> clients)
and the rendezvous/signaling messages (peer <-> signaling service).
Plus the entity state dataclasses and the snapshot codec.
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
import json


class MessageType(str, Enum):
    """Peer data-channel message tags."""

    # Host -> all
    GAME_STATE = "game-state"        # Full world snapshot
    START_GAME = "start-game"        # Session moved from waiting to playing
    GAME_OVER = "game-over"          # Every player is down

    # Client -> host (request) and host -> all (relayed event)
    PLAYER_UPDATE = "player-update"  # Position / angle / equipped item
    SHOOT = "shoot"
    PLACE_WALL = "place-wall"
    GATHER = "gather"
    BUY_ITEM = "buy-item"
    START_WAVE = "start-wave"


# Discrete actions: sent once per user action, relayed immediately by the host
ACTION_TYPES = frozenset({
    MessageType.SHOOT,
    MessageType.PLACE_WALL,
    MessageType.GATHER,
    MessageType.BUY_ITEM,
    MessageType.START_WAVE,
})


class SignalType(str, Enum):
    """Rendezvous service message tags."""

    # Peer -> service
    CREATE_ROOM = "create-room"
    JOIN_ROOM = "join-room"
    LIST_ROOMS = "list-rooms"
    LEAVE_ROOM = "leave-room"

    # Service -> peer
    YOUR_ID = "your-id"              # Identity assigned on connect
    ROOM_CREATED = "room-created"
    ROOM_JOINED = "room-joined"
    ROOM_LIST = "room-list"
    PLAYER_JOINED = "player-joined"
    PLAYER_LEFT = "player-left"
    ERROR = "error"

    # Relayed both ways
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


@dataclass
class Vector2:
    """2D vector/position."""
    x: float
    y: float

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y}

    @staticmethod
    def from_dict(data: Dict[str, float]) -> "Vector2":
        return Vector2(x=float(data["x"]), y=float(data["y"]))


@dataclass
class PlayerState:
    """State of a single player avatar."""
    id: str
    slot: int
    position: Vector2
    angle: float
    health: float
    money: int
    wood: int
    equipped: str
    inventory: List[str] = field(default_factory=list)
    alive: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "slot": self.slot,
            "position": self.position.to_dict(),
            "angle": self.angle,
            "health": self.health,
            "money": self.money,
            "wood": self.wood,
            "equipped": self.equipped,
            "inventory": list(self.inventory),
            "alive": self.alive,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "PlayerState":
        return PlayerState(
            id=data["id"],
            slot=data["slot"],
            position=Vector2.from_dict(data["position"]),
            angle=data["angle"],
            health=data["health"],
            money=data["money"],
            wood=data["wood"],
            equipped=data["equipped"],
            inventory=list(data.get("inventory", [])),
            alive=data.get("alive", True),
        )


@dataclass
class ZombieState:
    """State of a single hostile agent."""
    id: str
    position: Vector2
    health: float

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "position": self.position.to_dict(), "health": self.health}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ZombieState":
        return ZombieState(
            id=data["id"],
            position=Vector2.from_dict(data["position"]),
            health=data["health"],
        )


@dataclass
class BulletState:
    """State of a projectile in flight."""
    id: str
    owner_id: str
    position: Vector2
    velocity: Vector2

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "position": self.position.to_dict(),
            "velocity": self.velocity.to_dict(),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BulletState":
        return BulletState(
            id=data["id"],
            owner_id=data["owner_id"],
            position=Vector2.from_dict(data["position"]),
            velocity=Vector2.from_dict(data["velocity"]),
        )


@dataclass
class WallState:
    """State of a placed wall."""
    id: str
    owner_id: str
    position: Vector2
    health: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "position": self.position.to_dict(),
            "health": self.health,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "WallState":
        return WallState(
            id=data["id"],
            owner_id=data["owner_id"],
            position=Vector2.from_dict(data["position"]),
            health=data["health"],
        )


@dataclass
class TreeState:
    """State of a resource node."""
    id: str
    position: Vector2
    wood: int

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "position": self.position.to_dict(), "wood": self.wood}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "TreeState":
        return TreeState(
            id=data["id"],
            position=Vector2.from_dict(data["position"]),
            wood=data["wood"],
        )


@dataclass
class WorldSnapshot:
    """Complete authoritative world state at one host tick."""
    tick: int
    wave: int
    wave_active: bool
    game_over: bool
    players: List[PlayerState] = field(default_factory=list)
    zombies: List[ZombieState] = field(default_factory=list)
    bullets: List[BulletState] = field(default_factory=list)
    walls: List[WallState] = field(default_factory=list)
    trees: List[TreeState] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tick": self.tick,
            "wave": self.wave,
            "wave_active": self.wave_active,
            "game_over": self.game_over,
            "players": [p.to_dict() for p in self.players],
            "zombies": [z.to_dict() for z in self.zombies],
            "bullets": [b.to_dict() for b in self.bullets],
            "walls": [w.to_dict() for w in self.walls],
            "trees": [t.to_dict() for t in self.trees],
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "WorldSnapshot":
        return WorldSnapshot(
            tick=data["tick"],
            wave=data["wave"],
            wave_active=data["wave_active"],
            game_over=data["game_over"],
            players=[PlayerState.from_dict(p) for p in data.get("players", [])],
            zombies=[ZombieState.from_dict(z) for z in data.get("zombies", [])],
            bullets=[BulletState.from_dict(b) for b in data.get("bullets", [])],
            walls=[WallState.from_dict(w) for w in data.get("walls", [])],
            trees=[TreeState.from_dict(t) for t in data.get("trees", [])],
        )


@dataclass
class RoomInfo:
    """One row of a room listing. A snapshot, not live."""
    code: str
    occupancy: int
    capacity: int


@dataclass
class JoinResult:
    """What the rendezvous service told us after joining a room."""
    code: str
    slot: int
    members: Dict[int, str]  # slot -> peer id

    @property
    def host_id(self) -> Optional[str]:
        return self.members.get(0)


@dataclass
class Room:
    """The room this peer is sitting in."""
    code: str
    host_id: str
    member_slots: Dict[int, str] = field(default_factory=dict)
    capacity: int = 4

    def slot_of(self, peer_id: str) -> Optional[int]:
        for slot, member in self.member_slots.items():
            if member == peer_id:
                return slot
        return None


class Message:
    """Peer data-channel message. Tagged by type, optionally sequenced."""

    def __init__(self, msg_type: MessageType, data: Optional[Dict[str, Any]] = None,
                 seq: Optional[int] = None):
        self.type = msg_type
        self.data = data or {}
        self.seq = seq

    def to_json(self) -> str:
        """Serialize message to JSON string."""
        obj = {"type": self.type.value, "data": self.data}
        if self.seq is not None:
            obj["seq"] = self.seq
        return json.dumps(obj)

    @staticmethod
    def from_json(json_str: str) -> "Message":
        """
        Deserialize message from JSON string.
        Raises ValueError for unknown tags, callers ignore those.
        """
        obj = json.loads(json_str)
        if not isinstance(obj, dict):
            raise ValueError("message is not an object")
        seq = obj.get("seq")
        return Message(
            msg_type=MessageType(obj["type"]),
            data=obj.get("data") or {},
            seq=int(seq) if seq is not None else None,
        )


# =============================================================================
# SIGNALING - flat JSON objects, one "type" field
# =============================================================================

def encode_signal(signal_type: SignalType, **fields: Any) -> str:
    """Build a rendezvous message."""
    obj = {"type": signal_type.value}
    obj.update(fields)
    return json.dumps(obj)


def decode_signal(raw: str) -> Dict[str, Any]:
    """Parse a rendezvous message; the type field stays a plain string."""
    obj = json.loads(raw)
    if not isinstance(obj, dict) or "type" not in obj:
        raise ValueError("signal without a type")
    return obj


# =============================================================================
# MESSAGE FACTORIES - Convenience functions to create specific messages
# =============================================================================

def create_game_state_message(snapshot: WorldSnapshot, seq: int) -> Message:
    """Create a full snapshot message."""
    return Message(MessageType.GAME_STATE, snapshot.to_dict(), seq=seq)


def create_player_update_message(player_id: str, position: Vector2, angle: float,
                                 equipped: str, direction: Vector2, seq: int) -> Message:
    """Create a position/orientation report."""
    return Message(MessageType.PLAYER_UPDATE, {
        "player_id": player_id,
        "position": position.to_dict(),
        "angle": angle,
        "equipped": equipped,
        "direction": direction.to_dict(),
    }, seq=seq)


def create_action_request(msg_type: MessageType, request_id: int, seq: int,
                          **payload: Any) -> Message:
    """Create a client -> host action request (shoot, gather, ...)."""
    data = {"request_id": request_id}
    data.update(payload)
    return Message(msg_type, data, seq=seq)


def create_event_message(event: Dict[str, Any], seq: int) -> Message:
    """Wrap a host simulation event for relay. The event's type is the tag."""
    data = {k: v for k, v in event.items() if k != "type"}
    return Message(MessageType(event["type"]), data, seq=seq)


def create_start_game_message(seq: int) -> Message:
    """Create a start-game notice."""
    return Message(MessageType.START_GAME, {}, seq=seq)
