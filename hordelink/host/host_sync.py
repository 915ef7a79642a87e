"""
Host side of state synchronization.
Turns client messages into simulation intents, runs the tick, relays discrete
events immediately and broadcasts full snapshots at a fixed interval.
Only ever constructed on the host.
"""

import json
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Set, Tuple

from hordelink.shared.constants import SNAPSHOT_BROADCAST_RATE
from hordelink.shared.errors import ChannelClosed
from hordelink.shared.protocol import (
    ACTION_TYPES, Message, MessageType,
    create_event_message, create_game_state_message, create_start_game_message,
)
from hordelink.net.registry import PeerRegistry
from hordelink.host.game_state import (
    GameState, MoveIntent, ShootIntent, GatherIntent, PlaceWallIntent, BuyIntent, StartWaveIntent,
)


class HostSynchronizer:
    """
    Host-side synchronizer.
    Owns the outbound sequence counters (one per message type) and the
    per-peer inbound ones used to drop stale or duplicate client messages.
    """

    def __init__(self, game_state: GameState, registry: PeerRegistry,
                 broadcast_rate: float = SNAPSHOT_BROADCAST_RATE,
                 on_send_failed: Optional[Callable[[str, ChannelClosed], None]] = None):
        self.game_state = game_state
        self.registry = registry
        self.broadcast_interval = 1.0 / broadcast_rate
        self.on_send_failed = on_send_failed

        self._out_seq: Dict[MessageType, int] = defaultdict(int)
        self._in_seq: Dict[Tuple[str, MessageType], int] = {}
        self._last_request: Dict[str, int] = {}
        self._moved: Set[str] = set()

        self.last_broadcast_time: Optional[float] = None
        self.snapshots_sent = 0
        self.stale_dropped = 0

    def _next_seq(self, msg_type: MessageType) -> int:
        self._out_seq[msg_type] += 1
        return self._out_seq[msg_type]

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def send_to_peer(self, peer_id: str, message: Message) -> bool:
        """Send one message to one open peer."""
        return self._send_text(peer_id, message.to_json())

    def _send_text(self, peer_id: str, text: str) -> bool:
        peer = self.registry.get(peer_id)
        if peer is None or not peer.is_open:
            return False
        try:
            peer.channel.send(text)
            return True
        except ChannelClosed as e:
            print(f"[HOST] Send to {peer_id} failed: {e}")
            if self.on_send_failed:
                self.on_send_failed(peer_id, e)
            return False

    def broadcast(self, message: Message, exclude: Optional[str] = None) -> int:
        """Send to every open peer. Returns how many got it."""
        text = message.to_json()
        sent = 0
        for peer in self.registry.open_peers():
            if peer.identity != exclude and self._send_text(peer.identity, text):
                sent += 1
        return sent

    def broadcast_snapshot(self) -> int:
        """Serialize the whole world once and push it to every open peer."""
        snapshot = self.game_state.get_snapshot()
        message = create_game_state_message(snapshot, self._next_seq(MessageType.GAME_STATE))
        self.snapshots_sent += 1
        return self.broadcast(message)

    def relay_events(self, events: List[Dict]):
        """Discrete events go out right away, not with the next snapshot."""
        for event in events:
            msg_type = MessageType(event["type"])
            self.broadcast(create_event_message(event, self._next_seq(msg_type)))

    def send_start_game(self, peer_id: Optional[str] = None):
        """Tell one peer (late joiner) or everyone that the game is on."""
        message = create_start_game_message(self._next_seq(MessageType.START_GAME))
        if peer_id is None:
            self.broadcast(message)
        else:
            self.send_to_peer(peer_id, message)

    def relay_movement(self):
        """
        Forward the moves reported since the last tick to everyone else.
        Values come from the simulation after it accepted or rejected them,
        never from the client's payload.
        """
        for peer_id in sorted(self._moved):
            player = self.game_state.players.get(peer_id)
            if player is None:
                continue
            relay = Message(MessageType.PLAYER_UPDATE, {
                "player_id": peer_id,
                "position": {"x": player.position.x, "y": player.position.y},
                "angle": player.angle,
                "equipped": player.equipped,
            }, seq=self._next_seq(MessageType.PLAYER_UPDATE))
            self.broadcast(relay, exclude=peer_id)
        self._moved.clear()

    def step(self, delta_time: float, now: float) -> List[Dict]:
        """One host tick: simulate, relay moves and events, snapshot when due."""
        events = self.game_state.update(delta_time)
        self.relay_movement()
        if events:
            self.relay_events(events)
        if self.last_broadcast_time is None or now - self.last_broadcast_time >= self.broadcast_interval:
            self.broadcast_snapshot()
            self.last_broadcast_time = now
        return events

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def handle_message(self, peer_id: str, raw_message: str) -> bool:
        """Process one client message. Returns True if it was used."""
        try:
            message = Message.from_json(raw_message)
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            print(f"[HOST] Invalid message from {peer_id}: {e}")
            return False

        if peer_id not in self.registry:
            return False

        if message.seq is not None:
            key = (peer_id, message.type)
            if message.seq <= self._in_seq.get(key, 0):
                self.stale_dropped += 1
                return False
            self._in_seq[key] = message.seq

        try:
            if message.type == MessageType.PLAYER_UPDATE:
                self._handle_player_update(peer_id, message.data)
                return True
            if message.type in ACTION_TYPES:
                return self._handle_action(peer_id, message)
        except (KeyError, TypeError, ValueError) as e:
            print(f"[HOST] Malformed {message.type.value} from {peer_id}: {e}")
            return False

        print(f"[HOST] Ignoring {message.type.value} from {peer_id}, not a client message")
        return False

    def _handle_player_update(self, peer_id: str, data: Dict):
        # The channel says who this is, whatever the payload claims
        direction = data.get("direction") or {"x": 0.0, "y": 0.0}
        position = data.get("position")
        intent = MoveIntent(
            direction=(float(direction["x"]), float(direction["y"])),
            angle=float(data.get("angle", 0.0)),
            equipped=data.get("equipped"),
            position=(float(position["x"]), float(position["y"])) if position else None,
        )
        self.game_state.queue_intent(peer_id, intent)
        self._moved.add(peer_id)

    def _handle_action(self, peer_id: str, message: Message) -> bool:
        data = message.data
        request_id = int(data.get("request_id", 0))
        if request_id <= self._last_request.get(peer_id, 0):
            print(f"[HOST] Duplicate request {request_id} from {peer_id}, dropping")
            return False
        self._last_request[peer_id] = request_id

        if message.type == MessageType.SHOOT:
            intent = ShootIntent(angle=float(data["angle"]), request_id=request_id)
        elif message.type == MessageType.GATHER:
            intent = GatherIntent(tree_id=str(data["tree_id"]), request_id=request_id)
        elif message.type == MessageType.PLACE_WALL:
            intent = PlaceWallIntent(x=float(data["x"]), y=float(data["y"]), request_id=request_id)
        elif message.type == MessageType.BUY_ITEM:
            intent = BuyIntent(item=str(data["item"]), request_id=request_id)
        else:
            intent = StartWaveIntent(request_id=request_id)

        self.game_state.queue_intent(peer_id, intent)
        return True

    def forget_peer(self, peer_id: str):
        """Drop per-peer sequence state when a peer leaves."""
        self._last_request.pop(peer_id, None)
        self._moved.discard(peer_id)
        for key in [k for k in self._in_seq if k[0] == peer_id]:
            del self._in_seq[key]
