"""
Game session lifecycle.
One GameSession owns everything a participant needs for one room: the peer
registry, one negotiator per remote peer, and either the authoritative
simulation (host) or the predicted client view (client). The role is decided
once, when the room is created or joined; nothing below this layer checks it.
"""

import asyncio
import itertools
import random
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from hordelink.shared.constants import HOST_SLOT, HOST_TICK_RATE, NEGOTIATION_TIMEOUT
from hordelink.shared.errors import (
    ChannelClosed, NegotiationFailed, RendezvousUnavailable, RoomNotFound,
)
from hordelink.shared.protocol import JoinResult, MessageType, Room
from hordelink.shared.ruleset import SimulationRuleset
from hordelink.net.negotiator import ConnectionNegotiator, PeerTransport
from hordelink.net.registry import NegotiationRole, PeerConnection, PeerRegistry, Role
from hordelink.host.game_state import (
    GameState, MoveIntent, ShootIntent, GatherIntent, PlaceWallIntent, BuyIntent, StartWaveIntent,
)
from hordelink.host.host_sync import HostSynchronizer
from hordelink.client.prediction import ClientSidePrediction
from hordelink.client.world_view import ClientWorldView
from hordelink.client.client_sync import ClientSynchronizer


class SessionPhase(str, Enum):
    LOBBY = "lobby"          # Not in a room
    WAITING = "waiting"      # In a room, game not started
    PLAYING = "playing"
    GAME_OVER = "game_over"


class GameSession:
    """
    One participant's session. Build it with create(), drop it with teardown().
    """

    def __init__(self, directory: Any, transport_factory: Callable[[bool], PeerTransport],
                 ruleset: Optional[SimulationRuleset] = None, rng: Optional[random.Random] = None,
                 negotiation_timeout: Optional[float] = NEGOTIATION_TIMEOUT,
                 clock: Callable[[], float] = time.monotonic):
        self.directory = directory
        self.transport_factory = transport_factory
        self.ruleset = ruleset or SimulationRuleset()
        self.rng = rng
        self.negotiation_timeout = negotiation_timeout
        self.clock = clock

        self.phase = SessionPhase.LOBBY
        self.room: Optional[Room] = None
        self.registry: Optional[PeerRegistry] = None
        self.negotiators: Dict[str, ConnectionNegotiator] = {}
        self._timeouts: Dict[str, asyncio.TimerHandle] = {}
        self._reconnect_task: Optional[asyncio.Task] = None

        # Host only
        self.game_state: Optional[GameState] = None
        self.host_sync: Optional[HostSynchronizer] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._local_direction = (0.0, 0.0)
        self._local_angle = 0.0
        self._local_requests = itertools.count(1)

        # Client only
        self.prediction: Optional[ClientSidePrediction] = None
        self.view: Optional[ClientWorldView] = None
        self.client_sync: Optional[ClientSynchronizer] = None

        self.ticks_run = 0

        self.on_phase_change: Optional[Callable[[SessionPhase], None]] = None
        self.on_host_lost: Optional[Callable[[str], None]] = None
        self.on_peer_left: Optional[Callable[[str], None]] = None
        self.on_rendezvous_lost: Optional[Callable[[str], None]] = None

    @classmethod
    def create(cls, directory: Any, transport_factory: Callable[[bool], PeerTransport],
               ruleset: Optional[SimulationRuleset] = None, **kwargs) -> "GameSession":
        """Build a session and hook it up to the rendezvous notifications."""
        session = cls(directory, transport_factory, ruleset, **kwargs)
        directory.on_player_joined = session._on_player_joined
        directory.on_player_left = session._on_player_left
        directory.on_offer = session._on_offer
        directory.on_answer = session._on_answer
        directory.on_candidate = session._on_candidate
        directory.on_disconnect = session._on_rendezvous_disconnect
        return session

    async def teardown(self):
        """Leave whatever we are in and unhook from the rendezvous client."""
        await self.leave()
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        for name in ("on_player_joined", "on_player_left", "on_offer",
                     "on_answer", "on_candidate", "on_disconnect"):
            setattr(self.directory, name, None)

    # -------------------------------------------------------------------------
    # State helpers
    # -------------------------------------------------------------------------

    @property
    def self_id(self) -> Optional[str]:
        return self.directory.peer_id

    @property
    def is_host(self) -> bool:
        return self.registry is not None and self.registry.is_host

    def _set_phase(self, phase: SessionPhase):
        if phase == self.phase:
            return
        print(f"[SESSION] {self.phase.value} -> {phase.value}")
        self.phase = phase
        if self.on_phase_change:
            self.on_phase_change(phase)

    def _become(self, role: Role, slot: int):
        """Decide the role once and build only that side's components."""
        self.registry = PeerRegistry(self.self_id, role, slot)
        if role == Role.HOST:
            self.game_state = GameState(self.ruleset, self.rng)
            self.host_sync = HostSynchronizer(self.game_state, self.registry,
                                              on_send_failed=self._on_send_failed)
        else:
            self.prediction = ClientSidePrediction(self.ruleset)
            self.view = ClientWorldView(self.self_id, self.prediction)
            self.client_sync = ClientSynchronizer(self.self_id, self.view, self.prediction,
                                                  send=self._send_to_host)
            self.client_sync.on_start_game = lambda: self._set_phase(SessionPhase.PLAYING)
            self.client_sync.on_game_over = lambda: self._set_phase(SessionPhase.GAME_OVER)

    def _reset_roles(self):
        self.room = None
        self.registry = None
        self.game_state = None
        self.host_sync = None
        self.prediction = None
        self.view = None
        self.client_sync = None
        self._local_direction = (0.0, 0.0)
        self._local_angle = 0.0

    # -------------------------------------------------------------------------
    # Rooms
    # -------------------------------------------------------------------------

    async def host_room(self) -> str:
        """Create a room and sit in slot 0 as its host."""
        if self.phase != SessionPhase.LOBBY:
            raise RuntimeError(f"cannot host from phase {self.phase.value}")
        code = await self.directory.create_room()
        self.room = Room(code=code, host_id=self.self_id, member_slots={HOST_SLOT: self.self_id})
        self._become(Role.HOST, HOST_SLOT)
        self._set_phase(SessionPhase.WAITING)
        return code

    async def join_room(self, code: str) -> JoinResult:
        """
        Join by code and start negotiating with the host.
        RoomNotFound / RoomFull leave the session untouched; NegotiationFailed
        means the host is unreachable and the session is back in the lobby.
        """
        if self.phase != SessionPhase.LOBBY:
            raise RuntimeError(f"cannot join from phase {self.phase.value}")
        result = await self.directory.join_room(code)
        host_id = result.host_id
        if host_id is None:
            raise RoomNotFound(code)

        self.room = Room(code=result.code, host_id=host_id, member_slots=dict(result.members))
        self._become(Role.CLIENT, result.slot)
        self.registry.add(PeerConnection(host_id, Role.HOST, NegotiationRole.OFFERER, slot=HOST_SLOT))
        self._set_phase(SessionPhase.WAITING)

        # We learned the host's identity, so we are the initiator
        await self._create_negotiator(host_id, initiator=True).start()
        return result

    async def leave(self):
        """Close every channel, stop ticking, tell the rendezvous service."""
        if self.phase == SessionPhase.LOBBY:
            return
        print("[SESSION] Leaving room")
        self._teardown_peers()
        if self.view is not None:
            self.view.clear()
        try:
            await self.directory.leave_room()
        except RendezvousUnavailable as e:
            print(f"[SESSION] Could not notify rendezvous service: {e}")
        self._reset_roles()
        self._set_phase(SessionPhase.LOBBY)

    def _teardown_peers(self):
        self._stop_host_loop()
        for negotiator in list(self.negotiators.values()):
            negotiator.close()
        self.negotiators.clear()
        for handle in self._timeouts.values():
            handle.cancel()
        self._timeouts.clear()
        if self.registry is not None:
            self.registry.clear()

    # -------------------------------------------------------------------------
    # Negotiation
    # -------------------------------------------------------------------------

    def _create_negotiator(self, peer_id: str, initiator: bool) -> ConnectionNegotiator:
        transport = self.transport_factory(initiator)
        negotiator = ConnectionNegotiator(
            peer_id, transport, self.directory, initiator,
            on_connected=self._on_channel_open,
            on_message=self._on_channel_message,
            on_closed=self._on_channel_closed,
        )
        self.negotiators[peer_id] = negotiator
        if self.negotiation_timeout is not None:
            loop = asyncio.get_running_loop()
            self._timeouts[peer_id] = loop.call_later(
                self.negotiation_timeout, self._on_negotiation_timeout, peer_id)
        return negotiator

    def _on_negotiation_timeout(self, peer_id: str):
        self._timeouts.pop(peer_id, None)
        negotiator = self.negotiators.get(peer_id)
        if negotiator is not None and not negotiator.connected and not negotiator.finished:
            negotiator.fail("timed out")

    def _answerer_for(self, peer_id: str) -> Optional[ConnectionNegotiator]:
        """Host side: find or make the negotiator for a joining client."""
        negotiator = self.negotiators.get(peer_id)
        if negotiator is not None:
            return negotiator
        if not self.is_host or self.phase == SessionPhase.LOBBY:
            return None
        if peer_id not in self.registry:
            self.registry.add(PeerConnection(peer_id, Role.CLIENT, NegotiationRole.ANSWERER,
                                             slot=self.room.slot_of(peer_id)))
        return self._create_negotiator(peer_id, initiator=False)

    def _on_player_joined(self, peer_id: str, slot: Optional[int]):
        if not self.is_host or self.phase == SessionPhase.LOBBY or peer_id == self.self_id:
            return
        if slot is not None:
            self.room.member_slots[slot] = peer_id
        if peer_id in self.registry:
            if slot is not None:
                self.registry.set_slot(peer_id, slot)
            return
        self.registry.add(PeerConnection(peer_id, Role.CLIENT, NegotiationRole.ANSWERER, slot=slot))
        print(f"[SESSION] Player {peer_id} joined in slot {slot}, waiting for their offer")

    async def _on_offer(self, from_id: str, sdp: str):
        if not self.is_host:
            print(f"[SESSION] Ignoring offer from {from_id}, clients only talk to the host")
            return
        negotiator = self._answerer_for(from_id)
        if negotiator is None:
            return
        try:
            await negotiator.handle_offer(sdp)
        except NegotiationFailed as e:
            print(f"[SESSION] {e}")

    async def _on_answer(self, from_id: str, sdp: str):
        negotiator = self.negotiators.get(from_id)
        if negotiator is None:
            return
        try:
            await negotiator.handle_answer(sdp)
        except NegotiationFailed as e:
            print(f"[SESSION] {e}")

    async def _on_candidate(self, from_id: str, candidate: Dict[str, Any]):
        negotiator = self.negotiators.get(from_id)
        if negotiator is None and self.is_host:
            # Candidate overtook the offer; buffer it in a fresh negotiator
            negotiator = self._answerer_for(from_id)
        if negotiator is None:
            return
        await negotiator.handle_candidate(candidate)

    def _on_player_left(self, peer_id: str):
        self._handle_peer_gone(peer_id, "left the room")

    def _on_rendezvous_disconnect(self):
        # Open peer channels are direct and keep working; only new joins are affected
        print("[SESSION] Rendezvous link lost, reconnecting")
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.ensure_future(self._reconnect())

    async def _reconnect(self):
        try:
            await self.directory.connect_with_backoff()
        except RendezvousUnavailable as e:
            print(f"[SESSION] Rendezvous service unreachable: {e}")
            if self.on_rendezvous_lost:
                self.on_rendezvous_lost(str(e))
            return
        print("[SESSION] Rendezvous link restored")

    # -------------------------------------------------------------------------
    # Channels
    # -------------------------------------------------------------------------

    def _on_channel_open(self, peer_id: str, channel: Any):
        handle = self._timeouts.pop(peer_id, None)
        if handle is not None:
            handle.cancel()
        peer = self.registry.mark_open(peer_id, self.negotiators[peer_id])
        if peer is None:
            return
        print(f"[SESSION] Channel to {peer_id} open")
        if self.is_host and self.phase == SessionPhase.PLAYING:
            # Late joiner drops straight into the running game
            self.game_state.add_player(peer_id, peer.slot if peer.slot is not None else self._free_slot())
            self.host_sync.send_start_game(peer_id)

    def _on_channel_message(self, peer_id: str, text: str):
        if self.phase == SessionPhase.LOBBY:
            return
        if self.is_host:
            self.host_sync.handle_message(peer_id, text)
        elif peer_id == self.room.host_id:
            self.client_sync.handle_message(text)

    def _on_channel_closed(self, peer_id: str, reason: str):
        self._handle_peer_gone(peer_id, reason or "channel closed")

    def _on_send_failed(self, peer_id: str, error: ChannelClosed):
        self._handle_peer_gone(peer_id, str(error))

    def _send_to_host(self, text: str):
        negotiator = self.negotiators.get(self.room.host_id) if self.room else None
        if negotiator is None:
            raise ChannelClosed(self.room.host_id if self.room else "host", "no channel")
        negotiator.send(text)

    def _free_slot(self) -> int:
        taken = {p.slot for p in self.registry.peers.values()} | {HOST_SLOT}
        slot = 1
        while slot in taken:
            slot += 1
        return slot

    def _handle_peer_gone(self, peer_id: str, reason: str):
        if self.registry is None or self.phase == SessionPhase.LOBBY:
            return

        if not self.is_host and peer_id == self.room.host_id:
            self._abandon(f"host {peer_id}: {reason}")
            return

        handle = self._timeouts.pop(peer_id, None)
        if handle is not None:
            handle.cancel()
        negotiator = self.negotiators.pop(peer_id, None)
        if negotiator is not None:
            negotiator.close()
        peer = self.registry.remove(peer_id)
        slot = self.room.slot_of(peer_id)
        if slot is not None:
            del self.room.member_slots[slot]

        if self.is_host:
            self.game_state.remove_player(peer_id)
            self.host_sync.forget_peer(peer_id)
        else:
            self.view.remove_player(peer_id)

        if peer is not None or slot is not None:
            print(f"[SESSION] Player {peer_id} gone ({reason})")
            if self.on_peer_left:
                self.on_peer_left(peer_id)

    def _abandon(self, reason: str):
        """Host is gone. No migration: everybody goes back to the lobby."""
        print(f"[SESSION] Lost the host ({reason}), returning to lobby")
        self._teardown_peers()
        if self.view is not None:
            self.view.clear()
        self._reset_roles()
        self._set_phase(SessionPhase.LOBBY)
        if self.on_host_lost:
            self.on_host_lost(reason)

    # -------------------------------------------------------------------------
    # Host game control
    # -------------------------------------------------------------------------

    def start_game(self):
        """Host: seat every connected player and start simulating."""
        if not self.is_host or self.phase != SessionPhase.WAITING:
            raise RuntimeError("only a waiting host can start the game")
        self.game_state.start_game()
        self.game_state.add_player(self.self_id, HOST_SLOT)
        for peer in self.registry.open_peers():
            self.game_state.add_player(peer.identity, peer.slot if peer.slot is not None else self._free_slot())
        self.host_sync.last_broadcast_time = None  # First tick snapshots straight away
        self.host_sync.send_start_game()
        self._set_phase(SessionPhase.PLAYING)

    def play_again(self):
        """Host: after game over, wipe the world and start a new game in the same room."""
        if not self.is_host or self.phase != SessionPhase.GAME_OVER:
            raise RuntimeError("only a host whose game is over can start a rematch")
        print("[SESSION] Starting a rematch")
        self.game_state.reset()
        self._local_direction = (0.0, 0.0)
        self._set_phase(SessionPhase.WAITING)
        self.start_game()

    def tick(self, delta_time: float, now: Optional[float] = None) -> List[Dict]:
        """Host: one simulation step plus whatever sync is due."""
        if not self.is_host or self.phase != SessionPhase.PLAYING:
            return []
        events = self.host_sync.step(delta_time, self.clock() if now is None else now)
        self.ticks_run += 1
        if self.game_state.game_over:
            self.host_sync.broadcast_snapshot()
            self._set_phase(SessionPhase.GAME_OVER)
        return events

    async def run_host_loop(self, tick_rate: float = HOST_TICK_RATE):
        """Best-effort fixed cadence; sends never block the tick."""
        interval = 1.0 / tick_rate
        last = self.clock()
        while self.is_host and self.phase == SessionPhase.PLAYING:
            now = self.clock()
            self.tick(now - last, now)
            last = now
            await asyncio.sleep(max(0.0, interval - (self.clock() - now)))

    def start_host_loop(self, tick_rate: float = HOST_TICK_RATE) -> asyncio.Task:
        self._stop_host_loop()
        self._tick_task = asyncio.ensure_future(self.run_host_loop(tick_rate))
        return self._tick_task

    def _stop_host_loop(self):
        if self._tick_task is not None and not self._tick_task.done():
            self._tick_task.cancel()
        self._tick_task = None

    # -------------------------------------------------------------------------
    # Client frame
    # -------------------------------------------------------------------------

    def frame(self, delta_time: float, now: Optional[float] = None):
        """Client: advance prediction and send a coalesced report if due."""
        if self.is_host or self.phase != SessionPhase.PLAYING or self.client_sync is None:
            return
        local = self.view.local_player
        if local is not None and local.alive:
            self.prediction.update(delta_time)
        try:
            self.client_sync.report(self.clock() if now is None else now)
        except ChannelClosed as e:
            self._handle_peer_gone(self.room.host_id, str(e))

    # -------------------------------------------------------------------------
    # Local input
    # -------------------------------------------------------------------------

    def _queue_local_move(self, equipped: Optional[str] = None):
        self.game_state.queue_intent(self.self_id, MoveIntent(
            direction=self._local_direction, angle=self._local_angle, equipped=equipped))

    def set_move_direction(self, x: float, y: float):
        if self.phase != SessionPhase.PLAYING:
            return
        if self.is_host:
            self._local_direction = (x, y)
            self._queue_local_move()
        else:
            self.prediction.set_direction(x, y)

    def set_aim(self, angle: float):
        if self.phase != SessionPhase.PLAYING:
            return
        if self.is_host:
            self._local_angle = angle
            self._queue_local_move()
        else:
            self.prediction.set_angle(angle)

    def equip(self, item: str):
        if self.phase != SessionPhase.PLAYING:
            return
        if self.is_host:
            self._queue_local_move(equipped=item)
        else:
            self.client_sync.equipped = item

    def _act(self, msg_type: MessageType, intent: Any, **payload) -> Optional[int]:
        if self.phase != SessionPhase.PLAYING:
            return None
        if self.is_host:
            intent.request_id = next(self._local_requests)
            self.game_state.queue_intent(self.self_id, intent)
            return intent.request_id
        try:
            return self.client_sync.request_action(msg_type, **payload)
        except ChannelClosed as e:
            self._handle_peer_gone(self.room.host_id, str(e))
            return None

    def shoot(self, angle: Optional[float] = None) -> Optional[int]:
        if angle is None:
            angle = self._local_angle if self.is_host else (self.prediction.angle if self.prediction else 0.0)
        return self._act(MessageType.SHOOT, ShootIntent(angle=angle), angle=angle)

    def gather(self, tree_id: str) -> Optional[int]:
        return self._act(MessageType.GATHER, GatherIntent(tree_id=tree_id), tree_id=tree_id)

    def place_wall(self, x: float, y: float) -> Optional[int]:
        return self._act(MessageType.PLACE_WALL, PlaceWallIntent(x=x, y=y), x=x, y=y)

    def buy_item(self, item: str) -> Optional[int]:
        return self._act(MessageType.BUY_ITEM, BuyIntent(item=item), item=item)

    def start_wave(self) -> Optional[int]:
        return self._act(MessageType.START_WAVE, StartWaveIntent())
