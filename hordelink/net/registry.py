"""
Peer registry: who we know about, what role they play and whether their
channel is up. Star topology, so a client only ever holds one entry (the host)
while the host holds one per client.
"""

from enum import Enum
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from hordelink.shared.constants import HOST_SLOT


class Role(str, Enum):
    HOST = "host"
    CLIENT = "client"


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class NegotiationRole(str, Enum):
    OFFERER = "offerer"
    ANSWERER = "answerer"


@dataclass
class PeerConnection:
    """Bookkeeping for one remote peer."""
    identity: str
    role: Role
    negotiation_role: NegotiationRole
    slot: Optional[int] = None
    channel_state: ChannelState = ChannelState.CONNECTING
    channel: Any = None  # Anything with send(text)

    @property
    def is_open(self) -> bool:
        return self.channel_state == ChannelState.OPEN


class PeerRegistry:
    """
    Maps peer id -> PeerConnection.
    Holds exactly one host, which may be ourselves.
    """

    def __init__(self, self_id: str, self_role: Role, self_slot: int):
        self.self_id = self_id
        self.self_role = self_role
        self.self_slot = self_slot
        self.peers: Dict[str, PeerConnection] = {}

    @property
    def is_host(self) -> bool:
        return self.self_role == Role.HOST

    @property
    def host_id(self) -> Optional[str]:
        """The peer in slot 0, possibly us."""
        if self.is_host:
            return self.self_id
        for peer in self.peers.values():
            if peer.role == Role.HOST:
                return peer.identity
        return None

    def add(self, peer: PeerConnection) -> PeerConnection:
        """Insert a newly discovered peer. A second host is refused."""
        if peer.identity == self.self_id:
            raise ValueError("cannot register ourselves as a remote peer")
        if peer.role == Role.HOST:
            current = self.host_id
            if current is not None and current != peer.identity:
                raise ValueError(f"room already has host {current}")
            if peer.slot is None:
                peer.slot = HOST_SLOT
        existing = self.peers.get(peer.identity)
        if existing is not None:
            return existing
        self.peers[peer.identity] = peer
        return peer

    def remove(self, peer_id: str) -> Optional[PeerConnection]:
        peer = self.peers.pop(peer_id, None)
        if peer is not None:
            peer.channel_state = ChannelState.CLOSED
            peer.channel = None
        return peer

    def get(self, peer_id: str) -> Optional[PeerConnection]:
        return self.peers.get(peer_id)

    def mark_open(self, peer_id: str, channel: Any) -> Optional[PeerConnection]:
        peer = self.peers.get(peer_id)
        if peer is not None:
            peer.channel_state = ChannelState.OPEN
            peer.channel = channel
        return peer

    def mark_closed(self, peer_id: str) -> Optional[PeerConnection]:
        peer = self.peers.get(peer_id)
        if peer is not None:
            peer.channel_state = ChannelState.CLOSED
            peer.channel = None
        return peer

    def set_slot(self, peer_id: str, slot: int):
        peer = self.peers.get(peer_id)
        if peer is not None:
            peer.slot = slot

    def open_peers(self) -> List[PeerConnection]:
        return [p for p in self.peers.values() if p.is_open]

    def clear(self):
        for peer_id in list(self.peers):
            self.remove(peer_id)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self.peers

    def __len__(self) -> int:
        return len(self.peers)
