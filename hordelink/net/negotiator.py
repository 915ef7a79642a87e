"""
Per-peer connection negotiation.
Turns an offer/answer/candidate exchange relayed by the rendezvous service
into an open, ordered, reliable data channel. The actual transport sits
behind PeerTransport so the state machine can run against anything.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from hordelink.shared.errors import ChannelClosed, NegotiationFailed


class NegotiationState(str, Enum):
    IDLE = "idle"
    OFFER_CREATED = "offer-created"
    REMOTE_OFFER_RECEIVED = "remote-offer-received"
    ANSWER_CREATED = "answer-created"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"


FINISHED_STATES = (NegotiationState.CLOSED, NegotiationState.FAILED)


class PeerTransport(ABC):
    """
    What the negotiator needs from a peer transport.
    Implementations report channel events through the bound handlers.
    """

    def __init__(self):
        self.on_open: Optional[Callable[[Any], None]] = None
        self.on_message: Optional[Callable[[str], None]] = None
        self.on_closed: Optional[Callable[[str], None]] = None
        self.on_candidate: Optional[Callable[[Dict[str, Any]], None]] = None

    def bind(self, on_open, on_message, on_closed, on_candidate):
        self.on_open = on_open
        self.on_message = on_message
        self.on_closed = on_closed
        self.on_candidate = on_candidate

    @abstractmethod
    async def create_offer(self) -> str:
        """Create and apply the local offer, return its SDP."""

    @abstractmethod
    async def create_answer(self) -> str:
        """Create and apply the local answer, return its SDP."""

    @abstractmethod
    async def set_remote_description(self, sdp: str, kind: str):
        """Apply the remote offer or answer."""

    @abstractmethod
    async def add_candidate(self, candidate: Dict[str, Any]):
        """Apply one remote connectivity candidate."""

    @abstractmethod
    def send(self, text: str):
        """Queue a text message on the open channel."""

    @abstractmethod
    def close(self):
        """Tear everything down. Must not block."""


class ConnectionNegotiator:
    """
    Handshake state machine for one remote peer.

    IDLE -> OFFER_CREATED -> CONNECTED (initiator)
    IDLE -> REMOTE_OFFER_RECEIVED -> ANSWER_CREATED -> CONNECTED (answerer)
    any -> CLOSED | FAILED

    Remote candidates that show up before the remote description is set are
    buffered and applied, in arrival order, right after it is set.
    """

    def __init__(self, peer_id: str, transport: PeerTransport, signaling: Any,
                 initiator: bool,
                 on_connected: Optional[Callable[[str, Any], None]] = None,
                 on_message: Optional[Callable[[str, str], None]] = None,
                 on_closed: Optional[Callable[[str, str], None]] = None):
        self.peer_id = peer_id
        self.transport = transport
        self.signaling = signaling
        self.initiator = initiator
        self.state = NegotiationState.IDLE

        self.on_connected = on_connected
        self.on_message = on_message
        self.on_closed = on_closed

        self._pending_candidates: deque = deque()
        self._remote_description_set = False
        self._tasks: Set[asyncio.Future] = set()

        transport.bind(
            on_open=self._handle_open,
            on_message=self._handle_message,
            on_closed=self._handle_transport_closed,
            on_candidate=self._handle_local_candidate,
        )

    @property
    def finished(self) -> bool:
        return self.state in FINISHED_STATES

    @property
    def connected(self) -> bool:
        return self.state == NegotiationState.CONNECTED

    @property
    def buffered_candidates(self) -> int:
        return len(self._pending_candidates)

    # -------------------------------------------------------------------------
    # Signaling input
    # -------------------------------------------------------------------------

    async def start(self):
        """Initiator side: create the offer and ship it through the relay."""
        if not self.initiator:
            raise ValueError("only the initiator creates the offer")
        if self.state != NegotiationState.IDLE:
            print(f"[NEGOTIATOR] start() ignored for {self.peer_id} in state {self.state.value}")
            return

        try:
            sdp = await self.transport.create_offer()
            if self.finished:
                return
            self.state = NegotiationState.OFFER_CREATED
            await self.signaling.send_offer(self.peer_id, sdp)
        except Exception as e:
            self._fail(f"offer: {e}")
            raise NegotiationFailed(self.peer_id, str(e)) from e

    async def handle_offer(self, sdp: str):
        """Answerer side: apply the remote offer and answer it."""
        if self.initiator or self.state != NegotiationState.IDLE:
            print(f"[NEGOTIATOR] Unexpected offer from {self.peer_id} in state {self.state.value}, ignoring")
            return

        self.state = NegotiationState.REMOTE_OFFER_RECEIVED
        try:
            await self._apply_remote_description(sdp, "offer")
            if self.finished:
                return
            answer = await self.transport.create_answer()
            if self.finished:
                return
            self.state = NegotiationState.ANSWER_CREATED
            await self.signaling.send_answer(self.peer_id, answer)
        except Exception as e:
            self._fail(f"answer: {e}")
            raise NegotiationFailed(self.peer_id, str(e)) from e

    async def handle_answer(self, sdp: str):
        """Initiator side: apply the remote answer."""
        if not self.initiator or self.state != NegotiationState.OFFER_CREATED or self._remote_description_set:
            print(f"[NEGOTIATOR] Unexpected answer from {self.peer_id} in state {self.state.value}, ignoring")
            return

        try:
            await self._apply_remote_description(sdp, "answer")
        except Exception as e:
            self._fail(f"remote answer: {e}")
            raise NegotiationFailed(self.peer_id, str(e)) from e

    async def handle_candidate(self, candidate: Dict[str, Any]):
        """Apply a remote candidate now, or hold it until the description is set."""
        if self.finished:
            return
        if not self._remote_description_set:
            self._pending_candidates.append(candidate)
            return
        await self._add_candidate(candidate)

    async def _apply_remote_description(self, sdp: str, kind: str):
        await self.transport.set_remote_description(sdp, kind)
        # Anything that arrives while we flush lands at the tail and is drained here too
        while self._pending_candidates:
            if self.finished:
                return
            await self._add_candidate(self._pending_candidates.popleft())
        self._remote_description_set = True

    async def _add_candidate(self, candidate: Dict[str, Any]):
        try:
            await self.transport.add_candidate(candidate)
        except ValueError as e:
            # One unusable candidate is not fatal, the others may still connect
            print(f"[NEGOTIATOR] Rejected candidate from {self.peer_id}: {e}")

    # -------------------------------------------------------------------------
    # Transport events
    # -------------------------------------------------------------------------

    def _handle_open(self, channel: Any):
        if self.finished:
            return
        self.state = NegotiationState.CONNECTED
        print(f"[NEGOTIATOR] Channel to {self.peer_id} open")
        if self.on_connected:
            self.on_connected(self.peer_id, channel)

    def _handle_message(self, text: str):
        if self.state != NegotiationState.CONNECTED:
            return
        if self.on_message:
            self.on_message(self.peer_id, text)

    def _handle_transport_closed(self, reason: str = ""):
        if self.finished:
            return
        was_connected = self.connected
        self.state = NegotiationState.CLOSED if was_connected else NegotiationState.FAILED
        self._pending_candidates.clear()
        print(f"[NEGOTIATOR] Channel to {self.peer_id} {self.state.value}: {reason or 'no reason'}")
        if self.on_closed:
            self.on_closed(self.peer_id, reason)

    def _handle_local_candidate(self, candidate: Dict[str, Any]):
        if self.finished:
            return
        task = asyncio.ensure_future(self.signaling.send_candidate(self.peer_id, candidate))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -------------------------------------------------------------------------
    # Outbound / teardown
    # -------------------------------------------------------------------------

    def send(self, text: str):
        if not self.connected:
            raise ChannelClosed(self.peer_id, f"state {self.state.value}")
        try:
            self.transport.send(text)
        except Exception as e:
            raise ChannelClosed(self.peer_id, str(e)) from e

    def _fail(self, reason: str):
        if self.finished:
            return
        print(f"[NEGOTIATOR] Negotiation with {self.peer_id} failed: {reason}")
        self.state = NegotiationState.FAILED
        self._pending_candidates.clear()
        self.transport.close()
        if self.on_closed:
            self.on_closed(self.peer_id, reason)

    def fail(self, reason: str):
        """Give up on this peer (e.g. negotiation timed out)."""
        self._fail(reason)

    def close(self):
        """Locally initiated teardown. Immediate and idempotent."""
        if self.finished:
            return
        self.state = NegotiationState.CLOSED
        self._pending_candidates.clear()
        for task in list(self._tasks):
            task.cancel()
        self.transport.close()
