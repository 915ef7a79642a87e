"""
Error taxonomy for the sync layer.
"""

from typing import Optional


class HordeLinkError(Exception):
    """Base class for everything this package raises on purpose."""


class RendezvousUnavailable(HordeLinkError):
    """The signaling link is down or did not answer in time."""


class RoomNotFound(HordeLinkError):
    def __init__(self, code: str):
        super().__init__(f"room {code!r} does not exist")
        self.code = code


class RoomFull(HordeLinkError):
    def __init__(self, code: str):
        super().__init__(f"room {code!r} is full")
        self.code = code


class NegotiationFailed(HordeLinkError):
    """A single peer's channel could not be established."""

    def __init__(self, peer_id: str, reason: str):
        super().__init__(f"negotiation with {peer_id} failed: {reason}")
        self.peer_id = peer_id
        self.reason = reason


class ChannelClosed(HordeLinkError):
    """A peer channel went away mid-session."""

    def __init__(self, peer_id: str, reason: Optional[str] = None):
        super().__init__(f"channel to {peer_id} closed" + (f": {reason}" if reason else ""))
        self.peer_id = peer_id


class StaleMessage(HordeLinkError):
    """Sequence number not newer than the last applied one. Dropped silently."""

    def __init__(self, msg_type: str, seq: int, last_seq: int):
        super().__init__(f"stale {msg_type} #{seq} (last applied #{last_seq})")
        self.msg_type = msg_type
        self.seq = seq
        self.last_seq = last_seq
