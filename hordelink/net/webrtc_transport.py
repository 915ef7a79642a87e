"""
aiortc-backed PeerTransport.
One RTCPeerConnection and one ordered, reliable data channel per remote peer.
aiortc gathers candidates inside setLocalDescription, so our own candidates
travel embedded in the SDP; remote trickled candidates are still accepted.
"""

import asyncio
from typing import Any, Dict, List, Optional

from aiortc import (
    RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from hordelink.shared.constants import DATA_CHANNEL_LABEL, DEFAULT_ICE_SERVERS
from hordelink.net.negotiator import PeerTransport


class AiortcTransport(PeerTransport):
    """WebRTC data channel transport."""

    def __init__(self, initiator: bool, ice_servers: Optional[List[str]] = None):
        super().__init__()
        urls = DEFAULT_ICE_SERVERS if ice_servers is None else ice_servers
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=u) for u in urls])
        self.pc = RTCPeerConnection(configuration=config)
        self.channel = None
        self._closing = False

        if initiator:
            # Initiator owns the channel; the answerer picks it up via "datachannel"
            self._attach_channel(self.pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True))
        else:
            @self.pc.on("datachannel")
            def on_datachannel(channel: Any) -> None:
                self._attach_channel(channel)

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            if self.pc.connectionState in ("failed", "closed"):
                self._report_closed(f"connection {self.pc.connectionState}")

    def _attach_channel(self, channel: Any):
        self.channel = channel

        @channel.on("open")
        def on_open() -> None:
            if self.on_open:
                self.on_open(channel)

        @channel.on("message")
        def on_message(message: Any) -> None:
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            if self.on_message:
                self.on_message(message)

        @channel.on("close")
        def on_close() -> None:
            self._report_closed("data channel closed")

        # The answerer can receive a channel that is already open
        if channel.readyState == "open" and self.on_open:
            self.on_open(channel)

    def _report_closed(self, reason: str):
        if self._closing:
            return
        self._closing = True
        if self.on_closed:
            self.on_closed(reason)

    async def create_offer(self) -> str:
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return self.pc.localDescription.sdp

    async def create_answer(self) -> str:
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return self.pc.localDescription.sdp

    async def set_remote_description(self, sdp: str, kind: str):
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=kind))

    async def add_candidate(self, candidate: Dict[str, Any]):
        line = candidate.get("candidate") or ""
        if not line:
            return  # End-of-candidates marker
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        try:
            parsed = candidate_from_sdp(line)
        except (AssertionError, IndexError, ValueError) as e:
            raise ValueError(f"unparseable candidate {line!r}") from e
        parsed.sdpMid = candidate.get("sdpMid")
        parsed.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(parsed)

    def send(self, text: str):
        if self.channel is None or self.channel.readyState != "open":
            raise ConnectionError("data channel not open")
        self.channel.send(text)

    def close(self):
        self._closing = True
        asyncio.ensure_future(self.pc.close())
