"""
WebSocket client for the rendezvous (signaling) service.
Creates, lists and joins rooms, learns our peer identity and relays the
offer/answer/candidate handshake. Nothing here blocks: requests are
correlated to their responses by message type and time out instead of
waiting forever.
"""

import asyncio
import json
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import websockets
import websockets.exceptions

from hordelink.shared.constants import (
    SIGNALING_URL, RENDEZVOUS_TIMEOUT,
    RECONNECT_BASE_DELAY, RECONNECT_MAX_DELAY, RECONNECT_MAX_ATTEMPTS,
)
from hordelink.shared.errors import RendezvousUnavailable, RoomFull, RoomNotFound
from hordelink.shared.protocol import (
    JoinResult, RoomInfo, SignalType, decode_signal, encode_signal,
)


class RoomDirectoryClient:
    """
    Talks to the rendezvous service over one persistent websocket.
    Incoming notifications are delivered through the on_* callbacks,
    which run on the event loop (coroutine results are scheduled as tasks).
    """

    def __init__(self, url: str = SIGNALING_URL, connect: Optional[Callable] = None,
                 response_timeout: float = RENDEZVOUS_TIMEOUT):
        self.url = url
        self.response_timeout = response_timeout
        self._connect = connect or websockets.connect

        self.websocket = None
        self.connected = False
        self.peer_id: Optional[str] = None

        self._receive_task: Optional[asyncio.Task] = None
        self._identity: Optional[asyncio.Future] = None
        self._pending: Dict[str, Deque[asyncio.Future]] = defaultdict(deque)
        self._joining_code = ""
        self._closing = False
        self._tasks: Set[asyncio.Future] = set()

        # Notifications
        self.on_player_joined: Optional[Callable[[str, Optional[int]], Any]] = None
        self.on_player_left: Optional[Callable[[str], Any]] = None
        self.on_offer: Optional[Callable[[str, str], Any]] = None
        self.on_answer: Optional[Callable[[str, str], Any]] = None
        self.on_candidate: Optional[Callable[[str, Dict[str, Any]], Any]] = None
        self.on_disconnect: Optional[Callable[[], Any]] = None

    # -------------------------------------------------------------------------
    # Link management
    # -------------------------------------------------------------------------

    async def connect(self) -> str:
        """Open the link and wait for our identity. Returns the peer id."""
        print(f"[RENDEZVOUS] Connecting to {self.url}...")
        self._closing = False
        try:
            self.websocket = await asyncio.wait_for(
                self._connect(self.url, ping_interval=None, ping_timeout=None),
                self.response_timeout,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise RendezvousUnavailable(f"cannot reach {self.url}: {e}") from e

        self.connected = True
        loop = asyncio.get_running_loop()
        self._identity = loop.create_future()
        self._receive_task = asyncio.ensure_future(self._receive_loop())

        try:
            self.peer_id = await asyncio.wait_for(asyncio.shield(self._identity), self.response_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise RendezvousUnavailable("no identity assigned by rendezvous service") from None

        print(f"[RENDEZVOUS] Connected as {self.peer_id}")
        return self.peer_id

    async def connect_with_backoff(self, max_attempts: int = RECONNECT_MAX_ATTEMPTS,
                                   base_delay: float = RECONNECT_BASE_DELAY,
                                   max_delay: float = RECONNECT_MAX_DELAY,
                                   sleep: Callable = asyncio.sleep) -> str:
        """Retry connect() with exponential backoff, then give up loudly."""
        last_error: Optional[RendezvousUnavailable] = None
        for attempt in range(max_attempts):
            try:
                return await self.connect()
            except RendezvousUnavailable as e:
                last_error = e
                if attempt == max_attempts - 1:
                    break
                delay = min(max_delay, base_delay * (2 ** attempt))
                print(f"[RENDEZVOUS] {e} - retrying in {delay:.1f}s ({attempt + 1}/{max_attempts})")
                await sleep(delay)
        raise RendezvousUnavailable(f"gave up after {max_attempts} attempts") from last_error

    async def close(self):
        """Close the link on purpose. No on_disconnect for this."""
        self._closing = True
        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
        if self.websocket is not None:
            try:
                await self.websocket.close()
            except websockets.exceptions.WebSocketException:
                pass
        self._link_lost("closed")

    async def _receive_loop(self):
        try:
            async for raw_message in self.websocket:
                self._handle_raw(raw_message)
        except websockets.exceptions.ConnectionClosed as e:
            print(f"[RENDEZVOUS] Connection closed: {e}")
        finally:
            self._link_lost("connection lost")

    def _link_lost(self, reason: str):
        was_connected = self.connected
        self.connected = False

        error = RendezvousUnavailable(f"rendezvous link down ({reason})")
        if self._identity is not None and not self._identity.done():
            self._identity.set_exception(error)
            self._identity.exception()  # Mark retrieved, connect() may already have given up
        for futures in self._pending.values():
            while futures:
                fut = futures.popleft()
                if not fut.done():
                    fut.set_exception(error)
        self._pending.clear()

        if was_connected and not self._closing:
            print(f"[RENDEZVOUS] Link lost: {reason}")
            self._emit(self.on_disconnect)

    async def _drop_link(self, reason: str):
        """Declare the link down (on_disconnect fires) and close the socket."""
        self._link_lost(reason)
        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
        if self.websocket is not None:
            try:
                await self.websocket.close()
            except websockets.exceptions.WebSocketException as e:
                print(f"[RENDEZVOUS] Close after {reason} failed: {e}")

    async def _send(self, text: str):
        if not self.connected or self.websocket is None:
            raise RendezvousUnavailable("not connected to rendezvous service")
        try:
            await self.websocket.send(text)
        except websockets.exceptions.ConnectionClosed as e:
            self._link_lost("send failed")
            raise RendezvousUnavailable(f"send failed: {e}") from e

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def _request(self, signal_type: SignalType, response_type: SignalType, **fields: Any):
        """Send a request and wait for the next response of the given type."""
        if not self.connected:
            raise RendezvousUnavailable("not connected to rendezvous service")
        fut = asyncio.get_running_loop().create_future()
        waiting = self._pending[response_type.value]
        waiting.append(fut)
        try:
            await self._send(encode_signal(signal_type, **fields))
            return await asyncio.wait_for(fut, self.response_timeout)
        except asyncio.TimeoutError:
            # A silent service is a dead link
            await self._drop_link("timeout")
            raise RendezvousUnavailable(
                f"no {response_type.value} within {self.response_timeout}s"
            ) from None
        finally:
            if fut in waiting:
                waiting.remove(fut)

    async def create_room(self) -> str:
        """Create a room; we become its host. Returns the room code."""
        code = await self._request(SignalType.CREATE_ROOM, SignalType.ROOM_CREATED)
        print(f"[RENDEZVOUS] Room {code} created")
        return code

    async def list_rooms(self) -> List[RoomInfo]:
        """Snapshot of open rooms."""
        return await self._request(SignalType.LIST_ROOMS, SignalType.ROOM_LIST)

    async def join_room(self, code: str) -> JoinResult:
        """Join by code. Raises RoomNotFound or RoomFull."""
        self._joining_code = code
        result = await self._request(SignalType.JOIN_ROOM, SignalType.ROOM_JOINED, code=code)
        print(f"[RENDEZVOUS] Joined room {result.code} in slot {result.slot}")
        return result

    async def leave_room(self):
        await self._send(encode_signal(SignalType.LEAVE_ROOM))

    async def send_offer(self, target_id: str, sdp: str):
        await self._send(encode_signal(SignalType.OFFER, targetId=target_id, sdp=sdp))

    async def send_answer(self, target_id: str, sdp: str):
        await self._send(encode_signal(SignalType.ANSWER, targetId=target_id, sdp=sdp))

    async def send_candidate(self, target_id: str, candidate: Dict[str, Any]):
        await self._send(encode_signal(SignalType.ICE_CANDIDATE, targetId=target_id, candidate=candidate))

    # -------------------------------------------------------------------------
    # Incoming
    # -------------------------------------------------------------------------

    def _resolve(self, response_type: SignalType, value: Any = None,
                 error: Optional[Exception] = None) -> bool:
        waiting = self._pending.get(response_type.value)
        while waiting:
            fut = waiting.popleft()
            if fut.done():
                continue
            if error is not None:
                fut.set_exception(error)
            else:
                fut.set_result(value)
            return True
        print(f"[RENDEZVOUS] Unsolicited {response_type.value}, ignoring")
        return False

    def _handle_raw(self, raw_message: str):
        try:
            message = decode_signal(raw_message)
            self._dispatch(message)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            print(f"[RENDEZVOUS] Invalid message received: {e}")

    def _dispatch(self, message: Dict[str, Any]):
        kind = message["type"]

        if kind == SignalType.YOUR_ID.value:
            if self._identity is not None and not self._identity.done():
                self._identity.set_result(message["id"])

        elif kind == SignalType.ROOM_CREATED.value:
            self._resolve(SignalType.ROOM_CREATED, message["code"])

        elif kind == SignalType.ROOM_JOINED.value:
            members = message.get("members") or {}
            if isinstance(members, list):
                members = dict(enumerate(members))
            self._resolve(SignalType.ROOM_JOINED, JoinResult(
                code=message["code"],
                slot=int(message["slot"]),
                members={int(slot): peer for slot, peer in members.items()},
            ))

        elif kind == SignalType.ROOM_LIST.value:
            rooms = [
                RoomInfo(code=r["code"], occupancy=int(r["occupancy"]), capacity=int(r["capacity"]))
                for r in message.get("rooms", [])
            ]
            self._resolve(SignalType.ROOM_LIST, rooms)

        elif kind == SignalType.ERROR.value:
            self._handle_error(message)

        elif kind == SignalType.PLAYER_JOINED.value:
            slot = message.get("slot")
            self._emit(self.on_player_joined, message["id"], int(slot) if slot is not None else None)

        elif kind == SignalType.PLAYER_LEFT.value:
            self._emit(self.on_player_left, message["id"])

        elif kind == SignalType.OFFER.value:
            self._emit(self.on_offer, message["fromId"], message["sdp"])

        elif kind == SignalType.ANSWER.value:
            self._emit(self.on_answer, message["fromId"], message["sdp"])

        elif kind == SignalType.ICE_CANDIDATE.value:
            self._emit(self.on_candidate, message["fromId"], message["candidate"])

        else:
            print(f"[RENDEZVOUS] Unknown message type {kind!r}, ignoring")

    def _handle_error(self, message: Dict[str, Any]):
        reason = message.get("reason", "")
        request = message.get("request", "")
        code = message.get("code") or self._joining_code

        if request == SignalType.JOIN_ROOM.value or reason in ("room-not-found", "room-full"):
            error = RoomFull(code) if reason == "room-full" else RoomNotFound(code)
            self._resolve(SignalType.ROOM_JOINED, error=error)
        elif request == SignalType.CREATE_ROOM.value:
            self._resolve(SignalType.ROOM_CREATED, error=RendezvousUnavailable(reason or "create-room refused"))
        else:
            print(f"[RENDEZVOUS] Service error: {reason or message}")

    def _emit(self, callback: Optional[Callable], *args: Any):
        if callback is None:
            return
        result = callback(*args)
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            print(f"[RENDEZVOUS] Handler failed: {error!r}")
