"""
Client side of state synchronization.
Applies host messages to the local view (dropping anything older than what
was already applied) and sends the host our movement and action requests.
"""

import itertools
import json
from collections import defaultdict
from typing import Callable, Dict, Optional

from hordelink.shared.errors import StaleMessage
from hordelink.shared.protocol import (
    ACTION_TYPES, Message, MessageType, WorldSnapshot,
    create_action_request, create_player_update_message,
)
from hordelink.client.prediction import ClientSidePrediction, UpdateThrottle
from hordelink.client.world_view import ClientWorldView


class ClientSynchronizer:
    """Talks to the host over the single channel a client has."""

    def __init__(self, local_id: str, view: ClientWorldView, prediction: ClientSidePrediction,
                 send: Callable[[str], None], throttle: Optional[UpdateThrottle] = None):
        self.local_id = local_id
        self.view = view
        self.prediction = prediction
        self.send = send
        self.throttle = throttle or UpdateThrottle()

        self._last_seq: Dict[MessageType, int] = {}
        self._out_seq: Dict[MessageType, int] = defaultdict(int)
        self._request_ids = itertools.count(1)

        self.equipped: Optional[str] = None  # What we asked to hold, host confirms
        self.stale_dropped = 0

        self.on_start_game: Optional[Callable[[], None]] = None
        self.on_game_over: Optional[Callable[[], None]] = None

    def _next_seq(self, msg_type: MessageType) -> int:
        self._out_seq[msg_type] += 1
        return self._out_seq[msg_type]

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def _check_sequence(self, message: Message):
        if message.seq is None:
            return
        last = self._last_seq.get(message.type, 0)
        if message.seq <= last:
            raise StaleMessage(message.type.value, message.seq, last)
        self._last_seq[message.type] = message.seq

    def last_applied(self, msg_type: MessageType) -> int:
        return self._last_seq.get(msg_type, 0)

    def handle_message(self, raw_message: str) -> bool:
        """Apply one host message. Returns False if it was ignored."""
        try:
            message = Message.from_json(raw_message)
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            print(f"[CLIENT] Invalid message from host: {e}")
            return False

        try:
            self._check_sequence(message)
        except StaleMessage:
            self.stale_dropped += 1
            return False

        data = message.data
        try:
            if message.type == MessageType.GAME_STATE:
                self.view.apply_snapshot(WorldSnapshot.from_dict(data))
                return True

            if message.type == MessageType.PLAYER_UPDATE:
                return self.view.apply_remote_player_update(data)

            if message.type == MessageType.START_GAME:
                if self.view.game_over:
                    # Host started a rematch; nothing from the last game carries over
                    self.view.clear()
                    self.equipped = None
                self.view.start()
                if self.on_start_game:
                    self.on_start_game()
                return True

            applied = self.view.apply_event(message.type, data)
            if applied and message.type == MessageType.GAME_OVER and self.on_game_over:
                self.on_game_over()
            return applied
        except (KeyError, TypeError, ValueError) as e:
            print(f"[CLIENT] Malformed {message.type.value} from host: {e}")
            return False

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def report(self, now: float) -> bool:
        """Send a coalesced player-update if one is due."""
        if not self.prediction.initialized:
            return False
        local = self.view.local_player
        equipped = self.equipped or (local.equipped if local else "")
        position = self.prediction.wire_position()
        direction = self.prediction.wire_direction()
        state = (position.x, position.y, self.prediction.angle, direction.x, direction.y, equipped)
        if not self.throttle.due(now, state):
            return False

        message = create_player_update_message(
            self.local_id, position, self.prediction.angle, equipped, direction,
            seq=self._next_seq(MessageType.PLAYER_UPDATE),
        )
        self.send(message.to_json())
        self.throttle.mark_sent(now, state)
        return True

    def request_action(self, msg_type: MessageType, **payload) -> int:
        """Send one action request. Returns its request id."""
        if msg_type not in ACTION_TYPES:
            raise ValueError(f"{msg_type.value} is not an action")
        request_id = next(self._request_ids)
        message = create_action_request(msg_type, request_id, self._next_seq(msg_type), **payload)
        self.send(message.to_json())
        return request_id
