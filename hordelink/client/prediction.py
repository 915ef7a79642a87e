"""
Client-side prediction for the local avatar.
Movement is applied immediately with the same integration the host uses,
and position reports to the host are coalesced instead of sent every frame.
"""

from typing import Optional

from pygame.math import Vector2 as Vec

from hordelink.shared.constants import (
    WORLD_WIDTH, WORLD_HEIGHT, PLAYER_UPDATE_RATE, PLAYER_UPDATE_KEEPALIVE,
)
from hordelink.shared.protocol import Vector2
from hordelink.shared.ruleset import SimulationRuleset


class ClientSidePrediction:
    """
    Locally predicted position and orientation.
    This peer is the only writer of these two fields.
    """

    def __init__(self, ruleset: Optional[SimulationRuleset] = None):
        self.ruleset = ruleset or SimulationRuleset()
        self.position = Vec(0, 0)
        self.direction = Vec(0, 0)
        self.angle = 0.0
        self.initialized = False

    def reset(self, position: Vector2, angle: float = 0.0):
        """Seed (or snap) the prediction from a host-confirmed position."""
        self.position = Vec(position.x, position.y)
        self.angle = angle
        self.initialized = True

    def set_direction(self, x: float, y: float):
        direction = Vec(x, y)
        if direction.length_squared() > 1.0:
            direction = direction.normalize()
        self.direction = direction

    def set_angle(self, angle: float):
        self.angle = angle

    def update(self, delta_time: float):
        """Move locally. Same math as the host, so small drift only."""
        if not self.initialized or self.direction.length_squared() == 0:
            return
        r = self.ruleset.player_radius
        moved = self.position + self.direction * self.ruleset.player_speed * delta_time
        self.position = Vec(
            max(r, min(WORLD_WIDTH - r, moved.x)),
            max(r, min(WORLD_HEIGHT - r, moved.y)),
        )

    def wire_position(self) -> Vector2:
        return Vector2(self.position.x, self.position.y)

    def wire_direction(self) -> Vector2:
        return Vector2(self.direction.x, self.direction.y)


class UpdateThrottle:
    """
    Decides when a player-update is due.
    At most PLAYER_UPDATE_RATE per second, and only when something changed
    or the keepalive interval has passed.
    """

    def __init__(self, rate: float = PLAYER_UPDATE_RATE, keepalive: float = PLAYER_UPDATE_KEEPALIVE):
        self.min_interval = 1.0 / rate
        self.keepalive = keepalive
        self.last_sent_at: Optional[float] = None
        self.last_sent_state: Optional[tuple] = None

    def due(self, now: float, state: tuple) -> bool:
        if self.last_sent_at is None:
            return True
        elapsed = now - self.last_sent_at
        if elapsed < self.min_interval:
            return False
        return state != self.last_sent_state or elapsed >= self.keepalive

    def mark_sent(self, now: float, state: tuple):
        self.last_sent_at = now
        self.last_sent_state = state
