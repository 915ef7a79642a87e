"""
Shared constants for hordelink.
Used by both the host and the clients. Game-balance numbers are not here,
they live in the SimulationRuleset (see ruleset.py).
"""

# =============================================================================
# NETWORK SETTINGS
# =============================================================================
SIGNALING_URL = "ws://localhost:8765"

# How long to wait for the rendezvous service to answer a request.
# No answer means the link is down, reconnect instead of waiting forever.
RENDEZVOUS_TIMEOUT = 5.0

# Reconnect backoff for the rendezvous link
RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0
RECONNECT_MAX_ATTEMPTS = 5

# Peer data channel
DATA_CHANNEL_LABEL = "game"
NEGOTIATION_TIMEOUT = 15.0  # Seconds before a half-open negotiation is failed
DEFAULT_ICE_SERVERS = ["stun:stun.l.google.com:19302"]

# =============================================================================
# ROOM SETTINGS
# =============================================================================
ROOM_CAPACITY = 4
HOST_SLOT = 0  # Slot 0 is always the host

# =============================================================================
# WORLD SETTINGS
# =============================================================================
WORLD_WIDTH = 3000
WORLD_HEIGHT = 3000
PLAYER_SPAWN_X = 1500
PLAYER_SPAWN_Y = 1500

# =============================================================================
# TIMING SETTINGS
# =============================================================================
HOST_TICK_RATE = 30  # Simulation steps per second
SNAPSHOT_BROADCAST_RATE = 10  # Snapshots per second, decoupled from render rate
PLAYER_UPDATE_RATE = 15  # Max client position reports per second
PLAYER_UPDATE_KEEPALIVE = 1.0  # Report even when idle, every N seconds

# =============================================================================
# RECONCILIATION SETTINGS
# =============================================================================
# Host accepts a client-reported position only this close to its own
MAX_POSITION_DRIFT = 120.0
# Client snaps its predicted avatar only when the host disagrees this much
DESYNC_SNAP_DISTANCE = 400.0
# How many applied event ids a client remembers for dedup
EVENT_DEDUP_WINDOW = 512
