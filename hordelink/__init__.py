"""HordeLink - host-authoritative peer-to-peer game state sync."""

import os

# pygame is only used for its vector math here
os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")

__version__ = "0.1.0"
