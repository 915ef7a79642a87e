"""
Simulation ruleset: the game-balance parameters the host simulation runs with.
Swap in your own instance to tune the game; nothing in the sync layer
depends on these exact numbers.
"""

from dataclasses import dataclass, field
from typing import Dict


@dataclass
class ShopItem:
    """An item that can be bought from the order station."""
    name: str
    price: int
    fire_cooldown: float = 0.0  # Weapons only, 0 means not a weapon
    damage: float = 0.0


def _default_shop() -> Dict[str, ShopItem]:
    return {
        "pistol": ShopItem("pistol", 0, fire_cooldown=0.35, damage=25),
        "rifle": ShopItem("rifle", 150, fire_cooldown=0.12, damage=20),
        "shotgun": ShopItem("shotgun", 250, fire_cooldown=0.8, damage=60),
        "medkit": ShopItem("medkit", 50),
    }


@dataclass
class SimulationRuleset:
    """All tunable game-balance numbers in one place."""

    # Players
    player_speed: float = 250.0  # Units per second
    player_radius: float = 20.0
    player_max_health: float = 100.0
    starting_money: int = 0
    starting_wood: int = 0
    starting_weapon: str = "pistol"
    medkit_heal: float = 50.0

    # Zombies
    zombie_speed: float = 90.0
    zombie_radius: float = 20.0
    zombie_health: float = 50.0
    zombie_damage: float = 15.0  # Per second while touching
    zombie_wall_damage: float = 25.0  # Per second while blocked
    zombie_kill_reward: int = 10
    zombies_first_wave: int = 5
    zombies_per_wave_growth: int = 3

    # Bullets
    bullet_speed: float = 900.0
    bullet_radius: float = 4.0
    bullet_lifetime: float = 1.5

    # Resources and building
    tree_count: int = 20
    tree_wood: int = 100
    tree_radius: float = 30.0
    gather_range: float = 80.0
    gather_amount: int = 10
    wall_cost: int = 20
    wall_size: float = 40.0
    wall_health: float = 200.0
    build_range: float = 150.0

    shop: Dict[str, ShopItem] = field(default_factory=_default_shop)
