"""Resolution of simple (non-raid) monster encounters."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Protocol

from .content import Monster
from .party import CharacterSlot

__all__ = [
    "CombatResolver",
    "DiceCombatResolver",
    "EncounterOutcome",
    "outcome_for_roll",
]


@dataclass(frozen=True)
class EncounterOutcome:
    """Result of one encounter: hearts lost and whether the monster can be looted."""

    hearts_lost: int
    can_loot: bool
    roll: int = 0

    @property
    def victory(self) -> bool:
        return self.can_loot


class CombatResolver(Protocol):
    def resolve(self, slot: CharacterSlot, monster: Monster) -> EncounterOutcome: ...


def outcome_for_roll(tier: int, roll: int) -> EncounterOutcome:
    """Map a d100 roll to an outcome for a tier 1-4 monster.

    Low rolls cost the full tier in hearts, each band above that costs one
    heart less, and anything above 75 is a clean win.
    """

    if roll <= 25:
        hearts = tier
    elif roll <= 50:
        hearts = tier - 1
    elif roll <= 75:
        hearts = tier - 2
    else:
        hearts = 0
    hearts = max(0, hearts)
    return EncounterOutcome(hearts_lost=hearts, can_loot=hearts == 0, roll=roll)


class DiceCombatResolver:
    """Default resolver rolling a d100 per encounter."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def resolve(self, slot: CharacterSlot, monster: Monster) -> EncounterOutcome:
        return outcome_for_roll(monster.tier, self._rng.randint(1, 100))
