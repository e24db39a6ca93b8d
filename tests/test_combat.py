from pathlib import Path
import random
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from expedition.combat import DiceCombatResolver, outcome_for_roll
from expedition.content import Monster
from expedition.party import CharacterSlot


class FixedRandom(random.Random):
    def __init__(self, rolls) -> None:
        super().__init__(0)
        self.rolls = list(rolls)

    def randint(self, a: int, b: int) -> int:
        return self.rolls.pop(0)


@pytest.mark.parametrize(
    "tier, roll, hearts",
    [(3, 1, 3), (3, 25, 3), (3, 26, 2), (3, 50, 2), (3, 75, 1), (3, 76, 0), (1, 60, 0), (4, 100, 0)],
)
def test_roll_bands(tier: int, roll: int, hearts: int) -> None:
    outcome = outcome_for_roll(tier, roll)

    assert outcome.hearts_lost == hearts
    assert outcome.can_loot is (hearts == 0)
    assert outcome.roll == roll


def test_dice_resolver_uses_monster_tier() -> None:
    resolver = DiceCombatResolver(FixedRandom([10, 90]))
    slot = CharacterSlot("c1", 1, "Ayla", 10, 10, 10, 10)
    lizalfos = Monster(key="lizalfos", name="Lizalfos", tier=4, regions=("faron",))

    first = resolver.resolve(slot, lizalfos)
    second = resolver.resolve(slot, lizalfos)

    assert (first.hearts_lost, first.victory) == (4, False)
    assert (second.hearts_lost, second.victory) == (0, True)
