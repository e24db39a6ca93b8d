from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
import random
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from expedition.config import DEFAULT_OUTCOME_WEIGHTS, EngineConfig
from expedition.outcomes import (
    DiscoveryTracker,
    OutcomeKind,
    OutcomeRoller,
    OutcomeTable,
    RollContext,
)
from expedition.party import CharacterSlot, Expedition, ProgressLogEntry
from expedition.world import Discovery

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class ScriptedRandom(random.Random):
    def __init__(self, values=(), seed: int = 0) -> None:
        super().__init__(seed)
        self.values = list(values)

    def random(self) -> float:
        if self.values:
            return self.values.pop(0)
        return super().random()

    def getrandbits(self, k: int) -> int:
        return super().getrandbits(k)


def _party() -> Expedition:
    return Expedition(
        expedition_id="E000003",
        region="eldin",
        leader_user_id=1,
        square="D3",
        quadrant="Q3",
        characters=[
            CharacterSlot(
                character_id="c1",
                user_id=1,
                name="Ayla",
                current_hearts=5,
                current_stamina=5,
                max_hearts=5,
                max_stamina=5,
            )
        ],
        status="started",
    )


def _entry(outcome: str, *, quadrant: str = "Q3", key: str | None = None, status: str | None = None, name: str = "Ayla") -> ProgressLogEntry:
    return ProgressLogEntry(
        at=NOW,
        character_name=name,
        outcome=outcome,
        message=outcome,
        square="D3",
        quadrant=quadrant,
        discovery_key=key,
        discovery_status=status,
    )


def _found(kind: str, key: str) -> Discovery:
    return Discovery(type=kind, discovered_by="Someone", discovered_at=NOW, discovery_key=key)


def _context(party: Expedition, map_discoveries=()) -> RollContext:
    return RollContext(
        party=party,
        character_name="Ayla",
        square="D3",
        quadrant="Q3",
        map_discoveries=tuple(map_discoveries),
    )


def _roller(rng: random.Random | None = None) -> OutcomeRoller:
    return OutcomeRoller.from_config(EngineConfig(), rng=rng or random.Random(1))


def test_default_weights_sum_to_one() -> None:
    table = OutcomeTable(DEFAULT_OUTCOME_WEIGHTS)

    assert table.total() == pytest.approx(1.0)
    assert set(table.weights) == set(OutcomeKind)


def test_table_rejects_bad_weights() -> None:
    with pytest.raises(ValueError):
        OutcomeTable({"item": 0.5, "monster": 0.4})
    with pytest.raises(ValueError):
        OutcomeTable({"item": 1.2, "monster": -0.2})
    with pytest.raises(ValueError):
        OutcomeTable({"dragon": 1.0})


def test_draws_follow_the_configured_weights() -> None:
    table = OutcomeTable(DEFAULT_OUTCOME_WEIGHTS)
    rng = random.Random(2024)
    draws = 40_000

    counts = Counter(table.draw(rng) for _ in range(draws))

    for kind, weight in table.weights.items():
        assert counts[kind] / draws == pytest.approx(weight, abs=0.012)


def test_explored_twice_in_a_row_is_rerolled() -> None:
    roller = _roller()
    party = _party()
    party.append_log(_entry("explored"))

    assert roller.reroll_reason(OutcomeKind.EXPLORED, _context(party)) is not None

    party.append_log(_entry("item"))
    assert roller.reroll_reason(OutcomeKind.EXPLORED, _context(party)) is None


def test_explored_in_another_quadrant_does_not_count() -> None:
    roller = _roller()
    party = _party()
    party.append_log(_entry("explored", quadrant="Q1"))

    assert roller.reroll_reason(OutcomeKind.EXPLORED, _context(party)) is None


def test_full_square_rejects_counted_discoveries() -> None:
    roller = _roller()
    party = _party()
    on_map = [_found("ruins", "r1"), _found("monster_camp", "m1")]
    party.append_log(_entry("relic", key="x1", status="confirmed", name="Bram"))

    assert roller.reroll_reason(OutcomeKind.RUINS, _context(party, on_map)) == "square discovery cap reached"
    # Non-counted outcomes are never capped.
    assert roller.reroll_reason(OutcomeKind.ITEM, _context(party, on_map)) is None


def test_pending_discoveries_do_not_fill_the_square() -> None:
    tracker = DiscoveryTracker(3)
    party = _party()
    party.append_log(_entry("ruins", key="p1", status="pending"))
    party.append_log(_entry("ruins", key="p2", status="declined"))

    assert tracker.counted_discoveries(party, "D3", ()) == 0


def test_second_grotto_in_a_square_is_rerolled() -> None:
    roller = _roller(ScriptedRandom([0.0]))
    party = _party()

    reason = roller.reroll_reason(OutcomeKind.GROTTO, _context(party, [_found("grotto", "g1")]))

    assert reason == "square already has a grotto"


def test_relic_is_found_once_per_character() -> None:
    roller = _roller()
    party = _party()
    party.append_log(_entry("relic", quadrant="Q1", key="rel1", status="pending"))

    assert roller.reroll_reason(OutcomeKind.RELIC, _context(party)) == "relic already found by this character"

    party.progress_log[-1].discovery_status = "declined"
    assert roller.reroll_reason(OutcomeKind.RELIC, _context(party)) is None


def test_additional_discoveries_are_thinned() -> None:
    party = _party()
    on_map = [_found("ruins", "r1")]

    kept = _roller(ScriptedRandom([0.1]))
    thinned = _roller(ScriptedRandom([0.9]))

    assert kept.reroll_reason(OutcomeKind.MONSTER_CAMP, _context(party, on_map)) is None
    assert thinned.reroll_reason(OutcomeKind.MONSTER_CAMP, _context(party, on_map)) == "discovery thinned out"


def test_roll_falls_back_after_the_reroll_cap() -> None:
    roller = OutcomeRoller(
        OutcomeTable({"grotto": 1.0}),
        DiscoveryTracker(3),
        reroll_cap=5,
        rng=random.Random(3),
    )
    party = _party()

    result = roller.roll(_context(party, [_found("grotto", "g1")]))

    assert result.kind is OutcomeKind.ITEM
    assert result.fell_back
    assert result.rerolls == 5


def test_roll_returns_first_valid_outcome() -> None:
    roller = OutcomeRoller(OutcomeTable({"fairy": 1.0}), DiscoveryTracker(3), rng=random.Random(4))

    result = roller.roll(_context(_party()))

    assert result.kind is OutcomeKind.FAIRY
    assert result.rerolls == 0
    assert not result.fell_back
