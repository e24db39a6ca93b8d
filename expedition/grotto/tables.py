"""Fixed outcome tables for maze trials and the puzzle catalogue."""

from __future__ import annotations

import random
import re
from dataclasses import dataclass, field
from typing import Mapping, Sequence

__all__ = [
    "MazeOutcome",
    "OFFERING_STATUE",
    "ODD_STRUCTURE",
    "PUZZLES",
    "Puzzle",
    "PuzzleRequirement",
    "SCRYING_FAIL_OUTCOMES",
    "TRAP_OUTCOMES",
    "WALL_OUTCOMES",
    "consumption_for",
    "offering_satisfies",
    "parse_offering",
    "roll_puzzle",
    "scrying_failure",
    "trap_outcome",
    "wall_outcome",
]


@dataclass(frozen=True)
class MazeOutcome:
    """One entry of a maze table."""

    type: str
    hearts_lost: int = 0
    stamina_cost: int = 0
    monster: str | None = None
    tier: int = 0


def _battle(monster: str, tier: int) -> MazeOutcome:
    return MazeOutcome("battle", monster=monster, tier=tier)


NOTHING = MazeOutcome("nothing")
FASTER_PATH = MazeOutcome("faster_path_open")
COLLAPSE = MazeOutcome("collapse")
PIT_TRAP = MazeOutcome("pit_trap", hearts_lost=3, stamina_cost=3)
STALAGMITES = MazeOutcome("stalagmites", stamina_cost=3)

# d6 result -> candidates; one candidate is picked uniformly.
WALL_OUTCOMES: Mapping[int, Sequence[MazeOutcome]] = {
    1: (FASTER_PATH, FASTER_PATH, COLLAPSE, _battle("Mini-Boss Bokoblin Construct", 7)),
    2: (NOTHING, NOTHING, STALAGMITES, _battle("Rare Talus Construct", 7)),
    3: (COLLAPSE, COLLAPSE, _battle("Stone Talus Construct", 5)),
    4: (PIT_TRAP, PIT_TRAP),
    5: (_battle("Hinox Construct", 7), _battle("Stone Talus Construct", 5), NOTHING),
    6: (FASTER_PATH, FASTER_PATH),
}

TRAP_OUTCOMES: Mapping[int, Sequence[MazeOutcome]] = {
    1: (MazeOutcome("trap_nothing"),),
    3: (
        MazeOutcome("darts", stamina_cost=2),
        MazeOutcome("darts", stamina_cost=2),
        MazeOutcome("crumbling_floor", stamina_cost=1),
        MazeOutcome("crumbling_floor", stamina_cost=1),
    ),
    4: (MazeOutcome("pit_trap", hearts_lost=3, stamina_cost=3), STALAGMITES),
    5: (
        MazeOutcome("dart_trap", hearts_lost=4, stamina_cost=4),
        MazeOutcome("dart_trap", hearts_lost=4, stamina_cost=4),
    ),
}

SCRYING_FAIL_OUTCOMES: Sequence[MazeOutcome] = (
    PIT_TRAP,
    PIT_TRAP,
    COLLAPSE,
    COLLAPSE,
    NOTHING,
    MazeOutcome("nothing", stamina_cost=1),
    MazeOutcome("step_back"),
    STALAGMITES,
)


def _clamp_d6(roll: int) -> int:
    return max(1, min(6, int(roll)))


def wall_outcome(roll: int, rng: random.Random) -> MazeOutcome:
    return rng.choice(list(WALL_OUTCOMES[_clamp_d6(roll)]))


def trap_outcome(roll: int, rng: random.Random) -> MazeOutcome:
    """Trap cells use a five-step table: a 2 counts as 1 and a 6 counts as 5."""

    value = {2: 1, 6: 5}.get(_clamp_d6(roll), _clamp_d6(roll))
    return rng.choice(list(TRAP_OUTCOMES[value]))


def scrying_failure(rng: random.Random) -> MazeOutcome:
    return rng.choice(list(SCRYING_FAIL_OUTCOMES))


# -- puzzles ----------------------------------------------------------------

ODD_STRUCTURE = "odd_structure"
OFFERING_STATUE = "offering_statue"


@dataclass(frozen=True)
class PuzzleRequirement:
    item: str
    quantity: int


@dataclass(frozen=True)
class Puzzle:
    puzzle_id: str
    kind: str
    prompt: str
    required: Sequence[PuzzleRequirement] = ()
    any_of: Sequence[PuzzleRequirement] = ()
    at_least_two_of: Sequence[PuzzleRequirement] = ()
    accepted: Sequence[str] = field(default_factory=tuple)


def _req(item: str, quantity: int) -> PuzzleRequirement:
    return PuzzleRequirement(item, quantity)


PUZZLES: Mapping[str, Puzzle] = {
    puzzle.puzzle_id: puzzle
    for puzzle in (
        Puzzle(
            "structure-1",
            ODD_STRUCTURE,
            "Offer 50 Wood and 20 Ancient Screw.",
            required=(_req("Wood", 50), _req("Ancient Screw", 20)),
        ),
        Puzzle(
            "structure-2",
            ODD_STRUCTURE,
            "Offer 40 Flint and 20 Ancient Shaft.",
            required=(_req("Flint", 40), _req("Ancient Shaft", 20)),
        ),
        Puzzle(
            "structure-3",
            ODD_STRUCTURE,
            "Offer 30 Wood and one batch of flint or ancient parts.",
            required=(_req("Wood", 30),),
            any_of=(
                _req("Flint", 20),
                _req("Ancient Screw", 10),
                _req("Ancient Shaft", 10),
                _req("Ancient Gear", 5),
            ),
        ),
        Puzzle(
            "structure-4",
            ODD_STRUCTURE,
            "Offer 40 Wood, 20 Flint and ancient parts or ore.",
            required=(_req("Wood", 40), _req("Flint", 20)),
            any_of=(
                _req("Ancient Screw", 15),
                _req("Ancient Shaft", 15),
                _req("Eldin Ore", 10),
            ),
        ),
        Puzzle(
            "structure-5",
            ODD_STRUCTURE,
            "Offer 40 Wood and at least two kinds of ancient parts or flint.",
            required=(_req("Wood", 40),),
            at_least_two_of=(
                _req("Ancient Screw", 15),
                _req("Ancient Shaft", 15),
                _req("Ancient Gear", 10),
                _req("Flint", 20),
            ),
        ),
        Puzzle(
            "statue-1",
            OFFERING_STATUE,
            "Something that burns bright but is born of stone.",
            accepted=("Flint", "Luminous Stone"),
        ),
        Puzzle(
            "statue-2",
            OFFERING_STATUE,
            "Golden and warm, sap that has slept for ages.",
            accepted=("Amber",),
        ),
        Puzzle(
            "statue-3",
            OFFERING_STATUE,
            "The fruit that keeps a traveler on the road.",
            accepted=("Apple", "Hearty Radish"),
        ),
        Puzzle(
            "statue-4",
            OFFERING_STATUE,
            "A piece of the old machines, turning still.",
            accepted=("Ancient Gear", "Ancient Screw", "Ancient Shaft"),
        ),
    )
}


def roll_puzzle(rng: random.Random) -> Puzzle:
    """Pick a statue clue or a structure variant with even odds."""

    kind = OFFERING_STATUE if rng.random() < 0.5 else ODD_STRUCTURE
    candidates = [puzzle for puzzle in PUZZLES.values() if puzzle.kind == kind]
    return rng.choice(candidates)


_OFFER_PATTERN = re.compile(r"^\s*(?P<name>.+?)\s*(?:[x×*]\s*(?P<qty>\d+))?\s*$", re.IGNORECASE)


def parse_offering(text: str) -> dict[str, int]:
    """Parse ``"Wood x50, Ancient Screw x20"`` into ``{"Wood": 50, "Ancient Screw": 20}``.

    Quantities default to 1 and repeated names accumulate.
    """

    offering: dict[str, int] = {}
    for chunk in re.split(r"[,;\n]", text):
        if not chunk.strip():
            continue
        match = _OFFER_PATTERN.match(chunk)
        if match is None:
            raise ValueError(f"Could not read offering entry '{chunk.strip()}'")
        name = match.group("name").strip()
        quantity = int(match.group("qty") or 1)
        if quantity <= 0:
            raise ValueError(f"Offering quantity for '{name}' must be positive")
        existing = next((key for key in offering if key.casefold() == name.casefold()), name)
        offering[existing] = offering.get(existing, 0) + quantity
    if not offering:
        raise ValueError("The offering is empty")
    return offering


def _offered(offering: Mapping[str, int], item: str) -> tuple[str, int] | None:
    for name, quantity in offering.items():
        if name.casefold() == item.casefold():
            return name, quantity
    return None


def _met(offering: Mapping[str, int], requirement: PuzzleRequirement) -> bool:
    found = _offered(offering, requirement.item)
    return found is not None and found[1] >= requirement.quantity


def offering_satisfies(puzzle: Puzzle, offering: Mapping[str, int]) -> bool:
    """Return whether ``offering`` meets the puzzle's stated requirements."""

    if puzzle.kind == OFFERING_STATUE:
        return any(_offered(offering, item) for item in puzzle.accepted)
    if not all(_met(offering, requirement) for requirement in puzzle.required):
        return False
    if puzzle.any_of and not any(_met(offering, requirement) for requirement in puzzle.any_of):
        return False
    if puzzle.at_least_two_of:
        return sum(1 for requirement in puzzle.at_least_two_of if _met(offering, requirement)) >= 2
    return True


def consumption_for(puzzle: Puzzle, offering: Mapping[str, int]) -> dict[str, int]:
    """Return the items actually taken for ``offering``, capped at what the puzzle asks for."""

    if puzzle.kind == OFFERING_STATUE:
        for item in puzzle.accepted:
            found = _offered(offering, item)
            if found:
                return {found[0]: 1}
        return {}
    wanted: list[PuzzleRequirement] = list(puzzle.required)
    first_any = next((req for req in puzzle.any_of if _met(offering, req)), None)
    if first_any is not None:
        wanted.append(first_any)
    wanted.extend([req for req in puzzle.at_least_two_of if _met(offering, req)][:2])
    consumed: dict[str, int] = {}
    for requirement in wanted:
        found = _offered(offering, requirement.item)
        if found is None:
            continue
        take = min(requirement.quantity, found[1])
        if take > 0:
            consumed[found[0]] = take
    return consumed
