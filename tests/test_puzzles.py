from pathlib import Path
import random
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from expedition.grotto import tables


def test_parse_offering_reads_quantities() -> None:
    offering = tables.parse_offering("Wood x50, Ancient Screw x20; flint")

    assert offering == {"Wood": 50, "Ancient Screw": 20, "flint": 1}


def test_parse_offering_accumulates_repeated_names() -> None:
    assert tables.parse_offering("Wood x10, wood x5") == {"Wood": 15}


@pytest.mark.parametrize("text", ["", " , ", "Wood x0"])
def test_parse_offering_rejects_bad_input(text: str) -> None:
    with pytest.raises(ValueError):
        tables.parse_offering(text)


def test_structure_requires_every_fixed_item() -> None:
    puzzle = tables.PUZZLES["structure-1"]

    assert tables.offering_satisfies(puzzle, {"Wood": 50, "Ancient Screw": 20})
    assert not tables.offering_satisfies(puzzle, {"Wood": 50, "Ancient Screw": 19})
    assert not tables.offering_satisfies(puzzle, {"Wood": 60})


def test_structure_with_one_of_many() -> None:
    puzzle = tables.PUZZLES["structure-3"]

    assert tables.offering_satisfies(puzzle, {"wood": 30, "ancient gear": 5})
    assert not tables.offering_satisfies(puzzle, {"Wood": 30, "Ancient Gear": 4})


def test_structure_with_two_of_many() -> None:
    puzzle = tables.PUZZLES["structure-5"]

    assert tables.offering_satisfies(puzzle, {"Wood": 40, "Flint": 20, "Ancient Gear": 10})
    assert not tables.offering_satisfies(puzzle, {"Wood": 40, "Flint": 20})


def test_statue_accepts_any_listed_item() -> None:
    puzzle = tables.PUZZLES["statue-3"]

    assert tables.offering_satisfies(puzzle, {"Hearty Radish": 1})
    assert not tables.offering_satisfies(puzzle, {"Amber": 3})


def test_consumption_is_capped_at_the_request() -> None:
    structure = tables.PUZZLES["structure-4"]
    offering = {"Wood": 55, "Flint": 20, "Eldin Ore": 12, "Amber": 4}

    assert tables.consumption_for(structure, offering) == {"Wood": 40, "Flint": 20, "Eldin Ore": 10}
    assert tables.consumption_for(tables.PUZZLES["statue-2"], {"Amber": 4}) == {"Amber": 1}


def test_roll_puzzle_picks_from_the_catalogue() -> None:
    rng = random.Random(8)

    rolled = {tables.roll_puzzle(rng).puzzle_id for _ in range(200)}

    assert rolled <= set(tables.PUZZLES)
    assert any(puzzle_id.startswith("statue") for puzzle_id in rolled)
    assert any(puzzle_id.startswith("structure") for puzzle_id in rolled)


def test_outcome_tables_clamp_their_rolls() -> None:
    rng = random.Random(0)

    assert tables.trap_outcome(1, rng).type == "trap_nothing"
    assert tables.trap_outcome(2, rng).type == "trap_nothing"
    assert tables.trap_outcome(6, rng).type == "dart_trap"
    assert tables.wall_outcome(9, rng).type == "faster_path_open"
    assert tables.wall_outcome(4, rng).type == "pit_trap"
