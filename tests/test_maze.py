from pathlib import Path
import random
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from expedition.grotto.maze import (
    BacktrackerMazeGenerator,
    MazeLayout,
    PathCell,
    cell_beyond_wall,
    step,
    turn,
)
from expedition.grotto.store import MazeState


def _corridor() -> MazeLayout:
    matrix = (
        "11111",
        "10101",
        "11111",
    )
    return MazeLayout(
        matrix=matrix,
        path_cells=(PathCell(1, 1, "start"), PathCell(3, 1, "exit")),
        start=(1, 1),
        exit=(3, 1),
    )


def test_generated_maze_has_reachable_entries() -> None:
    layout = BacktrackerMazeGenerator(random.Random(11)).generate(8, 8, "diagonal")

    assert len(layout.matrix) == 17
    assert all(len(row) == 17 for row in layout.matrix)
    assert layout.start == (1, 1)
    assert layout.exit == (15, 15)
    assert layout.is_walkable(*layout.start)
    assert layout.is_walkable(*layout.exit)
    types = [cell.type for cell in layout.path_cells]
    assert types.count("start") == 1
    assert types.count("exit") == 1
    assert 2 <= types.count("trap") <= 4
    assert 2 <= types.count("chest") <= 4
    assert types.count("mazep") + types.count("mazen") == 1


def test_generated_maze_is_fully_connected() -> None:
    layout = BacktrackerMazeGenerator(random.Random(5)).generate(6, 5, "horizontal")
    walkable = {(cell.x, cell.y) for cell in layout.path_cells}

    seen = {layout.start}
    frontier = [layout.start]
    while frontier:
        x, y = frontier.pop()
        for facing in "nsew":
            nxt = step(x, y, facing)
            if nxt in walkable and nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)

    assert seen == walkable
    assert layout.exit in seen


def test_generation_is_deterministic_for_a_seed() -> None:
    first = BacktrackerMazeGenerator(random.Random(99)).generate(5, 5, "vertical")
    second = BacktrackerMazeGenerator(random.Random(99)).generate(5, 5, "vertical")

    assert first == second
    assert MazeLayout.from_dict(first.to_dict()) == first


def test_size_is_clamped_and_unknown_entries_default() -> None:
    layout = BacktrackerMazeGenerator(random.Random(1)).generate(1, 500, "sideways")

    assert len(layout.matrix) == 101
    assert len(layout.matrix[0]) == 7
    assert layout.start == (1, 1)


def test_turning_and_stepping() -> None:
    assert turn("n", "left") == "w"
    assert turn("n", "right") == "e"
    assert turn("e", "back") == "w"
    assert turn("s", "straight") == "s"
    assert step(2, 2, "n") == (2, 1)
    assert step(2, 2, "e") == (3, 2)
    with pytest.raises(ValueError):
        turn("n", "jump")


def test_cell_beyond_wall_looks_two_steps_ahead() -> None:
    layout = _corridor()

    assert cell_beyond_wall(layout, 1, 1, "e") == (3, 1)
    assert cell_beyond_wall(layout, 1, 1, "n") is None
    assert layout.cell_at(3, 1).type == "exit"


def test_rewind_walks_back_along_the_trail() -> None:
    state = MazeState(layout=_corridor(), x=1, y=1)
    for position in ((1, 2), (1, 3), (2, 3), (3, 3)):
        state.move_to(*position)

    assert state.rewind(3) == 3
    assert state.position == (1, 2)
    assert state.rewind(3) == 1
    assert state.position == (1, 1)
    assert state.rewind(1) == 0
