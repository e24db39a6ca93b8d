"""Maze layouts for grotto maze trials and movement over them."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Protocol, Sequence

__all__ = [
    "BacktrackerMazeGenerator",
    "CELL_TYPES",
    "MazeGenerator",
    "MazeLayout",
    "PathCell",
    "cell_beyond_wall",
    "step",
    "turn",
]

CELL_TYPES = ("start", "exit", "trap", "chest", "mazep", "mazen", "path")
ENTRY_TYPES = ("diagonal", "horizontal", "vertical")

_ROTATE_LEFT = {"n": "w", "w": "s", "s": "e", "e": "n"}
_ROTATE_RIGHT = {"n": "e", "e": "s", "s": "w", "w": "n"}
_OPPOSITE = {"n": "s", "s": "n", "e": "w", "w": "e"}
_OFFSETS = {"n": (0, -1), "s": (0, 1), "e": (1, 0), "w": (-1, 0)}


@dataclass(frozen=True)
class PathCell:
    x: int
    y: int
    type: str = "path"

    @property
    def key(self) -> str:
        return f"{self.x},{self.y}"

    def to_dict(self) -> Dict[str, object]:
        return {"x": self.x, "y": self.y, "type": self.type}


@dataclass(frozen=True)
class MazeLayout:
    """A generated maze.

    ``matrix`` holds one string per row where ``"0"`` is walkable and
    ``"1"`` is wall; ``path_cells`` types every walkable cell.
    """

    matrix: tuple[str, ...]
    path_cells: tuple[PathCell, ...]
    start: tuple[int, int]
    exit: tuple[int, int]

    def is_walkable(self, x: int, y: int) -> bool:
        if y < 0 or y >= len(self.matrix):
            return False
        row = self.matrix[y]
        return 0 <= x < len(row) and row[x] == "0"

    def cell_at(self, x: int, y: int) -> Optional[PathCell]:
        for cell in self.path_cells:
            if cell.x == x and cell.y == y:
                return cell
        return None

    def to_dict(self) -> Dict[str, object]:
        return {
            "matrix": list(self.matrix),
            "path_cells": [cell.to_dict() for cell in self.path_cells],
            "start": list(self.start),
            "exit": list(self.exit),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "MazeLayout":
        start = data.get("start") or (1, 1)
        exit_ = data.get("exit") or (1, 1)
        return cls(
            matrix=tuple(str(row) for row in data.get("matrix") or ()),
            path_cells=tuple(
                PathCell(int(cell["x"]), int(cell["y"]), str(cell.get("type", "path")))
                for cell in data.get("path_cells") or ()
            ),
            start=(int(start[0]), int(start[1])),
            exit=(int(exit_[0]), int(exit_[1])),
        )


class MazeGenerator(Protocol):
    def generate(self, width: int, height: int, entry_type: str) -> MazeLayout: ...


def turn(facing: str, action: str) -> str:
    if action == "left":
        return _ROTATE_LEFT[facing]
    if action == "right":
        return _ROTATE_RIGHT[facing]
    if action == "back":
        return _OPPOSITE[facing]
    if action == "straight":
        return facing
    raise ValueError(f"Unknown maze action '{action}'")


def step(x: int, y: int, facing: str) -> tuple[int, int]:
    dx, dy = _OFFSETS[facing]
    return (x + dx, y + dy)


def cell_beyond_wall(layout: MazeLayout, x: int, y: int, facing: str) -> Optional[tuple[int, int]]:
    """Return the first walkable cell at most two steps ahead in ``facing``."""

    first = step(x, y, facing)
    if layout.is_walkable(*first):
        return first
    second = step(*first, facing)
    if layout.is_walkable(*second):
        return second
    return None


class BacktrackerMazeGenerator:
    """Default maze generator using an iterative recursive-backtracker carve."""

    def __init__(
        self,
        rng: random.Random | None = None,
        *,
        traps: tuple[int, int] = (2, 4),
        chests: tuple[int, int] = (2, 4),
    ) -> None:
        self._rng = rng or random.Random()
        self._traps = traps
        self._chests = chests

    def generate(self, width: int = 12, height: int = 12, entry_type: str = "diagonal") -> MazeLayout:
        width = max(3, min(50, int(width)))
        height = max(3, min(50, int(height)))
        if entry_type not in ENTRY_TYPES:
            entry_type = "diagonal"
        grid = [["1"] * (width * 2 + 1) for _ in range(height * 2 + 1)]
        self._carve(grid, width, height)
        start, exit_ = self._entries(width, height, entry_type)
        matrix = tuple("".join(row) for row in grid)
        cells = self._assign_types(matrix, start, exit_)
        return MazeLayout(matrix=matrix, path_cells=cells, start=start, exit=exit_)

    def _carve(self, grid: list[list[str]], width: int, height: int) -> None:
        visited = {(0, 0)}
        stack = [(0, 0)]
        grid[1][1] = "0"
        while stack:
            cx, cy = stack[-1]
            options = [
                (cx + dx, cy + dy, dx, dy)
                for dx, dy in _OFFSETS.values()
                if 0 <= cx + dx < width and 0 <= cy + dy < height and (cx + dx, cy + dy) not in visited
            ]
            if not options:
                stack.pop()
                continue
            nx, ny, dx, dy = self._rng.choice(options)
            grid[cy * 2 + 1 + dy][cx * 2 + 1 + dx] = "0"
            grid[ny * 2 + 1][nx * 2 + 1] = "0"
            visited.add((nx, ny))
            stack.append((nx, ny))

    @staticmethod
    def _entries(width: int, height: int, entry_type: str) -> tuple[tuple[int, int], tuple[int, int]]:
        last_x = width * 2 - 1
        last_y = height * 2 - 1
        if entry_type == "horizontal":
            row = (height // 2) * 2 + 1
            return (1, row), (last_x, row)
        if entry_type == "vertical":
            column = (width // 2) * 2 + 1
            return (column, 1), (column, last_y)
        return (1, 1), (last_x, last_y)

    def _assign_types(
        self, matrix: Sequence[str], start: tuple[int, int], exit_: tuple[int, int]
    ) -> tuple[PathCell, ...]:
        walkable = [
            (x, y)
            for y, row in enumerate(matrix)
            for x, value in enumerate(row)
            if value == "0" and (x, y) not in (start, exit_)
        ]
        self._rng.shuffle(walkable)
        types: dict[tuple[int, int], str] = {start: "start", exit_: "exit"}
        plan = (
            ["trap"] * self._rng.randint(*self._traps)
            + ["chest"] * self._rng.randint(*self._chests)
            + [self._rng.choice(("mazep", "mazen"))]
        )
        for position, cell_type in zip(walkable, plan):
            types[position] = cell_type
        return tuple(
            PathCell(x, y, types.get((x, y), "path"))
            for y, row in enumerate(matrix)
            for x, value in enumerate(row)
            if value == "0"
        )
