"""Square and quadrant addressing on the world grid.

Squares are named by a column letter and a row number (``A1`` to ``J12``).
Each square is split into four quadrants laid out as::

    Q1 | Q2
    ---+---
    Q3 | Q4

Quadrants are adjacent when they share an edge, including across square
borders, so ``A1 Q2`` borders ``B1 Q1``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

__all__ = [
    "COLUMNS",
    "QUADRANTS",
    "ROWS",
    "Location",
    "adjacent_locations",
    "is_adjacent",
    "parse_location",
]

COLUMNS = "ABCDEFGHIJ"
ROWS = 12
QUADRANTS: tuple[str, ...] = ("Q1", "Q2", "Q3", "Q4")

_QUADRANT_OFFSETS = {"Q1": (0, 0), "Q2": (1, 0), "Q3": (0, 1), "Q4": (1, 1)}
_OFFSET_QUADRANTS = {offset: name for name, offset in _QUADRANT_OFFSETS.items()}
_SQUARE_PATTERN = re.compile(r"^([A-Ja-j])(\d{1,2})$")
_LOCATION_PATTERN = re.compile(r"^\s*([A-Ja-j]\d{1,2})?\s*[\s:/-]?\s*(Q[1-4])\s*$", re.IGNORECASE)


@dataclass(frozen=True, order=True)
class Location:
    square: str
    quadrant: str

    def __str__(self) -> str:
        return f"{self.square} {self.quadrant}"

    @property
    def grid_position(self) -> tuple[int, int]:
        column, row = _square_coordinates(self.square)
        dx, dy = _QUADRANT_OFFSETS[self.quadrant]
        return (column * 2 + dx, row * 2 + dy)

    @classmethod
    def from_grid(cls, x: int, y: int) -> "Location":
        column, dx = divmod(x, 2)
        row, dy = divmod(y, 2)
        return cls(f"{COLUMNS[column]}{row + 1}", _OFFSET_QUADRANTS[(dx, dy)])


def normalise_square(square: str) -> str:
    match = _SQUARE_PATTERN.match(square.strip())
    if not match:
        raise ValueError(f"'{square}' is not a valid square")
    row = int(match.group(2))
    if not 1 <= row <= ROWS:
        raise ValueError(f"'{square}' is outside the map")
    return f"{match.group(1).upper()}{row}"


def normalise_quadrant(quadrant: str) -> str:
    value = quadrant.strip().upper()
    if value not in _QUADRANT_OFFSETS:
        raise ValueError(f"'{quadrant}' is not a valid quadrant")
    return value


def parse_location(text: str, *, default_square: str | None = None) -> Location:
    """Parse ``"B3 Q2"``, ``"b3:q2"`` or a bare ``"Q2"`` (with ``default_square``)."""

    match = _LOCATION_PATTERN.match(text)
    if not match:
        raise ValueError(f"'{text}' is not a valid location")
    square = match.group(1) or default_square
    if square is None:
        raise ValueError(f"'{text}' does not name a square")
    return Location(normalise_square(square), normalise_quadrant(match.group(2)))


def _square_coordinates(square: str) -> tuple[int, int]:
    square = normalise_square(square)
    return (COLUMNS.index(square[0]), int(square[1:]) - 1)


def adjacent_locations(square: str, quadrant: str) -> tuple[Location, ...]:
    x, y = Location(normalise_square(square), normalise_quadrant(quadrant)).grid_position
    neighbours: list[Location] = []
    for dx, dy in ((0, -1), (1, 0), (0, 1), (-1, 0)):
        nx, ny = x + dx, y + dy
        if 0 <= nx < len(COLUMNS) * 2 and 0 <= ny < ROWS * 2:
            neighbours.append(Location.from_grid(nx, ny))
    return tuple(neighbours)


def is_adjacent(origin: Location, destination: Location) -> bool:
    return destination in adjacent_locations(origin.square, origin.quadrant)
