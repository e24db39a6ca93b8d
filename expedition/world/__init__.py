"""World-map grid, shared map store and synchronisation."""

from .grid import QUADRANTS, Location, adjacent_locations, is_adjacent, parse_location
from .map_store import Discovery, MapStore, QuadrantRecord, SquareRecord, UpdateResult
from .sync import MapSynchronizer

__all__ = [
    "Discovery",
    "Location",
    "MapStore",
    "MapSynchronizer",
    "QUADRANTS",
    "QuadrantRecord",
    "SquareRecord",
    "UpdateResult",
    "adjacent_locations",
    "is_adjacent",
    "parse_location",
]
