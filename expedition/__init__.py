"""Expedition engine models, stores and command surface."""

from .characters import REGIONS, Character, Debuff, Region, get_region
from .config import EngineConfig, load_config
from .engine import ActionResult, ExplorationEngine
from .errors import ExpeditionError
from .party import Expedition, ExpeditionStore
from .repository import CharacterRepository

__all__ = [
    "ActionResult",
    "Character",
    "CharacterRepository",
    "Debuff",
    "EngineConfig",
    "Expedition",
    "ExpeditionError",
    "ExpeditionStore",
    "ExplorationEngine",
    "REGIONS",
    "Region",
    "get_region",
    "load_config",
]
