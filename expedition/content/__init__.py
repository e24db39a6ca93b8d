"""Item and monster content used for loot and encounter draws."""

from .loader import DEFAULT_CONTENT_PATH, ContentLibrary, ContentLoadError
from .models import Item, LootEntry, Monster, SchemaError, WeightedTable
from .registry import ItemRegistry, MonsterRegistry

__all__ = [
    "ContentLibrary",
    "ContentLoadError",
    "DEFAULT_CONTENT_PATH",
    "Item",
    "ItemRegistry",
    "LootEntry",
    "Monster",
    "MonsterRegistry",
    "SchemaError",
    "WeightedTable",
]
