"""Registries for expedition content."""

from __future__ import annotations

import random
from typing import Dict, Generic, Iterable, Iterator, Sequence, TypeVar

from .models import Item, Monster, WeightedTable

__all__ = ["ItemRegistry", "MonsterRegistry"]

T = TypeVar("T")


class BaseRegistry(Generic[T]):
    """Utility container for validated content entries."""

    def __init__(self) -> None:
        self._entries: Dict[str, T] = {}
        self._aliases: Dict[str, str] = {}

    @staticmethod
    def _normalise(value: str) -> str:
        return value.strip().lower()

    def register(self, key: str, entry: T, *, aliases: Iterable[str] = ()) -> None:
        identifier = self._normalise(key)
        if identifier in self._entries:
            raise ValueError(f"Duplicate entry '{key}'")
        self._entries[identifier] = entry
        self._aliases[identifier] = identifier
        for alias in aliases:
            self._aliases[self._normalise(alias)] = identifier

    def get(self, name: str) -> T:
        if not name:
            raise KeyError("Name must be provided")
        identifier = self._normalise(name)
        target = self._aliases.get(identifier, identifier)
        try:
            return self._entries[target]
        except KeyError as exc:
            raise KeyError(f"Unknown entry '{name}'") from exc

    def find(self, name: str) -> T | None:
        try:
            return self.get(name)
        except KeyError:
            return None

    def values(self) -> Sequence[T]:
        return tuple(self._entries.values())

    def __iter__(self) -> Iterator[T]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)


class ItemRegistry(BaseRegistry[Item]):
    """Registry of items, addressable by key or display name."""

    def register(self, key: str, entry: Item, *, aliases: Iterable[str] = ()) -> None:  # type: ignore[override]
        super().register(key, entry, aliases=[*aliases, entry.name])

    def random_item(self, region: str, rng: random.Random) -> Item:
        candidates = [(item, item.weight) for item in self if item.found_in(region)]
        if not candidates:
            raise LookupError(f"No items can be found in {region}")
        return WeightedTable(candidates).roll(rng)


class MonsterRegistry(BaseRegistry[Monster]):
    """Registry of monsters, filterable by region and tier."""

    def register(self, key: str, entry: Monster, *, aliases: Iterable[str] = ()) -> None:  # type: ignore[override]
        super().register(key, entry, aliases=[*aliases, entry.name])

    def for_region(self, region: str, *, include_tags: Iterable[str] = ()) -> list[Monster]:
        tags = set(include_tags)
        return [
            monster
            for monster in self
            if monster.found_in(region) and (not tags or tags.intersection(monster.tags))
        ]

    def random_monster(self, region: str, rng: random.Random) -> Monster:
        candidates = [
            (monster, monster.weight)
            for monster in self.for_region(region)
            if "construct" not in monster.tags and "guardian" not in monster.tags
        ]
        if not candidates:
            raise LookupError(f"No monsters roam {region}")
        return WeightedTable(candidates).roll(rng)

    @staticmethod
    def roll_loot(monster: Monster, rng: random.Random) -> Item | None:
        if not monster.loot:
            return None
        return WeightedTable([(entry.item, entry.weight) for entry in monster.loot]).roll(rng)
