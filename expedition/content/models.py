"""Schema models for expedition content."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Mapping, MutableMapping, Sequence

__all__ = [
    "Item",
    "LootEntry",
    "Monster",
    "SchemaError",
    "WeightedTable",
]


class SchemaError(ValueError):
    """Raised when content data fails validation."""


def _coerce_mapping(name: str, value: object) -> MutableMapping[str, object]:
    if isinstance(value, MutableMapping):
        return value
    if isinstance(value, Mapping):
        return dict(value)
    raise SchemaError(f"{name} must be a mapping")


def _coerce_sequence(name: str, value: object) -> Sequence[object]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return value
    raise SchemaError(f"{name} must be a sequence")


def _string_tuple(name: str, value: object) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(str(element).strip().lower() for element in _coerce_sequence(name, value))


@dataclass(frozen=True)
class Item:
    """An item that can be found, carried or consumed on an expedition."""

    key: str
    name: str
    weight: int = 1
    hearts_restored: int = 0
    stamina_restored: int = 0
    regions: Sequence[str] = field(default_factory=tuple)
    tags: Sequence[str] = field(default_factory=tuple)

    @property
    def is_healing(self) -> bool:
        return self.hearts_restored > 0 or self.stamina_restored > 0

    def found_in(self, region: str) -> bool:
        return not self.regions or region.lower() in self.regions

    @classmethod
    def from_mapping(cls, key: str, data: Mapping[str, object]) -> "Item":
        mapping = _coerce_mapping("item", data)
        name = str(mapping.get("name") or key)
        try:
            weight = int(mapping.get("weight", 1))
            hearts = int(mapping.get("hearts_restored", 0))
            stamina = int(mapping.get("stamina_restored", 0))
        except (TypeError, ValueError) as exc:
            raise SchemaError(f"item '{name}' has a non-numeric field") from exc
        if weight < 0 or hearts < 0 or stamina < 0:
            raise SchemaError(f"item '{name}' has a negative value")
        return cls(
            key=str(key).lower(),
            name=name,
            weight=weight,
            hearts_restored=hearts,
            stamina_restored=stamina,
            regions=_string_tuple("regions", mapping.get("regions")),
            tags=_string_tuple("tags", mapping.get("tags")),
        )


@dataclass(frozen=True)
class LootEntry:
    item: Item
    weight: int = 1


@dataclass(frozen=True)
class Monster:
    """A monster that can be encountered while exploring."""

    key: str
    name: str
    tier: int
    regions: Sequence[str] = field(default_factory=tuple)
    loot: Sequence[LootEntry] = field(default_factory=tuple)
    weight: int = 1
    tags: Sequence[str] = field(default_factory=tuple)

    @property
    def is_raid_tier(self) -> bool:
        return self.tier >= 5

    def found_in(self, region: str) -> bool:
        return not self.regions or region.lower() in self.regions

    @classmethod
    def from_mapping(
        cls, key: str, data: Mapping[str, object], loot: Sequence[LootEntry] = ()
    ) -> "Monster":
        mapping = _coerce_mapping("monster", data)
        name = str(mapping.get("name") or key)
        try:
            tier = int(mapping.get("tier", 1))
            weight = int(mapping.get("weight", 1))
        except (TypeError, ValueError) as exc:
            raise SchemaError(f"monster '{name}' has a non-numeric tier or weight") from exc
        if not 1 <= tier <= 10:
            raise SchemaError(f"monster '{name}' tier must be between 1 and 10")
        return cls(
            key=str(key).lower(),
            name=name,
            tier=tier,
            regions=_string_tuple("regions", mapping.get("regions")),
            loot=tuple(loot),
            weight=max(1, weight),
            tags=_string_tuple("tags", mapping.get("tags")),
        )


class WeightedTable:
    """Weighted population used for item and monster draws."""

    def __init__(self, entries: Sequence[tuple[object, int]]) -> None:
        cleaned = [(entry, int(weight)) for entry, weight in entries if int(weight) > 0]
        if not cleaned:
            raise SchemaError("Weighted table must contain at least one positive weight entry")
        self._entries = cleaned

    def roll(self, rng: random.Random):
        population = [entry for entry, _ in self._entries]
        weights = [weight for _, weight in self._entries]
        return rng.choices(population, weights=weights, k=1)[0]

    def __len__(self) -> int:
        return len(self._entries)
