"""Authoritative character records and region metadata."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Mapping

__all__ = [
    "Character",
    "Debuff",
    "REGIONS",
    "Region",
    "get_region",
]


@dataclass(frozen=True)
class Region:
    """A region of the world map and the village expeditions leave from."""

    key: str
    village: str
    start_square: str
    start_quadrant: str


REGIONS: Mapping[str, Region] = {
    "eldin": Region("eldin", "rudania", "D3", "Q3"),
    "lanayru": Region("lanayru", "inariko", "G4", "Q2"),
    "faron": Region("faron", "vhintl", "H6", "Q4"),
}


def get_region(name: str) -> Region:
    region = REGIONS.get(name.strip().lower())
    if region is None:
        raise KeyError(f"Unknown region '{name}'")
    return region


@dataclass
class Debuff:
    """Recovery debuff applied after an expedition failure."""

    active: bool = False
    ends_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        if not self.active:
            return False
        return self.ends_at is None or now < self.ends_at

    def to_dict(self) -> Dict[str, object]:
        return {
            "active": self.active,
            "ends_at": self.ends_at.isoformat() if self.ends_at else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object] | None) -> "Debuff":
        if not data:
            return cls()
        ends_at = data.get("ends_at")
        return cls(
            active=bool(data.get("active", False)),
            ends_at=datetime.fromisoformat(ends_at) if isinstance(ends_at, str) else None,
        )


@dataclass
class Character:
    """Persistent representation of a player character."""

    character_id: str
    user_id: int
    name: str
    home_village: str
    current_village: str
    max_hearts: int
    current_hearts: int
    max_stamina: int
    current_stamina: int
    job: str = ""
    inventory: Dict[str, int] = field(default_factory=dict)
    ko: bool = False
    debuff: Debuff = field(default_factory=Debuff)

    def can_embark(self, now: datetime) -> bool:
        return not self.ko and not self.debuff.is_active(now)

    def item_quantity(self, item_name: str) -> int:
        lowered = item_name.casefold()
        return sum(
            quantity for name, quantity in self.inventory.items() if name.casefold() == lowered
        )

    def add_item(self, item_name: str, quantity: int = 1) -> None:
        if quantity <= 0:
            return
        for name in self.inventory:
            if name.casefold() == item_name.casefold():
                self.inventory[name] += quantity
                return
        self.inventory[item_name] = quantity

    def remove_item(self, item_name: str, quantity: int = 1) -> bool:
        """Remove ``quantity`` of ``item_name``; return ``False`` if not enough are held."""

        for name, held in self.inventory.items():
            if name.casefold() != item_name.casefold():
                continue
            if held < quantity:
                return False
            remaining = held - quantity
            if remaining:
                self.inventory[name] = remaining
            else:
                del self.inventory[name]
            return True
        return False

    def to_dict(self) -> Dict[str, object]:
        return {
            "character_id": self.character_id,
            "user_id": self.user_id,
            "name": self.name,
            "job": self.job,
            "home_village": self.home_village,
            "current_village": self.current_village,
            "max_hearts": self.max_hearts,
            "current_hearts": self.current_hearts,
            "max_stamina": self.max_stamina,
            "current_stamina": self.current_stamina,
            "inventory": dict(self.inventory),
            "ko": self.ko,
            "debuff": self.debuff.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "Character":
        inventory_raw = data.get("inventory") or {}
        inventory: Dict[str, int] = {}
        if isinstance(inventory_raw, Mapping):
            for name, quantity in inventory_raw.items():
                try:
                    amount = int(quantity)
                except (TypeError, ValueError):
                    continue
                if amount > 0:
                    inventory[str(name)] = amount
        debuff_raw = data.get("debuff")
        return cls(
            character_id=str(data["character_id"]),
            user_id=int(data["user_id"]),
            name=str(data["name"]),
            job=str(data.get("job") or ""),
            home_village=str(data.get("home_village") or data.get("current_village") or ""),
            current_village=str(data.get("current_village") or data.get("home_village") or ""),
            max_hearts=int(data.get("max_hearts", 0)),
            current_hearts=int(data.get("current_hearts", 0)),
            max_stamina=int(data.get("max_stamina", 0)),
            current_stamina=int(data.get("current_stamina", 0)),
            inventory=inventory,
            ko=bool(data.get("ko", False)),
            debuff=Debuff.from_dict(debuff_raw if isinstance(debuff_raw, Mapping) else None),
        )
