"""Expedition session models and their document store."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

__all__ = [
    "CharacterSlot",
    "Expedition",
    "ExpeditionStore",
    "PendingChoice",
    "ProgressLogEntry",
    "utcnow",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: object) -> datetime | None:
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value)
    return None


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class CharacterSlot:
    """Snapshot of a party member carried inside an expedition."""

    character_id: str
    user_id: int
    name: str
    current_hearts: int
    current_stamina: int
    max_hearts: int
    max_stamina: int
    job: str = ""
    items: List[str] = field(default_factory=list)
    found_items: List[str] = field(default_factory=list)

    def has_item(self, item_name: str) -> bool:
        lowered = item_name.casefold()
        return any(item.casefold() == lowered for item in self.items)

    def take_item(self, item_name: str) -> Optional[str]:
        lowered = item_name.casefold()
        for index, item in enumerate(self.items):
            if item.casefold() == lowered:
                return self.items.pop(index)
        return None

    def to_dict(self) -> Dict[str, object]:
        return {
            "character_id": self.character_id,
            "user_id": self.user_id,
            "name": self.name,
            "job": self.job,
            "current_hearts": self.current_hearts,
            "current_stamina": self.current_stamina,
            "max_hearts": self.max_hearts,
            "max_stamina": self.max_stamina,
            "items": list(self.items),
            "found_items": list(self.found_items),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "CharacterSlot":
        return cls(
            character_id=str(data["character_id"]),
            user_id=int(data["user_id"]),
            name=str(data["name"]),
            job=str(data.get("job") or ""),
            current_hearts=int(data.get("current_hearts", 0)),
            current_stamina=int(data.get("current_stamina", 0)),
            max_hearts=int(data.get("max_hearts", 0)),
            max_stamina=int(data.get("max_stamina", 0)),
            items=[str(item) for item in data.get("items") or ()],
            found_items=[str(item) for item in data.get("found_items") or ()],
        )


@dataclass
class ProgressLogEntry:
    """Append-only audit record of something that happened on the expedition."""

    at: datetime
    character_name: str
    outcome: str
    message: str
    square: str
    quadrant: str
    loot: Dict[str, int] | None = None
    costs: Dict[str, int] | None = None
    discovery_key: str | None = None
    discovery_status: str | None = None
    mirrored: bool = False

    @property
    def is_discovery(self) -> bool:
        return self.discovery_key is not None

    def at_location(self, square: str, quadrant: str | None = None) -> bool:
        if self.square.casefold() != square.casefold():
            return False
        return quadrant is None or self.quadrant.upper() == quadrant.upper()

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {
            "at": self.at.isoformat(),
            "character_name": self.character_name,
            "outcome": self.outcome,
            "message": self.message,
            "square": self.square,
            "quadrant": self.quadrant,
        }
        if self.loot:
            data["loot"] = dict(self.loot)
        if self.costs:
            data["costs"] = dict(self.costs)
        if self.discovery_key is not None:
            data["discovery_key"] = self.discovery_key
            data["discovery_status"] = self.discovery_status
            data["mirrored"] = self.mirrored
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "ProgressLogEntry":
        loot = data.get("loot")
        costs = data.get("costs")
        return cls(
            at=_parse_time(data.get("at")) or utcnow(),
            character_name=str(data.get("character_name", "")),
            outcome=str(data.get("outcome", "")),
            message=str(data.get("message", "")),
            square=str(data.get("square", "")),
            quadrant=str(data.get("quadrant", "")),
            loot={str(k): int(v) for k, v in loot.items()} if isinstance(loot, Mapping) else None,
            costs={str(k): int(v) for k, v in costs.items()} if isinstance(costs, Mapping) else None,
            discovery_key=str(data["discovery_key"]) if data.get("discovery_key") else None,
            discovery_status=str(data["discovery_status"]) if data.get("discovery_status") else None,
            mirrored=bool(data.get("mirrored", False)),
        )


@dataclass
class PendingChoice:
    """A suspended continuation waiting on one party member's decision."""

    kind: str
    character_index: int
    options: tuple[str, ...]
    default: str
    expires_at: datetime
    payload: Dict[str, object] = field(default_factory=dict)

    def expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind,
            "character_index": self.character_index,
            "options": list(self.options),
            "default": self.default,
            "expires_at": self.expires_at.isoformat(),
            "payload": dict(self.payload),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "PendingChoice":
        payload = data.get("payload")
        return cls(
            kind=str(data["kind"]),
            character_index=int(data["character_index"]),
            options=tuple(str(option) for option in data.get("options") or ()),
            default=str(data["default"]),
            expires_at=_parse_time(data.get("expires_at")) or utcnow(),
            payload=dict(payload) if isinstance(payload, Mapping) else {},
        )


@dataclass
class Expedition:
    """One cooperative exploration run by a party of characters."""

    expedition_id: str
    region: str
    leader_user_id: int
    square: str
    quadrant: str
    characters: List[CharacterSlot] = field(default_factory=list)
    quadrant_state: str = "unexplored"
    quadrant_states: Dict[str, str] = field(default_factory=dict)
    total_hearts: int = 0
    total_stamina: int = 0
    current_turn: int = 0
    progress_log: List[ProgressLogEntry] = field(default_factory=list)
    explored_this_run: List[tuple[str, str]] = field(default_factory=list)
    status: str = "open"
    outcome: str | None = None
    pending: PendingChoice | None = None
    active_raid_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "started"

    @property
    def member_count(self) -> int:
        return len(self.characters)

    @property
    def location(self) -> tuple[str, str]:
        return (self.square, self.quadrant)

    def recompute_totals(self) -> None:
        self.total_hearts = sum(slot.current_hearts for slot in self.characters)
        self.total_stamina = sum(slot.current_stamina for slot in self.characters)

    def slot_index(self, character_name: str) -> Optional[int]:
        lowered = character_name.strip().casefold()
        for index, slot in enumerate(self.characters):
            if slot.name.casefold() == lowered:
                return index
        return None

    def current_slot(self) -> Optional[CharacterSlot]:
        if not self.characters:
            return None
        return self.characters[self.current_turn % len(self.characters)]

    def append_log(self, entry: ProgressLogEntry) -> ProgressLogEntry:
        self.progress_log.append(entry)
        return entry

    def entries_at(self, square: str, quadrant: str | None = None) -> Sequence[ProgressLogEntry]:
        return tuple(entry for entry in self.progress_log if entry.at_location(square, quadrant))

    def find_discovery(self, discovery_key: str) -> Optional[ProgressLogEntry]:
        for entry in self.progress_log:
            if entry.discovery_key == discovery_key:
                return entry
        return None

    def record_explored(self, square: str, quadrant: str) -> None:
        key = (square.upper(), quadrant.upper())
        if key not in self.explored_this_run:
            self.explored_this_run.append(key)

    def to_dict(self) -> Dict[str, object]:
        return {
            "expedition_id": self.expedition_id,
            "region": self.region,
            "leader_user_id": self.leader_user_id,
            "square": self.square,
            "quadrant": self.quadrant,
            "quadrant_state": self.quadrant_state,
            "quadrant_states": dict(self.quadrant_states),
            "characters": [slot.to_dict() for slot in self.characters],
            "total_hearts": self.total_hearts,
            "total_stamina": self.total_stamina,
            "current_turn": self.current_turn,
            "progress_log": [entry.to_dict() for entry in self.progress_log],
            "explored_this_run": [list(pair) for pair in self.explored_this_run],
            "status": self.status,
            "outcome": self.outcome,
            "pending": self.pending.to_dict() if self.pending else None,
            "active_raid_id": self.active_raid_id,
            "created_at": self.created_at.isoformat(),
            "completed_at": _format_time(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "Expedition":
        pending = data.get("pending")
        states = data.get("quadrant_states")
        return cls(
            expedition_id=str(data["expedition_id"]),
            region=str(data["region"]),
            leader_user_id=int(data.get("leader_user_id", 0)),
            square=str(data.get("square", "")),
            quadrant=str(data.get("quadrant", "")),
            quadrant_state=str(data.get("quadrant_state", "unexplored")),
            quadrant_states=(
                {str(k): str(v) for k, v in states.items()} if isinstance(states, Mapping) else {}
            ),
            characters=[CharacterSlot.from_dict(slot) for slot in data.get("characters") or ()],
            total_hearts=int(data.get("total_hearts", 0)),
            total_stamina=int(data.get("total_stamina", 0)),
            current_turn=int(data.get("current_turn", 0)),
            progress_log=[
                ProgressLogEntry.from_dict(entry) for entry in data.get("progress_log") or ()
            ],
            explored_this_run=[
                (str(pair[0]), str(pair[1])) for pair in data.get("explored_this_run") or ()
            ],
            status=str(data.get("status", "open")),
            outcome=str(data["outcome"]) if data.get("outcome") else None,
            pending=PendingChoice.from_dict(pending) if isinstance(pending, Mapping) else None,
            active_raid_id=str(data["active_raid_id"]) if data.get("active_raid_id") else None,
            created_at=_parse_time(data.get("created_at")) or utcnow(),
            completed_at=_parse_time(data.get("completed_at")),
        )


class ExpeditionStore:
    """Concurrency-safe storage for expedition documents keyed by id."""

    def __init__(self, storage_path: Path) -> None:
        self._storage_path = storage_path
        self._lock = asyncio.Lock()
        self._loaded = False
        self._cache: Dict[str, Dict[str, object]] = {}

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        if not self._storage_path.exists():
            self._storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._cache = {}
            self._loaded = True
            return
        text = await asyncio.to_thread(self._storage_path.read_text, encoding="utf-8")
        cache: Dict[str, Dict[str, object]] = {}
        if text.strip():
            try:
                raw = json.loads(text)
            except json.JSONDecodeError:
                raw = {}
            if isinstance(raw, dict):
                for expedition_id, payload in raw.items():
                    if isinstance(payload, dict):
                        cache[str(expedition_id)] = payload
        self._cache = cache
        self._loaded = True

    async def _persist(self) -> None:
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        text = json.dumps(self._cache, indent=2, sort_keys=True)
        await asyncio.to_thread(self._storage_path.write_text, text, encoding="utf-8")

    async def get(self, expedition_id: str) -> Optional[Expedition]:
        async with self._lock:
            await self._ensure_loaded()
            payload = self._cache.get(expedition_id.strip().upper())
            return Expedition.from_dict(payload) if payload else None

    async def save(self, expedition: Expedition) -> None:
        async with self._lock:
            await self._ensure_loaded()
            self._cache[expedition.expedition_id.upper()] = expedition.to_dict()
            await self._persist()

    async def exists(self, expedition_id: str) -> bool:
        async with self._lock:
            await self._ensure_loaded()
            return expedition_id.strip().upper() in self._cache

    async def list_active(self) -> list[Expedition]:
        async with self._lock:
            await self._ensure_loaded()
            return [
                Expedition.from_dict(payload)
                for payload in self._cache.values()
                if payload.get("status") == "started"
            ]

    async def find_for_character(self, character_id: str) -> Optional[Expedition]:
        """Return the open or started expedition ``character_id`` belongs to."""

        async with self._lock:
            await self._ensure_loaded()
            for payload in self._cache.values():
                if payload.get("status") not in ("open", "started"):
                    continue
                for slot in payload.get("characters") or ():
                    if isinstance(slot, dict) and slot.get("character_id") == character_id:
                        return Expedition.from_dict(payload)
            return None

    async def find_by_raid(self, raid_id: str) -> Optional[Expedition]:
        async with self._lock:
            await self._ensure_loaded()
            for payload in self._cache.values():
                if payload.get("active_raid_id") == raid_id:
                    return Expedition.from_dict(payload)
            return None
