"""Shared world-map documents: squares, quadrants and their discoveries."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .grid import QUADRANTS

__all__ = [
    "COUNTED_TYPES",
    "Discovery",
    "MapStore",
    "QuadrantRecord",
    "STATUS_ORDER",
    "SquareRecord",
    "UpdateResult",
]

STATUS_ORDER: Mapping[str, int] = {"unexplored": 0, "explored": 1, "secured": 2}
COUNTED_TYPES = frozenset({"monster_camp", "grotto", "relic", "ruins"})


@dataclass(frozen=True)
class Discovery:
    type: str
    discovered_by: str
    discovered_at: datetime
    discovery_key: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "type": self.type,
            "discovered_by": self.discovered_by,
            "discovered_at": self.discovered_at.isoformat(),
            "discovery_key": self.discovery_key,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "Discovery":
        return cls(
            type=str(data["type"]),
            discovered_by=str(data.get("discovered_by", "")),
            discovered_at=datetime.fromisoformat(str(data["discovered_at"])),
            discovery_key=str(data["discovery_key"]),
        )


@dataclass
class QuadrantRecord:
    quadrant_id: str
    status: str = "unexplored"
    discoveries: List[Discovery] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "quadrant_id": self.quadrant_id,
            "status": self.status,
            "discoveries": [discovery.to_dict() for discovery in self.discoveries],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "QuadrantRecord":
        return cls(
            quadrant_id=str(data["quadrant_id"]).upper(),
            status=str(data.get("status", "unexplored")),
            discoveries=[Discovery.from_dict(item) for item in data.get("discoveries") or ()],
        )


@dataclass
class SquareRecord:
    square_id: str
    region: str = ""
    quadrants: List[QuadrantRecord] = field(default_factory=list)

    def quadrant(self, quadrant_id: str) -> Optional[QuadrantRecord]:
        wanted = quadrant_id.upper()
        for record in self.quadrants:
            if record.quadrant_id == wanted:
                return record
        return None

    def discoveries(self) -> List[Discovery]:
        return [discovery for record in self.quadrants for discovery in record.discoveries]

    def statuses(self) -> Dict[str, str]:
        return {record.quadrant_id: record.status for record in self.quadrants}

    def to_dict(self) -> Dict[str, object]:
        return {
            "square_id": self.square_id,
            "region": self.region,
            "quadrants": [record.to_dict() for record in self.quadrants],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "SquareRecord":
        return cls(
            square_id=str(data["square_id"]),
            region=str(data.get("region", "")),
            quadrants=[QuadrantRecord.from_dict(item) for item in data.get("quadrants") or ()],
        )


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of a conditional map write."""

    matched: bool
    modified: bool
    rejected: str | None = None


class MapStore:
    """Concurrency-safe storage for world-map squares keyed by square id."""

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
                cache = {str(key): value for key, value in raw.items() if isinstance(value, dict)}
        self._cache = cache
        self._loaded = True

    async def _persist(self) -> None:
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        text = json.dumps(self._cache, indent=2, sort_keys=True)
        await asyncio.to_thread(self._storage_path.write_text, text, encoding="utf-8")

    def _resolve_square_key(self, square_id: str) -> Optional[str]:
        lowered = square_id.strip().casefold()
        for existing in self._cache:
            if existing.casefold() == lowered:
                return existing
        return None

    def _load_square(self, square_id: str) -> Optional[SquareRecord]:
        key = self._resolve_square_key(square_id)
        if key is None:
            return None
        return SquareRecord.from_dict(self._cache[key])

    def _store_square(self, record: SquareRecord) -> None:
        key = self._resolve_square_key(record.square_id) or record.square_id
        self._cache[key] = record.to_dict()

    async def get_square(self, square_id: str) -> Optional[SquareRecord]:
        async with self._lock:
            await self._ensure_loaded()
            return self._load_square(square_id)

    async def ensure_square(self, square_id: str, region: str = "") -> SquareRecord:
        """Return the square, creating it with unexplored quadrants if missing."""

        async with self._lock:
            await self._ensure_loaded()
            record = self._load_square(square_id)
            if record is not None:
                return record
            record = SquareRecord(
                square_id=square_id.upper(),
                region=region,
                quadrants=[QuadrantRecord(quadrant_id=name) for name in QUADRANTS],
            )
            self._store_square(record)
            await self._persist()
            return record

    async def set_quadrant_status(
        self,
        square_id: str,
        quadrant_id: str,
        status: str,
        *,
        allow_downgrade: bool = False,
    ) -> UpdateResult:
        """Move a quadrant to ``status``.

        Without ``allow_downgrade`` the write only raises the status along
        ``unexplored -> explored -> secured`` and never touches inaccessible
        quadrants.
        """

        async with self._lock:
            await self._ensure_loaded()
            record = self._load_square(square_id)
            if record is None:
                return UpdateResult(matched=False, modified=False)
            quadrant = record.quadrant(quadrant_id)
            if quadrant is None:
                return UpdateResult(matched=False, modified=False)
            if quadrant.status == status:
                return UpdateResult(matched=True, modified=False)
            if not allow_downgrade:
                current_rank = STATUS_ORDER.get(quadrant.status)
                target_rank = STATUS_ORDER.get(status)
                if current_rank is None or target_rank is None or target_rank < current_rank:
                    return UpdateResult(matched=True, modified=False)
            quadrant.status = status
            self._store_square(record)
            await self._persist()
            return UpdateResult(matched=True, modified=True)

    async def add_discovery(
        self,
        square_id: str,
        quadrant_id: str,
        discovery: Discovery,
        *,
        max_counted: int = 3,
    ) -> UpdateResult:
        """Attach ``discovery`` unless the square's discovery limits forbid it."""

        async with self._lock:
            await self._ensure_loaded()
            record = self._load_square(square_id)
            if record is None:
                return UpdateResult(matched=False, modified=False)
            quadrant = record.quadrant(quadrant_id)
            if quadrant is None:
                return UpdateResult(matched=False, modified=False)
            existing = record.discoveries()
            if any(item.discovery_key == discovery.discovery_key for item in existing):
                return UpdateResult(matched=True, modified=False)
            if discovery.type in COUNTED_TYPES:
                counted = sum(1 for item in existing if item.type in COUNTED_TYPES)
                if counted >= max_counted:
                    return UpdateResult(True, False, rejected="square discovery cap reached")
                if discovery.type == "grotto" and any(item.type == "grotto" for item in existing):
                    return UpdateResult(True, False, rejected="square already has a grotto")
            quadrant.discoveries.append(discovery)
            self._store_square(record)
            await self._persist()
            return UpdateResult(matched=True, modified=True)

    async def find_discovery(self, square_id: str, discovery_key: str) -> Optional[tuple[str, Discovery]]:
        async with self._lock:
            await self._ensure_loaded()
            record = self._load_square(square_id)
            if record is None:
                return None
            for quadrant in record.quadrants:
                for discovery in quadrant.discoveries:
                    if discovery.discovery_key == discovery_key:
                        return quadrant.quadrant_id, discovery
            return None
