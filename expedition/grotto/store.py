"""Grotto trial records and their document store."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from ..party import utcnow
from .maze import MazeLayout

__all__ = [
    "Grotto",
    "GrottoStore",
    "MazeState",
    "PuzzleState",
    "TRIAL_TYPES",
    "TargetPracticeState",
]

TRIAL_TYPES = ("blessing", "target_practice", "puzzle", "maze", "test_of_power")


@dataclass
class TargetPracticeState:
    successes: int = 0
    attempts: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {"successes": self.successes, "attempts": self.attempts}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "TargetPracticeState":
        return cls(int(data.get("successes", 0)), int(data.get("attempts", 0)))


@dataclass
class PuzzleState:
    puzzle_id: str
    status: str = "open"
    offering: Dict[str, int] = field(default_factory=dict)
    description: str = ""
    submitted_by: str | None = None
    suggested: bool | None = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "puzzle_id": self.puzzle_id,
            "status": self.status,
            "offering": dict(self.offering),
            "description": self.description,
            "submitted_by": self.submitted_by,
            "suggested": self.suggested,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "PuzzleState":
        offering = data.get("offering")
        suggested = data.get("suggested")
        return cls(
            puzzle_id=str(data["puzzle_id"]),
            status=str(data.get("status", "open")),
            offering={str(k): int(v) for k, v in offering.items()} if isinstance(offering, Mapping) else {},
            description=str(data.get("description", "")),
            submitted_by=str(data["submitted_by"]) if data.get("submitted_by") else None,
            suggested=bool(suggested) if suggested is not None else None,
        )


@dataclass
class MazeState:
    layout: MazeLayout
    x: int
    y: int
    facing: str = "s"
    trail: List[tuple[int, int]] = field(default_factory=list)
    visited_cells: List[str] = field(default_factory=list)

    @property
    def position(self) -> tuple[int, int]:
        return (self.x, self.y)

    def move_to(self, x: int, y: int) -> None:
        self.trail.append((self.x, self.y))
        self.x, self.y = x, y

    def rewind(self, steps: int) -> int:
        """Walk back along the trail; return how many steps were undone."""

        undone = 0
        while self.trail and undone < steps:
            self.x, self.y = self.trail.pop()
            undone += 1
        return undone

    def to_dict(self) -> Dict[str, object]:
        return {
            "layout": self.layout.to_dict(),
            "x": self.x,
            "y": self.y,
            "facing": self.facing,
            "trail": [list(point) for point in self.trail],
            "visited_cells": list(self.visited_cells),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "MazeState":
        layout_raw = data.get("layout")
        return cls(
            layout=MazeLayout.from_dict(layout_raw if isinstance(layout_raw, Mapping) else {}),
            x=int(data.get("x", 1)),
            y=int(data.get("y", 1)),
            facing=str(data.get("facing", "s")),
            trail=[(int(point[0]), int(point[1])) for point in data.get("trail") or ()],
            visited_cells=[str(key) for key in data.get("visited_cells") or ()],
        )


@dataclass
class Grotto:
    grotto_id: str
    square: str
    quadrant: str
    expedition_id: str
    trial_type: str
    sealed: bool = False
    raid_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    target_practice: TargetPracticeState | None = None
    puzzle: PuzzleState | None = None
    maze: MazeState | None = None

    @property
    def is_open(self) -> bool:
        return not self.sealed and self.completed_at is None

    @property
    def store_key(self) -> str:
        return GrottoStore.make_key(self.square, self.quadrant, self.expedition_id)

    def complete(self, now: datetime, *, sealed: bool = False) -> None:
        self.completed_at = now
        self.sealed = sealed

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {
            "grotto_id": self.grotto_id,
            "square": self.square,
            "quadrant": self.quadrant,
            "expedition_id": self.expedition_id,
            "trial_type": self.trial_type,
            "sealed": self.sealed,
            "raid_id": self.raid_id,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
        if self.target_practice is not None:
            data["target_practice"] = self.target_practice.to_dict()
        if self.puzzle is not None:
            data["puzzle"] = self.puzzle.to_dict()
        if self.maze is not None:
            data["maze"] = self.maze.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "Grotto":
        completed_at = data.get("completed_at")
        created_at = data.get("created_at")
        target = data.get("target_practice")
        puzzle = data.get("puzzle")
        maze = data.get("maze")
        return cls(
            grotto_id=str(data["grotto_id"]),
            square=str(data["square"]),
            quadrant=str(data["quadrant"]),
            expedition_id=str(data["expedition_id"]),
            trial_type=str(data["trial_type"]),
            sealed=bool(data.get("sealed", False)),
            raid_id=str(data["raid_id"]) if data.get("raid_id") else None,
            created_at=datetime.fromisoformat(created_at) if isinstance(created_at, str) else utcnow(),
            completed_at=datetime.fromisoformat(completed_at) if isinstance(completed_at, str) else None,
            target_practice=TargetPracticeState.from_dict(target) if isinstance(target, Mapping) else None,
            puzzle=PuzzleState.from_dict(puzzle) if isinstance(puzzle, Mapping) else None,
            maze=MazeState.from_dict(maze) if isinstance(maze, Mapping) else None,
        )


class GrottoStore:
    """Concurrency-safe storage for grottos keyed by square, quadrant and expedition."""

    def __init__(self, storage_path: Path) -> None:
        self._storage_path = storage_path
        self._lock = asyncio.Lock()
        self._loaded = False
        self._cache: Dict[str, Dict[str, object]] = {}

    @staticmethod
    def make_key(square: str, quadrant: str, expedition_id: str) -> str:
        return f"{square.upper()}|{quadrant.upper()}|{expedition_id.upper()}"

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        if self._storage_path.exists():
            text = await asyncio.to_thread(self._storage_path.read_text, encoding="utf-8")
            if text.strip():
                try:
                    raw = json.loads(text)
                except json.JSONDecodeError:
                    raw = {}
                if isinstance(raw, dict):
                    self._cache = {str(k): v for k, v in raw.items() if isinstance(v, dict)}
        else:
            self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        self._loaded = True

    async def _persist(self) -> None:
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        text = json.dumps(self._cache, indent=2, sort_keys=True)
        await asyncio.to_thread(self._storage_path.write_text, text, encoding="utf-8")

    async def get(self, square: str, quadrant: str, expedition_id: str) -> Optional[Grotto]:
        async with self._lock:
            await self._ensure_loaded()
            payload = self._cache.get(self.make_key(square, quadrant, expedition_id))
            return Grotto.from_dict(payload) if payload else None

    async def get_by_id(self, grotto_id: str) -> Optional[Grotto]:
        async with self._lock:
            await self._ensure_loaded()
            for payload in self._cache.values():
                if payload.get("grotto_id") == grotto_id:
                    return Grotto.from_dict(payload)
            return None

    async def save(self, grotto: Grotto) -> None:
        async with self._lock:
            await self._ensure_loaded()
            self._cache[grotto.store_key] = grotto.to_dict()
            await self._persist()

    async def delete(self, square: str, quadrant: str, expedition_id: str) -> bool:
        async with self._lock:
            await self._ensure_loaded()
            removed = self._cache.pop(self.make_key(square, quadrant, expedition_id), None)
            if removed is not None:
                await self._persist()
            return removed is not None

    async def list_for_expedition(self, expedition_id: str, square: str | None = None) -> list[Grotto]:
        async with self._lock:
            await self._ensure_loaded()
            grottos = [
                Grotto.from_dict(payload)
                for payload in self._cache.values()
                if str(payload.get("expedition_id", "")).upper() == expedition_id.upper()
            ]
        if square is not None:
            grottos = [grotto for grotto in grottos if grotto.square.upper() == square.upper()]
        return sorted(grottos, key=lambda grotto: grotto.created_at)
