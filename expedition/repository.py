"""Concurrency-safe persistence helpers for characters."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Callable, Dict, Optional

from .characters import Character

__all__ = ["CharacterRepository"]


class CharacterRepository:
    """Store authoritative character records keyed by character id, backed by disk."""

    def __init__(self, storage_path: Path) -> None:
        self._storage_path = storage_path
        self._lock = asyncio.Lock()
        self._cache: Dict[str, Dict[str, object]] = {}
        self._loaded = False
        self._storage_serial: Optional[tuple[int, int]] = None

    async def _ensure_loaded(self) -> None:
        current_serial = await self._current_storage_serial()
        if self._loaded and self._storage_serial == current_serial:
            return
        if current_serial is None:
            self._storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._cache = {}
            self._loaded = True
            self._storage_serial = None
            return
        self._cache = {}
        data = await asyncio.to_thread(self._storage_path.read_text, encoding="utf-8")
        if data.strip():
            try:
                raw = json.loads(data)
            except json.JSONDecodeError:
                self._cache = {}
            else:
                if isinstance(raw, dict):
                    self._cache = {
                        str(character_id): dict(payload)
                        for character_id, payload in raw.items()
                        if isinstance(payload, dict)
                    }
        self._loaded = True
        self._storage_serial = current_serial

    async def _persist(self) -> None:
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        text = json.dumps(self._cache, indent=2, sort_keys=True)
        await asyncio.to_thread(self._storage_path.write_text, text, encoding="utf-8")
        self._storage_serial = await self._current_storage_serial()
        self._loaded = True

    async def _current_storage_serial(self) -> Optional[tuple[int, int]]:
        if not self._storage_path.exists():
            return None
        stat_result = await asyncio.to_thread(self._storage_path.stat)
        mtime_ns = getattr(stat_result, "st_mtime_ns", None) or int(
            stat_result.st_mtime * 1_000_000_000
        )
        return (mtime_ns, stat_result.st_size)

    async def get(self, character_id: str) -> Optional[Character]:
        async with self._lock:
            await self._ensure_loaded()
            raw = self._cache.get(str(character_id))
            return Character.from_dict(raw) if raw else None

    async def find_by_name(self, user_id: int, name: str) -> Optional[Character]:
        """Return the character named ``name`` owned by ``user_id`` (case-insensitive)."""

        lowered = name.strip().casefold()
        async with self._lock:
            await self._ensure_loaded()
            for payload in self._cache.values():
                try:
                    character = Character.from_dict(payload)
                except (KeyError, TypeError, ValueError):
                    continue
                if character.user_id == user_id and character.name.casefold() == lowered:
                    return character
            return None

    async def list_user_characters(self, user_id: int) -> list[Character]:
        async with self._lock:
            await self._ensure_loaded()
            characters: list[Character] = []
            for payload in self._cache.values():
                try:
                    character = Character.from_dict(payload)
                except (KeyError, TypeError, ValueError):
                    continue
                if character.user_id == user_id:
                    characters.append(character)
            return sorted(characters, key=lambda entry: entry.name.casefold())

    async def save(self, character: Character) -> None:
        async with self._lock:
            await self._ensure_loaded()
            self._cache[character.character_id] = character.to_dict()
            await self._persist()

    async def update(
        self, character_id: str, mutator: Callable[[Character], None]
    ) -> Character:
        """Apply ``mutator`` to a stored character and persist it as one write.

        The mutator runs while the repository lock is held, so concurrent
        expeditions touching the same record never interleave their
        read-modify-write cycles.
        """

        async with self._lock:
            await self._ensure_loaded()
            raw = self._cache.get(str(character_id))
            if raw is None:
                raise KeyError(f"Unknown character '{character_id}'")
            character = Character.from_dict(raw)
            mutator(character)
            self._cache[character.character_id] = character.to_dict()
            await self._persist()
            return character
