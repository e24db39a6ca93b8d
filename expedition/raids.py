"""Raid sessions spawned by raid-tier encounters and grotto boss trials."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Protocol

from .errors import RaidCooldownActive
from .party import utcnow

__all__ = [
    "LocalRaidService",
    "RaidRecord",
    "RaidService",
    "RaidStartResult",
]

log = logging.getLogger(__name__)

ACTIVE = "active"
FINISHED_STATES = frozenset({"defeated", "fled", "failed", "closed"})


@dataclass
class RaidRecord:
    raid_id: str
    monster_name: str
    tier: int
    village: str
    started_by: str
    expedition_id: str | None = None
    grotto_id: str | None = None
    status: str = ACTIVE
    failed_retreat_attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    def to_dict(self) -> Dict[str, object]:
        return {
            "raid_id": self.raid_id,
            "monster_name": self.monster_name,
            "tier": self.tier,
            "village": self.village,
            "started_by": self.started_by,
            "expedition_id": self.expedition_id,
            "grotto_id": self.grotto_id,
            "status": self.status,
            "failed_retreat_attempts": self.failed_retreat_attempts,
            "created_at": self.created_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "RaidRecord":
        ended_at = data.get("ended_at")
        created_at = data.get("created_at")
        return cls(
            raid_id=str(data["raid_id"]),
            monster_name=str(data.get("monster_name", "")),
            tier=int(data.get("tier", 5)),
            village=str(data.get("village", "")),
            started_by=str(data.get("started_by", "")),
            expedition_id=str(data["expedition_id"]) if data.get("expedition_id") else None,
            grotto_id=str(data["grotto_id"]) if data.get("grotto_id") else None,
            status=str(data.get("status", ACTIVE)),
            failed_retreat_attempts=int(data.get("failed_retreat_attempts", 0)),
            created_at=datetime.fromisoformat(created_at) if isinstance(created_at, str) else utcnow(),
            ended_at=datetime.fromisoformat(ended_at) if isinstance(ended_at, str) else None,
        )


@dataclass(frozen=True)
class RaidStartResult:
    success: bool
    raid_id: str | None = None
    raid_data: Mapping[str, object] = field(default_factory=dict)
    error: str | None = None


class RaidService(Protocol):
    async def start(
        self,
        monster_name: str,
        tier: int,
        actor_name: str,
        village: str,
        expedition_id: str | None,
        grotto_id: str | None = None,
    ) -> RaidStartResult: ...

    async def get(self, raid_id: str) -> Optional[RaidRecord]: ...

    async def end_as_retreat(self, raid_id: str) -> Optional[RaidRecord]: ...

    async def record_failed_retreat(self, raid_id: str) -> Optional[RaidRecord]: ...

    async def finish(self, raid_id: str, status: str) -> Optional[RaidRecord]: ...

    async def close_for_expedition(self, expedition_id: str) -> int: ...


class LocalRaidService:
    """JSON-backed raid sessions.

    Village raids share a global cooldown; raids started from an expedition
    skip it since the party cannot choose when a monster shows up.
    """

    def __init__(
        self,
        storage_path: Path,
        *,
        cooldown: timedelta = timedelta(hours=4),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage_path = storage_path
        self._cooldown = cooldown
        self._clock = clock
        self._lock = asyncio.Lock()
        self._loaded = False
        self._raids: Dict[str, Dict[str, object]] = {}
        self._last_village_raid: datetime | None = None

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
                    raids = raw.get("raids")
                    if isinstance(raids, dict):
                        self._raids = {str(k): v for k, v in raids.items() if isinstance(v, dict)}
                    last = raw.get("last_village_raid")
                    if isinstance(last, str):
                        self._last_village_raid = datetime.fromisoformat(last)
        self._loaded = True

    async def _persist(self) -> None:
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "raids": self._raids,
            "last_village_raid": (
                self._last_village_raid.isoformat() if self._last_village_raid else None
            ),
        }
        text = json.dumps(payload, indent=2, sort_keys=True)
        await asyncio.to_thread(self._storage_path.write_text, text, encoding="utf-8")

    async def start(
        self,
        monster_name: str,
        tier: int,
        actor_name: str,
        village: str,
        expedition_id: str | None,
        grotto_id: str | None = None,
    ) -> RaidStartResult:
        async with self._lock:
            await self._ensure_loaded()
            now = self._clock()
            if expedition_id is None and self._last_village_raid is not None:
                remaining = self._last_village_raid + self._cooldown - now
                if remaining > timedelta(0):
                    raise RaidCooldownActive(remaining.total_seconds())
            raid = RaidRecord(
                raid_id=f"R{secrets.token_hex(4).upper()}",
                monster_name=monster_name,
                tier=tier,
                village=village,
                started_by=actor_name,
                expedition_id=expedition_id,
                grotto_id=grotto_id,
                created_at=now,
            )
            self._raids[raid.raid_id] = raid.to_dict()
            if expedition_id is None:
                self._last_village_raid = now
            await self._persist()
        log.info(
            "Raid %s started against %s (tier %s) by %s",
            raid.raid_id,
            monster_name,
            tier,
            actor_name,
        )
        return RaidStartResult(success=True, raid_id=raid.raid_id, raid_data=raid.to_dict())

    async def get(self, raid_id: str) -> Optional[RaidRecord]:
        async with self._lock:
            await self._ensure_loaded()
            payload = self._raids.get(raid_id)
            return RaidRecord.from_dict(payload) if payload else None

    async def _mutate(self, raid_id: str, mutator: Callable[[RaidRecord], None]) -> Optional[RaidRecord]:
        async with self._lock:
            await self._ensure_loaded()
            payload = self._raids.get(raid_id)
            if payload is None:
                return None
            raid = RaidRecord.from_dict(payload)
            mutator(raid)
            self._raids[raid_id] = raid.to_dict()
            await self._persist()
            return raid

    async def end_as_retreat(self, raid_id: str) -> Optional[RaidRecord]:
        return await self.finish(raid_id, "fled")

    async def record_failed_retreat(self, raid_id: str) -> Optional[RaidRecord]:
        def bump(raid: RaidRecord) -> None:
            raid.failed_retreat_attempts += 1

        return await self._mutate(raid_id, bump)

    async def finish(self, raid_id: str, status: str) -> Optional[RaidRecord]:
        if status not in FINISHED_STATES:
            raise ValueError(f"'{status}' is not a terminal raid state")
        now = self._clock()

        def close(raid: RaidRecord) -> None:
            if raid.is_active:
                raid.status = status
                raid.ended_at = now

        return await self._mutate(raid_id, close)

    async def close_for_expedition(self, expedition_id: str) -> int:
        async with self._lock:
            await self._ensure_loaded()
            now = self._clock()
            closed = 0
            for raid_id, payload in self._raids.items():
                raid = RaidRecord.from_dict(payload)
                if raid.expedition_id == expedition_id and raid.is_active:
                    raid.status = "closed"
                    raid.ended_at = now
                    self._raids[raid_id] = raid.to_dict()
                    closed += 1
            if closed:
                await self._persist()
            return closed
