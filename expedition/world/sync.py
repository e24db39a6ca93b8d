"""Write-through of quadrant state and discoveries to the shared world map."""

from __future__ import annotations

import logging
from typing import Sequence

from ..party import Expedition, ProgressLogEntry
from .map_store import Discovery, MapStore, UpdateResult

__all__ = ["MapSynchronizer"]

log = logging.getLogger(__name__)


class MapSynchronizer:
    """Keep expedition-local quadrant state consistent with the shared map.

    The map is authoritative for ``explored`` and ``secured``; every write
    here is best-effort and a failing store only produces a warning.
    """

    def __init__(self, store: MapStore, *, max_counted: int = 3) -> None:
        self.store = store
        self.max_counted = max_counted

    async def reconcile(self, party: Expedition) -> None:
        """Refresh the party's cached quadrant states for its current square."""

        try:
            record = await self.store.get_square(party.square)
            if record is None:
                record = await self.store.ensure_square(party.square, party.region)
        except OSError as exc:
            log.warning("Could not read map square %s: %s", party.square, exc)
            return
        party.quadrant_states = record.statuses()
        party.quadrant_state = party.quadrant_states.get(party.quadrant, party.quadrant_state)

    async def discoveries(self, square: str) -> Sequence[Discovery]:
        try:
            record = await self.store.get_square(square)
        except OSError as exc:
            log.warning("Could not read discoveries for square %s: %s", square, exc)
            return ()
        return tuple(record.discoveries()) if record else ()

    async def quadrant_status(self, square: str, quadrant: str) -> str:
        """Return the map status of a quadrant; unknown squares read as unexplored."""

        try:
            record = await self.store.get_square(square)
        except OSError as exc:
            log.warning("Could not read map square %s: %s", square, exc)
            return "unexplored"
        quadrant_record = record.quadrant(quadrant) if record else None
        return quadrant_record.status if quadrant_record else "unexplored"

    async def discoveries_in(self, square: str, quadrant: str) -> Sequence[Discovery]:
        try:
            record = await self.store.get_square(square)
        except OSError as exc:
            log.warning("Could not read discoveries for %s %s: %s", square, quadrant, exc)
            return ()
        quadrant_record = record.quadrant(quadrant) if record else None
        return tuple(quadrant_record.discoveries) if quadrant_record else ()

    async def mark_explored(self, party: Expedition) -> bool:
        """Mark the party's quadrant explored; return ``True`` if it was unexplored."""

        if party.quadrant_state != "unexplored":
            return False
        party.quadrant_state = "explored"
        party.quadrant_states[party.quadrant] = "explored"
        party.record_explored(party.square, party.quadrant)
        await self._write_status(party.square, party.quadrant, "explored")
        return True

    async def mark_secured(self, party: Expedition) -> None:
        party.quadrant_state = "secured"
        party.quadrant_states[party.quadrant] = "secured"
        await self._write_status(party.square, party.quadrant, "secured")

    async def mirror_discovery(
        self, party: Expedition, entry: ProgressLogEntry
    ) -> UpdateResult | None:
        """Write a confirmed discovery to the map and flag the log entry as mirrored."""

        if entry.discovery_key is None:
            return None
        discovery = Discovery(
            type=entry.outcome,
            discovered_by=entry.character_name,
            discovered_at=entry.at,
            discovery_key=entry.discovery_key,
        )
        try:
            result = await self.store.add_discovery(
                entry.square, entry.quadrant, discovery, max_counted=self.max_counted
            )
        except OSError as exc:
            log.warning(
                "Failed to mirror %s discovery for expedition %s: %s",
                entry.outcome,
                party.expedition_id,
                exc,
            )
            return None
        if not result.matched:
            log.warning(
                "No map square matched %s %s while mirroring a %s discovery",
                entry.square,
                entry.quadrant,
                entry.outcome,
            )
        elif result.rejected is None:
            entry.mirrored = True
        return result

    async def rollback(self, party: Expedition) -> int:
        """Revert every quadrant this run explored back to ``unexplored``."""

        reverted = 0
        for square, quadrant in party.explored_this_run:
            result = await self._write_status(square, quadrant, "unexplored", allow_downgrade=True)
            if result is not None and result.modified:
                reverted += 1
        for square, quadrant in party.explored_this_run:
            if square == party.square:
                party.quadrant_states[quadrant] = "unexplored"
        if party.quadrant_states:
            party.quadrant_state = party.quadrant_states.get(party.quadrant, party.quadrant_state)
        log.info("Rolled back %s quadrant(s) for expedition %s", reverted, party.expedition_id)
        return reverted

    async def _write_status(
        self, square: str, quadrant: str, status: str, *, allow_downgrade: bool = False
    ) -> UpdateResult | None:
        try:
            result = await self.store.set_quadrant_status(
                square, quadrant, status, allow_downgrade=allow_downgrade
            )
        except OSError as exc:
            log.warning("Failed to write %s for %s %s: %s", status, square, quadrant, exc)
            return None
        if not result.matched:
            log.warning("No map square matched %s %s; %s not recorded", square, quadrant, status)
        return result
