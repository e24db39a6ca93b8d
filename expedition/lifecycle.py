"""Terminal transitions of an expedition: returning home or being knocked out."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict

from .characters import Character, Debuff, get_region
from .config import EngineConfig
from .errors import ExternalCollaboratorFailure
from .party import Expedition, utcnow
from .raids import RaidService
from .repository import CharacterRepository
from .rewards import ReturnShare, split_evenly
from .world import MapSynchronizer

__all__ = ["ExpeditionLifecycle"]

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Snapshot:
    """What a return home overwrites on one character record."""

    character_id: str
    hearts: int
    stamina: int
    village: str
    inventory: Dict[str, int]

    @classmethod
    def of(cls, character: Character) -> "_Snapshot":
        return cls(
            character_id=character.character_id,
            hearts=character.current_hearts,
            stamina=character.current_stamina,
            village=character.current_village,
            inventory=dict(character.inventory),
        )

    def restore(self, character: Character) -> None:
        character.current_hearts = self.hearts
        character.current_stamina = self.stamina
        character.current_village = self.village
        character.inventory = dict(self.inventory)


class ExpeditionLifecycle:
    """Apply the success and failure endings to a party and its characters."""

    def __init__(
        self,
        config: EngineConfig,
        characters: CharacterRepository,
        sync: MapSynchronizer,
        raids: RaidService,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.characters = characters
        self.sync = sync
        self.raids = raids
        self._clock = clock

    async def succeed(self, party: Expedition) -> list[ReturnShare]:
        """Split the remaining pool and send everyone home with their items."""

        party.recompute_totals()
        count = party.member_count
        hearts = split_evenly(party.total_hearts, count)
        stamina = split_evenly(party.total_stamina, count)
        village = get_region(party.region).village
        shares: list[ReturnShare] = []
        previous: list[_Snapshot] = []
        try:
            for index, slot in enumerate(party.characters):
                carried = tuple(slot.items) + tuple(slot.found_items)
                share = ReturnShare(
                    character_id=slot.character_id,
                    name=slot.name,
                    hearts=hearts[index],
                    stamina=stamina[index],
                    items=carried,
                )

                def return_home(character: Character, share: ReturnShare = share) -> None:
                    previous.append(_Snapshot.of(character))
                    character.current_hearts = share.hearts
                    character.current_stamina = share.stamina
                    character.current_village = village
                    for item in share.items:
                        character.add_item(item)

                await self._write(slot.character_id, return_home)
                shares.append(share)
        except ExternalCollaboratorFailure:
            await self._undo(previous)
            raise
        for slot, share in zip(party.characters, shares):
            slot.current_hearts = share.hearts
            slot.current_stamina = share.stamina
            slot.items = []
            slot.found_items = []
        party.recompute_totals()
        await self._finish(party, "success")
        return shares

    async def fail(self, party: Expedition) -> None:
        """Knock the party out, discard expedition items and roll back the map."""

        village = get_region(party.region).village
        ends_at = self._clock() + self.config.recovery_period

        def knock_out(character: Character) -> None:
            character.current_hearts = 0
            character.current_stamina = 0
            character.ko = True
            character.current_village = village
            character.debuff = Debuff(active=True, ends_at=ends_at)

        for slot in party.characters:
            await self._write(slot.character_id, knock_out)
        for slot in party.characters:
            slot.current_hearts = 0
            slot.current_stamina = 0
            slot.items = []
            slot.found_items = []
        party.recompute_totals()
        await self.sync.rollback(party)
        await self._finish(party, "failure")

    async def _write(self, character_id: str, mutator: Callable[[Character], None]) -> None:
        try:
            await self.characters.update(character_id, mutator)
        except (OSError, KeyError, ValueError) as exc:
            raise ExternalCollaboratorFailure(
                f"Could not update character {character_id}: {exc}"
            ) from exc

    async def _undo(self, previous: list["_Snapshot"]) -> None:
        for snapshot in reversed(previous):
            try:
                await self.characters.update(snapshot.character_id, snapshot.restore)
            except (OSError, KeyError, ValueError):
                log.exception("Failed to restore character %s after a failed return", snapshot.character_id)

    async def _finish(self, party: Expedition, outcome: str) -> None:
        party.status = "completed"
        party.outcome = outcome
        party.pending = None
        party.active_raid_id = None
        party.completed_at = self._clock()
        try:
            closed = await self.raids.close_for_expedition(party.expedition_id)
        except OSError as exc:
            log.warning("Could not close raids for expedition %s: %s", party.expedition_id, exc)
        else:
            if closed:
                log.info("Closed %s raid(s) for expedition %s", closed, party.expedition_id)
        log.info("Expedition %s completed with %s", party.expedition_id, outcome)
