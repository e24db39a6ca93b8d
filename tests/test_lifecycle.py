import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from expedition.characters import Character
from expedition.config import EngineConfig
from expedition.lifecycle import ExpeditionLifecycle
from expedition.party import CharacterSlot, Expedition
from expedition.raids import LocalRaidService
from expedition.repository import CharacterRepository
from expedition.rewards import format_loot, share_summary, split_evenly
from expedition.world import MapStore, MapSynchronizer

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_split_evenly_gives_remainder_to_earlier_members() -> None:
    assert split_evenly(5, 2) == [3, 2]
    assert split_evenly(7, 3) == [3, 2, 2]
    assert split_evenly(0, 2) == [0, 0]
    assert split_evenly(4, 0) == []


def test_format_loot() -> None:
    assert format_loot(None) == "nothing"
    assert format_loot({"Wood": 2, "Amber": 1}) == "Amber, Wood x2"


async def _setup(tmp_path, resources):
    characters = CharacterRepository(tmp_path / "characters.json")
    slots = []
    for index, (hearts, stamina) in enumerate(resources):
        await characters.save(
            Character(
                character_id=f"c{index}",
                user_id=index + 1,
                name=f"Member{index}",
                home_village="inariko",
                current_village="inariko",
                max_hearts=8,
                current_hearts=hearts,
                max_stamina=8,
                current_stamina=stamina,
                inventory={"Apple": 1},
            )
        )
        slots.append(
            CharacterSlot(
                character_id=f"c{index}",
                user_id=index + 1,
                name=f"Member{index}",
                current_hearts=hearts,
                current_stamina=stamina,
                max_hearts=8,
                max_stamina=8,
                items=["Wood"],
                found_items=["Amber"] if index == 0 else [],
            )
        )
    party = Expedition(
        expedition_id="E000010",
        region="lanayru",
        leader_user_id=1,
        square="G4",
        quadrant="Q2",
        characters=slots,
        status="started",
    )
    party.recompute_totals()
    store = MapStore(tmp_path / "map.json")
    sync = MapSynchronizer(store)
    raids = LocalRaidService(tmp_path / "raids.json", clock=lambda: NOW)
    lifecycle = ExpeditionLifecycle(EngineConfig(), characters, sync, raids, clock=lambda: NOW)
    return party, characters, store, sync, raids, lifecycle


def test_success_splits_the_pool_and_returns_items(tmp_path) -> None:
    async def scenario() -> None:
        party, characters, _, _, _, lifecycle = await _setup(tmp_path, [(4, 0), (1, 0)])

        shares = await lifecycle.succeed(party)

        assert [(share.hearts, share.stamina) for share in shares] == [(3, 0), (2, 0)]
        first = await characters.get("c0")
        second = await characters.get("c1")
        assert (first.current_hearts, second.current_hearts) == (3, 2)
        assert first.inventory == {"Apple": 1, "Wood": 1, "Amber": 1}
        assert second.inventory == {"Apple": 1, "Wood": 1}
        assert party.status == "completed"
        assert party.outcome == "success"
        assert party.completed_at == NOW
        assert all(not slot.items and not slot.found_items for slot in party.characters)
        assert share_summary(shares).splitlines()[0] == "Member0: 3 hearts, 0 stamina"

    asyncio.run(scenario())


def test_failure_knocks_out_and_rolls_back(tmp_path) -> None:
    async def scenario() -> None:
        party, characters, store, sync, raids, lifecycle = await _setup(tmp_path, [(0, 0), (0, 1)])
        await sync.reconcile(party)
        await sync.mark_explored(party)
        started = await raids.start("Hinox", 7, "Member0", "inariko", party.expedition_id)
        party.active_raid_id = started.raid_id

        await lifecycle.fail(party)

        for character_id in ("c0", "c1"):
            character = await characters.get(character_id)
            assert character.current_hearts == 0
            assert character.current_stamina == 0
            assert character.ko
            assert character.current_village == "inariko"
            assert character.debuff.ends_at == NOW + timedelta(days=7)
            assert character.inventory == {"Apple": 1}
            assert not character.can_embark(NOW + timedelta(days=3))
        assert party.outcome == "failure"
        assert party.active_raid_id is None
        assert (await store.get_square("G4")).quadrant("Q2").status == "unexplored"
        assert (await raids.get(started.raid_id)).status == "closed"

    asyncio.run(scenario())
