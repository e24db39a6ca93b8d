import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from expedition import Character, CharacterRepository, Debuff


def _make_character(*, name: str, character_id: str = "c1", user_id: int = 456) -> Character:
    return Character(
        character_id=character_id,
        user_id=user_id,
        name=name,
        home_village="rudania",
        current_village="rudania",
        max_hearts=10,
        current_hearts=7,
        max_stamina=6,
        current_stamina=5,
        job="Hunter",
        inventory={"Apple": 2, "Wood": 1},
    )


def test_repository_detects_external_updates(tmp_path) -> None:
    async def scenario() -> None:
        storage = tmp_path / "characters.json"
        repo_one = CharacterRepository(storage)
        repo_two = CharacterRepository(storage)

        original = _make_character(name="Hero")

        assert await repo_two.get(original.character_id) is None

        await repo_one.save(original)

        assert await repo_two.get(original.character_id) == original

        await repo_one.update(original.character_id, lambda character: character.add_item("Flint", 3))

        refreshed = await repo_two.get(original.character_id)
        assert refreshed is not None
        assert refreshed.item_quantity("flint") == 3

    asyncio.run(scenario())


def test_find_by_name_is_scoped_to_the_owner(tmp_path) -> None:
    async def scenario() -> None:
        repo = CharacterRepository(tmp_path / "characters.json")
        await repo.save(_make_character(name="Hero"))
        await repo.save(_make_character(name="Scout", character_id="c2"))
        await repo.save(_make_character(name="Hero", character_id="c3", user_id=789))

        found = await repo.find_by_name(456, "  hero ")
        assert found is not None and found.character_id == "c1"
        assert await repo.find_by_name(456, "Nobody") is None
        names = [character.name for character in await repo.list_user_characters(456)]
        assert names == ["Hero", "Scout"]

    asyncio.run(scenario())


def test_update_unknown_character_raises(tmp_path) -> None:
    async def scenario() -> None:
        repo = CharacterRepository(tmp_path / "characters.json")

        with pytest.raises(KeyError):
            await repo.update("missing", lambda character: None)

    asyncio.run(scenario())


def test_debuff_round_trips_and_blocks_embarking(tmp_path) -> None:
    async def scenario() -> None:
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        repo = CharacterRepository(tmp_path / "characters.json")
        character = _make_character(name="Hero")
        character.debuff = Debuff(active=True, ends_at=now + timedelta(days=7))
        await repo.save(character)

        loaded = await repo.get("c1")

        assert loaded.debuff == character.debuff
        assert not loaded.can_embark(now)
        assert loaded.can_embark(now + timedelta(days=7, seconds=1))

    asyncio.run(scenario())


def test_inventory_removal_respects_quantities() -> None:
    character = _make_character(name="Hero")

    assert not character.remove_item("Apple", 3)
    assert character.remove_item("apple", 2)
    assert character.item_quantity("Apple") == 0
    assert "Apple" not in character.inventory
