import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
import random
import sys
from types import SimpleNamespace

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from expedition.characters import Character
from expedition.config import EngineConfig
from expedition.content import ContentLibrary
from expedition.errors import InvariantViolation
from expedition.grotto import (
    GrottoStore,
    GrottoTrialEngine,
    MazeLayout,
    PathCell,
    PuzzleState,
)
from expedition.ledger import ResourceLedger
from expedition.party import CharacterSlot, Expedition
from expedition.raids import LocalRaidService
from expedition.repository import CharacterRepository

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class ScriptedRandom(random.Random):
    """Seeded random source whose ``randint`` results can be scripted."""

    def __init__(self, ints=(), seed: int = 0) -> None:
        super().__init__(seed)
        self.ints = list(ints)

    def randint(self, a: int, b: int) -> int:
        if self.ints:
            return self.ints.pop(0)
        return super().randint(a, b)


class FixedMaze:
    def __init__(self, layout: MazeLayout) -> None:
        self.layout = layout

    def generate(self, width: int, height: int, entry_type: str) -> MazeLayout:
        return self.layout


def _corridor() -> MazeLayout:
    matrix = (
        "1111111",
        "1000001",
        "1111111",
    )
    return MazeLayout(
        matrix=matrix,
        path_cells=(
            PathCell(1, 1, "start"),
            PathCell(2, 1, "path"),
            PathCell(3, 1, "chest"),
            PathCell(4, 1, "path"),
            PathCell(5, 1, "exit"),
        ),
        start=(1, 1),
        exit=(5, 1),
    )


def _only(trial: str) -> EngineConfig:
    return replace(EngineConfig(), trial_weights={trial: 1.0})


async def _harness(tmp_path, config: EngineConfig, *, rng=None, maze=None, job: str = "", items=("Goddess Plume", "Apple", "Wood"), inventory=None):
    characters = CharacterRepository(tmp_path / "characters.json")
    slots = []
    for index, name in enumerate(("Ayla", "Bram")):
        character = Character(
            character_id=f"c{index}",
            user_id=index + 1,
            name=name,
            home_village="rudania",
            current_village="rudania",
            max_hearts=10,
            current_hearts=6,
            max_stamina=10,
            current_stamina=4,
            job=job if index == 0 else "",
            inventory=dict(inventory or {}),
        )
        await characters.save(character)
        slots.append(
            CharacterSlot(
                character_id=character.character_id,
                user_id=character.user_id,
                name=character.name,
                job=character.job,
                current_hearts=6,
                current_stamina=4,
                max_hearts=10,
                max_stamina=10,
                items=list(items) if index == 0 else ["Apple"],
            )
        )
    party = Expedition(
        expedition_id="E000005",
        region="eldin",
        leader_user_id=1,
        square="D3",
        quadrant="Q2",
        characters=slots,
        status="started",
    )
    party.recompute_totals()
    raids = LocalRaidService(tmp_path / "raids.json", clock=lambda: NOW)
    engine = GrottoTrialEngine(
        config,
        GrottoStore(tmp_path / "grottos.json"),
        ResourceLedger(characters, config.costs),
        raids,
        maze or FixedMaze(_corridor()),
        characters,
        ContentLibrary.load_from_path().items,
        rng=rng or ScriptedRandom(),
        clock=lambda: NOW,
    )
    return SimpleNamespace(engine=engine, party=party, characters=characters, raids=raids)


def test_cleanse_without_plume_costs_nothing(tmp_path) -> None:
    async def scenario() -> None:
        h = await _harness(tmp_path, _only("blessing"), items=("Apple", "Apple", "Wood"))

        with pytest.raises(InvariantViolation):
            await h.engine.cleanse(h.party, 0)

        stored = await h.characters.get("c0")
        assert stored.current_stamina == 4
        assert h.party.total_stamina == 8
        assert await h.engine.store.list_for_expedition("E000005") == []

    asyncio.run(scenario())


def test_blessing_rewards_everyone_and_uses_the_plume(tmp_path) -> None:
    async def scenario() -> None:
        h = await _harness(tmp_path, _only("blessing"))

        grotto, result = await h.engine.cleanse(h.party, 1)

        assert result.completed
        assert not grotto.is_open
        assert result.costs == {"stamina": 1}
        assert result.loot == {"Spirit Orb": 2}
        assert all("Spirit Orb" in slot.found_items for slot in h.party.characters)
        assert "Goddess Plume" not in h.party.characters[0].items
        assert (await h.characters.get("c1")).current_stamina == 3

        with pytest.raises(InvariantViolation):
            await h.engine.ensure_cleansable(h.party)

    asyncio.run(scenario())


def test_target_practice_three_hits_completes(tmp_path) -> None:
    async def scenario() -> None:
        h = await _harness(tmp_path, _only("target_practice"), rng=ScriptedRandom([60, 30, 70, 95]))
        await h.engine.cleanse(h.party, 0)

        outcomes = []
        for _ in range(4):
            grotto, result = await h.engine.target_practice(h.party, 0)
            outcomes.append(result.outcome)

        assert outcomes == [
            "grotto_target_hit",
            "grotto_target_miss",
            "grotto_target_hit",
            "grotto_target_hit",
        ]
        assert result.completed
        assert grotto.target_practice.successes == 3
        assert grotto.target_practice.attempts == 4
        with pytest.raises(InvariantViolation):
            await h.engine.target_practice(h.party, 0)

    asyncio.run(scenario())


def test_target_practice_misfire_seals_the_grotto(tmp_path) -> None:
    async def scenario() -> None:
        h = await _harness(tmp_path, _only("target_practice"), rng=ScriptedRandom([15]))
        await h.engine.cleanse(h.party, 0)

        grotto, result = await h.engine.target_practice(h.party, 0)

        assert result.sealed
        assert grotto.sealed
        assert result.loot == {}

    asyncio.run(scenario())


def test_hunters_shoot_more_reliably(tmp_path) -> None:
    async def scenario() -> None:
        h = await _harness(tmp_path, _only("target_practice"), rng=ScriptedRandom([12, 38]), job="Hunter")
        await h.engine.cleanse(h.party, 0)

        _, first = await h.engine.target_practice(h.party, 0)
        _, second = await h.engine.target_practice(h.party, 0)

        assert first.outcome == "grotto_target_miss"
        assert second.outcome == "grotto_target_hit"

    asyncio.run(scenario())


def test_puzzle_review_consumes_the_offering(tmp_path) -> None:
    async def scenario() -> None:
        h = await _harness(tmp_path, _only("puzzle"), inventory={"Amber": 3})
        grotto, _ = await h.engine.cleanse(h.party, 0)
        grotto.puzzle = PuzzleState(puzzle_id="statue-2")
        await h.engine.store.save(grotto)

        with pytest.raises(InvariantViolation):
            await h.engine.submit_puzzle(h.party, 0, "Amber x7")

        grotto, submitted = await h.engine.submit_puzzle(h.party, 0, "Amber x2", "warm and golden")
        assert grotto.puzzle.status == "awaiting_review"
        assert grotto.puzzle.suggested is True
        assert submitted.outcome == "grotto_puzzle_offering"

        result = await h.engine.review_puzzle(h.party, grotto, approved=True)

        assert result.completed
        assert result.loot == {"Spirit Orb": 2}
        assert (await h.characters.get("c0")).item_quantity("Amber") == 2

    asyncio.run(scenario())


def test_denied_puzzle_seals_the_grotto(tmp_path) -> None:
    async def scenario() -> None:
        h = await _harness(tmp_path, _only("puzzle"), inventory={"Flint": 5})
        grotto, _ = await h.engine.cleanse(h.party, 0)
        grotto.puzzle = PuzzleState(puzzle_id="statue-2")
        await h.engine.store.save(grotto)
        grotto, _ = await h.engine.submit_puzzle(h.party, 0, "Flint")

        result = await h.engine.review_puzzle(h.party, grotto, approved=False)

        assert result.sealed
        assert grotto.puzzle.status == "denied"
        assert grotto.puzzle.suggested is False
        assert (await h.characters.get("c0")).item_quantity("Flint") == 4

    asyncio.run(scenario())


def test_maze_walk_to_the_exit(tmp_path) -> None:
    async def scenario() -> None:
        h = await _harness(tmp_path, _only("maze"))
        grotto, started = await h.engine.cleanse(h.party, 0)
        assert started.outcome == "grotto_maze"
        assert grotto.maze.position == (1, 1)

        with pytest.raises(InvariantViolation):
            await h.engine.maze(h.party, 0, "straight")

        grotto, result = await h.engine.maze(h.party, 0, "left")
        assert grotto.maze.position == (2, 1)
        assert grotto.maze.facing == "e"

        grotto, chest = await h.engine.maze(h.party, 0, "straight")
        assert chest.outcome == "grotto_maze_chest"
        assert sum(chest.loot.values()) == 2

        await h.engine.maze(h.party, 0, "straight")
        grotto, finish = await h.engine.maze(h.party, 0, "straight")

        assert finish.outcome == "grotto_maze_exit"
        assert finish.completed
        assert not grotto.is_open

    asyncio.run(scenario())


def test_test_of_power_waits_for_the_raid(tmp_path) -> None:
    async def scenario() -> None:
        h = await _harness(tmp_path, _only("test_of_power"))

        grotto, result = await h.engine.cleanse(h.party, 0)

        assert result.raid_id is not None
        assert h.party.active_raid_id == result.raid_id
        raid = await h.raids.get(result.raid_id)
        assert raid.grotto_id == grotto.grotto_id
        assert raid.expedition_id == "E000005"

        outcome = await h.engine.raid_finished(h.party, result.raid_id, victory=True)

        assert outcome.completed
        assert outcome.loot == {"Spirit Orb": 2}
        stored = await h.engine.store.get("D3", "Q2", "E000005")
        assert stored.raid_id is None
        assert not stored.is_open

    asyncio.run(scenario())
