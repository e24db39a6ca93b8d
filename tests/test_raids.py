import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from expedition.config import EngineConfig
from expedition.errors import RaidCooldownActive
from expedition.raids import LocalRaidService


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_retreat_chance_grows_and_caps() -> None:
    config = EngineConfig()

    assert config.retreat_chance(0) == pytest.approx(0.5)
    assert config.retreat_chance(1) == pytest.approx(0.55)
    assert config.retreat_chance(9) == pytest.approx(0.95)
    assert config.retreat_chance(40) == pytest.approx(0.95)
    assert max(config.retreat_chance(attempts) for attempts in range(100)) <= 0.95
    chances = [config.retreat_chance(attempts) for attempts in range(20)]
    assert chances == sorted(chances)


def test_village_raids_share_a_cooldown(tmp_path) -> None:
    async def scenario() -> None:
        clock = Clock()
        service = LocalRaidService(tmp_path / "raids.json", clock=clock)

        first = await service.start("Igneo Talus", 6, "Ayla", "rudania", None)
        assert first.success

        clock.now += timedelta(hours=1)
        with pytest.raises(RaidCooldownActive) as excinfo:
            await service.start("Igneo Talus", 6, "Bram", "rudania", None)
        assert excinfo.value.remaining_seconds == pytest.approx(3 * 3600)

        expedition_raid = await service.start("Igneo Talus", 6, "Bram", "rudania", "E000006")
        assert expedition_raid.success

        clock.now += timedelta(hours=3)
        assert (await service.start("Igneo Talus", 6, "Cato", "rudania", None)).success

    asyncio.run(scenario())


def test_retreat_bookkeeping(tmp_path) -> None:
    async def scenario() -> None:
        clock = Clock()
        service = LocalRaidService(tmp_path / "raids.json", clock=clock)
        started = await service.start("Hinox", 7, "Ayla", "inariko", "E000007")

        await service.record_failed_retreat(started.raid_id)
        bumped = await service.record_failed_retreat(started.raid_id)
        assert bumped.failed_retreat_attempts == 2
        assert bumped.is_active

        fled = await service.end_as_retreat(started.raid_id)
        assert fled.status == "fled"
        assert fled.ended_at == clock.now

        again = await service.finish(started.raid_id, "defeated")
        assert again.status == "fled"
        with pytest.raises(ValueError):
            await service.finish(started.raid_id, "paused")
        assert await service.record_failed_retreat("RMISSING") is None

    asyncio.run(scenario())


def test_closing_an_expedition_closes_its_raids(tmp_path) -> None:
    async def scenario() -> None:
        path = tmp_path / "raids.json"
        service = LocalRaidService(path)
        mine = await service.start("Hinox", 7, "Ayla", "vhintl", "E000008")
        other = await service.start("Hinox", 7, "Bram", "vhintl", "E000009")

        assert await service.close_for_expedition("E000008") == 1
        assert await service.close_for_expedition("E000008") == 0

        reloaded = LocalRaidService(path)
        assert (await reloaded.get(mine.raid_id)).status == "closed"
        assert (await reloaded.get(other.raid_id)).is_active

    asyncio.run(scenario())
