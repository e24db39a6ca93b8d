import asyncio
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from expedition.sessions import SessionLocks


def test_actions_on_one_expedition_run_serially() -> None:
    async def scenario() -> None:
        locks = SessionLocks()
        events: list[str] = []

        async def act(name: str, expedition_id: str) -> None:
            async with locks.hold(expedition_id):
                events.append(f"{name}-start")
                await asyncio.sleep(0.01)
                events.append(f"{name}-end")

        await asyncio.gather(act("a", "E000001"), act("b", "e000001 "))

        assert events in (
            ["a-start", "a-end", "b-start", "b-end"],
            ["b-start", "b-end", "a-start", "a-end"],
        )
        assert await locks.keys() == ("E000001",)

    asyncio.run(scenario())


def test_discard_skips_held_locks() -> None:
    async def scenario() -> None:
        locks = SessionLocks()

        async with locks.hold("E000002"):
            assert not await locks.discard("E000002")
        assert await locks.discard("E000002")
        assert await locks.keys() == ()

    asyncio.run(scenario())


def test_blank_ids_are_rejected() -> None:
    with pytest.raises(ValueError):
        SessionLocks.make_key("  ")
