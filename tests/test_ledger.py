import asyncio
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from expedition.characters import Character
from expedition.errors import ExternalCollaboratorFailure, InsufficientResources
from expedition.ledger import ResourceLedger, draw_order, plan_payment
from expedition.party import CharacterSlot, Expedition
from expedition.repository import CharacterRepository


def _slot(index: int, *, hearts: int, stamina: int) -> CharacterSlot:
    return CharacterSlot(
        character_id=f"c{index}",
        user_id=100 + index,
        name=f"Member{index}",
        current_hearts=hearts,
        current_stamina=stamina,
        max_hearts=10,
        max_stamina=10,
    )


def _party(*resources: tuple[int, int]) -> Expedition:
    party = Expedition(
        expedition_id="E000001",
        region="eldin",
        leader_user_id=100,
        square="D3",
        quadrant="Q3",
        characters=[
            _slot(index, hearts=hearts, stamina=stamina)
            for index, (hearts, stamina) in enumerate(resources)
        ],
        status="started",
    )
    party.recompute_totals()
    return party


class _MemoryWriter:
    """Character writer keeping records in memory and optionally failing on one id."""

    def __init__(self, party: Expedition, *, fail_on: str | None = None) -> None:
        self.records = {
            slot.character_id: Character(
                character_id=slot.character_id,
                user_id=slot.user_id,
                name=slot.name,
                home_village="rudania",
                current_village="rudania",
                max_hearts=slot.max_hearts,
                current_hearts=slot.current_hearts,
                max_stamina=slot.max_stamina,
                current_stamina=slot.current_stamina,
            )
            for slot in party.characters
        }
        self.fail_on = fail_on
        self.calls: list[str] = []

    async def update(self, character_id, mutator):
        self.calls.append(character_id)
        if character_id == self.fail_on:
            raise OSError("disk full")
        mutator(self.records[character_id])
        return self.records[character_id]


def test_draw_order_puts_actor_first() -> None:
    assert draw_order(4, 2) == [2, 0, 1, 3]
    assert draw_order(1, 0) == [0]
    assert draw_order(0, 0) == []
    with pytest.raises(IndexError):
        draw_order(2, 5)


def test_plan_payment_converts_missing_stamina_into_hearts() -> None:
    party = _party((3, 0))

    payment = plan_payment(party, 0, 2)

    assert payment.stamina == 0
    assert payment.hearts == 2
    assert payment.struggled
    # Planning never touches the party.
    assert party.characters[0].current_hearts == 3


def test_plan_payment_drains_actor_then_index_order() -> None:
    party = _party((5, 1), (5, 2), (5, 3))

    payment = plan_payment(party, 1, 4)

    taken = {change.index: change.stamina for change in payment.changes}
    assert taken == {1: 2, 0: 1, 2: 1}
    assert payment.hearts == 0


def test_pay_struggles_with_hearts_and_writes_through(tmp_path) -> None:
    async def scenario() -> None:
        repository = CharacterRepository(tmp_path / "characters.json")
        party = _party((3, 0))
        slot = party.characters[0]
        await repository.save(
            Character(
                character_id=slot.character_id,
                user_id=slot.user_id,
                name=slot.name,
                home_village="rudania",
                current_village="rudania",
                max_hearts=10,
                current_hearts=3,
                max_stamina=10,
                current_stamina=0,
            )
        )
        ledger = ResourceLedger(repository)

        payment = await ledger.pay(party, 0, 2)

        assert payment.as_costs() == {"stamina": 0, "hearts": 2}
        assert party.characters[0].current_hearts == 1
        assert party.total_hearts == 1
        stored = await repository.get(slot.character_id)
        assert stored is not None
        assert stored.current_hearts == 1
        assert stored.current_stamina == 0

    asyncio.run(scenario())


def test_pay_refuses_when_pool_is_too_small() -> None:
    async def scenario() -> None:
        party = _party((1, 1), (0, 1))
        writer = _MemoryWriter(party)
        ledger = ResourceLedger(writer)

        with pytest.raises(InsufficientResources) as excinfo:
            await ledger.pay(party, 0, 4)

        assert excinfo.value.required == 4
        assert excinfo.value.available == 3
        assert writer.calls == []
        assert [slot.current_stamina for slot in party.characters] == [1, 1]
        assert [slot.current_hearts for slot in party.characters] == [1, 0]

    asyncio.run(scenario())


def test_failed_write_restores_earlier_slots() -> None:
    async def scenario() -> None:
        party = _party((5, 1), (5, 1))
        writer = _MemoryWriter(party, fail_on="c1")
        ledger = ResourceLedger(writer)

        with pytest.raises(ExternalCollaboratorFailure):
            await ledger.pay(party, 0, 2)

        assert writer.records["c0"].current_stamina == 1
        assert [slot.current_stamina for slot in party.characters] == [1, 1]
        assert party.total_stamina == 2

    asyncio.run(scenario())


def test_restore_is_capped_at_maximum() -> None:
    async def scenario() -> None:
        party = _party((9, 3), (4, 10))
        writer = _MemoryWriter(party)
        ledger = ResourceLedger(writer)

        payment = await ledger.restore(party, hearts=5, stamina=2)

        assert [slot.current_hearts for slot in party.characters] == [10, 9]
        assert [slot.current_stamina for slot in party.characters] == [5, 10]
        assert payment.hearts == -6
        assert writer.records["c1"].current_hearts == 9

    asyncio.run(scenario())


def test_damage_spills_over_to_the_next_member() -> None:
    async def scenario() -> None:
        party = _party((2, 0), (4, 0))
        ledger = ResourceLedger(_MemoryWriter(party))

        payment = await ledger.damage(party, 1, 6)

        assert payment.hearts == 6
        assert [slot.current_hearts for slot in party.characters] == [0, 0]
        assert party.total_hearts == 0

    asyncio.run(scenario())
