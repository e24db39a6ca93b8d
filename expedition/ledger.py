"""Resource ledger paying action costs from a party's pooled stamina and hearts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Protocol, Sequence

from .characters import Character
from .config import CostSchedule
from .errors import ExternalCollaboratorFailure, InsufficientResources
from .party import Expedition

__all__ = [
    "CharacterWriter",
    "Payment",
    "ResourceLedger",
    "SlotChange",
    "draw_order",
    "plan_payment",
]

log = logging.getLogger(__name__)


class CharacterWriter(Protocol):
    async def update(self, character_id: str, mutator) -> Character: ...


@dataclass(frozen=True)
class SlotChange:
    """Stamina and hearts removed from (negative: added to) one slot."""

    index: int
    stamina: int = 0
    hearts: int = 0


@dataclass(frozen=True)
class Payment:
    """The outcome of a ledger operation."""

    amount: int
    changes: tuple[SlotChange, ...] = ()

    @property
    def stamina(self) -> int:
        return sum(change.stamina for change in self.changes)

    @property
    def hearts(self) -> int:
        return sum(change.hearts for change in self.changes)

    @property
    def struggled(self) -> bool:
        return self.hearts > 0

    def as_costs(self) -> dict[str, int]:
        return {"stamina": self.stamina, "hearts": self.hearts}


def draw_order(member_count: int, first: int) -> list[int]:
    """Return slot indices with ``first`` leading and the rest in index order."""

    if member_count <= 0:
        return []
    if not 0 <= first < member_count:
        raise IndexError(f"Slot {first} is outside the party")
    return [first] + [index for index in range(member_count) if index != first]


def plan_payment(
    party: Expedition, acting_index: int, amount: int, opener: int | None = None
) -> Payment:
    """Compute how ``amount`` is drawn without touching the party.

    Stamina is drained first in draw order; the shortfall is converted into
    heart loss following the same order.
    """

    amount = int(amount)
    if amount <= 0:
        return Payment(amount=0)
    order = draw_order(party.member_count, acting_index if opener is None else opener)
    slots = party.characters
    available_stamina = sum(max(0, slots[index].current_stamina) for index in order)
    available_hearts = sum(max(0, slots[index].current_hearts) for index in order)
    if available_stamina + available_hearts < amount:
        raise InsufficientResources(amount, available_stamina + available_hearts)

    stamina_taken: dict[int, int] = {}
    remaining = amount
    for index in order:
        if remaining <= 0:
            break
        take = min(max(0, slots[index].current_stamina), remaining)
        if take:
            stamina_taken[index] = take
            remaining -= take
    hearts_taken: dict[int, int] = {}
    for index in order:
        if remaining <= 0:
            break
        take = min(max(0, slots[index].current_hearts), remaining)
        if take:
            hearts_taken[index] = take
            remaining -= take

    changes = tuple(
        SlotChange(index=index, stamina=stamina_taken.get(index, 0), hearts=hearts_taken.get(index, 0))
        for index in order
        if stamina_taken.get(index) or hearts_taken.get(index)
    )
    return Payment(amount=amount, changes=changes)


class ResourceLedger:
    """Apply resource changes to party slots with write-through to the character store."""

    def __init__(self, characters: CharacterWriter, costs: CostSchedule | None = None) -> None:
        self._characters = characters
        self.costs = costs or CostSchedule()

    async def pay(
        self,
        party: Expedition,
        acting_index: int,
        amount: int,
        opener: int | None = None,
    ) -> Payment:
        """Deduct ``amount`` as one unit or raise without deducting anything."""

        payment = plan_payment(party, acting_index, amount, opener)
        await self._apply(party, payment.changes)
        if payment.struggled:
            log.info(
                "Expedition %s struggled: %s stamina and %s hearts paid for a cost of %s",
                party.expedition_id,
                payment.stamina,
                payment.hearts,
                amount,
            )
        return payment

    async def refund(self, party: Expedition, payment: Payment) -> None:
        """Give back exactly what ``payment`` took, ignoring the usual maxima."""

        await self._apply(
            party,
            tuple(
                SlotChange(index=change.index, stamina=-change.stamina, hearts=-change.hearts)
                for change in payment.changes
            ),
        )

    async def damage(self, party: Expedition, acting_index: int, hearts: int) -> Payment:
        """Remove up to ``hearts`` hearts, starting with the acting character."""

        remaining = max(0, int(hearts))
        changes: list[SlotChange] = []
        for index in draw_order(party.member_count, acting_index):
            if remaining <= 0:
                break
            take = min(max(0, party.characters[index].current_hearts), remaining)
            if take:
                changes.append(SlotChange(index=index, hearts=take))
                remaining -= take
        payment = Payment(amount=int(hearts), changes=tuple(changes))
        await self._apply(party, payment.changes)
        return payment

    async def restore(
        self,
        party: Expedition,
        *,
        hearts: int = 0,
        stamina: int = 0,
        indices: Iterable[int] | None = None,
    ) -> Payment:
        """Give hearts/stamina to the selected members, capped at their maxima."""

        targets = range(party.member_count) if indices is None else indices
        changes: list[SlotChange] = []
        for index in targets:
            slot = party.characters[index]
            gained_hearts = max(0, min(hearts, slot.max_hearts - slot.current_hearts))
            gained_stamina = max(0, min(stamina, slot.max_stamina - slot.current_stamina))
            if gained_hearts or gained_stamina:
                changes.append(SlotChange(index=index, stamina=-gained_stamina, hearts=-gained_hearts))
        payment = Payment(amount=0, changes=tuple(changes))
        await self._apply(party, payment.changes)
        return payment

    async def set_values(
        self, party: Expedition, values: Mapping[int, tuple[int, int]]
    ) -> None:
        """Overwrite ``(hearts, stamina)`` per slot index, mirroring the store first."""

        changes = tuple(
            SlotChange(
                index=index,
                hearts=party.characters[index].current_hearts - hearts,
                stamina=party.characters[index].current_stamina - stamina,
            )
            for index, (hearts, stamina) in values.items()
        )
        await self._apply(party, changes)

    async def _apply(self, party: Expedition, changes: Sequence[SlotChange]) -> None:
        if not changes:
            party.recompute_totals()
            return
        written: list[tuple[str, int, int]] = []
        try:
            for change in changes:
                slot = party.characters[change.index]
                hearts = slot.current_hearts - change.hearts
                stamina = slot.current_stamina - change.stamina
                await self._characters.update(
                    slot.character_id, _set_resources(hearts, stamina)
                )
                written.append((slot.character_id, slot.current_hearts, slot.current_stamina))
        except (OSError, KeyError, ValueError) as exc:
            await self._undo(written)
            raise ExternalCollaboratorFailure(
                f"Could not save character resources: {exc}"
            ) from exc
        for change in changes:
            slot = party.characters[change.index]
            slot.current_hearts -= change.hearts
            slot.current_stamina -= change.stamina
        party.recompute_totals()

    async def _undo(self, written: Sequence[tuple[str, int, int]]) -> None:
        for character_id, hearts, stamina in reversed(written):
            try:
                await self._characters.update(character_id, _set_resources(hearts, stamina))
            except (OSError, KeyError, ValueError):
                log.exception("Failed to restore resources for character %s", character_id)


def _set_resources(hearts: int, stamina: int):
    def mutator(character: Character) -> None:
        character.current_hearts = max(0, hearts)
        character.current_stamina = max(0, stamina)

    return mutator
