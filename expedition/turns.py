"""Turn scheduling across the members of a party."""

from __future__ import annotations

from .errors import InvariantViolation, NotYourTurn
from .party import CharacterSlot, Expedition

__all__ = ["TurnScheduler"]


class TurnScheduler:
    """Track whose turn it is and move the pointer after consuming actions."""

    def validate_turn(self, party: Expedition, character_index: int) -> CharacterSlot:
        if not party.characters:
            raise InvariantViolation("The expedition has no party members.")
        if party.current_turn != character_index:
            actor = party.characters[character_index].name
            expected = party.characters[party.current_turn % party.member_count].name
            raise NotYourTurn(actor, expected)
        return party.characters[character_index]

    def advance(self, party: Expedition) -> CharacterSlot:
        if not party.characters:
            raise InvariantViolation("The expedition has no party members.")
        party.current_turn = (party.current_turn + 1) % party.member_count
        return party.characters[party.current_turn]

    def next_actor(self, party: Expedition) -> CharacterSlot | None:
        return party.current_slot()
