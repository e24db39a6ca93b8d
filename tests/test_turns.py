from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from expedition.errors import InvariantViolation, NotYourTurn
from expedition.party import CharacterSlot, Expedition
from expedition.turns import TurnScheduler


def _party(*names: str) -> Expedition:
    return Expedition(
        expedition_id="E000002",
        region="faron",
        leader_user_id=1,
        square="H6",
        quadrant="Q4",
        characters=[
            CharacterSlot(
                character_id=name.lower(),
                user_id=index + 1,
                name=name,
                current_hearts=5,
                current_stamina=5,
                max_hearts=5,
                max_stamina=5,
            )
            for index, name in enumerate(names)
        ],
        status="started",
    )


def test_out_of_turn_action_is_rejected_without_moving_the_pointer() -> None:
    scheduler = TurnScheduler()
    party = _party("Ayla", "Bram", "Cato")

    with pytest.raises(NotYourTurn) as excinfo:
        scheduler.validate_turn(party, 2)

    assert excinfo.value.expected_name == "Ayla"
    assert party.current_turn == 0
    assert scheduler.validate_turn(party, 0).name == "Ayla"


def test_advance_wraps_around_the_party() -> None:
    scheduler = TurnScheduler()
    party = _party("Ayla", "Bram")

    assert scheduler.advance(party).name == "Bram"
    assert scheduler.advance(party).name == "Ayla"
    assert party.current_turn == 0
    assert scheduler.next_actor(party).name == "Ayla"


def test_empty_party_cannot_take_turns() -> None:
    scheduler = TurnScheduler()
    party = _party()

    with pytest.raises(InvariantViolation):
        scheduler.validate_turn(party, 0)
    with pytest.raises(InvariantViolation):
        scheduler.advance(party)
