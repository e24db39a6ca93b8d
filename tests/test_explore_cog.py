import asyncio
from datetime import datetime, timezone
from pathlib import Path
import sys
from types import SimpleNamespace

import discord

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from cogs.explore import ExploreCog
from expedition import ActionResult
from expedition.errors import NotYourTurn
from expedition.party import CharacterSlot, Expedition, PendingChoice

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_cog() -> ExploreCog:
    cog = ExploreCog.__new__(ExploreCog)
    cog._channels = {}
    return cog


def _party(status: str = "started") -> Expedition:
    party = Expedition(
        expedition_id="E004211",
        region="faron",
        leader_user_id=1,
        square="H6",
        quadrant="Q4",
        status=status,
        characters=[
            CharacterSlot("c1", 1, "Ayla", 6, 4, 10, 10),
            CharacterSlot("c2", 2, "Bram", 3, 2, 8, 8),
        ],
        current_turn=1,
    )
    party.recompute_totals()
    return party


class DummyResponse:
    def __init__(self) -> None:
        self.messages: list[dict[str, object]] = []

    async def send_message(self, content=None, *, embed=None, ephemeral: bool = False) -> None:
        self.messages.append({"content": content, "embed": embed, "ephemeral": ephemeral})


def test_embed_shows_the_next_actor() -> None:
    cog = _make_cog()

    embed = cog.build_embed(ActionResult(_party(), message="Ayla finds Amber."))

    assert embed.title == "Expedition E004211 - Faron"
    assert embed.description == "Ayla finds Amber."
    fields = {field.name: field.value for field in embed.fields}
    assert fields["Location"] == "H6 Q4 (unexplored)"
    assert fields["Party"] == "9 hearts, 6 stamina"
    assert "Bram: 3/8 hearts, 2/8 stamina" in fields["Members"]
    assert fields["Next turn"] == "Bram"
    assert embed.footer.text is None


def test_embed_prefers_pending_choices_and_reports_endings() -> None:
    cog = _make_cog()
    party = _party()
    pending = PendingChoice("chest", 0, ("open", "skip"), "skip", NOW)

    waiting = cog.build_embed(ActionResult(party, pending=pending))
    fields = {field.name: field.value for field in waiting.fields}
    assert fields["Waiting on"] == "Ayla: open, skip (default skip)"
    assert "Next turn" not in fields

    party.status = "completed"
    party.outcome = "failure"
    ended = cog.build_embed(ActionResult(party))
    assert ended.footer.text == "Expedition ended: failure"
    assert ended.colour == discord.Colour.dark_grey()
    assert "Next turn" not in {field.name for field in ended.fields}


def test_respond_reports_errors_privately() -> None:
    async def scenario() -> None:
        cog = _make_cog()
        interaction = SimpleNamespace(response=DummyResponse(), channel_id=55)

        async def refused() -> ActionResult:
            raise NotYourTurn("Ayla", "Bram")

        await cog._respond(interaction, "E004211", refused())

        sent = interaction.response.messages[0]
        assert sent["ephemeral"] is True
        assert sent["content"] == "It is not Ayla's turn. Waiting on Bram."
        assert cog._channels == {}

    asyncio.run(scenario())


def test_respond_posts_embed_and_remembers_channel() -> None:
    async def scenario() -> None:
        cog = _make_cog()
        interaction = SimpleNamespace(response=DummyResponse(), channel_id=55)

        async def rolled() -> ActionResult:
            return ActionResult(_party(), message="The party rests.")

        await cog._respond(interaction, "e004211", rolled())

        sent = interaction.response.messages[0]
        assert isinstance(sent["embed"], discord.Embed)
        assert sent["ephemeral"] is False
        assert cog._channels == {"E004211": 55}

    asyncio.run(scenario())


def test_announce_without_known_channel_is_silent() -> None:
    async def scenario() -> None:
        cog = _make_cog()
        cog.bot = SimpleNamespace(get_channel=lambda channel_id: None)

        await cog._announce(ActionResult(_party()))

    asyncio.run(scenario())
