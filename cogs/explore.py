"""Slash commands for cooperative expeditions across the world map."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Awaitable, Dict, Optional

import discord
from discord import app_commands
from discord.ext import commands, tasks

from expedition import REGIONS, ActionResult, ExpeditionError, ExplorationEngine, load_config
from expedition.config import ConfigError
from expedition.content import ContentLoadError
from expedition.grotto import MAZE_ACTIONS

log = logging.getLogger(__name__)

REGION_CHOICES = [
    app_commands.Choice(name=region.key.title(), value=region.key) for region in REGIONS.values()
]
MAZE_CHOICES = [app_commands.Choice(name=action.title(), value=action) for action in MAZE_ACTIONS]
CHOICE_OPTIONS = [
    app_commands.Choice(name=option.title(), value=option)
    for option in ("accept", "decline", "cleanse", "open", "skip")
]


def _data_path() -> Path:
    return Path(os.getenv("EXPEDITION_DATA_DIR", "data"))


def _config_path() -> Optional[Path]:
    raw = os.getenv("EXPEDITION_CONFIG")
    return Path(raw) if raw else None


class ExploreCog(commands.Cog):
    """Run expeditions: recruiting, turns, grotto trials and raid hand-offs."""

    explore_group = app_commands.Group(name="explore", description="Expeditions into the wilds")
    grotto_group = app_commands.Group(
        name="grotto", description="Grotto trials found while exploring", parent=explore_group
    )

    def __init__(self, bot: commands.Bot, engine: ExplorationEngine) -> None:
        self.bot = bot
        self.engine = engine
        self._channels: Dict[str, int] = {}
        self.sweep_choices.start()

    def cog_unload(self) -> None:
        self.sweep_choices.cancel()

    # ------------------------------------------------------------------
    def _remember_channel(self, expedition_id: str, interaction: discord.Interaction) -> None:
        if interaction.channel_id is not None:
            self._channels[expedition_id.strip().upper()] = interaction.channel_id

    def build_embed(self, result: ActionResult) -> discord.Embed:
        party = result.expedition
        colour = discord.Colour.dark_green() if party.is_active else discord.Colour.dark_grey()
        embed = discord.Embed(
            title=f"Expedition {party.expedition_id} - {party.region.title()}",
            description=result.message or None,
            colour=colour,
        )
        embed.add_field(
            name="Location",
            value=f"{party.square} {party.quadrant} ({party.quadrant_state})",
            inline=True,
        )
        embed.add_field(
            name="Party",
            value=f"{party.total_hearts} hearts, {party.total_stamina} stamina",
            inline=True,
        )
        if party.characters:
            roster = "\n".join(
                f"{slot.name}: {slot.current_hearts}/{slot.max_hearts} hearts, "
                f"{slot.current_stamina}/{slot.max_stamina} stamina"
                for slot in party.characters
            )
            embed.add_field(name="Members", value=roster, inline=False)
        if result.pending is not None:
            owner = party.characters[result.pending.character_index].name
            embed.add_field(
                name="Waiting on",
                value=f"{owner}: {', '.join(result.pending.options)} (default {result.pending.default})",
                inline=False,
            )
        elif party.active_raid_id:
            embed.add_field(name="Raid", value=f"{party.active_raid_id} in progress", inline=False)
        elif result.next_actor is not None:
            embed.add_field(name="Next turn", value=result.next_actor.name, inline=False)
        if not party.is_active and party.outcome:
            embed.set_footer(text=f"Expedition ended: {party.outcome}")
        return embed

    async def _respond(
        self,
        interaction: discord.Interaction,
        expedition_id: str,
        action: Awaitable[ActionResult],
    ) -> None:
        try:
            result = await action
        except ExpeditionError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return
        self._remember_channel(result.expedition.expedition_id or expedition_id, interaction)
        await interaction.response.send_message(embed=self.build_embed(result))

    # ---- recruiting -----------------------------------------------------
    @explore_group.command(name="setup", description="Open a new expedition for your party to join.")
    @app_commands.describe(region="Region to explore")
    @app_commands.choices(region=REGION_CHOICES)
    async def setup_expedition(self, interaction: discord.Interaction, region: str) -> None:
        await self._respond(interaction, "", self.engine.setup(interaction.user.id, region))

    @explore_group.command(name="join", description="Join an expedition with one of your characters.")
    @app_commands.describe(
        expedition_id="Expedition to join",
        character="Your character's name",
        items="Exactly three items to bring, separated by commas",
    )
    async def join(
        self, interaction: discord.Interaction, expedition_id: str, character: str, items: str
    ) -> None:
        loadout = [item.strip() for item in items.split(",") if item.strip()]
        await self._respond(
            interaction,
            expedition_id,
            self.engine.join(expedition_id, interaction.user.id, character, loadout),
        )

    @explore_group.command(name="start", description="Set out once everyone has joined.")
    async def start(self, interaction: discord.Interaction, expedition_id: str) -> None:
        await self._respond(
            interaction, expedition_id, self.engine.start(expedition_id, interaction.user.id)
        )

    # ---- turns ----------------------------------------------------------
    @explore_group.command(name="roll", description="Explore the current quadrant.")
    async def roll(self, interaction: discord.Interaction, expedition_id: str, character: str) -> None:
        await self._respond(
            interaction, expedition_id, self.engine.roll(expedition_id, interaction.user.id, character)
        )

    @explore_group.command(name="secure", description="Secure an explored quadrant.")
    async def secure(self, interaction: discord.Interaction, expedition_id: str, character: str) -> None:
        await self._respond(
            interaction, expedition_id, self.engine.secure(expedition_id, interaction.user.id, character)
        )

    @explore_group.command(name="move", description="Move the party to an adjacent quadrant.")
    @app_commands.describe(destination="Quadrant such as Q2, or square and quadrant such as D4 Q1")
    async def move(
        self, interaction: discord.Interaction, expedition_id: str, character: str, destination: str
    ) -> None:
        await self._respond(
            interaction,
            expedition_id,
            self.engine.move(expedition_id, interaction.user.id, character, destination),
        )

    @explore_group.command(name="item", description="Use a healing item from your loadout.")
    async def item(
        self, interaction: discord.Interaction, expedition_id: str, character: str, item: str
    ) -> None:
        await self._respond(
            interaction,
            expedition_id,
            self.engine.item(expedition_id, interaction.user.id, character, item),
        )

    @explore_group.command(name="camp", description="Set up camp and recover hearts.")
    async def camp(self, interaction: discord.Interaction, expedition_id: str, character: str) -> None:
        await self._respond(
            interaction, expedition_id, self.engine.camp(expedition_id, interaction.user.id, character)
        )

    @explore_group.command(name="end", description="End the expedition at the starting quadrant.")
    async def end(self, interaction: discord.Interaction, expedition_id: str, character: str) -> None:
        await self._respond(
            interaction, expedition_id, self.engine.end(expedition_id, interaction.user.id, character)
        )

    @explore_group.command(name="retreat", description="Try to escape the raid the party is caught in.")
    async def retreat(self, interaction: discord.Interaction, expedition_id: str, character: str) -> None:
        await self._respond(
            interaction, expedition_id, self.engine.retreat(expedition_id, interaction.user.id, character)
        )

    @explore_group.command(name="choose", description="Answer a pending discovery or chest choice.")
    @app_commands.choices(option=CHOICE_OPTIONS)
    async def choose(
        self, interaction: discord.Interaction, expedition_id: str, character: str, option: str
    ) -> None:
        await self._respond(
            interaction,
            expedition_id,
            self.engine.choose(expedition_id, interaction.user.id, character, option),
        )

    @explore_group.command(name="raidover", description="Resolve the raid an expedition is waiting on.")
    @app_commands.default_permissions(manage_guild=True)
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.choices(
        result=[
            app_commands.Choice(name="Victory", value="victory"),
            app_commands.Choice(name="Defeat", value="defeat"),
        ]
    )
    async def raid_over_command(self, interaction: discord.Interaction, raid_id: str, result: str) -> None:
        try:
            outcome = await self.engine.raid_over(raid_id.strip().upper(), result)
        except ExpeditionError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return
        if outcome is None:
            await interaction.response.send_message(
                f"No expedition is waiting on raid {raid_id}.", ephemeral=True
            )
            return
        await interaction.response.send_message(embed=self.build_embed(outcome))

    @commands.Cog.listener()
    async def on_raid_over(self, raid_id: str, result: str) -> None:
        outcome = await self.engine.raid_over(raid_id, result)
        if outcome is not None:
            await self._announce(outcome)

    # ---- grotto ---------------------------------------------------------
    @grotto_group.command(name="cleanse", description="Spend a Goddess Plume to open the grotto here.")
    async def grotto_cleanse(
        self, interaction: discord.Interaction, expedition_id: str, character: str
    ) -> None:
        await self._respond(
            interaction,
            expedition_id,
            self.engine.grotto_cleanse(expedition_id, interaction.user.id, character),
        )

    @grotto_group.command(name="continue", description="Take the next step of the active grotto trial.")
    async def grotto_continue(
        self, interaction: discord.Interaction, expedition_id: str, character: str
    ) -> None:
        await self._respond(
            interaction,
            expedition_id,
            self.engine.grotto_continue(expedition_id, interaction.user.id, character),
        )

    @grotto_group.command(name="targetpractice", description="Shoot at the grotto's targets.")
    async def grotto_target_practice(
        self, interaction: discord.Interaction, expedition_id: str, character: str
    ) -> None:
        await self._respond(
            interaction,
            expedition_id,
            self.engine.grotto_target_practice(expedition_id, interaction.user.id, character),
        )

    @grotto_group.command(name="puzzle", description="Submit an offering for the grotto puzzle.")
    @app_commands.describe(
        items="Offered items such as 'Wood x50, Flint x2'",
        description="How the party solves the puzzle",
    )
    async def grotto_puzzle(
        self,
        interaction: discord.Interaction,
        expedition_id: str,
        character: str,
        items: str,
        description: Optional[str] = None,
    ) -> None:
        await self._respond(
            interaction,
            expedition_id,
            self.engine.grotto_puzzle(
                expedition_id, interaction.user.id, character, items, description or ""
            ),
        )

    @grotto_group.command(name="maze", description="Walk the grotto maze or sing to its walls.")
    @app_commands.choices(action=MAZE_CHOICES)
    async def grotto_maze(
        self, interaction: discord.Interaction, expedition_id: str, character: str, action: str
    ) -> None:
        await self._respond(
            interaction,
            expedition_id,
            self.engine.grotto_maze(expedition_id, interaction.user.id, character, action),
        )

    @grotto_group.command(name="travel", description="Travel to a grotto elsewhere in this square.")
    async def grotto_travel(
        self, interaction: discord.Interaction, expedition_id: str, character: str, location: str
    ) -> None:
        await self._respond(
            interaction,
            expedition_id,
            self.engine.grotto_travel(expedition_id, interaction.user.id, character, location),
        )

    @grotto_group.command(name="review", description="Approve or deny a submitted puzzle offering.")
    @app_commands.default_permissions(manage_guild=True)
    @app_commands.checks.has_permissions(manage_guild=True)
    async def grotto_review(
        self, interaction: discord.Interaction, expedition_id: str, approved: bool
    ) -> None:
        await self._respond(
            interaction, expedition_id, self.engine.review_puzzle(expedition_id, approved)
        )

    # ---- background -----------------------------------------------------
    async def _announce(self, result: ActionResult) -> None:
        channel_id = self._channels.get(result.expedition.expedition_id.upper())
        if channel_id is None:
            return
        channel = self.bot.get_channel(channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            return
        try:
            await channel.send(embed=self.build_embed(result))
        except discord.HTTPException:
            log.warning("Failed to announce update for %s", result.expedition.expedition_id)

    @tasks.loop(seconds=30)
    async def sweep_choices(self) -> None:
        for result in await self.engine.sweep_expired():
            await self._announce(result)

    @sweep_choices.before_loop
    async def before_sweep(self) -> None:
        await self.bot.wait_until_ready()


async def setup(bot: commands.Bot) -> None:
    try:
        config = load_config(_config_path())
        engine = ExplorationEngine.build(_data_path(), config=config)
    except (ConfigError, ContentLoadError) as exc:
        log.error("Expedition engine could not be configured: %s", exc)
        raise
    await bot.add_cog(ExploreCog(bot, engine))
