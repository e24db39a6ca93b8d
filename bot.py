import logging
import os
from pathlib import Path

import discord
from discord.ext import commands
from dotenv import load_dotenv


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def get_cog_module_names(cogs_path: Path) -> list[str]:
    return sorted(
        f"cogs.{path.stem}" for path in cogs_path.glob("*.py") if not path.name.startswith("__")
    )


def load_environment() -> str:
    load_dotenv()
    token = os.getenv("DISCORD_TOKEN")
    if not token:
        raise RuntimeError(
            "DISCORD_TOKEN environment variable is required. "
            "Set it in the .env file before starting the expedition bot."
        )
    return token


async def load_cogs(bot: commands.Bot, cogs_path: Path) -> None:
    for module_name in get_cog_module_names(cogs_path):
        await bot.load_extension(module_name)
        logging.info("Loaded cog: %s", module_name)


class ExpeditionBot(commands.Bot):
    """Slash-command-only bot hosting the expedition cogs."""

    def __init__(self) -> None:
        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=discord.Intents.default(),
            help_command=None,
        )
        self._cogs_path = Path(__file__).parent / "cogs"

    async def setup_hook(self) -> None:  # type: ignore[override]
        await load_cogs(self, self._cogs_path)
        synced_commands = await self.tree.sync()
        logging.info("Synced %s application commands", len(synced_commands))

    async def process_commands(self, message: discord.Message) -> None:  # type: ignore[override]
        """Prefix commands are not supported; every command is a slash command."""
        return


def main() -> None:
    token = load_environment()
    configure_logging(os.getenv("LOG_LEVEL"))
    bot = ExpeditionBot()

    try:
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        logging.info("Shutting down expedition bot")


if __name__ == "__main__":
    main()
