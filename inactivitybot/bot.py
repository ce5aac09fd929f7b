from __future__ import annotations

import os
import sys
import asyncio
import logging
import signal
from contextlib import suppress
from typing import Iterable, Optional, Sequence

import discord
from discord.ext import commands

from . import db
from .config import ConfigError, Settings

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    stream=sys.stdout,
)
log = logging.getLogger("inactivitybot")


# -----------------------------------------------------------------------------
# Intents
# -----------------------------------------------------------------------------
def build_intents() -> discord.Intents:
    """Privileged intents must also be enabled in the Developer Portal."""
    intents = discord.Intents.default()
    intents.guilds = True
    intents.members = True  # privileged
    intents.message_content = True  # privileged
    intents.guild_messages = True
    return intents


EXTENSIONS: Sequence[str] = (
    "inactivitybot.cogs.tracking",
    "inactivitybot.cogs.backfill",
    "inactivitybot.cogs.inactivity",
    "inactivitybot.cogs.cleanup",
    "inactivitybot.cogs.admin",
)


# -----------------------------------------------------------------------------
# Bot
# -----------------------------------------------------------------------------
class InactivityBot(commands.Bot):
    """Owns the settings and the startup sequence; cogs reach both through `self.bot`."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(command_prefix=commands.when_mentioned, intents=build_intents())
        self.settings = settings
        self._startup_task: Optional[asyncio.Task] = None
        self._shutdown_signal: str | None = None

    # ---- utilities ----
    async def resolve_guild(self) -> Optional[discord.Guild]:
        guild = self.get_guild(self.settings.guild_id)
        if guild is not None:
            return guild
        try:
            return await self.fetch_guild(self.settings.guild_id)
        except discord.HTTPException:
            log.exception("Failed to fetch guild %s", self.settings.guild_id)
            return None

    # ---- lifecycle ----
    async def setup_hook(self) -> None:
        db.set_db_path(self.settings.db_path)
        db.ensure_db()
        log.info("Database ensured/connected.")

        await self._load_extensions(EXTENSIONS)
        await self._sync_commands(self.settings.command_sync_mode)

    async def _load_extensions(self, names: Iterable[str]) -> None:
        for ext in names:
            try:
                await self.load_extension(ext)
                log.info("Loaded extension: %s", ext)
            except Exception:
                log.exception("Failed to load extension: %s", ext)

    async def _sync_commands(self, mode: str) -> None:
        """
        Publish slash commands according to mode:
          - 'guild' : copy the global tree into the configured guild and sync there.
          - 'global': push global commands.
          - 'none'  : skip publishing.
        """
        try:
            if mode == "none":
                log.info("Command sync skipped (mode=none).")
                return

            if mode == "global":
                synced = await self.tree.sync()
                log.info("Globally synced %d commands.", len(synced))
                return

            gobj = discord.Object(id=self.settings.guild_id)
            self.tree.copy_global_to(guild=gobj)
            synced = await self.tree.sync(guild=gobj)
            log.info("Synced %d commands to guild %s.", len(synced), self.settings.guild_id)
        except discord.HTTPException:
            log.exception("Command sync failed.")

    async def on_ready(self) -> None:
        if self.user:
            log.info("Logged in as %s (%s)", self.user, self.user.id)
        # on_ready fires again after every gateway resume; only bootstrap once.
        if self._startup_task is None:
            self._startup_task = asyncio.create_task(self._startup())

    async def _startup(self) -> None:
        guild = await self.resolve_guild()
        if guild is None:
            log.error("Initialization failed: guild %s is not reachable.", self.settings.guild_id)
            return
        log.info("Fetched guild: %s", guild.name)

        backfill = self.get_cog("BackfillCog")
        if backfill is not None:
            try:
                await backfill.run(guild)
            except Exception:
                log.exception("Backfill failed; continuing with scheduled jobs.")

        for name in ("InactivityCog", "CleanupCog"):
            cog = self.get_cog(name)
            if cog is None:
                log.error("%s not loaded; its schedule will not run.", name)
                continue
            cog.start_schedule()

        log.info("Initialization complete")

    async def close(self) -> None:
        log.info(
            "Shutdown initiated (%s): stopping background tasks and closing bot.",
            self._shutdown_signal or "shutdown requested",
        )

        if self._startup_task is not None and not self._startup_task.done():
            self._startup_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._startup_task

        await super().close()


# -----------------------------------------------------------------------------
# Runner
# -----------------------------------------------------------------------------
async def _run_bot(settings: Settings) -> None:
    bot = InactivityBot(settings)
    stop_event = asyncio.Event()

    def _signal_handler(signame: str) -> None:
        bot._shutdown_signal = signame
        log.warning("Received %s, requesting shutdown", signame)
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, _signal_handler, sig.name)

    async def _start():
        try:
            await bot.start(settings.token)
        except discord.LoginFailure:
            log.error("Discord rejected the bot token.")
        except Exception:
            log.exception("Bot.start crashed")
        finally:
            stop_event.set()

    start_task = asyncio.create_task(_start())

    await stop_event.wait()

    with suppress(Exception):
        await bot.close()

    with suppress(asyncio.CancelledError):
        if not start_task.done():
            start_task.cancel()
        await start_task

    log.info("Shutdown complete.")


def main() -> None:
    try:
        settings = Settings.from_env()
    except ConfigError as exc:
        for problem in exc.problems:
            log.error("config: %s", problem)
        raise SystemExit(1)

    try:
        asyncio.run(_run_bot(settings))
    except KeyboardInterrupt:
        log.warning("KeyboardInterrupt, exiting.")


if __name__ == "__main__":
    main()
