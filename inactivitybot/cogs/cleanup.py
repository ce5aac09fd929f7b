from __future__ import annotations

import asyncio
import logging
import sqlite3

import discord
from discord.ext import commands, tasks

from ..models import users

log = logging.getLogger(__name__)


class CleanupCog(commands.Cog):
    """Drops stored rows for users who have left the guild."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.lock = asyncio.Lock()

    @property
    def settings(self):
        return self.bot.settings

    def start_schedule(self) -> None:
        self._cleanup_loop.change_interval(minutes=self.settings.cleanup_interval_minutes)
        if not self._cleanup_loop.is_running():
            self._cleanup_loop.start()

    def cog_unload(self) -> None:
        self._cleanup_loop.cancel()

    @tasks.loop(minutes=60)
    async def _cleanup_loop(self) -> None:
        try:
            guild = await self.bot.resolve_guild()
            if guild is None:
                log.warning("cleanup: guild %s unavailable; skipping sweep", self.settings.guild_id)
                return
            async with self.lock:
                await self.run(guild)
        except Exception:
            log.exception("cleanup: sweep failed")

    @_cleanup_loop.before_loop
    async def _before_cleanup_loop(self) -> None:
        await self.bot.wait_until_ready()

    async def run(self, guild: discord.Guild) -> int:
        """Delete every stored user that is not a current member. Returns rows deleted."""
        try:
            member_ids = {m.id async for m in guild.fetch_members(limit=None)}
        except discord.HTTPException:
            # An empty or partial member list would wipe the table.
            log.exception("cleanup: failed to fetch members of guild %s", guild.id)
            return 0

        try:
            stored = users.list_user_ids()
        except sqlite3.Error:
            log.exception("cleanup: failed to list stored users")
            return 0

        deleted = 0
        for user_id in stored:
            if user_id in member_ids:
                continue
            try:
                if users.delete_user(user_id):
                    deleted += 1
                    log.info("cleanup: deleted user %s", user_id)
            except sqlite3.Error:
                log.exception("cleanup: failed to delete user %s", user_id)

        log.info("cleanup: %d members, %d stored, %d deleted", len(member_ids), len(stored), deleted)
        return deleted


async def setup(bot: commands.Bot):
    await bot.add_cog(CleanupCog(bot))
