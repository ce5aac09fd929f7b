from __future__ import annotations

import logging
import sqlite3

import discord
from discord.ext import commands

from ..models import users
from ..utils.backfill import in_watched_channel
from ..utils.inactivity import is_automated
from ..utils.time import as_utc, now_utc

log = logging.getLogger(__name__)


class TrackingCog(commands.Cog):
    """Records message and join activity for members of the configured guild."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @property
    def settings(self):
        return self.bot.settings

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message):
        guild = message.guild
        if guild is None or guild.id != self.settings.guild_id:
            return
        if is_automated(message.author) or message.webhook_id:
            return
        if not in_watched_channel(message.channel, self.settings.watched_channel_ids):
            return

        when = as_utc(message.created_at) if message.created_at else now_utc()
        try:
            users.record_message(message.author.id, when)
        except sqlite3.Error:
            log.exception("tracking.message.store_failed user=%s", message.author.id)
            return
        log.debug("tracking.message user=%s at=%s", message.author.id, when.isoformat())

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member):
        if member.guild.id != self.settings.guild_id or is_automated(member):
            return

        joined = as_utc(member.joined_at) if member.joined_at else now_utc()
        try:
            created = users.insert_if_absent(member.id, joined_at=joined, last_message=joined)
        except sqlite3.Error:
            log.exception("tracking.join.store_failed user=%s", member.id)
            return
        if created:
            log.info("tracking.join user=%s joined_at=%s", member.id, joined.isoformat())


async def setup(bot: commands.Bot):
    await bot.add_cog(TrackingCog(bot))
