from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from ..models import users
from ..strings import S
from ..utils.inactivity import Verdict, classify
from ..utils.time import to_local
from .cleanup import CleanupCog
from .inactivity import InactivityCog

log = logging.getLogger(__name__)

_VERDICT_KEYS = {
    Verdict.OK: "inactivity.verdict.ok",
    Verdict.WARN: "inactivity.verdict.warn",
    Verdict.REMOVE: "inactivity.verdict.remove",
}


def _fmt_when(dt: Optional[datetime]) -> str:
    if dt is None:
        return S("common.never")
    local = to_local(dt)
    return f"{local:%Y-%m-%d %H:%M %Z} ({discord.utils.format_dt(dt, 'R')})"


@app_commands.guild_only()
@app_commands.default_permissions(manage_guild=True)
class AdminCog(commands.GroupCog, name="inactivity", description="Inactivity tracking tools"):
    """Moderator view into the activity table plus a manual trigger for the scheduled jobs."""

    def __init__(self, bot: commands.Bot):
        super().__init__()
        self.bot = bot

    @property
    def settings(self):
        return self.bot.settings

    @app_commands.command(name="status", description="Show tracked activity for a member.")
    @app_commands.describe(member="Member to look up (defaults to you).")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def status(self, interaction: discord.Interaction, member: Optional[discord.Member] = None):
        if interaction.guild is None:
            return await interaction.response.send_message(S("common.guild_only"), ephemeral=True)

        target = member or interaction.user
        try:
            record = users.get_user(target.id)
        except sqlite3.Error:
            log.exception("admin.status: lookup failed for %s", target.id)
            return await interaction.response.send_message(S("common.error_generic"), ephemeral=True)

        if record is None:
            return await interaction.response.send_message(
                S("inactivity.status.untracked", member=target.mention),
                ephemeral=True,
                allowed_mentions=discord.AllowedMentions.none(),
            )

        cog = self.bot.get_cog("InactivityCog")
        verdict = classify(record, cog.thresholds()) if isinstance(cog, InactivityCog) else None

        embed = discord.Embed(title=S("inactivity.status.title", member=str(target)))
        embed.add_field(name=S("inactivity.status.last_message"), value=_fmt_when(record.last_message), inline=False)
        embed.add_field(name=S("inactivity.status.joined_at"), value=_fmt_when(record.joined_at), inline=False)
        embed.add_field(name=S("inactivity.status.last_warning"), value=_fmt_when(record.last_warning), inline=False)
        if verdict is not None:
            embed.add_field(name=S("inactivity.status.verdict"), value=S(_VERDICT_KEYS[verdict]), inline=False)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="run", description="Run the inactivity check and cleanup now.")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def run(self, interaction: discord.Interaction):
        policy = self.bot.get_cog("InactivityCog")
        cleanup = self.bot.get_cog("CleanupCog")
        if not isinstance(policy, InactivityCog) or not isinstance(cleanup, CleanupCog):
            return await interaction.response.send_message(S("common.error_generic"), ephemeral=True)
        if policy.lock.locked() or cleanup.lock.locked():
            return await interaction.response.send_message(S("inactivity.run.busy"), ephemeral=True)

        await interaction.response.defer(ephemeral=True, thinking=True)

        guild = await self.bot.resolve_guild()
        if guild is None:
            return await interaction.followup.send(S("inactivity.run.no_guild"), ephemeral=True)

        async with policy.lock:
            stats = await policy.run(guild)
        async with cleanup.lock:
            deleted = await cleanup.run(guild)

        log.info("admin.run by %s: %s deleted=%d", interaction.user.id, stats, deleted)
        await interaction.followup.send(
            S(
                "inactivity.run.done",
                candidates=stats.candidates,
                warned=stats.warned,
                removed=stats.removed,
                deleted=deleted,
            ),
            ephemeral=True,
        )

    @app_commands.command(name="stats", description="Show tracking totals and thresholds.")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def stats(self, interaction: discord.Interaction):
        try:
            tracked = users.count_users()
        except sqlite3.Error:
            log.exception("admin.stats: count failed")
            return await interaction.response.send_message(S("common.error_generic"), ephemeral=True)

        s = self.settings
        await interaction.response.send_message(
            S(
                "inactivity.stats.body",
                tracked=tracked,
                channels=len(s.watched_channel_ids),
                warn_days=s.warn_after_days,
                remove_days=s.remove_after_days,
                policy_minutes=s.policy_interval_minutes,
                cleanup_minutes=s.cleanup_interval_minutes,
            ),
            ephemeral=True,
        )

    async def cog_app_command_error(
        self,
        interaction: discord.Interaction,
        error: app_commands.AppCommandError,
    ):
        if isinstance(error, app_commands.errors.MissingPermissions):
            msg = S("common.need_manage_server")
        else:
            log.error("admin command failed", exc_info=error)
            msg = S("common.error_generic")
        if interaction.response.is_done():
            await interaction.followup.send(msg, ephemeral=True)
        else:
            await interaction.response.send_message(msg, ephemeral=True)


async def setup(bot: commands.Bot):
    await bot.add_cog(AdminCog(bot))
