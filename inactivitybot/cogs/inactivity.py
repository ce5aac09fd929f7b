from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import discord
from discord.ext import commands, tasks

from ..models import users
from ..models.users import UserRecord
from ..strings import S
from ..utils.backfill import resolve_channel
from ..utils.inactivity import (
    Thresholds,
    Verdict,
    classify,
    compute_thresholds,
    is_automated,
    member_has_role,
    warning_text,
)
from ..utils.time import as_utc, now_utc

log = logging.getLogger(__name__)


@dataclass
class PolicyStats:
    candidates: int = 0
    warned: int = 0
    removed: int = 0
    missing_members: int = 0
    warnings_skipped: int = 0
    errors: int = 0


class InactivityCog(commands.Cog):
    """Warns quiet members and revokes the activity role once they stay quiet too long."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.lock = asyncio.Lock()

    @property
    def settings(self):
        return self.bot.settings

    def thresholds(self, now: Optional[datetime] = None) -> Thresholds:
        return compute_thresholds(
            now or now_utc(),
            warn_days=self.settings.warn_after_days,
            remove_days=self.settings.remove_after_days,
        )

    # ---- schedule ----
    def start_schedule(self) -> None:
        self._policy_loop.change_interval(minutes=self.settings.policy_interval_minutes)
        if not self._policy_loop.is_running():
            self._policy_loop.start()

    def cog_unload(self) -> None:
        self._policy_loop.cancel()

    @tasks.loop(minutes=60)
    async def _policy_loop(self) -> None:
        try:
            guild = await self.bot.resolve_guild()
            if guild is None:
                log.warning("policy: guild %s unavailable; skipping cycle", self.settings.guild_id)
                return
            async with self.lock:
                await self.run(guild)
        except Exception:
            log.exception("policy: cycle failed")

    @_policy_loop.before_loop
    async def _before_policy_loop(self) -> None:
        await self.bot.wait_until_ready()

    # ---- one cycle ----
    async def run(self, guild: discord.Guild, *, now: Optional[datetime] = None) -> PolicyStats:
        th = self.thresholds(as_utc(now) if now else None)
        stats = PolicyStats()

        try:
            candidates = users.list_inactive(th.warn_before)
        except sqlite3.Error:
            log.exception("policy: failed to query inactive users")
            stats.errors += 1
            return stats

        stats.candidates = len(candidates)
        log.info("policy: checking %d users (warn_before=%s, remove_before=%s)",
                 len(candidates), th.warn_before.isoformat(), th.remove_before.isoformat())

        warning_channel = await self._resolve_warning_channel()

        for record in candidates:
            await self._apply(guild, record, th, warning_channel, stats)

        log.info(
            "policy: done candidates=%d warned=%d removed=%d missing=%d warnings_skipped=%d errors=%d",
            stats.candidates,
            stats.warned,
            stats.removed,
            stats.missing_members,
            stats.warnings_skipped,
            stats.errors,
        )
        return stats

    async def _apply(
        self,
        guild: discord.Guild,
        record: UserRecord,
        th: Thresholds,
        warning_channel,
        stats: PolicyStats,
    ) -> None:
        try:
            member = await self._resolve_member(guild, record.user_id)
        except discord.HTTPException as exc:
            stats.errors += 1
            log.error("policy: failed to fetch member %s: %s", record.user_id, exc)
            return
        if member is None:
            stats.missing_members += 1
            return
        if is_automated(member):
            return

        verdict = classify(record, th)
        if verdict is Verdict.REMOVE:
            await self._remove_role(member, th, stats)
        elif verdict is Verdict.WARN:
            if warning_channel is None:
                stats.warnings_skipped += 1
                return
            await self._warn(warning_channel, member, th, stats)

    async def _resolve_member(self, guild: discord.Guild, user_id: int) -> Optional[discord.Member]:
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user_id)
        except discord.NotFound:
            return None

    async def _resolve_warning_channel(self):
        channel_id = self.settings.warning_channel_id
        try:
            channel = await resolve_channel(self.bot, channel_id)
        except discord.HTTPException as exc:
            log.error("policy: failed to fetch warning channel %s: %s; warnings skipped this cycle",
                      channel_id, exc)
            return None
        if not callable(getattr(channel, "send", None)):
            log.error("policy: warning channel %s cannot receive messages; warnings skipped", channel_id)
            return None
        return channel

    async def _remove_role(self, member: discord.Member, th: Thresholds, stats: PolicyStats) -> None:
        role_id = self.settings.role_id
        if not member_has_role(member, role_id):
            return
        try:
            await member.remove_roles(
                discord.Object(id=role_id),
                reason=S("inactivity.role_reason", days=th.remove_days),
            )
        except discord.HTTPException as exc:
            stats.errors += 1
            log.error("policy: failed to remove role from %s (%s): %s", member, member.id, exc)
            return
        stats.removed += 1
        log.info("policy: removed role from %s (%s)", member, member.id)

    async def _warn(self, channel, member: discord.Member, th: Thresholds, stats: PolicyStats) -> None:
        try:
            await channel.send(
                warning_text(member.id, th.warn_days),
                allowed_mentions=discord.AllowedMentions(everyone=False, roles=False, users=[member]),
            )
        except discord.HTTPException as exc:
            stats.errors += 1
            log.error("policy: failed to send warning to %s (%s): %s", member, member.id, exc)
            return

        stats.warned += 1
        try:
            users.mark_warned(member.id, th.now)
        except sqlite3.Error:
            stats.errors += 1
            log.exception("policy: failed to update last_warning for %s", member.id)
            return
        log.info("policy: warned %s (%s) at %s", member, member.id, th.now.isoformat())


async def setup(bot: commands.Bot):
    await bot.add_cog(InactivityCog(bot))
