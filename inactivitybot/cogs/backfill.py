from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Dict, Optional

import discord
from discord.ext import commands

from ..models import users
from ..utils.backfill import (
    BackfillStats,
    can_read_history,
    collect_latest_authors,
    history_targets,
    resolve_channel,
)
from ..utils.inactivity import is_automated
from ..utils.time import as_utc, now_utc

log = logging.getLogger(__name__)

DELAY_BETWEEN_CHANNELS = 0.5


class BackfillCog(commands.Cog):
    """Startup reconciliation: seeds the users table from recent history and the member list."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @property
    def settings(self):
        return self.bot.settings

    async def run(self, guild: discord.Guild, *, now: Optional[datetime] = None) -> BackfillStats:
        now = as_utc(now) if now else now_utc()
        since = now - timedelta(days=self.settings.lookback_days)
        stats = BackfillStats()

        me = await self._resolve_me(guild)
        latest: Dict[int, datetime] = {}

        for channel_id in sorted(self.settings.watched_channel_ids):
            await self._scan_channel(channel_id, me, since=since, latest=latest, stats=stats)
            await asyncio.sleep(DELAY_BETWEEN_CHANNELS)

        for user_id, when in latest.items():
            try:
                users.record_message(user_id, when)
                stats.authors_updated += 1
            except sqlite3.Error as exc:
                stats.errors.append(f"user {user_id}: {exc}")
                log.exception("backfill.store.message_failed user=%s", user_id)

        await self._seed_members(guild, stats)

        log.info(
            "backfill.done channels=%d skipped=%d messages=%d authors=%d seeded=%d errors=%d",
            stats.channels_scanned,
            len(stats.channels_skipped),
            stats.messages_seen,
            stats.authors_updated,
            stats.members_seeded,
            len(stats.errors),
        )
        return stats

    # ------------------------
    # internals
    # ------------------------
    async def _resolve_me(self, guild: discord.Guild) -> Optional[discord.Member]:
        if guild.me is not None:
            return guild.me
        if self.bot.user is None:
            return None
        try:
            return await guild.fetch_member(self.bot.user.id)
        except discord.HTTPException:
            log.exception("backfill.resolve_member_failed", extra={"guild_id": guild.id})
            return None

    async def _scan_channel(
        self,
        channel_id: int,
        me: Optional[discord.Member],
        *,
        since: datetime,
        latest: Dict[int, datetime],
        stats: BackfillStats,
    ) -> None:
        try:
            channel = await resolve_channel(self.bot, channel_id)
        except discord.HTTPException as exc:
            stats.channels_skipped.append(channel_id)
            stats.errors.append(f"channel {channel_id}: {exc}")
            log.error("backfill.channel.unavailable channel=%s error=%s", channel_id, exc)
            return

        targets = history_targets(channel)
        if not targets:
            stats.channels_skipped.append(channel_id)
            log.error(
                "backfill.channel.skipped channel=%s reason=no message history (type=%s)",
                channel_id,
                type(channel).__name__,
            )
            return

        if me is None:
            ok, reason = False, "bot member unavailable"
        else:
            ok, reason = can_read_history(channel, me)
        if not ok:
            stats.channels_skipped.append(channel_id)
            log.error("backfill.channel.skipped channel=%s reason=%s", channel_id, reason)
            return

        log.info("backfill.channel.begin channel=%s targets=%d", channel_id, len(targets))
        seen = 0
        for target in targets:
            try:
                seen += await collect_latest_authors(
                    target,
                    since=since,
                    latest=latest,
                    page_size=self.settings.history_page_size,
                )
            except discord.Forbidden:
                log.error("backfill.channel.forbidden channel=%s target=%s", channel_id, target.id)
                if target is channel:
                    stats.channels_skipped.append(channel_id)
                    return
            except discord.HTTPException as exc:
                stats.errors.append(f"channel {target.id}: {exc}")
                log.exception("backfill.channel.http_error channel=%s target=%s", channel_id, target.id)
                if target is channel:
                    return

        stats.channels_scanned += 1
        stats.messages_seen += seen
        log.info("backfill.channel.done channel=%s messages=%d", channel_id, seen)

    async def _seed_members(self, guild: discord.Guild, stats: BackfillStats) -> None:
        try:
            members = [m async for m in guild.fetch_members(limit=None)]
        except discord.HTTPException as exc:
            stats.errors.append(f"members: {exc}")
            log.exception("backfill.members.fetch_failed guild=%s", guild.id)
            return

        for member in members:
            if is_automated(member):
                continue
            joined = as_utc(member.joined_at) if member.joined_at else None
            try:
                if users.insert_if_absent(member.id, joined_at=joined):
                    stats.members_seeded += 1
                    if stats.members_seeded % 100 == 0:
                        log.info("backfill.members.progress seeded=%d", stats.members_seeded)
            except sqlite3.Error as exc:
                stats.errors.append(f"member {member.id}: {exc}")
                log.exception("backfill.store.member_failed user=%s", member.id)

        log.info("backfill.members.done fetched=%d seeded=%d", len(members), stats.members_seeded)


async def setup(bot: commands.Bot):
    await bot.add_cog(BackfillCog(bot))
