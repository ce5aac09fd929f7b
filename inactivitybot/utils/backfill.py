from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import AbstractSet, Dict, List, Optional, Tuple

import discord

from .inactivity import is_automated
from .time import as_utc

log = logging.getLogger(__name__)

PAGE_SIZE = 100


@dataclass
class BackfillStats:
    channels_scanned: int = 0
    channels_skipped: List[int] = field(default_factory=list)
    messages_seen: int = 0
    authors_updated: int = 0
    members_seeded: int = 0
    errors: List[str] = field(default_factory=list)


def in_watched_channel(channel, watched_ids: AbstractSet[int]) -> bool:
    """True for watched channels and for threads whose parent is watched."""
    if getattr(channel, "id", None) in watched_ids:
        return True
    parent_id = getattr(channel, "parent_id", None)
    return parent_id is not None and parent_id in watched_ids


async def resolve_channel(bot: discord.Client, channel_id: int):
    channel = bot.get_channel(channel_id)
    if channel is None:
        channel = await bot.fetch_channel(channel_id)
    return channel


def history_targets(channel) -> List[discord.abc.Messageable]:
    """
    Everything under a watched channel that has readable history: the channel
    itself when it has one, then its active threads (forum posts included).
    Categories and other containers without messages yield nothing.
    """
    targets = []
    if callable(getattr(channel, "history", None)):
        targets.append(channel)
    for thread in getattr(channel, "threads", None) or ():
        if callable(getattr(thread, "history", None)):
            targets.append(thread)
    return targets


def can_read_history(channel, me: discord.Member) -> Tuple[bool, str]:
    try:
        perms = channel.permissions_for(me)
    except Exception:
        return False, "unable to resolve permissions"

    if not perms.view_channel:
        return False, "missing View Channel"
    if not perms.read_message_history:
        return False, "missing Read Message History"
    return True, ""


async def collect_latest_authors(
    channel: discord.abc.Messageable,
    *,
    since: datetime,
    latest: Dict[int, datetime],
    page_size: int = PAGE_SIZE,
) -> int:
    """
    Walk a channel's history newest-first, one page at a time, recording each
    human author's most recent message time into `latest`.

    The walk ends on an empty or short page, or on the first page that reaches
    back past `since`. Returns the number of in-window messages seen.
    """
    since = as_utc(since)
    seen = 0
    before: Optional[discord.abc.Snowflake] = None

    while True:
        page = [m async for m in channel.history(limit=page_size, before=before)]
        if not page:
            break

        reached_cutoff = False
        for message in page:
            created = as_utc(message.created_at)
            if created < since:
                reached_cutoff = True
                continue
            seen += 1
            if is_automated(message.author) or getattr(message, "webhook_id", None):
                continue
            author_id = message.author.id
            prev = latest.get(author_id)
            if prev is None or created > prev:
                latest[author_id] = created

        oldest = min(page, key=lambda m: as_utc(m.created_at))
        log.debug(
            "backfill.history.page",
            extra={
                "channel_id": getattr(channel, "id", None),
                "page_size": len(page),
                "oldest": as_utc(oldest.created_at).isoformat(),
                "seen": seen,
            },
        )

        if reached_cutoff or len(page) < page_size:
            break
        before = oldest
        await asyncio.sleep(0)

    return seen


__all__ = [
    "BackfillStats",
    "PAGE_SIZE",
    "can_read_history",
    "collect_latest_authors",
    "history_targets",
    "in_watched_channel",
    "resolve_channel",
]
