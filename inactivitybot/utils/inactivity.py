from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta

import discord

from ..models.users import UserRecord
from ..strings import S
from .time import as_utc


class Verdict(enum.Enum):
    OK = "ok"
    WARN = "warn"
    REMOVE = "remove"


@dataclass(frozen=True)
class Thresholds:
    now: datetime
    warn_before: datetime
    remove_before: datetime
    warn_days: int
    remove_days: int


def compute_thresholds(now: datetime, *, warn_days: int, remove_days: int) -> Thresholds:
    # Both cutoffs are offsets from the same `now`.
    now = as_utc(now)
    return Thresholds(
        now=now,
        warn_before=now - timedelta(days=warn_days),
        remove_before=now - timedelta(days=remove_days),
        warn_days=warn_days,
        remove_days=remove_days,
    )


def classify(record: UserRecord, thresholds: Thresholds) -> Verdict:
    """
    Decide what the policy does with one user this cycle.

    REMOVE: never posted, or last post older than the removal cutoff.
    WARN:   last post older than the warning cutoff and no warning since that cutoff.
    OK:     everything else.
    """
    last = record.last_message
    if last is None or last < thresholds.remove_before:
        return Verdict.REMOVE
    if last < thresholds.warn_before and (
        record.last_warning is None or record.last_warning < thresholds.warn_before
    ):
        return Verdict.WARN
    return Verdict.OK


def warning_text(user_id: int, warn_days: int) -> str:
    return S("inactivity.warning", mention=f"<@{user_id}>", days=warn_days)


def member_has_role(member: discord.Member, role_id: int) -> bool:
    return any(getattr(r, "id", None) == role_id for r in getattr(member, "roles", ()))


def is_automated(user) -> bool:
    """Bots and Discord system users never count as community activity."""
    return bool(getattr(user, "bot", False) or getattr(user, "system", False))


__all__ = [
    "Thresholds",
    "Verdict",
    "classify",
    "compute_thresholds",
    "is_automated",
    "member_has_role",
    "warning_text",
]
