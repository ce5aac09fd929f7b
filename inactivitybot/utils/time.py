from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional

from ..config import LOCAL_TZ


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to already be UTC (discord.py and sqlite both hand those out)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO8601, so stored values sort lexically in time order."""
    return as_utc(dt).replace(microsecond=0).isoformat()


def from_iso(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    return as_utc(datetime.fromisoformat(s.replace("Z", "+00:00")))


def to_local(dt: datetime) -> datetime:
    return as_utc(dt).astimezone(LOCAL_TZ)
