from __future__ import annotations

from datetime import datetime
from typing import Optional

from ..utils.time import from_iso, to_iso


def iso_or_none(when: Optional[datetime]) -> Optional[str]:
    return to_iso(when) if when is not None else None


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    return from_iso(value)


__all__ = ["iso_or_none", "parse_iso"]
