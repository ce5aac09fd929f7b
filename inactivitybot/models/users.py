from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from ..db import connect
from .common import iso_or_none, parse_iso


@dataclass(frozen=True)
class UserRecord:
    user_id: int
    last_message: Optional[datetime]
    joined_at: Optional[datetime]
    last_warning: Optional[datetime]

    @classmethod
    def from_row(cls, row: Sequence) -> "UserRecord":
        user_id, last_message, joined_at, last_warning = row
        return cls(
            user_id=int(user_id),
            last_message=parse_iso(last_message),
            joined_at=parse_iso(joined_at),
            last_warning=parse_iso(last_warning),
        )


_COLUMNS = "user_id, last_message, joined_at, last_warning"


def insert_if_absent(
    user_id: int,
    *,
    joined_at: Optional[datetime],
    last_message: Optional[datetime] = None,
) -> bool:
    """Create a row for a user we have not seen yet. Returns True if a row was created."""
    with connect() as con:
        cur = con.cursor()
        cur.execute(
            f"INSERT OR IGNORE INTO users ({_COLUMNS}) VALUES (?, ?, ?, NULL)",
            (int(user_id), iso_or_none(last_message), iso_or_none(joined_at)),
        )
        con.commit()
        return cur.rowcount == 1


def record_message(user_id: int, when: datetime) -> None:
    """
    Upsert a message sighting.

    last_message only ever moves forward. joined_at and last_warning keep any
    stored value and fall back to the message time when empty.
    """
    when_iso = iso_or_none(when)
    with connect() as con:
        cur = con.cursor()
        cur.execute(
            f"""
            INSERT INTO users ({_COLUMNS})
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
              last_message = CASE
                WHEN users.last_message IS NULL OR excluded.last_message > users.last_message
                THEN excluded.last_message
                ELSE users.last_message
              END,
              joined_at    = COALESCE(users.joined_at, excluded.joined_at),
              last_warning = COALESCE(users.last_warning, excluded.last_warning)
            """,
            (int(user_id), when_iso, when_iso, when_iso),
        )
        con.commit()


def mark_warned(user_id: int, when: datetime) -> None:
    with connect() as con:
        cur = con.cursor()
        cur.execute(
            "UPDATE users SET last_warning=? WHERE user_id=?",
            (iso_or_none(when), int(user_id)),
        )
        con.commit()


def get_user(user_id: int) -> Optional[UserRecord]:
    with connect() as con:
        cur = con.cursor()
        row = cur.execute(
            f"SELECT {_COLUMNS} FROM users WHERE user_id=?",
            (int(user_id),),
        ).fetchone()
    return UserRecord.from_row(row) if row else None


def list_inactive(before: datetime) -> List[UserRecord]:
    """Users who never posted, or whose last post is older than `before`."""
    with connect() as con:
        cur = con.cursor()
        rows = cur.execute(
            f"""
            SELECT {_COLUMNS} FROM users
            WHERE last_message IS NULL OR last_message < ?
            ORDER BY user_id
            """,
            (iso_or_none(before),),
        ).fetchall()
    return [UserRecord.from_row(r) for r in rows]


def list_user_ids() -> List[int]:
    with connect() as con:
        cur = con.cursor()
        rows = cur.execute("SELECT user_id FROM users ORDER BY user_id").fetchall()
    return [int(r[0]) for r in rows]


def delete_user(user_id: int) -> bool:
    with connect() as con:
        cur = con.cursor()
        cur.execute("DELETE FROM users WHERE user_id=?", (int(user_id),))
        con.commit()
        return cur.rowcount > 0


def count_users() -> int:
    with connect() as con:
        cur = con.cursor()
        return int(cur.execute("SELECT COUNT(*) FROM users").fetchone()[0])


__all__ = [
    "UserRecord",
    "count_users",
    "delete_user",
    "get_user",
    "insert_if_absent",
    "list_inactive",
    "list_user_ids",
    "mark_warned",
    "record_message",
]
