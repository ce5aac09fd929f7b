from __future__ import annotations

import os
import sqlite3
import logging
from contextlib import closing, contextmanager
from typing import Iterator, Optional

from . import config

log = logging.getLogger("inactivitybot.db")

_db_path_override: Optional[str] = None


# ----------------------------
# Path resolution
# ----------------------------
def set_db_path(path: Optional[str]) -> None:
    """Pin the database file for this process (None falls back to the environment)."""
    global _db_path_override
    _db_path_override = os.path.abspath(path) if path else None


def _resolved_db_path() -> str:
    if _db_path_override:
        return _db_path_override
    env = os.environ.get("BOT_DB_PATH")
    if env:
        return os.path.abspath(env)
    return os.path.abspath(config.BOT_DB_PATH)


# ----------------------------
# Public: connect() / ensure_db()
# ----------------------------
@contextmanager
def connect() -> Iterator[sqlite3.Connection]:
    """Open the store; commits on success, rolls back on error, always closes."""
    con = sqlite3.connect(_resolved_db_path(), timeout=5)
    try:
        con.execute("PRAGMA journal_mode=WAL")
        con.execute("PRAGMA synchronous=NORMAL")
        con.execute("PRAGMA busy_timeout=3000")
        with con:
            yield con
    finally:
        con.close()


def ensure_db() -> None:
    """
    Idempotently create the users table and its index.

    Older databases created by the first deployment stored user ids as TEXT;
    SQLite's type affinity lets those rows keep working, so nothing is rewritten.
    """
    path = _resolved_db_path()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with closing(sqlite3.connect(path, timeout=5)) as con:
        cur = con.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        journal = cur.execute("PRAGMA journal_mode").fetchone()[0]
        cur.execute("PRAGMA synchronous=NORMAL")
        cur.execute("PRAGMA busy_timeout=3000")

        try:
            size = os.stat(path).st_size
        except FileNotFoundError:
            size = 0
        log.info("db.open path=%s size=%d journal=%s", path, size, journal)

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id      INTEGER PRIMARY KEY,
                last_message TEXT,
                joined_at    TEXT,
                last_warning TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_users_last_message ON users (last_message)"
        )

        con.commit()
