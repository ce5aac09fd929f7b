from __future__ import annotations
import os
from dataclasses import dataclass
from typing import FrozenSet, List, Mapping, Optional

from dateutil import tz

DATA_DIR = os.getenv("DATA_DIR", "./data")

TZ_NAME = os.getenv("TZ", "UTC")
TZ = tz.gettz(TZ_NAME) or tz.UTC
LOCAL_TZ = TZ

BOT_DB_PATH = os.getenv("BOT_DB_PATH", os.path.join(DATA_DIR, "inactivity.sqlite3"))

DEFAULT_WARN_AFTER_DAYS = 14
DEFAULT_REMOVE_AFTER_DAYS = 30
DEFAULT_LOOKBACK_DAYS = 31
DEFAULT_HISTORY_PAGE_SIZE = 100
DEFAULT_INTERVAL_MINUTES = 60


class ConfigError(ValueError):
    """Raised when the environment does not describe a usable bot."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("invalid configuration: " + "; ".join(self.problems))


def _parse_id_list(value: str) -> List[int]:
    ids: List[int] = []
    for tok in (value or "").split(","):
        tok = tok.strip()
        if not tok:
            continue
        channel_id = int(tok)
        if channel_id <= 0:
            raise ValueError(f"channel id must be positive, got {channel_id}")
        ids.append(channel_id)
    return ids


@dataclass(frozen=True)
class Settings:
    token: str
    guild_id: int
    watched_channel_ids: FrozenSet[int]
    warning_channel_id: int
    role_id: int
    db_path: str = BOT_DB_PATH
    warn_after_days: int = DEFAULT_WARN_AFTER_DAYS
    remove_after_days: int = DEFAULT_REMOVE_AFTER_DAYS
    lookback_days: int = DEFAULT_LOOKBACK_DAYS
    history_page_size: int = DEFAULT_HISTORY_PAGE_SIZE
    policy_interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    cleanup_interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    command_sync_mode: str = "guild"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables, collecting every problem before raising."""
        env = os.environ if env is None else env
        problems: List[str] = []

        def required_id(name: str) -> int:
            raw = (env.get(name) or "").strip()
            if not raw:
                problems.append(f"{name} is required")
                return 0
            try:
                value = int(raw)
            except ValueError:
                problems.append(f"{name} must be a numeric id, got {raw!r}")
                return 0
            if value <= 0:
                problems.append(f"{name} must be positive")
            return value

        def positive_int(name: str, default: int) -> int:
            raw = (env.get(name) or "").strip()
            if not raw:
                return default
            try:
                value = int(raw)
            except ValueError:
                problems.append(f"{name} must be an integer, got {raw!r}")
                return default
            if value <= 0:
                problems.append(f"{name} must be positive")
                return default
            return value

        token = (env.get("DISCORD_TOKEN") or env.get("DISCORD_BOT_TOKEN") or "").strip()
        if not token:
            problems.append("DISCORD_TOKEN (or DISCORD_BOT_TOKEN) is required")

        guild_id = required_id("GUILD_ID")
        warning_channel_id = required_id("WARNING_CHANNEL_ID")
        role_id = required_id("INACTIVE_ROLE_ID")

        watched: List[int] = []
        raw_watched = env.get("WATCHED_CHANNEL_IDS") or ""
        try:
            watched = _parse_id_list(raw_watched)
        except ValueError:
            problems.append(f"WATCHED_CHANNEL_IDS must be comma-separated positive ids, got {raw_watched!r}")
        else:
            if not watched:
                problems.append("WATCHED_CHANNEL_IDS needs at least one channel id")

        warn_days = positive_int("WARN_AFTER_DAYS", DEFAULT_WARN_AFTER_DAYS)
        remove_days = positive_int("REMOVE_AFTER_DAYS", DEFAULT_REMOVE_AFTER_DAYS)
        if remove_days <= warn_days:
            problems.append(
                f"REMOVE_AFTER_DAYS ({remove_days}) must be greater than WARN_AFTER_DAYS ({warn_days})"
            )

        page_size = positive_int("HISTORY_PAGE_SIZE", DEFAULT_HISTORY_PAGE_SIZE)
        if page_size > 100:
            problems.append("HISTORY_PAGE_SIZE must be at most 100")

        sync_mode = (env.get("COMMAND_SYNC_MODE") or "guild").strip().lower()
        if sync_mode not in {"guild", "global", "none"}:
            problems.append(f"COMMAND_SYNC_MODE must be guild, global or none, got {sync_mode!r}")

        lookback_days = positive_int("LOOKBACK_DAYS", DEFAULT_LOOKBACK_DAYS)
        policy_minutes = positive_int("POLICY_INTERVAL_MINUTES", DEFAULT_INTERVAL_MINUTES)
        cleanup_minutes = positive_int("CLEANUP_INTERVAL_MINUTES", DEFAULT_INTERVAL_MINUTES)

        data_dir = env.get("DATA_DIR") or DATA_DIR
        db_path = env.get("BOT_DB_PATH") or os.path.join(data_dir, "inactivity.sqlite3")

        if problems:
            raise ConfigError(problems)

        return cls(
            token=token,
            guild_id=guild_id,
            watched_channel_ids=frozenset(watched),
            warning_channel_id=warning_channel_id,
            role_id=role_id,
            db_path=os.path.abspath(db_path),
            warn_after_days=warn_days,
            remove_after_days=remove_days,
            lookback_days=lookback_days,
            history_page_size=page_size,
            policy_interval_minutes=policy_minutes,
            cleanup_interval_minutes=cleanup_minutes,
            command_sync_mode=sync_mode,
        )
