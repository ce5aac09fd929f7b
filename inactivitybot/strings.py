from __future__ import annotations
from typing import Any, Dict


_STRINGS: Dict[str, str] = {}


def S(key: str, /, **fmt: Any) -> str:
    """Lookup + format. Unknown keys come back as the key itself; format errors return the raw template."""
    template = _STRINGS.get(key, key)
    try:
        return template.format(**fmt) if fmt else template
    except (KeyError, IndexError, ValueError):
        return template


# ===============================================================
# String table
# ===============================================================

_STRINGS.update(
    {
        # ---------------- Common ----------------
        "common.guild_only": "This command can only be used in a server.",
        "common.need_manage_server": "You need **Manage Server** (or higher) permission.",
        "common.error_generic": "Something went wrong. Try again or ping a moderator.",
        "common.never": "never",

        # ---------------- Policy ----------------
        "inactivity.warning": (
            "{mention} This is a warning, you have not sent any message in past {days} days, "
            "failure to send a message will result in removal of access to the server"
        ),
        "inactivity.role_reason": "No messages in watched channels for {days} days",

        # ---------------- /inactivity ----------------
        "inactivity.status.untracked": "{member} is not tracked yet.",
        "inactivity.status.title": "Activity for {member}",
        "inactivity.status.last_message": "Last message",
        "inactivity.status.joined_at": "Joined",
        "inactivity.status.last_warning": "Last warning",
        "inactivity.status.verdict": "Verdict",
        "inactivity.verdict.ok": "active",
        "inactivity.verdict.warn": "due for a warning",
        "inactivity.verdict.remove": "due for role removal",
        "inactivity.run.busy": "A check is already running, try again in a moment.",
        "inactivity.run.done": (
            "Checked **{candidates}** inactive users: warned **{warned}**, removed role from **{removed}**. "
            "Cleanup deleted **{deleted}** stale rows."
        ),
        "inactivity.run.no_guild": "The configured server is not available right now.",
        "inactivity.stats.body": (
            "Tracking **{tracked}** users across {channels} watched channel(s).\n"
            "Warn after **{warn_days}** days, remove role after **{remove_days}** days.\n"
            "Checks run every {policy_minutes} min, cleanup every {cleanup_minutes} min."
        ),
    }
)
