"""Database access layer for the inactivity bot."""

from . import common
from . import users

__all__ = [
    "common",
    "users",
]
