"""
Message storage.

Usage:
    from chatrelay.storage import SQLiteStore
    store = SQLiteStore("./data/chatrelay.db")
"""

from .base import MessageStore
from .sqlite_store import SQLiteStore

__all__ = ["MessageStore", "SQLiteStore"]
