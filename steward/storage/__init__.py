"""
Steward Storage

SQLite-backed stores for conversation windows, pending updates and
long-term memories.
"""

from .conversations import ConversationStore
from .database import Database
from .memories import MemoryStore
from .updates import UpdateStore

__all__ = [
    "ConversationStore",
    "Database",
    "MemoryStore",
    "UpdateStore",
]
