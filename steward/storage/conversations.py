"""
Conversation Store

Rolling per-user window of recent chat turns, used as short-term context
for replies. Every append pushes the expiry of the whole window forward, so
a conversation lives until it has been idle for the TTL.
"""

import logging
import time
from typing import Callable, List, Optional

from ..common.schemas.records import ConversationTurn, Role
from .database import Database

logger = logging.getLogger("steward.storage.conversations")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        role TEXT NOT NULL CHECK(role IN ('user', 'assistant')),
        content TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        expires_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_user ON messages(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_expires ON messages(expires_at)",
)


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class ConversationStore:
    """
    Per-user conversation window.

    Args:
        db: Database holding the ``messages`` table
        ttl_minutes: Idle time after which a window is discarded
        max_pairs: Retained user/assistant pairs (2 * max_pairs turns)
        clock: Returns the current time in epoch milliseconds
    """

    def __init__(
        self,
        db: Database,
        ttl_minutes: int = 30,
        max_pairs: int = 10,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._db = db
        self._ttl_ms = ttl_minutes * 60 * 1000
        self._max_turns = max_pairs * 2
        self._clock = clock or _epoch_ms

    @classmethod
    def open(cls, path: str, **kwargs) -> "ConversationStore":
        return cls(Database(path, SCHEMA), **kwargs)

    @property
    def max_turns(self) -> int:
        return self._max_turns

    def append(self, user_id: str, role: Role, content: str) -> None:
        """Add a turn, extend the window's expiry and trim to the newest turns"""
        role = Role(role)
        now = self._clock()
        expires_at = now + self._ttl_ms

        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO messages (user_id, role, content, created_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (user_id, role.value, content, now, expires_at),
            )
            conn.execute(
                "UPDATE messages SET expires_at = ? WHERE user_id = ?",
                (expires_at, user_id),
            )
            conn.execute(
                """
                DELETE FROM messages WHERE user_id = ? AND id NOT IN (
                    SELECT id FROM messages WHERE user_id = ?
                    ORDER BY created_at DESC, id DESC LIMIT ?
                )
                """,
                (user_id, user_id, self._max_turns),
            )

    def read(self, user_id: str) -> List[ConversationTurn]:
        """Purge the user's expired turns, then return the rest oldest first"""
        now = self._clock()
        with self._db.transaction() as conn:
            purged = conn.execute(
                "DELETE FROM messages WHERE user_id = ? AND expires_at < ?",
                (user_id, now),
            ).rowcount
            rows = conn.execute(
                "SELECT user_id, role, content, created_at, expires_at FROM messages "
                "WHERE user_id = ? ORDER BY created_at ASC, id ASC",
                (user_id,),
            ).fetchall()

        if purged:
            logger.debug("Expired %d turns for %s", purged, user_id)
        return [self._row_to_turn(row) for row in rows]

    def clear(self, user_id: str) -> int:
        with self._db.transaction() as conn:
            return conn.execute("DELETE FROM messages WHERE user_id = ?", (user_id,)).rowcount

    def cleanup_expired(self) -> int:
        """Sweep expired turns across all users. Returns the number deleted."""
        with self._db.transaction() as conn:
            deleted = conn.execute(
                "DELETE FROM messages WHERE expires_at < ?", (self._clock(),)
            ).rowcount
        if deleted:
            logger.info("Cleaned up %d expired conversation turns", deleted)
        return deleted

    @staticmethod
    def format_for_prompt(turns: List[ConversationTurn], assistant_name: str = "Assistant") -> str:
        """Render a window as a transcript block for an LLM prompt"""
        if not turns:
            return ""
        lines = []
        for turn in turns:
            speaker = "User" if turn.role == Role.USER else assistant_name
            lines.append(f"{speaker}: {turn.content}")
        return "\n\n## Recent conversation:\n" + "\n".join(lines) + "\n"

    def _row_to_turn(self, row) -> ConversationTurn:
        return ConversationTurn(
            user_id=row["user_id"],
            role=Role(row["role"]),
            content=row["content"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )
