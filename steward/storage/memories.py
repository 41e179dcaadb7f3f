"""
Memory Store

Two tables in the long-term memory database:

- ``memory_candidates``: batches of extracted items awaiting review
- ``memories``: approved items, append-only apart from admin deletion

Approving a candidate wins the conditional status transition and writes
one ``memories`` row per extracted item in the same transaction, so a
candidate fans out exactly once no matter how many reviewers click.
"""

import json
import logging
import sqlite3
from typing import List, Optional, Sequence

from ..common.schemas.records import (
    ExtractedMemory,
    Memory,
    MemoryCandidate,
    MemoryType,
    RecordStatus,
    ThreadMessage,
    generate_record_id,
    utc_now_iso,
)
from .database import Database

logger = logging.getLogger("steward.storage.memories")

MAX_ID_ATTEMPTS = 5

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS memories (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        content TEXT NOT NULL,
        context TEXT,
        source TEXT,
        channel TEXT,
        thread_ts TEXT,
        submitted_by TEXT,
        approved_by TEXT,
        created_at TEXT NOT NULL,
        approved_at TEXT,
        tags TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memory_candidates (
        id TEXT PRIMARY KEY,
        source TEXT NOT NULL,
        channel TEXT,
        channel_name TEXT,
        thread_ts TEXT,
        thread_url TEXT,
        raw_messages TEXT,
        extracted_memories TEXT,
        submitted_by TEXT,
        submitted_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        reviewed_by TEXT,
        reviewed_at TEXT,
        notes TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memories_type ON memories(type)",
    "CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_candidates_status ON memory_candidates(status)",
)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class MemoryStore:
    """Memory candidates and approved memories in SQLite"""

    def __init__(self, db: Database):
        self._db = db

    @classmethod
    def open(cls, path: str) -> "MemoryStore":
        return cls(Database(path, SCHEMA))

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    def create_candidate(
        self,
        submitted_by: str,
        extracted_memories: Sequence[ExtractedMemory],
        raw_messages: Sequence[ThreadMessage] = (),
        channel: Optional[str] = None,
        channel_name: Optional[str] = None,
        thread_ts: Optional[str] = None,
        thread_url: Optional[str] = None,
        source: str = "slack-thread",
    ) -> MemoryCandidate:
        submitted_at = utc_now_iso()
        raw_json = json.dumps([m.model_dump() for m in raw_messages], ensure_ascii=False)
        extracted_json = self._dump_memories(extracted_memories)

        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            candidate_id = generate_record_id("CAND")
            try:
                with self._db.transaction() as conn:
                    conn.execute(
                        "INSERT INTO memory_candidates "
                        "(id, source, channel, channel_name, thread_ts, thread_url, "
                        "raw_messages, extracted_memories, submitted_by, submitted_at, status) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending')",
                        (
                            candidate_id, source, channel, channel_name, thread_ts,
                            thread_url, raw_json, extracted_json, submitted_by, submitted_at,
                        ),
                    )
                break
            except sqlite3.IntegrityError:
                logger.warning("Candidate ID collision on %s (attempt %d)", candidate_id, attempt)
        else:
            raise RuntimeError("Could not allocate a unique candidate ID")

        logger.info(
            "Created memory candidate %s with %d items from %s",
            candidate_id, len(extracted_memories), submitted_by,
        )
        return MemoryCandidate(
            id=candidate_id,
            source=source,
            channel=channel,
            channel_name=channel_name,
            thread_ts=thread_ts,
            thread_url=thread_url,
            raw_messages=list(raw_messages),
            extracted_memories=list(extracted_memories),
            submitted_by=submitted_by,
            submitted_at=submitted_at,
        )

    def get_candidate(self, candidate_id: str) -> Optional[MemoryCandidate]:
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT * FROM memory_candidates WHERE id = ?", (candidate_id,)
            ).fetchone()
        return self._row_to_candidate(row) if row else None

    def list_pending(self) -> List[MemoryCandidate]:
        """Pending candidates, newest first"""
        return self.list_candidates(status=RecordStatus.PENDING)

    def list_candidates(
        self,
        status: Optional[RecordStatus] = None,
        limit: Optional[int] = None,
    ) -> List[MemoryCandidate]:
        sql = "SELECT * FROM memory_candidates"
        params: list = []
        if status:
            sql += " WHERE status = ?"
            params.append(RecordStatus(status).value)
        sql += " ORDER BY submitted_at DESC, rowid DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)

        with self._db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_candidate(row) for row in rows]

    def transition(
        self,
        candidate_id: str,
        status: RecordStatus,
        actor: Optional[str] = None,
        note: Optional[str] = None,
    ) -> bool:
        """Move a pending candidate to a terminal status without fan-out.

        Approval should go through ``approve_candidate`` so that memories
        are materialized in the same transaction.
        """
        status = RecordStatus(status)
        if not status.is_terminal:
            raise ValueError(f"Cannot transition to {status.value}")

        with self._db.transaction() as conn:
            changed = self._transition(conn, candidate_id, status, actor, note)

        if not changed:
            logger.info("Candidate %s not pending, %s ignored", candidate_id, status.value)
        return changed

    def reject_candidate(
        self, candidate_id: str, rejected_by: str, note: Optional[str] = None
    ) -> bool:
        return self.transition(candidate_id, RecordStatus.REJECTED, rejected_by, note)

    def approve_candidate(
        self,
        candidate_id: str,
        approved_by: str,
        selected: Optional[Sequence[ExtractedMemory]] = None,
    ) -> Optional[List[str]]:
        """Approve a candidate and materialize its memories.

        Args:
            candidate_id: Candidate to approve
            approved_by: Reviewer user ID
            selected: Subset of items to keep (default: all extracted items)

        Returns:
            Created memory IDs in extraction order, or None when the
            candidate is missing or no longer pending.
        """
        created_ids: List[str] = []
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM memory_candidates WHERE id = ?", (candidate_id,)
            ).fetchone()
            if row is None:
                return None
            if not self._transition(conn, candidate_id, RecordStatus.APPROVED, approved_by, None):
                return None

            candidate = self._row_to_candidate(row)
            items = list(selected) if selected is not None else candidate.extracted_memories
            approved_at = utc_now_iso()
            for item in items:
                created_ids.append(
                    self._insert_memory(conn, candidate, item, approved_by, approved_at)
                )

        logger.info(
            "Candidate %s approved by %s: %d memories", candidate_id, approved_by, len(created_ids)
        )
        return created_ids

    def edit(
        self,
        candidate_id: str,
        memories: Sequence[ExtractedMemory],
        actor: Optional[str] = None,
    ) -> bool:
        """Replace the extracted items of a still-pending candidate"""
        with self._db.transaction() as conn:
            changed = conn.execute(
                "UPDATE memory_candidates SET extracted_memories = ?, "
                "notes = COALESCE(?, notes) "
                "WHERE id = ? AND status = 'pending'",
                (
                    self._dump_memories(memories),
                    f"edited by {actor}" if actor else None,
                    candidate_id,
                ),
            ).rowcount
        return changed > 0

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def search(
        self,
        query: Optional[str] = "",
        type: Optional[MemoryType] = None,
        channel: Optional[str] = None,
        limit: int = 20,
    ) -> List[Memory]:
        """Substring search over memory content, newest first"""
        sql = "SELECT * FROM memories WHERE content LIKE ? ESCAPE '\\'"
        params: list = [f"%{_escape_like(query or '')}%"]
        if type:
            sql += " AND type = ?"
            params.append(MemoryType(type).value)
        if channel:
            sql += " AND channel LIKE ? ESCAPE '\\'"
            params.append(f"%{_escape_like(channel)}%")
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with self._db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_memory(row) for row in rows]

    def list_memories(self, limit: int = 100) -> List[Memory]:
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM memories ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_memory(row) for row in rows]

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        with self._db.read() as conn:
            row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        return self._row_to_memory(row) if row else None

    def delete_memory(self, memory_id: str) -> bool:
        """Hard delete (admin action)"""
        with self._db.transaction() as conn:
            changed = conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,)).rowcount
        if changed:
            logger.info("Deleted memory %s", memory_id)
        return changed > 0

    def stats(self) -> dict:
        with self._db.read() as conn:
            total = conn.execute("SELECT COUNT(*) AS n FROM memories").fetchone()["n"]
            status_rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM memory_candidates GROUP BY status"
            ).fetchall()
            type_rows = conn.execute(
                "SELECT type, COUNT(*) AS n FROM memories GROUP BY type"
            ).fetchall()

        candidates = {status.value: 0 for status in RecordStatus}
        for row in status_rows:
            candidates[row["status"]] = row["n"]
        return {
            "total_memories": total,
            "candidates": candidates,
            "by_type": {row["type"]: row["n"] for row in type_rows},
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _transition(
        conn: sqlite3.Connection,
        candidate_id: str,
        status: RecordStatus,
        actor: Optional[str],
        note: Optional[str],
    ) -> bool:
        return conn.execute(
            "UPDATE memory_candidates "
            "SET status = ?, reviewed_by = ?, reviewed_at = ?, notes = COALESCE(?, notes) "
            "WHERE id = ? AND status = 'pending'",
            (status.value, actor, utc_now_iso(), note, candidate_id),
        ).rowcount > 0

    @staticmethod
    def _insert_memory(
        conn: sqlite3.Connection,
        candidate: MemoryCandidate,
        item: ExtractedMemory,
        approved_by: str,
        approved_at: str,
    ) -> str:
        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            memory_id = generate_record_id("MEM")
            try:
                conn.execute(
                    "INSERT INTO memories "
                    "(id, type, content, context, source, channel, thread_ts, "
                    "submitted_by, approved_by, created_at, approved_at, tags) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        memory_id,
                        MemoryType(item.type).value,
                        item.content,
                        item.context,
                        candidate.source,
                        candidate.channel_name or candidate.channel,
                        candidate.thread_ts,
                        candidate.submitted_by,
                        approved_by,
                        approved_at,
                        approved_at,
                        json.dumps(item.tags, ensure_ascii=False),
                    ),
                )
                return memory_id
            except sqlite3.IntegrityError:
                logger.warning("Memory ID collision on %s (attempt %d)", memory_id, attempt)
        raise RuntimeError("Could not allocate a unique memory ID")

    @staticmethod
    def _dump_memories(memories: Sequence[ExtractedMemory]) -> str:
        return json.dumps(
            [m.model_dump(mode="json") for m in memories], ensure_ascii=False
        )

    @staticmethod
    def _row_to_candidate(row: sqlite3.Row) -> MemoryCandidate:
        return MemoryCandidate(
            id=row["id"],
            source=row["source"],
            channel=row["channel"],
            channel_name=row["channel_name"],
            thread_ts=row["thread_ts"],
            thread_url=row["thread_url"],
            raw_messages=[
                ThreadMessage(**m) for m in json.loads(row["raw_messages"] or "[]")
            ],
            extracted_memories=[
                ExtractedMemory(**m) for m in json.loads(row["extracted_memories"] or "[]")
            ],
            submitted_by=row["submitted_by"],
            submitted_at=row["submitted_at"],
            status=RecordStatus(row["status"]),
            reviewed_by=row["reviewed_by"],
            reviewed_at=row["reviewed_at"],
            notes=row["notes"],
        )

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        return Memory(
            id=row["id"],
            type=MemoryType(row["type"]),
            content=row["content"],
            context=row["context"],
            source=row["source"],
            channel=row["channel"],
            thread_ts=row["thread_ts"],
            submitted_by=row["submitted_by"],
            approved_by=row["approved_by"],
            created_at=row["created_at"],
            approved_at=row["approved_at"],
            tags=json.loads(row["tags"] or "[]"),
        )
