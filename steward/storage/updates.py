"""
Update Store

Durable pending-update records. The only ordering guarantee in the system
lives here: ``transition`` is a single conditional UPDATE guarded by
``status = 'pending'``, so of any number of concurrent approve/reject calls
exactly one observes success.
"""

import logging
import sqlite3
from typing import List, Optional

from ..common.schemas.records import (
    RecordStatus,
    Update,
    UpdateSource,
    generate_update_id,
    utc_now_iso,
)
from .database import Database

logger = logging.getLogger("steward.storage.updates")

MAX_ID_ATTEMPTS = 5

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS pending_updates (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        target TEXT,
        value TEXT,
        submitted_by TEXT NOT NULL,
        submitted_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        source TEXT,
        processed_at TEXT,
        processed_by TEXT,
        edited_at TEXT,
        edited_by TEXT,
        note TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_updates_status ON pending_updates(status, submitted_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_updates_submitter ON pending_updates(submitted_by)",
)


class UpdateStore:
    """Pending update records in SQLite"""

    def __init__(self, db: Database):
        self._db = db

    @classmethod
    def open(cls, path: str) -> "UpdateStore":
        return cls(Database(path, SCHEMA))

    def create(
        self,
        type: str,
        target: str,
        value: str,
        submitted_by: str,
        source: Optional[str] = UpdateSource.DM.value,
    ) -> Update:
        """Insert a new pending update under a fresh random ID"""
        submitted_at = utc_now_iso()
        source = UpdateSource(source).value if source else None

        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            update_id = generate_update_id()
            try:
                with self._db.transaction() as conn:
                    conn.execute(
                        "INSERT INTO pending_updates "
                        "(id, type, target, value, submitted_by, submitted_at, status, source) "
                        "VALUES (?, ?, ?, ?, ?, ?, 'pending', ?)",
                        (update_id, type, target, value, submitted_by, submitted_at, source),
                    )
                break
            except sqlite3.IntegrityError:
                logger.warning("Update ID collision on %s (attempt %d)", update_id, attempt)
        else:
            raise RuntimeError("Could not allocate a unique update ID")

        logger.info("Created update %s (%s/%s) from %s", update_id, type, target, submitted_by)
        return Update(
            id=update_id,
            type=type,
            target=target,
            value=value,
            submitted_by=submitted_by,
            submitted_at=submitted_at,
            status=RecordStatus.PENDING,
            source=source,
        )

    def get(self, update_id: str) -> Optional[Update]:
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT * FROM pending_updates WHERE id = ?", (update_id,)
            ).fetchone()
        return self._row_to_update(row) if row else None

    def list_pending(self) -> List[Update]:
        """Pending updates, newest first"""
        return self.list_all(status=RecordStatus.PENDING)

    def list_all(
        self,
        status: Optional[RecordStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Update]:
        sql = "SELECT * FROM pending_updates"
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
        return [self._row_to_update(row) for row in rows]

    def transition(
        self,
        update_id: str,
        status: RecordStatus,
        actor: Optional[str] = None,
        note: Optional[str] = None,
    ) -> bool:
        """Move a pending update to a terminal status.

        Returns:
            True for the single caller that won; False when the record is
            missing or already processed.
        """
        status = RecordStatus(status)
        if not status.is_terminal:
            raise ValueError(f"Cannot transition to {status.value}")

        with self._db.transaction() as conn:
            changed = conn.execute(
                "UPDATE pending_updates "
                "SET status = ?, processed_at = ?, processed_by = ?, note = COALESCE(?, note) "
                "WHERE id = ? AND status = 'pending'",
                (status.value, utc_now_iso(), actor, note, update_id),
            ).rowcount

        if changed:
            logger.info("Update %s %s by %s", update_id, status.value, actor)
        else:
            logger.info("Update %s not pending, %s ignored", update_id, status.value)
        return changed > 0

    def edit(
        self,
        update_id: str,
        actor: str,
        target: Optional[str] = None,
        value: Optional[str] = None,
    ) -> bool:
        """Change target and/or value of a still-pending update"""
        with self._db.transaction() as conn:
            changed = conn.execute(
                "UPDATE pending_updates "
                "SET target = COALESCE(?, target), value = COALESCE(?, value), "
                "edited_at = ?, edited_by = ? "
                "WHERE id = ? AND status = 'pending'",
                (target, value, utc_now_iso(), actor, update_id),
            ).rowcount
        return changed > 0

    def set_note(self, update_id: str, note: str) -> bool:
        """Attach an informational note; allowed in any status"""
        with self._db.transaction() as conn:
            changed = conn.execute(
                "UPDATE pending_updates SET note = ? WHERE id = ?", (note, update_id)
            ).rowcount
        return changed > 0

    def delete(self, update_id: str) -> bool:
        """Hard delete (admin action)"""
        with self._db.transaction() as conn:
            changed = conn.execute(
                "DELETE FROM pending_updates WHERE id = ?", (update_id,)
            ).rowcount
        if changed:
            logger.info("Deleted update %s", update_id)
        return changed > 0

    def stats(self) -> dict:
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM pending_updates GROUP BY status"
            ).fetchall()
        counts = {status.value: 0 for status in RecordStatus}
        for row in rows:
            counts[row["status"]] = row["n"]
        counts["total"] = sum(counts[s.value] for s in RecordStatus)
        return counts

    def _row_to_update(self, row: sqlite3.Row) -> Update:
        return Update(
            id=row["id"],
            type=row["type"],
            target=row["target"] or "",
            value=row["value"] or "",
            submitted_by=row["submitted_by"],
            submitted_at=row["submitted_at"],
            status=RecordStatus(row["status"]),
            source=row["source"],
            processed_at=row["processed_at"],
            processed_by=row["processed_by"],
            edited_at=row["edited_at"],
            edited_by=row["edited_by"],
            note=row["note"],
        )
