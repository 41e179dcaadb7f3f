"""
SQLite Database

Thin wrapper that hands out short-lived connections. Every store operation
opens its own connection, so stores are safe to call from worker threads
and from concurrent review surfaces. Writes run inside ``BEGIN IMMEDIATE``
so a competing writer waits on the busy timeout instead of failing on a
stale read snapshot.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence

logger = logging.getLogger("steward.storage.database")

BUSY_TIMEOUT_SECONDS = 10.0


class Database:
    """
    SQLite file with a fixed schema.

    Args:
        path: Database file location (parent directories are created)
        schema: CREATE statements executed once on construction
    """

    def __init__(self, path: str, schema: Sequence[str] = ()):
        self._path = Path(path).expanduser()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema(schema)

    @property
    def path(self) -> Path:
        return self._path

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._path),
            timeout=BUSY_TIMEOUT_SECONDS,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self, schema: Sequence[str]) -> None:
        conn = self._open()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in schema:
                conn.execute(statement)
        finally:
            conn.close()
        logger.debug("Schema ready at %s", self._path)

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Connection for read-only queries (autocommit)"""
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Connection inside an immediate write transaction.

        Commits when the block exits normally, rolls back on exception.
        """
        conn = self._open()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()
