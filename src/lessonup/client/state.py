"""Local durable state for the upload queue.

This module provides:
- UploadStore: SQLite-based persistence of the queue snapshot and transfer sessions
- UploadSession: Pointer needed to resume one specific transfer

Architecture:
    Two independent records are kept:
    - upload_queue: ordered snapshot of every task descriptor (JSON), without
      the file payload or the live engine handle
    - upload_sessions: task_id -> (resumable_url, uploaded_bytes, storage_path,
      fingerprint) for resuming an unfinished transfer

    Writes are best-effort: a failed write (disk full, locked or closed
    database) is logged and counted, never raised to the upload path.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Collection, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from lessonup.client.upload.types import PersistenceWriteError

if TYPE_CHECKING:
    from lessonup.client.upload.task import UploadTask

logger = logging.getLogger(__name__)


@dataclass
class UploadSession:
    """Resume pointer of an in-flight transfer.

    Attributes:
        task_id: Task owning the transfer.
        resumable_url: URL of the created resumable upload.
        uploaded_bytes: Bytes acknowledged when last persisted.
        storage_path: Destination path in cloud storage.
        fingerprint: Stable transfer fingerprint (lesson, name, size, hash).
        updated_at: Timestamp of the last write.
    """

    task_id: str
    resumable_url: str | None
    uploaded_bytes: int
    storage_path: str | None
    fingerprint: str | None = None
    updated_at: float = 0.0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> UploadSession:
        """Create UploadSession from database row."""
        return cls(
            task_id=row["task_id"],
            resumable_url=row["resumable_url"],
            uploaded_bytes=row["uploaded_bytes"],
            storage_path=row["storage_path"],
            fingerprint=row["fingerprint"],
            updated_at=row["updated_at"],
        )


class UploadStore:
    """SQLite-based durable state for the upload queue.

    Every public write is best-effort: failures are logged and counted in
    write_failures, never propagated.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self.write_failures = 0

        self._conn = sqlite3.connect(
            str(self._db_path),
            isolation_level=None,  # Autocommit mode, explicit transactions below
        )
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode so a crash mid-write keeps the previous snapshot
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            -- Ordered queue snapshot, one JSON descriptor per task
            CREATE TABLE IF NOT EXISTS upload_queue (
                position INTEGER PRIMARY KEY,
                task_id TEXT NOT NULL UNIQUE,
                descriptor TEXT NOT NULL
            );

            -- Resume pointers of in-flight transfers
            CREATE TABLE IF NOT EXISTS upload_sessions (
                task_id TEXT PRIMARY KEY,
                resumable_url TEXT,
                uploaded_bytes INTEGER NOT NULL DEFAULT 0,
                storage_path TEXT,
                fingerprint TEXT,
                updated_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_upload_sessions_fingerprint
                ON upload_sessions (fingerprint);
        """)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically.

        Raises:
            PersistenceWriteError: If SQLite rejects the write.
        """
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise PersistenceWriteError(str(e)) from e
        try:
            yield self._conn
            self._conn.execute("COMMIT")
        except sqlite3.Error as e:
            try:
                self._conn.execute("ROLLBACK")
            except sqlite3.Error:
                logger.debug("Rollback failed after write error", exc_info=True)
            raise PersistenceWriteError(str(e)) from e

    @contextmanager
    def _best_effort(self, action: str) -> Iterator[None]:
        """Swallow and log persistence failures for one public write."""
        try:
            yield
        except PersistenceWriteError as e:
            self.write_failures += 1
            logger.warning(f"Failed to persist {action}: {e}")

    # === Queue snapshot ===

    def save_queue(self, tasks: Iterable[UploadTask]) -> bool:
        """Replace the queue snapshot with the given tasks, in order.

        Returns:
            True if the snapshot was written.
        """
        rows = [
            (position, task.id, json.dumps(task.to_dict()))
            for position, task in enumerate(tasks)
        ]
        with self._best_effort("upload queue"):
            with self._transaction() as conn:
                conn.execute("DELETE FROM upload_queue")
                conn.executemany(
                    "INSERT INTO upload_queue (position, task_id, descriptor) VALUES (?, ?, ?)",
                    rows,
                )
            return True
        return False

    def load_queue(self) -> list[dict[str, Any]]:
        """Read the queue snapshot.

        Unreadable rows are skipped; a failed read yields an empty list.

        Returns:
            Task descriptors in queue order.
        """
        try:
            cursor = self._conn.execute(
                "SELECT task_id, descriptor FROM upload_queue ORDER BY position"
            )
            rows = cursor.fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Failed to read upload queue: {e}")
            return []

        descriptors: list[dict[str, Any]] = []
        for row in rows:
            try:
                descriptors.append(dict(json.loads(row["descriptor"])))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping corrupt queue entry {row['task_id']}: {e}")
        return descriptors

    # === Sessions ===

    def save_session(
        self,
        task_id: str,
        resumable_url: str | None,
        uploaded_bytes: int,
        storage_path: str | None,
        fingerprint: str | None = None,
    ) -> bool:
        """Insert or replace the resume pointer of a transfer.

        Returns:
            True if the session was written.
        """
        with self._best_effort(f"upload session {task_id}"):
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO upload_sessions (
                        task_id, resumable_url, uploaded_bytes, storage_path,
                        fingerprint, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task_id,
                        resumable_url,
                        uploaded_bytes,
                        storage_path,
                        fingerprint,
                        time.time(),
                    ),
                )
            return True
        return False

    def get_session(self, task_id: str) -> UploadSession | None:
        """Get the resume pointer of a task."""
        return self._fetch_session("SELECT * FROM upload_sessions WHERE task_id = ?", task_id)

    def find_session(
        self, fingerprint: str, exclude: Collection[str] = ()
    ) -> UploadSession | None:
        """Get the most recent resume pointer with this fingerprint.

        Args:
            fingerprint: Transfer fingerprint to look up.
            exclude: Task ids whose pointers must not be returned.
        """
        try:
            rows = self._conn.execute(
                "SELECT * FROM upload_sessions WHERE fingerprint = ? ORDER BY updated_at DESC",
                (fingerprint,),
            ).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Failed to read upload session: {e}")
            return None
        for row in rows:
            if row["task_id"] not in exclude:
                return UploadSession.from_row(row)
        return None

    def _fetch_session(self, query: str, param: str) -> UploadSession | None:
        try:
            row = self._conn.execute(query, (param,)).fetchone()
        except sqlite3.Error as e:
            logger.warning(f"Failed to read upload session: {e}")
            return None
        return UploadSession.from_row(row) if row else None

    def list_sessions(self) -> list[UploadSession]:
        """List all resume pointers."""
        try:
            rows = self._conn.execute(
                "SELECT * FROM upload_sessions ORDER BY updated_at"
            ).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Failed to read upload sessions: {e}")
            return []
        return [UploadSession.from_row(row) for row in rows]

    def remove_session(self, task_id: str) -> bool:
        """Delete the resume pointer of a task.

        Returns:
            True if the delete was written.
        """
        with self._best_effort(f"removal of upload session {task_id}"):
            with self._transaction() as conn:
                conn.execute("DELETE FROM upload_sessions WHERE task_id = ?", (task_id,))
            return True
        return False

    def clear(self) -> None:
        """Remove the queue snapshot and all sessions."""
        with self._best_effort("store reset"):
            with self._transaction() as conn:
                conn.execute("DELETE FROM upload_queue")
                conn.execute("DELETE FROM upload_sessions")
            logger.info("Cleared persisted upload queue and sessions")
