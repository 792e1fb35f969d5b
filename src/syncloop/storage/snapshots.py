"""Snapshot storage for connection managers."""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from syncloop.config import SyncloopConfig
from syncloop.core.state import ControllerSnapshot

logger = logging.getLogger(__name__)


@dataclass
class StoredSnapshot:
    """A row of the snapshot table."""

    connection_id: str
    snapshot: ControllerSnapshot | None
    deleted: bool
    updated_at: datetime | None


class SnapshotStore:
    """Persists hand-off snapshots and deletions using SQLite."""

    def __init__(self, config: SyncloopConfig):
        self.config = config
        self.db_path = config.state_dir / "snapshots.db"
        self._init_database()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection that is properly closed with transaction support."""
        conn = sqlite3.connect(self.db_path)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_database(self) -> None:
        """Initialize the SQLite database."""
        self.config.state_dir.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS connection_snapshots (
                    connection_id TEXT PRIMARY KEY,
                    snapshot_json TEXT,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """,
            )

    def reset(self) -> None:
        """Drop every stored snapshot."""
        with self._get_connection() as conn:
            conn.execute("DROP TABLE IF EXISTS connection_snapshots")
        self._init_database()
        logger.info("Snapshot store reset")

    def save(self, snapshot: ControllerSnapshot) -> None:
        """Store the latest snapshot of a connection."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO connection_snapshots (connection_id, snapshot_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(connection_id) DO UPDATE SET
                    snapshot_json = excluded.snapshot_json,
                    updated_at = excluded.updated_at
            """,
                (
                    snapshot.connection_id,
                    snapshot.model_dump_json(),
                    datetime.now(UTC).isoformat(),
                ),
            )
        logger.debug("Saved snapshot of %s", snapshot.connection_id)

    def load(self, connection_id: str) -> ControllerSnapshot | None:
        """Return the stored snapshot, or None for unknown or deleted connections."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT snapshot_json, deleted FROM connection_snapshots WHERE connection_id = ?",
                (connection_id,),
            ).fetchone()

        if not row or row[1] or not row[0]:
            return None
        return ControllerSnapshot.model_validate_json(row[0])

    def mark_deleted(self, connection_id: str) -> None:
        """Record that a connection was deleted for good."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO connection_snapshots (connection_id, deleted, updated_at)
                VALUES (?, 1, ?)
                ON CONFLICT(connection_id) DO UPDATE SET
                    deleted = 1,
                    updated_at = excluded.updated_at
            """,
                (connection_id, datetime.now(UTC).isoformat()),
            )
        logger.info("Marked %s as deleted", connection_id)

    def is_deleted(self, connection_id: str) -> bool:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT deleted FROM connection_snapshots WHERE connection_id = ?",
                (connection_id,),
            ).fetchone()
        return bool(row and row[0])

    def list_snapshots(self) -> list[StoredSnapshot]:
        """All stored connections ordered by id."""
        with self._get_connection() as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT * FROM connection_snapshots ORDER BY connection_id",
            ).fetchall()

        return [self._row_to_snapshot(row) for row in rows]

    def _row_to_snapshot(self, row: sqlite3.Row) -> StoredSnapshot:
        snapshot = None
        if row["snapshot_json"]:
            snapshot = ControllerSnapshot.model_validate_json(row["snapshot_json"])
        updated_at = datetime.fromisoformat(row["updated_at"]) if row["updated_at"] else None
        return StoredSnapshot(
            connection_id=row["connection_id"],
            snapshot=snapshot,
            deleted=bool(row["deleted"]),
            updated_at=updated_at,
        )
