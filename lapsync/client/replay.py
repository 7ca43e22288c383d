"""Replay buffer of locally captured laps not yet confirmed by the server.

Backed by SQLite so laps recorded while offline survive a client restart.
Entries are keyed by client_record_id, which makes re-buffering idempotent.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

REPLAY_SCHEMA = """
CREATE TABLE IF NOT EXISTS replay_buffer (
    client_record_id TEXT PRIMARY KEY,
    elapsed_ms INTEGER NOT NULL,
    captured_at TEXT NOT NULL,
    session_id TEXT,
    buffered_at TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_replay_buffered ON replay_buffer(buffered_at);
"""


@dataclass
class PendingRecord:
    """A lap waiting for the server to confirm it."""

    client_record_id: str
    elapsed_ms: int
    captured_at: datetime
    session_id: str | None  # Epoch the lap was captured in, None if unknown
    buffered_at: datetime = field(default_factory=datetime.now)
    attempts: int = 0

    def to_submit_frame(self) -> dict[str, Any]:
        """Wire frame resubmitting this lap."""
        return {
            "type": "submit_record",
            "client_record_id": self.client_record_id,
            "elapsed_ms": self.elapsed_ms,
            "captured_at": self.captured_at.isoformat(),
            "session_id": self.session_id,
        }


class ReplayBuffer:
    """Client-local queue of unconfirmed laps, oldest first."""

    def __init__(self, db_path: str | Path = ":memory:"):
        """Initialize the replay buffer.

        Args:
            db_path: Path to SQLite database file.
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(REPLAY_SCHEMA)
        self._conn.commit()

        count = len(self)
        if count:
            logger.info(f"ReplayBuffer at {self.db_path} holds {count} unconfirmed laps")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def add(self, record: PendingRecord) -> bool:
        """Buffer a lap.

        Returns:
            False if a lap with the same client_record_id is already buffered.
        """
        conn = self._ensure_connected()

        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO replay_buffer (
                client_record_id, elapsed_ms, captured_at, session_id,
                buffered_at, attempts
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.client_record_id,
                record.elapsed_ms,
                record.captured_at.isoformat(),
                record.session_id,
                record.buffered_at.isoformat(),
                record.attempts,
            ),
        )
        conn.commit()
        return cursor.rowcount == 1

    def get(self, client_record_id: str) -> PendingRecord | None:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT * FROM replay_buffer WHERE client_record_id = ?",
            (client_record_id,),
        ).fetchone()
        return self._row_to_pending(row) if row else None

    def pending(self) -> list[PendingRecord]:
        """Get every buffered lap in capture order."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT * FROM replay_buffer ORDER BY buffered_at ASC, rowid ASC"
        )
        return [self._row_to_pending(row) for row in cursor]

    def confirm(self, client_record_id: str) -> bool:
        """Remove a lap the server has committed.

        Returns:
            True if the lap was buffered.
        """
        conn = self._ensure_connected()
        cursor = conn.execute(
            "DELETE FROM replay_buffer WHERE client_record_id = ?",
            (client_record_id,),
        )
        conn.commit()
        return cursor.rowcount > 0

    def discard(self, client_record_ids: list[str]) -> int:
        """Drop laps that can no longer be replayed.

        Returns:
            Number of laps removed.
        """
        if not client_record_ids:
            return 0

        conn = self._ensure_connected()
        placeholders = ",".join("?" * len(client_record_ids))
        cursor = conn.execute(
            f"DELETE FROM replay_buffer WHERE client_record_id IN ({placeholders})",
            tuple(client_record_ids),
        )
        conn.commit()

        count = cursor.rowcount
        logger.debug(f"Discarded {count} buffered laps")
        return count

    def adopt_untagged(self, session_id: str) -> int:
        """Tag laps captured before any epoch was known with ``session_id``.

        Returns:
            Number of laps retagged.
        """
        conn = self._ensure_connected()
        cursor = conn.execute(
            "UPDATE replay_buffer SET session_id = ? WHERE session_id IS NULL",
            (session_id,),
        )
        conn.commit()
        return cursor.rowcount

    def mark_attempt(self, client_record_ids: list[str]) -> None:
        """Count one more submission attempt for each lap."""
        if not client_record_ids:
            return

        conn = self._ensure_connected()
        placeholders = ",".join("?" * len(client_record_ids))
        conn.execute(
            f"UPDATE replay_buffer SET attempts = attempts + 1 "
            f"WHERE client_record_id IN ({placeholders})",
            tuple(client_record_ids),
        )
        conn.commit()

    def __len__(self) -> int:
        conn = self._ensure_connected()
        return conn.execute("SELECT COUNT(*) FROM replay_buffer").fetchone()[0]

    def __contains__(self, client_record_id: str) -> bool:
        return self.get(client_record_id) is not None

    @staticmethod
    def _row_to_pending(row: sqlite3.Row) -> PendingRecord:
        return PendingRecord(
            client_record_id=row["client_record_id"],
            elapsed_ms=row["elapsed_ms"],
            captured_at=datetime.fromisoformat(row["captured_at"]),
            session_id=row["session_id"],
            buffered_at=datetime.fromisoformat(row["buffered_at"]),
            attempts=row["attempts"],
        )
