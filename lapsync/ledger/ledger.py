"""Durable, strictly ordered store of lap records for the current session.

All mutations pass through one lock. Readers never take it: every write
builds a fresh immutable view of the current epoch and swaps it in, so a
snapshot always sees either the whole epoch before a write or after it.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

from ..errors import RejectReason, StorageUnavailable
from .records import LapCandidate, LapRecord, Rejected

logger = logging.getLogger(__name__)

LEDGER_SCHEMA = """
-- Committed laps, one row per (session, sequence number)
CREATE TABLE IF NOT EXISTS lap_records (
    session_id TEXT NOT NULL,
    sequence_number INTEGER NOT NULL,
    elapsed_ms INTEGER NOT NULL,
    captured_at TEXT NOT NULL,
    committed_at TEXT NOT NULL,
    client_record_id TEXT NOT NULL,
    PRIMARY KEY (session_id, sequence_number),
    UNIQUE (session_id, client_record_id)
);

-- Session epochs and their reset state
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    started_at TEXT,
    cleared_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_state ON sessions(state);
"""


@dataclass(frozen=True)
class _EpochView:
    """Immutable picture of the current epoch, replaced on every write."""

    session_id: str | None = None
    accepting: bool = False
    records: tuple[LapRecord, ...] = ()
    by_client_id: Mapping[str, LapRecord] = field(default_factory=dict)


class RecordLedger:
    """Append-only lap ledger backed by SQLite.

    Sequence numbers are assigned in arrival order under the write lock.
    A number is consumed even when the write fails, so gaps are possible.
    """

    def __init__(
        self,
        db_path: str | Path,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the ledger.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests).
            clock: Source of commit timestamps.
        """
        self.db_path = Path(db_path).expanduser()
        self._clock = clock
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._view = _EpochView()
        self._next_seq = 1

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(LEDGER_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageUnavailable("connect", e) from e

        logger.info(f"RecordLedger connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def _write(self, operation: str, statements: list[tuple[str, tuple]]) -> None:
        """Run statements as one transaction, mapping failures to StorageUnavailable."""
        conn = self._ensure_connected()
        try:
            for sql, params in statements:
                conn.execute(sql, params)
            conn.commit()
        except sqlite3.Error as e:
            try:
                conn.rollback()
            except sqlite3.Error:
                logger.debug(f"Rollback after failed {operation} also failed")
            raise StorageUnavailable(operation, e) from e

    # ==================== Epoch lifecycle ====================

    def open_epoch(self, session_id: str, started_at: datetime) -> None:
        """Start accepting appends for a freshly minted session."""
        with self._lock:
            self._write(
                "open_epoch",
                [
                    (
                        "INSERT OR REPLACE INTO sessions (session_id, state, started_at, cleared_at) "
                        "VALUES (?, 'active', ?, NULL)",
                        (session_id, started_at.isoformat()),
                    )
                ],
            )
            self._view = _EpochView(session_id=session_id, accepting=True)
            self._next_seq = 1

        logger.info(f"Ledger opened epoch {session_id}")

    def restore_epoch(self, session_id: str, accepting: bool = True) -> int:
        """Reload a persisted session's records after a restart.

        Returns:
            Number of records restored.
        """
        conn = self._ensure_connected()

        with self._lock:
            try:
                cursor = conn.execute(
                    """
                    SELECT sequence_number, elapsed_ms, captured_at, committed_at,
                           client_record_id, session_id
                    FROM lap_records
                    WHERE session_id = ?
                    ORDER BY sequence_number ASC
                    """,
                    (session_id,),
                )
                records = tuple(self._row_to_record(row) for row in cursor)
            except sqlite3.Error as e:
                raise StorageUnavailable("restore", e) from e

            self._view = _EpochView(
                session_id=session_id,
                accepting=accepting,
                records=records,
                by_client_id={r.client_record_id: r for r in records},
            )
            self._next_seq = records[-1].sequence_number + 1 if records else 1

        logger.info(f"Ledger restored epoch {session_id} with {len(records)} records")
        return len(records)

    def load_latest_session(self) -> dict[str, Any] | None:
        """Get the most recent session that was not fully cleared."""
        conn = self._ensure_connected()

        try:
            row = conn.execute(
                """
                SELECT session_id, state, started_at
                FROM sessions
                WHERE state != 'cleared'
                ORDER BY started_at DESC, session_id DESC
                LIMIT 1
                """
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageUnavailable("load_session", e) from e

        if row is None:
            return None

        return {
            "session_id": row["session_id"],
            "state": row["state"],
            "started_at": (
                datetime.fromisoformat(row["started_at"]) if row["started_at"] else None
            ),
        }

    def seal(self, session_id: str) -> None:
        """Stop accepting appends for the session without deleting anything.

        Any append that has not taken the lock yet loses the race and is
        rejected.
        """
        with self._lock:
            view = self._view
            if view.session_id != session_id or not view.accepting:
                return

            self._write(
                "seal",
                [("UPDATE sessions SET state = 'clearing' WHERE session_id = ?", (session_id,))],
            )
            self._view = replace(view, accepting=False)

        logger.info(f"Ledger sealed epoch {session_id}")

    # ==================== Contract ====================

    def append(self, candidate: LapCandidate) -> LapRecord | Rejected:
        """Commit a candidate lap to the current epoch.

        Returns:
            The committed LapRecord, the already committed record when the
            client_record_id was seen before in this epoch, or Rejected when
            the candidate belongs to another (or a sealed) epoch.

        Raises:
            StorageUnavailable: The row could not be persisted.
        """
        with self._lock:
            view = self._view

            if (
                view.session_id is None
                or candidate.session_id != view.session_id
                or not view.accepting
            ):
                logger.debug(
                    f"Rejected {candidate.client_record_id}: session "
                    f"{candidate.session_id} is not the accepting epoch ({view.session_id})"
                )
                return Rejected(
                    client_record_id=candidate.client_record_id,
                    session_id=candidate.session_id,
                    reason=RejectReason.STALE_EPOCH,
                )

            existing = view.by_client_id.get(candidate.client_record_id)
            if existing is not None:
                logger.debug(
                    f"Duplicate submission {candidate.client_record_id}, "
                    f"returning seq={existing.sequence_number}"
                )
                return existing

            sequence_number = self._next_seq
            self._next_seq += 1

            record = LapRecord(
                sequence_number=sequence_number,
                elapsed_ms=candidate.elapsed_ms,
                captured_at=candidate.captured_at,
                committed_at=self._clock(),
                client_record_id=candidate.client_record_id,
                session_id=view.session_id,
            )

            self._write(
                "append",
                [
                    (
                        """
                        INSERT INTO lap_records (
                            session_id, sequence_number, elapsed_ms, captured_at,
                            committed_at, client_record_id
                        ) VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            record.session_id,
                            record.sequence_number,
                            record.elapsed_ms,
                            record.captured_at.isoformat(),
                            record.committed_at.isoformat(),
                            record.client_record_id,
                        ),
                    )
                ],
            )

            self._view = replace(
                view,
                records=view.records + (record,),
                by_client_id={**view.by_client_id, record.client_record_id: record},
            )

        logger.debug(f"Appended {record.client_record_id} as seq={record.sequence_number}")
        return record

    def snapshot(self, session_id: str | None) -> tuple[LapRecord, ...]:
        """Get the ordered records of a session.

        Returns an empty sequence for anything but the current epoch.
        """
        view = self._view
        if session_id is None or view.session_id != session_id:
            return ()
        return view.records

    def current(self) -> tuple[str | None, tuple[LapRecord, ...]]:
        """Get the current epoch id and its records as one consistent pair."""
        view = self._view
        return view.session_id, view.records

    def clear(self, session_id: str) -> None:
        """Delete every record of the session in one transaction.

        Clearing an already cleared or non-current session is a no-op.

        Raises:
            StorageUnavailable: Nothing was deleted; the epoch is unchanged.
        """
        with self._lock:
            view = self._view
            if view.session_id != session_id:
                logger.debug(f"Clear of non-current session {session_id} ignored")
                return

            self._write(
                "clear",
                [
                    ("DELETE FROM lap_records WHERE session_id = ?", (session_id,)),
                    (
                        "UPDATE sessions SET state = 'cleared', cleared_at = ? WHERE session_id = ?",
                        (self._clock().isoformat(), session_id),
                    ),
                ],
            )
            self._view = _EpochView()

        logger.info(f"Ledger cleared epoch {session_id} ({len(view.records)} records)")

    # ==================== Introspection ====================

    @property
    def session_id(self) -> str | None:
        return self._view.session_id

    @property
    def accepting(self) -> bool:
        return self._view.accepting

    def get_stats(self) -> dict[str, Any]:
        """Get ledger statistics."""
        view = self._view
        stats = {
            "session_id": view.session_id,
            "accepting": view.accepting,
            "record_count": len(view.records),
            "next_sequence_number": self._next_seq,
        }

        if self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> LapRecord:
        return LapRecord(
            sequence_number=row["sequence_number"],
            elapsed_ms=row["elapsed_ms"],
            captured_at=datetime.fromisoformat(row["captured_at"]),
            committed_at=datetime.fromisoformat(row["committed_at"]),
            client_record_id=row["client_record_id"],
            session_id=row["session_id"],
        )
