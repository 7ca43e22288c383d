"""Tests for the record ledger."""

import sqlite3
import pytest
from datetime import datetime

from lapsync.errors import RejectReason, StorageUnavailable
from lapsync.ledger import LapCandidate, LapRecord, RecordLedger, Rejected


class FlakyConnection:
    """Wraps a sqlite connection and fails statements containing a keyword."""

    def __init__(self, conn: sqlite3.Connection, fail_on: str, failures: int = 1):
        self._conn = conn
        self.fail_on = fail_on
        self.failures = failures

    def execute(self, sql, params=()):
        if self.failures and self.fail_on in sql:
            self.failures -= 1
            raise sqlite3.OperationalError("disk I/O error")
        return self._conn.execute(sql, params)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


@pytest.fixture
def ledger():
    """Create an in-memory ledger with an open epoch."""
    ledger = RecordLedger(":memory:")
    ledger.connect()
    ledger.open_epoch("s1", datetime(2026, 5, 1, 9, 0))
    yield ledger
    ledger.close()


def candidate(elapsed_ms, client_record_id, session_id="s1"):
    return LapCandidate(
        elapsed_ms=elapsed_ms,
        client_record_id=client_record_id,
        session_id=session_id,
        captured_at=datetime(2026, 5, 1, 9, 1),
    )


class TestLapCandidate:
    """Tests for LapCandidate validation."""

    def test_negative_elapsed_rejected(self):
        """Test negative elapsed time is invalid."""
        with pytest.raises(ValueError):
            LapCandidate(elapsed_ms=-1, client_record_id="a", session_id="s1")

    def test_empty_client_id_rejected(self):
        """Test an empty client_record_id is invalid."""
        with pytest.raises(ValueError):
            LapCandidate(elapsed_ms=10, client_record_id="", session_id="s1")

    def test_zero_elapsed_allowed(self):
        """Test zero elapsed time is accepted."""
        c = LapCandidate(elapsed_ms=0, client_record_id="a", session_id="s1")
        assert c.elapsed_ms == 0


class TestLapRecord:
    """Tests for LapRecord serialization."""

    def test_from_dict(self):
        """Test parsing the wire shape."""
        record = LapRecord.from_dict(
            {
                "sequence_number": 3,
                "elapsed_ms": 61_250,
                "captured_at": "2026-05-01T09:01:00",
                "committed_at": "2026-05-01T09:01:00.500000",
                "client_record_id": "lap-3",
                "session_id": "s1",
            }
        )

        assert record.sequence_number == 3
        assert record.elapsed_ms == 61_250
        assert record.committed_at.microsecond == 500000

    def test_to_dict_uses_iso_timestamps(self, ledger):
        """Test timestamps are ISO strings on the wire."""
        record = ledger.append(candidate(1000, "a"))
        d = record.to_dict()

        assert d["captured_at"] == "2026-05-01T09:01:00"
        assert d["session_id"] == "s1"


class TestLedgerSchema:
    """Tests for ledger schema initialization."""

    def test_connect_creates_tables(self):
        """Test that connect() creates both tables."""
        ledger = RecordLedger(":memory:")
        ledger.connect()

        tables = ledger._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        table_names = [t[0] for t in tables]

        assert "lap_records" in table_names
        assert "sessions" in table_names
        ledger.close()

    def test_no_epoch_rejects_everything(self):
        """Test a ledger without an open epoch rejects appends."""
        ledger = RecordLedger(":memory:")
        ledger.connect()

        result = ledger.append(candidate(1000, "a"))

        assert isinstance(result, Rejected)
        ledger.close()


class TestAppend:
    """Tests for appending laps."""

    def test_sequence_numbers_increase(self, ledger):
        """Test records get consecutive sequence numbers in arrival order."""
        r1 = ledger.append(candidate(1000, "a"))
        r2 = ledger.append(candidate(900, "b"))
        r3 = ledger.append(candidate(2000, "c"))

        assert [r.sequence_number for r in (r1, r2, r3)] == [1, 2, 3]

    def test_arrival_order_not_elapsed_order(self, ledger):
        """Test ordering follows arrival even when elapsed goes backwards."""
        ledger.append(candidate(5000, "a"))
        ledger.append(candidate(1000, "b"))

        records = ledger.snapshot("s1")

        assert [r.client_record_id for r in records] == ["a", "b"]

    def test_duplicate_returns_existing(self, ledger):
        """Test resubmitting a client_record_id returns the first record."""
        first = ledger.append(candidate(1000, "a"))
        again = ledger.append(candidate(1000, "a"))

        assert again == first
        assert len(ledger.snapshot("s1")) == 1

    def test_stale_epoch_rejected(self, ledger):
        """Test a candidate for another session is rejected, not an error."""
        result = ledger.append(candidate(1000, "a", session_id="old"))

        assert isinstance(result, Rejected)
        assert result.reason == RejectReason.STALE_EPOCH
        assert result.to_dict()["reason"] == "stale_epoch"
        assert ledger.snapshot("s1") == ()

    def test_sealed_epoch_rejects(self, ledger):
        """Test appends after seal() are rejected."""
        ledger.append(candidate(1000, "a"))
        ledger.seal("s1")

        result = ledger.append(candidate(2000, "b"))

        assert isinstance(result, Rejected)
        assert not ledger.accepting
        assert len(ledger.snapshot("s1")) == 1

    def test_committed_at_from_clock(self):
        """Test commit timestamps come from the injected clock."""
        stamp = datetime(2026, 5, 1, 12, 0, 0)
        ledger = RecordLedger(":memory:", clock=lambda: stamp)
        ledger.connect()
        ledger.open_epoch("s1", stamp)

        record = ledger.append(candidate(1000, "a"))

        assert record.committed_at == stamp
        ledger.close()

    def test_storage_failure_raises(self, ledger):
        """Test a failed insert raises StorageUnavailable and commits nothing."""
        ledger._conn = FlakyConnection(ledger._conn, "INSERT INTO lap_records")

        with pytest.raises(StorageUnavailable):
            ledger.append(candidate(1000, "a"))

        assert ledger.snapshot("s1") == ()

    def test_failed_write_consumes_sequence_number(self, ledger):
        """Test a sequence number is not reused after a failed write."""
        ledger._conn = FlakyConnection(ledger._conn, "INSERT INTO lap_records")
        with pytest.raises(StorageUnavailable):
            ledger.append(candidate(1000, "a"))

        record = ledger.append(candidate(1000, "a"))

        assert record.sequence_number == 2


class TestSnapshot:
    """Tests for reading the ledger."""

    def test_snapshot_other_session_empty(self, ledger):
        """Test snapshots of anything but the current epoch are empty."""
        ledger.append(candidate(1000, "a"))

        assert ledger.snapshot("other") == ()
        assert ledger.snapshot(None) == ()

    def test_snapshot_is_immutable_view(self, ledger):
        """Test a snapshot taken earlier is unaffected by later writes."""
        ledger.append(candidate(1000, "a"))
        before = ledger.snapshot("s1")

        ledger.append(candidate(2000, "b"))

        assert len(before) == 1
        assert len(ledger.snapshot("s1")) == 2

    def test_current_pairs_id_and_records(self, ledger):
        """Test current() returns the epoch id with its records."""
        ledger.append(candidate(1000, "a"))

        session_id, records = ledger.current()

        assert session_id == "s1"
        assert records[0].client_record_id == "a"


class TestClear:
    """Tests for clearing an epoch."""

    def test_clear_removes_records(self, ledger):
        """Test clear() deletes every record of the session."""
        ledger.append(candidate(1000, "a"))
        ledger.append(candidate(2000, "b"))
        ledger.seal("s1")

        ledger.clear("s1")

        assert ledger.snapshot("s1") == ()
        count = ledger._conn.execute("SELECT COUNT(*) FROM lap_records").fetchone()[0]
        assert count == 0

    def test_clear_is_idempotent(self, ledger):
        """Test clearing twice is harmless."""
        ledger.clear("s1")
        ledger.clear("s1")

        assert ledger.session_id is None

    def test_failed_clear_changes_nothing(self, ledger):
        """Test a failed clear leaves every record in place."""
        ledger.append(candidate(1000, "a"))
        ledger.seal("s1")
        ledger._conn = FlakyConnection(ledger._conn, "DELETE FROM lap_records")

        with pytest.raises(StorageUnavailable):
            ledger.clear("s1")

        assert len(ledger.snapshot("s1")) == 1
        assert ledger.session_id == "s1"

    def test_new_epoch_restarts_sequence(self, ledger):
        """Test sequence numbers start over in the next epoch."""
        ledger.append(candidate(1000, "a"))
        ledger.seal("s1")
        ledger.clear("s1")
        ledger.open_epoch("s2", datetime(2026, 5, 1, 10, 0))

        record = ledger.append(candidate(1000, "x", session_id="s2"))

        assert record.sequence_number == 1


class TestRestore:
    """Tests for resuming after a restart."""

    def test_restore_epoch(self, tmp_path):
        """Test a file-backed ledger restores records and the next sequence."""
        db_path = tmp_path / "ledger.db"
        ledger = RecordLedger(db_path)
        ledger.connect()
        ledger.open_epoch("s1", datetime(2026, 5, 1, 9, 0))
        ledger.append(candidate(1000, "a"))
        ledger.append(candidate(2000, "b"))
        ledger.close()

        reopened = RecordLedger(db_path)
        reopened.connect()
        latest = reopened.load_latest_session()
        count = reopened.restore_epoch(latest["session_id"])
        record = reopened.append(candidate(3000, "c"))

        assert latest["state"] == "active"
        assert count == 2
        assert record.sequence_number == 3
        reopened.close()

    def test_cleared_sessions_not_loaded(self, ledger):
        """Test load_latest_session() skips cleared sessions."""
        ledger.seal("s1")
        ledger.clear("s1")

        assert ledger.load_latest_session() is None

    def test_sealed_session_loads_as_clearing(self, ledger):
        """Test a session sealed but not cleared is reported as clearing."""
        ledger.seal("s1")

        latest = ledger.load_latest_session()

        assert latest["session_id"] == "s1"
        assert latest["state"] == "clearing"


class TestStats:
    """Tests for ledger statistics."""

    def test_get_stats(self, ledger):
        """Test statistics reflect the current epoch."""
        ledger.append(candidate(1000, "a"))

        stats = ledger.get_stats()

        assert stats["session_id"] == "s1"
        assert stats["record_count"] == 1
        assert stats["next_sequence_number"] == 2
        assert stats["accepting"] is True
