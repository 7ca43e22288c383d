"""Tests for the session controller and its two-phase reset."""

import asyncio
import sqlite3
import pytest
from datetime import datetime

from lapsync.errors import StorageUnavailable
from lapsync.events import RecordAppended, SessionCleared, SessionStarted
from lapsync.hub import BroadcastHub
from lapsync.ledger import LapCandidate, LapRecord, RecordLedger, Rejected
from lapsync.session import (
    Session,
    SessionController,
    SessionIdFactory,
    SessionState,
)


class FlakyConnection:
    """Wraps a sqlite connection and fails statements containing a keyword."""

    def __init__(self, conn: sqlite3.Connection, fail_on: str, failures: int = 1):
        self._conn = conn
        self.fail_on = fail_on
        self.failures = failures

    def execute(self, sql, params=()):
        if self.failures and self.fail_on in sql:
            self.failures -= 1
            raise sqlite3.OperationalError("database is locked")
        return self._conn.execute(sql, params)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


@pytest.fixture
def ledger():
    """Create an in-memory ledger."""
    ledger = RecordLedger(":memory:")
    ledger.connect()
    yield ledger
    ledger.close()


@pytest.fixture
def hub():
    return BroadcastHub()


@pytest.fixture
def controller(ledger, hub):
    """Create a controller that retries clears without waiting."""
    return SessionController(ledger, hub, clear_retry_attempts=3, clear_retry_backoff=0)


def lap(controller, elapsed_ms, client_record_id, session_id=None):
    return controller.submit(
        LapCandidate(
            elapsed_ms=elapsed_ms,
            client_record_id=client_record_id,
            session_id=session_id or controller.session.session_id,
        )
    )


def drain(subscription):
    events = []
    while subscription.pending:
        events.append(subscription._queue.get_nowait())
    return events


class TestSessionIdFactory:
    """Tests for session id minting."""

    def test_ids_sort_in_creation_order(self):
        """Test ids increase even when the clock stands still."""
        factory = SessionIdFactory(clock=lambda: 1_700_000_000.0)

        ids = [factory() for _ in range(5)]

        assert ids == sorted(ids)
        assert len(set(ids)) == 5

    def test_observe_restored_id(self):
        """Test ids minted after observe() sort after the observed id."""
        factory = SessionIdFactory(clock=lambda: 1.0)
        restored = "0002000000000000-deadbeef"

        factory.observe(restored)

        assert factory() > restored


class TestStart:
    """Tests for controller startup."""

    @pytest.mark.asyncio
    async def test_session_before_start_raises(self, controller):
        """Test the session is unavailable before start()."""
        with pytest.raises(RuntimeError):
            controller.session

    @pytest.mark.asyncio
    async def test_start_mints_active_session(self, controller, hub):
        """Test the first start mints a session and announces it."""
        subscription = hub.subscribe()

        session = await controller.start()

        assert session.state == SessionState.ACTIVE
        events = drain(subscription)
        assert events == [SessionStarted(session.session_id, session.started_at)]

    @pytest.mark.asyncio
    async def test_start_resumes_persisted_session(self, tmp_path):
        """Test a restart resumes the active session with its laps."""
        db_path = tmp_path / "ledger.db"
        ledger = RecordLedger(db_path)
        ledger.connect()
        first = SessionController(ledger, BroadcastHub())
        session = await first.start()
        lap(first, 12000, "a1")
        ledger.close()

        ledger = RecordLedger(db_path)
        ledger.connect()
        second = SessionController(ledger, BroadcastHub())
        resumed = await second.start()

        assert resumed.session_id == session.session_id
        assert [r.client_record_id for r in second.snapshot().records] == ["a1"]
        ledger.close()

    @pytest.mark.asyncio
    async def test_start_finishes_interrupted_reset(self, tmp_path):
        """Test a session persisted mid-reset is cleared on restart."""
        db_path = tmp_path / "ledger.db"
        ledger = RecordLedger(db_path)
        ledger.connect()
        first = SessionController(ledger, BroadcastHub())
        session = await first.start()
        lap(first, 12000, "a1")
        ledger.seal(session.session_id)
        ledger.close()

        ledger = RecordLedger(db_path)
        ledger.connect()
        second = SessionController(ledger, BroadcastHub())
        resumed = await second.start()

        assert resumed.session_id != session.session_id
        assert resumed.state == SessionState.ACTIVE
        assert second.snapshot().records == ()
        count = ledger._conn.execute("SELECT COUNT(*) FROM lap_records").fetchone()[0]
        assert count == 0
        ledger.close()

    @pytest.mark.asyncio
    async def test_start_survives_unfinished_clear(self, tmp_path):
        """Test storage failing during the resumed clear leaves the server up in CLEARING."""
        db_path = tmp_path / "ledger.db"
        ledger = RecordLedger(db_path)
        ledger.connect()
        first = SessionController(ledger, BroadcastHub())
        session = await first.start()
        lap(first, 12000, "a1")
        ledger.seal(session.session_id)
        ledger.close()

        ledger = RecordLedger(db_path)
        ledger.connect()
        flaky = FlakyConnection(ledger._conn, "DELETE FROM lap_records", failures=100)
        ledger._conn = flaky
        second = SessionController(ledger, BroadcastHub(), clear_retry_backoff=0)

        resumed = await second.start()

        assert resumed.session_id == session.session_id
        assert second.session.state == SessionState.CLEARING
        assert isinstance(lap(second, 5000, "late"), Rejected)

        flaky.failures = 0
        fresh = await second.reset()

        assert fresh.session_id != session.session_id
        assert fresh.state == SessionState.ACTIVE
        assert second.snapshot().records == ()
        ledger.close()


class TestSubmit:
    """Tests for appending through the controller."""

    @pytest.mark.asyncio
    async def test_scenario_ordered_appends(self, controller):
        """Test two appends get sequence 1 and 2 and snapshot in that order."""
        await controller.start()

        r1 = lap(controller, 12000, "a1")
        r2 = lap(controller, 25000, "a2")
        records = controller.snapshot().records

        assert (r1.sequence_number, r2.sequence_number) == (1, 2)
        assert [(r.sequence_number, r.elapsed_ms, r.client_record_id) for r in records] == [
            (1, 12000, "a1"),
            (2, 25000, "a2"),
        ]

    @pytest.mark.asyncio
    async def test_submit_broadcasts(self, controller, hub):
        """Test an accepted lap is broadcast to every subscriber."""
        await controller.start()
        s1 = hub.subscribe()
        s2 = hub.subscribe()

        record = lap(controller, 1000, "a")

        assert drain(s1) == [RecordAppended(record)]
        assert drain(s2) == [RecordAppended(record)]

    @pytest.mark.asyncio
    async def test_duplicate_rebroadcast_once_stored(self, controller, hub):
        """Test a duplicate is acknowledged by broadcast but stored once."""
        await controller.start()
        subscription = hub.subscribe()

        first = lap(controller, 1000, "a")
        second = lap(controller, 1000, "a")

        assert second.sequence_number == first.sequence_number
        assert len(controller.snapshot().records) == 1
        assert len(drain(subscription)) == 2

    @pytest.mark.asyncio
    async def test_stale_submit_not_broadcast(self, controller, hub):
        """Test a rejected lap produces no event."""
        await controller.start()
        subscription = hub.subscribe()

        result = lap(controller, 1000, "a", session_id="old")

        assert isinstance(result, Rejected)
        assert drain(subscription) == []

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, controller, ledger, hub):
        """Test StorageUnavailable reaches the caller and nothing is broadcast."""
        await controller.start()
        subscription = hub.subscribe()
        ledger._conn = FlakyConnection(ledger._conn, "INSERT INTO lap_records")

        with pytest.raises(StorageUnavailable):
            lap(controller, 1000, "a")

        assert drain(subscription) == []


class TestReset:
    """Tests for the two-phase reset."""

    @pytest.mark.asyncio
    async def test_reset_starts_new_empty_session(self, controller):
        """Test reset clears laps and moves to a new active epoch."""
        old = await controller.start()
        lap(controller, 1000, "a")

        new = await controller.reset()

        assert new.session_id != old.session_id
        assert new.state == SessionState.ACTIVE
        assert controller.snapshot().records == ()

    @pytest.mark.asyncio
    async def test_reset_event_order(self, controller, hub):
        """Test subscribers see SessionCleared before SessionStarted."""
        old = await controller.start()
        subscription = hub.subscribe()

        new = await controller.reset()

        events = drain(subscription)
        assert [type(e) for e in events] == [SessionCleared, SessionStarted]
        assert events[0].session_id == old.session_id
        assert events[1].session_id == new.session_id

    @pytest.mark.asyncio
    async def test_non_explicit_reset_ignored(self, controller):
        """Test an ambient reset signal does nothing."""
        session = await controller.start()
        lap(controller, 1000, "a")

        result = await controller.reset(explicit=False)

        assert result == session
        assert len(controller.snapshot().records) == 1

    @pytest.mark.asyncio
    async def test_late_append_during_clearing_rejected(self, controller, ledger):
        """Test a late append for the old epoch is rejected mid-reset."""
        old = await controller.start()
        lap(controller, 1000, "a")
        ledger._conn = FlakyConnection(ledger._conn, "DELETE FROM lap_records")
        controller.clear_retry_backoff = 0.05

        reset = asyncio.create_task(controller.reset())
        await asyncio.sleep(0.01)

        assert controller.session.state == SessionState.CLEARING
        late = lap(controller, 2000, "late", session_id=old.session_id)
        assert isinstance(late, Rejected)

        new = await reset
        snapshot = controller.snapshot()

        assert snapshot.session.session_id == new.session_id
        assert snapshot.records == ()

    @pytest.mark.asyncio
    async def test_snapshots_never_partial(self, controller, ledger):
        """Test snapshots taken during a reset are all-old or all-new."""
        old = await controller.start()
        for i in range(5):
            lap(controller, 1000 * (i + 1), f"lap-{i}")
        ledger._conn = FlakyConnection(ledger._conn, "DELETE FROM lap_records", failures=2)
        controller.clear_retry_backoff = 0.01

        seen = []

        async def observe():
            while True:
                seen.append(controller.snapshot())
                await asyncio.sleep(0)

        observer = asyncio.create_task(observe())
        new = await controller.reset()
        await asyncio.sleep(0)
        observer.cancel()

        assert seen
        for snapshot in seen:
            ids = {r.session_id for r in snapshot.records}
            if snapshot.session.session_id == old.session_id:
                assert len(snapshot.records) == 5
                assert ids == {old.session_id}
            else:
                assert snapshot.session.session_id == new.session_id
                assert snapshot.records == ()

    @pytest.mark.asyncio
    async def test_clear_failure_stays_clearing(self, controller, ledger, hub):
        """Test exhausted clear retries leave the controller in CLEARING."""
        old = await controller.start()
        lap(controller, 1000, "a")
        subscription = hub.subscribe()
        ledger._conn = FlakyConnection(ledger._conn, "DELETE FROM lap_records", failures=3)

        with pytest.raises(StorageUnavailable):
            await controller.reset()

        assert controller.session == Session(
            old.session_id, SessionState.CLEARING, old.started_at
        )
        assert len(controller.snapshot().records) == 1
        assert drain(subscription) == []

    @pytest.mark.asyncio
    async def test_reset_resumes_from_clearing(self, controller, ledger):
        """Test a later reset request finishes a failed one."""
        old = await controller.start()
        lap(controller, 1000, "a")
        ledger._conn = FlakyConnection(ledger._conn, "DELETE FROM lap_records", failures=3)
        with pytest.raises(StorageUnavailable):
            await controller.reset()

        new = await controller.reset()

        assert new.session_id != old.session_id
        assert new.state == SessionState.ACTIVE
        assert controller.snapshot().records == ()

    @pytest.mark.asyncio
    async def test_concurrent_resets_serialized(self, controller):
        """Test two concurrent resets produce two distinct epochs in order."""
        old = await controller.start()

        first, second = await asyncio.gather(controller.reset(), controller.reset())

        assert len({old.session_id, first.session_id, second.session_id}) == 3
        assert controller.session == second

    @pytest.mark.asyncio
    async def test_new_epoch_accepts_laps(self, controller):
        """Test laps tagged with the new session are accepted after reset."""
        await controller.start()
        lap(controller, 1000, "a")
        await controller.reset()

        record = lap(controller, 500, "b")

        assert isinstance(record, LapRecord)
        assert record.sequence_number == 1


class TestStatus:
    """Tests for controller status."""

    @pytest.mark.asyncio
    async def test_get_status(self, controller, hub):
        """Test status includes session, ledger stats and subscribers."""
        session = await controller.start()
        hub.subscribe()

        status = controller.get_status()

        assert status["session"]["session_id"] == session.session_id
        assert status["session"]["state"] == "active"
        assert status["ledger"]["record_count"] == 0
        assert status["subscribers"] == 1

    @pytest.mark.asyncio
    async def test_snapshot_to_dict(self, controller):
        """Test the snapshot serializes session fields with records."""
        session = await controller.start()
        lap(controller, 1000, "a")

        data = controller.snapshot().to_dict()

        assert data["session_id"] == session.session_id
        assert data["state"] == "active"
        assert data["records"][0]["client_record_id"] == "a"
