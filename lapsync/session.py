"""Session controller: owns the current epoch and the two-phase reset.

State machine::

    ACTIVE --reset--> CLEARING --ledger cleared--> CLEARED --new epoch--> ACTIVE

Entering CLEARING seals the ledger so late appends for the outgoing epoch are
rejected. The controller only leaves CLEARING once the ledger has actually
deleted the epoch, so no observer can see a mixture of two epochs.
"""

import asyncio
import itertools
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from .errors import StorageUnavailable
from .events import RecordAppended, SessionCleared, SessionStarted
from .hub import BroadcastHub
from .ledger import LapCandidate, LapRecord, RecordLedger, Rejected

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle state of the current session epoch."""

    ACTIVE = "active"
    CLEARING = "clearing"
    CLEARED = "cleared"


@dataclass(frozen=True)
class Session:
    """Identity and state of one timing run."""

    session_id: str
    state: SessionState
    started_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


@dataclass(frozen=True)
class SessionSnapshot:
    """Records of one epoch together with the epoch they belong to."""

    session: Session
    records: tuple[LapRecord, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.session.to_dict(),
            "records": [r.to_dict() for r in self.records],
        }


class SessionIdFactory:
    """Mints epoch ids that sort in creation order.

    Ids look like ``0001718031234567-3f2a9c1b``: a zero-padded millisecond
    stamp that never repeats or goes backwards, plus a random suffix.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last_ms = 0

    def observe(self, session_id: str) -> None:
        """Make sure later ids sort after an id restored from storage."""
        prefix = session_id.split("-", 1)[0]
        if prefix.isdigit():
            self._last_ms = max(self._last_ms, int(prefix))

    def __call__(self) -> str:
        now_ms = max(int(self._clock() * 1000), self._last_ms + 1)
        self._last_ms = now_ms
        return f"{now_ms:016d}-{uuid.uuid4().hex[:8]}"


class SessionController:
    """Mediates every change to the current session epoch.

    All ledger mutations of the server go through this object, which runs
    on a single event loop. Resets are serialized by an asyncio lock.
    """

    def __init__(
        self,
        ledger: RecordLedger,
        hub: BroadcastHub,
        clear_retry_attempts: int = 3,
        clear_retry_backoff: float = 0.5,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the controller.

        Args:
            ledger: Ledger holding the current epoch's records.
            hub: Hub that receives every session and record event.
            clear_retry_attempts: Clear attempts per reset request.
            clear_retry_backoff: Initial delay between clear attempts (doubles).
            id_factory: Callable minting new session ids.
            clock: Source of session start timestamps.
        """
        self.ledger = ledger
        self.hub = hub
        self.clear_retry_attempts = max(1, clear_retry_attempts)
        self.clear_retry_backoff = clear_retry_backoff
        self._id_factory = id_factory or SessionIdFactory()
        self._clock = clock
        self._session: Session | None = None
        self._reset_lock = asyncio.Lock()
        self._resets = itertools.count(1)

    @property
    def session(self) -> Session:
        """The current session. Read-only for every other component."""
        if self._session is None:
            raise RuntimeError("SessionController.start() has not been called")
        return self._session

    @property
    def started(self) -> bool:
        return self._session is not None

    async def start(self) -> Session:
        """Restore the last persisted session or mint the first one.

        A session persisted mid-reset is cleared before anything is served.
        If storage is still unavailable the controller stays in CLEARING,
        rejecting appends, until a later reset request succeeds.
        """
        persisted = self.ledger.load_latest_session()

        if persisted is None:
            return self._begin_epoch()

        session_id = persisted["session_id"]
        if isinstance(self._id_factory, SessionIdFactory):
            self._id_factory.observe(session_id)

        if persisted["state"] == SessionState.CLEARING.value:
            logger.warning(f"Session {session_id} was interrupted mid-reset, finishing it")
            self.ledger.restore_epoch(session_id, accepting=False)
            self._session = Session(session_id, SessionState.CLEARING, persisted["started_at"])
            try:
                return await self.reset()
            except StorageUnavailable as e:
                # Serve sealed; the next reset request resumes the clear
                logger.warning(f"Serving session {session_id} in clearing: {e}")
                return self._session

        count = self.ledger.restore_epoch(session_id, accepting=True)
        self._session = Session(session_id, SessionState.ACTIVE, persisted["started_at"])
        logger.info(f"Resumed session {session_id} with {count} records")
        return self._session

    def _begin_epoch(self) -> Session:
        """Mint a new epoch, open it in the ledger and announce it."""
        session_id = self._id_factory()
        started_at = self._clock()
        self.ledger.open_epoch(session_id, started_at)
        self._session = Session(session_id, SessionState.ACTIVE, started_at)
        self.hub.publish(SessionStarted(session_id=session_id, started_at=started_at))
        logger.info(f"Session {session_id} started")
        return self._session

    def submit(self, candidate: LapCandidate) -> LapRecord | Rejected:
        """Append a candidate and broadcast the outcome to every subscriber.

        A duplicate submission is broadcast again so the resubmitter receives
        its acknowledgement the same way everyone else does.

        Raises:
            StorageUnavailable: The ledger could not persist the record.
        """
        result = self.ledger.append(candidate)
        if isinstance(result, LapRecord):
            self.hub.publish(RecordAppended(record=result))
        return result

    def snapshot(self) -> SessionSnapshot:
        """Current session and its records, taken as one consistent view."""
        session = self.session
        session_id, records = self.ledger.current()
        if session_id != session.session_id:
            records = ()
        return SessionSnapshot(session=session, records=records)

    async def reset(self, explicit: bool = True) -> Session:
        """Run the two-phase reset and return the new session.

        Only explicit, user-initiated requests reset anything; ambient
        signals (e.g. fired on client initialization) are ignored.

        Raises:
            StorageUnavailable: The ledger could not be cleared after all
                retries. The controller stays in CLEARING and a later reset
                request resumes from there.
        """
        if not explicit:
            logger.debug("Ignoring non-explicit reset signal")
            return self.session

        async with self._reset_lock:
            reset_no = next(self._resets)
            session = self.session
            logger.info(f"Reset #{reset_no} requested in state {session.state.value}")

            if session.state == SessionState.ACTIVE:
                self.ledger.seal(session.session_id)
                session = Session(session.session_id, SessionState.CLEARING, session.started_at)
                self._session = session

            if session.state == SessionState.CLEARING:
                await self._clear_with_retry(session.session_id)
                self._session = Session(
                    session.session_id, SessionState.CLEARED, session.started_at
                )
                self.hub.publish(SessionCleared(session_id=session.session_id))

            return self._begin_epoch()

    async def _clear_with_retry(self, session_id: str) -> None:
        backoff = self.clear_retry_backoff
        last_error: StorageUnavailable | None = None

        for attempt in range(self.clear_retry_attempts):
            try:
                self.ledger.clear(session_id)
                return
            except StorageUnavailable as e:
                last_error = e
                logger.warning(
                    f"Clearing session {session_id} failed, "
                    f"attempt {attempt + 1}/{self.clear_retry_attempts}: {e}"
                )

            if attempt < self.clear_retry_attempts - 1:
                await asyncio.sleep(backoff)
                backoff *= 2

        logger.error(f"Session {session_id} stays in clearing; storage unavailable")
        raise last_error

    def get_status(self) -> dict[str, Any]:
        """Get controller status."""
        status = {"session": self.session.to_dict() if self._session else None}
        status["ledger"] = self.ledger.get_stats()
        status["subscribers"] = self.hub.subscriber_count
        return status
