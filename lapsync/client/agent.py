"""Client sync agent: connectivity, offline buffering, replay and merge.

States::

    OFFLINE -> CONNECTING -> SYNCED -> OFFLINE -> RESYNCING -> SYNCED
                                 \\-> DISCONNECTED (gave up, start() again)

Every lap recorded through the agent is buffered first and only leaves the
replay buffer once the server broadcasts it back in the same epoch. On
reconnect the buffer is replayed if the server is still on the epoch the laps
were captured in, and discarded with a warning otherwise.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from ..errors import (
    LapSyncError,
    StaleEpochWrite,
    StaleReplayDiscarded,
    TransportLost,
)
from ..ledger.records import LapRecord
from .replay import PendingRecord, ReplayBuffer
from .transport import Transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], Transport]


class AgentState(Enum):
    """Connectivity state of the agent."""

    OFFLINE = "offline"
    CONNECTING = "connecting"  # First connection since start()
    SYNCED = "synced"
    RESYNCING = "resyncing"  # Reconnecting after having been synced
    DISCONNECTED = "disconnected"  # Gave up reconnecting


class SyncListener:
    """Receives the agent's view changes. Override what you need."""

    def on_snapshot(self, session_id: str, state: str, records: list[LapRecord]) -> None:
        pass

    def on_record_appended(self, record: LapRecord) -> None:
        pass

    def on_session_cleared(self, session_id: str) -> None:
        pass

    def on_session_started(self, session_id: str) -> None:
        pass

    def on_connectivity_changed(self, is_connected: bool) -> None:
        pass

    def on_replay_discarded(self, warning: StaleReplayDiscarded) -> None:
        pass

    def on_record_rejected(self, client_record_id: str, reason: str) -> None:
        pass

    def on_pending_changed(self, count: int) -> None:
        pass

    def on_gave_up(self, attempts: int) -> None:
        pass

    def on_error(self, code: str, message: str) -> None:
        pass


class ClientSyncAgent:
    """Keeps a local, epoch-tagged projection of the server ledger."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        buffer: ReplayBuffer | None = None,
        listener: SyncListener | None = None,
        reconnect_backoff: float = 1.0,
        max_backoff: float = 30.0,
        max_reconnect_attempts: int = 10,
        resync_timeout: float = 10.0,
        min_uptime: float = 5.0,
    ):
        """Initialize the agent.

        Args:
            transport_factory: Creates a fresh, unconnected transport per attempt.
            buffer: Replay buffer for unconfirmed laps (in-memory if omitted).
            listener: Receives view and connectivity changes.
            reconnect_backoff: Initial delay between failed attempts (doubles).
            max_backoff: Upper bound for the delay between attempts.
            max_reconnect_attempts: Consecutive failures before giving up.
            resync_timeout: Limit for connect + snapshot, and for replay acks.
            min_uptime: Connections dropping sooner count as failed attempts.
        """
        self._transport_factory = transport_factory
        self.buffer = buffer if buffer is not None else ReplayBuffer()
        self.listener = listener or SyncListener()
        self.reconnect_backoff = reconnect_backoff
        self.max_backoff = max_backoff
        self.max_reconnect_attempts = max_reconnect_attempts
        self.resync_timeout = resync_timeout
        self.min_uptime = min_uptime

        self.state = AgentState.OFFLINE
        self._connected = False
        self._running = False
        self._ever_synced = False
        self._generation = 0
        self._supervisor: asyncio.Task | None = None
        self._transport: Transport | None = None

        self._session_id: str | None = None
        self._session_state: str | None = None
        self._records: dict[int, LapRecord] = {}
        self._waiters: dict[str, list[asyncio.Future]] = defaultdict(list)

        self._consecutive_failures = 0
        self._last_synced: datetime | None = None

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start connecting in the background."""
        if self._running:
            return
        self._running = True
        self.reconnect()

    async def stop(self) -> None:
        """Disconnect and stop reconnecting. Buffered laps are kept."""
        self._running = False
        self._generation += 1

        supervisor, self._supervisor = self._supervisor, None
        if supervisor:
            supervisor.cancel()
            try:
                await supervisor
            except asyncio.CancelledError:
                pass

        transport, self._transport = self._transport, None
        if transport:
            await transport.close()

        self._set_state(AgentState.OFFLINE)
        self._set_connected(False)

    def reconnect(self) -> None:
        """Start a new connection attempt, superseding any attempt in flight.

        The superseded attempt is not cancelled; its outcome is simply
        discarded when it completes.
        """
        self._running = True
        self._generation += 1
        stale_transport, self._transport = self._transport, None
        if stale_transport is not None:
            self._set_connected(False)
        self._supervisor = asyncio.create_task(
            self._supervise(self._generation, stale_transport)
        )

    # ==================== Ingress ====================

    async def submit_record(
        self,
        elapsed_ms: int,
        client_record_id: str | None = None,
        captured_at: datetime | None = None,
    ) -> str:
        """Record a lap. Sent now if synced, replayed later otherwise.

        Returns:
            The lap's client_record_id.
        """
        if elapsed_ms < 0:
            raise ValueError(f"elapsed_ms must be >= 0, got {elapsed_ms}")

        pending = PendingRecord(
            client_record_id=client_record_id or uuid.uuid4().hex,
            elapsed_ms=elapsed_ms,
            captured_at=captured_at or datetime.now(),
            session_id=self._session_id,
        )
        if self.buffer.add(pending):
            self._notify_pending()
        else:
            pending = self.buffer.get(pending.client_record_id) or pending

        transport = self._transport
        if self.state == AgentState.SYNCED and transport is not None:
            try:
                self.buffer.mark_attempt([pending.client_record_id])
                await transport.send(pending.to_submit_frame())
            except TransportLost as e:
                logger.info(f"Lap {pending.client_record_id} kept for replay: {e}")
        else:
            logger.debug(f"Offline, buffered lap {pending.client_record_id}")

        return pending.client_record_id

    async def request_reset(self) -> None:
        """Ask the server to clear the current session.

        Raises:
            TransportLost: Not connected.
        """
        await self._send_now({"type": "request_reset", "explicit": True})

    async def request_snapshot(self) -> None:
        """Ask the server for a fresh snapshot of the current session.

        Raises:
            TransportLost: Not connected.
        """
        await self._send_now({"type": "request_snapshot"})

    async def _send_now(self, frame: dict[str, Any]) -> None:
        transport = self._transport
        if self.state != AgentState.SYNCED or transport is None:
            raise TransportLost("Not connected")
        await transport.send(frame)

    async def wait_for_record(
        self, client_record_id: str, timeout: float | None = None
    ) -> LapRecord:
        """Wait until the server has committed the lap.

        Raises:
            asyncio.TimeoutError: Not confirmed within ``timeout``.
            StaleEpochWrite, StaleReplayDiscarded: The lap was dropped.
        """
        for record in self._records.values():
            if record.client_record_id == client_record_id:
                return record

        future = self._new_waiter(client_record_id)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._drop_waiter(client_record_id, future)

    # ==================== View ====================

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def session_state(self) -> str | None:
        return self._session_state

    @property
    def records(self) -> list[LapRecord]:
        """Confirmed laps in ledger order."""
        return [self._records[seq] for seq in sorted(self._records)]

    @property
    def pending_records(self) -> list[PendingRecord]:
        """Laps not yet confirmed by the server."""
        return self.buffer.pending()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "connected": self._connected,
            "session_id": self._session_id,
            "session_state": self._session_state,
            "record_count": len(self._records),
            "pending_count": len(self.buffer),
            "consecutive_failures": self._consecutive_failures,
            "last_synced": self._last_synced.isoformat() if self._last_synced else None,
        }

    # ==================== Connection supervision ====================

    async def _supervise(self, generation: int, stale_transport: Transport | None) -> None:
        if stale_transport is not None:
            await stale_transport.close()

        backoff = self.reconnect_backoff

        while self._running and generation == self._generation:
            self._set_state(
                AgentState.RESYNCING if self._ever_synced else AgentState.CONNECTING
            )
            transport = self._transport_factory()

            try:
                snapshot = await self._open(transport)
            except TransportLost as e:
                await transport.close()
                if generation != self._generation:
                    return

                self._consecutive_failures += 1
                logger.warning(
                    f"Connection attempt failed "
                    f"({self._consecutive_failures}/{self.max_reconnect_attempts}): {e}"
                )
                if self._consecutive_failures >= self.max_reconnect_attempts:
                    self._give_up()
                    return

                self._set_state(AgentState.OFFLINE)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self.max_backoff)
                continue

            if generation != self._generation:
                # Superseded while connecting; a newer attempt owns the view
                await transport.close()
                return

            loop = asyncio.get_running_loop()
            connected_at = loop.time()
            await self._serve(transport, snapshot, generation)

            if generation != self._generation:
                return

            self._set_state(AgentState.OFFLINE)
            self._set_connected(False)

            uptime = loop.time() - connected_at
            if uptime >= self.min_uptime:
                self._consecutive_failures = 0
                backoff = self.reconnect_backoff
            else:
                # A link that drops right after the snapshot is a failed attempt
                self._consecutive_failures += 1
                logger.warning(
                    f"Connection dropped after {uptime:.1f}s "
                    f"({self._consecutive_failures}/{self.max_reconnect_attempts})"
                )
                if self._consecutive_failures >= self.max_reconnect_attempts:
                    self._give_up()
                    return

            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.max_backoff)

    async def _open(self, transport: Transport) -> dict[str, Any]:
        """Connect and wait for the server's snapshot."""
        try:
            await asyncio.wait_for(transport.connect(), timeout=self.resync_timeout)
            return await asyncio.wait_for(
                self._await_snapshot(transport), timeout=self.resync_timeout
            )
        except asyncio.TimeoutError as e:
            raise TransportLost(
                f"No snapshot within {self.resync_timeout}s"
            ) from e

    @staticmethod
    async def _await_snapshot(transport: Transport) -> dict[str, Any]:
        while True:
            frame = await transport.receive()
            if frame.get("type") == "snapshot":
                return frame
            # Anything earlier is already reflected in the snapshot
            logger.debug(f"Skipping {frame.get('type')} before snapshot")

    async def _serve(
        self, transport: Transport, snapshot: dict[str, Any], generation: int
    ) -> None:
        """Apply the snapshot, replay, then merge frames until the link drops."""
        self._transport = transport
        self._apply_snapshot(snapshot)
        self._ever_synced = True
        self._last_synced = datetime.now()
        self._set_state(AgentState.SYNCED)
        self._set_connected(True)

        replay = asyncio.create_task(self._replay(transport, generation))
        try:
            while True:
                frame = await transport.receive()
                if generation != self._generation:
                    return
                self._handle_frame(frame)
        except TransportLost as e:
            if generation == self._generation:
                logger.warning(f"Connection lost: {e}")
        finally:
            replay.cancel()
            try:
                await replay
            except asyncio.CancelledError:
                pass
            await transport.close()
            if self._transport is transport:
                self._transport = None

    def _give_up(self) -> None:
        attempts = self._consecutive_failures
        logger.error(f"Giving up after {attempts} failed connection attempts")
        self._running = False
        self._consecutive_failures = 0
        self._set_state(AgentState.DISCONNECTED)
        self._set_connected(False)
        self._notify("on_gave_up", attempts)

    # ==================== Replay ====================

    async def _replay(self, transport: Transport, generation: int) -> None:
        """Resubmit every buffered lap of the current epoch and await the acks."""
        pending = [p for p in self.buffer.pending() if p.session_id == self._session_id]
        if not pending:
            return

        logger.info(f"Replaying {len(pending)} buffered lap(s) into {self._session_id}")
        ids = [p.client_record_id for p in pending]
        futures = [self._new_waiter(cid) for cid in ids]
        self.buffer.mark_attempt(ids)

        try:
            for record in pending:
                if generation != self._generation:
                    return
                await transport.send(record.to_submit_frame())

            results = await asyncio.wait_for(
                asyncio.gather(*futures, return_exceptions=True),
                timeout=self.resync_timeout,
            )
            confirmed = sum(1 for r in results if isinstance(r, LapRecord))
            logger.info(f"Replay confirmed {confirmed}/{len(pending)} lap(s)")
        except asyncio.TimeoutError:
            logger.warning(
                f"{len(self.buffer)} lap(s) still unconfirmed after replay; "
                f"kept for the next resync"
            )
        except TransportLost as e:
            logger.info(f"Replay interrupted: {e}")
        finally:
            for cid, future in zip(ids, futures):
                self._drop_waiter(cid, future)

    # ==================== Inbound frames ====================

    def _handle_frame(self, frame: dict[str, Any]) -> None:
        frame_type = frame.get("type")

        try:
            if frame_type == "record_appended":
                self._merge_record(LapRecord.from_dict(frame["record"]))
            elif frame_type == "session_cleared":
                self._on_session_cleared(frame["session_id"])
            elif frame_type == "session_started":
                self._on_session_started(frame["session_id"])
            elif frame_type == "snapshot":
                self._apply_snapshot(frame)
            elif frame_type == "rejected":
                self._on_rejected(frame)
            elif frame_type == "error":
                self._on_error(frame)
            else:
                logger.debug(f"Ignoring unknown frame type {frame_type}")
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Malformed {frame_type} frame from server: {e}")

    def _apply_snapshot(self, frame: dict[str, Any]) -> None:
        """Replace the local view with the server's and reconcile the buffer."""
        session_id = frame["session_id"]
        records = [LapRecord.from_dict(r) for r in frame.get("records", [])]

        if self._session_id is not None and session_id != self._session_id:
            logger.info(f"Server moved from session {self._session_id} to {session_id}")

        self._session_id = session_id
        self._session_state = frame.get("state")
        self._records = {
            r.sequence_number: r for r in records if r.session_id == session_id
        }

        self._notify("on_snapshot", session_id, self._session_state, self.records)

        for record in self._records.values():
            if self.buffer.confirm(record.client_record_id):
                self._resolve(record.client_record_id, record)

        adopted = self.buffer.adopt_untagged(session_id)
        if adopted:
            logger.info(f"Adopted {adopted} lap(s) recorded before the first sync")

        self._discard_stale(session_id)
        self._notify_pending()

    def _merge_record(self, record: LapRecord) -> None:
        if record.session_id != self._session_id:
            logger.debug(
                f"Dropping seq={record.sequence_number} from session "
                f"{record.session_id}; tracking {self._session_id}"
            )
            return

        is_new = record.sequence_number not in self._records
        self._records[record.sequence_number] = record

        if self.buffer.confirm(record.client_record_id):
            self._notify_pending()
        self._resolve(record.client_record_id, record)

        if is_new:
            self._notify("on_record_appended", record)

    def _on_session_cleared(self, session_id: str) -> None:
        if session_id != self._session_id:
            logger.debug(f"Ignoring clear of session {session_id}")
            return

        self._records = {}
        self._session_state = "cleared"
        self._discard_stale(None)
        self._notify_pending()
        self._notify("on_session_cleared", session_id)

    def _on_session_started(self, session_id: str) -> None:
        if session_id == self._session_id:
            # Already on this epoch, e.g. learned from the snapshot
            self._session_state = "active"
            return

        self._session_id = session_id
        self._session_state = "active"
        self._records = {}
        self._discard_stale(session_id)
        self._notify_pending()
        self._notify("on_session_started", session_id)

    def _on_rejected(self, frame: dict[str, Any]) -> None:
        client_record_id = frame["client_record_id"]
        reason = frame.get("reason", "stale_epoch")
        logger.info(f"Lap {client_record_id} rejected by server ({reason})")

        if self.buffer.confirm(client_record_id):
            self._notify_pending()
        self._fail(client_record_id, StaleEpochWrite(client_record_id, frame.get("session_id")))
        self._notify("on_record_rejected", client_record_id, reason)

    def _on_error(self, frame: dict[str, Any]) -> None:
        code = frame.get("code", "unknown")
        message = frame.get("message", "")
        logger.warning(f"Server error {code}: {message}")
        self._notify("on_error", code, message)

    def _discard_stale(self, current_session_id: str | None) -> None:
        """Drop buffered laps whose epoch is not ``current_session_id``.

        With ``None`` every tagged lap is dropped; untagged laps are kept.
        """
        stale: dict[str | None, list[str]] = defaultdict(list)
        for pending in self.buffer.pending():
            if pending.session_id is None:
                continue
            if pending.session_id != current_session_id:
                stale[pending.session_id].append(pending.client_record_id)

        for buffered_session_id, ids in stale.items():
            self.buffer.discard(ids)
            warning = StaleReplayDiscarded(
                buffered_session_id=buffered_session_id,
                current_session_id=current_session_id or "",
                client_record_ids=ids,
            )
            logger.warning(str(warning))
            for cid in ids:
                self._fail(cid, warning)
            self._notify("on_replay_discarded", warning)

    # ==================== Helpers ====================

    def _new_waiter(self, client_record_id: str) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._waiters[client_record_id].append(future)
        return future

    def _drop_waiter(self, client_record_id: str, future: asyncio.Future) -> None:
        waiters = self._waiters.get(client_record_id)
        if waiters and future in waiters:
            waiters.remove(future)
            if not waiters:
                del self._waiters[client_record_id]

    def _resolve(self, client_record_id: str, record: LapRecord) -> None:
        for future in self._waiters.pop(client_record_id, []):
            if not future.done():
                future.set_result(record)

    def _fail(self, client_record_id: str, error: LapSyncError) -> None:
        for future in self._waiters.pop(client_record_id, []):
            if not future.done():
                future.set_exception(error)

    def _set_state(self, state: AgentState) -> None:
        if state != self.state:
            logger.debug(f"Agent state {self.state.value} -> {state.value}")
            self.state = state

    def _set_connected(self, connected: bool) -> None:
        if connected != self._connected:
            self._connected = connected
            self._notify("on_connectivity_changed", connected)

    def _notify_pending(self) -> None:
        self._notify("on_pending_changed", len(self.buffer))

    def _notify(self, method: str, *args: Any) -> None:
        try:
            getattr(self.listener, method)(*args)
        except Exception as e:
            logger.error(f"Listener {method} failed: {e}", exc_info=True)
