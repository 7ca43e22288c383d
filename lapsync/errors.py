"""Error taxonomy for the live timing engine."""

from enum import Enum
from typing import Any


class RejectReason(Enum):
    """Why the ledger refused a candidate record."""

    STALE_EPOCH = "stale_epoch"  # Tagged with a superseded or sealed session


class LapSyncError(Exception):
    """Base class for lapsync errors."""


class StorageUnavailable(LapSyncError):
    """Durable storage could not complete an append or clear."""

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        message = f"Storage unavailable during {operation}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class StaleEpochWrite(LapSyncError):
    """A lap was tagged with a session that is no longer accepting appends.

    The ledger reports this as a Rejected value; the client agent raises it
    only to code explicitly waiting on that lap.
    """

    def __init__(self, client_record_id: str, session_id: str | None):
        self.client_record_id = client_record_id
        self.session_id = session_id
        super().__init__(f"Lap {client_record_id} rejected: session {session_id} is stale")


class TransportLost(LapSyncError):
    """The duplex connection to the server dropped or never came up."""


class StaleReplayDiscarded(LapSyncError):
    """Offline records were dropped because a reset happened meanwhile.

    Passed to listeners as a warning value, not raised.
    """

    def __init__(
        self,
        buffered_session_id: str | None,
        current_session_id: str,
        client_record_ids: list[str],
    ):
        self.buffered_session_id = buffered_session_id
        self.current_session_id = current_session_id
        self.client_record_ids = list(client_record_ids)
        super().__init__(
            f"Discarded {len(self.client_record_ids)} offline record(s) from "
            f"session {buffered_session_id}; server is now on {current_session_id}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "buffered_session_id": self.buffered_session_id,
            "current_session_id": self.current_session_id,
            "client_record_ids": self.client_record_ids,
        }
