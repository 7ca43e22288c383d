"""Broadcast events: one tagged variant with a fixed record shape."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union

from .ledger.records import LapRecord


@dataclass(frozen=True)
class RecordAppended:
    """A lap was committed (or re-acknowledged) in the current epoch."""

    record: LapRecord

    type = "record_appended"

    @property
    def session_id(self) -> str:
        return self.record.session_id

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "record": self.record.to_dict()}


@dataclass(frozen=True)
class SessionCleared:
    """Every record of the named epoch is gone."""

    session_id: str

    type = "session_cleared"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "session_id": self.session_id}


@dataclass(frozen=True)
class SessionStarted:
    """A new, empty epoch is accepting laps."""

    session_id: str
    started_at: datetime | None = None

    type = "session_started"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "session_id": self.session_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


Event = Union[RecordAppended, SessionCleared, SessionStarted]


def event_from_dict(data: dict[str, Any]) -> Event:
    """Parse a serialized event.

    Raises:
        ValueError: Unknown event type.
    """
    event_type = data.get("type")

    if event_type == RecordAppended.type:
        return RecordAppended(record=LapRecord.from_dict(data["record"]))
    if event_type == SessionCleared.type:
        return SessionCleared(session_id=data["session_id"])
    if event_type == SessionStarted.type:
        started_at = data.get("started_at")
        return SessionStarted(
            session_id=data["session_id"],
            started_at=datetime.fromisoformat(started_at) if started_at else None,
        )

    raise ValueError(f"Unknown event type: {event_type}")
