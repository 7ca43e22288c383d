"""Lap record types shared by the ledger, the hub and the client agent."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..errors import RejectReason


@dataclass(frozen=True)
class LapCandidate:
    """A lap captured by a recorder, not yet accepted by the ledger."""

    elapsed_ms: int
    client_record_id: str
    session_id: str | None
    captured_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        if self.elapsed_ms < 0:
            raise ValueError(f"elapsed_ms must be >= 0, got {self.elapsed_ms}")
        if not self.client_record_id:
            raise ValueError("client_record_id must not be empty")


@dataclass(frozen=True)
class LapRecord:
    """A lap committed to the ledger. Never mutated after commit."""

    sequence_number: int
    elapsed_ms: int
    captured_at: datetime
    committed_at: datetime
    client_record_id: str
    session_id: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "sequence_number": self.sequence_number,
            "elapsed_ms": self.elapsed_ms,
            "captured_at": self.captured_at.isoformat(),
            "committed_at": self.committed_at.isoformat(),
            "client_record_id": self.client_record_id,
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LapRecord":
        """Create from dictionary."""
        return cls(
            sequence_number=int(data["sequence_number"]),
            elapsed_ms=int(data["elapsed_ms"]),
            captured_at=datetime.fromisoformat(data["captured_at"]),
            committed_at=datetime.fromisoformat(data["committed_at"]),
            client_record_id=data["client_record_id"],
            session_id=data["session_id"],
        )


@dataclass(frozen=True)
class Rejected:
    """Outcome of an append the ledger refused. Expected during resets."""

    client_record_id: str
    session_id: str | None
    reason: RejectReason = RejectReason.STALE_EPOCH

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_record_id": self.client_record_id,
            "session_id": self.session_id,
            "reason": self.reason.value,
        }
