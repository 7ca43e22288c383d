"""Record ledger for the live timing engine.

Holds the authoritative, strictly ordered laps of the current session epoch.
"""

from .ledger import RecordLedger
from .records import LapCandidate, LapRecord, Rejected

__all__ = ["LapCandidate", "LapRecord", "RecordLedger", "Rejected"]
