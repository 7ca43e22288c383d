"""Client side of the live timing engine.

Provides the sync agent that keeps a local view of the server ledger and
buffers laps recorded while offline, plus a REST client for one-shot calls.
"""

from .agent import AgentState, ClientSyncAgent, SyncListener
from .api import APIError, LapSyncAPI
from .replay import PendingRecord, ReplayBuffer
from .transport import Transport, WebSocketTransport

__all__ = [
    "APIError",
    "AgentState",
    "ClientSyncAgent",
    "LapSyncAPI",
    "PendingRecord",
    "ReplayBuffer",
    "SyncListener",
    "Transport",
    "WebSocketTransport",
]
