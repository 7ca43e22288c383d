"""Server for the live timing engine.

Serves the WebSocket live channel and a JSON HTTP API with FastAPI.
"""

from .app import create_app
from .connection import ConnectionSession
from .logs import LogBuffer, install_log_buffer

__all__ = ["ConnectionSession", "LogBuffer", "create_app", "install_log_buffer"]
