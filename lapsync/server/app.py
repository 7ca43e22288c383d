"""FastAPI application exposing the live timing engine."""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, WebSocket
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import Config
from ..errors import StorageUnavailable
from ..ledger import LapCandidate, Rejected
from ..session import SessionController
from .connection import ConnectionSession
from .logs import LogBuffer

if TYPE_CHECKING:
    from ..mqtt_bridge import MQTTEventBridge

logger = logging.getLogger(__name__)


class RecordSubmission(BaseModel):
    """Body of ``POST /api/records``."""

    elapsed_ms: int = Field(ge=0)
    client_record_id: str | None = None
    session_id: str | None = None  # None means the current epoch
    captured_at: datetime | None = None


class ResetRequest(BaseModel):
    """Body of ``POST /api/reset``."""

    explicit: bool = True


def create_app(
    config: Config,
    controller: SessionController,
    log_buffer: LogBuffer | None = None,
    bridge: "MQTTEventBridge | None" = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Application configuration.
        controller: Session controller owning the ledger and hub.
        log_buffer: Optional buffer backing ``/api/server-logs``.
        bridge: Optional MQTT mirror started and stopped with the app.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not controller.started:
            await controller.start()
        if bridge is not None:
            await bridge.start()
        logger.info(f"Serving session {controller.session.session_id}")
        try:
            yield
        finally:
            if bridge is not None:
                await bridge.stop()
            controller.hub.close()

    app = FastAPI(
        title="lapsync",
        description="Live lap timing synchronization engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.controller = controller
    app.state.log_buffer = log_buffer

    # ==================== WebSocket ====================

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Live channel: snapshot on connect, then every event."""
        connection = ConnectionSession(websocket, controller, controller.hub)
        await connection.run()

    # ==================== API Routes (JSON) ====================

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint. Always returns 200 OK."""
        health = {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "components": {
                "controller": controller.started,
                "ledger_accepting": controller.ledger.accepting,
                "subscribers": controller.hub.subscriber_count,
                "mqtt_bridge": bridge is not None and bridge.is_connected,
            },
        }
        if controller.started:
            health["session"] = controller.session.to_dict()
        return health

    @app.get("/api/session")
    async def api_session() -> dict[str, Any]:
        """Current session id, state and start time."""
        return controller.session.to_dict()

    @app.get("/api/snapshot")
    async def api_snapshot() -> dict[str, Any]:
        """Current session together with its ordered records."""
        return controller.snapshot().to_dict()

    @app.post("/api/records")
    async def api_submit_record(submission: RecordSubmission):
        """Append a lap. Every subscriber learns about it through the broadcast."""
        candidate = LapCandidate(
            elapsed_ms=submission.elapsed_ms,
            client_record_id=submission.client_record_id or uuid.uuid4().hex,
            session_id=submission.session_id or controller.session.session_id,
            captured_at=submission.captured_at or datetime.now(),
        )

        try:
            result = controller.submit(candidate)
        except StorageUnavailable as e:
            logger.error(f"HTTP append failed: {e}")
            return JSONResponse(
                status_code=503,
                content={"error": "storage_unavailable", "message": str(e)},
            )

        if isinstance(result, Rejected):
            return JSONResponse(status_code=409, content=result.to_dict())

        return result.to_dict()

    @app.post("/api/reset")
    async def api_reset(request: ResetRequest | None = None):
        """Clear the current session and start a new one."""
        explicit = request.explicit if request is not None else True
        try:
            session = await controller.reset(explicit=explicit)
        except StorageUnavailable as e:
            return JSONResponse(
                status_code=503,
                content={
                    "error": "storage_unavailable",
                    "message": str(e),
                    "session": controller.session.to_dict(),
                },
            )
        return session.to_dict()

    @app.get("/api/stats")
    async def api_stats() -> dict[str, Any]:
        """Ledger and broadcast statistics."""
        stats = controller.get_status()
        stats["timestamp"] = datetime.now().isoformat()
        stats["events_published"] = controller.hub.published
        return stats

    @app.get("/api/server-logs")
    async def api_server_logs(limit: int | None = None) -> dict[str, Any]:
        """Recent server log lines."""
        if log_buffer is None:
            return {"error": "No log buffer available", "logs": [], "count": 0}

        logs = log_buffer.entries(limit)
        return {"logs": logs, "count": len(logs)}

    @app.delete("/api/server-logs")
    async def api_clear_server_logs() -> dict[str, Any]:
        """Drop every buffered log line."""
        if log_buffer is None:
            return {"cleared": 0}
        return {"cleared": log_buffer.clear()}

    return app
