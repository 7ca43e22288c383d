"""Server side of one viewer/recorder WebSocket connection."""

import asyncio
import itertools
import json
import logging
from datetime import datetime
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from ..errors import StorageUnavailable
from ..hub import BroadcastHub, Subscription, SubscriptionClosed
from ..ledger import LapCandidate, Rejected
from ..session import SessionController, SessionSnapshot

logger = logging.getLogger(__name__)

_connection_ids = itertools.count(1)

# Close code sent to a subscriber evicted for falling too far behind
CLOSE_TRY_AGAIN = 1013


def snapshot_frame(snapshot: SessionSnapshot) -> dict[str, Any]:
    return {"type": "snapshot", **snapshot.to_dict()}


def error_frame(code: str, message: str, client_record_id: str | None = None) -> dict[str, Any]:
    frame = {"type": "error", "code": code, "message": message}
    if client_record_id is not None:
        frame["client_record_id"] = client_record_id
    return frame


def parse_candidate(message: dict[str, Any]) -> LapCandidate:
    """Build a candidate from a ``submit_record`` frame.

    Raises:
        KeyError, TypeError, ValueError: The frame is malformed.
    """
    captured_at = message.get("captured_at")
    return LapCandidate(
        elapsed_ms=int(message["elapsed_ms"]),
        client_record_id=str(message["client_record_id"]),
        session_id=message.get("session_id"),
        captured_at=datetime.fromisoformat(captured_at) if captured_at else datetime.now(),
    )


class ConnectionSession:
    """Serves one transport connection.

    On subscribe the peer first receives a snapshot of the current epoch,
    then every hub event in publish order. Submissions are answered through
    the broadcast, never with a private reply, except for rejections and
    errors which only concern the submitter.
    """

    def __init__(
        self,
        websocket: WebSocket,
        controller: SessionController,
        hub: BroadcastHub,
        name: str | None = None,
    ):
        self.websocket = websocket
        self.controller = controller
        self.hub = hub
        self.name = name or f"conn-{next(_connection_ids)}"
        self._send_lock = asyncio.Lock()
        self.frames_sent = 0

    async def _send(self, frame: dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_text(json.dumps(frame))
            self.frames_sent += 1

    async def run(self) -> None:
        """Serve the connection until the peer leaves or is evicted."""
        await self.websocket.accept()
        # Subscribe before the snapshot so nothing published in between is missed
        subscription = self.hub.subscribe(name=self.name)
        logger.info(f"Connection {self.name} opened")

        tasks: list[asyncio.Task] = []
        try:
            await self._send(snapshot_frame(self.controller.snapshot()))

            tasks = [
                asyncio.create_task(self._forward(subscription)),
                asyncio.create_task(self._receive_loop()),
            ]
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

            if subscription.evicted:
                await self.websocket.close(code=CLOSE_TRY_AGAIN)

            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(
                        f"Connection {self.name} failed: {task.exception()}",
                        exc_info=task.exception(),
                    )
        except WebSocketDisconnect:
            pass
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass
            subscription.close()
            logger.info(f"Connection {self.name} closed")

    async def _forward(self, subscription: Subscription) -> None:
        """Relay hub events to the peer in publish order."""
        try:
            while True:
                event = await subscription.get()
                await self._send(event.to_dict())
        except SubscriptionClosed:
            logger.debug(f"Subscription for {self.name} ended")
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Forwarding to {self.name} stopped: {e}")

    async def _receive_loop(self) -> None:
        while True:
            try:
                message = await self.websocket.receive_json()
            except WebSocketDisconnect:
                return
            except ValueError as e:
                await self._send(error_frame("invalid_message", f"Invalid JSON: {e}"))
                continue

            if not isinstance(message, dict):
                await self._send(error_frame("invalid_message", "Expected a JSON object"))
                continue

            await self.handle_message(message)

    async def handle_message(self, message: dict[str, Any]) -> None:
        """Dispatch one client frame."""
        message_type = message.get("type")

        if message_type == "submit_record":
            await self._handle_submit(message)
        elif message_type == "request_snapshot":
            await self._send(snapshot_frame(self.controller.snapshot()))
        elif message_type == "request_reset":
            await self._handle_reset(message)
        else:
            await self._send(
                error_frame("invalid_message", f"Unknown message type: {message_type}")
            )

    async def _handle_submit(self, message: dict[str, Any]) -> None:
        try:
            candidate = parse_candidate(message)
        except (KeyError, TypeError, ValueError) as e:
            await self._send(
                error_frame(
                    "invalid_message",
                    f"Malformed submit_record: {e}",
                    message.get("client_record_id"),
                )
            )
            return

        try:
            result = self.controller.submit(candidate)
        except StorageUnavailable as e:
            logger.error(f"Append from {self.name} failed: {e}")
            await self._send(
                error_frame("storage_unavailable", str(e), candidate.client_record_id)
            )
            return

        if isinstance(result, Rejected):
            await self._send({"type": "rejected", **result.to_dict()})

    async def _handle_reset(self, message: dict[str, Any]) -> None:
        explicit = bool(message.get("explicit", True))
        try:
            await self.controller.reset(explicit=explicit)
        except StorageUnavailable as e:
            logger.error(f"Reset requested by {self.name} failed: {e}")
            await self._send(error_frame("storage_unavailable", str(e)))
