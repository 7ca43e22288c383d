"""Duplex transports carrying JSON frames between agent and server."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import websockets
from websockets.exceptions import WebSocketException

from ..errors import TransportLost

logger = logging.getLogger(__name__)


class Transport(ABC):
    """One reliable, ordered duplex channel to the server.

    Every failure surfaces as TransportLost.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the channel."""

    @abstractmethod
    async def send(self, frame: dict[str, Any]) -> None:
        """Send one frame."""

    @abstractmethod
    async def receive(self) -> dict[str, Any]:
        """Wait for the next frame."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""


class WebSocketTransport(Transport):
    """Transport over a WebSocket using the ``websockets`` library."""

    def __init__(self, url: str, open_timeout: float = 10.0):
        self.url = url
        self.open_timeout = open_timeout
        self._ws = None

    async def connect(self) -> None:
        try:
            self._ws = await websockets.connect(self.url, open_timeout=self.open_timeout)
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            raise TransportLost(f"Could not connect to {self.url}: {e}") from e
        logger.debug(f"WebSocket connected to {self.url}")

    async def send(self, frame: dict[str, Any]) -> None:
        if self._ws is None:
            raise TransportLost("Not connected")
        try:
            await self._ws.send(json.dumps(frame))
        except (WebSocketException, OSError) as e:
            raise TransportLost(f"Send failed: {e}") from e

    async def receive(self) -> dict[str, Any]:
        if self._ws is None:
            raise TransportLost("Not connected")
        try:
            raw = await self._ws.recv()
        except (WebSocketException, OSError) as e:
            raise TransportLost(f"Connection closed: {e}") from e

        try:
            frame = json.loads(raw)
        except ValueError as e:
            raise TransportLost(f"Undecodable frame from server: {e}") from e
        if not isinstance(frame, dict):
            raise TransportLost("Server sent a non-object frame")
        return frame

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (WebSocketException, OSError) as e:
                logger.debug(f"Error closing WebSocket: {e}")
