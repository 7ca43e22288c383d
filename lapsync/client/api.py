"""HTTP client for the lapsync REST API.

Used by the CLI for one-shot commands (status, snapshot, reset, logs) where a
live WebSocket connection would be overkill.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any

import httpx

from ..ledger.records import LapRecord

logger = logging.getLogger(__name__)


class APIError(Exception):
    """The server answered with an error or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class LapSyncAPI:
    """Thin async wrapper over the server's JSON endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the API client.

        Args:
            base_url: Server URL (e.g., "http://timing-desk:5000").
            timeout: Request timeout in seconds.
            max_retries: Attempts for connection failures and 5xx answers.
            transport: Optional httpx transport, e.g. for tests.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self._transport = transport

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
        retry_server_errors: bool = True,
    ) -> Any:
        """Make HTTP request with exponential backoff retry.

        Raises:
            APIError: Client error, or retries exhausted.
        """
        url = f"{self.base_url}{path}"
        backoff = 1.0
        last_error: APIError | None = None

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.request(method, url, json=json_data, params=params)

                    if response.status_code == 200:
                        return response.json()

                    body = _json_or_text(response)
                    last_error = APIError(
                        f"HTTP {response.status_code}: {body}",
                        status_code=response.status_code,
                        body=body,
                    )
                    if response.status_code < 500 or not retry_server_errors:
                        # Client error, don't retry
                        raise last_error

                    logger.warning(
                        f"Server error {response.status_code}, "
                        f"attempt {attempt + 1}/{self.max_retries}"
                    )

                except httpx.ConnectError as e:
                    last_error = APIError(f"Connection to {self.base_url} failed: {e}")
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    last_error = APIError(f"Request to {url} timed out")
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )

                # Exponential backoff
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        raise last_error or APIError(f"Max retries ({self.max_retries}) exceeded")

    async def health(self) -> dict[str, Any]:
        return await self._request_with_retry("GET", "/api/health")

    async def get_session(self) -> dict[str, Any]:
        return await self._request_with_retry("GET", "/api/session")

    async def get_snapshot(self) -> tuple[dict[str, Any], list[LapRecord]]:
        """Fetch the current session and its records.

        Returns:
            Tuple of (session dict, records in ledger order).
        """
        data = await self._request_with_retry("GET", "/api/snapshot")
        records = [LapRecord.from_dict(r) for r in data.get("records", [])]
        session = {k: v for k, v in data.items() if k != "records"}
        return session, records

    async def submit_record(
        self,
        elapsed_ms: int,
        client_record_id: str | None = None,
        session_id: str | None = None,
        captured_at: datetime | None = None,
    ) -> LapRecord:
        """Append one lap.

        Raises:
            APIError: 409 if the session is stale, 503 if storage failed.
        """
        # Minted once so every retry carries the same lap id
        payload: dict[str, Any] = {
            "elapsed_ms": elapsed_ms,
            "client_record_id": client_record_id or uuid.uuid4().hex,
        }
        if session_id:
            payload["session_id"] = session_id
        if captured_at:
            payload["captured_at"] = captured_at.isoformat()

        data = await self._request_with_retry("POST", "/api/records", payload)
        return LapRecord.from_dict(data)

    async def request_reset(self) -> dict[str, Any]:
        """Clear the current session. Returns the new session."""
        return await self._request_with_retry(
            "POST", "/api/reset", {"explicit": True}, retry_server_errors=False
        )

    async def get_stats(self) -> dict[str, Any]:
        return await self._request_with_retry("GET", "/api/stats")

    async def get_server_logs(self, limit: int | None = None) -> list[dict[str, Any]]:
        params = {"limit": limit} if limit else None
        data = await self._request_with_retry("GET", "/api/server-logs", params=params)
        return data.get("logs", [])

    async def clear_server_logs(self) -> int:
        data = await self._request_with_retry("DELETE", "/api/server-logs")
        return data.get("cleared", 0)


def _json_or_text(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text
