"""
llama-server HTTP client for llama-kv-manager.

Provides an async client for the llama.cpp server control surface:
- GET  /health                       readiness probe
- GET  /slots                        slot state (idle/busy)
- POST /slots/{id}?action=save       write the slot's KV cache to <filename>
- POST /slots/{id}?action=restore    load the slot's KV cache from <filename>

One client serves every running server; the port and API key come from the
session descriptor on each call. Slot actions are never retried here, the
caller decides.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Literal

import aiohttp
import structlog

from llama_kv_manager.config import ServerConfig
from llama_kv_manager.errors import (
    ServerTimeoutError,
    ServerUnreachableError,
    SlotActionFailedError,
)

logger = structlog.get_logger()

SlotAction = Literal["save", "restore"]


@dataclass(frozen=True)
class SlotActionResult:
    """Outcome of a single slot action request."""

    ok: bool
    status_code: int
    body: Any = None


@dataclass
class SlotInfo:
    """State of one server slot as reported by GET /slots."""

    id: int
    is_processing: bool

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SlotInfo:
        """Create from a /slots entry."""
        return cls(
            id=int(data["id"]),
            is_processing=bool(data.get("is_processing", False)),
        )


class LlamaServerClient:
    """
    Async client for llama-server instances on the local host.

    Features:
    - Connection pooling shared across every running server
    - Explicit timeouts on every request
    - Bearer authentication per session

    Usage:
        async with LlamaServerClient(config) as client:
            if await client.health(session.port):
                await client.slot_action(session.port, session.api_key, 0, "save", "a.bin")
    """

    def __init__(self, config: ServerConfig | None = None):
        """
        Initialize the client.

        Args:
            config: Server configuration. Uses defaults if not provided.
        """
        self.config = config or ServerConfig()
        self._session: aiohttp.ClientSession | None = None
        self._closed = False

    async def __aenter__(self) -> LlamaServerClient:
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure HTTP session exists, creating if needed."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
            connector = aiohttp.TCPConnector(
                limit=self.config.max_connections,
                keepalive_timeout=30,
            )
            self._session = aiohttp.ClientSession(timeout=timeout, connector=connector)
            self._closed = False

        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._closed = True

    def base_url(self, port: int) -> str:
        """Base URL of the server listening on a port."""
        return f"http://{self.config.host}:{port}"

    @staticmethod
    def _auth_headers(api_key: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> tuple[int, Any]:
        """
        Make one HTTP request to a llama-server.

        Args:
            method: HTTP method (GET, POST)
            url: Full request URL
            json: JSON body for POST requests
            headers: Extra request headers
            timeout: Override default timeout

        Returns:
            (status code, parsed JSON body or raw text)

        Raises:
            ServerUnreachableError: On connection failure
            ServerTimeoutError: On timeout
        """
        session = await self._ensure_session()
        effective_timeout = timeout or self.config.request_timeout
        log = logger.bind(method=method, url=url)

        try:
            async with session.request(
                method,
                url,
                json=json,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=effective_timeout),
            ) as response:
                content_type = response.headers.get("Content-Type", "")
                if "application/json" in content_type:
                    body = await response.json()
                else:
                    body = await response.text()
                return response.status, body

        except asyncio.TimeoutError as e:
            log.warning("llama-server request timeout", timeout=effective_timeout)
            raise ServerTimeoutError(url, effective_timeout) from e

        except aiohttp.ClientError as e:
            log.warning("llama-server connection error", error=str(e))
            raise ServerUnreachableError(url, str(e)) from e

    async def health(self, port: int) -> bool:
        """
        Probe GET /health.

        Returns:
            True only for a 2xx answer; errors and non-success statuses
            (including 503 while the model loads) return False.
        """
        url = f"{self.base_url(port)}/health"
        try:
            status, _ = await self._request("GET", url, timeout=self.config.health_timeout)
        except Exception as e:
            logger.debug("Health check failed", url=url, error=str(e))
            return False

        if not 200 <= status < 300:
            logger.debug("Health check not ready", url=url, status=status)
            return False
        return True

    async def slot_action(
        self,
        port: int,
        api_key: str,
        slot_id: int,
        action: SlotAction,
        filename: str,
    ) -> SlotActionResult:
        """
        Issue POST /slots/{slot_id}?action={action} with {"filename": filename}.

        Exactly one request is sent; a non-success status is reported in the
        result rather than raised.
        """
        url = f"{self.base_url(port)}/slots/{slot_id}?action={action}"
        log = logger.bind(slot_id=slot_id, action=action, filename=filename, port=port)
        log.debug("Sending slot action")

        status, body = await self._request(
            "POST",
            url,
            json={"filename": filename},
            headers=self._auth_headers(api_key),
        )

        result = SlotActionResult(ok=200 <= status < 300, status_code=status, body=body)
        if not result.ok:
            log.warning("Slot action rejected", status=status, error=str(body)[:200])
        return result

    async def list_slots(self, port: int, api_key: str) -> list[SlotInfo]:
        """
        Fetch GET /slots.

        Raises:
            SlotActionFailedError: When the endpoint answers non-2xx
                (e.g. the server runs with --no-slots).
        """
        url = f"{self.base_url(port)}/slots"
        status, body = await self._request(
            "GET",
            url,
            headers=self._auth_headers(api_key),
            timeout=self.config.health_timeout,
        )

        if not 200 <= status < 300:
            raise SlotActionFailedError("query", status, str(body)[:200])
        if not isinstance(body, list):
            raise SlotActionFailedError("query", status, "unexpected /slots payload")

        return [SlotInfo.from_dict(entry) for entry in body if isinstance(entry, dict)]
