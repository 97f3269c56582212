"""
httpx and asyncio adapters for the collector ports.

- AsyncioTimer: TimerPort on the running event loop
- HttpxSender: HttpPort, an awaited POST with an observable status
- HttpxBeacon: BeaconPort, a POST started in the background whose result
  is never reported back
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
JSON_HEADERS = {"Content-Type": "application/json"}


class AsyncioTimer:
    """Timer backed by loop.call_later. Must be used from inside the loop."""

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(max(delay_seconds, 0.0), callback)


class _ClientHolder:
    def __init__(self, client: httpx.AsyncClient | None, timeout: float):
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                headers=JSON_HEADERS,
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


class HttpxSender(_ClientHolder):
    """Awaited POST returning the response status."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        super().__init__(client, timeout)

    async def post(self, url: str, body: str) -> int:
        client = self._get_client()
        response = await client.post(url, content=body.encode("utf-8"), headers=JSON_HEADERS)
        return response.status_code


class HttpxBeacon(_ClientHolder):
    """
    Fire-and-forget POST.

    send() only reports whether the body was accepted for sending: it is
    refused when larger than max_bytes, when no event loop is running, or
    after close(). Network errors and response statuses are not observable.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        max_bytes: int = 65536,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        super().__init__(client, timeout)
        self._max_bytes = max_bytes
        self._closed = False
        self._tasks: set[asyncio.Task[None]] = set()

    def send(self, url: str, body: str) -> bool:
        if self._closed:
            return False

        data = body.encode("utf-8")
        if len(data) > self._max_bytes:
            logger.debug("Beacon body of %d bytes exceeds %d", len(data), self._max_bytes)
            return False

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False

        task = loop.create_task(self._post(url, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _post(self, url: str, data: bytes) -> None:
        try:
            await self._get_client().post(url, content=data, headers=JSON_HEADERS)
        except httpx.HTTPError as e:
            logger.debug("Beacon delivery failed: %s", e)

    async def drain(self) -> None:
        """Wait for beacon requests already started."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        await self.drain()
        await super().close()
