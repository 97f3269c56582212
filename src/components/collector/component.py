"""
Collector component - Buffered, ordered event delivery for one site.

The Python counterpart of the embedded tracking script. A Collector is an
explicit instance built from CollectorConfig; there is no shared global.
All methods must be called from the event loop the collector runs on;
calls made with no running loop are logged and ignored.

Invariants:
- I1: The queue never holds more than max_queue_size events
- I2: Only the unload batch may exceed batch_size events
- I3: Batches are delivered in enqueue order; a failed batch is retried
  before any later batch is first sent, including the unload batch
- I4: No batch is retried more than max_retries times
- I5: Failures are logged, never raised to the host application
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Coroutine, Mapping
from typing import Any

import httpx

from src.adapters.clock import SystemClock
from src.adapters.http_transport import AsyncioTimer, HttpxBeacon, HttpxSender

from ._queue import BatchScheduler, EventQueue
from ._retry import OfflineRetryManager
from ._transport import TransportLayer
from .models import Batch, CollectorConfig, DeliveryOutcome, Event, utm_from_url
from .ports import BeaconPort, ClockPort, HttpPort, TimerPort

logger = logging.getLogger(__name__)


class Collector:
    """Tracks pageviews and events and delivers them in batches."""

    def __init__(
        self,
        config: CollectorConfig,
        *,
        beacon: BeaconPort | None = None,
        http: HttpPort | None = None,
        timer: TimerPort | None = None,
        clock: ClockPort | None = None,
        online: bool = True,
    ) -> None:
        self._config = config
        self._clock = clock or SystemClock()
        timer = timer or AsyncioTimer()

        if config.debug:
            logging.getLogger(__package__).setLevel(logging.DEBUG)

        self._queue = EventQueue(config.max_queue_size)
        self._transport = TransportLayer(config.endpoint, config.site_id, beacon, http)
        self._retry = OfflineRetryManager(
            resend=self._transport.send,
            timer=timer,
            spawn=self._spawn,
            max_retries=config.max_retries,
            retry_delay_ms=config.retry_delay_ms,
            online=online,
        )
        self._scheduler = BatchScheduler(
            queue=self._queue,
            timer=timer,
            dispatch=self._dispatch,
            batch_size=config.batch_size,
            flush_interval_ms=config.flush_interval_ms,
            clock=lambda: self._clock.now_ms() / 1000,
        )
        self._tasks: set[asyncio.Task[None]] = set()
        self._current_url: str | None = None
        self._session_id = str(uuid.uuid4())
        self._page_count = 0
        self._started = False
        self._closed = False

    @property
    def config(self) -> CollectorConfig:
        return self._config

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def queue(self) -> EventQueue:
        return self._queue

    @property
    def retry_manager(self) -> OfflineRetryManager:
        return self._retry

    # --- Tracking API ---

    def start(
        self,
        url: str | None = None,
        path: str | None = None,
        referrer: str | None = None,
    ) -> None:
        """Begin tracking; records the initial pageview when auto_track is on."""
        if self._started:
            return
        self._started = True
        self._current_url = url
        logger.debug("Collector started for site %s", self._config.site_id)
        if self._config.auto_track:
            self.track_pageview(url=url, path=path, referrer=referrer)

    def track_pageview(
        self,
        url: str | None = None,
        path: str | None = None,
        referrer: str | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> bool:
        if url is not None:
            self._current_url = url
        if not self._loop_running("pageview"):
            return False
        self._page_count += 1
        return self._enqueue(
            "pageview",
            url,
            path,
            referrer,
            attributes,
            page_count=self._page_count,
            utm=utm_from_url(url),
        )

    def track(self, name: str, properties: Mapping[str, Any] | None = None) -> bool:
        """Track a named custom event."""
        attributes = {**(properties or {}), "category": "custom", "action": name}
        return self._enqueue("event", self._current_url, None, None, attributes)

    def track_event(
        self,
        category: str,
        action: str,
        label: str | None = None,
        value: float | int | None = None,
    ) -> bool:
        attributes: dict[str, Any] = {"category": category, "action": action}
        if label is not None:
            attributes["label"] = label
        if value is not None:
            attributes["value"] = value
        return self._enqueue("event", self._current_url, None, None, attributes)

    def route_changed(self, url: str, path: str | None = None) -> bool:
        """Client-side navigation. Tracked as a pageview only in SPA mode."""
        if not self._config.spa or url == self._current_url:
            return False
        previous = self._current_url
        return self.track_pageview(url=url, path=path, referrer=previous)

    # --- Lifecycle ---

    def unload(self) -> Batch | None:
        """
        Send everything queued through the beacon, without waiting.

        Batches held for a retry go first; if one of them fails, the unload
        batch queues behind it instead of overtaking it.
        """
        if not self._loop_running("unload"):
            return None
        return self._scheduler.flush_all()

    def flush(self) -> bool:
        """Send one batch now instead of waiting for the timer."""
        if not self._loop_running("flush"):
            return False
        return self._scheduler.flush()

    def set_online_status(self, online: bool) -> None:
        if not self._loop_running("connectivity change"):
            return
        self._retry.set_online_status(online)

    async def wait_idle(self) -> None:
        """Wait until no delivery attempt is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Unload, stop timers and wait for in-flight attempts."""
        if self._closed:
            return
        self.unload()
        self._closed = True
        self._scheduler.cancel()
        self._retry.close()
        await self.wait_idle()
        if self._retry.pending:
            logger.warning(
                "Collector closed with %d undelivered batch(es)", len(self._retry.pending)
            )

    # --- Internals ---

    def _enqueue(
        self,
        event_type: str,
        url: str | None,
        path: str | None,
        referrer: str | None,
        attributes: Mapping[str, Any] | None,
        page_count: int | None = None,
        utm: Mapping[str, str] | None = None,
    ) -> bool:
        if self._closed:
            logger.debug("Collector closed, %s not tracked", event_type)
            return False
        if not self._loop_running(event_type):
            return False
        event = Event(
            type=event_type,
            timestamp=self._clock.now_ms(),
            url=url,
            path=path,
            referrer=referrer,
            attributes=dict(attributes or {}),
            session_id=self._session_id,
            page_count=page_count,
            utm=utm or None,
        )
        return self._scheduler.add(event)

    def _loop_running(self, action: str) -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, %s ignored", action)
            return False
        return True

    def _dispatch(self, batch: Batch) -> None:
        if not batch.unload:
            self._retry.submit(batch)
            return

        if not self._retry.send_held(self._transport.send_unload):
            self._retry.submit(batch)
            return

        outcome = self._transport.send_unload(batch)
        if outcome is not DeliveryOutcome.DELIVERED:
            self._retry.on_failure(batch)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


class _OwnedCollector(Collector):
    def __init__(self, config: CollectorConfig, closers: list[Any], **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self._closers = closers

    async def close(self) -> None:
        await super().close()
        for closer in self._closers:
            await closer.close()


def create_collector(
    config: CollectorConfig,
    client: httpx.AsyncClient | None = None,
    use_beacon: bool = True,
    online: bool = True,
) -> Collector:
    """
    Create a Collector using httpx transports.

    With use_beacon the fire-and-forget path is used; otherwise every batch
    is an awaited request whose status decides the outcome. A client passed
    in is left open on close.
    """
    beacon = HttpxBeacon(client, max_bytes=config.beacon_max_bytes) if use_beacon else None
    http = HttpxSender(client)
    closers: list[Any] = [http] + ([beacon] if beacon is not None else [])
    return _OwnedCollector(config, closers, beacon=beacon, http=http, online=online)
