"""
OfflineRetryManager - Connectivity-aware, ordered, bounded delivery.

Every non-unload batch passes through here so that delivery order matches
enqueue order: a failed batch is always retried before any later batch is
first sent, and at most one attempt is in flight at a time.

Per batch: Pending(n) -> Delivered, Pending(n + 1), or Dropped once n
reaches max_retries. Retry n waits retry_delay_ms * (n + 1). A batch that
has never been attempted waits for nothing but its turn.

At unload, held batches go out through send_held ahead of the unload
batch; if one fails, the unload batch queues behind it instead.

Dropping is the documented data-loss boundary and is always logged.
"""

from __future__ import annotations

import bisect
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from typing import Any

from .models import Batch, DeliveryOutcome
from .ports import TimerHandle, TimerPort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Entry:
    batch: Batch
    failed: bool

    @property
    def sequence(self) -> int:
        return self.batch.sequence


class OfflineRetryManager:
    def __init__(
        self,
        resend: Callable[[Batch], Awaitable[DeliveryOutcome]],
        timer: TimerPort,
        spawn: Callable[[Coroutine[Any, Any, None]], object],
        max_retries: int,
        retry_delay_ms: int,
        online: bool = True,
    ) -> None:
        self._resend = resend
        self._timer = timer
        self._spawn = spawn
        self._max_retries = max_retries
        self._retry_delay_ms = retry_delay_ms
        self._online = online
        self._pending: list[_Entry] = []
        self._in_flight: _Entry | None = None
        self._handle: TimerHandle | None = None
        self.delivered = 0
        self.dropped = 0

    @property
    def online(self) -> bool:
        return self._online

    @property
    def pending(self) -> tuple[Batch, ...]:
        return tuple(e.batch for e in self._pending)

    @property
    def busy(self) -> bool:
        """True while anything is queued, waiting or in flight."""
        return bool(self._pending) or self._in_flight is not None

    def delay_for(self, batch: Batch) -> float:
        """Linear backoff in seconds before retrying batch."""
        return self._retry_delay_ms * (batch.retry_count + 1) / 1000

    def submit(self, batch: Batch) -> None:
        """Queue a fresh batch; sent at once if online and nothing is ahead of it."""
        self._insert(_Entry(batch, failed=False))
        self._schedule()

    def on_failure(self, batch: Batch) -> None:
        """Take over a batch whose attempt failed with retry_count retries spent."""
        if batch.retry_count >= self._max_retries:
            self._drop(batch, "retries exhausted")
            return
        self._insert(_Entry(batch, failed=True))
        self._schedule()

    def set_online_status(self, online: bool) -> None:
        """Apply a connectivity change. Changes are processed in call order."""
        if online == self._online:
            return
        self._online = online
        logger.debug("Connectivity changed: %s", "online" if online else "offline")
        if online:
            self._schedule()
        else:
            # The head entry stays pending and is rescheduled when back online
            self._cancel_timer()

    def send_held(self, send: Callable[[Batch], DeliveryOutcome]) -> bool:
        """
        Send every waiting batch now, in order, through a synchronous sender.

        Used at unload so no later batch overtakes a held one. Stops at the
        first batch that fails, leaving it and everything after it pending.
        Nothing is attempted while offline. Returns True when no batch is
        left waiting.
        """
        if not self._online:
            return not self._pending

        self._cancel_timer()
        while self._pending:
            entry = self._pending.pop(0)
            if not self._settle(entry, send(entry.batch)):
                self._schedule()
                return False
        return True

    def close(self) -> None:
        self._cancel_timer()

    def _insert(self, entry: _Entry) -> None:
        keys = [e.sequence for e in self._pending]
        self._pending.insert(bisect.bisect(keys, entry.sequence), entry)

    def _drop(self, batch: Batch, reason: str) -> None:
        self.dropped += 1
        logger.warning(
            "Dropped batch of %d event(s) after %d retries: %s",
            len(batch),
            batch.retry_count,
            reason,
        )

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _schedule(self) -> None:
        if not self._online or self._in_flight is not None or self._handle is not None:
            return
        if not self._pending:
            return

        head = self._pending[0]
        if not head.failed:
            self._start_attempt()
            return
        try:
            self._handle = self._timer.call_later(self.delay_for(head.batch), self._on_timer)
        except RuntimeError as e:
            logger.warning("Retry for batch %d not scheduled: %s", head.sequence, e)

    def _on_timer(self) -> None:
        self._handle = None
        if self._online and self._in_flight is None and self._pending:
            self._start_attempt()

    def _start_attempt(self) -> None:
        entry = self._pending.pop(0)
        self._in_flight = entry
        self._spawn(self._attempt(entry))

    async def _attempt(self, entry: _Entry) -> None:
        try:
            outcome = await self._resend(entry.batch)
        finally:
            self._in_flight = None

        self._settle(entry, outcome)
        self._schedule()

    def _settle(self, entry: _Entry, outcome: DeliveryOutcome) -> bool:
        """Apply an attempt's outcome. False means the batch is pending a retry."""
        if outcome is DeliveryOutcome.DELIVERED:
            self.delivered += 1
            return True
        if outcome is DeliveryOutcome.REJECTED:
            self._drop(entry.batch, "rejected by endpoint")
            return True

        attempted = entry.batch.next_attempt() if entry.failed else entry.batch
        if attempted.retry_count >= self._max_retries:
            self._drop(attempted, "retries exhausted")
            return True
        self._insert(_Entry(attempted, failed=True))
        return False
