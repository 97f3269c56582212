"""
EventQueue and BatchScheduler - When and what to flush.

Both run on the collector's single event loop: queue mutations, scheduling
decisions and timer callbacks complete before yielding, so no lock is
needed. A plain in-progress flag stops a dispatch that re-enters the
scheduler from flushing the same segment twice.

Key behaviors:
- The queue is FIFO and bounded; add beyond capacity is refused unchanged
- Reaching batch_size flushes exactly batch_size events immediately
- Otherwise a flush timer is armed; on expiry it flushes a (possibly
  partial) batch and re-arms only while events remain
- flush_all drains everything into one unload batch, ignoring batch_size
"""

from __future__ import annotations

import itertools
import logging
import time
from collections import deque
from collections.abc import Callable

from .models import Batch, Event
from .ports import TimerHandle, TimerPort

logger = logging.getLogger(__name__)


class EventQueue:
    """Ordered, capacity-bounded buffer of pending events."""

    def __init__(self, max_size: int) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._events: deque[Event] = deque()

    @property
    def max_size(self) -> int:
        return self._max_size

    def add(self, event: Event) -> bool:
        """Append an event. Returns False, leaving the queue untouched, when full."""
        if len(self._events) >= self._max_size:
            return False
        self._events.append(event)
        return True

    def drain(self, n: int) -> list[Event]:
        """Remove and return up to n oldest events."""
        count = min(max(n, 0), len(self._events))
        return [self._events.popleft() for _ in range(count)]

    def length(self) -> int:
        return len(self._events)

    def __len__(self) -> int:
        return len(self._events)


class BatchScheduler:
    """Decides when to drain the queue and hands each batch to dispatch."""

    def __init__(
        self,
        queue: EventQueue,
        timer: TimerPort,
        dispatch: Callable[[Batch], None],
        batch_size: int,
        flush_interval_ms: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._queue = queue
        self._timer = timer
        self._dispatch = dispatch
        self._batch_size = batch_size
        self._interval = flush_interval_ms / 1000
        self._clock = clock
        self._handle: TimerHandle | None = None
        self._flushing = False
        self._sequence = itertools.count(1)

    @property
    def timer_armed(self) -> bool:
        return self._handle is not None

    def add(self, event: Event) -> bool:
        """Enqueue an event and apply the flush triggers."""
        if not self._queue.add(event):
            logger.warning("Event queue full (%d), event dropped", self._queue.max_size)
            return False

        while len(self._queue) >= self._batch_size:
            if not self.flush():
                break

        if len(self._queue) and self._handle is None:
            self._arm()
        return True

    def flush(self) -> bool:
        """
        Dispatch one batch of at most batch_size events.

        Returns True if a batch was dispatched. No-op on an empty queue or
        while another flush is running.
        """
        if self._flushing or not len(self._queue):
            return False

        self._flushing = True
        try:
            events = self._queue.drain(self._batch_size)
            self._dispatch(self._new_batch(events, unload=False))
        finally:
            self._flushing = False
        return True

    def flush_all(self) -> Batch | None:
        """Drain everything into one unload batch, bypassing size and timer."""
        self.cancel()
        if self._flushing or not len(self._queue):
            return None

        self._flushing = True
        try:
            batch = self._new_batch(self._queue.drain(len(self._queue)), unload=True)
            self._dispatch(batch)
        finally:
            self._flushing = False
        return batch

    def cancel(self) -> None:
        """Disarm the flush timer, if armed."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _arm(self) -> None:
        try:
            self._handle = self._timer.call_later(self._interval, self._on_timer)
        except RuntimeError as e:
            # No running loop; the events stay queued for the next flush
            logger.warning("Flush timer not armed: %s", e)

    def _on_timer(self) -> None:
        self._handle = None
        self.flush()
        if len(self._queue):
            self._arm()

    def _new_batch(self, events: list[Event], unload: bool) -> Batch:
        return Batch(
            events=tuple(events),
            sequence=next(self._sequence),
            created_at=self._clock(),
            unload=unload,
        )
