"""
Collector component port definitions.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class TimerPort(Protocol):
    """Schedules callbacks on the collector's event loop."""

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        """Run callback once after delay_seconds."""
        ...


class BeaconPort(Protocol):
    """Fire-and-forget send with no response channel."""

    def send(self, url: str, body: str) -> bool:
        """
        Queue body for delivery.

        True only means "accepted for send", never "delivered".
        """
        ...


class HttpPort(Protocol):
    """Request with observable completion."""

    async def post(self, url: str, body: str) -> int:
        """POST a JSON body and return the status code. May raise on network errors."""
        ...


class ClockPort(Protocol):
    def now_ms(self) -> int:
        """Epoch milliseconds."""
        ...
