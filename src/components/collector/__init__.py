"""
Collector component - Buffered, ordered event delivery.
"""

from ._queue import BatchScheduler, EventQueue
from ._retry import OfflineRetryManager
from ._transport import REJECTED_STATUSES, TransportLayer
from .component import Collector, create_collector
from .models import DEFAULT_ENDPOINT, Batch, CollectorConfig, DeliveryOutcome, Event
from .ports import BeaconPort, ClockPort, HttpPort, TimerHandle, TimerPort

__all__ = [
    # Facade
    "Collector",
    "create_collector",
    # Building blocks
    "EventQueue",
    "BatchScheduler",
    "TransportLayer",
    "OfflineRetryManager",
    "REJECTED_STATUSES",
    # Models
    "DEFAULT_ENDPOINT",
    "Batch",
    "CollectorConfig",
    "DeliveryOutcome",
    "Event",
    # Ports
    "BeaconPort",
    "ClockPort",
    "HttpPort",
    "TimerHandle",
    "TimerPort",
]
