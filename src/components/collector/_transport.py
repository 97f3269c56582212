"""
TransportLayer - Delivers a batch to the collection endpoint.

Fire-and-forget beacon first; an awaited HTTP request only when no beacon
is available. Never raises: every local problem becomes an outcome.
"""

from __future__ import annotations

import json
import logging

from .models import Batch, DeliveryOutcome
from .ports import BeaconPort, HttpPort

logger = logging.getLogger(__name__)

# Statuses meaning the endpoint refused the content itself, so resending
# the same batch cannot succeed
REJECTED_STATUSES = frozenset({400, 404, 429})


class TransportLayer:
    def __init__(
        self,
        endpoint: str,
        site_id: str,
        beacon: BeaconPort | None = None,
        http: HttpPort | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._site_id = site_id
        self._beacon = beacon
        self._http = http

    @property
    def has_beacon(self) -> bool:
        return self._beacon is not None

    def serialize(self, batch: Batch) -> str:
        """JSON array of the batch's wire payloads."""
        payloads = [event.to_payload(self._site_id) for event in batch.events]
        return json.dumps(payloads, separators=(",", ":"))

    def _beacon_send(self, batch: Batch) -> DeliveryOutcome | None:
        # None means no beacon is available
        if self._beacon is None:
            return None
        try:
            body = self.serialize(batch)
            accepted = self._beacon.send(self._endpoint, body)
        except (TypeError, ValueError) as e:
            logger.debug("Batch %d not serializable: %s", batch.sequence, e)
            return DeliveryOutcome.FAILED
        except Exception as e:
            logger.debug("Beacon raised for batch %d: %s", batch.sequence, e)
            return DeliveryOutcome.FAILED

        # Accepted for send is treated as delivered; there is no confirmation
        if accepted:
            return DeliveryOutcome.DELIVERED
        logger.debug("Beacon refused batch %d", batch.sequence)
        return DeliveryOutcome.FAILED

    async def send(self, batch: Batch) -> DeliveryOutcome:
        """Deliver a batch, preferring the beacon."""
        outcome = self._beacon_send(batch)
        if outcome is not None:
            return outcome

        if self._http is None:
            logger.debug("No transport available for batch %d", batch.sequence)
            return DeliveryOutcome.FAILED

        try:
            body = self.serialize(batch)
        except (TypeError, ValueError) as e:
            logger.debug("Batch %d not serializable: %s", batch.sequence, e)
            return DeliveryOutcome.FAILED

        try:
            status = await self._http.post(self._endpoint, body)
        except Exception as e:
            logger.debug("Request for batch %d failed: %s", batch.sequence, e)
            return DeliveryOutcome.FAILED

        if 200 <= status < 300:
            return DeliveryOutcome.DELIVERED
        if status in REJECTED_STATUSES:
            logger.debug("Endpoint rejected batch %d with %d", batch.sequence, status)
            return DeliveryOutcome.REJECTED
        logger.debug("Endpoint returned %d for batch %d", status, batch.sequence)
        return DeliveryOutcome.FAILED

    def send_unload(self, batch: Batch) -> DeliveryOutcome:
        """Beacon-only send that never waits, for page unload."""
        outcome = self._beacon_send(batch)
        if outcome is None:
            logger.debug("No beacon for unload batch %d", batch.sequence)
            return DeliveryOutcome.FAILED
        return outcome
