"""
Tests for TransportLayer.
"""

from __future__ import annotations

import json

import httpx
import pytest

from src.components.collector import Batch, DeliveryOutcome, Event, TransportLayer

ENDPOINT = "https://collect.example/api/track"


class FakeBeacon:
    def __init__(self, accept: bool = True, error: Exception | None = None) -> None:
        self.accept = accept
        self.error = error
        self.calls: list[tuple[str, str]] = []

    def send(self, url: str, body: str) -> bool:
        self.calls.append((url, body))
        if self.error:
            raise self.error
        return self.accept


class FakeHttp:
    def __init__(self, status: int = 200, error: Exception | None = None) -> None:
        self.status = status
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def post(self, url: str, body: str) -> int:
        self.calls.append((url, body))
        if self.error:
            raise self.error
        return self.status


def make_batch(*events: Event, unload: bool = False) -> Batch:
    if not events:
        events = (Event(type="pageview", timestamp=1_700_000_000_000, path="/"),)
    return Batch(events=tuple(events), sequence=1, created_at=0.0, unload=unload)


class TestSerialize:
    def test_json_array_of_payloads(self) -> None:
        transport = TransportLayer(ENDPOINT, "site-1")
        batch = make_batch(
            Event(
                type="pageview",
                timestamp=1_700_000_000_000,
                url="https://shop.example/a/b?x=1",
                referrer="https://ref.example/",
            ),
            Event(type="event", timestamp=1_700_000_000_500, path="/c", attributes={"action": "buy"}),
        )

        payloads = json.loads(transport.serialize(batch))

        assert payloads == [
            {
                "siteId": "site-1",
                "type": "pageview",
                "path": "/a/b",
                "timestamp": 1_700_000_000_000,
                "url": "https://shop.example/a/b?x=1",
                "referrer": "https://ref.example/",
            },
            {
                "siteId": "site-1",
                "type": "event",
                "path": "/c",
                "timestamp": 1_700_000_000_500,
                "customData": {"action": "buy"},
            },
        ]

    def test_path_defaults_to_root(self) -> None:
        transport = TransportLayer(ENDPOINT, "site-1")
        payloads = json.loads(transport.serialize(make_batch(Event(type="pageview", timestamp=1))))
        assert payloads[0]["path"] == "/"


class TestBeaconPath:
    @pytest.mark.asyncio
    async def test_accepted_is_delivered(self) -> None:
        beacon = FakeBeacon(accept=True)
        http = FakeHttp()
        transport = TransportLayer(ENDPOINT, "site-1", beacon=beacon, http=http)

        assert await transport.send(make_batch()) is DeliveryOutcome.DELIVERED
        assert beacon.calls[0][0] == ENDPOINT
        assert http.calls == []

    @pytest.mark.asyncio
    async def test_refused_is_failed(self) -> None:
        transport = TransportLayer(ENDPOINT, "site-1", beacon=FakeBeacon(accept=False), http=FakeHttp())
        assert await transport.send(make_batch()) is DeliveryOutcome.FAILED

    @pytest.mark.asyncio
    async def test_raising_beacon_is_failed(self) -> None:
        transport = TransportLayer(ENDPOINT, "site-1", beacon=FakeBeacon(error=RuntimeError("boom")))
        assert await transport.send(make_batch()) is DeliveryOutcome.FAILED

    @pytest.mark.asyncio
    async def test_unserializable_batch_is_failed(self) -> None:
        transport = TransportLayer(ENDPOINT, "site-1", beacon=FakeBeacon())
        batch = make_batch(Event(type="event", timestamp=1, attributes={"bad": object()}))
        assert await transport.send(batch) is DeliveryOutcome.FAILED


class TestRequestFallback:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [200, 202, 204])
    async def test_2xx_is_delivered(self, status: int) -> None:
        http = FakeHttp(status=status)
        transport = TransportLayer(ENDPOINT, "site-1", http=http)
        assert await transport.send(make_batch()) is DeliveryOutcome.DELIVERED
        assert len(http.calls) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 502, 503, 301])
    async def test_other_status_is_failed(self, status: int) -> None:
        transport = TransportLayer(ENDPOINT, "site-1", http=FakeHttp(status=status))
        assert await transport.send(make_batch()) is DeliveryOutcome.FAILED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 404, 429])
    async def test_refused_content_is_rejected(self, status: int) -> None:
        transport = TransportLayer(ENDPOINT, "site-1", http=FakeHttp(status=status))
        assert await transport.send(make_batch()) is DeliveryOutcome.REJECTED

    @pytest.mark.asyncio
    async def test_network_error_is_failed(self) -> None:
        http = FakeHttp(error=httpx.ConnectError("unreachable"))
        transport = TransportLayer(ENDPOINT, "site-1", http=http)
        assert await transport.send(make_batch()) is DeliveryOutcome.FAILED

    @pytest.mark.asyncio
    async def test_no_transport_is_failed(self) -> None:
        transport = TransportLayer(ENDPOINT, "site-1")
        assert await transport.send(make_batch()) is DeliveryOutcome.FAILED


class TestUnload:
    def test_unload_uses_beacon(self) -> None:
        beacon = FakeBeacon()
        transport = TransportLayer(ENDPOINT, "site-1", beacon=beacon, http=FakeHttp())
        assert transport.send_unload(make_batch(unload=True)) is DeliveryOutcome.DELIVERED
        assert len(beacon.calls) == 1

    def test_unload_never_falls_back_to_request(self) -> None:
        http = FakeHttp()
        transport = TransportLayer(ENDPOINT, "site-1", http=http)
        assert transport.send_unload(make_batch(unload=True)) is DeliveryOutcome.FAILED
        assert http.calls == []
