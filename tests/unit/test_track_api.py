"""
Tests for the collection endpoint (POST /track).
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

from src.api.deps import get_ingestion_service, get_rules
from src.api.main import app
from src.app_shell.rate_limit import RateLimiter
from src.components.analytics import (
    IngestionConfig,
    IngestionService,
    InMemoryPageviewStore,
    StaticSitePolicy,
    StorageError,
)
from src.components.anonymize import create_anonymization_service

NOW = datetime(2026, 3, 14, 12, 0, 0, tzinfo=UTC)
PEER = ("198.51.100.23", 50000)
HEADERS = {"User-Agent": "Mozilla/5.0 Test"}


class MockTimePort:
    def now_utc(self) -> datetime:
        return NOW


class FailingStore:
    def store_many(self, records) -> None:
        raise StorageError("disk full")


@pytest.fixture
def store() -> InMemoryPageviewStore:
    return InMemoryPageviewStore()


def make_service(store, **kwargs) -> IngestionService:
    time_port = MockTimePort()
    kwargs.setdefault("rate_limiter", RateLimiter(clock=lambda: time_port.now_utc().timestamp()))
    kwargs.setdefault("site_policy", StaticSitePolicy({"site-1"}))
    return IngestionService(
        store=store,
        anonymizer=create_anonymization_service(b"api-test-key", time_port=time_port),
        time_port=time_port,
        **kwargs,
    )


@pytest.fixture
def client(store, rules):
    service = make_service(store)
    app.dependency_overrides[get_ingestion_service] = lambda: service
    app.dependency_overrides[get_rules] = lambda: rules
    yield TestClient(app, client=PEER)
    app.dependency_overrides.clear()


def override_service(service) -> None:
    app.dependency_overrides[get_ingestion_service] = lambda: service


class TestTrackSuccess:
    def test_single_payload(self, client, store) -> None:
        response = client.post(
            "/track",
            json={"siteId": "site-1", "path": "/pricing", "referrer": "https://x.example/?q=1"},
            headers=HEADERS,
        )
        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert len(store.get_all()) == 1

    def test_batch_array(self, client, store) -> None:
        response = client.post(
            "/track",
            json=[
                {"siteId": "site-1", "path": "/", "type": "pageview"},
                {"siteId": "site-1", "path": "/", "type": "event", "customData": {"action": "signup"}},
            ],
            headers=HEADERS,
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "accepted": 2}
        assert len(store.get_all()) == 2

    def test_api_prefix_route(self, client, store) -> None:
        response = client.post("/api/track", json={"siteId": "site-1", "path": "/"}, headers=HEADERS)
        assert response.status_code == 200

    def test_response_never_echoes_visitor_id(self, client, store) -> None:
        response = client.post("/track", json={"siteId": "site-1", "path": "/"}, headers=HEADERS)
        visitor_id = store.get_all()[0].visitor_id
        assert visitor_id not in response.text
        assert "198.51.100.23" not in response.text


class TestTrackErrors:
    @pytest.mark.parametrize(
        "payload",
        [{"path": "/"}, {"siteId": "site-1"}, {"siteId": "", "path": "/"}],
    )
    def test_missing_required_fields(self, client, store, payload) -> None:
        response = client.post("/track", json=payload, headers=HEADERS)
        assert response.status_code == 400
        body = response.json()
        assert body["kind"] == "validation_error"
        assert isinstance(body["error"], str)
        assert store.get_all() == []

    def test_pii_rejected(self, client, store) -> None:
        response = client.post(
            "/track",
            json={"siteId": "site-1", "path": "/", "customData": {"email": "user@example.com"}},
            headers=HEADERS,
        )
        assert response.status_code == 400
        assert response.json()["kind"] == "privacy_violation"
        assert store.get_all() == []

    def test_malformed_json(self, client) -> None:
        response = client.post(
            "/track",
            content=b"{not json",
            headers={**HEADERS, "Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["kind"] == "validation_error"

    def test_unknown_site(self, client) -> None:
        response = client.post("/track", json={"siteId": "other", "path": "/"}, headers=HEADERS)
        assert response.status_code == 404
        assert response.json() == {"error": "Invalid site ID", "kind": "unknown_site"}

    def test_quota_exceeded(self, client, store) -> None:
        override_service(make_service(store, site_policy=StaticSitePolicy({"site-1"}, {"site-1"})))
        response = client.post("/track", json={"siteId": "site-1", "path": "/"}, headers=HEADERS)
        assert response.status_code == 429
        assert response.json()["kind"] == "quota_exceeded"

    def test_rate_limited(self, client, store) -> None:
        override_service(make_service(store, config=IngestionConfig(rate_limit_max_requests=1)))
        payload = {"siteId": "site-1", "path": "/"}

        assert client.post("/track", json=payload, headers=HEADERS).status_code == 200
        response = client.post("/track", json=payload, headers=HEADERS)

        assert response.status_code == 429
        assert response.json()["kind"] == "rate_limit_exceeded"
        assert len(store.get_all()) == 1

    def test_storage_failure(self, client) -> None:
        override_service(make_service(FailingStore()))
        response = client.post("/track", json={"siteId": "site-1", "path": "/"}, headers=HEADERS)
        assert response.status_code == 500
        assert response.json()["kind"] == "storage_error"

    def test_no_usable_client_address(self, client, store) -> None:
        # The default test client peer is not an IP address
        response = TestClient(app).post("/track", json={"siteId": "site-1", "path": "/"})
        assert response.status_code == 400
        assert "Client address unavailable" in response.json()["error"]
        assert store.get_all() == []


class TestClientAddress:
    def test_rotating_forwarded_for_still_rate_limited(self, client, store) -> None:
        override_service(make_service(store, config=IngestionConfig(rate_limit_max_requests=3)))
        payload = {"siteId": "site-1", "path": "/"}

        statuses = [
            client.post(
                "/track",
                json=payload,
                headers={**HEADERS, "X-Forwarded-For": f"198.51.100.{i}"},
            ).status_code
            for i in range(10)
        ]

        assert statuses == [200, 200, 200] + [429] * 7
        assert len({r.visitor_id for r in store.get_all()}) == 1

    def test_trusted_proxy_hop_used(self, client, store, rules) -> None:
        ingestion = rules.ingestion.model_copy(update={"trusted_proxy_hops": 1})
        proxied = rules.model_copy(update={"ingestion": ingestion})
        app.dependency_overrides[get_rules] = lambda: proxied
        override_service(make_service(store, config=IngestionConfig(rate_limit_max_requests=2)))
        payload = {"siteId": "site-1", "path": "/"}

        # Only the hop appended by the trusted proxy counts
        statuses = [
            client.post(
                "/track",
                json=payload,
                headers={**HEADERS, "X-Forwarded-For": f"10.0.0.{i}, 203.0.113.9"},
            ).status_code
            for i in range(4)
        ]
        other = client.post(
            "/track",
            json=payload,
            headers={**HEADERS, "X-Forwarded-For": "10.0.0.1, 203.0.113.10"},
        )

        assert statuses == [200, 200, 429, 429]
        assert other.status_code == 200
        assert len({r.visitor_id for r in store.get_all()}) == 2

    def test_short_forwarded_chain_falls_back_to_peer(self, client, store, rules) -> None:
        ingestion = rules.ingestion.model_copy(update={"trusted_proxy_hops": 2})
        proxied = rules.model_copy(update={"ingestion": ingestion})
        app.dependency_overrides[get_rules] = lambda: proxied

        client.post("/track", json={"siteId": "site-1", "path": "/"}, headers=HEADERS)
        client.post(
            "/track",
            json={"siteId": "site-1", "path": "/"},
            headers={**HEADERS, "X-Forwarded-For": "203.0.113.9"},
        )

        assert len({r.visitor_id for r in store.get_all()}) == 1

    def test_geo_headers_recorded(self, client, store) -> None:
        client.post(
            "/track",
            json={"siteId": "site-1", "path": "/"},
            headers={**HEADERS, "CF-IPCountry": "de", "X-NF-Client-Connection-Region": "BE"},
        )

        record = store.get_all()[0]
        assert record.context_country == "DE"
        assert record.context_region == "BE"


class TestAppSurface:
    def test_health(self, client) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "track"}

    def test_cors_preflight_any_origin(self, client) -> None:
        response = client.options(
            "/track",
            headers={
                "Origin": "https://customer.example",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Content-Type",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
