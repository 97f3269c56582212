"""
Tests for the anonymize component.

Covers same-day determinism, cross-day unlinkability, the refusal to
derive ids without a client address, and rate-limit key privacy.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import UTC, date, datetime

import pytest

from src.components.anonymize import (
    AnonymizationConfig,
    AnonymizationError,
    DailySecretProvider,
    MissingClientAddressError,
    build_anonymizer,
    create_anonymization_service,
    derive_secret,
    normalize_ip,
    utc_day,
)

ROOT_KEY = b"test-root-key"
IP = "203.0.113.7"
UA = "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0"
DAY = date(2026, 3, 14)


class MockTimePort:
    """Mock time provider."""

    def __init__(self, now: datetime | None = None) -> None:
        self._now = now or datetime(2026, 3, 14, 12, 0, tzinfo=UTC)

    def now_utc(self) -> datetime:
        return self._now


@pytest.fixture
def service():
    return create_anonymization_service(ROOT_KEY, time_port=MockTimePort())


class TestDailySecret:
    def test_derivation_is_deterministic(self) -> None:
        assert derive_secret(ROOT_KEY, DAY).value == derive_secret(ROOT_KEY, DAY).value

    def test_each_day_has_its_own_secret(self) -> None:
        assert derive_secret(ROOT_KEY, DAY).value != derive_secret(ROOT_KEY, date(2026, 3, 15)).value

    def test_independent_providers_agree(self) -> None:
        """Two instances with the same root key need no coordination."""
        a = DailySecretProvider(ROOT_KEY)
        b = DailySecretProvider(ROOT_KEY.decode())
        assert a.secret_for(DAY).value == b.secret_for(DAY).value

    def test_empty_root_key_rejected(self) -> None:
        with pytest.raises(AnonymizationError):
            DailySecretProvider(b"")

    def test_repr_hides_value(self) -> None:
        secret = derive_secret(ROOT_KEY, DAY)
        assert secret.value.hex() not in repr(secret)
        assert "2026-03-14" in repr(secret)

    def test_secret_at_uses_utc_date(self) -> None:
        provider = DailySecretProvider(ROOT_KEY)
        late_evening = datetime(2026, 3, 14, 23, 30, tzinfo=UTC)
        assert provider.secret_at(late_evening).valid_for == DAY


class TestVisitorId:
    def test_deterministic_same_day(self, service) -> None:
        first = service.compute_visitor_id(IP, UA, DAY)
        second = service.compute_visitor_id(IP, UA, DAY)
        assert first == second

    def test_differs_across_days(self, service) -> None:
        today = service.compute_visitor_id(IP, UA, DAY)
        tomorrow = service.compute_visitor_id(IP, UA, date(2026, 3, 15))
        assert today != tomorrow

    def test_differs_per_user_agent(self, service) -> None:
        assert service.compute_visitor_id(IP, UA, DAY) != service.compute_visitor_id(
            IP, "curl/8.0", DAY
        )

    def test_fixed_length_hex(self, service) -> None:
        visitor_id = service.compute_visitor_id(IP, UA, DAY)
        assert len(visitor_id) == 16
        int(visitor_id, 16)

    def test_configured_length(self) -> None:
        service = create_anonymization_service(
            ROOT_KEY, config=AnonymizationConfig(visitor_id_length=32)
        )
        assert len(service.compute_visitor_id(IP, UA, DAY)) == 32

    def test_matches_keyed_hash(self, service) -> None:
        """The id is an HMAC under the day secret, not a plain digest of the IP."""
        secret = derive_secret(ROOT_KEY, DAY).value
        expected = hmac.new(secret, f"{IP}|{UA}".encode(), hashlib.sha256).hexdigest()[:16]
        assert service.compute_visitor_id(IP, UA, DAY) == expected
        assert hashlib.sha256(IP.encode()).hexdigest()[:16] != expected

    def test_defaults_to_current_utc_day(self) -> None:
        clock = MockTimePort(datetime(2026, 3, 14, 8, 0, tzinfo=UTC))
        service = create_anonymization_service(ROOT_KEY, time_port=clock)
        assert service.compute_visitor_id(IP, UA) == service.compute_visitor_id(IP, UA, DAY)

    def test_missing_user_agent_allowed(self, service) -> None:
        assert service.compute_visitor_id(IP, None, DAY) == service.compute_visitor_id(IP, "", DAY)

    @pytest.mark.parametrize("ip", [None, "", "   ", "unknown", "999.1.1.1"])
    def test_refuses_without_valid_ip(self, service, ip) -> None:
        with pytest.raises(MissingClientAddressError):
            service.compute_visitor_id(ip, UA, DAY)

    def test_ipv4_mapped_ipv6_is_same_visitor(self, service) -> None:
        assert service.compute_visitor_id(f"::ffff:{IP}", UA, DAY) == service.compute_visitor_id(
            IP, UA, DAY
        )


class TestRateLimitKey:
    def test_scoped_per_site(self, service) -> None:
        assert service.rate_limit_key("site-a", IP, DAY) != service.rate_limit_key("site-b", IP, DAY)

    def test_stable_within_day(self, service) -> None:
        assert service.rate_limit_key("site-a", IP, DAY) == service.rate_limit_key("site-a", IP, DAY)

    def test_not_a_plain_ip_hash(self, service) -> None:
        key = service.rate_limit_key("site-a", IP, DAY)
        assert key.startswith("track:site-a:")
        assert IP not in key
        assert hashlib.sha256(IP.encode()).hexdigest()[:24] not in key

    def test_refuses_without_ip(self, service) -> None:
        with pytest.raises(MissingClientAddressError):
            service.rate_limit_key("site-a", None, DAY)


class TestHelpers:
    def test_normalize_ipv6(self) -> None:
        assert normalize_ip("2001:0db8:0000:0000:0000:0000:0000:0001") == "2001:db8::1"

    def test_normalize_strips_whitespace(self) -> None:
        assert normalize_ip(" 10.0.0.1 ") == "10.0.0.1"

    def test_utc_day_converts_offsets(self) -> None:
        from datetime import timedelta, timezone

        tokyo = timezone(timedelta(hours=9))
        assert utc_day(datetime(2026, 3, 15, 2, 0, tzinfo=tokyo)) == DAY

    def test_build_anonymizer_uses_rules(self, rules) -> None:
        service = build_anonymizer(ROOT_KEY, rules)
        assert len(service.compute_visitor_id(IP, UA, DAY)) == rules.anonymization.visitor_id_length
