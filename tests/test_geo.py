"""Geo resolution and settings validation."""

import httpx
import pytest

from keyward.config import ConfigurationError, Settings
from keyward.service.geo import GeoResolver

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


def _settings(**overrides):
    values = dict(
        jwt_secret=SECRET,
        geo_static_map={
            "203.0.113.10": {"country": "DE", "lat": 52.52, "lon": 13.405},
            "198.51.100.0/24": {"country": "AU", "lat": -33.87, "lon": 151.21},
        },
    )
    values.update(overrides)
    return Settings(**values)


async def test_static_exact_and_cidr_entries():
    resolver = GeoResolver(_settings())
    berlin = await resolver.resolve("203.0.113.10")
    sydney = await resolver.resolve("198.51.100.77")
    assert berlin.country == "DE"
    assert sydney.country == "AU"
    assert sydney.has_coordinates


async def test_private_and_invalid_addresses_resolve_to_none():
    resolver = GeoResolver(_settings(geoip_url="http://geo.invalid/{ip}"))
    assert await resolver.resolve("10.0.0.5") is None
    assert await resolver.resolve("testclient") is None
    assert await resolver.resolve(None) is None


async def test_http_lookup_is_cached():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(200, json={"countryCode": "FR", "lat": 48.85, "lon": 2.35})

    resolver = GeoResolver(
        _settings(geoip_url="http://geo.test/json/{ip}"), transport=httpx.MockTransport(handler)
    )
    first = await resolver.resolve("8.8.8.8")
    second = await resolver.resolve("8.8.8.8")

    assert first.country == "FR"
    assert second == first
    assert calls == ["/json/8.8.8.8"]


async def test_http_failure_contributes_nothing():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    resolver = GeoResolver(
        _settings(geoip_url="http://geo.test/json/{ip}"), transport=httpx.MockTransport(handler)
    )
    assert await resolver.resolve("1.1.1.1") is None


def test_geo_map_parsed_from_json_string():
    settings = Settings(jwt_secret=SECRET, geo_static_map='{"192.0.2.1": {"country": "US"}}')
    assert settings.geo_static_map["192.0.2.1"]["country"] == "US"


def test_deny_threshold_must_exceed_step_up():
    with pytest.raises(ValueError):
        Settings(jwt_secret=SECRET, anomaly_step_up_threshold=50, anomaly_deny_threshold=40)


def test_validate_required_reports_missing_settings():
    settings = Settings(jwt_secret=SECRET, use_memory_store=True)
    with pytest.raises(ConfigurationError) as exc:
        settings.validate_required()
    assert "TOTP_ISSUER" in str(exc.value)
    assert "WEBAUTHN_RP_ID" in str(exc.value)


def test_short_jwt_secret_rejected():
    settings = Settings(
        jwt_secret="short",
        totp_issuer="Keyward",
        webauthn_rp_id="localhost",
        webauthn_origin="http://localhost",
        use_memory_store=True,
    )
    with pytest.raises(ConfigurationError):
        settings.validate_required()
