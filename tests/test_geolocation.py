import asyncio

import httpx
import pytest

from clients.geolocation_client import GeolocationError, Location, MaxMindGeolocationClient
from conftest import FakeGeoClient
from monitor.geolocation_resolver import GeolocationResolver, ResolutionError
from storage.cache_store import GEO_PREFIX, geo_key
from storage.records import GeoCacheEntry

HOUR = 3600


def _entry(location, resolved_at):
    return GeoCacheEntry(location.country_code, location.city, location.latitude, location.longitude, resolved_at)


def test_fresh_entry_is_served_without_lookup(cache, clock, berlin):
    geo = FakeGeoClient({"1.2.3.4": berlin})
    resolver = GeolocationResolver(geo, cache, ttl=HOUR, clock=clock)
    staged = {}

    first = asyncio.run(resolver.resolve("1.2.3.4", staged))
    clock.advance(60)
    second = asyncio.run(resolver.resolve("1.2.3.4", staged))

    assert first == second == berlin
    assert geo.calls == ["1.2.3.4"]
    assert resolver.stats["lookup"] == 1
    assert resolver.stats["cache_hit"] == 1


def test_lookup_is_staged_not_written(cache, clock, berlin):
    resolver = GeolocationResolver(FakeGeoClient({"1.2.3.4": berlin}), cache, ttl=HOUR, clock=clock)
    staged = {}

    asyncio.run(resolver.resolve("1.2.3.4", staged))

    assert staged == {"1.2.3.4": _entry(berlin, clock())}
    assert cache.count(GEO_PREFIX) == 0


def test_entry_within_ttl_skips_lookup_and_expired_entry_is_refreshed(cache, clock, berlin):
    cache.put_geo_entry("1.2.3.4", _entry(berlin, resolved_at=clock() - 40 * 60))
    paris = Location("FR", "Paris", 48.85, 2.35)
    geo = FakeGeoClient({"1.2.3.4": paris})
    staged = {}

    resolver = GeolocationResolver(geo, cache, ttl=HOUR, clock=clock)
    assert asyncio.run(resolver.resolve("1.2.3.4", staged)) == berlin
    assert geo.calls == []
    assert staged == {}

    clock.advance(25 * 60)
    assert asyncio.run(resolver.resolve("1.2.3.4", staged)) == paris
    assert geo.calls == ["1.2.3.4"]
    assert staged["1.2.3.4"].resolved_at == clock()
    # the persisted entry only changes once the caller commits
    assert cache.get_geo_entry("1.2.3.4").city == "Berlin"


def test_failed_lookup_falls_back_to_stale_entry(cache, clock, berlin):
    cache.put_geo_entry("1.2.3.4", _entry(berlin, resolved_at=clock() - 2 * HOUR))
    geo = FakeGeoClient(failing={"1.2.3.4"})
    staged = {}

    resolver = GeolocationResolver(geo, cache, ttl=HOUR, clock=clock)

    assert asyncio.run(resolver.resolve("1.2.3.4", staged)) == berlin
    assert resolver.stats["stale_fallback"] == 1
    # stale entry is kept as-is, not refreshed
    assert staged == {}
    assert cache.get_geo_entry("1.2.3.4").resolved_at == clock() - 2 * HOUR


def test_failed_lookup_without_cache_raises(cache, clock):
    resolver = GeolocationResolver(FakeGeoClient(failing={"9.9.9.9"}), cache, ttl=HOUR, clock=clock)

    with pytest.raises(ResolutionError) as excinfo:
        asyncio.run(resolver.resolve("9.9.9.9"))

    assert excinfo.value.ip == "9.9.9.9"
    assert resolver.stats["failed"] == 1
    assert cache.get_geo_entry("9.9.9.9") is None


def test_unreadable_entry_is_replaced_by_lookup(cache, clock, berlin):
    cache.put(geo_key("1.2.3.4"), b"junk")
    resolver = GeolocationResolver(FakeGeoClient({"1.2.3.4": berlin}), cache, ttl=HOUR, clock=clock)
    staged = {}

    assert asyncio.run(resolver.resolve("1.2.3.4", staged)) == berlin
    assert staged["1.2.3.4"] == _entry(berlin, clock())


def test_fallback_ignores_age(cache, clock, berlin):
    cache.put_geo_entry("1.2.3.4", _entry(berlin, resolved_at=clock() - 90 * 24 * HOUR))
    resolver = GeolocationResolver(FakeGeoClient(), cache, ttl=HOUR, clock=clock)

    assert resolver.fallback("1.2.3.4") == berlin
    assert resolver.fallback("5.6.7.8") is None

    resolver.record_timeouts(3)
    assert resolver.stats["timeout"] == 3


def _maxmind(handler):
    return MaxMindGeolocationClient("42", "secret", url="https://geo.test/city",
                                    transport=httpx.MockTransport(handler))


def test_maxmind_response_is_parsed():
    def handler(request):
        assert request.url.path == "/city/1.2.3.4"
        assert request.headers["Authorization"].startswith("Basic ")
        return httpx.Response(200, json={
            "country": {"iso_code": "DE"},
            "city": {"names": {"en": "Berlin", "de": "Berlin"}},
            "location": {"latitude": 52.52, "longitude": 13.405}
        })

    client = _maxmind(handler)
    assert asyncio.run(client.lookup("1.2.3.4")) == Location("DE", "Berlin", 52.52, 13.405)


def test_maxmind_response_without_city():
    client = _maxmind(lambda request: httpx.Response(200, json={"country": {"iso_code": "SG"}}))
    assert asyncio.run(client.lookup("1.2.3.4")) == Location("SG", "", 0.0, 0.0)


def test_maxmind_rejected_credentials():
    client = _maxmind(lambda request: httpx.Response(401, json={"code": "AUTHORIZATION_INVALID"}))
    with pytest.raises(GeolocationError, match="HTTP 401"):
        asyncio.run(client.lookup("1.2.3.4"))


def test_unexpired_entry_survives_lookup_outage(cache, clock, berlin):
    cache.put_geo_entry("1.2.3.4", _entry(berlin, resolved_at=clock() - 40 * 60))
    geo = FakeGeoClient(failing={"1.2.3.4"})
    resolver = GeolocationResolver(geo, cache, ttl=60 * 60, clock=clock)

    assert asyncio.run(resolver.resolve("1.2.3.4")) == berlin
    assert resolver.stats["failed"] == 0
