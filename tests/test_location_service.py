import asyncio
from datetime import datetime

import pytest
import responses

from geo_cache import LOCATION_KEY, GeoCache, MemoryStorage
from geocoding import Placemark
from location_service import (
    IP_API_URL,
    DeviceGeolocation,
    FixedPositionGeolocation,
    GeolocationError,
    IpGeolocationProvider,
    LocationError,
    LocationErrorKind,
    LocationInfo,
    LocationResolver,
    LocationSource,
    Position,
    format_location,
    has_location_changed,
)
from net import ProviderError, ProviderErrorKind


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class StubGeocoder:
    def __init__(self) -> None:
        self.calls = []

    async def reverse(self, latitude, longitude):
        self.calls.append((latitude, longitude))
        return Placemark(
            city="Istanbul",
            region="Istanbul",
            country="Turkey",
            display_name="Istanbul, Turkey",
            source="nominatim",
        )


class SlowIpProvider:
    def __init__(self, location: LocationInfo, delay: float = 0.05) -> None:
        self.location = location
        self.delay = delay
        self.calls = 0

    async def locate(self) -> LocationInfo:
        self.calls += 1
        await asyncio.sleep(self.delay)
        return self.location


class FailingIpProvider:
    async def locate(self) -> LocationInfo:
        raise ProviderError(ProviderErrorKind.UNREACHABLE, "offline")


class RefusingDevice(DeviceGeolocation):
    def __init__(self, kind: LocationErrorKind) -> None:
        self.kind = kind

    async def request_position(self, *, timeout, maximum_age, high_accuracy):
        raise GeolocationError(self.kind)


class StalledDevice(DeviceGeolocation):
    async def request_position(self, *, timeout, maximum_age, high_accuracy):
        await asyncio.sleep(10)
        return Position(latitude=41.0, longitude=29.0)


def ip_payload(**overrides) -> dict:
    payload = {
        "status": "success",
        "country": "Morocco",
        "regionName": "Tanger-Tetouan-Al Hoceima",
        "city": "Tangier",
        "lat": 35.7673,
        "lon": -5.7998,
        "timezone": "Africa/Casablanca",
    }
    payload.update(overrides)
    return payload


def make_location(latitude: float = 35.7673, longitude: float = -5.7998) -> LocationInfo:
    return LocationInfo(
        latitude=latitude,
        longitude=longitude,
        city="Tangier",
        country="Morocco",
        timezone="Africa/Casablanca",
        source=LocationSource.IP,
        resolved_at=datetime(2025, 11, 9, 8, 0),
    )


def make_resolver(clock, ip_provider=None, device=None, geocoder=None, cache=None, **kwargs) -> LocationResolver:
    cache = cache or GeoCache(MemoryStorage(), clock=clock)
    return LocationResolver(
        cache,
        ip_provider or IpGeolocationProvider(clock=clock),
        device,
        geocoder or StubGeocoder(),
        clock=clock,
        **kwargs,
    )


def test_ip_location_is_resolved_and_cached():
    clock = FakeClock(datetime(2025, 11, 9, 8, 0))
    resolver = make_resolver(clock)

    with responses.RequestsMock() as mock:
        mock.add(responses.GET, IP_API_URL, json=ip_payload(), status=200)
        location = asyncio.run(resolver.resolve())
        assert "fields=" in mock.calls[0].request.url

    assert location.source is LocationSource.IP
    assert location.city == "Tangier"
    assert location.region == "Tanger-Tetouan-Al Hoceima"
    assert location.timezone == "Africa/Casablanca"
    assert location.resolved_at == datetime(2025, 11, 9, 8, 0)
    cached = resolver._cache.get(LOCATION_KEY, LocationInfo.from_dict)
    assert cached.value == location


def test_warm_cache_resolves_identically_without_network():
    clock = FakeClock(datetime(2025, 11, 9, 8, 0))
    cache = GeoCache(MemoryStorage(), clock=clock)
    cache.put(LOCATION_KEY, make_location(), make_location().fingerprint())
    resolver = make_resolver(clock, cache=cache)

    with responses.RequestsMock() as mock:
        first = asyncio.run(resolver.resolve())
        second = asyncio.run(resolver.resolve())
        call_count = len(mock.calls)

    assert call_count == 0
    assert first == second
    assert first.source is LocationSource.CACHE
    assert first.latitude == 35.7673


def test_stale_cache_falls_through_to_ip():
    clock = FakeClock(datetime(2025, 11, 1, 8, 0))
    cache = GeoCache(MemoryStorage(), clock=clock)
    cache.put(LOCATION_KEY, make_location(), make_location().fingerprint())
    clock.now = datetime(2025, 11, 9, 8, 0)
    resolver = make_resolver(clock, cache=cache)

    with responses.RequestsMock() as mock:
        mock.add(responses.GET, IP_API_URL, json=ip_payload(city="Tetouan"), status=200)
        location = asyncio.run(resolver.resolve())

    assert location.source is LocationSource.IP
    assert location.city == "Tetouan"


def test_ip_failure_is_unresolved_and_never_tries_gps():
    clock = FakeClock(datetime(2025, 11, 9, 8, 0))
    device = RefusingDevice(LocationErrorKind.PERMISSION_DENIED)
    resolver = make_resolver(clock, device=device)

    with responses.RequestsMock() as mock:
        mock.add(responses.GET, IP_API_URL, json={"status": "fail", "message": "reserved range"}, status=200)
        with pytest.raises(LocationError) as excinfo:
            asyncio.run(resolver.resolve())

    assert excinfo.value.kind is LocationErrorKind.UNRESOLVED
    assert "Unable to detect location" in str(excinfo.value)


def test_ip_provider_rejects_null_island_and_bad_timezone():
    clock = FakeClock(datetime(2025, 11, 9, 8, 0))
    provider = IpGeolocationProvider(clock=clock)

    with responses.RequestsMock() as mock:
        mock.add(responses.GET, IP_API_URL, json=ip_payload(lat=0, lon=0), status=200)
        with pytest.raises(ProviderError):
            asyncio.run(provider.locate())

    with responses.RequestsMock() as mock:
        mock.add(responses.GET, IP_API_URL, json=ip_payload(timezone="Mars/Olympus"), status=200)
        location = asyncio.run(provider.locate())

    assert location.timezone is None


def test_gps_success_is_reverse_geocoded_and_cached(monkeypatch):
    monkeypatch.setattr("location_service.get_localzone_name", lambda: "Europe/Istanbul")
    clock = FakeClock(datetime(2025, 11, 9, 8, 0))
    geocoder = StubGeocoder()
    resolver = make_resolver(clock, device=FixedPositionGeolocation(41.0082, 28.9784), geocoder=geocoder)

    location = asyncio.run(resolver.resolve_via_gps())

    assert location.source is LocationSource.GPS
    assert (location.latitude, location.longitude) == (41.0082, 28.9784)
    assert location.city == "Istanbul"
    assert location.timezone == "Europe/Istanbul"
    assert geocoder.calls == [(41.0082, 28.9784)]
    assert resolver._cache.get(LOCATION_KEY, LocationInfo.from_dict).value == location


def test_gps_permission_denied():
    clock = FakeClock(datetime(2025, 11, 9, 8, 0))
    resolver = make_resolver(clock, device=RefusingDevice(LocationErrorKind.PERMISSION_DENIED))

    with pytest.raises(LocationError) as excinfo:
        asyncio.run(resolver.resolve_via_gps())

    assert excinfo.value.kind is LocationErrorKind.PERMISSION_DENIED
    assert resolver._cache.get(LOCATION_KEY, LocationInfo.from_dict) is None


def test_gps_timeout():
    clock = FakeClock(datetime(2025, 11, 9, 8, 0))
    resolver = make_resolver(clock, device=StalledDevice(), gps_timeout=0.05)

    with pytest.raises(LocationError) as excinfo:
        asyncio.run(resolver.resolve_via_gps())

    assert excinfo.value.kind is LocationErrorKind.TIMEOUT


def test_gps_unavailable_without_device_or_position():
    clock = FakeClock(datetime(2025, 11, 9, 8, 0))

    with pytest.raises(LocationError) as excinfo:
        asyncio.run(make_resolver(clock).resolve_via_gps())
    assert excinfo.value.kind is LocationErrorKind.UNAVAILABLE

    with pytest.raises(LocationError) as excinfo:
        asyncio.run(make_resolver(clock, device=FixedPositionGeolocation(None, None)).resolve_via_gps())
    assert excinfo.value.kind is LocationErrorKind.UNAVAILABLE


def test_concurrent_resolves_share_one_lookup():
    clock = FakeClock(datetime(2025, 11, 9, 8, 0))
    provider = SlowIpProvider(make_location())
    resolver = make_resolver(clock, ip_provider=provider)

    async def run():
        return await asyncio.gather(resolver.resolve(), resolver.resolve())

    first, second = asyncio.run(run())

    assert provider.calls == 1
    assert first == second


def test_gps_supersedes_pending_resolution(monkeypatch):
    monkeypatch.setattr("location_service.get_localzone_name", lambda: "Europe/Istanbul")
    clock = FakeClock(datetime(2025, 11, 9, 8, 0))
    provider = SlowIpProvider(make_location(), delay=0.2)
    resolver = make_resolver(clock, ip_provider=provider, device=FixedPositionGeolocation(41.0082, 28.9784))

    async def run():
        pending = asyncio.ensure_future(resolver.resolve())
        await asyncio.sleep(0.01)
        gps = await resolver.resolve_via_gps()
        with pytest.raises(asyncio.CancelledError):
            await pending
        return gps

    location = asyncio.run(run())

    assert location.source is LocationSource.GPS
    cached = resolver._cache.get(LOCATION_KEY, LocationInfo.from_dict)
    assert cached.value.source is LocationSource.GPS


def test_failed_ip_provider_raises_unresolved():
    clock = FakeClock(datetime(2025, 11, 9, 8, 0))
    resolver = make_resolver(clock, ip_provider=FailingIpProvider())

    with pytest.raises(LocationError) as excinfo:
        asyncio.run(resolver.resolve())

    assert excinfo.value.kind is LocationErrorKind.UNRESOLVED


def test_format_location():
    assert format_location(None) == "Location not set"
    assert format_location(make_location()) == "Tangier, Morocco"

    with_region = LocationInfo(41.0, 29.0, "Kadikoy", "Turkey", region="Istanbul")
    assert format_location(with_region) == "Kadikoy, Istanbul, Turkey"

    placeholder = LocationInfo(12.34567, 45.6789, "Unknown", "Ocean")
    assert format_location(placeholder) == "12.3457°, 45.6789°"


def test_has_location_changed():
    tangier = make_location()

    assert has_location_changed(None, tangier)
    assert not has_location_changed(tangier, make_location(35.78, -5.81))
    assert has_location_changed(tangier, make_location(35.5889, -5.3626))
