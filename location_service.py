"""Resolve the user's location from cache, IP geolocation or an explicit GPS fix."""
from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import pytz
from tzlocal import get_localzone_name

from geo_cache import LOCATION_KEY, GeoCache, GeoFingerprint
from geocoding import ReverseGeocoder
from net import ProviderError, ProviderErrorKind, fetch_json

LOGGER = logging.getLogger(__name__)

IP_API_URL = "http://ip-api.com/json/"
IP_API_FIELDS = "status,message,country,regionName,city,lat,lon,timezone"

GPS_TIMEOUT = 10.0
GPS_MAXIMUM_AGE = 300.0
LOCATION_CHANGE_THRESHOLD_KM = 5.0
EARTH_RADIUS_KM = 6371.0

_PLACEHOLDER_NAMES = {"unknown", "location", "ocean", "sea", "water", "null", "undefined", "n/a"}


class LocationSource(Enum):
    CACHE = "cache"
    IP = "ip"
    GPS = "gps"


class LocationErrorKind(Enum):
    PERMISSION_DENIED = "permission_denied"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    UNRESOLVED = "unresolved"


_LOCATION_ERROR_MESSAGES = {
    LocationErrorKind.PERMISSION_DENIED: "Location access denied. Enable location access and try again.",
    LocationErrorKind.UNAVAILABLE: "Location unavailable. Check the device settings.",
    LocationErrorKind.TIMEOUT: "Location request timed out. Please try again.",
    LocationErrorKind.UNRESOLVED: "Unable to detect location automatically.",
}


class LocationError(Exception):
    def __init__(self, kind: LocationErrorKind, message: Optional[str] = None) -> None:
        super().__init__(message or _LOCATION_ERROR_MESSAGES[kind])
        self.kind = kind


class GeolocationError(Exception):
    """Raised by device geolocation backends."""

    def __init__(self, kind: LocationErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind


@dataclass(frozen=True)
class LocationInfo:
    latitude: float
    longitude: float
    city: str
    country: str
    region: Optional[str] = None
    timezone: Optional[str] = None
    source: LocationSource = LocationSource.IP
    resolved_at: datetime = field(default_factory=datetime.now)

    def fingerprint(self) -> GeoFingerprint:
        return GeoFingerprint.of(self.latitude, self.longitude)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "city": self.city,
            "country": self.country,
            "region": self.region,
            "timezone": self.timezone,
            "source": self.source.value,
            "resolved_at": self.resolved_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocationInfo":
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            city=str(data["city"]),
            country=str(data["country"]),
            region=data.get("region"),
            timezone=data.get("timezone"),
            source=LocationSource(data["source"]),
            resolved_at=datetime.fromisoformat(data["resolved_at"]),
        )


@dataclass(frozen=True)
class Position:
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    captured_at: datetime = field(default_factory=datetime.now)


class DeviceGeolocation(ABC):
    """Device positioning capability; implementations may prompt for permission."""

    @abstractmethod
    async def request_position(self, *, timeout: float, maximum_age: float, high_accuracy: bool) -> Position:
        """Return a position fix or raise :class:`GeolocationError`."""


class FixedPositionGeolocation(DeviceGeolocation):
    """Serves a manually configured position as if it were a device fix."""

    def __init__(self, latitude: Optional[float], longitude: Optional[float], accuracy: Optional[float] = None) -> None:
        self._latitude = latitude
        self._longitude = longitude
        self._accuracy = accuracy

    async def request_position(self, *, timeout: float, maximum_age: float, high_accuracy: bool) -> Position:
        if self._latitude is None or self._longitude is None:
            raise GeolocationError(LocationErrorKind.UNAVAILABLE, "No position configured")
        if not is_valid_coordinate(self._latitude, self._longitude):
            raise GeolocationError(LocationErrorKind.UNAVAILABLE, "Configured position is out of range")
        return Position(latitude=self._latitude, longitude=self._longitude, accuracy=self._accuracy)


class IpGeolocationProvider:
    """Approximate location from the public IP address via ip-api.com."""

    def __init__(self, url: str = IP_API_URL, timeout: float = 10.0, clock: Callable[[], datetime] = datetime.now) -> None:
        self._url = url
        self._timeout = timeout
        self._clock = clock

    async def locate(self) -> LocationInfo:
        payload = await fetch_json(self._url, params={"fields": IP_API_FIELDS}, timeout=self._timeout)
        if not isinstance(payload, dict) or payload.get("status") != "success":
            message = payload.get("message") if isinstance(payload, dict) else None
            raise ProviderError(ProviderErrorKind.BAD_RESPONSE, f"IP geolocation failed: {message or 'unknown error'}")

        try:
            latitude = float(payload["lat"])
            longitude = float(payload["lon"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError(ProviderErrorKind.BAD_RESPONSE, "IP geolocation returned no coordinates") from exc
        if not is_valid_coordinate(latitude, longitude) or _is_null_island(latitude, longitude):
            raise ProviderError(ProviderErrorKind.BAD_RESPONSE, f"IP geolocation returned invalid coordinates {latitude}, {longitude}")

        return LocationInfo(
            latitude=latitude,
            longitude=longitude,
            city=payload.get("city") or "Unknown",
            country=payload.get("country") or "Unknown",
            region=payload.get("regionName") or None,
            timezone=_validated_timezone(payload.get("timezone")),
            source=LocationSource.IP,
            resolved_at=self._clock(),
        )


class LocationResolver:
    """Ordered fallback chain: cached location, then IP geolocation.

    GPS is never attempted by :meth:`resolve`; it needs an explicit
    :meth:`resolve_via_gps` call because it may prompt for permission.
    """

    def __init__(
        self,
        cache: GeoCache,
        ip_provider: Optional[IpGeolocationProvider] = None,
        device: Optional[DeviceGeolocation] = None,
        geocoder: Optional[ReverseGeocoder] = None,
        *,
        gps_timeout: float = GPS_TIMEOUT,
        gps_maximum_age: float = GPS_MAXIMUM_AGE,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._cache = cache
        self._ip_provider = ip_provider or IpGeolocationProvider(clock=clock)
        self._device = device
        self._geocoder = geocoder or ReverseGeocoder()
        self._gps_timeout = gps_timeout
        self._gps_maximum_age = gps_maximum_age
        self._clock = clock
        self._inflight: Optional[asyncio.Task] = None
        self._strategies = (self._from_cache, self._from_ip)

    async def resolve(self) -> LocationInfo:
        """Return the current location, joining a resolution already in flight."""
        if self._inflight is not None and not self._inflight.done():
            LOGGER.debug("Joining in-flight location resolution")
            return await asyncio.shield(self._inflight)
        return await self._start(self._run_strategies())

    async def resolve_via_gps(self) -> LocationInfo:
        """Resolve from the device position, superseding any pending resolution."""
        if self._inflight is not None and not self._inflight.done():
            LOGGER.debug("Cancelling pending location resolution in favour of GPS")
            self._inflight.cancel()
        return await self._start(self._from_gps())

    async def _start(self, coro: Awaitable[LocationInfo]) -> LocationInfo:
        task = asyncio.ensure_future(coro)
        self._inflight = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._inflight is task and task.done():
                self._inflight = None

    async def _run_strategies(self) -> LocationInfo:
        for strategy in self._strategies:
            location = await strategy()
            if location is not None:
                return location
        LOGGER.warning("All automatic location strategies failed")
        raise LocationError(LocationErrorKind.UNRESOLVED)

    async def _from_cache(self) -> Optional[LocationInfo]:
        entry = self._cache.get_valid(LOCATION_KEY, LocationInfo.from_dict, now=self._clock())
        if entry is None:
            return None
        LOGGER.info("Using cached location: %s", format_location(entry.value))
        return replace(entry.value, source=LocationSource.CACHE)

    async def _from_ip(self) -> Optional[LocationInfo]:
        try:
            location = await self._ip_provider.locate()
        except ProviderError as exc:
            LOGGER.warning("IP-based location failed: %s", exc)
            return None
        LOGGER.info("Using IP-based location: %s", format_location(location))
        self._cache.put(LOCATION_KEY, location, location.fingerprint())
        return location

    async def _from_gps(self) -> LocationInfo:
        if self._device is None:
            raise LocationError(LocationErrorKind.UNAVAILABLE, "Geolocation is not supported on this device")
        try:
            position = await asyncio.wait_for(
                self._device.request_position(
                    timeout=self._gps_timeout,
                    maximum_age=self._gps_maximum_age,
                    high_accuracy=True,
                ),
                timeout=self._gps_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise LocationError(LocationErrorKind.TIMEOUT) from exc
        except GeolocationError as exc:
            if exc.kind in (LocationErrorKind.PERMISSION_DENIED, LocationErrorKind.TIMEOUT):
                raise LocationError(exc.kind) from exc
            raise LocationError(LocationErrorKind.UNAVAILABLE) from exc

        placemark = await self._geocoder.reverse(position.latitude, position.longitude)
        location = LocationInfo(
            latitude=position.latitude,
            longitude=position.longitude,
            city=placemark.city or "Unknown",
            country=placemark.country or "Unknown",
            region=placemark.region,
            timezone=_local_timezone(),
            source=LocationSource.GPS,
            resolved_at=self._clock(),
        )
        LOGGER.info("Using GPS location: %s", format_location(location))
        self._cache.put(LOCATION_KEY, location, location.fingerprint())
        return location


def is_valid_coordinate(latitude: float, longitude: float) -> bool:
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0


def format_location(location: Optional[LocationInfo]) -> str:
    """Human readable "City, Region, Country", falling back to coordinates."""
    if location is None:
        return "Location not set"

    parts = []
    if not _is_placeholder(location.city):
        parts.append(location.city)
    if location.region and location.region != location.city and not _is_placeholder(location.region):
        parts.append(location.region)
    if not _is_placeholder(location.country):
        parts.append(location.country)
    if parts:
        return ", ".join(parts)
    return f"{location.latitude:.4f}°, {location.longitude:.4f}°"


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance between two points."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def has_location_changed(
    old: Optional[LocationInfo],
    new: LocationInfo,
    threshold_km: float = LOCATION_CHANGE_THRESHOLD_KM,
) -> bool:
    if old is None:
        return True
    return distance_km(old.latitude, old.longitude, new.latitude, new.longitude) >= threshold_km


def _is_placeholder(name: Optional[str]) -> bool:
    return not name or not name.strip() or name.strip().lower() in _PLACEHOLDER_NAMES


def _is_null_island(latitude: float, longitude: float) -> bool:
    return abs(latitude) < 0.1 and abs(longitude) < 0.1


def _validated_timezone(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    try:
        pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        LOGGER.warning("Ignoring unknown timezone %s", name)
        return None
    return name


def _local_timezone() -> str:
    try:
        return _validated_timezone(get_localzone_name()) or "UTC"
    except Exception:  # pragma: no cover - platform specific
        LOGGER.warning("Falling back to UTC for system timezone resolution", exc_info=True)
        return "UTC"
