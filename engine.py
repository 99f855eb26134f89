"""Facade tying location, prayer times, Qibla and Hijri services together."""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable, Optional

from config import EngineConfig
from geo_cache import GeoCache, JsonFileStorage
from geocoding import ReverseGeocoder
from hijri import HijriCalendarService, HijriDate, SpecialDay
from location_service import (
    DeviceGeolocation,
    FixedPositionGeolocation,
    IpGeolocationProvider,
    LocationInfo,
    LocationResolver,
)
from prayer_times import CalculationSchool, NextPrayerResult, PrayerTimes, PrayerTimesService, next_prayer
from qibla import QiblaService

LOGGER = logging.getLogger(__name__)


class PrayerEngine:
    """Entry point used by dashboards and the command line."""

    def __init__(
        self,
        resolver: LocationResolver,
        prayer_service: PrayerTimesService,
        qibla_service: QiblaService,
        hijri_service: HijriCalendarService,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.resolver = resolver
        self.prayer_service = prayer_service
        self.qibla_service = qibla_service
        self.hijri_service = hijri_service
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        device: Optional[DeviceGeolocation] = None,
        cache: Optional[GeoCache] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> "PrayerEngine":
        timeouts = config.timeouts
        cache = cache or GeoCache(JsonFileStorage(config.cache_path), namespace=config.cache_namespace, clock=clock)
        if device is None and config.manual_latitude is not None and config.manual_longitude is not None:
            device = FixedPositionGeolocation(config.manual_latitude, config.manual_longitude)
        LOGGER.debug(
            "Building engine: cache=%s method=%s school=%s device=%s",
            config.cache_path,
            config.method,
            config.school.name,
            type(device).__name__ if device else None,
        )

        resolver = LocationResolver(
            cache,
            IpGeolocationProvider(timeout=timeouts.location, clock=clock),
            device,
            ReverseGeocoder(timeout=timeouts.geocoding),
            gps_timeout=timeouts.gps,
            gps_maximum_age=timeouts.gps_maximum_age,
            clock=clock,
        )
        prayer_service = PrayerTimesService(
            cache,
            method=config.method,
            school=config.school,
            timeout=timeouts.prayer_times,
            clock=clock,
        )
        return cls(
            resolver=resolver,
            prayer_service=prayer_service,
            qibla_service=QiblaService(use_remote=config.remote_qibla, timeout=timeouts.qibla),
            hijri_service=HijriCalendarService(timeout=timeouts.hijri),
            clock=clock,
        )

    async def resolve_location(self) -> LocationInfo:
        return await self.resolver.resolve()

    async def resolve_location_via_gps(self) -> LocationInfo:
        return await self.resolver.resolve_via_gps()

    async def get_prayer_times(
        self,
        location: LocationInfo,
        target_date: Optional[date] = None,
        school: Optional[CalculationSchool] = None,
    ) -> PrayerTimes:
        return await self.prayer_service.fetch(location, target_date, school)

    def get_next_prayer(self, times: PrayerTimes, now: Optional[datetime] = None) -> NextPrayerResult:
        """Next prayer for *times*; the clock reading is converted to the schedule's timezone."""
        if now is None:
            now = self._clock()
            if now.tzinfo is None:
                # naive clock readings are wall time on this host
                now = now.astimezone()
        return next_prayer(times, now)

    async def get_qibla_bearing(self, location: LocationInfo) -> float:
        return await self.qibla_service.bearing(location.latitude, location.longitude)

    async def get_hijri_date(self, target_date: Optional[date] = None) -> Optional[HijriDate]:
        return await self.hijri_service.to_hijri(target_date or self._clock().date())

    async def get_special_day(self, target_date: Optional[date] = None) -> Optional[SpecialDay]:
        return await self.hijri_service.special_day(target_date or self._clock().date())
