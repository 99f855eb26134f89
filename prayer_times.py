"""Daily prayer times from the AlAdhan API and the next-prayer countdown."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytz

from geo_cache import PRAYER_TIMES_KEY, GeoCache, GeoFingerprint
from location_service import LocationInfo
from net import ProviderError, ProviderErrorKind, fetch_json

LOGGER = logging.getLogger(__name__)

ALADHAN_BASE_URL = "https://api.aladhan.com/v1"
PRAYER_ORDER = ["Fajr", "Dhuhr", "Asr", "Maghrib", "Isha"]
DEFAULT_METHOD = 2  # ISNA
DEFAULT_SUNRISE = "06:30"

ARABIC_NAMES = {
    "Fajr": "الفجر",
    "Sunrise": "الشروق",
    "Dhuhr": "الظهر",
    "Asr": "العصر",
    "Maghrib": "المغرب",
    "Isha": "العشاء",
}

FALLBACK_TIMINGS = {
    "fajr": "05:30",
    "sunrise": "06:45",
    "dhuhr": "12:30",
    "asr": "15:45",
    "maghrib": "18:15",
    "isha": "19:45",
}


class CalculationSchool(IntEnum):
    """Asr juristic school; only the Asr time depends on it."""

    STANDARD = 0
    HANAFI = 1


class PrayerSource(Enum):
    CACHE = "cache"
    PROVIDER = "provider"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class PrayerTimes:
    fajr: str
    sunrise: str
    dhuhr: str
    asr: str
    maghrib: str
    isha: str
    date: date
    hijri_date: str
    timezone: Optional[str] = None
    school: CalculationSchool = CalculationSchool.STANDARD
    source: PrayerSource = PrayerSource.PROVIDER

    @property
    def is_approximate(self) -> bool:
        return self.source is PrayerSource.FALLBACK

    def prayers(self) -> List[Tuple[str, str]]:
        """The five obligatory prayers in chronological order."""
        return [(name, getattr(self, name.lower())) for name in PRAYER_ORDER]

    def next_prayer(self, now: Optional[datetime] = None) -> "NextPrayerResult":
        return next_prayer(self, now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fajr": self.fajr,
            "sunrise": self.sunrise,
            "dhuhr": self.dhuhr,
            "asr": self.asr,
            "maghrib": self.maghrib,
            "isha": self.isha,
            "date": self.date.isoformat(),
            "hijri_date": self.hijri_date,
            "timezone": self.timezone,
            "school": int(self.school),
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrayerTimes":
        return cls(
            fajr=str(data["fajr"]),
            sunrise=str(data["sunrise"]),
            dhuhr=str(data["dhuhr"]),
            asr=str(data["asr"]),
            maghrib=str(data["maghrib"]),
            isha=str(data["isha"]),
            date=date.fromisoformat(data["date"]),
            hijri_date=str(data["hijri_date"]),
            timezone=data.get("timezone"),
            school=CalculationSchool(int(data.get("school", 0))),
            source=PrayerSource(data.get("source", PrayerSource.PROVIDER.value)),
        )


@dataclass(frozen=True)
class NextPrayerResult:
    name: str
    time: str
    time_until: str


@dataclass(frozen=True)
class PrayerStatus:
    name: str
    arabic_name: str
    time: str
    passed: bool
    time_until: Optional[str]


def fallback_prayer_times(
    target_date: date,
    school: CalculationSchool = CalculationSchool.STANDARD,
) -> PrayerTimes:
    """Static schedule used when no accurate times are available."""
    return PrayerTimes(
        date=target_date,
        hijri_date="Unknown",
        school=school,
        source=PrayerSource.FALLBACK,
        **FALLBACK_TIMINGS,
    )


class PrayerTimesService:
    """Fetches prayer times from the AlAdhan API, backed by the geo cache."""

    def __init__(
        self,
        cache: Optional[GeoCache] = None,
        method: int = DEFAULT_METHOD,
        school: CalculationSchool = CalculationSchool.STANDARD,
        *,
        base_url: str = ALADHAN_BASE_URL,
        timeout: float = 15.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.cache = cache or GeoCache(clock=clock)
        self.method = method
        self.school = CalculationSchool(school)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._clock = clock
        self._pending: Dict[Tuple[GeoFingerprint, date, CalculationSchool], asyncio.Task] = {}

    async def fetch(
        self,
        location: LocationInfo,
        target_date: Optional[date] = None,
        school: Optional[CalculationSchool] = None,
    ) -> PrayerTimes:
        """Return prayer times for *location*; never raises on provider failure."""
        now = self._clock()
        target_date = target_date or now.date()
        school = self.school if school is None else CalculationSchool(school)
        is_today = target_date == now.date()
        LOGGER.debug(
            "Fetching prayer times for %s, %s (date=%s school=%s)",
            location.city,
            location.country,
            target_date,
            school.name,
        )

        if is_today:
            cached = self._from_cache(location, target_date, school, now)
            if cached is not None:
                return cached

        key = (location.fingerprint(), target_date, school)
        previous = self._pending.get(key)
        if previous is not None and not previous.done():
            LOGGER.debug("Cancelling superseded prayer times request for %s", target_date)
            previous.cancel()
        task = asyncio.ensure_future(self._from_provider(location, target_date, school))
        self._pending[key] = task
        try:
            times = await self._await_provider(key, task)
        except ProviderError as exc:
            LOGGER.warning("Prayer times unavailable (%s); using fallback schedule", exc)
            return fallback_prayer_times(target_date, school)
        finally:
            if self._pending.get(key) is task:
                del self._pending[key]

        if is_today:
            self.cache.put(PRAYER_TIMES_KEY, times, location.fingerprint())
        LOGGER.info(
            "Prayer times for %s on %s: Fajr %s, Isha %s",
            location.city,
            target_date,
            times.fajr,
            times.isha,
        )
        return times

    async def _await_provider(self, key: Tuple[GeoFingerprint, date, CalculationSchool], task: asyncio.Task) -> PrayerTimes:
        """Await *task*, following the request that superseded it when it is cancelled."""
        while True:
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    # the caller itself was cancelled
                    task.cancel()
                    raise
                replacement = self._pending.get(key)
                if replacement is None or replacement is task:
                    raise ProviderError(ProviderErrorKind.UNREACHABLE, "Prayer times request was cancelled")
                LOGGER.debug("Joining the request that superseded the one for %s", key[1])
                task = replacement

    def _from_cache(
        self,
        location: LocationInfo,
        target_date: date,
        school: CalculationSchool,
        now: datetime,
    ) -> Optional[PrayerTimes]:
        entry = self.cache.get_valid(PRAYER_TIMES_KEY, PrayerTimes.from_dict, location.fingerprint(), now)
        if entry is None:
            return None
        cached = entry.value
        if cached.date != target_date or cached.school != school:
            LOGGER.debug("Cached prayer times are for %s/%s; ignoring", cached.date, cached.school.name)
            return None
        LOGGER.info("Using cached prayer times for %s", target_date)
        return replace(cached, source=PrayerSource.CACHE)

    async def _from_provider(self, location: LocationInfo, target_date: date, school: CalculationSchool) -> PrayerTimes:
        params = {
            "latitude": location.latitude,
            "longitude": location.longitude,
            "method": self.method,
            "school": int(school),
        }
        LOGGER.debug("Requesting prayer times with params=%s", params)
        payload = await fetch_json(
            f"{self.base_url}/timings/{target_date.strftime('%d-%m-%Y')}",
            params=params,
            timeout=self.timeout,
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
            raise ProviderError(ProviderErrorKind.BAD_RESPONSE, "Invalid response from AlAdhan API")
        if payload.get("code", 200) != 200:
            raise ProviderError(ProviderErrorKind.BAD_RESPONSE, f"AlAdhan API error: {payload.get('status')}")

        data = payload["data"]
        date_info = data.get("date") if isinstance(data.get("date"), dict) else {}
        timings = data.get("timings")
        if not isinstance(timings, dict):
            raise ProviderError(ProviderErrorKind.BAD_RESPONSE, "AlAdhan response has no timings")

        normalized = {name.lower(): clean_time(timings.get(name)) for name in PRAYER_ORDER}
        normalized["sunrise"] = clean_time(timings.get("Sunrise") or DEFAULT_SUNRISE)
        minutes = [_to_minutes(normalized[name.lower()]) for name in PRAYER_ORDER]
        if any(earlier >= later for earlier, later in zip(minutes, minutes[1:])):
            raise ProviderError(ProviderErrorKind.BAD_RESPONSE, f"Prayer times are not in order: {normalized}")

        return PrayerTimes(
            date=target_date,
            hijri_date=_hijri_text(date_info.get("hijri")),
            timezone=_resolve_timezone(location, data),
            school=school,
            source=PrayerSource.PROVIDER,
            **normalized,
        )


def clean_time(raw: Any) -> str:
    """Reduce provider strings such as ``"05:10 (EET)"`` or ``"05:10:00"`` to ``HH:MM``."""
    if not isinstance(raw, str) or not raw.strip():
        raise ProviderError(ProviderErrorKind.BAD_RESPONSE, f"Missing prayer time: {raw!r}")
    parts = raw.strip().split(" ")[0].split(":")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except (IndexError, ValueError) as exc:
        raise ProviderError(ProviderErrorKind.BAD_RESPONSE, f"Unparseable prayer time: {raw!r}") from exc
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ProviderError(ProviderErrorKind.BAD_RESPONSE, f"Prayer time out of range: {raw!r}")
    return f"{hour:02d}:{minute:02d}"


def next_prayer(times: PrayerTimes, now: Optional[datetime] = None) -> NextPrayerResult:
    """Return the next prayer after *now* with a countdown string.

    After Isha the result is Fajr with ``"Tomorrow"``: tomorrow's Fajr time is
    not known from today's schedule.
    """
    current = _minutes_of_day(_local_now(times, now))
    for name, time_str in times.prayers():
        prayer_minutes = _to_minutes(time_str)
        if prayer_minutes > current:
            return NextPrayerResult(name=name, time=time_str, time_until=format_duration(prayer_minutes - current))
    return NextPrayerResult(name="Fajr", time=times.fajr, time_until="Tomorrow")


def prayer_schedule(times: PrayerTimes, now: Optional[datetime] = None) -> List[PrayerStatus]:
    """All six daily times, sunrise included, annotated relative to *now*."""
    current = _minutes_of_day(_local_now(times, now))
    schedule = []
    for name in ("Fajr", "Sunrise", "Dhuhr", "Asr", "Maghrib", "Isha"):
        time_str = getattr(times, name.lower())
        prayer_minutes = _to_minutes(time_str)
        passed = current > prayer_minutes
        schedule.append(
            PrayerStatus(
                name=name,
                arabic_name=ARABIC_NAMES[name],
                time=time_str,
                passed=passed,
                time_until=None if passed else format_duration(prayer_minutes - current),
            )
        )
    return schedule


def is_time_for_prayer(time_str: str, now: Optional[datetime] = None, reminder_minutes: int = 10) -> bool:
    """True when the prayer starts within the next *reminder_minutes*."""
    diff = _to_minutes(time_str) - _minutes_of_day(now or datetime.now())
    return 0 < diff <= reminder_minutes


def prayer_time_now(
    times: PrayerTimes,
    now: Optional[datetime] = None,
    window_minutes: int = 5,
) -> Optional[Tuple[str, str]]:
    """The prayer whose time is within *window_minutes* of *now*, either side."""
    current = _minutes_of_day(_local_now(times, now))
    for name, time_str in times.prayers():
        if abs(current - _to_minutes(time_str)) <= window_minutes:
            return name, time_str
    return None


def format_prayer_time(time_str: str, use_24_hour: bool = False) -> str:
    if use_24_hour:
        return time_str
    hour, minute = (int(part) for part in time_str.split(":"))
    period = "PM" if hour >= 12 else "AM"
    display_hour = hour - 12 if hour > 12 else (12 if hour == 0 else hour)
    return f"{display_hour}:{minute:02d} {period}"


def format_duration(minutes: int) -> str:
    if minutes <= 0:
        return "0m"
    hours, mins = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {mins}m"
    return f"{mins}m"


def _to_minutes(time_str: str) -> int:
    hour, minute = time_str.split(":")[:2]
    return int(hour) * 60 + int(minute)


def _minutes_of_day(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def _local_now(times: PrayerTimes, now: Optional[datetime]) -> datetime:
    if now is None:
        if times.timezone:
            return datetime.now(pytz.timezone(times.timezone))
        return datetime.now()
    if now.tzinfo is not None and times.timezone:
        return now.astimezone(pytz.timezone(times.timezone))
    return now


def _hijri_text(hijri: Optional[Dict[str, Any]]) -> str:
    if not isinstance(hijri, dict):
        return "Unknown"
    day = hijri.get("day")
    month_en = (hijri.get("month") or {}).get("en", "")
    year = hijri.get("year")
    if day and month_en and year:
        return f"{day} {month_en} {year} AH"
    return hijri.get("date") or "Unknown"


def _resolve_timezone(location: LocationInfo, data: Dict[str, Any]) -> Optional[str]:
    timezone_name = (data.get("meta") or {}).get("timezone") or location.timezone
    if not timezone_name:
        LOGGER.debug("Timezone missing from response and location")
        return None
    try:
        pytz.timezone(timezone_name)
    except pytz.UnknownTimeZoneError:
        LOGGER.warning("Unknown timezone '%s'; ignoring", timezone_name)
        return None
    return timezone_name
