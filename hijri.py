"""Hijri calendar conversion and Islamic special days."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from net import ProviderError, ProviderErrorKind, fetch_json

LOGGER = logging.getLogger(__name__)

ALADHAN_BASE_URL = "https://api.aladhan.com/v1"

ISLAMIC_MONTHS = [
    "Muharram",
    "Safar",
    "Rabi' al-Awwal",
    "Rabi' al-Thani",
    "Jumada al-Awwal",
    "Jumada al-Thani",
    "Rajab",
    "Sha'ban",
    "Ramadan",
    "Shawwal",
    "Dhu al-Qi'dah",
    "Dhu al-Hijjah",
]

RAMADAN = 9
DHU_AL_HIJJAH = 12

# Keyed by (month, day) in the Hijri calendar.
ISLAMIC_EVENTS: Dict[Tuple[int, int], str] = {
    (1, 1): "Islamic New Year",
    (1, 10): "Day of Ashura",
    (3, 12): "Mawlid al-Nabi",
    (7, 27): "Isra & Mi'raj",
    (8, 15): "Laylat al-Bara'ah",
    (9, 1): "Ramadan Begins",
    (9, 27): "Laylat al-Qadr",
    (10, 1): "Eid al-Fitr",
    (12, 9): "Day of Arafah",
    (12, 10): "Eid al-Adha",
}


class SpecialDayKind(Enum):
    EID = "eid"
    RAMADAN = "ramadan"
    SPECIAL = "special"


@dataclass(frozen=True)
class HijriDate:
    day: int
    month_number: int
    month_name: str
    year: int
    weekday: str

    @property
    def formatted(self) -> str:
        return f"{self.day} {self.month_name} {self.year} AH"


@dataclass(frozen=True)
class SpecialDay:
    name: str
    description: str
    kind: SpecialDayKind


@dataclass(frozen=True)
class CalendarDay:
    gregorian: date
    hijri: HijriDate
    event: Optional[str] = None


def _on(month: int, day: int) -> Callable[[HijriDate], bool]:
    return lambda hijri: hijri.month_number == month and hijri.day == day


def _fixed(name: str, description: str, kind: SpecialDayKind) -> Callable[[HijriDate], SpecialDay]:
    return lambda hijri: SpecialDay(name, description, kind)


# Evaluated in order; the first matching rule wins.
SPECIAL_DAY_RULES: List[Tuple[Callable[[HijriDate], bool], Callable[[HijriDate], SpecialDay]]] = [
    (
        _on(RAMADAN, 1),
        _fixed("First Day of Ramadan", "The blessed month of fasting begins", SpecialDayKind.RAMADAN),
    ),
    (
        lambda hijri: hijri.month_number == RAMADAN and hijri.day >= 21 and hijri.day % 2 == 1,
        _fixed("Laylatul Qadr (Possible)", "One of the last odd nights - seek the Night of Power", SpecialDayKind.SPECIAL),
    ),
    (
        lambda hijri: hijri.month_number == RAMADAN,
        lambda hijri: SpecialDay(f"Ramadan Day {hijri.day}", "Blessed month of fasting and worship", SpecialDayKind.RAMADAN),
    ),
    (_on(10, 1), _fixed("Eid al-Fitr", "Festival of Breaking the Fast", SpecialDayKind.EID)),
    (_on(DHU_AL_HIJJAH, 9), _fixed("Day of Arafah", "The best day of the year - highly recommended to fast", SpecialDayKind.SPECIAL)),
    (_on(DHU_AL_HIJJAH, 10), _fixed("Eid al-Adha", "Festival of Sacrifice", SpecialDayKind.EID)),
    (_on(1, 10), _fixed("Day of Ashura", "Recommended day of fasting", SpecialDayKind.SPECIAL)),
    (_on(3, 12), _fixed("Mawlid al-Nabi", "Birthday of Prophet Muhammad ﷺ", SpecialDayKind.SPECIAL)),
    (_on(7, 27), _fixed("Lailat al-Miraj", "The Night Journey", SpecialDayKind.SPECIAL)),
    (_on(8, 15), _fixed("Lailat al-Bara'ah", "The Night of Forgiveness", SpecialDayKind.SPECIAL)),
]


def classify_special_day(hijri: HijriDate) -> Optional[SpecialDay]:
    for matches, build in SPECIAL_DAY_RULES:
        if matches(hijri):
            return build(hijri)
    return None


class HijriCalendarService:
    """Converts dates through the AlAdhan calendar API.

    The provider is authoritative; when it cannot answer, conversions return
    None rather than an estimated date.
    """

    def __init__(self, base_url: str = ALADHAN_BASE_URL, timeout: float = 15.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def to_hijri(self, gregorian: date) -> Optional[HijriDate]:
        url = f"{self.base_url}/gToH/{gregorian.strftime('%d-%m-%Y')}"
        try:
            payload = await fetch_json(url, timeout=self.timeout)
            hijri = _parse_hijri(_data(payload).get("hijri"))
        except ProviderError as exc:
            LOGGER.warning("Hijri conversion failed for %s: %s", gregorian, exc)
            return None
        LOGGER.debug("Converted %s to %s", gregorian, hijri.formatted)
        return hijri

    async def to_gregorian(self, day: int, month: int, year: int) -> Optional[date]:
        url = f"{self.base_url}/hToG/{day:02d}-{month:02d}-{year}"
        try:
            payload = await fetch_json(url, timeout=self.timeout)
            gregorian = _data(payload).get("gregorian")
            converted = date(
                int(gregorian["year"]),
                int(gregorian["month"]["number"]),
                int(gregorian["day"]),
            )
        except ProviderError as exc:
            LOGGER.warning("Gregorian conversion failed for %s-%s-%s AH: %s", day, month, year, exc)
            return None
        except (KeyError, TypeError, ValueError):
            LOGGER.warning("Malformed Gregorian conversion for %s-%s-%s AH", day, month, year, exc_info=True)
            return None
        return converted

    async def special_day(self, gregorian: date) -> Optional[SpecialDay]:
        hijri = await self.to_hijri(gregorian)
        if hijri is None:
            return None
        return classify_special_day(hijri)

    async def days_until_ramadan(self, today: Optional[date] = None) -> Optional[int]:
        """Days until 1 Ramadan; 0 while Ramadan is under way."""
        today = today or date.today()
        hijri_today = await self.to_hijri(today)
        if hijri_today is None:
            return None
        if hijri_today.month_number == RAMADAN:
            return 0

        ramadan_year = hijri_today.year + 1 if hijri_today.month_number > RAMADAN else hijri_today.year
        ramadan_start = await self.to_gregorian(1, RAMADAN, ramadan_year)
        if ramadan_start is None:
            return None
        return (ramadan_start - today).days

    async def is_ramadan(self, gregorian: Optional[date] = None) -> bool:
        hijri = await self.to_hijri(gregorian or date.today())
        return hijri is not None and hijri.month_number == RAMADAN

    async def current_islamic_year(self, today: Optional[date] = None) -> Optional[int]:
        hijri = await self.to_hijri(today or date.today())
        return hijri.year if hijri else None

    async def is_hajj_season(self, gregorian: date) -> bool:
        hijri = await self.to_hijri(gregorian)
        if hijri is None:
            return False
        return hijri.month_number == DHU_AL_HIJJAH and 8 <= hijri.day <= 13

    async def month_calendar(self, month: int, year: int) -> Optional[List[CalendarDay]]:
        """Hijri dates for every day of a Gregorian month, with Islamic events marked."""
        if not 1 <= month <= 12:
            raise ValueError(f"Invalid month: {month}")
        url = f"{self.base_url}/gToHCalendar/{month}/{year}"
        try:
            payload = await fetch_json(url, timeout=self.timeout)
            if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
                raise ProviderError(ProviderErrorKind.BAD_RESPONSE, "Calendar response has no day list")
            days = []
            for entry in payload["data"]:
                hijri = _parse_hijri(entry.get("hijri"))
                gregorian_day = int(entry["gregorian"]["day"])
                days.append(
                    CalendarDay(
                        gregorian=date(year, month, gregorian_day),
                        hijri=hijri,
                        event=ISLAMIC_EVENTS.get((hijri.month_number, hijri.day)),
                    )
                )
        except ProviderError as exc:
            LOGGER.warning("Hijri calendar unavailable for %s/%s: %s", month, year, exc)
            return None
        except (AttributeError, KeyError, TypeError, ValueError):
            LOGGER.warning("Malformed Hijri calendar for %s/%s", month, year, exc_info=True)
            return None
        LOGGER.debug("Loaded %d calendar days for %s/%s", len(days), month, year)
        return days


def _data(payload: Any) -> Dict[str, Any]:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        raise ProviderError(ProviderErrorKind.BAD_RESPONSE, "Calendar response has no data")
    return data


def _parse_hijri(raw: Any) -> HijriDate:
    try:
        return HijriDate(
            day=int(raw["day"]),
            month_number=int(raw["month"]["number"]),
            month_name=str(raw["month"]["en"]),
            year=int(raw["year"]),
            weekday=str((raw.get("weekday") or {}).get("en", "")),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ProviderError(ProviderErrorKind.BAD_RESPONSE, "Malformed Hijri date") from exc
