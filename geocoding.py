"""Reverse geocoding of coordinates into city, region and country names."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from net import ProviderError, ProviderErrorKind, fetch_json

LOGGER = logging.getLogger(__name__)

NOMINATIM_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"
BIGDATACLOUD_REVERSE_URL = "https://api.bigdatacloud.net/data/reverse-geocode-client"

MEMO_PRECISION = 3


@dataclass(frozen=True)
class Placemark:
    city: str
    region: Optional[str]
    country: str
    display_name: str
    source: str


def coordinates_placemark(latitude: float, longitude: float) -> Placemark:
    """Best-effort placemark built from the coordinates alone."""
    return Placemark(
        city="Location",
        region=None,
        country=f"{latitude:.2f}°, {longitude:.2f}°",
        display_name=f"{latitude:.4f}°, {longitude:.4f}°",
        source="coordinates",
    )


class ReverseGeocoder:
    """Resolves coordinates through Nominatim, then BigDataCloud, then raw coordinates.

    Lookups are memoized per rounded coordinate pair; the coordinate fallback
    is never memoized so a later lookup can still reach a provider.
    """

    def __init__(self, timeout: float = 8.0) -> None:
        self._timeout = timeout
        self._memo: Dict[Tuple[float, float], Placemark] = {}

    async def reverse(self, latitude: float, longitude: float) -> Placemark:
        memo_key = (round(latitude, MEMO_PRECISION), round(longitude, MEMO_PRECISION))
        if memo_key in self._memo:
            return self._memo[memo_key]

        for lookup in (self._from_nominatim, self._from_bigdatacloud):
            try:
                placemark = await lookup(latitude, longitude)
            except ProviderError as exc:
                LOGGER.warning("%s reverse geocoding failed: %s", lookup.__name__, exc)
                continue
            LOGGER.debug("Reverse geocoded (%s, %s) -> %s via %s", latitude, longitude, placemark.city, placemark.source)
            self._memo[memo_key] = placemark
            return placemark

        LOGGER.info("Reverse geocoding unavailable; using coordinates for (%s, %s)", latitude, longitude)
        return coordinates_placemark(latitude, longitude)

    async def _from_nominatim(self, latitude: float, longitude: float) -> Placemark:
        params = {
            "format": "json",
            "lat": latitude,
            "lon": longitude,
            "zoom": 10,
            "addressdetails": 1,
        }
        payload = await fetch_json(NOMINATIM_REVERSE_URL, params=params, timeout=self._timeout)
        address = _mapping(payload).get("address")
        if not isinstance(address, dict) or not address:
            raise ProviderError(ProviderErrorKind.BAD_RESPONSE, "Nominatim returned no address")

        city = (
            address.get("city")
            or address.get("town")
            or address.get("village")
            or address.get("municipality")
            or address.get("suburb")
            or address.get("county")
            or "Unknown"
        )
        region = address.get("state") or address.get("province") or address.get("region") or None
        country = address.get("country") or "Unknown"
        return Placemark(
            city=str(city),
            region=str(region) if region else None,
            country=str(country),
            display_name=str(payload.get("display_name") or f"{city}, {country}"),
            source="nominatim",
        )

    async def _from_bigdatacloud(self, latitude: float, longitude: float) -> Placemark:
        params = {"latitude": latitude, "longitude": longitude, "localityLanguage": "en"}
        payload = _mapping(await fetch_json(BIGDATACLOUD_REVERSE_URL, params=params, timeout=self._timeout))
        if not payload.get("countryName"):
            raise ProviderError(ProviderErrorKind.BAD_RESPONSE, "BigDataCloud returned no country")

        region = payload.get("principalSubdivision") or None
        city = payload.get("city") or payload.get("locality") or region or "Unknown"
        country = str(payload["countryName"])
        return Placemark(
            city=str(city),
            region=str(region) if region else None,
            country=country,
            display_name=f"{city}, {country}",
            source="bigdatacloud",
        )


def _mapping(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ProviderError(ProviderErrorKind.BAD_RESPONSE, "Expected a JSON object")
    return payload
