"""Qibla direction: great-circle initial bearing toward the Kaaba."""
from __future__ import annotations

import logging
import math

from net import ProviderError, ProviderErrorKind, fetch_json

LOGGER = logging.getLogger(__name__)

KAABA_LATITUDE = 21.4225
KAABA_LONGITUDE = 39.8262

ALADHAN_QIBLA_URL = "https://api.aladhan.com/v1/qibla"


def qibla_bearing(latitude: float, longitude: float) -> float:
    """Degrees clockwise from true north, in ``[0, 360)``.

    The bearing is undefined at the Kaaba itself; 0.0 is returned there.
    """
    if math.isclose(latitude, KAABA_LATITUDE, abs_tol=1e-9) and math.isclose(longitude, KAABA_LONGITUDE, abs_tol=1e-9):
        return 0.0

    phi_point = math.radians(latitude)
    phi_kaaba = math.radians(KAABA_LATITUDE)
    delta_lambda = math.radians(KAABA_LONGITUDE - longitude)

    x = math.sin(delta_lambda) * math.cos(phi_kaaba)
    y = math.cos(phi_point) * math.sin(phi_kaaba) - math.sin(phi_point) * math.cos(phi_kaaba) * math.cos(delta_lambda)
    theta = math.atan2(x, y)
    return (math.degrees(theta) + 360.0) % 360.0


class QiblaService:
    """Optionally asks AlAdhan for the bearing; the local formula is the ground truth."""

    def __init__(self, use_remote: bool = True, timeout: float = 8.0, base_url: str = ALADHAN_QIBLA_URL) -> None:
        self.use_remote = use_remote
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")

    async def bearing(self, latitude: float, longitude: float) -> float:
        if self.use_remote:
            try:
                direction = await self._fetch_remote(latitude, longitude)
                LOGGER.debug("Qibla direction from AlAdhan: %s", direction)
                return direction
            except ProviderError as exc:
                LOGGER.warning("AlAdhan Qibla lookup failed (%s); using calculation", exc)
        direction = qibla_bearing(latitude, longitude)
        LOGGER.debug("Qibla direction calculated: %s", direction)
        return direction

    async def _fetch_remote(self, latitude: float, longitude: float) -> float:
        payload = await fetch_json(f"{self.base_url}/{latitude}/{longitude}", timeout=self.timeout)
        data = payload.get("data") if isinstance(payload, dict) else None
        direction = data.get("direction") if isinstance(data, dict) else None
        if isinstance(direction, bool) or not isinstance(direction, (int, float)):
            raise ProviderError(ProviderErrorKind.BAD_RESPONSE, "AlAdhan Qibla response has no direction")
        if not 0.0 <= float(direction) <= 360.0:
            raise ProviderError(ProviderErrorKind.BAD_RESPONSE, f"Qibla direction out of range: {direction}")
        return float(direction) % 360.0
