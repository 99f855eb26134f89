"""Engine configuration loaded from an optional JSON file."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from prayer_times import DEFAULT_METHOD, CalculationSchool

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".prayer_engine" / "config.json"
DEFAULT_CACHE_PATH = Path.home() / ".prayer_engine" / "cache.json"


@dataclass
class Timeouts:
    location: float = 10.0
    gps: float = 10.0
    gps_maximum_age: float = 300.0
    prayer_times: float = 15.0
    hijri: float = 15.0
    qibla: float = 8.0
    geocoding: float = 8.0


@dataclass
class EngineConfig:
    method: int = DEFAULT_METHOD
    school: CalculationSchool = CalculationSchool.STANDARD
    cache_path: Path = DEFAULT_CACHE_PATH
    cache_namespace: Optional[str] = None
    manual_latitude: Optional[float] = None
    manual_longitude: Optional[float] = None
    remote_qibla: bool = True
    log_level: str = "INFO"
    timeouts: Timeouts = field(default_factory=Timeouts)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "EngineConfig":
        calc_cfg = _section(config, "calculation")
        cache_cfg = _section(config, "cache")
        location_cfg = _section(config, "location")
        timeout_cfg = _section(config, "timeouts")

        timeouts = Timeouts()
        for name in list(vars(timeouts)):
            value = _safe_float(timeout_cfg.get(name))
            if value is not None and value > 0:
                setattr(timeouts, name, value)

        try:
            school = CalculationSchool(int(calc_cfg.get("school", 0)))
        except (TypeError, ValueError):
            LOGGER.warning("Unknown calculation school %r; using Standard", calc_cfg.get("school"))
            school = CalculationSchool.STANDARD

        try:
            method = int(calc_cfg.get("method", DEFAULT_METHOD))
        except (TypeError, ValueError):
            LOGGER.warning("Invalid calculation method %r; using %s", calc_cfg.get("method"), DEFAULT_METHOD)
            method = DEFAULT_METHOD

        return cls(
            method=method,
            school=school,
            cache_path=Path(str(cache_cfg.get("path") or DEFAULT_CACHE_PATH)).expanduser(),
            cache_namespace=cache_cfg.get("namespace") or None,
            manual_latitude=_safe_float(location_cfg.get("latitude")),
            manual_longitude=_safe_float(location_cfg.get("longitude")),
            remote_qibla=bool(_section(config, "qibla").get("remote", True)),
            log_level=str(_section(config, "logging").get("level", "INFO")).upper(),
            timeouts=timeouts,
        )


def load_config(path: Optional[Path] = None) -> EngineConfig:
    """Read *path*; a missing or unreadable file yields the defaults."""
    path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not path.exists():
        LOGGER.debug("No config file at %s; using defaults", path)
        return EngineConfig()
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, ValueError):
        LOGGER.exception("Failed to load config from %s", path)
        return EngineConfig()
    if not isinstance(payload, dict):
        LOGGER.warning("Config file %s does not contain an object; using defaults", path)
        return EngineConfig()
    LOGGER.debug("Loaded config keys: %s", list(payload.keys()))
    return EngineConfig.from_dict(payload)


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config.get(name) if isinstance(config, dict) else None
    return section if isinstance(section, dict) else {}


def _safe_float(value: Optional[object]) -> Optional[float]:
    try:
        if value in (None, ""):
            return None
        return float(value)
    except (TypeError, ValueError):
        return None
