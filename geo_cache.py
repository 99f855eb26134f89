"""Local key-value cache for the last location and today's prayer times."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

LOCATION_KEY = "last_location"
PRAYER_TIMES_KEY = "today_prayer_times"

FINGERPRINT_PRECISION = 4

T = TypeVar("T")


@dataclass(frozen=True)
class GeoFingerprint:
    latitude: float
    longitude: float

    @classmethod
    def of(cls, latitude: float, longitude: float) -> "GeoFingerprint":
        return cls(round(float(latitude), FINGERPRINT_PRECISION), round(float(longitude), FINGERPRINT_PRECISION))

    def within(self, other: "GeoFingerprint", tolerance: float) -> bool:
        """Return True when both axes differ by at most *tolerance* degrees."""
        return (
            abs(self.latitude - other.latitude) <= tolerance
            and abs(self.longitude - other.longitude) <= tolerance
        )


@dataclass(frozen=True)
class CachePolicy:
    ttl: timedelta
    tolerance: Optional[float] = None
    same_day: bool = False


DEFAULT_POLICIES: Dict[str, CachePolicy] = {
    LOCATION_KEY: CachePolicy(ttl=timedelta(days=7)),
    PRAYER_TIMES_KEY: CachePolicy(ttl=timedelta(days=1), tolerance=0.5, same_day=True),
}


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    key: str
    value: T
    fingerprint: GeoFingerprint
    captured_at: datetime


class CacheStorage:
    """Interface for the durable text store behind :class:`GeoCache`."""

    def read(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def write(self, key: str, payload: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryStorage(CacheStorage):
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def read(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def write(self, key: str, payload: str) -> None:
        self._data[key] = payload

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage(CacheStorage):
    """Stores every key in a single JSON document, replaced atomically on write."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def read(self, key: str) -> Optional[str]:
        document = self._load()
        value = document.get(key)
        return value if isinstance(value, str) else None

    def write(self, key: str, payload: str) -> None:
        document = self._load_for_update()
        document[key] = payload
        self._replace(document)

    def delete(self, key: str) -> None:
        document = self._load_for_update()
        if document.pop(key, None) is not None:
            self._replace(document)

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        with self._path.open("r", encoding="utf-8") as handle:
            document = json.load(handle)
        if not isinstance(document, dict):
            raise ValueError(f"Cache file {self._path} does not hold a JSON object")
        return document

    def _load_for_update(self) -> Dict[str, Any]:
        try:
            return self._load()
        except ValueError:
            LOGGER.warning("Discarding corrupted cache file %s", self._path)
            return {}

    def _replace(self, document: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".cache-", dir=str(self._path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
            os.replace(tmp_name, self._path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise


class GeoCache:
    """Timestamped, fingerprinted cache entries with per-key validity policies."""

    def __init__(
        self,
        storage: Optional[CacheStorage] = None,
        *,
        policies: Optional[Dict[str, CachePolicy]] = None,
        namespace: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._storage = storage or MemoryStorage()
        self._policies = dict(DEFAULT_POLICIES if policies is None else policies)
        self._namespace = namespace
        self._clock = clock

    def get(self, key: str, decode: Callable[[Dict[str, Any]], T]) -> Optional[CacheEntry[T]]:
        """Return the stored entry for *key*, or None on a miss or unreadable storage."""
        try:
            raw = self._storage.read(self._storage_key(key))
            if raw is None:
                return None
            payload = json.loads(raw)
            latitude, longitude = payload["fingerprint"]
            return CacheEntry(
                key=key,
                value=decode(payload["value"]),
                fingerprint=GeoFingerprint(float(latitude), float(longitude)),
                captured_at=datetime.fromisoformat(payload["captured_at"]),
            )
        except (OSError, ValueError, KeyError, TypeError):
            LOGGER.warning("Ignoring unreadable cache entry for %s", key, exc_info=True)
            return None

    def put(self, key: str, value: Any, fingerprint: GeoFingerprint) -> Optional[CacheEntry[Any]]:
        """Replace the entry for *key*; *value* must provide ``to_dict()``."""
        entry = CacheEntry(key=key, value=value, fingerprint=fingerprint, captured_at=self._clock())
        payload = {
            "value": value.to_dict(),
            "fingerprint": [fingerprint.latitude, fingerprint.longitude],
            "captured_at": entry.captured_at.isoformat(),
        }
        try:
            self._storage.write(self._storage_key(key), json.dumps(payload))
        except (OSError, TypeError, ValueError):
            LOGGER.warning("Failed to persist cache entry for %s", key, exc_info=True)
            return None
        LOGGER.debug("Cached %s at %s for fingerprint %s", key, entry.captured_at, fingerprint)
        return entry

    def is_valid(
        self,
        entry: CacheEntry[Any],
        query: Optional[GeoFingerprint] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        policy = self._policies.get(entry.key)
        if policy is None:
            LOGGER.debug("No cache policy registered for %s", entry.key)
            return False
        now = now or self._clock()
        if now - entry.captured_at >= policy.ttl:
            return False
        if policy.same_day and entry.captured_at.date() != now.date():
            return False
        if policy.tolerance is not None:
            if query is None or not entry.fingerprint.within(query, policy.tolerance):
                return False
        return True

    def get_valid(
        self,
        key: str,
        decode: Callable[[Dict[str, Any]], T],
        query: Optional[GeoFingerprint] = None,
        now: Optional[datetime] = None,
    ) -> Optional[CacheEntry[T]]:
        entry = self.get(key, decode)
        if entry is None:
            LOGGER.debug("Cache MISS for %s", key)
            return None
        if not self.is_valid(entry, query, now):
            LOGGER.debug("Cache entry for %s is stale or out of range", key)
            return None
        LOGGER.debug("Cache HIT for %s", key)
        return entry

    def invalidate(self, key: str) -> None:
        try:
            self._storage.delete(self._storage_key(key))
        except OSError:
            LOGGER.warning("Failed to remove cache entry for %s", key, exc_info=True)

    def _storage_key(self, key: str) -> str:
        return f"{self._namespace}:{key}" if self._namespace else key
