"""
Tiered geocoding: a static gazetteer first, then OpenStreetMap's Nominatim API, behind a
caller-supplied cache.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Protocol, Sequence

import requests

from src.services.cache import SQLiteCache, TTLCache
from src.services.content_hashing import fold_text
from src.services.gazetteer import Gazetteer

LOGGER = logging.getLogger(__name__)


@dataclass
class GeocodeResult:
    query: str
    latitude: float
    longitude: float
    address: str | None = None
    confidence: str = "medium"
    source: str = "unknown"
    raw: dict[str, Any] = field(default_factory=dict)

    def to_cache(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "confidence": self.confidence,
            "tier": self.source,
        }

    @classmethod
    def from_cache(cls, payload: dict[str, Any]) -> "GeocodeResult":
        return cls(
            query=str(payload.get("query") or ""),
            latitude=float(payload["latitude"]),
            longitude=float(payload["longitude"]),
            address=payload.get("address"),
            confidence=str(payload.get("confidence") or "medium"),
            source="cache",
            raw={"tier": payload.get("tier")},
        )


class GeocoderTier(Protocol):
    name: str

    def lookup(self, query: str) -> Optional[GeocodeResult]:
        ...


class GazetteerGeocoder:
    """Resolve names present in the curated gazetteer without any network traffic."""

    name = "gazetteer"

    def __init__(self, gazetteer: Gazetteer) -> None:
        self.gazetteer = gazetteer

    def lookup(self, query: str) -> Optional[GeocodeResult]:
        query = query.strip()
        if not query:
            return None
        # "Vanak, Tehran, Iran" -> try the whole string, then its most specific part.
        for candidate in (query, query.split(",")[0]):
            place = self.gazetteer.lookup(candidate)
            if place is not None and place.has_coordinates:
                return GeocodeResult(
                    query=query,
                    latitude=place.lat,  # type: ignore[arg-type]
                    longitude=place.lon,  # type: ignore[arg-type]
                    address=place.address or place.name,
                    confidence="high",
                    source=self.name,
                )
        matches = [match for match in self.gazetteer.find(query) if match.place.has_coordinates]
        if matches:
            place = matches[0].place
            return GeocodeResult(
                query=query,
                latitude=place.lat,  # type: ignore[arg-type]
                longitude=place.lon,  # type: ignore[arg-type]
                address=place.address or place.name,
                confidence="medium",
                source=self.name,
            )
        return None


class NominatimGeocoder:
    """Fetch coordinates using the public Nominatim endpoint, restricted to Iran."""

    name = "nominatim"
    endpoint = "https://nominatim.openstreetmap.org/search"
    # Inclusive latitude/longitude bounds that cover Iran including the Gulf islands.
    IR_LAT_RANGE = (25.0, 40.0)
    IR_LON_RANGE = (44.0, 64.0)

    def __init__(
        self,
        min_interval: float = 1.1,
        user_agent: str = "incident-pipeline/0.1 (ops@example.org)",
        country_code: str = "ir",
        timeout: int = 25,
    ) -> None:
        self.min_interval = min_interval
        self.user_agent = user_agent
        self.country_code = country_code
        self.timeout = timeout
        self._last_request = 0.0
        self._rate_lock = threading.Lock()

    def lookup(self, query: str) -> Optional[GeocodeResult]:
        query = query.strip()
        if not query:
            return None
        payload = self._fetch(query)
        if not payload:
            return None
        importance = payload.get("importance")
        try:
            confidence = "high" if float(importance) >= 0.5 else "medium"  # type: ignore[arg-type]
        except (TypeError, ValueError):
            confidence = "medium"
        return GeocodeResult(
            query=query,
            latitude=float(payload["lat"]),
            longitude=float(payload["lon"]),
            address=str(payload.get("display_name") or query),
            confidence=confidence,
            source=self.name,
            raw=payload,
        )

    def _wait_for_slot(self) -> None:
        with self._rate_lock:
            elapsed = time.monotonic() - self._last_request
            if elapsed < self.min_interval:
                time.sleep(self.min_interval - elapsed)
            self._last_request = time.monotonic()

    def _fetch(self, query: str) -> Optional[dict[str, Any]]:
        self._wait_for_slot()
        params = {
            "q": query,
            "format": "json",
            "limit": 1,
            "addressdetails": 1,
            "countrycodes": self.country_code,
            "accept-language": "en",
        }
        headers = {
            "User-Agent": self.user_agent,
        }
        try:
            response = requests.get(self.endpoint, params=params, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            results = response.json()
        except requests.RequestException:
            LOGGER.warning("Geocoding request failed for query '%s'", query, exc_info=True)
            return None
        except ValueError:
            LOGGER.warning("Geocoding response for '%s' was not JSON", query)
            return None
        if results:
            candidate = results[0]
            if self._is_ir_payload(candidate):
                return candidate
            LOGGER.debug("Discarding out-of-country geocode candidate for query '%s': %s", query, candidate)
        return None

    @classmethod
    def _is_ir_coordinate(cls, lat: float | str | None, lon: float | str | None) -> bool:
        try:
            lat_f = float(lat)  # type: ignore[arg-type]
            lon_f = float(lon)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return False
        return cls.IR_LAT_RANGE[0] <= lat_f <= cls.IR_LAT_RANGE[1] and cls.IR_LON_RANGE[0] <= lon_f <= cls.IR_LON_RANGE[1]

    @classmethod
    def _is_ir_payload(cls, payload: dict[str, Any]) -> bool:
        address = payload.get("address") if isinstance(payload, dict) else None
        country_code = address.get("country_code") if isinstance(address, dict) else None
        if country_code and country_code.lower() != "ir":
            return False
        return cls._is_ir_coordinate(payload.get("lat"), payload.get("lon"))


class TieredGeocoder:
    """Try each tier in order, remembering answers (and misses) in the injected cache."""

    def __init__(
        self,
        tiers: Sequence[GeocoderTier],
        cache: TTLCache | SQLiteCache | None = None,
    ) -> None:
        if not tiers:
            raise ValueError("At least one geocoding tier is required")
        self.tiers = list(tiers)
        self.cache = cache
        self._stats_lock = threading.Lock()
        self.stats: dict[str, int] = {
            "cache_hits": 0,
            "negative_cache_hits": 0,
            "failures": 0,
            "errors": 0,
            **{f"{tier.name}_hits": 0 for tier in self.tiers},
        }

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] = self.stats.get(key, 0) + 1

    @staticmethod
    def cache_key(query: str) -> str:
        return " ".join(fold_text(query).split())

    def resolve(self, query: str) -> Optional[GeocodeResult]:
        """Coordinates for a location string, or None when no tier can place it."""
        key = self.cache_key(query or "")
        if not key:
            return None
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                if cached.value is None:
                    self._count("negative_cache_hits")
                    LOGGER.debug("Skipping geocode for '%s' due to recent failure cache.", query)
                    return None
                self._count("cache_hits")
                return GeocodeResult.from_cache(cached.value)
        for tier in self.tiers:
            try:
                result = tier.lookup(query)
            except Exception:  # noqa: BLE001
                self._count("errors")
                LOGGER.warning("Geocoding tier %s failed for '%s'", tier.name, query, exc_info=True)
                continue
            if result is None:
                continue
            result.source = tier.name
            self._count(f"{tier.name}_hits")
            if self.cache is not None:
                self.cache.set(key, result.to_cache())
            return result
        self._count("failures")
        if self.cache is not None:
            self.cache.set(key, None)
        return None

    def resolve_many(self, queries: Iterable[str], max_workers: int = 4) -> dict[str, Optional[GeocodeResult]]:
        """Resolve distinct queries with bounded concurrency; one failure never blocks the rest."""
        distinct = list(dict.fromkeys(query for query in queries if query and query.strip()))
        results: dict[str, Optional[GeocodeResult]] = {}
        if not distinct:
            return results
        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
            futures = {query: executor.submit(self.resolve, query) for query in distinct}
            for query, future in futures.items():
                try:
                    results[query] = future.result()
                except Exception:  # noqa: BLE001
                    LOGGER.warning("Geocoding failed for '%s'", query, exc_info=True)
                    results[query] = None
        LOGGER.info(
            "Geocoded %s/%s distinct locations (stats=%s)",
            sum(1 for result in results.values() if result is not None),
            len(distinct),
            self.stats,
        )
        return results
