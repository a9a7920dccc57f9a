from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import requests

from src.services import geocoding
from src.services.cache import TTLCache
from src.services.config import GAZETTEER_PATH
from src.services.gazetteer import Gazetteer
from src.services.geocoding import GazetteerGeocoder, GeocodeResult, NominatimGeocoder, TieredGeocoder


class FakeTier:
    def __init__(self, name: str, answers: dict[str, tuple[float, float]] | None = None, fail: bool = False) -> None:
        self.name = name
        self.answers = answers or {}
        self.fail = fail
        self.calls: list[str] = []

    def lookup(self, query: str) -> Optional[GeocodeResult]:
        self.calls.append(query)
        if self.fail:
            raise RuntimeError("provider down")
        if query not in self.answers:
            return None
        lat, lon = self.answers[query]
        return GeocodeResult(query=query, latitude=lat, longitude=lon, address=query)


class FakeResponse:
    def __init__(self, payload: object, status: int = 200) -> None:
        self.payload = payload
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}")

    def json(self) -> object:
        return self.payload


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def make_cache(clock: FakeClock | None = None) -> TTLCache:
    return TTLCache(ttl=timedelta(days=30), negative_ttl=timedelta(days=1), clock=clock)


def test_gazetteer_tier_resolves_curated_names() -> None:
    tier = GazetteerGeocoder(Gazetteer.load(GAZETTEER_PATH))

    city = tier.lookup("Tehran, Iran")
    district = tier.lookup("ونک")

    assert city is not None and city.latitude == pytest.approx(35.6892)
    assert city.confidence == "high"
    assert district is not None and district.address == "Vanak, Tehran, Iran"
    assert tier.lookup("Marlik, Iran") is None
    assert tier.lookup("Atlantis") is None


def test_falls_back_to_next_tier_and_records_source() -> None:
    first = FakeTier("gazetteer")
    second = FakeTier("nominatim", {"Marlik, Iran": (35.72, 50.98)})
    geocoder = TieredGeocoder([first, second], cache=make_cache())

    result = geocoder.resolve("Marlik, Iran")

    assert result is not None
    assert result.source == "nominatim"
    assert geocoder.stats["nominatim_hits"] == 1


def test_cached_answer_skips_tiers() -> None:
    tier = FakeTier("nominatim", {"Qom": (34.64, 50.87)})
    geocoder = TieredGeocoder([tier], cache=make_cache())

    geocoder.resolve("Qom")
    cached = geocoder.resolve("  QOM ")

    assert tier.calls == ["Qom"]
    assert cached is not None
    assert cached.source == "cache"
    assert cached.raw == {"tier": "nominatim"}
    assert geocoder.stats["cache_hits"] == 1


def test_failures_are_negatively_cached_until_expiry() -> None:
    clock = FakeClock()
    tier = FakeTier("nominatim")
    geocoder = TieredGeocoder([tier], cache=make_cache(clock))

    assert geocoder.resolve("Nowhere") is None
    assert geocoder.resolve("Nowhere") is None
    assert tier.calls == ["Nowhere"]
    assert geocoder.stats["negative_cache_hits"] == 1

    clock.now += timedelta(days=2)

    assert geocoder.resolve("Nowhere") is None
    assert tier.calls == ["Nowhere", "Nowhere"]


def test_tier_exceptions_do_not_escape() -> None:
    geocoder = TieredGeocoder([FakeTier("broken", fail=True), FakeTier("backup", {"Arak": (34.09, 49.69)})])

    result = geocoder.resolve("Arak")

    assert result is not None and result.source == "backup"
    assert geocoder.stats["errors"] == 1


def test_resolve_many_deduplicates_queries() -> None:
    tier = FakeTier("nominatim", {"Arak": (34.09, 49.69)})
    geocoder = TieredGeocoder([tier], cache=make_cache())

    results = geocoder.resolve_many(["Arak", "Arak", "Nowhere", ""], max_workers=2)

    assert set(results) == {"Arak", "Nowhere"}
    assert results["Arak"] is not None
    assert results["Nowhere"] is None
    assert sorted(tier.calls) == ["Arak", "Nowhere"]


def test_tiered_geocoder_requires_tiers() -> None:
    with pytest.raises(ValueError):
        TieredGeocoder([])


def test_nominatim_parses_iranian_result(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_get(url, params=None, headers=None, timeout=None):
        captured.update(params or {})
        return FakeResponse(
            [
                {
                    "lat": "34.6416",
                    "lon": "50.8746",
                    "display_name": "Qom, Qom Province, Iran",
                    "importance": 0.7,
                    "address": {"country_code": "ir"},
                }
            ]
        )

    monkeypatch.setattr(geocoding.requests, "get", fake_get)
    result = NominatimGeocoder(min_interval=0).lookup("Qom")

    assert result is not None
    assert result.latitude == pytest.approx(34.6416)
    assert result.confidence == "high"
    assert captured["countrycodes"] == "ir"


def test_nominatim_rejects_out_of_country_results(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_get(url, params=None, headers=None, timeout=None):
        return FakeResponse([{"lat": "48.85", "lon": "2.35", "address": {"country_code": "fr"}}])

    monkeypatch.setattr(geocoding.requests, "get", fake_get)

    assert NominatimGeocoder(min_interval=0).lookup("Paris") is None


def test_nominatim_http_errors_are_not_found(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_get(url, params=None, headers=None, timeout=None):
        return FakeResponse({}, status=503)

    monkeypatch.setattr(geocoding.requests, "get", fake_get)

    assert NominatimGeocoder(min_interval=0).lookup("Qom") is None
