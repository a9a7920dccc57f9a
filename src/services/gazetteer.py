"""
Place-name lookup for Iranian cities, Tehran districts and generic locatives.

Curated entries come from ``assets/gazetteer.json``; the GeoNames city dump that ships with
geotext can add further cities (and their Persian names) for country ``IR``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Pattern, Sequence

import geotext.geotext as geotext_module

from src.services.config import GAZETTEER_PATH
from src.services.content_hashing import fold_text

LOGGER = logging.getLogger(__name__)

PERSIAN_SCRIPT = re.compile("[\u0600-\u06ff]")

KIND_RANK = {"district": 0, "city": 1, "generic": 2}


@dataclass(frozen=True)
class Place:
    name: str
    kind: str
    names: tuple[str, ...]
    lat: float | None = None
    lon: float | None = None
    address: str | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None

    @property
    def geocode_query(self) -> str:
        return self.address or self.name


@dataclass(frozen=True)
class LocationMatch:
    place: Place
    matched: str
    position: int


def _needs_word_boundary(name: str) -> bool:
    # Persian attaches suffixes to place names, so only short ones need guarding.
    return name.isascii() or len(name) <= 3


def _boundary_pattern(name: str) -> Pattern[str]:
    return re.compile(rf"(?<!\w){re.escape(name)}(?!\w)")


class Gazetteer:
    """Known place names (both scripts) with optional coordinates."""

    def __init__(self, places: Sequence[Place]) -> None:
        self.places = list(places)
        self._entries: list[tuple[str, Place, Pattern[str] | None]] = []
        self._by_name: dict[str, Place] = {}
        for place in self.places:
            for name in place.names:
                folded = fold_text(name).strip()
                if not folded:
                    continue
                pattern = _boundary_pattern(folded) if _needs_word_boundary(folded) else None
                self._entries.append((folded, place, pattern))
                existing = self._by_name.get(folded)
                # Curated entries win over supplemental ones that share a name.
                if existing is None or KIND_RANK.get(place.kind, 9) < KIND_RANK.get(existing.kind, 9):
                    self._by_name[folded] = place

    def __len__(self) -> int:
        return len(self.places)

    @classmethod
    def load(cls, path: Path = GAZETTEER_PATH, include_geonames: bool = False) -> "Gazetteer":
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        places = [_place_from_dict(item) for item in payload.get("places", [])]
        if include_geonames:
            known = {fold_text(name) for place in places for name in place.names}
            for place in load_geonames_places():
                fresh = tuple(name for name in place.names if fold_text(name) not in known)
                if not fresh:
                    continue
                places.append(Place(place.name, place.kind, fresh, place.lat, place.lon, place.address))
                known.update(fold_text(name) for name in fresh)
        return cls(places)

    def lookup(self, name: str) -> Place | None:
        return self._by_name.get(fold_text(name).strip())

    def find(self, text: str) -> list[LocationMatch]:
        """Every place mentioned in the text, most specific first, then by position."""
        folded = fold_text(text)
        if not folded:
            return []
        best: dict[int, LocationMatch] = {}
        for name, place, pattern in self._entries:
            position = folded.find(name)
            if position < 0:
                continue
            if pattern is not None:
                match = pattern.search(folded)
                if match is None:
                    continue
                position = match.start()
            key = id(place)
            current = best.get(key)
            if current is None or position < current.position:
                best[key] = LocationMatch(place=place, matched=name, position=position)
        return sorted(best.values(), key=lambda item: (KIND_RANK.get(item.place.kind, 9), item.position))


def _place_from_dict(payload: Mapping[str, Any]) -> Place:
    names = tuple(str(name) for name in payload.get("names", []) if name)
    if not names:
        raise ValueError(f"Gazetteer entry without names: {payload!r}")
    english = next((name for name in names if name.isascii()), names[0])
    lat = payload.get("lat")
    lon = payload.get("lon")
    return Place(
        name=english,
        kind=str(payload.get("kind") or "city"),
        names=names,
        lat=float(lat) if lat is not None else None,
        lon=float(lon) if lon is not None else None,
        address=payload.get("address"),
    )


def load_geonames_places(country_code: str = "IR", min_name_length: int = 4) -> list[Place]:
    """Cities from the GeoNames dump bundled with geotext, with their Persian alternate names."""
    places: list[Place] = []
    data_path = Path(geotext_module.get_data_path("cities15000.txt"))
    if not data_path.exists():
        LOGGER.warning("City dataset at %s not found; gazetteer limited to curated places.", data_path)
        return places
    with data_path.open("r", encoding="utf-8") as handle:
        for line in handle:
            parts = line.split("\t")
            if len(parts) < 11 or parts[8] != country_code:
                continue
            try:
                lat = float(parts[4])
                lon = float(parts[5])
            except ValueError:
                continue
            primary = parts[1].strip()
            variants = [primary, parts[2].strip()]
            if parts[3].strip():
                variants.extend(name.strip() for name in parts[3].split(",") if PERSIAN_SCRIPT.search(name))
            names = tuple(dict.fromkeys(name for name in variants if len(name) >= min_name_length))
            if not names:
                continue
            places.append(
                Place(name=primary, kind="city", names=names, lat=lat, lon=lon, address=f"{primary}, Iran")
            )
    LOGGER.debug("Loaded %s GeoNames places for %s", len(places), country_code)
    return places

