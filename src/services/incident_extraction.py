"""
Keyword-driven incident extraction for Persian and English news text.

Scoring tables and place names are data (see ``assets/``); this module only knows how to
apply them. A category's raw score is the sum of the weights of every distinct term found in
the text, scaled to 0-100. The minimum-confidence gate is applied to that keyword score; the
location bonus or penalty is applied afterwards, so a vague report that clears the gate is
kept (with a placeholder location) rather than silently dropped.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from rapidfuzz.distance import Levenshtein

from src.services.config import KEYWORDS_PATH, PipelineConfig
from src.services.content_hashing import fold_text
from src.services.corroboration import haversine_km
from src.services.gazetteer import Gazetteer, LocationMatch
from src.services.geocoding import GeocodeResult
from src.services.models import Article, Incident, IncidentLocation, IncidentType

LOGGER = logging.getLogger(__name__)

SENTENCE_SPLIT = re.compile(r"[.!?\u061f\n]+")

TODAY_CUES = ("today", "tonight", "this morning", "this evening", "امروز", "امشب")
YESTERDAY_CUES = ("yesterday", "last night", "دیروز", "دیشب")

TITLE_MIN_LENGTH = 10
TITLE_MAX_LENGTH = 150
TITLE_TRUNCATE_AT = 97
DESCRIPTION_SENTENCES = 3
DESCRIPTION_MAX_LENGTH = 300


class KeywordTables:
    """Weighted terms per language and category: ``{language: {category: {term: weight}}}``."""

    def __init__(self, tables: Mapping[str, Mapping[str, Mapping[str, int]]], scale_factor: int = 3) -> None:
        if not isinstance(tables, Mapping) or not tables:
            raise ValueError("Keyword tables must map language -> category -> term -> weight")
        self.scale_factor = scale_factor
        self.languages = list(tables)
        self._terms: dict[IncidentType, list[tuple[str, str, int]]] = {}
        for language, categories in tables.items():
            if not isinstance(categories, Mapping):
                raise ValueError(f"Keyword table for {language!r} must map categories to terms")
            for category, terms in categories.items():
                incident_type = IncidentType.parse(category)
                if incident_type is IncidentType.OTHER:
                    raise ValueError(f"Unknown incident category {category!r} in {language!r} table")
                if not isinstance(terms, Mapping):
                    raise ValueError(f"Terms for {language}/{category} must map term -> weight")
                bucket = self._terms.setdefault(incident_type, [])
                for term, weight in terms.items():
                    folded = fold_text(term).strip()
                    if not folded:
                        continue
                    bucket.append((term, folded, int(weight)))

    @classmethod
    def load(cls, path: Path = KEYWORDS_PATH) -> "KeywordTables":
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        return cls(payload.get("languages", {}), scale_factor=int(payload.get("scale_factor", 3)))

    @property
    def categories(self) -> list[IncidentType]:
        return list(self._terms)

    def terms(self, category: IncidentType) -> list[tuple[str, str, int]]:
        return list(self._terms.get(category, []))


def _sentences(text: str) -> list[str]:
    parts = (" ".join(part.split()) for part in SENTENCE_SPLIT.split(text or ""))
    return [part for part in parts if part]


def extract_title(text: str) -> str:
    """First sentence when it is a sensible length, otherwise a truncated prefix."""
    collapsed = " ".join((text or "").split())
    sentences = _sentences(text)
    first = sentences[0] if sentences else collapsed
    if TITLE_MIN_LENGTH <= len(first) <= TITLE_MAX_LENGTH:
        return first
    if len(collapsed) <= TITLE_TRUNCATE_AT + 3:
        return collapsed
    return collapsed[:TITLE_TRUNCATE_AT].rstrip() + "..."


def extract_description(text: str) -> str:
    sentences = _sentences(text)
    description = ". ".join(sentences[:DESCRIPTION_SENTENCES])
    if description and not description.endswith((".", "!", "?")):
        description += "."
    if len(description) > DESCRIPTION_MAX_LENGTH:
        return description[: DESCRIPTION_MAX_LENGTH - 3].rstrip() + "..."
    return description


def resolve_timestamp(published_at: datetime | None, text: str, now: datetime) -> datetime:
    """Structured publish time, then relative cues in the text, then ``now``."""
    if published_at is not None:
        return published_at
    folded = fold_text(text)
    if any(cue in folded for cue in TODAY_CUES):
        return now
    if any(cue in folded for cue in YESTERDAY_CUES):
        return now - timedelta(days=1)
    return now


class IncidentExtractor:
    def __init__(
        self,
        config: PipelineConfig | None = None,
        keyword_tables: KeywordTables | None = None,
        gazetteer: Gazetteer | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.keyword_tables = keyword_tables or KeywordTables.load(self.config.keywords_path)
        self.gazetteer = gazetteer or Gazetteer.load(
            self.config.gazetteer_path, include_geonames=self.config.include_geonames
        )

    def score(self, category: IncidentType, text: str) -> tuple[int, list[str]]:
        """Raw weight sum and the matched terms (in table order) for one category."""
        folded = fold_text(text)
        total = 0
        matched: list[str] = []
        for term, folded_term, weight in self.keyword_tables.terms(category):
            if folded_term in folded and term not in matched:
                total += weight
                matched.append(term)
        return total, matched

    def scale(self, raw_score: int) -> int:
        return max(0, min(raw_score * self.keyword_tables.scale_factor, 100))

    def find_locations(self, text: str) -> list[LocationMatch]:
        return self.gazetteer.find(text)

    def located_confidence(self, keyword_confidence: int) -> int:
        return min(keyword_confidence + self.config.location_bonus, 100)

    def unlocated_confidence(self, keyword_confidence: int) -> int:
        return max(keyword_confidence - self.config.no_location_penalty, self.config.unresolved_floor)

    def placeholder_location(self) -> IncidentLocation:
        return IncidentLocation(
            query=self.config.default_location_name,
            lat=self.config.default_location_lat,
            lon=self.config.default_location_lon,
            address=self.config.default_location_address,
            resolved=False,
            placeholder=True,
        )

    def location_for(self, locations: Sequence[LocationMatch]) -> IncidentLocation:
        """Location record for the most specific match.

        Curated places carry coordinates and count as resolved straight away; named places
        without them are left for the geocoder. Generic locatives ("square", "university")
        still count as a location mention but can only be shown at the default location.
        """
        if not locations or locations[0].place.kind == "generic":
            location = self.placeholder_location()
            if locations:
                location.query = locations[0].matched
            return location
        place = locations[0].place
        if place.has_coordinates:
            return IncidentLocation(
                query=place.geocode_query,
                lat=place.lat,
                lon=place.lon,
                address=place.address,
                resolved=True,
                resolution_source="gazetteer",
                resolution_confidence="high",
            )
        return IncidentLocation(query=place.geocode_query, address=place.address)

    def extract(self, article: Article, now: datetime | None = None) -> list[Incident]:
        """Candidate incidents for one article, highest confidence first."""
        now = now or datetime.now(timezone.utc)
        text = article.text
        if not text.strip():
            return []
        locations = self.find_locations(text)
        timestamp = resolve_timestamp(article.published_at, article.content or text, now)
        title = extract_title(". ".join(part for part in (article.title, article.content) if part))
        description = extract_description(article.content or text)
        candidates: list[Incident] = []
        for category in self.keyword_tables.categories:
            raw_score, keywords = self.score(category, text)
            if not keywords:
                continue
            keyword_confidence = self.scale(raw_score)
            if keyword_confidence < self.config.min_confidence:
                LOGGER.debug(
                    "Discarding %s candidate for %s (confidence %s)", category.value, article.id, keyword_confidence
                )
                continue
            location = self.location_for(locations)
            if locations:
                confidence = self.located_confidence(keyword_confidence)
            else:
                confidence = self.unlocated_confidence(keyword_confidence)
            candidates.append(
                Incident(
                    id=Incident.make_id(article.id, category),
                    type=category,
                    title=title,
                    description=description,
                    location=location,
                    confidence=confidence,
                    timestamp=timestamp,
                    source_article=article.to_ref(),
                    keywords=keywords,
                    keyword_confidence=keyword_confidence,
                    location_candidates=[match.place.name for match in locations],
                    reported_by=article.channel,
                    image_hash=article.image_hash,
                    extracted_at=now,
                    review_only=confidence < self.config.persist_confidence,
                )
            )
        candidates.sort(key=lambda incident: incident.confidence, reverse=True)
        return candidates[: self.config.max_incidents_per_article]

    def extract_many(self, articles: Iterable[Article], now: datetime | None = None) -> list[Incident]:
        """Extract from every article (isolated per article) and merge same-event duplicates."""
        now = now or datetime.now(timezone.utc)
        extracted: list[Incident] = []
        for article in articles:
            try:
                extracted.extend(self.extract(article, now=now))
            except Exception:  # noqa: BLE001
                LOGGER.warning("Extraction failed for article %s", article.id, exc_info=True)
        merged = merge_incidents(extracted, window=self.config.incident_merge_window)
        LOGGER.info("Extracted %s incidents (%s after merging)", len(extracted), len(merged))
        return merged

    def apply_geocode(self, incident: Incident, result: GeocodeResult) -> None:
        incident.location.lat = result.latitude
        incident.location.lon = result.longitude
        incident.location.address = result.address or incident.location.address
        incident.location.resolved = True
        incident.location.placeholder = False
        incident.location.resolution_source = result.source
        incident.location.resolution_confidence = result.confidence
        incident.confidence = self.located_confidence(incident.keyword_confidence)
        incident.review_only = incident.confidence < self.config.persist_confidence

    def mark_unresolved(self, incident: Incident) -> None:
        """A location that could not be geocoded is treated like no location at all."""
        query = incident.location.query
        incident.location = self.placeholder_location()
        incident.location.query = query or incident.location.query
        incident.confidence = self.unlocated_confidence(incident.keyword_confidence)
        incident.review_only = incident.confidence < self.config.persist_confidence
        incident.add_flag("location_unresolved")


def fold_incident(target: Incident, duplicate: Incident) -> None:
    """Record a duplicate report on the incident that absorbs it."""
    target.add_related([duplicate.source_article, *duplicate.related_articles])
    for keyword in duplicate.keywords:
        if keyword not in target.keywords:
            target.keywords.append(keyword)


def merge_incidents(incidents: Sequence[Incident], window: timedelta = timedelta(hours=1)) -> list[Incident]:
    """Collapse incidents of the same type and place reported within ``window`` of each other."""
    ordered = sorted(incidents, key=lambda item: (-item.confidence, item.timestamp, item.id))
    kept: list[Incident] = []
    for incident in ordered:
        twin = next(
            (
                existing
                for existing in kept
                if existing.type is incident.type
                and existing.location.key == incident.location.key
                and abs(existing.timestamp - incident.timestamp) <= window
            ),
            None,
        )
        if twin is None:
            kept.append(incident)
            continue
        fold_incident(twin, incident)
        LOGGER.debug("Merged incident %s into %s", incident.id, twin.id)
    return kept


def title_similarity(left: str, right: str) -> float:
    """Normalized Levenshtein similarity of two folded titles; 1.0 means identical."""
    return Levenshtein.normalized_similarity(fold_text(left).strip(), fold_text(right).strip())


def _same_place(left: IncidentLocation, right: IncidentLocation, radius_km: float) -> bool:
    if left.placeholder or right.placeholder or not left.has_coordinates or not right.has_coordinates:
        return left.key == right.key
    return haversine_km(left.lat, left.lon, right.lat, right.lon) <= radius_km  # type: ignore[arg-type]


def find_existing_incident(
    incident: Incident,
    existing: Iterable[Incident],
    radius_km: float = 0.1,
    window: timedelta = timedelta(hours=24),
    min_title_similarity: float = 0.7,
) -> Incident | None:
    """Stored incident describing the same event: same type, close by, recent, similar title."""
    best: Incident | None = None
    best_similarity = 0.0
    for candidate in existing:
        if candidate.id == incident.id or candidate.type is not incident.type:
            continue
        if abs(candidate.timestamp - incident.timestamp) > window:
            continue
        if not _same_place(candidate.location, incident.location, radius_km):
            continue
        similarity = title_similarity(candidate.title, incident.title)
        if similarity >= min_title_similarity and similarity > best_similarity:
            best, best_similarity = candidate, similarity
    return best
