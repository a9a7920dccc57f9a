"""
Shared records passed between the ingestion, dedup, extraction and corroboration stages.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from src.services.content_hashing import ContentHasher

LOGGER = logging.getLogger(__name__)

INCIDENT_NAMESPACE = uuid.UUID("6f1c51d2-54c7-4f0e-9a55-2f4b8d1e7a30")
COORDINATION_NAMESPACE = uuid.UUID("b2f0d7a4-3c1e-4a8f-8d2b-91e6c5a0f4d7")


class SourceKind(str, Enum):
    CHANNEL = "channel"
    SEARCH = "search"
    SOCIAL = "social"
    RSS = "rss"
    MANUAL = "manual"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "SourceKind":
        if isinstance(value, SourceKind):
            return value
        text = str(value or "").strip().lower()
        # "rss:bbc-persian" style source labels keep their prefix as the kind.
        text = text.split(":", 1)[0]
        aliases = {"telegram": cls.CHANNEL, "perplexity": cls.SEARCH, "twitter": cls.SOCIAL, "x": cls.SOCIAL}
        if text in aliases:
            return aliases[text]
        try:
            return cls(text)
        except ValueError:
            return cls.OTHER


class IncidentType(str, Enum):
    PROTEST = "protest"
    ARREST = "arrest"
    INJURY = "injury"
    DEATH = "death"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "IncidentType":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.OTHER


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce ISO strings, RFC 2822 dates and epoch seconds/milliseconds to aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
        # Millisecond epochs are what JavaScript-era producers emit.
        if seconds > 1e11:
            seconds /= 1000.0
        try:
            parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.isdigit():
            return parse_timestamp(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = parsedate_to_datetime(text)
            except (TypeError, ValueError):
                LOGGER.debug("Unable to parse timestamp %r", value)
                return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Article:
    id: str
    title: str
    content: str
    source: SourceKind = SourceKind.OTHER
    source_url: str | None = None
    published_at: datetime | None = None
    channel: str | None = None
    topics: frozenset[str] = frozenset()
    content_fingerprint: str | None = None
    minhash_signature: tuple[int, ...] | None = None
    image_hash: str | None = None

    @property
    def text(self) -> str:
        return " ".join(part for part in (self.title, self.content) if part)

    @property
    def body(self) -> str:
        """Text used for duplicate hashing: the body, or the title when there is no body."""
        return self.content if self.content and self.content.strip() else self.title

    def with_hashes(self, hasher: "ContentHasher") -> "Article":
        text = self.body
        return replace(
            self,
            content_fingerprint=hasher.fingerprint(text),
            minhash_signature=hasher.signature(text),
        )

    def to_ref(self) -> "ArticleRef":
        return ArticleRef(
            id=self.id,
            title=self.title,
            url=self.source_url,
            source=self.channel or self.source.value,
        )

    def to_serializable(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "source": self.source.value,
            "sourceUrl": self.source_url,
            "publishedAt": _isoformat(self.published_at),
            "channel": self.channel,
            "topics": sorted(self.topics),
            "contentFingerprint": self.content_fingerprint,
            "minHashSignature": list(self.minhash_signature) if self.minhash_signature else None,
            "imageHash": self.image_hash,
        }


@dataclass(frozen=True)
class ArticleRef:
    id: str
    title: str
    url: str | None = None
    source: str | None = None

    def to_serializable(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "url": self.url, "source": self.source}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ArticleRef":
        return cls(
            id=str(payload.get("id") or ""),
            title=str(payload.get("title") or ""),
            url=payload.get("url"),
            source=payload.get("source"),
        )


@dataclass
class IncidentLocation:
    query: str | None = None
    lat: float | None = None
    lon: float | None = None
    address: str | None = None
    resolved: bool = False
    placeholder: bool = False
    resolution_source: str | None = None
    resolution_confidence: str | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None

    @property
    def key(self) -> str:
        """Grouping key used when deciding whether two incidents share a location."""
        if self.placeholder:
            return f"unresolved:{(self.query or '').strip().lower()}"
        if self.address:
            return self.address.strip().lower()
        return (self.query or "").strip().lower()

    def to_serializable(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "lat": self.lat,
            "lon": self.lon,
            "address": self.address,
            "resolved": self.resolved,
            "placeholder": self.placeholder,
            "resolutionSource": self.resolution_source,
            "resolutionConfidence": self.resolution_confidence,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "IncidentLocation":
        payload = payload or {}
        return cls(
            query=payload.get("query"),
            lat=_optional_float(payload.get("lat")),
            lon=_optional_float(payload.get("lon")),
            address=payload.get("address"),
            resolved=bool(payload.get("resolved", False)),
            placeholder=bool(payload.get("placeholder", False)),
            resolution_source=payload.get("resolutionSource"),
            resolution_confidence=payload.get("resolutionConfidence"),
        )


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _optional_int(value: Any) -> int | None:
    number = _optional_float(value)
    return int(number) if number is not None else None


@dataclass
class Incident:
    id: str
    type: IncidentType
    title: str
    description: str
    location: IncidentLocation
    confidence: int
    timestamp: datetime
    source_article: ArticleRef
    keywords: list[str] = field(default_factory=list)
    verified: bool = False
    related_articles: list[ArticleRef] = field(default_factory=list)
    upvotes: int = 0
    keyword_confidence: int = 0
    location_candidates: list[str] = field(default_factory=list)
    reported_by: str | None = None
    image_hash: str | None = None
    extracted_at: datetime | None = None
    review_only: bool = False
    flags: list[str] = field(default_factory=list)
    base_confidence: int | None = None

    @staticmethod
    def make_id(article_id: str, incident_type: IncidentType) -> str:
        return str(uuid.uuid5(INCIDENT_NAMESPACE, f"{article_id}|{incident_type.value}"))

    @property
    def reporter(self) -> str:
        """Apparent identity behind the report: explicit reporter, then the publishing source."""
        return self.reported_by or self.source_article.source or self.source_article.id

    def add_related(self, refs: Iterable[ArticleRef]) -> int:
        known = {self.source_article.id, *(ref.id for ref in self.related_articles)}
        added = 0
        for ref in refs:
            if not ref.id or ref.id in known:
                continue
            self.related_articles.append(ref)
            known.add(ref.id)
            added += 1
        return added

    def add_flag(self, flag: str) -> None:
        if flag not in self.flags:
            self.flags.append(flag)

    def to_serializable(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "description": self.description,
            "location": self.location.to_serializable(),
            "confidence": self.confidence,
            "verified": self.verified,
            "timestamp": _isoformat(self.timestamp),
            "keywords": list(self.keywords),
            "sourceArticle": self.source_article.to_serializable(),
            "relatedArticles": [ref.to_serializable() for ref in self.related_articles],
            "upvotes": self.upvotes,
            "keywordConfidence": self.keyword_confidence,
            "locationCandidates": list(self.location_candidates),
            "reportedBy": self.reported_by,
            "imageHash": self.image_hash,
            "extractedAt": _isoformat(self.extracted_at),
            "reviewOnly": self.review_only,
            "flags": list(self.flags),
            "baseConfidence": self.base_confidence,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Incident":
        timestamp = parse_timestamp(payload.get("timestamp"))
        if timestamp is None:
            raise ValueError(f"Incident {payload.get('id')!r} has no usable timestamp")
        confidence = int(payload.get("confidence") or 0)
        return cls(
            id=str(payload["id"]),
            type=IncidentType.parse(payload.get("type")),
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
            location=IncidentLocation.from_dict(payload.get("location")),
            confidence=max(0, min(confidence, 100)),
            timestamp=timestamp,
            source_article=ArticleRef.from_dict(payload.get("sourceArticle") or {}),
            keywords=list(payload.get("keywords") or []),
            verified=bool(payload.get("verified", False)),
            related_articles=[ArticleRef.from_dict(item) for item in payload.get("relatedArticles") or []],
            upvotes=int(payload.get("upvotes") or 0),
            keyword_confidence=int(payload.get("keywordConfidence") or 0),
            location_candidates=list(payload.get("locationCandidates") or []),
            reported_by=payload.get("reportedBy"),
            image_hash=payload.get("imageHash"),
            extracted_at=parse_timestamp(payload.get("extractedAt")),
            review_only=bool(payload.get("reviewOnly", False)),
            flags=list(payload.get("flags") or []),
            base_confidence=_optional_int(payload.get("baseConfidence")),
        )


@dataclass(frozen=True)
class CoordinationGroup:
    id: str
    content_cluster_id: str
    member_incident_ids: frozenset[str]
    distinct_reporter_count: int
    time_spread: timedelta
    suspicion_score: float
    first_seen: datetime
    last_seen: datetime
    signals: tuple[str, ...] = ()
    shared_content_sample: str | None = None

    @staticmethod
    def make_id(member_ids: Iterable[str]) -> str:
        return str(uuid.uuid5(COORDINATION_NAMESPACE, "|".join(sorted(member_ids))))

    def to_serializable(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "contentClusterId": self.content_cluster_id,
            "memberIncidentIds": sorted(self.member_incident_ids),
            "distinctReporterCount": self.distinct_reporter_count,
            "timeSpreadSeconds": int(self.time_spread.total_seconds()),
            "suspicionScore": round(self.suspicion_score, 2),
            "firstSeen": _isoformat(self.first_seen),
            "lastSeen": _isoformat(self.last_seen),
            "signals": list(self.signals),
            "sharedContentSample": self.shared_content_sample,
        }
