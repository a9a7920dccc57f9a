"""
One ingestion tick: fetch, validate, dedup, extract, geocode, persist and cross-reference.

Each stage isolates per-item failures, so a bad article, an unreachable geocoder or a failed
write degrades that item only. Run it from cron via ``scripts/run_pipeline.py``.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

from src.services.cache import SQLiteCache, TTLCache
from src.services.config import PipelineConfig
from src.services.content_hashing import ContentHasher
from src.services.corroboration import CorroborationEngine
from src.services.deduplication import Deduplicator
from src.services.gazetteer import Gazetteer
from src.services.geocoding import GazetteerGeocoder, GeocoderTier, NominatimGeocoder, TieredGeocoder
from src.services.incident_extraction import IncidentExtractor, find_existing_incident, fold_incident
from src.services.models import CoordinationGroup, Incident
from src.services.persistence import (
    ArticleRepository,
    DocumentStore,
    IncidentRepository,
    InMemoryDocumentStore,
    SQLiteDocumentStore,
)
from src.services.sources import BaseArticleSource, JsonlArticleSource, RSSFeedConfig, RSSFeedSource, fetch_all
from src.services.validation import ValidationFailure, parse_articles

LOGGER = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    started_at: datetime
    fetched: int = 0
    source_errors: list[str] = field(default_factory=list)
    rejected: list[ValidationFailure] = field(default_factory=list)
    unique_articles: int = 0
    exact_duplicates: int = 0
    fuzzy_duplicates: int = 0
    incidents: list[Incident] = field(default_factory=list)
    review_incidents: list[Incident] = field(default_factory=list)
    updated_incidents: list[Incident] = field(default_factory=list)
    coordination_groups: list[CoordinationGroup] = field(default_factory=list)
    failed_writes: dict[str, list[str]] = field(default_factory=dict)

    def to_serializable(self) -> dict[str, Any]:
        return {
            "startedAt": self.started_at.isoformat(),
            "fetched": self.fetched,
            "sourceErrors": list(self.source_errors),
            "rejected": [
                {"index": failure.index, "id": failure.item_id, "message": failure.message}
                for failure in self.rejected
            ],
            "uniqueArticles": self.unique_articles,
            "exactDuplicates": self.exact_duplicates,
            "fuzzyDuplicates": self.fuzzy_duplicates,
            "incidents": len(self.incidents),
            "reviewIncidents": len(self.review_incidents),
            "updatedIncidents": len(self.updated_incidents),
            "coordinationGroups": len(self.coordination_groups),
            "failedWrites": {collection: list(ids) for collection, ids in self.failed_writes.items()},
        }


class IncidentPipeline:
    def __init__(
        self,
        sources: Sequence[BaseArticleSource],
        store: DocumentStore,
        config: PipelineConfig | None = None,
        geocoder: TieredGeocoder | None = None,
        extractor: IncidentExtractor | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.sources = list(sources)
        hasher = ContentHasher(
            num_perm=self.config.num_perm,
            shingle_size=self.config.shingle_size,
            min_tokens=self.config.min_tokens,
            seed=self.config.hash_seed,
        )
        self.deduplicator = Deduplicator(
            hasher,
            threshold=self.config.similarity_threshold,
            bands=self.config.lsh_bands,
            rows=self.config.lsh_rows,
        )
        self.extractor = extractor or IncidentExtractor(self.config)
        self.geocoder = geocoder
        self.engine = CorroborationEngine(self.config, hasher)
        self.articles = ArticleRepository(store, batch_size=self.config.batch_size)
        self.incidents = IncidentRepository(store, batch_size=self.config.batch_size)

    def refresh(self, now: datetime | None = None) -> RefreshResult:
        now = now or datetime.now(timezone.utc)
        result = RefreshResult(started_at=now)

        payloads, result.source_errors = fetch_all(self.sources, max_workers=self.config.fetch_workers)
        result.fetched = len(payloads)
        articles, result.rejected = parse_articles(payloads)
        LOGGER.info(
            "Fetched %s items from %s sources (%s rejected, %s source errors)",
            len(payloads),
            len(self.sources),
            len(result.rejected),
            len(result.source_errors),
        )

        recent = self.articles.recent_articles(now - self.config.dedup_window)
        dedup = self.deduplicator.process(articles, recent)
        result.unique_articles = len(dedup.unique)
        result.exact_duplicates = dedup.exact_count
        result.fuzzy_duplicates = dedup.fuzzy_count
        self._record_failures(result, "articles", self.articles.save_articles(dedup.unique).failed_ids)

        extracted = self.extractor.extract_many(dedup.unique, now=now)
        self.geocode(extracted)
        result.incidents, folded = self.fold_into_existing(
            [incident for incident in extracted if not incident.review_only], now
        )
        result.review_incidents = [incident for incident in extracted if incident.review_only]
        self._record_failures(
            result, "incidents", self.incidents.save_incidents([*result.incidents, *folded]).failed_ids
        )
        self._record_failures(
            result, "incident_review", self.incidents.save_for_review(result.review_incidents).failed_ids
        )

        pool = {incident.id: incident for incident in self.incidents.recent_incidents(now - self.config.analysis_window)}
        pool.update((incident.id, incident) for incident in result.incidents)
        before = {incident_id: incident.to_serializable() for incident_id, incident in pool.items()}
        analysis = self.engine.analyze(pool.values(), now=now)
        result.coordination_groups = analysis.coordination_groups
        rescored = [
            item.incident
            for item in analysis.scored_incidents
            if item.incident.to_serializable() != before.get(item.incident.id)
        ]
        self._record_failures(result, "incidents", self.incidents.save_incidents(rescored).failed_ids)
        folded_ids = {incident.id for incident in folded}
        result.updated_incidents = [*folded, *(incident for incident in rescored if incident.id not in folded_ids)]
        self._record_failures(
            result,
            "coordination_groups",
            self.incidents.save_coordination_groups(result.coordination_groups).failed_ids,
        )
        LOGGER.info("Refresh complete: %s", result.to_serializable())
        return result

    def fold_into_existing(self, incidents: Sequence[Incident], now: datetime) -> tuple[list[Incident], list[Incident]]:
        """Split new incidents into genuinely new ones and stored incidents that absorbed a repeat report."""
        if not incidents:
            return [], []
        existing = self.incidents.recent_incidents(now - self.config.incident_match_window)
        fresh: list[Incident] = []
        folded: dict[str, Incident] = {}
        for incident in incidents:
            twin = find_existing_incident(
                incident,
                existing,
                radius_km=self.config.incident_match_radius_km,
                window=self.config.incident_match_window,
                min_title_similarity=self.config.incident_title_similarity,
            )
            if twin is None:
                fresh.append(incident)
                continue
            fold_incident(twin, incident)
            folded[twin.id] = twin
            LOGGER.info("Incident %s repeats stored incident %s; folded into it", incident.id, twin.id)
        return fresh, list(folded.values())

    def geocode(self, incidents: Iterable[Incident]) -> None:
        """Resolve named but uncoordinated locations; anything unresolved gets the placeholder."""
        pending = [
            incident
            for incident in incidents
            if incident.location.query and not incident.location.resolved and not incident.location.placeholder
        ]
        if not pending:
            return
        resolved: dict[str, Any] = {}
        if self.geocoder is not None:
            resolved = self.geocoder.resolve_many(
                (incident.location.query for incident in pending),  # type: ignore[misc]
                max_workers=self.config.geocode_workers,
            )
        for incident in pending:
            geocoded = resolved.get(incident.location.query)  # type: ignore[arg-type]
            if geocoded is None:
                self.extractor.mark_unresolved(incident)
            else:
                self.extractor.apply_geocode(incident, geocoded)

    @staticmethod
    def _record_failures(result: RefreshResult, collection: str, failed_ids: list[str]) -> None:
        if failed_ids:
            result.failed_writes.setdefault(collection, []).extend(failed_ids)


def build_geocoder(
    config: PipelineConfig,
    gazetteer: Gazetteer,
    cache_path: Path | None = None,
    use_nominatim: bool = True,
) -> TieredGeocoder:
    tiers: list[GeocoderTier] = [GazetteerGeocoder(gazetteer)]
    if use_nominatim:
        tiers.append(
            NominatimGeocoder(
                min_interval=config.nominatim_min_interval,
                user_agent=config.nominatim_user_agent,
            )
        )
    ttl = config.geocode_cache_ttl
    negative_ttl = config.geocode_failure_ttl
    cache: TTLCache | SQLiteCache
    if cache_path is not None:
        cache = SQLiteCache(cache_path, ttl=ttl, negative_ttl=negative_ttl, table="geocode_cache")
    else:
        cache = TTLCache(ttl=ttl, max_entries=config.geocode_cache_size, negative_ttl=negative_ttl)
    return TieredGeocoder(tiers, cache=cache)


def _parse_feed(value: str) -> RSSFeedConfig:
    name, sep, url = value.partition("=")
    if not sep or not name.strip() or not url.strip():
        msg = f"Invalid feed '{value}'. Expected NAME=URL."
        raise argparse.ArgumentTypeError(msg)
    return RSSFeedConfig(name=name.strip(), url=url.strip())


def _write_jsonl(path: Path, rows: Iterable[dict[str, Any]]) -> int:
    count = 0
    with path.open("w", encoding="utf-8") as handle:
        for row in rows:
            handle.write(json.dumps(row, ensure_ascii=False) + "\n")
            count += 1
    return count


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Turn incoming news articles into located incident reports.")
    parser.add_argument(
        "--input",
        action="append",
        type=Path,
        default=[],
        help="JSONL file of raw articles to ingest (repeatable).",
    )
    parser.add_argument(
        "--rss-feed",
        action="append",
        type=_parse_feed,
        default=[],
        help="RSS feed to poll, as NAME=URL (repeatable).",
    )
    parser.add_argument(
        "--output-dir",
        default="datasets/incidents",
        type=Path,
        help="Directory to store JSONL snapshots (default: datasets/incidents).",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="SQLite document store (default: <output-dir>/incidents.sqlite).",
    )
    parser.add_argument(
        "--in-memory",
        action="store_true",
        help="Keep documents in memory only (dry run; nothing is persisted between runs).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO).",
    )
    parser.add_argument(
        "--disable-geocoding",
        action="store_true",
        help="Skip geocoding lookups (named places without coordinates fall back to the default location).",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Only use the local gazetteer for geocoding; never call Nominatim.",
    )
    parser.add_argument(
        "--geocode-cache",
        type=Path,
        default=None,
        help="Path to the SQLite cache used for geocoding (default: <output-dir>/geocache.sqlite).",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        force=True,
    )
    LOGGER.info("Starting incident pipeline with args: %s", args)

    config = PipelineConfig.from_env()
    sources: list[BaseArticleSource] = [JsonlArticleSource(path) for path in args.input]
    if args.rss_feed:
        sources.append(RSSFeedSource(args.rss_feed))
    if not sources:
        LOGGER.error("No sources configured; pass --input and/or --rss-feed.")
        return 2

    args.output_dir.mkdir(parents=True, exist_ok=True)
    store: DocumentStore
    if args.in_memory:
        store = InMemoryDocumentStore()
    else:
        store = SQLiteDocumentStore(args.db or (args.output_dir / "incidents.sqlite"))

    gazetteer = Gazetteer.load(config.gazetteer_path, include_geonames=config.include_geonames)
    extractor = IncidentExtractor(config, gazetteer=gazetteer)
    geocoder = None
    if not args.disable_geocoding:
        geocoder = build_geocoder(
            config,
            gazetteer,
            cache_path=args.geocode_cache or (args.output_dir / "geocache.sqlite"),
            use_nominatim=not args.offline,
        )

    pipeline = IncidentPipeline(sources, store, config=config, geocoder=geocoder, extractor=extractor)
    try:
        result = pipeline.refresh()
    except Exception:  # noqa: BLE001
        LOGGER.exception("Pipeline run failed.")
        return 1

    timestamp = result.started_at.strftime("%Y%m%dT%H%M%SZ")
    incidents_path = args.output_dir / f"incidents_{timestamp}.jsonl"
    snapshot = {incident.id: incident for incident in [*result.incidents, *result.updated_incidents]}
    written = _write_jsonl(incidents_path, (incident.to_serializable() for incident in snapshot.values()))
    LOGGER.info("Wrote %s incidents to %s", written, incidents_path)
    if result.coordination_groups:
        groups_path = args.output_dir / f"coordination_groups_{timestamp}.jsonl"
        _write_jsonl(groups_path, (group.to_serializable() for group in result.coordination_groups))
        LOGGER.info("Wrote %s coordination groups to %s", len(result.coordination_groups), groups_path)
    return 1 if result.failed_writes else 0


if __name__ == "__main__":
    sys.exit(main())
