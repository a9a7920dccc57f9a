import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.services import pipeline
from src.services.config import GAZETTEER_PATH, PipelineConfig
from src.services.gazetteer import Gazetteer
from src.services.incident_extraction import IncidentExtractor
from src.services.models import Incident, IncidentType
from src.services.persistence import INCIDENTS, REVIEW_INCIDENTS, InMemoryDocumentStore
from src.services.sources import BaseArticleSource

NOW = datetime(2024, 5, 1, 18, 0, tzinfo=timezone.utc)


class StaticSource(BaseArticleSource):
    def __init__(self, items: list[dict]) -> None:
        self.name = "static"
        self.items = items

    def fetch(self) -> list[dict]:
        return [dict(item) for item in self.items]


def iso(minutes_ago: int) -> str:
    return (NOW - timedelta(minutes=minutes_ago)).isoformat()


RAW_ITEMS = [
    {
        "id": "a1",
        "title": "Large protest in Tehran",
        "content": "Crowds filled the streets near Enghelab this evening.",
        "source": "telegram",
        "sourceUrl": "https://t.me/r1/1",
        "publishedAt": iso(100),
        "channel": "r1",
    },
    {
        "id": "a2",
        "title": "Witnesses report a big demonstration in Tehran",
        "content": "Chanting crowds gathered outside the ministry.",
        "source": "telegram",
        "sourceUrl": "https://t.me/r2/7",
        "publishedAt": iso(10),
        "channel": "r2",
    },
    {
        "id": "a3",
        "title": "LARGE PROTEST IN TEHRAN!",
        "content": "Crowds filled the streets, near Enghelab this evening",
        "source": "telegram",
        "sourceUrl": "https://t.me/r3/2",
        "publishedAt": iso(90),
        "channel": "r3",
    },
    {
        "id": "a4",
        "title": "",
        "content": "Violent protest reported in Marlik overnight",
        "source": "search",
        "publishedAt": iso(60),
    },
    {"id": "a5", "title": "Weather", "content": "Sunny skies expected across Isfahan as temperatures climb"},
    {"title": "missing id"},
]


def make_pipeline(store: InMemoryDocumentStore, items: list[dict] | None = None) -> pipeline.IncidentPipeline:
    config = PipelineConfig(include_geonames=False)
    gazetteer = Gazetteer.load(GAZETTEER_PATH)
    return pipeline.IncidentPipeline(
        [StaticSource(RAW_ITEMS if items is None else items)],
        store,
        config=config,
        geocoder=pipeline.build_geocoder(config, gazetteer, use_nominatim=False),
        extractor=IncidentExtractor(config, gazetteer=gazetteer),
    )


def test_refresh_runs_every_stage() -> None:
    store = InMemoryDocumentStore()

    result = make_pipeline(store).refresh(now=NOW)

    assert result.fetched == 6
    assert [failure.index for failure in result.rejected] == [5]
    assert result.unique_articles == 4
    assert result.exact_duplicates == 1
    assert {incident.source_article.id for incident in result.incidents} == {"a1", "a2"}
    assert all(incident.type is IncidentType.PROTEST for incident in result.incidents)
    assert [incident.source_article.id for incident in result.review_incidents] == ["a4"]
    assert "location_unresolved" in result.review_incidents[0].flags
    assert result.coordination_groups == []
    assert result.failed_writes == {}

    first = Incident.from_dict(store.get(INCIDENTS, Incident.make_id("a1", IncidentType.PROTEST)))
    second = Incident.from_dict(store.get(INCIDENTS, Incident.make_id("a2", IncidentType.PROTEST)))
    assert first.confidence == 80
    assert second.confidence == 95
    assert [ref.id for ref in first.related_articles] == ["a2"]
    assert store.get(REVIEW_INCIDENTS, Incident.make_id("a4", IncidentType.PROTEST)) is not None
    assert store.get(INCIDENTS, Incident.make_id("a4", IncidentType.PROTEST)) is None


def test_second_refresh_is_idempotent() -> None:
    store = InMemoryDocumentStore()
    job = make_pipeline(store)
    job.refresh(now=NOW)

    again = job.refresh(now=NOW + timedelta(minutes=5))

    assert again.unique_articles == 0
    assert again.incidents == []
    assert again.updated_incidents == []
    stored = Incident.from_dict(store.get(INCIDENTS, Incident.make_id("a1", IncidentType.PROTEST)))
    assert stored.confidence == 80


def test_later_report_of_a_stored_incident_is_folded_into_it() -> None:
    store = InMemoryDocumentStore()
    make_pipeline(store, RAW_ITEMS[:1]).refresh(now=NOW)
    follow_up = {
        "id": "a6",
        "title": "Large protest in Tehran!",
        "content": "Thousands marched and chanted slogans late into the night.",
        "source": "telegram",
        "sourceUrl": "https://t.me/r6/4",
        "publishedAt": (NOW + timedelta(minutes=20)).isoformat(),
        "channel": "r6",
    }

    result = make_pipeline(store, [follow_up]).refresh(now=NOW + timedelta(minutes=30))

    stored_id = Incident.make_id("a1", IncidentType.PROTEST)
    assert result.unique_articles == 1
    assert [incident.id for incident in result.incidents if incident.type is IncidentType.PROTEST] == []
    assert stored_id in {incident.id for incident in result.updated_incidents}
    stored = Incident.from_dict(store.get(INCIDENTS, stored_id))
    assert [ref.id for ref in stored.related_articles] == ["a6"]
    assert store.get(INCIDENTS, Incident.make_id("a6", IncidentType.PROTEST)) is None


def test_main_writes_snapshots(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("INCIDENT_INCLUDE_GEONAMES", "false")
    input_path = tmp_path / "articles.jsonl"
    input_path.write_text(
        "\n".join(json.dumps(item) for item in RAW_ITEMS[:2]),
        encoding="utf-8",
    )
    output_dir = tmp_path / "out"

    exit_code = pipeline.main(
        ["--input", str(input_path), "--output-dir", str(output_dir), "--in-memory", "--offline"]
    )

    assert exit_code == 0
    snapshots = list(output_dir.glob("incidents_*.jsonl"))
    assert len(snapshots) == 1
    rows = [json.loads(line) for line in snapshots[0].read_text(encoding="utf-8").splitlines()]
    assert {row["sourceArticle"]["id"] for row in rows} == {"a1", "a2"}


def test_main_requires_a_source(tmp_path: Path) -> None:
    assert pipeline.main(["--output-dir", str(tmp_path), "--in-memory"]) == 2
