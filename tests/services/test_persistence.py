from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Sequence

import pytest

from src.services.models import Article, ArticleRef, Incident, IncidentLocation, IncidentType
from src.services.persistence import (
    ARTICLES,
    ArticleRepository,
    BatchWriter,
    IncidentRepository,
    InMemoryDocumentStore,
    SQLiteDocumentStore,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FlakyStore(InMemoryDocumentStore):
    """Rejects any write that contains a document flagged as poison."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def put_many(self, collection: str, items: Sequence[tuple[str, dict[str, Any]]]) -> None:
        self.calls += 1
        if any(document.get("poison") for _, document in items):
            raise RuntimeError("write rejected")
        super().put_many(collection, items)


def make_incident(incident_id: str, hours_ago: float = 0) -> Incident:
    return Incident(
        id=incident_id,
        type=IncidentType.ARREST,
        title="Students detained",
        description="Several students detained outside the campus.",
        location=IncidentLocation(query="Tehran", lat=35.6892, lon=51.389, address="Tehran, Iran", resolved=True),
        confidence=60,
        timestamp=NOW - timedelta(hours=hours_ago),
        source_article=ArticleRef(id=f"article-{incident_id}", title="Students detained", url="https://example.com/a"),
        keywords=["detained"],
    )


def test_batch_writer_reports_only_failed_ids() -> None:
    store = FlakyStore()
    writer = BatchWriter(store, batch_size=2)
    documents = [(f"d{index}", {"poison": index == 3}) for index in range(5)]

    result = writer.write("things", documents)

    assert result.failed_ids == ["d3"]
    assert "write rejected" in result.errors["d3"]
    assert sorted(result.written_ids) == ["d0", "d1", "d2", "d4"]
    assert not result.ok
    assert store.get("things", "d2") is not None
    assert store.get("things", "d3") is None


def test_batch_writer_rejects_bad_batch_size() -> None:
    with pytest.raises(ValueError):
        BatchWriter(InMemoryDocumentStore(), batch_size=0)


def test_articles_round_trip_with_hashes() -> None:
    store = InMemoryDocumentStore()
    repository = ArticleRepository(store)
    article = Article(
        id="a1",
        title="Strike",
        content="Bazaar traders strike",
        published_at=NOW - timedelta(hours=2),
        content_fingerprint="abc",
        minhash_signature=(1, 2, 3),
    )
    old = Article(id="a0", title="Old", content="Old news", published_at=NOW - timedelta(days=3))

    result = repository.save_articles([article, old])
    recent = repository.recent_articles(NOW - timedelta(hours=24))

    assert result.ok
    assert [item.id for item in recent] == ["a1"]
    assert recent[0].minhash_signature == (1, 2, 3)
    assert recent[0].content_fingerprint == "abc"


def test_unreadable_stored_article_is_skipped() -> None:
    store = InMemoryDocumentStore()
    store.put_many(ARTICLES, [("broken", {"title": "no id"})])

    assert ArticleRepository(store).recent_articles(NOW - timedelta(hours=24)) == []


def test_incident_repository_round_trip(tmp_path: Path) -> None:
    store = SQLiteDocumentStore(tmp_path / "incidents.sqlite")
    repository = IncidentRepository(store)
    fresh = make_incident("i1", hours_ago=1)
    stale = make_incident("i2", hours_ago=30)

    repository.save_incidents([fresh, stale])
    loaded = repository.get_incident("i1")
    recent = repository.recent_incidents(NOW - timedelta(hours=24))
    missing = repository.get_incident("missing")
    store.close()

    assert loaded is not None
    assert loaded.to_serializable() == fresh.to_serializable()
    assert [incident.id for incident in recent] == ["i1"]
    assert missing is None


def test_upsert_replaces_existing_document() -> None:
    store = InMemoryDocumentStore()
    repository = IncidentRepository(store)
    incident = make_incident("i1")
    repository.save_incidents([incident])

    incident.confidence = 90
    repository.save_incidents([incident])

    stored = repository.get_incident("i1")
    assert stored is not None and stored.confidence == 90
