"""
Thin document-store adapters plus chunked batch writes that report partial failures.

Writes are committed chunk by chunk (500 documents by default). A chunk that fails as a
whole is retried one document at a time so only the offending ids end up in
``BatchWriteResult.failed_ids``; chunks already committed are never rolled back.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Protocol, Sequence

from pydantic import ValidationError

from src.services.models import Article, CoordinationGroup, Incident, parse_timestamp
from src.services.validation import parse_stored_article

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500

ARTICLES = "articles"
INCIDENTS = "incidents"
REVIEW_INCIDENTS = "incident_review"
COORDINATION_GROUPS = "coordination_groups"


class DocumentStore(Protocol):
    def put_many(self, collection: str, items: Sequence[tuple[str, dict[str, Any]]]) -> None:
        ...

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        ...

    def iter_collection(self, collection: str) -> Iterator[tuple[str, dict[str, Any]]]:
        ...


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self.collections: dict[str, dict[str, dict[str, Any]]] = {}
        self.lock = threading.Lock()

    def put_many(self, collection: str, items: Sequence[tuple[str, dict[str, Any]]]) -> None:
        # Serialise first so a bad document leaves the chunk unwritten.
        encoded = [(doc_id, json.loads(json.dumps(document))) for doc_id, document in items]
        with self.lock:
            bucket = self.collections.setdefault(collection, {})
            for doc_id, document in encoded:
                bucket[doc_id] = document

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self.lock:
            document = self.collections.get(collection, {}).get(doc_id)
        return dict(document) if document is not None else None

    def iter_collection(self, collection: str) -> Iterator[tuple[str, dict[str, Any]]]:
        with self.lock:
            snapshot = list(self.collections.get(collection, {}).items())
        for doc_id, document in snapshot:
            yield doc_id, dict(document)


class SQLiteDocumentStore:
    """JSON documents in a single SQLite table keyed by (collection, id)."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.executescript(
            """
            PRAGMA journal_mode=WAL;
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                body TEXT NOT NULL,
                updated_at TEXT,
                PRIMARY KEY (collection, id)
            );
            CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection);
            """
        )
        self.conn.commit()
        self.lock = threading.Lock()

    def put_many(self, collection: str, items: Sequence[tuple[str, dict[str, Any]]]) -> None:
        now_iso = datetime.now(timezone.utc).isoformat()
        rows = [(collection, doc_id, json.dumps(document, ensure_ascii=False), now_iso) for doc_id, document in items]
        with self.lock:
            with self.conn:
                self.conn.executemany(
                    """
                    INSERT INTO documents (collection, id, body, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(collection, id) DO UPDATE SET
                        body = excluded.body,
                        updated_at = excluded.updated_at
                    """,
                    rows,
                )

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self.lock:
            row = self.conn.execute(
                "SELECT body FROM documents WHERE collection = ? AND id = ?", (collection, doc_id)
            ).fetchone()
        return json.loads(row[0]) if row else None

    def iter_collection(self, collection: str) -> Iterator[tuple[str, dict[str, Any]]]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT id, body FROM documents WHERE collection = ? ORDER BY id", (collection,)
            ).fetchall()
        for doc_id, body in rows:
            try:
                yield doc_id, json.loads(body)
            except json.JSONDecodeError:
                LOGGER.warning("Skipping corrupt document %s/%s", collection, doc_id)

    def close(self) -> None:
        with self.lock:
            self.conn.close()


@dataclass
class BatchWriteResult:
    written_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed_ids

    def merge(self, other: "BatchWriteResult") -> "BatchWriteResult":
        self.written_ids.extend(other.written_ids)
        self.failed_ids.extend(other.failed_ids)
        self.errors.update(other.errors)
        return self


class BatchWriter:
    def __init__(self, store: DocumentStore, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.batch_size = batch_size

    def write(self, collection: str, documents: Iterable[tuple[str, dict[str, Any]]]) -> BatchWriteResult:
        items = list(documents)
        result = BatchWriteResult()
        for start in range(0, len(items), self.batch_size):
            chunk = items[start : start + self.batch_size]
            try:
                self.store.put_many(collection, chunk)
            except Exception:  # noqa: BLE001
                LOGGER.warning(
                    "Batch write of %s documents to %s failed; retrying individually.",
                    len(chunk),
                    collection,
                    exc_info=True,
                )
                result.merge(self._write_individually(collection, chunk))
                continue
            result.written_ids.extend(doc_id for doc_id, _ in chunk)
        if result.failed_ids:
            LOGGER.error(
                "Wrote %s/%s documents to %s; failed ids: %s",
                len(result.written_ids),
                len(items),
                collection,
                ", ".join(result.failed_ids),
            )
        else:
            LOGGER.info("Wrote %s documents to %s", len(result.written_ids), collection)
        return result

    def _write_individually(self, collection: str, chunk: Sequence[tuple[str, dict[str, Any]]]) -> BatchWriteResult:
        result = BatchWriteResult()
        for doc_id, document in chunk:
            try:
                self.store.put_many(collection, [(doc_id, document)])
            except Exception as exc:  # noqa: BLE001
                result.failed_ids.append(doc_id)
                result.errors[doc_id] = str(exc)
                continue
            result.written_ids.append(doc_id)
        return result


class ArticleRepository:
    def __init__(self, store: DocumentStore, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.store = store
        self.writer = BatchWriter(store, batch_size=batch_size)

    def save_articles(self, articles: Iterable[Article]) -> BatchWriteResult:
        stored_at = datetime.now(timezone.utc).isoformat()
        return self.writer.write(
            ARTICLES,
            ((article.id, {**article.to_serializable(), "storedAt": stored_at}) for article in articles),
        )

    def recent_articles(self, since: datetime) -> list[Article]:
        """Stored articles published (or, failing that, stored) at or after ``since``."""
        recent: list[Article] = []
        for doc_id, document in self.store.iter_collection(ARTICLES):
            try:
                article = parse_stored_article(document)
            except ValidationError:
                LOGGER.warning("Skipping unreadable stored article %s", doc_id, exc_info=True)
                continue
            published = article.published_at or parse_timestamp(document.get("storedAt"))
            if published is None or published >= since:
                recent.append(article)
        return recent


class IncidentRepository:
    def __init__(self, store: DocumentStore, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.store = store
        self.writer = BatchWriter(store, batch_size=batch_size)

    def save_incidents(self, incidents: Iterable[Incident]) -> BatchWriteResult:
        return self.writer.write(INCIDENTS, ((incident.id, incident.to_serializable()) for incident in incidents))

    def save_for_review(self, incidents: Iterable[Incident]) -> BatchWriteResult:
        return self.writer.write(
            REVIEW_INCIDENTS, ((incident.id, incident.to_serializable()) for incident in incidents)
        )

    def save_coordination_groups(self, groups: Iterable[CoordinationGroup]) -> BatchWriteResult:
        return self.writer.write(COORDINATION_GROUPS, ((group.id, group.to_serializable()) for group in groups))

    def get_incident(self, incident_id: str) -> Incident | None:
        document = self.store.get(INCIDENTS, incident_id)
        if document is None:
            return None
        return Incident.from_dict(document)

    def recent_incidents(self, since: datetime) -> list[Incident]:
        recent: list[Incident] = []
        for doc_id, document in self.store.iter_collection(INCIDENTS):
            try:
                incident = Incident.from_dict(document)
            except (KeyError, TypeError, ValueError):
                LOGGER.warning("Skipping unreadable stored incident %s", doc_id, exc_info=True)
                continue
            if incident.timestamp >= since:
                recent.append(incident)
        return recent
