"""
Exact and near-duplicate detection for incoming articles against a recency window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from src.services.content_hashing import ContentHasher
from src.services.lsh_index import DEFAULT_BANDS, DEFAULT_ROWS, LSHIndex
from src.services.models import Article

LOGGER = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.8


class DuplicateKind(str, Enum):
    NONE = "none"
    EXACT = "exact"
    FUZZY = "fuzzy"


@dataclass(frozen=True)
class DuplicateDecision:
    kind: DuplicateKind
    match_id: str | None = None
    similarity: float | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.kind is not DuplicateKind.NONE


UNIQUE = DuplicateDecision(DuplicateKind.NONE)


class DedupWindow:
    """Transient lookup structures for one dedup invocation."""

    def __init__(self, num_perm: int, bands: int, rows: int) -> None:
        self.ids: set[str] = set()
        self.fingerprints: dict[str, str] = {}
        self.signatures: dict[str, tuple[int, ...]] = {}
        self.index = LSHIndex(num_perm=num_perm, bands=bands, rows=rows)

    def add(self, article: Article) -> None:
        self.ids.add(article.id)
        if article.content_fingerprint:
            self.fingerprints.setdefault(article.content_fingerprint, article.id)
        signature = article.minhash_signature
        if signature and self.index.insert(article.id, signature):
            self.signatures[article.id] = tuple(signature)


@dataclass
class DedupResult:
    unique: list[Article] = field(default_factory=list)
    duplicates: list[tuple[Article, DuplicateDecision]] = field(default_factory=list)

    @property
    def exact_count(self) -> int:
        return sum(1 for _, decision in self.duplicates if decision.kind is DuplicateKind.EXACT)

    @property
    def fuzzy_count(self) -> int:
        return sum(1 for _, decision in self.duplicates if decision.kind is DuplicateKind.FUZZY)


class Deduplicator:
    def __init__(
        self,
        hasher: ContentHasher | None = None,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        bands: int = DEFAULT_BANDS,
        rows: int = DEFAULT_ROWS,
    ) -> None:
        self.hasher = hasher or ContentHasher()
        if bands * rows != self.hasher.num_perm:
            raise ValueError(
                f"LSH banding {bands}x{rows} does not cover {self.hasher.num_perm}-component signatures"
            )
        self.threshold = threshold
        self.bands = bands
        self.rows = rows

    def ensure_hashes(self, article: Article) -> Article:
        # Short bodies carry a fingerprint but never a signature.
        if article.content_fingerprint:
            return article
        try:
            return article.with_hashes(self.hasher)
        except Exception:  # noqa: BLE001
            LOGGER.warning("Failed to hash article %s; treating as unhashed.", article.id, exc_info=True)
            return article

    def build_window(self, recent_articles: Iterable[Article]) -> DedupWindow:
        window = DedupWindow(self.hasher.num_perm, self.bands, self.rows)
        for article in recent_articles:
            window.add(self.ensure_hashes(article))
        LOGGER.debug("Built dedup window with %s fingerprints and %s signatures", len(window.fingerprints), len(window.index))
        return window

    def is_duplicate(self, article: Article, window: DedupWindow | Iterable[Article]) -> DuplicateDecision:
        """Classify an article as exact, fuzzy or not a duplicate of anything in the window."""
        if not isinstance(window, DedupWindow):
            window = self.build_window(window)
        try:
            return self._classify(self.ensure_hashes(article), window)
        except Exception:  # noqa: BLE001
            LOGGER.warning("Dedup check failed for article %s; treating as unique.", article.id, exc_info=True)
            return UNIQUE

    def _classify(self, article: Article, window: DedupWindow) -> DuplicateDecision:
        if article.id in window.ids:
            return DuplicateDecision(DuplicateKind.EXACT, match_id=article.id, similarity=1.0)
        fingerprint = article.content_fingerprint
        if fingerprint:
            match_id = window.fingerprints.get(fingerprint)
            if match_id is not None:
                return DuplicateDecision(DuplicateKind.EXACT, match_id=match_id, similarity=1.0)
        signature = article.minhash_signature
        if not signature:
            return UNIQUE
        best_id: str | None = None
        best_similarity = 0.0
        for candidate_id in sorted(window.index.candidates(signature)):
            similarity = self.hasher.similarity(signature, window.signatures.get(candidate_id))
            if similarity > best_similarity:
                best_id, best_similarity = candidate_id, similarity
        if best_id is not None and best_similarity >= self.threshold:
            return DuplicateDecision(DuplicateKind.FUZZY, match_id=best_id, similarity=best_similarity)
        return UNIQUE

    def process(self, articles: Iterable[Article], recent_window: Iterable[Article] | DedupWindow) -> DedupResult:
        """Split a batch into unique and duplicate articles; uniques join the window as they pass."""
        window = recent_window if isinstance(recent_window, DedupWindow) else self.build_window(recent_window)
        result = DedupResult()
        for article in articles:
            hashed = self.ensure_hashes(article)
            decision = self.is_duplicate(hashed, window)
            if decision.is_duplicate:
                LOGGER.debug(
                    "Dropping %s duplicate %s (match=%s, similarity=%s)",
                    decision.kind.value,
                    hashed.id,
                    decision.match_id,
                    decision.similarity,
                )
                result.duplicates.append((hashed, decision))
                continue
            window.add(hashed)
            result.unique.append(hashed)
        LOGGER.info(
            "Dedup kept %s unique articles (%s exact, %s fuzzy duplicates)",
            len(result.unique),
            result.exact_count,
            result.fuzzy_count,
        )
        return result
