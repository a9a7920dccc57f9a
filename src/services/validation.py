"""
Validation of raw article dictionaries coming from feeds or the document store.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Iterable

from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.services.models import Article, SourceKind, parse_timestamp

LOGGER = logging.getLogger(__name__)

HTML_HINT = re.compile(r"<[a-zA-Z/!][^>]*>")
TITLE_MAX_LENGTH = 500


def clean_html_fragment(value: str | None) -> str:
    """Best-effort HTML to text converter for summaries and message bodies."""
    if not value:
        return ""
    if not HTML_HINT.search(value):
        return value.strip()
    soup = BeautifulSoup(value, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    text = soup.get_text(" ", strip=True)
    return re.sub(r"\s+", " ", text).strip()


class ArticlePayload(BaseModel):
    """Ingestion contract: ``{id, title, content, source, sourceUrl, publishedAt}``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    id: str = Field(min_length=1)
    title: str = ""
    content: str = ""
    source: SourceKind = SourceKind.OTHER
    source_url: str | None = Field(default=None, alias="sourceUrl")
    published_at: Any = Field(default=None, alias="publishedAt")
    channel: str | None = None
    topics: list[str] = Field(default_factory=list)
    image_hash: str | None = Field(default=None, alias="imageHash")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("title", "content", mode="before")
    @classmethod
    def _clean_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return clean_html_fragment(str(value))

    @field_validator("title")
    @classmethod
    def _bound_title(cls, value: str) -> str:
        return value[:TITLE_MAX_LENGTH]

    @field_validator("source", mode="before")
    @classmethod
    def _parse_source(cls, value: Any) -> SourceKind:
        return SourceKind.parse(value)

    @field_validator("published_at", mode="before")
    @classmethod
    def _parse_published(cls, value: Any) -> Any:
        # Unparseable timestamps degrade to "absent"; extraction falls back to text cues.
        return parse_timestamp(value)

    @field_validator("topics", mode="before")
    @classmethod
    def _parse_topics(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return [str(item).strip() for item in value if str(item).strip()]

    def to_article(self) -> Article:
        return Article(
            id=self.id,
            title=self.title,
            content=self.content,
            source=self.source,
            source_url=self.source_url or None,
            published_at=self.published_at,
            channel=self.channel or None,
            topics=frozenset(self.topics),
            image_hash=self.image_hash or None,
        )


class StoredArticlePayload(ArticlePayload):
    content_fingerprint: str | None = Field(default=None, alias="contentFingerprint")
    minhash_signature: list[int] | None = Field(default=None, alias="minHashSignature")

    def to_article(self) -> Article:
        return replace(
            super().to_article(),
            content_fingerprint=self.content_fingerprint,
            minhash_signature=tuple(self.minhash_signature) if self.minhash_signature else None,
        )


@dataclass(frozen=True)
class ValidationFailure:
    index: int
    item_id: str | None
    message: str


def parse_articles(items: Iterable[Any]) -> tuple[list[Article], list[ValidationFailure]]:
    """Validate raw ingestion items one by one, collecting failures instead of raising."""
    articles: list[Article] = []
    failures: list[ValidationFailure] = []
    for index, item in enumerate(items):
        item_id = str(item.get("id")) if isinstance(item, dict) and item.get("id") is not None else None
        try:
            payload = ArticlePayload.model_validate(item)
        except ValidationError as exc:
            message = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'item'}: {error['msg']}" for error in exc.errors()
            )
            LOGGER.warning("Rejected article #%s (%s): %s", index, item_id, message)
            failures.append(ValidationFailure(index=index, item_id=item_id, message=message))
            continue
        article = payload.to_article()
        if not (article.title or article.content):
            LOGGER.debug("Article %s has no text; it will pass through without hashes.", article.id)
        articles.append(article)
    return articles, failures


def parse_stored_article(document: dict[str, Any]) -> Article:
    return StoredArticlePayload.model_validate(document).to_article()
