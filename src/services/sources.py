"""
Upstream article sources.

Every source returns raw dictionaries in the ingestion shape
(``{id, title, content, source, sourceUrl, publishedAt, channel}``); validation happens
downstream so a malformed entry never takes its whole feed with it.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Sequence

import feedparser

LOGGER = logging.getLogger(__name__)


class BaseArticleSource:
    """Abstract interface for concrete upstream sources."""

    name: str

    def fetch(self) -> List[dict[str, Any]]:
        raise NotImplementedError


@dataclass
class RSSFeedConfig:
    name: str
    url: str


class RSSFeedSource(BaseArticleSource):
    def __init__(self, feeds: Sequence[RSSFeedConfig]) -> None:
        self.name = "rss"
        self.feeds = list(feeds)

    def fetch(self) -> List[dict[str, Any]]:
        items: List[dict[str, Any]] = []
        for feed in self.feeds:
            parsed = feedparser.parse(feed.url)
            if parsed.bozo:
                LOGGER.warning("RSS parse issue for %s: %s", feed.url, parsed.bozo_exception)
            entries = getattr(parsed, "entries", [])
            for entry in entries:
                link = getattr(entry, "link", "")
                entry_id = getattr(entry, "id", "") or link
                if not entry_id:
                    LOGGER.debug("Skipping RSS entry without id or link in %s", feed.name)
                    continue
                items.append(
                    {
                        "id": f"rss:{feed.name}:{entry_id}",
                        "title": getattr(entry, "title", ""),
                        "content": getattr(entry, "summary", ""),
                        "source": f"rss:{feed.name}",
                        "sourceUrl": link or None,
                        "publishedAt": getattr(entry, "published", None) or getattr(entry, "updated", None),
                        "channel": feed.name,
                    }
                )
            LOGGER.debug("RSS feed %s yielded %s entries", feed.name, len(entries))
        return items


class JsonlArticleSource(BaseArticleSource):
    """Articles dropped on disk by other collectors, one JSON object per line."""

    def __init__(self, path: Path) -> None:
        self.name = f"jsonl:{path.name}"
        self.path = path

    def fetch(self) -> List[dict[str, Any]]:
        items: List[dict[str, Any]] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    LOGGER.warning("Skipping malformed JSON on line %s of %s", line_number, self.path)
                    continue
                if not isinstance(payload, dict):
                    LOGGER.warning("Skipping non-object JSON on line %s of %s", line_number, self.path)
                    continue
                items.append(payload)
        return items


def fetch_all(
    sources: Sequence[BaseArticleSource], max_workers: int = 4
) -> tuple[list[dict[str, Any]], list[str]]:
    """Fetch every source concurrently; a failing source is logged and reported, never fatal."""
    payloads: list[dict[str, Any]] = []
    errors: list[str] = []
    if not sources:
        return payloads, errors
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        futures = [(source, executor.submit(source.fetch)) for source in sources]
        for source, future in futures:
            name = getattr(source, "name", source.__class__.__name__)
            try:
                items = future.result()
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Error while fetching from %s: %s", name, exc)
                errors.append(f"{name}: {exc}")
                continue
            LOGGER.info("Source %s returned %s candidate articles", name, len(items))
            payloads.extend(items)
    return payloads, errors
