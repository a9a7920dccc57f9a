import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from src.services import sources
from src.services.sources import BaseArticleSource, JsonlArticleSource, RSSFeedConfig, RSSFeedSource, fetch_all


class StaticSource(BaseArticleSource):
    def __init__(self, name: str, items: list[dict]) -> None:
        self.name = name
        self.items = items

    def fetch(self) -> list[dict]:
        return list(self.items)


class BrokenSource(BaseArticleSource):
    name = "broken"

    def fetch(self) -> list[dict]:
        raise ConnectionError("feed offline")


def test_rss_entries_become_ingestion_payloads(monkeypatch: pytest.MonkeyPatch) -> None:
    parsed = SimpleNamespace(
        bozo=0,
        bozo_exception=None,
        entries=[
            SimpleNamespace(
                id="urn:1",
                link="https://news.example/1",
                title="Strike at the bazaar",
                summary="<p>Shops closed</p>",
                published="Wed, 01 May 2024 10:00:00 GMT",
            ),
            SimpleNamespace(title="No identifier"),
        ],
    )
    monkeypatch.setattr(sources.feedparser, "parse", lambda url: parsed)

    items = RSSFeedSource([RSSFeedConfig(name="example", url="https://news.example/rss")]).fetch()

    assert items == [
        {
            "id": "rss:example:urn:1",
            "title": "Strike at the bazaar",
            "content": "<p>Shops closed</p>",
            "source": "rss:example",
            "sourceUrl": "https://news.example/1",
            "publishedAt": "Wed, 01 May 2024 10:00:00 GMT",
            "channel": "example",
        }
    ]


def test_jsonl_source_skips_bad_lines(tmp_path: Path) -> None:
    path = tmp_path / "articles.jsonl"
    path.write_text(
        "\n".join([json.dumps({"id": "a1", "content": "x"}), "{not json", "[1, 2]", "", json.dumps({"id": "a2"})]),
        encoding="utf-8",
    )

    items = JsonlArticleSource(path).fetch()

    assert [item["id"] for item in items] == ["a1", "a2"]


def test_fetch_all_isolates_failing_sources() -> None:
    payloads, errors = fetch_all(
        [StaticSource("one", [{"id": "1"}]), BrokenSource(), StaticSource("two", [{"id": "2"}, {"id": "3"}])],
        max_workers=2,
    )

    assert [item["id"] for item in payloads] == ["1", "2", "3"]
    assert errors == ["broken: feed offline"]


def test_fetch_all_with_no_sources() -> None:
    assert fetch_all([]) == ([], [])
