from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from src.services.models import SourceKind
from src.services.validation import clean_html_fragment, parse_articles, parse_stored_article


def test_camel_case_payload_is_accepted() -> None:
    articles, failures = parse_articles(
        [
            {
                "id": "tg-101",
                "title": "Protest in Karaj",
                "content": "Crowds gathered downtown.",
                "source": "telegram",
                "sourceUrl": "https://t.me/example/101",
                "publishedAt": "2024-05-01T10:00:00Z",
                "channel": "example",
                "unknownField": "ignored",
            }
        ]
    )

    assert failures == []
    article = articles[0]
    assert article.source is SourceKind.CHANNEL
    assert article.source_url == "https://t.me/example/101"
    assert article.published_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def test_snake_case_and_epoch_milliseconds() -> None:
    articles, _ = parse_articles(
        [{"id": 42, "content": "text", "source_url": "https://example.com", "published_at": 1714557600000}]
    )

    assert articles[0].id == "42"
    assert articles[0].source_url == "https://example.com"
    assert articles[0].published_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def test_unparseable_timestamp_degrades_to_none() -> None:
    articles, failures = parse_articles([{"id": "a1", "content": "text", "publishedAt": "last tuesday-ish"}])

    assert failures == []
    assert articles[0].published_at is None


def test_invalid_items_are_reported_not_raised() -> None:
    articles, failures = parse_articles(
        [{"id": "ok", "content": "fine"}, {"title": "missing id"}, "not a dict", {"id": "   "}]
    )

    assert [article.id for article in articles] == ["ok"]
    assert [failure.index for failure in failures] == [1, 2, 3]
    assert failures[0].item_id is None
    assert "id" in failures[0].message
    assert failures[2].item_id == "   "


def test_html_is_reduced_to_text() -> None:
    articles, _ = parse_articles(
        [{"id": "h1", "content": "<p>Clashes <b>near</b> the bazaar</p><script>track()</script>"}]
    )

    assert articles[0].content == "Clashes near the bazaar"
    assert clean_html_fragment("plain text ") == "plain text"
    assert clean_html_fragment(None) == ""


def test_source_labels_and_topics() -> None:
    articles, _ = parse_articles(
        [{"id": "r1", "content": "x", "source": "rss:bbc-persian", "topics": "protest, arrest"}]
    )

    assert articles[0].source is SourceKind.RSS
    assert articles[0].topics == frozenset({"protest", "arrest"})


def test_stored_article_keeps_hashes() -> None:
    article = parse_stored_article(
        {
            "id": "a1",
            "title": "t",
            "content": "c",
            "source": "channel",
            "contentFingerprint": "abc",
            "minHashSignature": [3, 2, 1],
            "imageHash": "ff00",
        }
    )

    assert article.content_fingerprint == "abc"
    assert article.minhash_signature == (3, 2, 1)
    assert article.image_hash == "ff00"


def test_stored_article_without_id_raises() -> None:
    with pytest.raises(ValidationError):
        parse_stored_article({"title": "t"})
