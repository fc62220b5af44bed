from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import requests

from rss_aggregator import feeds
from rss_aggregator.feeds import FeedFetchError, FeedParseError


def _stub_get(monkeypatch, content=b"", error=None, status_error=None):
    calls = []

    def fake_get(url, timeout=None, headers=None):
        calls.append({"url": url, "timeout": timeout})
        if error is not None:
            raise error

        def raise_for_status():
            if status_error is not None:
                raise status_error

        return SimpleNamespace(content=content, raise_for_status=raise_for_status)

    monkeypatch.setattr(feeds.requests, "get", fake_get)
    return calls


def test_parse_published_uses_rfc1123z():
    parsed = feeds.parse_published("Mon, 02 Jan 2006 15:04:05 -0700")

    assert parsed == datetime(
        2006, 1, 2, 15, 4, 5, tzinfo=timezone(-timedelta(hours=7))
    )


def test_parse_published_missing_value_is_none():
    assert feeds.parse_published(None) is None
    assert feeds.parse_published("   ") is None


def test_parse_published_rejects_other_formats():
    with pytest.raises(ValueError):
        feeds.parse_published("2006-01-02T15:04:05Z")


def test_fetch_feed_entries_keeps_source_order(monkeypatch, rss):
    content = rss(
        [
            ("Second", "https://x.test/2", "Tue, 03 Jan 2006 10:00:00 +0000"),
            ("First", "https://x.test/1", "Mon, 02 Jan 2006 10:00:00 +0000"),
            ("Undated", "https://x.test/3", None),
        ]
    )
    calls = _stub_get(monkeypatch, content=content)

    entries = feeds.fetch_feed_entries("https://x.test/rss", timeout=3.0)

    assert calls == [{"url": "https://x.test/rss", "timeout": 3.0}]
    assert [entry.link for entry in entries] == [
        "https://x.test/2",
        "https://x.test/1",
        "https://x.test/3",
    ]
    assert entries[0].title == "Second"
    assert entries[0].description == "About Second"
    assert entries[0].published == datetime(2006, 1, 3, 10, tzinfo=timezone.utc)
    assert entries[2].published is None


def test_fetch_feed_entries_truncates_long_fields(monkeypatch, rss):
    long_title = "t" * 400
    _stub_get(monkeypatch, content=rss([(long_title, "https://x.test/1", None)]))

    entries = feeds.fetch_feed_entries("https://x.test/rss")

    assert len(entries[0].title) == feeds.TITLE_MAX_LENGTH


def test_bad_published_date_rejects_whole_feed(monkeypatch, rss):
    content = rss(
        [
            ("Good", "https://x.test/1", "Mon, 02 Jan 2006 10:00:00 +0000"),
            ("Bad", "https://x.test/2", "yesterday-ish"),
        ]
    )
    _stub_get(monkeypatch, content=content)

    with pytest.raises(FeedParseError) as excinfo:
        feeds.fetch_feed_entries("https://x.test/rss")

    assert excinfo.value.url == "https://x.test/rss"
    assert "yesterday-ish" in str(excinfo.value)


def test_network_error_raises_fetch_error(monkeypatch):
    _stub_get(monkeypatch, error=requests.Timeout("timed out"))

    with pytest.raises(FeedFetchError) as excinfo:
        feeds.fetch_feed_entries("https://timeout.test/rss")

    assert not isinstance(excinfo.value, FeedParseError)
    assert "timeout.test" in str(excinfo.value)


def test_http_error_status_raises_fetch_error(monkeypatch):
    _stub_get(monkeypatch, status_error=requests.HTTPError("404 Client Error"))

    with pytest.raises(FeedFetchError):
        feeds.fetch_feed_entries("https://missing.test/rss")


def test_malformed_document_raises_parse_error(monkeypatch):
    _stub_get(monkeypatch, content=b"<html><body><p>not a feed")

    with pytest.raises(FeedParseError):
        feeds.fetch_feed_entries("https://broken.test/rss")


def test_parse_published_normalises_to_utc():
    parsed = feeds.parse_published("Mon, 02 Jan 2006 15:04:05 -0700")

    assert parsed.utcoffset() == timedelta(0)
    assert parsed.replace(tzinfo=None) == datetime(2006, 1, 2, 22, 4, 5)


def test_parse_published_zoneless_format_is_utc():
    parsed = feeds.parse_published("2006-01-02 15:04:05", fmt="%Y-%m-%d %H:%M:%S")

    assert parsed == datetime(2006, 1, 2, 15, 4, 5, tzinfo=timezone.utc)


def test_overlong_link_is_skipped(monkeypatch, rss):
    long_link = "https://x.test/" + "a" * feeds.URL_MAX_LENGTH
    _stub_get(
        monkeypatch,
        content=rss([("Long", long_link, None), ("Short", "https://x.test/1", None)]),
    )

    entries = feeds.fetch_feed_entries("https://x.test/rss")

    assert [entry.link for entry in entries] == ["https://x.test/1"]
