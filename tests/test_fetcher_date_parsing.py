import time
from datetime import datetime, timezone

from fetcher import FeedFetcher


class DummyEntry(dict):
    """Dict that also exposes attributes like feedparser entries."""

    def __getattr__(self, item):
        try:
            return self[item]
        except KeyError as exc:  # pragma: no cover - mirrors feedparser behavior
            raise AttributeError(item) from exc


def test_parse_date_without_weekday():
    fetcher = FeedFetcher(session=None)
    entry = DummyEntry(
        pubDate="17 Nov 2025 00:00:00 +0000",
        id="https://example.com/2025/11/17/post",
    )

    timestamp = fetcher.parse_date_enhanced(entry)

    expected = int(datetime(2025, 11, 17, tzinfo=timezone.utc).timestamp())
    assert timestamp == expected


def test_parse_rfc822_date_with_weekday():
    fetcher = FeedFetcher(session=None)
    entry = DummyEntry(
        pubDate="Sat, 15 Nov 2025 16:00:00 +0000",
        id="https://example.com/posts/2025/11/15/acorn/",
    )

    timestamp = fetcher.parse_date_enhanced(entry)

    expected = int(datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc).timestamp())
    assert timestamp == expected


def test_parsed_struct_is_read_as_utc():
    fetcher = FeedFetcher(session=None)
    entry = DummyEntry(published_parsed=time.strptime("2025-03-01 12:30:00", "%Y-%m-%d %H:%M:%S"))

    expected = int(datetime(2025, 3, 1, 12, 30, tzinfo=timezone.utc).timestamp())
    assert fetcher.parse_date_enhanced(entry) == expected


def test_date_falls_back_to_entry_id():
    fetcher = FeedFetcher(session=None)
    entry = DummyEntry(id="https://example.com/2024/02/29/leap-day")

    expected = int(datetime(2024, 2, 29, tzinfo=timezone.utc).timestamp())
    assert fetcher.parse_date_enhanced(entry) == expected


def test_missing_date_is_none():
    fetcher = FeedFetcher(session=None)
    entry = DummyEntry(title="Timeless", id="tag:example.com,post-1")

    assert fetcher.parse_date_enhanced(entry) is None


def test_garbage_date_is_none():
    fetcher = FeedFetcher(session=None)
    entry = DummyEntry(published="sometime last week", id="post-1")

    assert fetcher.parse_date_enhanced(entry) is None
