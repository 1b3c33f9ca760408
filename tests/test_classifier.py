import json

import pytest

from classifier import URLClassifier, classify_pattern, sniff_feed
from conftest import FakeResponse, FakeSession
from entities import SourceType


@pytest.mark.parametrize("url, expected", [
    ("https://www.youtube.com/channel/UCabcdefghijklmnop", SourceType.YOUTUBE_CHANNEL),
    ("https://www.youtube.com/@somecreator", SourceType.YOUTUBE_CHANNEL),
    ("https://www.youtube.com/watch?v=dQw4w9WgXcQ", SourceType.YOUTUBE_VIDEO),
    ("https://youtu.be/dQw4w9WgXcQ", SourceType.YOUTUBE_VIDEO),
    ("https://twitter.com/someone", SourceType.TWITTER),
    ("https://x.com/someone", SourceType.TWITTER),
    ("https://www.instagram.com/someone/", SourceType.INSTAGRAM),
    ("https://www.tiktok.com/@someone", SourceType.TIKTOK),
    ("https://podcasts.apple.com/us/podcast/show/id123456789", SourceType.PODCAST),
    ("https://feeds.buzzsprout.com/12345.rss", SourceType.PODCAST),
    ("https://example.com/feed/", SourceType.FEED),
    ("https://example.com/index.xml", SourceType.FEED),
    ("https://example.com/", SourceType.WEBSITE),
    ("https://notyoutube.com/watch?v=dQw4w9WgXcQ", SourceType.WEBSITE),
    ("https://nottiktok.com/@someone", SourceType.WEBSITE),
    ("https://m.youtube.com/@somecreator", SourceType.YOUTUBE_CHANNEL),
])
def test_pattern_classification(url, expected):
    assert classify_pattern(url).source_type == expected


def test_channel_url_gets_feed_without_network():
    result = classify_pattern("https://www.youtube.com/channel/UCabcdefghijklmnop")
    assert result.detected
    assert result.suggested_feed_url == "https://www.youtube.com/feeds/videos.xml?channel_id=UCabcdefghijklmnop"


def test_feed_path_is_its_own_feed():
    result = classify_pattern("https://example.com/feed/")
    assert result.detected
    assert result.suggested_feed_url == "https://example.com/feed/"


def test_social_handles_are_extracted():
    assert classify_pattern("https://x.com/someone/status/1").original_handle == "someone"
    assert classify_pattern("https://twitter.com/home").original_handle is None


@pytest.mark.parametrize("url", ["", "not a url", "ftp://example.com/feed", "https://localhost/feed"])
def test_malformed_urls(url):
    result = classify_pattern(url)
    assert result.source_type is None
    assert not result.detected
    assert result.error == "Malformed URL"


def test_sniff_feed():
    assert sniff_feed('<?xml version="1.0"?><rss version="2.0"><channel></channel></rss>') == (True, False)
    assert sniff_feed('<rss><channel><item><enclosure url="a.mp3" type="audio/mpeg"/></item></channel></rss>') == (True, True)
    assert sniff_feed('<feed xmlns="http://www.w3.org/2005/Atom"></feed>') == (True, False)
    assert sniff_feed('<html><body>hi</body></html>') == (False, False)


@pytest.mark.asyncio
async def test_youtube_handle_redirect_is_reported():
    handle_url = "https://www.youtube.com/@oldname"
    page = '<html><head><meta property="og:title" content="New Name"></head>' \
           '<body><script>var d = {"externalId":"UC1234567890abcdefghij"};</script></body></html>'
    session = FakeSession({handle_url: FakeResponse(body=page, url="https://www.youtube.com/@newname")})

    result = await URLClassifier(session).classify(handle_url)

    assert result.source_type == SourceType.YOUTUBE_CHANNEL
    assert result.suggested_feed_url == "https://www.youtube.com/feeds/videos.xml?channel_id=UC1234567890abcdefghij"
    assert result.was_redirected
    assert result.original_handle == "oldname"
    assert result.final_handle == "newname"
    assert result.suggested_title == "New Name"


@pytest.mark.asyncio
async def test_youtube_page_without_channel_id_reports_error():
    handle_url = "https://www.youtube.com/@mystery"
    session = FakeSession({handle_url: FakeResponse(body="<html></html>")})

    result = await URLClassifier(session).classify(handle_url)

    assert result.source_type == SourceType.YOUTUBE_CHANNEL
    assert result.suggested_feed_url is None
    assert result.error == "Channel id not found on page"


@pytest.mark.asyncio
async def test_apple_podcast_lookup():
    url = "https://podcasts.apple.com/us/podcast/example/id42"
    lookup = "https://itunes.apple.com/lookup?id=42&entity=podcast"
    payload = {"results": [{"collectionName": "Example Show", "feedUrl": "https://feeds.example.com/show.xml",
                            "artworkUrl600": "https://is1.example.com/art.jpg"}]}
    session = FakeSession({lookup: FakeResponse(body=json.dumps(payload), content_type="application/json")})

    result = await URLClassifier(session).classify(url)

    assert result.source_type == SourceType.PODCAST
    assert result.suggested_feed_url == "https://feeds.example.com/show.xml"
    assert result.suggested_title == "Example Show"
    assert result.image_url == "https://is1.example.com/art.jpg"


@pytest.mark.asyncio
async def test_apple_podcast_lookup_with_non_object_json():
    url = "https://podcasts.apple.com/us/podcast/some-show/id123456"
    lookup = "https://itunes.apple.com/lookup?id=123456&entity=podcast"
    session = FakeSession({lookup: FakeResponse(body="[]", content_type="application/json")})

    result = await URLClassifier(session).classify(url)

    assert result.source_type == SourceType.PODCAST
    assert result.suggested_feed_url is None
    assert result.error == "iTunes lookup returned an unexpected payload"


@pytest.mark.asyncio
async def test_lookup_bug_becomes_classification_error(monkeypatch):
    classifier = URLClassifier(FakeSession())

    async def failing_lookup(result, keep_type=False):
        raise AttributeError("boom")

    monkeypatch.setattr(classifier, "probe", failing_lookup)
    result = await classifier.classify("https://site.example.com/")

    assert result.source_type == SourceType.WEBSITE
    assert result.error == "boom"


@pytest.mark.asyncio
async def test_spotify_shows_have_no_feed():
    result = await URLClassifier(FakeSession()).classify("https://open.spotify.com/show/abc")

    assert result.source_type == SourceType.PODCAST
    assert result.suggested_feed_url is None
    assert "Spotify" in result.error


@pytest.mark.asyncio
async def test_website_with_alternate_link_prefers_atom():
    site = "https://example.com/"
    page = """<html><head><title>Example</title>
      <link rel="alternate" type="application/rss+xml" href="/rss.xml">
      <link rel="alternate" type="application/atom+xml" href="/atom.xml">
    </head><body></body></html>"""
    session = FakeSession({site: FakeResponse(body=page)})

    result = await URLClassifier(session).classify(site)

    assert result.source_type == SourceType.WEBSITE
    assert result.detected
    assert result.suggested_feed_url == "https://example.com/atom.xml"
    assert result.suggested_title == "Example"


@pytest.mark.asyncio
async def test_website_falls_back_to_common_feed_paths():
    site = "https://example.com/"
    session = FakeSession(
        {site: FakeResponse(body="<html><head><title>Plain</title></head></html>")},
        head_routes={"https://example.com/rss": FakeResponse(content_type="application/rss+xml")},
    )

    result = await URLClassifier(session).classify(site)

    assert result.suggested_feed_url == "https://example.com/rss"
    assert session.head_calls["https://example.com/feed"] == 1


@pytest.mark.asyncio
async def test_url_serving_a_feed_is_classified_by_content():
    url = "https://example.com/updates"
    body = """<?xml version="1.0"?><rss version="2.0"><channel><title>Updates</title>
      <item><title>A</title><link>https://example.com/a</link></item></channel></rss>"""
    session = FakeSession({url: FakeResponse(body=body, content_type="application/rss+xml")})

    result = await URLClassifier(session).classify(url)

    assert result.source_type == SourceType.FEED
    assert result.suggested_feed_url == url
    assert result.suggested_title == "Updates"


@pytest.mark.asyncio
async def test_unreachable_website_stays_undetected():
    result = await URLClassifier(FakeSession()).classify("https://nowhere.example.com/")

    assert result.source_type == SourceType.WEBSITE
    assert not result.detected
    assert result.error.startswith("Probe failed")
