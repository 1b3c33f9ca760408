import pytest
from aiohttp import ClientConnectionError

from conftest import FakeResponse, FakeSession
from errors import ErrorCode
from fetcher import FeedFetcher

FEED_URL = "https://blog.example.com/feed.xml"

RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"
     xmlns:media="http://search.yahoo.com/mrss/"
     xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd"
     xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>Example Blog</title>
    <link>https://blog.example.com/</link>
    <description>Posts about things</description>
    <item>
      <title>Dated post</title>
      <link>https://blog.example.com/dated</link>
      <guid>post-1</guid>
      <pubDate>Mon, 06 Jan 2025 10:00:00 +0000</pubDate>
      <author>jane@example.com (Jane Doe)</author>
      <description>Short summary</description>
      <content:encoded><![CDATA[<p>Full body with <a href="/about">a link</a>.</p><img src="/img/inline.jpg">]]></content:encoded>
      <media:thumbnail url="https://cdn.example.com/thumb.jpg"/>
    </item>
    <item>
      <title>Undated post</title>
      <link>https://blog.example.com/undated</link>
      <description>&lt;p&gt;No date on this one&lt;/p&gt;</description>
    </item>
    <item>
      <title>Linkless</title>
      <description>Skipped</description>
    </item>
  </channel>
</rss>
"""

PODCAST = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd">
  <channel>
    <title>Example Cast</title>
    <link>https://cast.example.com/</link>
    <item>
      <title>Episode 1</title>
      <link>https://cast.example.com/1</link>
      <pubDate>Tue, 07 Jan 2025 08:00:00 +0000</pubDate>
      <enclosure url="https://cast.example.com/1.mp3" type="audio/mpeg" length="1234"/>
      <itunes:duration>1:02:03</itunes:duration>
      <itunes:image href="https://cast.example.com/ep1.jpg"/>
    </item>
  </channel>
</rss>
"""


@pytest.mark.asyncio
async def test_fetch_feed_normalizes_entries():
    session = FakeSession({FEED_URL: FakeResponse(body=RSS, content_type="application/rss+xml")})
    fetcher = FeedFetcher(session)

    document = await fetcher.fetch_feed(FEED_URL)
    await fetcher.close()

    assert document.title == "Example Blog"
    assert [e.url for e in document.entries] == [
        "https://blog.example.com/dated",
        "https://blog.example.com/undated",
    ]

    dated = document.entries[0]
    assert dated.published_at == 1736157600
    assert dated.excerpt == "Short summary"
    assert "Full body" in dated.text_content
    assert 'href="https://blog.example.com/about"' in dated.content
    assert dated.word_count == dated.text_content.count(" ") + 1
    assert dated.reading_time == 1
    # media:thumbnail beats the first inline image
    assert dated.media.image_url == "https://cdn.example.com/thumb.jpg"


@pytest.mark.asyncio
async def test_undated_entries_keep_null_publish_date():
    session = FakeSession({FEED_URL: FakeResponse(body=RSS)})
    fetcher = FeedFetcher(session)

    document = await fetcher.fetch_feed(FEED_URL)
    await fetcher.close()

    undated = document.entries[1]
    assert undated.published_at is None
    assert undated.text_content == "No date on this one"


@pytest.mark.asyncio
async def test_podcast_enclosure_becomes_media():
    url = "https://cast.example.com/rss"
    session = FakeSession({url: FakeResponse(body=PODCAST)})
    fetcher = FeedFetcher(session)

    document = await fetcher.fetch_feed(url)
    await fetcher.close()

    media = document.entries[0].media
    assert media.media_url == "https://cast.example.com/1.mp3"
    assert media.media_type == "audio"
    assert media.duration == 3723
    assert media.image_url == "https://cast.example.com/ep1.jpg"


def test_youtube_embed_provides_video_and_thumbnail():
    fetcher = FeedFetcher(session=None)
    body = '<p>Watch:</p><iframe src="https://www.youtube.com/embed/dQw4w9WgXcQ"></iframe><img src="/later.png">'

    media = fetcher.extract_media({}, body, base_url="https://example.com/post")

    assert media.media_type == "video"
    assert media.media_url == "https://www.youtube.com/embed/dQw4w9WgXcQ"
    assert media.image_url == "https://img.youtube.com/vi/dQw4w9WgXcQ/maxresdefault.jpg"


def test_first_inline_image_is_the_fallback():
    fetcher = FeedFetcher(session=None)
    body = '<p>Text</p><img src="/a.png"><img src="/b.png">'

    media = fetcher.extract_media({}, body, base_url="https://example.com/post")

    assert media.image_url == "https://example.com/a.png"
    assert media.media_url is None


@pytest.mark.asyncio
async def test_http_errors_return_none():
    session = FakeSession({FEED_URL: FakeResponse(status=404)})
    fetcher = FeedFetcher(session)

    assert await fetcher.fetch_feed(FEED_URL) is None
    result = await fetcher.fetch_feed_result(FEED_URL)
    await fetcher.close()

    assert result.error_code == ErrorCode.HTTP_4XX
    assert result.status == 404


@pytest.mark.asyncio
async def test_network_errors_return_failed_result():
    session = FakeSession({FEED_URL: ClientConnectionError("connection reset")})
    fetcher = FeedFetcher(session)

    result = await fetcher.fetch_feed_result(FEED_URL)
    await fetcher.close()

    assert not result.ok
    assert result.error_code == ErrorCode.CONNECTION_ERROR


@pytest.mark.asyncio
async def test_html_page_is_a_parse_error():
    session = FakeSession({FEED_URL: FakeResponse(body="<html><body><p>Not a feed</p></body></html>")})
    fetcher = FeedFetcher(session)

    result = await fetcher.fetch_feed_result(FEED_URL)
    await fetcher.close()

    assert result.error_code == ErrorCode.PARSE_ERROR
