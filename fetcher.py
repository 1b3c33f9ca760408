#!/usr/bin/env python3
"""
RSS/Atom feed fetcher.

Downloads a feed document with a bounded timeout, parses it with feedparser
in a thread pool and normalizes every entry into a ``FeedEntry``: title,
link, body, author, publish date and media references. Failures never escape
``fetch_feed``; they come back as ``None`` (or a failed ``Result`` from
``fetch_feed_result``) for the orchestrator to record against the source.
"""

from asyncio import get_running_loop, TimeoutError
from calendar import timegm
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from functools import partial
from typing import Any, List, Optional
from urllib.parse import urljoin
import re

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup

from config import config, get_logger
from entities import FeedDocument, FeedEntry, MediaInfo
from errors import ErrorCode, Result, error_code_for_status
from telemetry import get_tracer, trace_span
from utils import (
    RateLimiter,
    count_words,
    failure_from_exception,
    html_to_text,
    make_excerpt,
    reading_time,
    sanitize_html,
    validate_url,
)

logger = get_logger("fetcher")
_tracer = get_tracer("fetcher")

HTTP_OK = 200

FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.9, */*;q=0.8"

DATE_FIELDS = (
    'published',
    'updated',
    'created',
    'modified',
    'date',
    'pubDate',
    'pubdate',
    'issued',
)

YOUTUBE_EMBED_RE = re.compile(r'(?:youtube\.com/embed/|youtube-nocookie\.com/embed/|youtu\.be/)([A-Za-z0-9_-]{6,})')
YOUTUBE_THUMBNAIL = "https://img.youtube.com/vi/{video_id}/maxresdefault.jpg"


class FeedFetcher:
    """Fetches and normalizes feed documents.

    The HTTP session, rate limiter and thread pool are created by the caller
    and shared with the rest of the pipeline.
    """

    def __init__(self, session: ClientSession, rate_limiter: Optional[RateLimiter] = None,
                 executor: Optional[ThreadPoolExecutor] = None) -> None:
        self.session = session
        self.rate_limiter = rate_limiter
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=4)

    async def run_in_executor(self, func, *args, **kwargs) -> Any:
        """Run a blocking function in the thread pool."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args, **kwargs))

    async def fetch_feed(self, url: str, timeout: Optional[float] = None) -> Optional[FeedDocument]:
        """Fetch and parse a feed, returning None on any failure."""
        result = await self.fetch_feed_result(url, timeout=timeout)
        return result.value if result.ok else None

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, timeout=None: {"feed.url": url},
    )
    async def fetch_feed_result(self, url: str, timeout: Optional[float] = None) -> Result[FeedDocument]:
        """Fetch and parse a feed, describing any failure with an error code."""
        if not validate_url(url):
            return Result.failure(ErrorCode.INVALID_URL, f"Invalid feed URL: {url!r}")

        timeout_seconds = timeout or config.FEED_FETCH_TIMEOUT
        if self.rate_limiter:
            await self.rate_limiter.acquire_for_url(url)

        try:
            async with self.session.get(
                url,
                headers={'User-Agent': config.USER_AGENT, 'Accept': FEED_ACCEPT},
                timeout=ClientTimeout(total=timeout_seconds),
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                if response.status != HTTP_OK:
                    logger.warning(f"Error fetching feed {url}: HTTP {response.status}")
                    return Result.failure(
                        error_code_for_status(response.status),
                        f"HTTP {response.status}",
                        status=response.status,
                    )
                content = await response.read()
                final_url = str(response.url) if getattr(response, 'url', None) else url
        except (TimeoutError, ClientError, OSError) as e:
            failure = failure_from_exception(e, url)
            logger.warning(f"Failed to fetch feed {url}: {failure.error}")
            return failure

        try:
            parsed = await self.run_in_executor(
                feedparser.parse, content, response_headers={'content-location': final_url}
            )
        except (ValueError, TypeError, RuntimeError) as e:
            logger.error(f"feedparser crashed on {url}: {e}")
            return Result.failure(ErrorCode.PARSE_ERROR, f"Unparseable feed document: {e}")

        if not parsed.get('version') and not parsed.get('entries'):
            reason = parsed.get('bozo_exception') or 'not an RSS/Atom document'
            logger.warning(f"Could not parse feed {url}: {reason}")
            return Result.failure(ErrorCode.PARSE_ERROR, f"Unparseable feed document: {reason}")
        if parsed.get('bozo'):
            logger.debug(f"Feed {url} is not well-formed but parsed anyway: {parsed.get('bozo_exception')}")

        document = self.build_document(url, parsed)
        logger.info(f"Fetched {len(document.entries)} entries from {url}")
        return Result.success(document)

    def build_document(self, url: str, parsed) -> FeedDocument:
        """Turn a feedparser result into a FeedDocument."""
        feed = parsed.get('feed', {}) or {}
        link = feed.get('link') or url
        image = feed.get('image') or {}
        image_url = image.get('href') or image.get('url') if isinstance(image, dict) else None

        entries: List[FeedEntry] = []
        for raw in parsed.get('entries', []) or []:
            entry = self.normalize_entry(raw, base_url=link)
            if entry:
                entries.append(entry)

        return FeedDocument(
            url=url,
            title=(feed.get('title') or '').strip() or None,
            description=feed.get('subtitle') or feed.get('description'),
            link=link,
            image_url=image_url,
            entries=entries,
        )

    def normalize_entry(self, entry, base_url: Optional[str] = None) -> Optional[FeedEntry]:
        """Normalize one feedparser entry; entries without a link are skipped."""
        raw_link = self._get_entry_value(entry, 'link')
        if not raw_link:
            logger.debug("Skipping entry without link: %s", self._get_entry_value(entry, 'title'))
            return None
        link = urljoin(base_url, raw_link) if base_url else raw_link

        title, url = self._normalize_entry_identity(self._get_entry_value(entry, 'title'), link)

        raw_body = self.extract_content(entry)
        content = sanitize_html(raw_body, base_url=url) if raw_body else None
        text = html_to_text(content) if content else ""
        words = count_words(text)

        summary = self._get_entry_value(entry, 'summary') or self._get_entry_value(entry, 'description')
        excerpt = make_excerpt(html_to_text(summary) if summary else text) or None

        return FeedEntry(
            title=title,
            url=url,
            content=content or None,
            excerpt=excerpt,
            author=self.extract_author(entry),
            published_at=self.parse_date_enhanced(entry),
            media=self.extract_media(entry, raw_body, base_url=url),
            text_content=text or None,
            word_count=words or None,
            reading_time=reading_time(words),
        )

    def extract_content(self, entry) -> Optional[str]:
        """Return the richest body available: full content before summary/description."""
        contents = self._get_entry_value(entry, 'content') or []
        html_parts = [c.get('value') for c in contents if isinstance(c, dict) and c.get('value')]
        if html_parts:
            # Prefer the longest variant when a feed ships both plain and html content
            return max(html_parts, key=len)

        summary = self._get_entry_value(entry, 'summary')
        if summary:
            return summary

        return self._get_entry_value(entry, 'description') or None

    def extract_author(self, entry) -> Optional[str]:
        author = self._get_entry_value(entry, 'author')
        if not author:
            detail = self._get_entry_value(entry, 'author_detail') or {}
            author = detail.get('name') if isinstance(detail, dict) else None
        if not author:
            author = self._get_entry_value(entry, 'itunes_author')
        return author.strip() if isinstance(author, str) and author.strip() else None

    def extract_media(self, entry, body_html: Optional[str], base_url: Optional[str] = None) -> MediaInfo:
        """Pick media references in priority order.

        media:* and itunes:image tags first, then enclosures (image enclosures
        for the picture, audio/video enclosures for playable media), then the
        first embedded video or <img> in the body.
        """
        media = MediaInfo()

        def _abs(value: Optional[str]) -> Optional[str]:
            if not value:
                return None
            return urljoin(base_url, value) if base_url else value

        for item in self._get_entry_value(entry, 'media_content') or []:
            if not isinstance(item, dict) or not item.get('url'):
                continue
            kind = _media_kind(item.get('medium'), item.get('type'))
            if kind == 'image' and not media.image_url:
                media.image_url = _abs(item['url'])
            elif kind in ('audio', 'video') and not media.media_url:
                media.media_url = _abs(item['url'])
                media.media_type = kind
                media.duration = _parse_duration(item.get('duration'))

        if not media.image_url:
            for thumb in self._get_entry_value(entry, 'media_thumbnail') or []:
                if isinstance(thumb, dict) and thumb.get('url'):
                    media.image_url = _abs(thumb['url'])
                    break

        if not media.image_url:
            itunes_image = self._get_entry_value(entry, 'image')
            if isinstance(itunes_image, dict) and itunes_image.get('href'):
                media.image_url = _abs(itunes_image['href'])

        for enclosure in self._get_entry_value(entry, 'enclosures') or []:
            href = enclosure.get('href') or enclosure.get('url') if isinstance(enclosure, dict) else None
            if not href:
                continue
            kind = _media_kind(None, enclosure.get('type'))
            if kind == 'image' and not media.image_url:
                media.image_url = _abs(href)
            elif kind in ('audio', 'video') and not media.media_url:
                media.media_url = _abs(href)
                media.media_type = kind

        if media.duration is None and media.media_url:
            media.duration = _parse_duration(self._get_entry_value(entry, 'itunes_duration'))

        if body_html and (not media.image_url or not media.media_url):
            self._scan_html_media(body_html, media, _abs)

        return media

    def _scan_html_media(self, body_html: str, media: MediaInfo, _abs) -> None:
        soup = BeautifulSoup(body_html, 'html.parser')

        if not media.media_url:
            for iframe in soup.find_all('iframe', src=True):
                src = iframe['src']
                match = YOUTUBE_EMBED_RE.search(src)
                if match or 'vimeo.com' in src or 'dailymotion.com' in src:
                    media.media_url = _abs(src)
                    media.media_type = 'video'
                    if match and not media.image_url:
                        media.image_url = YOUTUBE_THUMBNAIL.format(video_id=match.group(1))
                    break

        if not media.media_url:
            video = soup.find('video')
            if video is not None:
                src = video.get('src')
                if not src:
                    source = video.find('source', src=True)
                    src = source['src'] if source else None
                if src:
                    media.media_url = _abs(src)
                    media.media_type = 'video'
                    if not media.image_url and video.get('poster'):
                        media.image_url = _abs(video['poster'])

        if not media.image_url:
            img = soup.find('img', src=True)
            if img is not None:
                media.image_url = _abs(img['src'])

    def parse_date_enhanced(self, entry) -> Optional[int]:
        """Parse the publication date, first usable field wins; None when there is none."""
        for field in DATE_FIELDS:
            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, field))
            if timestamp:
                return timestamp

            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, f"{field}_parsed"))
            if timestamp:
                return timestamp

        # Some feeds only carry a date inside the entry id
        entry_id = self._get_entry_value(entry, 'id')
        if isinstance(entry_id, str):
            for pattern in (r'(\d{4})-(\d{2})-(\d{2})', r'(\d{4})/(\d{2})/(\d{2})'):
                match = re.search(pattern, entry_id)
                if not match:
                    continue
                try:
                    year, month, day = map(int, match.groups())
                    if 1900 <= year <= 2100:
                        return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp())
                except ValueError as e:
                    logger.debug(f"Failed to parse date components for '{entry_id}': {e}")

        return None

    def _get_entry_value(self, entry, field: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if not field or entry is None:
            return None
        try:
            value = getattr(entry, field)
        except AttributeError:
            value = None

        if value is not None:
            return value

        getter = getattr(entry, 'get', None)
        if callable(getter):
            try:
                return getter(field)
            except KeyError:
                return None
        return None

    def _date_value_to_timestamp(self, value: Any) -> Optional[int]:
        """Convert assorted date representations into a Unix timestamp."""
        if value in (None, ''):
            return None

        if isinstance(value, bool):
            return None

        if isinstance(value, (int, float)):
            timestamp = int(value)
            return timestamp if timestamp > 0 else None

        if isinstance(value, datetime):
            dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())

        if isinstance(value, (list, tuple)):
            # feedparser *_parsed values are UTC struct_time tuples
            try:
                return int(timegm(tuple(value)[:9]))
            except (OverflowError, ValueError, TypeError):
                return None

        if isinstance(value, str):
            return self._parse_date_string(value.strip())

        return None

    def _parse_date_string(self, date_str: str) -> Optional[int]:
        if not date_str:
            return None
        for parser in (self._parse_with_feedparser, self._parse_with_email_utils, self._parse_with_custom_formats):
            timestamp = parser(date_str)
            if timestamp is not None:
                return timestamp
        return None

    def _parse_with_feedparser(self, date_str: str) -> Optional[int]:
        try:
            time_struct = feedparser._parse_date(date_str)
            if time_struct:
                return int(timegm(time_struct))
        except (ValueError, TypeError, AttributeError, OverflowError):
            return None
        return None

    def _parse_with_email_utils(self, date_str: str) -> Optional[int]:
        try:
            dt = parsedate_to_datetime(date_str)
        except (TypeError, ValueError, IndexError, OverflowError):
            return None
        if dt is None:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    def _parse_with_custom_formats(self, date_str: str) -> Optional[int]:
        for fmt in ("%d %b %Y %H:%M:%S %z", "%d %b %Y %H:%M:%S %Z", "%d %b %Y %H:%M:%S", "%Y-%m-%d"):
            try:
                dt = datetime.strptime(date_str, fmt)
            except (ValueError, TypeError):
                continue
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
        return None

    def _normalize_entry_identity(self, title: Optional[str], url: Optional[str]) -> tuple[str, str]:
        """Trim identity fields to the sizes stored in the database."""
        norm_title = re.sub(r'\s+', ' ', html_to_text(title) if title else "").strip() or "Untitled"
        norm_title = norm_title[:500]

        norm_url = (url or "").strip()[:2048]

        return norm_title, norm_url

    async def close(self) -> None:
        """Shut down the thread pool if this fetcher created it."""
        if self._owns_executor and self.executor:
            self.executor.shutdown(wait=False)
        logger.debug("FeedFetcher closed")


def _media_kind(medium: Optional[str], mime_type: Optional[str]) -> Optional[str]:
    for value in (medium, (mime_type or '').split('/')[0]):
        if value in ('image', 'audio', 'video'):
            return value
    return None


def _parse_duration(value: Any) -> Optional[int]:
    """Seconds from "3600", "1:02:03" or "62:03"."""
    if value in (None, ''):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    parts = str(value).strip().split(':')
    try:
        seconds = 0
        for part in parts:
            seconds = seconds * 60 + int(float(part))
        return seconds
    except ValueError:
        return None
