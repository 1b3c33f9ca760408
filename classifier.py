#!/usr/bin/env python3
"""
Source URL classifier.

Infers what kind of source a raw URL points at. Known platforms are matched
by hostname and path patterns without touching the network; ambiguous URLs
get a short probe (GET plus content sniffing, then <link rel="alternate">
discovery and common feed paths). Channel and podcast URLs are resolved to a
machine-readable feed when the platform offers one.

``classify`` never raises: malformed URLs and failed lookups come back as a
``Classification`` with ``detected=False`` and an ``error`` message.
"""

from asyncio import get_running_loop, TimeoutError
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urljoin, urlparse
import json
import re

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup

from config import config, get_logger
from entities import Classification, SourceType
from errors import Result, error_code_for_status
from telemetry import get_tracer, trace_span
from utils import RateLimiter, failure_from_exception, host_of

logger = get_logger("classifier")
_tracer = get_tracer("classifier")

HTTP_OK = 200

YOUTUBE_CHANNEL_FEED = "https://www.youtube.com/feeds/videos.xml?channel_id={channel_id}"
YOUTUBE_PLAYLIST_FEED = "https://www.youtube.com/feeds/videos.xml?playlist_id={playlist_id}"
ITUNES_LOOKUP_URL = "https://itunes.apple.com/lookup"

# Tried in order against a channel page; the first hit wins
CHANNEL_ID_PATTERNS = (
    re.compile(r'"externalId"\s*:\s*"(UC[A-Za-z0-9_-]+)"'),
    re.compile(r'<link[^>]+rel=["\']canonical["\'][^>]+href=["\']https?://(?:www\.)?youtube\.com/channel/(UC[A-Za-z0-9_-]+)["\']', re.I),
    re.compile(r'"browseId"\s*:\s*"(UC[A-Za-z0-9_-]+)"[^}]*"canonicalBaseUrl"'),
    re.compile(r'"channelId"\s*:\s*"(UC[A-Za-z0-9_-]+)"[^}]*"vanityChannelUrl"'),
    re.compile(r'"header"[^}]*"channelId"\s*:\s*"(UC[A-Za-z0-9_-]+)"'),
    re.compile(r'"channelId"\s*:\s*"(UC[A-Za-z0-9_-]+)"'),
)
AVATAR_RE = re.compile(r'"avatar":\s*\{\s*"thumbnails":\s*\[\s*\{\s*"url":\s*"([^"]+)"')
HANDLE_RE = re.compile(r'youtube\.com/@([\w.-]+)', re.I)

SOCIAL_RESERVED_PATHS = {
    'home', 'i', 'search', 'intent', 'share', 'explore', 'hashtag', 'settings',
    'p', 'reel', 'reels', 'tv', 'stories', 'accounts', 'login',
}

PODCAST_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r'podcasts\.apple\.com|itunes\.apple\.com/.*/podcast', re.I), 'apple'),
    (re.compile(r'open\.spotify\.com/show', re.I), 'spotify'),
    (re.compile(r'music\.amazon\.[a-z.]+/podcasts', re.I), 'amazon'),
    (re.compile(r'feeds\.feedburner\.com', re.I), 'feedburner'),
    (re.compile(r'anchor\.fm', re.I), 'anchor'),
    (re.compile(r'castbox\.fm', re.I), 'castbox'),
    (re.compile(r'overcast\.fm', re.I), 'overcast'),
    (re.compile(r'pocketcasts\.com', re.I), 'pocketcasts'),
    (re.compile(r'buzzsprout\.com', re.I), 'buzzsprout'),
    (re.compile(r'transistor\.fm', re.I), 'transistor'),
    (re.compile(r'simplecast\.com', re.I), 'simplecast'),
    (re.compile(r'megaphone\.fm', re.I), 'megaphone'),
    (re.compile(r'art19\.com', re.I), 'art19'),
    (re.compile(r'podbean\.com', re.I), 'podbean'),
    (re.compile(r'spreaker\.com', re.I), 'spreaker'),
    (re.compile(r'libsyn\.com', re.I), 'libsyn'),
    (re.compile(r'audioboom\.com', re.I), 'audioboom'),
    (re.compile(r'ivoox\.com', re.I), 'ivoox'),
    (re.compile(r'podcast', re.I), 'generic'),
)

FEED_PATH_PATTERNS = (
    re.compile(r'\.rss$', re.I),
    re.compile(r'\.xml$', re.I),
    re.compile(r'/feed/?$', re.I),
    re.compile(r'/rss/?$', re.I),
    re.compile(r'/atom/?$', re.I),
    re.compile(r'feed\.xml', re.I),
    re.compile(r'rss\.xml', re.I),
    re.compile(r'atom\.xml', re.I),
)

COMMON_FEED_PATHS = ('/feed', '/rss', '/atom.xml', '/feed.xml', '/rss.xml')

FEED_LINK_TYPES = ('application/rss+xml', 'application/atom+xml', 'application/rdf+xml', 'application/feed+json')


def _strip_www(host: str) -> str:
    return host[4:] if host.startswith('www.') else host


def _on_domain(host: str, domain: str) -> bool:
    return host == domain or host.endswith('.' + domain)


def sniff_feed(body: str) -> Tuple[bool, bool]:
    """Return (is_feed, is_podcast) for a response body."""
    head = body[:20000]
    lowered = head.lower()
    is_feed = (
        '<rss' in lowered
        or ('<feed' in lowered and 'http://www.w3.org/2005/atom' in lowered)
        or '<rdf:rdf' in lowered
        or ('<channel>' in lowered and ('<item>' in lowered or '<entry>' in lowered))
    )
    if not is_feed:
        return False, False
    is_podcast = (
        re.search(r'<enclosure[^>]+type=["\']audio/', head, re.I) is not None
        or '<itunes:' in lowered
        or '<podcast:' in lowered
        or re.search(r'<media:content[^>]+type=["\']audio/', head, re.I) is not None
    )
    return True, is_podcast


def classify_pattern(url: str) -> Classification:
    """Classify by hostname and path alone. Never touches the network."""
    raw = (url or '').strip()
    try:
        parsed = urlparse(raw)
        host = (parsed.hostname or '').lower()
    except ValueError:
        return Classification(url=raw, error="Malformed URL")
    if parsed.scheme not in ('http', 'https') or not host or '.' not in host:
        return Classification(url=raw, error="Malformed URL")

    host = _strip_www(host)
    path = parsed.path or '/'
    segments = [s for s in path.split('/') if s]
    query = parse_qs(parsed.query)

    # Platform-specific: video
    if _on_domain(host, 'youtube.com') or host == 'youtu.be':
        result = _classify_youtube(raw, host, path, segments, query)
        if result:
            return result

    # Platform-specific: social
    social = _classify_social(raw, host, segments)
    if social:
        return social

    # Podcast hosting
    target = f"{host}{path}"
    for pattern, platform in PODCAST_PATTERNS:
        if pattern.search(target):
            feed_url = raw if any(p.search(path) for p in FEED_PATH_PATTERNS) else None
            return Classification(
                url=raw,
                detected=True,
                source_type=SourceType.PODCAST,
                suggested_title=host,
                suggested_feed_url=feed_url,
                platform=platform,
            )

    # Generic feed paths
    if any(p.search(path) for p in FEED_PATH_PATTERNS):
        return Classification(
            url=raw,
            detected=True,
            source_type=SourceType.FEED,
            suggested_title=host,
            suggested_feed_url=raw,
        )

    return Classification(
        url=raw,
        detected=False,
        source_type=SourceType.WEBSITE,
        suggested_title=host,
    )


def _classify_youtube(url: str, host: str, path: str, segments: List[str],
                      query: Dict[str, List[str]]) -> Optional[Classification]:
    if path.startswith('/feeds/videos.xml'):
        channel_id = (query.get('channel_id') or [None])[0]
        playlist_id = (query.get('playlist_id') or [None])[0]
        if channel_id or playlist_id:
            return Classification(
                url=url, detected=True, source_type=SourceType.YOUTUBE_CHANNEL,
                suggested_title="YouTube channel", suggested_feed_url=url, platform='youtube',
            )

    if path.startswith('/playlist') and query.get('list'):
        return Classification(
            url=url, detected=True, source_type=SourceType.YOUTUBE_CHANNEL,
            suggested_title="YouTube playlist",
            suggested_feed_url=YOUTUBE_PLAYLIST_FEED.format(playlist_id=query['list'][0]),
            platform='youtube',
        )

    if host == 'youtu.be' or path.startswith('/watch') or path.startswith('/shorts/'):
        if host == 'youtu.be' or query.get('v') or len(segments) > 1:
            return Classification(
                url=url, detected=True, source_type=SourceType.YOUTUBE_VIDEO,
                suggested_title="YouTube video", platform='youtube',
            )

    if segments and segments[0] == 'channel' and len(segments) > 1 and segments[1].startswith('UC'):
        return Classification(
            url=url, detected=True, source_type=SourceType.YOUTUBE_CHANNEL,
            suggested_title="YouTube channel",
            suggested_feed_url=YOUTUBE_CHANNEL_FEED.format(channel_id=segments[1]),
            platform='youtube',
        )

    if segments and (segments[0].startswith('@') or (segments[0] in ('c', 'user') and len(segments) > 1)):
        handle = segments[0][1:] if segments[0].startswith('@') else segments[1]
        return Classification(
            url=url, detected=True, source_type=SourceType.YOUTUBE_CHANNEL,
            suggested_title=f"@{handle}" if segments[0].startswith('@') else handle,
            platform='youtube',
            original_handle=handle if segments[0].startswith('@') else None,
        )

    return None


def _classify_social(url: str, host: str, segments: List[str]) -> Optional[Classification]:
    if host in ('twitter.com', 'x.com', 'mobile.twitter.com'):
        source_type = SourceType.TWITTER
    elif host in ('instagram.com', 'instagr.am'):
        source_type = SourceType.INSTAGRAM
    elif _on_domain(host, 'tiktok.com'):
        source_type = SourceType.TIKTOK
    else:
        return None

    handle = None
    if segments:
        first = segments[0]
        if source_type == SourceType.TIKTOK:
            handle = first[1:] if first.startswith('@') else (first if host.startswith('vm.') else None)
        elif first.lower() not in SOCIAL_RESERVED_PATHS:
            handle = first.lstrip('@')

    return Classification(
        url=url,
        detected=True,
        source_type=source_type,
        suggested_title=f"@{handle}" if handle else host,
        platform=source_type.value,
        original_handle=handle,
    )


class URLClassifier:
    """Classifies source URLs, probing the network only when patterns are inconclusive."""

    def __init__(self, session: ClientSession, rate_limiter: Optional[RateLimiter] = None) -> None:
        self.session = session
        self.rate_limiter = rate_limiter

    def classify_pattern(self, url: str) -> Classification:
        return classify_pattern(url)

    @trace_span(
        "classify",
        tracer_name="classifier",
        attr_from_args=lambda self, url: {"source.url": url},
    )
    async def classify(self, url: str) -> Classification:
        """Classify ``url`` and resolve a feed URL where the platform offers one."""
        result = classify_pattern(url)
        if result.source_type is None:
            logger.info(f"Could not classify malformed URL {url!r}")
            return result

        try:
            if result.source_type == SourceType.YOUTUBE_CHANNEL and not result.suggested_feed_url:
                await self.resolve_youtube_channel(result)
            elif result.source_type == SourceType.PODCAST and not result.suggested_feed_url:
                await self.resolve_podcast(result)
            elif result.source_type == SourceType.WEBSITE:
                await self.probe(result)
        except Exception as e:
            logger.warning(f"Classification lookup for {url} failed: {e}")
            result.error = str(e)

        logger.info(
            "Classified %s as %s (detected=%s, feed=%s)",
            url, result.source_type.value, result.detected, result.suggested_feed_url,
        )
        return result

    async def _get_text(self, url: str, timeout: float, accept: str = '*/*',
                        user_agent: Optional[str] = None) -> Result[Dict[str, str]]:
        """GET a URL and return its body, final URL and content type."""
        if self.rate_limiter:
            await self.rate_limiter.acquire_for_url(url)
        try:
            async with self.session.get(
                url,
                headers={'User-Agent': user_agent or config.USER_AGENT, 'Accept': accept},
                timeout=ClientTimeout(total=timeout),
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                if response.status != HTTP_OK:
                    return Result.failure(
                        error_code_for_status(response.status), f"HTTP {response.status}", status=response.status
                    )
                try:
                    body = await response.text()
                except UnicodeDecodeError:
                    body = (await response.read()).decode('utf-8', errors='replace')
                return Result.success({
                    'body': body,
                    'final_url': str(response.url) if getattr(response, 'url', None) else url,
                    'content_type': response.headers.get('Content-Type', '') if response.headers else '',
                })
        except (TimeoutError, ClientError, OSError) as e:
            return failure_from_exception(e, url)

    async def resolve_youtube_channel(self, result: Classification) -> None:
        """Find the channel id behind a handle/custom URL and flag handle redirects."""
        page = await self._get_text(
            result.url, config.PROBE_TIMEOUT,
            accept='text/html,application/xhtml+xml', user_agent=config.BROWSER_USER_AGENT,
        )
        if not page.ok:
            result.error = f"Could not load channel page: {page.error}"
            return

        html = page.value['body']
        final_url = page.value['final_url']

        channel_id = None
        for pattern in CHANNEL_ID_PATTERNS:
            match = pattern.search(html)
            if match:
                channel_id = match.group(1)
                break
        if not channel_id:
            result.error = "Channel id not found on page"
            return

        result.suggested_feed_url = YOUTUBE_CHANNEL_FEED.format(channel_id=channel_id)

        handle_match = HANDLE_RE.search(final_url)
        result.final_handle = handle_match.group(1) if handle_match else None
        if result.original_handle and result.final_handle \
                and result.original_handle.lower() != result.final_handle.lower():
            result.was_redirected = True
            logger.warning(
                "YouTube handle @%s redirected to @%s; subscribing to the final channel",
                result.original_handle, result.final_handle,
            )

        soup = BeautifulSoup(html, 'html.parser')
        title = _meta(soup, 'og:title') or (soup.title.get_text(strip=True) if soup.title else None)
        if title:
            result.suggested_title = re.sub(r'\s*-\s*YouTube$', '', title).strip() or result.suggested_title
        result.description = _meta(soup, 'og:description') or _meta(soup, 'description', attr='name')

        avatar = AVATAR_RE.search(html)
        image = avatar.group(1) if avatar else _meta(soup, 'og:image')
        if image and image.startswith('//'):
            image = f"https:{image}"
        result.image_url = image

    async def resolve_podcast(self, result: Classification) -> None:
        """Turn a podcast directory or hosting URL into its RSS feed."""
        if result.platform == 'apple':
            await self._lookup_apple_podcast(result)
            return
        if result.platform in ('spotify', 'amazon'):
            result.error = f"{result.platform.capitalize()} does not publish RSS feeds for shows"
            return
        await self.probe(result, keep_type=True)

    async def _lookup_apple_podcast(self, result: Classification) -> None:
        match = re.search(r'/id(\d+)', result.url) or re.search(r'[?&]id=(\d+)', result.url)
        if not match:
            result.error = "Apple Podcasts URL has no show id"
            return

        lookup = await self._get_text(
            f"{ITUNES_LOOKUP_URL}?id={match.group(1)}&entity=podcast", config.PROBE_TIMEOUT,
            accept='application/json',
        )
        if not lookup.ok:
            result.error = f"iTunes lookup failed: {lookup.error}"
            return

        try:
            payload = json.loads(lookup.value['body'])
        except json.JSONDecodeError as e:
            result.error = f"iTunes lookup returned invalid JSON: {e}"
            return

        if not isinstance(payload, dict):
            result.error = "iTunes lookup returned an unexpected payload"
            return

        shows = [r for r in payload.get('results', []) or [] if isinstance(r, dict) and r.get('feedUrl')]
        if not shows:
            result.error = "Podcast has no public RSS feed"
            return

        show = shows[0]
        result.suggested_feed_url = show['feedUrl']
        result.suggested_title = show.get('collectionName') or show.get('trackName') or result.suggested_title
        result.image_url = show.get('artworkUrl600') or show.get('artworkUrl100')
        result.description = show.get('artistName')

    async def probe(self, result: Classification, keep_type: bool = False) -> None:
        """Fetch an ambiguous URL and decide between feed, podcast and website."""
        page = await self._get_text(
            result.url, config.PROBE_TIMEOUT,
            accept='application/rss+xml, application/atom+xml, text/html;q=0.9, */*;q=0.8',
        )
        if not page.ok:
            result.error = f"Probe failed: {page.error}"
            return

        body = page.value['body']
        final_url = page.value['final_url']
        is_feed, is_podcast = sniff_feed(body)

        if is_feed:
            parsed = await get_running_loop().run_in_executor(None, feedparser.parse, body)
            feed = parsed.get('feed', {}) or {}
            result.detected = True
            if not keep_type:
                result.source_type = SourceType.PODCAST if is_podcast else SourceType.FEED
            result.suggested_feed_url = final_url
            result.suggested_title = (feed.get('title') or '').strip() or result.suggested_title
            result.description = feed.get('subtitle') or feed.get('description')
            image = feed.get('image') or {}
            result.image_url = image.get('href') if isinstance(image, dict) else None
            return

        soup = BeautifulSoup(body, 'html.parser')
        site_title = _meta(soup, 'og:site_name') or (soup.title.get_text(strip=True) if soup.title else None)
        if site_title:
            result.suggested_title = site_title
        result.description = _meta(soup, 'og:description') or _meta(soup, 'description', attr='name')
        result.image_url = _meta(soup, 'og:image')

        feed_url = await self.discover_feed_url(final_url, soup)
        if feed_url:
            result.detected = True
            result.suggested_feed_url = feed_url

    async def discover_feed_url(self, site_url: str, soup: Optional[BeautifulSoup] = None) -> Optional[str]:
        """Find a feed for a website: <link rel="alternate"> first, then common paths."""
        if soup is not None:
            feed_links = []
            for link in soup.find_all('link', href=True):
                rel = link.get('rel') or []
                rel_values = [r.lower() for r in (rel if isinstance(rel, list) else [rel])]
                type_attr = (link.get('type') or '').lower()
                if 'alternate' in rel_values and type_attr in FEED_LINK_TYPES:
                    feed_links.append({'url': urljoin(site_url, link['href']), 'type': type_attr})

            if feed_links:
                atom_feeds = [f for f in feed_links if 'atom' in f['type']]
                chosen = (atom_feeds or feed_links)[0]['url']
                logger.info(f"Discovered feed {chosen} from {site_url}")
                return chosen

        base = f"{urlparse(site_url).scheme}://{urlparse(site_url).netloc}"
        for candidate_path in COMMON_FEED_PATHS:
            candidate = urljoin(base, candidate_path)
            if await self._looks_like_feed(candidate):
                logger.info(f"Discovered feed {candidate} by probing common paths")
                return candidate

        logger.info(f"No feed found for {site_url}")
        return None

    async def _looks_like_feed(self, url: str) -> bool:
        if self.rate_limiter:
            await self.rate_limiter.acquire(host_of(url) or "default")
        try:
            async with self.session.head(
                url,
                headers={'User-Agent': config.USER_AGENT},
                timeout=ClientTimeout(total=config.PROBE_TIMEOUT),
                allow_redirects=True,
            ) as response:
                if response.status != HTTP_OK:
                    return False
                content_type = (response.headers.get('Content-Type', '') if response.headers else '').lower()
                return any(marker in content_type for marker in ('xml', 'rss', 'atom'))
        except (TimeoutError, ClientError, OSError) as e:
            logger.debug(f"Feed path probe failed for {url}: {e}")
            return False


def _meta(soup: BeautifulSoup, key: str, attr: str = 'property') -> Optional[str]:
    tag = soup.find('meta', attrs={attr: key})
    if tag is None and attr == 'property':
        tag = soup.find('meta', attrs={'name': key})
    content = tag.get('content') if tag is not None else None
    return content.strip() if content and content.strip() else None
