#!/usr/bin/env python3
"""
Utility classes and functions for the ingestion pipeline.

This module contains shared utilities used by the classifier, fetcher,
extractor and orchestrator: per-host rate limiting, the retry policy and its
attempt helper, HTML sanitizing, text metrics and slug generation.
"""

from asyncio import Lock, sleep, TimeoutError
from collections import OrderedDict
from dataclasses import dataclass, field
from math import ceil
from socket import gaierror
from time import monotonic
from typing import Any, Awaitable, Callable, List, Optional, Tuple
import re
import unicodedata
from urllib.parse import urljoin, urlparse

from aiohttp import ClientConnectorError, ClientError, ClientResponseError
from bs4 import BeautifulSoup

from config import config, get_logger
from errors import ErrorCode, Result, error_code_for_status

logger = get_logger("utils")

SLUG_MAX_LENGTH = 80
SLUG_SEPARATOR = "--"


class RateLimiter:
    """Per-key request spacing shared by everything that talks to the network.

    One instance is created at process start and handed to the classifier,
    fetcher and extractor. Each key (usually a hostname) gets at most
    ``requests_per_minute`` slots per minute. At most ``max_keys`` keys are
    tracked; the least recently used key is forgotten first.
    """

    def __init__(self, requests_per_minute: int, max_keys: int = 1000):
        """
        Args:
            requests_per_minute: Allowed requests per key per minute.
                                 If 0 or negative, no rate limiting is applied.
            max_keys: Upper bound on the number of keys remembered.
        """
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self.max_keys = max(1, max_keys)
        self._next_slot: "OrderedDict[str, float]" = OrderedDict()
        self._lock = Lock()

    @classmethod
    def from_config(cls) -> "RateLimiter":
        return cls(config.REQUESTS_PER_MINUTE_PER_HOST, config.RATE_LIMIT_MAX_KEYS)

    async def acquire(self, key: str = "default") -> float:
        """Wait until ``key`` may issue another request.

        Slots are reserved under the lock and slept on outside of it, so a
        slow host never holds up requests to other hosts.

        Returns:
            The number of seconds waited.
        """
        if self.min_interval <= 0:
            return 0.0

        async with self._lock:
            now = monotonic()
            slot = max(now, self._next_slot.get(key, now))
            self._next_slot[key] = slot + self.min_interval
            self._next_slot.move_to_end(key)
            while len(self._next_slot) > self.max_keys:
                evicted, _ = self._next_slot.popitem(last=False)
                logger.debug(f"Rate limiter forgetting key {evicted}")

        wait_time = slot - now
        if wait_time > 0:
            logger.debug(f"Rate limiting {key}: waiting {wait_time:.2f} seconds")
            await sleep(wait_time)
        return wait_time

    async def acquire_for_url(self, url: str) -> float:
        return await self.acquire(host_of(url) or "default")

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key when ``key`` is None."""
        if key is None:
            self._next_slot.clear()
        else:
            self._next_slot.pop(key, None)

    @property
    def tracked_keys(self) -> int:
        return len(self._next_slot)


def _default_is_retryable(result: Result) -> bool:
    return result.retryable


@dataclass
class RetryPolicy:
    """Bounded retry with exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Cap applied to every computed delay.
        is_retryable: Decides whether a failed Result deserves another attempt.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    is_retryable: Callable[[Result], bool] = field(default=_default_is_retryable)

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_attempts=config.EXTRACT_MAX_RETRIES + 1,
            base_delay=config.RETRY_DELAY_BASE,
            max_delay=config.RETRY_DELAY_MAX,
        )

    def backoff(self, attempt: int) -> float:
        """Delay after the given failed attempt (0-based)."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)


async def attempt_with_policy(
    operation: Callable[[], Awaitable[Result]],
    policy: RetryPolicy,
    label: str = "operation",
    sleeper: Callable[[float], Awaitable[Any]] = sleep,
) -> Tuple[Result, int]:
    """Run ``operation`` until it succeeds, fails permanently or runs out of attempts.

    Returns:
        The last Result and the number of attempts made.
    """
    max_attempts = max(1, policy.max_attempts)
    attempt = 0
    while True:
        result = await operation()
        attempt += 1
        if result.ok or not policy.is_retryable(result):
            return result, attempt
        if attempt >= max_attempts:
            logger.warning(f"{label}: giving up after {attempt} attempts ({result.error})")
            return result, attempt
        delay = policy.backoff(attempt - 1)
        logger.info(f"{label}: attempt {attempt} failed ({result.error}); retrying in {delay:.2f}s")
        if delay > 0:
            await sleeper(delay)


def describe_client_error(error: BaseException) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        strerror = getattr(os_error, 'strerror', None)
        if errno is not None:
            parts.append(f"errno={errno}")
        if strerror:
            parts.append(str(strerror))
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


def failure_from_exception(error: BaseException, url: str) -> Result:
    """Translate a request exception into a failed Result."""
    if isinstance(error, TimeoutError):
        return Result.failure(ErrorCode.TIMEOUT, f"Timed out fetching {url}")
    detail = describe_client_error(error)
    if isinstance(error, ClientConnectorError) and isinstance(getattr(error, 'os_error', None), gaierror):
        return Result.failure(ErrorCode.DNS_ERROR, f"DNS lookup failed for {url}: {detail}")
    if isinstance(error, ClientResponseError) and error.status and error.status >= 400:
        return Result.failure(error_code_for_status(error.status), f"HTTP {error.status} for {url}", status=error.status)
    if isinstance(error, (ClientError, OSError)):
        return Result.failure(ErrorCode.CONNECTION_ERROR, f"Network error for {url}: {detail}")
    raise error


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL."""
    if not url or not isinstance(url, str):
        return False
    url = url.strip()
    if not url.startswith(('http://', 'https://')):
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return bool(parsed.hostname) and '.' in parsed.hostname


def host_of(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    try:
        return (urlparse(url).hostname or "").lower() or None
    except ValueError:
        return None


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1m 5s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated."""
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


_DANGEROUS_TAGS = [
    "script", "style", "iframe", "form", "object", "embed", "noscript",
    "frame", "frameset", "applet", "meta", "base", "link", "button", "input",
]

_TRACKER_RE = re.compile(r'(pixel|tracker|counter|spacer|blank|trans)', re.I)


def sanitize_html(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize an HTML fragment for storage.

    - Removes dangerous elements (script/style/iframe/etc.)
    - Strips inline event handlers and javascript: URLs
    - Removes common tracking pixels
    - Resolves relative href/src against ``base_url``; unresolvable links
      become ``#`` and unresolvable images are dropped
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for tag in soup(_DANGEROUS_TAGS):
        tag.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith('on'):
                del tag[attr]
            elif attr.lower() in ('href', 'src') and str(tag[attr]).strip().lower().startswith('javascript:'):
                del tag[attr]

    for img in soup.find_all('img'):
        src = img.get('src', '')
        if _TRACKER_RE.search(src) or \
           (re.search(r'\.(gif|png)$', src, re.I) and img.get('height') in ('0', '1')):
            img.decompose()

    def _rewrite_url(value: str, attr: str) -> Optional[str]:
        if attr == 'href' and value.startswith(('mailto:', '#')):
            return value
        if value.startswith(('http://', 'https://')):
            return value
        if base_url:
            try:
                resolved = urljoin(base_url, value)
            except ValueError:
                return None
            if resolved.startswith(('http://', 'https://')):
                return resolved
        return None

    for tag in soup.find_all(['a', 'img', 'source', 'video', 'audio']):
        for attr in ('href', 'src'):
            if not tag.has_attr(attr):
                continue
            val = str(tag[attr]).strip()
            if not val:
                continue
            rewritten = _rewrite_url(val, attr)
            if rewritten:
                tag[attr] = rewritten
            elif attr == 'href':
                tag[attr] = '#'
            elif tag.name == 'img':
                tag.decompose()
                break
            else:
                del tag[attr]

    return str(soup).strip()


def html_to_text(html_content: Optional[str]) -> str:
    """Flatten HTML into whitespace-normalized plain text."""
    if not html_content:
        return ""
    text = BeautifulSoup(html_content, 'html.parser').get_text(" ")
    return re.sub(r'\s+', ' ', text).strip()


def count_words(text: Optional[str]) -> int:
    """Count whitespace-delimited tokens."""
    if not text:
        return 0
    return len(text.split())


def reading_time(word_count: Optional[int], words_per_minute: Optional[int] = None) -> Optional[int]:
    """Minutes needed to read ``word_count`` words, rounded up; None without text."""
    if not word_count:
        return None
    wpm = words_per_minute or config.WORDS_PER_MINUTE
    return ceil(word_count / wpm)


def make_excerpt(text: Optional[str], max_length: Optional[int] = None) -> str:
    if not text:
        return ""
    text = re.sub(r'\s+', ' ', text).strip()
    return truncate_string(text, max_length or config.EXCERPT_LENGTH)


def slugify(title: Optional[str], max_length: int = SLUG_MAX_LENGTH) -> str:
    """ASCII slug: accents stripped, lowercase, hyphen separated."""
    if not title:
        return ""
    normalized = unicodedata.normalize("NFD", title.lower())
    stripped = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    stripped = re.sub(r'[^a-z0-9\s-]', '', stripped).strip()
    slug = re.sub(r'\s+', '-', stripped)
    slug = re.sub(r'-+', '-', slug)
    return slug[:max_length].strip('-')


def generate_content_slug(content_id: str, title: Optional[str]) -> str:
    slug = slugify(title)
    if not slug:
        return content_id
    return f"{content_id}{SLUG_SEPARATOR}{slug}"


def parse_content_slug(value: str) -> Tuple[str, Optional[str]]:
    """Split ``{id}--{slug}`` into its parts; values without a separator are all id."""
    if SLUG_SEPARATOR not in value:
        return value, None
    content_id, slug = value.split(SLUG_SEPARATOR, 1)
    return content_id, slug or None
