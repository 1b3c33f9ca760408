#!/usr/bin/env python3
"""
Readable-article extraction.

Fetches an article page, runs readability-lxml over it to find the main
content block, sanitizes the result, drops an inline copy of the feed's own
featured image and computes text metrics. Transient failures (timeouts, 5xx,
connection resets) are retried through ``utils.attempt_with_policy``;
permanent ones (4xx, DNS failures, pages with no extractable text) are not.
"""

from asyncio import get_running_loop, TimeoutError
from concurrent.futures import ThreadPoolExecutor
from difflib import SequenceMatcher
from functools import partial
from posixpath import basename, splitext
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlparse
import re

from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup
from lxml.etree import LxmlError
from readability import Document

from config import config, get_logger
from entities import ExtractedContent
from errors import ErrorCode, Result, error_code_for_status
from telemetry import get_tracer, trace_span
from utils import (
    RateLimiter,
    RetryPolicy,
    attempt_with_policy,
    count_words,
    failure_from_exception,
    html_to_text,
    make_excerpt,
    reading_time,
    sanitize_html,
    validate_url,
)

logger = get_logger("extractor")
_tracer = get_tracer("extractor")

HTTP_OK = 200

PAGE_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
PAGE_ACCEPT_LANGUAGE = "en-US,en;q=0.9"

SIZE_SUFFIX_RE = re.compile(r'([-_](\d+x\d+|thumb|thumbnail|small|medium|large|scaled))+(?=\.[a-z0-9]+$)')
SIMILARITY_THRESHOLD = 0.8
MIN_STEM_LENGTH = 5
MIN_CONTAINMENT_LENGTH = 20


def normalize_image_path(url: Optional[str]) -> str:
    """Lowercased path without query string or size suffixes like -300x200."""
    if not url:
        return ""
    try:
        path = urlparse(url).path.lower()
    except ValueError:
        return url.lower()
    return SIZE_SUFFIX_RE.sub('', path)


def images_match(candidate: Optional[str], featured: Optional[str]) -> bool:
    """Heuristic comparison of two image URLs that may point to different renditions."""
    a = normalize_image_path(candidate)
    b = normalize_image_path(featured)
    if not a or not b:
        return False
    if a == b:
        return True

    stem_a = splitext(basename(a))[0]
    stem_b = splitext(basename(b))[0]
    if stem_a and stem_a == stem_b and len(stem_a) > MIN_STEM_LENGTH:
        return True

    shorter, longer = sorted((a, b), key=len)
    if len(shorter) > MIN_CONTAINMENT_LENGTH and shorter in longer:
        return True

    return SequenceMatcher(None, a, b).ratio() > SIMILARITY_THRESHOLD


def _image_candidates(img, base_url: Optional[str]) -> List[str]:
    candidates = [img.get('src'), img.get('data-src'), img.get('data-lazy-src')]
    srcset = img.get('srcset') or img.get('data-srcset') or ''
    for part in srcset.split(','):
        bits = part.strip().split()
        if bits:
            candidates.append(bits[0])
    return [urljoin(base_url, c) if base_url else c for c in candidates if c]


def remove_duplicate_featured_image(html: str, featured_image_url: Optional[str],
                                    base_url: Optional[str] = None) -> str:
    """Drop the first inline image that repeats the featured image.

    The wrapping element goes too when it holds nothing but the image.
    """
    if not html or not featured_image_url:
        return html

    soup = BeautifulSoup(html, 'html.parser')
    for img in soup.find_all('img'):
        if not any(images_match(c, featured_image_url) for c in _image_candidates(img, base_url)):
            continue
        parent = img.parent
        only_child = parent is not None and len([c for c in parent.children if getattr(c, 'name', None)]) == 1
        if parent is not None and parent.name not in (None, '[document]', 'body', 'article') \
                and (not parent.get_text(strip=True) or only_child):
            parent.decompose()
        else:
            img.decompose()
        logger.debug(f"Removed duplicate featured image {featured_image_url}")
        break
    return str(soup)


def _meta_content(soup: BeautifulSoup, *selectors: Dict[str, str]) -> Optional[str]:
    for attrs in selectors:
        tag = soup.find('meta', attrs=attrs)
        if tag and tag.get('content') and tag['content'].strip():
            return tag['content'].strip()
    return None


class ContentExtractor:
    """Recovers readable article bodies from web pages."""

    def __init__(self, session: ClientSession, retry_policy: Optional[RetryPolicy] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 executor: Optional[ThreadPoolExecutor] = None) -> None:
        self.session = session
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self.rate_limiter = rate_limiter
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=config.EXTRACT_CONCURRENCY)

    async def run_in_executor(self, func, *args) -> Any:
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    async def extract(self, url: str, featured_image_url: Optional[str] = None) -> Optional[ExtractedContent]:
        """Extract with retries; None when nothing usable could be recovered."""
        result = await self.extract_result(url, featured_image_url=featured_image_url)
        return result.value if result.ok else None

    @trace_span(
        "extract",
        tracer_name="extractor",
        attr_from_args=lambda self, url, featured_image_url=None: {"entry.url": url},
    )
    async def extract_result(self, url: str, featured_image_url: Optional[str] = None) -> Result[ExtractedContent]:
        result, attempts = await attempt_with_policy(
            lambda: self.extract_once(url, featured_image_url=featured_image_url),
            self.retry_policy,
            label=f"extract {url}",
        )
        if result.ok:
            logger.info(f"Extracted {result.value.word_count} words from {url} (attempts={attempts})")
        else:
            logger.warning(f"Extraction unavailable for {url} after {attempts} attempt(s): {result.error}")
        return result

    async def extract_once(self, url: str, featured_image_url: Optional[str] = None) -> Result[ExtractedContent]:
        """A single fetch-and-extract attempt."""
        if not validate_url(url):
            return Result.failure(ErrorCode.INVALID_URL, f"Invalid article URL: {url!r}")

        if self.rate_limiter:
            await self.rate_limiter.acquire_for_url(url)

        try:
            async with self.session.get(
                url,
                headers={
                    'User-Agent': config.BROWSER_USER_AGENT,
                    'Accept': PAGE_ACCEPT,
                    'Accept-Language': PAGE_ACCEPT_LANGUAGE,
                },
                timeout=ClientTimeout(total=config.PAGE_FETCH_TIMEOUT),
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                if response.status != HTTP_OK:
                    return Result.failure(
                        error_code_for_status(response.status),
                        f"HTTP {response.status} fetching {url}",
                        status=response.status,
                    )
                try:
                    html = await response.text()
                except UnicodeDecodeError:
                    html = (await response.read()).decode('utf-8', errors='replace')
        except (TimeoutError, ClientError, OSError) as e:
            return failure_from_exception(e, url)

        parsed = await self.run_in_executor(self._parse_with_readability, html, url)
        if not parsed:
            return Result.failure(ErrorCode.PARSE_ERROR, f"Could not parse HTML from {url}")

        content = sanitize_html(parsed['content'], base_url=url)
        content = remove_duplicate_featured_image(content, featured_image_url, base_url=url)
        text = html_to_text(content)
        words = count_words(text)
        if not words:
            return Result.failure(ErrorCode.NO_CONTENT, f"No readable content found at {url}")

        return Result.success(ExtractedContent(
            content=content,
            text_content=text,
            excerpt=make_excerpt(parsed.get('description') or text),
            byline=parsed.get('byline'),
            title=parsed.get('title'),
            site_name=parsed.get('site_name'),
            word_count=words,
            reading_time=reading_time(words),
            length=len(text),
        ))

    def _parse_with_readability(self, html_content: str, url: str) -> Optional[Dict[str, Optional[str]]]:
        """Run readability and collect page metadata (runs in executor)."""
        if not html_content or not html_content.strip():
            return None
        try:
            document = Document(html_content, url=url)
            content = document.summary(html_partial=True)
            title = document.short_title()
        except (ValueError, TypeError, RuntimeError, LxmlError) as e:
            logger.error(f"Error in readability parsing for {url}: {e}")
            return None

        soup = BeautifulSoup(html_content, 'html.parser')
        byline = _meta_content(
            soup,
            {'name': 'author'},
            {'property': 'article:author'},
            {'name': 'twitter:creator'},
        )
        if not byline:
            node = soup.find(attrs={'rel': 'author'}) or soup.find(class_=re.compile(r'\b(byline|author)\b', re.I))
            if node is not None:
                byline = node.get_text(" ", strip=True) or None

        return {
            'content': content,
            'title': title or None,
            'byline': byline[:200] if byline else None,
            'site_name': _meta_content(soup, {'property': 'og:site_name'}),
            'description': _meta_content(soup, {'name': 'description'}, {'property': 'og:description'}),
        }

    async def close(self) -> None:
        if self._owns_executor and self.executor:
            self.executor.shutdown(wait=False)
