#!/usr/bin/env python3
"""
Domain records passed between the classifier, fetcher, extractor,
reconciler and sync orchestrator.

Rows coming out of SQLite are converted into these dataclasses by
``models.DatabaseQueue`` so the pipeline never deals with raw tuples.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


class SourceType(str, Enum):
    FEED = "feed"
    YOUTUBE_CHANNEL = "youtube-channel"
    YOUTUBE_VIDEO = "youtube-video"
    PODCAST = "podcast"
    TWITTER = "twitter"
    INSTAGRAM = "instagram"
    TIKTOK = "tiktok"
    WEBSITE = "website"


class ContentType(str, Enum):
    """Tag stored on every entry row so lookups never probe by kind."""

    ARTICLE = "article"
    VIDEO = "video"
    PODCAST = "podcast"
    SOCIAL = "social"


_CONTENT_TYPE_BY_SOURCE = {
    SourceType.FEED: ContentType.ARTICLE,
    SourceType.WEBSITE: ContentType.ARTICLE,
    SourceType.YOUTUBE_CHANNEL: ContentType.VIDEO,
    SourceType.YOUTUBE_VIDEO: ContentType.VIDEO,
    SourceType.PODCAST: ContentType.PODCAST,
    SourceType.TWITTER: ContentType.SOCIAL,
    SourceType.INSTAGRAM: ContentType.SOCIAL,
    SourceType.TIKTOK: ContentType.SOCIAL,
}


def content_type_for(source_type: "SourceType | str") -> ContentType:
    """Return the entry content tag for a source type."""
    return _CONTENT_TYPE_BY_SOURCE.get(SourceType(source_type), ContentType.ARTICLE)


@dataclass
class Source:
    id: str
    url: str
    source_type: SourceType
    title: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    is_active: bool = True
    last_fetched_at: Optional[int] = None
    fetch_error: Optional[str] = None
    fetch_count: int = 0
    created_at: Optional[int] = None
    deleted_at: Optional[int] = None


@dataclass
class MediaInfo:
    """Media reference attached to a feed entry."""

    image_url: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None  # "audio" or "video"
    duration: Optional[int] = None


@dataclass
class FeedEntry:
    """One normalized entry from a fetched feed, before reconciliation."""

    title: str
    url: str
    content: Optional[str] = None
    excerpt: Optional[str] = None
    author: Optional[str] = None
    published_at: Optional[int] = None
    media: MediaInfo = field(default_factory=MediaInfo)
    text_content: Optional[str] = None
    word_count: Optional[int] = None
    reading_time: Optional[int] = None


@dataclass
class FeedDocument:
    url: str
    title: Optional[str] = None
    description: Optional[str] = None
    link: Optional[str] = None
    image_url: Optional[str] = None
    entries: List[FeedEntry] = field(default_factory=list)


@dataclass
class ExtractedContent:
    """Readable article body recovered from a web page."""

    content: str
    text_content: str
    excerpt: Optional[str] = None
    byline: Optional[str] = None
    title: Optional[str] = None
    site_name: Optional[str] = None
    word_count: int = 0
    reading_time: Optional[int] = None
    length: int = 0


@dataclass
class Entry:
    """A stored content item."""

    id: str
    source_id: str
    content_type: ContentType
    url: str
    title: str
    content: Optional[str] = None
    text_content: Optional[str] = None
    excerpt: Optional[str] = None
    author: Optional[str] = None
    published_at: Optional[int] = None
    image_url: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    duration: Optional[int] = None
    word_count: Optional[int] = None
    reading_time: Optional[int] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None


@dataclass
class InteractionState:
    user_id: str
    entry_id: str
    is_read: bool = False
    is_favorite: bool = False
    is_archived: bool = False
    reading_progress: int = 0
    time_spent: int = 0
    read_at: Optional[int] = None
    favorited_at: Optional[int] = None
    archived_at: Optional[int] = None


@dataclass
class Classification:
    """What the URL classifier learned about a raw URL."""

    url: str
    detected: bool = False
    source_type: Optional[SourceType] = None
    suggested_title: Optional[str] = None
    suggested_feed_url: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    platform: Optional[str] = None
    was_redirected: bool = False
    original_handle: Optional[str] = None
    final_handle: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source_type"] = self.source_type.value if self.source_type else None
        return data
