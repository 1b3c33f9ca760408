#!/usr/bin/env python3
"""
Dedup/reconciliation of freshly fetched entries against stored ones.

Entries are keyed by (source_id, url). A new URL is inserted; a known URL has
its mutable fields overwritten with the fresh values (last write wins, no
field-level merge). Nothing is ever deleted here: an item dropping out of the
upstream feed says nothing about whether the content still exists.
"""

from dataclasses import dataclass
from time import time
from typing import Iterable, List, Optional

from config import get_logger
from entities import ContentType, Entry, FeedEntry
from models import DatabaseQueue
from telemetry import get_tracer, trace_span

logger = get_logger("reconciler")
_tracer = get_tracer("reconciler")


@dataclass(frozen=True)
class SyncWindow:
    """Which entries a sync pass looks at.

    ``hours=None`` means full history. Entries with no publish date fall
    inside every window; there is no way to prove they are old.
    """

    hours: Optional[int] = None

    @classmethod
    def recent(cls, hours: int) -> "SyncWindow":
        if hours <= 0:
            raise ValueError("recent window must be at least one hour")
        return cls(hours=hours)

    @classmethod
    def full(cls) -> "SyncWindow":
        return cls(hours=None)

    @property
    def is_full(self) -> bool:
        return self.hours is None

    def cutoff(self, now: Optional[int] = None) -> Optional[int]:
        if self.hours is None:
            return None
        return int(now if now is not None else time()) - self.hours * 3600

    def contains(self, published_at: Optional[int], now: Optional[int] = None) -> bool:
        cutoff = self.cutoff(now)
        if cutoff is None or published_at is None:
            return True
        return published_at >= cutoff

    def describe(self) -> str:
        return "full history" if self.is_full else f"last {self.hours}h"


@dataclass
class ReconcileResult:
    added: int = 0
    updated: int = 0
    skipped: int = 0


def select_entries(entries: Iterable[FeedEntry], window: SyncWindow,
                   limit: Optional[int] = None, now: Optional[int] = None) -> List[FeedEntry]:
    """Apply the window, drop repeated URLs and keep the newest ``limit`` entries.

    Undated entries sort after dated ones.
    """
    seen = set()
    selected: List[FeedEntry] = []
    for entry in entries:
        if not entry.url or entry.url in seen:
            continue
        if not window.contains(entry.published_at, now):
            continue
        seen.add(entry.url)
        selected.append(entry)

    selected.sort(key=lambda e: (e.published_at is None, -(e.published_at or 0)))
    if limit is not None:
        selected = selected[:limit]
    return selected


def build_entry(source_id: str, fresh: FeedEntry, content_type: ContentType) -> Entry:
    """Map a fetched entry onto the storage record."""
    return Entry(
        id="",
        source_id=source_id,
        content_type=content_type,
        url=fresh.url,
        title=fresh.title,
        content=fresh.content,
        text_content=fresh.text_content,
        excerpt=fresh.excerpt,
        author=fresh.author,
        published_at=fresh.published_at,
        image_url=fresh.media.image_url,
        media_url=fresh.media.media_url,
        media_type=fresh.media.media_type,
        duration=fresh.media.duration,
        word_count=fresh.word_count,
        reading_time=fresh.reading_time,
    )


class Reconciler:
    """Insert-or-update decisions for one source at a time."""

    def __init__(self, db: DatabaseQueue) -> None:
        self.db = db

    @trace_span(
        "reconcile",
        tracer_name="reconciler",
        attr_from_args=lambda self, source_id, fresh_entries, window, content_type=ContentType.ARTICLE: {
            "source.id": source_id,
            "entries.fresh": len(fresh_entries),
            "sync.window": window.describe(),
        },
    )
    async def reconcile(self, source_id: str, fresh_entries: List[FeedEntry], window: SyncWindow,
                        content_type: ContentType = ContentType.ARTICLE) -> ReconcileResult:
        """Upsert every fresh entry inside ``window``.

        Storage failures propagate as StorageError.
        """
        result = ReconcileResult()
        in_window = select_entries(fresh_entries, window)
        result.skipped = len(fresh_entries) - len(in_window)

        for fresh in in_window:
            existing = await self.db.execute('get_entry_by_url', source_id=source_id, url=fresh.url)
            record = build_entry(source_id, fresh, content_type)
            if existing:
                record.id = existing.id
                record.content_type = existing.content_type
            _, created = await self.db.execute('upsert_entry', entry=record)
            if created:
                result.added += 1
            else:
                result.updated += 1

        logger.info(
            "Reconciled source %s (%s): %d added, %d updated, %d skipped",
            source_id, window.describe(), result.added, result.updated, result.skipped,
        )
        return result
