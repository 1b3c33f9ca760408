#!/usr/bin/env python3
"""
Sync orchestration.

Drives one source, one user's sources, or an arbitrary batch through
fetch -> (extract) -> reconcile, records per-source health and aggregates the
outcome. Each source runs in its own task behind a fixed-size semaphore and
returns its own ``SyncResult``; totals are computed only after every task has
finished. Only ``StorageError`` escapes a batch.
"""

from asyncio import Semaphore, create_task, gather
from dataclasses import dataclass, field
from enum import Enum
from time import time
from typing import Any, Dict, List, Optional

from config import config, get_logger
from entities import ContentType, FeedEntry, Source, SourceType, content_type_for
from errors import ErrorCode, StorageError
from extractor import ContentExtractor
from fetcher import FeedFetcher
from models import DatabaseQueue
from reconciler import Reconciler, SyncWindow, select_entries
from telemetry import get_tracer, trace_span
from utils import format_duration

logger = get_logger("sync")
_tracer = get_tracer("sync")

FEED_BACKED_TYPES = {
    SourceType.FEED,
    SourceType.PODCAST,
    SourceType.WEBSITE,
    SourceType.YOUTUBE_CHANNEL,
}


class SyncState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    RECONCILING = "reconciling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class SyncResult:
    source_id: str
    success: bool = False
    entries_added: int = 0
    entries_updated: int = 0
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    state: SyncState = SyncState.PENDING

    def to_response(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "articlesAdded": self.entries_added,
            "articlesUpdated": self.entries_updated,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class BatchSyncResult:
    total_sources: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    total_entries_added: int = 0
    total_entries_updated: int = 0
    deferred: int = 0
    results: List[SyncResult] = field(default_factory=list)

    @classmethod
    def merge(cls, results: List[SyncResult], deferred: int = 0) -> "BatchSyncResult":
        """Combine finished per-source results into batch totals."""
        return cls(
            total_sources=len(results),
            successful_syncs=sum(1 for r in results if r.success),
            failed_syncs=sum(1 for r in results if not r.success),
            total_entries_added=sum(r.entries_added for r in results),
            total_entries_updated=sum(r.entries_updated for r in results),
            deferred=deferred,
            results=list(results),
        )

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "totalSources": self.total_sources,
            "successfulSyncs": self.successful_syncs,
            "failedSyncs": self.failed_syncs,
            "totalArticlesAdded": self.total_entries_added,
            "totalArticlesUpdated": self.total_entries_updated,
            "deferredSources": self.deferred,
        }


class SyncOrchestrator:
    """Runs sync passes over sources with bounded parallelism."""

    def __init__(self, db: DatabaseQueue, fetcher: FeedFetcher,
                 extractor: Optional[ContentExtractor] = None,
                 reconciler: Optional[Reconciler] = None,
                 concurrency: Optional[int] = None,
                 batch_limit: Optional[int] = None) -> None:
        self.db = db
        self.fetcher = fetcher
        self.extractor = extractor
        self.reconciler = reconciler or Reconciler(db)
        self.concurrency = concurrency or config.SYNC_CONCURRENCY
        self.batch_limit = batch_limit or config.SYNC_BATCH_LIMIT

    def _transition(self, result: SyncResult, state: SyncState) -> None:
        logger.debug("Source %s: %s -> %s", result.source_id, result.state.value, state.value)
        result.state = state

    @trace_span(
        "sync_source",
        tracer_name="sync",
        attr_from_args=lambda self, source, window: {
            "source.id": source.id,
            "source.type": source.source_type.value,
            "sync.window": window.describe(),
        },
    )
    async def sync_source(self, source: Source, window: SyncWindow) -> SyncResult:
        """Sync one source. Failures become a failed SyncResult; StorageError propagates."""
        result = SyncResult(source_id=source.id)
        started = time()
        try:
            await self._run_pipeline(source, window, result)
        except StorageError:
            raise
        except Exception as e:
            # Anything unexpected is this source's problem, never its siblings'
            logger.exception(f"Unexpected error syncing source {source.id} ({source.url})")
            result.success = False
            result.error = f"Unexpected error: {e}"
            self._transition(result, SyncState.FAILED)

        await self.db.execute(
            'update_source_health',
            source_id=source.id,
            last_fetched_at=int(time()),
            fetch_error=None if result.success else (result.error or "Sync failed"),
        )
        logger.info(
            "Source %s %s in %s: %d added, %d updated%s",
            source.id, result.state.value, format_duration(time() - started),
            result.entries_added, result.entries_updated,
            f" ({result.error})" if result.error else "",
        )
        return result

    async def _run_pipeline(self, source: Source, window: SyncWindow, result: SyncResult) -> None:
        if source.source_type not in FEED_BACKED_TYPES:
            result.error = f"Unsupported source type: {source.source_type.value}"
            result.error_code = ErrorCode.UNSUPPORTED_TYPE
            self._transition(result, SyncState.FAILED)
            return

        self._transition(result, SyncState.FETCHING)
        fetched = await self.fetcher.fetch_feed_result(source.url)
        if not fetched.ok:
            result.error = f"Failed to fetch feed: {fetched.error}"
            result.error_code = fetched.error_code
            self._transition(result, SyncState.FAILED)
            return

        content_type = content_type_for(source.source_type)
        entries = select_entries(fetched.value.entries, window, limit=config.MAX_ENTRIES_PER_SOURCE)

        if self._should_extract(content_type):
            self._transition(result, SyncState.EXTRACTING)
            await self._enrich_entries(entries)

        self._transition(result, SyncState.RECONCILING)
        outcome = await self.reconciler.reconcile(source.id, entries, window, content_type=content_type)
        result.entries_added = outcome.added
        result.entries_updated = outcome.updated
        result.success = True
        self._transition(result, SyncState.SUCCEEDED)

    def _should_extract(self, content_type: ContentType) -> bool:
        return bool(self.extractor) and config.EXTRACT_INLINE and content_type == ContentType.ARTICLE

    async def _enrich_entries(self, entries: List[FeedEntry]) -> None:
        """Fill in full bodies for entries whose feed content is too thin."""
        thin = [e for e in entries if (e.word_count or 0) < config.EXTRACT_MIN_WORDS]
        if not thin:
            return

        semaphore = Semaphore(config.EXTRACT_CONCURRENCY)

        async def enrich(entry: FeedEntry) -> None:
            async with semaphore:
                extracted = await self.extractor.extract(entry.url, featured_image_url=entry.media.image_url)
            if extracted is None:
                # Keep the feed-supplied fields
                return
            entry.content = extracted.content
            entry.text_content = extracted.text_content
            entry.word_count = extracted.word_count
            entry.reading_time = extracted.reading_time
            if not entry.excerpt:
                entry.excerpt = extracted.excerpt
            if not entry.author and extracted.byline:
                entry.author = extracted.byline

        await gather(*(enrich(e) for e in thin))

    @trace_span(
        "sync_batch",
        tracer_name="sync",
        attr_from_args=lambda self, sources, window: {
            "sync.sources": len(sources),
            "sync.window": window.describe(),
        },
    )
    async def sync_sources(self, sources: List[Source], window: SyncWindow) -> BatchSyncResult:
        """Sync up to ``batch_limit`` sources independently; the rest are deferred."""
        batch = sources[:self.batch_limit]
        deferred = len(sources) - len(batch)
        if deferred:
            logger.info(f"Batch limit {self.batch_limit} reached; deferring {deferred} sources")

        semaphore = Semaphore(self.concurrency)

        async def sync_with_semaphore(source: Source) -> SyncResult:
            async with semaphore:
                return await self.sync_source(source, window)

        tasks = [create_task(sync_with_semaphore(source)) for source in batch]
        outcomes = await gather(*tasks, return_exceptions=True)

        results: List[SyncResult] = []
        for source, outcome in zip(batch, outcomes):
            if isinstance(outcome, StorageError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error(f"Sync task for source {source.id} crashed: {outcome}")
                outcome = SyncResult(source_id=source.id, error=str(outcome), state=SyncState.FAILED)
            results.append(outcome)

        batch_result = BatchSyncResult.merge(results, deferred=deferred)
        logger.info(
            "Batch sync (%s): %d sources, %d succeeded, %d failed, %d added, %d updated, %d deferred",
            window.describe(), batch_result.total_sources, batch_result.successful_syncs,
            batch_result.failed_syncs, batch_result.total_entries_added,
            batch_result.total_entries_updated, batch_result.deferred,
        )
        return batch_result

    async def sync_user(self, user_id: str, window: SyncWindow) -> BatchSyncResult:
        """Sync every active source the user subscribes to."""
        sources = await self.db.execute('get_sources_for_user', user_id=user_id, active_only=True)
        logger.info(f"Syncing {len(sources)} sources for user {user_id} ({window.describe()})")
        return await self.sync_sources(sources, window)

    async def sync_one(self, user_id: str, source_id: str, window: SyncWindow) -> Optional[SyncResult]:
        """Sync a single source the user subscribes to; None when it is not theirs."""
        if not await self.db.execute('is_subscribed', user_id=user_id, source_id=source_id):
            return None
        source = await self.db.execute('get_source', source_id=source_id)
        if source is None or source.deleted_at is not None:
            return None
        return await self.sync_source(source, window)
