#!/usr/bin/env python3
"""
HTTP trigger endpoints and shared service wiring.

``Services`` owns the long-lived resources (database worker, HTTP session,
per-host rate limiter and thread pool) and hands them to the classifier,
fetcher, extractor and orchestrator. Both the CLI and the aiohttp app use it.
"""

from asyncio import Event
from concurrent.futures import ThreadPoolExecutor
from json import JSONDecodeError
from typing import Optional

from aiohttp import ClientSession, web

from classifier import URLClassifier
from config import config, get_logger
from errors import StorageError
from extractor import ContentExtractor
from fetcher import FeedFetcher
from models import DatabaseQueue
from reconciler import SyncWindow
from sync import SyncOrchestrator
from utils import RateLimiter

logger = get_logger("api")

USER_HEADER = "X-User-Id"

DB_KEY = web.AppKey("db", DatabaseQueue)
ORCHESTRATOR_KEY = web.AppKey("orchestrator", SyncOrchestrator)
CLASSIFIER_KEY = web.AppKey("classifier", URLClassifier)


class Services:
    """Process-wide resources, created once and shared by every component."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.session: Optional[ClientSession] = None
        self.rate_limiter = RateLimiter.from_config()
        self.executor: Optional[ThreadPoolExecutor] = None
        self.classifier: Optional[URLClassifier] = None
        self.fetcher: Optional[FeedFetcher] = None
        self.extractor: Optional[ContentExtractor] = None
        self.orchestrator: Optional[SyncOrchestrator] = None

    async def start(self) -> "Services":
        await self.db.start()
        self.session = ClientSession()
        self.executor = ThreadPoolExecutor(max_workers=max(config.SYNC_CONCURRENCY, config.EXTRACT_CONCURRENCY))
        self.classifier = URLClassifier(self.session, rate_limiter=self.rate_limiter)
        self.fetcher = FeedFetcher(self.session, rate_limiter=self.rate_limiter, executor=self.executor)
        self.extractor = ContentExtractor(self.session, rate_limiter=self.rate_limiter, executor=self.executor)
        self.orchestrator = SyncOrchestrator(self.db, self.fetcher, self.extractor)
        return self

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None
        if self.executor:
            self.executor.shutdown(wait=False)
            self.executor = None
        await self.db.stop()

    async def __aenter__(self) -> "Services":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


async def _json_body(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (JSONDecodeError, UnicodeDecodeError) as e:
        raise web.HTTPBadRequest(text=f"Invalid JSON body: {e}")
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return body


async def handle_sync(request: web.Request) -> web.Response:
    user_id = request.headers.get(USER_HEADER)
    if not user_id:
        return _error(401, "Unauthorized")

    body = await _json_body(request)
    window = SyncWindow.full() if body.get("full") else SyncWindow.recent(config.RECENT_WINDOW_HOURS)
    orchestrator: SyncOrchestrator = request.app[ORCHESTRATOR_KEY]
    source_id = body.get("sourceId")

    try:
        if source_id:
            result = await orchestrator.sync_one(user_id, source_id, window)
            if result is None:
                return _error(404, "Source not found")
            return web.json_response(result.to_response())

        batch = await orchestrator.sync_user(user_id, window)
        return web.json_response(batch.to_response())
    except StorageError as e:
        logger.error(f"Sync request for user {user_id} failed on storage: {e}")
        return _error(500, "Failed to sync sources")


async def handle_sync_status(request: web.Request) -> web.Response:
    user_id = request.headers.get(USER_HEADER)
    if not user_id:
        return _error(401, "Unauthorized")

    db: DatabaseQueue = request.app[DB_KEY]
    try:
        status = await db.execute('sync_status', user_id=user_id,
                                  recent_minutes=config.STATUS_RECENT_MINUTES)
    except StorageError as e:
        logger.error(f"Status request for user {user_id} failed: {e}")
        return _error(500, "Failed to get sync status")
    return web.json_response(status)


async def handle_classify(request: web.Request) -> web.Response:
    body = await _json_body(request)
    url = (body.get("url") or "").strip()
    if not url:
        return _error(400, "Missing url")
    classifier: URLClassifier = request.app[CLASSIFIER_KEY]
    result = await classifier.classify(url)
    return web.json_response(result.to_dict())


def create_app(db: DatabaseQueue, orchestrator: SyncOrchestrator, classifier: URLClassifier) -> web.Application:
    app = web.Application()
    app[DB_KEY] = db
    app[ORCHESTRATOR_KEY] = orchestrator
    app[CLASSIFIER_KEY] = classifier
    app.router.add_post("/api/sync", handle_sync)
    app.router.add_get("/api/sync/status", handle_sync_status)
    app.router.add_post("/api/classify", handle_classify)
    return app


async def serve(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the trigger endpoints until cancelled."""
    host = host or config.API_HOST
    port = port or config.API_PORT
    async with Services() as services:
        app = create_app(services.db, services.orchestrator, services.classifier)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        logger.info(f"Listening on http://{host}:{port}")
        try:
            await Event().wait()
        finally:
            await runner.cleanup()
