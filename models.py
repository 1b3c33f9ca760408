#!/usr/bin/env python3
"""
Database models and operations for the feed aggregator.

All SQLite access goes through ``DatabaseQueue``: callers submit named
operations with ``await db.execute('op_name', **params)`` and a single worker
coroutine runs them one at a time against its own connection. Operations
that fail surface as ``errors.StorageError``.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Any, Dict, List, Optional, Tuple

from config import config, get_logger
from entities import ContentType, Entry, InteractionState, Source, SourceType
from errors import StorageError
from telemetry import get_tracer, trace_span

logger = get_logger("models")
_tracer = get_tracer("db")

_ENTRY_MUTABLE_FIELDS = (
    "title",
    "content",
    "text_content",
    "excerpt",
    "author",
    "published_at",
    "image_url",
    "media_url",
    "media_type",
    "duration",
    "word_count",
    "reading_time",
)


def initialize_database(conn) -> None:
    """Apply the schema file. Statements are idempotent so this runs on every start."""
    cursor = conn.cursor()
    try:
        cursor.executescript(_read_schema_file())
        conn.commit()
        logger.info("Database schema ready")
    except Error as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")

    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


def _row_to_source(row) -> Source:
    return Source(
        id=row['id'],
        url=row['url'],
        source_type=SourceType(row['source_type']),
        title=row['title'],
        description=row['description'],
        image_url=row['image_url'],
        is_active=bool(row['is_active']),
        last_fetched_at=row['last_fetched_at'],
        fetch_error=row['fetch_error'],
        fetch_count=row['fetch_count'],
        created_at=row['created_at'],
        deleted_at=row['deleted_at'],
    )


def _row_to_entry(row) -> Entry:
    values = {key: row[key] for key in row.keys()}
    values['content_type'] = ContentType(values['content_type'])
    return Entry(**values)


def _row_to_interaction(row) -> InteractionState:
    return InteractionState(
        user_id=row['user_id'],
        entry_id=row['entry_id'],
        is_read=bool(row['is_read']),
        is_favorite=bool(row['is_favorite']),
        is_archived=bool(row['is_archived']),
        reading_progress=row['reading_progress'],
        time_spent=row['time_spent'],
        read_at=row['read_at'],
        favorited_at=row['favorited_at'],
        archived_at=row['archived_at'],
    )


class DatabaseQueue:
    """A queue for database operations to keep SQLite access single-threaded."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue: Queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the connection, apply the schema and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise StorageError(f"Cannot open database at {self.db_path}: {e}", operation="start") from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting so they see a failure instead of hanging
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": "database worker stopped"})
            event.set()
        self.events.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    if self.conn:
                        self.conn.rollback()
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation, raising StorageError when it fails."""
        if not self.running:
            raise StorageError("Database worker is not running", operation=operation_name)

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, {"error": "no result recorded"})
            if "error" in result:
                raise StorageError(result["error"], operation=operation_name)
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Source management operations
    def create_source(self, url: str, source_type: str, title: str,
                      description: Optional[str] = None, image_url: Optional[str] = None) -> Source:
        """Create a source, or return the live source already registered for ``url``."""
        existing = self.get_source_by_url(url)
        if existing:
            return existing

        source_id = str(uuid4())
        now = int(time())
        self.conn.execute(
            """
            INSERT INTO sources (id, url, source_type, title, description, image_url, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (source_id, url, SourceType(source_type).value, title, description, image_url, now),
        )
        self.conn.commit()
        logger.info(f"Created {source_type} source {source_id} for {url}")
        return self.get_source(source_id)

    def get_source(self, source_id: str) -> Optional[Source]:
        row = self.conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
        return _row_to_source(row) if row else None

    def get_source_by_url(self, url: str) -> Optional[Source]:
        row = self.conn.execute(
            "SELECT * FROM sources WHERE url = ? AND deleted_at IS NULL", (url,)
        ).fetchone()
        return _row_to_source(row) if row else None

    def get_sources_for_user(self, user_id: str, active_only: bool = True) -> List[Source]:
        """Sources the user subscribes to, least recently fetched first."""
        query = """
            SELECT s.* FROM sources s
            JOIN subscriptions sub ON sub.source_id = s.id
            WHERE sub.user_id = ? AND s.deleted_at IS NULL
        """
        if active_only:
            query += " AND s.is_active = 1 AND sub.is_active = 1"
        query += " ORDER BY COALESCE(s.last_fetched_at, 0) ASC, s.created_at ASC"
        rows = self.conn.execute(query, (user_id,)).fetchall()
        return [_row_to_source(row) for row in rows]

    def update_source_health(self, source_id: str, last_fetched_at: int, fetch_error: Optional[str]) -> bool:
        """Record a sync attempt; a successful one also bumps fetch_count."""
        if fetch_error is None:
            cursor = self.conn.execute(
                """
                UPDATE sources
                SET last_fetched_at = ?, fetch_error = NULL, fetch_count = fetch_count + 1
                WHERE id = ?
                """,
                (last_fetched_at, source_id),
            )
        else:
            cursor = self.conn.execute(
                "UPDATE sources SET last_fetched_at = ?, fetch_error = ? WHERE id = ?",
                (last_fetched_at, fetch_error[:1000], source_id),
            )
        self.conn.commit()
        return cursor.rowcount > 0

    # Subscription operations
    def subscribe_user(self, user_id: str, source_id: str) -> bool:
        """Subscribe a user to a source. Returns True when the subscription is new."""
        already = self.is_subscribed(user_id, source_id)
        self.conn.execute(
            """
            INSERT INTO subscriptions (user_id, source_id, is_active, created_at)
            VALUES (?, ?, 1, ?)
            ON CONFLICT(user_id, source_id) DO UPDATE SET is_active = 1
            """,
            (user_id, source_id, int(time())),
        )
        self.conn.commit()
        return not already

    def is_subscribed(self, user_id: str, source_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM subscriptions WHERE user_id = ? AND source_id = ?", (user_id, source_id)
        ).fetchone()
        return row is not None

    def set_subscription_active(self, user_id: str, source_id: str, is_active: bool) -> bool:
        cursor = self.conn.execute(
            "UPDATE subscriptions SET is_active = ? WHERE user_id = ? AND source_id = ?",
            (1 if is_active else 0, user_id, source_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def unsubscribe_user(self, user_id: str, source_id: str) -> Dict[str, bool]:
        """Drop a subscription and soft-delete the source once nobody follows it."""
        cursor = self.conn.execute(
            "DELETE FROM subscriptions WHERE user_id = ? AND source_id = ?", (user_id, source_id)
        )
        removed = cursor.rowcount > 0
        remaining = self.conn.execute(
            "SELECT COUNT(*) FROM subscriptions WHERE source_id = ?", (source_id,)
        ).fetchone()[0]
        soft_deleted = False
        if removed and remaining == 0:
            self.conn.execute(
                "UPDATE sources SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (int(time()), source_id),
            )
            soft_deleted = True
        self.conn.commit()
        return {"removed": removed, "source_deleted": soft_deleted}

    def sweep_deleted_sources(self, older_than_seconds: int = 0) -> int:
        """Hard-delete soft-deleted sources without subscribers; entries cascade."""
        cutoff = int(time()) - max(0, older_than_seconds)
        cursor = self.conn.execute(
            """
            DELETE FROM sources
            WHERE deleted_at IS NOT NULL AND deleted_at <= ?
              AND id NOT IN (SELECT source_id FROM subscriptions)
            """,
            (cutoff,),
        )
        self.conn.commit()
        if cursor.rowcount:
            logger.info(f"Swept {cursor.rowcount} deleted sources")
        return cursor.rowcount

    # Entry operations
    def get_entry_by_url(self, source_id: str, url: str) -> Optional[Entry]:
        row = self.conn.execute(
            "SELECT * FROM entries WHERE source_id = ? AND url = ?", (source_id, url)
        ).fetchone()
        return _row_to_entry(row) if row else None

    def upsert_entry(self, entry: Entry) -> Tuple[Entry, bool]:
        """Insert an entry or overwrite the mutable fields of the stored one.

        The (source_id, url) conflict target keeps a single row per pair;
        id, content_type and created_at of an existing row are preserved.

        Returns:
            The stored entry and whether it was newly created.
        """
        existed = self.conn.execute(
            "SELECT 1 FROM entries WHERE source_id = ? AND url = ?", (entry.source_id, entry.url)
        ).fetchone() is not None

        now = int(time())
        columns = ("id", "source_id", "content_type", "url") + _ENTRY_MUTABLE_FIELDS + ("created_at", "updated_at")
        # An existing row keeps its id; the placeholder id never reaches storage
        values = [
            str(uuid4()) if existed or not entry.id else entry.id,
            entry.source_id,
            ContentType(entry.content_type).value,
            entry.url,
        ]
        values.extend(getattr(entry, name) for name in _ENTRY_MUTABLE_FIELDS)
        values.extend([now, now])

        assignments = ", ".join(f"{name} = excluded.{name}" for name in _ENTRY_MUTABLE_FIELDS + ("updated_at",))
        self.conn.execute(
            f"""
            INSERT INTO entries ({", ".join(columns)})
            VALUES ({", ".join("?" for _ in columns)})
            ON CONFLICT(source_id, url) DO UPDATE SET {assignments}
            """,
            values,
        )
        self.conn.commit()
        return self.get_entry_by_url(entry.source_id, entry.url), not existed

    def get_content(self, entry_id: str) -> Optional[Entry]:
        """Keyed lookup; the returned entry carries its content_type tag."""
        row = self.conn.execute("SELECT * FROM entries WHERE id = ?", (entry_id,)).fetchone()
        return _row_to_entry(row) if row else None

    def list_entries(self, source_id: Optional[str] = None, user_id: Optional[str] = None,
                     content_type: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[Entry]:
        """Newest first; entries without a publish date sort last."""
        clauses = []
        params: List[Any] = []
        query = "SELECT e.* FROM entries e"
        if user_id:
            query += " JOIN subscriptions sub ON sub.source_id = e.source_id AND sub.user_id = ?"
            params.append(user_id)
        if source_id:
            clauses.append("e.source_id = ?")
            params.append(source_id)
        if content_type:
            clauses.append("e.content_type = ?")
            params.append(ContentType(content_type).value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY e.published_at IS NULL, e.published_at DESC, e.created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [_row_to_entry(row) for row in self.conn.execute(query, params).fetchall()]

    def count_entries(self, source_id: Optional[str] = None) -> int:
        if source_id:
            row = self.conn.execute("SELECT COUNT(*) FROM entries WHERE source_id = ?", (source_id,)).fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM entries").fetchone()
        return row[0]

    # Per-user interaction state
    def get_interaction(self, user_id: str, entry_id: str) -> Optional[InteractionState]:
        row = self.conn.execute(
            "SELECT * FROM interactions WHERE user_id = ? AND entry_id = ?", (user_id, entry_id)
        ).fetchone()
        return _row_to_interaction(row) if row else None

    def record_interaction(self, user_id: str, entry_id: str,
                           is_read: Optional[bool] = None,
                           is_favorite: Optional[bool] = None,
                           is_archived: Optional[bool] = None,
                           reading_progress: Optional[int] = None,
                           time_spent_delta: int = 0) -> Optional[InteractionState]:
        """Create the interaction row on first use and apply the given changes.

        Returns None when the entry does not exist.
        """
        if self.get_content(entry_id) is None:
            return None

        self.conn.execute(
            "INSERT OR IGNORE INTO interactions (user_id, entry_id) VALUES (?, ?)", (user_id, entry_id)
        )
        state = self.get_interaction(user_id, entry_id)
        now = int(time())

        if is_read is not None:
            state.is_read = is_read
            state.read_at = now if is_read else None
        if is_favorite is not None:
            state.is_favorite = is_favorite
            state.favorited_at = now if is_favorite else None
        if is_archived is not None:
            state.is_archived = is_archived
            state.archived_at = now if is_archived else None
        if reading_progress is not None:
            state.reading_progress = max(0, min(100, int(reading_progress)))
        if time_spent_delta:
            state.time_spent = max(0, state.time_spent + int(time_spent_delta))

        self.conn.execute(
            """
            UPDATE interactions
            SET is_read = ?, is_favorite = ?, is_archived = ?, reading_progress = ?,
                time_spent = ?, read_at = ?, favorited_at = ?, archived_at = ?
            WHERE user_id = ? AND entry_id = ?
            """,
            (
                int(state.is_read), int(state.is_favorite), int(state.is_archived),
                state.reading_progress, state.time_spent,
                state.read_at, state.favorited_at, state.archived_at,
                user_id, entry_id,
            ),
        )
        self.conn.commit()
        return state

    # Reporting
    def sync_status(self, user_id: str, recent_minutes: int = 30) -> Dict[str, Any]:
        """Summarize source health for one user's active subscriptions."""
        cutoff = int(time()) - recent_minutes * 60
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN s.last_fetched_at >= ? THEN 1 ELSE 0 END) AS recent,
                   SUM(CASE WHEN s.fetch_error IS NOT NULL THEN 1 ELSE 0 END) AS with_errors,
                   MAX(s.last_fetched_at) AS last_fetched
            FROM sources s
            JOIN subscriptions sub ON sub.source_id = s.id
            WHERE sub.user_id = ? AND sub.is_active = 1 AND s.is_active = 1 AND s.deleted_at IS NULL
            """,
            (cutoff, user_id),
        ).fetchone()
        return {
            "totalSources": row['total'] or 0,
            "recentlyFetched": row['recent'] or 0,
            "withErrors": row['with_errors'] or 0,
            "lastFetchedAt": row['last_fetched'],
        }
