#!/usr/bin/env python3
"""
Data types and database operations for the feed synchronizer.

This module contains the record types passed between the sync stages and the
DatabaseQueue, which serializes every SQLite operation through a single
worker coroutine so concurrent sync units never share a cursor.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger, MIN_SYNC_FREQUENCY, MAX_SYNC_FREQUENCY
from errors import DatabaseError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED)


class InsertOutcome(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    ERROR = "error"


@dataclass
class Source:
    id: int
    name: str
    url: str
    feed_url: Optional[str] = None
    is_active: bool = True
    sync_frequency: int = 30
    last_sync: Optional[int] = None
    last_error: Optional[str] = None
    category_id: Optional[int] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "Source":
        return cls(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            feed_url=row["feed_url"],
            is_active=bool(row["is_active"]),
            sync_frequency=row["sync_frequency"],
            last_sync=row["last_sync"],
            last_error=row["last_error"],
            category_id=row["category_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class ArticleDraft:
    """A normalized article that has not been persisted yet."""
    source_id: int
    title: str
    url: str
    content: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    excerpt: Optional[str] = None
    image_url: Optional[str] = None
    author: Optional[str] = None
    published_date: Optional[int] = None
    is_read: bool = False
    is_favorite: bool = False
    is_archived: bool = False


@dataclass
class Article:
    id: int
    source_id: int
    title: str
    url: str
    content: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    excerpt: Optional[str] = None
    image_url: Optional[str] = None
    author: Optional[str] = None
    published_date: Optional[int] = None
    is_read: bool = False
    is_favorite: bool = False
    is_archived: bool = False
    read_at: Optional[int] = None
    favorited_at: Optional[int] = None
    archived_at: Optional[int] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "Article":
        values = dict(row)
        for flag in ("is_read", "is_favorite", "is_archived"):
            values[flag] = bool(values[flag])
        return cls(**values)


@dataclass
class InsertResult:
    url: str
    outcome: InsertOutcome
    message: Optional[str] = None


@dataclass
class SyncResult:
    """Outcome of one source sync.

    `failed` is set when the feed itself could not be fetched; item-level
    problems only populate `errors`.
    """
    found: int = 0
    new: int = 0
    errors: List[str] = field(default_factory=list)
    failed: bool = False
    duplicates: int = 0

    @property
    def first_error(self) -> Optional[str]:
        return self.errors[0] if self.errors else None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncProgress:
    source_id: int
    source_name: str
    status: SyncStatus = SyncStatus.PENDING
    progress: int = 0
    articles_found: Optional[int] = None
    articles_new: Optional[int] = None
    error: Optional[str] = None
    updated_at: float = field(default_factory=time)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def validate_sync_frequency(sync_frequency: int) -> int:
    """Raise ValueError unless the frequency lies within the allowed bounds."""
    if not isinstance(sync_frequency, int) or isinstance(sync_frequency, bool):
        raise ValueError(f"sync_frequency must be an integer, got {sync_frequency!r}")
    if not MIN_SYNC_FREQUENCY <= sync_frequency <= MAX_SYNC_FREQUENCY:
        raise ValueError(
            f"sync_frequency must be between {MIN_SYNC_FREQUENCY} and {MAX_SYNC_FREQUENCY} minutes, got {sync_frequency}"
        )
    return sync_frequency


def initialize_database(conn) -> None:
    """Create the schema on a fresh database, or migrate an existing one."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='articles'")
        articles_table_exists = cursor.fetchone() is not None

        if not articles_table_exists:
            logger.info("Empty database; creating schema")
            cursor.executescript(_read_schema_file())
            logger.info("Schema created")
        else:
            logger.info("Existing database found; checking migrations")
            _run_migrations(conn)
    except Error as e:
        logger.error(f"Schema setup failed: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Bring an existing database up to the current schema."""
    cursor = conn.cursor()
    try:
        # Migration 1: databases written before URL uniqueness was enforced
        cursor.execute("SELECT name FROM sqlite_master WHERE type='index' AND name='idx_articles_url'")
        if cursor.fetchone() is None:
            logger.info("Creating unique index on articles.url")
            _create_url_index(cursor)
    finally:
        cursor.close()


def _create_url_index(cursor) -> int:
    """Create the unique URL index, collapsing legacy duplicates if they block it.

    Returns the number of duplicate rows removed.
    """
    try:
        cursor.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_articles_url ON articles(url)")
        return 0
    except IntegrityError:
        removed = _collapse_duplicate_urls(cursor)
        logger.warning(f"Removed {removed} duplicate articles blocking the unique URL index")
        cursor.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_articles_url ON articles(url)")
        return removed


def _collapse_duplicate_urls(cursor) -> int:
    """Delete all but the newest row (by created_at, then id) for every URL."""
    cursor.execute("""
        DELETE FROM articles
        WHERE id NOT IN (
            SELECT id FROM (
                SELECT id, ROW_NUMBER() OVER (
                    PARTITION BY url ORDER BY created_at DESC, id DESC
                ) AS rn
                FROM articles
            ) WHERE rn = 1
        )
    """)
    return cursor.rowcount


def _read_schema_file() -> str:
    """Return schema.sql after existence, permission and size checks."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Missing schema file: {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"Schema file is not readable: {schema_path}")

    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file {schema_path} is {file_size} bytes, over the {max_size} byte limit")

    with open(schema_path, 'r') as f:
        return f.read()


_ARTICLE_COLUMNS = (
    "source_id", "title", "url", "content", "summary", "description", "excerpt",
    "image_url", "author", "published_date", "is_read", "is_favorite", "is_archived",
)

# Columns the repair and content-refresh flows may rewrite in place
_UPDATABLE_ARTICLE_COLUMNS = {
    "title", "content", "summary", "description", "excerpt", "image_url", "author", "published_date",
}


class DatabaseQueue:
    """A queue for database operations to ensure sequential access.

    Operations are public methods of this class, invoked by name through
    `execute()`. sqlite3 errors surface as DatabaseError; validation errors
    (ValueError) propagate unchanged.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()

    async def start(self) -> None:
        """Start the database worker and wait for the schema to be ready."""
        if self.running:
            return

        self.running = True
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self.conn is None:
            # Worker failed to open the database; surface its exception
            await self.worker_task
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Cancel the worker, close the connection and release pending callers."""
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

        # Release anyone still waiting on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()
        self._ready.clear()

        logger.info("Database worker stopped")

    def _open(self) -> None:
        if not path.isfile(self.db_path):
            logger.info(f"Creating database at {self.db_path}")
        else:
            logger.info(f"Opening database at {self.db_path}")

        # Autocommit mode: transactions are opened explicitly where batches need them
        self.conn = connect(self.db_path, isolation_level=None)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        initialize_database(self.conn)

    async def _worker(self) -> None:
        """Open the connection, then run queued operations one at a time."""
        try:
            self._open()
        except (Error, OSError, ValueError):
            self.running = False
            self.conn = None
            raise
        finally:
            self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith("_") or not callable(method):
                        self.results[operation_id] = {
                            "error": DatabaseError(f"Unknown operation: {operation_name}", operation_name)
                        }
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"{operation_name} failed: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
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
        """Execute a database operation by name and return its result."""
        if not self.running:
            raise DatabaseError("Database worker is not running", operation_name)

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise DatabaseError(f"Database stopped before {operation_name} completed", operation_name)
            if "error" in result:
                error = result["error"]
                if isinstance(error, Error):
                    raise DatabaseError(f"{operation_name} failed: {error}", operation_name) from error
                raise error
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Source Operations
    def add_source(self, name: str, url: str, feed_url: Optional[str] = None,
                   sync_frequency: Optional[int] = None, category_id: Optional[int] = None,
                   is_active: bool = True) -> Source:
        """Insert a new source and return it. Raises ValueError on invalid input."""
        if not name or not name.strip():
            raise ValueError("Source name is required")
        if not url or not url.strip():
            raise ValueError("Source URL is required")
        frequency = validate_sync_frequency(
            config.DEFAULT_SYNC_FREQUENCY if sync_frequency is None else sync_frequency
        )
        now = int(time())
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """INSERT INTO sources (name, url, feed_url, category_id, is_active, sync_frequency,
                                        created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (name.strip(), url.strip(), feed_url.strip() if feed_url else None, category_id,
                 int(bool(is_active)), frequency, now, now)
            )
            return self.get_source(cursor.lastrowid)
        finally:
            cursor.close()

    def register_source(self, name: str, url: str, feed_url: Optional[str] = None,
                        sync_frequency: Optional[int] = None, active: bool = True) -> int:
        """Insert a source unless one with the same site URL exists; return its id."""
        frequency = validate_sync_frequency(
            config.DEFAULT_SYNC_FREQUENCY if sync_frequency is None else sync_frequency
        )
        now = int(time())
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """INSERT OR IGNORE INTO sources (name, url, feed_url, is_active, sync_frequency, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (name, url, feed_url, int(bool(active)), frequency, now, now)
            )
            cursor.execute("SELECT id FROM sources WHERE url = ?", (url,))
            return cursor.fetchone()["id"]
        finally:
            cursor.close()

    def get_source(self, source_id: int) -> Optional[Source]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM sources WHERE id = ?", (source_id,))
            row = cursor.fetchone()
            return Source.from_row(row) if row else None
        finally:
            cursor.close()

    def list_sources(self, active_only: bool = False) -> List[Source]:
        cursor = self.conn.cursor()
        try:
            if active_only:
                cursor.execute("SELECT * FROM sources WHERE is_active = 1 ORDER BY id")
            else:
                cursor.execute("SELECT * FROM sources ORDER BY id")
            return [Source.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def find_sources_due_for_sync(self, active_only: bool = True, now: Optional[int] = None) -> List[Source]:
        """Sources never synced, or whose last sync is at least sync_frequency minutes old."""
        now = int(time()) if now is None else now
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """SELECT * FROM sources
                   WHERE (? = 0 OR is_active = 1)
                     AND (last_sync IS NULL OR last_sync + sync_frequency * 60 <= ?)
                   ORDER BY id""",
                (int(bool(active_only)), now)
            )
            return [Source.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def update_source_last_sync(self, source_id: int, error_message: Optional[str] = None) -> None:
        """Record a sync attempt; a None error clears any previous one."""
        now = int(time())
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE sources SET last_sync = ?, last_error = ?, updated_at = ? WHERE id = ?",
                (now, error_message, now, source_id)
            )
        finally:
            cursor.close()

    # Article Operations
    def find_article_by_url(self, url: str) -> Optional[Article]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM articles WHERE url = ? ORDER BY created_at DESC LIMIT 1", (url,))
            row = cursor.fetchone()
            return Article.from_row(row) if row else None
        finally:
            cursor.close()

    def bulk_insert_articles(self, drafts: List[ArticleDraft]) -> List[InsertResult]:
        """Insert drafts in one transaction, one savepoint per draft.

        A URL already present yields DUPLICATE; any other failure rolls back
        only that draft and yields ERROR. The batch itself always commits.
        """
        results: List[InsertResult] = []
        if not drafts:
            return results

        now = int(time())
        placeholders = ", ".join("?" for _ in range(len(_ARTICLE_COLUMNS) + 2))
        sql = (
            f"INSERT INTO articles ({', '.join(_ARTICLE_COLUMNS)}, created_at, updated_at) "
            f"VALUES ({placeholders}) ON CONFLICT(url) DO NOTHING"
        )

        cursor = self.conn.cursor()
        try:
            cursor.execute("BEGIN")
            for draft in drafts:
                values = [getattr(draft, column) for column in _ARTICLE_COLUMNS]
                cursor.execute("SAVEPOINT article_insert")
                try:
                    cursor.execute(sql, values + [now, now])
                    inserted = cursor.rowcount > 0
                except Error as e:
                    cursor.execute("ROLLBACK TO SAVEPOINT article_insert")
                    cursor.execute("RELEASE SAVEPOINT article_insert")
                    results.append(InsertResult(draft.url, InsertOutcome.ERROR, str(e)))
                    continue
                cursor.execute("RELEASE SAVEPOINT article_insert")
                results.append(InsertResult(
                    draft.url, InsertOutcome.INSERTED if inserted else InsertOutcome.DUPLICATE
                ))
            cursor.execute("COMMIT")
            return results
        except Error:
            if self.conn.in_transaction:
                cursor.execute("ROLLBACK")
            raise
        finally:
            cursor.close()

    def list_articles(self, source_id: Optional[int] = None, limit: Optional[int] = None) -> List[Article]:
        """List articles newest first, optionally scoped to one source."""
        query = "SELECT * FROM articles"
        params: List[Any] = []
        if source_id is not None:
            query += " WHERE source_id = ?"
            params.append(source_id)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        cursor = self.conn.cursor()
        try:
            cursor.execute(query, params)
            return [Article.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def count_articles(self, source_id: Optional[int] = None) -> int:
        cursor = self.conn.cursor()
        try:
            if source_id is None:
                cursor.execute("SELECT COUNT(*) FROM articles")
            else:
                cursor.execute("SELECT COUNT(*) FROM articles WHERE source_id = ?", (source_id,))
            return cursor.fetchone()[0]
        finally:
            cursor.close()

    def update_article_content(self, article_id: int, **fields) -> bool:
        """Rewrite selected content columns of one article."""
        unknown = set(fields) - _UPDATABLE_ARTICLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update article columns: {', '.join(sorted(unknown))}")
        if not fields:
            return False
        assignments = ", ".join(f"{column} = ?" for column in fields)
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"UPDATE articles SET {assignments}, updated_at = ? WHERE id = ?",
                list(fields.values()) + [int(time()), article_id]
            )
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def delete_articles_older_than(self, days: int, exclude_favorites: bool = True,
                                   now: Optional[int] = None) -> int:
        """Delete articles created more than `days` days ago.

        Age is measured from created_at, never published_date. Archived state
        is not considered; only the favorite flag protects an article.
        """
        if days < 1:
            raise ValueError(f"Retention must be at least one day, got {days}")
        now = int(time()) if now is None else now
        cutoff = now - days * 24 * 3600
        query = "DELETE FROM articles WHERE created_at < ?"
        if exclude_favorites:
            query += " AND is_favorite = 0"
        cursor = self.conn.cursor()
        try:
            cursor.execute(query, (cutoff,))
            deleted = cursor.rowcount
            if deleted:
                logger.info(f"Deleted {deleted} articles older than {days} days")
            return deleted
        finally:
            cursor.close()

    def find_duplicate_articles_by_url(self, source_id: Optional[int] = None) -> List[List[Article]]:
        """Group articles sharing a URL; each group is ordered newest first."""
        scope = ""
        params: List[Any] = []
        if source_id is not None:
            scope = " WHERE source_id = ?"
            params.append(source_id)
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"SELECT url FROM articles{scope} GROUP BY url HAVING COUNT(*) > 1 ORDER BY url",
                params
            )
            urls = [row["url"] for row in cursor.fetchall()]
            groups = []
            for url in urls:
                cursor.execute(
                    f"SELECT * FROM articles WHERE url = ?{' AND source_id = ?' if source_id is not None else ''} "
                    "ORDER BY created_at DESC, id DESC",
                    [url] + params
                )
                groups.append([Article.from_row(row) for row in cursor.fetchall()])
            return groups
        finally:
            cursor.close()

    def delete_articles(self, ids: List[int]) -> int:
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"DELETE FROM articles WHERE id IN ({placeholders})", list(ids))
            return cursor.rowcount
        finally:
            cursor.close()

    def ensure_url_unique_index(self) -> int:
        """Make sure the URL uniqueness index exists; returns duplicates removed to create it."""
        cursor = self.conn.cursor()
        try:
            return _create_url_index(cursor)
        finally:
            cursor.close()
