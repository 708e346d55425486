#!/usr/bin/env python3
"""
Cache store for extracted content and podcast media.

Three tables back the pipeline (see schema.sql):

- feed_entry: extracted article content keyed by (feed, url)
- podcast_entry: downloaded enclosures keyed by (feed, url)
- image: podcast images keyed by (feed, type, id)

All access goes through ItemCache.execute(), which serializes operations on a
single sqlite connection. When the database cannot be opened the cache runs in
pass-through mode: every operation returns None, so lookups miss and writes are
dropped.
"""

from os import path, access, makedirs, R_OK
from time import time
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from errors import CacheError
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("models")
_tracer = get_tracer("db")

# Unique keys per table, used by the migration that adds missing unique indexes
UNIQUE_KEYS = {
    "feed_entry": ("idx_feed_entry_key", ("feed", "url")),
    "podcast_entry": ("idx_podcast_entry_key", ("feed", "url")),
    "image": ("idx_image_key", ("feed", "type", "id")),
}


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feed_entry'")
        cache_exists = cursor.fetchone() is not None

        if not cache_exists:
            logger.info("Cache database is new or empty. Initializing schema.")
        else:
            _run_migrations(conn)

        # Every statement is idempotent, so this also creates tables added since
        cursor.executescript(_read_schema_file())
        conn.commit()
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Bring caches created without unique keys up to date.

    Older caches could hold several rows per key; the newest row is kept before
    the unique index is created.
    """
    cursor = conn.cursor()
    try:
        for table, (index_name, columns) in UNIQUE_KEYS.items():
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,))
            if cursor.fetchone() is None:
                continue
            cursor.execute("SELECT name FROM sqlite_master WHERE type='index' AND name=?", (index_name,))
            if cursor.fetchone() is not None:
                continue
            key = ", ".join(columns)
            cursor.execute(
                f"DELETE FROM {table} WHERE rowid NOT IN (SELECT MAX(rowid) FROM {table} GROUP BY {key})"
            )
            removed = cursor.rowcount
            cursor.execute(f"CREATE UNIQUE INDEX {index_name} ON {table}({key})")
            conn.commit()
            logger.info(f"Migration completed: unique key on {table} ({removed} duplicate rows removed)")
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

    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


class ItemCache:
    """A queue for cache operations on a single sqlite connection."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.CACHE_DB_PATH
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.available = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker.

        Failure to open or initialize the database is not fatal: the cache
        switches to pass-through mode.
        """
        if self.running:
            return

        try:
            self._open()
        except (Error, OSError, ValueError) as e:
            logger.warning(f"Cache unavailable at {self.db_path}, continuing without cache: {e}")
            if self.conn:
                self.conn.close()
                self.conn = None
            self.available = False
            return

        self.available = True
        self.running = True
        self.worker_task = create_task(self._worker())
        logger.debug("Cache worker started")

    def _open(self) -> None:
        if self.db_path != ":memory:":
            if path.isfile(self.db_path):
                logger.debug(f"Using existing cache database at {self.db_path}")
            else:
                logger.info(f"Cache database {self.db_path} does not exist. A new database will be created.")
                directory = path.dirname(self.db_path)
                if directory:
                    makedirs(directory, exist_ok=True)
        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        initialize_database(self.conn)

    async def stop(self) -> None:
        """Stop the worker and close the database."""
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
            self.worker_task = None
        self.running = False

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()
        logger.debug("Cache worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing cache operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if method is None or operation_name.startswith('_'):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except (Error, TypeError, ValueError) as e:
                    logger.error(f"Cache operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Cache worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "feed.name": params.get("feed"),
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a cache operation. Returns None when the cache is unavailable."""
        if not self.available:
            logger.debug(f"Cache unavailable, skipping {operation_name}")
            return None

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                # Worker stopped while the operation was queued
                return None
            if "error" in result:
                raise CacheError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Article operations
    def get_article(self, feed: str, url: str) -> Optional[Dict[str, Any]]:
        """Return the cached title/content/time for an item, if any."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT title, content, time, last_access FROM feed_entry WHERE feed = ? AND url = ?",
                (feed, url),
            )
            row = cursor.fetchone()
            return dict(row) if row else None
        except Error as e:
            logger.warning(f"Error reading cache entry {feed} {url}: {e}")
            return None

    def touch_article(self, feed: str, url: str, last_access: Optional[int] = None) -> bool:
        """Refresh the last access time of a cached item."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "UPDATE feed_entry SET last_access = ? WHERE feed = ? AND url = ?",
                (int(last_access if last_access is not None else time()), feed, url),
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.warning(f"Error touching cache entry {feed} {url}: {e}")
            return False

    def put_article(self, feed: str, url: str, title: str, content: str, time: int = 0,
                    last_access: Optional[int] = None) -> bool:
        """Store an item's extracted content. An existing row for the key is kept."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO feed_entry (feed, url, title, content, time, last_access) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (feed, url, title, content, int(time or 0),
                 int(last_access if last_access is not None else _now())),
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.warning(f"Error storing cache entry {feed} {url}: {e}")
            return False

    def list_expired_articles(self, feed: str, cutoff: int) -> List[str]:
        """URLs of a feed's items last accessed before the cutoff."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT url FROM feed_entry WHERE feed = ? AND last_access < ?",
                (feed, int(cutoff)),
            )
            return [row["url"] for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing expired entries for {feed}: {e}")
            return []

    def delete_expired_articles(self, feed: str, cutoff: int) -> int:
        """Delete all of a feed's items last accessed before the cutoff."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "DELETE FROM feed_entry WHERE feed = ? AND last_access < ?",
                (feed, int(cutoff)),
            )
            self.conn.commit()
            return cursor.rowcount
        except Error as e:
            logger.error(f"Error deleting expired entries for {feed}: {e}")
            self.conn.rollback()
            return 0

    def delete_article(self, feed: str, url: str) -> int:
        try:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM feed_entry WHERE feed = ? AND url = ?", (feed, url))
            self.conn.commit()
            return cursor.rowcount
        except Error as e:
            logger.error(f"Error deleting cache entry {feed} {url}: {e}")
            self.conn.rollback()
            return 0

    def count_articles(self, feed: Optional[str] = None) -> int:
        """Number of cached items, overall or for one feed."""
        try:
            cursor = self.conn.cursor()
            if feed is None:
                cursor.execute("SELECT COUNT(*) FROM feed_entry")
            else:
                cursor.execute("SELECT COUNT(*) FROM feed_entry WHERE feed = ?", (feed,))
            return cursor.fetchone()[0]
        except Error as e:
            logger.error(f"Error counting cache entries: {e}")
            return 0

    # Podcast enclosure operations
    def get_enclosure(self, feed: str, url: str) -> Optional[Dict[str, Any]]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT enclosure, length, type, duration FROM podcast_entry WHERE feed = ? AND url = ?",
                (feed, url),
            )
            row = cursor.fetchone()
            return dict(row) if row else None
        except Error as e:
            logger.warning(f"Error reading enclosure {feed} {url}: {e}")
            return None

    def put_enclosure(self, feed: str, url: str, enclosure: str, length: int, type: str, duration: int) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO podcast_entry (feed, url, enclosure, length, type, duration) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (feed, url, enclosure, int(length), type, int(duration)),
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.warning(f"Error storing enclosure {feed} {url}: {e}")
            return False

    def list_enclosure_files(self, feed: str, url: str) -> List[str]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT enclosure FROM podcast_entry WHERE feed = ? AND url = ?", (feed, url))
            return [row["enclosure"] for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing enclosures for {feed} {url}: {e}")
            return []

    def delete_enclosures(self, feed: str, url: str) -> int:
        try:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM podcast_entry WHERE feed = ? AND url = ?", (feed, url))
            self.conn.commit()
            return cursor.rowcount
        except Error as e:
            logger.error(f"Error deleting enclosures for {feed} {url}: {e}")
            self.conn.rollback()
            return 0

    # Image operations
    def get_image(self, feed: str, type: str, id: str) -> Optional[str]:
        """File name of a cached image, if any."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT file FROM image WHERE feed = ? AND type = ? AND id = ?", (feed, type, id))
            row = cursor.fetchone()
            return row["file"] if row else None
        except Error as e:
            logger.warning(f"Error reading image {feed} {type} {id}: {e}")
            return None

    def put_image(self, feed: str, type: str, id: str, file: str) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO image (feed, type, id, file) VALUES (?, ?, ?, ?)",
                (feed, type, id, file),
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.warning(f"Error storing image {feed} {type} {id}: {e}")
            return False

    def list_image_files(self, feed: str, type: str, id: str) -> List[str]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT file FROM image WHERE feed = ? AND type = ? AND id = ?", (feed, type, id))
            return [row["file"] for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing images for {feed} {type} {id}: {e}")
            return []

    def delete_images(self, feed: str, type: str, id: str) -> int:
        try:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM image WHERE feed = ? AND type = ? AND id = ?", (feed, type, id))
            self.conn.commit()
            return cursor.rowcount
        except Error as e:
            logger.error(f"Error deleting images for {feed} {type} {id}: {e}")
            self.conn.rollback()
            return 0

    # Maintenance
    def vacuum(self) -> bool:
        """Reclaim space left by deleted rows."""
        try:
            self.conn.execute("VACUUM")
            return True
        except Error as e:
            logger.error(f"Error compacting cache database: {e}")
            return False


def _now() -> int:
    return int(time())
