#!/usr/bin/env python3
"""
Data model and database operations for the feed refresher.

This module contains the Feed/Item records and the SQLite-backed store. All
SQL runs on a single connection owned by one asyncio worker task; callers
submit named operations through DatabaseQueue.execute(). DatabaseQueue.transaction()
holds an explicit write lock for the span of one BEGIN...COMMIT, and standalone
operations take the same lock, so they never run inside another caller's
open transaction or observe its uncommitted rows.
"""

from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event, Lock
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from os import path
import sqlite3
from sqlite3 import Row, Error
from typing import Any, Dict, List, Optional
from uuid import uuid4

from config import get_logger
from errors import StoreError
from telemetry import trace_span
from utils import from_timestamp, to_timestamp

# Module-specific logger
logger = get_logger("models")


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS feeds (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    url TEXT NOT NULL UNIQUE,
    image TEXT,
    last_refreshed_at INTEGER,
    created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
);

CREATE TABLE IF NOT EXISTS items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    feed_id INTEGER NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    title TEXT NOT NULL DEFAULT '',
    link TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    published_at INTEGER,
    hash TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'unread' CHECK (status IN ('unread', 'read')),
    UNIQUE (feed_id, hash)
);

CREATE INDEX IF NOT EXISTS idx_items_status_published ON items(status, published_at);
CREATE INDEX IF NOT EXISTS idx_items_feed_id ON items(feed_id);
"""


class ItemStatus(str, Enum):
    UNREAD = "unread"
    READ = "read"


@dataclass
class Feed:
    """A subscribed feed. The URL is unique and never changes after creation."""

    id: int
    title: str
    url: str
    image: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None


@dataclass
class Item:
    """A stored feed entry, unique per (feed_id, hash)."""

    id: int
    feed_id: int
    title: str
    link: str
    description: str
    published_at: Optional[datetime]
    hash: str
    status: ItemStatus = ItemStatus.UNREAD


def _row_to_feed(row: Row) -> Feed:
    return Feed(
        id=row['id'],
        title=row['title'],
        url=row['url'],
        image=row['image'],
        last_refreshed_at=from_timestamp(row['last_refreshed_at']),
    )


def _row_to_item(row: Row) -> Item:
    return Item(
        id=row['id'],
        feed_id=row['feed_id'],
        title=row['title'],
        link=row['link'],
        description=row['description'],
        published_at=from_timestamp(row['published_at']),
        hash=row['hash'],
        status=ItemStatus(row['status']),
    )


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(SCHEMA_SQL)
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")
    except Error as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


# Operations callable through execute(); nothing else is dispatched by name
READ_OPERATIONS = frozenset({
    'get_feed',
    'list_feeds',
    'find_item',
    'list_items',
    'count_items',
})

WRITE_OPERATIONS = frozenset({
    'register_feed',
    'create_item',
    'update_item',
    'update_feed_image',
    'update_feed_last_refreshed_at',
    'set_item_status',
})

STORE_OPERATIONS = READ_OPERATIONS | WRITE_OPERATIONS

# Only issued by DatabaseQueue.transaction()
_TRANSACTION_CONTROL = frozenset({'_begin_transaction', '_commit_transaction', '_rollback_transaction'})


class Transaction:
    """Handle for operations issued inside DatabaseQueue.transaction()."""

    def __init__(self, db: "DatabaseQueue"):
        self._db = db
        self.closed = False

    @trace_span(
        "db.tx.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {"db.operation": operation_name},
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation as part of this transaction."""
        if self.closed:
            raise StoreError(f"Transaction already closed; cannot run {operation_name}")
        if operation_name not in STORE_OPERATIONS:
            raise StoreError(f"Unknown operation: {operation_name}")
        return await self._db._submit(operation_name, params)


class DatabaseQueue:
    """A queue for database operations on a single-writer SQLite connection."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        # Held by every standalone operation and for the whole span of a transaction
        self.write_lock = Lock()

    async def start(self) -> None:
        """Start the database worker."""
        if self.running:
            return

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

        # Release anyone still waiting so they fail instead of hanging
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": StoreError("Database worker stopped")})
            event.set()
        self.events.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        # Autocommit mode; transactions are explicit BEGIN/COMMIT
        self.conn = sqlite3.connect(self.db_path, isolation_level=None)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        initialize_database(self.conn)

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = None
                    if operation_name in STORE_OPERATIONS or operation_name in _TRANSACTION_CONTROL:
                        method = getattr(self, operation_name, None)
                    if method is None:
                        self.results[operation_id] = {"error": StoreError(f"Unknown operation: {operation_name}")}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    else:
                        self.results.pop(operation_id, None)
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break

    async def _submit(self, operation_name: str, params: Dict[str, Any]) -> Any:
        """Queue an operation and wait for its result without taking the write lock."""
        if not self.running:
            raise StoreError(f"Database worker is not running; cannot run {operation_name}")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id)
        finally:
            self.events.pop(operation_id, None)

        if "error" in result:
            error = result["error"]
            if isinstance(error, StoreError):
                raise error
            raise StoreError(f"{operation_name} failed: {error}") from error
        return result["result"]

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
        """Execute a standalone database operation.

        Waits for any open transaction to finish first, so reads only see
        committed rows.

        Raises:
            StoreError: if the operation is unknown or fails.
        """
        if operation_name not in STORE_OPERATIONS:
            raise StoreError(f"Unknown operation: {operation_name}")
        async with self.write_lock:
            return await self._submit(operation_name, params)

    @asynccontextmanager
    async def transaction(self):
        """Run a block of operations atomically while holding the write lock.

        Usage:
            async with db.transaction() as tx:
                await tx.execute('create_item', ...)

        The transaction commits when the block exits normally. Any exception
        rolls it back and is re-raised; a failed commit is rolled back and
        raised as StoreError.
        """
        async with self.write_lock:
            await self._submit('_begin_transaction', {})
            tx = Transaction(self)
            try:
                yield tx
            except BaseException:
                tx.closed = True
                await self._rollback_quietly()
                raise
            tx.closed = True
            try:
                await self._submit('_commit_transaction', {})
            except StoreError:
                await self._rollback_quietly()
                raise

    async def _rollback_quietly(self) -> None:
        try:
            await self._submit('_rollback_transaction', {})
        except StoreError as e:
            logger.error(f"Rollback failed: {e}")

    # Transaction control
    def _begin_transaction(self) -> None:
        self.conn.execute("BEGIN IMMEDIATE")

    def _commit_transaction(self) -> None:
        self.conn.execute("COMMIT")

    def _rollback_transaction(self) -> None:
        if self.conn.in_transaction:
            self.conn.execute("ROLLBACK")

    # Feed Management Operations
    def register_feed(self, url: str, title: str) -> int:
        """Register a feed by URL (no-op if it exists) and return its id."""
        self.conn.execute(
            "INSERT OR IGNORE INTO feeds (title, url) VALUES (?, ?)",
            (title, url)
        )
        row = self.conn.execute("SELECT id FROM feeds WHERE url = ?", (url,)).fetchone()
        return row['id']

    def get_feed(self, feed_id: int) -> Optional[Feed]:
        """Get a feed by its ID."""
        row = self.conn.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        return _row_to_feed(row) if row else None

    def list_feeds(self) -> List[Feed]:
        """List all feeds ordered by id."""
        rows = self.conn.execute("SELECT * FROM feeds ORDER BY id").fetchall()
        return [_row_to_feed(row) for row in rows]

    def update_feed_image(self, feed_id: int, image: str) -> None:
        """Update the image URL of a feed."""
        self.conn.execute("UPDATE feeds SET image = ? WHERE id = ?", (image, feed_id))

    def update_feed_last_refreshed_at(self, feed_id: int, refreshed_at: datetime) -> None:
        """Record the time of the latest successful refresh of a feed."""
        self.conn.execute(
            "UPDATE feeds SET last_refreshed_at = ? WHERE id = ?",
            (to_timestamp(refreshed_at), feed_id)
        )

    # Item Management Operations
    def find_item(self, feed_id: int, hash: str) -> Optional[Item]:
        """Look up an item by its dedup key. Returns None when not found."""
        row = self.conn.execute(
            "SELECT * FROM items WHERE feed_id = ? AND hash = ?",
            (feed_id, hash)
        ).fetchone()
        return _row_to_item(row) if row else None

    def create_item(self, feed_id: int, title: str, link: str, description: str,
                    published_at: Optional[datetime], hash: str) -> int:
        """Insert a new unread item and return its id."""
        cursor = self.conn.execute(
            '''
            INSERT INTO items (feed_id, title, link, description, published_at, hash, status)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ''',
            (feed_id, title, link, description, to_timestamp(published_at), hash, ItemStatus.UNREAD.value)
        )
        return cursor.lastrowid

    def update_item(self, item_id: int, title: str, link: str, description: str,
                    published_at: Optional[datetime]) -> None:
        """Update the mutable content fields of an item. Status is left untouched."""
        self.conn.execute(
            '''
            UPDATE items SET title = ?, link = ?, description = ?, published_at = ?
            WHERE id = ?
            ''',
            (title, link, description, to_timestamp(published_at), item_id)
        )

    def set_item_status(self, item_id: int, status: ItemStatus) -> bool:
        """Mark an item read or unread. Returns False if the item does not exist."""
        cursor = self.conn.execute(
            "UPDATE items SET status = ? WHERE id = ?",
            (ItemStatus(status).value, item_id)
        )
        return cursor.rowcount > 0

    def list_items(self, status: Optional[ItemStatus] = ItemStatus.UNREAD,
                   limit: int = 5, offset: int = 0) -> List[Item]:
        """List items newest first, optionally filtered by status."""
        if status is None:
            rows = self.conn.execute(
                "SELECT * FROM items ORDER BY published_at DESC, id DESC LIMIT ? OFFSET ?",
                (limit, offset)
            ).fetchall()
        else:
            rows = self.conn.execute(
                '''
                SELECT * FROM items WHERE status = ?
                ORDER BY published_at DESC, id DESC LIMIT ? OFFSET ?
                ''',
                (ItemStatus(status).value, limit, offset)
            ).fetchall()
        return [_row_to_item(row) for row in rows]

    def count_items(self, feed_id: Optional[int] = None) -> int:
        """Count stored items, optionally for a single feed."""
        if feed_id is None:
            row = self.conn.execute("SELECT COUNT(*) FROM items").fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM items WHERE feed_id = ?", (feed_id,)).fetchone()
        return row[0]
